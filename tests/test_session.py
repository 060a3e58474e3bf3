"""Tests for the provisioning session.

Covers the engine-level guarantees end to end against the in-memory client:
idempotence, dependency ordering, cycle rejection, failure isolation, skip
propagation, cancellation and the summary handed to the IaC consumer.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from typing import Any

import pytest
from google.api_core import exceptions as api_exceptions

from gcp_mock import MockCloudClient
from provisioner.config import Config, SecurityConfig
from provisioner.errors import ConfigurationError, CyclicDependencyError, ErrorKind
from provisioner.executor import (
    SECRET_PROJECT_ID,
    SECRET_SERVICE_ACCOUNT,
    SECRET_WORKLOAD_IDENTITY_PROVIDER,
)
from provisioner.models import ActionType, Outcome, ResourceKind, ResourceSpec
from provisioner.session import ProvisioningSession, SessionState

ISSUER = "https://token.actions.githubusercontent.com"
WIF_MEMBER = (
    "principalSet://iam.googleapis.com/projects/{project_number}/locations/global"
    "/workloadIdentityPools/pool1/attribute.repository/octo-org/octo-repo"
)


def scenario_specs(issuer: str = ISSUER) -> list[ResourceSpec]:
    """Service account, pool, provider on the pool, binding on both."""
    return [
        ResourceSpec(
            kind=ResourceKind.SERVICE_ACCOUNT,
            identifier="sa1-github",
            attributes={"displayName": "GitHub Actions"},
        ),
        ResourceSpec(kind=ResourceKind.IDENTITY_POOL, identifier="pool1"),
        ResourceSpec(
            kind=ResourceKind.OIDC_PROVIDER,
            identifier="prov1",
            attributes={"pool": "pool1", "issuerUri": issuer},
            depends_on=("pool1",),
        ),
        ResourceSpec(
            kind=ResourceKind.IAM_BINDING,
            identifier="bind1",
            attributes={
                "role": "roles/iam.workloadIdentityUser",
                "member": WIF_MEMBER,
                "serviceAccount": "sa1-github",
            },
            depends_on=("sa1-github", "prov1"),
        ),
    ]


def outcomes(result: Any) -> dict[str, Outcome]:
    return {r.identifier: r.outcome for r in result.results}


class TestScenarios:
    """End-to-end scenarios on the four-resource federation set."""

    @pytest.mark.asyncio
    async def test_fresh_project(self, config: Config) -> None:
        """All four are created; independent roots run concurrently, dependents wait."""
        client = MockCloudClient(config, latency_seconds=0.05)
        result = await ProvisioningSession(config, scenario_specs(), client).run()

        assert result.status == SessionState.COMPLETED
        assert len(result.results) == 4
        assert all(r.outcome == Outcome.SUCCEEDED for r in result.results)
        assert all(r.action == ActionType.CREATE for r in result.results)

        sa = client.calls_for("sa1-github", "create")[0]
        pool = client.calls_for("pool1", "create")[0]
        prov = client.calls_for("prov1", "create")[0]
        bind = client.calls_for("bind1", "bind")[0]

        # sa1 and pool1 overlap
        assert sa.started < pool.finished and pool.started < sa.finished
        # prov1 waits for pool1; bind1 waits for sa1 and prov1
        assert prov.started > pool.finished
        assert bind.started > max(sa.finished, prov.finished)
        assert client.mutating_call_count == 4

    @pytest.mark.asyncio
    async def test_rerun_is_noop(self, config: Config, client: MockCloudClient) -> None:
        """Second run: every resource NoOp, zero mutating calls, identical secrets."""
        first = await ProvisioningSession(config, scenario_specs(), client).run()
        mutating_after_first = client.mutating_call_count

        second = await ProvisioningSession(config, scenario_specs(), client).run()

        assert second.status == SessionState.COMPLETED
        assert {r.action for r in second.results} == {ActionType.NO_OP}
        assert client.mutating_call_count == mutating_after_first
        assert second.mutating_calls == 0
        assert second.changes_applied == 0
        assert second.secrets == first.secrets

    @pytest.mark.asyncio
    async def test_issuer_mismatch_completes_with_skip(
        self, config: Config, client: MockCloudClient
    ) -> None:
        """An immutable issuer difference is a Skip, and a Skip is not a failure."""
        await ProvisioningSession(config, scenario_specs(), client).run()

        result = await ProvisioningSession(
            config, scenario_specs(issuer="https://gitlab.example.com"), client
        ).run()

        assert result.status == SessionState.COMPLETED
        assert result.status != SessionState.COMPLETED_WITH_FAILURES
        skipped = [r for r in result.results if r.outcome == Outcome.SKIPPED and r.action == ActionType.SKIP]
        assert [r.identifier for r in skipped] == ["prov1"]
        assert "manual recreation required" in skipped[0].reason
        assert skipped[0].error_kind == ErrorKind.CONFLICT
        assert not skipped[0].blocks_dependents
        # The existing provider still yields its name for the IaC consumer
        assert result.secrets[SECRET_WORKLOAD_IDENTITY_PROVIDER].endswith("/providers/prov1")
        assert result.failed == []
        # The binding still reconciles against the existing provider
        assert result.result_for("bind1").action == ActionType.NO_OP  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_attribute_drift_updates(self, config: Config, client: MockCloudClient) -> None:
        specs = scenario_specs()
        client.seed(specs[0], displayName="Old name")

        result = await ProvisioningSession(config, specs, client).run()

        sa_result = result.result_for("sa1-github")
        assert sa_result is not None
        assert sa_result.action == ActionType.UPDATE
        assert sa_result.outcome == Outcome.SUCCEEDED
        assert len(client.calls_for("sa1-github", "update")) == 1
        assert client.calls_for("sa1-github", "create") == []


class TestCycleRejection:
    """A dependency cycle aborts before any mutation."""

    @pytest.mark.asyncio
    async def test_cycle_aborts(self, config: Config, client: MockCloudClient) -> None:
        specs = [
            ResourceSpec(kind=ResourceKind.IDENTITY_POOL, identifier="pool-a", depends_on=("pool-c",)),
            ResourceSpec(kind=ResourceKind.IDENTITY_POOL, identifier="pool-b", depends_on=("pool-a",)),
            ResourceSpec(kind=ResourceKind.IDENTITY_POOL, identifier="pool-c", depends_on=("pool-b",)),
            ResourceSpec(kind=ResourceKind.IDENTITY_POOL, identifier="pool-free"),
        ]
        result = await ProvisioningSession(config, specs, client).run()

        assert result.status == SessionState.ABORTED
        assert isinstance(result.error, CyclicDependencyError)
        assert result.error.kind == ErrorKind.CONFIGURATION
        assert client.mutating_call_count == 0
        assert result.mutating_calls == 0

    @pytest.mark.asyncio
    async def test_unknown_dependency_aborts(self, config: Config, client: MockCloudClient) -> None:
        specs = [ResourceSpec(kind=ResourceKind.IDENTITY_POOL, identifier="pool-a", depends_on=("ghost",))]
        result = await ProvisioningSession(config, specs, client).run()

        assert result.status == SessionState.ABORTED
        assert isinstance(result.error, ConfigurationError)
        assert client.mutating_call_count == 0

    @pytest.mark.asyncio
    async def test_unresolvable_placeholder_aborts(self, client: MockCloudClient) -> None:
        """Without a project number the principalSet member cannot be built."""
        specs = scenario_specs()
        client.seed(specs[0])
        config = Config(project_id="test-project", repository="octo-org/octo-repo", max_attempts=1)
        result = await ProvisioningSession(config, specs, client).run()

        assert result.status == SessionState.ABORTED
        assert isinstance(result.error, ConfigurationError)
        assert client.mutating_call_count == 0

    @pytest.mark.asyncio
    async def test_too_many_resources_aborts(self, config: Config, client: MockCloudClient) -> None:
        limited = replace(config, security=SecurityConfig(max_resources_per_session=2))
        result = await ProvisioningSession(limited, scenario_specs(), client).run()

        assert result.status == SessionState.ABORTED
        assert client.calls == []


class TestFailureHandling:
    """Failure isolation and skip propagation."""

    @pytest.mark.asyncio
    async def test_failure_isolation_and_skip_propagation(
        self, config: Config, client: MockCloudClient
    ) -> None:
        client.fail("pool1", "create", api_exceptions.Forbidden("caller lacks iam.workloadIdentityPools.create"))

        result = await ProvisioningSession(config, scenario_specs(), client).run()

        assert result.status == SessionState.COMPLETED_WITH_FAILURES
        assert outcomes(result) == {
            "sa1-github": Outcome.SUCCEEDED,
            "pool1": Outcome.FAILED,
            "prov1": Outcome.SKIPPED,
            "bind1": Outcome.SKIPPED,
        }

        pool = result.result_for("pool1")
        assert pool is not None and pool.error_kind == ErrorKind.PERMISSION
        assert "iam.workloadIdentityPools.create" in (pool.error.diagnostic or "")  # type: ignore[union-attr]

        for identifier in ("prov1", "bind1"):
            skipped = result.result_for(identifier)
            assert skipped is not None
            assert skipped.reason == "dependency failed"
            assert skipped.error_kind == ErrorKind.DEPENDENCY_FAILED

        # Skipped dependents never reach the executor
        assert client.calls_for("prov1", "create") == []
        assert client.calls_for("bind1", "bind") == []

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_resource(self, config: Config, client: MockCloudClient) -> None:
        client.fail_always("sa1-github", "create", api_exceptions.ServiceUnavailable("down"))

        result = await ProvisioningSession(config, scenario_specs(), client).run()

        sa = result.result_for("sa1-github")
        assert sa is not None
        assert sa.outcome == Outcome.FAILED
        assert sa.error_kind == ErrorKind.EXHAUSTED_RETRIES
        assert sa.attempts == config.max_attempts
        assert result.result_for("prov1").outcome == Outcome.SUCCEEDED  # type: ignore[union-attr]
        assert result.result_for("bind1").outcome == Outcome.SKIPPED  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_transient_error_recovers(self, config: Config, client: MockCloudClient) -> None:
        client.fail("prov1", "create", api_exceptions.TooManyRequests("Rate limit exceeded"))

        result = await ProvisioningSession(config, scenario_specs(), client).run()

        assert result.status == SessionState.COMPLETED
        assert result.result_for("prov1").attempts == 2  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_probe_failure_fails_resource(self, config: Config, client: MockCloudClient) -> None:
        client.fail_always("pool1", "get", api_exceptions.Forbidden("no iam.workloadIdentityPools.get"))

        result = await ProvisioningSession(config, scenario_specs(), client).run()

        assert result.status == SessionState.COMPLETED_WITH_FAILURES
        assert result.result_for("pool1").outcome == Outcome.FAILED  # type: ignore[union-attr]
        assert result.result_for("prov1").error_kind == ErrorKind.DEPENDENCY_FAILED  # type: ignore[union-attr]
        assert client.calls_for("pool1", "create") == []

    @pytest.mark.asyncio
    async def test_conflict_does_not_block_dependents(
        self, config: Config, client: MockCloudClient
    ) -> None:
        """AlreadyExists on create: Skipped as a conflict, dependents still run."""
        specs = [
            ResourceSpec(kind=ResourceKind.IDENTITY_POOL, identifier="pool-a"),
            ResourceSpec(kind=ResourceKind.IDENTITY_POOL, identifier="pool-b", depends_on=("pool-a",)),
        ]
        client.fail("pool-a", "create", api_exceptions.AlreadyExists("pool-a already exists"))

        result = await ProvisioningSession(config, specs, client).run()

        assert result.status == SessionState.COMPLETED
        pool_a = result.result_for("pool-a")
        assert pool_a is not None
        assert pool_a.outcome == Outcome.SKIPPED
        assert pool_a.error_kind == ErrorKind.CONFLICT
        assert result.result_for("pool-b").outcome == Outcome.SUCCEEDED  # type: ignore[union-attr]


class TestConcurrency:
    """Concurrency limits and the results list."""

    @pytest.mark.asyncio
    async def test_execute_concurrency_bound(self, config: Config) -> None:
        serial = replace(config, execute_concurrency=1)
        client = MockCloudClient(serial, latency_seconds=0.01)
        specs = [ResourceSpec(kind=ResourceKind.IDENTITY_POOL, identifier=f"pool-{i}") for i in range(5)]

        result = await ProvisioningSession(serial, specs, client).run()

        assert result.status == SessionState.COMPLETED
        mutating = sorted(client.mutating_calls, key=lambda c: c.started)
        for earlier, later in zip(mutating, mutating[1:]):
            assert later.started > earlier.finished

    @pytest.mark.asyncio
    async def test_probes_overlap_at_default_limit(self, config: Config) -> None:
        client = MockCloudClient(config, latency_seconds=0.05)
        specs = [ResourceSpec(kind=ResourceKind.IDENTITY_POOL, identifier=f"pool-{i}") for i in range(4)]

        await ProvisioningSession(config, specs, client).plan()

        reads = sorted((c for c in client.calls if c.method == "get"), key=lambda c: c.started)
        assert len(reads) == 4
        assert any(later.started < earlier.finished for earlier, later in zip(reads, reads[1:]))

    @pytest.mark.asyncio
    async def test_probe_concurrency_bound(self, config: Config) -> None:
        serial = replace(config, probe_concurrency=1)
        client = MockCloudClient(serial, latency_seconds=0.01)
        specs = [ResourceSpec(kind=ResourceKind.IDENTITY_POOL, identifier=f"pool-{i}") for i in range(4)]

        await ProvisioningSession(serial, specs, client).plan()

        reads = sorted((c for c in client.calls if c.method == "get"), key=lambda c: c.started)
        assert len(reads) == 4
        for earlier, later in zip(reads, reads[1:]):
            assert later.started > earlier.finished

    @pytest.mark.asyncio
    async def test_every_resource_has_one_result(self, config: Config, client: MockCloudClient) -> None:
        specs = [ResourceSpec(kind=ResourceKind.IDENTITY_POOL, identifier=f"pool-{i}") for i in range(12)]
        client.fail("pool-3", "create", api_exceptions.BadRequest("invalid displayName"))

        result = await ProvisioningSession(config, specs, client).run()

        assert sorted(r.identifier for r in result.results) == sorted(s.identifier for s in specs)


class TestCancellation:
    """cancel() stops new mutating calls; undispatched work ends the session Aborted."""

    @pytest.mark.asyncio
    async def test_cancel_before_execution(self, config: Config, client: MockCloudClient) -> None:
        session = ProvisioningSession(config, scenario_specs(), client)
        session.cancel()

        result = await session.run()

        assert result.status == SessionState.ABORTED
        assert result.error is not None and result.error.kind == ErrorKind.CANCELLED
        assert client.mutating_call_count == 0
        assert len(result.results) == 4
        assert {r.error_kind for r in result.results} == {ErrorKind.CANCELLED}

    @pytest.mark.asyncio
    async def test_in_flight_call_completes(self, config: Config) -> None:
        loop = asyncio.get_running_loop()
        holder: dict[str, ProvisioningSession] = {}

        class CancellingClient(MockCloudClient):
            def create_resource(self, spec: ResourceSpec) -> dict[str, Any]:
                payload = super().create_resource(spec)
                if spec.identifier == "pool1":
                    loop.call_soon_threadsafe(holder["session"].cancel)
                return payload

        client = CancellingClient(config)
        session = ProvisioningSession(config, scenario_specs(), client)
        holder["session"] = session

        result = await session.run()

        assert result.status == SessionState.ABORTED
        assert result.result_for("pool1").outcome == Outcome.SUCCEEDED  # type: ignore[union-attr]
        assert (ResourceKind.IDENTITY_POOL, "pool1") in client.resources
        for identifier in ("prov1", "bind1"):
            cancelled = result.result_for(identifier)
            assert cancelled is not None
            assert cancelled.outcome == Outcome.SKIPPED
            assert cancelled.error_kind == ErrorKind.CANCELLED
        assert client.calls_for("prov1", "create") == []

    @pytest.mark.asyncio
    async def test_cancel_after_last_dispatch_completes(self, config: Config) -> None:
        loop = asyncio.get_running_loop()
        holder: dict[str, ProvisioningSession] = {}

        class LateCancellingClient(MockCloudClient):
            def bind_policy(self, spec: ResourceSpec) -> dict[str, Any]:
                policy = super().bind_policy(spec)
                loop.call_soon_threadsafe(holder["session"].cancel)
                return policy

        client = LateCancellingClient(config)
        session = ProvisioningSession(config, scenario_specs(), client)
        holder["session"] = session

        result = await session.run()

        assert session.cancelled
        assert result.status == SessionState.COMPLETED
        assert result.error is None
        assert all(r.outcome == Outcome.SUCCEEDED for r in result.results)


class TestSessionLifecycle:
    """State machine and result reporting."""

    @pytest.mark.asyncio
    async def test_run_only_once(self, config: Config, client: MockCloudClient) -> None:
        session = ProvisioningSession(config, scenario_specs(), client)
        await session.run()
        with pytest.raises(RuntimeError):
            await session.run()

    @pytest.mark.asyncio
    async def test_plan_does_not_mutate(self, config: Config, client: MockCloudClient) -> None:
        session = ProvisioningSession(config, scenario_specs(), client)
        planned = await session.plan()

        assert [p.spec.identifier for p in planned] == ["sa1-github", "pool1", "prov1", "bind1"]
        assert all(p.action is not None and p.action.action == ActionType.CREATE for p in planned)
        assert client.mutating_call_count == 0
        assert session.state == SessionState.INITIALIZED

    @pytest.mark.asyncio
    async def test_secrets_and_summary(self, config: Config, client: MockCloudClient) -> None:
        result = await ProvisioningSession(config, scenario_specs(), client).run()

        assert result.secrets == {
            SECRET_PROJECT_ID: "test-project",
            SECRET_SERVICE_ACCOUNT: "sa1-github@test-project.iam.gserviceaccount.com",
            SECRET_WORKLOAD_IDENTITY_PROVIDER: (
                "projects/123456789012/locations/global/workloadIdentityPools/pool1/providers/prov1"
            ),
        }

        summary = result.to_summary()
        json.dumps(summary)  # must be serialisable
        assert summary["status"] == "Completed"
        assert summary["counts"] == {"Succeeded": 4, "Failed": 0, "Skipped": 0}
        assert summary["changesApplied"] == 4
        assert summary["endTime"] is not None
        assert len(summary["results"]) == 4
