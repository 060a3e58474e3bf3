"""Applies reconciliation actions to the provider.

Create and Update actions perform the mutating call, retried on transient
errors with exponential backoff. Skip and NoOp actions never reach the
provider.

Produced secrets are derived from the declared resource and configuration
rather than from the provider response. Any resource known to exist (NoOp,
immutable-drift Skip, Conflict) yields the same values as the run that
created it, so reruns hand identical values to the IaC consumer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from .client import CloudResourceClient
from .config import WORKLOAD_IDENTITY_LOCATION, Config
from .errors import ConflictError, ErrorKind, ProvisioningError
from .models import (
    ActionType,
    Outcome,
    ProvisioningResult,
    ReconciliationAction,
    ResourceKind,
    ResourceSpec,
)
from .retry import RetryOutcome, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

# Secret names consumed by the GitHub Actions auth step
SECRET_PROJECT_ID = "GCP_PROJECT_ID"
SECRET_SERVICE_ACCOUNT = "GCP_SERVICE_ACCOUNT"
SECRET_WORKLOAD_IDENTITY_PROVIDER = "GCP_WORKLOAD_IDENTITY_PROVIDER"
SECRET_STATE_BUCKET = "TF_STATE_BUCKET"

# Errors that leave the resource untouched without failing the session
SKIPPED_ERROR_KINDS: frozenset[ErrorKind] = frozenset({ErrorKind.CONFLICT, ErrorKind.CANCELLED})


def service_account_email(account_id: str, project_id: str) -> str:
    return f"{account_id}@{project_id}.iam.gserviceaccount.com"


def provider_resource_name(project_reference: str, pool: str, provider: str) -> str:
    return (
        f"projects/{project_reference}/locations/{WORKLOAD_IDENTITY_LOCATION}"
        f"/workloadIdentityPools/{pool}/providers/{provider}"
    )


def produced_secrets(spec: ResourceSpec, config: Config) -> dict[str, str]:
    """Caller-facing identifiers yielded by ``spec``, if any."""
    match spec.kind:
        case ResourceKind.SERVICE_ACCOUNT:
            return {SECRET_SERVICE_ACCOUNT: service_account_email(spec.identifier, config.project_id)}
        case ResourceKind.OIDC_PROVIDER:
            return {
                SECRET_WORKLOAD_IDENTITY_PROVIDER: provider_resource_name(
                    config.project_reference, spec.attributes["pool"], spec.identifier
                )
            }
        case ResourceKind.STORAGE_BUCKET:
            return {SECRET_STATE_BUCKET: spec.identifier}
    return {}


class Executor:
    """Executes one reconciliation action against the provider."""

    def __init__(
        self,
        client: CloudResourceClient,
        config: Config,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._client = client
        self._config = config
        self._policy = policy or RetryPolicy.from_config(config)
        self._mutating_calls = 0

    @property
    def mutating_calls(self) -> int:
        """Number of mutating provider calls dispatched, retries included."""
        return self._mutating_calls

    async def execute(
        self,
        spec: ResourceSpec,
        action: ReconciliationAction,
        cancel_event: asyncio.Event | None = None,
    ) -> ProvisioningResult:
        """Apply ``action`` for ``spec`` and return the terminal result."""
        start_time = time.monotonic()

        if not action.is_mutating:
            # NoOp and Skip both mean the resource exists under this identifier
            skipped = ProvisioningResult(
                identifier=spec.identifier,
                kind=spec.kind,
                action=action.action,
                outcome=Outcome.SKIPPED,
                reason=action.reason,
                produced_secrets=produced_secrets(spec, self._config),
            )
            if action.action == ActionType.SKIP:
                skipped.error = ConflictError(
                    action.reason,
                    identifier=spec.identifier,
                    action=action.action.value,
                )
                logger.warning(
                    "Resource cannot be reconciled in place",
                    extra={"identifier": spec.identifier, "reason": action.reason},
                )
            return skipped

        loop = asyncio.get_running_loop()
        attempts = RetryOutcome()

        async def attempt() -> dict[str, Any]:
            self._mutating_calls += 1
            return await loop.run_in_executor(None, self._dispatch, spec, action)

        result = ProvisioningResult(
            identifier=spec.identifier,
            kind=spec.kind,
            action=action.action,
            outcome=Outcome.SUCCEEDED,
            reason=action.reason,
        )

        try:
            await call_with_retry(
                attempt,
                self._policy,
                identifier=spec.identifier,
                action=action.action.value,
                mutating=True,
                outcome=attempts,
                cancel_event=cancel_event,
            )
        except ProvisioningError as e:
            result.error = e
            if e.kind in SKIPPED_ERROR_KINDS:
                result.outcome = Outcome.SKIPPED
                result.reason = e.message
                if e.kind == ErrorKind.CONFLICT:
                    result.produced_secrets = produced_secrets(spec, self._config)
                logger.warning(
                    "Resource skipped",
                    extra={
                        "identifier": spec.identifier,
                        "action": action.action.value,
                        "error_kind": e.kind.value,
                        "error": e.message,
                    },
                )
            else:
                result.outcome = Outcome.FAILED
                result.reason = e.message
                logger.error(
                    "Resource failed",
                    extra={
                        "identifier": spec.identifier,
                        "action": action.action.value,
                        "error_kind": e.kind.value,
                        "error": e.message,
                        "status_code": e.status_code,
                        "diagnostic": e.diagnostic,
                    },
                )
        else:
            result.produced_secrets = produced_secrets(spec, self._config)
            logger.info(
                "Resource reconciled",
                extra={
                    "identifier": spec.identifier,
                    "kind": spec.kind.value,
                    "action": action.action.value,
                    "attempts": attempts.attempts,
                },
            )

        result.attempts = attempts.attempts
        result.duration_seconds = time.monotonic() - start_time
        return result

    def _dispatch(self, spec: ResourceSpec, action: ReconciliationAction) -> dict[str, Any]:
        """Blocking provider call for one attempt. Runs in a worker thread."""
        if spec.kind == ResourceKind.IAM_BINDING:
            return self._client.bind_policy(spec)
        if action.action == ActionType.UPDATE:
            return self._client.update_resource(spec, action.changed_attributes)
        return self._client.create_resource(spec)
