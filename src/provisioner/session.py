"""Provisioning session: probe, reconcile, order, execute.

STATE MACHINE:
    Initialized -> Probing -> Reconciling -> Ordering -> Executing
        -> Completed              (no resource failed)
        -> CompletedWithFailures  (one or more resources failed)
    Any pre-execution state -> Aborted (configuration error)
    Executing -> Aborted (cancellation that left resources undispatched)

CONCURRENCY:
- Probes are read-only and independent; they all run concurrently, bounded
  by ``probe_concurrency``.
- Execution walks topological layers. Resources within a layer run
  concurrently, bounded by ``execute_concurrency``; the next layer starts
  once every resource of the current layer has a terminal outcome.
- Results are appended under a lock, one writer at a time.

CANCELLATION:
``cancel()`` stops new mutating calls from being dispatched. Calls already
in flight complete, so no cloud resource is left half-written. Remaining
resources are recorded as Skipped (Cancelled) and the session ends Aborted.
A cancel that arrives after the last resource was dispatched cancels
nothing, so the session ends as if it had not been requested.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .client import CloudResourceClient
from .config import Config
from .errors import (
    CancelledError,
    ConfigurationError,
    DependencyFailedError,
    ErrorKind,
    ProvisioningError,
)
from .executor import SECRET_PROJECT_ID, Executor
from .models import (
    ActionType,
    Outcome,
    ProvisioningResult,
    ReconciliationAction,
    ResourceSpec,
    ResourceState,
)
from .ordering import layers
from .probe import ResourceProbe
from .reconciler import reconcile
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle states of a provisioning session."""

    INITIALIZED = "Initialized"
    PROBING = "Probing"
    RECONCILING = "Reconciling"
    ORDERING = "Ordering"
    EXECUTING = "Executing"
    COMPLETED = "Completed"
    COMPLETED_WITH_FAILURES = "CompletedWithFailures"
    ABORTED = "Aborted"


ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.INITIALIZED: frozenset({SessionState.PROBING, SessionState.ABORTED}),
    SessionState.PROBING: frozenset({SessionState.RECONCILING, SessionState.ABORTED}),
    SessionState.RECONCILING: frozenset({SessionState.ORDERING, SessionState.ABORTED}),
    SessionState.ORDERING: frozenset({SessionState.EXECUTING, SessionState.ABORTED}),
    SessionState.EXECUTING: frozenset(
        {
            SessionState.COMPLETED,
            SessionState.COMPLETED_WITH_FAILURES,
            SessionState.ABORTED,
        }
    ),
    SessionState.COMPLETED: frozenset(),
    SessionState.COMPLETED_WITH_FAILURES: frozenset(),
    SessionState.ABORTED: frozenset(),
}


@dataclass
class PlannedAction:
    """A reconciliation decision, before execution."""

    spec: ResourceSpec
    state: ResourceState | None
    action: ReconciliationAction | None
    error: ProvisioningError | None = None


@dataclass
class SessionResult:
    """Aggregate outcome of one session."""

    status: SessionState
    project_id: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    results: list[ProvisioningResult] = field(default_factory=list)
    error: ProvisioningError | None = None
    mutating_calls: int = 0

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.status == SessionState.COMPLETED

    @property
    def changes_applied(self) -> int:
        """Resources created or updated in this session."""
        return sum(1 for r in self.results if r.outcome == Outcome.SUCCEEDED)

    @property
    def failed(self) -> list[ProvisioningResult]:
        return [r for r in self.results if r.outcome == Outcome.FAILED]

    @property
    def secrets(self) -> dict[str, str]:
        """All produced secrets, keyed by secret name."""
        secrets: dict[str, str] = {SECRET_PROJECT_ID: self.project_id}
        for result in self.results:
            for name, value in result.produced_secrets.items():
                if name in secrets and secrets[name] != value:
                    logger.warning(
                        "Secret produced by more than one resource, keeping the last",
                        extra={"secret": name, "identifier": result.identifier},
                    )
                secrets[name] = value
        return secrets

    def result_for(self, identifier: str) -> ProvisioningResult | None:
        for result in self.results:
            if result.identifier == identifier:
                return result
        return None

    def to_summary(self) -> dict[str, Any]:
        """Machine-readable summary for the IaC consumer."""
        return {
            "status": self.status.value,
            "projectId": self.project_id,
            "startTime": self.start_time.isoformat().replace("+00:00", "Z"),
            "endTime": self.end_time.isoformat().replace("+00:00", "Z") if self.end_time else None,
            "durationSeconds": round(self.duration_seconds, 3),
            "changesApplied": self.changes_applied,
            "mutatingCalls": self.mutating_calls,
            "counts": {
                outcome.value: sum(1 for r in self.results if r.outcome == outcome)
                for outcome in Outcome
            },
            "error": self.error.to_dict() if self.error is not None else None,
            "results": [r.to_dict() for r in self.results],
            "secrets": self.secrets,
        }


class ProvisioningSession:
    """Orchestrates one reconciliation pass over the declared resource set."""

    def __init__(
        self,
        config: Config,
        specs: Sequence[ResourceSpec],
        client: CloudResourceClient,
        *,
        probe: ResourceProbe | None = None,
        executor: Executor | None = None,
    ) -> None:
        self._config = config
        self._specs = list(specs)
        policy = RetryPolicy.from_config(config)
        self._probe = probe or ResourceProbe(client, config, policy)
        self._executor = executor or Executor(client, config, policy)

        self._state = SessionState.INITIALIZED
        self._cancel_event = asyncio.Event()
        self._results_lock = asyncio.Lock()
        self._result = SessionResult(status=self._state, project_id=config.project_id)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Stop dispatching new mutating calls. In-flight calls complete."""
        if not self._cancel_event.is_set():
            logger.warning("Cancellation requested", extra={"state": self._state.value})
        self._cancel_event.set()

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Illegal session transition {self._state.value} -> {new_state.value}"
            )
        logger.info(
            "Session state changed",
            extra={"from_state": self._state.value, "to_state": new_state.value},
        )
        self._state = new_state

    async def _append(self, result: ProvisioningResult) -> None:
        async with self._results_lock:
            self._result.results.append(result)

    def _finish(self, status: SessionState, error: ProvisioningError | None = None) -> SessionResult:
        self._transition(status)
        self._result.status = status
        self._result.error = error
        self._result.end_time = datetime.now(UTC)
        self._result.mutating_calls = self._executor.mutating_calls

        counts = {o.value: sum(1 for r in self._result.results if r.outcome == o) for o in Outcome}
        logger.info(
            "Session finished",
            extra={
                "status": status.value,
                "counts": counts,
                "mutating_calls": self._result.mutating_calls,
                "duration_seconds": round(self._result.duration_seconds, 3),
            },
        )
        return self._result

    def _validate_size(self) -> None:
        limit = self._config.security.max_resources_per_session
        if len(self._specs) > limit:
            raise ConfigurationError(
                f"Declared {len(self._specs)} resources; the limit is {limit}"
            )

    async def _probe_all(self) -> dict[str, ResourceState | ProvisioningError]:
        semaphore = asyncio.Semaphore(self._config.probe_concurrency)

        async def probe_one(spec: ResourceSpec) -> ResourceState | ProvisioningError:
            async with semaphore:
                try:
                    return await self._probe.probe(spec)
                except ProvisioningError as e:
                    return e

        observed = await asyncio.gather(*(probe_one(spec) for spec in self._specs))
        return {spec.identifier: state for spec, state in zip(self._specs, observed, strict=True)}

    async def plan(self) -> list[PlannedAction]:
        """Probe and reconcile every resource without executing anything.

        Returns:
            Planned actions in execution order.

        Raises:
            ConfigurationError: On a malformed resource set or dependency cycle.
        """
        self._validate_size()
        execution_layers = layers(self._specs)
        observed = await self._probe_all()

        planned: list[PlannedAction] = []
        for layer in execution_layers:
            for spec in layer:
                state = observed[spec.identifier]
                if isinstance(state, ProvisioningError):
                    planned.append(PlannedAction(spec=spec, state=None, action=None, error=state))
                else:
                    planned.append(
                        PlannedAction(spec=spec, state=state, action=reconcile(spec, state))
                    )
        return planned

    async def run(self) -> SessionResult:
        """Run the session to a terminal state.

        Always returns a SessionResult; resource-level errors are recorded on
        their results and only configuration errors abort the session.
        """
        if self._state != SessionState.INITIALIZED:
            raise RuntimeError("A provisioning session can only be run once")

        logger.info(
            "Starting provisioning session",
            extra={"project_id": self._config.project_id, "resources": len(self._specs)},
        )

        try:
            self._validate_size()
        except ConfigurationError as e:
            return self._abort(e)

        # PROBING: read-only, unordered
        self._transition(SessionState.PROBING)
        observed = await self._probe_all()

        fatal = next(
            (e for e in observed.values() if isinstance(e, ConfigurationError)),
            None,
        )
        if fatal is not None:
            return self._abort(fatal)

        # RECONCILING: pure
        self._transition(SessionState.RECONCILING)
        actions: dict[str, ReconciliationAction] = {}
        probe_errors: dict[str, ProvisioningError] = {}
        for spec in self._specs:
            state = observed[spec.identifier]
            if isinstance(state, ProvisioningError):
                probe_errors[spec.identifier] = state
                continue
            actions[spec.identifier] = reconcile(spec, state)
            logger.info(
                "Reconciled resource",
                extra={
                    "identifier": spec.identifier,
                    "kind": spec.kind.value,
                    "action": actions[spec.identifier].action.value,
                    "reason": actions[spec.identifier].reason,
                },
            )

        # ORDERING: cycles abort before any mutation
        self._transition(SessionState.ORDERING)
        try:
            execution_layers = layers(self._specs)
        except ConfigurationError as e:
            return self._abort(e)

        # EXECUTING
        self._transition(SessionState.EXECUTING)
        semaphore = asyncio.Semaphore(self._config.execute_concurrency)
        terminal: dict[str, ProvisioningResult] = {}

        for index, layer in enumerate(execution_layers):
            logger.info(
                "Executing layer",
                extra={"layer": index, "resources": [s.identifier for s in layer]},
            )
            layer_results = await asyncio.gather(
                *(
                    self._process(
                        spec,
                        actions.get(spec.identifier),
                        probe_errors.get(spec.identifier),
                        terminal,
                        semaphore,
                    )
                    for spec in layer
                )
            )
            for result in layer_results:
                terminal[result.identifier] = result

        # A cancel that arrives after the last dispatch leaves nothing partial
        if self.cancelled and any(r.error_kind == ErrorKind.CANCELLED for r in self._result.results):
            return self._finish(
                SessionState.ABORTED,
                CancelledError("Session cancelled; results are partial"),
            )

        if any(r.outcome == Outcome.FAILED for r in self._result.results):
            return self._finish(SessionState.COMPLETED_WITH_FAILURES)
        return self._finish(SessionState.COMPLETED)

    def _abort(self, error: ProvisioningError) -> SessionResult:
        logger.error(
            "Session aborted",
            extra={"error_kind": error.kind.value, "error": error.message},
        )
        return self._finish(SessionState.ABORTED, error)

    async def _process(
        self,
        spec: ResourceSpec,
        action: ReconciliationAction | None,
        probe_error: ProvisioningError | None,
        terminal: dict[str, ProvisioningResult],
        semaphore: asyncio.Semaphore,
    ) -> ProvisioningResult:
        """Produce the terminal result for one resource and record it."""
        # Dependencies are in earlier layers, so their results are final here
        blocked_by = [dep for dep in spec.depends_on if terminal[dep].blocks_dependents]

        if blocked_by:
            if all(terminal[dep].error_kind == ErrorKind.CANCELLED for dep in blocked_by):
                reason = "session cancelled"
                error: ProvisioningError = CancelledError(
                    f"Not dispatched; dependencies were cancelled: {blocked_by}",
                    identifier=spec.identifier,
                )
            else:
                reason = "dependency failed"
                error = DependencyFailedError(
                    f"Skipped because dependencies did not complete: {blocked_by}",
                    identifier=spec.identifier,
                )
            result = ProvisioningResult(
                identifier=spec.identifier,
                kind=spec.kind,
                action=action.action if action is not None else ActionType.SKIP,
                outcome=Outcome.SKIPPED,
                reason=reason,
                error=error,
            )
            logger.warning(
                "Skipping resource with failed dependencies",
                extra={"identifier": spec.identifier, "blocked_by": blocked_by},
            )
        elif probe_error is not None:
            result = ProvisioningResult(
                identifier=spec.identifier,
                kind=spec.kind,
                action=ActionType.SKIP,
                outcome=Outcome.FAILED,
                reason=f"probe failed: {probe_error.message}",
                error=probe_error,
            )
        else:
            assert action is not None
            async with semaphore:
                result = await self._executor.execute(spec, action, self._cancel_event)

        await self._append(result)
        return result

