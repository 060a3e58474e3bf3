"""Retry with exponential backoff for transient provider errors.

Only TransientError is retried. Permission, invalid-request, quota and
conflict errors fail on the first attempt. Backoff waits use asyncio.sleep,
so one resource's retry loop never holds up the others.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from .config import Config
from .errors import (
    CancelledError,
    ExhaustedRetriesError,
    ProvisioningError,
    TransientError,
    classify,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Jitter as a fraction of the computed backoff
BACKOFF_JITTER_RATIO = 0.2


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff."""

    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    @classmethod
    def from_config(cls, config: Config) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            backoff_base_seconds=config.retry_backoff_base_seconds,
            backoff_max_seconds=config.retry_backoff_max_seconds,
        )

    def backoff_seconds(self, attempt: int) -> float:
        """Wait time after a failed ``attempt`` (1-based), jitter included."""
        backoff = min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)
        jitter = random.uniform(0, backoff * BACKOFF_JITTER_RATIO)
        return backoff + jitter


@dataclass
class RetryOutcome:
    """Attempt count alongside the call result, for result records."""

    attempts: int = 0


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    identifier: str,
    action: str,
    mutating: bool,
    outcome: RetryOutcome | None = None,
    cancel_event: asyncio.Event | None = None,
) -> T:
    """Run ``call`` until it succeeds, fails terminally, or retries run out.

    Args:
        call: Zero-argument coroutine factory performing one attempt.
        policy: Retry bounds.
        identifier: Resource identifier for diagnostics.
        action: Action name for diagnostics.
        mutating: Passed to ``classify``.
        outcome: Receives the number of attempts made.
        cancel_event: When set, no further attempt is started.

    Raises:
        ProvisioningError: Classified terminal error, ExhaustedRetriesError
            after ``policy.max_attempts`` transient failures, or
            CancelledError if cancelled between attempts.
    """
    outcome = outcome or RetryOutcome()
    last_error: ProvisioningError | None = None

    for attempt in range(1, policy.max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set() and (mutating or attempt > 1):
            raise CancelledError(
                "Session cancelled before the call was dispatched",
                identifier=identifier,
                action=action,
                diagnostic=last_error.diagnostic if last_error else None,
            )

        outcome.attempts = attempt
        try:
            return await call()
        except Exception as e:  # classified below; nothing is swallowed
            error = classify(e, mutating=mutating, identifier=identifier, action=action)
            if not isinstance(error, TransientError):
                raise error from e
            last_error = error

        if attempt < policy.max_attempts:
            wait_time = policy.backoff_seconds(attempt)
            logger.warning(
                "Transient provider error, retrying",
                extra={
                    "identifier": identifier,
                    "action": action,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "wait_seconds": round(wait_time, 3),
                    "error": last_error.message,
                },
            )
            await asyncio.sleep(wait_time)

    # SAFETY: Loop runs at least once (max_attempts >= 1), so last_error is set
    assert last_error is not None, "Retry loop completed without setting last_error"
    raise ExhaustedRetriesError(
        f"Gave up after {policy.max_attempts} attempts: {last_error.message}",
        identifier=identifier,
        action=action,
        diagnostic=last_error.diagnostic,
        status_code=last_error.status_code,
    ) from last_error
