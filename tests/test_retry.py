"""Tests for retry with exponential backoff."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from google.api_core import exceptions as api_exceptions

from provisioner.config import Config
from provisioner.errors import (
    CancelledError,
    ErrorKind,
    ExhaustedRetriesError,
    PermissionDeniedError,
)
from provisioner.retry import RetryOutcome, RetryPolicy, call_with_retry

NO_WAIT = RetryPolicy(max_attempts=3, backoff_base_seconds=0.0, backoff_max_seconds=0.0)


def scripted(*results: Any) -> tuple[list[int], Any]:
    """Coroutine factory that raises or returns ``results`` in order."""
    calls: list[int] = []
    remaining = list(results)

    async def call() -> Any:
        calls.append(1)
        result = remaining.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    return calls, call


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_from_config(self, config: Config) -> None:
        policy = RetryPolicy.from_config(config)
        assert policy.max_attempts == config.max_attempts
        assert policy.backoff_base_seconds == 0.0

    def test_backoff_grows_exponentially(self) -> None:
        policy = RetryPolicy(max_attempts=5, backoff_base_seconds=1.0, backoff_max_seconds=100.0)
        assert 1.0 <= policy.backoff_seconds(1) <= 1.2
        assert 2.0 <= policy.backoff_seconds(2) <= 2.4
        assert 8.0 <= policy.backoff_seconds(4) <= 9.6

    def test_backoff_is_capped(self) -> None:
        policy = RetryPolicy(max_attempts=10, backoff_base_seconds=1.0, backoff_max_seconds=5.0)
        assert 5.0 <= policy.backoff_seconds(9) <= 6.0


class TestCallWithRetry:
    """Tests for call_with_retry()."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self) -> None:
        calls, call = scripted("ok")
        outcome = RetryOutcome()
        result = await call_with_retry(
            call, NO_WAIT, identifier="r", action="Create", mutating=True, outcome=outcome
        )
        assert result == "ok"
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_transient_then_success(self) -> None:
        calls, call = scripted(api_exceptions.ServiceUnavailable("busy"), "ok")
        outcome = RetryOutcome()
        result = await call_with_retry(
            call, NO_WAIT, identifier="r", action="Create", mutating=True, outcome=outcome
        )
        assert result == "ok"
        assert len(calls) == 2
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_exhausted_after_max_attempts(self) -> None:
        """Exactly max_attempts calls are made, then ExhaustedRetries is raised."""
        calls, call = scripted(*[api_exceptions.ServiceUnavailable("busy")] * 3)
        with pytest.raises(ExhaustedRetriesError) as exc_info:
            await call_with_retry(call, NO_WAIT, identifier="r", action="Create", mutating=True)

        assert len(calls) == 3
        assert exc_info.value.kind == ErrorKind.EXHAUSTED_RETRIES
        assert exc_info.value.identifier == "r"
        assert "busy" in (exc_info.value.diagnostic or "")

    @pytest.mark.asyncio
    async def test_non_transient_not_retried(self) -> None:
        calls, call = scripted(api_exceptions.Forbidden("denied"), "unreachable")
        with pytest.raises(PermissionDeniedError):
            await call_with_retry(call, NO_WAIT, identifier="r", action="Create", mutating=True)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_mutating_call(self) -> None:
        calls, call = scripted("ok")
        event = asyncio.Event()
        event.set()
        with pytest.raises(CancelledError):
            await call_with_retry(
                call, NO_WAIT, identifier="r", action="Create", mutating=True, cancel_event=event
            )
        assert calls == []

    @pytest.mark.asyncio
    async def test_cancel_does_not_block_first_read(self) -> None:
        calls, call = scripted({"name": "x"})
        event = asyncio.Event()
        event.set()
        result = await call_with_retry(
            call, NO_WAIT, identifier="r", action="probe", mutating=False, cancel_event=event
        )
        assert result == {"name": "x"}

    @pytest.mark.asyncio
    async def test_backoff_uses_asyncio_sleep(self, monkeypatch: pytest.MonkeyPatch) -> None:
        waits: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            waits.append(seconds)

        monkeypatch.setattr("provisioner.retry.asyncio.sleep", fake_sleep)
        policy = RetryPolicy(max_attempts=3, backoff_base_seconds=1.0, backoff_max_seconds=30.0)
        calls, call = scripted(
            api_exceptions.ServiceUnavailable("a"), api_exceptions.ServiceUnavailable("b"), "ok"
        )
        await call_with_retry(call, policy, identifier="r", action="Create", mutating=True)

        assert len(waits) == 2
        assert 1.0 <= waits[0] <= 1.2
        assert 2.0 <= waits[1] <= 2.4
