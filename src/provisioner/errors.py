"""Error taxonomy for provisioning.

Every failure that crosses a component boundary is normalised into one of
the ErrorKind values below. Provider SDK exceptions never leave the probe or
the executor; they are classified here and carried on a ProvisioningError
together with the raw provider diagnostic.

Propagation rules:
- Resource-level errors are attached to that resource's result and the
  session keeps processing independent branches.
- ConfigurationError is the only session-fatal kind. It is raised before any
  mutating call is made.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any

import requests
from google.api_core import exceptions as api_exceptions
from google.auth import exceptions as auth_exceptions


class ErrorKind(str, Enum):
    """Classified error kinds attached to provisioning results."""

    TRANSIENT = "TransientError"
    PERMISSION = "PermissionError"
    CONFIGURATION = "ConfigurationError"
    CONFLICT = "ConflictError"
    EXHAUSTED_RETRIES = "ExhaustedRetries"
    DEPENDENCY_FAILED = "DependencyFailed"
    INVALID_REQUEST = "InvalidRequest"
    QUOTA_EXCEEDED = "QuotaExceeded"
    CANCELLED = "Cancelled"


class ProvisioningError(Exception):
    """Base class for all classified provisioning errors."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        identifier: str | None = None,
        action: str | None = None,
        diagnostic: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.identifier = identifier
        self.action = action
        self.diagnostic = diagnostic
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        """Serialise for the machine-readable session summary."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "identifier": self.identifier,
            "action": self.action,
            "statusCode": self.status_code,
            "diagnostic": self.diagnostic,
        }


class TransientError(ProvisioningError):
    """Network, timeout, rate limiting or eventual-consistency failure."""

    kind = ErrorKind.TRANSIENT


class PermissionDeniedError(ProvisioningError):
    """The calling identity lacks the rights for the request."""

    kind = ErrorKind.PERMISSION


class ConfigurationError(ProvisioningError):
    """Malformed declared configuration or dependency graph."""

    kind = ErrorKind.CONFIGURATION


class CyclicDependencyError(ConfigurationError):
    """Raised when the dependsOn graph contains a cycle."""


class ConflictError(ProvisioningError):
    """Resource exists in a form that cannot be reconciled in place."""

    kind = ErrorKind.CONFLICT


class ExhaustedRetriesError(ProvisioningError):
    """A transient error persisted past the retry cap."""

    kind = ErrorKind.EXHAUSTED_RETRIES


class DependencyFailedError(ProvisioningError):
    """Synthetic error for resources skipped because an ancestor failed."""

    kind = ErrorKind.DEPENDENCY_FAILED


class InvalidRequestError(ProvisioningError):
    """The provider rejected an attribute value."""

    kind = ErrorKind.INVALID_REQUEST


class QuotaExceededError(ProvisioningError):
    """A project quota blocks the request. Not retried."""

    kind = ErrorKind.QUOTA_EXCEEDED


class CancelledError(ProvisioningError):
    """Resource was not dispatched because the session was cancelled."""

    kind = ErrorKind.CANCELLED


# Phrase in INVALID_ARGUMENT errors naming a member that was just created
NOT_YET_VISIBLE_MARKER = "does not exist"

# google.api_core exception types that always indicate a transient condition
_TRANSIENT_API_ERRORS: tuple[type[Exception], ...] = (
    api_exceptions.ServiceUnavailable,
    api_exceptions.InternalServerError,
    api_exceptions.BadGateway,
    api_exceptions.GatewayTimeout,
    api_exceptions.DeadlineExceeded,
    api_exceptions.Aborted,
)

_TRANSPORT_ERRORS: tuple[type[Exception], ...] = (
    requests.ConnectionError,
    requests.Timeout,
    auth_exceptions.TransportError,
    asyncio.TimeoutError,
    ConnectionError,
)


def _is_quota_message(message: str) -> bool:
    lowered = message.lower()
    return "quota" in lowered and "rate" not in lowered


def classify(
    exc: BaseException,
    *,
    mutating: bool,
    identifier: str | None = None,
    action: str | None = None,
) -> ProvisioningError:
    """Normalise an arbitrary exception into the ErrorKind taxonomy.

    Args:
        exc: Exception raised by the provider SDK or transport.
        mutating: True when raised by a create/update/bind call. NotFound on
            a mutating call is a read-after-write race and is transient, as is
            BadRequest naming a member that "does not exist".
        identifier: Resource identifier for diagnostics.
        action: Attempted action name for diagnostics.

    Returns:
        A ProvisioningError subclass instance. Already-classified errors are
        returned unchanged (with identifier/action filled in if missing).
    """
    if isinstance(exc, ProvisioningError):
        if exc.identifier is None:
            exc.identifier = identifier
        if exc.action is None:
            exc.action = action
        return exc

    diagnostic = str(exc)
    context: dict[str, Any] = {"identifier": identifier, "action": action, "diagnostic": diagnostic}

    if isinstance(exc, api_exceptions.GoogleAPICallError):
        status_code = exc.code if isinstance(exc.code, int) else None
        context["status_code"] = status_code
        message = exc.message or diagnostic

        if isinstance(exc, (api_exceptions.TooManyRequests, api_exceptions.ResourceExhausted)):
            if _is_quota_message(message):
                return QuotaExceededError(f"Quota exceeded: {message}", **context)
            return TransientError(f"Rate limited: {message}", **context)
        if isinstance(exc, _TRANSIENT_API_ERRORS):
            return TransientError(f"Provider temporarily unavailable: {message}", **context)
        if isinstance(exc, (api_exceptions.Forbidden, api_exceptions.Unauthorized)):
            if _is_quota_message(message):
                return QuotaExceededError(f"Quota exceeded: {message}", **context)
            return PermissionDeniedError(f"Permission denied: {message}", **context)
        if isinstance(exc, api_exceptions.NotFound):
            if mutating:
                return TransientError(f"Dependent resource not yet visible: {message}", **context)
            return InvalidRequestError(f"Resource not found: {message}", **context)
        if isinstance(exc, (api_exceptions.AlreadyExists, api_exceptions.Conflict)):
            return ConflictError(f"Resource conflict: {message}", **context)
        if (
            mutating
            and isinstance(exc, api_exceptions.BadRequest)
            and NOT_YET_VISIBLE_MARKER in message.lower()
        ):
            # setIamPolicy rejects a member created moments earlier
            return TransientError(f"Referenced resource not yet visible: {message}", **context)
        if isinstance(exc, api_exceptions.ClientError):
            return InvalidRequestError(f"Request rejected: {message}", **context)
        if isinstance(exc, api_exceptions.ServerError):
            return TransientError(f"Provider error: {message}", **context)

    if isinstance(exc, _TRANSPORT_ERRORS):
        return TransientError(f"Transport error: {type(exc).__name__}: {diagnostic}", **context)

    if isinstance(exc, auth_exceptions.RefreshError):
        return PermissionDeniedError(f"Credential refresh failed: {diagnostic}", **context)

    if isinstance(exc, auth_exceptions.DefaultCredentialsError):
        return PermissionDeniedError(f"No usable credentials: {diagnostic}", **context)

    return InvalidRequestError(f"Unexpected error: {type(exc).__name__}: {diagnostic}", **context)
