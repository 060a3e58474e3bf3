"""Process-level wiring for the provisioner.

KEYLESS ARCHITECTURE:
The provisioner authenticates with Application Default Credentials and
refuses to start when a long-lived service account key is configured. The
resources it creates let CI authenticate the same way.

Exit codes:
    0  session Completed
    1  internal error
    2  session CompletedWithFailures
    3  session Aborted (configuration error or cancellation)
    4  keyless credential violation
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from dataclasses import replace
from datetime import UTC, datetime

from google.api_core import exceptions as api_exceptions
from google.auth import exceptions as auth_exceptions

from .client import CloudResourceClient
from .config import Config
from .errors import ConfigurationError
from .gcp import GcpResourceClient
from .models import ResourceSpec
from .outputs import write_summary
from .security import KeylessViolationError, get_default_credentials
from .session import PlannedAction, ProvisioningSession, SessionResult, SessionState
from .spec_loader import load_federation_config, resolve_resources
from .verify import VerificationReport, verify_setup

logger = logging.getLogger(__name__)

EXIT_COMPLETED = 0
EXIT_INTERNAL_ERROR = 1
EXIT_COMPLETED_WITH_FAILURES = 2
EXIT_ABORTED = 3
EXIT_KEYLESS_VIOLATION = 4

STATUS_EXIT_CODES: dict[SessionState, int] = {
    SessionState.COMPLETED: EXIT_COMPLETED,
    SessionState.COMPLETED_WITH_FAILURES: EXIT_COMPLETED_WITH_FAILURES,
    SessionState.ABORTED: EXIT_ABORTED,
}

# LogRecord attributes that are not user-supplied ``extra`` fields
_RESERVED_LOG_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(json_output: bool = True, level: int = logging.INFO) -> None:
    """Configure logging.

    JSON on stdout for pipelines and audit trails, plain text on stderr for
    interactive use.
    """
    if json_output:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the Google SDKs
    logging.getLogger("google").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def load_resources(config: Config) -> list[ResourceSpec]:
    """Declared resources for this run, or the default federation set.

    Raises:
        ConfigurationError: If the declared configuration is invalid.
    """
    federation = load_federation_config(config.config_file) if config.config_file else None
    return resolve_resources(federation, config)


def build_client(config: Config) -> tuple[CloudResourceClient, Config]:
    """Create the GCP client and fill in the project number if unknown.

    Raises:
        KeylessViolationError: If a service account key is configured.
        google.auth.exceptions.DefaultCredentialsError: If no credentials.
    """
    credentials, _ = get_default_credentials()
    client = GcpResourceClient(config, credentials)

    if config.project_number:
        return client, config

    try:
        number = client.resolve_project_number()
    except (api_exceptions.GoogleAPICallError, auth_exceptions.GoogleAuthError) as e:
        # Resources using {project_number} will abort the session at probe time
        logger.warning(
            "Could not resolve project number",
            extra={"project_id": config.project_id, "error": str(e)},
        )
        return client, config

    if not number:
        return client, config
    config = replace(config, project_number=number)
    return client.with_config(config), config


def _prepare(config: Config) -> tuple[list[ResourceSpec], CloudResourceClient, Config]:
    specs = load_resources(config)
    client, config = build_client(config)
    return specs, client, config


def _install_signal_handlers(session: ProvisioningSession) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def signal_handler(sig: signal.Signals) -> None:
        logger.warning("Received signal", extra={"signal": sig.name})
        session.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler, sig)
        except (NotImplementedError, RuntimeError):
            # Not on the main thread, or unsupported platform
            continue
        installed.append(sig)
    return installed


async def apply(config: Config) -> tuple[int, SessionResult | None]:
    """Provision the declared resources.

    Returns:
        (exit code, session result or None if the session never started).
    """
    try:
        specs, client, config = _prepare(config)
    except KeylessViolationError as e:
        logger.critical(
            "Security violation: service account key detected",
            extra={"error": str(e)},
        )
        return EXIT_KEYLESS_VIOLATION, None
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_ABORTED, None
    except auth_exceptions.DefaultCredentialsError as e:
        logger.error("No application default credentials", extra={"error": str(e)})
        return EXIT_ABORTED, None

    session = ProvisioningSession(config, specs, client)
    installed = _install_signal_handlers(session)
    try:
        result = await session.run()
    except Exception as e:
        logger.exception("Provisioning session failed unexpectedly", extra={"error": str(e)})
        return EXIT_INTERNAL_ERROR, None
    finally:
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    if config.summary_path is not None:
        write_summary(config.summary_path, result)

    return STATUS_EXIT_CODES[result.status], result


async def plan(config: Config) -> tuple[int, list[PlannedAction] | None]:
    """Probe and reconcile without mutating anything.

    Returns:
        (exit code, planned actions or None on error).
    """
    try:
        specs, client, config = _prepare(config)
    except KeylessViolationError as e:
        logger.critical(
            "Security violation: service account key detected",
            extra={"error": str(e)},
        )
        return EXIT_KEYLESS_VIOLATION, None
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_ABORTED, None
    except auth_exceptions.DefaultCredentialsError as e:
        logger.error("No application default credentials", extra={"error": str(e)})
        return EXIT_ABORTED, None

    session = ProvisioningSession(config, specs, client)
    try:
        planned = await session.plan()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_ABORTED, None
    except Exception as e:
        logger.exception("Planning failed unexpectedly", extra={"error": str(e)})
        return EXIT_INTERNAL_ERROR, None

    if any(p.error is not None for p in planned):
        return EXIT_COMPLETED_WITH_FAILURES, planned
    return EXIT_COMPLETED, planned


async def verify(config: Config, result: SessionResult) -> VerificationReport:
    """Check that the applied setup is usable. Findings are warnings only."""
    report = VerificationReport()
    try:
        credentials, _ = get_default_credentials()
    except (KeylessViolationError, auth_exceptions.DefaultCredentialsError) as e:
        report.warnings.append(f"Verification skipped, no usable credentials: {e}")
        logger.warning("Verification skipped", extra={"error": str(e)})
        return report

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, verify_setup, config, result, credentials)
