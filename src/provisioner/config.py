"""Configuration management with validation.

The configuration is an immutable object threaded through every component
call. Nothing in the engine reads process-wide state after start-up.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigurationError

# Configuration constants with documented bounds
DEFAULT_PROBE_CONCURRENCY = 8
DEFAULT_EXECUTE_CONCURRENCY = 4
MAX_CONCURRENCY = 32

DEFAULT_MAX_ATTEMPTS = 5
MAX_ATTEMPTS_LIMIT = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 30.0

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60
DEFAULT_OPERATION_TIMEOUT_SECONDS = 300

# Security constraints - enforced limits to prevent abuse
MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max declared configuration
MAX_RESOURCES_PER_SESSION = 200

# Workload identity pools and providers only exist in the global location
WORKLOAD_IDENTITY_LOCATION = "global"

# Input validation patterns
VALID_PROJECT_ID_PATTERN = r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$"
VALID_PROJECT_NUMBER_PATTERN = r"^[0-9]{1,20}$"
VALID_REPOSITORY_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9-]{0,38}/[A-Za-z0-9._-]{1,100}$"


@dataclass(frozen=True)
class SecurityConfig:
    """Security-related configuration with safe defaults.

    KEYLESS ARCHITECTURE:
    The provisioner exists to remove long-lived service account keys from CI
    pipelines, so it refuses to run with one itself. Application Default
    Credentials must resolve to a user login, an attached service account or
    an external_account (federated) configuration. See security.py.
    """

    # Maximum resources in one declared configuration
    max_resources_per_session: int = MAX_RESOURCES_PER_SESSION

    # Enable structured audit logging (JSON format to stdout)
    enable_audit_logging: bool = True


@dataclass(frozen=True)
class Config:
    """Provisioner configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-session.
    """

    # Required fields
    project_id: str

    # GitHub repository (owner/name) trusted by the default resource set
    repository: str | None = None

    # Declared configuration file; None selects the default resource set
    config_file: Path | None = None

    # Resolved lazily by the GCP client when not supplied
    project_number: str | None = None

    # Concurrency
    probe_concurrency: int = DEFAULT_PROBE_CONCURRENCY
    execute_concurrency: int = DEFAULT_EXECUTE_CONCURRENCY

    # Retry policy
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS

    # Timing
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # Behavior
    dry_run: bool = False
    summary_path: Path | None = None

    security: SecurityConfig = field(default_factory=SecurityConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        SECURITY: All inputs are validated at the boundary (fail-fast).
        """
        errors: list[str] = []

        if not self.project_id:
            errors.append("GCP_PROJECT_ID is required")
        elif not re.match(VALID_PROJECT_ID_PATTERN, self.project_id):
            errors.append(f"GCP_PROJECT_ID must match pattern {VALID_PROJECT_ID_PATTERN}: {self.project_id}")

        if self.repository and not re.match(VALID_REPOSITORY_PATTERN, self.repository):
            errors.append(f"GITHUB_REPOSITORY must be in owner/name format: {self.repository}")

        if self.project_number and not re.match(VALID_PROJECT_NUMBER_PATTERN, self.project_number):
            errors.append(f"GCP_PROJECT_NUMBER must be numeric: {self.project_number}")

        if self.config_file is not None and not self.config_file.is_file():
            errors.append(f"Declared configuration file does not exist: {self.config_file}")

        if self.config_file is None and not self.repository:
            errors.append("GITHUB_REPOSITORY is required when no declared configuration file is given")

        for name, value in (
            ("PROBE_CONCURRENCY", self.probe_concurrency),
            ("EXECUTE_CONCURRENCY", self.execute_concurrency),
        ):
            if not (1 <= value <= MAX_CONCURRENCY):
                errors.append(f"{name} must be between 1 and {MAX_CONCURRENCY}")

        if not (1 <= self.max_attempts <= MAX_ATTEMPTS_LIMIT):
            errors.append(f"MAX_ATTEMPTS must be between 1 and {MAX_ATTEMPTS_LIMIT}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE must not be negative")
        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX must be at least RETRY_BACKOFF_BASE")

        if self.request_timeout_seconds < 1:
            errors.append("REQUEST_TIMEOUT must be at least 1 second")
        if self.operation_timeout_seconds < 1:
            errors.append("OPERATION_TIMEOUT must be at least 1 second")

        if self.security.max_resources_per_session < 1:
            errors.append("max_resources_per_session must be at least 1")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def project_reference(self) -> str:
        """Project number if known, otherwise the project ID.

        IAM accepts either in resource names; principalSet members and the
        provider name handed to CI prefer the number.
        """
        return self.project_number or self.project_id

    def expand(self, value: str) -> str:
        """Substitute ``{project_id}`` and ``{project_number}`` placeholders.

        Raises:
            ConfigurationError: If ``{project_number}`` is used but unknown.
        """
        if "{project_number}" in value:
            if not self.project_number:
                raise ConfigurationError(
                    f"'{value}' needs the project number; set GCP_PROJECT_NUMBER "
                    "or let the client resolve it"
                )
            value = value.replace("{project_number}", self.project_number)
        return value.replace("{project_id}", self.project_id)

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables.

        Keyword arguments that are not None override the environment (used
        for command-line flags).

        Environment Variables:
            GCP_PROJECT_ID: Target project (required)
            GITHUB_REPOSITORY: owner/name of the repository to trust
            FEDERATION_CONFIG: Path to a declared configuration YAML
            GCP_PROJECT_NUMBER: Project number (resolved via API if unset)
            PROBE_CONCURRENCY: Concurrent read-only probes (default: 8)
            EXECUTE_CONCURRENCY: Concurrent mutating calls (default: 4)
            MAX_ATTEMPTS: Attempts per call before ExhaustedRetries (default: 5)
            RETRY_BACKOFF_BASE: Backoff base in seconds (default: 1.0)
            RETRY_BACKOFF_MAX: Backoff cap in seconds (default: 30.0)
            REQUEST_TIMEOUT: Per-request timeout in seconds (default: 60)
            OPERATION_TIMEOUT: Long-running operation timeout (default: 300)
            DRY_RUN: If "true", plan only (default: false)
            SUMMARY_PATH: Write the JSON session summary to this path

        Security Variables:
            MAX_RESOURCES_PER_SESSION: Max declared resources (default: 200)
            ENABLE_AUDIT_LOGGING: Enable JSON audit logs (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        values: dict[str, Any] = dict(
            project_id=os.environ.get("GCP_PROJECT_ID", ""),
            repository=os.environ.get("GITHUB_REPOSITORY") or None,
            config_file=get_path("FEDERATION_CONFIG"),
            project_number=os.environ.get("GCP_PROJECT_NUMBER") or None,
            probe_concurrency=get_int("PROBE_CONCURRENCY", DEFAULT_PROBE_CONCURRENCY),
            execute_concurrency=get_int("EXECUTE_CONCURRENCY", DEFAULT_EXECUTE_CONCURRENCY),
            max_attempts=get_int("MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "RETRY_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            dry_run=get_bool("DRY_RUN", False),
            summary_path=get_path("SUMMARY_PATH"),
            security=SecurityConfig(
                max_resources_per_session=get_int(
                    "MAX_RESOURCES_PER_SESSION", MAX_RESOURCES_PER_SESSION
                ),
                enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
            ),
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
