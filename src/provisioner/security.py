"""Security enforcement for keyless credentials.

The provisioner sets up workload identity federation so that CI pipelines
never need a long-lived service account key. It holds itself to the same
rule:

SECURITY INVARIANTS:
1. GOOGLE_APPLICATION_CREDENTIALS must not point at a service_account key
2. No key material may be present in well-known CI variables
3. Credentials come from Application Default Credentials: a user login, an
   attached service account (metadata server) or an external_account
   (federated) configuration

Why keyless?
- Zero keys to rotate, leak, or manage
- Short-lived tokens minted per run
- Access tied to the workload's identity, auditable in Cloud Audit Logs
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import google.auth
from google.auth.credentials import Credentials

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

# Environment variables that commonly carry inline key material
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "GOOGLE_CREDENTIALS",
    "GOOGLE_CLOUD_KEYFILE_JSON",
    "GCP_SA_KEY",
)

# Credential file types accepted from GOOGLE_APPLICATION_CREDENTIALS
ALLOWED_CREDENTIAL_FILE_TYPES: frozenset[str] = frozenset(
    {"external_account", "authorized_user", "impersonated_service_account"}
)

# Refuse to parse anything bigger than this as a credential file
MAX_CREDENTIAL_FILE_SIZE_BYTES = 64 * 1024

KEYLESS_VIOLATION_MESSAGE = """
SECURITY VIOLATION DETECTED

This tool provisions keyless (workload identity federation) access and
refuses to run with a long-lived service account key.

Detected: {source}

RESOLUTION:
  1. Remove the key from the environment and delete it in the console
  2. Authenticate with `gcloud auth application-default login`, an attached
     service account, or an external_account credential configuration
  3. Grant that identity the roles needed to manage IAM and storage

See: https://cloud.google.com/iam/docs/workload-identity-federation
"""


class KeylessViolationError(Exception):
    """Raised when a long-lived service account key is detected.

    This is a fatal security error. The provisioner MUST NOT proceed.
    """


def _credential_file_type(path: Path) -> str | None:
    try:
        if path.stat().st_size > MAX_CREDENTIAL_FILE_SIZE_BYTES:
            return None
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        # Unreadable files are left for google.auth to report
        return None
    return data.get("type") if isinstance(data, dict) else None


def enforce_keyless_credentials() -> None:
    """Enforce that no long-lived service account key is configured.

    Raises:
        KeylessViolationError: If key material is detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            _raise_violation(env_var)

    credentials_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    if credentials_path:
        file_type = _credential_file_type(Path(credentials_path))
        if file_type == "service_account":
            _raise_violation(f"GOOGLE_APPLICATION_CREDENTIALS ({file_type} key file)")
        if file_type is not None and file_type not in ALLOWED_CREDENTIAL_FILE_TYPES:
            logger.warning(
                "Unrecognised credential file type",
                extra={"credential_type": file_type},
            )

    logger.info(
        "Keyless credentials verified",
        extra={"security_event": "keyless_verified"},
    )


def _raise_violation(source: str) -> None:
    logger.critical(
        "Keyless credential violation",
        extra={
            "security_event": "credential_key_detected",
            "source": source,
            "action": "startup_blocked",
        },
    )
    raise KeylessViolationError(KEYLESS_VIOLATION_MESSAGE.format(source=source))


def get_default_credentials() -> tuple[Credentials, str | None]:
    """Get Application Default Credentials after verifying keyless setup.

    This is the ONLY way to obtain credentials in this codebase.

    Returns:
        (credentials, detected project ID or None).

    Raises:
        KeylessViolationError: If a service account key is configured.
        google.auth.exceptions.DefaultCredentialsError: If none are found.
    """
    enforce_keyless_credentials()
    credentials, project_id = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
    logger.info(
        "Using application default credentials",
        extra={"credential_class": type(credentials).__name__, "adc_project": project_id},
    )
    return credentials, project_id
