"""Post-apply checks that the provisioned setup is usable.

Two checks run against the live project once a session has Completed:

- The caller can mint a short-lived token for the CI service account
  through impersonation. Callers without ``iam.serviceAccounts.getAccessToken``
  on the account fail this check even when federation works, so it is only
  reported.
- The Terraform state bucket is readable with the caller's credentials.

Failures are warnings. They never change the session status or exit code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import google.auth.transport.requests
from google.api_core import exceptions as api_exceptions
from google.auth import exceptions as auth_exceptions
from google.auth import impersonated_credentials
from google.auth.credentials import Credentials
from google.cloud import storage

from .config import Config
from .executor import SECRET_SERVICE_ACCOUNT, SECRET_STATE_BUCKET
from .security import CLOUD_PLATFORM_SCOPE
from .session import SessionResult

logger = logging.getLogger(__name__)

# Shortest lifetime worth asking for; the token is discarded immediately
VERIFY_TOKEN_LIFETIME_SECONDS = 300


@dataclass
class VerificationReport:
    """Outcome of the post-apply checks."""

    passed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings


def check_impersonation(credentials: Credentials, service_account: str) -> str | None:
    """Mint a short-lived token as ``service_account``.

    Returns:
        None on success, otherwise the warning text.
    """
    target = impersonated_credentials.Credentials(
        source_credentials=credentials,
        target_principal=service_account,
        target_scopes=[CLOUD_PLATFORM_SCOPE],
        lifetime=VERIFY_TOKEN_LIFETIME_SECONDS,
    )
    try:
        target.refresh(google.auth.transport.requests.Request())
    except auth_exceptions.GoogleAuthError as e:
        return (
            f"Service account impersonation failed for {service_account}: {e}. "
            "This is expected if you lack the Service Account Token Creator role."
        )
    return None


def check_bucket_access(storage_client: storage.Client, bucket: str, timeout: float) -> str | None:
    """Read the state bucket's metadata.

    Returns:
        None on success, otherwise the warning text.
    """
    try:
        storage_client.get_bucket(bucket, timeout=timeout)
    except (api_exceptions.GoogleAPICallError, auth_exceptions.GoogleAuthError) as e:
        return f"State bucket gs://{bucket} is not accessible: {e}"
    return None


def verify_setup(
    config: Config,
    result: SessionResult,
    credentials: Credentials,
    *,
    storage_client: storage.Client | None = None,
) -> VerificationReport:
    """Run every check whose subject the session produced.

    Args:
        config: Runtime configuration (project and request timeout).
        result: A Completed session result; its secrets name the subjects.
        credentials: The caller's credentials.
        storage_client: Injected in tests; built from ``credentials`` otherwise.
    """
    report = VerificationReport()
    secrets = result.secrets

    service_account = secrets.get(SECRET_SERVICE_ACCOUNT)
    if service_account:
        warning = check_impersonation(credentials, service_account)
        _record(report, "impersonation", service_account, warning)
    else:
        logger.debug("No service account produced; skipping impersonation check")

    bucket = secrets.get(SECRET_STATE_BUCKET)
    if bucket:
        client = storage_client or storage.Client(project=config.project_id, credentials=credentials)
        warning = check_bucket_access(client, bucket, config.request_timeout_seconds)
        _record(report, "bucket_access", bucket, warning)
    else:
        logger.debug("No state bucket produced; skipping bucket access check")

    return report


def _record(report: VerificationReport, check: str, subject: str, warning: str | None) -> None:
    if warning is None:
        report.passed.append(check)
        logger.info("Verification passed", extra={"check": check, "subject": subject})
    else:
        report.warnings.append(warning)
        logger.warning("Verification failed", extra={"check": check, "subject": subject, "error": warning})
