"""Hand-off of session results to the IaC consumer."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from .executor import (
    SECRET_PROJECT_ID,
    SECRET_SERVICE_ACCOUNT,
    SECRET_STATE_BUCKET,
    SECRET_WORKLOAD_IDENTITY_PROVIDER,
)
from .session import SessionResult

logger = logging.getLogger(__name__)

BACKEND_BUCKET_PLACEHOLDER = "REPLACE_WITH_YOUR_STATE_BUCKET"
DEFAULT_PROVIDER_FILE = Path("terraform/provider.tf")

# Secrets printed first, in this order; anything else follows alphabetically
SECRET_DISPLAY_ORDER: tuple[str, ...] = (
    SECRET_PROJECT_ID,
    SECRET_SERVICE_ACCOUNT,
    SECRET_WORKLOAD_IDENTITY_PROVIDER,
    SECRET_STATE_BUCKET,
)

BANNER = "=" * 43


def write_summary(path: Path, result: SessionResult) -> None:
    """Write the machine-readable session summary as JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(result.to_summary(), indent=2) + "\n", encoding="utf-8")
    logger.info("Wrote session summary", extra={"path": str(path)})


def format_github_secrets(result: SessionResult) -> str:
    """Render produced secrets as repository secret instructions."""
    secrets = result.secrets
    names = [n for n in SECRET_DISPLAY_ORDER if n in secrets]
    names += sorted(n for n in secrets if n not in SECRET_DISPLAY_ORDER)

    lines = [
        BANNER,
        "GitHub Repository Secrets Configuration",
        BANNER,
        "",
        "Add the following secrets to your GitHub repository:",
        "Repository Settings > Secrets and variables > Actions",
        "",
    ]
    for name in names:
        lines += [f"Secret Name: {name}", f"Secret Value: {secrets[name]}", ""]
    lines.append(BANNER)
    return "\n".join(lines)


def update_backend_config(provider_file: Path, bucket: str) -> bool:
    """Point a Terraform backend at the state bucket.

    Replaces the bucket placeholder in ``provider_file``. A missing file or
    one without the placeholder is left alone.

    Returns:
        True if the file was rewritten.
    """
    if not provider_file.is_file():
        logger.warning(
            "Terraform provider file not found, skipping backend update",
            extra={"path": str(provider_file)},
        )
        return False

    content = provider_file.read_text(encoding="utf-8")
    if BACKEND_BUCKET_PLACEHOLDER not in content:
        logger.info(
            "Backend bucket already configured",
            extra={"path": str(provider_file)},
        )
        return False

    provider_file.write_text(content.replace(BACKEND_BUCKET_PLACEHOLDER, bucket), encoding="utf-8")
    logger.info(
        "Updated Terraform backend configuration",
        extra={"path": str(provider_file), "bucket": bucket},
    )
    return True
