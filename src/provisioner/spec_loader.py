"""Declared configuration loading with validation.

SECURITY: File reads enforce a size limit to prevent DoS via large files.
Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_CONFIG_FILE_SIZE_BYTES, Config
from .defaults import github_federation_resources
from .errors import ConfigurationError
from .models import FederationConfig, ResourceSpec

logger = logging.getLogger(__name__)

API_VERSION = "provisioner.wif/v1"
DOCUMENT_KIND = "FederationConfig"


class SpecLoadError(ConfigurationError):
    """Raised when the declared configuration cannot be loaded or validated."""


def load_federation_config(path: Path) -> FederationConfig:
    """Load and validate a declared configuration from YAML.

    Both a flat document and a Kubernetes-style wrapper
    (``apiVersion``/``kind``/``spec``) are accepted.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Declared configuration not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {path}: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Declared configuration exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Declared configuration must be a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        if raw_data.get("kind", DOCUMENT_KIND) != DOCUMENT_KIND:
            raise SpecLoadError(f"Expected kind '{DOCUMENT_KIND}' in {path}, got '{raw_data['kind']}'")
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
    else:
        spec_data = raw_data

    try:
        federation = FederationConfig.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"]) or "(root)"
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info(
        "Loaded declared configuration",
        extra={
            "path": str(path),
            "resources": len(federation.resources) if federation.resources is not None else None,
        },
    )
    return federation


def resolve_resources(federation: FederationConfig | None, config: Config) -> list[ResourceSpec]:
    """Resources to provision: the declared list, or the default set.

    Raises:
        SpecLoadError: If the document names a different project, or no
            repository is available for the default set.
    """
    if federation is not None:
        if federation.project_id and federation.project_id != config.project_id:
            raise SpecLoadError(
                f"Declared configuration targets project '{federation.project_id}' "
                f"but GCP_PROJECT_ID is '{config.project_id}'"
            )
        if federation.resources is not None:
            return list(federation.resources)

    repository = (federation.repository if federation is not None else None) or config.repository
    if not repository:
        raise SpecLoadError("A repository is required to build the default resource set")

    logger.info(
        "Using default GitHub Actions federation resources",
        extra={"repository": repository},
    )
    return github_federation_resources(config.project_id, repository)
