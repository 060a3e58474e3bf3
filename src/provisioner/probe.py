"""Read-only resource probing.

The probe answers one question per resource: does it exist, and if so, what
do its declared attributes currently look like? Provider payloads are
normalised into the same attribute vocabulary used in ResourceSpec, so the
reconciler can compare like with like.

- "Not found" is a normal outcome (exists=False), never an error
- Provider SDK exceptions are classified and never escape this module
- State is captured fresh on every call; nothing is cached
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from .client import CloudResourceClient
from .config import Config
from .errors import ProvisioningError
from .models import ResourceKind, ResourceSpec, ResourceState
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

# Soft-deleted pools and providers linger for 30 days; they are not usable
DELETED_STATE = "DELETED"


def _service_account_attributes(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "displayName": raw.get("displayName", ""),
        "description": raw.get("description", ""),
    }


def _identity_pool_attributes(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "displayName": raw.get("displayName", ""),
        "description": raw.get("description", ""),
        "disabled": bool(raw.get("disabled", False)),
    }


def _oidc_provider_attributes(raw: dict[str, Any]) -> dict[str, Any]:
    oidc = raw.get("oidc") or {}
    # name: projects/{p}/locations/global/workloadIdentityPools/{pool}/providers/{id}
    parts = raw.get("name", "").split("/")
    pool = parts[parts.index("workloadIdentityPools") + 1] if "workloadIdentityPools" in parts else None
    return {
        "pool": pool,
        "issuerUri": oidc.get("issuerUri"),
        "allowedAudiences": list(oidc.get("allowedAudiences") or []),
        "attributeMapping": dict(raw.get("attributeMapping") or {}),
        "attributeCondition": raw.get("attributeCondition", ""),
        "displayName": raw.get("displayName", ""),
        "description": raw.get("description", ""),
        "disabled": bool(raw.get("disabled", False)),
    }


def _noncurrent_retention_days(raw: dict[str, Any]) -> int | None:
    for rule in (raw.get("lifecycle") or {}).get("rule") or []:
        action = (rule.get("action") or {}).get("type")
        condition = rule.get("condition") or {}
        if action == "Delete" and condition.get("isLive") is False and "age" in condition:
            return int(condition["age"])
    return None


def _storage_bucket_attributes(raw: dict[str, Any]) -> dict[str, Any]:
    iam_configuration = raw.get("iamConfiguration") or {}
    return {
        "location": raw.get("location"),
        "versioning": bool((raw.get("versioning") or {}).get("enabled", False)),
        "uniformBucketLevelAccess": bool(
            (iam_configuration.get("uniformBucketLevelAccess") or {}).get("enabled", False)
        ),
        "noncurrentVersionRetentionDays": _noncurrent_retention_days(raw),
    }


ATTRIBUTE_EXTRACTORS: dict[ResourceKind, Callable[[dict[str, Any]], dict[str, Any]]] = {
    ResourceKind.SERVICE_ACCOUNT: _service_account_attributes,
    ResourceKind.IDENTITY_POOL: _identity_pool_attributes,
    ResourceKind.OIDC_PROVIDER: _oidc_provider_attributes,
    ResourceKind.STORAGE_BUCKET: _storage_bucket_attributes,
}


def binding_present(policy: dict[str, Any], role: str, member: str) -> bool:
    """Whether ``member`` holds ``role`` unconditionally in ``policy``."""
    for binding in policy.get("bindings") or []:
        if binding.get("role") == role and not binding.get("condition"):
            if member in (binding.get("members") or []):
                return True
    return False


def to_state(spec: ResourceSpec, raw: dict[str, Any] | None, config: Config) -> ResourceState:
    """Normalise a provider payload into a ResourceState for ``spec``."""
    if raw is None:
        return ResourceState.absent()

    match spec.kind:
        case ResourceKind.PROJECT_SERVICE:
            if raw.get("state") != "ENABLED":
                return ResourceState.absent(raw)
            return ResourceState(exists=True, attributes={}, raw=raw)

        case ResourceKind.IAM_BINDING:
            role = spec.attributes["role"]
            member = config.expand(spec.attributes["member"])
            if not binding_present(raw, role, member):
                return ResourceState.absent(raw)
            # The binding is identified by its attributes, so presence means equality
            return ResourceState(exists=True, attributes=dict(spec.attributes), raw=raw)

        case ResourceKind.IDENTITY_POOL | ResourceKind.OIDC_PROVIDER:
            if raw.get("state") == DELETED_STATE:
                return ResourceState.absent(raw)

    attributes = ATTRIBUTE_EXTRACTORS[spec.kind](raw)
    return ResourceState(exists=True, attributes=attributes, raw=raw)


class ResourceProbe:
    """Queries current state of declared resources."""

    def __init__(
        self,
        client: CloudResourceClient,
        config: Config,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._client = client
        self._config = config
        self._policy = policy or RetryPolicy.from_config(config)

    async def probe(self, spec: ResourceSpec) -> ResourceState:
        """Return the observed state of ``spec``.

        Raises:
            ProvisioningError: Classified error (PermissionDeniedError,
                ExhaustedRetriesError after persistent TransientError, ...).
        """
        loop = asyncio.get_running_loop()

        async def attempt() -> dict[str, Any] | None:
            return await loop.run_in_executor(None, self._client.get_resource, spec)

        try:
            raw = await call_with_retry(
                attempt,
                self._policy,
                identifier=spec.identifier,
                action="probe",
                mutating=False,
            )
        except ProvisioningError as e:
            logger.error(
                "Probe failed",
                extra={
                    "identifier": spec.identifier,
                    "kind": spec.kind.value,
                    "error_kind": e.kind.value,
                    "error": e.message,
                },
            )
            raise

        state = to_state(spec, raw, self._config)
        logger.debug(
            "Probed resource",
            extra={"identifier": spec.identifier, "kind": spec.kind.value, "exists": state.exists},
        )
        return state
