"""Data model for declared resources and provisioning records.

Declared configuration is parsed with Pydantic (validation at the boundary,
fail fast, fail loudly). Records produced during a session are plain
dataclasses: they are built by the engine, never by users.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import ErrorKind, ProvisioningError

# =============================================================================
# Resource kinds
# =============================================================================


class ResourceKind(str, Enum):
    """Cloud resource kinds the provisioner knows how to reconcile."""

    PROJECT_SERVICE = "ProjectService"
    SERVICE_ACCOUNT = "ServiceAccount"
    IDENTITY_POOL = "IdentityPool"
    OIDC_PROVIDER = "OidcProvider"
    STORAGE_BUCKET = "StorageBucket"
    IAM_BINDING = "IamBinding"


# Identifier formats enforced by the provider, checked before any API call
IDENTIFIER_PATTERNS: dict[ResourceKind, str] = {
    ResourceKind.PROJECT_SERVICE: r"^[a-z][a-z0-9.-]*\.googleapis\.com$",
    ResourceKind.SERVICE_ACCOUNT: r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$",
    ResourceKind.IDENTITY_POOL: r"^[a-z0-9-]{4,32}$",
    ResourceKind.OIDC_PROVIDER: r"^[a-z0-9-]{4,32}$",
    ResourceKind.STORAGE_BUCKET: r"^[a-z0-9][a-z0-9._-]{1,61}[a-z0-9]$",
    # Bindings are local names only; they never reach the provider
    ResourceKind.IAM_BINDING: r"^[A-Za-z0-9][A-Za-z0-9._:/-]{0,127}$",
}

REQUIRED_ATTRIBUTES: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.PROJECT_SERVICE: (),
    ResourceKind.SERVICE_ACCOUNT: (),
    ResourceKind.IDENTITY_POOL: (),
    ResourceKind.OIDC_PROVIDER: ("pool", "issuerUri"),
    ResourceKind.STORAGE_BUCKET: (),
    ResourceKind.IAM_BINDING: ("role", "member"),
}

KNOWN_ATTRIBUTES: dict[ResourceKind, frozenset[str]] = {
    ResourceKind.PROJECT_SERVICE: frozenset(),
    ResourceKind.SERVICE_ACCOUNT: frozenset({"displayName", "description"}),
    ResourceKind.IDENTITY_POOL: frozenset({"displayName", "description", "disabled"}),
    ResourceKind.OIDC_PROVIDER: frozenset(
        {
            "pool",
            "issuerUri",
            "attributeMapping",
            "attributeCondition",
            "allowedAudiences",
            "displayName",
            "description",
            "disabled",
        }
    ),
    ResourceKind.STORAGE_BUCKET: frozenset(
        {"location", "versioning", "uniformBucketLevelAccess", "noncurrentVersionRetentionDays"}
    ),
    ResourceKind.IAM_BINDING: frozenset({"role", "member", "serviceAccount"}),
}


class ResourceSpec(BaseModel):
    """Declarative description of one target resource.

    Immutable for the duration of a session.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    kind: ResourceKind
    identifier: Annotated[str, Field(min_length=1, max_length=128)]
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: tuple[str, ...] = Field(default=(), alias="dependsOn")

    @field_validator("depends_on", mode="before")
    @classmethod
    def normalize_depends_on(cls, v: Any) -> Any:
        if v is None:
            return ()
        if isinstance(v, str):
            return (v,)
        # Preserve declaration order, drop duplicates
        return tuple(dict.fromkeys(v))

    @model_validator(mode="after")
    def validate_kind_constraints(self) -> ResourceSpec:
        pattern = IDENTIFIER_PATTERNS[self.kind]
        if not re.match(pattern, self.identifier):
            raise ValueError(
                f"identifier '{self.identifier}' is not valid for {self.kind.value} "
                f"(must match {pattern})"
            )

        missing = [a for a in REQUIRED_ATTRIBUTES[self.kind] if not self.attributes.get(a)]
        if missing:
            raise ValueError(f"{self.kind.value} '{self.identifier}' requires attributes {missing}")

        unknown = sorted(set(self.attributes) - KNOWN_ATTRIBUTES[self.kind])
        if unknown:
            raise ValueError(f"{self.kind.value} '{self.identifier}' has unknown attributes {unknown}")

        if self.identifier in self.depends_on:
            raise ValueError(f"'{self.identifier}' cannot depend on itself")

        return self


class FederationConfig(BaseModel):
    """Declared configuration document.

    When ``resources`` is omitted the default GitHub Actions federation set
    for ``repository`` is provisioned.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    project_id: str | None = Field(None, alias="projectId")
    repository: str | None = None
    resources: list[ResourceSpec] | None = None

    @model_validator(mode="after")
    def validate_identifiers(self) -> FederationConfig:
        if self.resources is None:
            if not self.repository:
                raise ValueError("either 'resources' or 'repository' must be declared")
            return self

        seen: set[str] = set()
        duplicates: list[str] = []
        for spec in self.resources:
            if spec.identifier in seen:
                duplicates.append(spec.identifier)
            seen.add(spec.identifier)
        if duplicates:
            raise ValueError(f"duplicate resource identifiers: {sorted(set(duplicates))}")
        return self


# =============================================================================
# Session records
# =============================================================================


class ActionType(str, Enum):
    """Reconciler decisions."""

    CREATE = "Create"
    UPDATE = "Update"
    SKIP = "Skip"
    NO_OP = "NoOp"


class Outcome(str, Enum):
    """Terminal per-resource outcomes."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"


@dataclass(frozen=True)
class ResourceState:
    """Observed state of a resource at probe time. Never cached."""

    exists: bool
    attributes: dict[str, Any] = field(default_factory=dict)
    raw: Any = None

    @classmethod
    def absent(cls, raw: Any = None) -> ResourceState:
        return cls(exists=False, raw=raw)


@dataclass(frozen=True)
class ReconciliationAction:
    """Output of the reconciler for one resource."""

    action: ActionType
    reason: str
    changed_attributes: tuple[str, ...] = ()

    @property
    def is_mutating(self) -> bool:
        return self.action in (ActionType.CREATE, ActionType.UPDATE)


@dataclass
class ProvisioningResult:
    """Terminal record of one resource's processing."""

    identifier: str
    kind: ResourceKind
    action: ActionType
    outcome: Outcome
    reason: str = ""
    error: ProvisioningError | None = None
    produced_secrets: dict[str, str] = field(default_factory=dict)
    attempts: int = 0
    duration_seconds: float = 0.0

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None

    @property
    def blocks_dependents(self) -> bool:
        """Whether resources depending on this one must be skipped."""
        if self.outcome == Outcome.FAILED:
            return True
        return self.outcome == Outcome.SKIPPED and self.error_kind in (
            ErrorKind.DEPENDENCY_FAILED,
            ErrorKind.CANCELLED,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "kind": self.kind.value,
            "action": self.action.value,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "error": self.error.to_dict() if self.error is not None else None,
            "producedSecrets": dict(self.produced_secrets),
            "attempts": self.attempts,
            "durationSeconds": round(self.duration_seconds, 3),
        }
