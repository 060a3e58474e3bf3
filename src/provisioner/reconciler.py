"""Declared-versus-observed reconciliation.

``reconcile`` is a pure function of (desired spec, observed state): no I/O,
no clock, no randomness. It decides the minimal action that converges the
resource:

- missing resource               -> Create
- every declared attribute equal -> NoOp
- differences, all mutable       -> Update (with the differing attribute names)
- any immutable difference       -> Skip ("manual recreation required")

Only attributes present in the ResourceSpec are compared. Attributes the user did
not declare are left to the provider's defaults and never cause drift.

IDEMPOTENCE: an existing resource whose declared attributes match is never
re-created or re-applied. This is what makes repeated runs safe.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from .models import ActionType, ReconciliationAction, ResourceKind, ResourceSpec, ResourceState

# Attributes the provider refuses to change after creation
IMMUTABLE_ATTRIBUTES: dict[ResourceKind, frozenset[str]] = {
    ResourceKind.PROJECT_SERVICE: frozenset(),
    ResourceKind.SERVICE_ACCOUNT: frozenset(),
    ResourceKind.IDENTITY_POOL: frozenset(),
    ResourceKind.OIDC_PROVIDER: frozenset({"pool", "issuerUri"}),
    ResourceKind.STORAGE_BUCKET: frozenset({"location"}),
    ResourceKind.IAM_BINDING: frozenset({"role", "member", "serviceAccount"}),
}

# Kinds that have no in-place update call at all
NON_UPDATABLE_KINDS: frozenset[ResourceKind] = frozenset(
    {ResourceKind.PROJECT_SERVICE, ResourceKind.IAM_BINDING}
)

MANUAL_RECREATION_REASON = "manual recreation required"


def _normalize_scalar(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    return value


def _mapping_equal(desired: Any, observed: Any) -> bool:
    """Set-equality over mapping items (order of keys is irrelevant)."""
    if not isinstance(desired, Mapping) or not isinstance(observed, Mapping):
        return False
    return {(k, _normalize_scalar(v)) for k, v in desired.items()} == {
        (k, _normalize_scalar(v)) for k, v in observed.items()
    }


def _set_equal(desired: Any, observed: Any) -> bool:
    if isinstance(desired, str):
        desired = [desired]
    if isinstance(observed, str):
        observed = [observed]
    return {_normalize_scalar(v) for v in desired or []} == {
        _normalize_scalar(v) for v in observed or []
    }


def _casefold_equal(desired: Any, observed: Any) -> bool:
    return str(desired).strip().casefold() == str(observed or "").strip().casefold()


def _scalar_equal(desired: Any, observed: Any) -> bool:
    return _normalize_scalar(desired) == _normalize_scalar(observed)


Comparator = Callable[[Any, Any], bool]

# Kind-specific comparators; anything not listed uses scalar equality
COMPARATORS: dict[tuple[ResourceKind, str], Comparator] = {
    (ResourceKind.OIDC_PROVIDER, "attributeMapping"): _mapping_equal,
    (ResourceKind.OIDC_PROVIDER, "allowedAudiences"): _set_equal,
    (ResourceKind.STORAGE_BUCKET, "location"): _casefold_equal,
}


def attribute_equal(kind: ResourceKind, name: str, desired: Any, observed: Any) -> bool:
    """Compare one declared attribute with its observed value."""
    comparator = COMPARATORS.get((kind, name), _scalar_equal)
    return comparator(desired, observed)


def diff_attributes(spec: ResourceSpec, state: ResourceState) -> list[str]:
    """Return declared attribute names whose observed value differs.

    Order follows the declaration order of ``spec.attributes``.
    """
    return [
        name
        for name, desired in spec.attributes.items()
        if not attribute_equal(spec.kind, name, desired, state.attributes.get(name))
    ]


def reconcile(spec: ResourceSpec, state: ResourceState) -> ReconciliationAction:
    """Decide the action that converges ``spec`` with ``state``."""
    if not state.exists:
        return ReconciliationAction(
            action=ActionType.CREATE,
            reason=f"{spec.kind.value} '{spec.identifier}' does not exist",
        )

    changed = diff_attributes(spec, state)
    if not changed:
        return ReconciliationAction(
            action=ActionType.NO_OP,
            reason=f"{spec.kind.value} '{spec.identifier}' exists with matching attributes",
        )

    summary = ", ".join(
        f"{name}: {state.attributes.get(name)!r} -> {spec.attributes[name]!r}" for name in changed
    )

    immutable = [name for name in changed if name in IMMUTABLE_ATTRIBUTES[spec.kind]]
    if immutable or spec.kind in NON_UPDATABLE_KINDS:
        blocking = immutable or changed
        return ReconciliationAction(
            action=ActionType.SKIP,
            reason=(
                f"{MANUAL_RECREATION_REASON}: {spec.kind.value} '{spec.identifier}' "
                f"cannot change {blocking} in place ({summary})"
            ),
            changed_attributes=tuple(changed),
        )

    return ReconciliationAction(
        action=ActionType.UPDATE,
        reason=f"attribute drift ({summary})",
        changed_attributes=tuple(changed),
    )
