"""Cloud resource management API boundary.

The engine only talks to the provider through this interface. Calls are
blocking (the provider SDKs are synchronous); the probe and executor run
them in the default thread pool.

Implementations raise the provider SDK's own exceptions. Classification into
the ErrorKind taxonomy happens in the probe and executor, never here.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from .models import ResourceSpec


class CloudResourceClient(ABC):
    """Abstract cloud resource management API."""

    @abstractmethod
    def get_resource(self, spec: ResourceSpec) -> dict[str, Any] | None:
        """Fetch the provider payload for ``spec``.

        Returns:
            Raw provider payload, or None when the resource does not exist.
            For IamBinding the payload is the IAM policy of the target.
        """

    @abstractmethod
    def create_resource(self, spec: ResourceSpec) -> dict[str, Any]:
        """Create the resource and return its provider payload."""

    @abstractmethod
    def update_resource(self, spec: ResourceSpec, fields: Sequence[str]) -> dict[str, Any]:
        """Update the named declared attributes in place."""

    @abstractmethod
    def bind_policy(self, spec: ResourceSpec) -> dict[str, Any]:
        """Add the IamBinding member to the role on the target policy."""

    def resolve_project_number(self) -> str | None:
        """Return the numeric project reference if the provider exposes one."""
        return None
