"""
Collaborator contracts (``guardian_kernel.domain.provider``).

Responsibility
--------------
Protocols for the external systems the appeal engine consumes but does
not implement: provider capabilities (grant/revoke/validate), the
read-only resource catalog, and the identity/attribute lookup.  Also the
``ProviderRegistry`` that maps resource types to capabilities.

Architecture position
---------------------
**Kernel domain layer** -- contracts only, ZERO I/O.

Contract notes
--------------
* ``ProviderCapability.grant`` and ``revoke`` must be idempotent: a
  repeated grant for an already-granted requester, or a revoke for an
  already-revoked requester, is a no-op success.  The engine retries both.
* Implementations must be safe for concurrent invocation across
  different resources.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from guardian_kernel.domain.appeal import AppealOptions
from guardian_kernel.exceptions import ProviderNotFoundError


@dataclass(frozen=True)
class Resource:
    """A resource as exposed by the read-only catalog."""

    resource_id: str
    type: str
    urn: str = ""
    name: str = ""
    provider_urn: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)
    is_deleted: bool = False

    def to_context(self) -> dict[str, Any]:
        """The ``resource`` root of an appeal's evaluation context."""
        return {
            **self.attributes,
            "id": self.resource_id,
            "type": self.type,
            "urn": self.urn,
            "name": self.name,
            "provider_urn": self.provider_urn,
        }


@runtime_checkable
class ProviderCapability(Protocol):
    """What every resource provider must implement."""

    def validate(self, resource: Resource, options: AppealOptions) -> None:
        """Raise ``ValidationError`` if the options are unacceptable."""
        ...

    def grant(
        self, resource: Resource, requester: str, role: str, options: AppealOptions,
    ) -> None:
        """Issue access.  Raise on failure."""
        ...

    def revoke(self, resource: Resource, requester: str, role: str) -> None:
        """Withdraw access.  Raise on failure."""
        ...


class ResourceLookup(Protocol):
    """Read-only resource catalog."""

    def get(self, resource_id: str) -> Resource | None:
        ...


class IdentityLookup(Protocol):
    """External identity manager."""

    def attributes(self, identity: str) -> Mapping[str, Any]:
        """Return profile attributes; raise ``IdentityNotFoundError``."""
        ...


class ProviderRegistry:
    """Resource type -> provider capability.

    Thread-safe; registration normally happens once at wiring time.
    """

    def __init__(self, providers: Mapping[str, ProviderCapability] | None = None):
        self._lock = threading.Lock()
        self._providers: dict[str, ProviderCapability] = dict(providers or {})

    def register(self, resource_type: str, provider: ProviderCapability) -> None:
        with self._lock:
            self._providers[resource_type] = provider

    def unregister(self, resource_type: str) -> None:
        """Drop the capability for ``resource_type``.  Grants issued through it
        stay recorded; their revokes fail until a provider is registered again."""
        with self._lock:
            self._providers.pop(resource_type, None)

    def get(self, resource_type: str) -> ProviderCapability:
        with self._lock:
            provider = self._providers.get(resource_type)
        if provider is None:
            raise ProviderNotFoundError(resource_type)
        return provider

    def has(self, resource_type: str) -> bool:
        with self._lock:
            return resource_type in self._providers

    @property
    def resource_types(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._providers))
