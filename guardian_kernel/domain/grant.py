"""
Grant domain types (``guardian_kernel.domain.grant``).

A Grant is the materialised access a provider issued for a fully
approved appeal.  It is owned by the grant scheduler once created.

Invariants enforced:
    * An appeal owns at most one active grant.
    * A grant only leaves ``active`` after the provider confirmed the
      revoke; a failed revoke flags ``needs_attention`` instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol
from uuid import UUID


class GrantStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


GRANT_TRANSITIONS: dict[GrantStatus, frozenset[GrantStatus]] = {
    GrantStatus.ACTIVE: frozenset({GrantStatus.REVOKED, GrantStatus.EXPIRED}),
    GrantStatus.REVOKED: frozenset(),
    GrantStatus.EXPIRED: frozenset(),
}

# Revoke reason used by the scheduler's expiry path.
EXPIRY_REASON = "expired"
SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class Grant:
    """Immutable snapshot of an issued grant."""

    grant_id: UUID
    appeal_id: UUID
    resource_id: str
    resource_type: str
    requester: str
    role: str
    started_at: datetime
    expires_at: datetime | None = None
    status: GrantStatus = GrantStatus.ACTIVE
    revoked_at: datetime | None = None
    revoked_by: str | None = None
    revoke_reason: str | None = None
    needs_attention: bool = False
    failure_count: int = 0
    last_error: str | None = None
    reminder_sent_at: datetime | None = None

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None

    @property
    def is_terminal(self) -> bool:
        return self.status != GrantStatus.ACTIVE

    def is_due(self, now: datetime) -> bool:
        """True if an active, unflagged grant has reached its expiry."""
        return (
            self.status == GrantStatus.ACTIVE
            and not self.needs_attention
            and self.expires_at is not None
            and self.expires_at <= now
        )


class GrantRegistrar(Protocol):
    """Receives newly issued grants so their expiry can be scheduled."""

    def register(self, grant: Grant) -> None:
        ...
