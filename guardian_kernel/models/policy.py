"""
Module: guardian_kernel.models.policy
Responsibility: ORM persistence for versioned approval policies.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One row per (policy_id, version): UNIQUE constraint.
    - Policy rows are immutable: ORM listeners reject UPDATE and DELETE.
      Editing a policy means storing a new version, so appeals already
      routed through an older version are unaffected.

Failure modes:
    - IntegrityError on a duplicate (policy_id, version).
    - PolicyImmutableError on UPDATE/DELETE of a stored version.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Index, String, Text, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from guardian_kernel.db.base import Base
from guardian_kernel.exceptions import PolicyImmutableError

if TYPE_CHECKING:
    from guardian_kernel.domain.policy import Policy


class PolicyModel(Base):
    """Persistent policy version.  Write-once."""

    __tablename__ = "policies"

    __table_args__ = (
        UniqueConstraint("policy_id", "version", name="uq_policies_id_version"),
        Index("ix_policies_policy_id", "policy_id"),
    )

    policy_id: Mapped[str] = mapped_column(String(200), nullable=False)
    version: Mapped[int] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    policy_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    body: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<Policy {self.policy_id}@v{self.version} hash={self.policy_hash[:12]}>"

    def to_dto(self) -> Policy:
        """Convert ORM model to frozen domain DTO."""
        from guardian_kernel.domain.policy import Policy as PolicyDTO

        return PolicyDTO.from_payload(
            self.body, policy_hash=self.policy_hash, created_at=self.created_at,
        )

    @classmethod
    def from_dto(cls, dto: Policy) -> PolicyModel:
        """Create ORM model from domain DTO (hash must already be set)."""
        return cls(
            policy_id=dto.policy_id,
            version=dto.version,
            description=dto.description,
            policy_hash=dto.policy_hash,
            body=dto.to_payload(),
            created_at=dto.created_at,
        )


@event.listens_for(PolicyModel, "before_update")
def prevent_policy_update(mapper, connection, target):
    """Stored policy versions are never modified."""
    raise PolicyImmutableError(
        target.policy_id, target.version, "create a new version instead of updating",
    )


@event.listens_for(PolicyModel, "before_delete")
def prevent_policy_delete(mapper, connection, target):
    """Stored policy versions are never deleted."""
    raise PolicyImmutableError(
        target.policy_id, target.version, "policy versions cannot be deleted",
    )
