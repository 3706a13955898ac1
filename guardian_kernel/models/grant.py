"""
Module: guardian_kernel.models.grant
Responsibility: ORM persistence for issued grants.  The grants table is the
    durable registry the grant scheduler reconciles against after a restart.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Valid status values: DB check constraint.
    - One active grant per appeal: partial unique index on appeal_id where
      status = 'active' (PostgreSQL and SQLite).
    - Expiry scan index on (status, needs_attention, expires_at).
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from guardian_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from guardian_kernel.domain.grant import Grant


class GrantModel(Base):
    """Persistent grant.  ``id`` is the grant id."""

    __tablename__ = "grants"

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'revoked', 'expired')",
            name="ck_grants_valid_status",
        ),
        Index(
            "ix_grants_one_active_per_appeal",
            "appeal_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_grants_expiry_scan", "status", "needs_attention", "expires_at"),
    )

    appeal_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("appeals.id"), nullable=False,
    )
    resource_id: Mapped[str] = mapped_column(String(200), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    requester: Mapped[str] = mapped_column(String(320), nullable=False)
    role: Mapped[str] = mapped_column(String(100), nullable=False)
    started_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    revoked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    revoke_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    needs_attention: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_count: Mapped[int] = mapped_column(nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Grant {self.id} appeal={self.appeal_id} status={self.status} "
            f"expires_at={self.expires_at}>"
        )

    def to_dto(self) -> Grant:
        """Convert ORM model to frozen domain DTO."""
        from guardian_kernel.domain.grant import Grant as GrantDTO, GrantStatus

        return GrantDTO(
            grant_id=self.id,
            appeal_id=self.appeal_id,
            resource_id=self.resource_id,
            resource_type=self.resource_type,
            requester=self.requester,
            role=self.role,
            started_at=self.started_at,
            expires_at=self.expires_at,
            status=GrantStatus(self.status),
            revoked_at=self.revoked_at,
            revoked_by=self.revoked_by,
            revoke_reason=self.revoke_reason,
            needs_attention=self.needs_attention,
            failure_count=self.failure_count,
            last_error=self.last_error,
            reminder_sent_at=self.reminder_sent_at,
        )

    @classmethod
    def from_dto(cls, dto: Grant) -> GrantModel:
        """Create ORM model from domain DTO."""
        return cls(
            id=dto.grant_id,
            appeal_id=dto.appeal_id,
            resource_id=dto.resource_id,
            resource_type=dto.resource_type,
            requester=dto.requester,
            role=dto.role,
            started_at=dto.started_at,
            expires_at=dto.expires_at,
            status=dto.status.value,
            revoked_at=dto.revoked_at,
            revoked_by=dto.revoked_by,
            revoke_reason=dto.revoke_reason,
            needs_attention=dto.needs_attention,
            failure_count=dto.failure_count,
            last_error=dto.last_error,
            reminder_sent_at=dto.reminder_sent_at,
        )
