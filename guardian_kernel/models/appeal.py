"""
Module: guardian_kernel.models.appeal
Responsibility: ORM persistence for appeals, their approval steps, and the
    approver decisions recorded on each step.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Valid status values: DB check constraints on appeal and step status.
    - Step ordering: UNIQUE(appeal_id, step_index) and UNIQUE(appeal_id, name).
    - One decision per approver per step: UNIQUE(step_id, approver).  A
      repeated decision overwrites the existing row while the step is
      pending.
    - Creation snapshot: policy_version, policy_hash and context_snapshot are
      written once at creation and never changed by the services.

Failure modes:
    - IntegrityError on duplicate step index/name or approver decision.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from guardian_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from guardian_kernel.domain.appeal import Appeal, ApprovalStep, Decision


class AppealModel(Base):
    """Persistent appeal.  ``id`` is the appeal id."""

    __tablename__ = "appeals"

    __table_args__ = (
        CheckConstraint(
            "status IN ('created', 'in_review', 'approved', 'active', "
            "'rejected', 'cancelled', 'revoked', 'expired')",
            name="ck_appeals_valid_status",
        ),
        # Duplicate-open-appeal lookup
        Index(
            "ix_appeals_requester_resource_role",
            "requester", "resource_id", "role", "status",
        ),
        Index("ix_appeals_status_created", "status", "created_at"),
    )

    requester: Mapped[str] = mapped_column(String(320), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(200), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[str] = mapped_column(String(100), nullable=False)
    policy_id: Mapped[str] = mapped_column(String(200), nullable=False)
    policy_version: Mapped[int] = mapped_column(nullable=False)
    policy_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    options: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="created")
    context_snapshot: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict,
    )
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    terminated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    grant_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    termination_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    steps: Mapped[list["ApprovalStepModel"]] = relationship(
        "ApprovalStepModel",
        back_populates="appeal",
        order_by="ApprovalStepModel.step_index",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<Appeal {self.id} {self.requester} -> "
            f"{self.resource_id}/{self.role} status={self.status}>"
        )

    def to_dto(self) -> Appeal:
        """Convert ORM model to frozen domain DTO."""
        from guardian_kernel.domain.appeal import (
            Appeal as AppealDTO,
            AppealOptions,
            AppealStatus,
        )

        return AppealDTO(
            appeal_id=self.id,
            requester=self.requester,
            resource_id=self.resource_id,
            resource_type=self.resource_type,
            role=self.role,
            policy_id=self.policy_id,
            policy_version=self.policy_version,
            policy_hash=self.policy_hash,
            options=AppealOptions(
                duration=self.options.get("duration"),
                parameters=dict(self.options.get("parameters") or {}),
            ),
            status=AppealStatus(self.status),
            steps=tuple(s.to_dto() for s in self.steps),
            context_snapshot=dict(self.context_snapshot),
            description=self.description,
            created_at=self.created_at,
            decided_at=self.decided_at,
            terminated_at=self.terminated_at,
            grant_error=self.grant_error,
            termination_reason=self.termination_reason,
        )

    @classmethod
    def from_dto(cls, dto: Appeal) -> AppealModel:
        """Create ORM model (with its steps) from domain DTO."""
        model = cls(
            id=dto.appeal_id,
            requester=dto.requester,
            resource_id=dto.resource_id,
            resource_type=dto.resource_type,
            role=dto.role,
            policy_id=dto.policy_id,
            policy_version=dto.policy_version,
            policy_hash=dto.policy_hash,
            options=dto.options.to_dict(),
            status=dto.status.value,
            context_snapshot=dto.context_snapshot,
            description=dto.description,
            created_at=dto.created_at,
            decided_at=dto.decided_at,
            terminated_at=dto.terminated_at,
            grant_error=dto.grant_error,
            termination_reason=dto.termination_reason,
        )
        model.steps = [ApprovalStepModel.from_dto(s) for s in dto.steps]
        return model

    def apply_dto(self, dto: Appeal) -> None:
        """Copy the mutable state of ``dto`` onto this row and its steps."""
        self.status = dto.status.value
        self.decided_at = dto.decided_at
        self.terminated_at = dto.terminated_at
        self.grant_error = dto.grant_error
        self.termination_reason = dto.termination_reason
        by_index = {s.step_index: s for s in self.steps}
        for step in dto.steps:
            by_index[step.index].apply_dto(step)


class ApprovalStepModel(Base):
    """Persistent approval step of an appeal."""

    __tablename__ = "appeal_steps"

    __table_args__ = (
        CheckConstraint(
            "status IN ('blocked', 'pending', 'skipped', 'approved', 'rejected')",
            name="ck_appeal_steps_valid_status",
        ),
        CheckConstraint(
            "strategy IN ('any', 'all', 'auto_reject_on_any', 'auto')",
            name="ck_appeal_steps_valid_strategy",
        ),
        UniqueConstraint("appeal_id", "step_index", name="uq_appeal_steps_index"),
        UniqueConstraint("appeal_id", "name", name="uq_appeal_steps_name"),
        Index("ix_appeal_steps_status", "status"),
    )

    appeal_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("appeals.id"), nullable=False,
    )
    step_index: Mapped[int] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    strategy: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="blocked")
    approvers: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    optional: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    activated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    note: Mapped[str] = mapped_column(Text, default="", nullable=False)
    approve_if: Mapped[str] = mapped_column(Text, default="", nullable=False)
    rejection_reason: Mapped[str] = mapped_column(Text, default="", nullable=False)

    appeal: Mapped["AppealModel"] = relationship("AppealModel", back_populates="steps")
    decisions: Mapped[list["StepDecisionModel"]] = relationship(
        "StepDecisionModel",
        back_populates="step",
        order_by="StepDecisionModel.decided_at",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<ApprovalStep {self.appeal_id}#{self.step_index} {self.name} status={self.status}>"

    def to_dto(self) -> ApprovalStep:
        from guardian_kernel.domain.appeal import ApprovalStep as StepDTO, StepStatus
        from guardian_kernel.domain.policy import StepStrategy

        return StepDTO(
            index=self.step_index,
            name=self.name,
            strategy=StepStrategy(self.strategy),
            status=StepStatus(self.status),
            approvers=tuple(self.approvers),
            decisions=tuple(d.to_dto() for d in self.decisions),
            optional=self.optional,
            activated_at=self.activated_at,
            resolved_at=self.resolved_at,
            note=self.note,
            approve_if=self.approve_if,
            rejection_reason=self.rejection_reason,
        )

    @classmethod
    def from_dto(cls, dto: ApprovalStep) -> ApprovalStepModel:
        model = cls(
            step_index=dto.index,
            name=dto.name,
            strategy=dto.strategy.value,
            status=dto.status.value,
            approvers=list(dto.approvers),
            optional=dto.optional,
            activated_at=dto.activated_at,
            resolved_at=dto.resolved_at,
            note=dto.note,
            approve_if=dto.approve_if,
            rejection_reason=dto.rejection_reason,
        )
        model.decisions = [StepDecisionModel.from_dto(d) for d in dto.decisions]
        return model

    def apply_dto(self, dto: ApprovalStep) -> None:
        self.status = dto.status.value
        self.approvers = list(dto.approvers)
        self.activated_at = dto.activated_at
        self.resolved_at = dto.resolved_at
        self.note = dto.note
        existing = {d.approver: d for d in self.decisions}
        for decision in dto.decisions:
            row = existing.get(decision.approver)
            if row is None:
                self.decisions.append(StepDecisionModel.from_dto(decision))
            elif (row.action, row.reason, row.decided_at) != (
                decision.action.value, decision.reason, decision.decided_at,
            ):
                row.action = decision.action.value
                row.reason = decision.reason
                row.decided_at = decision.decided_at


class StepDecisionModel(Base):
    """One approver's decision on one step."""

    __tablename__ = "step_decisions"

    __table_args__ = (
        CheckConstraint(
            "action IN ('approve', 'reject')",
            name="ck_step_decisions_valid_action",
        ),
        UniqueConstraint("step_id", "approver", name="uq_step_decisions_approver"),
        Index("ix_step_decisions_approver", "approver"),
    )

    step_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("appeal_steps.id"), nullable=False,
    )
    approver: Mapped[str] = mapped_column(String(320), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_at: Mapped[datetime] = mapped_column(nullable=False)

    step: Mapped["ApprovalStepModel"] = relationship(
        "ApprovalStepModel", back_populates="decisions",
    )

    def __repr__(self) -> str:
        return f"<StepDecision {self.approver} {self.action} step={self.step_id}>"

    def to_dto(self) -> Decision:
        from guardian_kernel.domain.appeal import Decision as DecisionDTO, DecisionAction

        return DecisionDTO(
            approver=self.approver,
            action=DecisionAction(self.action),
            reason=self.reason,
            decided_at=self.decided_at,
        )

    @classmethod
    def from_dto(cls, dto: Decision) -> StepDecisionModel:
        return cls(
            approver=dto.approver,
            action=dto.action.value,
            reason=dto.reason,
            decided_at=dto.decided_at,
        )

