"""
Appeal domain types (``guardian_kernel.domain.appeal``).

Responsibility
--------------
Pure value objects for an access appeal and its approval chain: the
appeal lifecycle state machine, approval steps, and approver decisions.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  May import
only from ``domain/policy`` and ``exceptions``.

Invariants enforced
-------------------
* ``APPEAL_TRANSITIONS`` defines the only valid status transitions.
  Terminal states have no outgoing edges.
* While ``in_review`` exactly one step is ``pending`` (the active step).
* ``policy_version`` and ``policy_hash`` are snapshotted at creation.
* ``context_snapshot`` is captured once at creation and never
  re-evaluated.
* At most one decision per approver per step.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from guardian_kernel.domain.policy import StepStrategy
from guardian_kernel.exceptions import InvalidTransitionError


# =========================================================================
# Appeal Status Lifecycle
# =========================================================================


class AppealStatus(str, Enum):
    """Appeal lifecycle states."""

    CREATED = "created"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    ACTIVE = "active"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REVOKED = "revoked"
    EXPIRED = "expired"


APPEAL_TRANSITIONS: dict[AppealStatus, frozenset[AppealStatus]] = {
    AppealStatus.CREATED: frozenset({
        AppealStatus.IN_REVIEW,
        AppealStatus.APPROVED,
        AppealStatus.REJECTED,
        AppealStatus.CANCELLED,
    }),
    AppealStatus.IN_REVIEW: frozenset({
        AppealStatus.APPROVED,
        AppealStatus.REJECTED,
        AppealStatus.CANCELLED,
    }),
    AppealStatus.APPROVED: frozenset({AppealStatus.ACTIVE}),
    AppealStatus.ACTIVE: frozenset({
        AppealStatus.REVOKED,
        AppealStatus.EXPIRED,
    }),
    AppealStatus.REJECTED: frozenset(),
    AppealStatus.CANCELLED: frozenset(),
    AppealStatus.REVOKED: frozenset(),
    AppealStatus.EXPIRED: frozenset(),
}

TERMINAL_APPEAL_STATUSES: frozenset[AppealStatus] = frozenset({
    AppealStatus.REJECTED,
    AppealStatus.CANCELLED,
    AppealStatus.REVOKED,
    AppealStatus.EXPIRED,
})

# Statuses that block a second appeal for the same requester/resource/role.
OPEN_APPEAL_STATUSES: frozenset[AppealStatus] = frozenset({
    AppealStatus.CREATED,
    AppealStatus.IN_REVIEW,
    AppealStatus.APPROVED,
    AppealStatus.ACTIVE,
})

CANCELLABLE_STATUSES: frozenset[AppealStatus] = frozenset({
    AppealStatus.CREATED,
    AppealStatus.IN_REVIEW,
})


def require_transition(
    appeal_id: UUID | str, from_status: AppealStatus, to_status: AppealStatus,
) -> None:
    """Raise InvalidTransitionError unless ``APPEAL_TRANSITIONS`` allows the move."""
    if to_status not in APPEAL_TRANSITIONS[from_status]:
        raise InvalidTransitionError(str(appeal_id), from_status.value, to_status.value)


# =========================================================================
# Steps and Decisions
# =========================================================================


class StepStatus(str, Enum):
    """Approval step states.

    ``blocked`` means the chain has not reached the step yet.
    """

    BLOCKED = "blocked"
    PENDING = "pending"
    SKIPPED = "skipped"
    APPROVED = "approved"
    REJECTED = "rejected"


# Outcomes that let the chain move past a step.
PASSING_STEP_STATUSES: frozenset[StepStatus] = frozenset({
    StepStatus.APPROVED,
    StepStatus.SKIPPED,
})


class DecisionAction(str, Enum):
    """Actions an approver can take on a step."""

    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True)
class Decision:
    """One approver's decision on one step. Immutable."""

    approver: str
    action: DecisionAction
    reason: str | None = None
    decided_at: datetime | None = None


@dataclass(frozen=True)
class ApprovalStep:
    """A materialised step of an appeal's approval chain.

    ``approvers`` is the eligible set snapshotted when the step was
    materialised; it is never re-queried.
    ``approve_if`` and ``rejection_reason`` carry an ``auto`` step's
    condition from its template.
    """

    index: int
    name: str
    strategy: StepStrategy
    status: StepStatus = StepStatus.BLOCKED
    approvers: tuple[str, ...] = ()
    decisions: tuple[Decision, ...] = ()
    optional: bool = False
    activated_at: datetime | None = None
    resolved_at: datetime | None = None
    note: str = ""
    approve_if: str = ""
    rejection_reason: str = ""

    @property
    def is_resolved(self) -> bool:
        return self.status in (
            StepStatus.SKIPPED, StepStatus.APPROVED, StepStatus.REJECTED,
        )

    def decision_of(self, approver: str) -> Decision | None:
        for d in self.decisions:
            if d.approver == approver:
                return d
        return None

    def with_decision(self, decision: Decision) -> ApprovalStep:
        """Return a copy with ``decision`` replacing the approver's prior one."""
        kept = tuple(d for d in self.decisions if d.approver != decision.approver)
        return replace(self, decisions=kept + (decision,))


# =========================================================================
# Appeal
# =========================================================================


@dataclass(frozen=True)
class AppealOptions:
    """Requested access options.

    ``duration`` is seconds; None requests permanent access.
    """

    duration: int | None = None
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"duration": self.duration, "parameters": dict(self.parameters)}


@dataclass(frozen=True)
class Appeal:
    """Immutable snapshot of an access appeal."""

    appeal_id: UUID
    requester: str
    resource_id: str
    resource_type: str
    role: str
    policy_id: str
    policy_version: int
    policy_hash: str | None = None
    options: AppealOptions = field(default_factory=AppealOptions)
    status: AppealStatus = AppealStatus.CREATED
    steps: tuple[ApprovalStep, ...] = ()
    context_snapshot: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    created_at: datetime | None = None
    decided_at: datetime | None = None
    terminated_at: datetime | None = None
    grant_error: str | None = None
    termination_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_APPEAL_STATUSES

    @property
    def active_step(self) -> ApprovalStep | None:
        """The single ``pending`` step while in review, else None."""
        if self.status != AppealStatus.IN_REVIEW:
            return None
        for step in self.steps:
            if step.status == StepStatus.PENDING:
                return step
        return None

    def step_named(self, name: str) -> ApprovalStep | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def with_step(self, step: ApprovalStep) -> Appeal:
        steps = tuple(step if s.index == step.index else s for s in self.steps)
        return replace(self, steps=steps)
