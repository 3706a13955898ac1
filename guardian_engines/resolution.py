"""
guardian_engines.resolution -- Step outcome from recorded decisions.

Responsibility:
    Combine the decisions recorded on an approval step into the step's
    outcome according to its resolution strategy.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Strategies:
    - ``any``: approved on the first approval; rejected only once every
      eligible approver has rejected.
    - ``all``: approved once every eligible approver approved; rejected once
      every eligible approver has decided and at least one rejected.
    - ``auto_reject_on_any``: rejected on the first rejection; approved only
      once every eligible approver approved.

    Decisions from identities outside the eligible set are ignored, and only
    the latest decision per approver counts.  Races between decisions are
    settled by the caller's per-appeal serialisation, not here.
"""

from __future__ import annotations

from collections.abc import Iterable

from guardian_kernel.domain.appeal import (
    ApprovalStep,
    Decision,
    DecisionAction,
    StepStatus,
)
from guardian_kernel.domain.policy import StepStrategy


def effective_decisions(
    eligible: Iterable[str], decisions: Iterable[Decision],
) -> dict[str, DecisionAction]:
    """Latest action per eligible approver."""
    allowed = set(eligible)
    latest: dict[str, DecisionAction] = {}
    for d in decisions:
        if d.approver in allowed:
            latest[d.approver] = d.action
    return latest


def resolve_outcome(
    strategy: StepStrategy,
    eligible: tuple[str, ...],
    decisions: Iterable[Decision],
) -> StepStatus:
    """Return ``PENDING``, ``APPROVED`` or ``REJECTED``.

    An empty eligible set resolves to ``APPROVED``; the chain never
    activates such a step (see ``chain.materialize_steps``).
    """
    if not strategy.takes_decisions:
        raise ValueError(f"{strategy.value!r} steps resolve from approve_if, not decisions")
    if not eligible:
        return StepStatus.APPROVED

    latest = effective_decisions(eligible, decisions)
    approvals = sum(1 for a in latest.values() if a == DecisionAction.APPROVE)
    rejections = sum(1 for a in latest.values() if a == DecisionAction.REJECT)
    total = len(set(eligible))

    if strategy == StepStrategy.ANY:
        if approvals:
            return StepStatus.APPROVED
        if rejections == total:
            return StepStatus.REJECTED
        return StepStatus.PENDING

    if strategy == StepStrategy.ALL:
        if approvals == total:
            return StepStatus.APPROVED
        if rejections and approvals + rejections == total:
            return StepStatus.REJECTED
        return StepStatus.PENDING

    if strategy == StepStrategy.AUTO_REJECT_ON_ANY:
        if rejections:
            return StepStatus.REJECTED
        if approvals == total:
            return StepStatus.APPROVED
        return StepStatus.PENDING

    raise ValueError(f"Unknown strategy: {strategy!r}")


def evaluate_step_outcome(step: ApprovalStep) -> StepStatus:
    """Outcome of ``step`` from its snapshotted approvers and decisions."""
    return resolve_outcome(step.strategy, step.approvers, step.decisions)
