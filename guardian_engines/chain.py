"""
guardian_engines.chain -- Approval chain materialisation and advancement.

Responsibility:
    Turn a policy's step templates into an appeal's concrete steps, apply
    one approver decision to the active step, and work out where the chain
    stands afterwards.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Timestamps are passed in.

Invariants enforced:
    - The chain's status is a pure function of step outcomes: the first
      rejected step rejects the appeal; a pending step keeps it in review;
      the first blocked step becomes the next active step; otherwise every
      step passed and the appeal is approved.
    - Exactly one step is pending while in review.
    - Steps after a rejected step stay ``blocked`` and never receive
      decisions.
    - A step with zero eligible approvers is auto-approved when optional,
      otherwise materialisation fails with ApproverResolutionError.
    - An ``auto`` step never takes decisions.  It resolves from its
      ``approve_if`` condition when the chain reaches it, so a rejection
      earlier in the chain means it is never evaluated.

Failure modes:
    - StepNotFoundError, StepNotActiveError, NotEligibleError from
      ``apply_decision`` (checked in that order).
    - InvalidExpressionError / AttributeMissingError /
      ApproverResolutionError from ``materialize_steps``.
    - InvalidExpressionError / AttributeMissingError from ``advance_chain``
      when an ``auto`` step's condition cannot be evaluated.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from guardian_engines.conditions import evaluate, is_active, resolve_approvers
from guardian_engines.resolution import evaluate_step_outcome
from guardian_kernel.domain.appeal import (
    Appeal,
    AppealOptions,
    AppealStatus,
    ApprovalStep,
    Decision,
    DecisionAction,
    StepStatus,
)
from guardian_kernel.domain.policy import StepTemplate
from guardian_kernel.domain.provider import Resource
from guardian_kernel.exceptions import (
    ApproverResolutionError,
    NotEligibleError,
    StepNotActiveError,
    StepNotFoundError,
)

NOTE_CONDITION_FALSE = "activation condition not met"
NOTE_NO_APPROVERS = "no eligible approvers; optional step auto-approved"
NOTE_AUTO_APPROVED = "approve_if condition met"
NOTE_AUTO_FAILED = "approve_if condition not met"


@dataclass(frozen=True)
class ChainState:
    """Where an appeal's chain stands.

    ``status`` is IN_REVIEW, APPROVED or REJECTED.  ``activated`` is the
    step that just became active, if any; ``rejected`` the step that
    rejected the appeal, if any.
    ``auto_resolved`` lists the ``auto`` steps resolved on the way.
    """

    steps: tuple[ApprovalStep, ...]
    status: AppealStatus
    activated: ApprovalStep | None = None
    rejected: ApprovalStep | None = None
    auto_resolved: tuple[ApprovalStep, ...] = ()


def build_context(
    requester: str,
    requester_attributes: Mapping[str, Any],
    resource: Resource,
    role: str,
    options: AppealOptions,
) -> dict[str, Any]:
    """Evaluation context captured once at appeal creation."""
    return {
        "requester": {**requester_attributes, "id": requester},
        "resource": resource.to_context(),
        "appeal": {
            "role": role,
            "duration": options.duration,
            "permanent": options.duration is None,
            "parameters": dict(options.parameters),
        },
    }


def materialize_steps(
    templates: tuple[StepTemplate, ...],
    context: Mapping[str, Any],
    now: datetime,
) -> tuple[ApprovalStep, ...]:
    """Build an appeal's steps from policy templates.

    Conditions are evaluated and approver rules resolved against the
    creation context; the resolved approvers are the step's eligible set
    for its whole life.  All steps start ``blocked`` unless skipped or
    auto-approved; call ``advance_chain`` to activate the first one.
    """
    steps: list[ApprovalStep] = []
    for index, template in enumerate(templates):
        base = ApprovalStep(
            index=index,
            name=template.name,
            strategy=template.strategy,
            optional=template.optional,
        )
        if not is_active(template, context):
            steps.append(replace(
                base, status=StepStatus.SKIPPED, resolved_at=now,
                note=NOTE_CONDITION_FALSE,
            ))
            continue

        if not template.strategy.takes_decisions:
            steps.append(replace(
                base, approve_if=template.approve_if,
                rejection_reason=template.rejection_reason,
            ))
            continue

        approvers = resolve_approvers(template, context)
        if not approvers:
            if not template.optional:
                raise ApproverResolutionError(template.name, "no eligible approvers")
            steps.append(replace(
                base, status=StepStatus.APPROVED, resolved_at=now,
                note=NOTE_NO_APPROVERS,
            ))
            continue

        steps.append(replace(base, approvers=approvers))
    return tuple(steps)


def resolve_auto_step(
    step: ApprovalStep, context: Mapping[str, Any], now: datetime,
) -> ApprovalStep:
    """Resolve an ``auto`` step from its ``approve_if`` condition."""
    if evaluate(step.approve_if, context):
        status, note = StepStatus.APPROVED, NOTE_AUTO_APPROVED
    else:
        status = StepStatus.SKIPPED if step.optional else StepStatus.REJECTED
        note = step.rejection_reason or NOTE_AUTO_FAILED
    return replace(step, status=status, activated_at=now, resolved_at=now, note=note)


def advance_chain(
    steps: tuple[ApprovalStep, ...],
    now: datetime,
    context: Mapping[str, Any] | None = None,
) -> ChainState:
    """Derive the chain's status, activating the next step if one is due.

    ``auto`` steps the chain reaches are resolved on the spot against
    ``context``, the appeal's creation snapshot.
    """
    resolved: list[ApprovalStep] = []
    for step in tuple(steps):
        if step.status == StepStatus.BLOCKED and not step.strategy.takes_decisions:
            step = resolve_auto_step(step, context or {}, now)
            steps = _with_step(steps, step)
            resolved.append(step)
        if step.status == StepStatus.REJECTED:
            return ChainState(
                steps, AppealStatus.REJECTED, rejected=step, auto_resolved=tuple(resolved),
            )
        if step.status == StepStatus.PENDING:
            return ChainState(steps, AppealStatus.IN_REVIEW, auto_resolved=tuple(resolved))
        if step.status == StepStatus.BLOCKED:
            activated = replace(step, status=StepStatus.PENDING, activated_at=now)
            return ChainState(
                _with_step(steps, activated), AppealStatus.IN_REVIEW,
                activated=activated, auto_resolved=tuple(resolved),
            )
    return ChainState(steps, AppealStatus.APPROVED, auto_resolved=tuple(resolved))


def _with_step(
    steps: tuple[ApprovalStep, ...], step: ApprovalStep,
) -> tuple[ApprovalStep, ...]:
    return tuple(step if s.index == step.index else s for s in steps)


def apply_decision(
    appeal: Appeal,
    step_name: str,
    approver: str,
    action: DecisionAction,
    reason: str | None,
    now: datetime,
) -> Appeal:
    """Record ``approver``'s decision on the active step and resolve it.

    A repeated decision by the same approver replaces the earlier one.

    Raises:
        StepNotFoundError: No step named ``step_name``.
        StepNotActiveError: The step is not the appeal's active step.
        NotEligibleError: ``approver`` is not in the step's eligible set.
    """
    step = appeal.step_named(step_name)
    if step is None:
        raise StepNotFoundError(str(appeal.appeal_id), step_name)
    if appeal.status != AppealStatus.IN_REVIEW or step.status != StepStatus.PENDING:
        raise StepNotActiveError(
            str(appeal.appeal_id), step_name, step.status.value, appeal.status.value,
        )
    if approver not in step.approvers:
        raise NotEligibleError(str(appeal.appeal_id), step_name, approver)

    decided = step.with_decision(
        Decision(approver=approver, action=action, reason=reason, decided_at=now)
    )
    outcome = evaluate_step_outcome(decided)
    if outcome != StepStatus.PENDING:
        decided = replace(decided, status=outcome, resolved_at=now)
    return appeal.with_step(decided)
