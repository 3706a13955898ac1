"""
guardian_services.approval_resolver -- Approver decisions on steps.

Responsibility:
    Accept one approver's decision on an appeal's active step, resolve the
    step under its strategy and hand the chain back to the AppealService
    to advance.

Architecture position:
    Services.  Uses guardian_engines.chain for the decision rules and
    AppealService for advancement and the terminal grant.

Invariants enforced:
    - Only the active step accepts decisions, and only from its eligible
      approvers.
    - A repeat decision by the same approver replaces the earlier one.
    - Two decisions racing on one appeal are serialised; the chain advances
      exactly once per resolved step.
    - Events are dispatched after the appeal's section is released, even
      when the final approval's grant fails.

Failure modes:
    - AppealNotFoundError, StepNotFoundError, StepNotActiveError,
      NotEligibleError, ValidationError (unknown action).
    - ProviderGrantFailedError when the final approval's grant fails.  The
      decision and the ``approved`` status are already committed.
"""

from __future__ import annotations

from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from guardian_engines.chain import apply_decision
from guardian_kernel.domain.appeal import Appeal, AppealStatus, DecisionAction
from guardian_kernel.domain.clock import Clock, SystemClock
from guardian_kernel.exceptions import ValidationError
from guardian_kernel.logging_config import LogContext, get_logger
from guardian_kernel.services.appeal_lock import AppealLockRegistry
from guardian_kernel.services.event_dispatcher import EventDispatcher
from guardian_services.appeal_service import AppealService, Event, load_appeal

logger = get_logger("services.approval")


def parse_action(action: DecisionAction | str) -> DecisionAction:
    try:
        return DecisionAction(action)
    except ValueError:
        raise ValidationError(f"Unknown decision action: {action!r}", field="action") from None


class ApprovalResolver:
    """Records decisions and advances the chain."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        appeals: AppealService,
        locks: AppealLockRegistry,
        dispatcher: EventDispatcher,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._appeals = appeals
        self._locks = locks
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()

    def decide(
        self,
        appeal_id: UUID,
        step_name: str,
        approver: str,
        action: DecisionAction | str,
        reason: str | None = None,
    ) -> Appeal:
        """Record ``approver``'s decision on ``step_name``.

        Returns the appeal after the decision, advancement and (when the
        last step approved) the grant.
        """
        action = parse_action(action)
        outbox: list[Event] = []
        try:
            with LogContext.bind(appeal_id=str(appeal_id), actor=approver), \
                    self._locks.section(appeal_id):
                events: list[Event] = []
                session = self._session_factory()
                try:
                    model = load_appeal(session, appeal_id, for_update=True)
                    now = self._clock.now()
                    decided = apply_decision(
                        model.to_dto(), step_name, approver, action, reason, now,
                    )
                    model.apply_dto(decided)
                    step = decided.step_named(step_name)
                    logger.info(
                        "decision_recorded",
                        extra={
                            "appeal_id": str(appeal_id),
                            "step": step_name,
                            "approver": approver,
                            "action": action.value,
                            "step_status": step.status.value,
                        },
                    )
                    status = decided.status
                    if step.is_resolved:
                        logger.info(
                            "step_resolved",
                            extra={
                                "appeal_id": str(appeal_id),
                                "step": step_name,
                                "outcome": step.status.value,
                                "strategy": step.strategy.value,
                            },
                        )
                        status = self._appeals.advance(session, model, approver, events)
                    session.commit()
                    result = model.to_dto()
                except Exception:
                    session.rollback()
                    raise
                finally:
                    session.close()
                outbox.extend(events)

                if status == AppealStatus.APPROVED:
                    self._appeals.issue_grant(appeal_id, approver, outbox)
                    result = self._appeals.get(appeal_id)
        finally:
            self._dispatcher.dispatch(outbox)
        return result
