"""
guardian_services.grant_service -- Revoke path and grant queries.

Responsibility:
    The single path by which access is withdrawn, used both for manual
    revocation and for expiry: provider revoke with retry, then the grant
    and its appeal move to a terminal status together.  Also answers the
    scheduler's questions (what is due, what expires next, who needs a
    reminder).

Architecture position:
    Services.  Shares the appeal critical section with AppealService and
    ApprovalResolver, keyed by the grant's appeal id.

Invariants enforced:
    - A grant leaves ``active`` only after the provider confirmed the revoke.
    - A revoke on an already-terminal grant is a no-op returning the grant,
      so expiry racing a manual revoke runs the provider call once.
    - On retry exhaustion the grant stays ``active`` with ``needs_attention``
      set and ``last_error`` recorded; flagged grants are skipped by
      automatic expiry.
    - The appeal moves ``active -> revoked`` or ``active -> expired`` in the
      same transaction as its grant.  Only ``expire`` produces ``expired``;
      a manual revoke is ``revoked`` whatever its reason text.
    - Events are dispatched after the appeal section is released.

Failure modes:
    - GrantNotFoundError on unknown ids.
    - ProviderRevokeFailedError after the last failed attempt.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from guardian_kernel.domain.appeal import AppealStatus
from guardian_kernel.domain.clock import Clock, SystemClock
from guardian_kernel.domain.events import Notification, NotificationEvent
from guardian_kernel.domain.grant import (
    EXPIRY_REASON,
    SYSTEM_ACTOR,
    Grant,
    GrantStatus,
)
from guardian_kernel.domain.provider import ResourceLookup
from guardian_kernel.exceptions import GrantNotFoundError, ProviderRevokeFailedError
from guardian_kernel.logging_config import LogContext, get_logger
from guardian_kernel.models.grant import GrantModel
from guardian_kernel.services.appeal_lock import AppealLockRegistry
from guardian_kernel.services.event_dispatcher import EventDispatcher
from guardian_services.appeal_service import (
    Event,
    load_appeal,
    resource_from_snapshot,
    transition_appeal,
)
from guardian_services.provider_gateway import ProviderGateway

logger = get_logger("services.grant")


def _due_filter(now: datetime):
    return (
        GrantModel.status == GrantStatus.ACTIVE.value,
        GrantModel.needs_attention.is_(False),
        GrantModel.expires_at.is_not(None),
        GrantModel.expires_at <= now,
    )


class GrantService:
    """Withdraws access and tracks grants."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        resources: ResourceLookup,
        gateway: ProviderGateway,
        locks: AppealLockRegistry,
        dispatcher: EventDispatcher,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._resources = resources
        self._gateway = gateway
        self._locks = locks
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Revoke path
    # -------------------------------------------------------------------------

    def revoke(
        self, grant_id: UUID, actor: str, reason: str | None = None,
    ) -> Grant:
        """Revoke ``grant_id`` through its provider.

        The grant and its appeal end ``revoked``.  Returns the grant as
        stored afterwards.
        """
        return self._withdraw(grant_id, actor, reason, expired=False)

    def expire(self, grant_id: UUID) -> Grant:
        """Withdraw a grant whose duration has elapsed; both end ``expired``."""
        return self._withdraw(grant_id, SYSTEM_ACTOR, EXPIRY_REASON, expired=True)

    def _withdraw(
        self, grant_id: UUID, actor: str, reason: str | None, expired: bool,
    ) -> Grant:
        grant = self.get(grant_id)
        outbox: list[Event] = []
        try:
            with LogContext.bind(
                appeal_id=str(grant.appeal_id), grant_id=str(grant_id), actor=actor,
            ), self._locks.section(grant.appeal_id):
                session = self._session_factory()
                try:
                    grant = self._load(session, grant_id).to_dto()
                    appeal = load_appeal(session, grant.appeal_id).to_dto()
                finally:
                    session.close()
                if grant.is_terminal:
                    logger.info(
                        "grant_revoke_skipped",
                        extra={"grant_id": str(grant_id), "status": grant.status.value},
                    )
                    return grant

                resource = self._resources.get(grant.resource_id)
                if resource is None:
                    resource = resource_from_snapshot(appeal)

                try:
                    attempts = self._gateway.revoke(
                        grant_id, resource, grant.requester, grant.role,
                    )
                except ProviderRevokeFailedError as exc:
                    self._flag(grant_id, exc)
                    raise

                return self._finish(grant_id, actor, reason, expired, attempts, outbox)
        finally:
            self._dispatcher.dispatch(outbox)

    def _finish(
        self,
        grant_id: UUID,
        actor: str,
        reason: str | None,
        expired: bool,
        attempts: int,
        outbox: list[Event],
    ) -> Grant:
        grant_status = GrantStatus.EXPIRED if expired else GrantStatus.REVOKED
        appeal_status = AppealStatus.EXPIRED if expired else AppealStatus.REVOKED

        events: list[Event] = []
        session = self._session_factory()
        try:
            model = self._load(session, grant_id, for_update=True)
            appeal_model = load_appeal(session, model.appeal_id, for_update=True)
            now = self._clock.now()

            model.status = grant_status.value
            model.revoked_at = now
            model.revoked_by = actor
            model.revoke_reason = reason
            model.needs_attention = False

            appeal = replace(
                appeal_model.to_dto(), terminated_at=now,
                termination_reason=reason or f"revoked by {actor}",
            )
            appeal = transition_appeal(appeal, appeal_status, actor, events, now, reason)
            appeal_model.apply_dto(appeal)
            session.commit()
            grant = model.to_dto()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        events.append(Notification(
            appeal_id=grant.appeal_id,
            event=NotificationEvent.GRANT_REVOKED,
            recipients=(grant.requester,),
            detail=reason or "",
        ))
        logger.info(
            "grant_expired" if expired else "grant_revoked",
            extra={
                "grant_id": str(grant_id),
                "appeal_id": str(grant.appeal_id),
                "actor": actor,
                "reason": reason,
                "attempts": attempts,
            },
        )
        outbox.extend(events)
        return grant

    def _flag(self, grant_id: UUID, exc: ProviderRevokeFailedError) -> None:
        session = self._session_factory()
        try:
            model = self._load(session, grant_id, for_update=True)
            model.needs_attention = True
            model.failure_count = (model.failure_count or 0) + exc.attempts
            model.last_error = str(exc)
            session.commit()
            failure_count = model.failure_count
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.error(
            "grant_revoke_flagged",
            extra={
                "grant_id": str(grant_id),
                "attempts": exc.attempts,
                "failure_count": failure_count,
                "error": exc.reason,
            },
        )

    # -------------------------------------------------------------------------
    # Scheduler queries
    # -------------------------------------------------------------------------

    def due_grant_ids(self, now: datetime | None = None) -> list[UUID]:
        """Active, unflagged grants whose expiry has passed, earliest first."""
        now = now or self._clock.now()
        session = self._session_factory()
        try:
            return list(session.execute(
                select(GrantModel.id)
                .where(*_due_filter(now))
                .order_by(GrantModel.expires_at, GrantModel.id)
            ).scalars().all())
        finally:
            session.close()

    def next_expiry(self) -> datetime | None:
        """Earliest expiry among active, unflagged grants."""
        session = self._session_factory()
        try:
            return session.execute(
                select(func.min(GrantModel.expires_at)).where(
                    GrantModel.status == GrantStatus.ACTIVE.value,
                    GrantModel.needs_attention.is_(False),
                )
            ).scalar()
        finally:
            session.close()

    def remind_expiring(self, window_seconds: int, now: datetime | None = None) -> int:
        """Send one ``grant-expiring`` reminder per grant entering the window.

        Returns the number of reminders sent.
        """
        now = now or self._clock.now()
        horizon = now + timedelta(seconds=window_seconds)
        events: list[Event] = []
        session = self._session_factory()
        try:
            models = session.execute(
                select(GrantModel).where(
                    GrantModel.status == GrantStatus.ACTIVE.value,
                    GrantModel.needs_attention.is_(False),
                    GrantModel.reminder_sent_at.is_(None),
                    GrantModel.expires_at.is_not(None),
                    GrantModel.expires_at > now,
                    GrantModel.expires_at <= horizon,
                ).with_for_update()
            ).scalars().all()
            for model in models:
                model.reminder_sent_at = now
                events.append(Notification(
                    appeal_id=model.appeal_id,
                    event=NotificationEvent.GRANT_EXPIRING,
                    recipients=(model.requester,),
                    detail=model.expires_at.isoformat(),
                ))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if events:
            logger.info("grant_reminders_sent", extra={"count": len(events)})
        self._dispatcher.dispatch(events)
        return len(events)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, grant_id: UUID) -> Grant:
        session = self._session_factory()
        try:
            return self._load(session, grant_id).to_dto()
        finally:
            session.close()

    def grant_for_appeal(self, appeal_id: UUID) -> Grant | None:
        """The appeal's most recent grant, if it was ever granted."""
        session = self._session_factory()
        try:
            model = session.execute(
                select(GrantModel)
                .where(GrantModel.appeal_id == appeal_id)
                .order_by(GrantModel.started_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return model.to_dto() if model is not None else None
        finally:
            session.close()

    def list_grants(
        self,
        requester: str | None = None,
        statuses: Iterable[GrantStatus] | None = None,
        needs_attention: bool | None = None,
    ) -> list[Grant]:
        stmt = select(GrantModel).order_by(GrantModel.started_at, GrantModel.id)
        if requester is not None:
            stmt = stmt.where(GrantModel.requester == requester)
        if statuses is not None:
            stmt = stmt.where(GrantModel.status.in_([s.value for s in statuses]))
        if needs_attention is not None:
            stmt = stmt.where(GrantModel.needs_attention.is_(needs_attention))
        session = self._session_factory()
        try:
            return [m.to_dto() for m in session.execute(stmt).scalars().all()]
        finally:
            session.close()

    @staticmethod
    def _load(session: Session, grant_id: UUID, for_update: bool = False) -> GrantModel:
        stmt = select(GrantModel).where(GrantModel.id == grant_id)
        if for_update:
            stmt = stmt.with_for_update()
        model = session.execute(stmt).scalar_one_or_none()
        if model is None:
            raise GrantNotFoundError(str(grant_id))
        return model
