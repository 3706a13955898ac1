"""
guardian_services.appeal_service -- Appeal lifecycle state machine.

Responsibility:
    Owns an appeal's lifecycle: creation and step materialisation, chain
    advancement after step outcomes change, cancellation, and the terminal
    grant trigger (including manual retry of a failed grant).  Delegates
    condition evaluation and chain logic to the pure engines.

Architecture position:
    Services.  May import guardian_kernel (domain, models, services, utils)
    and guardian_engines.

Invariants enforced:
    - ``APPEAL_TRANSITIONS`` is the only source of legal transitions.
    - Every mutation of one appeal runs inside its AppealLockRegistry section.
    - The context snapshot is captured once at creation and stored; steps and
      their eligible approvers are derived from it and never re-queried.
    - Decisions and the ``approved`` status are committed before the provider
      grant call; a grant failure leaves the appeal ``approved`` with
      ``grant_error`` set, never back in review.
    - Audit records and notifications are dispatched only after commit, and
      only once the appeal's section has been released.
    - At most one open appeal per requester, resource and role.  The one
      exception is extension: with a policy ``extension_window`` an active
      appeal may be joined by a new one once its grant is permanent or
      expires within the window.  When the new appeal activates, the old
      grant and appeal are superseded (``revoked``) in the same transaction.

Failure modes:
    - ResourceNotFoundError, ProviderNotFoundError, PolicyNotFoundError,
      IdentityNotFoundError, DuplicateAppealError, ExtensionNotEligibleError,
      ValidationError on create.
    - InvalidExpressionError / AttributeMissingError / ApproverResolutionError
      when the policy cannot be materialised against the context.
    - InvalidTransitionError on cancel/retry from a disallowed status.
    - ProviderGrantFailedError when the grant exhausts its retries.
    - AppealNotFoundError on unknown ids.
"""

from __future__ import annotations

import json
from contextlib import ExitStack
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from guardian_engines.chain import advance_chain, build_context, materialize_steps
from guardian_kernel.domain.appeal import (
    CANCELLABLE_STATUSES,
    OPEN_APPEAL_STATUSES,
    Appeal,
    AppealOptions,
    AppealStatus,
    StepStatus,
    require_transition,
)
from guardian_kernel.domain.clock import Clock, SystemClock
from guardian_kernel.domain.events import (
    AuditRecord,
    Notification,
    NotificationEvent,
)
from guardian_kernel.domain.grant import Grant, GrantRegistrar, GrantStatus
from guardian_kernel.domain.policy import AppealConfig, Policy
from guardian_kernel.domain.provider import IdentityLookup, Resource, ResourceLookup
from guardian_kernel.exceptions import (
    AppealNotFoundError,
    DuplicateAppealError,
    ExtensionNotEligibleError,
    InvalidTransitionError,
    ProviderGrantFailedError,
    ResourceNotFoundError,
    ValidationError,
)
from guardian_kernel.logging_config import LogContext, get_logger
from guardian_kernel.models.appeal import AppealModel, ApprovalStepModel
from guardian_kernel.models.grant import GrantModel
from guardian_kernel.services.appeal_lock import AppealLockRegistry
from guardian_kernel.services.event_dispatcher import EventDispatcher
from guardian_kernel.services.policy_service import PolicyService
from guardian_kernel.utils.hashing import canonicalize_json
from guardian_services.provider_gateway import ProviderGateway

logger = get_logger("services.appeal")

Event = AuditRecord | Notification


def resolve_options(policy: Policy, options: AppealOptions | None) -> AppealOptions:
    """Apply the policy's appeal config to requested options.

    ``None`` means "use the policy default".  An explicit ``duration=None``
    requests permanent access.

    Raises:
        ValidationError: Permanent access not allowed, duration not among the
            allowed options, or a non-positive duration.
    """
    config = policy.appeal_config
    if options is None:
        options = AppealOptions(duration=config.default_duration)

    duration = options.duration
    if duration is None:
        if not config.allow_permanent:
            raise ValidationError(
                f"Policy {policy.policy_id} requires a duration; "
                "permanent access is not allowed",
                field="duration",
            )
        return options
    if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
        raise ValidationError(f"Invalid duration: {duration!r}", field="duration")
    if config.duration_options and duration not in config.duration_options:
        raise ValidationError(
            f"Duration {duration}s is not one of the allowed options "
            f"{list(config.duration_options)}",
            field="duration",
        )
    return options


def load_appeal(session: Session, appeal_id: UUID, for_update: bool = False) -> AppealModel:
    """Load an appeal row, locking it when ``for_update``."""
    stmt = select(AppealModel).where(AppealModel.id == appeal_id)
    if for_update:
        stmt = stmt.with_for_update(of=AppealModel)
    model = session.execute(stmt).scalar_one_or_none()
    if model is None:
        raise AppealNotFoundError(str(appeal_id))
    return model


def transition_appeal(
    appeal: Appeal,
    to_status: AppealStatus,
    actor: str,
    events: list[Event],
    now: datetime,
    reason: str | None = None,
) -> Appeal:
    """Move ``appeal`` to ``to_status`` and queue its audit record."""
    require_transition(appeal.appeal_id, appeal.status, to_status)
    logger.info(
        "appeal_transition",
        extra={
            "appeal_id": str(appeal.appeal_id),
            "from_status": appeal.status.value,
            "to_status": to_status.value,
            "actor": actor,
        },
    )
    events.append(AuditRecord(
        appeal_id=appeal.appeal_id,
        from_status=appeal.status.value,
        to_status=to_status.value,
        actor=actor,
        timestamp=now,
        reason=reason,
    ))
    return replace(appeal, status=to_status)


def resource_from_snapshot(appeal: Appeal) -> Resource:
    """Rebuild the resource reference captured at creation."""
    snap = appeal.context_snapshot.get("resource", {})
    return Resource(
        resource_id=appeal.resource_id,
        type=appeal.resource_type,
        urn=snap.get("urn", ""),
        name=snap.get("name", ""),
        provider_urn=snap.get("provider_urn", ""),
    )


class AppealService:
    """Creates appeals and drives them through their lifecycle."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        policies: PolicyService,
        resources: ResourceLookup,
        identities: IdentityLookup,
        gateway: ProviderGateway,
        locks: AppealLockRegistry,
        dispatcher: EventDispatcher,
        clock: Clock | None = None,
        grant_registrar: GrantRegistrar | None = None,
    ):
        self._session_factory = session_factory
        self._policies = policies
        self._resources = resources
        self._identities = identities
        self._gateway = gateway
        self._locks = locks
        self._dispatcher = dispatcher
        self._clock = clock or SystemClock()
        self._registrar = grant_registrar

    def set_grant_registrar(self, registrar: GrantRegistrar | None) -> None:
        self._registrar = registrar

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def create(
        self,
        requester: str,
        resource_id: str,
        policy_id: str,
        role: str,
        options: AppealOptions | None = None,
        policy_version: int | None = None,
        description: str = "",
    ) -> Appeal:
        """Validate, materialise and persist a new appeal.

        The appeal ends ``in_review`` with its first non-skipped step active,
        or ``approved`` (and then granted) when every step was skipped.
        """
        resource = self._resources.get(resource_id)
        if resource is None or resource.is_deleted:
            raise ResourceNotFoundError(resource_id, deleted=resource is not None)
        self._gateway.provider_for(resource.type)

        policy = self._policies.get(policy_id, policy_version)
        options = resolve_options(policy, options)
        self._gateway.validate(resource, options)

        attributes = self._identities.attributes(requester)
        context = json.loads(canonicalize_json(
            build_context(requester, attributes, resource, role, options)
        ))

        now = self._clock.now()
        appeal = Appeal(
            appeal_id=uuid4(),
            requester=requester,
            resource_id=resource.resource_id,
            resource_type=resource.type,
            role=role,
            policy_id=policy.policy_id,
            policy_version=policy.version,
            policy_hash=policy.policy_hash,
            options=options,
            status=AppealStatus.CREATED,
            steps=materialize_steps(policy.steps, context, now),
            context_snapshot=context,
            description=description,
            created_at=now,
        )

        outbox: list[Event] = []
        try:
            with LogContext.bind(appeal_id=str(appeal.appeal_id), actor=requester), \
                    self._locks.section(_open_key(requester, resource_id, role)), \
                    self._locks.section(appeal.appeal_id):
                events: list[Event] = []
                session = self._session_factory()
                try:
                    extends = self._check_open_appeals(
                        session, requester, resource_id, role, policy.appeal_config, now,
                    )
                    model = AppealModel.from_dto(appeal)
                    session.add(model)
                    events.append(AuditRecord(
                        appeal_id=appeal.appeal_id,
                        from_status=None,
                        to_status=AppealStatus.CREATED.value,
                        actor=requester,
                        timestamp=now,
                    ))
                    status = self.advance(session, model, requester, events)
                    session.commit()
                    created = model.to_dto()
                except Exception:
                    session.rollback()
                    raise
                finally:
                    session.close()
                outbox.extend(events)

                logger.info(
                    "appeal_created",
                    extra={
                        "appeal_id": str(created.appeal_id),
                        "requester": requester,
                        "resource_id": resource_id,
                        "role": role,
                        "policy_id": policy.policy_id,
                        "policy_version": policy.version,
                        "status": created.status.value,
                        "steps": len(created.steps),
                        "extends": str(extends) if extends else None,
                    },
                )

                if status == AppealStatus.APPROVED:
                    self.issue_grant(created.appeal_id, requester, outbox)
                    created = self.get(created.appeal_id)
        finally:
            self._dispatcher.dispatch(outbox)
        return created

    def advance(
        self,
        session: Session,
        model: AppealModel,
        actor: str,
        events: list[Event],
    ) -> AppealStatus:
        """Re-derive the chain after a step outcome changed.

        Must run inside the appeal's lock section with ``model`` loaded in
        ``session``; the caller commits.  Activates the next step, or moves
        the appeal to ``approved`` or ``rejected``.  Returns the new status.
        """
        now = self._clock.now()
        appeal = model.to_dto()
        state = advance_chain(appeal.steps, now, appeal.context_snapshot)
        appeal = replace(appeal, steps=state.steps)

        for step in state.auto_resolved:
            logger.info(
                "step_auto_resolved",
                extra={
                    "appeal_id": str(appeal.appeal_id),
                    "step": step.name,
                    "outcome": step.status.value,
                },
            )

        if state.activated is not None:
            logger.info(
                "step_activated",
                extra={
                    "appeal_id": str(appeal.appeal_id),
                    "step": state.activated.name,
                    "step_index": state.activated.index,
                    "approvers": list(state.activated.approvers),
                },
            )
            events.append(Notification(
                appeal_id=appeal.appeal_id,
                event=NotificationEvent.STEP_ACTIVATED,
                recipients=state.activated.approvers,
                detail=state.activated.name,
            ))

        if state.status != appeal.status:
            reason = None
            if state.status == AppealStatus.APPROVED:
                appeal = replace(appeal, decided_at=now)
                events.append(Notification(
                    appeal_id=appeal.appeal_id,
                    event=NotificationEvent.APPEAL_APPROVED,
                    recipients=(appeal.requester,),
                ))
            elif state.status == AppealStatus.REJECTED:
                reason = f"rejected at step '{state.rejected.name}'"
                if state.rejected.rejection_reason:
                    reason = f"{reason}: {state.rejected.rejection_reason}"
                appeal = replace(
                    appeal, decided_at=now, terminated_at=now, termination_reason=reason,
                )
                events.append(Notification(
                    appeal_id=appeal.appeal_id,
                    event=NotificationEvent.APPEAL_REJECTED,
                    recipients=(appeal.requester,),
                    detail=reason,
                ))
            appeal = transition_appeal(appeal, state.status, actor, events, now, reason)

        model.apply_dto(appeal)
        return appeal.status

    def grant(self, appeal_id: UUID, actor: str) -> Grant:
        """Invoke the provider grant for an ``approved`` appeal.

        On success the Grant is persisted, the appeal becomes ``active`` and
        the grant is registered with the scheduler.  On failure the appeal
        stays ``approved`` with ``grant_error`` recorded.
        """
        outbox: list[Event] = []
        try:
            with LogContext.bind(appeal_id=str(appeal_id), actor=actor), \
                    self._locks.section(appeal_id):
                return self.issue_grant(appeal_id, actor, outbox)
        finally:
            self._dispatcher.dispatch(outbox)

    def issue_grant(self, appeal_id: UUID, actor: str, outbox: list[Event]) -> Grant:
        """Body of ``grant`` for callers already holding the appeal's section.

        Committed events are appended to ``outbox``; the caller dispatches
        them once the section is released.  Active grants this appeal
        extends are locked for the duration of the provider call and
        superseded in the activating transaction.
        """
        session = self._session_factory()
        try:
            appeal = load_appeal(session, appeal_id).to_dto()
        finally:
            session.close()
        if appeal.status != AppealStatus.APPROVED:
            raise InvalidTransitionError(
                str(appeal_id), appeal.status.value, AppealStatus.ACTIVE.value,
            )

        resource = self._resources.get(appeal.resource_id)
        if resource is None:
            resource = resource_from_snapshot(appeal)

        with ExitStack() as held:
            for extended_id in self._extended_appeal_ids(appeal):
                held.enter_context(self._locks.section(extended_id))

            try:
                attempts = self._gateway.grant(
                    appeal_id, resource, appeal.requester, appeal.role, appeal.options,
                )
            except ProviderGrantFailedError as exc:
                self._record_grant_error(appeal_id, str(exc))
                logger.error(
                    "appeal_grant_failed",
                    extra={
                        "appeal_id": str(appeal_id),
                        "attempts": exc.attempts,
                        "error": exc.reason,
                    },
                )
                raise

            return self._activate(appeal_id, actor, attempts, outbox)

    def retry_grant(self, appeal_id: UUID, actor: str) -> Grant:
        """Re-attempt the provider grant for an appeal stuck in ``approved``."""
        logger.info(
            "appeal_grant_retry",
            extra={"appeal_id": str(appeal_id), "actor": actor},
        )
        return self.grant(appeal_id, actor)

    def cancel(self, appeal_id: UUID, actor: str, reason: str | None = None) -> Appeal:
        """Cancel a ``created`` or ``in_review`` appeal.  No provider call."""
        events: list[Event] = []
        with LogContext.bind(appeal_id=str(appeal_id), actor=actor), \
                self._locks.section(appeal_id):
            session = self._session_factory()
            try:
                model = load_appeal(session, appeal_id, for_update=True)
                appeal = model.to_dto()
                if appeal.status not in CANCELLABLE_STATUSES:
                    raise InvalidTransitionError(
                        str(appeal_id), appeal.status.value, AppealStatus.CANCELLED.value,
                    )
                now = self._clock.now()
                appeal = replace(
                    appeal, terminated_at=now,
                    termination_reason=reason or f"cancelled by {actor}",
                )
                appeal = transition_appeal(
                    appeal, AppealStatus.CANCELLED, actor, events, now, reason,
                )
                model.apply_dto(appeal)
                session.commit()
                cancelled = model.to_dto()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

        self._dispatcher.dispatch(events)
        return cancelled

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, appeal_id: UUID) -> Appeal:
        session = self._session_factory()
        try:
            return load_appeal(session, appeal_id).to_dto()
        finally:
            session.close()

    def list_appeals(
        self,
        requester: str | None = None,
        statuses: Iterable[AppealStatus] | None = None,
    ) -> list[Appeal]:
        """Appeals, oldest first, optionally filtered."""
        stmt = select(AppealModel).order_by(AppealModel.created_at, AppealModel.id)
        if requester is not None:
            stmt = stmt.where(AppealModel.requester == requester)
        if statuses is not None:
            stmt = stmt.where(AppealModel.status.in_([s.value for s in statuses]))
        session = self._session_factory()
        try:
            return [m.to_dto() for m in session.execute(stmt).scalars().all()]
        finally:
            session.close()

    def list_pending_approvals(self, approver: str) -> list[Appeal]:
        """In-review appeals whose active step lists ``approver`` as eligible."""
        session = self._session_factory()
        try:
            models = session.execute(
                select(AppealModel)
                .join(ApprovalStepModel, ApprovalStepModel.appeal_id == AppealModel.id)
                .where(
                    AppealModel.status == AppealStatus.IN_REVIEW.value,
                    ApprovalStepModel.status == StepStatus.PENDING.value,
                )
                .order_by(AppealModel.created_at, AppealModel.id)
            ).scalars().unique().all()
            appeals = [m.to_dto() for m in models]
        finally:
            session.close()
        return [
            a for a in appeals
            if a.active_step is not None and approver in a.active_step.approvers
        ]

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _check_open_appeals(
        self,
        session: Session,
        requester: str,
        resource_id: str,
        role: str,
        config: AppealConfig,
        now: datetime,
    ) -> UUID | None:
        """Refuse a duplicate appeal; return the active appeal it extends.

        A pending appeal always blocks.  An active one blocks unless the
        policy has an ``extension_window`` and the grant is permanent or
        expires within it.
        """
        rows = session.execute(
            select(AppealModel.id, AppealModel.status).where(
                AppealModel.requester == requester,
                AppealModel.resource_id == resource_id,
                AppealModel.role == role,
                AppealModel.status.in_([s.value for s in OPEN_APPEAL_STATUSES]),
            )
        ).all()
        extends = None
        for existing_id, status in rows:
            if status != AppealStatus.ACTIVE.value or config.extension_window is None:
                raise DuplicateAppealError(requester, resource_id, role, str(existing_id))
            expires_at = session.execute(
                select(GrantModel.expires_at).where(
                    GrantModel.appeal_id == existing_id,
                    GrantModel.status == GrantStatus.ACTIVE.value,
                ).limit(1)
            ).scalar_one_or_none()
            window = timedelta(seconds=config.extension_window)
            if expires_at is not None and expires_at - now > window:
                raise ExtensionNotEligibleError(
                    requester, resource_id, role, str(existing_id),
                    expires_at.isoformat(), config.extension_window,
                )
            extends = existing_id
        return extends

    def _extended_appeal_ids(self, appeal: Appeal) -> list[UUID]:
        """Appeals holding active grants for the same requester, resource and role."""
        session = self._session_factory()
        try:
            return sorted(session.execute(
                select(GrantModel.appeal_id).where(
                    *_same_access(appeal), GrantModel.appeal_id != appeal.appeal_id,
                )
            ).scalars().all(), key=str)
        finally:
            session.close()

    def _activate(
        self, appeal_id: UUID, actor: str, attempts: int, outbox: list[Event],
    ) -> Grant:
        """Persist the grant and move the appeal ``approved -> active``.

        Active grants for the same access held by other appeals are
        superseded in the same transaction; the provider is not called for
        them since the new grant covers the same access.
        """
        events: list[Event] = []
        session = self._session_factory()
        try:
            model = load_appeal(session, appeal_id, for_update=True)
            appeal = model.to_dto()
            now = self._clock.now()
            expires_at = None
            if appeal.options.duration is not None:
                expires_at = now + timedelta(seconds=appeal.options.duration)

            superseded = session.execute(
                select(GrantModel).where(
                    *_same_access(appeal), GrantModel.appeal_id != appeal_id,
                ).with_for_update()
            ).scalars().all()
            for old in superseded:
                self._supersede(session, old, appeal_id, actor, now, events)

            grant = Grant(
                grant_id=uuid4(),
                appeal_id=appeal_id,
                resource_id=appeal.resource_id,
                resource_type=appeal.resource_type,
                requester=appeal.requester,
                role=appeal.role,
                started_at=now,
                expires_at=expires_at,
                status=GrantStatus.ACTIVE,
            )
            session.add(GrantModel.from_dto(grant))
            appeal = replace(appeal, grant_error=None)
            appeal = transition_appeal(appeal, AppealStatus.ACTIVE, actor, events, now)
            model.apply_dto(appeal)
            superseded_ids = [old.id for old in superseded]
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        for old_id in superseded_ids:
            logger.info(
                "grant_superseded",
                extra={"grant_id": str(old_id), "by_appeal_id": str(appeal_id)},
            )
        logger.info(
            "grant_issued",
            extra={
                "appeal_id": str(appeal_id),
                "grant_id": str(grant.grant_id),
                "expires_at": grant.expires_at,
                "attempts": attempts,
            },
        )
        outbox.extend(events)
        if self._registrar is not None:
            self._registrar.register(grant)
        return grant

    def _supersede(
        self,
        session: Session,
        old: GrantModel,
        by_appeal_id: UUID,
        actor: str,
        now: datetime,
        events: list[Event],
    ) -> None:
        reason = f"superseded by appeal {by_appeal_id}"
        old.status = GrantStatus.REVOKED.value
        old.revoked_at = now
        old.revoked_by = actor
        old.revoke_reason = reason
        old.needs_attention = False

        appeal_model = load_appeal(session, old.appeal_id, for_update=True)
        appeal = replace(appeal_model.to_dto(), terminated_at=now, termination_reason=reason)
        appeal = transition_appeal(appeal, AppealStatus.REVOKED, actor, events, now, reason)
        appeal_model.apply_dto(appeal)

    def _record_grant_error(self, appeal_id: UUID, error: str) -> None:
        session = self._session_factory()
        try:
            model = load_appeal(session, appeal_id, for_update=True)
            model.grant_error = error
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def _open_key(requester: str, resource_id: str, role: str) -> str:
    return f"open:{requester}:{resource_id}:{role}"


def _same_access(appeal: Appeal) -> tuple:
    return (
        GrantModel.requester == appeal.requester,
        GrantModel.resource_id == appeal.resource_id,
        GrantModel.role == appeal.role,
        GrantModel.status == GrantStatus.ACTIVE.value,
    )
