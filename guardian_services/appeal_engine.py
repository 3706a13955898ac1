"""
guardian_services.appeal_engine -- Wiring point for the appeal services.

Responsibility:
    Creates every service exactly once and wires them together around one
    lock registry, one event dispatcher, one provider gateway and one
    clock.  Exposes the caller-facing operations of the engine.

Architecture position:
    Services -- top of the service layer.  The only place where the
    appeal services are constructed and composed.  ``guardian_batch``
    attaches its scheduler here through ``set_grant_registrar``.

Invariants enforced:
    - Single-instance lifecycle: one AppealLockRegistry per engine, so every
      service serialises on the same per-appeal sections.
    - DI transparency: all wiring is visible in ``__init__``.

Usage:
    from guardian_services.appeal_engine import AppealEngine

    engine = AppealEngine(
        session_factory=get_session_factory(),
        providers=registry,
        resources=catalog,
        identities=directory,
    )
    engine.load_policies("policies/")
    appeal = engine.create_appeal("alice@example.com", "db-prod", "db-access", "viewer")
    engine.decide(appeal.appeal_id, "manager", "bob@example.com", "approve")
"""

from __future__ import annotations

import time
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from pathlib import Path
from typing import Iterable
from uuid import UUID

from sqlalchemy.orm import Session

from guardian_config.loader import load_policies
from guardian_kernel.domain.appeal import Appeal, AppealOptions, AppealStatus, DecisionAction
from guardian_kernel.domain.clock import Clock, SystemClock
from guardian_kernel.domain.events import AuditSink, NotificationSink
from guardian_kernel.domain.grant import Grant, GrantRegistrar, GrantStatus
from guardian_kernel.domain.policy import Policy
from guardian_kernel.domain.provider import (
    IdentityLookup,
    ProviderRegistry,
    ResourceLookup,
)
from guardian_kernel.domain.settings import EngineSettings
from guardian_kernel.logging_config import get_logger
from guardian_kernel.services.appeal_lock import AppealLockRegistry
from guardian_kernel.services.event_dispatcher import (
    EventDispatcher,
    LoggingAuditSink,
    LoggingNotificationSink,
)
from guardian_kernel.services.policy_service import PolicyService
from guardian_services.appeal_service import AppealService
from guardian_services.approval_resolver import ApprovalResolver
from guardian_services.grant_service import GrantService
from guardian_services.provider_gateway import ProviderGateway

logger = get_logger("services.engine")


class AppealEngine:
    """Central factory and facade for the appeal services.

    Contract:
        Receives a session factory and the external collaborators.  Sinks
        default to the logging sinks; settings default to
        ``EngineSettings()``.
        Sinks are called on ``event_executor``, never inside an appeal's
        section; without one the engine owns a single-worker pool that
        ``close`` drains.

    Non-goals:
        - Does NOT run the expiry scheduler; see ``guardian_batch``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        providers: ProviderRegistry,
        resources: ResourceLookup,
        identities: IdentityLookup,
        audit_sink: AuditSink | None = None,
        notification_sink: NotificationSink | None = None,
        clock: Clock | None = None,
        settings: EngineSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        event_executor: Executor | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self.settings = settings or EngineSettings()
        self.providers = providers

        # Shared infrastructure
        self.locks = AppealLockRegistry()
        # One worker keeps delivery in commit order.
        self._owns_executor = event_executor is None
        self.event_executor = event_executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="guardian-events",
        )
        self.dispatcher = EventDispatcher(
            audit_sink or LoggingAuditSink(),
            notification_sink or LoggingNotificationSink(),
            executor=self.event_executor,
        )
        self.gateway = ProviderGateway(providers, self.settings, sleep=sleep)
        self.policy_service = PolicyService(session_factory, self._clock)

        # Lifecycle services (share locks, dispatcher, gateway)
        self.appeal_service = AppealService(
            session_factory,
            policies=self.policy_service,
            resources=resources,
            identities=identities,
            gateway=self.gateway,
            locks=self.locks,
            dispatcher=self.dispatcher,
            clock=self._clock,
        )
        self.approval_resolver = ApprovalResolver(
            session_factory,
            appeals=self.appeal_service,
            locks=self.locks,
            dispatcher=self.dispatcher,
            clock=self._clock,
        )
        self.grant_service = GrantService(
            session_factory,
            resources=resources,
            gateway=self.gateway,
            locks=self.locks,
            dispatcher=self.dispatcher,
            clock=self._clock,
        )

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def session_factory(self) -> Callable[[], Session]:
        return self._session_factory

    def set_grant_registrar(self, registrar: GrantRegistrar | None) -> None:
        """Route newly issued grants to ``registrar`` (the scheduler)."""
        self.appeal_service.set_grant_registrar(registrar)

    def close(self) -> None:
        """Stop provider workers and drain pending event deliveries."""
        self.gateway.shutdown()
        if self._owns_executor:
            self.event_executor.shutdown(wait=True)

    # -------------------------------------------------------------------------
    # Policies
    # -------------------------------------------------------------------------

    def register_policy(self, policy: Policy) -> Policy:
        return self.policy_service.store(policy)

    def revise_policy(self, policy: Policy) -> Policy:
        return self.policy_service.revise(policy)

    def load_policies(self, directory: str | Path) -> list[Policy]:
        """Store every policy file under ``directory``.  Returns them stored."""
        stored = [self.policy_service.store(p) for p in load_policies(directory)]
        logger.info(
            "policies_loaded",
            extra={"directory": str(directory), "count": len(stored)},
        )
        return stored

    def get_policy(self, policy_id: str, version: int | None = None) -> Policy:
        return self.policy_service.get(policy_id, version)

    # -------------------------------------------------------------------------
    # Appeals
    # -------------------------------------------------------------------------

    def create_appeal(
        self,
        requester: str,
        resource_id: str,
        policy_id: str,
        role: str,
        options: AppealOptions | None = None,
        policy_version: int | None = None,
        description: str = "",
    ) -> Appeal:
        return self.appeal_service.create(
            requester, resource_id, policy_id, role,
            options=options, policy_version=policy_version, description=description,
        )

    def decide(
        self,
        appeal_id: UUID,
        step_name: str,
        approver: str,
        action: DecisionAction | str,
        reason: str | None = None,
    ) -> Appeal:
        return self.approval_resolver.decide(appeal_id, step_name, approver, action, reason)

    def approve(self, appeal_id: UUID, step_name: str, approver: str,
                reason: str | None = None) -> Appeal:
        return self.decide(appeal_id, step_name, approver, DecisionAction.APPROVE, reason)

    def reject(self, appeal_id: UUID, step_name: str, approver: str,
               reason: str | None = None) -> Appeal:
        return self.decide(appeal_id, step_name, approver, DecisionAction.REJECT, reason)

    def cancel_appeal(self, appeal_id: UUID, actor: str, reason: str | None = None) -> Appeal:
        return self.appeal_service.cancel(appeal_id, actor, reason)

    def retry_grant(self, appeal_id: UUID, actor: str) -> Grant:
        return self.appeal_service.retry_grant(appeal_id, actor)

    def get_appeal(self, appeal_id: UUID) -> Appeal:
        return self.appeal_service.get(appeal_id)

    def list_appeals(
        self,
        requester: str | None = None,
        statuses: Iterable[AppealStatus] | None = None,
    ) -> list[Appeal]:
        return self.appeal_service.list_appeals(requester, statuses)

    def list_pending_approvals(self, approver: str) -> list[Appeal]:
        return self.appeal_service.list_pending_approvals(approver)

    # -------------------------------------------------------------------------
    # Grants
    # -------------------------------------------------------------------------

    def revoke_grant(self, grant_id: UUID, actor: str, reason: str | None = None) -> Grant:
        return self.grant_service.revoke(grant_id, actor, reason)

    def get_grant(self, grant_id: UUID) -> Grant:
        return self.grant_service.get(grant_id)

    def grant_for_appeal(self, appeal_id: UUID) -> Grant | None:
        return self.grant_service.grant_for_appeal(appeal_id)

    def list_grants(
        self,
        requester: str | None = None,
        statuses: Iterable[GrantStatus] | None = None,
        needs_attention: bool | None = None,
    ) -> list[Grant]:
        return self.grant_service.list_grants(requester, statuses, needs_attention)
