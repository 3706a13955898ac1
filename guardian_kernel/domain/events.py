"""
Audit and notification events (``guardian_kernel.domain.events``).

The core emits one ``AuditRecord`` per status transition and a
``Notification`` for approver- and requester-facing events.  Delivery is
fire-and-forget: sinks are external collaborators and a sink failure
never blocks or reverts a transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol
from uuid import UUID


class NotificationEvent(str, Enum):
    STEP_ACTIVATED = "step-activated"
    APPEAL_APPROVED = "appeal-approved"
    APPEAL_REJECTED = "appeal-rejected"
    GRANT_EXPIRING = "grant-expiring"
    GRANT_REVOKED = "grant-revoked"


@dataclass(frozen=True)
class AuditRecord:
    """One appeal status transition."""

    appeal_id: UUID
    from_status: str | None
    to_status: str
    actor: str
    timestamp: datetime
    reason: str | None = None


@dataclass(frozen=True)
class Notification:
    appeal_id: UUID
    event: NotificationEvent
    recipients: tuple[str, ...]
    detail: str = ""


class AuditSink(Protocol):
    def record(self, record: AuditRecord) -> None:
        ...


class NotificationSink(Protocol):
    def notify(self, notification: Notification) -> None:
        ...
