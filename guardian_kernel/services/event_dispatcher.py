"""
guardian_kernel.services.event_dispatcher -- Fire-and-forget event delivery.

Responsibility:
    Deliver audit records and notifications to their sinks after the
    transition that produced them has committed.

Architecture position:
    Kernel > Services.  Sinks are external collaborators.

Invariants enforced:
    - A sink failure never blocks or reverts a transition: exceptions are
      logged with their traceback and dropped.
    - Events are delivered in the order they were produced.

Failure modes:
    None surfaced to callers.
"""

from __future__ import annotations

from collections.abc import Iterable
from concurrent.futures import Executor

from guardian_kernel.domain.events import (
    AuditRecord,
    AuditSink,
    Notification,
    NotificationSink,
)
from guardian_kernel.logging_config import get_logger

logger = get_logger("services.event_dispatcher")

Event = AuditRecord | Notification


class LoggingAuditSink:
    """Default audit sink: one structured log line per transition."""

    def __init__(self) -> None:
        self._logger = get_logger("audit")

    def record(self, record: AuditRecord) -> None:
        self._logger.info(
            "appeal_transition",
            extra={
                "appeal_id": str(record.appeal_id),
                "from_status": record.from_status,
                "to_status": record.to_status,
                "actor": record.actor,
                "timestamp": record.timestamp.isoformat(),
                "reason": record.reason,
            },
        )


class LoggingNotificationSink:
    """Default notification sink: logs instead of delivering."""

    def __init__(self) -> None:
        self._logger = get_logger("notifications")

    def notify(self, notification: Notification) -> None:
        self._logger.info(
            "notification",
            extra={
                "appeal_id": str(notification.appeal_id),
                "event": notification.event.value,
                "recipients": list(notification.recipients),
                "detail": notification.detail,
            },
        )


class EventDispatcher:
    """Routes events to the audit and notification sinks.

    With an ``executor`` delivery happens off the caller's thread;
    otherwise inline.  Either way the caller never sees a sink error.
    """

    def __init__(
        self,
        audit_sink: AuditSink | None = None,
        notification_sink: NotificationSink | None = None,
        executor: Executor | None = None,
    ):
        self._audit_sink = audit_sink or LoggingAuditSink()
        self._notification_sink = notification_sink or LoggingNotificationSink()
        self._executor = executor

    def dispatch(self, events: Iterable[Event]) -> None:
        batch = list(events)
        if not batch:
            return
        if self._executor is not None:
            self._executor.submit(self._deliver_all, batch)
        else:
            self._deliver_all(batch)

    def _deliver_all(self, events: list[Event]) -> None:
        for event in events:
            self._deliver(event)

    def _deliver(self, event: Event) -> None:
        try:
            if isinstance(event, AuditRecord):
                self._audit_sink.record(event)
            else:
                self._notification_sink.notify(event)
        except Exception:
            logger.exception(
                "event_delivery_failed",
                extra={
                    "event_type": type(event).__name__,
                    "appeal_id": str(event.appeal_id),
                },
            )
