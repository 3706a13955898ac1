"""Kernel infrastructure services."""

from guardian_kernel.services.appeal_lock import AppealLockRegistry
from guardian_kernel.services.event_dispatcher import (
    EventDispatcher,
    LoggingAuditSink,
    LoggingNotificationSink,
)
from guardian_kernel.services.policy_service import PolicyService, compute_policy_hash

__all__ = [
    "AppealLockRegistry",
    "EventDispatcher",
    "LoggingAuditSink",
    "LoggingNotificationSink",
    "PolicyService",
    "compute_policy_hash",
]
