"""
Pure domain layer.

Value objects and collaborator contracts with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- Wall-clock time (see ``clock``)
- I/O

All domain objects are immutable and deterministic.
"""

from guardian_kernel.domain.appeal import (
    APPEAL_TRANSITIONS,
    OPEN_APPEAL_STATUSES,
    TERMINAL_APPEAL_STATUSES,
    Appeal,
    AppealOptions,
    AppealStatus,
    ApprovalStep,
    Decision,
    DecisionAction,
    StepStatus,
)
from guardian_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from guardian_kernel.domain.events import (
    AuditRecord,
    AuditSink,
    Notification,
    NotificationEvent,
    NotificationSink,
)
from guardian_kernel.domain.grant import Grant, GrantStatus
from guardian_kernel.domain.policy import (
    AppealConfig,
    Policy,
    StepStrategy,
    StepTemplate,
    parse_duration,
)
from guardian_kernel.domain.provider import (
    IdentityLookup,
    ProviderCapability,
    ProviderRegistry,
    Resource,
    ResourceLookup,
)
from guardian_kernel.domain.settings import EngineSettings

__all__ = [
    "APPEAL_TRANSITIONS",
    "OPEN_APPEAL_STATUSES",
    "TERMINAL_APPEAL_STATUSES",
    "Appeal",
    "AppealConfig",
    "AppealOptions",
    "AppealStatus",
    "ApprovalStep",
    "AuditRecord",
    "AuditSink",
    "Clock",
    "Decision",
    "DecisionAction",
    "DeterministicClock",
    "EngineSettings",
    "Grant",
    "GrantStatus",
    "IdentityLookup",
    "Notification",
    "NotificationEvent",
    "NotificationSink",
    "Policy",
    "ProviderCapability",
    "ProviderRegistry",
    "Resource",
    "ResourceLookup",
    "StepStatus",
    "StepStrategy",
    "StepTemplate",
    "SystemClock",
    "parse_duration",
]
