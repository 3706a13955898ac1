"""
guardian_batch -- Time-driven grant expiry.

Responsibility:
    Runs the GrantScheduler: expiry firing, expiring-soon reminders and
    restart reconciliation for issued grants.

Architecture position:
    Batch -- outermost layer.  May import guardian_services and below;
    nothing imports guardian_batch.
"""

from guardian_batch.scheduler import GrantScheduler

__all__ = ["GrantScheduler"]
