"""
GrantScheduler -- In-process expiry scheduler for issued grants.

Contract:
    Keeps an in-memory wake-up heap of grant expiries and, on every tick,
    expires each active, unflagged grant whose ``expires_at`` has passed
    through the same revoke path a manual revoke uses.  Also sends
    ``grant-expiring`` reminders for grants entering the reminder window.

Architecture: guardian_batch.  Uses guardian_services.GrantService for the
    revoke path and queries; attaches to an AppealEngine as its grant
    registrar so newly issued grants are scheduled immediately.

Invariants enforced:
    - All timestamps from the injected Clock.
    - The grants table is the durable registry; the heap only decides when
      to wake.  ``reconcile()`` rebuilds it after a restart and fires any
      expiries missed while the process was down.
    - Access is never marked expired without provider confirmation; a
      failed expiry leaves the grant flagged and it is not retried
      automatically.
    - Graceful shutdown: the stop signal is checked between grants.
"""

from __future__ import annotations

import heapq
import threading
from datetime import datetime
from uuid import UUID

from guardian_kernel.domain.clock import Clock, SystemClock
from guardian_kernel.domain.grant import Grant, GrantStatus
from guardian_kernel.domain.settings import EngineSettings
from guardian_kernel.exceptions import ProviderRevokeFailedError
from guardian_kernel.logging_config import LogContext, get_logger
from guardian_services.appeal_engine import AppealEngine
from guardian_services.grant_service import GrantService

logger = get_logger("batch.scheduler")

# Floor between loop iterations while an expiry keeps failing.
_MIN_WAIT_SECONDS = 1.0


class GrantScheduler:
    """Fires grant expiries and reminders.

    Contract:
        - ``register(grant)`` schedules a newly issued grant.
        - ``tick()`` expires due grants and sends reminders.
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - NOT a distributed scheduler (no leader election).  Two processes
          firing the same expiry are safe because the revoke path is a
          no-op on a terminal grant and providers revoke idempotently.
    """

    def __init__(
        self,
        grant_service: GrantService,
        clock: Clock | None = None,
        settings: EngineSettings | None = None,
    ):
        self._grants = grant_service
        self._clock = clock or SystemClock()
        self._settings = settings or EngineSettings()
        self._heap: list[tuple[datetime, UUID]] = []
        self._heap_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def for_engine(cls, engine: AppealEngine) -> GrantScheduler:
        """Build a scheduler sharing ``engine``'s services and register it."""
        scheduler = cls(engine.grant_service, engine.clock, engine.settings)
        engine.set_grant_registrar(scheduler)
        return scheduler

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def register(self, grant: Grant) -> None:
        if grant.expires_at is None or grant.is_terminal:
            return
        with self._heap_lock:
            heapq.heappush(self._heap, (grant.expires_at, grant.grant_id))
        logger.debug(
            "grant_scheduled",
            extra={"grant_id": str(grant.grant_id), "expires_at": grant.expires_at},
        )
        self._wake_event.set()

    def tick(self) -> int:
        """Expire due grants and send reminders (public for testing).

        Returns the number of grants expired.
        """
        now = self._clock.now()
        self._pop_due(now)

        expired = 0
        for grant_id in self._grants.due_grant_ids(now):
            if self._stop_event.is_set():
                break
            with LogContext.bind(grant_id=str(grant_id)):
                try:
                    grant = self._grants.expire(grant_id)
                except ProviderRevokeFailedError as e:
                    logger.warning(
                        "grant_expiry_failed",
                        extra={"grant_id": str(grant_id), "error": e.reason},
                    )
                    continue
                except Exception:
                    logger.exception("grant_expiry_error", extra={"grant_id": str(grant_id)})
                    continue
            if grant.status == GrantStatus.EXPIRED:
                expired += 1

        if self._settings.reminder_window_seconds > 0:
            self._grants.remind_expiring(self._settings.reminder_window_seconds, now)

        if expired:
            logger.info("scheduler_tick", extra={"expired": expired})
        return expired

    def reconcile(self) -> int:
        """Rebuild the wake-up heap from persisted grants and fire missed expiries."""
        active = self._grants.list_grants(
            statuses=[GrantStatus.ACTIVE], needs_attention=False,
        )
        with self._heap_lock:
            self._heap = [
                (g.expires_at, g.grant_id) for g in active if g.expires_at is not None
            ]
            heapq.heapify(self._heap)
            scheduled = len(self._heap)
        expired = self.tick()
        logger.info(
            "scheduler_reconciled",
            extra={"scheduled": scheduled, "expired": expired},
        )
        return expired

    def revoke_now(self, grant_id: UUID, actor: str, reason: str | None = None) -> Grant:
        """Manual revoke; a no-op returning the grant if it is already terminal."""
        return self._grants.revoke(grant_id, actor, reason)

    def next_wakeup(self) -> datetime | None:
        """Earliest known expiry, from the heap or the grants table."""
        with self._heap_lock:
            heap_next = self._heap[0][0] if self._heap else None
        stored_next = self._grants.next_expiry()
        candidates = [t for t in (heap_next, stored_next) if t is not None]
        return min(candidates) if candidates else None

    def start(self) -> None:
        """Reconcile, then run the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self.reconcile()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="grant-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "scheduler_started",
            extra={"tick_interval": self._settings.scheduler_tick_seconds},
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the scheduler to finish.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def __len__(self) -> int:
        with self._heap_lock:
            return len(self._heap)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        """Background loop. Exits when stop_event is set."""
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_exception")
            self._wake_event.wait(timeout=self._wait_seconds())
            self._wake_event.clear()

    def _wait_seconds(self) -> float:
        """Until the next expiry or the tick interval, whichever is sooner."""
        interval = self._settings.scheduler_tick_seconds
        try:
            wakeup = self.next_wakeup()
        except Exception:
            logger.exception("scheduler_wakeup_lookup_failed")
            return interval
        if wakeup is None:
            return interval
        delta = (wakeup - self._clock.now()).total_seconds()
        return max(_MIN_WAIT_SECONDS, min(interval, delta))

    def _pop_due(self, now: datetime) -> None:
        with self._heap_lock:
            while self._heap and self._heap[0][0] <= now:
                heapq.heappop(self._heap)
