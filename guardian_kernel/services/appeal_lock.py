"""
guardian_kernel.services.appeal_lock -- Per-appeal critical sections.

Responsibility:
    Serialise every mutating operation on one appeal (create's activation,
    decide, advance, cancel, grant, retry, revoke, expiry) while letting
    different appeals proceed fully in parallel.

Architecture position:
    Kernel > Services.  Pure in-process concurrency primitive; no I/O.

Invariants enforced:
    - One re-entrant lock per appeal key; no global lock is held while a
      section runs.  The registry's own guard is only held to look up or
      discard an entry.
    - Entries are reference-counted and discarded once no thread holds or
      waits for them, so the registry does not grow with appeal history.

Non-goals:
    - Cross-process exclusion.  On PostgreSQL the services additionally
      load rows with ``SELECT ... FOR UPDATE``.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.refs = 0


class AppealLockRegistry:
    """Keyed map of re-entrant locks, one per appeal id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    @contextmanager
    def section(self, appeal_id: UUID | str) -> Iterator[None]:
        """Hold the appeal's critical section for the ``with`` body.

        Re-entrant: a thread already inside the section may enter again,
        which lets ``decide`` call ``advance`` and ``advance`` call grant.
        """
        key = str(appeal_id)
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        """Number of appeals currently held or awaited."""
        with self._guard:
            return len(self._entries)
