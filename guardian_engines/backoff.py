"""
guardian_engines.backoff -- Retry schedule for provider calls.

Pure: computes the waits between attempts, never sleeps.
"""

from __future__ import annotations

from guardian_kernel.domain.settings import EngineSettings


def backoff_delays(
    base_seconds: float, factor: float, max_attempts: int,
) -> tuple[float, ...]:
    """Waits before attempts 2..max_attempts.

    ``backoff_delays(1.0, 2.0, 5) == (1.0, 2.0, 4.0, 8.0)``
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    return tuple(base_seconds * factor ** n for n in range(max_attempts - 1))


def delays_for(settings: EngineSettings) -> tuple[float, ...]:
    return backoff_delays(
        settings.retry_base_seconds,
        settings.retry_factor,
        settings.retry_max_attempts,
    )
