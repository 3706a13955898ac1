"""Engine tuning knobs (``guardian_kernel.domain.settings``).

Loaded from YAML by ``guardian_config.load_settings``; the kernel only
sees the resulting frozen value.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class EngineSettings:
    """Timeouts, retry policy and scheduler cadence.

    Provider retries wait ``retry_base_seconds * retry_factor ** n``
    between attempts, for at most ``retry_max_attempts`` attempts.
    """

    provider_timeout_seconds: float = 30.0
    retry_base_seconds: float = 1.0
    retry_factor: float = 2.0
    retry_max_attempts: int = 5
    scheduler_tick_seconds: float = 60.0
    reminder_window_seconds: int = 86400

    def __post_init__(self) -> None:
        if self.provider_timeout_seconds <= 0:
            raise ValueError("provider_timeout_seconds must be positive")
        if self.retry_base_seconds < 0:
            raise ValueError("retry_base_seconds must not be negative")
        if self.retry_factor < 1:
            raise ValueError("retry_factor must be >= 1")
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        if self.scheduler_tick_seconds <= 0:
            raise ValueError("scheduler_tick_seconds must be positive")
        if self.reminder_window_seconds < 0:
            raise ValueError("reminder_window_seconds must not be negative")
