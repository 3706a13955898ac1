"""
guardian_services.provider_gateway -- Bounded, retried provider calls.

Responsibility:
    Every call into a provider capability goes through here: looked up by
    resource type, run with a timeout on a worker thread, and retried with
    exponential backoff.

Architecture position:
    Services.  Uses guardian_engines.backoff for the retry schedule and the
    kernel's ProviderRegistry for lookup.

Invariants enforced:
    - A provider call never blocks its caller longer than
      ``provider_timeout_seconds`` per attempt.
    - At most ``retry_max_attempts`` attempts; waits follow
      ``retry_base_seconds * retry_factor ** n``.
    - Exhaustion is surfaced as a typed error, never swallowed.

Failure modes:
    - ProviderNotFoundError from ``provider_for`` and ``validate`` if no
      capability is registered for the type.
    - ProviderGrantFailedError / ProviderRevokeFailedError after the last
      failed attempt, or with zero attempts when the capability is gone by
      the time access is issued or withdrawn.
    - ``validate`` errors propagate unchanged (no retry).
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable
from uuid import UUID

from guardian_engines.backoff import delays_for
from guardian_kernel.domain.appeal import AppealOptions
from guardian_kernel.domain.provider import (
    ProviderCapability,
    ProviderRegistry,
    Resource,
)
from guardian_kernel.domain.settings import EngineSettings
from guardian_kernel.exceptions import (
    ProviderGrantFailedError,
    ProviderNotFoundError,
    ProviderRevokeFailedError,
    ProviderTimeoutError,
)
from guardian_kernel.logging_config import get_logger

logger = get_logger("services.provider_gateway")


class _RetriesExhausted(Exception):
    def __init__(self, attempts: int, last: BaseException):
        self.attempts = attempts
        self.last = last
        super().__init__(str(last))


class ProviderGateway:
    """Timeout and retry wrapper around the provider registry."""

    def __init__(
        self,
        registry: ProviderRegistry,
        settings: EngineSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 16,
    ):
        self._registry = registry
        self._settings = settings or EngineSettings()
        self._sleep = sleep
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="guardian-provider",
        )

    def provider_for(self, resource_type: str) -> ProviderCapability:
        return self._registry.get(resource_type)

    def validate(self, resource: Resource, options: AppealOptions) -> None:
        self.provider_for(resource.type).validate(resource, options)

    def grant(
        self,
        appeal_id: UUID,
        resource: Resource,
        requester: str,
        role: str,
        options: AppealOptions,
    ) -> int:
        """Issue access.  Returns the number of attempts it took."""
        try:
            provider = self.provider_for(resource.type)
        except ProviderNotFoundError as e:
            raise ProviderGrantFailedError(
                str(appeal_id), resource.type, 0, _describe(e),
            ) from e
        try:
            return self._with_retry(
                resource.type, "grant",
                lambda: provider.grant(resource, requester, role, options),
            )
        except _RetriesExhausted as e:
            raise ProviderGrantFailedError(
                str(appeal_id), resource.type, e.attempts, _describe(e.last),
            ) from e.last

    def revoke(
        self, grant_id: UUID, resource: Resource, requester: str, role: str,
    ) -> int:
        """Withdraw access.  Returns the number of attempts it took."""
        try:
            provider = self.provider_for(resource.type)
        except ProviderNotFoundError as e:
            raise ProviderRevokeFailedError(
                str(grant_id), resource.type, 0, _describe(e),
            ) from e
        try:
            return self._with_retry(
                resource.type, "revoke",
                lambda: provider.revoke(resource, requester, role),
            )
        except _RetriesExhausted as e:
            raise ProviderRevokeFailedError(
                str(grant_id), resource.type, e.attempts, _describe(e.last),
            ) from e.last

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _with_retry(
        self, resource_type: str, operation: str, call: Callable[[], None],
    ) -> int:
        delays = delays_for(self._settings)
        attempts = len(delays) + 1
        for attempt in range(1, attempts + 1):
            try:
                self._call_with_timeout(resource_type, operation, call)
            except Exception as exc:
                logger.warning(
                    "provider_call_failed",
                    extra={
                        "resource_type": resource_type,
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "error": _describe(exc),
                    },
                )
                if attempt == attempts:
                    raise _RetriesExhausted(attempt, exc) from exc
                self._sleep(delays[attempt - 1])
            else:
                logger.info(
                    "provider_call_succeeded",
                    extra={
                        "resource_type": resource_type,
                        "operation": operation,
                        "attempt": attempt,
                    },
                )
                return attempt
        raise AssertionError("unreachable")

    def _call_with_timeout(
        self, resource_type: str, operation: str, call: Callable[[], None],
    ) -> None:
        timeout = self._settings.provider_timeout_seconds
        future = self._pool.submit(call)
        try:
            future.result(timeout=timeout)
        except FutureTimeoutError:
            # Workers cannot be interrupted; grant and revoke are idempotent.
            future.cancel()
            raise ProviderTimeoutError(resource_type, operation, timeout) from None


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"
