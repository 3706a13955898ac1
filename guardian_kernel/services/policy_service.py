"""
guardian_kernel.services.policy_service -- Versioned policy store.

Responsibility:
    Persist approval policies as immutable versions and load them back,
    by explicit version or latest.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/, utils/.

Invariants enforced:
    - ``policy_hash`` is computed here over the canonical policy body.
    - Storing an existing (policy_id, version) is idempotent when the body
      is identical and refused when it differs; edits are new versions.

Failure modes:
    - PolicyNotFoundError on an unknown policy or version.
    - PolicyImmutableError when a stored version would change.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from guardian_kernel.domain.clock import Clock, SystemClock
from guardian_kernel.domain.policy import Policy
from guardian_kernel.exceptions import PolicyImmutableError, PolicyNotFoundError
from guardian_kernel.logging_config import get_logger
from guardian_kernel.models.policy import PolicyModel
from guardian_kernel.utils.hashing import hash_payload

logger = get_logger("services.policy")


def compute_policy_hash(policy: Policy) -> str:
    return hash_payload(policy.to_payload())


class PolicyService:
    """Stores and loads policy versions."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def store(self, policy: Policy) -> Policy:
        """Persist ``policy`` at its own version.  Returns the stored value."""
        policy_hash = compute_policy_hash(policy)
        session = self._session_factory()
        try:
            existing = self._load(session, policy.policy_id, policy.version)
            if existing is not None:
                if existing.policy_hash != policy_hash:
                    raise PolicyImmutableError(
                        policy.policy_id, policy.version,
                        "a different body is already stored at this version",
                    )
                return existing.to_dto()

            stored = replace(
                policy, policy_hash=policy_hash, created_at=self._clock.now(),
            )
            session.add(PolicyModel.from_dto(stored))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(
            "policy_stored",
            extra={
                "policy_id": stored.policy_id,
                "version": stored.version,
                "policy_hash": policy_hash,
                "steps": len(stored.steps),
            },
        )
        return stored

    def revise(self, policy: Policy) -> Policy:
        """Store ``policy`` as the next version after the latest stored one."""
        latest = self.latest_version(policy.policy_id)
        return self.store(replace(policy, version=(latest or 0) + 1))

    def get(self, policy_id: str, version: int | None = None) -> Policy:
        """Load a version, or the latest when ``version`` is None."""
        session = self._session_factory()
        try:
            if version is None:
                model = session.execute(
                    select(PolicyModel)
                    .where(PolicyModel.policy_id == policy_id)
                    .order_by(PolicyModel.version.desc())
                    .limit(1)
                ).scalar_one_or_none()
            else:
                model = self._load(session, policy_id, version)
            if model is None:
                raise PolicyNotFoundError(policy_id, version)
            return model.to_dto()
        finally:
            session.close()

    def latest_version(self, policy_id: str) -> int | None:
        session = self._session_factory()
        try:
            return session.execute(
                select(func.max(PolicyModel.version))
                .where(PolicyModel.policy_id == policy_id)
            ).scalar()
        finally:
            session.close()

    def list_versions(self, policy_id: str) -> list[Policy]:
        session = self._session_factory()
        try:
            models = session.execute(
                select(PolicyModel)
                .where(PolicyModel.policy_id == policy_id)
                .order_by(PolicyModel.version)
            ).scalars().all()
            return [m.to_dto() for m in models]
        finally:
            session.close()

    @staticmethod
    def _load(session: Session, policy_id: str, version: int) -> PolicyModel | None:
        return session.execute(
            select(PolicyModel).where(
                PolicyModel.policy_id == policy_id,
                PolicyModel.version == version,
            )
        ).scalar_one_or_none()
