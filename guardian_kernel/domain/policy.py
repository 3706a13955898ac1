"""
Policy domain types (``guardian_kernel.domain.policy``).

Responsibility
--------------
Pure value objects describing an approval chain: ordered step templates,
per-step activation condition and approver rules, the resolution strategy,
and the appeal duration/option constraints.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``models/`` or outer layers.

Invariants enforced
-------------------
* Policies are immutable values.  An edit is a new ``version``; stored
  versions are never modified (see ``models/policy.py``).
* ``policy_hash`` fingerprints the canonical policy body so an appeal can
  prove which exact chain it was routed through.
* Expression namespace is fixed: ``CONTEXT_ROOTS`` and
  ``EXPRESSION_FUNCTIONS`` are the only identifiers an expression may use.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# Roots of the evaluation context captured at appeal creation.
CONTEXT_ROOTS: frozenset[str] = frozenset({"requester", "resource", "appeal"})

# Functions an expression may call.
EXPRESSION_FUNCTIONS: frozenset[str] = frozenset({"len", "lower", "upper"})

# Characters that mark an approver rule as an expression rather than a
# literal identity such as ``alice@example.com``.
_EXPRESSION_MARKERS = re.compile(r"[\s()\[\]'\"=<>!]|^(requester|resource|appeal)\.")


class StepStrategy(str, Enum):
    """How individual decisions on a step combine into its outcome."""

    ANY = "any"
    ALL = "all"
    AUTO_REJECT_ON_ANY = "auto_reject_on_any"
    AUTO = "auto"

    @classmethod
    def parse(cls, value: str) -> StepStrategy:
        """Accept ``auto-reject-on-any`` as well as the enum value."""
        return cls(value.strip().lower().replace("-", "_"))

    @property
    def takes_decisions(self) -> bool:
        """False for ``auto`` steps, which resolve from ``approve_if`` alone."""
        return self is not StepStrategy.AUTO


@dataclass(frozen=True)
class StepTemplate:
    """One stage of a policy's approval chain.

    ``when`` is an activation condition; empty means always active.
    ``approvers`` are rules: literal identities or expressions that yield
    a string or a list of strings.

    An ``auto`` step has no approvers: ``approve_if`` is evaluated when the
    chain reaches it.  True approves the step; false rejects it with
    ``rejection_reason``, or skips it when the step is ``optional``.
    """

    name: str
    approvers: tuple[str, ...] = ()
    strategy: StepStrategy = StepStrategy.ANY
    when: str = ""
    description: str = ""
    optional: bool = False
    approve_if: str = ""
    rejection_reason: str = ""


@dataclass(frozen=True)
class AppealConfig:
    """Duration and option constraints for appeals routed through a policy.

    Durations are seconds.  ``default_duration`` of None together with
    ``allow_permanent`` makes permanent access the default.
    ``extension_window`` lets a requester appeal again for access they
    already hold once it is that close to expiry; None disables extension.
    """

    default_duration: int | None = None
    allow_permanent: bool = False
    duration_options: tuple[int, ...] = ()
    extension_window: int | None = None


@dataclass(frozen=True)
class Policy:
    """A named, versioned, immutable approval policy."""

    policy_id: str
    version: int
    steps: tuple[StepTemplate, ...]
    appeal_config: AppealConfig = field(default_factory=AppealConfig)
    description: str = ""
    policy_hash: str | None = None
    created_at: datetime | None = None

    def step_named(self, name: str) -> StepTemplate | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def to_payload(self) -> dict[str, Any]:
        """Canonical body used for hashing and persistence."""
        return {
            "policy_id": self.policy_id,
            "version": self.version,
            "description": self.description,
            "steps": [
                {
                    "name": s.name,
                    "description": s.description,
                    "when": s.when,
                    "approvers": list(s.approvers),
                    "strategy": s.strategy.value,
                    "optional": s.optional,
                    "approve_if": s.approve_if,
                    "rejection_reason": s.rejection_reason,
                }
                for s in self.steps
            ],
            "appeal_config": {
                "default_duration": self.appeal_config.default_duration,
                "allow_permanent": self.appeal_config.allow_permanent,
                "duration_options": list(self.appeal_config.duration_options),
                "extension_window": self.appeal_config.extension_window,
            },
        }

    @classmethod
    def from_payload(
        cls,
        payload: dict[str, Any],
        policy_hash: str | None = None,
        created_at: datetime | None = None,
    ) -> Policy:
        config = payload.get("appeal_config") or {}
        return cls(
            policy_id=payload["policy_id"],
            version=int(payload["version"]),
            description=payload.get("description", ""),
            steps=tuple(
                StepTemplate(
                    name=s["name"],
                    description=s.get("description", ""),
                    when=s.get("when", "") or "",
                    approvers=tuple(s.get("approvers", ())),
                    strategy=StepStrategy.parse(s.get("strategy", "any")),
                    optional=bool(s.get("optional", False)),
                    approve_if=s.get("approve_if", "") or "",
                    rejection_reason=s.get("rejection_reason", "") or "",
                )
                for s in payload.get("steps", ())
            ),
            appeal_config=AppealConfig(
                default_duration=config.get("default_duration"),
                allow_permanent=bool(config.get("allow_permanent", False)),
                duration_options=tuple(config.get("duration_options", ())),
                extension_window=config.get("extension_window"),
            ),
            policy_hash=policy_hash,
            created_at=created_at,
        )


def is_expression_rule(rule: str) -> bool:
    """True if an approver rule must be evaluated rather than used verbatim."""
    return bool(_EXPRESSION_MARKERS.search(rule.strip()))


_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$")


def parse_duration(value: Any) -> int | None:
    """Parse ``30m``, ``24h``, ``7d``, ``90`` or an int into seconds.

    ``None``, ``0``, ``""`` and ``"permanent"`` mean permanent access and
    return None.

    Raises:
        ValueError: The value is not a recognisable duration.
    """
    if value is None or value == "" or value == 0:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value}")
        return value
    if isinstance(value, str):
        if value.strip().lower() == "permanent":
            return None
        match = _DURATION_RE.match(value.lower())
        if match:
            seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2) or "s"]
            return seconds or None
    raise ValueError(f"Invalid duration: {value!r}")
