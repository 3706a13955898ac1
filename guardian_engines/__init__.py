"""
Module: guardian_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    calculation engines.  This is the canonical import surface for higher
    layers (guardian_config, guardian_services).

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import guardian_kernel/domain/ and guardian_kernel.exceptions.
    MUST NOT import guardian_services, guardian_batch or guardian_config.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()``.  Timestamps are passed
      in by the services, which own the Clock.
    - Determinism: identical inputs always produce identical outputs.
"""

from guardian_engines.backoff import backoff_delays, delays_for
from guardian_engines.chain import (
    ChainState,
    advance_chain,
    apply_decision,
    build_context,
    materialize_steps,
)
from guardian_engines.conditions import evaluate, is_active, resolve_approvers
from guardian_engines.resolution import (
    effective_decisions,
    evaluate_step_outcome,
    resolve_outcome,
)

__all__ = [
    "ChainState",
    "advance_chain",
    "apply_decision",
    "backoff_delays",
    "build_context",
    "delays_for",
    "effective_decisions",
    "evaluate",
    "evaluate_step_outcome",
    "is_active",
    "materialize_steps",
    "resolve_approvers",
    "resolve_outcome",
]
