"""
Guardian Kernel - access appeal workflow core

A policy-driven approval engine for time-bound resource access:
- Versioned, immutable approval policies
- Per-appeal serialised decisions over multi-step chains
- Provider grant/revoke with bounded retry
- Durable expiry of issued grants
"""

__version__ = "0.1.0"
