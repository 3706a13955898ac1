"""
guardian_services -- Package init and public API.

Responsibility:
    Stateful orchestration that composes the pure engines with database
    sessions, the provider gateway and the event dispatcher.  This is the
    only layer that holds sessions across an appeal's lifecycle and calls
    providers.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction (enforced by tests/architecture/test_layer_boundaries.py):
        guardian_services/ -> guardian_engines/  (allowed)
        guardian_services/ -> guardian_kernel/   (allowed)
        guardian_services/ -> guardian_config/   (allowed)
        guardian_engines/  -> guardian_services/ (FORBIDDEN)
        guardian_kernel/   -> guardian_services/ (FORBIDDEN)

Invariants enforced:
    - DI transparency: all service wiring is centralised in AppealEngine.
"""

from guardian_services.appeal_engine import AppealEngine
from guardian_services.appeal_service import AppealService
from guardian_services.approval_resolver import ApprovalResolver
from guardian_services.grant_service import GrantService
from guardian_services.provider_gateway import ProviderGateway

__all__ = [
    "AppealEngine",
    "AppealService",
    "ApprovalResolver",
    "GrantService",
    "ProviderGateway",
]
