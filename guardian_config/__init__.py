"""
guardian_config -- Policy and settings loading.

Responsibility:
    Turns YAML policy files and the engine settings file into frozen
    kernel value objects, validating every expression against the
    restricted AST on the way in.

Architecture position:
    Config layer.  Imports the kernel domain only; consumed by
    guardian_services.
"""

from guardian_config.guard_ast import GuardASTError, validate_expression
from guardian_config.loader import (
    load_policies,
    load_policy_file,
    load_settings,
    parse_policy,
    parse_settings,
)

__all__ = [
    "GuardASTError",
    "load_policies",
    "load_policy_file",
    "load_settings",
    "parse_policy",
    "parse_settings",
    "validate_expression",
]
