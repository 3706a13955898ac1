"""
Configuration Loader (``guardian_config.loader``).

Responsibility
--------------
Loads YAML policy files and the engine settings file and parses them into
the frozen kernel value objects (``Policy``, ``EngineSettings``).  Every
condition and expression approver rule is validated against the
restricted AST here, so a bad policy is refused when it is loaded rather
than when the first appeal hits it.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  Imports only the kernel
domain and ``guard_ast``.  Consumed by ``AppealEngine.load_policies``.

Policy file format
------------------
::

    id: prod-database
    version: 1
    description: Production database access
    steps:
      - name: manager
        approvers: requester.manager
        strategy: any
      - name: security
        when: resource.sensitivity == "high"
        approvers: [security-lead@example.com, security-oncall@example.com]
        strategy: auto_reject_on_any
      - name: on-call
        strategy: auto
        approve_if: '"oncall" in requester.groups'
        rejection_reason: requester is not on call
    appeal:
      default_duration: 24h
      duration_options: [1h, 24h, 7d]
      allow_permanent: false
      extension_window: 12h

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing or malformed fields  -> ``ValueError`` naming the file and field.
* Disallowed expression  -> ``InvalidExpressionError``.
"""

from __future__ import annotations

import os
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from guardian_config.guard_ast import validate_expression
from guardian_kernel.domain.policy import (
    AppealConfig,
    Policy,
    StepStrategy,
    StepTemplate,
    is_expression_rule,
    parse_duration,
)
from guardian_kernel.domain.settings import EngineSettings
from guardian_kernel.exceptions import InvalidExpressionError
from guardian_kernel.logging_config import get_logger

logger = get_logger("config.loader")

# Environment variable naming a settings file when no path is given.
SETTINGS_ENV_VAR = "GUARDIAN_SETTINGS"

POLICY_SUFFIXES = (".yaml", ".yml")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


# =========================================================================
# Policies
# =========================================================================


def check_expression(expression: str) -> None:
    """Raise InvalidExpressionError unless ``expression`` passes the AST rules."""
    errors = validate_expression(expression)
    if errors:
        raise InvalidExpressionError(expression, [e.message for e in errors])


def parse_step(data: dict[str, Any]) -> StepTemplate:
    if not isinstance(data, dict):
        raise ValueError(f"Step must be a mapping, got {type(data).__name__}")
    name = data.get("name")
    if not name or not isinstance(name, str):
        raise ValueError("Step is missing a 'name'")

    raw_approvers = data.get("approvers") or []
    if isinstance(raw_approvers, str):
        raw_approvers = [raw_approvers]
    approvers = tuple(str(a).strip() for a in raw_approvers if str(a).strip())
    for rule in approvers:
        if is_expression_rule(rule):
            check_expression(rule)

    when = str(data.get("when") or "").strip()
    if when:
        check_expression(when)

    try:
        strategy = StepStrategy.parse(str(data.get("strategy") or "any"))
    except ValueError:
        raise ValueError(
            f"Step '{name}': unknown strategy {data.get('strategy')!r}"
        ) from None

    optional = bool(data.get("optional", False))
    approve_if = str(data.get("approve_if") or "").strip()
    if strategy.takes_decisions:
        if approve_if:
            raise ValueError(
                f"Step '{name}': approve_if is only allowed with strategy 'auto'"
            )
        if not approvers and not optional:
            raise ValueError(f"Step '{name}' has no approvers and is not optional")
    else:
        if not approve_if:
            raise ValueError(f"Step '{name}': strategy 'auto' needs an approve_if")
        if approvers:
            raise ValueError(f"Step '{name}': an 'auto' step takes no approvers")
        check_expression(approve_if)

    return StepTemplate(
        name=name,
        approvers=approvers,
        strategy=strategy,
        when=when,
        description=data.get("description") or "",
        optional=optional,
        approve_if=approve_if,
        rejection_reason=str(data.get("rejection_reason") or ""),
    )


def parse_appeal_config(data: dict[str, Any] | None) -> AppealConfig:
    data = data or {}
    options = tuple(
        d for d in (parse_duration(v) for v in data.get("duration_options") or ())
        if d is not None
    )
    allow_permanent = bool(data.get("allow_permanent", False))
    default = parse_duration(data.get("default_duration"))
    extension_window = parse_duration(data.get("extension_window"))
    if default is not None and options and default not in options:
        raise ValueError(
            f"default_duration {default}s is not among duration_options {list(options)}"
        )
    if default is None and not allow_permanent and not options:
        raise ValueError(
            "appeal config needs a default_duration, duration_options "
            "or allow_permanent"
        )
    return AppealConfig(
        default_duration=default,
        allow_permanent=allow_permanent,
        duration_options=options,
        extension_window=extension_window,
    )


def parse_policy(data: dict[str, Any]) -> Policy:
    """
    Parse a ``Policy`` from a dict.

    Raises:
        ValueError: on missing id, version or steps, or duplicate step names.
        InvalidExpressionError: on a disallowed condition or approver rule.
    """
    policy_id = data.get("id") or data.get("policy_id")
    if not policy_id:
        raise ValueError("Policy is missing an 'id'")
    try:
        version = int(data.get("version", 1))
    except (TypeError, ValueError):
        raise ValueError(f"Policy '{policy_id}': invalid version {data.get('version')!r}") from None
    if version < 1:
        raise ValueError(f"Policy '{policy_id}': version must be >= 1")

    raw_steps = data.get("steps") or []
    if not raw_steps:
        raise ValueError(f"Policy '{policy_id}' has no steps")
    steps = tuple(parse_step(s) for s in raw_steps)
    names = [s.name for s in steps]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"Policy '{policy_id}': duplicate step names {duplicates}")

    return Policy(
        policy_id=str(policy_id),
        version=version,
        steps=steps,
        appeal_config=parse_appeal_config(data.get("appeal")),
        description=data.get("description") or "",
    )


def load_policy_file(path: str | Path) -> Policy:
    path = Path(path)
    try:
        policy = parse_policy(load_yaml_file(path))
    except ValueError as e:
        raise ValueError(f"{path}: {e}") from e
    logger.debug(
        "policy_file_loaded",
        extra={"path": str(path), "policy_id": policy.policy_id, "version": policy.version},
    )
    return policy


def load_policies(directory: str | Path) -> list[Policy]:
    """Load every ``*.yaml`` / ``*.yml`` policy under ``directory``, sorted by path."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Policy directory not found: {directory}")
    paths = sorted(
        p for p in directory.rglob("*") if p.is_file() and p.suffix in POLICY_SUFFIXES
    )
    return [load_policy_file(p) for p in paths]


# =========================================================================
# Settings
# =========================================================================


def parse_settings(data: dict[str, Any]) -> EngineSettings:
    known = {f.name for f in fields(EngineSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown settings: {unknown}")
    values = dict(data)
    window = values.get("reminder_window_seconds")
    if isinstance(window, str):
        values["reminder_window_seconds"] = parse_duration(window) or 0
    return EngineSettings(**values)


def load_settings(path: str | Path | None = None) -> EngineSettings:
    """Read engine settings from YAML over the defaults.

    With no ``path``, ``$GUARDIAN_SETTINGS`` is used when set; otherwise
    the defaults are returned.  The file may nest values under an
    ``engine:`` key.
    """
    if path is None:
        path = os.environ.get(SETTINGS_ENV_VAR)
    if not path:
        return EngineSettings()
    data = load_yaml_file(Path(path))
    if "engine" in data:
        data = data["engine"] or {}
    settings = parse_settings(data)
    logger.info("settings_loaded", extra={"path": str(path)})
    return settings
