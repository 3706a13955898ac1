"""
YAML policy and settings loading.
"""

import textwrap

import pytest
import yaml

from guardian_config.loader import (
    SETTINGS_ENV_VAR,
    load_policies,
    load_policy_file,
    load_settings,
    parse_appeal_config,
    parse_policy,
    parse_settings,
    parse_step,
)
from guardian_kernel.domain.policy import StepStrategy
from guardian_kernel.domain.settings import EngineSettings
from guardian_kernel.exceptions import InvalidExpressionError

PROD_DATABASE = """
id: prod-database
version: 2
description: Production database access
steps:
  - name: manager
    approvers: requester.manager
  - name: security
    when: resource.sensitivity == "high"
    approvers: [security-lead@example.com, security-oncall@example.com]
    strategy: auto-reject-on-any
  - name: owners
    approvers: [resource.owners]
    optional: true
appeal:
  default_duration: 24h
  duration_options: [1h, 24h, 7d]
"""


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text))
    return path


# =============================================================================
# Policies
# =============================================================================


class TestParsePolicy:

    def test_full_document(self, tmp_path):
        policy = load_policy_file(_write(tmp_path / "prod.yaml", PROD_DATABASE))
        assert policy.policy_id == "prod-database"
        assert policy.version == 2
        assert policy.description == "Production database access"
        assert [s.name for s in policy.steps] == ["manager", "security", "owners"]

        manager, security, owners = policy.steps
        assert manager.approvers == ("requester.manager",)
        assert manager.strategy == StepStrategy.ANY
        assert security.strategy == StepStrategy.AUTO_REJECT_ON_ANY
        assert security.when == 'resource.sensitivity == "high"'
        assert owners.optional

        assert policy.appeal_config.default_duration == 86400
        assert policy.appeal_config.duration_options == (3600, 86400, 604800)
        assert not policy.appeal_config.allow_permanent

    def test_policy_id_alias_and_default_version(self):
        policy = parse_policy({
            "policy_id": "p",
            "steps": [{"name": "s", "approvers": "a@example.com"}],
            "appeal": {"allow_permanent": True},
        })
        assert policy.policy_id == "p"
        assert policy.version == 1

    @pytest.mark.parametrize("data,fragment", [
        ({"steps": [{"name": "s", "approvers": "a@x.io"}]}, "missing an 'id'"),
        ({"id": "p", "version": 0, "steps": [{"name": "s", "approvers": "a@x.io"}]}, "version"),
        ({"id": "p", "version": "two", "steps": [{"name": "s", "approvers": "a@x.io"}]}, "version"),
        ({"id": "p", "steps": []}, "no steps"),
        ({"id": "p", "steps": [
            {"name": "s", "approvers": "a@x.io"}, {"name": "s", "approvers": "b@x.io"},
        ]}, "duplicate"),
        ({"id": "p", "steps": [{"approvers": "a@x.io"}]}, "name"),
        ({"id": "p", "steps": [{"name": "s"}]}, "no approvers"),
        ({"id": "p", "steps": [{"name": "s", "approvers": "a@x.io", "strategy": "majority"}]},
         "unknown strategy"),
        ({"id": "p", "steps": [{"name": "s", "strategy": "auto"}]}, "needs an approve_if"),
        ({"id": "p", "steps": [
            {"name": "s", "strategy": "auto", "approve_if": "True", "approvers": "a@x.io"},
        ]}, "takes no approvers"),
        ({"id": "p", "steps": [{"name": "s", "approvers": "a@x.io", "approve_if": "True"}]},
         "only allowed"),
    ])
    def test_invalid_documents(self, data, fragment):
        data.setdefault("appeal", {"default_duration": "1h"})
        with pytest.raises(ValueError, match=fragment):
            parse_policy(data)

    def test_disallowed_condition(self):
        with pytest.raises(InvalidExpressionError) as exc_info:
            parse_step({"name": "s", "approvers": "a@x.io", "when": "__import__('os')"})
        assert exc_info.value.reasons

    def test_disallowed_approver_rule(self):
        with pytest.raises(InvalidExpressionError):
            parse_step({"name": "s", "approvers": ["requester.manager.lower()"]})

    def test_literal_approvers_are_not_validated_as_expressions(self):
        step = parse_step({"name": "s", "approvers": ["team-leads", " bob@x.io "]})
        assert step.approvers == ("team-leads", "bob@x.io")

    def test_optional_step_may_have_no_approvers(self):
        assert parse_step({"name": "s", "optional": True}).approvers == ()

    def test_auto_step(self):
        step = parse_step({
            "name": "on-call",
            "strategy": "auto",
            "approve_if": '"oncall" in requester.groups',
            "rejection_reason": "requester is not on call",
        })
        assert step.strategy == StepStrategy.AUTO
        assert step.approvers == ()
        assert step.approve_if == '"oncall" in requester.groups'
        assert step.rejection_reason == "requester is not on call"

    def test_disallowed_approve_if(self):
        with pytest.raises(InvalidExpressionError):
            parse_step({"name": "s", "strategy": "auto", "approve_if": "open('x')"})


class TestParseAppealConfig:

    def test_permanent_only(self):
        config = parse_appeal_config({"allow_permanent": True})
        assert config.default_duration is None
        assert config.allow_permanent

    def test_default_must_be_an_option(self):
        with pytest.raises(ValueError, match="not among"):
            parse_appeal_config({"default_duration": "2h", "duration_options": ["1h", "24h"]})

    def test_needs_some_duration(self):
        with pytest.raises(ValueError):
            parse_appeal_config({})

    def test_extension_window(self):
        config = parse_appeal_config({"default_duration": "24h", "extension_window": "6h"})
        assert config.extension_window == 21600
        assert parse_appeal_config({"default_duration": "24h"}).extension_window is None

    def test_bad_duration(self):
        with pytest.raises(ValueError):
            parse_appeal_config({"default_duration": "fortnight"})


class TestLoadPolicies:

    def test_loads_directory_recursively_in_path_order(self, tmp_path):
        _write(tmp_path / "b.yml", PROD_DATABASE.replace("prod-database", "b"))
        _write(tmp_path / "a.yaml", PROD_DATABASE.replace("prod-database", "a"))
        _write(tmp_path / "nested" / "c.yaml", PROD_DATABASE.replace("prod-database", "c"))
        _write(tmp_path / "README.md", "not a policy")
        assert [p.policy_id for p in load_policies(tmp_path)] == ["a", "b", "c"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_policies(tmp_path / "absent")

    def test_error_names_file(self, tmp_path):
        path = _write(tmp_path / "broken.yaml", "id: broken\nsteps: []\n")
        with pytest.raises(ValueError, match="broken.yaml"):
            load_policy_file(path)

    def test_non_mapping_document(self, tmp_path):
        path = _write(tmp_path / "list.yaml", "- one\n- two\n")
        with pytest.raises(ValueError, match="mapping"):
            load_policy_file(path)

    def test_malformed_yaml(self, tmp_path):
        path = _write(tmp_path / "bad.yaml", "id: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_policy_file(path)


# =============================================================================
# Settings
# =============================================================================


class TestSettings:

    def test_defaults_without_file(self, monkeypatch):
        monkeypatch.delenv(SETTINGS_ENV_VAR, raising=False)
        assert load_settings() == EngineSettings()

    def test_file_with_engine_section(self, tmp_path):
        path = _write(tmp_path / "settings.yaml", """
            engine:
              provider_timeout_seconds: 10
              retry_max_attempts: 3
              reminder_window_seconds: 12h
        """)
        settings = load_settings(path)
        assert settings.provider_timeout_seconds == 10
        assert settings.retry_max_attempts == 3
        assert settings.reminder_window_seconds == 43200
        assert settings.retry_factor == 2.0

    def test_environment_variable(self, tmp_path, monkeypatch):
        path = _write(tmp_path / "settings.yaml", "scheduler_tick_seconds: 5\n")
        monkeypatch.setenv(SETTINGS_ENV_VAR, str(path))
        assert load_settings().scheduler_tick_seconds == 5

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValueError, match="Unknown settings"):
            parse_settings({"retries": 3})

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError):
            parse_settings({"retry_max_attempts": 0})
