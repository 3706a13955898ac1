"""
Tests for guardian_engines.conditions -- the restricted expression evaluator.

Covers: comparisons and logic, path resolution, missing attributes vs
false, unknown roots, disallowed constructs, step activation and approver
resolution.
"""

import pytest

from guardian_engines.conditions import evaluate, is_active, resolve_approvers
from guardian_kernel.domain.policy import StepTemplate
from guardian_kernel.exceptions import (
    ApproverResolutionError,
    AttributeMissingError,
    InvalidExpressionError,
)

CONTEXT = {
    "requester": {
        "id": "alice@example.com",
        "manager": "bob@example.com",
        "department": "Engineering",
        "groups": ["eng", "oncall"],
        "profile": {"level": 5, "backup": None},
    },
    "resource": {"id": "db-prod", "type": "database", "sensitivity": "high",
                 "owners": ["dba1@example.com", "dba2@example.com"]},
    "appeal": {"role": "admin", "duration": 86400, "permanent": False,
               "parameters": {"ticket": "OPS-1"}},
}


class TestEvaluate:

    @pytest.mark.parametrize("expression,expected", [
        ('resource.sensitivity == "high"', True),
        ('resource.sensitivity != "high"', False),
        ('"oncall" in requester.groups', True),
        ('"admin" not in requester.groups', True),
        ("appeal.duration > 3600 and not appeal.permanent", True),
        ("appeal.duration / 3600 >= 24", True),
        ('lower(requester.department) == "engineering"', True),
        ('upper(appeal.role)', "ADMIN"),
        ("len(resource.owners)", 2),
        ('requester.groups[0]', "eng"),
        ('requester["profile"]["level"] * 2', 10),
        ("requester.profile.backup is None", True),
        ('appeal.role in ["admin", "owner"]', True),
        ('"yes" if appeal.permanent else "no"', "no"),
        ("-appeal.duration < 0", True),
        ("1 < requester.profile.level < 10", True),
        ('appeal.parameters.ticket == "OPS-1"', True),
    ])
    def test_expressions(self, expression, expected):
        assert evaluate(expression, CONTEXT) == expected

    def test_or_short_circuits_before_missing_path(self):
        assert evaluate("appeal.role == 'admin' or requester.nope", CONTEXT) is True

    def test_missing_attribute_is_not_false(self):
        with pytest.raises(AttributeMissingError) as exc_info:
            evaluate('requester.cost_center == "X"', CONTEXT)
        assert exc_info.value.path == "requester.cost_center"

    def test_missing_nested_attribute_reports_full_path(self):
        with pytest.raises(AttributeMissingError) as exc_info:
            evaluate("requester.profile.title", CONTEXT)
        assert exc_info.value.path == "requester.profile.title"

    def test_index_out_of_range_is_missing(self):
        with pytest.raises(AttributeMissingError):
            evaluate("requester.groups[5]", CONTEXT)

    def test_unknown_root_is_invalid(self):
        with pytest.raises(InvalidExpressionError):
            evaluate("environment.name == 'prod'", CONTEXT)

    @pytest.mark.parametrize("expression", [
        "",
        "resource.sensitivity ==",
        "__import__('os')",
        "requester.manager.upper()",
        "lambda: 1",
        "[x for x in requester.groups]",
        "requester.groups[requester.profile.level]",
        "len(requester.groups, 2)",
        "appeal.duration ** 2",
        "appeal.duration // 2",
    ])
    def test_disallowed_expressions(self, expression):
        with pytest.raises(InvalidExpressionError):
            evaluate(expression, CONTEXT)

    def test_type_errors_are_invalid_expressions(self):
        with pytest.raises(InvalidExpressionError):
            evaluate("lower(appeal.duration)", CONTEXT)
        with pytest.raises(InvalidExpressionError):
            evaluate("appeal.duration / 0", CONTEXT)


class TestIsActive:

    def test_empty_condition_is_always_active(self):
        assert is_active(StepTemplate(name="s", approvers=("x",)), CONTEXT)

    def test_condition_truthiness(self):
        template = StepTemplate(name="s", approvers=("x",), when="requester.groups")
        assert is_active(template, CONTEXT)
        template = StepTemplate(name="s", approvers=("x",), when='resource.sensitivity == "low"')
        assert not is_active(template, CONTEXT)

    def test_missing_attribute_propagates(self):
        template = StepTemplate(name="s", approvers=("x",), when="resource.region == 'eu'")
        with pytest.raises(AttributeMissingError):
            is_active(template, CONTEXT)


class TestResolveApprovers:

    def test_literal_and_expression_rules_deduplicated_in_order(self):
        template = StepTemplate(
            name="s",
            approvers=("bob@example.com", "requester.manager", "resource.owners"),
        )
        assert resolve_approvers(template, CONTEXT) == (
            "bob@example.com", "dba1@example.com", "dba2@example.com",
        )

    def test_list_literal_expression(self):
        template = StepTemplate(name="s", approvers=('["a@x.io", "b@x.io", "a@x.io"]',))
        assert resolve_approvers(template, CONTEXT) == ("a@x.io", "b@x.io")

    def test_none_result_rejected(self):
        template = StepTemplate(name="s", approvers=("requester.profile.backup",))
        with pytest.raises(ApproverResolutionError) as exc_info:
            resolve_approvers(template, CONTEXT)
        assert exc_info.value.step_name == "s"

    def test_non_string_result_rejected(self):
        template = StepTemplate(name="s", approvers=("requester.profile.level",))
        with pytest.raises(ApproverResolutionError):
            resolve_approvers(template, CONTEXT)

    def test_blank_strings_dropped(self):
        template = StepTemplate(name="s", approvers=('["", "  ", "c@x.io"]',))
        assert resolve_approvers(template, CONTEXT) == ("c@x.io",)
