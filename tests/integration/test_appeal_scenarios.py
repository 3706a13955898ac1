"""
End-to-end appeal scenarios against the shipped policy files.

Policies are loaded from ``policies/`` through the engine, appeals run
to a terminal state, and the chain invariants are checked on every
appeal the test touched:

- rejected: some step rejected and no later step holds a decision
- approved or active: every step approved or skipped
"""

from pathlib import Path

import pytest

from guardian_batch.scheduler import GrantScheduler
from guardian_kernel.domain.appeal import AppealOptions, AppealStatus, StepStatus
from guardian_kernel.domain.grant import GrantStatus
from guardian_kernel.exceptions import StepNotActiveError
from tests.conftest import HOUR

POLICY_DIR = Path(__file__).resolve().parents[2] / "policies"

ALICE = "alice@example.com"
BOB = "bob@example.com"
DAVE = "dave@example.com"
OWNER_A = "owner-a@example.com"
OWNER_B = "owner-b@example.com"
REVIEWER = "reviewer@example.com"


def assert_chain_invariants(appeal):
    statuses = [s.status for s in appeal.steps]
    if appeal.status == AppealStatus.REJECTED:
        rejected_at = statuses.index(StepStatus.REJECTED)
        assert all(not s.decisions for s in appeal.steps[rejected_at + 1:])
    if appeal.status in (AppealStatus.APPROVED, AppealStatus.ACTIVE):
        assert all(s in (StepStatus.APPROVED, StepStatus.SKIPPED) for s in statuses)


@pytest.fixture
def loaded(engine):
    return {p.policy_id: p for p in engine.load_policies(POLICY_DIR)}


@pytest.fixture
def grant_scheduler(engine, loaded):
    sched = GrantScheduler.for_engine(engine)
    yield sched
    sched.stop(timeout=5.0)


class TestShippedPolicies:

    def test_all_files_load(self, loaded):
        assert set(loaded) == {"dual-control", "prod-database", "self-service"}
        assert loaded["dual-control"].appeal_config.default_duration == HOUR


class TestDualControl:

    def test_owners_then_reviewer(self, engine, loaded, provider, clock, audit_sink):
        appeal = engine.create_appeal(ALICE, "db-prod", "dual-control", "admin")
        engine.approve(appeal.appeal_id, "owners", OWNER_A)
        after_owners = engine.approve(appeal.appeal_id, "owners", OWNER_B)

        assert after_owners.step_named("owners").status == StepStatus.APPROVED
        assert after_owners.active_step.name == "reviewer"

        final = engine.approve(appeal.appeal_id, "reviewer", REVIEWER)
        assert final.status == AppealStatus.ACTIVE
        assert ("in_review", "approved") in audit_sink.transitions(appeal.appeal_id)

        grant = engine.grant_for_appeal(appeal.appeal_id)
        assert (grant.expires_at - clock.now()).total_seconds() == HOUR
        assert provider.grant_calls == [("db-prod", ALICE, "admin")]
        assert_chain_invariants(final)

    def test_owner_rejection_stops_the_chain(self, engine, loaded, provider):
        appeal = engine.create_appeal(ALICE, "db-prod", "dual-control", "admin")
        engine.approve(appeal.appeal_id, "owners", OWNER_A)
        rejected = engine.reject(appeal.appeal_id, "owners", OWNER_B)

        assert rejected.status == AppealStatus.REJECTED
        with pytest.raises(StepNotActiveError):
            engine.approve(appeal.appeal_id, "reviewer", REVIEWER)

        stored = engine.get_appeal(appeal.appeal_id)
        assert stored.step_named("reviewer").decisions == ()
        assert provider.grant_calls == []
        assert engine.list_pending_approvals(REVIEWER) == []
        assert_chain_invariants(stored)


class TestExpiry:

    def test_expiry_then_manual_revoke_is_noop(self, engine, loaded, grant_scheduler,
                                               provider, clock):
        appeal = engine.create_appeal(ALICE, "db-prod", "dual-control", "admin")
        for approver, step in ((OWNER_A, "owners"), (OWNER_B, "owners"), (REVIEWER, "reviewer")):
            engine.approve(appeal.appeal_id, step, approver)
        grant = engine.grant_for_appeal(appeal.appeal_id)

        clock.advance(HOUR)
        assert grant_scheduler.tick() == 1
        assert provider.revoke_calls == [("db-prod", ALICE, "admin")]
        assert engine.get_appeal(appeal.appeal_id).status == AppealStatus.EXPIRED

        again = grant_scheduler.revoke_now(grant.grant_id, BOB)
        assert again.status == GrantStatus.EXPIRED
        assert len(provider.revoke_calls) == 1


class TestConditionalSteps:

    def test_engineer_on_dev_is_approved_without_review(self, engine, loaded, provider):
        appeal = engine.create_appeal(ALICE, "db-dev", "self-service", "writer")
        assert appeal.status == AppealStatus.ACTIVE
        assert appeal.steps[0].status == StepStatus.SKIPPED
        assert_chain_invariants(appeal)

    def test_other_departments_need_their_manager(self, engine, loaded):
        appeal = engine.create_appeal(DAVE, "db-dev", "self-service", "writer")
        assert appeal.status == AppealStatus.IN_REVIEW
        assert [a.appeal_id for a in engine.list_pending_approvals(BOB)] == [appeal.appeal_id]

        assert engine.approve(appeal.appeal_id, "manager", BOB).status == AppealStatus.ACTIVE

    def test_permanent_access(self, engine, loaded):
        appeal = engine.create_appeal(
            ALICE, "db-dev", "self-service", "reader", options=AppealOptions(duration=None),
        )
        assert engine.grant_for_appeal(appeal.appeal_id).is_permanent

    def test_security_step_only_for_sensitive_resources(self, engine, loaded):
        prod = engine.create_appeal(ALICE, "db-prod", "prod-database", "viewer")
        dev = engine.create_appeal(ALICE, "db-dev", "prod-database", "viewer")

        assert prod.step_named("security").status == StepStatus.BLOCKED
        assert dev.step_named("security").status == StepStatus.SKIPPED

        engine.approve(prod.appeal_id, "manager", BOB)
        rejected = engine.reject(prod.appeal_id, "security", "security-oncall@example.com")
        assert rejected.termination_reason == "rejected at step 'security'"
        assert_chain_invariants(rejected)

        assert engine.approve(dev.appeal_id, "manager", BOB).status == AppealStatus.ACTIVE
