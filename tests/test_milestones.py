"""Tests for milestone planning and per-milestone release."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from gigsettle import SettlementConfig, SettlementEngine
from gigsettle.errors import (
    AlreadyReleased,
    InvalidMilestonePlan,
    InvalidTransition,
    MilestoneNotFound,
    ThresholdNotMet,
)
from gigsettle.ledger import InMemoryLedgerAnchor
from gigsettle.milestones import MilestoneScheduler, ReleasePath, coerce_plan, validate_plan
from gigsettle.storage import InMemoryStorage
from gigsettle.types import EscrowStatus, JobStatus, LedgerAction, MilestoneSpec

EMPLOYER = "emp-alice"
FREELANCER = "dev-bob"
ARBITER = "arb-carol"
T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestPlanValidation:
    def test_coerce_accepts_mixed_inputs(self):
        plan = coerce_plan([MilestoneSpec(Decimal("20")), {"percentage": 30}, "50"])
        assert [s.percentage for s in plan] == [Decimal("20"), Decimal("30"), Decimal("50")]

    def test_empty_plan_is_single_milestone(self):
        [spec] = coerce_plan(None)
        assert spec.percentage == Decimal(100)

    def test_sum_within_epsilon(self):
        validate_plan(coerce_plan(["33.33", "33.33", "33.33"]))
        with pytest.raises(InvalidMilestonePlan):
            validate_plan(coerce_plan(["33", "33", "33"]))

    @pytest.mark.parametrize("plan", [["0", "100"], ["-10", "110"], ["NaN", "100"]])
    def test_shares_must_be_positive(self, plan):
        with pytest.raises(InvalidMilestonePlan):
            validate_plan(coerce_plan(plan))


class TestPlanMilestones:
    def setup_method(self):
        self.scheduler = MilestoneScheduler(SettlementConfig())

    def test_amounts_sum_exactly(self):
        milestones = self.scheduler.plan_milestones(
            100, ["33.33", "33.33", "33.34"], T0, timedelta(days=9)
        )
        assert [m.amount for m in milestones] == [33, 33, 34]
        assert sum(m.amount for m in milestones) == 100

    def test_deadlines_evenly_spaced(self):
        milestones = self.scheduler.plan_milestones(1000, [25, 25, 50], T0, timedelta(days=30))
        assert [m.deadline - T0 for m in milestones] == [
            timedelta(days=10),
            timedelta(days=20),
            timedelta(days=30),
        ]
        assert [m.index for m in milestones] == [0, 1, 2]

    def test_total_too_small_to_split(self):
        with pytest.raises(InvalidMilestonePlan):
            self.scheduler.plan_milestones(10, [1, 99], T0, timedelta(days=1))

    def test_non_positive_inputs(self):
        with pytest.raises(InvalidMilestonePlan):
            self.scheduler.plan_milestones(0, None, T0, timedelta(days=1))
        with pytest.raises(InvalidMilestonePlan):
            self.scheduler.plan_milestones(100, None, T0, timedelta(0))


class TestCheckRelease:
    def test_paths(self, milestone_escrow, clock):
        scheduler = MilestoneScheduler()
        now = clock()
        assert scheduler.check_release(milestone_escrow, 0, now, authorized=True) == ReleasePath.SIGNED
        late = now + timedelta(days=10, seconds=1)
        assert scheduler.check_release(milestone_escrow, 0, late, authorized=False) == ReleasePath.AUTO
        with pytest.raises(ThresholdNotMet):
            scheduler.check_release(milestone_escrow, 0, now, authorized=False)
        with pytest.raises(MilestoneNotFound):
            scheduler.check_release(milestone_escrow, 9, now, authorized=True)

    def test_deadline_itself_is_not_past(self, milestone_escrow):
        deadline = milestone_escrow.milestones[0].deadline
        with pytest.raises(ThresholdNotMet):
            MilestoneScheduler().check_release(milestone_escrow, 0, deadline, authorized=False)


class TestReleaseMilestone:
    def test_signed_release_of_one_milestone(self, engine, ledger, milestone_escrow):
        engine.escrows.sign(milestone_escrow.id, "employer", "release:1")
        engine.escrows.sign(milestone_escrow.id, "freelancer", "release:1")

        escrow = engine.escrows.release_milestone(milestone_escrow.id, 1)

        assert escrow.status == EscrowStatus.LOCKED.value
        assert [m.released for m in escrow.milestones] == [False, True, False]
        assert escrow.released_amount == 90_000
        assert escrow.current_milestone == 0
        assert escrow.pending_action is None
        [tx] = ledger.submissions_for(milestone_escrow.id, LedgerAction.RELEASE)
        assert tx.params.milestone_indices == [1]

    def test_before_deadline_needs_signatures(self, engine, milestone_escrow):
        with pytest.raises(ThresholdNotMet):
            engine.escrows.release_milestone(milestone_escrow.id, 0)

    def test_auto_release_after_deadline(self, engine, clock, milestone_escrow):
        clock.advance(days=11)
        escrow = engine.escrows.release_milestone(milestone_escrow.id, 0)
        milestone = escrow.milestones[0]
        assert milestone.released and milestone.auto_released
        assert escrow.current_milestone == 1
        history = engine.escrows.get_transitions(milestone_escrow.id)
        assert history[-1].metadata["auto"] is True

    def test_release_twice_rejected(self, engine, clock, milestone_escrow):
        clock.advance(days=11)
        engine.escrows.release_milestone(milestone_escrow.id, 0)
        with pytest.raises(AlreadyReleased):
            engine.escrows.release_milestone(milestone_escrow.id, 0)

    def test_final_milestone_completes_job(self, engine, clock, milestone_escrow):
        clock.advance(days=31)
        for index in range(3):
            escrow = engine.escrows.release_milestone(milestone_escrow.id, index)
        assert escrow.status == EscrowStatus.RELEASED.value
        assert escrow.released_amount == escrow.total_amount == 300_000
        assert len(escrow.release_tx_refs) == 3
        assert engine.jobs.get_job(escrow.job_id).status == JobStatus.COMPLETED.value

    def test_frozen_while_disputed(self, engine, clock, milestone_escrow):
        engine.escrows.raise_dispute(milestone_escrow.id, "emp-alice", "Late delivery")
        clock.advance(days=11)
        with pytest.raises(InvalidTransition):
            engine.escrows.release_milestone(milestone_escrow.id, 0)

    def test_release_milestone_resumes_pending_tx(self, engine, ledger, clock, milestone_escrow):
        from gigsettle.errors import LedgerTimeout
        from gigsettle.types import ConfirmationStatus

        clock.advance(days=11)
        ledger.script(ConfirmationStatus.PENDING)
        with pytest.raises(LedgerTimeout) as exc:
            engine.escrows.release_milestone(milestone_escrow.id, 0)
        ledger.set_status(exc.value.tx_ref, ConfirmationStatus.CONFIRMED)

        escrow = engine.escrows.release_milestone(milestone_escrow.id, 0)
        assert escrow.milestones[0].release_tx_ref == exc.value.tx_ref
        assert len(ledger.submissions_for(milestone_escrow.id, LedgerAction.RELEASE)) == 1


class TestFreelancerClaimPolicy:
    @pytest.fixture
    def claim_engine(self, clock):
        config = SettlementConfig(auto_release_requires_freelancer=True, conflict_backoff_seconds=0.0)
        return SettlementEngine(
            storage=InMemoryStorage(), ledger=InMemoryLedgerAnchor(), config=config, now_fn=clock
        )

    def test_deadline_alone_is_not_enough(self, claim_engine, clock, make_escrow):
        escrow = make_escrow(claim_engine, plan=[50, 50])
        clock.advance(days=16)
        with pytest.raises(ThresholdNotMet):
            claim_engine.escrows.release_milestone(escrow.id, 0)
        with pytest.raises(ThresholdNotMet):
            claim_engine.escrows.release_milestone(escrow.id, 0, actor_id="emp-alice")

    def test_freelancer_claims_past_deadline(self, claim_engine, clock, make_escrow):
        escrow = make_escrow(claim_engine, plan=[50, 50])
        clock.advance(days=16)
        released = claim_engine.escrows.release_milestone(escrow.id, 0, actor_id=FREELANCER)
        assert released.milestones[0].auto_released

    def test_freelancer_signature_counts_as_claim(self, claim_engine, clock, make_escrow):
        escrow = make_escrow(claim_engine, plan=[50, 50])
        claim_engine.escrows.sign(escrow.id, "freelancer", "release:0")
        clock.advance(days=16)
        released = claim_engine.escrows.release_milestone(escrow.id, 0)
        assert released.milestones[0].released
        assert released.signatures == set()


class TestSixtyFortyJob:
    """A 1500 proposal on a 1000-2000 job, paid out 60/40."""

    @pytest.fixture
    def escrow(self, engine, post_job, accepted_proposal):
        job = post_job(budget_min=1000, budget_max=2000, plan=[60, 40])
        proposal = accepted_proposal(job, amount=1500, duration_days=30)
        escrow = engine.escrows.create_escrow(job.id, proposal.id, arbiter_id=ARBITER, actor_id=EMPLOYER)
        return engine.escrows.submit_lock(escrow.id, actor_id=EMPLOYER)

    def test_plan_splits_into_900_and_600(self, escrow):
        assert escrow.total_amount == 1500
        assert [m.amount for m in escrow.milestones] == [900, 600]
        assert escrow.threshold == 2

    def test_signed_first_milestone_then_deadline_sweep(self, engine, ledger, clock, escrow):
        engine.escrows.request_release(escrow.id, "employer", milestone_index=0)
        after_first = engine.escrows.request_release(escrow.id, "freelancer", milestone_index=0)

        assert after_first.status == EscrowStatus.LOCKED.value
        assert [m.released for m in after_first.milestones] == [True, False]
        assert after_first.released_amount == 900
        assert engine.jobs.get_job(escrow.job_id).status == JobStatus.IN_PROGRESS.value

        clock.advance(days=31)
        report = engine.sweeper.run_once()

        assert report.auto_released == [(escrow.id, 1)]
        final = engine.escrows.get_escrow(escrow.id)
        assert final.status == EscrowStatus.RELEASED.value
        assert [m.released for m in final.milestones] == [True, True]
        assert final.milestones[1].auto_released
        assert final.released_amount == 1500
        assert [t.params.amount for t in ledger.submissions_for(escrow.id, LedgerAction.RELEASE)] == [900, 600]
        assert engine.jobs.get_job(escrow.job_id).status == JobStatus.COMPLETED.value
