"""Tests for the Supabase storage backend against an in-memory PostgREST stand-in."""

from datetime import datetime, timezone

import pytest

from gigsettle import SettlementEngine
from gigsettle.storage import SupabaseStorage, get_storage
from gigsettle.storage.supabase import (
    ESCROW_MILESTONES_TABLE,
    ESCROW_SIGNATURES_TABLE,
    ESCROWS_TABLE,
    JOBS_TABLE,
    PROPOSALS_TABLE,
)
from gigsettle.types import (
    DuplicateRecordError,
    EscrowStatus,
    Job,
    JobStatus,
    Proposal,
    ProposalStatus,
    VersionConflictError,
)

EMPLOYER = "emp-alice"
FREELANCER = "dev-bob"
ARBITER = "arb-carol"


def _settlement_rpcs(client):
    """Emulates the Postgres functions in supabase/migrations over the fake tables."""

    def replace_children(escrow_id, milestones, signatures):
        kept = client.tables.setdefault(ESCROW_MILESTONES_TABLE, [])
        kept[:] = [r for r in kept if r["escrow_id"] != escrow_id]
        kept.extend(dict(m, escrow_id=escrow_id) for m in milestones)
        signed = client.tables.setdefault(ESCROW_SIGNATURES_TABLE, [])
        signed[:] = [r for r in signed if r["escrow_id"] != escrow_id]
        signed.extend({"escrow_id": escrow_id, "party": party} for party in signatures)

    def accept_proposal(params):
        job = next(r for r in client.tables[JOBS_TABLE] if r["id"] == params["p_job_id"])
        if job["version"] != params["p_job_version"]:
            return {"conflict": JOBS_TABLE, "actual_version": job["version"]}
        proposals = client.tables[PROPOSALS_TABLE]
        accepted = next(r for r in proposals if r["id"] == params["p_proposal_id"])
        if accepted["version"] != params["p_proposal_version"]:
            return {"conflict": PROPOSALS_TABLE, "actual_version": accepted["version"]}

        job.update(
            accepted_proposal_id=accepted["id"],
            updated_at=params["p_now"],
            version=job["version"] + 1,
        )
        accepted.update(status="accepted", status_changed_at=params["p_now"], version=accepted["version"] + 1)
        rejected = []
        for row in proposals:
            if row["job_id"] == job["id"] and row["id"] != accepted["id"] and row["status"] == "pending":
                row.update(status="rejected", status_changed_at=params["p_now"], version=row["version"] + 1)
                rejected.append(row["id"])
        return {"rejected": rejected}

    def save_escrow(params):
        escrows = client.tables.setdefault(ESCROWS_TABLE, [])
        row = params["p_escrow"]
        if any(r["job_id"] == row["job_id"] for r in escrows):
            return {"duplicate": True}
        escrows.append(dict(row))
        replace_children(row["id"], params["p_milestones"], params["p_signatures"])
        return {"version": row["version"]}

    def update_escrow(params):
        row = params["p_escrow"]
        current = next((r for r in client.tables.get(ESCROWS_TABLE, []) if r["id"] == row["id"]), None)
        if current is None:
            return {"missing": True}
        if current["version"] != params["p_expected_version"]:
            return {"conflict": True, "actual_version": current["version"]}
        current.update(row, version=current["version"] + 1)
        replace_children(row["id"], params["p_milestones"], params["p_signatures"])
        return {"version": current["version"]}

    handlers = {
        "accept_proposal": accept_proposal,
        "save_escrow": save_escrow,
        "update_escrow": update_escrow,
    }
    return lambda name, params: handlers[name](params)


@pytest.fixture
def supabase_engine(mock_supabase_client, ledger, config, clock):
    mock_supabase_client.foreign_keys = {
        ESCROW_MILESTONES_TABLE: "escrow_id",
        ESCROW_SIGNATURES_TABLE: "escrow_id",
    }
    mock_supabase_client.rpc_handler = _settlement_rpcs(mock_supabase_client)
    storage = SupabaseStorage(mock_supabase_client)
    return SettlementEngine(storage=storage, ledger=ledger, config=config, now_fn=clock)


class TestCompareAndSwap:
    def test_update_bumps_version(self, supabase_engine, post_job):
        job = post_job(supabase_engine)
        job.close_reason = "note"
        updated = supabase_engine.storage.update_job(job)
        assert updated.version == job.version + 1
        assert updated.close_reason == "note"

    def test_stale_update_reports_actual_version(self, supabase_engine, post_job):
        job = post_job(supabase_engine)
        supabase_engine.storage.update_job(supabase_engine.storage.get_job(job.id))
        with pytest.raises(VersionConflictError) as exc:
            supabase_engine.storage.update_job(job)
        assert exc.value.table == JOBS_TABLE
        assert exc.value.actual_version == job.version + 1

    def test_missing_row(self, supabase_engine, post_job):
        job = post_job(supabase_engine)
        job.id = "missing"
        with pytest.raises(KeyError):
            supabase_engine.storage.update_job(job)


class TestAcceptProposalRpc:
    def test_rpc_params_and_rejected_siblings(self, supabase_engine, mock_supabase_client, post_job):
        job = post_job(supabase_engine)
        winner = supabase_engine.proposals.submit_proposal(job.id, FREELANCER, 300_000, 30)
        loser = supabase_engine.proposals.submit_proposal(job.id, "dev-dave", 250_000, 30)

        supabase_engine.proposals.accept_proposal(winner.id)

        name, params = mock_supabase_client.rpc_calls[-1]
        assert name == "accept_proposal"
        assert params["p_job_id"] == job.id
        assert params["p_proposal_id"] == winner.id
        assert supabase_engine.proposals.get_proposal(loser.id).status == ProposalStatus.REJECTED.value
        assert supabase_engine.jobs.get_job(job.id).accepted_proposal_id == winner.id

    def test_conflict_outcome_raises(self, mock_supabase_client):
        mock_supabase_client.rpc_handler = lambda name, params: [
            {"conflict": PROPOSALS_TABLE, "actual_version": 7}
        ]
        storage = SupabaseStorage(mock_supabase_client)
        job = Job(id="j-1", employer_id=EMPLOYER, title="t", description="", budget_min=1, budget_max=10)
        proposal = Proposal(id="p-1", job_id="j-1", bidder_id=FREELANCER, amount=5, duration_days=3)
        with pytest.raises(VersionConflictError) as exc:
            storage.accept_proposal(job, proposal, now=datetime.now(timezone.utc))
        assert exc.value.table == PROPOSALS_TABLE
        assert exc.value.record_id == "p-1"
        assert exc.value.actual_version == 7


class TestEscrows:
    def test_duplicate_escrow_detected(self, supabase_engine, make_escrow):
        escrow = make_escrow(supabase_engine, lock=False)
        with pytest.raises(DuplicateRecordError):
            supabase_engine.storage.save_escrow(escrow)

    def test_aggregate_round_trip(self, supabase_engine, make_escrow):
        escrow = make_escrow(supabase_engine, plan=[30, 30, 40])
        supabase_engine.escrows.sign(escrow.id, "freelancer", "release:0")

        stored = supabase_engine.storage.get_escrow(escrow.id)
        assert stored.status == EscrowStatus.LOCKED.value
        assert stored.signatures == {"freelancer"}
        assert stored.pending_action == "release:0"
        assert [m.amount for m in stored.milestones] == [90_000, 90_000, 120_000]

    def test_milestones_and_signatures_stored_as_child_rows(
        self, supabase_engine, mock_supabase_client, make_escrow
    ):
        escrow = make_escrow(supabase_engine, plan=[30, 30, 40])
        supabase_engine.escrows.sign(escrow.id, "employer", "release:1")

        [row] = mock_supabase_client.tables[ESCROWS_TABLE]
        assert "milestones" not in row and "signatures" not in row
        milestones = mock_supabase_client.tables[ESCROW_MILESTONES_TABLE]
        assert sorted((m["milestone_index"], m["amount"]) for m in milestones) == [
            (0, 90_000),
            (1, 90_000),
            (2, 120_000),
        ]
        assert mock_supabase_client.tables[ESCROW_SIGNATURES_TABLE] == [
            {"escrow_id": escrow.id, "party": "employer"}
        ]

        supabase_engine.escrows.revoke(escrow.id, "employer")
        assert mock_supabase_client.tables[ESCROW_SIGNATURES_TABLE] == []

    def test_write_goes_through_update_function(self, supabase_engine, mock_supabase_client, make_escrow):
        escrow = make_escrow(supabase_engine)
        updated = supabase_engine.escrows.sign(escrow.id, "freelancer").escrow

        name, params = mock_supabase_client.rpc_calls[-1]
        assert name == "update_escrow"
        assert params["p_expected_version"] == escrow.version
        assert params["p_signatures"] == ["freelancer"]
        assert updated.version == escrow.version + 1

    def test_stale_escrow_update_conflicts(self, supabase_engine, make_escrow):
        escrow = make_escrow(supabase_engine)
        supabase_engine.escrows.sign(escrow.id, "employer")
        escrow.pending_action = "refund"
        with pytest.raises(VersionConflictError) as exc:
            supabase_engine.storage.update_escrow(escrow)
        assert exc.value.table == ESCROWS_TABLE
        assert exc.value.actual_version == escrow.version + 1
        assert supabase_engine.storage.get_escrow(escrow.id).signatures == {"employer"}

    def test_missing_escrow_update(self, supabase_engine, make_escrow):
        escrow = make_escrow(supabase_engine, lock=False)
        escrow.id = "missing"
        with pytest.raises(KeyError):
            supabase_engine.storage.update_escrow(escrow)

    def test_list_by_party(self, supabase_engine, make_escrow):
        escrow = make_escrow(supabase_engine)
        assert [e.id for e in supabase_engine.storage.list_escrows(party_id=FREELANCER)] == [escrow.id]
        assert supabase_engine.storage.list_escrows(party_id="nobody") == []


class TestFullFlow:
    def test_release_then_job_completed(self, supabase_engine, make_escrow):
        escrow = make_escrow(supabase_engine)
        supabase_engine.escrows.request_release(escrow.id, "employer")
        released = supabase_engine.escrows.request_release(escrow.id, "freelancer")

        assert released.status == EscrowStatus.RELEASED.value
        assert supabase_engine.jobs.get_job(escrow.job_id).status == JobStatus.COMPLETED.value
        statuses = [t.to_status for t in supabase_engine.escrows.get_transitions(escrow.id)]
        assert statuses == ["created", "locked", "released"]

    def test_disputes_are_queried_through_the_escrow_row(self, supabase_engine, make_escrow):
        escrow = make_escrow(supabase_engine)
        dispute = supabase_engine.disputes.raise_dispute(escrow.id, FREELANCER, "Unpaid")

        assert supabase_engine.disputes.get_dispute(dispute.id).reason == "Unpaid"
        assert [d.id for d in supabase_engine.disputes.list_open_disputes(arbiter_id=ARBITER)] == [dispute.id]

        supabase_engine.disputes.resolve(dispute.id, ARBITER, "release")
        assert supabase_engine.disputes.list_open_disputes() == []
        assert supabase_engine.disputes.list_disputes()[0].decision == "release"

    def test_notifications_read_flag(self, supabase_engine, post_job):
        job = post_job(supabase_engine)
        supabase_engine.proposals.submit_proposal(job.id, FREELANCER, 300_000, 30)
        [note] = supabase_engine.notifier.list_for(EMPLOYER)

        assert supabase_engine.notifier.mark_read(note.id, EMPLOYER)
        assert supabase_engine.notifier.list_for(EMPLOYER, unread_only=True) == []


def test_get_storage_wraps_client(mock_supabase_client):
    assert isinstance(get_storage("supabase", supabase_client=mock_supabase_client), SupabaseStorage)
