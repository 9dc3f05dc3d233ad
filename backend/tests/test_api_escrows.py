"""Tests for escrow routes."""

import pytest

from gigsettle.types import ConfirmationStatus, LedgerAction

API = "/api/v1"
EMPLOYER = "emp-alice"
FREELANCER = "dev-bob"
ARBITER = "arb-carol"
OUTSIDER = "eve-outsider"


@pytest.fixture
def sign(client, auth_headers):
    def factory(escrow_id, agent_id, party, action=None):
        body = {"party": party}
        if action is not None:
            body["action"] = action
        return client.post(f"{API}/escrows/{escrow_id}/sign", json=body, headers=auth_headers(agent_id))

    return factory


class TestCreate:
    def test_created_from_accepted_bid(self, funded_escrow):
        escrow = funded_escrow(lock=False)
        assert escrow["status"] == "created"
        assert escrow["employer_id"] == EMPLOYER
        assert escrow["freelancer_id"] == FREELANCER
        assert escrow["arbiter_id"] == ARBITER
        assert escrow["total_amount"] == 300_000
        assert escrow["threshold"] == 2
        assert [m["amount"] for m in escrow["milestones"]] == [300_000]

    def test_milestone_plan_override(self, funded_escrow):
        escrow = funded_escrow(milestone_plan=[30, 30, 40], lock=False)
        assert [m["amount"] for m in escrow["milestones"]] == [90_000, 90_000, 120_000]

    def test_only_employer_funds(self, client, auth_headers, accepted_bid):
        proposal = accepted_bid()
        resp = client.post(
            f"{API}/escrows",
            json={"job_id": proposal["job_id"], "proposal_id": proposal["id"], "arbiter_id": ARBITER},
            headers=auth_headers(FREELANCER),
        )
        assert resp.status_code == 403

    def test_arbiter_must_be_independent(self, client, auth_headers, accepted_bid):
        proposal = accepted_bid()
        resp = client.post(
            f"{API}/escrows",
            json={"job_id": proposal["job_id"], "proposal_id": proposal["id"], "arbiter_id": FREELANCER},
            headers=auth_headers(EMPLOYER),
        )
        assert resp.status_code == 400

    def test_job_moves_in_progress(self, client, auth_headers, funded_escrow):
        escrow = funded_escrow(lock=False)
        job = client.get(f"{API}/jobs/{escrow['job_id']}", headers=auth_headers(EMPLOYER)).json()
        assert job["status"] == "in_progress"
        assert job["escrow_id"] == escrow["id"]


class TestLock:
    def test_lock_records_tx_ref(self, client, auth_headers, funded_escrow):
        escrow = funded_escrow()
        assert escrow["status"] == "locked"
        assert escrow["lock_tx_ref"] == "tx-lock-000001"

        history = client.get(
            f"{API}/escrows/{escrow['id']}/transitions", headers=auth_headers(FREELANCER)
        ).json()
        assert [t["to_status"] for t in history["transitions"]] == ["created", "locked"]

    def test_pending_lock_is_503_and_resumes(self, client, auth_headers, funded_escrow, api_ledger):
        escrow = funded_escrow(lock=False)
        api_ledger.script(ConfirmationStatus.PENDING)

        resp = client.post(f"{API}/escrows/{escrow['id']}/lock", headers=auth_headers(EMPLOYER))
        assert resp.status_code == 503
        assert resp.headers["retry-after"] == "1"
        assert resp.json()["kind"] == "ledger"
        assert resp.json()["retryable"] is True

        pending = client.get(f"{API}/escrows/{escrow['id']}", headers=auth_headers(EMPLOYER)).json()
        assert pending["status"] == "created"
        tx_ref = pending["submission"]["tx_ref"]

        api_ledger.set_status(tx_ref, ConfirmationStatus.CONFIRMED)
        resp = client.post(f"{API}/escrows/{escrow['id']}/lock", headers=auth_headers(EMPLOYER))
        assert resp.status_code == 200
        assert resp.json()["lock_tx_ref"] == tx_ref
        assert resp.json()["submission"] is None
        assert len(api_ledger.submissions_for(escrow["id"], LedgerAction.LOCK)) == 1

    def test_lock_twice_is_a_state_error(self, client, auth_headers, funded_escrow):
        escrow = funded_escrow()
        resp = client.post(f"{API}/escrows/{escrow['id']}/lock", headers=auth_headers(EMPLOYER))
        assert resp.status_code == 409
        assert resp.json()["current_state"] == "locked"

    def test_confirm_lock_out_of_band(self, client, auth_headers, funded_escrow):
        escrow = funded_escrow(lock=False)
        url = f"{API}/escrows/{escrow['id']}/confirm-lock"

        assert client.post(url, json={"tx_ref": "tx-ext-1"}, headers=auth_headers(FREELANCER)).status_code == 403
        first = client.post(url, json={"tx_ref": "tx-ext-1"}, headers=auth_headers(EMPLOYER))
        again = client.post(url, json={"tx_ref": "tx-ext-1"}, headers=auth_headers(EMPLOYER))

        assert first.json()["status"] == "locked"
        assert again.status_code == 200
        assert again.json()["version"] == first.json()["version"]


class TestSignAndRelease:
    def test_full_release(self, client, auth_headers, funded_escrow, sign):
        escrow = funded_escrow()
        first = sign(escrow["id"], EMPLOYER, "employer").json()
        assert first["action"] == "release:0"
        assert first["threshold_met"] is False

        second = sign(escrow["id"], FREELANCER, "freelancer").json()
        assert second["signatures"] == ["employer", "freelancer"]
        assert second["threshold_met"] is True
        # Signing alone moves no funds
        assert second["escrow"]["status"] == "locked"

        resp = client.post(f"{API}/escrows/{escrow['id']}/release", headers=auth_headers(FREELANCER))
        assert resp.status_code == 200
        released = resp.json()
        assert released["status"] == "released"
        assert released["remaining_amount"] == 0
        assert released["release_tx_refs"] == ["tx-release-000002"]

        job = client.get(f"{API}/jobs/{escrow['job_id']}", headers=auth_headers(EMPLOYER)).json()
        assert job["status"] == "completed"

    def test_party_must_match_caller(self, funded_escrow, sign):
        escrow = funded_escrow()
        resp = sign(escrow["id"], FREELANCER, "employer")
        assert resp.status_code == 403
        assert resp.json()["kind"] == "authorization"

    def test_outsider_cannot_sign_or_read(self, client, auth_headers, funded_escrow, sign):
        escrow = funded_escrow()
        assert sign(escrow["id"], OUTSIDER, "arbiter").status_code == 403
        assert client.get(f"{API}/escrows/{escrow['id']}", headers=auth_headers(OUTSIDER)).status_code == 403

    def test_double_sign(self, funded_escrow, sign):
        escrow = funded_escrow()
        sign(escrow["id"], EMPLOYER, "employer")
        resp = sign(escrow["id"], EMPLOYER, "employer")
        assert resp.status_code == 409
        assert resp.json()["current_state"] == "release:0"

    def test_action_switch_blocked_by_signatures(self, funded_escrow, sign):
        escrow = funded_escrow()
        sign(escrow["id"], EMPLOYER, "employer", "refund")
        resp = sign(escrow["id"], FREELANCER, "freelancer", "release:0")
        assert resp.status_code == 409
        assert resp.json()["current_state"] == "refund"

    def test_malformed_action_rejected_by_model(self, funded_escrow, sign):
        escrow = funded_escrow()
        assert sign(escrow["id"], EMPLOYER, "employer", "pay-everyone").status_code == 422

    def test_release_before_threshold(self, client, auth_headers, funded_escrow, sign):
        escrow = funded_escrow()
        sign(escrow["id"], EMPLOYER, "employer")
        resp = client.post(f"{API}/escrows/{escrow['id']}/release", headers=auth_headers(EMPLOYER))
        assert resp.status_code == 409
        assert resp.json()["kind"] == "state"

    def test_revoke(self, client, auth_headers, funded_escrow, sign):
        escrow = funded_escrow()
        sign(escrow["id"], EMPLOYER, "employer", "refund")
        resp = client.delete(f"{API}/escrows/{escrow['id']}/sign", headers=auth_headers(EMPLOYER))
        assert resp.status_code == 200
        assert resp.json()["signatures"] == []
        assert resp.json()["pending_action"] is None

    def test_failed_release_keeps_signatures(self, client, auth_headers, funded_escrow, sign, api_ledger):
        escrow = funded_escrow()
        sign(escrow["id"], EMPLOYER, "employer")
        sign(escrow["id"], FREELANCER, "freelancer")
        api_ledger.script(ConfirmationStatus.FAILED)

        resp = client.post(f"{API}/escrows/{escrow['id']}/release", headers=auth_headers(EMPLOYER))
        assert resp.status_code == 503
        current = client.get(f"{API}/escrows/{escrow['id']}", headers=auth_headers(EMPLOYER)).json()
        assert current["status"] == "locked"
        assert current["signatures"] == ["employer", "freelancer"]
        assert current["submission"] is None

        retry = client.post(f"{API}/escrows/{escrow['id']}/release", headers=auth_headers(EMPLOYER))
        assert retry.json()["status"] == "released"


class TestRefund:
    def test_refund_cancels_job(self, client, auth_headers, funded_escrow, sign):
        escrow = funded_escrow()
        sign(escrow["id"], EMPLOYER, "employer", "refund")
        sign(escrow["id"], ARBITER, "arbiter")

        resp = client.post(f"{API}/escrows/{escrow['id']}/refund", headers=auth_headers(EMPLOYER))
        assert resp.status_code == 200
        assert resp.json()["status"] == "refunded"
        assert resp.json()["refund_tx_ref"].startswith("tx-refund-")
        job = client.get(f"{API}/jobs/{escrow['job_id']}", headers=auth_headers(EMPLOYER)).json()
        assert job["status"] == "cancelled"

    def test_refund_without_authorization(self, client, auth_headers, funded_escrow):
        escrow = funded_escrow()
        resp = client.post(f"{API}/escrows/{escrow['id']}/refund", headers=auth_headers(EMPLOYER))
        assert resp.status_code == 409


class TestMilestones:
    def test_signed_milestone_release(self, client, auth_headers, funded_escrow, sign):
        escrow = funded_escrow(milestone_plan=[50, 50])
        url = f"{API}/escrows/{escrow['id']}/milestones/0/release"

        assert client.post(url, headers=auth_headers(FREELANCER)).status_code == 409

        sign(escrow["id"], EMPLOYER, "employer", "release:0")
        sign(escrow["id"], FREELANCER, "freelancer")
        resp = client.post(url, headers=auth_headers(FREELANCER))

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "locked"
        assert body["released_amount"] == 150_000
        assert body["current_milestone"] == 1
        assert body["milestones"][0]["released"] is True

        again = client.post(url, headers=auth_headers(FREELANCER))
        assert again.status_code == 409

    def test_auto_release_after_deadline(self, client, auth_headers, funded_escrow, api_clock):
        escrow = funded_escrow(milestone_plan=[50, 50])
        api_clock.advance(days=31)

        client.post(f"{API}/escrows/{escrow['id']}/milestones/0/release", headers=auth_headers(FREELANCER))
        resp = client.post(
            f"{API}/escrows/{escrow['id']}/milestones/1/release", headers=auth_headers(FREELANCER)
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "released"
        assert all(m["auto_released"] for m in resp.json()["milestones"])

    def test_unknown_milestone(self, client, auth_headers, funded_escrow):
        escrow = funded_escrow()
        resp = client.post(
            f"{API}/escrows/{escrow['id']}/milestones/5/release", headers=auth_headers(EMPLOYER)
        )
        assert resp.status_code == 404


class TestQueries:
    def test_list_scoped_to_parties(self, client, auth_headers, funded_escrow):
        escrow = funded_escrow()

        mine = client.get(f"{API}/escrows", headers=auth_headers(ARBITER)).json()
        assert [e["id"] for e in mine["escrows"]] == [escrow["id"]]
        assert client.get(f"{API}/escrows", headers=auth_headers(OUTSIDER)).json()["escrows"] == []

        admin = client.get(f"{API}/escrows", headers=auth_headers(OUTSIDER, admin=True)).json()
        assert [e["id"] for e in admin["escrows"]] == [escrow["id"]]

    def test_filter_by_status(self, client, auth_headers, funded_escrow):
        funded_escrow()
        resp = client.get(f"{API}/escrows", params={"status": "created"}, headers=auth_headers(EMPLOYER))
        assert resp.json()["escrows"] == []

    def test_unknown_escrow(self, client, auth_headers):
        resp = client.get(f"{API}/escrows/missing", headers=auth_headers(EMPLOYER))
        assert resp.status_code == 404
