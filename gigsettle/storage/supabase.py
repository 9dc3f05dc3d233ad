"""Supabase storage backend for gigsettle.

Jobs, proposals, transitions and notifications are plain rows updated with
a conditional UPDATE (`.eq("version", v)`) as the compare-and-swap.

An escrow's milestones and authorization set live in child tables
(`settlement_escrow_milestones` keyed by milestone index,
`settlement_escrow_signatures` one row per signing party). Writing an
escrow touches all three tables, so it goes through the `save_escrow` and
`update_escrow` Postgres functions, which check the version and replace
the children in one transaction. Reads embed the children in a single
select. Accepting a proposal likewise goes through `accept_proposal`
(see supabase/migrations).
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from gigsettle.storage.base import StatusFilter, status_values
from gigsettle.types import (
    Dispute,
    DuplicateRecordError,
    Escrow,
    Job,
    Notification,
    Proposal,
    StateTransition,
    VersionConflictError,
    format_datetime,
)

logger = logging.getLogger(__name__)

JOBS_TABLE = "settlement_jobs"
PROPOSALS_TABLE = "settlement_proposals"
ESCROWS_TABLE = "settlement_escrows"
ESCROW_MILESTONES_TABLE = "settlement_escrow_milestones"
ESCROW_SIGNATURES_TABLE = "settlement_escrow_signatures"
TRANSITIONS_TABLE = "settlement_transitions"
NOTIFICATIONS_TABLE = "settlement_notifications"

ESCROW_SELECT = f"*, {ESCROW_MILESTONES_TABLE}(*), {ESCROW_SIGNATURES_TABLE}(party)"

UNIQUE_VIOLATION = "23505"


def _is_unique_violation(error: Exception) -> bool:
    code = getattr(error, "code", None)
    return code == UNIQUE_VIOLATION or "duplicate key" in str(error)


def _rpc_outcome(result) -> Dict[str, Any]:
    outcome = result.data
    if isinstance(outcome, list):
        outcome = outcome[0] if outcome else {}
    return outcome or {}


def _escrow_params(escrow: Escrow) -> Dict[str, Any]:
    """Split an escrow into its row and its child rows for the write functions."""
    data = escrow.to_dict()
    milestones = []
    for milestone in data.pop("milestones"):
        milestone["milestone_index"] = milestone.pop("index")
        milestones.append(milestone)
    return {
        "p_escrow": data,
        "p_milestones": milestones,
        "p_signatures": data.pop("signatures"),
    }


def _escrow_from_row(row: Dict[str, Any]) -> Escrow:
    data = dict(row)
    milestones = []
    for child in data.pop(ESCROW_MILESTONES_TABLE, None) or []:
        milestone = {k: v for k, v in child.items() if k not in ("escrow_id", "milestone_index")}
        milestone["index"] = child["milestone_index"]
        milestones.append(milestone)
    data["milestones"] = milestones
    data["signatures"] = [child["party"] for child in data.pop(ESCROW_SIGNATURES_TABLE, None) or []]
    return Escrow.from_dict(data)


class SupabaseStorage:
    """Settlement storage on a Supabase (PostgREST) client."""

    def __init__(self, client):
        self.db = client

    def _conflict(self, table: str, record_id: str, expected: int):
        result = self.db.table(table).select("version").eq("id", record_id).execute()
        if not result.data:
            raise KeyError(f"{table}/{record_id} does not exist")
        raise VersionConflictError(table, record_id, expected, result.data[0]["version"])

    def _cas_update(self, table: str, record_id: str, expected: int, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = {**data, "version": expected + 1}
        result = (
            self.db.table(table)
            .update(payload)
            .eq("id", record_id)
            .eq("version", expected)
            .execute()
        )
        if not result.data:
            self._conflict(table, record_id, expected)
        return result.data[0]

    # === Jobs ===

    def save_job(self, job: Job) -> str:
        self.db.table(JOBS_TABLE).insert(job.to_dict()).execute()
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        result = self.db.table(JOBS_TABLE).select("*").eq("id", job_id).execute()
        return Job.from_dict(result.data[0]) if result.data else None

    def list_jobs(
        self,
        status: StatusFilter = None,
        employer_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        query = self.db.table(JOBS_TABLE).select("*")
        statuses = status_values(status)
        if statuses is not None:
            query = query.in_("status", statuses)
        if employer_id is not None:
            query = query.eq("employer_id", employer_id)
        result = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
        return [Job.from_dict(row) for row in result.data or []]

    def update_job(self, job: Job) -> Job:
        data = job.to_dict()
        data.pop("id")
        data.pop("version")
        return Job.from_dict(self._cas_update(JOBS_TABLE, job.id, job.version, data))

    # === Proposals ===

    def save_proposal(self, proposal: Proposal) -> str:
        try:
            self.db.table(PROPOSALS_TABLE).insert(proposal.to_dict()).execute()
        except Exception as e:
            if _is_unique_violation(e):
                raise DuplicateRecordError(
                    PROPOSALS_TABLE, f"{proposal.job_id}/{proposal.bidder_id}"
                ) from e
            raise
        return proposal.id

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        result = self.db.table(PROPOSALS_TABLE).select("*").eq("id", proposal_id).execute()
        return Proposal.from_dict(result.data[0]) if result.data else None

    def list_proposals(
        self,
        job_id: Optional[str] = None,
        bidder_id: Optional[str] = None,
        status: StatusFilter = None,
        limit: int = 100,
    ) -> List[Proposal]:
        query = self.db.table(PROPOSALS_TABLE).select("*")
        if job_id is not None:
            query = query.eq("job_id", job_id)
        if bidder_id is not None:
            query = query.eq("bidder_id", bidder_id)
        statuses = status_values(status)
        if statuses is not None:
            query = query.in_("status", statuses)
        result = query.order("created_at").limit(limit).execute()
        return [Proposal.from_dict(row) for row in result.data or []]

    def update_proposal(self, proposal: Proposal) -> Proposal:
        data = proposal.to_dict()
        data.pop("id")
        data.pop("version")
        return Proposal.from_dict(
            self._cas_update(PROPOSALS_TABLE, proposal.id, proposal.version, data)
        )

    def accept_proposal(self, job: Job, proposal: Proposal, now: datetime) -> List[str]:
        result = self.db.rpc(
            "accept_proposal",
            {
                "p_job_id": job.id,
                "p_job_version": job.version,
                "p_proposal_id": proposal.id,
                "p_proposal_version": proposal.version,
                "p_now": format_datetime(now),
            },
        ).execute()
        outcome = _rpc_outcome(result)
        if outcome.get("conflict"):
            table = outcome["conflict"]
            record_id = job.id if table == JOBS_TABLE else proposal.id
            expected = job.version if table == JOBS_TABLE else proposal.version
            raise VersionConflictError(table, record_id, expected, outcome.get("actual_version", -1))
        return list(outcome.get("rejected") or [])

    # === Escrows ===

    def save_escrow(self, escrow: Escrow) -> str:
        result = self.db.rpc("save_escrow", _escrow_params(escrow)).execute()
        if _rpc_outcome(result).get("duplicate"):
            raise DuplicateRecordError(ESCROWS_TABLE, escrow.job_id)
        return escrow.id

    def get_escrow(self, escrow_id: str) -> Optional[Escrow]:
        result = self.db.table(ESCROWS_TABLE).select(ESCROW_SELECT).eq("id", escrow_id).execute()
        return _escrow_from_row(result.data[0]) if result.data else None

    def list_escrows(
        self,
        job_id: Optional[str] = None,
        proposal_id: Optional[str] = None,
        party_id: Optional[str] = None,
        status: StatusFilter = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Escrow]:
        query = self.db.table(ESCROWS_TABLE).select(ESCROW_SELECT)
        if job_id is not None:
            query = query.eq("job_id", job_id)
        if proposal_id is not None:
            query = query.eq("proposal_id", proposal_id)
        if party_id is not None:
            query = query.or_(
                f"employer_id.eq.{party_id},freelancer_id.eq.{party_id},arbiter_id.eq.{party_id}"
            )
        statuses = status_values(status)
        if statuses is not None:
            query = query.in_("status", statuses)
        result = query.order("created_at").range(offset, offset + limit - 1).execute()
        return [_escrow_from_row(row) for row in result.data or []]

    def update_escrow(self, escrow: Escrow) -> Escrow:
        params = _escrow_params(escrow)
        params["p_expected_version"] = escrow.version
        outcome = _rpc_outcome(self.db.rpc("update_escrow", params).execute())
        if outcome.get("missing"):
            raise KeyError(f"{ESCROWS_TABLE}/{escrow.id} does not exist")
        if outcome.get("conflict"):
            raise VersionConflictError(
                ESCROWS_TABLE, escrow.id, escrow.version, outcome.get("actual_version", -1)
            )
        updated = Escrow.from_dict(escrow.to_dict())
        updated.version = int(outcome["version"])
        return updated

    # === Disputes ===

    def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        result = (
            self.db.table(ESCROWS_TABLE).select("dispute").eq("dispute->>id", dispute_id).execute()
        )
        if not result.data or not result.data[0].get("dispute"):
            return None
        return Dispute.from_dict(result.data[0]["dispute"])

    def list_disputes(
        self,
        arbiter_id: Optional[str] = None,
        open_only: bool = False,
        limit: int = 100,
    ) -> List[Dispute]:
        query = self.db.table(ESCROWS_TABLE).select("dispute").not_.is_("dispute", "null")
        if arbiter_id is not None:
            query = query.eq("arbiter_id", arbiter_id)
        if open_only:
            query = query.eq("dispute->>decision", "pending")
        result = query.order("disputed_at").limit(limit).execute()
        return [Dispute.from_dict(row["dispute"]) for row in result.data or [] if row.get("dispute")]

    # === Transitions ===

    def save_transition(self, transition: StateTransition) -> str:
        self.db.table(TRANSITIONS_TABLE).insert(transition.to_dict()).execute()
        return transition.id

    def get_transitions(self, entity_type: str, entity_id: str) -> List[StateTransition]:
        result = (
            self.db.table(TRANSITIONS_TABLE)
            .select("*")
            .eq("entity_type", entity_type)
            .eq("entity_id", entity_id)
            .order("created_at")
            .execute()
        )
        return [StateTransition.from_dict(row) for row in result.data or []]

    # === Notifications ===

    def save_notification(self, notification: Notification) -> str:
        self.db.table(NOTIFICATIONS_TABLE).insert(notification.to_dict()).execute()
        return notification.id

    def list_notifications(
        self,
        recipient_id: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> List[Notification]:
        query = self.db.table(NOTIFICATIONS_TABLE).select("*").eq("recipient_id", recipient_id)
        if unread_only:
            query = query.eq("read", False)
        result = query.order("created_at", desc=True).limit(limit).execute()
        return [Notification.from_dict(row) for row in result.data or []]

    def mark_notification_read(self, notification_id: str, recipient_id: str) -> bool:
        result = (
            self.db.table(NOTIFICATIONS_TABLE)
            .update({"read": True})
            .eq("id", notification_id)
            .eq("recipient_id", recipient_id)
            .execute()
        )
        return bool(result.data)
