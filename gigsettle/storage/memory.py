"""In-memory settlement storage for testing and local development."""

import copy
import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from gigsettle.storage.base import StatusFilter, status_values
from gigsettle.types import (
    Dispute,
    DuplicateRecordError,
    Escrow,
    Job,
    Notification,
    Proposal,
    ProposalStatus,
    StateTransition,
    VersionConflictError,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

ACTIVE_PROPOSAL_STATUSES = (ProposalStatus.PENDING.value, ProposalStatus.ACCEPTED.value)


class InMemoryStorage:
    """Dict-backed storage. Records are deep-copied on the way in and out."""

    def __init__(self):
        """Initialize empty storage."""
        self._lock = threading.RLock()
        self._jobs: Dict[str, Job] = {}
        self._proposals: Dict[str, Proposal] = {}
        self._escrows: Dict[str, Escrow] = {}
        self._transitions: Dict[str, List[StateTransition]] = {}  # entity key -> list
        self._notifications: Dict[str, Notification] = {}

    def _check_version(self, table: str, record_id: str, stored, expected: int) -> None:
        if stored is None:
            raise KeyError(f"{table}/{record_id} does not exist")
        if stored.version != expected:
            raise VersionConflictError(table, record_id, expected, stored.version)

    # === Jobs ===

    def save_job(self, job: Job) -> str:
        with self._lock:
            self._jobs[job.id] = copy.deepcopy(job)
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def list_jobs(
        self,
        status: StatusFilter = None,
        employer_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        statuses = status_values(status)
        with self._lock:
            jobs = list(self._jobs.values())
        if statuses is not None:
            jobs = [j for j in jobs if j.status in statuses]
        if employer_id is not None:
            jobs = [j for j in jobs if j.employer_id == employer_id]
        jobs.sort(key=lambda j: j.created_at or _EPOCH, reverse=True)
        return [copy.deepcopy(j) for j in jobs[offset : offset + limit]]

    def update_job(self, job: Job) -> Job:
        with self._lock:
            self._check_version("jobs", job.id, self._jobs.get(job.id), job.version)
            stored = replace(copy.deepcopy(job), version=job.version + 1)
            self._jobs[job.id] = stored
            return copy.deepcopy(stored)

    # === Proposals ===

    def save_proposal(self, proposal: Proposal) -> str:
        with self._lock:
            for existing in self._proposals.values():
                if (
                    existing.job_id == proposal.job_id
                    and existing.bidder_id == proposal.bidder_id
                    and existing.status in ACTIVE_PROPOSAL_STATUSES
                ):
                    raise DuplicateRecordError("proposals", f"{proposal.job_id}/{proposal.bidder_id}")
            self._proposals[proposal.id] = copy.deepcopy(proposal)
        return proposal.id

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        with self._lock:
            proposal = self._proposals.get(proposal_id)
            return copy.deepcopy(proposal) if proposal else None

    def list_proposals(
        self,
        job_id: Optional[str] = None,
        bidder_id: Optional[str] = None,
        status: StatusFilter = None,
        limit: int = 100,
    ) -> List[Proposal]:
        statuses = status_values(status)
        with self._lock:
            proposals = list(self._proposals.values())
        if job_id is not None:
            proposals = [p for p in proposals if p.job_id == job_id]
        if bidder_id is not None:
            proposals = [p for p in proposals if p.bidder_id == bidder_id]
        if statuses is not None:
            proposals = [p for p in proposals if p.status in statuses]
        proposals.sort(key=lambda p: p.created_at or _EPOCH)
        return [copy.deepcopy(p) for p in proposals[:limit]]

    def update_proposal(self, proposal: Proposal) -> Proposal:
        with self._lock:
            self._check_version(
                "proposals", proposal.id, self._proposals.get(proposal.id), proposal.version
            )
            stored = replace(copy.deepcopy(proposal), version=proposal.version + 1)
            self._proposals[proposal.id] = stored
            return copy.deepcopy(stored)

    def accept_proposal(self, job: Job, proposal: Proposal, now: datetime) -> List[str]:
        with self._lock:
            self._check_version("jobs", job.id, self._jobs.get(job.id), job.version)
            self._check_version(
                "proposals", proposal.id, self._proposals.get(proposal.id), proposal.version
            )

            stored_job = self._jobs[job.id]
            stored_job.accepted_proposal_id = proposal.id
            stored_job.updated_at = now
            stored_job.version += 1

            accepted = self._proposals[proposal.id]
            accepted.status = ProposalStatus.ACCEPTED.value
            accepted.status_changed_at = now
            accepted.version += 1

            rejected = []
            for sibling in self._proposals.values():
                if (
                    sibling.job_id == job.id
                    and sibling.id != proposal.id
                    and sibling.status == ProposalStatus.PENDING.value
                ):
                    sibling.status = ProposalStatus.REJECTED.value
                    sibling.status_changed_at = now
                    sibling.version += 1
                    rejected.append(sibling.id)
            return rejected

    # === Escrows ===

    def save_escrow(self, escrow: Escrow) -> str:
        with self._lock:
            if any(e.job_id == escrow.job_id for e in self._escrows.values()):
                raise DuplicateRecordError("escrows", escrow.job_id)
            self._escrows[escrow.id] = copy.deepcopy(escrow)
        return escrow.id

    def get_escrow(self, escrow_id: str) -> Optional[Escrow]:
        with self._lock:
            escrow = self._escrows.get(escrow_id)
            return copy.deepcopy(escrow) if escrow else None

    def list_escrows(
        self,
        job_id: Optional[str] = None,
        proposal_id: Optional[str] = None,
        party_id: Optional[str] = None,
        status: StatusFilter = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Escrow]:
        statuses = status_values(status)
        with self._lock:
            escrows = list(self._escrows.values())
        if job_id is not None:
            escrows = [e for e in escrows if e.job_id == job_id]
        if proposal_id is not None:
            escrows = [e for e in escrows if e.proposal_id == proposal_id]
        if party_id is not None:
            escrows = [e for e in escrows if party_id in e.parties.values()]
        if statuses is not None:
            escrows = [e for e in escrows if e.status in statuses]
        escrows.sort(key=lambda e: e.created_at or _EPOCH)
        return [copy.deepcopy(e) for e in escrows[offset : offset + limit]]

    def update_escrow(self, escrow: Escrow) -> Escrow:
        with self._lock:
            self._check_version("escrows", escrow.id, self._escrows.get(escrow.id), escrow.version)
            stored = replace(copy.deepcopy(escrow), version=escrow.version + 1)
            self._escrows[escrow.id] = stored
            return copy.deepcopy(stored)

    # === Disputes ===

    def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        with self._lock:
            for escrow in self._escrows.values():
                if escrow.dispute and escrow.dispute.id == dispute_id:
                    return copy.deepcopy(escrow.dispute)
        return None

    def list_disputes(
        self,
        arbiter_id: Optional[str] = None,
        open_only: bool = False,
        limit: int = 100,
    ) -> List[Dispute]:
        with self._lock:
            disputes = [copy.deepcopy(e.dispute) for e in self._escrows.values() if e.dispute]
        if arbiter_id is not None:
            disputes = [d for d in disputes if d.arbiter_id == arbiter_id]
        if open_only:
            disputes = [d for d in disputes if d.is_open]
        disputes.sort(key=lambda d: d.created_at or _EPOCH)
        return disputes[:limit]

    # === Transitions ===

    def save_transition(self, transition: StateTransition) -> str:
        key = f"{transition.entity_type}:{transition.entity_id}"
        with self._lock:
            self._transitions.setdefault(key, []).append(copy.deepcopy(transition))
        return transition.id

    def get_transitions(self, entity_type: str, entity_id: str) -> List[StateTransition]:
        with self._lock:
            return copy.deepcopy(self._transitions.get(f"{entity_type}:{entity_id}", []))

    # === Notifications ===

    def save_notification(self, notification: Notification) -> str:
        with self._lock:
            self._notifications[notification.id] = copy.deepcopy(notification)
        return notification.id

    def list_notifications(
        self,
        recipient_id: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> List[Notification]:
        with self._lock:
            items = [n for n in self._notifications.values() if n.recipient_id == recipient_id]
            if unread_only:
                items = [n for n in items if not n.read]
            items = [copy.deepcopy(n) for n in items]
        # Newest first, ties in reverse insertion order
        items.sort(key=lambda n: n.created_at or _EPOCH)
        items.reverse()
        return items[:limit]

    def mark_notification_read(self, notification_id: str, recipient_id: str) -> bool:
        with self._lock:
            notification = self._notifications.get(notification_id)
            if notification is None or notification.recipient_id != recipient_id:
                return False
            notification.read = True
            return True
