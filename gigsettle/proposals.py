"""
Proposal Ledger.

Bids against OPEN jobs. Accepting a proposal is one storage transaction:
the proposal becomes ACCEPTED, the job records it, and every sibling
PENDING proposal becomes REJECTED. The job's version guards the whole
unit, so of two concurrent accepts on the same job exactly one succeeds.
"""

import logging
import uuid
from typing import Callable, List, Optional

from gigsettle.concurrency import retry_on_conflict
from gigsettle.config import DEFAULT_CONFIG, SettlementConfig
from gigsettle.errors import (
    BudgetExceeded,
    DuplicateProposal,
    InvalidTransition,
    ProposalNotFound,
    Unauthorized,
    ValidationError,
)
from gigsettle.jobs import JobRegistry
from gigsettle.notifications import AuditTrail, Notifier
from gigsettle.storage.base import SettlementStorage
from gigsettle.types import (
    VALID_PROPOSAL_TRANSITIONS,
    DuplicateRecordError,
    JobStatus,
    NotificationType,
    Proposal,
    ProposalStatus,
    utc_now,
)

logger = logging.getLogger(__name__)


class ProposalLedger:
    """Records bids and their PENDING -> ACCEPTED/REJECTED/WITHDRAWN moves."""

    def __init__(
        self,
        storage: SettlementStorage,
        jobs: JobRegistry,
        config: SettlementConfig = DEFAULT_CONFIG,
        audit: Optional[AuditTrail] = None,
        notifier: Optional[Notifier] = None,
        now_fn: Callable = utc_now,
    ):
        self.storage = storage
        self.jobs = jobs
        self.config = config
        self.audit = audit or AuditTrail(storage, now_fn)
        self.notifier = notifier or Notifier(storage, now_fn)
        self._now = now_fn

    def submit_proposal(
        self,
        job_id: str,
        bidder_id: str,
        amount: int,
        duration_days: int,
        cover_letter: Optional[str] = None,
    ) -> Proposal:
        job = self.jobs.get_job(job_id)
        if not bidder_id:
            raise ValidationError("Bidder identity is required")
        if bidder_id == job.employer_id:
            raise Unauthorized("Employers cannot bid on their own jobs")
        if job.status != JobStatus.OPEN.value or job.accepted_proposal_id:
            raise BudgetExceeded(
                f"Job {job_id} is not accepting proposals", current_state=job.status
            )
        if amount > job.budget_max:
            raise BudgetExceeded(f"Proposal amount {amount} exceeds job budget {job.budget_max}")

        now = self._now()
        try:
            proposal = Proposal(
                id=str(uuid.uuid4()),
                job_id=job_id,
                bidder_id=bidder_id,
                amount=int(amount),
                duration_days=int(duration_days),
                cover_letter=cover_letter,
                created_at=now,
                status_changed_at=now,
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e

        try:
            self.storage.save_proposal(proposal)
        except DuplicateRecordError as e:
            raise DuplicateProposal(
                f"{bidder_id} already has an active proposal on job {job_id}"
            ) from e

        self.audit.record("proposal", proposal.id, None, proposal.status, actor_id=bidder_id)
        self.notifier.notify(
            [job.employer_id],
            NotificationType.PROPOSAL_RECEIVED,
            "New proposal",
            f"New proposal of {proposal.amount} {job.currency} on '{job.title}'.",
            job_id=job_id,
        )
        logger.info(f"Proposal {proposal.id} on job {job_id} bidder={bidder_id} amount={amount}")
        return proposal

    def get_proposal(self, proposal_id: str) -> Proposal:
        proposal = self.storage.get_proposal(proposal_id)
        if proposal is None:
            raise ProposalNotFound(f"Proposal not found: {proposal_id}")
        return proposal

    def list_proposals(
        self,
        job_id: Optional[str] = None,
        bidder_id: Optional[str] = None,
        status=None,
        limit: int = 100,
    ) -> List[Proposal]:
        return self.storage.list_proposals(job_id=job_id, bidder_id=bidder_id, status=status, limit=limit)

    def accept_proposal(self, proposal_id: str, actor_id: Optional[str] = None) -> Proposal:
        rejected: List[str] = []

        def attempt() -> Proposal:
            proposal = self.get_proposal(proposal_id)
            job = self.jobs.get_job(proposal.job_id)
            if actor_id is not None and actor_id != job.employer_id:
                raise Unauthorized(f"Only the employer can accept proposals on job {job.id}")
            if job.status != JobStatus.OPEN.value:
                raise InvalidTransition(
                    f"Job {job.id} is {job.status}, not open", current_state=job.status
                )
            if job.accepted_proposal_id:
                raise InvalidTransition(
                    f"Job {job.id} already accepted proposal {job.accepted_proposal_id}",
                    current_state=proposal.status,
                )
            if proposal.status != ProposalStatus.PENDING.value:
                raise InvalidTransition(
                    f"Proposal {proposal_id} is {proposal.status}", current_state=proposal.status
                )
            rejected[:] = self.storage.accept_proposal(job, proposal, self._now())
            return self.get_proposal(proposal_id)

        accepted = retry_on_conflict(attempt, self.config, f"accept proposal {proposal_id}")

        self.audit.record(
            "proposal", proposal_id, ProposalStatus.PENDING.value, accepted.status, actor_id=actor_id
        )
        bidders = []
        for sibling_id in rejected:
            self.audit.record(
                "proposal", sibling_id, ProposalStatus.PENDING.value, ProposalStatus.REJECTED.value,
                actor_id=actor_id, metadata={"reason": "sibling accepted"},
            )
            sibling = self.storage.get_proposal(sibling_id)
            if sibling is not None:
                bidders.append(sibling.bidder_id)
        self.notifier.notify(
            [accepted.bidder_id],
            NotificationType.PROPOSAL_ACCEPTED,
            "Proposal accepted",
            "Your proposal was accepted.",
            job_id=accepted.job_id,
        )
        self.notifier.notify(
            bidders,
            NotificationType.PROPOSAL_REJECTED,
            "Proposal not selected",
            "Another proposal was accepted for this job.",
            job_id=accepted.job_id,
        )
        logger.info(f"Accepted proposal {proposal_id} on job {accepted.job_id}; rejected {len(rejected)} siblings")
        return accepted

    def _move(
        self, proposal_id: str, target: ProposalStatus, actor_id: Optional[str], owner: str
    ) -> Proposal:
        from_status = {}

        def attempt() -> Proposal:
            proposal = self.get_proposal(proposal_id)
            if owner == "employer":
                job = self.jobs.get_job(proposal.job_id)
                allowed = job.employer_id
            else:
                allowed = proposal.bidder_id
            if actor_id is not None and actor_id != allowed:
                raise Unauthorized(f"Only the {owner} can {target.value} proposal {proposal_id}")
            current = ProposalStatus(proposal.status)
            if target not in VALID_PROPOSAL_TRANSITIONS[current]:
                raise InvalidTransition(
                    f"Proposal {proposal_id} is {proposal.status}", current_state=proposal.status
                )
            from_status["value"] = proposal.status
            proposal.status = target.value
            proposal.status_changed_at = self._now()
            return self.storage.update_proposal(proposal)

        proposal = retry_on_conflict(attempt, self.config, f"{target.value} proposal {proposal_id}")
        self.audit.record("proposal", proposal_id, from_status["value"], proposal.status, actor_id=actor_id)
        logger.info(f"Proposal {proposal_id} {from_status['value']} -> {proposal.status}")
        return proposal

    def reject_proposal(self, proposal_id: str, actor_id: Optional[str] = None) -> Proposal:
        proposal = self._move(proposal_id, ProposalStatus.REJECTED, actor_id, owner="employer")
        self.notifier.notify(
            [proposal.bidder_id],
            NotificationType.PROPOSAL_REJECTED,
            "Proposal rejected",
            "Your proposal was rejected.",
            job_id=proposal.job_id,
        )
        return proposal

    def withdraw_proposal(self, proposal_id: str, actor_id: Optional[str] = None) -> Proposal:
        return self._move(proposal_id, ProposalStatus.WITHDRAWN, actor_id, owner="bidder")
