"""
Job Registry.

Jobs are posted OPEN, move to IN_PROGRESS when an escrow is created for
the accepted proposal, and end COMPLETED (final milestone released),
CANCELLED (escrow refunded, or cancelled by the employer) or CLOSED.
Terminal jobs never change again.
"""

import logging
import uuid
from typing import Callable, List, Optional, Sequence

from gigsettle.concurrency import retry_on_conflict
from gigsettle.config import DEFAULT_CONFIG, SettlementConfig
from gigsettle.errors import (
    InvalidTransition,
    JobNotFound,
    Unauthorized,
    ValidationError,
)
from gigsettle.milestones import coerce_plan, validate_plan
from gigsettle.notifications import AuditTrail, Notifier
from gigsettle.storage.base import SettlementStorage
from gigsettle.types import (
    TERMINAL_ESCROW_STATUSES,
    VALID_JOB_TRANSITIONS,
    Job,
    JobStatus,
    NotificationType,
    ProposalStatus,
    utc_now,
)

logger = logging.getLogger(__name__)


class JobRegistry:
    """Owns job postings and their lifecycle transitions."""

    def __init__(
        self,
        storage: SettlementStorage,
        config: SettlementConfig = DEFAULT_CONFIG,
        audit: Optional[AuditTrail] = None,
        notifier: Optional[Notifier] = None,
        now_fn: Callable = utc_now,
    ):
        self.storage = storage
        self.config = config
        self.audit = audit or AuditTrail(storage, now_fn)
        self.notifier = notifier or Notifier(storage, now_fn)
        self._now = now_fn

    def create_job(
        self,
        employer_id: str,
        title: str,
        description: str,
        budget_min: int,
        budget_max: int,
        currency: Optional[str] = None,
        milestone_plan: Optional[Sequence] = None,
    ) -> Job:
        if not employer_id:
            raise ValidationError("Employer identity is required")
        if not title or not title.strip():
            raise ValidationError("Title is required")
        plan = coerce_plan(milestone_plan) if milestone_plan else []
        if plan:
            validate_plan(plan, self.config.percentage_epsilon)

        now = self._now()
        try:
            job = Job(
                id=str(uuid.uuid4()),
                employer_id=employer_id,
                title=title.strip(),
                description=description or "",
                budget_min=int(budget_min),
                budget_max=int(budget_max),
                currency=currency or self.config.currency,
                milestone_plan=plan,
                created_at=now,
                updated_at=now,
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e

        self.storage.save_job(job)
        self.audit.record("job", job.id, None, job.status, actor_id=employer_id)
        logger.info(
            f"Created job {job.id} employer={employer_id} "
            f"budget={job.budget_min}-{job.budget_max} {job.currency}"
        )
        return job

    def get_job(self, job_id: str) -> Job:
        job = self.storage.get_job(job_id)
        if job is None:
            raise JobNotFound(f"Job not found: {job_id}")
        return job

    def list_jobs(
        self,
        status=None,
        employer_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        return self.storage.list_jobs(status=status, employer_id=employer_id, limit=limit, offset=offset)

    def _check_transition(self, job: Job, to_status: JobStatus) -> None:
        current = JobStatus(job.status)
        if to_status not in VALID_JOB_TRANSITIONS[current]:
            raise InvalidTransition(
                f"Job {job.id} cannot move from {current.value} to {to_status.value}",
                current_state=job.status,
            )

    def close_job(
        self,
        job_id: str,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        cancelled: bool = False,
    ) -> Job:
        """Close (or cancel) a job. Closing an already terminal job returns it unchanged."""
        target = JobStatus.CANCELLED if cancelled else JobStatus.CLOSED
        from_status = {}

        def attempt() -> Job:
            job = self.get_job(job_id)
            if actor_id is not None and actor_id != job.employer_id:
                raise Unauthorized(f"Only the employer can close job {job_id}")
            if job.is_terminal:
                return job
            if job.escrow_id:
                escrow = self.storage.get_escrow(job.escrow_id)
                if escrow is not None and escrow.status not in TERMINAL_ESCROW_STATUSES:
                    raise InvalidTransition(
                        f"Job {job_id} has escrow {escrow.id} holding funds ({escrow.status})",
                        current_state=job.status,
                    )
            self._check_transition(job, target)
            from_status["value"] = job.status
            now = self._now()
            job.status = target.value
            job.close_reason = reason
            job.closed_at = now
            job.updated_at = now
            return self.storage.update_job(job)

        job = retry_on_conflict(attempt, self.config, f"close job {job_id}")
        if "value" not in from_status:
            return job

        rejected = self._reject_pending_proposals(job_id)
        self.audit.record(
            "job", job_id, from_status["value"], job.status, actor_id=actor_id, metadata={"reason": reason}
        )
        self.notifier.notify(
            rejected,
            NotificationType.JOB_CLOSED,
            "Job closed",
            f"The job you bid on was {job.status}.",
            job_id=job_id,
        )
        logger.info(f"Job {job_id} {from_status['value']} -> {job.status} reason={reason!r}")
        return job

    def _reject_pending_proposals(self, job_id: str) -> List[str]:
        """Reject every PENDING proposal on a job. Returns the affected bidders."""
        bidders = []
        for proposal in self.storage.list_proposals(job_id=job_id, status=ProposalStatus.PENDING, limit=10_000):
            proposal_id = proposal.id

            def attempt():
                current = self.storage.get_proposal(proposal_id)
                if current is None or current.status != ProposalStatus.PENDING.value:
                    return None
                current.status = ProposalStatus.REJECTED.value
                current.status_changed_at = self._now()
                return self.storage.update_proposal(current)

            updated = retry_on_conflict(attempt, self.config, f"reject proposal {proposal_id}")
            if updated is not None:
                self.audit.record(
                    "proposal", proposal_id, ProposalStatus.PENDING.value, updated.status,
                    metadata={"reason": "job closed"},
                )
                bidders.append(updated.bidder_id)
        return bidders

    def _move(self, job_id: str, target: JobStatus, label: str, mutate=None) -> Job:
        """Shared CAS transition for the engine-driven moves. Idempotent if already at target."""
        from_status = {}

        def attempt() -> Job:
            job = self.get_job(job_id)
            if job.status == target.value:
                return job
            self._check_transition(job, target)
            from_status["value"] = job.status
            now = self._now()
            job.status = target.value
            job.updated_at = now
            if target in (JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.CLOSED):
                job.closed_at = now
            if mutate is not None:
                mutate(job)
            return self.storage.update_job(job)

        job = retry_on_conflict(attempt, self.config, f"{label} job {job_id}")
        if "value" in from_status:
            self.audit.record("job", job_id, from_status["value"], job.status)
            logger.info(f"Job {job_id} {from_status['value']} -> {job.status}")
        return job

    def mark_in_progress(self, job_id: str, proposal_id: str, escrow_id: str) -> Job:
        """OPEN -> IN_PROGRESS once an escrow exists for the accepted proposal."""

        def bind(job: Job) -> None:
            if job.accepted_proposal_id != proposal_id:
                raise InvalidTransition(
                    f"Proposal {proposal_id} is not the accepted proposal for job {job_id}",
                    current_state=job.status,
                )
            job.escrow_id = escrow_id

        return self._move(job_id, JobStatus.IN_PROGRESS, "start", mutate=bind)

    def mark_completed(self, job_id: str) -> Job:
        return self._move(job_id, JobStatus.COMPLETED, "complete")

    def mark_cancelled(self, job_id: str, reason: Optional[str] = None) -> Job:
        def set_reason(job: Job) -> None:
            job.close_reason = reason

        return self._move(job_id, JobStatus.CANCELLED, "cancel", mutate=set_reason)
