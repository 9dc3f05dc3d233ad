"""
Escrow State Machine.

Owns the escrow lifecycle

    CREATED -> LOCKED -> RELEASED | REFUNDED
               LOCKED -> DISPUTED -> RELEASED | REFUNDED

and is the only component that asks the Ledger Anchor to move funds.

Every ledger action runs in four steps, none of which holds a lock while
the ledger is working:

1. claim: a compare-and-swap puts a Submission marker on the escrow. A
   competing request sees the marker and gets SubmissionInFlight, so at
   most one transaction per escrow is ever outstanding.
2. submit: the ledger returns a tx ref, which is recorded on the marker
   straight away.
3. confirm: bounded wait for the ledger's verdict.
4. apply: a compare-and-swap moves the escrow to its new state and clears
   the marker. On PENDING the marker (with its tx ref) stays and the
   caller gets LedgerTimeout; retrying resumes the same transaction. On
   FAILED the marker is cleared, signatures are kept, and the caller gets
   LedgerRejected.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Union

from gigsettle.concurrency import retry_on_conflict
from gigsettle.config import DEFAULT_CONFIG, SettlementConfig
from gigsettle.errors import (
    ActionConflict,
    DisputeClosed,
    EscrowExists,
    EscrowNotFound,
    InvalidTransition,
    LedgerError,
    LedgerRejected,
    LedgerTimeout,
    NotCreated,
    NotLocked,
    ProposalNotFound,
    SettlementError,
    SubmissionInFlight,
    ThresholdNotMet,
    Unauthorized,
    ValidationError,
)
from gigsettle.jobs import JobRegistry
from gigsettle.ledger import LedgerAnchor, LedgerParams
from gigsettle.milestones import MilestoneScheduler, ReleasePath, coerce_plan
from gigsettle.notifications import AuditTrail, Notifier
from gigsettle.signatures import SignatureCollector, SignResult, parse_party, role_of
from gigsettle.storage.base import SettlementStorage
from gigsettle.types import (
    ActionKind,
    ConfirmationStatus,
    Dispute,
    DisputeDecision,
    DuplicateRecordError,
    Escrow,
    EscrowStatus,
    JobStatus,
    LedgerAction,
    NotificationType,
    Party,
    PendingAction,
    ProposalStatus,
    StateTransition,
    Submission,
    utc_now,
)

logger = logging.getLogger(__name__)

PartyLike = Union[str, Party]


class EscrowStateMachine:
    """Escrow lifecycle orchestrator."""

    def __init__(
        self,
        storage: SettlementStorage,
        ledger: LedgerAnchor,
        jobs: JobRegistry,
        scheduler: Optional[MilestoneScheduler] = None,
        signatures: Optional[SignatureCollector] = None,
        config: SettlementConfig = DEFAULT_CONFIG,
        audit: Optional[AuditTrail] = None,
        notifier: Optional[Notifier] = None,
        now_fn: Callable = utc_now,
    ):
        self.storage = storage
        self.ledger = ledger
        self.jobs = jobs
        self.config = config
        self.scheduler = scheduler or MilestoneScheduler(config)
        self.signatures = signatures or SignatureCollector(storage, config, now_fn)
        self.audit = audit or AuditTrail(storage, now_fn)
        self.notifier = notifier or Notifier(storage, now_fn)
        self._now = now_fn

    # === Queries ===

    def get_escrow(self, escrow_id: str) -> Escrow:
        escrow = self.storage.get_escrow(escrow_id)
        if escrow is None:
            raise EscrowNotFound(f"Escrow not found: {escrow_id}")
        return escrow

    def find_escrows(
        self,
        job_id: Optional[str] = None,
        proposal_id: Optional[str] = None,
        party_id: Optional[str] = None,
        status=None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Escrow]:
        return self.storage.list_escrows(
            job_id=job_id,
            proposal_id=proposal_id,
            party_id=party_id,
            status=status,
            limit=limit,
            offset=offset,
        )

    def get_transitions(self, escrow_id: str) -> List[StateTransition]:
        self.get_escrow(escrow_id)
        return self.audit.history("escrow", escrow_id)

    def role_of(self, escrow_id: str, identity: str) -> Party:
        return role_of(self.get_escrow(escrow_id), identity)

    # === Creation and lock ===

    def create_escrow(
        self,
        job_id: str,
        proposal_id: str,
        arbiter_id: str,
        amount: Optional[int] = None,
        milestone_plan: Optional[Sequence] = None,
        threshold: Optional[int] = None,
        asset_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Escrow:
        job = self.jobs.get_job(job_id)
        proposal = self.storage.get_proposal(proposal_id)
        if proposal is None or proposal.job_id != job_id:
            raise ProposalNotFound(f"Proposal {proposal_id} not found on job {job_id}")
        if actor_id is not None and actor_id != job.employer_id:
            raise Unauthorized(f"Only the employer can fund job {job_id}")
        if job.escrow_id or job.status == JobStatus.IN_PROGRESS.value:
            raise EscrowExists(f"Job {job_id} already has an escrow", current_state=job.status)
        if job.status != JobStatus.OPEN.value:
            raise InvalidTransition(f"Job {job_id} is {job.status}", current_state=job.status)
        if proposal.status != ProposalStatus.ACCEPTED.value or job.accepted_proposal_id != proposal_id:
            raise InvalidTransition(
                f"Proposal {proposal_id} is {proposal.status}, not the accepted proposal",
                current_state=proposal.status,
            )

        total = int(amount) if amount is not None else proposal.amount
        if not job.budget_min <= total <= job.budget_max:
            raise ValidationError(
                f"Escrow amount {total} outside job budget {job.budget_min}-{job.budget_max}"
            )
        if not self.config.min_escrow_amount <= total <= self.config.max_escrow_amount:
            raise ValidationError(
                f"Escrow amount {total} outside allowed range "
                f"{self.config.min_escrow_amount}-{self.config.max_escrow_amount}"
            )
        if not arbiter_id:
            raise ValidationError("Arbiter identity is required")
        if arbiter_id in (job.employer_id, proposal.bidder_id):
            raise ValidationError("Arbiter must be independent of employer and freelancer")
        threshold = self.config.default_threshold if threshold is None else int(threshold)
        if not 1 <= threshold <= 3:
            raise ValidationError("Threshold must be between 1 and 3")

        now = self._now()
        plan = coerce_plan(milestone_plan) if milestone_plan else job.milestone_plan
        milestones = self.scheduler.plan_milestones(
            total, plan, start=now, duration=timedelta(days=proposal.duration_days)
        )
        escrow = Escrow(
            id=str(uuid.uuid4()),
            job_id=job_id,
            proposal_id=proposal_id,
            employer_id=job.employer_id,
            freelancer_id=proposal.bidder_id,
            arbiter_id=arbiter_id,
            total_amount=total,
            currency=job.currency,
            asset_id=asset_id,
            threshold=threshold,
            milestones=milestones,
            created_at=now,
            updated_at=now,
        )

        # The job CAS is the serialization point between competing creates
        # and a concurrent close; the unique job_id on escrows backs it up.
        started = self.jobs.mark_in_progress(job_id, proposal_id, escrow.id)
        if started.escrow_id != escrow.id:
            raise EscrowExists(f"Job {job_id} already has an escrow", current_state=started.status)
        try:
            self.storage.save_escrow(escrow)
        except DuplicateRecordError as e:
            raise EscrowExists(f"Job {job_id} already has an escrow") from e

        self.audit.record(
            "escrow", escrow.id, None, escrow.status, actor_id=actor_id,
            metadata={"total_amount": total, "milestones": len(milestones), "threshold": threshold},
        )
        self.notifier.notify(
            escrow.parties.values(),
            NotificationType.ESCROW_CREATED,
            "Escrow created",
            f"Escrow of {total} {escrow.currency} created in {len(milestones)} milestone(s).",
            job_id=job_id,
            escrow_id=escrow.id,
        )
        logger.info(
            f"Created escrow {escrow.id} job={job_id} amount={total} "
            f"milestones={[m.amount for m in milestones]} threshold={threshold}"
        )
        return escrow

    def submit_lock(self, escrow_id: str, actor_id: Optional[str] = None) -> Escrow:
        """Ask the ledger to lock the escrow's funds, then confirm the lock."""
        escrow = self.get_escrow(escrow_id)
        if actor_id is not None and actor_id != escrow.employer_id:
            raise Unauthorized(f"Only the employer can lock escrow {escrow_id}")
        in_flight = self._resumable(escrow, LedgerAction.LOCK)
        if in_flight is not None:
            return self._confirm_and_apply(escrow_id, in_flight)

        def check(current: Escrow) -> Submission:
            if current.status != EscrowStatus.CREATED.value:
                raise NotCreated(
                    f"Escrow {escrow_id} is {current.status}", current_state=current.status
                )
            return self._new_submission(
                LedgerAction.LOCK, amount=current.total_amount, actor_id=actor_id
            )

        return self._run(escrow_id, check)

    def confirm_lock(self, escrow_id: str, ledger_tx_ref: str) -> Escrow:
        """CREATED -> LOCKED. A repeat confirmation with the same ref is a no-op."""
        if not ledger_tx_ref:
            raise ValidationError("Ledger transaction reference is required")
        changed = {}

        def attempt() -> Escrow:
            escrow = self.get_escrow(escrow_id)
            if escrow.lock_tx_ref == ledger_tx_ref:
                return escrow
            if escrow.status != EscrowStatus.CREATED.value:
                raise NotCreated(
                    f"Escrow {escrow_id} is {escrow.status} (lock ref {escrow.lock_tx_ref})",
                    current_state=escrow.status,
                )
            marker = escrow.submission
            if marker is not None and marker.tx_ref and marker.tx_ref != ledger_tx_ref:
                raise NotCreated(
                    f"Escrow {escrow_id} is awaiting lock {marker.tx_ref}, not {ledger_tx_ref}",
                    current_state=escrow.status,
                )
            self._apply_lock(escrow, ledger_tx_ref, self._now())
            changed["value"] = True
            return self.storage.update_escrow(escrow)

        escrow = retry_on_conflict(attempt, self.config, f"confirm lock {escrow_id}")
        if changed:
            self._after_apply(escrow, LedgerAction.LOCK, ledger_tx_ref, None)
        return escrow

    # === Release / refund ===

    def sign(self, escrow_id: str, party: PartyLike, action=None) -> SignResult:
        """Add a signature without running the action."""
        result = self.signatures.sign(escrow_id, party, action)
        self._notify_signature(result.escrow, result.action, party)
        return result

    def revoke(self, escrow_id: str, party: PartyLike) -> Escrow:
        return self.signatures.revoke(escrow_id, party)

    def request_release(
        self, escrow_id: str, party: PartyLike, milestone_index: Optional[int] = None
    ) -> Escrow:
        """Sign a release (one milestone, or everything remaining) and run it once authorized.

        Retrying after a LedgerTimeout resumes the same transaction.
        """
        resumed = self._resume_signed(escrow_id, party, LedgerAction.RELEASE)
        if resumed is not None:
            return resumed
        result = self.sign(escrow_id, party, PendingAction.release(milestone_index))
        return self._after_sign(escrow_id, result)

    def request_refund(self, escrow_id: str, party: PartyLike) -> Escrow:
        resumed = self._resume_signed(escrow_id, party, LedgerAction.REFUND)
        if resumed is not None:
            return resumed
        result = self.sign(escrow_id, party, PendingAction.refund())
        return self._after_sign(escrow_id, result)

    def _resume_signed(
        self, escrow_id: str, party: PartyLike, ledger_action: LedgerAction
    ) -> Optional[Escrow]:
        parse_party(party)
        in_flight = self._resumable(self.get_escrow(escrow_id), ledger_action)
        if in_flight is None or in_flight.privileged:
            return None
        return self._confirm_and_apply(escrow_id, in_flight)

    def _after_sign(self, escrow_id: str, result: SignResult) -> Escrow:
        if not result.threshold_met:
            return result.escrow
        try:
            return self._execute_pending(
                escrow_id, actor_id=None, expected=PendingAction.parse(result.action)
            )
        except SubmissionInFlight:
            # A concurrent call claimed the submission for this action first
            return self.get_escrow(escrow_id)

    def release(
        self, escrow_id: str, milestone_index: Optional[int] = None, actor_id: Optional[str] = None
    ) -> Escrow:
        """Run the pending release. The threshold must already be met.

        Retrying after a LedgerTimeout resumes the same transaction.
        """
        escrow = self.get_escrow(escrow_id)
        self._require_party(escrow, actor_id)
        in_flight = self._resumable(escrow, LedgerAction.RELEASE)
        if in_flight is not None:
            return self._confirm_and_apply(escrow_id, in_flight)
        pending = PendingAction.parse(escrow.pending_action)
        if pending is None or pending.kind != ActionKind.RELEASE:
            raise ThresholdNotMet(
                f"Escrow {escrow_id} has no authorized release pending",
                current_state=escrow.status,
            )
        if milestone_index is not None and pending.milestone_index != milestone_index:
            raise ActionConflict(
                f"Pending action is {pending.key}, not release:{milestone_index}",
                current_state=pending.key,
            )
        return self._execute_pending(escrow_id, actor_id=actor_id, expected=pending)

    def refund(self, escrow_id: str, actor_id: Optional[str] = None) -> Escrow:
        escrow = self.get_escrow(escrow_id)
        self._require_party(escrow, actor_id)
        in_flight = self._resumable(escrow, LedgerAction.REFUND)
        if in_flight is not None:
            return self._confirm_and_apply(escrow_id, in_flight)
        pending = PendingAction.parse(escrow.pending_action)
        if pending is None or pending.kind != ActionKind.REFUND:
            raise ThresholdNotMet(
                f"Escrow {escrow_id} has no authorized refund pending",
                current_state=escrow.status,
            )
        return self._execute_pending(escrow_id, actor_id=actor_id, expected=pending)

    def release_milestone(
        self,
        escrow_id: str,
        index: int,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Escrow:
        """Release one milestone, either signed (threshold met) or past its deadline."""
        escrow = self.get_escrow(escrow_id)
        self._require_party(escrow, actor_id)
        marker = escrow.submission
        if (
            marker is not None
            and marker.tx_ref
            and marker.ledger_action == LedgerAction.RELEASE.value
            and index in marker.milestone_indices
        ):
            return self._confirm_and_apply(escrow_id, marker)

        def check(current: Escrow) -> Submission:
            self._ensure_lockable_action(current)
            pending = PendingAction.parse(current.pending_action)
            authorized = pending == PendingAction.release(index) and current.threshold_met
            path = self.scheduler.check_release(current, index, now or self._now(), authorized)
            if path == ReleasePath.AUTO and self.config.auto_release_requires_freelancer:
                freelancer_claim = actor_id == current.freelancer_id or (
                    pending == PendingAction.release(index)
                    and Party.FREELANCER.value in current.signatures
                )
                if not freelancer_claim:
                    raise ThresholdNotMet(
                        f"Auto-release of milestone {index} needs the freelancer's claim",
                        current_state=current.status,
                    )
            milestone = self.scheduler.get_milestone(current, index)
            return self._new_submission(
                LedgerAction.RELEASE,
                action=PendingAction.release(index).key,
                amount=milestone.amount,
                milestone_indices=[index],
                auto=path == ReleasePath.AUTO,
                actor_id=actor_id,
            )

        return self._run(escrow_id, check)

    # === Disputes ===

    def raise_dispute(self, escrow_id: str, raised_by: str, reason: str) -> Escrow:
        if not reason or not reason.strip():
            raise ValidationError("A dispute needs a reason")
        from_status = {}

        def attempt() -> Escrow:
            escrow = self.get_escrow(escrow_id)
            role = role_of(escrow, raised_by)
            if role == Party.ARBITER:
                raise Unauthorized("The arbiter cannot raise a dispute")
            if escrow.dispute is not None:
                raise DisputeClosed(
                    f"Escrow {escrow_id} was already disputed ({escrow.dispute.decision})",
                    current_state=escrow.status,
                )
            if escrow.status != EscrowStatus.LOCKED.value:
                raise NotLocked(
                    f"Only locked escrows can be disputed; {escrow_id} is {escrow.status}",
                    current_state=escrow.status,
                )
            if escrow.submission is not None:
                raise SubmissionInFlight(
                    f"Escrow {escrow_id} has a {escrow.submission.ledger_action} in flight",
                    current_state=escrow.status,
                )
            now = self._now()
            from_status["value"] = escrow.status
            escrow.status = EscrowStatus.DISPUTED.value
            escrow.disputed_at = now
            escrow.updated_at = now
            escrow.signatures = set()
            escrow.pending_action = None
            escrow.dispute = Dispute(
                id=str(uuid.uuid4()),
                escrow_id=escrow_id,
                raised_by=raised_by,
                raised_by_role=role.value,
                reason=reason.strip(),
                arbiter_id=escrow.arbiter_id,
                created_at=now,
            )
            return self.storage.update_escrow(escrow)

        escrow = retry_on_conflict(attempt, self.config, f"dispute escrow {escrow_id}")
        self.audit.record(
            "escrow", escrow_id, from_status["value"], escrow.status, actor_id=raised_by,
            metadata={"dispute_id": escrow.dispute.id},
        )
        self.notifier.notify(
            escrow.parties.values(),
            NotificationType.DISPUTE_RAISED,
            "Dispute raised",
            f"A dispute was raised by the {escrow.dispute.raised_by_role}: {escrow.dispute.reason}",
            job_id=escrow.job_id,
            escrow_id=escrow_id,
        )
        logger.warning(f"Escrow {escrow_id} disputed by {raised_by}: {reason!r}")
        return escrow

    def resolve_dispute(
        self,
        escrow_id: str,
        arbiter_id: str,
        decision: Union[str, DisputeDecision],
        note: Optional[str] = None,
    ) -> Escrow:
        """Arbiter override: release or refund the remaining balance of a disputed escrow."""
        try:
            decision = DisputeDecision(getattr(decision, "value", decision))
        except ValueError:
            raise ValidationError(f"Invalid decision: {decision!r}") from None
        if decision == DisputeDecision.PENDING:
            raise ValidationError("Decision must be release or refund")

        escrow = self.get_escrow(escrow_id)
        if arbiter_id != escrow.arbiter_id:
            raise Unauthorized(f"Only the escrow's arbiter can resolve disputes on {escrow_id}")
        ledger_action = (
            LedgerAction.RELEASE if decision == DisputeDecision.RELEASE else LedgerAction.REFUND
        )
        in_flight = self._resumable(escrow, ledger_action)
        if in_flight is not None and in_flight.privileged:
            return self._confirm_and_apply(escrow_id, in_flight)

        def check(current: Escrow) -> Submission:
            if current.dispute is not None and not current.dispute.is_open:
                raise DisputeClosed(
                    f"Dispute on {escrow_id} already resolved ({current.dispute.decision})",
                    current_state=current.status,
                )
            if current.status != EscrowStatus.DISPUTED.value:
                raise InvalidTransition(
                    f"Escrow {escrow_id} is {current.status}, not disputed",
                    current_state=current.status,
                )
            if decision == DisputeDecision.RELEASE:
                return self._new_submission(
                    LedgerAction.RELEASE,
                    action=PendingAction.release().key,
                    amount=current.remaining_amount,
                    milestone_indices=self.scheduler.unreleased_indices(current),
                    privileged=True,
                    actor_id=arbiter_id,
                    note=note,
                )
            return self._new_submission(
                LedgerAction.REFUND,
                action=PendingAction.refund().key,
                amount=current.remaining_amount,
                privileged=True,
                actor_id=arbiter_id,
                note=note,
            )

        return self._run(escrow_id, check)

    # === Reconciliation ===

    def reconcile_submission(self, escrow_id: str, now: Optional[datetime] = None) -> Escrow:
        """Settle an in-flight marker left behind by a timeout or crash.

        Markers with a tx ref are re-checked against the ledger; markers
        without one that are older than submission_stale_seconds are dropped.
        """
        escrow = self.get_escrow(escrow_id)
        marker = escrow.submission
        if marker is None:
            return escrow
        now = now or self._now()

        if not marker.tx_ref:
            age = now - (marker.started_at or now)
            if age < timedelta(seconds=self.config.submission_stale_seconds):
                return escrow
            logger.warning(
                f"Escrow {escrow_id}: dropping stale {marker.ledger_action} marker "
                f"started {marker.started_at}"
            )
            return self._clear_marker(escrow_id, marker) or self.get_escrow(escrow_id)

        try:
            status = self.ledger.await_confirmation(marker.tx_ref, 0.0)
        except LedgerError as e:
            logger.warning(f"Escrow {escrow_id}: ledger check for {marker.tx_ref} failed: {e}")
            return escrow
        if status == ConfirmationStatus.CONFIRMED:
            return self._apply(escrow_id, marker)
        if status == ConfirmationStatus.FAILED:
            logger.warning(f"Escrow {escrow_id}: {marker.ledger_action} {marker.tx_ref} failed on ledger")
            return self._clear_marker(escrow_id, marker) or self.get_escrow(escrow_id)
        logger.debug(f"Escrow {escrow_id}: {marker.tx_ref} still pending")
        return escrow

    # === Internals ===

    def _require_party(self, escrow: Escrow, actor_id: Optional[str]) -> None:
        if actor_id is not None:
            role_of(escrow, actor_id)

    def _ensure_lockable_action(self, escrow: Escrow) -> None:
        if escrow.status == EscrowStatus.DISPUTED.value:
            raise InvalidTransition(
                f"Escrow {escrow.id} is disputed; releases are frozen", current_state=escrow.status
            )
        if escrow.status != EscrowStatus.LOCKED.value:
            raise NotLocked(f"Escrow {escrow.id} is {escrow.status}", current_state=escrow.status)

    def _new_submission(self, ledger_action: LedgerAction, **fields) -> Submission:
        return Submission(
            id=str(uuid.uuid4()),
            ledger_action=ledger_action.value,
            started_at=self._now(),
            **fields,
        )

    def _resumable(self, escrow: Escrow, ledger_action: LedgerAction) -> Optional[Submission]:
        marker = escrow.submission
        if marker is not None and marker.tx_ref and marker.ledger_action == ledger_action.value:
            return marker
        return None

    def _execute_pending(
        self, escrow_id: str, actor_id: Optional[str], expected: Optional[PendingAction] = None
    ) -> Escrow:
        """Claim and run the escrow's authorized pending action."""

        def check(current: Escrow) -> Submission:
            self._ensure_lockable_action(current)
            pending = PendingAction.parse(current.pending_action)
            if pending is None or (expected is not None and pending != expected):
                raise ThresholdNotMet(
                    f"Escrow {escrow_id} has no authorized {expected.key if expected else 'action'}",
                    current_state=current.status,
                )
            if not current.threshold_met:
                if len(current.signatures) >= current.threshold:
                    message = f"{pending.key} on escrow {escrow_id} is signed by the arbiter alone"
                else:
                    message = (
                        f"{pending.key} on escrow {escrow_id} has {len(current.signatures)} of "
                        f"{current.threshold} signatures"
                    )
                raise ThresholdNotMet(message, current_state=current.status)
            if pending.kind == ActionKind.REFUND:
                return self._new_submission(
                    LedgerAction.REFUND,
                    action=pending.key,
                    amount=current.remaining_amount,
                    actor_id=actor_id,
                )
            if pending.milestone_index is None:
                indices = self.scheduler.unreleased_indices(current)
                amount = current.remaining_amount
            else:
                milestone = self.scheduler.get_milestone(current, pending.milestone_index)
                self.scheduler.check_release(current, milestone.index, self._now(), authorized=True)
                indices = [milestone.index]
                amount = milestone.amount
            return self._new_submission(
                LedgerAction.RELEASE,
                action=pending.key,
                amount=amount,
                milestone_indices=indices,
                actor_id=actor_id,
            )

        return self._run(escrow_id, check)

    def _run(self, escrow_id: str, check: Callable[[Escrow], Submission]) -> Escrow:
        marker = self._claim(escrow_id, check)
        escrow = self.get_escrow(escrow_id)
        params = self._ledger_params(escrow, marker)

        try:
            tx_ref = self.ledger.submit(LedgerAction(marker.ledger_action), params)
        except LedgerError as e:
            self._clear_marker(escrow_id, marker)
            logger.error(f"Escrow {escrow_id}: ledger refused {marker.ledger_action}: {e}")
            raise LedgerRejected(
                f"Ledger refused {marker.ledger_action} for escrow {escrow_id}: {e.message}",
                current_state=escrow.status,
            ) from e

        marker = self._record_tx_ref(escrow_id, marker, tx_ref)
        return self._confirm_and_apply(escrow_id, marker)

    def _claim(self, escrow_id: str, check: Callable[[Escrow], Submission]) -> Submission:
        def attempt() -> Submission:
            escrow = self.get_escrow(escrow_id)
            if escrow.submission is not None:
                raise SubmissionInFlight(
                    f"Escrow {escrow_id} has a {escrow.submission.ledger_action} in flight "
                    f"(tx {escrow.submission.tx_ref or 'not yet submitted'})",
                    current_state=escrow.status,
                )
            marker = check(escrow)
            escrow.submission = marker
            escrow.updated_at = self._now()
            self.storage.update_escrow(escrow)
            return marker

        marker = retry_on_conflict(attempt, self.config, f"claim submission on {escrow_id}")
        logger.info(
            f"Escrow {escrow_id}: submitting {marker.ledger_action} amount={marker.amount} "
            f"milestones={marker.milestone_indices} privileged={marker.privileged} auto={marker.auto}"
        )
        return marker

    def _record_tx_ref(self, escrow_id: str, marker: Submission, tx_ref: str) -> Submission:
        def attempt() -> Submission:
            escrow = self.get_escrow(escrow_id)
            if escrow.submission is None or escrow.submission.id != marker.id:
                raise InvalidTransition(
                    f"Escrow {escrow_id} lost its {marker.ledger_action} marker before "
                    f"tx {tx_ref} was recorded",
                    current_state=escrow.status,
                )
            escrow.submission.tx_ref = tx_ref
            escrow.updated_at = self._now()
            self.storage.update_escrow(escrow)
            return escrow.submission

        return retry_on_conflict(attempt, self.config, f"record tx on {escrow_id}")

    def _confirm_and_apply(self, escrow_id: str, marker: Submission) -> Escrow:
        try:
            status = self.ledger.await_confirmation(marker.tx_ref, self.config.ledger_timeout_seconds)
        except LedgerError as e:
            logger.error(f"Escrow {escrow_id}: confirmation check for {marker.tx_ref} failed: {e}")
            raise LedgerTimeout(
                f"Could not confirm {marker.ledger_action} {marker.tx_ref}; retry to resume",
                tx_ref=marker.tx_ref,
            ) from e

        if status == ConfirmationStatus.CONFIRMED:
            return self._apply(escrow_id, marker)
        if status == ConfirmationStatus.FAILED:
            self._clear_marker(escrow_id, marker)
            escrow = self.get_escrow(escrow_id)
            logger.error(f"Escrow {escrow_id}: {marker.ledger_action} {marker.tx_ref} failed on ledger")
            raise LedgerRejected(
                f"Ledger reported {marker.ledger_action} {marker.tx_ref} as failed",
                current_state=escrow.status,
            )
        escrow = self.get_escrow(escrow_id)
        logger.warning(
            f"Escrow {escrow_id}: {marker.ledger_action} {marker.tx_ref} not confirmed within "
            f"{self.config.ledger_timeout_seconds}s"
        )
        raise LedgerTimeout(
            f"{marker.ledger_action} {marker.tx_ref} not confirmed yet; retry to resume",
            tx_ref=marker.tx_ref,
            current_state=escrow.status,
        )

    def _clear_marker(self, escrow_id: str, marker: Submission) -> Optional[Escrow]:
        def attempt() -> Optional[Escrow]:
            escrow = self.get_escrow(escrow_id)
            if escrow.submission is None or escrow.submission.id != marker.id:
                return None
            escrow.submission = None
            escrow.updated_at = self._now()
            return self.storage.update_escrow(escrow)

        return retry_on_conflict(attempt, self.config, f"clear marker on {escrow_id}")

    def _apply(self, escrow_id: str, marker: Submission) -> Escrow:
        applied = {}

        def attempt() -> Escrow:
            escrow = self.get_escrow(escrow_id)
            if escrow.submission is None or escrow.submission.id != marker.id:
                # Already applied by a concurrent resume or the sweep
                return escrow
            now = self._now()
            applied["from"] = escrow.status
            action = LedgerAction(marker.ledger_action)
            if action == LedgerAction.LOCK:
                self._apply_lock(escrow, marker.tx_ref, now)
            elif action == LedgerAction.RELEASE:
                self._apply_release(escrow, marker, now)
            else:
                self._apply_refund(escrow, marker, now)
            escrow.submission = None
            escrow.updated_at = now
            return self.storage.update_escrow(escrow)

        escrow = retry_on_conflict(attempt, self.config, f"apply {marker.ledger_action} on {escrow_id}")
        if applied:
            self._after_apply(escrow, LedgerAction(marker.ledger_action), marker.tx_ref, marker, applied["from"])
        return escrow

    def _apply_lock(self, escrow: Escrow, tx_ref: str, now: datetime) -> None:
        escrow.status = EscrowStatus.LOCKED.value
        escrow.lock_tx_ref = tx_ref
        escrow.locked_at = now
        escrow.submission = None
        escrow.updated_at = now

    def _apply_release(self, escrow: Escrow, marker: Submission, now: datetime) -> None:
        all_released = self.scheduler.apply_release(
            escrow, marker.milestone_indices, marker.tx_ref, now, auto=marker.auto
        )
        escrow.release_tx_refs.append(marker.tx_ref)
        if all_released:
            escrow.status = EscrowStatus.RELEASED.value
            escrow.released_at = now
        self._settle_dispute(escrow, marker, DisputeDecision.RELEASE, now)
        self._reset_if_moot(escrow, marker)

    def _apply_refund(self, escrow: Escrow, marker: Submission, now: datetime) -> None:
        escrow.status = EscrowStatus.REFUNDED.value
        escrow.refund_tx_ref = marker.tx_ref
        escrow.refunded_at = now
        self._settle_dispute(escrow, marker, DisputeDecision.REFUND, now)
        self._reset_if_moot(escrow, marker)

    def _settle_dispute(
        self, escrow: Escrow, marker: Submission, decision: DisputeDecision, now: datetime
    ) -> None:
        if marker.privileged and escrow.dispute is not None and escrow.dispute.is_open:
            escrow.dispute.decision = decision.value
            escrow.dispute.resolution_note = marker.note
            escrow.dispute.resolved_at = now

    def _reset_if_moot(self, escrow: Escrow, marker: Submission) -> None:
        """Drop the authorization set once the action it was collected for no longer applies."""
        pending = PendingAction.parse(escrow.pending_action)
        if pending is None:
            return
        moot = (
            escrow.is_terminal
            or pending.key == marker.action
            or (
                pending.kind == ActionKind.RELEASE
                and pending.milestone_index is not None
                and pending.milestone_index in marker.milestone_indices
            )
        )
        if moot:
            escrow.pending_action = None
            escrow.signatures = set()

    def _after_apply(
        self,
        escrow: Escrow,
        action: LedgerAction,
        tx_ref: str,
        marker: Optional[Submission],
        from_status: str = EscrowStatus.CREATED.value,
    ) -> None:
        actor_id = marker.actor_id if marker else None
        metadata = {"tx_ref": tx_ref, "ledger_action": action.value}
        if marker is not None:
            metadata.update(
                {
                    "amount": marker.amount,
                    "milestones": marker.milestone_indices,
                    "privileged": marker.privileged,
                    "auto": marker.auto,
                }
            )
        self.audit.record("escrow", escrow.id, from_status, escrow.status, actor_id=actor_id, metadata=metadata)
        parties = escrow.parties.values()

        if action == LedgerAction.LOCK:
            logger.info(f"Escrow {escrow.id} locked tx={tx_ref}")
            self.notifier.notify(
                parties, NotificationType.ESCROW_LOCKED, "Funds locked",
                f"{escrow.total_amount} {escrow.currency} locked in escrow.",
                job_id=escrow.job_id, escrow_id=escrow.id,
            )
            return

        if marker is not None and marker.privileged:
            self.notifier.notify(
                parties, NotificationType.DISPUTE_RESOLVED, "Dispute resolved",
                f"The arbiter decided to {action.value} the remaining funds.",
                job_id=escrow.job_id, escrow_id=escrow.id,
            )

        if action == LedgerAction.REFUND:
            logger.info(f"Escrow {escrow.id} refunded {marker.amount if marker else ''} tx={tx_ref}")
            self.notifier.notify(
                parties, NotificationType.ESCROW_REFUNDED, "Escrow refunded",
                "The remaining escrow balance was returned to the employer.",
                job_id=escrow.job_id, escrow_id=escrow.id,
            )
            self._sync_job(escrow)
            return

        logger.info(
            f"Escrow {escrow.id} released milestones {marker.milestone_indices if marker else []} "
            f"tx={tx_ref} status={escrow.status}"
        )
        self.notifier.notify(
            parties, NotificationType.MILESTONE_RELEASED, "Milestone released",
            f"{marker.amount if marker else 0} {escrow.currency} released to the freelancer"
            + (" after the deadline passed." if marker and marker.auto else "."),
            job_id=escrow.job_id, escrow_id=escrow.id,
        )
        if escrow.status == EscrowStatus.RELEASED.value:
            self.notifier.notify(
                parties, NotificationType.ESCROW_RELEASED, "Escrow released",
                "All milestones have been released.",
                job_id=escrow.job_id, escrow_id=escrow.id,
            )
            self._sync_job(escrow)

    def _sync_job(self, escrow: Escrow) -> None:
        """Move the job to match a terminal escrow. The sweep repairs any miss."""
        try:
            if escrow.status == EscrowStatus.RELEASED.value:
                self.jobs.mark_completed(escrow.job_id)
            elif escrow.status == EscrowStatus.REFUNDED.value:
                self.jobs.mark_cancelled(escrow.job_id, reason="escrow refunded")
        except SettlementError as e:
            logger.warning(f"Job {escrow.job_id} not updated after escrow {escrow.id} {escrow.status}: {e}")

    def _ledger_params(self, escrow: Escrow, marker: Submission) -> LedgerParams:
        action = LedgerAction(marker.ledger_action)
        if action == LedgerAction.REFUND:
            payer, payee = escrow.id, escrow.employer_id
        elif action == LedgerAction.RELEASE:
            payer, payee = escrow.id, escrow.freelancer_id
        else:
            payer, payee = escrow.employer_id, escrow.id
        return LedgerParams(
            escrow_id=escrow.id,
            amount=marker.amount,
            currency=escrow.currency,
            payer_id=payer,
            payee_id=payee,
            asset_id=escrow.asset_id,
            milestone_indices=list(marker.milestone_indices),
            memo=marker.action,
        )

    def _notify_signature(self, escrow: Escrow, action: str, party: PartyLike) -> None:
        role = getattr(party, "value", party)
        self.notifier.notify(
            [identity for r, identity in escrow.parties.items() if r != role],
            NotificationType.SIGNATURE_ADDED,
            "Signature added",
            f"The {role} signed {action} ({len(escrow.signatures)}/{escrow.threshold}).",
            job_id=escrow.job_id,
            escrow_id=escrow.id,
        )
