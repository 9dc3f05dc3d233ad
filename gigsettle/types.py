"""
Shared settlement types for gigsettle.

All entity dataclasses live here. These are the shared vocabulary between the
registries, the escrow state machine, the storage backends and the HTTP layer.
Cross-entity relations are always identifiers, never embedded records; the
only nesting is ownership (an escrow owns its milestones, signatures,
submission marker and dispute).

Amounts are integer minor units. Percentages are Decimal.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Set

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO datetime string (or pass a datetime through)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as ISO string (None passes through)."""
    return value.isoformat() if value else None


def content_hash(*parts: str) -> str:
    """sha256 over the given text parts; the engine never interprets job text."""
    digest = hashlib.sha256()
    for part in parts:
        digest.update((part or "").encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()


# === Enums ===


class JobStatus(str, Enum):
    """Job lifecycle status."""

    OPEN = "open"  # Accepting proposals
    IN_PROGRESS = "in_progress"  # Proposal accepted, escrow created
    COMPLETED = "completed"  # Final milestone released
    CANCELLED = "cancelled"  # Escrow refunded or employer cancelled
    CLOSED = "closed"  # Closed by employer without completion


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.CLOSED})

VALID_JOB_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.OPEN: {JobStatus.IN_PROGRESS, JobStatus.CLOSED, JobStatus.CANCELLED},
    JobStatus.IN_PROGRESS: {JobStatus.COMPLETED, JobStatus.CLOSED, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
    JobStatus.CLOSED: set(),
}


class ProposalStatus(str, Enum):
    """Proposal (bid) lifecycle status."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


VALID_PROPOSAL_TRANSITIONS: Dict[ProposalStatus, Set[ProposalStatus]] = {
    ProposalStatus.PENDING: {
        ProposalStatus.ACCEPTED,
        ProposalStatus.REJECTED,
        ProposalStatus.WITHDRAWN,
    },
    ProposalStatus.ACCEPTED: set(),
    ProposalStatus.REJECTED: set(),
    ProposalStatus.WITHDRAWN: set(),
}


class EscrowStatus(str, Enum):
    """Escrow lifecycle status."""

    CREATED = "created"  # Funds plan agreed, not yet locked
    LOCKED = "locked"  # Lock confirmed on the ledger
    RELEASED = "released"  # Paid out to the freelancer (terminal)
    REFUNDED = "refunded"  # Returned to the employer (terminal)
    DISPUTED = "disputed"  # Frozen pending arbitration


TERMINAL_ESCROW_STATUSES = frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED})

VALID_ESCROW_TRANSITIONS: Dict[EscrowStatus, Set[EscrowStatus]] = {
    EscrowStatus.CREATED: {EscrowStatus.LOCKED},
    EscrowStatus.LOCKED: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.DISPUTED},
    EscrowStatus.DISPUTED: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED},
    EscrowStatus.RELEASED: set(),
    EscrowStatus.REFUNDED: set(),
}


class Party(str, Enum):
    """The three roles bound to every escrow."""

    EMPLOYER = "employer"
    FREELANCER = "freelancer"
    ARBITER = "arbiter"


ALL_PARTIES = frozenset(Party)


class ActionKind(str, Enum):
    """Fund-moving actions that parties authorize."""

    RELEASE = "release"
    REFUND = "refund"


class LedgerAction(str, Enum):
    """Actions the Ledger Anchor can be asked to submit."""

    LOCK = "lock"
    RELEASE = "release"
    REFUND = "refund"


class ConfirmationStatus(str, Enum):
    """Outcome of waiting on a submitted ledger transaction."""

    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


class DisputeDecision(str, Enum):
    """Arbiter decision on a dispute."""

    PENDING = "pending"
    RELEASE = "release"
    REFUND = "refund"


class NotificationType(str, Enum):
    """Kinds of notifications delivered to parties."""

    PROPOSAL_RECEIVED = "proposal_received"
    PROPOSAL_ACCEPTED = "proposal_accepted"
    PROPOSAL_REJECTED = "proposal_rejected"
    ESCROW_CREATED = "escrow_created"
    ESCROW_LOCKED = "escrow_locked"
    SIGNATURE_ADDED = "signature_added"
    MILESTONE_RELEASED = "milestone_released"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_REFUNDED = "escrow_refunded"
    DISPUTE_RAISED = "dispute_raised"
    DISPUTE_RESOLVED = "dispute_resolved"
    JOB_CLOSED = "job_closed"


# === Value Objects ===


@dataclass(frozen=True)
class PendingAction:
    """The action the current authorization set applies to.

    milestone_index None on a release means "everything still unreleased".
    """

    kind: ActionKind
    milestone_index: Optional[int] = None

    @property
    def key(self) -> str:
        if self.kind == ActionKind.REFUND:
            return "refund"
        if self.milestone_index is None:
            return "release:all"
        return f"release:{self.milestone_index}"

    @classmethod
    def parse(cls, key: Optional[str]) -> Optional["PendingAction"]:
        if not key:
            return None
        if key == "refund":
            return cls(ActionKind.REFUND)
        kind, _, target = key.partition(":")
        if kind != ActionKind.RELEASE.value or not target:
            raise ValueError(f"Invalid pending action: {key!r}")
        if target == "all":
            return cls(ActionKind.RELEASE)
        return cls(ActionKind.RELEASE, int(target))

    @classmethod
    def release(cls, milestone_index: Optional[int] = None) -> "PendingAction":
        return cls(ActionKind.RELEASE, milestone_index)

    @classmethod
    def refund(cls) -> "PendingAction":
        return cls(ActionKind.REFUND)

    def __str__(self) -> str:
        return self.key


@dataclass
class MilestoneSpec:
    """One entry of a milestone plan: a share of the total and what it pays for."""

    percentage: Decimal
    description: str = ""

    def __post_init__(self):
        if not isinstance(self.percentage, Decimal):
            self.percentage = Decimal(str(self.percentage))

    def to_dict(self) -> Dict[str, Any]:
        return {"percentage": str(self.percentage), "description": self.description}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MilestoneSpec":
        return cls(percentage=Decimal(str(data["percentage"])), description=data.get("description") or "")


# === Entities ===


@dataclass
class Job:
    """A job posting owned by its employer."""

    id: str
    employer_id: str
    title: str
    description: str
    budget_min: int
    budget_max: int
    currency: str = "USDM"
    status: str = JobStatus.OPEN.value
    content_hash: Optional[str] = None
    milestone_plan: List[MilestoneSpec] = field(default_factory=list)
    accepted_proposal_id: Optional[str] = None
    escrow_id: Optional[str] = None
    close_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    version: int = 1

    def __post_init__(self):
        if self.budget_min <= 0:
            raise ValueError("Budget must be positive")
        if self.budget_max < self.budget_min:
            raise ValueError("Budget max must be at least budget min")
        if self.status not in {s.value for s in JobStatus}:
            raise ValueError(f"Invalid status: {self.status}")
        if len(self.title) > 200:
            raise ValueError("Title too long (max 200 characters)")
        if self.content_hash is None:
            self.content_hash = content_hash(self.title, self.description)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "employer_id": self.employer_id,
            "title": self.title,
            "description": self.description,
            "budget_min": self.budget_min,
            "budget_max": self.budget_max,
            "currency": self.currency,
            "status": self.status,
            "content_hash": self.content_hash,
            "milestone_plan": [s.to_dict() for s in self.milestone_plan],
            "accepted_proposal_id": self.accepted_proposal_id,
            "escrow_id": self.escrow_id,
            "close_reason": self.close_reason,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
            "closed_at": format_datetime(self.closed_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            employer_id=data["employer_id"],
            title=data["title"],
            description=data.get("description") or "",
            budget_min=int(data["budget_min"]),
            budget_max=int(data["budget_max"]),
            currency=data.get("currency") or "USDM",
            status=data.get("status") or JobStatus.OPEN.value,
            content_hash=data.get("content_hash"),
            milestone_plan=[MilestoneSpec.from_dict(s) for s in data.get("milestone_plan") or []],
            accepted_proposal_id=data.get("accepted_proposal_id"),
            escrow_id=data.get("escrow_id"),
            close_reason=data.get("close_reason"),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            closed_at=parse_datetime(data.get("closed_at")),
            version=int(data.get("version") or 1),
        )


@dataclass
class Proposal:
    """A freelancer's bid on a job."""

    id: str
    job_id: str
    bidder_id: str
    amount: int
    duration_days: int
    cover_letter: Optional[str] = None
    status: str = ProposalStatus.PENDING.value
    created_at: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None
    version: int = 1

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError("Proposal amount must be positive")
        if self.duration_days <= 0:
            raise ValueError("Delivery duration must be positive")
        if self.status not in {s.value for s in ProposalStatus}:
            raise ValueError(f"Invalid status: {self.status}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "bidder_id": self.bidder_id,
            "amount": self.amount,
            "duration_days": self.duration_days,
            "cover_letter": self.cover_letter,
            "status": self.status,
            "created_at": format_datetime(self.created_at),
            "status_changed_at": format_datetime(self.status_changed_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Proposal":
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            bidder_id=data["bidder_id"],
            amount=int(data["amount"]),
            duration_days=int(data["duration_days"]),
            cover_letter=data.get("cover_letter"),
            status=data.get("status") or ProposalStatus.PENDING.value,
            created_at=parse_datetime(data.get("created_at")),
            status_changed_at=parse_datetime(data.get("status_changed_at")),
            version=int(data.get("version") or 1),
        )


@dataclass
class Milestone:
    """A slice of an escrow's value, released on its own authorization or deadline."""

    index: int
    amount: int
    deadline: datetime
    percentage: Decimal = Decimal("0")
    description: str = ""
    released: bool = False
    release_tx_ref: Optional[str] = None
    released_at: Optional[datetime] = None
    auto_released: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "amount": self.amount,
            "deadline": format_datetime(self.deadline),
            "percentage": str(self.percentage),
            "description": self.description,
            "released": self.released,
            "release_tx_ref": self.release_tx_ref,
            "released_at": format_datetime(self.released_at),
            "auto_released": self.auto_released,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Milestone":
        return cls(
            index=int(data["index"]),
            amount=int(data["amount"]),
            deadline=parse_datetime(data["deadline"]),
            percentage=Decimal(str(data.get("percentage") or "0")),
            description=data.get("description") or "",
            released=bool(data.get("released")),
            release_tx_ref=data.get("release_tx_ref"),
            released_at=parse_datetime(data.get("released_at")),
            auto_released=bool(data.get("auto_released")),
        )


@dataclass
class Submission:
    """Interim marker for a ledger action in flight.

    Recorded on the escrow before the ledger is called so that competing
    requests see the action as taken, and reconciled once the ledger reports
    an outcome. tx_ref is filled in speculatively as soon as the ledger
    accepts the submission.
    """

    id: str
    ledger_action: str
    action: Optional[str] = None  # PendingAction key; None for lock
    amount: int = 0
    milestone_indices: List[int] = field(default_factory=list)
    privileged: bool = False
    auto: bool = False
    actor_id: Optional[str] = None
    note: Optional[str] = None
    tx_ref: Optional[str] = None
    started_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ledger_action": self.ledger_action,
            "action": self.action,
            "amount": self.amount,
            "milestone_indices": list(self.milestone_indices),
            "privileged": self.privileged,
            "auto": self.auto,
            "actor_id": self.actor_id,
            "note": self.note,
            "tx_ref": self.tx_ref,
            "started_at": format_datetime(self.started_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Submission":
        return cls(
            id=data["id"],
            ledger_action=data["ledger_action"],
            action=data.get("action"),
            amount=int(data.get("amount") or 0),
            milestone_indices=[int(i) for i in data.get("milestone_indices") or []],
            privileged=bool(data.get("privileged")),
            auto=bool(data.get("auto")),
            actor_id=data.get("actor_id"),
            note=data.get("note"),
            tx_ref=data.get("tx_ref"),
            started_at=parse_datetime(data.get("started_at")),
        )


@dataclass
class Dispute:
    """A contest raised on a locked escrow, resolved exactly once by its arbiter."""

    id: str
    escrow_id: str
    raised_by: str
    raised_by_role: str
    reason: str
    arbiter_id: str
    decision: str = DisputeDecision.PENDING.value
    resolution_note: Optional[str] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.decision == DisputeDecision.PENDING.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "escrow_id": self.escrow_id,
            "raised_by": self.raised_by,
            "raised_by_role": self.raised_by_role,
            "reason": self.reason,
            "arbiter_id": self.arbiter_id,
            "decision": self.decision,
            "resolution_note": self.resolution_note,
            "created_at": format_datetime(self.created_at),
            "resolved_at": format_datetime(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Dispute":
        return cls(
            id=data["id"],
            escrow_id=data["escrow_id"],
            raised_by=data["raised_by"],
            raised_by_role=data["raised_by_role"],
            reason=data.get("reason") or "",
            arbiter_id=data["arbiter_id"],
            decision=data.get("decision") or DisputeDecision.PENDING.value,
            resolution_note=data.get("resolution_note"),
            created_at=parse_datetime(data.get("created_at")),
            resolved_at=parse_datetime(data.get("resolved_at")),
        )


@dataclass
class Escrow:
    """A locked fund pool tied to one job/proposal pair."""

    id: str
    job_id: str
    proposal_id: str
    employer_id: str
    freelancer_id: str
    arbiter_id: str
    total_amount: int
    currency: str = "USDM"
    asset_id: Optional[str] = None
    status: str = EscrowStatus.CREATED.value
    threshold: int = 2
    pending_action: Optional[str] = None
    signatures: Set[str] = field(default_factory=set)
    milestones: List[Milestone] = field(default_factory=list)
    current_milestone: int = 0
    submission: Optional[Submission] = None
    lock_tx_ref: Optional[str] = None
    release_tx_refs: List[str] = field(default_factory=list)
    refund_tx_ref: Optional[str] = None
    dispute: Optional[Dispute] = None
    created_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1

    def __post_init__(self):
        if self.total_amount <= 0:
            raise ValueError("Escrow amount must be positive")
        if not 1 <= self.threshold <= len(ALL_PARTIES):
            raise ValueError(f"Threshold must be between 1 and {len(ALL_PARTIES)}")
        if self.status not in {s.value for s in EscrowStatus}:
            raise ValueError(f"Invalid status: {self.status}")
        self.signatures = set(self.signatures)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ESCROW_STATUSES

    @property
    def parties(self) -> Dict[str, str]:
        """Role -> identity."""
        return {
            Party.EMPLOYER.value: self.employer_id,
            Party.FREELANCER.value: self.freelancer_id,
            Party.ARBITER.value: self.arbiter_id,
        }

    @property
    def released_amount(self) -> int:
        return sum(m.amount for m in self.milestones if m.released)

    @property
    def remaining_amount(self) -> int:
        return self.total_amount - self.released_amount

    @property
    def threshold_met(self) -> bool:
        """t distinct signatures, at least one of them from the employer or freelancer.

        The arbiter only acts alone through dispute resolution.
        """
        if len(self.signatures) < self.threshold:
            return False
        return bool(self.signatures - {Party.ARBITER.value})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "proposal_id": self.proposal_id,
            "employer_id": self.employer_id,
            "freelancer_id": self.freelancer_id,
            "arbiter_id": self.arbiter_id,
            "total_amount": self.total_amount,
            "currency": self.currency,
            "asset_id": self.asset_id,
            "status": self.status,
            "threshold": self.threshold,
            "pending_action": self.pending_action,
            "signatures": sorted(self.signatures),
            "milestones": [m.to_dict() for m in self.milestones],
            "current_milestone": self.current_milestone,
            "submission": self.submission.to_dict() if self.submission else None,
            "lock_tx_ref": self.lock_tx_ref,
            "release_tx_refs": list(self.release_tx_refs),
            "refund_tx_ref": self.refund_tx_ref,
            "dispute": self.dispute.to_dict() if self.dispute else None,
            "created_at": format_datetime(self.created_at),
            "locked_at": format_datetime(self.locked_at),
            "released_at": format_datetime(self.released_at),
            "refunded_at": format_datetime(self.refunded_at),
            "disputed_at": format_datetime(self.disputed_at),
            "updated_at": format_datetime(self.updated_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Escrow":
        submission = data.get("submission")
        dispute = data.get("dispute")
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            proposal_id=data["proposal_id"],
            employer_id=data["employer_id"],
            freelancer_id=data["freelancer_id"],
            arbiter_id=data["arbiter_id"],
            total_amount=int(data["total_amount"]),
            currency=data.get("currency") or "USDM",
            asset_id=data.get("asset_id"),
            status=data.get("status") or EscrowStatus.CREATED.value,
            threshold=int(data.get("threshold") or 2),
            pending_action=data.get("pending_action"),
            signatures=set(data.get("signatures") or []),
            milestones=sorted(
                (Milestone.from_dict(m) for m in data.get("milestones") or []),
                key=lambda m: m.index,
            ),
            current_milestone=int(data.get("current_milestone") or 0),
            submission=Submission.from_dict(submission) if submission else None,
            lock_tx_ref=data.get("lock_tx_ref"),
            release_tx_refs=list(data.get("release_tx_refs") or []),
            refund_tx_ref=data.get("refund_tx_ref"),
            dispute=Dispute.from_dict(dispute) if dispute else None,
            created_at=parse_datetime(data.get("created_at")),
            locked_at=parse_datetime(data.get("locked_at")),
            released_at=parse_datetime(data.get("released_at")),
            refunded_at=parse_datetime(data.get("refunded_at")),
            disputed_at=parse_datetime(data.get("disputed_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            version=int(data.get("version") or 1),
        )


@dataclass
class StateTransition:
    """Audit log entry for a status change on a job, proposal or escrow."""

    id: str
    entity_type: str  # job, proposal, escrow
    entity_id: str
    from_status: Optional[str]
    to_status: str
    actor_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "metadata": self.metadata,
            "created_at": format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateTransition":
        return cls(
            id=data["id"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            from_status=data.get("from_status"),
            to_status=data["to_status"],
            actor_id=data.get("actor_id"),
            metadata=data.get("metadata") or {},
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass
class Notification:
    """A message to one party about something that happened to their job or escrow."""

    id: str
    recipient_id: str
    type: str
    title: str
    message: str
    job_id: Optional[str] = None
    escrow_id: Optional[str] = None
    read: bool = False
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "job_id": self.job_id,
            "escrow_id": self.escrow_id,
            "read": self.read,
            "created_at": format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notification":
        return cls(
            id=data["id"],
            recipient_id=data["recipient_id"],
            type=data["type"],
            title=data.get("title") or "",
            message=data.get("message") or "",
            job_id=data.get("job_id"),
            escrow_id=data.get("escrow_id"),
            read=bool(data.get("read")),
            created_at=parse_datetime(data.get("created_at")),
        )


# === Errors ===


class VersionConflictError(Exception):
    """Raised when a record's version doesn't match the expected version.

    This indicates a concurrent modification - another request updated the
    record between when we read it and when we tried to save our changes.
    """

    def __init__(self, table: str, record_id: str, expected_version: int, actual_version: int):
        self.table = table
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on {table}/{record_id}: "
            f"expected version {expected_version}, found {actual_version}"
        )


class DuplicateRecordError(Exception):
    """Raised when an insert would violate a uniqueness rule (one escrow per job)."""

    def __init__(self, table: str, key: str):
        self.table = table
        self.key = key
        super().__init__(f"Duplicate record in {table}: {key}")
