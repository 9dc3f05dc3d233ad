"""Pydantic models for API requests and responses."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

JobStatus = Literal["open", "in_progress", "completed", "cancelled", "closed"]
ProposalStatus = Literal["pending", "accepted", "rejected", "withdrawn"]
EscrowStatus = Literal["created", "locked", "released", "refunded", "disputed"]
PartyRole = Literal["employer", "freelancer", "arbiter"]


# =============================================================================
# Jobs
# =============================================================================


class MilestoneSpecModel(BaseModel):
    """One share of a milestone plan."""

    percentage: Decimal = Field(..., gt=0, le=100)
    description: str = Field("", max_length=500)


class JobCreate(BaseModel):
    """Request to post a job."""

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=10_000)
    budget_min: int = Field(..., gt=0, description="Minor units")
    budget_max: int = Field(..., gt=0, description="Minor units")
    currency: str | None = Field(None, min_length=1, max_length=16)
    milestone_plan: list[MilestoneSpecModel] = Field(default_factory=list, max_length=50)

    @model_validator(mode="after")
    def budget_range(self) -> "JobCreate":
        if self.budget_min > self.budget_max:
            raise ValueError("budget_min must not exceed budget_max")
        return self


class JobUpdate(BaseModel):
    """Close or cancel a job."""

    action: Literal["close", "cancel"]
    reason: str | None = Field(None, max_length=1000)


class JobResponse(BaseModel):
    id: str
    employer_id: str
    title: str
    description: str
    budget_min: int
    budget_max: int
    currency: str
    status: JobStatus
    content_hash: str
    milestone_plan: list[MilestoneSpecModel] = []
    accepted_proposal_id: str | None = None
    escrow_id: str | None = None
    close_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    closed_at: datetime | None = None
    version: int


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
    limit: int
    offset: int


# =============================================================================
# Proposals
# =============================================================================


class ProposalCreate(BaseModel):
    """Request to bid on a job."""

    job_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0, description="Minor units")
    duration_days: int = Field(..., gt=0, le=3650)
    cover_letter: str | None = Field(None, max_length=10_000)


class ProposalUpdate(BaseModel):
    action: Literal["accept", "reject", "withdraw"]


class ProposalResponse(BaseModel):
    id: str
    job_id: str
    bidder_id: str
    amount: int
    duration_days: int
    cover_letter: str | None = None
    status: ProposalStatus
    created_at: datetime | None = None
    status_changed_at: datetime | None = None
    version: int


class ProposalListResponse(BaseModel):
    proposals: list[ProposalResponse]


# =============================================================================
# Escrows
# =============================================================================


class EscrowCreate(BaseModel):
    """Request to fund an accepted proposal."""

    job_id: str = Field(..., min_length=1)
    proposal_id: str = Field(..., min_length=1)
    arbiter_id: str = Field(..., min_length=1)
    amount: int | None = Field(None, gt=0, description="Defaults to the proposal amount")
    milestone_plan: list[MilestoneSpecModel] | None = Field(None, max_length=50)
    threshold: int | None = Field(None, ge=1, le=3)
    asset_id: str | None = None


class ConfirmLockRequest(BaseModel):
    tx_ref: str = Field(..., min_length=1, max_length=256)


class SignRequest(BaseModel):
    """Authorize the pending action. `party` must be the caller's own role."""

    party: PartyRole
    action: str | None = Field(None, pattern=r"^(release:(all|\d+)|refund)$")


class ReleaseRequest(BaseModel):
    milestone_index: int | None = Field(None, ge=0)


class DisputeCreate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=5000)


class DisputeResolve(BaseModel):
    decision: Literal["release", "refund"]
    note: str | None = Field(None, max_length=5000)


class MilestoneResponse(BaseModel):
    index: int
    amount: int
    deadline: datetime
    percentage: Decimal
    description: str = ""
    released: bool
    release_tx_ref: str | None = None
    released_at: datetime | None = None
    auto_released: bool = False


class SubmissionResponse(BaseModel):
    """Ledger action in flight."""

    ledger_action: str
    action: str | None = None
    amount: int
    milestone_indices: list[int] = []
    privileged: bool = False
    auto: bool = False
    tx_ref: str | None = None
    started_at: datetime | None = None


class DisputeResponse(BaseModel):
    id: str
    escrow_id: str
    raised_by: str
    raised_by_role: str
    reason: str
    arbiter_id: str
    decision: Literal["pending", "release", "refund"]
    resolution_note: str | None = None
    created_at: datetime | None = None
    resolved_at: datetime | None = None


class DisputeListResponse(BaseModel):
    disputes: list[DisputeResponse]


class EscrowResponse(BaseModel):
    id: str
    job_id: str
    proposal_id: str
    employer_id: str
    freelancer_id: str
    arbiter_id: str
    total_amount: int
    released_amount: int
    remaining_amount: int
    currency: str
    asset_id: str | None = None
    status: EscrowStatus
    threshold: int
    pending_action: str | None = None
    signatures: list[str]
    milestones: list[MilestoneResponse]
    current_milestone: int
    submission: SubmissionResponse | None = None
    lock_tx_ref: str | None = None
    release_tx_refs: list[str] = []
    refund_tx_ref: str | None = None
    dispute: DisputeResponse | None = None
    created_at: datetime | None = None
    locked_at: datetime | None = None
    released_at: datetime | None = None
    refunded_at: datetime | None = None
    disputed_at: datetime | None = None
    updated_at: datetime | None = None
    version: int


class EscrowListResponse(BaseModel):
    escrows: list[EscrowResponse]
    limit: int
    offset: int


class SignResponse(BaseModel):
    escrow: EscrowResponse
    action: str
    signatures: list[str]
    threshold: int
    threshold_met: bool


class TransitionResponse(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    from_status: str | None = None
    to_status: str
    actor_id: str | None = None
    metadata: dict[str, Any] = {}
    created_at: datetime | None = None


class TransitionListResponse(BaseModel):
    transitions: list[TransitionResponse]


# =============================================================================
# Notifications
# =============================================================================


class NotificationResponse(BaseModel):
    id: str
    recipient_id: str
    type: str
    title: str
    message: str
    job_id: str | None = None
    escrow_id: str | None = None
    read: bool
    created_at: datetime | None = None


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    unread: int


# =============================================================================
# Maintenance
# =============================================================================


class SweepRequest(BaseModel):
    dry_run: bool = Field(
        default=False, description="If true, report what would be done without making changes"
    )


class AutoReleased(BaseModel):
    escrow_id: str
    milestone_index: int


class SweepResponse(BaseModel):
    dry_run: bool
    escrows_scanned: int
    reconciled: list[str]
    stale_cleared: list[str]
    auto_released: list[AutoReleased]
    still_pending: list[str]
    jobs_repaired: list[str]
    errors: list[str]
    started_at: datetime
    finished_at: datetime | None = None


# =============================================================================
# Errors
# =============================================================================


class ErrorResponse(BaseModel):
    detail: str
    kind: str
    retryable: bool = False
    current_state: str | None = None
