"""Escrow routes.

Funding, locking, signing and settlement of escrows. The caller's role on
an escrow is derived from their identity; a body's `party` field is only
checked against it.
"""

from fastapi import APIRouter, Query, Request, status

from gigsettle.errors import Unauthorized
from gigsettle.types import Party

from ..auth import AuthContext, CurrentAgent
from ..database import Engine
from ..logging_config import get_logger, log_event
from ..models import (
    ConfirmLockRequest,
    DisputeCreate,
    EscrowCreate,
    EscrowListResponse,
    EscrowResponse,
    EscrowStatus,
    ReleaseRequest,
    SignRequest,
    SignResponse,
    TransitionListResponse,
    TransitionResponse,
)
from ..rate_limit import limiter

logger = get_logger("gigsettle.api.escrows")
router = APIRouter(prefix="/escrows", tags=["escrows"])


def to_escrow_response(escrow) -> EscrowResponse:
    data = escrow.to_dict()
    data["released_amount"] = escrow.released_amount
    data["remaining_amount"] = escrow.remaining_amount
    return EscrowResponse.model_validate(data)


def caller_role(engine, escrow_id: str, auth: AuthContext) -> Party | None:
    """The caller's role on the escrow; admins without one get None."""
    if auth.is_admin:
        escrow = engine.escrows.get_escrow(escrow_id)
        for role, identity in escrow.parties.items():
            if identity == auth.agent_id:
                return Party(role)
        return None
    return engine.escrows.role_of(escrow_id, auth.agent_id)


# =============================================================================
# Creation and queries
# =============================================================================


@router.post("", response_model=EscrowResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_escrow(request: Request, body: EscrowCreate, auth: CurrentAgent, engine: Engine):
    """
    Fund the accepted proposal of a job.

    Only the job's employer may call this. The escrow starts CREATED; call
    /lock to move the funds on the ledger.
    """
    logger.info(f"POST /escrows | agent={auth.agent_id} | job={body.job_id} | proposal={body.proposal_id}")
    escrow = engine.escrows.create_escrow(
        job_id=body.job_id,
        proposal_id=body.proposal_id,
        arbiter_id=body.arbiter_id,
        amount=body.amount,
        milestone_plan=[s.model_dump() for s in body.milestone_plan] if body.milestone_plan else None,
        threshold=body.threshold,
        asset_id=body.asset_id,
        actor_id=auth.agent_id,
    )
    log_event(logger, "escrow_created", auth.agent_id, escrow=escrow.id, amount=escrow.total_amount)
    return to_escrow_response(escrow)


@router.get("", response_model=EscrowListResponse)
@limiter.limit("60/minute")
def list_escrows(
    request: Request,
    auth: CurrentAgent,
    engine: Engine,
    job_id: str | None = Query(None),
    proposal_id: str | None = Query(None),
    status_filter: EscrowStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """List escrows the caller is a party to (admins see all)."""
    logger.info(f"GET /escrows | agent={auth.agent_id} | job={job_id} | proposal={proposal_id}")
    escrows = engine.escrows.find_escrows(
        job_id=job_id,
        proposal_id=proposal_id,
        party_id=None if auth.is_admin else auth.agent_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    return EscrowListResponse(
        escrows=[to_escrow_response(e) for e in escrows], limit=limit, offset=offset
    )


@router.get("/{escrow_id}", response_model=EscrowResponse)
@limiter.limit("60/minute")
def get_escrow(request: Request, escrow_id: str, auth: CurrentAgent, engine: Engine):
    logger.info(f"GET /escrows/{escrow_id} | agent={auth.agent_id}")
    caller_role(engine, escrow_id, auth)
    return to_escrow_response(engine.escrows.get_escrow(escrow_id))


@router.get("/{escrow_id}/transitions", response_model=TransitionListResponse)
@limiter.limit("60/minute")
def get_transitions(request: Request, escrow_id: str, auth: CurrentAgent, engine: Engine):
    logger.info(f"GET /escrows/{escrow_id}/transitions | agent={auth.agent_id}")
    caller_role(engine, escrow_id, auth)
    transitions = engine.escrows.get_transitions(escrow_id)
    return TransitionListResponse(
        transitions=[TransitionResponse.model_validate(t.to_dict()) for t in transitions]
    )


# =============================================================================
# Lock
# =============================================================================


@router.post("/{escrow_id}/lock", response_model=EscrowResponse)
@limiter.limit("10/minute")
def lock_escrow(request: Request, escrow_id: str, auth: CurrentAgent, engine: Engine):
    """
    Submit the lock to the ledger and wait for confirmation.

    A 503 with kind=ledger means the transaction is still pending; calling
    again resumes it instead of submitting a second lock.
    """
    logger.info(f"POST /escrows/{escrow_id}/lock | agent={auth.agent_id}")
    escrow = engine.escrows.submit_lock(escrow_id, actor_id=auth.agent_id)
    log_event(logger, "escrow_locked", auth.agent_id, escrow=escrow_id, tx=escrow.lock_tx_ref)
    return to_escrow_response(escrow)


@router.post("/{escrow_id}/confirm-lock", response_model=EscrowResponse)
@limiter.limit("20/minute")
def confirm_lock(
    request: Request, escrow_id: str, body: ConfirmLockRequest, auth: CurrentAgent, engine: Engine
):
    """Record a lock confirmed out of band. Repeating it with the same tx_ref is a no-op."""
    logger.info(f"POST /escrows/{escrow_id}/confirm-lock | agent={auth.agent_id} | tx={body.tx_ref}")
    role = caller_role(engine, escrow_id, auth)
    if role is not None and role != Party.EMPLOYER and not auth.is_admin:
        raise Unauthorized("Only the employer can confirm the lock")
    escrow = engine.escrows.confirm_lock(escrow_id, body.tx_ref)
    return to_escrow_response(escrow)


# =============================================================================
# Signatures
# =============================================================================


@router.post("/{escrow_id}/sign", response_model=SignResponse)
@limiter.limit("30/minute")
def sign_escrow(
    request: Request, escrow_id: str, body: SignRequest, auth: CurrentAgent, engine: Engine
):
    """
    Authorize the pending action (default: release of the current milestone).

    Signing does not move funds; call /release or /refund once
    threshold_met is true.
    """
    logger.info(
        f"POST /escrows/{escrow_id}/sign | agent={auth.agent_id} | party={body.party} | action={body.action}"
    )
    role = engine.escrows.role_of(escrow_id, auth.agent_id)
    if role.value != body.party:
        raise Unauthorized(f"Caller is the {role.value} on this escrow, not the {body.party}")
    result = engine.escrows.sign(escrow_id, role, body.action)
    return SignResponse(
        escrow=to_escrow_response(result.escrow),
        action=result.action,
        signatures=result.signatures,
        threshold=result.threshold,
        threshold_met=result.threshold_met,
    )


@router.delete("/{escrow_id}/sign", response_model=EscrowResponse)
@limiter.limit("30/minute")
def revoke_signature(request: Request, escrow_id: str, auth: CurrentAgent, engine: Engine):
    logger.info(f"DELETE /escrows/{escrow_id}/sign | agent={auth.agent_id}")
    role = engine.escrows.role_of(escrow_id, auth.agent_id)
    return to_escrow_response(engine.escrows.revoke(escrow_id, role))


# =============================================================================
# Settlement
# =============================================================================


@router.post("/{escrow_id}/release", response_model=EscrowResponse)
@limiter.limit("10/minute")
def release_escrow(
    request: Request,
    escrow_id: str,
    auth: CurrentAgent,
    engine: Engine,
    body: ReleaseRequest | None = None,
):
    """Run the authorized pending release, or resume one left pending on the ledger."""
    milestone_index = body.milestone_index if body else None
    logger.info(f"POST /escrows/{escrow_id}/release | agent={auth.agent_id} | milestone={milestone_index}")
    escrow = engine.escrows.release(escrow_id, milestone_index, actor_id=auth.agent_id)
    log_event(logger, "escrow_release", auth.agent_id, escrow=escrow_id, status=escrow.status)
    return to_escrow_response(escrow)


@router.post("/{escrow_id}/refund", response_model=EscrowResponse)
@limiter.limit("10/minute")
def refund_escrow(request: Request, escrow_id: str, auth: CurrentAgent, engine: Engine):
    """Run the authorized refund of the remaining balance."""
    logger.info(f"POST /escrows/{escrow_id}/refund | agent={auth.agent_id}")
    escrow = engine.escrows.refund(escrow_id, actor_id=auth.agent_id)
    log_event(logger, "escrow_refund", auth.agent_id, escrow=escrow_id, status=escrow.status)
    return to_escrow_response(escrow)


@router.post("/{escrow_id}/milestones/{index}/release", response_model=EscrowResponse)
@limiter.limit("10/minute")
def release_milestone(
    request: Request, escrow_id: str, index: int, auth: CurrentAgent, engine: Engine
):
    """Release one milestone: signed to threshold, or past its deadline."""
    logger.info(f"POST /escrows/{escrow_id}/milestones/{index}/release | agent={auth.agent_id}")
    escrow = engine.escrows.release_milestone(escrow_id, index, actor_id=auth.agent_id)
    log_event(logger, "milestone_released", auth.agent_id, escrow=escrow_id, milestone=index)
    return to_escrow_response(escrow)


@router.post("/{escrow_id}/dispute", response_model=EscrowResponse)
@limiter.limit("5/minute")
def raise_dispute(
    request: Request, escrow_id: str, body: DisputeCreate, auth: CurrentAgent, engine: Engine
):
    """Freeze a locked escrow until its arbiter decides."""
    logger.info(f"POST /escrows/{escrow_id}/dispute | agent={auth.agent_id}")
    escrow = engine.escrows.raise_dispute(escrow_id, auth.agent_id, body.reason)
    log_event(logger, "dispute_raised", auth.agent_id, escrow=escrow_id, dispute=escrow.dispute.id)
    return to_escrow_response(escrow)
