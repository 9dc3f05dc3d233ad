"""Dispute routes.

Disputes are raised through POST /escrows/{id}/dispute; these endpoints
let arbiters find and resolve them.
"""

from fastapi import APIRouter, Query, Request

from gigsettle.errors import Unauthorized

from ..auth import CurrentAgent
from ..database import Engine
from ..logging_config import get_logger, log_event
from ..models import DisputeListResponse, DisputeResolve, DisputeResponse
from ..rate_limit import limiter

logger = get_logger("gigsettle.api.disputes")
router = APIRouter(prefix="/disputes", tags=["disputes"])


def to_dispute_response(dispute) -> DisputeResponse:
    return DisputeResponse.model_validate(dispute.to_dict())


@router.get("", response_model=DisputeListResponse)
@limiter.limit("60/minute")
def list_disputes(
    request: Request,
    auth: CurrentAgent,
    engine: Engine,
    arbiter: str = Query("me", description="'me' or, for admins, an arbiter identity or 'all'"),
    open_only: bool = Query(True),
    limit: int = Query(50, ge=1, le=200),
):
    """Disputes assigned to the caller as arbiter, open ones by default."""
    logger.info(f"GET /disputes | agent={auth.agent_id} | arbiter={arbiter} | open_only={open_only}")
    if arbiter == "me":
        arbiter_id = auth.agent_id
    elif auth.is_admin:
        arbiter_id = None if arbiter == "all" else arbiter
    else:
        raise Unauthorized("Only admins can list other arbiters' disputes")
    if open_only:
        disputes = engine.disputes.list_open_disputes(arbiter_id=arbiter_id, limit=limit)
    else:
        disputes = engine.disputes.list_disputes(arbiter_id=arbiter_id, limit=limit)
    return DisputeListResponse(disputes=[to_dispute_response(d) for d in disputes])


@router.get("/{dispute_id}", response_model=DisputeResponse)
@limiter.limit("60/minute")
def get_dispute(request: Request, dispute_id: str, auth: CurrentAgent, engine: Engine):
    logger.info(f"GET /disputes/{dispute_id} | agent={auth.agent_id}")
    dispute = engine.disputes.get_dispute(dispute_id)
    if not auth.is_admin:
        engine.escrows.role_of(dispute.escrow_id, auth.agent_id)
    return to_dispute_response(dispute)


@router.post("/{dispute_id}/resolve", response_model=DisputeResponse)
@limiter.limit("10/minute")
def resolve_dispute(
    request: Request, dispute_id: str, body: DisputeResolve, auth: CurrentAgent, engine: Engine
):
    """
    Decide a dispute. Only the escrow's arbiter may call this.

    The remaining balance is released to the freelancer or refunded to the
    employer without further signatures. The decision is final.
    """
    logger.info(f"POST /disputes/{dispute_id}/resolve | agent={auth.agent_id} | decision={body.decision}")
    dispute = engine.disputes.resolve(dispute_id, auth.agent_id, body.decision, body.note)
    log_event(logger, "dispute_resolved", auth.agent_id, dispute=dispute_id, decision=dispute.decision)
    return to_dispute_response(dispute)
