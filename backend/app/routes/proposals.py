"""Proposal routes.

Freelancers bid on open jobs; the employer accepts one bid, which rejects
every other pending bid on the job in the same transaction.
"""

from fastapi import APIRouter, Query, Request, status

from ..auth import CurrentAgent
from ..database import Engine
from ..logging_config import get_logger
from ..models import (
    ProposalCreate,
    ProposalListResponse,
    ProposalResponse,
    ProposalStatus,
    ProposalUpdate,
)
from ..rate_limit import limiter

logger = get_logger("gigsettle.api.proposals")
router = APIRouter(prefix="/proposals", tags=["proposals"])


def to_proposal_response(proposal) -> ProposalResponse:
    return ProposalResponse.model_validate(proposal.to_dict())


@router.post("", response_model=ProposalResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def submit_proposal(request: Request, body: ProposalCreate, auth: CurrentAgent, engine: Engine):
    logger.info(f"POST /proposals | agent={auth.agent_id} | job={body.job_id} | amount={body.amount}")
    proposal = engine.proposals.submit_proposal(
        job_id=body.job_id,
        bidder_id=auth.agent_id,
        amount=body.amount,
        duration_days=body.duration_days,
        cover_letter=body.cover_letter,
    )
    return to_proposal_response(proposal)


@router.get("", response_model=ProposalListResponse)
@limiter.limit("60/minute")
def list_proposals(
    request: Request,
    auth: CurrentAgent,
    engine: Engine,
    job_id: str | None = Query(None),
    bidder_id: str | None = Query(None),
    status_filter: ProposalStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
):
    """List proposals by job or bidder. Without filters, the caller's own bids."""
    logger.info(f"GET /proposals | agent={auth.agent_id} | job={job_id} | bidder={bidder_id}")
    if not job_id and not bidder_id:
        bidder_id = auth.agent_id
    proposals = engine.proposals.list_proposals(
        job_id=job_id, bidder_id=bidder_id, status=status_filter, limit=limit
    )
    return ProposalListResponse(proposals=[to_proposal_response(p) for p in proposals])


@router.get("/{proposal_id}", response_model=ProposalResponse)
@limiter.limit("60/minute")
def get_proposal(request: Request, proposal_id: str, auth: CurrentAgent, engine: Engine):
    logger.info(f"GET /proposals/{proposal_id} | agent={auth.agent_id}")
    return to_proposal_response(engine.proposals.get_proposal(proposal_id))


@router.patch("/{proposal_id}", response_model=ProposalResponse)
@limiter.limit("20/minute")
def update_proposal(
    request: Request, proposal_id: str, body: ProposalUpdate, auth: CurrentAgent, engine: Engine
):
    """Accept or reject (employer) or withdraw (bidder) a pending proposal."""
    logger.info(f"PATCH /proposals/{proposal_id} | agent={auth.agent_id} | action={body.action}")
    if body.action == "accept":
        proposal = engine.proposals.accept_proposal(proposal_id, actor_id=auth.agent_id)
    elif body.action == "reject":
        proposal = engine.proposals.reject_proposal(proposal_id, actor_id=auth.agent_id)
    else:
        proposal = engine.proposals.withdraw_proposal(proposal_id, actor_id=auth.agent_id)
    return to_proposal_response(proposal)
