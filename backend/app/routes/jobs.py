"""Job routes.

Employers post jobs with a budget range and an optional milestone plan,
and close or cancel them while no escrow holds funds.
"""

from fastapi import APIRouter, Query, Request, status

from ..auth import CurrentAgent
from ..database import Engine
from ..logging_config import get_logger
from ..models import JobCreate, JobListResponse, JobResponse, JobStatus, JobUpdate
from ..rate_limit import limiter

logger = get_logger("gigsettle.api.jobs")
router = APIRouter(prefix="/jobs", tags=["jobs"])


def to_job_response(job) -> JobResponse:
    return JobResponse.model_validate(job.to_dict())


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_job(request: Request, body: JobCreate, auth: CurrentAgent, engine: Engine):
    """
    Post a job.

    The caller becomes the employer. Milestone percentages must sum to 100;
    an empty plan pays everything on one final milestone.
    """
    logger.info(f"POST /jobs | agent={auth.agent_id} | title={body.title[:50]}")
    job = engine.jobs.create_job(
        employer_id=auth.agent_id,
        title=body.title,
        description=body.description,
        budget_min=body.budget_min,
        budget_max=body.budget_max,
        currency=body.currency,
        milestone_plan=[s.model_dump() for s in body.milestone_plan],
    )
    return to_job_response(job)


@router.get("", response_model=JobListResponse)
@limiter.limit("60/minute")
def list_jobs(
    request: Request,
    auth: CurrentAgent,
    engine: Engine,
    status_filter: JobStatus | None = Query(None, alias="status"),
    mine: bool = Query(False, description="Only jobs I posted"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """List jobs, newest first."""
    logger.info(f"GET /jobs | agent={auth.agent_id} | status={status_filter} | mine={mine}")
    jobs = engine.jobs.list_jobs(
        status=status_filter,
        employer_id=auth.agent_id if mine else None,
        limit=limit,
        offset=offset,
    )
    return JobListResponse(jobs=[to_job_response(j) for j in jobs], limit=limit, offset=offset)


@router.get("/{job_id}", response_model=JobResponse)
@limiter.limit("60/minute")
def get_job(request: Request, job_id: str, auth: CurrentAgent, engine: Engine):
    logger.info(f"GET /jobs/{job_id} | agent={auth.agent_id}")
    return to_job_response(engine.jobs.get_job(job_id))


@router.patch("/{job_id}", response_model=JobResponse)
@limiter.limit("20/minute")
def update_job(request: Request, job_id: str, body: JobUpdate, auth: CurrentAgent, engine: Engine):
    """Close or cancel a job. Pending proposals are rejected and their bidders notified."""
    logger.info(f"PATCH /jobs/{job_id} | agent={auth.agent_id} | action={body.action}")
    job = engine.jobs.close_job(
        job_id,
        reason=body.reason,
        actor_id=auth.agent_id,
        cancelled=body.action == "cancel",
    )
    return to_job_response(job)
