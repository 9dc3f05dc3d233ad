"""Maintenance routes.

POST /maintenance/sweep runs one deadline sweep pass: reconcile in-flight
ledger submissions, auto-release milestones past their deadline and
repair jobs left behind by a terminal escrow. Call it from cron when the
in-process sweeper is disabled.
"""

from fastapi import APIRouter, Request

from ..auth import AdminAgent
from ..database import Engine
from ..logging_config import get_logger
from ..models import SweepRequest, SweepResponse
from ..rate_limit import limiter

logger = get_logger("gigsettle.api.maintenance")
router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/sweep", response_model=SweepResponse)
@limiter.limit("10/minute")
def run_sweep(request: Request, admin: AdminAgent, engine: Engine, body: SweepRequest | None = None):
    """Run one sweep pass. Set dry_run=true to see what would change."""
    dry_run = body.dry_run if body else False
    logger.info(f"POST /maintenance/sweep | agent={admin.agent_id} | dry_run={dry_run}")
    report = engine.sweeper.run_once(dry_run=dry_run)
    if report.errors:
        logger.warning(f"Sweep finished with {len(report.errors)} error(s) | first={report.errors[0]}")
    return SweepResponse.model_validate(report.to_dict())
