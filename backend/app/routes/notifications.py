"""Notification routes: the caller's inbox."""

from fastapi import APIRouter, HTTPException, Query, Request, status

from ..auth import CurrentAgent
from ..database import Engine
from ..logging_config import get_logger
from ..models import NotificationListResponse, NotificationResponse
from ..rate_limit import limiter

logger = get_logger("gigsettle.api.notifications")
router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationListResponse)
@limiter.limit("60/minute")
def list_notifications(
    request: Request,
    auth: CurrentAgent,
    engine: Engine,
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
):
    logger.info(f"GET /notifications | agent={auth.agent_id} | unread_only={unread_only}")
    notifications = engine.notifier.list_for(auth.agent_id, unread_only=unread_only, limit=limit)
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n.to_dict()) for n in notifications],
        unread=sum(1 for n in notifications if not n.read),
    )


@router.post("/{notification_id}/read", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("120/minute")
def mark_read(request: Request, notification_id: str, auth: CurrentAgent, engine: Engine):
    logger.info(f"POST /notifications/{notification_id}/read | agent={auth.agent_id}")
    if not engine.notifier.mark_read(notification_id, auth.agent_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
