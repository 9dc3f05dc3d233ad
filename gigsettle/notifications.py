"""
Audit trail and party notifications.

Both are written after a transition has been committed. A failure here
never undoes or fails the transition that triggered it; it is logged.
"""

import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

from gigsettle.storage.base import SettlementStorage
from gigsettle.types import (
    Notification,
    NotificationType,
    StateTransition,
    utc_now,
)

logger = logging.getLogger(__name__)


class AuditTrail:
    """Appends StateTransition records for jobs, proposals and escrows."""

    def __init__(self, storage: SettlementStorage, now_fn: Callable = utc_now):
        self.storage = storage
        self._now = now_fn

    def record(
        self,
        entity_type: str,
        entity_id: str,
        from_status: Optional[str],
        to_status: str,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[StateTransition]:
        transition = StateTransition(
            id=str(uuid.uuid4()),
            entity_type=entity_type,
            entity_id=entity_id,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor_id,
            metadata=metadata or {},
            created_at=self._now(),
        )
        try:
            self.storage.save_transition(transition)
        except Exception as e:
            logger.error(
                f"Failed to record transition {entity_type}/{entity_id} "
                f"{from_status}->{to_status}: {e}"
            )
            return None
        return transition

    def history(self, entity_type: str, entity_id: str) -> List[StateTransition]:
        return self.storage.get_transitions(entity_type, entity_id)


class Notifier:
    """Writes Notification records addressed to the affected parties."""

    def __init__(self, storage: SettlementStorage, now_fn: Callable = utc_now):
        self.storage = storage
        self._now = now_fn

    def notify(
        self,
        recipients: Iterable[Optional[str]],
        type: NotificationType,
        title: str,
        message: str,
        job_id: Optional[str] = None,
        escrow_id: Optional[str] = None,
    ) -> List[Notification]:
        sent = []
        for recipient in dict.fromkeys(r for r in recipients if r):
            notification = Notification(
                id=str(uuid.uuid4()),
                recipient_id=recipient,
                type=type.value,
                title=title,
                message=message,
                job_id=job_id,
                escrow_id=escrow_id,
                created_at=self._now(),
            )
            try:
                self.storage.save_notification(notification)
            except Exception as e:
                logger.error(f"Failed to notify {recipient} ({type.value}): {e}")
                continue
            sent.append(notification)
        return sent

    def list_for(self, recipient_id: str, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        return self.storage.list_notifications(recipient_id, unread_only=unread_only, limit=limit)

    def mark_read(self, notification_id: str, recipient_id: str) -> bool:
        return self.storage.mark_notification_read(notification_id, recipient_id)
