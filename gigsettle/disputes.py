"""
Dispute Arbiter.

A dispute is raised by the employer or freelancer on a LOCKED escrow and
resolved exactly once by the escrow's arbiter, whose decision moves the
remaining balance without collecting further signatures. The dispute
record lives on the escrow, so raising and resolving it share the escrow's
compare-and-swap.
"""

import logging
from typing import List, Optional, Union

from gigsettle.errors import DisputeClosed, DisputeNotFound
from gigsettle.escrow import EscrowStateMachine
from gigsettle.types import Dispute, DisputeDecision

logger = logging.getLogger(__name__)


class DisputeArbiter:
    def __init__(self, escrows: EscrowStateMachine):
        self.escrows = escrows
        self.storage = escrows.storage

    def raise_dispute(self, escrow_id: str, raised_by: str, reason: str) -> Dispute:
        escrow = self.escrows.raise_dispute(escrow_id, raised_by, reason)
        return escrow.dispute

    def get_dispute(self, dispute_id: str) -> Dispute:
        dispute = self.storage.get_dispute(dispute_id)
        if dispute is None:
            raise DisputeNotFound(f"Dispute not found: {dispute_id}")
        return dispute

    def resolve(
        self,
        dispute_id: str,
        arbiter_id: str,
        decision: Union[str, DisputeDecision],
        note: Optional[str] = None,
    ) -> Dispute:
        dispute = self.get_dispute(dispute_id)
        if not dispute.is_open:
            raise DisputeClosed(
                f"Dispute {dispute_id} already resolved ({dispute.decision})",
                current_state=dispute.decision,
            )
        escrow = self.escrows.resolve_dispute(dispute.escrow_id, arbiter_id, decision, note)
        logger.info(f"Dispute {dispute_id} resolved by {arbiter_id}: {escrow.dispute.decision}")
        return escrow.dispute

    def list_open_disputes(self, arbiter_id: Optional[str] = None, limit: int = 100) -> List[Dispute]:
        return self.storage.list_disputes(arbiter_id=arbiter_id, open_only=True, limit=limit)

    def list_disputes(self, arbiter_id: Optional[str] = None, limit: int = 100) -> List[Dispute]:
        return self.storage.list_disputes(arbiter_id=arbiter_id, limit=limit)
