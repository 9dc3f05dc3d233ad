"""
Signature Collector.

Tracks which of the escrow's parties (employer, freelancer, arbiter) have
authorized the currently pending action, as a set of roles checked against
a per-escrow threshold t (1..3). Authorizations never carry over from one
action to the next.

Every sign is a compare-and-swap on the escrow, so of several concurrent
signers exactly one sees the set cross the threshold.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from gigsettle.concurrency import retry_on_conflict
from gigsettle.config import DEFAULT_CONFIG, SettlementConfig
from gigsettle.errors import (
    ActionConflict,
    AlreadyReleased,
    AlreadySigned,
    EscrowNotFound,
    InvalidTransition,
    MilestoneNotFound,
    NotLocked,
    SubmissionInFlight,
    UnknownParty,
    ValidationError,
)
from gigsettle.storage.base import SettlementStorage
from gigsettle.types import (
    ActionKind,
    Escrow,
    EscrowStatus,
    Party,
    PendingAction,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class SignResult:
    escrow: Escrow
    action: str
    signatures: List[str]
    threshold: int
    threshold_met: bool
    crossed: bool  # This signature moved the set from below to at-threshold


def parse_party(party: Union[str, Party]) -> Party:
    try:
        return Party(getattr(party, "value", party))
    except ValueError:
        raise UnknownParty(f"Unknown party: {party!r}") from None


def parse_action(action: Union[None, str, PendingAction]) -> Optional[PendingAction]:
    if action is None or isinstance(action, PendingAction):
        return action
    try:
        return PendingAction.parse(action)
    except ValueError as e:
        raise ValidationError(str(e)) from e


def role_of(escrow: Escrow, identity: str) -> Party:
    """Map an authenticated identity to its role on the escrow."""
    for role, bound in escrow.parties.items():
        if bound == identity:
            return Party(role)
    raise UnknownParty(f"{identity} is not a party to escrow {escrow.id}")


def ensure_signable(escrow: Escrow) -> None:
    """Signing is open only on LOCKED escrows with no ledger submission in flight."""
    if escrow.status == EscrowStatus.DISPUTED.value:
        raise InvalidTransition(
            f"Escrow {escrow.id} is disputed; signing is frozen", current_state=escrow.status
        )
    if escrow.status != EscrowStatus.LOCKED.value:
        raise NotLocked(f"Escrow {escrow.id} is {escrow.status}", current_state=escrow.status)
    if escrow.submission is not None:
        raise SubmissionInFlight(
            f"Escrow {escrow.id} has a {escrow.submission.ledger_action} in flight",
            current_state=escrow.status,
        )


def ensure_action_valid(escrow: Escrow, action: PendingAction) -> None:
    if action.kind != ActionKind.RELEASE or action.milestone_index is None:
        return
    for milestone in escrow.milestones:
        if milestone.index == action.milestone_index:
            if milestone.released:
                raise AlreadyReleased(
                    f"Milestone {milestone.index} already released", current_state=escrow.status
                )
            return
    raise MilestoneNotFound(f"Escrow {escrow.id} has no milestone {action.milestone_index}")


class SignatureCollector:
    """Collects party authorizations for an escrow's pending action."""

    def __init__(
        self,
        storage: SettlementStorage,
        config: SettlementConfig = DEFAULT_CONFIG,
        now_fn: Callable = utc_now,
    ):
        self.storage = storage
        self.config = config
        self._now = now_fn

    def _get(self, escrow_id: str) -> Escrow:
        escrow = self.storage.get_escrow(escrow_id)
        if escrow is None:
            raise EscrowNotFound(f"Escrow not found: {escrow_id}")
        return escrow

    def default_action(self, escrow: Escrow) -> PendingAction:
        """Release of the current milestone, the usual next step."""
        return PendingAction.release(escrow.current_milestone)

    def sign(
        self,
        escrow_id: str,
        party: Union[str, Party],
        action: Union[None, str, PendingAction] = None,
    ) -> SignResult:
        role = parse_party(party)
        requested = parse_action(action)

        def attempt() -> SignResult:
            escrow = self._get(escrow_id)
            ensure_signable(escrow)
            pending = PendingAction.parse(escrow.pending_action)
            target = requested or pending or self.default_action(escrow)
            ensure_action_valid(escrow, target)

            if pending is not None and target != pending:
                if escrow.signatures:
                    raise ActionConflict(
                        f"Escrow {escrow_id} is collecting signatures for {pending.key}, "
                        f"not {target.key}",
                        current_state=pending.key,
                    )
            if role.value in escrow.signatures and (pending is None or target == pending):
                raise AlreadySigned(
                    f"{role.value} already signed {target.key} on escrow {escrow_id}",
                    current_state=target.key,
                )

            met_before = escrow.threshold_met if target == pending else False
            if target != pending:
                escrow.signatures = set()
            escrow.pending_action = target.key
            escrow.signatures.add(role.value)
            escrow.updated_at = self._now()
            updated = self.storage.update_escrow(escrow)
            return SignResult(
                escrow=updated,
                action=target.key,
                signatures=sorted(updated.signatures),
                threshold=updated.threshold,
                threshold_met=updated.threshold_met,
                crossed=not met_before and updated.threshold_met,
            )

        result = retry_on_conflict(attempt, self.config, f"sign escrow {escrow_id}")
        logger.info(
            f"Escrow {escrow_id}: {role.value} signed {result.action} "
            f"({len(result.signatures)}/{result.threshold})"
        )
        return result

    def revoke(self, escrow_id: str, party: Union[str, Party]) -> Escrow:
        """Withdraw the party's own signature from the pending action."""
        role = parse_party(party)

        def attempt() -> Escrow:
            escrow = self._get(escrow_id)
            ensure_signable(escrow)
            if role.value not in escrow.signatures:
                raise InvalidTransition(
                    f"{role.value} has not signed {escrow.pending_action or 'anything'}",
                    current_state=escrow.pending_action,
                )
            escrow.signatures.discard(role.value)
            if not escrow.signatures:
                escrow.pending_action = None
            escrow.updated_at = self._now()
            return self.storage.update_escrow(escrow)

        escrow = retry_on_conflict(attempt, self.config, f"revoke signature on {escrow_id}")
        logger.info(f"Escrow {escrow_id}: {role.value} revoked signature")
        return escrow

    def threshold_met(self, escrow_id: str) -> bool:
        return self._get(escrow_id).threshold_met

    def signatures(self, escrow_id: str) -> List[str]:
        return sorted(self._get(escrow_id).signatures)

    def reset_for_next_action(self, escrow_id: str) -> Escrow:
        def attempt() -> Escrow:
            escrow = self._get(escrow_id)
            if not escrow.signatures and escrow.pending_action is None:
                return escrow
            escrow.signatures = set()
            escrow.pending_action = None
            escrow.updated_at = self._now()
            return self.storage.update_escrow(escrow)

        return retry_on_conflict(attempt, self.config, f"reset signatures on {escrow_id}")
