"""
Settlement error taxonomy.

Every failure the engine reports is a SettlementError tagged with a kind,
a retryable flag and (for state errors) the current state of the record so
callers can decide whether to re-read, retry or give up.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Coarse classification of settlement failures."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    STATE = "state"
    CONFLICT = "conflict"
    LEDGER = "ledger"
    AUTHORIZATION = "authorization"


class SettlementError(Exception):
    """Base exception for settlement operations."""

    kind: ErrorKind = ErrorKind.VALIDATION
    retryable: bool = False

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.current_state = current_state
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": self.message,
            "kind": self.kind.value,
            "retryable": self.retryable,
            "current_state": self.current_state,
        }


# === Validation ===


class ValidationError(SettlementError):
    """Input rejected before any state was touched."""

    kind = ErrorKind.VALIDATION


class BudgetExceeded(ValidationError):
    """Proposal amount outside the job budget, or job not accepting bids."""


class InvalidMilestonePlan(ValidationError):
    """Milestone percentages do not form a valid plan."""


# === Not found ===


class NotFoundError(SettlementError):
    kind = ErrorKind.NOT_FOUND


class JobNotFound(NotFoundError):
    pass


class ProposalNotFound(NotFoundError):
    pass


class EscrowNotFound(NotFoundError):
    pass


class DisputeNotFound(NotFoundError):
    pass


class MilestoneNotFound(NotFoundError):
    pass


# === State ===


class StateError(SettlementError):
    """Operation not allowed in the record's current state."""

    kind = ErrorKind.STATE


class InvalidTransition(StateError):
    pass


class NotCreated(StateError):
    """Lock confirmation for an escrow that is no longer awaiting a lock."""


class NotLocked(StateError):
    pass


class AlreadySigned(StateError):
    pass


class AlreadyReleased(StateError):
    pass


class ThresholdNotMet(StateError):
    pass


class ActionConflict(StateError):
    """Signature offered for a different action than the one being collected."""


class SubmissionInFlight(StateError):
    """Another ledger submission for this escrow has not been reconciled yet."""


class EscrowExists(StateError):
    pass


class DuplicateProposal(StateError):
    pass


class DisputeClosed(StateError):
    pass


# === Conflict ===


class ConcurrencyConflict(SettlementError):
    """Optimistic concurrency retries were exhausted."""

    kind = ErrorKind.CONFLICT
    retryable = True


# === Ledger ===


class LedgerError(SettlementError):
    """The ledger anchor could not be reached or refused the request."""

    kind = ErrorKind.LEDGER
    retryable = True


class LedgerTimeout(LedgerError):
    """Submitted but not confirmed within the timeout; retry resumes the same tx."""

    def __init__(self, message: str, tx_ref: Optional[str] = None, current_state: Optional[str] = None):
        super().__init__(message, current_state=current_state)
        self.tx_ref = tx_ref


class LedgerRejected(LedgerError):
    """The ledger reported the transaction as failed."""


# === Authorization ===


class AuthorizationError(SettlementError):
    kind = ErrorKind.AUTHORIZATION


class UnknownParty(AuthorizationError):
    """Identity or role is not bound to the escrow."""


class Unauthorized(AuthorizationError):
    pass
