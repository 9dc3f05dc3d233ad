"""Storage protocol for gigsettle backends.

This defines the interface that all storage backends must implement.
Currently supported:
- InMemoryStorage: lock-guarded dicts for tests and local development
- SQLiteStorage: local-first file database
- SupabaseStorage: Supabase/PostgREST cloud storage

Every mutable record carries a version. The update_* methods are
compare-and-swap writes: they succeed only when the stored version equals
the version on the record passed in, store the record with version + 1
and return the stored copy. A mismatch raises VersionConflictError and
leaves storage untouched.
"""

from abc import abstractmethod
from datetime import datetime
from typing import List, Optional, Protocol, Sequence, Union

from gigsettle.types import (
    Dispute,
    Escrow,
    Job,
    Notification,
    Proposal,
    StateTransition,
)

StatusFilter = Union[None, str, Sequence[str]]


class SettlementStorage(Protocol):
    """Protocol defining the storage interface for the settlement engine."""

    # === Jobs ===

    @abstractmethod
    def save_job(self, job: Job) -> str:
        """Insert a new job. Returns the job ID."""
        ...

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        ...

    @abstractmethod
    def list_jobs(
        self,
        status: StatusFilter = None,
        employer_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs, newest first."""
        ...

    @abstractmethod
    def update_job(self, job: Job) -> Job:
        """Compare-and-swap update keyed on job.version."""
        ...

    # === Proposals ===

    @abstractmethod
    def save_proposal(self, proposal: Proposal) -> str:
        """Insert a new proposal.

        Raises DuplicateRecordError if the bidder already has a pending or
        accepted proposal on the same job.
        """
        ...

    @abstractmethod
    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        ...

    @abstractmethod
    def list_proposals(
        self,
        job_id: Optional[str] = None,
        bidder_id: Optional[str] = None,
        status: StatusFilter = None,
        limit: int = 100,
    ) -> List[Proposal]:
        """List proposals, oldest first."""
        ...

    @abstractmethod
    def update_proposal(self, proposal: Proposal) -> Proposal:
        """Compare-and-swap update keyed on proposal.version."""
        ...

    @abstractmethod
    def accept_proposal(self, job: Job, proposal: Proposal, now: datetime) -> List[str]:
        """Accept one proposal atomically.

        In a single transaction: checks job.version and proposal.version,
        marks the proposal ACCEPTED, records it on the job and rejects every
        other PENDING proposal for the job. Returns the rejected proposal IDs.
        """
        ...

    # === Escrows ===

    @abstractmethod
    def save_escrow(self, escrow: Escrow) -> str:
        """Insert a new escrow.

        Raises DuplicateRecordError if the job already has an escrow.
        """
        ...

    @abstractmethod
    def get_escrow(self, escrow_id: str) -> Optional[Escrow]:
        ...

    @abstractmethod
    def list_escrows(
        self,
        job_id: Optional[str] = None,
        proposal_id: Optional[str] = None,
        party_id: Optional[str] = None,
        status: StatusFilter = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Escrow]:
        """List escrows, oldest first."""
        ...

    @abstractmethod
    def update_escrow(self, escrow: Escrow) -> Escrow:
        """Compare-and-swap update of the escrow and everything it owns.

        Milestones, signatures, the submission marker and the dispute are
        written in the same atomic unit as the escrow row.
        """
        ...

    # === Disputes (read side; written through update_escrow) ===

    @abstractmethod
    def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        ...

    @abstractmethod
    def list_disputes(
        self,
        arbiter_id: Optional[str] = None,
        open_only: bool = False,
        limit: int = 100,
    ) -> List[Dispute]:
        ...

    # === Transitions (audit log) ===

    @abstractmethod
    def save_transition(self, transition: StateTransition) -> str:
        ...

    @abstractmethod
    def get_transitions(self, entity_type: str, entity_id: str) -> List[StateTransition]:
        """Transitions for one entity, oldest first."""
        ...

    # === Notifications ===

    @abstractmethod
    def save_notification(self, notification: Notification) -> str:
        ...

    @abstractmethod
    def list_notifications(
        self,
        recipient_id: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> List[Notification]:
        """Notifications for one recipient, newest first."""
        ...

    @abstractmethod
    def mark_notification_read(self, notification_id: str, recipient_id: str) -> bool:
        """Mark a notification read. Returns False if it does not belong to recipient."""
        ...


def status_values(status: StatusFilter) -> Optional[List[str]]:
    """Normalize a status filter (single value, enum or sequence) to a list of strings."""
    if status is None:
        return None
    if isinstance(status, str):
        return [getattr(status, "value", status)]
    return [getattr(s, "value", s) for s in status]
