"""SQLite storage backend for gigsettle.

Local-first settlement storage. Every compare-and-swap write runs inside a
BEGIN IMMEDIATE transaction so that the version check and the write it
guards are one atomic unit, even with several processes sharing the file.
"""

import contextlib
import json
import logging
import os
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from gigsettle.storage.base import StatusFilter, status_values
from gigsettle.storage.schema import init_db, validate_table_name
from gigsettle.types import (
    Dispute,
    DuplicateRecordError,
    Escrow,
    Job,
    Notification,
    Proposal,
    ProposalStatus,
    StateTransition,
    VersionConflictError,
    format_datetime,
)

logger = logging.getLogger(__name__)


def get_gigsettle_home() -> Path:
    """Data directory: $GIGSETTLE_DATA_DIR or ~/.gigsettle."""
    env_dir = os.environ.get("GIGSETTLE_DATA_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".gigsettle"


ESCROW_COLUMNS = (
    "id",
    "job_id",
    "proposal_id",
    "employer_id",
    "freelancer_id",
    "arbiter_id",
    "total_amount",
    "currency",
    "asset_id",
    "status",
    "threshold",
    "pending_action",
    "current_milestone",
    "submission",
    "lock_tx_ref",
    "release_tx_refs",
    "refund_tx_ref",
    "created_at",
    "locked_at",
    "released_at",
    "refunded_at",
    "disputed_at",
    "updated_at",
    "version",
)


class SQLiteStorage:
    """SQLite-backed settlement storage."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path is not None else get_gigsettle_home() / "settlement.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection.

        Callers should prefer the _connect() context manager, which handles
        commit/rollback and close.
        """
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self, immediate: bool = False):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases

        With immediate=True the write lock is taken up front (BEGIN IMMEDIATE).
        """
        conn = self._get_conn()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def close(self):
        """Connections are per-operation; nothing to release."""
        pass

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn)

    def _to_json(self, data: Any) -> Optional[str]:
        """Convert to JSON string."""
        if data is None:
            return None
        return json.dumps(data)

    def _from_json(self, s: Optional[str]) -> Any:
        """Parse JSON string."""
        if not s:
            return None
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed JSON column: {s[:80]!r}")
            return None

    def _conflict(self, conn: sqlite3.Connection, table: str, record_id: str, expected: int):
        row = conn.execute(
            f"SELECT version FROM {validate_table_name(table)} WHERE id = ?", (record_id,)
        ).fetchone()
        if row is None:
            raise KeyError(f"{table}/{record_id} does not exist")
        raise VersionConflictError(table, record_id, expected, row["version"])

    @staticmethod
    def _status_clause(column: str, statuses: Optional[List[str]], clauses: List[str], params: List[Any]):
        if statuses is None:
            return
        clauses.append(f"{column} IN ({','.join('?' for _ in statuses)})")
        params.extend(statuses)

    # === Jobs ===

    def _job_params(self, job: Job) -> Dict[str, Any]:
        data = job.to_dict()
        data["milestone_plan"] = self._to_json(data["milestone_plan"])
        return data

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        data = dict(row)
        data["milestone_plan"] = self._from_json(data.get("milestone_plan")) or []
        return Job.from_dict(data)

    def save_job(self, job: Job) -> str:
        data = self._job_params(job)
        columns = list(data.keys())
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO jobs ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                [data[c] for c in columns],
            )
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(
        self,
        status: StatusFilter = None,
        employer_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        clauses: List[str] = []
        params: List[Any] = []
        self._status_clause("status", status_values(status), clauses, params)
        if employer_id is not None:
            clauses.append("employer_id = ?")
            params.append(employer_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def update_job(self, job: Job) -> Job:
        data = self._job_params(job)
        expected = data.pop("version")
        record_id = data.pop("id")
        assignments = ", ".join(f"{c} = ?" for c in data)
        with self._connect(immediate=True) as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {assignments}, version = version + 1 WHERE id = ? AND version = ?",
                list(data.values()) + [record_id, expected],
            )
            if cursor.rowcount == 0:
                self._conflict(conn, "jobs", record_id, expected)
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (record_id,)).fetchone()
        return self._row_to_job(row)

    # === Proposals ===

    def save_proposal(self, proposal: Proposal) -> str:
        data = proposal.to_dict()
        columns = list(data.keys())
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO proposals ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    [data[c] for c in columns],
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError("proposals", f"{proposal.job_id}/{proposal.bidder_id}") from e
        return proposal.id

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM proposals WHERE id = ?", (proposal_id,)).fetchone()
        return Proposal.from_dict(dict(row)) if row else None

    def list_proposals(
        self,
        job_id: Optional[str] = None,
        bidder_id: Optional[str] = None,
        status: StatusFilter = None,
        limit: int = 100,
    ) -> List[Proposal]:
        clauses: List[str] = []
        params: List[Any] = []
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        if bidder_id is not None:
            clauses.append("bidder_id = ?")
            params.append(bidder_id)
        self._status_clause("status", status_values(status), clauses, params)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM proposals {where} ORDER BY created_at ASC LIMIT ?",
                params + [limit],
            ).fetchall()
        return [Proposal.from_dict(dict(r)) for r in rows]

    def update_proposal(self, proposal: Proposal) -> Proposal:
        with self._connect(immediate=True) as conn:
            cursor = conn.execute(
                """UPDATE proposals SET
                       amount = ?, duration_days = ?, cover_letter = ?,
                       status = ?, status_changed_at = ?, version = version + 1
                   WHERE id = ? AND version = ?""",
                (
                    proposal.amount,
                    proposal.duration_days,
                    proposal.cover_letter,
                    proposal.status,
                    format_datetime(proposal.status_changed_at),
                    proposal.id,
                    proposal.version,
                ),
            )
            if cursor.rowcount == 0:
                self._conflict(conn, "proposals", proposal.id, proposal.version)
            row = conn.execute("SELECT * FROM proposals WHERE id = ?", (proposal.id,)).fetchone()
        return Proposal.from_dict(dict(row))

    def accept_proposal(self, job: Job, proposal: Proposal, now: datetime) -> List[str]:
        stamp = format_datetime(now)
        with self._connect(immediate=True) as conn:
            cursor = conn.execute(
                """UPDATE jobs SET accepted_proposal_id = ?, updated_at = ?, version = version + 1
                   WHERE id = ? AND version = ?""",
                (proposal.id, stamp, job.id, job.version),
            )
            if cursor.rowcount == 0:
                self._conflict(conn, "jobs", job.id, job.version)

            cursor = conn.execute(
                """UPDATE proposals SET status = ?, status_changed_at = ?, version = version + 1
                   WHERE id = ? AND version = ?""",
                (ProposalStatus.ACCEPTED.value, stamp, proposal.id, proposal.version),
            )
            if cursor.rowcount == 0:
                self._conflict(conn, "proposals", proposal.id, proposal.version)

            rejected = [
                r["id"]
                for r in conn.execute(
                    "SELECT id FROM proposals WHERE job_id = ? AND id != ? AND status = ?",
                    (job.id, proposal.id, ProposalStatus.PENDING.value),
                ).fetchall()
            ]
            if rejected:
                conn.execute(
                    f"""UPDATE proposals SET status = ?, status_changed_at = ?, version = version + 1
                        WHERE id IN ({','.join('?' for _ in rejected)})""",
                    [ProposalStatus.REJECTED.value, stamp] + rejected,
                )
        return rejected

    # === Escrows ===

    def _escrow_row(self, escrow: Escrow) -> Dict[str, Any]:
        data = escrow.to_dict()
        row = {c: data[c] for c in ESCROW_COLUMNS}
        row["submission"] = self._to_json(data["submission"])
        row["release_tx_refs"] = self._to_json(data["release_tx_refs"])
        return row

    def _write_owned(self, conn: sqlite3.Connection, escrow: Escrow, insert: bool) -> None:
        """Write milestones, signatures and dispute for an escrow."""
        for m in escrow.milestones:
            values = (
                m.amount,
                str(m.percentage),
                m.description,
                format_datetime(m.deadline),
                int(m.released),
                m.release_tx_ref,
                format_datetime(m.released_at),
                int(m.auto_released),
            )
            if insert:
                conn.execute(
                    """INSERT INTO escrow_milestones
                       (amount, percentage, description, deadline, released,
                        release_tx_ref, released_at, auto_released, escrow_id, idx)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    values + (escrow.id, m.index),
                )
            else:
                conn.execute(
                    """UPDATE escrow_milestones SET
                       amount = ?, percentage = ?, description = ?, deadline = ?, released = ?,
                       release_tx_ref = ?, released_at = ?, auto_released = ?
                       WHERE escrow_id = ? AND idx = ?""",
                    values + (escrow.id, m.index),
                )

        conn.execute("DELETE FROM escrow_signatures WHERE escrow_id = ?", (escrow.id,))
        conn.executemany(
            "INSERT INTO escrow_signatures (escrow_id, party) VALUES (?, ?)",
            [(escrow.id, party) for party in sorted(escrow.signatures)],
        )

        if escrow.dispute is not None:
            d = escrow.dispute.to_dict()
            columns = list(d.keys())
            conn.execute(
                f"INSERT OR REPLACE INTO disputes ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                [d[c] for c in columns],
            )

    def _load_escrows(self, conn: sqlite3.Connection, rows: Iterable[sqlite3.Row]) -> List[Escrow]:
        escrows = []
        for row in rows:
            data = dict(row)
            data["submission"] = self._from_json(data.get("submission"))
            data["release_tx_refs"] = self._from_json(data.get("release_tx_refs")) or []
            data["milestones"] = [
                {
                    "index": m["idx"],
                    "amount": m["amount"],
                    "percentage": m["percentage"],
                    "description": m["description"],
                    "deadline": m["deadline"],
                    "released": bool(m["released"]),
                    "release_tx_ref": m["release_tx_ref"],
                    "released_at": m["released_at"],
                    "auto_released": bool(m["auto_released"]),
                }
                for m in conn.execute(
                    "SELECT * FROM escrow_milestones WHERE escrow_id = ? ORDER BY idx",
                    (data["id"],),
                ).fetchall()
            ]
            data["signatures"] = [
                s["party"]
                for s in conn.execute(
                    "SELECT party FROM escrow_signatures WHERE escrow_id = ?", (data["id"],)
                ).fetchall()
            ]
            dispute = conn.execute(
                "SELECT * FROM disputes WHERE escrow_id = ?", (data["id"],)
            ).fetchone()
            data["dispute"] = dict(dispute) if dispute else None
            escrows.append(Escrow.from_dict(data))
        return escrows

    def save_escrow(self, escrow: Escrow) -> str:
        row = self._escrow_row(escrow)
        try:
            with self._connect(immediate=True) as conn:
                conn.execute(
                    f"INSERT INTO escrows ({', '.join(ESCROW_COLUMNS)}) "
                    f"VALUES ({', '.join('?' for _ in ESCROW_COLUMNS)})",
                    [row[c] for c in ESCROW_COLUMNS],
                )
                self._write_owned(conn, escrow, insert=True)
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError("escrows", escrow.job_id) from e
        return escrow.id

    def get_escrow(self, escrow_id: str) -> Optional[Escrow]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM escrows WHERE id = ?", (escrow_id,)).fetchall()
            escrows = self._load_escrows(conn, rows)
        return escrows[0] if escrows else None

    def list_escrows(
        self,
        job_id: Optional[str] = None,
        proposal_id: Optional[str] = None,
        party_id: Optional[str] = None,
        status: StatusFilter = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Escrow]:
        clauses: List[str] = []
        params: List[Any] = []
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        if proposal_id is not None:
            clauses.append("proposal_id = ?")
            params.append(proposal_id)
        if party_id is not None:
            clauses.append("(employer_id = ? OR freelancer_id = ? OR arbiter_id = ?)")
            params.extend([party_id] * 3)
        self._status_clause("status", status_values(status), clauses, params)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM escrows {where} ORDER BY created_at ASC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
            return self._load_escrows(conn, rows)

    def update_escrow(self, escrow: Escrow) -> Escrow:
        row = self._escrow_row(escrow)
        expected = row.pop("version")
        record_id = row.pop("id")
        assignments = ", ".join(f"{c} = ?" for c in row)
        with self._connect(immediate=True) as conn:
            cursor = conn.execute(
                f"UPDATE escrows SET {assignments}, version = version + 1 "
                f"WHERE id = ? AND version = ?",
                list(row.values()) + [record_id, expected],
            )
            if cursor.rowcount == 0:
                self._conflict(conn, "escrows", record_id, expected)
            self._write_owned(conn, escrow, insert=False)
            rows = conn.execute("SELECT * FROM escrows WHERE id = ?", (record_id,)).fetchall()
            return self._load_escrows(conn, rows)[0]

    # === Disputes ===

    def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM disputes WHERE id = ?", (dispute_id,)).fetchone()
        return Dispute.from_dict(dict(row)) if row else None

    def list_disputes(
        self,
        arbiter_id: Optional[str] = None,
        open_only: bool = False,
        limit: int = 100,
    ) -> List[Dispute]:
        clauses: List[str] = []
        params: List[Any] = []
        if arbiter_id is not None:
            clauses.append("arbiter_id = ?")
            params.append(arbiter_id)
        if open_only:
            clauses.append("decision = 'pending'")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM disputes {where} ORDER BY created_at ASC LIMIT ?",
                params + [limit],
            ).fetchall()
        return [Dispute.from_dict(dict(r)) for r in rows]

    # === Transitions ===

    def save_transition(self, transition: StateTransition) -> str:
        with self._connect(immediate=True) as conn:
            conn.execute(
                """INSERT INTO state_transitions
                   (id, entity_type, entity_id, from_status, to_status, actor_id, metadata,
                    created_at, seq)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?,
                           (SELECT COALESCE(MAX(seq), 0) + 1 FROM state_transitions))""",
                (
                    transition.id,
                    transition.entity_type,
                    transition.entity_id,
                    transition.from_status,
                    transition.to_status,
                    transition.actor_id,
                    self._to_json(transition.metadata),
                    format_datetime(transition.created_at),
                ),
            )
        return transition.id

    def get_transitions(self, entity_type: str, entity_id: str) -> List[StateTransition]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM state_transitions WHERE entity_type = ? AND entity_id = ?
                   ORDER BY seq ASC""",
                (entity_type, entity_id),
            ).fetchall()
        result = []
        for r in rows:
            data = dict(r)
            data["metadata"] = self._from_json(data.get("metadata")) or {}
            result.append(StateTransition.from_dict(data))
        return result

    # === Notifications ===

    def save_notification(self, notification: Notification) -> str:
        with self._connect(immediate=True) as conn:
            conn.execute(
                """INSERT INTO notifications
                   (id, recipient_id, type, title, message, job_id, escrow_id, read, created_at, seq)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?,
                           (SELECT COALESCE(MAX(seq), 0) + 1 FROM notifications))""",
                (
                    notification.id,
                    notification.recipient_id,
                    notification.type,
                    notification.title,
                    notification.message,
                    notification.job_id,
                    notification.escrow_id,
                    int(notification.read),
                    format_datetime(notification.created_at),
                ),
            )
        return notification.id

    def list_notifications(
        self,
        recipient_id: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> List[Notification]:
        query = "SELECT * FROM notifications WHERE recipient_id = ?"
        if unread_only:
            query += " AND read = 0"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY seq DESC LIMIT ?", (recipient_id, limit)).fetchall()
        return [Notification.from_dict({**dict(r), "read": bool(r["read"])}) for r in rows]

    def mark_notification_read(self, notification_id: str, recipient_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE notifications SET read = 1 WHERE id = ? AND recipient_id = ?",
                (notification_id, recipient_id),
            )
            return cursor.rowcount > 0
