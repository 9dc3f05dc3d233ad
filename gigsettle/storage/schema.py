"""Database schema for gigsettle SQLite storage.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

ALLOWED_TABLES = frozenset(
    {
        "jobs",
        "proposals",
        "escrows",
        "escrow_milestones",
        "escrow_signatures",
        "disputes",
        "state_transitions",
        "notifications",
        "schema_version",
    }
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection."""
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    employer_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    content_hash TEXT,
    budget_min INTEGER NOT NULL,
    budget_max INTEGER NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USDM',
    status TEXT NOT NULL DEFAULT 'open',
    milestone_plan TEXT,  -- JSON list of {percentage, description}
    accepted_proposal_id TEXT,
    escrow_id TEXT,
    close_reason TEXT,
    created_at TEXT,
    updated_at TEXT,
    closed_at TEXT,
    version INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_employer ON jobs(employer_id);

CREATE TABLE IF NOT EXISTS proposals (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(id),
    bidder_id TEXT NOT NULL,
    amount INTEGER NOT NULL,
    duration_days INTEGER NOT NULL,
    cover_letter TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT,
    status_changed_at TEXT,
    version INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_proposals_job ON proposals(job_id);
CREATE INDEX IF NOT EXISTS idx_proposals_bidder ON proposals(bidder_id);
-- One live bid per bidder per job
CREATE UNIQUE INDEX IF NOT EXISTS idx_proposals_active_bid
    ON proposals(job_id, bidder_id) WHERE status IN ('pending', 'accepted');

CREATE TABLE IF NOT EXISTS escrows (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL UNIQUE REFERENCES jobs(id),
    proposal_id TEXT NOT NULL REFERENCES proposals(id),
    employer_id TEXT NOT NULL,
    freelancer_id TEXT NOT NULL,
    arbiter_id TEXT NOT NULL,
    total_amount INTEGER NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USDM',
    asset_id TEXT,
    status TEXT NOT NULL DEFAULT 'created',
    threshold INTEGER NOT NULL DEFAULT 2,
    pending_action TEXT,
    current_milestone INTEGER NOT NULL DEFAULT 0,
    submission TEXT,  -- JSON in-flight ledger submission marker
    lock_tx_ref TEXT,
    release_tx_refs TEXT,  -- JSON list
    refund_tx_ref TEXT,
    created_at TEXT,
    locked_at TEXT,
    released_at TEXT,
    refunded_at TEXT,
    disputed_at TEXT,
    updated_at TEXT,
    version INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_escrows_status ON escrows(status);
CREATE INDEX IF NOT EXISTS idx_escrows_proposal ON escrows(proposal_id);

CREATE TABLE IF NOT EXISTS escrow_milestones (
    escrow_id TEXT NOT NULL REFERENCES escrows(id),
    idx INTEGER NOT NULL,
    amount INTEGER NOT NULL,
    percentage TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    deadline TEXT NOT NULL,
    released INTEGER NOT NULL DEFAULT 0,
    release_tx_ref TEXT,
    released_at TEXT,
    auto_released INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (escrow_id, idx)
);

CREATE TABLE IF NOT EXISTS escrow_signatures (
    escrow_id TEXT NOT NULL REFERENCES escrows(id),
    party TEXT NOT NULL,
    PRIMARY KEY (escrow_id, party)
);

CREATE TABLE IF NOT EXISTS disputes (
    id TEXT PRIMARY KEY,
    escrow_id TEXT NOT NULL UNIQUE REFERENCES escrows(id),
    raised_by TEXT NOT NULL,
    raised_by_role TEXT NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    arbiter_id TEXT NOT NULL,
    decision TEXT NOT NULL DEFAULT 'pending',
    resolution_note TEXT,
    created_at TEXT,
    resolved_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_disputes_arbiter ON disputes(arbiter_id, decision);

CREATE TABLE IF NOT EXISTS state_transitions (
    id TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    actor_id TEXT,
    metadata TEXT,  -- JSON
    created_at TEXT,
    seq INTEGER
);
CREATE INDEX IF NOT EXISTS idx_transitions_entity ON state_transitions(entity_type, entity_id);

CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    recipient_id TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    message TEXT NOT NULL DEFAULT '',
    job_id TEXT,
    escrow_id TEXT,
    read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    seq INTEGER
);
CREATE INDEX IF NOT EXISTS idx_notifications_recipient ON notifications(recipient_id, read);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables if needed and record the schema version."""
    conn.executescript(SCHEMA)
    row = conn.execute("SELECT version FROM schema_version").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        logger.debug(f"Initialized settlement schema v{SCHEMA_VERSION}")
    elif row[0] != SCHEMA_VERSION:
        logger.info(f"Updating schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
