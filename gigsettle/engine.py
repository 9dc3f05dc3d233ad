"""
SettlementEngine - wires storage, ledger and configuration into the
settlement services.

    engine = SettlementEngine(storage=InMemoryStorage(), ledger=InMemoryLedgerAnchor())
    job = engine.jobs.create_job("emp-1", "Logo", "...", 10_000, 50_000)
    proposal = engine.proposals.submit_proposal(job.id, "dev-1", 40_000, 14)
    engine.proposals.accept_proposal(proposal.id, actor_id="emp-1")
    escrow = engine.escrows.create_escrow(job.id, proposal.id, arbiter_id="arb-1")
"""

import logging
import os
from pathlib import Path
from typing import Any, Callable, Optional

from gigsettle.config import SettlementConfig
from gigsettle.disputes import DisputeArbiter
from gigsettle.escrow import EscrowStateMachine
from gigsettle.jobs import JobRegistry
from gigsettle.ledger import HttpLedgerAnchor, InMemoryLedgerAnchor, LedgerAnchor
from gigsettle.milestones import MilestoneScheduler
from gigsettle.notifications import AuditTrail, Notifier
from gigsettle.proposals import ProposalLedger
from gigsettle.signatures import SignatureCollector
from gigsettle.storage import SettlementStorage, SQLiteStorage, get_storage
from gigsettle.sweep import DeadlineSweeper
from gigsettle.types import utc_now

logger = logging.getLogger(__name__)


class SettlementEngine:
    """One set of settlement services sharing a storage backend and ledger."""

    def __init__(
        self,
        storage: Optional[SettlementStorage] = None,
        ledger: Optional[LedgerAnchor] = None,
        config: Optional[SettlementConfig] = None,
        now_fn: Callable = utc_now,
    ):
        self.config = config or SettlementConfig()
        self.storage = storage if storage is not None else SQLiteStorage()
        self.ledger = ledger if ledger is not None else InMemoryLedgerAnchor()
        self.now_fn = now_fn

        self.audit = AuditTrail(self.storage, now_fn)
        self.notifier = Notifier(self.storage, now_fn)
        self.scheduler = MilestoneScheduler(self.config)
        self.signatures = SignatureCollector(self.storage, self.config, now_fn)
        self.jobs = JobRegistry(self.storage, self.config, self.audit, self.notifier, now_fn)
        self.proposals = ProposalLedger(
            self.storage, self.jobs, self.config, self.audit, self.notifier, now_fn
        )
        self.escrows = EscrowStateMachine(
            self.storage,
            self.ledger,
            self.jobs,
            scheduler=self.scheduler,
            signatures=self.signatures,
            config=self.config,
            audit=self.audit,
            notifier=self.notifier,
            now_fn=now_fn,
        )
        self.disputes = DisputeArbiter(self.escrows)
        self.sweeper = DeadlineSweeper(self.escrows, self.jobs, now_fn)

        logger.debug(
            f"SettlementEngine ready storage={type(self.storage).__name__} "
            f"ledger={type(self.ledger).__name__}"
        )

    @classmethod
    def from_env(
        cls,
        backend: Optional[str] = None,
        db_path: Optional[Path] = None,
        supabase_client: Optional[Any] = None,
        ledger: Optional[LedgerAnchor] = None,
    ) -> "SettlementEngine":
        """Build an engine from GIGSETTLE_* environment variables.

        GIGSETTLE_STORAGE picks the backend (sqlite by default) and
        GIGSETTLE_LEDGER_URL / GIGSETTLE_LEDGER_TOKEN an HTTP ledger anchor;
        without a URL the in-memory anchor is used.
        """
        config = SettlementConfig.from_env()
        backend = backend or os.environ.get("GIGSETTLE_STORAGE", "sqlite")
        if db_path is None and os.environ.get("GIGSETTLE_DB_PATH"):
            db_path = Path(os.environ["GIGSETTLE_DB_PATH"])
        storage = get_storage(backend, db_path=db_path, supabase_client=supabase_client)
        if ledger is None:
            url = os.environ.get("GIGSETTLE_LEDGER_URL")
            if url:
                ledger = HttpLedgerAnchor(url, auth_token=os.environ.get("GIGSETTLE_LEDGER_TOKEN"))
            else:
                logger.warning("GIGSETTLE_LEDGER_URL not set; using the in-memory ledger anchor")
                ledger = InMemoryLedgerAnchor()
        return cls(storage=storage, ledger=ledger, config=config)
