"""
Deadline sweep.

One pass over the non-terminal escrows, each handled independently:

1. reconcile an in-flight ledger submission left by a timeout or crash,
2. auto-release LOCKED milestones whose deadline has passed,
3. repair jobs whose escrow is terminal while the job is not.

Every step re-reads state and is a no-op once done, so a pass interrupted
halfway is safe to run again.
"""

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from gigsettle.errors import (
    LedgerRejected,
    LedgerTimeout,
    SettlementError,
    StateError,
)
from gigsettle.escrow import EscrowStateMachine
from gigsettle.jobs import JobRegistry
from gigsettle.types import (
    EscrowStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

PAGE_SIZE = 200

ACTIVE_STATUSES = [EscrowStatus.CREATED, EscrowStatus.LOCKED, EscrowStatus.DISPUTED]
SETTLED_STATUSES = [EscrowStatus.RELEASED, EscrowStatus.REFUNDED]


@dataclass
class SweepReport:
    """What one sweep pass did (or, on a dry run, would do)."""

    started_at: datetime
    dry_run: bool = False
    escrows_scanned: int = 0
    reconciled: List[str] = field(default_factory=list)
    stale_cleared: List[str] = field(default_factory=list)
    auto_released: List[Tuple[str, int]] = field(default_factory=list)
    still_pending: List[str] = field(default_factory=list)
    jobs_repaired: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        data["auto_released"] = [
            {"escrow_id": escrow_id, "milestone_index": index}
            for escrow_id, index in self.auto_released
        ]
        return data


class DeadlineSweeper:
    """Periodic maintenance over escrows: reconcile, auto-release, repair."""

    def __init__(
        self,
        escrows: EscrowStateMachine,
        jobs: JobRegistry,
        now_fn: Callable = utc_now,
    ):
        self.escrows = escrows
        self.jobs = jobs
        self.storage = escrows.storage
        self.config = escrows.config
        self._now = now_fn

    def _escrow_ids(self, statuses) -> List[str]:
        # Snapshot ids first; statuses change under us while the pass runs
        ids: List[str] = []
        offset = 0
        while True:
            page = self.storage.list_escrows(status=statuses, limit=PAGE_SIZE, offset=offset)
            ids.extend(e.id for e in page)
            if len(page) < PAGE_SIZE:
                return ids
            offset += PAGE_SIZE

    def run_once(self, now: Optional[datetime] = None, dry_run: bool = False) -> SweepReport:
        now = now or self._now()
        report = SweepReport(started_at=now, dry_run=dry_run)

        for escrow_id in self._escrow_ids(ACTIVE_STATUSES):
            report.escrows_scanned += 1
            try:
                self._sweep_escrow(escrow_id, now, dry_run, report)
            except SettlementError as e:
                report.errors.append(f"{escrow_id}: {e.message}")
                logger.warning(f"Sweep: escrow {escrow_id} skipped: {e}")

        for escrow_id in self._escrow_ids(SETTLED_STATUSES):
            try:
                self._repair_job(escrow_id, dry_run, report)
            except SettlementError as e:
                report.errors.append(f"{escrow_id}: {e.message}")
                logger.warning(f"Sweep: job repair for escrow {escrow_id} failed: {e}")

        report.finished_at = self._now()
        logger.info(
            f"Sweep{' (dry run)' if dry_run else ''}: scanned={report.escrows_scanned} "
            f"reconciled={len(report.reconciled)} stale={len(report.stale_cleared)} "
            f"auto_released={len(report.auto_released)} pending={len(report.still_pending)} "
            f"jobs_repaired={len(report.jobs_repaired)} errors={len(report.errors)}"
        )
        return report

    def _sweep_escrow(self, escrow_id: str, now: datetime, dry_run: bool, report: SweepReport) -> None:
        escrow = self.escrows.get_escrow(escrow_id)

        marker = escrow.submission
        if marker is not None:
            if dry_run:
                report.still_pending.append(escrow_id)
                return
            escrow = self.escrows.reconcile_submission(escrow_id, now)
            if escrow.submission is not None:
                report.still_pending.append(escrow_id)
                return
            if marker.tx_ref:
                report.reconciled.append(escrow_id)
            else:
                report.stale_cleared.append(escrow_id)

        if escrow.status != EscrowStatus.LOCKED.value:
            return
        for milestone in self.escrows.scheduler.due_for_auto_release(escrow, now):
            if dry_run:
                report.auto_released.append((escrow_id, milestone.index))
                continue
            try:
                self.escrows.release_milestone(escrow_id, milestone.index, now=now)
            except LedgerTimeout:
                report.still_pending.append(escrow_id)
                return
            except LedgerRejected as e:
                report.errors.append(f"{escrow_id}: {e.message}")
                return
            except StateError as e:
                # Threshold not met under the freelancer-claim policy, or a
                # concurrent request got there first
                logger.debug(f"Sweep: escrow {escrow_id} milestone {milestone.index} not released: {e}")
                return
            report.auto_released.append((escrow_id, milestone.index))
            logger.info(f"Sweep: auto-released escrow {escrow_id} milestone {milestone.index}")

    def _repair_job(self, escrow_id: str, dry_run: bool, report: SweepReport) -> None:
        escrow = self.escrows.get_escrow(escrow_id)
        job = self.jobs.get_job(escrow.job_id)
        if job.is_terminal:
            return
        if not dry_run:
            if escrow.status == EscrowStatus.RELEASED.value:
                self.jobs.mark_completed(job.id)
            else:
                self.jobs.mark_cancelled(job.id, reason="escrow refunded")
        report.jobs_repaired.append(job.id)
        logger.info(f"Sweep: job {job.id} repaired to match escrow {escrow_id} ({escrow.status})")

    def run_forever(
        self,
        interval: Optional[float] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """Run a pass every interval seconds until stop_event is set."""
        interval = interval or self.config.sweep_interval_seconds
        stop_event = stop_event or threading.Event()
        logger.info(f"Deadline sweeper started (interval={interval}s)")
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.exception(f"Sweep pass failed: {e}")
            stop_event.wait(interval)
        logger.info("Deadline sweeper stopped")

    def start_background(self, interval: Optional[float] = None) -> Tuple[threading.Thread, threading.Event]:
        stop_event = threading.Event()
        thread = threading.Thread(
            target=self.run_forever,
            args=(interval, stop_event),
            name="gigsettle-sweeper",
            daemon=True,
        )
        thread.start()
        return thread, stop_event
