"""
gigsettle CLI - operator view of the settlement store.

Usage:
    gigsettle job list [--status S] [--employer ID] [--json]
    gigsettle job show JOB_ID [--json]
    gigsettle escrow list [--job ID] [--party ID] [--status S] [--json]
    gigsettle escrow show ESCROW_ID [--json]
    gigsettle escrow transitions ESCROW_ID [--json]
    gigsettle escrow reconcile ESCROW_ID [--json]
    gigsettle dispute list [--arbiter ID] [--all] [--json]
    gigsettle notifications RECIPIENT_ID [--unread] [--json]
    gigsettle sweep [--dry-run] [--json]
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from gigsettle import SettlementEngine
from gigsettle.errors import SettlementError

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _format_amount(amount: int, currency: str) -> str:
    return f"{amount:,} {currency}"


def cmd_job(args, engine: SettlementEngine):
    """Handle job subcommands."""
    if args.job_action == "list":
        jobs = engine.jobs.list_jobs(status=args.status, employer_id=args.employer, limit=args.limit)
        if args.json:
            _print_json([j.to_dict() for j in jobs])
            return
        if not jobs:
            print("No jobs found.")
            return
        print(f"Jobs ({len(jobs)}):")
        for job in jobs:
            budget = f"{job.budget_min:,}-{job.budget_max:,} {job.currency}"
            print(f"  [{job.status:<11}] {job.id[:8]}  {job.title[:40]:<40}  {budget}")

    elif args.job_action == "show":
        job = engine.jobs.get_job(args.job_id)
        proposals = engine.proposals.list_proposals(job_id=job.id)
        if args.json:
            data = job.to_dict()
            data["proposals"] = [p.to_dict() for p in proposals]
            _print_json(data)
            return
        print(f"Job {job.id}")
        print(f"  Title:    {job.title}")
        print(f"  Status:   {job.status}")
        print(f"  Employer: {job.employer_id}")
        print(f"  Budget:   {job.budget_min:,}-{job.budget_max:,} {job.currency}")
        if job.accepted_proposal_id:
            print(f"  Accepted: {job.accepted_proposal_id}")
        if job.escrow_id:
            print(f"  Escrow:   {job.escrow_id}")
        if job.close_reason:
            print(f"  Reason:   {job.close_reason}")
        if proposals:
            print(f"  Proposals ({len(proposals)}):")
            for p in proposals:
                print(f"    [{p.status:<9}] {p.id[:8]}  {p.bidder_id}  {_format_amount(p.amount, job.currency)}")


def cmd_escrow(args, engine: SettlementEngine):
    """Handle escrow subcommands."""
    if args.escrow_action == "list":
        escrows = engine.escrows.find_escrows(
            job_id=args.job, party_id=args.party, status=args.status, limit=args.limit
        )
        if args.json:
            _print_json([e.to_dict() for e in escrows])
            return
        if not escrows:
            print("No escrows found.")
            return
        print(f"Escrows ({len(escrows)}):")
        for e in escrows:
            flag = " *in flight*" if e.submission else ""
            print(
                f"  [{e.status:<8}] {e.id[:8]}  job={e.job_id[:8]}  "
                f"{_format_amount(e.released_amount, e.currency)} / "
                f"{_format_amount(e.total_amount, e.currency)}{flag}"
            )

    elif args.escrow_action == "show":
        escrow = engine.escrows.get_escrow(args.escrow_id)
        if args.json:
            _print_json(escrow.to_dict())
            return
        print(f"Escrow {escrow.id} [{escrow.status}]")
        print(f"  Job:        {escrow.job_id}")
        print(f"  Employer:   {escrow.employer_id}")
        print(f"  Freelancer: {escrow.freelancer_id}")
        print(f"  Arbiter:    {escrow.arbiter_id}")
        print(f"  Total:      {_format_amount(escrow.total_amount, escrow.currency)}")
        print(f"  Released:   {_format_amount(escrow.released_amount, escrow.currency)}")
        print(f"  Threshold:  {len(escrow.signatures)}/{escrow.threshold} for {escrow.pending_action or '-'}")
        if escrow.submission:
            s = escrow.submission
            print(f"  In flight:  {s.ledger_action} {s.amount:,} tx={s.tx_ref or '(not submitted)'}")
        print("  Milestones:")
        for m in escrow.milestones:
            mark = "x" if m.released else " "
            how = " (auto)" if m.auto_released else ""
            print(
                f"    [{mark}] #{m.index} {_format_amount(m.amount, escrow.currency)} "
                f"due {m.deadline.isoformat()}{how}"
            )
        if escrow.dispute:
            d = escrow.dispute
            print(f"  Dispute:    {d.decision} (raised by {d.raised_by_role}: {d.reason})")

    elif args.escrow_action == "transitions":
        transitions = engine.escrows.get_transitions(args.escrow_id)
        if args.json:
            _print_json([t.to_dict() for t in transitions])
            return
        for t in transitions:
            actor = f" by {t.actor_id}" if t.actor_id else ""
            print(f"  {t.created_at.isoformat()}  {t.from_status or '-'} -> {t.to_status}{actor}")

    elif args.escrow_action == "reconcile":
        escrow = engine.escrows.reconcile_submission(args.escrow_id)
        if args.json:
            _print_json(escrow.to_dict())
            return
        state = "still in flight" if escrow.submission else "settled"
        print(f"Escrow {escrow.id} [{escrow.status}] {state}")


def cmd_dispute(args, engine: SettlementEngine):
    """List disputes."""
    if args.all:
        disputes = engine.disputes.list_disputes(arbiter_id=args.arbiter)
    else:
        disputes = engine.disputes.list_open_disputes(arbiter_id=args.arbiter)
    if args.json:
        _print_json([d.to_dict() for d in disputes])
        return
    if not disputes:
        print("No disputes found.")
        return
    for d in disputes:
        print(f"  [{d.decision:<7}] {d.id[:8]}  escrow={d.escrow_id[:8]}  by {d.raised_by_role}: {d.reason[:50]}")


def cmd_notifications(args, engine: SettlementEngine):
    notifications = engine.notifier.list_for(args.recipient_id, unread_only=args.unread, limit=args.limit)
    if args.json:
        _print_json([n.to_dict() for n in notifications])
        return
    if not notifications:
        print("No notifications.")
        return
    for n in notifications:
        dot = " " if n.read else "*"
        print(f"  {dot} {n.created_at.isoformat()}  {n.title}: {n.message}")


def cmd_sweep(args, engine: SettlementEngine):
    """Run one deadline sweep pass."""
    report = engine.sweeper.run_once(dry_run=args.dry_run)
    if args.json:
        _print_json(report.to_dict())
        return
    prefix = "Would auto-release" if args.dry_run else "Auto-released"
    print(f"Scanned {report.escrows_scanned} escrow(s)")
    print(f"  {prefix}: {len(report.auto_released)} milestone(s)")
    for escrow_id, index in report.auto_released:
        print(f"    {escrow_id} #{index}")
    print(f"  Reconciled: {len(report.reconciled)}  Stale cleared: {len(report.stale_cleared)}")
    print(f"  Still pending: {len(report.still_pending)}  Jobs repaired: {len(report.jobs_repaired)}")
    for error in report.errors:
        print(f"  ⚠ {error}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gigsettle",
        description="Escrow and milestone settlement engine",
    )
    parser.add_argument("--db", help="SQLite database path (default: ~/.gigsettle/settlement.db)")
    parser.add_argument("--storage", choices=["sqlite", "memory"], default="sqlite")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # job
    p_job = subparsers.add_parser("job", help="Inspect jobs")
    job_sub = p_job.add_subparsers(dest="job_action", required=True)
    job_list = job_sub.add_parser("list", help="List jobs")
    job_list.add_argument("--status", "-s", help="Filter by status")
    job_list.add_argument("--employer", "-e", help="Filter by employer")
    job_list.add_argument("--limit", "-l", type=int, default=50)
    job_list.add_argument("--json", "-j", action="store_true")
    job_show = job_sub.add_parser("show", help="Show a job and its proposals")
    job_show.add_argument("job_id")
    job_show.add_argument("--json", "-j", action="store_true")

    # escrow
    p_escrow = subparsers.add_parser("escrow", help="Inspect escrows")
    escrow_sub = p_escrow.add_subparsers(dest="escrow_action", required=True)
    escrow_list = escrow_sub.add_parser("list", help="List escrows")
    escrow_list.add_argument("--job", help="Filter by job")
    escrow_list.add_argument("--party", "-p", help="Filter by party identity")
    escrow_list.add_argument("--status", "-s", help="Filter by status")
    escrow_list.add_argument("--limit", "-l", type=int, default=50)
    escrow_list.add_argument("--json", "-j", action="store_true")
    for name, help_text in (
        ("show", "Show an escrow"),
        ("transitions", "Show an escrow's state history"),
        ("reconcile", "Re-check an in-flight ledger submission"),
    ):
        p = escrow_sub.add_parser(name, help=help_text)
        p.add_argument("escrow_id")
        p.add_argument("--json", "-j", action="store_true")

    # dispute
    p_dispute = subparsers.add_parser("dispute", help="Inspect disputes")
    dispute_sub = p_dispute.add_subparsers(dest="dispute_action", required=True)
    dispute_list = dispute_sub.add_parser("list", help="List disputes (open only by default)")
    dispute_list.add_argument("--arbiter", help="Filter by arbiter")
    dispute_list.add_argument("--all", action="store_true", help="Include resolved disputes")
    dispute_list.add_argument("--json", "-j", action="store_true")

    # notifications
    p_notify = subparsers.add_parser("notifications", help="List a party's notifications")
    p_notify.add_argument("recipient_id")
    p_notify.add_argument("--unread", "-u", action="store_true")
    p_notify.add_argument("--limit", "-l", type=int, default=20)
    p_notify.add_argument("--json", "-j", action="store_true")

    # sweep
    p_sweep = subparsers.add_parser("sweep", help="Run one deadline sweep pass")
    p_sweep.add_argument("--dry-run", "-n", action="store_true", help="Report without changing anything")
    p_sweep.add_argument("--json", "-j", action="store_true")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        logging.getLogger("gigsettle").setLevel(logging.DEBUG)

    try:
        engine = SettlementEngine.from_env(
            backend=args.storage, db_path=Path(args.db) if args.db else None
        )

        if args.command == "job":
            cmd_job(args, engine)
        elif args.command == "escrow":
            cmd_escrow(args, engine)
        elif args.command == "dispute":
            cmd_dispute(args, engine)
        elif args.command == "notifications":
            cmd_notifications(args, engine)
        elif args.command == "sweep":
            cmd_sweep(args, engine)
    except SettlementError as e:
        logger.error(f"{e.kind.value}: {e.message}")
        sys.exit(1)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
