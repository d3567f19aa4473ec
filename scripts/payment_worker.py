#!/usr/bin/env python3
"""
Payment worker from the command line (cron or manual runs).
Run from the project root: python -m scripts.payment_worker process
or: PYTHONPATH=. python scripts/payment_worker.py retry-failed

Exit code 1 when the worker did not run (another instance holds the lease).
"""
import argparse
import os
import sys
from datetime import datetime, timedelta

# project root on PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.config import settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal
from app.services.locks.service import WorkerLockService
from app.services.payment_worker.service import PaymentWorkerService

RULE = "=" * 43


def _print_stats(title: str, stats: dict) -> None:
    print(title)
    print(f"  PENDING:         {stats['pending']}")
    print(f"  QUEUED:          {stats['queued']}")
    print(f"  PROCESSING:      {stats['processing']}")
    print(f"  PAID (today):    {stats['paid_today']}")
    print(f"  FAILED (today):  {stats['failed_today']}")
    print(f"  API_RETRY:       {stats['api_retry']}")


def cmd_process(svc: PaymentWorkerService, args: argparse.Namespace) -> int:
    print(RULE)
    print(f"Payment Worker Started: {datetime.now():%Y-%m-%d %H:%M:%S}")
    print(RULE)
    _print_stats("Status before processing:", svc.stats())
    print()
    try:
        result = svc.run_once()
    finally:
        svc.reconnection.close()
    if not result.ran:
        print("ERROR: another worker instance is running")
        return 1
    print(
        f"Processed {result.processed}: paid={result.succeeded} "
        f"api_retry={result.retried} failed={result.failed}"
    )
    print()
    _print_stats("Status after processing:", svc.stats())
    print(RULE)
    print(f"Payment Worker Completed: {datetime.now():%Y-%m-%d %H:%M:%S}")
    print(RULE)
    return 0


def cmd_retry_failed(svc: PaymentWorkerService, args: argparse.Namespace) -> int:
    print(f"Re-admitted {svc.retry_failed()} payment(s) from API_RETRY to QUEUED")
    return 0


def cmd_stats(svc: PaymentWorkerService, args: argparse.Namespace) -> int:
    _print_stats("Payment worker status:", svc.stats())
    return 0


def cmd_cleanup_locks(svc: PaymentWorkerService, args: argparse.Namespace) -> int:
    expired = WorkerLockService(svc.db).expire_stale(max_age=timedelta(minutes=args.max_age_minutes))
    print(f"Expired {expired} stale lock(s) older than {args.max_age_minutes} min")
    return 0


def cmd_requeue_orphaned(svc: PaymentWorkerService, args: argparse.Namespace) -> int:
    count = svc.requeue_orphaned(timedelta(minutes=args.max_age_minutes))
    if count is None:
        print("ERROR: another worker instance is running")
        return 1
    print(f"Requeued {count} orphaned PROCESSING payment(s)")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Payment settlement worker")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("process", help="process queued payments").set_defaults(func=cmd_process)
    sub.add_parser("retry-failed", help="re-admit API_RETRY payments").set_defaults(func=cmd_retry_failed)
    sub.add_parser("stats", help="print status counts").set_defaults(func=cmd_stats)
    cleanup = sub.add_parser("cleanup-locks", help="expire stale worker locks")
    cleanup.add_argument("--max-age-minutes", type=int, default=settings.payment_worker_lock_max_age_minutes)
    cleanup.set_defaults(func=cmd_cleanup_locks)
    orphans = sub.add_parser("requeue-orphaned", help="requeue stuck PROCESSING payments")
    orphans.add_argument("--max-age-minutes", type=int, default=settings.payment_worker_orphan_minutes)
    orphans.set_defaults(func=cmd_requeue_orphaned)
    args = parser.parse_args(argv)

    configure_logging()
    db = SessionLocal()
    try:
        return args.func(PaymentWorkerService(db), args)
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
