"""
Operator commands for the sync queue.

Usage:
    python -m syncbridge.scripts.queue_cli queue stats [--format=table|json|csv]
    python -m syncbridge.scripts.queue_cli queue list [--page=N] [--per-page=N] [--status=failed]
    python -m syncbridge.scripts.queue_cli queue retry [--yes]
    python -m syncbridge.scripts.queue_cli queue cleanup [--days=7]
    python -m syncbridge.scripts.queue_cli queue cancel <job_id>
    python -m syncbridge.scripts.queue_cli reconcile <module> <entity_type> [--fix] [--yes]
    python -m syncbridge.scripts.queue_cli sync run [--module=NAME] [--dry-run]
    python -m syncbridge.scripts.queue_cli health
    python -m syncbridge.scripts.queue_cli db init

Exit code 0 on success, 1 on failure or when a confirmation is declined.
"""

import argparse
import json
import sys

import pandas as pd

from syncbridge.config import SyncSettings
from syncbridge.errors import UnknownModuleError
from syncbridge.logging_config import get_logger

logger = get_logger(__name__)

FORMATS = ("table", "json", "csv")
LIST_COLUMNS = ["id", "module", "entity_type", "direction", "action", "local_id", "remote_id",
                "status", "attempts", "scheduled_at", "last_error"]


def _confirm(prompt, assume_yes=False):
    if assume_yes:
        return True
    try:
        answer = input(f"{prompt} [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _print_rows(rows, columns, fmt):
    if fmt == "json":
        print(json.dumps(rows, indent=2, default=str))
        return
    df = pd.DataFrame(rows, columns=columns)
    if fmt == "csv":
        print(df.to_csv(index=False), end="")
    elif df.empty:
        print("(no rows)")
    else:
        print(df.to_string(index=False))


def _repo(app):
    from syncbridge.services.queue_repository import SyncQueueRepository

    settings = SyncSettings.from_config(app.config)
    return SyncQueueRepository(max_payload_bytes=settings.max_payload_bytes, default_max_attempts=settings.max_attempts)


# ==============================================================================
# queue
# ==============================================================================

def cmd_queue_stats(app, args):
    stats = _repo(app).get_stats(use_cache=False)
    if args.format == "json":
        print(json.dumps(stats, indent=2, default=str))
        return 0
    rows = [{"metric": key, "value": value} for key, value in stats.items()]
    _print_rows(rows, ["metric", "value"], args.format)
    return 0


def cmd_queue_list(app, args):
    result = _repo(app).list_jobs(page=args.page, per_page=args.per_page, status=args.status, module=args.module)
    if args.format == "json":
        print(json.dumps(result, indent=2, default=str))
        return 0
    rows = [{col: item.get(col) for col in LIST_COLUMNS} for item in result["items"]]
    _print_rows(rows, LIST_COLUMNS, args.format)
    if args.format == "table":
        print(f"\nPage {result['page']} of {result['pages']} ({result['total']} jobs)")
    return 0


def cmd_queue_retry(app, args):
    repo = _repo(app)
    failed = repo.count_by_status()["failed"]
    if failed == 0:
        print("[INFO] No failed jobs to retry.")
        return 0
    if not _confirm(f"Re-queue {failed} failed job(s)?", args.yes):
        print("Aborted.")
        return 1
    count = repo.retry_failed()
    print(f"[SUCCESS] Re-queued {count} failed job(s).")
    return 0


def cmd_queue_cleanup(app, args):
    if args.days < 0:
        print("[ERROR] --days must be zero or positive")
        return 1
    deleted = _repo(app).cleanup(args.days)
    print(f"[SUCCESS] Deleted {deleted} finished job(s) older than {args.days} day(s).")
    return 0


def cmd_queue_cancel(app, args):
    repo = _repo(app)
    if repo.cancel(args.job_id):
        print(f"[SUCCESS] Job {args.job_id} cancelled.")
        return 0
    job = repo.get(args.job_id)
    if job is None:
        print(f"[ERROR] Job {args.job_id} not found.")
    else:
        print(f"[ERROR] Job {args.job_id} is {job.status}; only pending jobs can be cancelled.")
    return 1


# ==============================================================================
# reconcile / sync / health
# ==============================================================================

def cmd_reconcile(app, args):
    from syncbridge.services.reconciler import Reconciler

    extension = app.extensions["syncbridge"]
    if args.fix and not _confirm(
        f"Remove orphaned mappings for {args.module}/{args.entity_type}?", args.yes
    ):
        print("Aborted.")
        return 1

    reconciler = Reconciler(extension["registry"].resolver(), entity_map=extension["entity_map"])
    try:
        result = reconciler.reconcile(args.module, args.entity_type, fix=args.fix)
    except UnknownModuleError as e:
        print(f"[ERROR] {e}")
        return 1

    print(f"Checked: {result['checked']}")
    print(f"Orphaned: {len(result['orphaned'])}")
    if result["orphaned"]:
        _print_rows(result["orphaned"], ["local_id", "remote_id"], "table")
    if args.fix:
        print(f"Fixed: {result['fixed']}")
    if result["aborted"]:
        print(f"[ERROR] Reconciliation aborted: {result.get('error')}")
        return 1
    return 0


def cmd_sync_run(app, args):
    from syncbridge.services.sync_engine import build_sync_engine

    engine = build_sync_engine(app)
    engine.set_dry_run(args.dry_run)
    processed = engine.process(module=args.module)
    label = "[dry-run] " if args.dry_run else ""
    print(f"{label}Processed {processed} job(s).")
    return 0


def cmd_health(app, args):
    from syncbridge.services.health import HEALTHY, get_health

    result = get_health(
        queue_repo=_repo(app),
        registry=app.extensions["syncbridge"]["registry"],
        failed_ceiling=app.config.get("SYNC_FAILED_CEILING") or 100,
    )
    print(json.dumps(result, indent=2, default=str))
    return 0 if result["status"] == HEALTHY else 1


def cmd_db_init(app, args):
    """Create any missing tables. Existing tables are left alone."""
    from syncbridge.models import db

    db.create_all()
    print("[SUCCESS] Tables created.")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog="queue_cli", description="Sync queue operations")
    groups = parser.add_subparsers(dest="group", required=True)

    queue = groups.add_parser("queue", help="Inspect and manage queued jobs")
    queue_cmds = queue.add_subparsers(dest="command", required=True)

    stats = queue_cmds.add_parser("stats", help="Job counts per status")
    stats.add_argument("--format", choices=FORMATS, default="table")
    stats.set_defaults(handler=cmd_queue_stats)

    list_ = queue_cmds.add_parser("list", help="List jobs, newest first")
    list_.add_argument("--page", type=int, default=1)
    list_.add_argument("--per-page", type=int, default=50)
    list_.add_argument("--status", choices=["pending", "processing", "completed", "failed", "cancelled"])
    list_.add_argument("--module")
    list_.add_argument("--format", choices=FORMATS, default="table")
    list_.set_defaults(handler=cmd_queue_list)

    retry = queue_cmds.add_parser("retry", help="Re-queue all failed jobs")
    retry.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    retry.set_defaults(handler=cmd_queue_retry)

    cleanup = queue_cmds.add_parser("cleanup", help="Delete old finished jobs")
    cleanup.add_argument("--days", type=int, default=7)
    cleanup.set_defaults(handler=cmd_queue_cleanup)

    cancel = queue_cmds.add_parser("cancel", help="Cancel a pending job")
    cancel.add_argument("job_id", type=int)
    cancel.set_defaults(handler=cmd_queue_cancel)

    reconcile = groups.add_parser("reconcile", help="Find mappings whose remote record is gone")
    reconcile.add_argument("module")
    reconcile.add_argument("entity_type")
    reconcile.add_argument("--fix", action="store_true", help="Remove orphaned mappings")
    reconcile.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    reconcile.set_defaults(handler=cmd_reconcile)

    sync = groups.add_parser("sync", help="Run the queue processor")
    sync_cmds = sync.add_subparsers(dest="command", required=True)
    run = sync_cmds.add_parser("run", help="Process due jobs once")
    run.add_argument("--module", help="Process one module under its own lock")
    run.add_argument("--dry-run", action="store_true", help="Claim and log jobs without remote calls")
    run.set_defaults(handler=cmd_sync_run)

    health = groups.add_parser("health", help="Print queue health; exit 1 when degraded")
    health.set_defaults(handler=cmd_health)

    database = groups.add_parser("db", help="Database setup")
    db_cmds = database.add_subparsers(dest="command", required=True)
    init = db_cmds.add_parser("init", help="Create missing tables")
    init.set_defaults(handler=cmd_db_init)

    return parser


def main(argv=None, app=None):
    args = build_parser().parse_args(argv)

    if app is None:
        from syncbridge import create_app
        app = create_app()

    with app.app_context():
        try:
            return args.handler(app, args)
        except Exception as e:
            logger.error("Command failed", command=args.group, error=str(e), exc_info=True)
            print(f"[ERROR] {e}")
            return 1


if __name__ == "__main__":
    sys.exit(main())
