"""
PWMS CLI - operate the local-first sync queue.

Usage:
    pwms sync [--json]
    pwms status [--json]
    pwms dead-letters [--requeue] [--id N]... [--json]

All commands accept --db PATH to override LOCAL_DB_PATH.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from pwms.api.config import get_settings
from pwms.storage import LocalStore, RemoteStore, SyncEngine

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def cmd_sync(args, local: LocalStore) -> int:
    """Drain the queue once against the remote store."""
    settings = get_settings()
    engine = SyncEngine(local.queue, RemoteStore.from_settings(settings))
    result = asyncio.run(engine.drain())

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print(result.message)
        for error in result.errors:
            print(f"  ✗ {error['table']}:{error['id']}: {error['error']}")
        if result.dead_lettered:
            print(f"  {result.dead_lettered} item(s) moved to dead letter")
    return 0 if result.success else 1


def cmd_status(args, local: LocalStore) -> int:
    """Show queue depth and unsynced rows."""
    status = local.queue.status()

    if args.json:
        print(json.dumps(status, indent=2, default=str))
        return 0

    print(f"Queued:        {status['queueCount']}")
    print(f"Dead letters:  {status['deadLetterCount']}")
    for table, count in sorted(status["byTable"].items()):
        print(f"  {table}: {count} queued")
    unsynced = {table: count for table, count in status["unsynced"].items() if count}
    if unsynced:
        print("Unsynced rows:")
        for table, count in sorted(unsynced.items()):
            print(f"  {table}: {count}")
    return 0


def cmd_dead_letters(args, local: LocalStore) -> int:
    """List dead-lettered items, or return them to the queue."""
    if args.requeue:
        count = local.queue.requeue_dead_letters(args.id or None)
        if args.json:
            print(json.dumps({"requeued": count}))
        else:
            print(f"Requeued {count} item(s)")
        return 0

    items = local.queue.dead_letters()
    if args.id:
        items = [item for item in items if item.id in args.id]

    if args.json:
        print(json.dumps([item.to_dict() for item in items], indent=2, default=str))
    elif not items:
        print("No dead letters.")
    else:
        for item in items:
            print(
                f"[{item.id}] {item.operation} {item.table_name}:{item.record_id} "
                f"(attempts={item.retry_count}) {item.last_error or ''}"
            )
    return 0


COMMANDS = {
    "sync": cmd_sync,
    "status": cmd_status,
    "dead-letters": cmd_dead_letters,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pwms",
        description="Local-first sync queue for production and warehouse data",
    )
    parser.add_argument("--db", help="Local SQLite database (default: LOCAL_DB_PATH)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_sync = subparsers.add_parser("sync", help="Drain the local queue to the remote database")
    p_sync.add_argument("--json", "-j", action="store_true")

    p_status = subparsers.add_parser("status", help="Show queue status")
    p_status.add_argument("--json", "-j", action="store_true")

    p_dead = subparsers.add_parser("dead-letters", help="List or requeue dead-lettered items")
    p_dead.add_argument("--requeue", action="store_true", help="Return items to the queue")
    p_dead.add_argument("--id", type=int, action="append", help="Queue item id (repeatable)")
    p_dead.add_argument("--json", "-j", action="store_true")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    local = LocalStore(Path(args.db or settings.local_db_path), max_retries=settings.sync_max_retries)
    try:
        return COMMANDS[args.command](args, local)
    finally:
        local.close()


if __name__ == "__main__":
    sys.exit(main())
