"""
collabsync CLI - memory synchronization from the command line.

Usage:
    collabsync check
    collabsync sync [--json]
    collabsync status [--json]
    collabsync watch [--interval MINUTES]
    collabsync add TEXT [--type TYPE]

Global options: --user, --scope, --db PATH, --local {sqlite,supabase}.
"""

import argparse
import asyncio
import json
import logging
import re
import sys

from collabsync.config import Settings, get_settings
from collabsync.storage.mem0 import Mem0Client
from collabsync.storage.sqlite import SQLiteMemoryStore
from collabsync.storage.supabase import SupabaseMemoryStore
from collabsync.sync.reconciler import MemorySyncReconciler, last_sync_key
from collabsync.types import SyncResult, SyncStats, format_datetime

logger = logging.getLogger(__name__)


def validate_input(value: str, field_name: str, max_length: int = 1000) -> str:
    """Validate and sanitize CLI inputs."""
    if len(value) > max_length:
        raise ValueError(f"{field_name} too long (max {max_length} characters)")

    # Remove null bytes and control characters except newlines
    return re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", value)


def build_local_store(args, settings: Settings):
    if args.local == "supabase":
        return SupabaseMemoryStore.from_settings(settings)
    return SQLiteMemoryStore(args.db or settings.resolved_db_path)


def format_stats(stats: SyncStats) -> str:
    last = format_datetime(stats.last_synced_at) or "never"
    lines = [
        f"Synced:      {stats.synced}/{stats.total} ({stats.sync_percentage}%)",
        f"Local only:  {stats.local_only}",
        f"Remote only: {stats.remote_only}",
        f"Conflicts:   {stats.conflicts}",
        f"Failed:      {stats.failed}",
        f"Last sync:   {last}",
    ]
    return "\n".join(lines)


def print_result(result: SyncResult, as_json: bool) -> None:
    if as_json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return

    if not result.remote_available:
        print("ℹ Remote memory API unreachable, nothing transferred")
    elif result.success:
        print("✓ Sync complete")
    else:
        print("⚠ Sync finished with errors")
    print(format_stats(result.stats))
    for conflict in result.conflicts:
        print(f"  ≠ conflict: local {conflict.local.id} / remote {conflict.remote.id}")
    for error in result.errors:
        print(f"  ✗ {error}")


async def cmd_check(args, settings: Settings):
    """Report whether the remote memory API answers."""
    async with Mem0Client.from_settings(settings) as remote:
        reachable = await remote.check_connection()
    if reachable:
        print(f"✓ Memory API reachable at {remote.base_url}")
    else:
        print(f"✗ Memory API unreachable at {remote.base_url}")
        sys.exit(1)


async def cmd_sync(args, settings: Settings):
    """Run one reconciliation pass."""
    local = build_local_store(args, settings)
    async with Mem0Client.from_settings(settings) as remote:
        reconciler = MemorySyncReconciler(local, remote, args.user, args.scope)
        await reconciler.load_last_synced_at()
        result = await reconciler.synchronize_memories()
    print_result(result, args.json)
    if not result.success:
        sys.exit(1)


async def cmd_status(args, settings: Settings):
    """Local record count and the time of the last sync."""
    local = build_local_store(args, settings)
    records = await local.list_memories(args.user, args.scope)
    last = await local.get_sync_meta(last_sync_key(args.user, args.scope))
    linked = sum(1 for r in records if r.remote_id)

    if args.json:
        print(json.dumps({
            "user_id": args.user,
            "scope": args.scope,
            "local_memories": len(records),
            "linked": linked,
            "last_synced_at": last,
        }, indent=2))
        return

    print(f"Memories for {args.user} ({args.scope})")
    print(f"  Local:     {len(records)}")
    print(f"  Linked:    {linked}")
    print(f"  Last sync: {last or 'never'}")


async def cmd_watch(args, settings: Settings):
    """Sync periodically until interrupted."""
    interval = args.interval or settings.auto_sync_interval_minutes
    local = build_local_store(args, settings)
    async with Mem0Client.from_settings(settings) as remote:
        reconciler = MemorySyncReconciler(local, remote, args.user, args.scope)
        await reconciler.load_last_synced_at()
        reconciler.add_sync_listener(
            lambda stats: None if stats.in_progress else print(format_stats(stats), end="\n\n")
        )
        print(f"Watching {args.user}/{args.scope}, syncing every {interval} minutes (Ctrl+C to stop)")
        await reconciler.synchronize_memories()
        reconciler.start_auto_sync(interval)
        try:
            await asyncio.Event().wait()
        finally:
            await reconciler.cleanup()


async def cmd_add(args, settings: Settings):
    """Add a memory to the local store."""
    text = validate_input(args.text, "text", 10000)
    local = build_local_store(args, settings)
    record = await local.add_memory(args.user, args.scope, text, memory_type=args.type)
    print(f"✓ Memory added: {record.id}")


COMMANDS = {
    "check": cmd_check,
    "sync": cmd_sync,
    "status": cmd_status,
    "watch": cmd_watch,
    "add": cmd_add,
}


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="collabsync",
        description="Synchronize local memories with a remote memory API",
    )
    parser.add_argument("--user", "-u", default=settings.default_user_id, help="User ID")
    parser.add_argument("--scope", "-s", default=settings.default_scope, help="Memory scope (AI family member)")
    parser.add_argument("--db", help="SQLite database path (default: ~/.collabsync/memories.db)")
    parser.add_argument("--local", choices=["sqlite", "supabase"], default="sqlite",
                        help="Local memory store backend")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("check", help="Check remote memory API connectivity")

    p_sync = subparsers.add_parser("sync", help="Run one synchronization pass")
    p_sync.add_argument("--json", "-j", action="store_true")

    p_status = subparsers.add_parser("status", help="Show local sync status")
    p_status.add_argument("--json", "-j", action="store_true")

    p_watch = subparsers.add_parser("watch", help="Sync periodically until interrupted")
    p_watch.add_argument("--interval", "-i", type=float, help="Minutes between passes")

    p_add = subparsers.add_parser("add", help="Add a local memory")
    p_add.add_argument("text", help="Memory text")
    p_add.add_argument("--type", "-t", help="Memory type (e.g. preference, file_operation)")

    return parser


def main(argv=None):
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    parser = build_parser(settings)
    args = parser.parse_args(argv)

    try:
        args.user = validate_input(args.user, "user", 100)
        args.scope = validate_input(args.scope, "scope", 100)
        asyncio.run(COMMANDS[args.command](args, settings))
    except KeyboardInterrupt:
        print("\nStopped")
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
