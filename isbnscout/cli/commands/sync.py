"""Sync commands for isbnscout CLI: ledger inspection and maintenance."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from isbnscout.types import EntityType

if TYPE_CHECKING:
    from isbnscout.storage import HybridStorage

logger = logging.getLogger(__name__)


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def format_elapsed(dt: datetime, now: Optional[datetime] = None) -> str:
    """Human-readable age of a timestamp ("5 minutes ago")."""
    now = now or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    seconds = (now - dt).total_seconds()
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{int(seconds / 60)} minutes ago"
    if seconds < 86400:
        return f"{int(seconds / 3600)} hours ago"
    return f"{int(seconds / 86400)} days ago"


def check_backend_connection(storage: "HybridStorage"):
    """Return (connected, message) for the configured cloud store."""
    remote = storage.remote
    if remote is None:
        return False, "Not configured"
    health_check = getattr(remote, "health_check", None)
    if health_check is None:
        return True, "Configured"
    result = health_check()
    if result.get("healthy"):
        return True, f"Connected ({result.get('latency_ms', 0)}ms)"
    return False, result.get("error", "Unreachable")


def cmd_sync(args, storage: "HybridStorage"):
    """Handle sync subcommands."""
    ledger = storage.ledger

    if args.sync_action == "status":
        health = storage.get_sync_status()
        backend_connected, connection_msg = check_backend_connection(storage)

        if args.json:
            status_data = {
                "pending_count": health.pending_count,
                "failed_count": health.failed_count,
                "resolved_count": health.resolved_count,
                "pending_by_entity": health.pending_by_entity,
                "last_successful_sync": format_datetime(health.last_successful_sync),
                "online": health.online,
                "backend_url": storage.settings.backend_url or "(not configured)",
                "backend_connected": backend_connected,
                "connection_status": connection_msg,
                "db_path": str(storage.local.db_path),
            }
            print(json.dumps(status_data, indent=2, default=str))
            return

        print("Sync Status")
        print("=" * 50)
        print()
        print(f"📦 Local database: {storage.local.db_path}")
        conn_icon = "🟢" if backend_connected else "🔴"
        print(f"{conn_icon} Backend: {connection_msg}")
        if storage.settings.backend_url:
            print(f"   URL: {storage.settings.backend_url}")
        print()

        pending = health.pending_count
        pending_icon = "🟢" if pending == 0 else "🟡" if pending < 10 else "🟠"
        print(f"{pending_icon} Pending entries: {pending}")
        for entity, count in sorted(health.pending_by_entity.items()):
            print(f"   {entity}: {count}")
        failed_icon = "🟢" if health.failed_count == 0 else "🔴"
        print(f"{failed_icon} Failed entries: {health.failed_count}")
        print(f"   Resolved (awaiting cleanup): {health.resolved_count}")

        if health.last_successful_sync:
            print(f"🕐 Last sync: {format_elapsed(health.last_successful_sync)}")
            print(f"   ({health.last_successful_sync.isoformat()[:19]})")
        else:
            print("🕐 Last sync: Never")

        print()
        if health.failed_count:
            print("💡 Run `isbnscout sync failed` to inspect failures")
        elif pending and backend_connected:
            print("💡 Run `isbnscout sync now` to push pending changes")

    elif args.sync_action == "now":
        result = storage.force_sync_now()
        if result.skipped:
            if result.skip_reason == "no remote store configured":
                print("✗ Backend not configured")
                print("  Set ISBNSCOUT_BACKEND_URL or backend_url in config.json")
            else:
                print(f"✗ Sync skipped: {result.skip_reason}")
            sys.exit(1)

        if result.attempted == 0 and result.deferred == 0:
            print("✓ Nothing to sync")
        else:
            print(f"✓ Resolved {result.resolved} entries")
            if result.reconciled:
                print(f"   ({result.reconciled} already present in cloud)")
            if result.retried:
                print(f"⚠ {result.retried} entries will be retried")
            if result.deferred:
                print(f"⚠ {result.deferred} entries deferred behind earlier failures")
            if result.failed:
                print(f"✗ {result.failed} entries failed permanently")
        if result.cleaned:
            print(f"🧹 Cleaned up {result.cleaned} old entries")
        for error in result.errors[:5]:
            print(f"   {error[:100]}")
        if len(result.errors) > 5:
            print(f"   ... and {len(result.errors) - 5} more errors")

    elif args.sync_action == "failed":
        entries = ledger.list_failed(limit=args.limit)
        if args.json:
            print(
                json.dumps(
                    [
                        {
                            "id": e.id,
                            "entity_type": e.entity_name,
                            "operation": e.operation_name,
                            "retry_count": e.retry_count,
                            "last_error": e.last_error,
                            "enqueued_at": format_datetime(e.enqueued_at),
                            "last_attempt_at": format_datetime(e.last_attempt_at),
                        }
                        for e in entries
                    ],
                    indent=2,
                )
            )
            return
        if not entries:
            print("✓ No failed sync entries")
            return
        print(f"Failed sync entries ({len(entries)}):")
        print("=" * 50)
        for e in entries:
            print(f"✗ {e.id}  {e.entity_name}/{e.operation_name}")
            print(f"   Enqueued: {e.enqueued_at.isoformat()[:19]}  retries: {e.retry_count}")
            if e.last_error:
                print(f"   Error: {e.last_error[:200]}")
        print()
        print("💡 Run `isbnscout sync requeue [ID...]` to retry, or `sync purge-failed` to drop")

    elif args.sync_action == "requeue":
        count = ledger.requeue_failed(args.ids or None)
        print(f"✓ Requeued {count} failed entries")

    elif args.sync_action == "purge-failed":
        count = ledger.purge_failed()
        print(f"✓ Removed {count} failed entries")

    elif args.sync_action == "clear-pending":
        entity_type = EntityType(args.entity)
        count = ledger.purge_pending(entity_type)
        print(f"✓ Removed {count} pending {entity_type.value} entries")

    elif args.sync_action == "cleanup":
        count = ledger.cleanup()
        print(f"🧹 Cleaned up {count} old entries")


def add_sync_parser(subparsers):
    """Register the ``sync`` command and its actions."""
    p_sync = subparsers.add_parser("sync", help="Inspect and drive cloud sync")
    sync_sub = p_sync.add_subparsers(dest="sync_action", required=True)

    sync_status = sync_sub.add_parser("status", help="Show ledger health and backend status")
    sync_status.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_sub.add_parser("now", help="Run one drain cycle immediately")

    sync_failed = sync_sub.add_parser("failed", help="List permanently failed entries")
    sync_failed.add_argument("--limit", "-l", type=int, default=20)
    sync_failed.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    sync_requeue = sync_sub.add_parser("requeue", help="Return failed entries to pending")
    sync_requeue.add_argument("ids", nargs="*", help="Entry IDs (default: all failed)")

    sync_sub.add_parser("purge-failed", help="Delete all permanently failed entries")

    sync_clear = sync_sub.add_parser(
        "clear-pending", help="Delete pending entries of one entity type (test data)"
    )
    sync_clear.add_argument(
        "--entity", required=True, choices=[e.value for e in EntityType], help="Entity type"
    )

    sync_sub.add_parser("cleanup", help="Delete resolved/failed entries past retention")
    return p_sync
