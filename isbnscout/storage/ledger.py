"""Sync ledger for isbnscout storage.

Durable queue of mutations that the local store has accepted but the cloud
store has not confirmed yet. The ledger lives in the local SQLite file so it
shares its durability, and it reuses the store's connection handling so an
enqueue can join the same transaction as the record write.

Entry lifecycle::

    pending --(applied remotely)--------------------> resolved
    pending --(transient failure)--> pending, retry_count + 1
    pending --(permanent failure | retries exhausted)--> failed

Terminal entries are deleted by ``cleanup()`` once their retention window
has passed. Pending entries are never deleted by cleanup.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from isbnscout.types import (
    DEFAULT_MAX_RETRIES,
    EntityType,
    LedgerEntry,
    Operation,
    ResolutionState,
    parse_datetime,
    utc_now,
)

from .handlers import is_supported
from .sqlite import SQLiteStorage

logger = logging.getLogger(__name__)

# Longest error text stored per entry
MAX_ERROR_LENGTH = 500

LAST_SYNC_META_KEY = "last_successful_sync"

# Stay under SQLite's bound-parameter limit
_ID_CHUNK = 500

_PENDING = int(ResolutionState.PENDING)
_RESOLVED = int(ResolutionState.RESOLVED)
_FAILED = int(ResolutionState.FAILED)

_ENTRY_COLUMNS = """id, operation, entity_type, payload, enqueued_at, resolution_state,
                    retry_count, last_error, last_attempt_at, resolved_at"""


def _parse_name(enum_cls, value: str):
    """Enum member for a stored name, or the raw string when it is unknown."""
    try:
        return enum_cls(value)
    except ValueError:
        return value


class SyncLedger:
    """Queue management for pending sync entries.

    Args:
        store: The local SQLiteStorage hosting the ledger tables.
        max_retries: Attempts allowed before an entry is permanently failed.
        resolved_retention_days: How long resolved entries are kept.
        failed_retention_days: How long permanently failed entries are kept.
    """

    def __init__(
        self,
        store: SQLiteStorage,
        max_retries: int = DEFAULT_MAX_RETRIES,
        resolved_retention_days: int = 7,
        failed_retention_days: int = 30,
    ):
        self._store = store
        self.max_retries = max_retries
        self.resolved_retention_days = resolved_retention_days
        self.failed_retention_days = failed_retention_days

    def _connect(self):
        return self._store._connect()

    def _row_to_entry(self, row) -> LedgerEntry:
        return LedgerEntry(
            id=row["id"],
            operation=_parse_name(Operation, row["operation"]),
            entity_type=_parse_name(EntityType, row["entity_type"]),
            payload=row["payload"],
            enqueued_at=parse_datetime(row["enqueued_at"]),
            resolution_state=ResolutionState(row["resolution_state"]),
            retry_count=row["retry_count"] or 0,
            last_error=row["last_error"],
            last_attempt_at=parse_datetime(row["last_attempt_at"]),
            resolved_at=parse_datetime(row["resolved_at"]),
        )

    def _rows_to_entries(self, rows) -> List[LedgerEntry]:
        return [self._row_to_entry(row) for row in rows]

    # === Queue Operations ===

    def enqueue(
        self,
        entity_type: EntityType,
        operation: Operation,
        payload: Dict[str, Any],
    ) -> LedgerEntry:
        """Append a new pending entry."""
        entry = LedgerEntry(
            id=str(uuid.uuid4()),
            operation=Operation(operation),
            entity_type=EntityType(entity_type),
            payload=json.dumps(payload, default=str),
            enqueued_at=datetime.now(timezone.utc),
        )
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO sync_ledger
                   (id, operation, entity_type, payload, enqueued_at,
                    resolution_state, retry_count)
                   VALUES (?, ?, ?, ?, ?, ?, 0)""",
                (
                    entry.id,
                    entry.operation.value,
                    entry.entity_type.value,
                    entry.payload,
                    entry.enqueued_at.isoformat(),
                    _PENDING,
                ),
            )
        logger.debug(f"Queued {entry.entity_type.value}/{entry.operation.value} as {entry.id}")
        return entry

    def get(self, entry_id: str) -> Optional[LedgerEntry]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM sync_ledger WHERE id = ?", (entry_id,)
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def fetch_pending_batch(self, limit: int) -> List[LedgerEntry]:
        """Get up to ``limit`` pending entries, oldest enqueued first.

        Pending rows whose (entity type, operation) has no handler can never
        be applied. They are moved to failed here instead of being returned,
        so they cannot occupy batch slots forever.
        """
        while True:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""SELECT {_ENTRY_COLUMNS}
                        FROM sync_ledger
                        WHERE resolution_state = ? AND retry_count < ?
                        ORDER BY enqueued_at ASC, rowid ASC
                        LIMIT ?""",
                    (_PENDING, self.max_retries, limit),
                ).fetchall()

            batch = []
            undeliverable = 0
            for entry in self._rows_to_entries(rows):
                if is_supported(entry.entity_type, entry.operation):
                    batch.append(entry)
                    continue
                error = (
                    f"Undeliverable entry: unsupported mutation "
                    f"{entry.entity_name}/{entry.operation_name}"
                )
                logger.warning(f"{error} ({entry.id}), marking failed")
                self.mark_failed(entry.id, error)
                undeliverable += 1

            # Refill the slots freed by undeliverable rows
            if undeliverable == 0 or len(rows) < limit:
                return batch

    def mark_resolved(self, entry_id: str) -> bool:
        """Mark a pending entry as applied remotely."""
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE sync_ledger
                   SET resolution_state = ?, resolved_at = ?
                   WHERE id = ? AND resolution_state = ?""",
                (_RESOLVED, utc_now(), entry_id, _PENDING),
            )
            return cursor.rowcount > 0

    def mark_failed(self, entry_id: str, error: str) -> bool:
        """Freeze a pending entry as permanently failed."""
        now = utc_now()
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE sync_ledger
                   SET resolution_state = ?, last_error = ?,
                       last_attempt_at = ?, resolved_at = ?
                   WHERE id = ? AND resolution_state = ?""",
                (_FAILED, (error or "")[:MAX_ERROR_LENGTH], now, now, entry_id, _PENDING),
            )
            return cursor.rowcount > 0

    def increment_retry(self, entry_id: str, error: str) -> Optional[LedgerEntry]:
        """Record a transient failure.

        The retry count and the exhausted-retries transition are applied in one
        statement, so a pending entry never holds ``retry_count == max``.

        Returns:
            The updated entry, or None if it was not pending.
        """
        now = utc_now()
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE sync_ledger
                   SET retry_count = retry_count + 1,
                       last_error = ?,
                       last_attempt_at = ?,
                       resolution_state = CASE
                           WHEN retry_count + 1 >= ? THEN ? ELSE ? END,
                       resolved_at = CASE
                           WHEN retry_count + 1 >= ? THEN ? ELSE NULL END
                   WHERE id = ? AND resolution_state = ?""",
                (
                    (error or "")[:MAX_ERROR_LENGTH],
                    now,
                    self.max_retries,
                    _FAILED,
                    _PENDING,
                    self.max_retries,
                    now,
                    entry_id,
                    _PENDING,
                ),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM sync_ledger WHERE id = ?", (entry_id,)
            ).fetchone()
        return self._row_to_entry(row)

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Delete terminal entries past their retention window.

        Resolved entries are kept ``resolved_retention_days``, permanently
        failed entries ``failed_retention_days``, measured from when they
        reached the terminal state.
        """
        now = now or datetime.now(timezone.utc)
        resolved_cutoff = (now - timedelta(days=self.resolved_retention_days)).isoformat()
        failed_cutoff = (now - timedelta(days=self.failed_retention_days)).isoformat()

        with self._connect() as conn:
            cursor = conn.execute(
                """DELETE FROM sync_ledger
                   WHERE (resolution_state = ? AND COALESCE(resolved_at, enqueued_at) < ?)
                      OR (resolution_state = ? AND COALESCE(resolved_at, enqueued_at) < ?)""",
                (_RESOLVED, resolved_cutoff, _FAILED, failed_cutoff),
            )
            removed = cursor.rowcount

        if removed:
            logger.info(f"Ledger cleanup removed {removed} terminal entries")
        return removed

    # === Status ===

    def pending_count(self) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_ledger WHERE resolution_state = ?", (_PENDING,)
            ).fetchone()[0]

    def counts(self) -> Dict[str, Any]:
        """Counts per state, plus pending counts per entity type."""
        with self._connect() as conn:
            state_rows = conn.execute(
                """SELECT resolution_state, COUNT(*) AS count
                   FROM sync_ledger GROUP BY resolution_state"""
            ).fetchall()
            entity_rows = conn.execute(
                """SELECT entity_type, COUNT(*) AS count
                   FROM sync_ledger WHERE resolution_state = ?
                   GROUP BY entity_type""",
                (_PENDING,),
            ).fetchall()

        by_state = {row["resolution_state"]: row["count"] for row in state_rows}
        return {
            "pending": by_state.get(_PENDING, 0),
            "resolved": by_state.get(_RESOLVED, 0),
            "failed": by_state.get(_FAILED, 0),
            "total": sum(by_state.values()),
            "pending_by_entity": {row["entity_type"]: row["count"] for row in entity_rows},
        }

    def list_failed(self, limit: int = 100) -> List[LedgerEntry]:
        """Permanently failed entries, most recent failure first."""
        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT {_ENTRY_COLUMNS}
                    FROM sync_ledger
                    WHERE resolution_state = ?
                    ORDER BY COALESCE(last_attempt_at, enqueued_at) DESC
                    LIMIT ?""",
                (_FAILED, limit),
            ).fetchall()
        return self._rows_to_entries(rows)

    # === Maintenance ===

    def requeue_failed(self, entry_ids: Optional[List[str]] = None) -> int:
        """Return permanently failed entries to pending with a fresh retry budget.

        Entries whose (entity type, operation) has no handler stay failed,
        since replaying them can only fail again.

        Args:
            entry_ids: Specific IDs to requeue, or None for all.
        Returns:
            Number of entries requeued.
        """
        with self._connect() as conn:
            if entry_ids:
                placeholders = ",".join("?" for _ in entry_ids)
                rows = conn.execute(
                    f"""SELECT id, entity_type, operation FROM sync_ledger
                        WHERE resolution_state = ? AND id IN ({placeholders})""",
                    (_FAILED, *entry_ids),
                ).fetchall()
            else:
                rows = conn.execute(
                    """SELECT id, entity_type, operation FROM sync_ledger
                       WHERE resolution_state = ?""",
                    (_FAILED,),
                ).fetchall()

            requeue_ids = [
                row["id"] for row in rows if is_supported(row["entity_type"], row["operation"])
            ]
            skipped = len(rows) - len(requeue_ids)
            if skipped:
                logger.warning(f"Not requeueing {skipped} failed entries with unsupported mutations")
            requeued = 0
            for start in range(0, len(requeue_ids), _ID_CHUNK):
                chunk = requeue_ids[start : start + _ID_CHUNK]
                placeholders = ",".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"""UPDATE sync_ledger
                        SET resolution_state = ?, retry_count = 0,
                            last_error = NULL, resolved_at = NULL
                        WHERE resolution_state = ? AND id IN ({placeholders})""",
                    (_PENDING, _FAILED, *chunk),
                )
                requeued += cursor.rowcount
            return requeued

    def purge_failed(self) -> int:
        """Delete every permanently failed entry regardless of age."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM sync_ledger WHERE resolution_state = ?", (_FAILED,))
            return cursor.rowcount

    def purge_pending(self, entity_type: EntityType) -> int:
        """Drop pending entries of one entity type (clearing test data).

        This is the only path that removes pending entries; it is an operator
        action and never runs as part of a drain.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_ledger WHERE resolution_state = ? AND entity_type = ?",
                (_PENDING, EntityType(entity_type).value),
            )
            return cursor.rowcount

    # === Sync Metadata ===

    def get_meta(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, utc_now()),
            )

    def get_last_sync_time(self) -> Optional[datetime]:
        """Timestamp of the last successful drain cycle."""
        value = self.get_meta(LAST_SYNC_META_KEY)
        return parse_datetime(value) if value else None

    def set_last_sync_time(self, when: Optional[datetime] = None):
        self.set_meta(LAST_SYNC_META_KEY, (when or datetime.now(timezone.utc)).isoformat())
