"""SQLite-based local storage for isbnscout.

The local store is the always-available copy of the user's catalogue. It has
no awareness of sync: the sync ledger lives in the same database file but is
managed by ``SyncLedger``.
"""

import contextlib
import json
import logging
import sqlite3
import tempfile
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from isbnscout.errors import (
    IdentityConflictError,
    PermanentStoreError,
    ReferentialIntegrityError,
    StoreError,
    TransientStoreError,
)
from isbnscout.types import (
    ApiCredentials,
    EntityType,
    record_field_names,
    record_from_dict,
    utc_now,
)
from isbnscout.utils import get_isbnscout_home

from .base import RecordTable, table_for
from .schema import init_db, validate_table_name

logger = logging.getLogger(__name__)


class SQLiteStorage:
    """SQLite-based local storage.

    Features:
    - Zero-config local storage, one connection per operation
    - Foreign keys enforced, so a record whose parent was never pulled down
      fails with ReferentialIntegrityError
    - ``transaction()`` groups several operations (a record write and its
      ledger append) into one commit
    """

    BUSY_TIMEOUT_MS = 5000

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = self._resolve_db_path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_db()

    def _resolve_db_path(self, db_path: Optional[Path]) -> Path:
        """Resolve the database path, falling back to temp dir if home is not writable."""
        if db_path is not None:
            return Path(db_path).expanduser().resolve()

        default_path = get_isbnscout_home() / "isbn-scout-offline.db"
        try:
            default_path.parent.mkdir(parents=True, exist_ok=True)
            return default_path
        except OSError as e:
            fallback_dir = Path(tempfile.gettempdir()) / ".isbnscout"
            logger.warning(
                f"Cannot write to {default_path.parent} ({e}), falling back to {fallback_dir}"
            )
            return fallback_dir / "isbn-scout-offline.db"

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout={self.BUSY_TIMEOUT_MS}")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Context manager that handles transactions AND closes connection.

        Inside ``transaction()`` the thread's shared connection is reused and
        commit/rollback is left to the outermost block.
        """
        shared = getattr(self._local, "conn", None)
        if shared is not None:
            yield shared
            return

        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run every store/ledger call on this thread in a single transaction."""
        if getattr(self._local, "conn", None) is not None:
            yield self._local.conn
            return

        conn = self._get_conn()
        self._local.conn = conn
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._local.conn = None
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn)

    def close(self):
        """Close any resources.

        Connections are per-operation, so this exists for API symmetry with
        the cloud store.
        """
        pass

    def _now(self) -> str:
        return utc_now()

    # === Serialization helpers ===

    @staticmethod
    def _to_column(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value

    def _row_to_record(self, spec: RecordTable, row: sqlite3.Row) -> Any:
        return record_from_dict(spec.record_cls, dict(row))

    def _translate_error(self, e: sqlite3.Error, entity_type: EntityType) -> StoreError:
        """Map a driver error to the store error taxonomy."""
        if isinstance(e, sqlite3.IntegrityError):
            name = getattr(e, "sqlite_errorname", "") or ""
            message = str(e)
            if name == "SQLITE_CONSTRAINT_FOREIGNKEY" or "FOREIGN KEY" in message:
                return ReferentialIntegrityError(
                    f"Missing parent record for {entity_type.value}: {message}",
                    entity_type=entity_type.value,
                )
            if name in ("SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY") or (
                "UNIQUE" in message
            ):
                return IdentityConflictError(
                    f"Duplicate {entity_type.value}: {message}", entity_type=entity_type.value
                )
            return PermanentStoreError(message, entity_type=entity_type.value)
        if isinstance(e, sqlite3.OperationalError):
            # database is locked / busy, disk I/O
            return TransientStoreError(str(e), entity_type=entity_type.value)
        return PermanentStoreError(str(e), entity_type=entity_type.value)

    # === Record operations ===

    def create(self, entity_type: EntityType, record: Any) -> Any:
        """Insert a record, stamping creation timestamps that are unset."""
        entity_type = EntityType(entity_type)
        spec = table_for(entity_type)
        validate_table_name(spec.table)

        if not record.id:
            record.id = str(uuid.uuid4())
        now = self._now()
        columns = record_field_names(spec.record_cls)
        values = []
        for name in columns:
            value = getattr(record, name)
            if value is None and name in spec.created_fields:
                value = now
            values.append(self._to_column(value))

        placeholders = ", ".join("?" * len(columns))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO {spec.table} ({', '.join(columns)}) VALUES ({placeholders})",
                    values,
                )
                row = conn.execute(
                    f"SELECT * FROM {spec.table} WHERE id = ?", (record.id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise self._translate_error(e, entity_type) from e

        return self._row_to_record(spec, row)

    def get(self, entity_type: EntityType, key: str) -> Optional[Any]:
        """Get a record by primary key."""
        return self.find_one(entity_type, id=key)

    def find_one(self, entity_type: EntityType, **filters: Any) -> Optional[Any]:
        """Get the first record matching all column filters."""
        spec = table_for(entity_type)
        validate_table_name(spec.table)
        if not filters:
            raise ValueError("find_one requires at least one filter")
        self._check_columns(spec, filters)

        where = " AND ".join(f"{name} = ?" for name in filters)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {spec.table} WHERE {where} LIMIT 1",
                [self._to_column(v) for v in filters.values()],
            ).fetchone()

        return self._row_to_record(spec, row) if row else None

    def list_for_owner(self, entity_type: EntityType, owner_key: str, **filters: Any) -> List[Any]:
        """List the records a user owns, newest first.

        Extra keyword filters narrow the list by column equality
        (e.g. ``book_id=...``).
        """
        spec = table_for(entity_type)
        validate_table_name(spec.table)
        if spec.owner_field is None:
            raise ValueError(f"{spec.entity_type.value} records have no owner")
        self._check_columns(spec, filters)

        conditions = {spec.owner_field: owner_key, **filters}
        where = " AND ".join(f"{name} = ?" for name in conditions)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {spec.table} WHERE {where} "
                f"ORDER BY {spec.order_by} DESC",
                [self._to_column(v) for v in conditions.values()],
            ).fetchall()

        return [self._row_to_record(spec, row) for row in rows]

    def update(self, entity_type: EntityType, key: str, updates: Dict[str, Any]) -> Optional[Any]:
        """Apply a partial update. Returns None when no record has that key."""
        entity_type = EntityType(entity_type)
        spec = table_for(entity_type)
        validate_table_name(spec.table)

        changes = {k: v for k, v in updates.items() if k != "id"}
        self._check_columns(spec, changes)
        now = self._now()
        for name in spec.touched_fields:
            if name not in changes:
                changes[name] = now

        if not changes:
            return self.get(entity_type, key)

        assignments = ", ".join(f"{name} = ?" for name in changes)
        params = [self._to_column(v) for v in changes.values()] + [key]
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE {spec.table} SET {assignments} WHERE id = ?", params
                )
                if cursor.rowcount == 0:
                    return None
                row = conn.execute(f"SELECT * FROM {spec.table} WHERE id = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise self._translate_error(e, entity_type) from e

        return self._row_to_record(spec, row)

    def upsert_credentials(
        self,
        user_id: str,
        platform: str,
        credentials: Dict[str, Any],
        record_id: Optional[str] = None,
    ) -> ApiCredentials:
        """Insert or replace the credentials for (user_id, platform)."""
        now = self._now()
        try:
            with self._connect() as conn:
                conn.execute(
                    """INSERT INTO api_credentials
                       (id, user_id, platform, credentials, is_active, created_at, updated_at)
                       VALUES (?, ?, ?, ?, 'true', ?, ?)
                       ON CONFLICT(user_id, platform) DO UPDATE SET
                           credentials = excluded.credentials,
                           is_active = 'true',
                           updated_at = excluded.updated_at""",
                    (
                        record_id or str(uuid.uuid4()),
                        user_id,
                        platform,
                        json.dumps(credentials),
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as e:
            raise self._translate_error(e, EntityType.API_CREDENTIALS) from e

        return self.find_one(EntityType.API_CREDENTIALS, user_id=user_id, platform=platform)

    def _check_columns(self, spec: RecordTable, values: Dict[str, Any]) -> None:
        allowed = set(record_field_names(spec.record_cls))
        unknown = set(values) - allowed
        if unknown:
            raise PermanentStoreError(
                f"Unknown {spec.entity_type.value} fields: {', '.join(sorted(unknown))}",
                entity_type=spec.entity_type.value,
            )

    def count(self, entity_type: EntityType) -> int:
        """Number of stored records of one type."""
        spec = table_for(entity_type)
        validate_table_name(spec.table)
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {spec.table}").fetchone()[0]
