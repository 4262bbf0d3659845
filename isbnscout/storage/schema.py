"""Database schema and migration logic for the local SQLite store.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)
- Schema migration (migrate_schema), including import of the legacy
  ``sync_queue`` table into ``sync_ledger``
"""

import json
import logging
import re
import sqlite3
import uuid

from isbnscout.types import DEFAULT_MAX_RETRIES, ResolutionState, utc_now

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 4  # v4: repricing_rules, repricing_history

# Allowed table names for SQL queries (security: prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    {
        "users",
        "api_credentials",
        "books",
        "listings",
        "inventory_items",
        "repricing_rules",
        "repricing_history",
        "sync_ledger",
        "sync_meta",
        "schema_version",
    }
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    username TEXT UNIQUE NOT NULL,
    email TEXT UNIQUE NOT NULL,
    password TEXT NOT NULL,
    subscription_tier TEXT NOT NULL DEFAULT 'trial',
    subscription_status TEXT NOT NULL DEFAULT 'trialing',
    subscription_expires_at TEXT,
    trial_started_at TEXT,
    trial_ends_at TEXT,
    stripe_customer_id TEXT,
    stripe_subscription_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS api_credentials (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    platform TEXT NOT NULL,
    credentials TEXT NOT NULL,  -- JSON object
    is_active TEXT NOT NULL DEFAULT 'true',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    UNIQUE (user_id, platform)
);

CREATE TABLE IF NOT EXISTS books (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    isbn TEXT NOT NULL,
    title TEXT NOT NULL,
    author TEXT,
    thumbnail TEXT,
    amazon_price TEXT,
    ebay_price TEXT,
    your_cost TEXT,
    profit TEXT,
    status TEXT NOT NULL,
    scanned_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_books_user ON books(user_id);
CREATE INDEX IF NOT EXISTS idx_books_isbn ON books(isbn);

CREATE TABLE IF NOT EXISTS listings (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    book_id TEXT NOT NULL,
    platform TEXT NOT NULL,
    platform_listing_id TEXT,
    price TEXT NOT NULL,
    condition TEXT NOT NULL,
    description TEXT,
    quantity TEXT NOT NULL,
    status TEXT NOT NULL,
    error_message TEXT,
    listed_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_listings_user ON listings(user_id);

CREATE TABLE IF NOT EXISTS inventory_items (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    book_id TEXT NOT NULL,
    listing_id TEXT,
    sku TEXT,
    purchase_date TEXT NOT NULL,
    purchase_cost TEXT NOT NULL,
    purchase_source TEXT,
    condition TEXT NOT NULL,
    location TEXT,
    sold_date TEXT,
    sale_price TEXT,
    sold_platform TEXT,
    actual_profit TEXT,
    status TEXT NOT NULL DEFAULT 'in_stock',
    notes TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_inventory_user ON inventory_items(user_id);

CREATE TABLE IF NOT EXISTS repricing_rules (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    listing_id TEXT,  -- NULL: applies to all of the user's listings
    platform TEXT NOT NULL,
    strategy TEXT NOT NULL,
    strategy_value TEXT,
    min_price TEXT NOT NULL,
    max_price TEXT NOT NULL,
    is_active TEXT NOT NULL DEFAULT 'true',
    run_frequency TEXT NOT NULL DEFAULT 'hourly',
    last_run TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (listing_id) REFERENCES listings(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_repricing_rules_user ON repricing_rules(user_id);

CREATE TABLE IF NOT EXISTS repricing_history (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    listing_id TEXT NOT NULL,
    rule_id TEXT,
    old_price TEXT NOT NULL,
    new_price TEXT NOT NULL,
    competitor_price TEXT,
    reason TEXT NOT NULL,
    success TEXT NOT NULL DEFAULT 'true',
    error_message TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY (listing_id) REFERENCES listings(id) ON DELETE CASCADE,
    FOREIGN KEY (rule_id) REFERENCES repricing_rules(id) ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS idx_repricing_history_listing ON repricing_history(listing_id);

-- Sync ledger: one row per queued mutation intent
CREATE TABLE IF NOT EXISTS sync_ledger (
    id TEXT PRIMARY KEY,
    operation TEXT NOT NULL,  -- create, update, upsert
    entity_type TEXT NOT NULL,
    payload TEXT NOT NULL,  -- JSON, opaque to the ledger
    enqueued_at TEXT NOT NULL,
    resolution_state INTEGER NOT NULL DEFAULT 0,  -- 0 pending, 1 resolved, -1 failed
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    last_attempt_at TEXT,
    resolved_at TEXT  -- when a terminal state was reached (retention clock)
);
CREATE INDEX IF NOT EXISTS idx_sync_ledger_pending
    ON sync_ledger(resolution_state, enqueued_at);
CREATE INDEX IF NOT EXISTS idx_sync_ledger_entity ON sync_ledger(entity_type);

-- Sync metadata (tracks last successful sync)
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

# Legacy sync_queue naming -> current enum values
LEGACY_ENTITY_NAMES = {
    "user": "user",
    "book": "book",
    "listing": "listing",
    "inventoryItem": "inventory_item",
    "apiCredentials": "api_credentials",
    "repricingRule": "repricing_rule",
    "repricingHistory": "repricing_history",
}
LEGACY_OPERATION_NAMES = {
    "create": "create",
    "update": "update",
    "save": "upsert",
    "updateStatus": "update",
}

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def _normalize_legacy_payload(data: dict) -> dict:
    """Snake-case the record keys of a legacy payload (and of its ``updates``)."""
    normalized = {_snake_case(k): v for k, v in data.items()}
    if isinstance(normalized.get("updates"), dict):
        normalized["updates"] = {_snake_case(k): v for k, v in normalized["updates"].items()}
    return normalized


def init_db(conn: sqlite3.Connection) -> None:
    """Initialize the database schema.

    The full schema is applied first (CREATE TABLE IF NOT EXISTS is safe to
    re-run), then migrations upgrade columns and import legacy tables.
    """
    conn.executescript(SCHEMA)
    migrate_schema(conn)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    else:
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    conn.commit()


def migrate_schema(conn: sqlite3.Connection) -> None:
    """Run schema migrations for existing databases."""
    table_names = {
        row[0]
        for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    }

    def get_columns(table: str) -> set:
        return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}

    # Columns added after the first ledger release
    ledger_cols = get_columns("sync_ledger")
    if "last_attempt_at" not in ledger_cols:
        conn.execute("ALTER TABLE sync_ledger ADD COLUMN last_attempt_at TEXT")
    if "resolved_at" not in ledger_cols:
        conn.execute("ALTER TABLE sync_ledger ADD COLUMN resolved_at TEXT")

    if "sync_queue" in table_names:
        imported = _import_legacy_sync_queue(conn, get_columns("sync_queue"))
        conn.execute("DROP TABLE sync_queue")
        logger.info(f"Migrated {imported} legacy sync_queue rows into sync_ledger")


def _import_legacy_sync_queue(conn: sqlite3.Connection, columns: set) -> int:
    """Copy unresolved rows of the legacy queue into the ledger.

    Legacy rows used ``synced`` 0/1/-1, camelCase entity names and a few
    operations outside the current closed set. Those are imported as
    permanently failed so they stay visible to operators.
    """
    retry_expr = "COALESCE(retry_count, 0)" if "retry_count" in columns else "0"
    error_expr = "error" if "error" in columns else "NULL"
    rows = conn.execute(
        f"""SELECT id, operation, entity, data, timestamp,
                   COALESCE(synced, 0) AS synced,
                   {error_expr} AS error,
                   {retry_expr} AS retry_count
            FROM sync_queue
            WHERE COALESCE(synced, 0) != 1
            ORDER BY timestamp ASC"""
    ).fetchall()

    imported = 0
    for row in rows:
        entity = LEGACY_ENTITY_NAMES.get(row[2])
        operation = LEGACY_OPERATION_NAMES.get(row[1])
        payload = row[3] or "{}"
        enqueued_at = row[4] or utc_now()
        state = ResolutionState.FAILED if row[5] == -1 else ResolutionState.PENDING
        error = row[6]
        if int(row[7] or 0) >= DEFAULT_MAX_RETRIES:
            state = ResolutionState.FAILED

        if entity is None or operation is None:
            state = ResolutionState.FAILED
            error = f"Unsupported legacy operation {row[2]}/{row[1]}"
            entity = entity or str(row[2])
            operation = operation or str(row[1])
        else:
            try:
                data = _normalize_legacy_payload(json.loads(payload))
                if row[1] == "updateStatus":
                    # {id, status, error_message} -> {id, updates}
                    updates = {"status": data.get("status")}
                    if data.get("error_message") is not None:
                        updates["error_message"] = data["error_message"]
                    data = {"id": data.get("id"), "updates": updates}
                elif operation == "update" and "updates" not in data:
                    # {id, price} style partial updates
                    keys = {k: data.pop(k) for k in ("id", "isbn", "user_id") if k in data}
                    data = {**keys, "updates": data}
                payload = json.dumps(data)
            except (json.JSONDecodeError, AttributeError):
                state = ResolutionState.FAILED
                error = "Unreadable legacy payload"

        conn.execute(
            """INSERT OR IGNORE INTO sync_ledger
               (id, operation, entity_type, payload, enqueued_at,
                resolution_state, retry_count, last_error, resolved_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                str(row[0] or uuid.uuid4()),
                operation,
                entity,
                payload,
                enqueued_at,
                int(state),
                int(row[7] or 0),
                error,
                utc_now() if state == ResolutionState.FAILED else None,
            ),
        )
        imported += 1
    return imported
