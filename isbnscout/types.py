"""
Shared record types for isbnscout.

All record dataclasses live here. They are the vocabulary shared by the
local store, the cloud store, the sync ledger and the storage facade: the
facade creates a Book, the local store persists it, the ledger carries its
serialized form, and the cloud store replays it remotely.
"""

import json
import typing
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Union

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string. Naive values are assumed to be UTC."""
    if not s:
        return None
    if isinstance(s, datetime):
        parsed = s
    else:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# === Enums ===


class EntityType(str, Enum):
    """Kinds of record the sync engine knows how to replay remotely.

    The set is closed: every member must have at least one registered
    mutation handler (see ``isbnscout.storage.handlers``).
    """

    USER = "user"
    BOOK = "book"
    LISTING = "listing"
    INVENTORY_ITEM = "inventory_item"
    API_CREDENTIALS = "api_credentials"
    REPRICING_RULE = "repricing_rule"
    REPRICING_HISTORY = "repricing_history"


class Operation(str, Enum):
    """Mutation kinds that can be queued in the sync ledger."""

    CREATE = "create"
    UPDATE = "update"
    UPSERT = "upsert"


class ResolutionState(IntEnum):
    """Lifecycle state of a ledger entry, persisted as an integer."""

    PENDING = 0
    RESOLVED = 1
    FAILED = -1  # permanently failed (classified or exhausted retries)


# === Records ===


@dataclass
class User:
    """An application account."""

    id: str
    username: str
    email: str
    password: str
    subscription_tier: str = "trial"  # trial, basic, pro, enterprise
    subscription_status: str = "trialing"  # active, cancelled, past_due, trialing
    subscription_expires_at: Optional[datetime] = None
    trial_started_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ApiCredentials:
    """Marketplace API credentials for one user and platform (ebay, amazon)."""

    id: str
    user_id: str
    platform: str
    credentials: Dict[str, Any] = field(default_factory=dict)
    is_active: str = "true"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Book:
    """A scanned book and the pricing snapshot taken at scan time."""

    id: str
    user_id: str
    isbn: str
    title: str = ""
    author: Optional[str] = None
    thumbnail: Optional[str] = None
    amazon_price: Optional[str] = None
    ebay_price: Optional[str] = None
    your_cost: Optional[str] = None
    profit: Optional[str] = None
    status: str = "pending"  # profitable, break-even, loss, pending
    scanned_at: Optional[datetime] = None


@dataclass
class Listing:
    """A marketplace listing created for a book."""

    id: str
    user_id: str
    book_id: str
    platform: str
    price: str
    condition: str
    quantity: str = "1"
    status: str = "pending"  # pending, active, sold, failed, cancelled
    platform_listing_id: Optional[str] = None
    description: Optional[str] = None
    error_message: Optional[str] = None
    listed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class InventoryItem:
    """A physical copy held in stock."""

    id: str
    user_id: str
    book_id: str
    purchase_date: Optional[datetime] = None
    purchase_cost: str = "0.00"
    condition: str = "good"
    listing_id: Optional[str] = None
    sku: Optional[str] = None
    purchase_source: Optional[str] = None
    location: Optional[str] = None
    sold_date: Optional[datetime] = None
    sale_price: Optional[str] = None
    sold_platform: Optional[str] = None
    actual_profit: Optional[str] = None
    status: str = "in_stock"  # in_stock, listed, sold, returned, donated
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class RepricingRule:
    """Automatic repricing policy for one listing, or for all of a user's listings."""

    id: str
    user_id: str
    platform: str  # ebay, amazon, all
    strategy: str  # match_lowest, beat_by_percent, beat_by_amount, target_margin
    min_price: str
    max_price: str
    listing_id: Optional[str] = None  # None applies the rule to every listing
    strategy_value: Optional[str] = None
    is_active: str = "true"
    run_frequency: str = "hourly"
    last_run: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class RepricingHistory:
    """One price change (or attempted change) applied to a listing."""

    id: str
    user_id: str
    listing_id: str
    old_price: str
    new_price: str
    reason: str
    rule_id: Optional[str] = None
    competitor_price: Optional[str] = None
    success: str = "true"
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None


RECORD_CLASSES = {
    EntityType.USER: User,
    EntityType.API_CREDENTIALS: ApiCredentials,
    EntityType.BOOK: Book,
    EntityType.LISTING: Listing,
    EntityType.INVENTORY_ITEM: InventoryItem,
    EntityType.REPRICING_RULE: RepricingRule,
    EntityType.REPRICING_HISTORY: RepricingHistory,
}


def _is_datetime_field(f) -> bool:
    hint = f.type
    if isinstance(hint, str):
        return "datetime" in hint
    return hint is datetime or datetime in typing.get_args(hint)


def record_to_dict(record: Any) -> Dict[str, Any]:
    """Convert a record dataclass to a JSON-friendly dict."""
    d = asdict(record)
    for k, v in d.items():
        if isinstance(v, datetime):
            d[k] = v.isoformat()
    return d


def record_from_dict(cls, data: Dict[str, Any]):
    """Build a record dataclass from a dict, ignoring unknown keys.

    Datetime fields are parsed from ISO strings; JSON-encoded dict fields
    (credentials) are decoded.
    """
    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        if value is not None and _is_datetime_field(f):
            value = parse_datetime(value)
        elif f.name == "credentials" and isinstance(value, str):
            value = json.loads(value)
        kwargs[f.name] = value
    return cls(**kwargs)


def record_field_names(cls) -> List[str]:
    """Column names for a record class, in declaration order."""
    return [f.name for f in fields(cls)]


# === Sync Types ===

DEFAULT_MAX_RETRIES = 5
DEFAULT_BATCH_SIZE = 50


@dataclass
class LedgerEntry:
    """One pending mutation intent awaiting remote application."""

    id: str
    # Raw strings for rows outside the known enums (e.g. imported legacy rows)
    operation: Union[Operation, str]
    entity_type: Union[EntityType, str]
    payload: str  # JSON text, opaque to the ledger
    enqueued_at: datetime
    resolution_state: ResolutionState = ResolutionState.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def decoded_payload(self) -> Any:
        return json.loads(self.payload) if self.payload else {}

    @property
    def entity_name(self) -> str:
        return getattr(self.entity_type, "value", self.entity_type)

    @property
    def operation_name(self) -> str:
        return getattr(self.operation, "value", self.operation)

    @property
    def is_known(self) -> bool:
        """True when both names parse into the known enums."""
        return isinstance(self.entity_type, EntityType) and isinstance(self.operation, Operation)

    @property
    def is_pending(self) -> bool:
        return self.resolution_state == ResolutionState.PENDING


@dataclass
class DrainResult:
    """Outcome of one drain cycle."""

    resolved: int = 0  # includes reconciled entries
    reconciled: int = 0  # identity conflicts confirmed as already applied
    retried: int = 0  # transient failures still pending
    failed: int = 0  # moved to permanently-failed this cycle
    deferred: int = 0  # held back behind an earlier failure for the same record
    cleaned: int = 0  # terminal entries removed by cleanup
    skipped: bool = False
    skip_reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.skipped and len(self.errors) == 0

    @property
    def attempted(self) -> int:
        return self.resolved + self.retried + self.failed


@dataclass
class SyncHealth:
    """Operational view of ledger health for dashboards and the CLI."""

    pending_count: int
    last_successful_sync: Optional[datetime]
    failed_count: int = 0
    resolved_count: int = 0
    pending_by_entity: Dict[str, int] = field(default_factory=dict)
    online: Optional[bool] = None
    drain_in_progress: bool = False
