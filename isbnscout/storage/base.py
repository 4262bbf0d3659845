"""Storage protocol for isbnscout backends.

This defines the record interface that both stores implement, so the same
mutation handler can be applied locally (at write time) or remotely (when
the sync engine replays the ledger).

Currently supported:
- SQLiteStorage: local-first embedded store, always available
- CloudStorage: PostgREST/Supabase tables over HTTP, reachable when online
"""

from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from isbnscout.types import (
    ApiCredentials,
    Book,
    EntityType,
    InventoryItem,
    Listing,
    RepricingHistory,
    RepricingRule,
    User,
)


@dataclass(frozen=True)
class RecordTable:
    """How one entity type is laid out in both stores."""

    entity_type: EntityType
    table: str
    record_cls: type
    owner_field: Optional[str] = "user_id"
    # Timestamp columns stamped by the store on create / on every update
    created_fields: Tuple[str, ...] = ()
    touched_fields: Tuple[str, ...] = ()
    # Alternate unique identities, checked during duplicate reconciliation
    natural_keys: Tuple[Tuple[str, ...], ...] = ()
    # Newest-first ordering for collection reads
    order_by: str = "id"


RECORD_TABLES: Dict[EntityType, RecordTable] = {
    EntityType.USER: RecordTable(
        EntityType.USER,
        "users",
        User,
        owner_field=None,
        created_fields=("created_at", "updated_at"),
        touched_fields=("updated_at",),
        natural_keys=(("username",), ("email",)),
        order_by="created_at",
    ),
    EntityType.API_CREDENTIALS: RecordTable(
        EntityType.API_CREDENTIALS,
        "api_credentials",
        ApiCredentials,
        created_fields=("created_at", "updated_at"),
        touched_fields=("updated_at",),
        natural_keys=(("user_id", "platform"),),
        order_by="updated_at",
    ),
    EntityType.BOOK: RecordTable(
        EntityType.BOOK,
        "books",
        Book,
        created_fields=("scanned_at",),
        order_by="scanned_at",
    ),
    EntityType.LISTING: RecordTable(
        EntityType.LISTING,
        "listings",
        Listing,
        created_fields=("listed_at", "updated_at"),
        touched_fields=("updated_at",),
        order_by="listed_at",
    ),
    EntityType.INVENTORY_ITEM: RecordTable(
        EntityType.INVENTORY_ITEM,
        "inventory_items",
        InventoryItem,
        created_fields=("purchase_date", "created_at", "updated_at"),
        touched_fields=("updated_at",),
        order_by="created_at",
    ),
    EntityType.REPRICING_RULE: RecordTable(
        EntityType.REPRICING_RULE,
        "repricing_rules",
        RepricingRule,
        created_fields=("created_at", "updated_at"),
        touched_fields=("updated_at",),
        order_by="created_at",
    ),
    EntityType.REPRICING_HISTORY: RecordTable(
        EntityType.REPRICING_HISTORY,
        "repricing_history",
        RepricingHistory,
        created_fields=("created_at",),
        order_by="created_at",
    ),
}


def table_for(entity_type: EntityType) -> RecordTable:
    """Look up the table layout for an entity type."""
    return RECORD_TABLES[EntityType(entity_type)]


@runtime_checkable
class RecordStore(Protocol):
    """Protocol defining the record interface shared by local and cloud stores.

    Stores raise the typed errors from ``isbnscout.errors``:
    IdentityConflictError on primary/unique key clashes,
    ReferentialIntegrityError on missing parents,
    TransientStoreError for retryable failures.
    """

    @abstractmethod
    def create(self, entity_type: EntityType, record: Any) -> Any:
        """Insert a record. Returns the stored record."""
        ...

    @abstractmethod
    def get(self, entity_type: EntityType, key: str) -> Optional[Any]:
        """Get a record by primary key, or None."""
        ...

    @abstractmethod
    def find_one(self, entity_type: EntityType, **filters: Any) -> Optional[Any]:
        """Get the first record whose columns equal all ``filters``, or None."""
        ...

    @abstractmethod
    def list_for_owner(self, entity_type: EntityType, owner_key: str, **filters: Any) -> List[Any]:
        """List records owned by a user, newest first, optionally narrowed by column filters."""
        ...

    @abstractmethod
    def update(self, entity_type: EntityType, key: str, updates: Dict[str, Any]) -> Optional[Any]:
        """Apply a partial update. Returns the updated record, or None if missing."""
        ...

    @abstractmethod
    def upsert_credentials(
        self,
        user_id: str,
        platform: str,
        credentials: Dict[str, Any],
        record_id: Optional[str] = None,
    ) -> ApiCredentials:
        """Insert or replace the credentials for (user_id, platform).

        ``record_id`` is only used when no row exists yet, so the first replay
        keeps the id the record was given locally.
        """
        ...
