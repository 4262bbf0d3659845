"""Offline-first storage facade.

HybridStorage is the single read/write surface the application uses:

- Writes always land in the local SQLite store first, together with a sync
  ledger entry in the same transaction. The sync engine replays the entry
  against the cloud store in the background.
- Keyed reads prefer the cloud store while online, since other devices may
  have written there, and fall back to the local store on any miss or error.
- Collection reads are always local so list views never wait on the network.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from isbnscout.config import SyncSettings, load_settings
from isbnscout.errors import RecordNotFoundError, ReferentialIntegrityError
from isbnscout.types import (
    ApiCredentials,
    Book,
    DrainResult,
    EntityType,
    InventoryItem,
    Listing,
    Operation,
    RepricingHistory,
    RepricingRule,
    SyncHealth,
    User,
    record_to_dict,
)

from .base import RecordStore
from .cloud import CloudStorage
from .connectivity import ConnectivityGate
from .handlers import HandlerRegistry, default_registry
from .ledger import SyncLedger
from .sqlite import SQLiteStorage
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class HybridStorage:
    """Local-first storage with background replication to the cloud.

    Args:
        local: The local SQLite store. Also hosts the sync ledger.
        remote: The cloud store, or None to run local-only.
        settings: Sync tunables; defaults to ``SyncSettings()``.
        gate: Connectivity gate shared with the host; one is created from
            ``settings.start_online`` if omitted.
        registry: Mutation handlers; defaults to the built-in registry.
    """

    def __init__(
        self,
        local: SQLiteStorage,
        remote: Optional[RecordStore] = None,
        settings: Optional[SyncSettings] = None,
        gate: Optional[ConnectivityGate] = None,
        registry: Optional[HandlerRegistry] = None,
    ):
        self.settings = settings or SyncSettings()
        self._local = local
        self._remote = remote
        self._registry = registry or default_registry()
        self.gate = gate or ConnectivityGate(online=self.settings.start_online)
        self.ledger = SyncLedger(
            local,
            max_retries=self.settings.max_retries,
            resolved_retention_days=self.settings.resolved_retention_days,
            failed_retention_days=self.settings.failed_retention_days,
        )
        self.engine = SyncEngine(
            self.ledger,
            remote,
            self.gate,
            self._registry,
            batch_size=self.settings.batch_size,
            sync_interval=self.settings.sync_interval,
            reconnect_delay=self.settings.reconnect_delay,
            identity_conflict_retries=self.settings.identity_conflict_retries,
        )

    @property
    def local(self) -> SQLiteStorage:
        return self._local

    @property
    def remote(self) -> Optional[RecordStore]:
        return self._remote

    @property
    def is_online(self) -> bool:
        return self.gate.is_open

    # === Lifecycle ===

    def start(self) -> "HybridStorage":
        self.engine.start()
        return self

    def stop(self) -> None:
        self.engine.stop()

    def close(self) -> None:
        self.stop()
        if self._remote is not None and hasattr(self._remote, "close"):
            self._remote.close()
        self._local.close()

    def __enter__(self) -> "HybridStorage":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # === Host hooks ===

    def set_online_status(self, online: bool) -> None:
        """Report connectivity. Going online schedules a drain shortly after."""
        self.gate.set_online_status(online)

    def force_sync_now(self) -> DrainResult:
        """Run one drain cycle synchronously and return its result."""
        return self.engine.force_sync_now()

    def get_sync_status(self) -> SyncHealth:
        return self.engine.get_status()

    # === Generic surface ===

    def write(self, entity_type: EntityType, operation: Operation, payload: Dict[str, Any]) -> Any:
        """Persist a mutation locally and queue it for the cloud.

        Returns the locally persisted record, or None for an update whose
        target does not exist locally (nothing is queued in that case).

        If the local write fails because a referenced parent record only
        exists remotely, and the gate is open, the mutation is applied to the
        cloud store directly and that result is returned without a ledger
        entry.
        """
        handler = self._registry.resolve(entity_type, operation)
        try:
            with self._local.transaction():
                record = handler.apply(self._local, payload)
                self.ledger.enqueue(
                    handler.entity_type,
                    handler.operation,
                    handler.to_ledger_payload(record, payload),
                )
        except RecordNotFoundError as e:
            if handler.operation != Operation.UPDATE:
                raise
            logger.debug(f"Local update skipped: {e}")
            return None
        except ReferentialIntegrityError as e:
            if not (self.gate.is_open and self._remote is not None):
                raise
            logger.warning(
                f"Local {handler.entity_type.value} write references a record missing "
                f"locally, writing directly to cloud: {e}"
            )
            return handler.apply(self._remote, payload)

        if self.gate.is_open:
            self.engine.request_drain(self.settings.enqueue_trigger_delay)
        return record

    def read_by_key(self, entity_type: EntityType, key: str) -> Optional[Any]:
        """Read one record by id, cloud first while online."""
        entity_type = EntityType(entity_type)
        return self._read(
            entity_type, lambda store: store.get(entity_type, key), f"{entity_type.value} {key}"
        )

    def read_by_field(self, entity_type: EntityType, **filters: Any) -> Optional[Any]:
        """Read one record by secondary key (username, email, isbn, ...), cloud first while online."""
        entity_type = EntityType(entity_type)
        description = f"{entity_type.value} " + ", ".join(f"{k}={v}" for k, v in filters.items())
        return self._read(
            entity_type, lambda store: store.find_one(entity_type, **filters), description
        )

    def read_collection(self, entity_type: EntityType, owner_key: str, **filters: Any) -> List[Any]:
        """List a user's records, optionally narrowed by column filters. Always local."""
        return self._local.list_for_owner(EntityType(entity_type), owner_key, **filters)

    def _read(
        self,
        entity_type: EntityType,
        fetch: Callable[[RecordStore], Optional[Any]],
        description: str,
    ) -> Optional[Any]:
        if self.gate.is_open and self._remote is not None:
            try:
                record = fetch(self._remote)
            except Exception as e:
                logger.warning(f"Remote read of {description} failed, using local: {e}")
            else:
                if record is not None:
                    return record
                logger.debug(f"{description} not found remotely, checking local")
        return fetch(self._local)

    # === Users ===

    def create_user(self, user: User) -> User:
        return self.write(EntityType.USER, Operation.CREATE, record_to_dict(user))

    def update_user(self, user_id: str, updates: Dict[str, Any]) -> Optional[User]:
        return self.write(EntityType.USER, Operation.UPDATE, {"id": user_id, "updates": updates})

    def get_user(self, user_id: str) -> Optional[User]:
        return self.read_by_key(EntityType.USER, user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self.read_by_field(EntityType.USER, username=username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.read_by_field(EntityType.USER, email=email)

    # === API credentials ===

    def save_api_credentials(
        self, user_id: str, platform: str, credentials: Dict[str, Any]
    ) -> ApiCredentials:
        return self.write(
            EntityType.API_CREDENTIALS,
            Operation.UPSERT,
            {"user_id": user_id, "platform": platform, "credentials": credentials},
        )

    def get_api_credentials(self, user_id: str, platform: str) -> Optional[ApiCredentials]:
        return self.read_by_field(EntityType.API_CREDENTIALS, user_id=user_id, platform=platform)

    # === Books ===

    def create_book(self, book: Book) -> Book:
        return self.write(EntityType.BOOK, Operation.CREATE, record_to_dict(book))

    def update_book(
        self, isbn: str, updates: Dict[str, Any], user_id: Optional[str] = None
    ) -> Optional[Book]:
        """Update a book found by ISBN (scoped to ``user_id`` when given)."""
        payload: Dict[str, Any] = {"isbn": isbn, "updates": updates}
        if user_id:
            payload["user_id"] = user_id
        return self.write(EntityType.BOOK, Operation.UPDATE, payload)

    def get_book(self, book_id: str) -> Optional[Book]:
        return self.read_by_key(EntityType.BOOK, book_id)

    def get_book_by_isbn(self, isbn: str, user_id: Optional[str] = None) -> Optional[Book]:
        filters = {"isbn": isbn}
        if user_id:
            filters["user_id"] = user_id
        return self.read_by_field(EntityType.BOOK, **filters)

    def get_books(self, user_id: str) -> List[Book]:
        return self.read_collection(EntityType.BOOK, user_id)

    # === Listings ===

    def create_listing(self, listing: Listing) -> Listing:
        return self.write(EntityType.LISTING, Operation.CREATE, record_to_dict(listing))

    def update_listing(self, listing_id: str, updates: Dict[str, Any]) -> Optional[Listing]:
        return self.write(
            EntityType.LISTING, Operation.UPDATE, {"id": listing_id, "updates": updates}
        )

    def update_listing_status(
        self, listing_id: str, status: str, error_message: Optional[str] = None
    ) -> Optional[Listing]:
        updates: Dict[str, Any] = {"status": status}
        if error_message is not None:
            updates["error_message"] = error_message
        return self.update_listing(listing_id, updates)

    def get_listing(self, listing_id: str) -> Optional[Listing]:
        return self.read_by_key(EntityType.LISTING, listing_id)

    def update_listing_price(self, listing_id: str, new_price: str) -> Optional[Listing]:
        return self.update_listing(listing_id, {"price": new_price})

    def get_listings(self, user_id: str) -> List[Listing]:
        return self.read_collection(EntityType.LISTING, user_id)

    def get_listings_by_book(self, user_id: str, book_id: str) -> List[Listing]:
        return self.read_collection(EntityType.LISTING, user_id, book_id=book_id)

    # === Inventory ===

    def create_inventory_item(self, item: InventoryItem) -> InventoryItem:
        return self.write(EntityType.INVENTORY_ITEM, Operation.CREATE, record_to_dict(item))

    def update_inventory_item(
        self, item_id: str, updates: Dict[str, Any]
    ) -> Optional[InventoryItem]:
        return self.write(
            EntityType.INVENTORY_ITEM, Operation.UPDATE, {"id": item_id, "updates": updates}
        )

    def get_inventory_item(self, item_id: str) -> Optional[InventoryItem]:
        return self.read_by_key(EntityType.INVENTORY_ITEM, item_id)

    def get_inventory_items(self, user_id: str) -> List[InventoryItem]:
        return self.read_collection(EntityType.INVENTORY_ITEM, user_id)

    def get_inventory_items_by_book(self, user_id: str, book_id: str) -> List[InventoryItem]:
        return self.read_collection(EntityType.INVENTORY_ITEM, user_id, book_id=book_id)

    # === Repricing ===

    def create_repricing_rule(self, rule: RepricingRule) -> RepricingRule:
        return self.write(EntityType.REPRICING_RULE, Operation.CREATE, record_to_dict(rule))

    def update_repricing_rule(
        self, rule_id: str, updates: Dict[str, Any]
    ) -> Optional[RepricingRule]:
        return self.write(
            EntityType.REPRICING_RULE, Operation.UPDATE, {"id": rule_id, "updates": updates}
        )

    def get_repricing_rule(self, rule_id: str) -> Optional[RepricingRule]:
        return self.read_by_key(EntityType.REPRICING_RULE, rule_id)

    def get_repricing_rules(self, user_id: str) -> List[RepricingRule]:
        return self.read_collection(EntityType.REPRICING_RULE, user_id)

    def get_active_rules_for_listing(
        self, user_id: str, listing_id: str, platform: str
    ) -> List[RepricingRule]:
        """Active rules that apply to a listing, listing-specific rules first.

        A rule applies when it targets this listing or all listings, and its
        platform is this platform or ``all``.
        """
        rules = [
            rule
            for rule in self.read_collection(EntityType.REPRICING_RULE, user_id, is_active="true")
            if rule.listing_id in (None, listing_id) and rule.platform in ("all", platform)
        ]
        return sorted(rules, key=lambda rule: rule.listing_id is None)

    def create_repricing_history(self, history: RepricingHistory) -> RepricingHistory:
        return self.write(
            EntityType.REPRICING_HISTORY, Operation.CREATE, record_to_dict(history)
        )

    def get_repricing_history(
        self, user_id: str, listing_id: Optional[str] = None
    ) -> List[RepricingHistory]:
        filters = {"listing_id": listing_id} if listing_id else {}
        return self.read_collection(EntityType.REPRICING_HISTORY, user_id, **filters)


def open_storage(settings: Optional[SyncSettings] = None) -> HybridStorage:
    """Wire up local store, ledger, cloud store (when configured), gate and engine.

    The sync worker is not started; call ``start()`` or use the result as a
    context manager.
    """
    settings = settings or load_settings()
    local = SQLiteStorage(settings.resolved_db_path())
    remote = None
    if settings.remote_configured:
        remote = CloudStorage(
            settings.backend_url, api_key=settings.api_key, timeout=settings.remote_timeout
        )
    else:
        logger.info("No backend_url configured, running local-only")
    return HybridStorage(local, remote, settings)
