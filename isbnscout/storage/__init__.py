"""isbnscout storage backends.

Local-first storage using SQLite, replicated to the cloud through a durable
sync ledger.
"""

from isbnscout.types import (
    ApiCredentials,
    Book,
    DrainResult,
    EntityType,
    InventoryItem,
    LedgerEntry,
    Listing,
    Operation,
    RepricingHistory,
    RepricingRule,
    ResolutionState,
    SyncHealth,
    User,
)

from .base import RecordStore, RecordTable, table_for
from .cloud import CloudStorage
from .connectivity import ConnectivityGate
from .handlers import HandlerRegistry, MutationHandler, default_registry
from .hybrid import HybridStorage, open_storage
from .ledger import SyncLedger
from .sqlite import SQLiteStorage
from .sync_engine import SyncEngine

__all__ = [
    # Protocol and types
    "RecordStore",
    "RecordTable",
    "table_for",
    "EntityType",
    "Operation",
    "ResolutionState",
    "LedgerEntry",
    "DrainResult",
    "SyncHealth",
    # Records
    "User",
    "ApiCredentials",
    "Book",
    "Listing",
    "InventoryItem",
    "RepricingRule",
    "RepricingHistory",
    # Implementations
    "SQLiteStorage",
    "CloudStorage",
    "SyncLedger",
    "SyncEngine",
    "ConnectivityGate",
    "HandlerRegistry",
    "MutationHandler",
    "default_registry",
    "HybridStorage",
    "open_storage",
]
