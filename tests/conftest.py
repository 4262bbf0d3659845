"""
Pytest fixtures and test configuration for isbnscout tests.
"""

import copy
import uuid
from typing import Any, Dict, List, Optional

import pytest

from isbnscout.config import SyncSettings
from isbnscout.errors import IdentityConflictError, ReferentialIntegrityError
from isbnscout.storage import (
    ConnectivityGate,
    HybridStorage,
    SQLiteStorage,
    SyncEngine,
    SyncLedger,
)
from isbnscout.storage.base import RECORD_TABLES, table_for
from isbnscout.types import ApiCredentials, Book, EntityType, User, utc_now


class FakeRemoteStore:
    """In-memory cloud store implementing the RecordStore protocol.

    Enforces primary and natural-key uniqueness like the hosted database and,
    with ``enforce_parents=True``, that ``user_id`` references a known user.
    Failures are scripted with ``fail_next``.
    """

    def __init__(self, enforce_parents: bool = False):
        self.tables: Dict[EntityType, Dict[str, Any]] = {et: {} for et in RECORD_TABLES}
        self.enforce_parents = enforce_parents
        self.calls: List[tuple] = []
        self._failures: List[dict] = []

    # --- scripting ---

    def fail_next(
        self,
        method: str,
        exc: Exception,
        entity_type: Optional[EntityType] = None,
        times: int = 1,
    ):
        """Raise ``exc`` on the next ``times`` calls to ``method``."""
        self._failures.append(
            {"method": method, "exc": exc, "entity_type": entity_type, "remaining": times}
        )

    def _maybe_fail(self, method: str, entity_type: EntityType):
        for failure in self._failures:
            if failure["method"] != method or failure["remaining"] == 0:
                continue
            if failure["entity_type"] is not None and failure["entity_type"] != entity_type:
                continue
            failure["remaining"] -= 1
            raise failure["exc"]

    def seed(self, entity_type: EntityType, record: Any) -> Any:
        """Put a record in place without going through create()."""
        self.tables[entity_type][record.id] = copy.deepcopy(record)
        return record

    def calls_for(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]

    # --- RecordStore protocol ---

    def create(self, entity_type: EntityType, record: Any) -> Any:
        self.calls.append(("create", entity_type, record.id))
        self._maybe_fail("create", entity_type)
        record = copy.deepcopy(record)
        spec = table_for(entity_type)
        table = self.tables[entity_type]

        if not record.id:
            record.id = str(uuid.uuid4())
        if record.id in table:
            raise IdentityConflictError(f"duplicate key {record.id}", entity_type=entity_type.value)
        for natural_key in spec.natural_keys:
            values = tuple(getattr(record, name) for name in natural_key)
            for existing in table.values():
                if tuple(getattr(existing, name) for name in natural_key) == values:
                    raise IdentityConflictError(
                        f"duplicate {natural_key}", entity_type=entity_type.value
                    )
        if self.enforce_parents and spec.owner_field is not None:
            if getattr(record, spec.owner_field) not in self.tables[EntityType.USER]:
                raise ReferentialIntegrityError(
                    "missing parent user", entity_type=entity_type.value
                )

        for name in spec.created_fields:
            if getattr(record, name) is None:
                setattr(record, name, utc_now())
        table[record.id] = record
        return copy.deepcopy(record)

    def get(self, entity_type: EntityType, key: str) -> Optional[Any]:
        self.calls.append(("get", entity_type, key))
        self._maybe_fail("get", entity_type)
        record = self.tables[entity_type].get(key)
        return copy.deepcopy(record) if record else None

    def find_one(self, entity_type: EntityType, **filters: Any) -> Optional[Any]:
        self.calls.append(("find_one", entity_type, tuple(sorted(filters.items()))))
        self._maybe_fail("find_one", entity_type)
        for record in self.tables[entity_type].values():
            if all(getattr(record, k) == v for k, v in filters.items()):
                return copy.deepcopy(record)
        return None

    def list_for_owner(self, entity_type: EntityType, owner_key: str, **filters: Any) -> List[Any]:
        self.calls.append(("list_for_owner", entity_type, owner_key))
        self._maybe_fail("list_for_owner", entity_type)
        return [
            copy.deepcopy(r)
            for r in self.tables[entity_type].values()
            if r.user_id == owner_key and all(getattr(r, k) == v for k, v in filters.items())
        ]

    def update(self, entity_type: EntityType, key: str, updates: Dict[str, Any]) -> Optional[Any]:
        self.calls.append(("update", entity_type, key))
        self._maybe_fail("update", entity_type)
        record = self.tables[entity_type].get(key)
        if record is None:
            return None
        for name, value in updates.items():
            if name != "id":
                setattr(record, name, value)
        return copy.deepcopy(record)

    def upsert_credentials(
        self,
        user_id: str,
        platform: str,
        credentials: Dict[str, Any],
        record_id: Optional[str] = None,
    ) -> ApiCredentials:
        self.calls.append(("upsert_credentials", EntityType.API_CREDENTIALS, (user_id, platform)))
        self._maybe_fail("upsert_credentials", EntityType.API_CREDENTIALS)
        table = self.tables[EntityType.API_CREDENTIALS]
        for record in table.values():
            if record.user_id == user_id and record.platform == platform:
                record.credentials = dict(credentials)
                return copy.deepcopy(record)
        record = ApiCredentials(
            id=record_id or str(uuid.uuid4()),
            user_id=user_id,
            platform=platform,
            credentials=dict(credentials),
        )
        table[record.id] = record
        return copy.deepcopy(record)


def make_user(user_id: str = "U1", **kwargs) -> User:
    defaults = {
        "username": f"reader-{user_id}",
        "email": f"{user_id.lower()}@example.com",
        "password": "hashed",
    }
    defaults.update(kwargs)
    return User(id=user_id, **defaults)


def make_book(isbn: str = "9780140449136", user_id: str = "U1", **kwargs) -> Book:
    kwargs.setdefault("title", "The Odyssey")
    return Book(id=kwargs.pop("id", ""), user_id=user_id, isbn=isbn, **kwargs)


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "isbn-scout-offline.db"


@pytest.fixture
def local(temp_db):
    storage = SQLiteStorage(db_path=temp_db)
    yield storage
    storage.close()


@pytest.fixture
def local_user(local):
    """A user that exists in the local store (not queued for sync)."""
    return local.create(EntityType.USER, make_user("U1"))


@pytest.fixture
def ledger(local):
    return SyncLedger(local, max_retries=5)


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def gate():
    return ConnectivityGate(online=True)


@pytest.fixture
def engine(ledger, remote, gate):
    eng = SyncEngine(ledger, remote, gate, sync_interval=3600)
    yield eng
    eng.stop()


@pytest.fixture
def settings(temp_db):
    return SyncSettings(
        db_path=temp_db,
        sync_interval=3600,
        enqueue_trigger_delay=0.0,
        reconnect_delay=0.2,
    )


@pytest.fixture
def storage(local, remote, gate, settings):
    """HybridStorage over a temp SQLite file and the fake remote. Worker not started."""
    hybrid = HybridStorage(local, remote, settings, gate=gate)
    yield hybrid
    hybrid.stop()
