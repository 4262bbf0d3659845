"""Mutation handlers for the sync ledger.

Every ``(entity type, operation)`` pair that can be written through the
storage facade has exactly one handler. The same handler applies the
mutation to the local store at write time and replays it against the cloud
store during a drain, since both implement ``RecordStore``.

The set of pairs is closed (``SUPPORTED_MUTATIONS``); building a
``HandlerRegistry`` that misses or adds a pair fails at construction time
instead of at drain time.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Tuple

from isbnscout.errors import PermanentStoreError, RecordNotFoundError, UnknownMutationError
from isbnscout.types import RECORD_CLASSES, EntityType, Operation, record_from_dict, record_to_dict

from .base import RecordStore, table_for

logger = logging.getLogger(__name__)

MutationKey = Tuple[EntityType, Operation]

SUPPORTED_MUTATIONS = frozenset(
    {
        (EntityType.USER, Operation.CREATE),
        (EntityType.USER, Operation.UPDATE),
        (EntityType.BOOK, Operation.CREATE),
        (EntityType.BOOK, Operation.UPDATE),
        (EntityType.LISTING, Operation.CREATE),
        (EntityType.LISTING, Operation.UPDATE),
        (EntityType.INVENTORY_ITEM, Operation.CREATE),
        (EntityType.INVENTORY_ITEM, Operation.UPDATE),
        (EntityType.API_CREDENTIALS, Operation.UPSERT),
        (EntityType.REPRICING_RULE, Operation.CREATE),
        (EntityType.REPRICING_RULE, Operation.UPDATE),
        (EntityType.REPRICING_HISTORY, Operation.CREATE),
    }
)


def is_supported(entity_type: Any, operation: Any) -> bool:
    """Whether a pair (enum members or their string values) has a handler."""
    try:
        return (EntityType(entity_type), Operation(operation)) in SUPPORTED_MUTATIONS
    except ValueError:
        return False


@dataclass(frozen=True)
class MutationHandler:
    """Typed handler for one (entity type, operation) pair.

    Attributes:
        apply: Applies the payload to a store and returns the stored record.
        record_key: Identity of the record the payload touches, used to keep
            same-record entries in order within a drain batch.
        to_ledger_payload: What to persist in the ledger once the local write
            succeeded (creates store the full record so ids match remotely).
        find_existing: For creates, looks up a record with the same natural
            identity; used to reconcile duplicate-key failures.
    """

    entity_type: EntityType
    operation: Operation
    apply: Callable[[RecordStore, Dict[str, Any]], Any]
    record_key: Callable[[Dict[str, Any]], Optional[str]]
    to_ledger_payload: Callable[[Any, Dict[str, Any]], Dict[str, Any]]
    find_existing: Optional[Callable[[RecordStore, Dict[str, Any]], Optional[Any]]] = None

    @property
    def key(self) -> MutationKey:
        return (self.entity_type, self.operation)


def build_record(entity_type: EntityType, payload: Dict[str, Any]) -> Any:
    """Build a record dataclass from a create payload."""
    cls = RECORD_CLASSES[entity_type]
    data = dict(payload)
    data.setdefault("id", "")
    try:
        return record_from_dict(cls, data)
    except (TypeError, ValueError) as e:
        raise PermanentStoreError(
            f"Invalid {entity_type.value} payload: {e}", entity_type=entity_type.value
        ) from e


# === Create ===


def _make_create(entity_type: EntityType) -> MutationHandler:
    spec = table_for(entity_type)

    def apply(store: RecordStore, payload: Dict[str, Any]) -> Any:
        return store.create(entity_type, build_record(entity_type, payload))

    def find_existing(store: RecordStore, payload: Dict[str, Any]) -> Optional[Any]:
        record_id = payload.get("id")
        if record_id:
            existing = store.get(entity_type, record_id)
            if existing is not None:
                return existing
        for natural_key in spec.natural_keys:
            if all(payload.get(name) is not None for name in natural_key):
                existing = store.find_one(
                    entity_type, **{name: payload[name] for name in natural_key}
                )
                if existing is not None:
                    return existing
        return None

    return MutationHandler(
        entity_type=entity_type,
        operation=Operation.CREATE,
        apply=apply,
        record_key=lambda payload: payload.get("id"),
        to_ledger_payload=lambda record, payload: record_to_dict(record),
        find_existing=find_existing,
    )


# === Update ===


def _resolve_update_key(store: RecordStore, entity_type: EntityType, payload: Dict[str, Any]) -> str:
    record_id = payload.get("id")
    if record_id:
        return record_id
    # Book updates were historically keyed by ISBN
    if entity_type == EntityType.BOOK and payload.get("isbn"):
        filters = {"isbn": payload["isbn"]}
        if payload.get("user_id"):
            filters["user_id"] = payload["user_id"]
        book = store.find_one(EntityType.BOOK, **filters)
        if book is None:
            raise RecordNotFoundError(entity_type.value, payload["isbn"])
        return book.id
    raise PermanentStoreError(
        f"{entity_type.value} update payload has no id", entity_type=entity_type.value
    )


def _make_update(entity_type: EntityType) -> MutationHandler:
    def apply(store: RecordStore, payload: Dict[str, Any]) -> Any:
        key = _resolve_update_key(store, entity_type, payload)
        updates = payload.get("updates") or {}
        result = store.update(entity_type, key, updates)
        if result is None:
            raise RecordNotFoundError(entity_type.value, key)
        return result

    def to_ledger_payload(record: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {"id": record.id, "updates": dict(payload.get("updates") or {})}

    return MutationHandler(
        entity_type=entity_type,
        operation=Operation.UPDATE,
        apply=apply,
        record_key=lambda payload: payload.get("id") or payload.get("isbn"),
        to_ledger_payload=to_ledger_payload,
    )


# === Upsert ===


def _apply_credentials_upsert(store: RecordStore, payload: Dict[str, Any]) -> Any:
    try:
        user_id = payload["user_id"]
        platform = payload["platform"]
    except KeyError as e:
        raise PermanentStoreError(
            f"api_credentials payload missing {e}", entity_type=EntityType.API_CREDENTIALS.value
        ) from e
    return store.upsert_credentials(
        user_id, platform, payload.get("credentials") or {}, record_id=payload.get("id")
    )


def _credentials_ledger_payload(record: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": record.id,
        "user_id": record.user_id,
        "platform": record.platform,
        "credentials": record.credentials,
    }


_CREDENTIALS_UPSERT = MutationHandler(
    entity_type=EntityType.API_CREDENTIALS,
    operation=Operation.UPSERT,
    apply=_apply_credentials_upsert,
    record_key=lambda payload: f"{payload.get('user_id')}:{payload.get('platform')}",
    to_ledger_payload=_credentials_ledger_payload,
)


# === Registry ===


class HandlerRegistry:
    """Closed dispatch table from (entity type, operation) to handler."""

    def __init__(self, handlers: Iterable[MutationHandler]):
        self._handlers: Dict[MutationKey, MutationHandler] = {}
        for handler in handlers:
            if handler.key in self._handlers:
                raise ValueError(
                    f"Duplicate handler for {handler.entity_type.value}/{handler.operation.value}"
                )
            self._handlers[handler.key] = handler

        missing = SUPPORTED_MUTATIONS - set(self._handlers)
        extra = set(self._handlers) - SUPPORTED_MUTATIONS
        if missing or extra:
            raise ValueError(
                "Handler registry does not match supported mutations: "
                f"missing={sorted(f'{e.value}/{o.value}' for e, o in missing)} "
                f"unexpected={sorted(f'{e.value}/{o.value}' for e, o in extra)}"
            )

    def resolve(self, entity_type: Any, operation: Any) -> MutationHandler:
        """Find the handler for a pair, raising UnknownMutationError if unsupported."""
        try:
            key = (EntityType(entity_type), Operation(operation))
        except ValueError as e:
            raise UnknownMutationError(str(entity_type), str(operation)) from e
        handler = self._handlers.get(key)
        if handler is None:
            raise UnknownMutationError(key[0].value, key[1].value)
        return handler

    def __contains__(self, key) -> bool:
        return key in self._handlers

    def __iter__(self) -> Iterator[MutationHandler]:
        return iter(self._handlers.values())

    def __len__(self) -> int:
        return len(self._handlers)


def default_handlers() -> list:
    handlers = []
    for entity_type in (
        EntityType.USER,
        EntityType.BOOK,
        EntityType.LISTING,
        EntityType.INVENTORY_ITEM,
        EntityType.REPRICING_RULE,
    ):
        handlers.append(_make_create(entity_type))
        handlers.append(_make_update(entity_type))
    handlers.append(_CREDENTIALS_UPSERT)
    # History rows are append-only
    handlers.append(_make_create(EntityType.REPRICING_HISTORY))
    return handlers


def default_registry() -> HandlerRegistry:
    return HandlerRegistry(default_handlers())
