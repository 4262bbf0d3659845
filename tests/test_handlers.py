"""Tests for the mutation handler registry."""

import pytest
from conftest import FakeRemoteStore, make_book, make_user

from isbnscout.errors import PermanentStoreError, RecordNotFoundError, UnknownMutationError
from isbnscout.storage.handlers import (
    SUPPORTED_MUTATIONS,
    HandlerRegistry,
    default_handlers,
    default_registry,
    is_supported,
)
from isbnscout.types import EntityType, Operation


class TestRegistry:
    def test_default_registry_covers_every_supported_pair(self):
        registry = default_registry()
        assert len(registry) == len(SUPPORTED_MUTATIONS)
        for key in SUPPORTED_MUTATIONS:
            assert key in registry

    def test_every_entity_type_has_a_handler(self):
        covered = {handler.entity_type for handler in default_registry()}
        assert covered == set(EntityType)

    def test_missing_handler_rejected_at_construction(self):
        handlers = [h for h in default_handlers() if h.key != (EntityType.BOOK, Operation.UPDATE)]
        with pytest.raises(ValueError, match="missing"):
            HandlerRegistry(handlers)

    def test_duplicate_handler_rejected(self):
        handlers = default_handlers()
        with pytest.raises(ValueError, match="Duplicate"):
            HandlerRegistry(handlers + handlers[:1])

    def test_resolve_accepts_strings(self):
        handler = default_registry().resolve("inventory_item", "update")
        assert handler.key == (EntityType.INVENTORY_ITEM, Operation.UPDATE)

    @pytest.mark.parametrize(
        "entity_type, operation",
        [
            ("book", "upsert"),
            ("book", "delete"),
            ("repricing_history", "update"),
            ("repricingRule", "create"),
        ],
    )
    def test_resolve_unknown_pair(self, entity_type, operation):
        with pytest.raises(UnknownMutationError):
            default_registry().resolve(entity_type, operation)


class TestHandlers:
    def test_create_and_record_key(self):
        remote = FakeRemoteStore()
        handler = default_registry().resolve(EntityType.BOOK, Operation.CREATE)

        book = handler.apply(remote, {"id": "B1", "user_id": "U1", "isbn": "123"})
        assert book.id == "B1"
        assert handler.record_key({"id": "B1"}) == "B1"

    def test_create_rejects_incomplete_payload(self):
        handler = default_registry().resolve(EntityType.USER, Operation.CREATE)
        with pytest.raises(PermanentStoreError):
            handler.apply(FakeRemoteStore(), {"id": "U1"})

    def test_find_existing_by_natural_key(self):
        remote = FakeRemoteStore()
        remote.seed(EntityType.USER, make_user("other-id", email="same@x.io"))
        handler = default_registry().resolve(EntityType.USER, Operation.CREATE)

        found = handler.find_existing(
            remote, {"id": "U1", "username": "new-name", "email": "same@x.io"}
        )
        assert found.id == "other-id"

    def test_find_existing_none(self):
        handler = default_registry().resolve(EntityType.LISTING, Operation.CREATE)
        assert handler.find_existing(FakeRemoteStore(), {"id": "L1"}) is None

    def test_update_by_isbn(self):
        remote = FakeRemoteStore()
        remote.seed(EntityType.BOOK, make_book("123", id="B1"))
        handler = default_registry().resolve(EntityType.BOOK, Operation.UPDATE)

        book = handler.apply(remote, {"isbn": "123", "updates": {"status": "loss"}})
        assert book.id == "B1"
        assert handler.to_ledger_payload(book, {"isbn": "123", "updates": {"status": "loss"}}) == {
            "id": "B1",
            "updates": {"status": "loss"},
        }

    def test_update_missing_record(self):
        handler = default_registry().resolve(EntityType.LISTING, Operation.UPDATE)
        with pytest.raises(RecordNotFoundError):
            handler.apply(FakeRemoteStore(), {"id": "L1", "updates": {"status": "sold"}})

    def test_update_without_key(self):
        handler = default_registry().resolve(EntityType.USER, Operation.UPDATE)
        with pytest.raises(PermanentStoreError):
            handler.apply(FakeRemoteStore(), {"updates": {}})

    def test_credentials_upsert_key(self):
        handler = default_registry().resolve(EntityType.API_CREDENTIALS, Operation.UPSERT)
        assert handler.record_key({"user_id": "U1", "platform": "ebay"}) == "U1:ebay"
        with pytest.raises(PermanentStoreError):
            handler.apply(FakeRemoteStore(), {"platform": "ebay"})


class TestIsSupported:
    @pytest.mark.parametrize(
        "entity_type, operation",
        [
            (EntityType.BOOK, Operation.CREATE),
            ("repricing_rule", "update"),
            ("repricing_history", "create"),
            ("api_credentials", "upsert"),
        ],
    )
    def test_supported(self, entity_type, operation):
        assert is_supported(entity_type, operation)

    @pytest.mark.parametrize(
        "entity_type, operation",
        [("inventoryItem", "delete"), ("book", "delete"), ("repricing_history", "update")],
    )
    def test_unsupported(self, entity_type, operation):
        assert not is_supported(entity_type, operation)

    def test_book_create_has_no_natural_key_lookup(self):
        remote = FakeRemoteStore()
        remote.seed(EntityType.BOOK, make_book("123", id="B1"))
        handler = default_registry().resolve(EntityType.BOOK, Operation.CREATE)

        assert handler.find_existing(remote, {"id": "B2", "user_id": "U1", "isbn": "123"}) is None
