from __future__ import annotations

import threading

import pytest

from shelf_finder.auth.identity import IdentityProvider
from shelf_finder.domain.models import Store
from shelf_finder.errors import DuplicateAisle, IdentityTimeout, NoTitleDetected, RemoteUnavailable
from shelf_finder.localdb.db import LocalStore
from shelf_finder.remote.directory import aisles_path
from shelf_finder.services.ingestion import AisleIngestionService
from shelf_finder.sync.engine import SyncEngine

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32

DAIRY_SIGN = {
    "aisle_code": None,
    "title_original": "מוצרי חלב",
    "title_en": "Dairy",
    "keywords_original": ["חלב", "גבינה"],
    "keywords_en": ["milk", "cheese"],
    "language": "he",
}


def _service(local, engine, identity, backend) -> AisleIngestionService:
    return AisleIngestionService(local, engine, identity, backend, vision_model="test-vision", identity_timeout=1.0)


def test_ingest_stores_aisle_and_pushes(
    local: LocalStore, engine: SyncEngine, identity, linked_store: Store, directory, stub_backend
) -> None:
    backend = stub_backend(vision=DAIRY_SIGN)
    result = _service(local, engine, identity, backend).ingest(linked_store.store_id, PNG)

    assert result.aisle.name_or_number == "מוצרי חלב"
    assert "milk" in result.aisle.keywords
    assert "dairy" in result.aisle.keywords
    assert backend.vision_requests[0]["model"] == "test-vision"

    pushed = result.push.result(timeout=5)
    assert local.get_aisle(result.aisle.aisle_id).remote_id == pushed.remote_id
    (doc,) = directory.query(aisles_path(linked_store.remote_id))
    assert doc.get("nameOrNumber") == "מוצרי חלב"


def test_duplicate_title_is_rejected(local: LocalStore, engine, identity, linked_store: Store, stub_backend) -> None:
    service = _service(local, engine, identity, stub_backend(vision={"aisle_code": "A12"}))
    first = service.ingest(linked_store.store_id, PNG)
    first.push.result(timeout=5)
    with pytest.raises(DuplicateAisle):
        service.ingest(linked_store.store_id, PNG)
    assert len(local.fetch_aisles(linked_store.store_id)) == 1


def test_offline_push_keeps_local_aisle(local: LocalStore, engine, identity, linked_store: Store, directory) -> None:
    directory.set_online(False)
    service = _service(local, engine, identity, None)
    result = service.add_manual(linked_store.store_id, " Frozen ", ["ice cream", "pizza"])

    with pytest.raises(RemoteUnavailable):
        result.push.result(timeout=5)
    stored = local.get_aisle(result.aisle.aisle_id)
    assert stored is not None
    assert stored.name_or_number == "Frozen"
    assert stored.remote_id is None
    assert stored.keywords == ["ice cream", "pizza"]


def test_slow_sign_in_times_out_without_calling_vision(local: LocalStore, engine, store: Store, stub_backend) -> None:
    release = threading.Event()

    def slow_sign_in() -> str:
        release.wait(5)
        return "late-user"

    identity = IdentityProvider(sign_in=slow_sign_in)
    backend = stub_backend(vision=DAIRY_SIGN)
    service = AisleIngestionService(local, engine, identity, backend, identity_timeout=0.05)
    try:
        with pytest.raises(IdentityTimeout):
            service.ingest(store.store_id, PNG)
        assert backend.vision_requests == []
        assert local.fetch_aisles(store.store_id) == []
    finally:
        release.set()


def test_no_title_creates_nothing(local: LocalStore, engine, identity, store: Store, stub_backend) -> None:
    service = _service(local, engine, identity, stub_backend(vision={"keywords_en": ["milk"]}))
    with pytest.raises(NoTitleDetected):
        service.ingest(store.store_id, PNG)
    assert local.fetch_aisles(store.store_id) == []


def test_edit_linked_aisle_merges_remote(local: LocalStore, engine, identity, linked_store: Store, directory) -> None:
    service = _service(local, engine, identity, None)
    created = service.add_manual(linked_store.store_id, "Dairy", ["milk"])
    linked = created.push.result(timeout=5)

    edited = service.edit(linked.aisle_id, keywords=["milk", "butter"])
    edited.push.result(timeout=5)
    doc = directory.get(aisles_path(linked_store.remote_id), linked.remote_id)
    assert doc.get("keywords") == ["butter", "milk"]


def test_edit_unlinked_aisle_stays_local(local: LocalStore, engine, identity, store: Store) -> None:
    service = _service(local, engine, identity, None)
    created = service.add_manual(store.store_id, "Bakery")
    edited = service.edit(created.aisle.aisle_id, name="Bread")
    assert edited.push is None
    assert local.get_aisle(created.aisle.aisle_id).name_or_number == "Bread"


def test_edit_to_existing_name_is_duplicate(local: LocalStore, engine, identity, store: Store) -> None:
    service = _service(local, engine, identity, None)
    service.add_manual(store.store_id, "Bakery")
    other = service.add_manual(store.store_id, "Bread")
    with pytest.raises(DuplicateAisle):
        service.edit(other.aisle.aisle_id, name="Bakery")
