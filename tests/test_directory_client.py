from __future__ import annotations

import pytest
from starlette.testclient import TestClient

from shelf_finder.errors import RemoteUnavailable, Unauthenticated
from shelf_finder.remote.client import HttpDirectory
from shelf_finder.remote.directory import InMemoryDirectory
from shelf_finder.remote.server import create_app


@pytest.fixture
def backing() -> InMemoryDirectory:
    return InMemoryDirectory()


def _client(backing: InMemoryDirectory, actor=lambda: "user-a") -> HttpDirectory:
    return HttpDirectory("http://testserver", actor_provider=actor, session=TestClient(create_app(backing)))


def test_document_round_trip(backing: InMemoryDirectory) -> None:
    http = _client(backing)
    doc_id = http.add("stores", {"name": "Super Yuda", "geoCell": "32.085|34.782"})
    http.set("stores", doc_id, {"address": "Dizengoff 50"})

    snap = http.get("stores", doc_id)
    assert snap.get("name") == "Super Yuda"
    assert snap.get("address") == "Dizengoff 50"
    assert [d.doc_id for d in http.query("stores", where={"geoCell": "32.085|34.782"}, limit=20)] == [doc_id]

    http.delete("stores", doc_id)
    assert http.get("stores", doc_id) is None
    assert backing.query("stores") == []


def test_missing_actor_maps_to_unauthenticated(backing: InMemoryDirectory) -> None:
    http = _client(backing, actor=lambda: None)
    with pytest.raises(Unauthenticated):
        http.add("stores", {"name": "Super Yuda"})


def test_offline_maps_to_remote_unavailable(backing: InMemoryDirectory) -> None:
    http = _client(backing)
    backing.set_online(False)
    with pytest.raises(RemoteUnavailable):
        http.query("stores")


def test_api_error_log_without_actor(backing: InMemoryDirectory) -> None:
    http = _client(backing, actor=lambda: None)
    http.log_api_error("suggest", "HTTP 500", {"product": "milk"})
    (doc,) = backing.query("api_errors")
    assert doc.get("additionalData") == {"product": "milk"}


def test_watch_once_reports_only_changes(backing: InMemoryDirectory) -> None:
    http = _client(backing)
    first = http.watch_once("stores/s1/aisles", -1, 0)
    assert first == {"version": 0, "docs": []}

    http.add("stores/s1/aisles", {"nameOrNumber": "Dairy"})
    changed = http.watch_once("stores/s1/aisles", 0, 0)
    assert changed["version"] == 1
    assert [d.get("nameOrNumber") for d in changed["docs"]] == ["Dairy"]
    assert http.watch_once("stores/s1/aisles", 1, 0) is None


def test_query_group_over_http(backing: InMemoryDirectory) -> None:
    backing.add("stores/s1/aisles", {"nameOrNumber": "Dairy", "updatedByUserId": "user-a"})
    backing.add("stores/s2/aisles", {"nameOrNumber": "Bakery", "updatedByUserId": "user-a"})
    http = _client(backing)
    docs = http.query_group("aisles", where={"updatedByUserId": "user-a"}, limit=1)
    assert len(docs) == 1
    assert docs[0].get("nameOrNumber") in {"Dairy", "Bakery"}
