from __future__ import annotations

import pytest

from shelf_finder.ai.suggest import parse_suggest_response
from shelf_finder.domain.models import Aisle, ProductItem, Store
from shelf_finder.domain.normalize import content_hash
from shelf_finder.errors import RpcFailure
from shelf_finder.localdb.db import LocalStore
from shelf_finder.remote.directory import API_ERRORS, products_path
from shelf_finder.services.suggestion import AisleSuggestionService, best_matching_aisle, score_aisle


def _aisles(local: LocalStore, store_id: str):
    dairy = local.insert_aisle(Aisle(store_id=store_id, name_or_number="Dairy", keywords=["milk", "cheese"]))
    milk = local.insert_aisle(Aisle(store_id=store_id, name_or_number="Milk Products"))
    bakery = local.insert_aisle(Aisle(store_id=store_id, name_or_number="Bakery", keywords=["bread"]))
    return dairy, milk, bakery


def test_keyword_match_beats_name_match(local: LocalStore, store: Store) -> None:
    dairy, milk, _ = _aisles(local, store.store_id)
    assert score_aisle(dairy, "milk") == 3
    assert score_aisle(milk, "milk") == 2
    best, score = best_matching_aisle(local.fetch_aisles(store.store_id), "milk")
    assert best.aisle_id == dairy.aisle_id
    assert score == 3


def test_zero_score_is_no_match(local: LocalStore, store: Store) -> None:
    _aisles(local, store.store_id)
    assert best_matching_aisle(local.fetch_aisles(store.store_id), "batteries") == (None, 0)


def test_known_product_short_circuits(local: LocalStore, engine, store: Store, stub_backend) -> None:
    _, _, bakery = _aisles(local, store.store_id)
    local.insert_product(ProductItem(store_id=store.store_id, name="Sourdough Bread", aisle_id=bakery.aisle_id))
    backend = stub_backend(suggest={"candidates": []})

    result = AisleSuggestionService(local, engine, backend).suggest(store.store_id, "  SOURDOUGH ")
    assert result.source == "known_product"
    assert result.aisle.aisle_id == bakery.aisle_id
    assert backend.suggest_requests == []


def test_local_match_skips_rpc(local: LocalStore, engine, store: Store, stub_backend) -> None:
    dairy, _, _ = _aisles(local, store.store_id)
    backend = stub_backend(suggest={"candidates": []})
    result = AisleSuggestionService(local, engine, backend).suggest(store.store_id, "Milk")
    assert result.source == "local"
    assert result.aisle.aisle_id == dairy.aisle_id
    assert result.score == 3.0
    assert backend.suggest_requests == []


def test_unassigned_product_without_aisles(local: LocalStore, engine, store: Store, stub_backend) -> None:
    local.insert_product(ProductItem(store_id=store.store_id, name="Hummus"))
    backend = stub_backend(suggest={"candidates": []})
    service = AisleSuggestionService(local, engine, backend)

    result = service.suggest(store.store_id, "hummus")
    assert result.source == "known_unassigned"
    assert result.known_product.name == "Hummus"
    assert result.aisle is None

    assert service.suggest(store.store_id, "tahini").source == "none"
    assert backend.suggest_requests == []


def test_empty_query_rejected(local: LocalStore, engine, store: Store) -> None:
    with pytest.raises(ValueError):
        AisleSuggestionService(local, engine).suggest(store.store_id, "   ")


def test_rpc_ranks_candidates(local: LocalStore, engine, store: Store, stub_backend) -> None:
    dairy, milk, bakery = _aisles(local, store.store_id)

    def reply(request):
        assert request["productName"] == "yogurt"
        assert {a["id"] for a in request["aisles"]} == {dairy.aisle_id, milk.aisle_id, bakery.aisle_id}
        return {
            "candidates": [
                {"aisleId": milk.aisle_id, "confidence_label": "likely", "confidence_score": 0.8, "reason": "dairy"},
                {"aisleId": "not-offered", "confidence_label": "sure", "confidence_score": 0.99},
                {"aisleId": dairy.aisle_id, "confidence_label": "bogus", "confidence_score": 0.5},
            ],
            "not_found": False,
        }

    backend = stub_backend(suggest=reply)
    result = AisleSuggestionService(local, engine, backend, suggest_model="m").suggest(store.store_id, "Yogurt")
    assert result.source == "rpc"
    assert result.aisle.aisle_id == milk.aisle_id
    assert result.label == "likely"
    assert [c.confidence_label for _, c in result.candidates] == ["likely", "maybe"]
    assert backend.suggest_requests[0]["model"] == "m"


def test_rpc_not_found(local: LocalStore, engine, store: Store, stub_backend) -> None:
    _aisles(local, store.store_id)
    backend = stub_backend(suggest={"candidates": [], "not_found": True})
    result = AisleSuggestionService(local, engine, backend).suggest(store.store_id, "batteries")
    assert result.source == "none"
    assert result.aisle is None


def test_rpc_failure_is_recorded_and_raised(local: LocalStore, engine, store: Store, directory, stub_backend) -> None:
    _aisles(local, store.store_id)
    backend = stub_backend(suggest=RpcFailure("suggest: HTTP 500"))
    with pytest.raises(RpcFailure):
        AisleSuggestionService(local, engine, backend).suggest(store.store_id, "batteries")
    (doc,) = directory.query(API_ERRORS)
    assert doc.get("endpoint") == "suggest"
    assert doc.get("additionalData")["product"] == "batteries"


def test_parse_clamps_and_caps() -> None:
    raw = {"candidates": [{"aisleId": f"a{i}", "confidence_score": 1.7} for i in range(5)]}
    resp = parse_suggest_response(raw)
    assert len(resp.candidates) == 3
    assert resp.top.confidence_score == 1.0
    assert resp.top.confidence_label == "sure"
    assert not resp.not_found
    assert parse_suggest_response({"candidates": None}).not_found
    with pytest.raises(RpcFailure):
        parse_suggest_response(["nope"])


def test_assign_product_creates_and_pushes(local: LocalStore, engine, linked_store: Store, directory) -> None:
    dairy = engine.push_aisle(local.insert_aisle(Aisle(store_id=linked_store.store_id, name_or_number="Dairy")).aisle_id)
    service = AisleSuggestionService(local, engine)

    item, push = service.assign_product(linked_store.store_id, "Goat Milk", dairy.aisle_id, barcode="729000")
    pushed = push.result(timeout=5)
    assert pushed.remote_id == content_hash("goat milk")
    doc = directory.get(products_path(linked_store.remote_id), content_hash("goat milk"))
    assert doc.get("aisleRemoteId") == dairy.remote_id
    assert doc.get("barcode") == "729000"

    again, push = service.assign_product(linked_store.store_id, "goat  milk", dairy.aisle_id)
    push.result(timeout=5)
    assert again.product_id == item.product_id
    assert len(local.fetch_products(linked_store.store_id)) == 1
