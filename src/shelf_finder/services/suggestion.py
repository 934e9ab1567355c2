from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Tuple

from ..ai.client import AIBackend
from ..ai.suggest import SuggestionCandidate, request_suggestions
from ..domain.models import Aisle, ProductItem, utc_now_iso
from ..domain.normalize import normalize_name
from ..errors import PersistenceError, ShelfFinderError
from ..localdb.db import LocalStore
from ..logging import get_logger
from ..sync.engine import CancellationToken, SyncEngine, check_cancelled


LOG = get_logger("suggestion")

NAME_MATCH_POINTS = 2
KEYWORD_MATCH_POINTS = 3


def score_aisle(aisle: Aisle, query: str) -> int:
    score = NAME_MATCH_POINTS if query in aisle.name_or_number.lower() else 0
    score += KEYWORD_MATCH_POINTS * sum(1 for kw in aisle.keywords if query in kw.lower())
    return score


def best_matching_aisle(aisles: List[Aisle], query: str) -> Tuple[Optional[Aisle], int]:
    """Highest score wins; ties keep the earlier aisle; zero means no match."""
    best: Optional[Aisle] = None
    best_score = 0
    for aisle in aisles:
        s = score_aisle(aisle, query)
        if s > best_score:
            best, best_score = aisle, s
    return best, best_score


@dataclass
class AisleSuggestion:
    source: str  # known_product | known_unassigned | local | rpc | none
    aisle: Optional[Aisle] = None
    score: Optional[float] = None
    label: Optional[str] = None
    known_product: Optional[ProductItem] = None
    candidates: List[Tuple[Aisle, SuggestionCandidate]] = field(default_factory=list)
    message: str = ""


class AisleSuggestionService:
    def __init__(
        self,
        local: LocalStore,
        engine: SyncEngine,
        backend: Optional[AIBackend] = None,
        *,
        suggest_model: Optional[str] = None,
    ) -> None:
        self.local = local
        self.engine = engine
        self.backend = backend
        self.suggest_model = suggest_model

    def suggest(
        self,
        store_id: str,
        product_name: str,
        *,
        token: Optional[CancellationToken] = None,
    ) -> AisleSuggestion:
        query = (product_name or "").strip().lower()
        if not query:
            raise ValueError("Type a product name to search.")

        known = next((p for p in self.local.fetch_products(store_id) if query in p.name.lower()), None)
        aisles = self.local.fetch_aisles(store_id)
        by_id = {a.aisle_id: a for a in aisles}

        if known is not None and known.aisle_id and known.aisle_id in by_id:
            return AisleSuggestion(
                source="known_product",
                aisle=by_id[known.aisle_id],
                known_product=known,
                message="This product is already in the database.",
            )
        if known is not None:
            LOG.info(f"Product {known.name!r} is known but not assigned to any aisle yet")

        local_best, local_score = best_matching_aisle(aisles, query)
        if local_best is not None:
            return AisleSuggestion(
                source="local",
                aisle=local_best,
                score=float(local_score),
                known_product=known,
                message="Found a suitable aisle locally by keywords.",
            )

        fallback = "known_unassigned" if known is not None else "none"
        if not aisles:
            return AisleSuggestion(
                source=fallback,
                known_product=known,
                message="This store has no aisles yet. Add an aisle (upload a sign) and then try searching again.",
            )
        if self.backend is None:
            return AisleSuggestion(source=fallback, known_product=known, message="No AI backend configured.")

        check_cancelled(token, "suggestion")
        try:
            resp = request_suggestions(self.backend, query, aisles, model=self.suggest_model)
        except ShelfFinderError as exc:
            LOG.error(f"Suggestion RPC failed for {query!r}: {exc}")
            self.engine.directory.log_api_error("suggest", str(exc), {"product": query, "storeId": store_id})
            raise
        check_cancelled(token, "suggestion")

        mapped = [(by_id[c.aisle_id], c) for c in resp.candidates if c.aisle_id in by_id]
        if resp.not_found or not mapped:
            return AisleSuggestion(
                source=fallback,
                known_product=known,
                message="AI could not find a suitable aisle. You may need to add a new aisle.",
            )
        top_aisle, top = mapped[0]
        return AisleSuggestion(
            source="rpc",
            aisle=top_aisle,
            score=top.confidence_score,
            label=top.confidence_label,
            known_product=known,
            candidates=mapped,
            message=f"AI suggestion: aisle {top_aisle.name_or_number} ({top.confidence_label}, {int(top.confidence_score * 100)}%).",
        )

    def assign_product(
        self,
        store_id: str,
        product_name: str,
        aisle_id: str,
        *,
        barcode: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> Tuple[ProductItem, "Future[Any]"]:
        """Create or re-point the ProductItem for this name, then push it."""
        name = (product_name or "").strip()
        if not name:
            raise ValueError("Product name must not be empty")
        with self.engine.lock_for(store_id):
            aisle = self.local.get_aisle(aisle_id)
            if aisle is None or aisle.store_id != store_id:
                raise PersistenceError(f"Aisle {aisle_id} is not in store {store_id}")
            key = normalize_name(name)
            existing = next((p for p in self.local.fetch_products(store_id) if normalize_name(p.name) == key), None)
            if existing is None:
                item = self.local.insert_product(
                    ProductItem(store_id=store_id, name=name, aisle_id=aisle_id, barcode=barcode)
                )
            else:
                item = replace(
                    existing,
                    aisle_id=aisle_id,
                    aisle_remote_id=aisle.remote_id,
                    barcode=barcode or existing.barcode,
                    updated_at=utc_now_iso(),
                )
                self.local.update_product(item)
        LOG.info(f"Product {name!r} assigned to aisle {aisle.name_or_number!r}")
        return item, self.engine.submit(self.engine.push_product, item.product_id, token=token)
