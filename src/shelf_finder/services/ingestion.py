from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass, replace
from typing import Any, Iterable, List, Optional

from ..ai.client import AIBackend
from ..ai.vision import VisionResult, analyze_aisle_image
from ..auth.identity import IdentityProvider
from ..config import DEFAULT_IDENTITY_TIMEOUT, DEFAULT_VISION_MODEL
from ..domain.models import Aisle, Linked, utc_now_iso
from ..domain.normalize import sanitize_keywords
from ..errors import DuplicateAisle, PersistenceError
from ..localdb.db import LocalStore
from ..logging import get_logger
from ..sync.engine import CancellationToken, SyncEngine, check_cancelled


LOG = get_logger("ingestion")


@dataclass
class IngestionResult:
    """A freshly stored aisle and the pending push (None when nothing was scheduled)."""

    aisle: Aisle
    vision: Optional[VisionResult] = None
    push: Optional["Future[Any]"] = None


class AisleIngestionService:
    """Turns aisle-sign photos and manual entries into local aisles, then pushes them.

    The local insert is committed before the push starts and is never rolled
    back because of a remote failure.
    """

    def __init__(
        self,
        local: LocalStore,
        engine: SyncEngine,
        identity: IdentityProvider,
        backend: Optional[AIBackend] = None,
        *,
        vision_model: str = DEFAULT_VISION_MODEL,
        identity_timeout: float = DEFAULT_IDENTITY_TIMEOUT,
    ) -> None:
        self.local = local
        self.engine = engine
        self.identity = identity
        self.backend = backend
        self.vision_model = vision_model
        self.identity_timeout = identity_timeout

    # ---------- helpers ----------
    def _insert_unique(self, store_id: str, title: str, keywords: List[str]) -> Aisle:
        with self.engine.lock_for(store_id):
            if self.local.get_store(store_id) is None:
                raise PersistenceError(f"Unknown store {store_id}")
            for existing in self.local.fetch_aisles(store_id):
                if existing.name_or_number.strip() == title:
                    LOG.info(f"Aisle {title!r} already exists in store {store_id} ({existing.aisle_id})")
                    raise DuplicateAisle(title)
            aisle = self.local.insert_aisle(Aisle(store_id=store_id, name_or_number=title, keywords=keywords))
        LOG.info(f"Aisle {title!r} stored locally with {len(aisle.keywords)} keyword(s)")
        return aisle

    def _schedule_push(self, aisle: Aisle, token: Optional[CancellationToken]) -> "Future[Any]":
        return self.engine.submit(self.engine.push_aisle, aisle.aisle_id, token=token)

    # ---------- operations ----------
    def ingest(
        self,
        store_id: str,
        image_bytes: bytes,
        *,
        detail: str = "high",
        token: Optional[CancellationToken] = None,
    ) -> IngestionResult:
        if self.backend is None:
            raise ValueError("No vision backend configured")
        self.identity.ensure_actor(timeout=self.identity_timeout)
        check_cancelled(token, "ingestion")

        result = analyze_aisle_image(self.backend, image_bytes, model=self.vision_model, detail=detail)
        check_cancelled(token, "ingestion")

        title = result.display_title()
        keywords = result.keywords()
        aisle = self._insert_unique(store_id, title, keywords)
        return IngestionResult(aisle=aisle, vision=result, push=self._schedule_push(aisle, token))

    def add_manual(
        self,
        store_id: str,
        name: str,
        keywords: Iterable[str] = (),
        *,
        token: Optional[CancellationToken] = None,
    ) -> IngestionResult:
        title = (name or "").strip()
        if not title:
            raise ValueError("Aisle name must not be empty")
        aisle = self._insert_unique(store_id, title, sanitize_keywords(keywords))
        return IngestionResult(aisle=aisle, push=self._schedule_push(aisle, token))

    def edit(
        self,
        aisle_id: str,
        *,
        name: Optional[str] = None,
        keywords: Optional[Iterable[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> IngestionResult:
        """Update name/keywords locally; a linked aisle also gets a remote merge."""
        current = self.local.get_aisle(aisle_id)
        if current is None:
            raise PersistenceError(f"Unknown aisle {aisle_id}")
        with self.engine.lock_for(current.store_id):
            current = self.local.get_aisle(aisle_id)
            if current is None:
                raise PersistenceError(f"Aisle {aisle_id} was deleted")
            title = current.name_or_number if name is None else name.strip()
            if not title:
                raise ValueError("Aisle name must not be empty")
            for other in self.local.fetch_aisles(current.store_id):
                if other.aisle_id != aisle_id and other.name_or_number.strip() == title:
                    raise DuplicateAisle(title)
            updated = replace(
                current,
                name_or_number=title,
                keywords=current.keywords if keywords is None else sanitize_keywords(keywords),
                updated_at=utc_now_iso(),
            )
            self.local.update_aisle(updated)
        push = self._schedule_push(updated, token) if isinstance(updated.link, Linked) else None
        return IngestionResult(aisle=updated, push=push)

    def delete(self, aisle_id: str, *, token: Optional[CancellationToken] = None) -> None:
        self.engine.delete_aisle_everywhere(aisle_id, token=token)
