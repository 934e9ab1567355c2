from __future__ import annotations

from dataclasses import replace
from typing import Optional

from ..auth.identity import IdentityProvider
from ..domain.models import Place, Store
from ..domain.normalize import geo_cell, normalize_name
from ..errors import PersistenceError, ShelfFinderError
from ..localdb.db import LocalStore
from ..logging import get_logger
from ..sync.engine import CancellationToken, SyncEngine


LOG = get_logger("stores")


def delete_confirmation_phrase(name: str) -> str:
    """'Super Yuda Center' -> 'DELETE SUPER'."""
    words = (name or "").split()
    first = words[0].upper() if words else ""
    return f"DELETE {first}".strip()


def _same_store(store: Store, name: str, lat: Optional[float], lng: Optional[float]) -> bool:
    if normalize_name(store.name) != normalize_name(name):
        return False
    if lat is None or lng is None or not store.has_coordinate:
        return not store.has_coordinate and (lat is None or lng is None)
    return geo_cell(store.latitude, store.longitude) == geo_cell(lat, lng)


class StoreService:
    """Store lifecycle: create (place or manual), edit, confirmed delete."""

    def __init__(self, local: LocalStore, engine: SyncEngine, identity: IdentityProvider) -> None:
        self.local = local
        self.engine = engine
        self.identity = identity

    def _create(
        self,
        name: str,
        *,
        address: Optional[str],
        city: Optional[str],
        latitude: Optional[float],
        longitude: Optional[float],
        token: Optional[CancellationToken],
    ) -> Store:
        name = (name or "").strip()
        if not name:
            raise ValueError("Store name must not be empty")
        existing = next(
            (s for s in self.local.fetch_stores() if _same_store(s, name, latitude, longitude)),
            None,
        )
        if existing is None:
            existing = self.local.insert_store(
                Store(
                    name=name,
                    latitude=latitude,
                    longitude=longitude,
                    address=(address or "").strip() or None,
                    city=(city or "").strip() or None,
                )
            )
            LOG.info(f"Store {name!r} created locally ({existing.store_id})")
        else:
            LOG.info(f"Store {name!r} already exists locally ({existing.store_id})")

        if existing.remote_id is not None or self.identity.current is None:
            return existing
        try:
            return self.engine.push_store(existing, token=token)
        except ShelfFinderError as exc:
            LOG.warning(f"Store {name!r} kept local only: {exc}")
            return existing

    def create_from_place(self, place: Place, *, token: Optional[CancellationToken] = None) -> Store:
        return self._create(
            place.name,
            address=place.address,
            city=place.city,
            latitude=place.latitude,
            longitude=place.longitude,
            token=token,
        )

    def create_manual(
        self,
        name: str,
        *,
        address: Optional[str] = None,
        city: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> Store:
        return self._create(name, address=address, city=city, latitude=latitude, longitude=longitude, token=token)

    def sync(self, store_id: str, *, token: Optional[CancellationToken] = None) -> Store:
        """Link an offline-created store and attach its subscriptions."""
        store = self.local.get_store(store_id)
        if store is None:
            raise PersistenceError(f"Unknown store {store_id}")
        store = self.engine.push_store(store, token=token)
        self.engine.start(store)
        return store

    def edit(
        self,
        store_id: str,
        *,
        name: Optional[str] = None,
        address: Optional[str] = None,
        city: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> Store:
        self.identity.require_actor()
        with self.engine.lock_for(store_id):
            store = self.local.get_store(store_id)
            if store is None:
                raise PersistenceError(f"Unknown store {store_id}")
            new_name = store.name if name is None else name.strip()
            if not new_name:
                raise ValueError("Store name must not be empty")
            updated = replace(
                store,
                name=new_name,
                address=store.address if address is None else (address.strip() or None),
                city=store.city if city is None else (city.strip() or None),
            )
            updated = self.local.update_store(updated)
        if updated.remote_id is not None:
            self.engine.push_store_update(store_id, token=token)
        return updated

    def delete(self, store_id: str, confirmation: str, *, token: Optional[CancellationToken] = None) -> None:
        store = self.local.get_store(store_id)
        if store is None:
            raise PersistenceError(f"Unknown store {store_id}")
        expected = delete_confirmation_phrase(store.name)
        if (confirmation or "").strip().upper() != expected.upper():
            raise ValueError(f"Type '{expected}' to confirm")
        was_syncing = any(sid == store_id for sid, _ in self.engine.active_subscriptions())
        self.engine.stop(store_id)
        try:
            self.engine.delete_store_remote(store, token=token)
        except ShelfFinderError:
            if was_syncing:
                LOG.warning(f"Remote delete of {store.name!r} failed; re-attaching sync")
                self.engine.start(store)
            raise
        with self.engine.lock_for(store_id):
            self.local.delete_store(store_id)
        LOG.info(f"Store {store.name!r} deleted ({store_id})")
