from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..auth.identity import IdentityProvider
from ..domain.models import Aisle, Linked, ProductItem, Store, utc_now_iso
from ..domain.normalize import content_hash, geo_cell, normalize_name
from ..errors import NotSynced, OperationCancelled, PersistenceError, ShelfFinderError
from ..localdb.db import LocalStore
from ..logging import get_logger
from ..remote.directory import (
    SERVER_TIMESTAMP,
    STORES,
    DocumentSnapshot,
    ListenerRegistration,
    RemoteDirectory,
    aisles_path,
    products_path,
)
from .reconcile import MalformedSnapshot, ReconcilePlan, reconcile_aisles, reconcile_products


LOG = get_logger("sync")

AISLES = "aisles"
PRODUCTS = "products"
KINDS = (AISLES, PRODUCTS)
STORE_CELL_QUERY_LIMIT = 20


class SubscriptionState(Enum):
    DETACHED = "detached"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"


class CancellationToken:
    """Cooperative cancellation for pushes and RPCs (user navigated away)."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self._event.is_set():
            raise OperationCancelled(f"{what} cancelled")


def check_cancelled(token: Optional[CancellationToken], what: str) -> None:
    if token is not None:
        token.raise_if_cancelled(what)


@dataclass
class _Subscription:
    store_id: str
    kind: str
    state: SubscriptionState = SubscriptionState.SUBSCRIBING
    registration: Optional[ListenerRegistration] = None


class SyncEngine:
    """Keeps the local store and the remote directory converged.

    - One subscription per (Store, aisles|products), owned here; start()
      tears down any previous handle for the pair before attaching.
    - Every local write for a Store (snapshot commits, push write-backs)
      runs under that Store's lock. Directory calls never do, because an
      in-process directory delivers snapshots on the writer's thread.
    """

    def __init__(
        self,
        local: LocalStore,
        directory: RemoteDirectory,
        identity: IdentityProvider,
        *,
        max_workers: int = 4,
        delete_absent_products: bool = True,
    ) -> None:
        self.local = local
        self.directory = directory
        self.identity = identity
        self.delete_absent_products = delete_absent_products
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._subs: Dict[Tuple[str, str], _Subscription] = {}
        self._subs_guard = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sync")

    # ---------- locking ----------
    def lock_for(self, store_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(store_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[store_id] = lock
            return lock

    # ---------- subscriptions ----------
    def state(self, store_id: str, kind: str = AISLES) -> SubscriptionState:
        with self._subs_guard:
            sub = self._subs.get((store_id, kind))
        return sub.state if sub is not None else SubscriptionState.DETACHED

    def _detach(self, store_id: str, kind: str) -> None:
        with self._subs_guard:
            sub = self._subs.pop((store_id, kind), None)
        if sub is None:
            return
        sub.state = SubscriptionState.DETACHED
        if sub.registration is not None:
            sub.registration.remove()
        LOG.debug(f"Detached {kind} subscription for store {store_id}")

    def start(self, store: Store) -> None:
        """Attach aisles and products listeners for a linked Store."""
        if not isinstance(store.link, Linked):
            raise NotSynced(f"Store {store.store_id} has no remote id; cannot subscribe")
        remote_id = store.link.remote_id
        for kind in KINDS:
            self._detach(store.store_id, kind)
            sub = _Subscription(store.store_id, kind)
            with self._subs_guard:
                self._subs[(store.store_id, kind)] = sub
            path = aisles_path(remote_id) if kind == AISLES else products_path(remote_id)
            try:
                registration = self.directory.subscribe(path, self._listener(sub))
            except ShelfFinderError:
                with self._subs_guard:
                    if self._subs.get((store.store_id, kind)) is sub:
                        del self._subs[(store.store_id, kind)]
                sub.state = SubscriptionState.DETACHED
                raise
            sub.registration = registration
            if sub.state is SubscriptionState.DETACHED:
                # stopped while attaching
                registration.remove()
                continue
            sub.state = SubscriptionState.ACTIVE
        LOG.info(f"Sync active for store {store.name!r} ({store.store_id} -> {remote_id})")

    def stop(self, store_id: str) -> None:
        for kind in KINDS:
            self._detach(store_id, kind)

    def stop_all(self) -> None:
        with self._subs_guard:
            keys = list(self._subs)
        for store_id, kind in keys:
            self._detach(store_id, kind)

    def active_subscriptions(self) -> List[Tuple[str, str]]:
        with self._subs_guard:
            return [k for k, s in self._subs.items() if s.state is not SubscriptionState.DETACHED]

    def _listener(self, sub: _Subscription) -> Callable[[List[DocumentSnapshot]], None]:
        apply = self.apply_aisles_snapshot if sub.kind == AISLES else self.apply_products_snapshot

        def _on_snapshot(docs: List[DocumentSnapshot]) -> None:
            if sub.state is SubscriptionState.DETACHED:
                return
            try:
                apply(sub.store_id, docs)
            except MalformedSnapshot as exc:
                LOG.warning(f"Skipping malformed {sub.kind} batch for store {sub.store_id}: {exc}")
            except ShelfFinderError as exc:
                LOG.error(f"Could not apply {sub.kind} snapshot for store {sub.store_id}: {exc}")

        return _on_snapshot

    # ---------- reconciliation ----------
    def apply_aisles_snapshot(self, store_id: str, docs: List[DocumentSnapshot]) -> ReconcilePlan:
        with self.lock_for(store_id):
            if self.local.get_store(store_id) is None:
                LOG.debug(f"Store {store_id} is gone; ignoring aisles snapshot")
                return ReconcilePlan()
            plan = reconcile_aisles(self.local.fetch_aisles(store_id), docs, store_id)
            if plan.is_empty:
                return plan
            with self.local.transaction() as tx:
                for aisle in plan.inserts:
                    tx.insert_aisle(aisle)
                for aisle in plan.updates:
                    tx.update_aisle(aisle)
                # products may have arrived before the aisle they point at
                relinked = sum(
                    tx.relink_products(store_id, aisle.aisle_id, aisle.remote_id)
                    for aisle in plan.inserts + plan.updates
                    if aisle.remote_id
                )
                for aisle_id in plan.deletes:
                    tx.delete_aisle(aisle_id)
        LOG.info(f"Aisles reconciled for store {store_id}: {plan.describe()}")
        if relinked:
            LOG.debug(f"Re-pointed {relinked} product(s) at linked aisles in store {store_id}")
        return plan

    def apply_products_snapshot(self, store_id: str, docs: List[DocumentSnapshot]) -> ReconcilePlan:
        with self.lock_for(store_id):
            if self.local.get_store(store_id) is None:
                LOG.debug(f"Store {store_id} is gone; ignoring products snapshot")
                return ReconcilePlan()
            plan = reconcile_products(
                self.local.fetch_products(store_id),
                docs,
                store_id,
                self.local.fetch_aisles(store_id),
                delete_absent=self.delete_absent_products,
            )
            if plan.is_empty:
                return plan
            with self.local.transaction() as tx:
                for item in plan.inserts:
                    tx.insert_product(item)
                for item in plan.updates:
                    tx.update_product(item)
                for product_id in plan.deletes:
                    tx.delete_product(product_id)
        LOG.info(f"Products reconciled for store {store_id}: {plan.describe()}")
        return plan

    # ---------- push path ----------
    def _linked_store(self, store_id: str) -> Store:
        store = self.local.get_store(store_id)
        if store is None:
            raise PersistenceError(f"Unknown store {store_id}")
        if not isinstance(store.link, Linked):
            raise NotSynced()
        return store

    def push_store(self, store: Store, *, token: Optional[CancellationToken] = None) -> Store:
        """Find or create the remote store document and link the local record.

        An existing remote store in the same geo cell with the same
        normalized name is reused instead of creating a duplicate.
        """
        actor = self.identity.require_actor()
        if isinstance(store.link, Linked):
            return store
        normalized = normalize_name(store.name)
        cell = geo_cell(store.latitude, store.longitude) if store.has_coordinate else None

        remote_id: Optional[str] = None
        if cell is not None:
            check_cancelled(token, "store push")
            for doc in self.directory.query(STORES, where={"geoCell": cell}, limit=STORE_CELL_QUERY_LIMIT):
                if (doc.get("normalizedName") or "") == normalized:
                    remote_id = doc.doc_id
                    LOG.info(f"Reusing remote store {remote_id} for {store.name!r} in cell {cell}")
                    break
        if remote_id is None:
            data: Dict[str, Any] = {
                "name": store.name,
                "normalizedName": normalized,
                "address": _address_text(store.address, store.city),
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
                "createdByUserId": actor,
                "updatedByUserId": actor,
            }
            if cell is not None:
                data["geo"] = {"lat": store.latitude, "lng": store.longitude}
                data["geoCell"] = cell
            check_cancelled(token, "store push")
            remote_id = self.directory.add(STORES, data)
            LOG.info(f"Created remote store {remote_id} for {store.name!r}")

        check_cancelled(token, "store write-back")
        with self.lock_for(store.store_id):
            current = self.local.get_store(store.store_id)
            if current is None:
                raise PersistenceError(f"Store {store.store_id} was deleted during push")
            if isinstance(current.link, Linked):
                return current
            holder = self.local.get_store_by_remote_id(remote_id)
            if holder is not None:
                LOG.warning(f"Remote store {remote_id} is already linked to local store {holder.store_id}")
                return current
            linked = replace(current, link=Linked(remote_id))
            self.local.update_store(linked)
        return linked

    def push_store_update(self, store_id: str, *, token: Optional[CancellationToken] = None) -> None:
        actor = self.identity.require_actor()
        store = self._linked_store(store_id)
        data = {
            "name": store.name,
            "normalizedName": normalize_name(store.name),
            "address": _address_text(store.address, store.city),
            "updatedAt": SERVER_TIMESTAMP,
            "updatedByUserId": actor,
        }
        check_cancelled(token, "store update")
        self.directory.set(STORES, store.remote_id, data, merge=True)
        LOG.info(f"Pushed store update {store.remote_id}")

    def push_aisle(self, aisle_id: str, *, token: Optional[CancellationToken] = None) -> Aisle:
        actor = self.identity.require_actor()
        aisle = self.local.get_aisle(aisle_id)
        if aisle is None:
            raise PersistenceError(f"Unknown aisle {aisle_id}")
        store = self._linked_store(aisle.store_id)
        path = aisles_path(store.remote_id)
        data: Dict[str, Any] = {
            "nameOrNumber": aisle.name_or_number,
            "keywords": list(aisle.keywords),
            "updatedAt": SERVER_TIMESTAMP,
            "updatedByUserId": actor,
            "storeRemoteId": store.remote_id,
        }

        if isinstance(aisle.link, Linked):
            check_cancelled(token, "aisle push")
            self.directory.set(path, aisle.link.remote_id, data, merge=True)
            LOG.debug(f"Updated remote aisle {aisle.link.remote_id}")
            return aisle

        check_cancelled(token, "aisle push")
        remote_id = self._find_remote_aisle(path, aisle.name_or_number)
        if remote_id is None:
            data.update({"createdAt": SERVER_TIMESTAMP, "createdByUserId": actor})
            check_cancelled(token, "aisle push")
            remote_id = self.directory.add(path, data)
            LOG.info(f"Created remote aisle {remote_id} ({aisle.name_or_number!r})")
        else:
            LOG.info(f"Adopting existing remote aisle {remote_id} for {aisle.name_or_number!r}")

        check_cancelled(token, "aisle write-back")
        return self._write_back_aisle(aisle, remote_id)

    def _find_remote_aisle(self, path: str, name: str) -> Optional[str]:
        key = normalize_name(name)
        for doc in self.directory.query(path):
            if normalize_name(doc.get("nameOrNumber")) == key:
                return doc.doc_id
        return None

    def _write_back_aisle(self, aisle: Aisle, remote_id: str) -> Aisle:
        aisle_id = aisle.aisle_id
        with self.lock_for(aisle.store_id):
            current = self.local.get_aisle(aisle_id)
            if current is None:
                raise PersistenceError(f"Aisle {aisle_id} was deleted during push")
            if isinstance(current.link, Linked):
                # a snapshot delivered during the push may already have linked it
                return current
            holders = [a for a in self.local.fetch_aisles(current.store_id, linked=True) if a.remote_id == remote_id]
            if holders:
                LOG.warning(f"Remote aisle {remote_id} already linked to local aisle {holders[0].aisle_id}; leaving {aisle_id} unlinked")
                return current
            linked = replace(current, link=Linked(remote_id), updated_at=utc_now_iso())
            with self.local.transaction() as tx:
                tx.update_aisle(linked)
                tx.relink_products(linked.store_id, aisle_id, remote_id)
        return linked

    def push_product(self, product_id: str, *, token: Optional[CancellationToken] = None) -> ProductItem:
        """Upsert under the content-hash id; repeated pushes hit the same document."""
        actor = self.identity.require_actor()
        item = self.local.get_product(product_id)
        if item is None:
            raise PersistenceError(f"Unknown product {product_id}")
        store = self._linked_store(item.store_id)

        aisle_remote_id: Optional[str] = None
        if item.aisle_id:
            aisle = self.local.get_aisle(item.aisle_id)
            if aisle is None or not isinstance(aisle.link, Linked):
                raise NotSynced("Aisle is not synced yet.")
            aisle_remote_id = aisle.link.remote_id

        normalized = normalize_name(item.name)
        doc_id = content_hash(normalized)
        data: Dict[str, Any] = {
            "name": item.name,
            "normalizedName": normalized,
            "barcode": item.barcode,
            "aisleRemoteId": aisle_remote_id,
            "storeRemoteId": store.remote_id,
            "updatedAt": SERVER_TIMESTAMP,
            "updatedByUserId": actor,
        }
        check_cancelled(token, "product push")
        self.directory.set(products_path(store.remote_id), doc_id, data, merge=True)
        LOG.info(f"Upserted remote product {doc_id[:12]}… ({item.name!r})")

        check_cancelled(token, "product write-back")
        with self.lock_for(item.store_id):
            current = self.local.get_product(product_id)
            if current is None:
                raise PersistenceError(f"Product {product_id} was deleted during push")
            if isinstance(current.link, Linked) and current.link.remote_id != doc_id:
                LOG.warning(f"Product {product_id} is linked to {current.link.remote_id}, not {doc_id}")
                return current
            holders = [p for p in self.local.fetch_products(item.store_id, linked=True) if p.remote_id == doc_id]
            if holders and holders[0].product_id != product_id:
                LOG.warning(f"Remote product {doc_id[:12]}… already linked to local product {holders[0].product_id}")
                return current
            updated = replace(current, link=Linked(doc_id), aisle_remote_id=aisle_remote_id)
            if updated != current:
                self.local.update_product(updated)
        return updated

    def delete_aisle_everywhere(self, aisle_id: str, *, token: Optional[CancellationToken] = None) -> None:
        """Remote delete first; the local record survives a failed remote delete."""
        aisle = self.local.get_aisle(aisle_id)
        if aisle is None:
            return
        if isinstance(aisle.link, Linked):
            self.identity.require_actor()
            store = self._linked_store(aisle.store_id)
            check_cancelled(token, "aisle delete")
            self.directory.delete(aisles_path(store.remote_id), aisle.link.remote_id)
            LOG.info(f"Deleted remote aisle {aisle.link.remote_id}")
        with self.lock_for(aisle.store_id):
            self.local.delete_aisle(aisle_id)
        LOG.info(f"Deleted aisle {aisle.name_or_number!r} locally")

    def delete_store_remote(self, store: Store, *, token: Optional[CancellationToken] = None) -> int:
        """Delete every remote aisle and product of a Store, then the store doc.

        Returns the number of documents removed.
        """
        if not isinstance(store.link, Linked):
            return 0
        self.identity.require_actor()
        remote_id = store.link.remote_id
        removed = 0
        for path in (aisles_path(remote_id), products_path(remote_id)):
            check_cancelled(token, "store delete")
            for doc in self.directory.query(path):
                check_cancelled(token, "store delete")
                self.directory.delete(path, doc.doc_id)
                removed += 1
        check_cancelled(token, "store delete")
        self.directory.delete(STORES, remote_id)
        LOG.info(f"Deleted remote store {remote_id} with {removed} child document(s)")
        return removed + 1

    # ---------- async ----------
    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> "Future[Any]":
        """Run a push on the worker pool; failures are logged and kept on the future."""
        future = self._pool.submit(fn, *args, **kwargs)
        name = getattr(fn, "__name__", "task")

        def _log_failure(f: "Future[Any]") -> None:
            if f.cancelled():
                LOG.debug(f"{name} was cancelled before it ran")
                return
            exc = f.exception()
            if exc is not None:
                LOG.warning(f"{name} failed: {exc}")

        future.add_done_callback(_log_failure)
        return future

    def shutdown(self, wait: bool = True) -> None:
        self.stop_all()
        self._pool.shutdown(wait=wait)


def _address_text(address: Optional[str], city: Optional[str]) -> Optional[str]:
    parts = [p.strip() for p in (address, city) if p and p.strip()]
    return ", ".join(parts) if parts else None
