"""Document-oriented shared directory: stores → aisles/products sub-collections.

Paths follow the remote layout used by every client:

    stores/{storeId}
    stores/{storeId}/aisles/{aisleId}
    stores/{storeId}/products/{productId}
    reportedUsers/{reportId}
    api_errors/{id}

Subscribers always receive the *full* current set of documents of a
collection, never a diff.
"""

from __future__ import annotations

import copy
import secrets
import string
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import RemoteUnavailable, ShelfFinderError
from ..logging import get_logger


LOG = get_logger("remote-directory")

STORES = "stores"
API_ERRORS = "api_errors"
REPORTED_USERS = "reportedUsers"
SERVER_TIMESTAMP = "__server_timestamp__"

_ID_ALPHABET = string.ascii_letters + string.digits


def aisles_path(store_remote_id: str) -> str:
    return f"{STORES}/{store_remote_id}/aisles"


def products_path(store_remote_id: str) -> str:
    return f"{STORES}/{store_remote_id}/products"


def new_document_id() -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(20))


@dataclass(frozen=True)
class DocumentSnapshot:
    doc_id: str
    data: Dict[str, Any]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


SnapshotCallback = Callable[[List[DocumentSnapshot]], None]


class ListenerRegistration:
    """Handle returned by subscribe(); remove() is idempotent."""

    def __init__(self, on_remove: Callable[[], None]) -> None:
        self._on_remove = on_remove
        self._removed = False
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return not self._removed

    def remove(self) -> None:
        with self._lock:
            if self._removed:
                return
            self._removed = True
        self._on_remove()


class RemoteDirectory:
    """Interface shared by the in-process and HTTP directories."""

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        raise NotImplementedError

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], *, merge: bool = True) -> None:
        raise NotImplementedError

    def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        raise NotImplementedError

    def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError

    def query(
        self,
        collection: str,
        *,
        where: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        raise NotImplementedError

    def query_group(
        self,
        collection_id: str,
        *,
        where: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        """Query every collection whose last path segment is `collection_id` (e.g. all `aisles`)."""
        raise NotImplementedError

    def subscribe(self, collection: str, callback: SnapshotCallback) -> ListenerRegistration:
        raise NotImplementedError

    def log_api_error(self, endpoint: str, message: str, additional: Optional[Dict[str, Any]] = None) -> None:
        """Best-effort diagnostics record; never raises."""
        try:
            self.add(
                API_ERRORS,
                {
                    "endpoint": endpoint,
                    "message": message,
                    "additionalData": dict(additional or {}),
                    "createdAt": SERVER_TIMESTAMP,
                },
            )
        except ShelfFinderError as exc:
            LOG.warning("Could not record api error for %s: %s", endpoint, exc)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _resolve_timestamps(data: Dict[str, Any], now: str) -> Dict[str, Any]:
    return {k: (now if v == SERVER_TIMESTAMP else v) for k, v in data.items()}


def _matches(data: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    if not where:
        return True
    return all(data.get(k) == v for k, v in where.items())


class InMemoryDirectory(RemoteDirectory):
    """Thread-safe in-process directory.

    Every write bumps the collection version and pushes the full collection
    snapshot to its listeners. While offline (set_online(False)) reads and
    writes raise RemoteUnavailable; going back online re-sends full state
    to every listener.
    """

    def __init__(self, *, clock: Callable[[], str] = _now_iso) -> None:
        self._clock = clock
        self._docs: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._versions: Dict[str, int] = {}
        self._listeners: Dict[str, List[Tuple[int, SnapshotCallback]]] = {}
        self._next_token = 0
        self._online = True
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        # Serializes write+delivery so listeners never see snapshots out of order.
        self._delivery = threading.RLock()

    # ---------- connectivity ----------
    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        with self._delivery:
            with self._lock:
                was = self._online
                self._online = bool(online)
                pending = [c for c in self._listeners] if online and not was else []
            LOG.info("Directory is now %s", "online" if online else "offline")
            for collection in pending:
                self._deliver(collection)

    def _check_online(self) -> None:
        if not self._online:
            raise RemoteUnavailable()

    # ---------- helpers ----------
    def _snapshot_locked(self, collection: str) -> List[DocumentSnapshot]:
        docs = self._docs.get(collection, {})
        return [DocumentSnapshot(doc_id, copy.deepcopy(data)) for doc_id, data in docs.items()]

    def _bump_locked(self, collection: str) -> None:
        self._versions[collection] = self._versions.get(collection, 0) + 1
        self._changed.notify_all()

    def _deliver(self, collection: str) -> None:
        with self._lock:
            listeners = list(self._listeners.get(collection, []))
            snapshot = self._snapshot_locked(collection)
        for _, callback in listeners:
            try:
                callback(list(snapshot))
            except Exception:
                LOG.exception("Listener on %s failed; keeping it registered", collection)

    def _write(self, collection: str, mutate: Callable[[Dict[str, Dict[str, Any]]], None]) -> None:
        with self._delivery:
            with self._lock:
                self._check_online()
                mutate(self._docs.setdefault(collection, {}))
                self._bump_locked(collection)
            self._deliver(collection)

    # ---------- operations ----------
    def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = new_document_id()
        now = self._clock()
        self._write(collection, lambda docs: docs.__setitem__(doc_id, _resolve_timestamps(copy.deepcopy(data), now)))
        LOG.debug("add %s/%s", collection, doc_id)
        return doc_id

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], *, merge: bool = True) -> None:
        now = self._clock()
        incoming = _resolve_timestamps(copy.deepcopy(data), now)

        def _apply(docs: Dict[str, Dict[str, Any]]) -> None:
            if merge and doc_id in docs:
                docs[doc_id].update(incoming)
            else:
                docs[doc_id] = incoming

        self._write(collection, _apply)
        LOG.debug("set %s/%s merge=%s", collection, doc_id, merge)

    def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        with self._lock:
            self._check_online()
            data = self._docs.get(collection, {}).get(doc_id)
            return DocumentSnapshot(doc_id, copy.deepcopy(data)) if data is not None else None

    def delete(self, collection: str, doc_id: str) -> None:
        self._write(collection, lambda docs: docs.pop(doc_id, None))
        LOG.debug("delete %s/%s", collection, doc_id)

    def query(
        self,
        collection: str,
        *,
        where: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        with self._lock:
            self._check_online()
            hits = [s for s in self._snapshot_locked(collection) if _matches(s.data, where)]
        return hits[:limit] if limit is not None else hits

    def query_group(
        self,
        collection_id: str,
        *,
        where: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        with self._lock:
            self._check_online()
            hits = [
                s
                for collection in self._docs
                if collection.rsplit("/", 1)[-1] == collection_id
                for s in self._snapshot_locked(collection)
                if _matches(s.data, where)
            ]
        return hits[:limit] if limit is not None else hits

    def subscribe(self, collection: str, callback: SnapshotCallback) -> ListenerRegistration:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners.setdefault(collection, []).append((token, callback))
            online = self._online

        def _remove() -> None:
            with self._lock:
                entries = self._listeners.get(collection, [])
                self._listeners[collection] = [e for e in entries if e[0] != token]
            LOG.debug("Listener %s on %s removed", token, collection)

        LOG.debug("Listener %s on %s registered", token, collection)
        if online:
            # Initial full snapshot, as the hosted directory does on attach.
            with self._delivery:
                with self._lock:
                    snapshot = self._snapshot_locked(collection)
                try:
                    callback(snapshot)
                except Exception:
                    LOG.exception("Listener on %s failed on initial snapshot", collection)
        return ListenerRegistration(_remove)

    # ---------- long-poll support ----------
    def version(self, collection: str) -> int:
        with self._lock:
            return self._versions.get(collection, 0)

    def wait_for_change(self, collection: str, since: int, timeout: float) -> int:
        """Block until the collection version exceeds `since` or timeout; return version."""
        with self._changed:
            self._changed.wait_for(lambda: self._versions.get(collection, 0) > since, timeout=timeout)
            return self._versions.get(collection, 0)

    def listener_count(self, collection: str) -> int:
        with self._lock:
            return len(self._listeners.get(collection, []))
