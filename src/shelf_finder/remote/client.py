from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional

import requests

from ..errors import RemoteUnavailable, RpcFailure, Unauthenticated
from ..logging import get_logger
from .directory import DocumentSnapshot, ListenerRegistration, RemoteDirectory, SnapshotCallback
from .server import ACTOR_HEADER


class HttpDirectory(RemoteDirectory):
    """Thin client for the directory server with session, timeouts, and logging.

    Subscriptions long-poll /api/watch on a daemon thread and hand every full
    snapshot to the callback. Transport errors inside that loop are logged
    and retried after `retry_backoff` seconds; the loop only ends on remove().
    """

    def __init__(
        self,
        base_url: str,
        *,
        actor_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout: float = 30.0,
        verify_tls: bool = True,
        watch_wait: float = 25.0,
        retry_backoff: float = 2.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.watch_wait = float(watch_wait)
        self.retry_backoff = float(retry_backoff)
        self.actor_provider = actor_provider
        self.log = get_logger("directory-client")
        self.s = session if session is not None else requests.Session()
        self.s.headers.update({"Accept": "application/json"})
        if isinstance(self.s, requests.Session):
            self.s.verify = bool(verify_tls)

    # ---------- helpers ----------
    def _url(self, path: str) -> str:
        return f"{self.base}{path}"

    def _headers(self) -> Dict[str, str]:
        actor = self.actor_provider() if self.actor_provider else None
        return {ACTOR_HEADER: actor} if actor else {}

    def _json(self, r: Any, what: str) -> Any:
        if r.status_code == 401:
            raise Unauthenticated(f"{what}: server refused write without actor")
        if r.status_code == 503:
            raise RemoteUnavailable(f"{what}: directory unavailable")
        if r.status_code >= 400:
            preview = (r.text or "")[:300]
            raise RpcFailure(f"{what}: HTTP {r.status_code} {preview}")
        try:
            return r.json()
        except ValueError as exc:
            raise RpcFailure(f"{what}: response is not JSON") from exc

    def _post(self, path: str, payload: Dict[str, Any], what: str) -> Any:
        try:
            r = self.s.post(self._url(path), json=payload, headers=self._headers(), timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            self.log.warning(f"{what} failed: {exc}")
            raise RemoteUnavailable(f"{what}: {exc}") from exc
        return self._json(r, what)

    @staticmethod
    def _docs(body: Any) -> List[DocumentSnapshot]:
        raw = body.get("docs") if isinstance(body, dict) else None
        if not isinstance(raw, list):
            raise RpcFailure("directory returned no docs list")
        return [
            DocumentSnapshot(str(d.get("id")), d.get("data") if isinstance(d.get("data"), dict) else {})
            for d in raw
            if isinstance(d, dict) and d.get("id")
        ]

    # ---------- documents ----------
    def add(self, collection: str, data: Dict[str, Any]) -> str:
        body = self._post("/api/add", {"collection": collection, "data": data}, f"add {collection}")
        doc_id = body.get("id") if isinstance(body, dict) else None
        if not isinstance(doc_id, str) or not doc_id:
            raise RpcFailure(f"add {collection}: server returned no id")
        self.log.debug(f"add {collection}/{doc_id}")
        return doc_id

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], *, merge: bool = True) -> None:
        self._post(
            "/api/set",
            {"collection": collection, "doc_id": doc_id, "data": data, "merge": merge},
            f"set {collection}/{doc_id}",
        )

    def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        try:
            r = self.s.post(
                self._url("/api/get"),
                json={"collection": collection, "doc_id": doc_id},
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise RemoteUnavailable(f"get {collection}/{doc_id}: {exc}") from exc
        if r.status_code == 404:
            return None
        body = self._json(r, f"get {collection}/{doc_id}")
        return DocumentSnapshot(doc_id, body.get("data") or {})

    def delete(self, collection: str, doc_id: str) -> None:
        self._post("/api/delete", {"collection": collection, "doc_id": doc_id}, f"delete {collection}/{doc_id}")

    def query(
        self,
        collection: str,
        *,
        where: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        payload: Dict[str, Any] = {"collection": collection}
        if where:
            payload["where"] = where
        if limit is not None:
            payload["limit"] = int(limit)
        return self._docs(self._post("/api/query", payload, f"query {collection}"))

    def query_group(
        self,
        collection_id: str,
        *,
        where: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        payload: Dict[str, Any] = {"collection": collection_id}
        if where:
            payload["where"] = where
        if limit is not None:
            payload["limit"] = int(limit)
        return self._docs(self._post("/api/query_group", payload, f"query group {collection_id}"))

    # ---------- subscriptions ----------
    def watch_once(self, collection: str, since: int, wait: float) -> Optional[Dict[str, Any]]:
        """One long-poll round; returns {version, docs} or None if nothing changed."""
        r = self.s.get(
            self._url("/api/watch"),
            params={"collection": collection, "version": since, "wait": wait},
            timeout=self.timeout + wait,
        )
        body = self._json(r, f"watch {collection}")
        version = int(body.get("version", since))
        if version <= since:
            return None
        return {"version": version, "docs": self._docs(body)}

    def subscribe(self, collection: str, callback: SnapshotCallback) -> ListenerRegistration:
        stop = threading.Event()

        def _loop() -> None:
            since = -1
            while not stop.is_set():
                try:
                    result = self.watch_once(collection, since, self.watch_wait)
                except (requests.RequestException, RpcFailure) as exc:
                    self.log.warning(f"watch {collection} failed: {exc}; retrying in {self.retry_backoff}s")
                    stop.wait(self.retry_backoff)
                    continue
                if result is None or stop.is_set():
                    continue
                since = result["version"]
                try:
                    callback(result["docs"])
                except Exception:
                    self.log.exception(f"Listener on {collection} failed; keeping it registered")

        thread = threading.Thread(target=_loop, name=f"watch:{collection}", daemon=True)
        thread.start()
        self.log.debug(f"Watching {collection}")
        return ListenerRegistration(stop.set)
