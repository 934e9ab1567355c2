from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ..errors import RemoteUnavailable
from ..logging import get_logger
from .directory import API_ERRORS, DocumentSnapshot, InMemoryDirectory


LOG = get_logger("directory-server")

ACTOR_HEADER = "X-Actor-Id"
MAX_WAIT_SECONDS = 60.0


def _parse_float(value: Optional[str], *, default: float, minimum: float, maximum: float) -> float:
    try:
        parsed = float(value) if value is not None else default
    except (TypeError, ValueError):
        parsed = default
    return min(max(parsed, minimum), maximum)


def _parse_int(value: Optional[str], *, default: int) -> int:
    try:
        return int(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def _docs_json(docs: List[DocumentSnapshot]) -> List[Dict[str, Any]]:
    return [{"id": d.doc_id, "data": d.data} for d in docs]


async def _body(request: Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Body must be JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    collection = payload.get("collection")
    if not isinstance(collection, str) or not collection.strip("/"):
        raise HTTPException(status_code=400, detail="collection required")
    payload["collection"] = collection.strip("/")
    return payload


def _doc_id(payload: Dict[str, Any]) -> str:
    doc_id = payload.get("doc_id")
    if not isinstance(doc_id, str) or not doc_id or "/" in doc_id:
        raise HTTPException(status_code=400, detail="doc_id required")
    return doc_id


def _data(payload: Dict[str, Any]) -> Dict[str, Any]:
    data = payload.get("data")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="data must be an object")
    return data


def _filters(payload: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], Optional[int]]:
    where = payload.get("where")
    if where is not None and not isinstance(where, dict):
        raise HTTPException(status_code=400, detail="where must be an object")
    limit = payload.get("limit")
    if limit is not None and (not isinstance(limit, int) or limit < 1):
        raise HTTPException(status_code=400, detail="limit must be a positive integer")
    return where, limit


def _require_actor(request: Request, collection: str) -> str:
    actor = (request.headers.get(ACTOR_HEADER) or "").strip()
    if not actor and collection != API_ERRORS:
        raise HTTPException(status_code=401, detail="Actor identity required for writes")
    return actor


def create_app(
    directory: Optional[InMemoryDirectory] = None,
    *,
    allow_origins: Optional[List[str]] = None,
) -> Starlette:
    """Create a Starlette app exposing a shared directory over JSON."""

    store = directory if directory is not None else InMemoryDirectory()

    async def health(_: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    async def add(request: Request) -> JSONResponse:
        payload = await _body(request)
        actor = _require_actor(request, payload["collection"])
        doc_id = await run_in_threadpool(store.add, payload["collection"], _data(payload))
        LOG.info("add %s/%s by %s", payload["collection"], doc_id, actor or "-")
        return JSONResponse({"id": doc_id}, status_code=201)

    async def set_doc(request: Request) -> JSONResponse:
        payload = await _body(request)
        actor = _require_actor(request, payload["collection"])
        doc_id = _doc_id(payload)
        merge = bool(payload.get("merge", True))
        await run_in_threadpool(store.set, payload["collection"], doc_id, _data(payload), merge=merge)
        LOG.info("set %s/%s merge=%s by %s", payload["collection"], doc_id, merge, actor)
        return JSONResponse({"id": doc_id})

    async def get_doc(request: Request) -> JSONResponse:
        payload = await _body(request)
        snap = store.get(payload["collection"], _doc_id(payload))
        if snap is None:
            raise HTTPException(status_code=404, detail="Document not found")
        return JSONResponse({"id": snap.doc_id, "data": snap.data})

    async def delete_doc(request: Request) -> JSONResponse:
        payload = await _body(request)
        actor = _require_actor(request, payload["collection"])
        doc_id = _doc_id(payload)
        await run_in_threadpool(store.delete, payload["collection"], doc_id)
        LOG.info("delete %s/%s by %s", payload["collection"], doc_id, actor)
        return JSONResponse({"id": doc_id})

    async def query(request: Request) -> JSONResponse:
        payload = await _body(request)
        where, limit = _filters(payload)
        docs = store.query(payload["collection"], where=where, limit=limit)
        return JSONResponse({"docs": _docs_json(docs), "version": store.version(payload["collection"])})

    async def query_group(request: Request) -> JSONResponse:
        payload = await _body(request)
        collection_id = payload["collection"]
        if "/" in collection_id:
            raise HTTPException(status_code=400, detail="collection group id must not contain '/'")
        where, limit = _filters(payload)
        docs = store.query_group(collection_id, where=where, limit=limit)
        return JSONResponse({"docs": _docs_json(docs)})

    async def watch(request: Request) -> JSONResponse:
        qp = request.query_params
        collection = (qp.get("collection") or "").strip("/")
        if not collection:
            raise HTTPException(status_code=400, detail="collection required")
        since = _parse_int(qp.get("version"), default=-1)
        wait = _parse_float(qp.get("wait"), default=25.0, minimum=0.0, maximum=MAX_WAIT_SECONDS)
        version = store.version(collection)
        if version <= since and wait > 0:
            version = await run_in_threadpool(store.wait_for_change, collection, since, wait)
        docs = store.query(collection)
        return JSONResponse({"collection": collection, "version": version, "docs": _docs_json(docs)})

    async def offline(_: Request, exc: Exception) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=503)

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/add", add, methods=["POST"]),
        Route("/api/set", set_doc, methods=["POST"]),
        Route("/api/get", get_doc, methods=["POST"]),
        Route("/api/delete", delete_doc, methods=["POST"]),
        Route("/api/query", query, methods=["POST"]),
        Route("/api/query_group", query_group, methods=["POST"]),
        Route("/api/watch", watch, methods=["GET"]),
    ]

    app = Starlette(debug=False, routes=routes, exception_handlers={RemoteUnavailable: offline})
    app.state.directory = store

    origins = allow_origins or ["http://localhost:5173", "http://127.0.0.1:5173"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if "*" in origins else origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


__all__ = ["create_app", "ACTOR_HEADER"]
