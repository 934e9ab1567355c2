from __future__ import annotations

import argparse
import json
import sys
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import asdict
from typing import Any, Dict, Optional, Sequence

from ..ai.client import build_ai_backend
from ..auth.identity import IdentityProvider
from ..config import Settings, load_settings
from ..errors import ShelfFinderError
from ..localdb.db import LocalStore
from ..logging import get_logger
from ..paths import expand_abs
from ..remote.client import HttpDirectory
from ..remote.directory import InMemoryDirectory, RemoteDirectory
from ..services.ingestion import AisleIngestionService
from ..services.reports import ReportService, partition_reports
from ..services.stores import StoreService, delete_confirmation_phrase
from ..services.suggestion import AisleSuggestionService
from ..sync.engine import SyncEngine

LOG = get_logger("cli-main")


class Runtime:
    """Wires settings into the store, directory, identity and engine once per command."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.local = LocalStore(settings.db_path)
        self.identity = IdentityProvider(settings.actor_id)
        self.directory = self._directory()
        self.engine = SyncEngine(self.local, self.directory, self.identity)

    def _directory(self) -> RemoteDirectory:
        if self.settings.directory_url:
            LOG.info(f"Remote directory: {self.settings.directory_url}")
            return HttpDirectory(
                self.settings.directory_url,
                actor_provider=lambda: self.identity.current,
                timeout=self.settings.http_timeout,
            )
        LOG.warning("SHELF_DIRECTORY_URL not set; using a process-local directory (nothing is shared)")
        return InMemoryDirectory()

    def backend(self):
        return build_ai_backend(self.settings, actor_provider=lambda: self.identity.current)

    def close(self) -> None:
        self.engine.shutdown(wait=True)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _record(obj: Any) -> Dict[str, Any]:
    data = asdict(obj)
    data.pop("link", None)
    data["remote_id"] = obj.remote_id
    return data


def _await_push(future: Optional[Future], timeout: float) -> None:
    if future is None:
        return
    try:
        future.result(timeout=timeout)
        LOG.info("Remote push finished")
    except FutureTimeout:
        LOG.warning(f"Remote push still running after {timeout:.0f}s; it will be retried on the next change")
    except ShelfFinderError as exc:
        LOG.warning(f"Remote push failed, kept locally: {exc}")


# ---------- handlers ----------
def _db_init(rt: Runtime, _: argparse.Namespace) -> int:
    LOG.info(f"Local DB ready at: {rt.local.db_path}")
    print(rt.local.db_path)
    return 0


def _db_summary(rt: Runtime, _: argparse.Namespace) -> int:
    _print_json({"db_path": rt.local.db_path, **rt.local.summary()})
    return 0


def _stores_add(rt: Runtime, ns: argparse.Namespace) -> int:
    if ns.sign_in:
        rt.identity.ensure_actor(timeout=rt.settings.identity_timeout)
    store = StoreService(rt.local, rt.engine, rt.identity).create_manual(
        ns.name, address=ns.address, city=ns.city, latitude=ns.lat, longitude=ns.lng
    )
    _print_json(_record(store))
    return 0


def _stores_list(rt: Runtime, ns: argparse.Namespace) -> int:
    _print_json([_record(s) for s in rt.local.fetch_stores(name_contains=ns.name)])
    return 0


def _stores_delete(rt: Runtime, ns: argparse.Namespace) -> int:
    store = rt.local.get_store(ns.store)
    if store is None:
        LOG.error(f"Unknown store {ns.store}")
        return 2
    if not ns.confirm:
        print(f"Type --confirm '{delete_confirmation_phrase(store.name)}' to delete {store.name!r}")
        return 2
    StoreService(rt.local, rt.engine, rt.identity).delete(ns.store, ns.confirm)
    return 0


def _aisles_add(rt: Runtime, ns: argparse.Namespace) -> int:
    svc = AisleIngestionService(rt.local, rt.engine, rt.identity, identity_timeout=rt.settings.identity_timeout)
    result = svc.add_manual(ns.store, ns.name, ns.keyword or [])
    _await_push(result.push, rt.settings.http_timeout)
    _print_json(_record(rt.local.get_aisle(result.aisle.aisle_id) or result.aisle))
    return 0


def _aisles_list(rt: Runtime, ns: argparse.Namespace) -> int:
    aisles = rt.local.fetch_aisles(ns.store, name_contains=ns.name, keyword_contains=ns.keyword)
    _print_json([_record(a) for a in aisles])
    return 0


def _ingest(rt: Runtime, ns: argparse.Namespace) -> int:
    with open(expand_abs(ns.image), "rb") as fh:
        image_bytes = fh.read()
    svc = AisleIngestionService(
        rt.local,
        rt.engine,
        rt.identity,
        rt.backend(),
        vision_model=rt.settings.vision_model,
        identity_timeout=rt.settings.identity_timeout,
    )
    result = svc.ingest(ns.store, image_bytes, detail=ns.detail)
    _await_push(result.push, rt.settings.http_timeout)
    _print_json(_record(rt.local.get_aisle(result.aisle.aisle_id) or result.aisle))
    return 0


def _suggest(rt: Runtime, ns: argparse.Namespace) -> int:
    svc = AisleSuggestionService(rt.local, rt.engine, rt.backend(), suggest_model=rt.settings.suggest_model)
    result = svc.suggest(ns.store, ns.product)
    out: Dict[str, Any] = {
        "source": result.source,
        "message": result.message,
        "aisle": _record(result.aisle) if result.aisle else None,
        "score": result.score,
        "label": result.label,
        "candidates": [
            {"aisle": a.name_or_number, "label": c.confidence_label, "score": c.confidence_score, "reason": c.reason}
            for a, c in result.candidates
        ],
    }
    if ns.assign and result.aisle is not None and result.source != "known_product":
        item, push = svc.assign_product(ns.store, ns.product, result.aisle.aisle_id)
        _await_push(push, rt.settings.http_timeout)
        out["assigned"] = _record(rt.local.get_product(item.product_id) or item)
    _print_json(out)
    return 0


def _sync(rt: Runtime, ns: argparse.Namespace) -> int:
    if ns.sign_in:
        rt.identity.ensure_actor(timeout=rt.settings.identity_timeout)
    store = StoreService(rt.local, rt.engine, rt.identity).sync(ns.store)
    LOG.info(f"Listening for changes on {store.name!r} for {ns.seconds:.0f}s (Ctrl+C to stop)")
    try:
        time.sleep(max(ns.seconds, 0.0))
    except KeyboardInterrupt:
        LOG.info("Sync interrupted by user.")
    rt.engine.stop(store.store_id)
    _print_json(rt.local.summary())
    return 0


def _reports_submit(rt: Runtime, ns: argparse.Namespace) -> int:
    if ns.sign_in:
        rt.identity.ensure_actor(timeout=rt.settings.identity_timeout)
    report_id = ReportService(rt.directory, rt.identity).submit_report(
        ns.user, reason=ns.reason, details=ns.details, store_remote_id=ns.store_remote_id
    )
    print(report_id)
    return 0


def _reports_list(rt: Runtime, ns: argparse.Namespace) -> int:
    fresh, handled = partition_reports(ReportService(rt.directory, rt.identity).list_reports())
    _print_json({"new": [asdict(r) for r in fresh], "handled": [asdict(r) for r in handled]})
    return 0


def _reports_handle(rt: Runtime, ns: argparse.Namespace) -> int:
    ReportService(rt.directory, rt.identity).mark_handled(ns.report)
    return 0


def _reports_delete(rt: Runtime, ns: argparse.Namespace) -> int:
    ReportService(rt.directory, rt.identity).delete_report(ns.report)
    return 0


def _reports_edited_by(rt: Runtime, ns: argparse.Namespace) -> int:
    svc = ReportService(rt.directory, rt.identity)
    _print_json(
        {
            "stores": [asdict(r) for r in svc.stores_edited_by(ns.user)],
            "aisles": [asdict(r) for r in svc.aisles_edited_by(ns.user)],
        }
    )
    return 0


def _directory_serve(ns: argparse.Namespace) -> int:
    from ..remote.server import create_app
    import uvicorn

    allow_origins = ns.allow_origins
    if allow_origins and len(allow_origins) == 1 and allow_origins[0] == "*":
        allow_origins = ["*"]
    app = create_app(allow_origins=allow_origins)
    uvicorn.run(app, host=ns.host, port=ns.port, log_level=ns.log_level)
    return 0


def _with_runtime(handler):
    def _run(ns: argparse.Namespace) -> int:
        rt = Runtime(load_settings())
        try:
            return handler(rt, ns)
        finally:
            rt.close()

    return _run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shelf-finder",
        description="Collaborative store aisle map: local store, sync and aisle lookup.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    db = subparsers.add_parser("db", help="Local database utilities")
    db_sub = db.add_subparsers(dest="db_cmd", required=True)
    db_sub.add_parser("init", help="Create/ensure the local DB schema").set_defaults(handler=_with_runtime(_db_init))
    db_sub.add_parser("summary", help="Row counts per table").set_defaults(handler=_with_runtime(_db_summary))

    stores = subparsers.add_parser("stores", help="Create, list and delete stores")
    stores_sub = stores.add_subparsers(dest="stores_cmd", required=True)
    s_add = stores_sub.add_parser("add", help="Create a store manually (pushed when signed in)")
    s_add.add_argument("--name", required=True)
    s_add.add_argument("--address")
    s_add.add_argument("--city")
    s_add.add_argument("--lat", type=float)
    s_add.add_argument("--lng", type=float)
    s_add.add_argument("--sign-in", action="store_true", help="Acquire an anonymous actor before pushing")
    s_add.set_defaults(handler=_with_runtime(_stores_add))
    s_list = stores_sub.add_parser("list", help="List local stores")
    s_list.add_argument("--name", help="Substring filter on the store name")
    s_list.set_defaults(handler=_with_runtime(_stores_list))
    s_del = stores_sub.add_parser("delete", help="Delete a store locally and remotely")
    s_del.add_argument("--store", required=True, help="Local store id")
    s_del.add_argument("--confirm", help="Confirmation phrase, e.g. 'DELETE SUPER'")
    s_del.set_defaults(handler=_with_runtime(_stores_delete))

    aisles = subparsers.add_parser("aisles", help="Manual aisle entry and listing")
    aisles_sub = aisles.add_subparsers(dest="aisles_cmd", required=True)
    a_add = aisles_sub.add_parser("add", help="Add an aisle by hand")
    a_add.add_argument("--store", required=True)
    a_add.add_argument("--name", required=True)
    a_add.add_argument("--keyword", action="append", help="Keyword (repeatable)")
    a_add.set_defaults(handler=_with_runtime(_aisles_add))
    a_list = aisles_sub.add_parser("list", help="List aisles of a store")
    a_list.add_argument("--store", required=True)
    a_list.add_argument("--name")
    a_list.add_argument("--keyword")
    a_list.set_defaults(handler=_with_runtime(_aisles_list))

    ingest = subparsers.add_parser("ingest", help="Create an aisle from a photo of its sign")
    ingest.add_argument("--store", required=True)
    ingest.add_argument("--image", required=True)
    ingest.add_argument("--detail", choices=["high", "low"], default="high")
    ingest.set_defaults(handler=_with_runtime(_ingest))

    suggest = subparsers.add_parser("suggest", help="Find the aisle a product is likely shelved in")
    suggest.add_argument("--store", required=True)
    suggest.add_argument("--product", required=True)
    suggest.add_argument("--assign", action="store_true", help="Save the product under the suggested aisle")
    suggest.set_defaults(handler=_with_runtime(_suggest))

    sync = subparsers.add_parser("sync", help="Link a store and mirror remote changes for a while")
    sync.add_argument("--store", required=True)
    sync.add_argument("--seconds", type=float, default=30.0)
    sync.add_argument("--sign-in", action="store_true")
    sync.set_defaults(handler=_with_runtime(_sync))

    reports = subparsers.add_parser("reports", help="Report users and look up who edited what")
    reports_sub = reports.add_subparsers(dest="reports_cmd", required=True)
    r_submit = reports_sub.add_parser("submit", help="Report a user")
    r_submit.add_argument("--user", required=True, help="Reported user id")
    r_submit.add_argument("--reason")
    r_submit.add_argument("--details")
    r_submit.add_argument("--store-remote-id", help="Remote id of the store the report is about")
    r_submit.add_argument("--sign-in", action="store_true")
    r_submit.set_defaults(handler=_with_runtime(_reports_submit))
    reports_sub.add_parser("list", help="New and handled reports, newest first").set_defaults(
        handler=_with_runtime(_reports_list)
    )
    r_handle = reports_sub.add_parser("handle", help="Mark a report handled")
    r_handle.add_argument("--report", required=True)
    r_handle.set_defaults(handler=_with_runtime(_reports_handle))
    r_delete = reports_sub.add_parser("delete", help="Delete a report")
    r_delete.add_argument("--report", required=True)
    r_delete.set_defaults(handler=_with_runtime(_reports_delete))
    r_edited = reports_sub.add_parser("edited-by", help="Stores and aisles last edited by a user")
    r_edited.add_argument("--user", required=True)
    r_edited.set_defaults(handler=_with_runtime(_reports_edited_by))

    directory = subparsers.add_parser("directory", help="Shared directory server")
    directory_sub = directory.add_subparsers(dest="directory_cmd", required=True)
    serve = directory_sub.add_parser("serve", help="Run the in-memory directory over HTTP")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8010)
    serve.add_argument("--log-level", default="info")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    serve.set_defaults(handler=_directory_serve)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.debug(f"CLI invoked with arguments: {provided}")
    args = build_parser().parse_args(provided)
    try:
        code = args.handler(args)
    except ShelfFinderError as exc:
        LOG.error(f"{type(exc).__name__}: {exc}")
        print(exc.user_message, file=sys.stderr)
        return 1
    except ValueError as exc:
        LOG.error(str(exc))
        return 2
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
