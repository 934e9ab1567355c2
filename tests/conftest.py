from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from shelf_finder.ai.client import AIBackend  # noqa: E402
from shelf_finder.auth.identity import IdentityProvider  # noqa: E402
from shelf_finder.domain.models import Store  # noqa: E402
from shelf_finder.localdb.db import LocalStore  # noqa: E402
from shelf_finder.remote.directory import DocumentSnapshot, InMemoryDirectory  # noqa: E402
from shelf_finder.sync.engine import SyncEngine  # noqa: E402


class RecordingDirectory(InMemoryDirectory):
    """In-memory directory that remembers every network-style call."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: List[Tuple[str, str]] = []

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        self.calls.append(("add", collection))
        return super().add(collection, data)

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], *, merge: bool = True) -> None:
        self.calls.append(("set", collection))
        super().set(collection, doc_id, data, merge=merge)

    def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        self.calls.append(("get", collection))
        return super().get(collection, doc_id)

    def delete(self, collection: str, doc_id: str) -> None:
        self.calls.append(("delete", collection))
        super().delete(collection, doc_id)

    def query(self, collection: str, *, where=None, limit=None) -> List[DocumentSnapshot]:
        self.calls.append(("query", collection))
        return super().query(collection, where=where, limit=limit)

    def query_group(self, collection_id: str, *, where=None, limit=None) -> List[DocumentSnapshot]:
        self.calls.append(("query_group", collection_id))
        return super().query_group(collection_id, where=where, limit=limit)


class StubBackend(AIBackend):
    """Scripted vision/suggest replies; a reply may be a callable of the request."""

    name = "stub"

    def __init__(self, vision: Any = None, suggest: Any = None) -> None:
        self.vision_reply = vision
        self.suggest_reply = suggest
        self.vision_requests: List[Dict[str, Any]] = []
        self.suggest_requests: List[Dict[str, Any]] = []

    @staticmethod
    def _answer(reply: Any, request: Dict[str, Any]) -> Dict[str, Any]:
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        return dict(reply or {})

    def vision(self, request: Dict[str, Any]) -> Dict[str, Any]:
        self.vision_requests.append(request)
        return self._answer(self.vision_reply, request)

    def suggest(self, request: Dict[str, Any]) -> Dict[str, Any]:
        self.suggest_requests.append(request)
        return self._answer(self.suggest_reply, request)


def make_local(root: Path) -> LocalStore:
    root.mkdir(parents=True, exist_ok=True)
    (root / "README.md").write_text("test marker", encoding="utf-8")
    return LocalStore(root_dir=str(root))


@pytest.fixture
def local(tmp_path: Path) -> LocalStore:
    return make_local(tmp_path / "client-a")


@pytest.fixture
def directory() -> RecordingDirectory:
    return RecordingDirectory()


@pytest.fixture
def identity() -> IdentityProvider:
    return IdentityProvider("user-a")


@pytest.fixture
def engine(local: LocalStore, directory: RecordingDirectory, identity: IdentityProvider):
    eng = SyncEngine(local, directory, identity)
    yield eng
    eng.shutdown(wait=True)


@pytest.fixture
def store(local: LocalStore) -> Store:
    return local.insert_store(Store(name="Super Yuda", latitude=32.0854, longitude=34.78249, city="Tel Aviv"))


@pytest.fixture
def linked_store(engine: SyncEngine, store: Store, directory: RecordingDirectory) -> Store:
    linked = engine.push_store(store)
    directory.calls.clear()
    return linked


@pytest.fixture
def stub_backend() -> Callable[..., StubBackend]:
    return StubBackend
