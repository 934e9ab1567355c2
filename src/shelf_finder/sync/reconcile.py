"""Full-snapshot reconciliation planning.

Pure functions: given the local records of one Store and the complete set of
remote documents for one collection, compute the inserts, updates and deletes
that make the local side mirror the remote side. The engine commits a plan in
a single transaction.

Matching order per remote document:
  1. local record already linked to the document id -> overwrite fields
  2. first unlinked local record with the same normalized name -> adopt id
  3. otherwise insert a new, pre-linked local record
Linked local records whose id is missing from the snapshot are deleted.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Generic, Iterable, List, Optional, Set, TypeVar

from ..domain.models import Aisle, Linked, ProductItem, Unlinked, utc_now_iso
from ..domain.normalize import normalize_name
from ..localdb.db import normalize_keyword_list
from ..remote.directory import DocumentSnapshot


T = TypeVar("T")


class MalformedSnapshot(ValueError):
    """A remote batch that cannot be applied as a whole."""


@dataclass
class ReconcilePlan(Generic[T]):
    inserts: List[T] = field(default_factory=list)
    updates: List[T] = field(default_factory=list)
    deletes: List[str] = field(default_factory=list)
    adopted: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.inserts or self.updates or self.deletes)

    def describe(self) -> str:
        return f"+{len(self.inserts)} ~{len(self.updates)} -{len(self.deletes)} (adopted {self.adopted})"


@dataclass(frozen=True)
class _RemoteAisle:
    doc_id: str
    name: str
    keywords: List[str]
    created_at: Optional[str]
    updated_at: Optional[str]


@dataclass(frozen=True)
class _RemoteProduct:
    doc_id: str
    name: str
    barcode: Optional[str]
    aisle_remote_id: Optional[str]
    updated_at: Optional[str]


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _data(doc: Any) -> Dict[str, Any]:
    if not isinstance(doc, DocumentSnapshot) or not doc.doc_id:
        raise MalformedSnapshot(f"not a document: {doc!r}")
    if not isinstance(doc.data, dict):
        raise MalformedSnapshot(f"document {doc.doc_id} has non-object data")
    return doc.data


def _parse_aisles(docs: Iterable[DocumentSnapshot]) -> List[_RemoteAisle]:
    out: List[_RemoteAisle] = []
    seen: Set[str] = set()
    for doc in docs:
        data = _data(doc)
        name = _text(data.get("nameOrNumber"))
        if name is None:
            raise MalformedSnapshot(f"aisle {doc.doc_id} has no nameOrNumber")
        if doc.doc_id in seen:
            continue
        seen.add(doc.doc_id)
        keywords = data.get("keywords")
        out.append(
            _RemoteAisle(
                doc_id=doc.doc_id,
                name=name,
                keywords=normalize_keyword_list(keywords if isinstance(keywords, list) else []),
                created_at=_text(data.get("createdAt")),
                updated_at=_text(data.get("updatedAt")),
            )
        )
    return out


def _parse_products(docs: Iterable[DocumentSnapshot]) -> List[_RemoteProduct]:
    out: List[_RemoteProduct] = []
    seen: Set[str] = set()
    for doc in docs:
        data = _data(doc)
        name = _text(data.get("name"))
        if name is None:
            raise MalformedSnapshot(f"product {doc.doc_id} has no name")
        if doc.doc_id in seen:
            continue
        seen.add(doc.doc_id)
        out.append(
            _RemoteProduct(
                doc_id=doc.doc_id,
                name=name,
                barcode=_text(data.get("barcode")),
                aisle_remote_id=_text(data.get("aisleRemoteId")),
                updated_at=_text(data.get("updatedAt")),
            )
        )
    return out


def _first_unlinked(candidates: List[T], key: str, name_of, taken: Set[int]) -> Optional[int]:
    for idx, record in enumerate(candidates):
        if idx in taken:
            continue
        if normalize_name(name_of(record)) == key:
            return idx
    return None


def reconcile_aisles(
    local_aisles: List[Aisle],
    docs: Iterable[DocumentSnapshot],
    store_id: str,
) -> ReconcilePlan[Aisle]:
    """Plan the local changes for one full aisles snapshot of a Store.

    `local_aisles` must be in insertion order; it decides the tie-break when
    several unlinked aisles share a normalized name.
    """
    remote = _parse_aisles(docs)
    plan: ReconcilePlan[Aisle] = ReconcilePlan()

    linked: Dict[str, Aisle] = {}
    unlinked: List[Aisle] = []
    for aisle in local_aisles:
        if isinstance(aisle.link, Linked):
            linked[aisle.link.remote_id] = aisle
        elif isinstance(aisle.link, Unlinked):
            unlinked.append(aisle)

    taken: Set[int] = set()
    for r in remote:
        match = linked.get(r.doc_id)
        if match is not None:
            if match.name_or_number != r.name or match.keywords != r.keywords:
                plan.updates.append(
                    replace(match, name_or_number=r.name, keywords=list(r.keywords), updated_at=r.updated_at or utc_now_iso())
                )
            continue

        idx = _first_unlinked(unlinked, normalize_name(r.name), lambda a: a.name_or_number, taken)
        if idx is not None:
            taken.add(idx)
            plan.adopted += 1
            plan.updates.append(
                replace(
                    unlinked[idx],
                    link=Linked(r.doc_id),
                    name_or_number=r.name,
                    keywords=list(r.keywords),
                    updated_at=r.updated_at or utc_now_iso(),
                )
            )
            continue

        now = utc_now_iso()
        plan.inserts.append(
            Aisle(
                store_id=store_id,
                name_or_number=r.name,
                keywords=list(r.keywords),
                link=Linked(r.doc_id),
                created_at=r.created_at or now,
                updated_at=r.updated_at or now,
            )
        )

    present = {r.doc_id for r in remote}
    plan.deletes.extend(a.aisle_id for rid, a in linked.items() if rid not in present)
    return plan


def reconcile_products(
    local_products: List[ProductItem],
    docs: Iterable[DocumentSnapshot],
    store_id: str,
    local_aisles: List[Aisle],
    *,
    delete_absent: bool = True,
) -> ReconcilePlan[ProductItem]:
    """Plan the local changes for one full products snapshot of a Store.

    The remote `aisleRemoteId` is resolved against the Store's linked aisles;
    an id with no local counterpart leaves the product unassigned.
    """
    remote = _parse_products(docs)
    plan: ReconcilePlan[ProductItem] = ReconcilePlan()
    aisle_by_rid = {a.link.remote_id: a.aisle_id for a in local_aisles if isinstance(a.link, Linked)}

    linked: Dict[str, ProductItem] = {}
    unlinked: List[ProductItem] = []
    for item in local_products:
        if isinstance(item.link, Linked):
            linked[item.link.remote_id] = item
        elif isinstance(item.link, Unlinked):
            unlinked.append(item)

    taken: Set[int] = set()
    for r in remote:
        aisle_id = aisle_by_rid.get(r.aisle_remote_id) if r.aisle_remote_id else None
        fields = {
            "name": r.name,
            "barcode": r.barcode,
            "aisle_id": aisle_id,
            "aisle_remote_id": r.aisle_remote_id,
        }

        match = linked.get(r.doc_id)
        if match is not None:
            if any(getattr(match, k) != v for k, v in fields.items()):
                plan.updates.append(replace(match, updated_at=r.updated_at or utc_now_iso(), **fields))
            continue

        idx = _first_unlinked(unlinked, normalize_name(r.name), lambda p: p.name, taken)
        if idx is not None:
            taken.add(idx)
            plan.adopted += 1
            plan.updates.append(
                replace(unlinked[idx], link=Linked(r.doc_id), updated_at=r.updated_at or utc_now_iso(), **fields)
            )
            continue

        now = utc_now_iso()
        plan.inserts.append(
            ProductItem(store_id=store_id, link=Linked(r.doc_id), created_at=now, updated_at=r.updated_at or now, **fields)
        )

    if delete_absent:
        present = {r.doc_id for r in remote}
        plan.deletes.extend(p.product_id for rid, p in linked.items() if rid not in present)
    return plan
