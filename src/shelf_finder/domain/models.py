from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Union


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def new_local_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Unlinked:
    """Record has no remote document yet (created offline or never pushed)."""

    @property
    def remote_id(self) -> None:
        return None


@dataclass(frozen=True)
class Linked:
    remote_id: str


Link = Union[Unlinked, Linked]


def link_from(remote_id: Optional[str]) -> Link:
    return Linked(remote_id) if remote_id else Unlinked()


@dataclass
class Store:
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    link: Link = field(default_factory=Unlinked)
    store_id: str = field(default_factory=new_local_id)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def remote_id(self) -> Optional[str]:
        return self.link.remote_id

    @property
    def has_coordinate(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass
class Aisle:
    store_id: str
    name_or_number: str
    keywords: List[str] = field(default_factory=list)
    link: Link = field(default_factory=Unlinked)
    aisle_id: str = field(default_factory=new_local_id)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def remote_id(self) -> Optional[str]:
        return self.link.remote_id


@dataclass
class ProductItem:
    store_id: str
    name: str
    aisle_id: Optional[str] = None
    barcode: Optional[str] = None
    aisle_remote_id: Optional[str] = None
    link: Link = field(default_factory=Unlinked)
    product_id: str = field(default_factory=new_local_id)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def remote_id(self) -> Optional[str]:
        return self.link.remote_id


@dataclass(frozen=True)
class Place:
    """A candidate from the nearby-place search collaborator."""

    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    distance_m: Optional[float] = None
