"""User reports and edit attribution over the shared directory.

Reports live in the top-level `reportedUsers` collection. Attribution reads
the `createdByUserId` / `updatedByUserId` fields every store and aisle push
writes, so "who edited this" needs no extra bookkeeping.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..auth.identity import IdentityProvider
from ..logging import get_logger
from ..remote.directory import (
    REPORTED_USERS,
    SERVER_TIMESTAMP,
    STORES,
    DocumentSnapshot,
    ListenerRegistration,
    RemoteDirectory,
)


LOG = get_logger("reports")

NO_REASON = "no_reason_selected"
DEFAULT_CONTEXT = "store_last_editor"
STORES_EDITED_LIMIT = 50
AISLES_EDITED_LIMIT = 100
AISLE_GROUP = "aisles"


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


@dataclass(frozen=True)
class UserReport:
    report_id: str
    reported_user_id: str
    reporter_user_id: str
    reason: str = NO_REASON
    details: str = ""
    store_remote_id: Optional[str] = None
    context: Optional[str] = None
    created_at: Optional[str] = None
    handled_at: Optional[str] = None
    handled_by_user_id: Optional[str] = None

    @property
    def is_handled(self) -> bool:
        return self.handled_at is not None

    @classmethod
    def from_snapshot(cls, doc: DocumentSnapshot) -> Optional["UserReport"]:
        """None for documents missing either user id; other fields are optional."""
        data = doc.data if isinstance(doc.data, dict) else {}
        reported = _text(data.get("reportedUserId"))
        reporter = _text(data.get("reporterUserId"))
        if reported is None or reporter is None:
            return None
        return cls(
            report_id=doc.doc_id,
            reported_user_id=reported,
            reporter_user_id=reporter,
            reason=_text(data.get("reason")) or NO_REASON,
            details=_text(data.get("details")) or "",
            store_remote_id=_text(data.get("storeId")),
            context=_text(data.get("context")),
            created_at=_text(data.get("createdAt")),
            handled_at=_text(data.get("handledAt")),
            handled_by_user_id=_text(data.get("handledByUserId")),
        )


@dataclass(frozen=True)
class StoreAttribution:
    created_by: Optional[str]
    updated_by: Optional[str]


@dataclass(frozen=True)
class EditedStoreRow:
    store_remote_id: str
    name: str
    address: Optional[str] = None


@dataclass(frozen=True)
class EditedAisleRow:
    aisle_remote_id: str
    store_remote_id: Optional[str]
    name_or_number: str
    keywords: List[str] = field(default_factory=list)


def sort_newest_first(reports: List[UserReport]) -> List[UserReport]:
    # ISO-8601 UTC strings sort chronologically; undated reports go last
    return sorted(reports, key=lambda r: r.created_at or "", reverse=True)


def partition_reports(reports: List[UserReport]) -> Tuple[List[UserReport], List[UserReport]]:
    """Split into (new, handled), each newest first."""
    ordered = sort_newest_first(reports)
    return [r for r in ordered if not r.is_handled], [r for r in ordered if r.is_handled]


class ReportService:
    """Report users, review reports, and look up who edited what."""

    def __init__(self, directory: RemoteDirectory, identity: IdentityProvider) -> None:
        self.directory = directory
        self.identity = identity

    # ---------- reports ----------
    def submit_report(
        self,
        reported_user_id: str,
        *,
        reason: Optional[str] = None,
        details: Optional[str] = None,
        store_remote_id: Optional[str] = None,
        context: str = DEFAULT_CONTEXT,
    ) -> str:
        reporter = self.identity.require_actor()
        reported = _text(reported_user_id)
        if reported is None:
            raise ValueError("Reported user id must not be empty")
        reason = _text(reason)
        details = _text(details)
        if reason is None and details is None:
            raise ValueError("Give a reason or some details")

        data: Dict[str, Any] = {
            "reportedUserId": reported,
            "reporterUserId": reporter,
            "reason": reason or NO_REASON,
            "details": details or "",
            "context": context,
            "createdAt": SERVER_TIMESTAMP,
        }
        if store_remote_id:
            data["storeId"] = store_remote_id
        report_id = self.directory.add(REPORTED_USERS, data)
        LOG.info(f"Report {report_id} filed against {reported} by {reporter}")
        return report_id

    def list_reports(self) -> List[UserReport]:
        return sort_newest_first(self._parse(self.directory.query(REPORTED_USERS)))

    def mark_handled(self, report_id: str) -> None:
        actor = self.identity.require_actor()
        self.directory.set(
            REPORTED_USERS,
            report_id,
            {"handledAt": SERVER_TIMESTAMP, "handledByUserId": actor},
            merge=True,
        )
        LOG.info(f"Report {report_id} marked handled by {actor}")

    def delete_report(self, report_id: str) -> None:
        actor = self.identity.require_actor()
        self.directory.delete(REPORTED_USERS, report_id)
        LOG.info(f"Report {report_id} deleted by {actor}")

    def subscribe(self, on_change: Callable[[List[UserReport]], None]) -> ListenerRegistration:
        """Every delivery is the full report list, newest first."""

        def _deliver(docs: List[DocumentSnapshot]) -> None:
            on_change(sort_newest_first(self._parse(docs)))

        return self.directory.subscribe(REPORTED_USERS, _deliver)

    @staticmethod
    def _parse(docs: List[DocumentSnapshot]) -> List[UserReport]:
        out: List[UserReport] = []
        for doc in docs:
            report = UserReport.from_snapshot(doc)
            if report is None:
                LOG.warning(f"Skipping malformed report {doc.doc_id}")
                continue
            out.append(report)
        return out

    # ---------- attribution ----------
    def store_attribution(self, store_remote_id: str) -> Optional[StoreAttribution]:
        doc = self.directory.get(STORES, store_remote_id)
        if doc is None:
            return None
        return StoreAttribution(
            created_by=_text(doc.get("createdByUserId")),
            updated_by=_text(doc.get("updatedByUserId")),
        )

    def stores_edited_by(self, user_id: str, limit: int = STORES_EDITED_LIMIT) -> List[EditedStoreRow]:
        docs = self.directory.query(STORES, where={"updatedByUserId": user_id}, limit=limit)
        return [
            EditedStoreRow(
                store_remote_id=doc.doc_id,
                name=_text(doc.get("name")) or "Unnamed store",
                address=_text(doc.get("address")),
            )
            for doc in docs
        ]

    def aisles_edited_by(self, user_id: str, limit: int = AISLES_EDITED_LIMIT) -> List[EditedAisleRow]:
        """Aisles across every store whose last update came from `user_id`."""
        docs = self.directory.query_group(AISLE_GROUP, where={"updatedByUserId": user_id}, limit=limit)
        rows = []
        for doc in docs:
            keywords = doc.get("keywords")
            rows.append(
                EditedAisleRow(
                    aisle_remote_id=doc.doc_id,
                    store_remote_id=_text(doc.get("storeRemoteId")),
                    name_or_number=_text(doc.get("nameOrNumber")) or "Unnamed aisle",
                    keywords=[k for k in keywords if isinstance(k, str)] if isinstance(keywords, list) else [],
                )
            )
        return rows
