from __future__ import annotations

from itertools import count
from typing import List

import pytest
from conftest import RecordingDirectory

from shelf_finder.auth.identity import IdentityProvider
from shelf_finder.domain.models import Aisle, Store
from shelf_finder.errors import Unauthenticated
from shelf_finder.localdb.db import LocalStore
from shelf_finder.remote.directory import REPORTED_USERS, STORES, DocumentSnapshot, InMemoryDirectory
from shelf_finder.services.reports import NO_REASON, ReportService, UserReport, partition_reports
from shelf_finder.sync.engine import SyncEngine


def _ticking_clock():
    ticks = count(1)
    return lambda: f"2026-01-01T00:00:{next(ticks):02d}.000000+00:00"


@pytest.fixture
def reports(directory: RecordingDirectory, identity: IdentityProvider) -> ReportService:
    return ReportService(directory, identity)


def test_writes_require_actor_before_any_call(directory: RecordingDirectory) -> None:
    svc = ReportService(directory, IdentityProvider())
    with pytest.raises(Unauthenticated):
        svc.submit_report("user-b", reason="spam")
    with pytest.raises(Unauthenticated):
        svc.mark_handled("r1")
    with pytest.raises(Unauthenticated):
        svc.delete_report("r1")
    assert directory.calls == []


def test_submit_report_records_reporter_and_context(reports: ReportService, directory: RecordingDirectory) -> None:
    report_id = reports.submit_report("user-b", reason="vandalism", details=" wiped aisles ", store_remote_id="S1")

    doc = directory.get(REPORTED_USERS, report_id)
    assert doc.get("reportedUserId") == "user-b"
    assert doc.get("reporterUserId") == "user-a"
    assert doc.get("reason") == "vandalism"
    assert doc.get("details") == "wiped aisles"
    assert doc.get("storeId") == "S1"
    assert doc.get("context") == "store_last_editor"
    assert doc.get("createdAt")
    assert doc.get("handledAt") is None


def test_details_only_report_gets_placeholder_reason(reports: ReportService, directory: RecordingDirectory) -> None:
    report_id = reports.submit_report("user-b", reason="  ", details="renamed every aisle")
    assert directory.get(REPORTED_USERS, report_id).get("reason") == NO_REASON


def test_empty_report_is_rejected_without_call(reports: ReportService, directory: RecordingDirectory) -> None:
    with pytest.raises(ValueError):
        reports.submit_report("user-b", reason="", details="   ")
    with pytest.raises(ValueError):
        reports.submit_report("  ", reason="spam")
    assert directory.calls == []


def test_mark_handled_and_delete(reports: ReportService, directory: RecordingDirectory) -> None:
    report_id = reports.submit_report("user-b", reason="spam")

    reports.mark_handled(report_id)
    (report,) = reports.list_reports()
    assert report.is_handled
    assert report.handled_by_user_id == "user-a"
    assert report.reason == "spam"

    reports.delete_report(report_id)
    assert reports.list_reports() == []


def test_listener_receives_full_list_newest_first() -> None:
    backing = InMemoryDirectory(clock=_ticking_clock())
    svc = ReportService(backing, IdentityProvider("moderator"))
    seen: List[List[UserReport]] = []
    registration = svc.subscribe(seen.append)

    first = svc.submit_report("user-b", reason="spam")
    second = svc.submit_report("user-c", details="bad names")
    svc.mark_handled(first)

    assert seen[0] == []
    assert [r.report_id for r in seen[2]] == [second, first]
    fresh, handled = partition_reports(seen[-1])
    assert [r.report_id for r in fresh] == [second]
    assert [r.report_id for r in handled] == [first]

    registration.remove()
    svc.delete_report(second)
    assert len(seen) == 4


def test_malformed_report_documents_are_skipped(directory: RecordingDirectory, reports: ReportService) -> None:
    directory.add(REPORTED_USERS, {"reason": "spam"})
    good = reports.submit_report("user-b", reason="spam")
    assert [r.report_id for r in reports.list_reports()] == [good]


def test_from_snapshot_tolerates_missing_optional_fields() -> None:
    report = UserReport.from_snapshot(DocumentSnapshot("r1", {"reportedUserId": "u1", "reporterUserId": "u2"}))
    assert report.reason == NO_REASON
    assert report.details == ""
    assert report.store_remote_id is None
    assert not report.is_handled


def test_store_attribution(linked_store: Store, directory: RecordingDirectory, reports: ReportService) -> None:
    directory.set(STORES, linked_store.remote_id, {"updatedByUserId": "user-b"})

    attribution = reports.store_attribution(linked_store.remote_id)
    assert attribution.created_by == "user-a"
    assert attribution.updated_by == "user-b"
    assert reports.store_attribution("missing") is None


def test_edited_by_queries_stores_and_aisles_across_stores(
    engine: SyncEngine, local: LocalStore, linked_store: Store, directory: RecordingDirectory, reports: ReportService
) -> None:
    aisle = local.insert_aisle(Aisle(store_id=linked_store.store_id, name_or_number="Dairy", keywords=["milk"]))
    engine.push_aisle(aisle.aisle_id)
    directory.add("stores/OTHER/aisles", {"nameOrNumber": "Bakery", "updatedByUserId": "user-a"})
    directory.add("stores/OTHER/aisles", {"nameOrNumber": "Frozen", "updatedByUserId": "user-b"})
    directory.calls.clear()

    stores = reports.stores_edited_by("user-a")
    assert [(s.store_remote_id, s.name) for s in stores] == [(linked_store.remote_id, "Super Yuda")]

    aisles = reports.aisles_edited_by("user-a")
    assert sorted(a.name_or_number for a in aisles) == ["Bakery", "Dairy"]
    dairy = next(a for a in aisles if a.name_or_number == "Dairy")
    assert dairy.store_remote_id == linked_store.remote_id
    assert dairy.keywords == ["milk"]

    assert directory.calls == [("query", STORES), ("query_group", "aisles")]
    assert len(reports.aisles_edited_by("user-a", limit=1)) == 1
