from __future__ import annotations

from dataclasses import replace

import pytest

from civic_intel.domain.geo import make_location
from civic_intel.infra.repositories import RepositoryConflict, RepositoryError, SupabaseRepository, build_repository
from conftest import BASE_LAT, BASE_LON


def _row(cid, tracking, *, department=None, status="SUBMITTED", category=None, lat=BASE_LAT, submitted="2025-01-10T08:00:00+00:00"):
    return {
        "id": cid,
        "tracking_number": tracking,
        "citizen_id": "citizen-1",
        "location": make_location(lat, BASE_LON),
        "status": status,
        "assigned_department": department,
        "classification": {"category": category} if category else None,
        "status_history": [],
        "submitted_at": submitted,
    }


def test_create_and_lookup_by_tracking_number(repo):
    repo.create_complaint(_row("c1", "CMP-250110-AAAAAA"))
    assert repo.get_by_tracking_number("CMP-250110-AAAAAA")["id"] == "c1"
    assert repo.get_by_tracking_number("CMP-250110-ZZZZZZ") is None
    assert repo.get_complaint("missing") is None


def test_duplicate_tracking_number_rejected(repo):
    repo.create_complaint(_row("c1", "CMP-250110-AAAAAA"))
    with pytest.raises(RepositoryError):
        repo.create_complaint(_row("c2", "CMP-250110-AAAAAA"))
    assert repo.reserve_tracking_number("CMP-250110-AAAAAA") is False
    assert repo.reserve_tracking_number("CMP-250110-BBBBBB") is True
    assert repo.reserve_tracking_number("CMP-250110-BBBBBB") is False


def test_returned_rows_are_copies(repo):
    repo.create_complaint(_row("c1", "T1"))
    row = repo.get_complaint("c1")
    row["status"] = "CLOSED"
    row["location"]["lat"] = 0.0
    stored = repo.get_complaint("c1")
    assert stored["status"] == "SUBMITTED"
    assert stored["location"]["lat"] == BASE_LAT


def test_conditional_update_detects_conflict(repo):
    repo.create_complaint(_row("c1", "T1"))
    entry = {"status": "PROCESSING", "actor": "pipeline", "timestamp": "t", "notes": None}
    updated = repo.update_complaint("c1", {"status": "PROCESSING"}, history_entry=entry, expected_status="SUBMITTED")
    assert updated["status"] == "PROCESSING"
    assert updated["status_history"] == [entry]
    assert updated["updated_at"]

    with pytest.raises(RepositoryConflict):
        repo.update_complaint("c1", {"status": "ASSIGNED"}, history_entry=entry, expected_status="SUBMITTED")
    assert len(repo.get_complaint("c1")["status_history"]) == 1

    with pytest.raises(RepositoryError):
        repo.update_complaint("missing", {"status": "ASSIGNED"})


def test_department_index_follows_updates(repo):
    repo.create_complaint(_row("c1", "T1", department="PUBLIC_WORKS", status="ASSIGNED", submitted="2025-01-10T08:00:00+00:00"))
    repo.create_complaint(_row("c2", "T2", department="PUBLIC_WORKS", status="IN_PROGRESS", submitted="2025-01-11T08:00:00+00:00"))
    repo.create_complaint(_row("c3", "T3", department="SANITATION", status="ASSIGNED"))

    assert [r["id"] for r in repo.list_by_department("PUBLIC_WORKS")] == ["c2", "c1"]
    assert [r["id"] for r in repo.list_by_department("PUBLIC_WORKS", "ASSIGNED")] == ["c1"]

    repo.update_complaint("c1", {"assigned_department": "SANITATION"})
    assert [r["id"] for r in repo.list_by_department("PUBLIC_WORKS")] == ["c2"]
    assert {r["id"] for r in repo.list_by_department("SANITATION", "ASSIGNED")} == {"c1", "c3"}


def test_geohash_index_by_category(repo):
    near = repo.create_complaint(_row("c1", "T1", category="POTHOLE"))
    repo.create_complaint(_row("c2", "T2", category="GARBAGE_COLLECTION"))
    repo.create_complaint(_row("c3", "T3", category="POTHOLE", lat=BASE_LAT + 1.0))
    repo.create_complaint(_row("c4", "T4"))  # unclassified rows are not indexed

    prefix = near["location"]["geohash"][:5]
    assert [r["id"] for r in repo.list_by_geohash(prefix, "POTHOLE")] == ["c1"]
    assert {r["id"] for r in repo.list_by_geohash(prefix)} == {"c1", "c2"}
    assert [r["id"] for r in repo.list_by_geohash(near["location"]["geohash"][:7], "POTHOLE")] == ["c1"]


def test_snapshot_filters_by_submission_time(repo):
    repo.create_complaint(_row("old", "T1", submitted="2024-10-01T00:00:00+00:00"))
    repo.create_complaint(_row("new", "T2", submitted="2025-01-10T00:00:00+00:00"))
    assert [r["id"] for r in repo.snapshot_complaints("2024-12-01T00:00:00+00:00")] == ["new"]


def test_hotspot_links_and_counts(repo):
    repo.create_complaint(_row("c1", "T1"))
    hotspot = repo.upsert_hotspot({"category": "POTHOLE", "member_ids": ["c1", "c2"], "status": "ACTIVE"})
    assert hotspot["complaint_count"] == 2

    repo.link_hotspot("c1", hotspot["id"])
    repo.link_hotspot("c1", hotspot["id"])
    repo.link_hotspot("unknown", hotspot["id"])
    assert repo.get_complaint("c1")["hotspot_ids"] == [hotspot["id"]]
    assert [h["id"] for h in repo.list_hotspots("POTHOLE")] == [hotspot["id"]]
    assert repo.list_hotspots("FLOODING") == []


def test_dead_letters_events_and_notifications(repo):
    letter = repo.add_dead_letter({"operation": "transcription", "error": "x", "attempts": 3, "status": "PENDING"})
    assert repo.list_dead_letters("PENDING")[0]["id"] == letter["id"]
    repo.update_dead_letter(letter["id"], {"status": "REQUEUED"})
    assert repo.list_dead_letters("PENDING") == []
    with pytest.raises(RepositoryError):
        repo.update_dead_letter("missing", {"status": "REQUEUED"})

    for i in range(3):
        repo.add_event({"event_type": f"e{i}", "complaint_id": "c1"})
    repo.add_event({"event_type": "other", "complaint_id": "c2"})
    assert [e["event_type"] for e in repo.list_events("c1")] == ["e0", "e1", "e2"]
    assert [e["event_type"] for e in repo.list_events(limit=2)] == ["e2", "other"]

    repo.add_notification({"recipient": "PUBLIC_WORKS", "complaint_id": "c1", "message": "m"})
    assert len(repo.list_notifications(recipient="PUBLIC_WORKS")) == 1
    assert repo.list_notifications(complaint_id="c2") == []


def test_build_repository_falls_back_to_memory(test_settings):
    repo, err = build_repository(replace(test_settings, persistence_backend="supabase", supabase_url="", supabase_key=""))
    assert repo.using_supabase is False
    assert err


def _json_path(row, column):
    head, *rest = column.split("->>")
    value = row.get(head)
    for key in rest:
        value = value.get(key) if isinstance(value, dict) else None
    return value


class FakeResult:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Evaluates the PostgREST filters the repository uses against rows held in memory."""

    def __init__(self, client, table):
        self.client = client
        self.rows = client.tables.setdefault(table, [])
        self.filters = []
        self.negate = False
        self.payload = None

    def select(self, *_columns):
        return self

    def insert(self, payload):
        self.payload = payload
        return self

    def _filter(self, column, test):
        self.client.columns.append(column)
        negate, self.negate = self.negate, False
        self.filters.append(lambda row: test(_json_path(row, column)) != negate)
        return self

    def like(self, column, pattern):
        return self._filter(column, lambda v: str(v or "").startswith(pattern.rstrip("%")))

    def eq(self, column, value):
        return self._filter(column, lambda v: v == value)

    def is_(self, column, value):
        return self._filter(column, lambda v: v is None)

    @property
    def not_(self):
        self.negate = True
        return self

    def order(self, *_args, **_kwargs):
        return self

    def execute(self):
        if self.client.fail:
            raise ConnectionError("supabase unreachable")
        if self.payload is not None:
            self.rows.append(dict(self.payload))
            return FakeResult([dict(self.payload)])
        return FakeResult([dict(r) for r in self.rows if all(f(r) for f in self.filters)])


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.columns = []
        self.fail = False

    def table(self, name):
        return FakeQuery(self, name)


def test_supabase_geohash_lookup_reads_nested_columns():
    client = FakeSupabase()
    repo = SupabaseRepository(client)
    near = repo.create_complaint(_row("c1", "T1", category="POTHOLE"))
    repo.create_complaint(_row("c2", "T2", category="GARBAGE_COLLECTION"))
    repo.create_complaint(_row("c3", "T3", category="POTHOLE", lat=BASE_LAT + 1.0))
    repo.create_complaint(_row("c4", "T4"))

    prefix = near["location"]["geohash"][:5]
    assert [r["id"] for r in repo.list_by_geohash(prefix, "POTHOLE")] == ["c1"]
    assert {r["id"] for r in repo.list_by_geohash(prefix)} == {"c1", "c2"}
    assert "location->>geohash" in client.columns
    assert "classification->>category" in client.columns


def test_supabase_query_failures_become_repository_errors():
    client = FakeSupabase()
    repo = SupabaseRepository(client)
    client.fail = True
    with pytest.raises(RepositoryError):
        repo.list_by_geohash("tdr1w")
    with pytest.raises(RepositoryError):
        repo.get_complaint("c1")
    with pytest.raises(RepositoryError):
        repo.create_complaint(_row("c1", "T1"))
