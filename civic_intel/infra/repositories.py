from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone
from threading import RLock
from typing import Any
from uuid import uuid4

from civic_intel.config import Settings
from civic_intel.domain.models import parse_ts
from civic_intel.infra.supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

GEO_INDEX_PRECISION = 5


class RepositoryError(RuntimeError):
    pass


class RepositoryConflict(RepositoryError):
    """The row changed underneath a conditional update."""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _geo_key(row: dict[str, Any]) -> tuple[str, str] | None:
    geohash = str((row.get("location") or {}).get("geohash") or "")
    category = (row.get("classification") or {}).get("category")
    if not geohash or not category:
        return None
    return geohash[:GEO_INDEX_PRECISION], str(category)


class ComplaintRepository:
    using_supabase = False

    def reserve_tracking_number(self, tracking_number: str) -> bool:
        raise NotImplementedError

    def create_complaint(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_complaint(self, complaint_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def get_by_tracking_number(self, tracking_number: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def update_complaint(
        self,
        complaint_id: str,
        updates: dict[str, Any],
        *,
        history_entry: dict[str, Any] | None = None,
        expected_status: str | None = None,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def list_by_department(self, department: str, status: str | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    def list_by_geohash(self, prefix: str, category: str | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    def snapshot_complaints(self, since: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    def link_hotspot(self, complaint_id: str, hotspot_id: str) -> None:
        raise NotImplementedError

    def upsert_hotspot(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_hotspot(self, hotspot_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_hotspots(self, category: str | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    def add_dead_letter(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_dead_letter(self, dead_letter_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def update_dead_letter(self, dead_letter_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def list_dead_letters(self, status: str | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    def add_event(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def list_events(self, complaint_id: str | None = None, limit: int = 1000) -> list[dict[str, Any]]:
        raise NotImplementedError

    def add_notification(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def list_notifications(self, recipient: str | None = None, complaint_id: str | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryRepository(ComplaintRepository):
    def __init__(self) -> None:
        self._lock = RLock()
        self._complaints: dict[str, dict[str, Any]] = {}
        self._tracking_numbers: set[str] = set()
        self._by_tracking: dict[str, str] = {}
        self._by_department_status: dict[tuple[str, str], set[str]] = {}
        self._by_geo_category: dict[tuple[str, str], set[str]] = {}
        self._hotspots: dict[str, dict[str, Any]] = {}
        self._dead_letters: dict[str, dict[str, Any]] = {}
        self._events: list[dict[str, Any]] = []
        self._notifications: list[dict[str, Any]] = []

    # -- indexes ---------------------------------------------------------

    def _unindex(self, row: dict[str, Any]) -> None:
        cid = str(row["id"])
        dept = row.get("assigned_department")
        if dept:
            self._by_department_status.get((dept, str(row.get("status"))), set()).discard(cid)
        key = _geo_key(row)
        if key:
            self._by_geo_category.get(key, set()).discard(cid)

    def _index(self, row: dict[str, Any]) -> None:
        cid = str(row["id"])
        self._by_tracking[str(row["tracking_number"])] = cid
        dept = row.get("assigned_department")
        if dept:
            self._by_department_status.setdefault((dept, str(row.get("status"))), set()).add(cid)
        key = _geo_key(row)
        if key:
            self._by_geo_category.setdefault(key, set()).add(cid)

    # -- complaints ------------------------------------------------------

    def reserve_tracking_number(self, tracking_number: str) -> bool:
        with self._lock:
            if tracking_number in self._tracking_numbers:
                return False
            self._tracking_numbers.add(tracking_number)
            return True

    def create_complaint(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            item = copy.deepcopy(row)
            item.setdefault("id", str(uuid4()))
            cid = str(item["id"])
            if cid in self._complaints:
                raise RepositoryError(f"Complaint already exists: {cid}")
            if self._by_tracking.get(str(item.get("tracking_number"))):
                raise RepositoryError(f"Tracking number already in use: {item.get('tracking_number')}")
            self._tracking_numbers.add(str(item["tracking_number"]))
            self._complaints[cid] = item
            self._index(item)
            return copy.deepcopy(item)

    def get_complaint(self, complaint_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._complaints.get(complaint_id)
            return copy.deepcopy(row) if row else None

    def get_by_tracking_number(self, tracking_number: str) -> dict[str, Any] | None:
        with self._lock:
            cid = self._by_tracking.get(tracking_number)
            return self.get_complaint(cid) if cid else None

    def update_complaint(
        self,
        complaint_id: str,
        updates: dict[str, Any],
        *,
        history_entry: dict[str, Any] | None = None,
        expected_status: str | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            existing = self._complaints.get(complaint_id)
            if not existing:
                raise RepositoryError(f"Complaint not found: {complaint_id}")
            if expected_status is not None and existing.get("status") != expected_status:
                raise RepositoryConflict(
                    f"Complaint {complaint_id} is {existing.get('status')}, expected {expected_status}"
                )
            self._unindex(existing)
            existing.update(copy.deepcopy(updates))
            if history_entry is not None:
                existing.setdefault("status_history", []).append(dict(history_entry))
            existing["updated_at"] = _utc_now()
            self._index(existing)
            return copy.deepcopy(existing)

    def list_by_department(self, department: str, status: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            if status:
                ids = set(self._by_department_status.get((department, status), set()))
            else:
                ids = set()
                for (dept, _), members in self._by_department_status.items():
                    if dept == department:
                        ids.update(members)
            rows = [copy.deepcopy(self._complaints[i]) for i in ids]
        rows.sort(key=lambda r: str(r.get("submitted_at", "")), reverse=True)
        return rows

    def list_by_geohash(self, prefix: str, category: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            ids: set[str] = set()
            for (cell, cat), members in self._by_geo_category.items():
                if category and cat != category:
                    continue
                if cell.startswith(prefix[:GEO_INDEX_PRECISION]) or prefix.startswith(cell):
                    ids.update(members)
            rows = [copy.deepcopy(self._complaints[i]) for i in ids]
        return [
            r
            for r in sorted(rows, key=lambda r: str(r.get("submitted_at", "")))
            if str(r["location"]["geohash"]).startswith(prefix)
        ]

    def snapshot_complaints(self, since: str) -> list[dict[str, Any]]:
        cutoff = parse_ts(since)
        with self._lock:
            rows = [
                copy.deepcopy(r)
                for r in self._complaints.values()
                if cutoff is None or (parse_ts(r.get("submitted_at")) or cutoff) >= cutoff
            ]
        return rows

    def link_hotspot(self, complaint_id: str, hotspot_id: str) -> None:
        with self._lock:
            row = self._complaints.get(complaint_id)
            if row is None:
                return
            links = row.setdefault("hotspot_ids", [])
            if hotspot_id not in links:
                links.append(hotspot_id)

    # -- hotspots --------------------------------------------------------

    def upsert_hotspot(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            item = copy.deepcopy(row)
            item.setdefault("id", str(uuid4()))
            item["complaint_count"] = len(item.get("member_ids") or [])
            self._hotspots[str(item["id"])] = item
            return copy.deepcopy(item)

    def get_hotspot(self, hotspot_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._hotspots.get(hotspot_id)
            return copy.deepcopy(row) if row else None

    def list_hotspots(self, category: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                copy.deepcopy(r)
                for r in self._hotspots.values()
                if not category or r.get("category") == category
            ]
        rows.sort(key=lambda r: (str(r.get("category")), str(r.get("activated_at")), str(r.get("id"))))
        return rows

    # -- dead letters ----------------------------------------------------

    def add_dead_letter(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            item = {"id": row.get("id") or str(uuid4()), "created_at": row.get("created_at") or _utc_now(), **row}
            self._dead_letters[str(item["id"])] = item
            return dict(item)

    def get_dead_letter(self, dead_letter_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._dead_letters.get(dead_letter_id)
            return dict(row) if row else None

    def update_dead_letter(self, dead_letter_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            existing = self._dead_letters.get(dead_letter_id)
            if not existing:
                raise RepositoryError(f"Dead letter not found: {dead_letter_id}")
            existing.update(updates)
            return dict(existing)

    def list_dead_letters(self, status: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = [dict(r) for r in self._dead_letters.values() if not status or r.get("status") == status]
        rows.sort(key=lambda r: str(r.get("created_at", "")))
        return rows

    # -- events and notifications ---------------------------------------

    def add_event(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            item = {"id": row.get("id") or str(uuid4()), "created_at": row.get("created_at") or _utc_now(), **row}
            self._events.append(item)
            return dict(item)

    def list_events(self, complaint_id: str | None = None, limit: int = 1000) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._events
            if complaint_id:
                rows = [r for r in rows if str(r.get("complaint_id")) == complaint_id]
            return [dict(r) for r in rows[-limit:]]

    def add_notification(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            item = {"id": row.get("id") or str(uuid4()), "created_at": row.get("created_at") or _utc_now(), **row}
            self._notifications.append(item)
            return dict(item)

    def list_notifications(self, recipient: str | None = None, complaint_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = [dict(r) for r in self._notifications]
        if recipient:
            rows = [r for r in rows if r.get("recipient") == recipient]
        if complaint_id:
            rows = [r for r in rows if r.get("complaint_id") == complaint_id]
        return rows


class SupabaseRepository(ComplaintRepository):
    using_supabase = True

    def __init__(self, client: Any) -> None:
        self.client = client

    def _insert_one(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        payload = dict(row)
        payload.setdefault("id", str(uuid4()))
        try:
            res = self.client.table(table).insert(payload).execute()
        except Exception as exc:
            raise RepositoryError(f"Insert failed for {table}: {exc}") from exc
        if not res.data:
            raise RepositoryError(f"Insert failed for {table}")
        return dict(res.data[0])

    def _fetch(self, query: Any, what: str) -> list[dict[str, Any]]:
        try:
            res = query.execute()
        except Exception as exc:
            raise RepositoryError(f"Query failed for {what}: {exc}") from exc
        return [dict(r) for r in (res.data or [])]

    def _select(self, table: str, **eq: Any) -> list[dict[str, Any]]:
        q = self.client.table(table).select("*")
        for key, value in eq.items():
            q = q.eq(key, value)
        return self._fetch(q, table)

    def reserve_tracking_number(self, tracking_number: str) -> bool:
        try:
            self.client.table("tracking_numbers").insert({"tracking_number": tracking_number}).execute()
        except Exception as exc:
            # Primary-key violation means the number was issued before.
            if "duplicate" in str(exc).lower() or "23505" in str(exc):
                return False
            raise RepositoryError(f"Tracking number reservation failed: {exc}") from exc
        return True

    def create_complaint(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert_one("complaints", row)

    def get_complaint(self, complaint_id: str) -> dict[str, Any] | None:
        rows = self._select("complaints", id=complaint_id)
        return rows[0] if rows else None

    def get_by_tracking_number(self, tracking_number: str) -> dict[str, Any] | None:
        rows = self._select("complaints", tracking_number=tracking_number)
        return rows[0] if rows else None

    def update_complaint(
        self,
        complaint_id: str,
        updates: dict[str, Any],
        *,
        history_entry: dict[str, Any] | None = None,
        expected_status: str | None = None,
    ) -> dict[str, Any]:
        payload = dict(updates)
        payload["updated_at"] = _utc_now()
        if history_entry is not None:
            current = self.get_complaint(complaint_id)
            if not current:
                raise RepositoryError(f"Complaint not found: {complaint_id}")
            payload["status_history"] = list(current.get("status_history") or []) + [dict(history_entry)]
            if expected_status is None:
                expected_status = str(current.get("status"))

        q = self.client.table("complaints").update(payload).eq("id", complaint_id)
        if expected_status is not None:
            q = q.eq("status", expected_status)
        try:
            res = q.execute()
        except Exception as exc:
            raise RepositoryError(f"Update failed for complaint {complaint_id}: {exc}") from exc
        if not res.data:
            if expected_status is not None:
                raise RepositoryConflict(f"Complaint {complaint_id} is no longer {expected_status}")
            raise RepositoryError(f"Update failed for complaint {complaint_id}")
        return dict(res.data[0])

    def list_by_department(self, department: str, status: str | None = None) -> list[dict[str, Any]]:
        q = self.client.table("complaints").select("*").eq("assigned_department", department)
        if status:
            q = q.eq("status", status)
        return self._fetch(q.order("submitted_at", desc=True), f"department {department}")

    def list_by_geohash(self, prefix: str, category: str | None = None) -> list[dict[str, Any]]:
        # Geohash and category live inside the location and classification JSON columns.
        q = self.client.table("complaints").select("*").like("location->>geohash", f"{prefix}%")
        if category:
            q = q.eq("classification->>category", category)
        else:
            q = q.not_.is_("classification", "null")
        return self._fetch(q.order("submitted_at"), f"geohash {prefix}")

    def snapshot_complaints(self, since: str) -> list[dict[str, Any]]:
        return self._fetch(self.client.table("complaints").select("*").gte("submitted_at", since), "complaint snapshot")

    def link_hotspot(self, complaint_id: str, hotspot_id: str) -> None:
        row = self.get_complaint(complaint_id)
        if not row:
            return
        links = list(row.get("hotspot_ids") or [])
        if hotspot_id in links:
            return
        links.append(hotspot_id)
        self._fetch(self.client.table("complaints").update({"hotspot_ids": links}).eq("id", complaint_id), f"complaint {complaint_id}")

    def upsert_hotspot(self, row: dict[str, Any]) -> dict[str, Any]:
        payload = dict(row)
        payload.setdefault("id", str(uuid4()))
        payload["complaint_count"] = len(payload.get("member_ids") or [])
        try:
            res = self.client.table("hotspots").upsert(payload).execute()
        except Exception as exc:
            raise RepositoryError(f"Upsert failed for hotspot {payload['id']}: {exc}") from exc
        return dict(res.data[0]) if res.data else payload

    def get_hotspot(self, hotspot_id: str) -> dict[str, Any] | None:
        rows = self._select("hotspots", id=hotspot_id)
        return rows[0] if rows else None

    def list_hotspots(self, category: str | None = None) -> list[dict[str, Any]]:
        return self._select("hotspots", category=category) if category else self._select("hotspots")

    def add_dead_letter(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert_one("dead_letters", row)

    def get_dead_letter(self, dead_letter_id: str) -> dict[str, Any] | None:
        rows = self._select("dead_letters", id=dead_letter_id)
        return rows[0] if rows else None

    def update_dead_letter(self, dead_letter_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        rows = self._fetch(self.client.table("dead_letters").update(dict(updates)).eq("id", dead_letter_id), "dead_letters")
        if not rows:
            raise RepositoryError(f"Dead letter not found: {dead_letter_id}")
        return rows[0]

    def list_dead_letters(self, status: str | None = None) -> list[dict[str, Any]]:
        return self._select("dead_letters", status=status) if status else self._select("dead_letters")

    def add_event(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert_one("complaint_events", row)

    def list_events(self, complaint_id: str | None = None, limit: int = 1000) -> list[dict[str, Any]]:
        q = self.client.table("complaint_events").select("*").order("created_at").limit(limit)
        if complaint_id:
            q = q.eq("complaint_id", complaint_id)
        return self._fetch(q, "complaint_events")

    def add_notification(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert_one("notifications", row)

    def list_notifications(self, recipient: str | None = None, complaint_id: str | None = None) -> list[dict[str, Any]]:
        eq: dict[str, Any] = {}
        if recipient:
            eq["recipient"] = recipient
        if complaint_id:
            eq["complaint_id"] = complaint_id
        return self._select("notifications", **eq)


def build_repository(cfg: Settings) -> tuple[ComplaintRepository, str | None]:
    if cfg.persistence_backend != "supabase":
        return InMemoryRepository(), None

    client, err = get_supabase_client(cfg)
    if client is None:
        logger.warning("Supabase unavailable (%s); using in-memory repository", err)
        return InMemoryRepository(), err
    try:
        # Connectivity + schema check.
        client.table("complaints").select("id").limit(1).execute()
    except Exception as exc:
        logger.warning("Supabase schema check failed (%s); using in-memory repository", exc)
        return InMemoryRepository(), f"Supabase unavailable or schema mismatch ({exc})"
    return SupabaseRepository(client), None
