from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Callable, Mapping

from civic_intel.domain.geo import centroid, encode_geohash, haversine_m, make_location
from civic_intel.domain.models import Hotspot, parse_ts
from civic_intel.domain.policy import ConfigHandle
from civic_intel.domain.states import HotspotStatus, HotspotTrend, coerce_category

logger = logging.getLogger(__name__)

EventPublisher = Callable[[str, dict[str, Any], str | None], None]
Persist = Callable[[str, Callable[[], Any]], Any]


@dataclass(frozen=True)
class ClusterPoint:
    complaint_id: str
    lat: float
    lon: float
    geohash: str


@dataclass
class Cluster:
    members: list[ClusterPoint] = field(default_factory=list)
    lat: float = 0.0
    lon: float = 0.0

    def add(self, point: ClusterPoint) -> None:
        self.members.append(point)
        self.lat, self.lon = centroid((p.lat, p.lon) for p in self.members)

    @property
    def member_ids(self) -> list[str]:
        return sorted(p.complaint_id for p in self.members)


def cluster_points(points: list[ClusterPoint], radius_m: float) -> list[Cluster]:
    """Single-pass radius clustering over a deterministic point order.

    A point joins the nearest cluster whose running centroid lies within
    `radius_m`, otherwise it seeds a new cluster.
    """
    clusters: list[Cluster] = []
    for point in sorted(points, key=lambda p: (p.geohash, p.complaint_id)):
        best: Cluster | None = None
        best_dist = radius_m
        for cluster in clusters:
            dist = haversine_m(point.lat, point.lon, cluster.lat, cluster.lon)
            if dist <= best_dist:
                best, best_dist = cluster, dist
        if best is None:
            best = Cluster()
            clusters.append(best)
        best.add(point)
    return clusters


def classify_trend(current: int, previous: int, delta: int) -> HotspotTrend:
    if current - previous >= delta:
        return HotspotTrend.INCREASING
    if current < previous:
        return HotspotTrend.DECREASING
    return HotspotTrend.STABLE


@dataclass(frozen=True)
class DensityIndex:
    """Same-category complaint points from the latest window, read by the priority scorer."""

    radius_m: float
    points: Mapping[str, tuple[tuple[float, float], ...]]
    built_at: str | None = None

    def density_at(self, category: str, lat: float, lon: float) -> int:
        return sum(
            1
            for plat, plon in self.points.get(category, ())
            if haversine_m(lat, lon, plat, plon) <= self.radius_m
        )


@dataclass
class HotspotRunReport:
    run_at: str
    window_start: str
    window_end: str
    complaints_scanned: int = 0
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    resolved: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_at": self.run_at,
            "window_start": self.window_start,
            "window_end": self.window_end,
            "complaints_scanned": self.complaints_scanned,
            "created": list(self.created),
            "updated": list(self.updated),
            "unchanged": list(self.unchanged),
            "resolved": list(self.resolved),
        }


class HotspotDetector:
    def __init__(
        self,
        repo: Any,
        config: ConfigHandle,
        publish: EventPublisher | None = None,
        clock: Callable[[], datetime] | None = None,
        persist: Persist | None = None,
    ) -> None:
        self.repo = repo
        self.config = config
        self.publish = publish
        self.persist: Persist = persist or (lambda _operation, fn: fn())
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._run_lock = threading.Lock()
        self._index = DensityIndex(radius_m=config.current().hotspot_radius_m, points=MappingProxyType({}))

    @property
    def index(self) -> DensityIndex:
        return self._index

    def density_at(self, category: str, location: dict[str, Any]) -> int:
        return self._index.density_at(category, float(location["lat"]), float(location["lon"]))

    def run(self, now: datetime | None = None) -> HotspotRunReport:
        with self._run_lock:
            return self._run(now or self.clock())

    def _run(self, now: datetime) -> HotspotRunReport:
        cfg = self.config.current()
        window = timedelta(days=cfg.hotspot_window_days)
        current_start = now - window
        previous_start = now - 2 * window
        report = HotspotRunReport(
            run_at=now.isoformat(),
            window_start=current_start.isoformat(),
            window_end=now.isoformat(),
        )

        snapshot = self.persist(
            "snapshot_complaints", lambda: self.repo.snapshot_complaints(since=previous_start.isoformat())
        )
        current: dict[str, list[ClusterPoint]] = {}
        previous: dict[str, list[ClusterPoint]] = {}
        for row in snapshot:
            point, category, submitted = self._point_for(row)
            if point is None or submitted is None or submitted > now:
                continue
            if submitted > current_start:
                current.setdefault(category, []).append(point)
                report.complaints_scanned += 1
            elif submitted > previous_start:
                previous.setdefault(category, []).append(point)

        existing: dict[str, list[dict[str, Any]]] = {}
        for row in self.persist("list_hotspots", self.repo.list_hotspots):
            if row.get("status") != HotspotStatus.RESOLVED.value:
                existing.setdefault(str(row["category"]), []).append(row)

        for category in sorted(set(current) | set(existing)):
            self._detect_category(
                category,
                current.get(category, []),
                previous.get(category, []),
                existing.get(category, []),
                cfg,
                current_start,
                now,
                report,
            )

        self._index = DensityIndex(
            radius_m=cfg.hotspot_radius_m,
            points=MappingProxyType(
                {cat: tuple((p.lat, p.lon) for p in pts) for cat, pts in current.items()}
            ),
            built_at=now.isoformat(),
        )
        logger.info(
            "Hotspot run at %s: scanned=%s created=%s updated=%s resolved=%s",
            report.run_at,
            report.complaints_scanned,
            len(report.created),
            len(report.updated),
            len(report.resolved),
        )
        return report

    def _point_for(self, row: dict[str, Any]) -> tuple[ClusterPoint | None, str, datetime | None]:
        classification = row.get("classification") or {}
        location = row.get("location") or {}
        if not classification.get("category") or "lat" not in location or "lon" not in location:
            return None, "", None
        category = coerce_category(classification["category"]).value
        lat, lon = float(location["lat"]), float(location["lon"])
        point = ClusterPoint(
            complaint_id=str(row["id"]),
            lat=lat,
            lon=lon,
            geohash=str(location.get("geohash") or encode_geohash(lat, lon)),
        )
        return point, category, parse_ts(row.get("submitted_at"))

    def _detect_category(
        self,
        category: str,
        current: list[ClusterPoint],
        previous: list[ClusterPoint],
        existing: list[dict[str, Any]],
        cfg: Any,
        window_start: datetime,
        now: datetime,
        report: HotspotRunReport,
    ) -> None:
        radius = cfg.hotspot_radius_m
        clusters = cluster_points(current, radius)
        qualifying = [c for c in clusters if len(c.members) >= cfg.hotspot_activation_threshold]
        qualifying.sort(key=lambda c: (-len(c.members), encode_geohash(c.lat, c.lon), c.member_ids[0]))

        unmatched = list(existing)
        for cluster in qualifying:
            prev_count = sum(
                1 for p in previous if haversine_m(p.lat, p.lon, cluster.lat, cluster.lon) <= radius
            )
            trend = classify_trend(len(cluster.members), prev_count, cfg.hotspot_trend_delta)
            status = HotspotStatus.MONITORING if trend == HotspotTrend.DECREASING else HotspotStatus.ACTIVE

            match = self._nearest(unmatched, cluster, radius)
            if match is None:
                hotspot = Hotspot(
                    category=category,
                    center=make_location(cluster.lat, cluster.lon),
                    radius_m=radius,
                    member_ids=cluster.member_ids,
                    window_days=cfg.hotspot_window_days,
                    window_start=window_start.isoformat(),
                    window_end=now.isoformat(),
                    previous_count=prev_count,
                    trend=trend.value,
                    status=status.value,
                    activated_at=now.isoformat(),
                    updated_at=now.isoformat(),
                )
                row = self.persist("upsert_hotspot", lambda: self.repo.upsert_hotspot(hotspot.to_row()))
                report.created.append(row["id"])
                self._emit(
                    "hotspot.activated",
                    {
                        "category": category,
                        "complaint_count": hotspot.complaint_count,
                        "center": hotspot.center,
                        "trend": hotspot.trend,
                        "radius_m": radius,
                    },
                    row["id"],
                )
                self._link_members(row["id"], hotspot.member_ids)
                continue

            unmatched.remove(match)
            member_ids = cluster.member_ids
            changes = {
                "center": make_location(cluster.lat, cluster.lon),
                "member_ids": member_ids,
                "complaint_count": len(member_ids),
                "previous_count": prev_count,
                "trend": trend.value,
                "status": status.value,
            }
            if all(match.get(k) == v for k, v in changes.items()):
                report.unchanged.append(match["id"])
                continue
            changes.update(
                {
                    "window_start": window_start.isoformat(),
                    "window_end": now.isoformat(),
                    "updated_at": now.isoformat(),
                }
            )
            self.persist("upsert_hotspot", lambda: self.repo.upsert_hotspot({**match, **changes}))
            self._link_members(match["id"], member_ids)
            report.updated.append(match["id"])

        for stale in unmatched:
            remaining = sorted(
                p.complaint_id
                for p in current
                if haversine_m(p.lat, p.lon, float(stale["center"]["lat"]), float(stale["center"]["lon"])) <= radius
            )
            resolved = {
                **stale,
                "member_ids": remaining,
                "complaint_count": len(remaining),
                "status": HotspotStatus.RESOLVED.value,
                "resolved_at": now.isoformat(),
                "updated_at": now.isoformat(),
            }
            self.persist("upsert_hotspot", lambda: self.repo.upsert_hotspot(resolved))
            report.resolved.append(stale["id"])
            self._emit(
                "hotspot.resolved",
                {"category": category, "complaint_count": len(remaining)},
                stale["id"],
            )

    @staticmethod
    def _nearest(candidates: list[dict[str, Any]], cluster: Cluster, radius: float) -> dict[str, Any] | None:
        best: dict[str, Any] | None = None
        best_dist = radius
        for row in candidates:
            center = row.get("center") or {}
            dist = haversine_m(cluster.lat, cluster.lon, float(center["lat"]), float(center["lon"]))
            if dist <= best_dist:
                best, best_dist = row, dist
        return best

    def _link_members(self, hotspot_id: str, member_ids: list[str]) -> None:
        for complaint_id in member_ids:
            self.persist("link_hotspot", lambda: self.repo.link_hotspot(complaint_id, hotspot_id))

    def _emit(self, event_type: str, payload: dict[str, Any], hotspot_id: str | None) -> None:
        if self.publish is not None:
            self.publish(event_type, payload, hotspot_id)


class HotspotScheduler:
    """Runs detection on a fixed cadence in a daemon thread, off the submission path."""

    def __init__(self, detector: HotspotDetector, interval_seconds: float) -> None:
        self.detector = detector
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="hotspot-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.detector.run()
            except Exception:
                logger.exception("Hotspot detection run failed")
            self._stop.wait(self.interval_seconds)
