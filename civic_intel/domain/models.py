from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from civic_intel.domain.states import (
    Category,
    ComplaintStatus,
    HotspotStatus,
    HotspotTrend,
    coerce_category,
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_ts(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class StatusHistoryEntry:
    status: str
    actor: str
    timestamp: str = field(default_factory=utc_now)
    notes: str | None = None


@dataclass(frozen=True)
class ExtractedEntities:
    locations: tuple[str, ...] = ()
    severity_indicators: tuple[str, ...] = ()
    affected_infrastructure: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "locations": list(self.locations),
            "severity_indicators": list(self.severity_indicators),
            "affected_infrastructure": list(self.affected_infrastructure),
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any] | None) -> "ExtractedEntities":
        row = row or {}
        return cls(
            locations=tuple(row.get("locations") or ()),
            severity_indicators=tuple(row.get("severity_indicators") or ()),
            affected_infrastructure=tuple(row.get("affected_infrastructure") or ()),
        )


@dataclass(frozen=True)
class ClassificationResult:
    category: Category
    confidence: float
    summary: str
    entities: ExtractedEntities
    suggested_priority: int
    needs_manual_review: bool
    subcategory: str | None = None
    alternative_categories: tuple[tuple[Category, float], ...] = ()
    modalities: tuple[str, ...] = ()
    modality_confidences: dict[str, float] = field(default_factory=dict)

    def implicated_categories(self) -> list[Category]:
        return [cat for cat, _ in self.alternative_categories if cat != self.category]

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "subcategory": self.subcategory,
            "confidence": self.confidence,
            "summary": self.summary,
            "entities": self.entities.to_dict(),
            "suggested_priority": self.suggested_priority,
            "needs_manual_review": self.needs_manual_review,
            "alternative_categories": [
                {"category": cat.value, "confidence": conf} for cat, conf in self.alternative_categories
            ],
            "modalities": list(self.modalities),
            "modality_confidences": dict(self.modality_confidences),
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "ClassificationResult":
        return cls(
            category=coerce_category(row.get("category")),
            subcategory=row.get("subcategory"),
            confidence=float(row.get("confidence", 0.0)),
            summary=str(row.get("summary") or ""),
            entities=ExtractedEntities.from_dict(row.get("entities")),
            suggested_priority=int(row.get("suggested_priority", 5)),
            needs_manual_review=bool(row.get("needs_manual_review", False)),
            alternative_categories=tuple(
                (coerce_category(alt.get("category")), float(alt.get("confidence", 0.0)))
                for alt in row.get("alternative_categories") or []
            ),
            modalities=tuple(row.get("modalities") or ()),
            modality_confidences=dict(row.get("modality_confidences") or {}),
        )


@dataclass(frozen=True)
class RoutingDecision:
    primary_department: str
    secondary_departments: tuple[str, ...]
    escalated: bool
    notified_departments: tuple[str, ...]
    category: Category
    priority: int
    escalation_threshold: int
    mapping_version: int

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["category"] = self.category.value
        out["secondary_departments"] = list(self.secondary_departments)
        out["notified_departments"] = list(self.notified_departments)
        return out

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "RoutingDecision":
        return cls(
            primary_department=str(row["primary_department"]),
            secondary_departments=tuple(row.get("secondary_departments") or ()),
            escalated=bool(row.get("escalated", False)),
            notified_departments=tuple(row.get("notified_departments") or ()),
            category=coerce_category(row.get("category")),
            priority=int(row.get("priority", 1)),
            escalation_threshold=int(row.get("escalation_threshold", 10)),
            mapping_version=int(row.get("mapping_version", 0)),
        )


@dataclass
class Complaint:
    citizen_id: str
    tracking_number: str
    location: dict[str, Any]
    text: str = ""
    language: str | None = None
    audio_ref: str | None = None
    image_refs: list[str] = field(default_factory=list)
    affected_population_estimate: int | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    status: str = ComplaintStatus.SUBMITTED.value
    status_history: list[dict[str, Any]] = field(default_factory=list)
    assigned_department: str | None = None
    classification: dict[str, Any] | None = None
    priority: int | None = None
    priority_detail: dict[str, Any] | None = None
    routing: dict[str, Any] | None = None
    hotspot_ids: list[str] = field(default_factory=list)
    submitted_at: str = field(default_factory=utc_now)
    processed_at: str | None = None
    assigned_at: str | None = None
    resolved_at: str | None = None
    closed_at: str | None = None
    updated_at: str = field(default_factory=utc_now)

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Hotspot:
    category: str
    center: dict[str, Any]
    radius_m: float
    member_ids: list[str]
    window_days: int
    window_start: str
    window_end: str
    previous_count: int = 0
    trend: str = HotspotTrend.STABLE.value
    status: str = HotspotStatus.ACTIVE.value
    id: str = field(default_factory=lambda: str(uuid4()))
    activated_at: str = field(default_factory=utc_now)
    resolved_at: str | None = None
    updated_at: str = field(default_factory=utc_now)

    @property
    def complaint_count(self) -> int:
        return len(self.member_ids)

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["complaint_count"] = self.complaint_count
        return row


@dataclass
class DeadLetter:
    operation: str
    error: str
    attempts: int
    complaint_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    status: str = "PENDING"
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: str = field(default_factory=utc_now)


@dataclass
class ComplaintEvent:
    event_type: str
    actor: str
    payload: dict[str, Any]
    complaint_id: str | None = None
    hotspot_id: str | None = None
    config_version: int | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: str = field(default_factory=utc_now)
