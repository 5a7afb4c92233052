from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, Field, field_validator


class GeoInput(BaseModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lon: float = Field(ge=-180.0, le=180.0)


class ComplaintInput(BaseModel):
    citizen_id: str = Field(min_length=2)
    location: GeoInput
    text: str = Field(default="", max_length=10000)
    language: str | None = None
    audio_ref: str | None = None
    image_refs: list[str] = Field(default_factory=list, max_length=10)
    affected_population_estimate: int | None = Field(default=None, ge=0)

    @field_validator("text")
    @classmethod
    def _strip_text(cls, value: str) -> str:
        return value.strip()

    def has_content(self) -> bool:
        return bool(self.text or self.audio_ref or self.image_refs)


class SubmitReceipt(BaseModel):
    complaint_id: str
    tracking_number: str
    status: str
    estimated_resolution_days: int


class StatusHistoryView(BaseModel):
    status: str
    timestamp: str
    actor: str
    notes: str | None = None


class ComplaintStatusView(BaseModel):
    complaint_id: str
    tracking_number: str
    status: str
    category: str | None = None
    priority: int | None = None
    assigned_department: str | None = None
    estimated_resolution_days: int
    submitted_at: str
    updated_at: str
    status_history: list[StatusHistoryView] = Field(default_factory=list)


class DepartmentFilters(BaseModel):
    status: str | None = None
    category: str | None = None
    min_priority: int | None = Field(default=None, ge=1, le=10)
    limit: int = Field(default=200, ge=1, le=5000)


class HotspotFilters(BaseModel):
    category: str | None = None
    status: str | None = None
    min_count: int | None = Field(default=None, ge=1)
    geohash_prefix: str | None = None


# Collaborator results. Upstream payloads are loosely structured; these models
# accept extra keys and coerce what the pipeline relies on.


def _string_items(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set)):
        return []
    return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]


class TranscriptionResult(BaseModel, extra="ignore"):
    text: str = ""
    language: str | None = None
    confidence: float = Field(default=0.0)

    @field_validator("text", mode="before")
    @classmethod
    def _text_as_str(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        if isinstance(value, bool):
            return 0.0
        try:
            out = float(value)
        except (TypeError, ValueError, OverflowError):
            return 0.0
        return max(0.0, min(1.0, out)) if math.isfinite(out) else 0.0


class SafetyFlags(BaseModel, extra="ignore"):
    is_safe: bool = True
    categories: list[str] = Field(default_factory=list)

    @field_validator("is_safe", mode="before")
    @classmethod
    def _unknown_flag_is_unsafe(cls, value: Any) -> bool:
        if value is None:
            return True
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {"true", "1", "yes", "safe"}

    @field_validator("categories", mode="before")
    @classmethod
    def _categories_as_str(cls, value: Any) -> list[str]:
        return _string_items(value)


class ImageAnalysisResult(BaseModel, extra="ignore"):
    detected_objects: list[str] = Field(default_factory=list)
    scene_labels: list[str] = Field(default_factory=list)
    extracted_text: str = ""
    safety_flags: SafetyFlags = Field(default_factory=SafetyFlags)

    @field_validator("detected_objects", "scene_labels", mode="before")
    @classmethod
    def _labels_as_str(cls, value: Any) -> list[str]:
        return _string_items(value)

    @field_validator("extracted_text", mode="before")
    @classmethod
    def _text_as_str(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    def is_empty(self) -> bool:
        return not (self.detected_objects or self.scene_labels or self.extracted_text.strip())


class DepartmentMappingItem(BaseModel):
    category: str = Field(min_length=2)
    primary_department: str = Field(min_length=2)
    secondary_departments: list[str] = Field(default_factory=list)
    escalation_threshold: int = Field(default=8, ge=1, le=10)
    average_resolution_days: int = Field(default=7, ge=1)


class DepartmentMappingFile(BaseModel):
    mappings: list[DepartmentMappingItem] = Field(min_length=1)


class PriorityOverrideRequest(BaseModel):
    value: int = Field(ge=1, le=10)
    justification: str = Field(min_length=3)
    actor: str = Field(default="admin", min_length=1)


class ReassignRequest(BaseModel):
    department: str = Field(min_length=2)
    actor: str = Field(default="admin", min_length=1)
    notes: str | None = None


class TransitionRequest(BaseModel):
    target: str
    actor: str = Field(default="admin", min_length=1)
    notes: str | None = None
    department: str | None = None


class ReviewResolutionRequest(BaseModel):
    department: str | None = None
    category: str | None = None
    actor: str = Field(default="reviewer", min_length=1)
    notes: str | None = None


class NotificationContract(BaseModel):
    event_type: str
    recipient_type: str
    recipient: str
    message: str
    complaint_id: str | None = None
    hotspot_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
