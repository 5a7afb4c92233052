from __future__ import annotations

from enum import Enum


class ComplaintStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    PROCESSING = "PROCESSING"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


ALLOWED_TRANSITIONS: dict[ComplaintStatus, set[ComplaintStatus]] = {
    ComplaintStatus.SUBMITTED: {ComplaintStatus.PROCESSING},
    ComplaintStatus.PROCESSING: {ComplaintStatus.ASSIGNED, ComplaintStatus.NEEDS_REVIEW},
    ComplaintStatus.NEEDS_REVIEW: {
        ComplaintStatus.PROCESSING,
        ComplaintStatus.ASSIGNED,
        ComplaintStatus.CLOSED,
    },
    ComplaintStatus.ASSIGNED: {ComplaintStatus.IN_PROGRESS},
    ComplaintStatus.IN_PROGRESS: {ComplaintStatus.RESOLVED, ComplaintStatus.ASSIGNED},
    ComplaintStatus.RESOLVED: {ComplaintStatus.CLOSED, ComplaintStatus.IN_PROGRESS},
    ComplaintStatus.CLOSED: set(),
}

# Output events emitted when a complaint enters a state.
ENTRY_EVENTS: dict[ComplaintStatus, str] = {
    ComplaintStatus.ASSIGNED: "complaint.assigned",
    ComplaintStatus.NEEDS_REVIEW: "complaint.flagged.for_review",
    ComplaintStatus.RESOLVED: "feedback.requested",
    ComplaintStatus.CLOSED: "complaint.closed",
}

# Timestamp field stamped when a complaint enters a state.
ENTRY_TIMESTAMPS: dict[ComplaintStatus, str] = {
    ComplaintStatus.ASSIGNED: "assigned_at",
    ComplaintStatus.RESOLVED: "resolved_at",
    ComplaintStatus.CLOSED: "closed_at",
}

# States in which a complaint may be handed to another department.
REASSIGNABLE_STATES = {
    ComplaintStatus.NEEDS_REVIEW,
    ComplaintStatus.ASSIGNED,
    ComplaintStatus.IN_PROGRESS,
}


class Category(str, Enum):
    POTHOLE = "POTHOLE"
    ROAD_DAMAGE = "ROAD_DAMAGE"
    FOOTPATH_DAMAGE = "FOOTPATH_DAMAGE"
    STREETLIGHT = "STREETLIGHT"
    TRAFFIC_SIGNAL = "TRAFFIC_SIGNAL"
    ILLEGAL_PARKING = "ILLEGAL_PARKING"
    GARBAGE_COLLECTION = "GARBAGE_COLLECTION"
    ILLEGAL_DUMPING = "ILLEGAL_DUMPING"
    WATER_SUPPLY = "WATER_SUPPLY"
    WATER_LEAKAGE = "WATER_LEAKAGE"
    SEWAGE_OVERFLOW = "SEWAGE_OVERFLOW"
    DRAINAGE_BLOCKAGE = "DRAINAGE_BLOCKAGE"
    FLOODING = "FLOODING"
    ELECTRICITY_OUTAGE = "ELECTRICITY_OUTAGE"
    EXPOSED_WIRING = "EXPOSED_WIRING"
    FALLEN_TREE = "FALLEN_TREE"
    PARK_MAINTENANCE = "PARK_MAINTENANCE"
    NOISE_POLLUTION = "NOISE_POLLUTION"
    AIR_POLLUTION = "AIR_POLLUTION"
    STRAY_ANIMALS = "STRAY_ANIMALS"
    MOSQUITO_BREEDING = "MOSQUITO_BREEDING"
    PUBLIC_TOILET = "PUBLIC_TOILET"
    ENCROACHMENT = "ENCROACHMENT"
    BUILDING_HAZARD = "BUILDING_HAZARD"
    OTHER = "OTHER"


CATEGORY_ORDER: dict[Category, int] = {c: i for i, c in enumerate(Category)}


class HotspotTrend(str, Enum):
    INCREASING = "INCREASING"
    STABLE = "STABLE"
    DECREASING = "DECREASING"


class HotspotStatus(str, Enum):
    ACTIVE = "ACTIVE"
    MONITORING = "MONITORING"
    RESOLVED = "RESOLVED"


def coerce_category(value: object) -> Category:
    """Map any upstream label onto the enumerated set; unknown labels become OTHER."""
    if isinstance(value, Category):
        return value
    key = str(value or "").strip().upper().replace("-", "_").replace(" ", "_")
    try:
        return Category(key)
    except ValueError:
        return Category.OTHER
