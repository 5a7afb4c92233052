from __future__ import annotations

from typing import Any

CORE_EVENTS = {
    "complaint.submitted",
    "complaint.status.changed",
    "complaint.assigned",
    "complaint.flagged.for_review",
    "complaint.closed",
    "complaint.dead_lettered",
    "complaint.escalated",
    "routing.decided",
    "feedback.requested",
    "priority.overridden",
    "department.reassigned",
    "hotspot.activated",
    "hotspot.resolved",
    "config.reloaded",
}


def is_valid_event_type(event_type: str) -> bool:
    return event_type in CORE_EVENTS


EVENT_REQUIRED_KEYS: dict[str, set[str]] = {
    "complaint.submitted": {"tracking_number"},
    "complaint.status.changed": {"from", "to"},
    "complaint.assigned": {"department"},
    "complaint.flagged.for_review": {"reason"},
    "complaint.closed": set(),
    "complaint.dead_lettered": {"operation", "dead_letter_id"},
    "complaint.escalated": {"category", "priority", "escalation_threshold", "departments"},
    "routing.decided": {"primary_department", "notified_departments", "escalated"},
    "feedback.requested": {"tracking_number"},
    "priority.overridden": {"computed", "override", "justification"},
    "department.reassigned": {"from", "to"},
    "hotspot.activated": {"category", "complaint_count", "center"},
    "hotspot.resolved": {"category"},
    "config.reloaded": {"version"},
}


def validate_event_payload(event_type: str, payload: dict[str, Any]) -> None:
    if not is_valid_event_type(event_type):
        raise ValueError(f"Unsupported event type: {event_type}")

    required = EVENT_REQUIRED_KEYS.get(event_type)
    if not required:
        return

    missing = [k for k in required if k not in payload]
    if missing:
        raise ValueError(f"Event payload missing required keys for {event_type}: {missing}")


def build_event_envelope(
    *,
    event_type: str,
    actor: str,
    payload: dict[str, Any],
    complaint_id: str | None = None,
    hotspot_id: str | None = None,
    config_version: int | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    validate_event_payload(event_type, payload)
    return {
        "event_type": event_type,
        "complaint_id": complaint_id,
        "hotspot_id": hotspot_id,
        "actor": actor,
        "payload": payload,
        "config_version": config_version,
        "correlation_id": correlation_id,
    }
