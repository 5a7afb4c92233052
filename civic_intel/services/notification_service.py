from __future__ import annotations

import logging
from typing import Any

from civic_intel.contracts.payloads import NotificationContract
from civic_intel.domain.policy import ConfigHandle
from civic_intel.domain.states import coerce_category
from civic_intel.infra.repositories import ComplaintRepository

logger = logging.getLogger(__name__)

RECIPIENT_CITIZEN = "CITIZEN"
RECIPIENT_DEPARTMENT = "DEPARTMENT"


class NotificationService:
    """Turns published events into outbox records; delivery happens elsewhere."""

    triggerable = {
        "complaint.submitted",
        "complaint.assigned",
        "complaint.flagged.for_review",
        "complaint.escalated",
        "routing.decided",
        "department.reassigned",
        "feedback.requested",
        "complaint.closed",
        "hotspot.activated",
    }

    def __init__(self, repo: ComplaintRepository, config: ConfigHandle) -> None:
        self.repo = repo
        self.config = config

    def handle_event(self, envelope: dict[str, Any]) -> list[dict[str, Any]]:
        event_type = envelope["event_type"]
        if event_type not in self.triggerable:
            return []

        payload = envelope.get("payload") or {}
        complaint: dict[str, Any] | None = None
        if envelope.get("complaint_id"):
            complaint = self.repo.get_complaint(str(envelope["complaint_id"]))
            if not complaint:
                return []

        recipients = self._recipients(event_type, payload, complaint)
        out: list[dict[str, Any]] = []
        for recipient_type, recipient in recipients:
            contract = NotificationContract(
                event_type=event_type,
                recipient_type=recipient_type,
                recipient=recipient,
                message=self._build_message(event_type, recipient_type, payload, complaint),
                complaint_id=envelope.get("complaint_id"),
                hotspot_id=envelope.get("hotspot_id"),
                metadata={"actor": envelope.get("actor"), "config_version": envelope.get("config_version")},
            )
            out.append(self.repo.add_notification(contract.model_dump()))
        if out:
            logger.debug("Queued %s notifications for %s", len(out), event_type)
        return out

    def _recipients(
        self,
        event_type: str,
        payload: dict[str, Any],
        complaint: dict[str, Any] | None,
    ) -> list[tuple[str, str]]:
        citizen = [(RECIPIENT_CITIZEN, str(complaint["citizen_id"]))] if complaint else []

        if event_type in {"complaint.submitted", "complaint.flagged.for_review", "feedback.requested", "complaint.closed"}:
            return citizen
        if event_type == "complaint.assigned":
            return citizen + [(RECIPIENT_DEPARTMENT, str(payload["department"]))]
        if event_type == "complaint.escalated":
            return [(RECIPIENT_DEPARTMENT, d) for d in payload.get("departments") or []]
        if event_type == "routing.decided":
            # Primary hears via complaint.assigned, escalation targets via complaint.escalated.
            skip = {payload.get("primary_department")}
            if payload.get("escalated"):
                skip.update(payload.get("secondary_departments") or [])
            return [(RECIPIENT_DEPARTMENT, d) for d in payload.get("notified_departments") or [] if d not in skip]
        if event_type == "department.reassigned":
            return [(RECIPIENT_DEPARTMENT, str(payload["to"]))]
        if event_type == "hotspot.activated":
            mapping = self.config.current().mapping_for(coerce_category(payload.get("category")))
            return [(RECIPIENT_DEPARTMENT, mapping.primary_department)] if mapping else []
        return []

    def _build_message(
        self,
        event_type: str,
        recipient_type: str,
        payload: dict[str, Any],
        complaint: dict[str, Any] | None,
    ) -> str:
        tracking = (complaint or {}).get("tracking_number", "")

        if event_type == "complaint.submitted":
            return f"Your complaint has been received. Tracking number: {tracking}."
        if event_type == "complaint.assigned":
            if recipient_type == RECIPIENT_CITIZEN:
                return f"Complaint {tracking} has been assigned to {payload['department']}."
            return f"New complaint {tracking} assigned to your department (priority {(complaint or {}).get('priority')})."
        if event_type == "complaint.flagged.for_review":
            return f"Complaint {tracking} is being reviewed by an officer before assignment."
        if event_type == "complaint.escalated":
            return (
                f"Escalation: complaint {tracking} ({payload.get('category')}) reached priority "
                f"{payload.get('priority')} (threshold {payload.get('escalation_threshold')})."
            )
        if event_type == "routing.decided":
            return f"Complaint {tracking} also concerns your department; for information."
        if event_type == "department.reassigned":
            return f"Complaint {tracking} has been reassigned to your department from {payload.get('from')}."
        if event_type == "feedback.requested":
            return f"Complaint {tracking} has been marked resolved. Please tell us whether the issue is fixed."
        if event_type == "complaint.closed":
            return f"Complaint {tracking} is now closed."
        if event_type == "hotspot.activated":
            return (
                f"Hotspot detected: {payload.get('complaint_count')} {payload.get('category')} complaints "
                f"near {payload.get('center', {}).get('lat')}, {payload.get('center', {}).get('lon')}."
            )
        return f"Complaint status changed: {event_type}."
