from __future__ import annotations

import random
import re

import pytest

from civic_intel.domain.errors import PersistenceFailure
from civic_intel.events.bus import InMemoryEventBus
from civic_intel.services.notification_service import NotificationService
from civic_intel.services.tracking import TrackingNumberGenerator
from conftest import FixedClock


def test_tracking_number_format_uses_submission_date():
    gen = TrackingNumberGenerator(clock=FixedClock(), rng=random.Random(7))
    number = gen.candidate()
    assert re.match(r"^CMP-250114-[A-Z0-9]{6}$", number)


def test_collision_draws_a_new_candidate():
    taken = {TrackingNumberGenerator(clock=FixedClock(), rng=random.Random(1)).candidate()}
    gen = TrackingNumberGenerator(clock=FixedClock(), rng=random.Random(1))
    seen = []

    def reserve(number):
        seen.append(number)
        if number in taken:
            return False
        taken.add(number)
        return True

    number = gen.issue(reserve)
    assert len(seen) == 2
    assert seen[0] in taken and seen[0] != number


def test_exhausted_reservation_raises():
    gen = TrackingNumberGenerator(clock=FixedClock(), max_attempts=4)
    calls = []
    with pytest.raises(PersistenceFailure):
        gen.issue(lambda n: calls.append(n) and False)
    assert len(calls) == 4


def _envelope(event_type, payload, complaint_id="c1", hotspot_id=None):
    return {
        "event_type": event_type,
        "complaint_id": complaint_id,
        "hotspot_id": hotspot_id,
        "payload": payload,
        "actor": "test",
    }


@pytest.fixture
def notifier(repo, config_handle):
    repo.create_complaint(
        {
            "id": "c1",
            "tracking_number": "CMP-250114-ABC123",
            "citizen_id": "citizen-9",
            "location": {"lat": 1.0, "lon": 1.0, "geohash": "s00twy0"},
            "status": "ASSIGNED",
            "submitted_at": "2025-01-14T09:00:00+00:00",
        }
    )
    return NotificationService(repo, config_handle)


def _recipients(records):
    return sorted((r["recipient_type"], r["recipient"]) for r in records)


def test_assignment_notifies_citizen_and_department(notifier):
    out = notifier.handle_event(_envelope("complaint.assigned", {"department": "PUBLIC_WORKS", "priority": 6}))
    assert _recipients(out) == [("CITIZEN", "citizen-9"), ("DEPARTMENT", "PUBLIC_WORKS")]
    assert all("CMP-250114-ABC123" in r["message"] for r in out if r["recipient_type"] == "CITIZEN")


def test_escalation_notifies_listed_departments(notifier):
    out = notifier.handle_event(_envelope("complaint.escalated", {"departments": ["TRAFFIC_MANAGEMENT"], "priority": 9}))
    assert _recipients(out) == [("DEPARTMENT", "TRAFFIC_MANAGEMENT")]


def test_status_change_is_not_notified(notifier, repo):
    assert notifier.handle_event(_envelope("complaint.status.changed", {"from": "A", "to": "B"})) == []
    assert repo.list_notifications() == []


def test_hotspot_activation_notifies_primary_department(notifier):
    out = notifier.handle_event(
        _envelope("hotspot.activated", {"category": "GARBAGE_COLLECTION", "complaint_count": 6}, complaint_id=None, hotspot_id="h1")
    )
    assert _recipients(out) == [("DEPARTMENT", "SANITATION")]
    assert out[0]["hotspot_id"] == "h1"


def test_bus_delivers_to_wildcard_subscriber(notifier, repo):
    bus = InMemoryEventBus()
    bus.subscribe("*", notifier.handle_event)
    bus.publish("complaint.closed", _envelope("complaint.closed", {}))
    assert _recipients(repo.list_notifications(complaint_id="c1")) == [("CITIZEN", "citizen-9")]
