from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from civic_intel.api.main import create_app
from conftest import StubClassifier, complaint_payload, llm_response


@pytest.fixture
def service(make_service):
    return make_service(classifier=StubClassifier(llm_response("POTHOLE")))


@pytest.fixture
def client(service):
    with TestClient(create_app(service, schedule_hotspots=False)) as c:
        yield c


def _submit(client, **payload):
    resp = client.post("/complaints", params={"process_now": "true"}, json=complaint_payload(**payload))
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["persistence"] == "memory"
    assert body["config_version"] == 1


def test_submit_and_process_immediately(client):
    receipt = _submit(client)
    assert receipt["status"] == "ASSIGNED"
    assert receipt["estimated_resolution_days"] == 7

    status = client.get(f"/complaints/{receipt['tracking_number']}/status").json()
    assert status["assigned_department"] == "PUBLIC_WORKS"
    assert [h["status"] for h in status["status_history"]] == ["SUBMITTED", "PROCESSING", "ASSIGNED"]

    events = client.get(f"/complaints/{receipt['complaint_id']}/events").json()
    assert events[0]["event_type"] == "complaint.submitted"


def test_submit_without_processing(client):
    resp = client.post("/complaints", json=complaint_payload())
    assert resp.status_code == 201
    assert resp.json()["status"] == "SUBMITTED"

    processed = client.post(f"/complaints/{resp.json()['complaint_id']}/process")
    assert processed.status_code == 200
    assert processed.json()["status"] == "ASSIGNED"


@pytest.mark.parametrize(
    "payload",
    [
        {"location": {"lat": 12.9, "lon": 77.5}, "text": "pothole"},
        {"citizen_id": "citizen-1", "location": {"lat": 12.9, "lon": 77.5}},
        {"citizen_id": "citizen-1", "location": {"lat": 12.9, "lon": 200.0}, "text": "pothole"},
    ],
)
def test_invalid_submissions_rejected(client, payload):
    assert client.post("/complaints", json=payload).status_code == 422


def test_unknown_complaint_is_404(client):
    assert client.get("/complaints/CMP-990101-ABCDEF/status").status_code == 404
    assert client.post("/complaints/nope/process").status_code == 404


def test_invalid_transition_is_409(client):
    receipt = _submit(client)
    resp = client.post(f"/complaints/{receipt['complaint_id']}/transition", json={"target": "CLOSED"})
    assert resp.status_code == 409

    ok = client.post(f"/complaints/{receipt['complaint_id']}/transition", json={"target": "IN_PROGRESS", "actor": "crew"})
    assert ok.status_code == 200
    assert ok.json()["status"] == "IN_PROGRESS"


def test_priority_override(client):
    receipt = _submit(client)
    url = f"/complaints/{receipt['complaint_id']}/priority-override"

    resp = client.post(url, json={"value": 10, "justification": "Bus route, two accidents", "actor": "admin-1"})
    assert resp.status_code == 200
    assert resp.json()["priority"] == 10
    assert resp.json()["priority_detail"]["overridden_by"] == "admin-1"

    assert client.post(url, json={"value": 10}).status_code == 422
    assert client.post(url, json={"value": 11, "justification": "too high"}).status_code == 422


def test_reassign_and_department_listing(client):
    receipt = _submit(client)
    resp = client.post(
        f"/complaints/{receipt['complaint_id']}/reassign",
        json={"department": "TRAFFIC_MANAGEMENT", "notes": "Junction"},
    )
    assert resp.status_code == 200

    rows = client.get("/departments/TRAFFIC_MANAGEMENT/complaints").json()
    assert [r["id"] for r in rows] == [receipt["complaint_id"]]
    assert client.get("/departments/PUBLIC_WORKS/complaints").json() == []
    assert client.get("/departments/PUBLIC_WORKS/complaints", params={"category": "NOPE"}).status_code == 422


def test_review_resolution(make_service):
    svc = make_service(classifier=StubClassifier(llm_response("POTHOLE", confidence=0.2)))
    with TestClient(create_app(svc, schedule_hotspots=False)) as client:
        receipt = _submit(client)
        assert receipt["status"] == "NEEDS_REVIEW"
        resp = client.post(
            f"/complaints/{receipt['complaint_id']}/review",
            json={"category": "POTHOLE", "actor": "reviewer-1"},
        )
        assert resp.status_code == 200
        assert resp.json()["assigned_department"] == "PUBLIC_WORKS"


def test_hotspot_endpoints(client):
    for i in range(5):
        _submit(client, lat=12.9716 + i * 0.001)
    report = client.post("/hotspots/run").json()
    assert len(report["created"]) == 1

    hotspots = client.get("/hotspots", params={"category": "POTHOLE"}).json()
    assert hotspots[0]["complaint_count"] == 5
    assert client.get("/hotspots", params={"status": "RESOLVED"}).json() == []
    assert client.get("/hotspots", params={"status": "SIDEWAYS"}).status_code == 422


def test_config_endpoints(client):
    assert client.get("/admin/config").json()["version"] == 1

    doc = {"mappings": [{"category": "POTHOLE", "primary_department": "ROADS_DIVISION"}]}
    reloaded = client.post("/admin/config/reload", json=doc)
    assert reloaded.status_code == 200
    assert reloaded.json()["version"] == 2
    assert reloaded.json()["categories"] == ["POTHOLE"]

    assert _submit(client)["status"] == "ASSIGNED"
    rows = client.get("/departments/ROADS_DIVISION/complaints").json()
    assert len(rows) == 1

    assert client.post("/admin/config/reload", json={"mappings": []}).status_code == 422
    assert client.post("/admin/config/reload").status_code == 422


def test_dead_letter_endpoints(client):
    assert client.get("/dead-letters").json() == []
    assert client.post("/dead-letters/missing/requeue").status_code == 404
