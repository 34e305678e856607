import importlib

import pytest
from fastapi.testclient import TestClient

from llm.llm_client import LLMClient
from llm.providers.mock_provider import MockProvider
from smart_schedule.config import Settings
from storage.memory_repository import InMemoryRepository
from storage.preferences_store import PreferencesStore

CSV = (
    "Title,Description,Location,Start Date,End Date,Priority\n"
    "Math exam,Chapter 1-3,A101,15/01/2024 08:00,15/01/2024 09:30,high\n"
    "Lab report,,,16/01/2024,,\n"
    "Call supplier,,Office,,,\n"
)


@pytest.fixture
def client(monkeypatch, tmp_path):
    state = importlib.import_module("api.state")
    dependencies = importlib.import_module("api.dependencies")
    monkeypatch.setattr(state, "repository", InMemoryRepository())
    monkeypatch.setattr(state, "preferences_store", PreferencesStore(str(tmp_path / "prefs.json")))
    monkeypatch.setattr(dependencies, "_llm_client", LLMClient(provider=MockProvider(), settings=Settings()))
    mod = importlib.import_module("api.main")
    return TestClient(mod.app)


def _import(client, content=CSV, source_type="csv"):
    r = client.post("/imports", json={"user_id": 1, "raw_content": content, "source_type": source_type})
    assert r.status_code == 201
    return r.json()


def test_import_and_convert(client):
    imp = _import(client)
    assert imp["status"] == "completed"
    assert imp["total_records_found"] == 3
    assert "raw_content" not in imp

    entries = client.get(f"/imports/{imp['id']}/entries").json()
    assert [e["row_number"] for e in entries["entries"]] == [2, 3, 4]

    first = client.post(f"/imports/{imp['id']}/convert").json()
    assert (first["total"], first["success"]) == (2, 2)

    # below the default threshold and without a start time
    second = client.post(f"/imports/{imp['id']}/convert", json={"min_confidence": 0.5}).json()
    assert (second["success"], second["failed"]) == (0, 1)

    third = client.post(f"/imports/{imp['id']}/convert", json={"min_confidence": 0.5}).json()
    assert third["success"] == 0


def test_invalid_json_import_is_reported_as_failed(client):
    imp = _import(client, "{broken", "json")
    assert imp["status"] == "failed"


def test_unknown_import_is_404(client):
    r = client.get("/imports/12345")
    assert r.status_code == 404
    assert r.json()["detail"]["error"] == "NotFoundError"


def test_review_flag(client):
    imp = _import(client)
    entry_id = client.get(f"/imports/{imp['id']}/entries").json()["entries"][0]["id"]
    r = client.post(f"/entries/{entry_id}/review", json={"reason": "check room"})
    assert r.status_code == 200
    assert r.json()["conversion_status"] == "manual_review"


def test_claim_conflict_and_reset(client):
    event = client.post("/events", json={"user_id": 1, "title": "Standup", "start_datetime": "2024-01-15T09:00:00"}).json()
    ref = {"id": event["id"], "source_type": "event"}

    claimed = client.post("/analysis/claims", json={"tasks": [ref]}).json()
    assert claimed["success"] == [ref]

    again = client.post("/analysis/claims", json={"tasks": [ref]}).json()
    assert again["already_locked"][0]["id"] == event["id"]

    listed = client.get("/analysis/tasks", params={"user_id": 1}).json()
    assert listed["total"] == 0

    reset = client.post("/analysis/reset", json={"tasks": [ref]}).json()
    assert reset["success"] == [ref]
    assert client.get("/analysis/tasks", params={"user_id": 1}).json()["total"] == 1


def test_results_for_unclaimed_task_are_itemized(client):
    event = client.post("/events", json={"user_id": 1, "title": "Standup", "start_datetime": "2024-01-15T09:00:00"}).json()
    r = client.post("/analysis/results", json={"results": [{"id": event["id"], "source_type": "event", "status": "completed"}]})
    assert r.status_code == 200
    assert r.json()["failed"][0]["current_status"] == "pending"


def test_optimize_end_to_end(client):
    event = client.post("/events", json={
        "user_id": 1, "title": "Client call", "start_datetime": "2024-01-15T09:00:00", "priority": 1,
    }).json()
    r = client.post("/analysis/optimize", json={
        "user_id": 1,
        "tasks": [{"id": event["id"], "source_type": "event"}],
        "target_date": "2024-01-15",
    })
    assert r.status_code == 200
    body = r.json()
    assert body["analysis"]["status"] == "completed"
    assert body["slots"][0]["start_time"] == "08:00:00"

    conflicts = client.get("/analysis/conflicts", params={"user_id": 1, "on": "2024-01-15"}).json()
    assert conflicts["conflicts"] == []

    approved = client.post(f"/analysis/{body['analysis']['id']}/approve", json={"rating": 4})
    assert approved.json()["user_rating"] == 4


def test_optimize_without_claimable_tasks_is_422(client):
    r = client.post("/analysis/optimize", json={"user_id": 1, "tasks": [{"id": 99, "source_type": "event"}]})
    assert r.status_code == 422


def test_event_end_before_start(client):
    r = client.post("/events", json={
        "user_id": 1, "title": "X", "start_datetime": "2024-01-15T10:00:00", "end_datetime": "2024-01-15T09:00:00",
    })
    assert r.status_code == 422


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["storage"] == "memory"
