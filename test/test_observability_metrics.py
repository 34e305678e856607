import importlib

from fastapi.testclient import TestClient

from storage.memory_repository import InMemoryRepository


def _import_app():
    # Import lazily so environment variables (if any) can be set before import.
    mod = importlib.import_module("api.main")
    return mod


def test_metrics_endpoint_exposes_prometheus_text() -> None:
    mod = _import_app()
    client = TestClient(mod.app)

    r = client.get("/metrics")
    assert r.status_code == 200
    assert "text/plain" in r.headers.get("content-type", "")
    body = r.text
    assert "schedule_imports_total" in body
    assert "schedule_llm_latency_seconds" in body
    assert "schedule_analysis_claims_total" in body


def test_import_increments_counters(monkeypatch) -> None:
    state = importlib.import_module("api.state")
    monkeypatch.setattr(state, "repository", InMemoryRepository())

    mod = _import_app()
    client = TestClient(mod.app)

    r = client.post("/imports", json={"user_id": 1, "raw_content": "Title\nStandup\n", "source_type": "csv"})
    assert r.status_code == 201

    body = client.get("/metrics").text
    # Look for concrete sample lines rather than parsing the exposition format.
    lines = body.splitlines()
    assert any(line.startswith('schedule_imports_total{source_type="csv",status="completed"}') for line in lines)
    assert any(line.startswith('schedule_entries_created_total{processing_status="parsed"}') for line in lines)
