"""
ChronoHeal - OODA Controller API Tests
======================================

Route tests through FastAPI's TestClient with fake collaborators.
"""

import pytest
from fastapi.testclient import TestClient

from src.core.action_executor import SimulatedActionExecutor
from src.main import app, build_components

from conftest import UNHEALTHY, HEALTHY, FakeReasoningBackend, make_hypothesis, make_settings, memory_pattern_draft


@pytest.fixture
def reasoning():
    return FakeReasoningBackend(analyses=[UNHEALTHY, HEALTHY], hypotheses=[make_hypothesis()])


@pytest.fixture
def client(reasoning):
    with TestClient(app) as test_client:
        build_components(app, make_settings(), reasoning=reasoning, executor=SimulatedActionExecutor())
        yield test_client


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_ready(self, client):
        response = client.get("/ready")

        assert response.status_code == 200
        assert response.json()["detection_running"] is False

    def test_correlation_id_echoed(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "abc-123"})

        assert response.headers["X-Correlation-ID"] == "abc-123"


class TestDetectionRoutes:

    def test_start_stop_cycle(self, client):
        assert client.post("/api/v1/detection/start").status_code == 200
        assert client.get("/api/v1/detection/status").json()["running"] is True

        assert client.post("/api/v1/detection/stop").status_code == 200
        assert client.get("/api/v1/detection/status").json()["running"] is False

    def test_misuse_is_400(self, client):
        assert client.post("/api/v1/detection/stop").status_code == 400

        client.post("/api/v1/detection/start")
        response = client.post("/api/v1/detection/start")

        assert response.status_code == 400
        assert response.json()["error"] == "scheduler_state"

    def test_restart(self, client):
        response = client.post("/api/v1/detection/restart")

        assert response.status_code == 200
        assert response.json()["running"] is True


class TestSubjectRoutes:

    def test_evidence_roundtrip_and_unwatch(self, client):
        response = client.post(
            "/api/v1/subjects/checkout/evidence",
            json={"kind": "log", "payload": "OOMKilled"}
        )
        assert response.status_code == 201

        evidence = client.get("/api/v1/subjects/checkout/evidence").json()
        assert evidence["size"] == 1
        assert evidence["units"][0]["payload"] == "OOMKilled"

        client.put("/api/v1/subjects/checkout")
        assert client.delete("/api/v1/subjects/checkout").json()["watched"] is False
        assert client.get("/api/v1/subjects/checkout/evidence").json()["size"] == 0

    def test_run_subject(self, client):
        response = client.post("/api/v1/subjects/checkout/run")

        assert response.status_code == 200
        body = response.json()
        assert body["phase"] == "done"
        assert body["result"] == "resolved"

        runs = client.get("/api/v1/runs").json()
        assert runs[0]["run_id"] == body["run_id"]
        assert runs[0]["selected_actions"] == ["restart"]

        assert client.get(f"/api/v1/runs/{body['run_id']}").status_code == 200

    def test_run_in_progress_is_409(self, client):
        app.state.detection._in_progress.add("checkout")

        response = client.post("/api/v1/subjects/checkout/run")

        assert response.status_code == 409
        assert response.json()["subject"] == "checkout"


class TestPatternRoutes:

    def test_store_and_match(self, client):
        created = client.post("/api/v1/patterns", json=memory_pattern_draft().model_dump(mode="json"))
        assert created.status_code == 201

        response = client.post(
            "/api/v1/patterns/match",
            json={"input": {"symptoms": ["memory usage is very high"]}}
        )

        body = response.json()
        assert body["metadata"]["matches_found"] == 1
        assert body["matches"][0]["score"] == 1.0

    def test_empty_match_input(self, client):
        response = client.post("/api/v1/patterns/match", json={})

        assert response.status_code == 200
        assert response.json()["matches"] == []

    def test_batch_and_stats(self, client):
        drafts = [
            memory_pattern_draft(name="Memory leak").model_dump(mode="json"),
            memory_pattern_draft(name="memory leak").model_dump(mode="json"),
        ]

        stored = client.post("/api/v1/patterns/batch", json={"patterns": drafts}).json()
        stats = client.get("/api/v1/patterns/stats").json()

        assert len(stored) == 1
        assert stats["total_patterns"] == 1
        assert stats["high_confidence_count"] == 1

    def test_deactivate(self, client):
        pattern = client.post("/api/v1/patterns", json=memory_pattern_draft().model_dump(mode="json")).json()

        response = client.post(
            f"/api/v1/patterns/{pattern['pattern_id']}/deactivate",
            json={"reason": "noisy"}
        )

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        assert client.post("/api/v1/patterns/missing/deactivate", json={}).status_code == 404
