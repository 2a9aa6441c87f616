"""End-to-end tests through the FastAPI app (SQLite via aiosqlite)."""

import uuid

import pytest

from app.core.errors import CircuitOpenError
from app.routers.ai import get_ai_client

from tests.conftest import FakeAIClient


def create(client, headers, title="Write report", quadrant=1, **extra):
    response = client.post("/api/tasks/", json={"title": title, "quadrant": quadrant, **extra}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestService:
    def test_root(self, client):
        assert client.get("/").json()["docs"] == "/docs"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200

        body = response.json()
        assert body["status"] == "healthy"
        assert body["open_circuits"] == []
        assert set(body["circuit_breakers"]) == {"ai", "database", "generic"}
        assert set(body["cache"]["tiers"]) == {"main", "session", "ai", "rate_limit"}
        assert "active_keys" in body["rate_limiter"]

    def test_health_reports_open_circuit(self, client):
        client.app.state.resilience.breakers["ai"].force_open()
        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["open_circuits"] == ["ai"]


class TestTasks:
    def test_requires_identity(self, client):
        response = client.get("/api/tasks/")
        assert response.status_code == 401
        assert response.json()["detail"] == "Access token required"

    def test_create_and_get(self, client, user_headers):
        task = create(client, user_headers, description="Quarterly numbers", priority="high")
        assert task["task_number"] == 1
        assert task["status"] == "pending"

        response = client.get(f"/api/tasks/{task['id']}", headers=user_headers)
        assert response.status_code == 200
        assert response.json()["title"] == "Write report"
        assert response.headers["X-Circuit-State"] == "closed"

    def test_rejects_invalid_payload(self, client, user_headers):
        response = client.post("/api/tasks/", json={"title": "x", "quadrant": 5}, headers=user_headers)
        assert response.status_code == 422

    def test_list_groups_by_quadrant(self, client, user_headers):
        create(client, user_headers, "a", 1)
        create(client, user_headers, "b", 1)
        create(client, user_headers, "c", 3)

        grouped = client.get("/api/tasks/", headers=user_headers).json()

        assert set(grouped) == {"1", "2", "3", "4"}
        assert sorted(t["task_number"] for t in grouped["1"]) == [1, 2]
        assert [t["title"] for t in grouped["3"]] == ["c"]
        assert grouped["2"] == []

    def test_writes_invalidate_cached_reads(self, client, user_headers):
        assert client.get("/api/tasks/", headers=user_headers).json()["1"] == []
        task = create(client, user_headers)
        assert len(client.get("/api/tasks/", headers=user_headers).json()["1"]) == 1

        client.get(f"/api/tasks/{task['id']}", headers=user_headers)
        client.patch(f"/api/tasks/{task['id']}", json={"title": "Renamed"}, headers=user_headers)
        assert client.get(f"/api/tasks/{task['id']}", headers=user_headers).json()["title"] == "Renamed"

    def test_update_to_completed_sets_timestamp(self, client, user_headers):
        task = create(client, user_headers)
        response = client.put(f"/api/tasks/{task['id']}", json={"status": "completed"}, headers=user_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["completed_at"] is not None

    def test_complete(self, client, user_headers):
        task = create(client, user_headers)
        response = client.post(f"/api/tasks/{task['id']}/complete", headers=user_headers)
        assert response.json()["status"] == "completed"

    def test_move_renumbers_in_target_quadrant(self, client, user_headers):
        create(client, user_headers, "existing", 2)
        task = create(client, user_headers, "mover", 1)

        response = client.patch(f"/api/tasks/{task['id']}/move", json={"quadrant": 2}, headers=user_headers)

        assert response.status_code == 200
        assert response.json()["quadrant"] == 2
        assert response.json()["task_number"] == 2

    def test_delete(self, client, user_headers):
        task = create(client, user_headers)
        assert client.delete(f"/api/tasks/{task['id']}", headers=user_headers).status_code == 204
        assert client.get(f"/api/tasks/{task['id']}", headers=user_headers).status_code == 404
        assert client.delete(f"/api/tasks/{task['id']}", headers=user_headers).status_code == 404

    def test_tasks_are_private(self, client, user_headers):
        task = create(client, user_headers)
        other = {"X-User-Id": f"user-{uuid.uuid4().hex[:12]}"}
        assert client.get(f"/api/tasks/{task['id']}", headers=other).status_code == 404

    def test_stats(self, client, user_headers):
        first = create(client, user_headers, "a", 1)
        create(client, user_headers, "b", 1)
        create(client, user_headers, "c", 2)
        client.post(f"/api/tasks/{first['id']}/complete", headers=user_headers)

        stats = client.get("/api/tasks/stats", headers=user_headers).json()

        assert stats["total"] == 3
        assert stats["completed"] == 1
        assert stats["by_quadrant"] == {"1": 2, "2": 1, "3": 0, "4": 0}
        assert stats["by_status"]["pending"] == 2


class TestProtection:
    def test_route_window_returns_429(self, client, user_headers):
        client.app.state.resilience.limiter.windows["tasks"] = (60, 2)
        for _ in range(2):
            assert client.get("/api/tasks/", headers=user_headers).status_code == 200

        response = client.get("/api/tasks/", headers=user_headers)

        assert response.status_code == 429
        assert response.json()["reason"] == "rate_limit.tasks"
        assert int(response.headers["Retry-After"]) >= 1

    def test_point_budget_returns_429(self, client, user_headers):
        client.app.state.resilience.limiter.points_max = 5
        create(client, user_headers)
        create(client, user_headers)

        response = client.delete("/api/tasks/1", headers=user_headers)

        assert response.status_code == 429
        assert response.json()["reason"] == "rate_limit.points"

    def test_open_database_circuit_returns_503(self, client, user_headers):
        client.app.state.resilience.breakers["database"].force_open()

        response = client.get("/api/tasks/", headers=user_headers)

        assert response.status_code == 503
        assert int(response.headers["Retry-After"]) >= 1
        assert "database" in response.json()["message"]

    def test_cached_read_survives_open_database_circuit(self, client, user_headers):
        task = create(client, user_headers)
        assert client.get(f"/api/tasks/{task['id']}", headers=user_headers).status_code == 200
        client.app.state.resilience.breakers["database"].force_open()

        response = client.get(f"/api/tasks/{task['id']}", headers=user_headers)

        assert response.status_code == 200
        assert response.json()["title"] == "Write report"
        assert response.headers["X-Circuit-State"] == "open"


@pytest.fixture
def ai_client(client):
    fake = FakeAIClient()
    client.app.dependency_overrides[get_ai_client] = lambda: fake
    return fake


ANALYZE_BODY = {"tasks": {"1": [{"title": "Fix outage"}], "2": [{"title": "Plan roadmap"}]}}


class TestAI:
    def test_analyze_parses_and_caches(self, client, ai_client, user_headers):
        ai_client.reply = '```json\n{"priority_order": ["Fix outage"], "insights": []}\n```'

        first = client.post("/api/ai/analyze", json=ANALYZE_BODY, headers=user_headers)
        second = client.post("/api/ai/analyze", json=ANALYZE_BODY, headers=user_headers)

        assert first.status_code == 200
        assert first.json() == {"priority_order": ["Fix outage"], "insights": []}
        assert second.json() == first.json()
        assert len(ai_client.prompts) == 1
        assert "Fix outage" in ai_client.prompts[0]

    def test_analyze_degrades_when_provider_is_down(self, client, ai_client, user_headers):
        ai_client.error = CircuitOpenError("ai", 30)

        response = client.post("/api/ai/analyze", json=ANALYZE_BODY, headers=user_headers)

        assert response.status_code == 200
        assert response.json()["degraded"] is True
        assert response.json()["priority_order"]

    def test_analysis_history(self, client, ai_client, user_headers):
        ai_client.reply = '{"focus_areas": ["Delegation"]}'
        client.post("/api/ai/analyze", json=ANALYZE_BODY, headers=user_headers)

        history = client.get("/api/ai/history", headers=user_headers).json()

        assert len(history) == 1
        assert history[0]["analysis_data"] == {"focus_areas": ["Delegation"]}

    def test_prioritize_surfaces_open_circuit(self, client, ai_client, user_headers):
        ai_client.error = CircuitOpenError("ai", 12)

        response = client.post("/api/ai/prioritize", json={"task": {"title": "Call bank"}}, headers=user_headers)

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "12"

    def test_prioritize_falls_back_on_unparseable_reply(self, client, ai_client, user_headers):
        ai_client.reply = "not json"
        response = client.post("/api/ai/prioritize", json={"task": {"title": "Call bank"}}, headers=user_headers)
        assert response.json()["suggested_quadrant"] == 2

    def test_chat(self, client, ai_client, user_headers):
        ai_client.reply = "  Start with quadrant 1.  "
        response = client.post("/api/ai/chat", json={"message": "Where do I start?"}, headers=user_headers)
        assert response.json() == {"message": "Start with quadrant 1."}

    def test_ai_window_is_tighter_than_tasks(self, client, ai_client, user_headers):
        for i in range(5):
            body = {"message": f"Question number {i}"}
            assert client.post("/api/ai/chat", json=body, headers=user_headers).status_code == 200

        response = client.post("/api/ai/chat", json={"message": "One more"}, headers=user_headers)

        assert response.status_code == 429
        assert response.json()["reason"] == "rate_limit.ai"
        assert client.get("/api/tasks/", headers=user_headers).status_code == 200
