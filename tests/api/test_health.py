"""Tests for health endpoints and middleware."""

import pytest


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_returns_200(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == "0.1.0"

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-Id": "req-123"})
        assert response.headers["X-Request-Id"] == "req-123"

    @pytest.mark.asyncio
    async def test_request_id_generated(self, client):
        response = await client.get("/health")
        assert response.headers["X-Request-Id"]

    @pytest.mark.asyncio
    async def test_ready_reports_redis_down(self, client):
        """Redis is never initialized in tests, so readiness is degraded."""
        response = await client.get("/ready")
        assert response.status_code == 200
        data = response.json()
        assert data["checks"]["database"] == "ok"
        assert data["checks"]["redis"].startswith("error")
        assert data["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_unknown_route_is_json_404(self, client):
        response = await client.get("/nope")
        assert response.status_code == 404
        assert response.json() == {"detail": "Not Found"}
