"""
Tests for the application entry point: health checks, request correlation
and the global error handlers.
"""

from unittest.mock import AsyncMock, patch

import pytest


class TestHealthEndpoints:
    """Health, readiness and liveness endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_live(self, client):
        response = await client.get("/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.asyncio
    async def test_ready_when_database_reachable(self, client):
        with patch("orderflow.main.check_database_health", AsyncMock(return_value=True)):
            response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json()["database"] == "healthy"

    @pytest.mark.asyncio
    async def test_not_ready_when_database_down(self, client):
        with patch("orderflow.main.check_database_health", AsyncMock(return_value=False)):
            response = await client.get("/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "not_ready"
        assert body["database"] == "unhealthy"


class TestRequestHandling:
    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"

    @pytest.mark.asyncio
    async def test_request_id_generated(self, client):
        response = await client.get("/health")

        assert response.headers.get("X-Request-ID")

    @pytest.mark.asyncio
    async def test_validation_error_shape(self, client, customer_headers):
        response = await client.post(
            "/api/v1/payments/verify",
            json={"orderRef": "not-a-uuid"},
            headers=customer_headers,
        )

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "Validation Error"
        assert body["details"]
        assert all("ctx" not in detail for detail in body["details"])

    @pytest.mark.asyncio
    async def test_missing_token_is_unauthorized(self, client):
        response = await client.get("/api/v1/admin/orders/stuck")

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_invalid_token_is_unauthorized(self, client):
        response = await client.get(
            "/api/v1/admin/orders/stuck",
            headers={"Authorization": "Bearer garbage"},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_customer_token_forbidden_on_admin_routes(self, client, customer_headers):
        response = await client.get("/api/v1/admin/orders/stuck", headers=customer_headers)

        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "FORBIDDEN"
