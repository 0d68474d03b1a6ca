"""
Tests for the provider webhook endpoints and the capture log admin routes.
"""

import pytest

from orderflow.services.orders.enums import OrderStatus

TRACKING_URL = "/api/v1/webhooks/shipping/tracking"
LOG_URL = "/api/v1/admin/webhooks/log"


class TestWebhookEndpoints:
    @pytest.mark.asyncio
    async def test_tracking_applied_then_duplicate(self, client, shipped_order, db_session):
        payload = {"awb": "A1", "current_status_id": 38, "current_timestamp": "2026-10-12 09:00:00"}

        first = await client.post(TRACKING_URL, json=payload)
        replay = await client.post(TRACKING_URL, json=payload)

        assert first.status_code == replay.status_code == 200
        assert first.json() == {"received": True, "outcome": "applied"}
        assert replay.json()["outcome"] == "duplicate"
        await db_session.refresh(shipped_order)
        assert shipped_order.status is OrderStatus.SHIPPED

    @pytest.mark.asyncio
    async def test_missing_awb_still_acknowledged(self, client):
        response = await client.post(TRACKING_URL, json={"current_status_id": 6})

        assert response.status_code == 200
        assert response.json()["outcome"] == "rejected"

    @pytest.mark.asyncio
    async def test_malformed_body_acknowledged(self, client):
        response = await client.post(
            "/api/v1/webhooks/shipping/returns",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "rejected"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "endpoint", ["shipping/tracking", "shipping/returns", "payments/refunds"]
    )
    async def test_endpoint_status(self, client, endpoint):
        response = await client.get(f"/api/v1/webhooks/{endpoint}")

        assert response.status_code == 200
        assert response.json() == {"status": "active", "endpoint": endpoint}


class TestWebhookLog:
    @pytest.mark.asyncio
    async def test_deliveries_captured_newest_first(self, client, admin_headers):
        await client.post(
            TRACKING_URL,
            json={"awb": "NOPE", "current_status_id": 6},
            headers={"X-Trace": "abc", "Authorization": "Bearer leaked"},
        )

        response = await client.get(LOG_URL, headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["capacity"] == 5
        entry = body["entries"][0]
        assert entry["source"] == "shipping_tracking"
        assert entry["outcome"] == "unmatched"
        assert entry["payload"] == {"awb": "NOPE", "current_status_id": 6}
        assert entry["headers"]["x-trace"] == "abc"
        assert "authorization" not in entry["headers"]

    @pytest.mark.asyncio
    async def test_log_pruned_to_capacity(self, client, admin_headers):
        for status_code in range(1, 8):
            await client.post(TRACKING_URL, json={"awb": "NOPE", "current_status_id": status_code})

        response = await client.get(LOG_URL, headers=admin_headers)

        entries = response.json()["entries"]
        assert len(entries) == 5
        assert [entry["payload"]["current_status_id"] for entry in entries] == [7, 6, 5, 4, 3]

    @pytest.mark.asyncio
    async def test_filter_by_source(self, client, admin_headers):
        await client.post(TRACKING_URL, json={"awb": "NOPE", "current_status_id": 6})
        await client.post("/api/v1/webhooks/shipping/returns", json={"awb": "NOPE"})

        response = await client.get(
            LOG_URL, params={"source": "shipping_returns"}, headers=admin_headers
        )

        assert [entry["source"] for entry in response.json()["entries"]] == ["shipping_returns"]

    @pytest.mark.asyncio
    async def test_clear(self, client, admin_headers):
        await client.post(TRACKING_URL, json={"awb": "NOPE", "current_status_id": 6})

        cleared = await client.delete(LOG_URL, headers=admin_headers)
        after = await client.get(LOG_URL, headers=admin_headers)

        assert cleared.json() == {"cleared": 1}
        assert after.json()["entries"] == []

    @pytest.mark.asyncio
    async def test_admin_only(self, client, customer_headers):
        response = await client.get(LOG_URL, headers=customer_headers)

        assert response.status_code == 403
