"""
API Tests - Internal and Health Endpoints
"""
import pytest

from tests.conftest import INTERNAL_TOKEN, bearer

INTERNAL = {"X-Internal-Token": INTERNAL_TOKEN}


class TestInternalAuth:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"X-Internal-Token": "wrong"}])
    async def test_token_required(self, client, headers):
        response = await client.post("/internal/reconcile", headers=headers)
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestProductEvents:
    @pytest.mark.asyncio
    async def test_event_is_broadcast(self, client, pipeline, product):
        subscriber = pipeline.hub.connect()
        pipeline.hub.subscribe(subscriber, product.product_id)

        response = await client.post(
            f"/internal/products/{product.product_id}/events",
            json={"event": "upvoteCount", "data": {"count": 12}},
            headers=INTERNAL,
        )

        assert response.status_code == 202
        message = subscriber.queue.get_nowait()
        assert message["event"] == "upvoteCount"
        assert message["seq"] == 1
        assert message["data"] == {"productId": str(product.product_id), "count": 12}

    @pytest.mark.asyncio
    async def test_unknown_event_rejected(self, client, product):
        response = await client.post(
            f"/internal/products/{product.product_id}/events",
            json={"event": "deleted"},
            headers=INTERNAL,
        )
        assert response.status_code == 422


class TestRollupMaintenance:
    @pytest.mark.asyncio
    async def test_reseal_day(self, client, product):
        for user in ("u-1", "u-2"):
            await client.post("/views", json={"productId": str(product.product_id)}, headers=bearer(user))

        response = await client.post(
            f"/internal/products/{product.product_id}/reseal",
            params={"date": "2025-03-10"},
            headers=INTERNAL,
        )

        assert response.status_code == 200
        assert response.json() == {
            "productId": str(product.product_id),
            "date": "2025-03-10",
            "viewCount": 2,
            "uniqueCount": 2,
        }

    @pytest.mark.asyncio
    async def test_reconcile(self, client, product):
        await client.post("/views", json={"productId": str(product.product_id)}, headers=bearer("u-1"))

        response = await client.post("/internal/reconcile", headers=INTERNAL)

        assert response.status_code == 200
        assert response.json()["products"] == 1


class TestHealth:
    """Tests for health endpoints"""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["environment"] == "testing"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "healthy"
        assert body["checks"]["pipeline"]["background_tasks"] is False

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health/live")
        assert response.json() == {"status": "alive"}

    @pytest.mark.asyncio
    async def test_readiness(self, client):
        response = await client.get("/health/ready")
        assert response.status_code == 200
        assert response.json() == {"status": "ready"}

    @pytest.mark.asyncio
    async def test_security_headers(self, client):
        response = await client.get("/health/live")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"

    @pytest.mark.asyncio
    async def test_metrics(self, client, product):
        await client.post("/views", json={"productId": str(product.product_id)}, headers=bearer("u-1"))

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "viewtrack_ingress_view_starts_total" in response.text
