"""
API Tests - Product View Stats
"""
import uuid

import pytest

from tests.conftest import MOBILE_UA, bearer


async def record(client, product_id, user_id, user_agent=None, referrer=None):
    headers = bearer(user_id)
    if user_agent:
        headers["User-Agent"] = user_agent
    body = {"productId": str(product_id)}
    if referrer:
        body["referrer"] = referrer
    response = await client.post("/views", json=body, headers=headers)
    assert response.status_code == 201
    return response.json()["handle"]


class TestViewStats:
    """Tests for GET /products/{id}/view-stats"""

    @pytest.mark.asyncio
    async def test_stats_bundle(self, client, pipeline, product):
        handle = await record(client, product.product_id, "u-1", user_agent=MOBILE_UA)
        await record(client, product.product_id, "u-2", referrer="https://news.ycombinator.com/item?id=1")
        await record(client, product.product_id, "u-3", user_agent=MOBILE_UA, referrer="https://www.google.com/")
        await client.patch(f"/views/{handle}", json={"durationSeconds": 30})
        await pipeline.aggregator.process_pending()

        response = await client.get(f"/products/{product.product_id}/view-stats", params={"days": 7})

        assert response.status_code == 200
        body = response.json()
        assert set(body) == {
            "productId", "days", "totals", "dailyViews", "devices", "sources", "geography", "insights",
        }
        assert body["totals"] == {"totalViews": 3, "uniqueViewers": 3, "avgDuration": 30.0}
        assert len(body["dailyViews"]) == 7
        assert body["dailyViews"][-1] == {"date": "2025-03-10", "count": 3, "uniqueCount": 3}
        assert body["devices"][0]["device"] == "mobile"
        assert body["devices"][0]["percentage"] == 66.7
        assert sorted(s["source"] for s in body["sources"]) == ["direct", "search", "social"]
        assert sum(s["percentage"] for s in body["sources"]) == pytest.approx(100.0)
        assert body["insights"]["summary"]

    @pytest.mark.asyncio
    async def test_conditional_request(self, client, product):
        url = f"/products/{product.product_id}/view-stats"
        first = await client.get(url)
        second = await client.get(url, headers={"If-None-Match": first.headers["ETag"]})

        assert first.status_code == 200
        assert second.status_code == 304
        assert second.headers["ETag"] == first.headers["ETag"]

    @pytest.mark.asyncio
    async def test_unknown_product(self, client):
        response = await client.get(f"/products/{uuid.uuid4()}/view-stats")
        assert response.status_code == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("days", [0, 400])
    async def test_days_out_of_range(self, client, product, days):
        response = await client.get(f"/products/{product.product_id}/view-stats", params={"days": days})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "bad_request"
