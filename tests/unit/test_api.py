"""
Unit Tests - HTTP API
"""
import pytest
from httpx import ASGITransport, AsyncClient

from datagen.cache import AggregateCache
from datagen.errors import RefreshInProgress
from datagen.main import create_app


class BusyCache(AggregateCache):
    """Cache whose every refresh collides with a running one"""

    async def refresh(self, name, **kwargs):
        self.definition(name)
        raise RefreshInProgress(name)


@pytest.fixture
async def client(engine, cache):
    app = create_app(engine=engine, cache=cache)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


class TestHealth:
    """Tests for health endpoints"""

    async def test_liveness(self, client):
        response = await client.get("/api/v1/health/live")

        assert response.status_code == 200
        assert response.json() == {"status": "alive"}

    async def test_readiness(self, client):
        response = await client.get("/api/v1/health/ready")

        assert response.status_code == 200

    async def test_health_degraded_until_refresh(self, revenue_store, client):
        before = await client.get("/api/v1/health")
        await client.post("/api/v1/aggregates/category_revenue/refresh")
        await client.post("/api/v1/aggregates/top_spenders/refresh")
        after = await client.get("/api/v1/health")

        assert before.json()["status"] == "degraded"
        assert after.json()["status"] == "healthy"
        assert after.json()["checks"]["aggregates"]["category_revenue"]["row_count"] == 2

    async def test_request_id_header(self, client):
        response = await client.get("/api/v1/health/live", headers={"X-Request-ID": "abc"})

        assert response.headers["X-Request-ID"] == "abc"


class TestAggregateEndpoints:
    """Tests for snapshot read, refresh and invalidation"""

    async def test_not_ready_is_404(self, revenue_store, client):
        response = await client.get("/api/v1/aggregates/category_revenue")

        assert response.status_code == 404
        assert response.json()["error"] == "AggregateNotReady"

    async def test_unknown_aggregate_is_404(self, client):
        response = await client.get("/api/v1/aggregates/nope")

        assert response.status_code == 404
        assert response.json()["error"] == "UnknownAggregateError"

    async def test_refresh_read_invalidate(self, revenue_store, client):
        refreshed = await client.post("/api/v1/aggregates/category_revenue/refresh")
        snapshot = await client.get("/api/v1/aggregates/category_revenue")
        deleted = await client.delete("/api/v1/aggregates/category_revenue")
        after = await client.get("/api/v1/aggregates/category_revenue")

        assert refreshed.status_code == 200
        assert refreshed.json()["row_count"] == 2
        assert snapshot.status_code == 200
        assert snapshot.json()["row_count"] == 2
        assert deleted.json() == {"name": "category_revenue", "removed": True}
        assert after.status_code == 404

    async def test_list_aggregates(self, revenue_store, client):
        await client.post("/api/v1/aggregates/top_spenders/refresh")

        response = await client.get("/api/v1/aggregates")
        status = {item["name"]: item for item in response.json()}

        assert status["top_spenders"]["ready"] is True
        assert status["top_spenders"]["stale"] is False
        assert status["category_revenue"]["ready"] is False

    async def test_refresh_in_progress_is_409(self, engine, cache_settings):
        app = create_app(engine=engine, cache=BusyCache(engine, settings=cache_settings))
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post("/api/v1/aggregates/category_revenue/refresh?coalesce=false")

        assert response.status_code == 409
        assert response.json()["aggregate"] == "category_revenue"


class TestAnalyticsEndpoints:
    """Tests for analytics endpoints"""

    async def test_category_revenue_live_then_cached(self, revenue_store, client):
        live = await client.get("/api/v1/analytics/category-revenue")
        await client.post("/api/v1/aggregates/category_revenue/refresh")
        cached = await client.get("/api/v1/analytics/category-revenue")

        assert live.json()["source"] == "live"
        assert cached.json()["source"] == "cache"
        assert cached.json()["total_revenue"] == 4000.0
        assert [row["category_id"] for row in cached.json()["data"]] == [1, 2]

    async def test_top_spenders(self, revenue_store, client):
        response = await client.get("/api/v1/analytics/top-spenders", params={"bypass_cache": True})

        data = response.json()["data"]
        assert response.status_code == 200
        assert {row["email"] for row in data} == {"customer_1@example.com", "customer_2@example.com"}

    async def test_order_count(self, small_store, client):
        response = await client.get(
            "/api/v1/analytics/orders/count",
            params={"start": "2024-01-01T00:00:00Z", "end": "2024-02-01T00:00:00Z"},
        )

        assert response.status_code == 200
        assert response.json()["orders"] == 2

    async def test_order_count_reversed_window(self, small_store, client):
        response = await client.get(
            "/api/v1/analytics/orders/count",
            params={"start": "2024-02-01T00:00:00Z", "end": "2024-01-01T00:00:00Z"},
        )

        assert response.status_code == 422

    async def test_low_stock(self, small_store, client):
        response = await client.get("/api/v1/analytics/products/low-stock", params={"threshold": 0})

        body = response.json()
        assert body["count"] == 4
        assert all(p["stock_quantity"] == 0 for p in body["products"])
