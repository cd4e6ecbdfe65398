"""
Unit Tests - Derived Aggregate Cache
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import insert

from datagen.cache import (
    CATEGORY_REVENUE,
    TOP_SPENDERS,
    AggregateCache,
    MaterializedViewStore,
    TableSnapshotStore,
    create_store,
    default_definitions,
)
from datagen.config.settings import CacheSettings
from datagen.database.models import OrderDetail
from datagen.errors import AggregateNotReady, RefreshInProgress, UnknownAggregateError


class SlowStore(TableSnapshotStore):
    """Store whose swap outlives any reasonable refresh timeout"""

    async def swap(self, definition, refreshed_at):
        await asyncio.sleep(5)
        return await super().swap(definition, refreshed_at)


def revenue_by_category(rows) -> dict:
    return {row["category_id"]: row["revenue"] for row in rows}


class TestRefreshAndRead:
    """Tests for the snapshot lifecycle"""

    async def test_read_before_refresh_raises(self, revenue_store, cache):
        with pytest.raises(AggregateNotReady):
            await cache.read(CATEGORY_REVENUE)

    async def test_unknown_aggregate(self, cache):
        with pytest.raises(UnknownAggregateError):
            await cache.read("nope")
        with pytest.raises(UnknownAggregateError):
            await cache.refresh("nope")

    async def test_category_revenue_example(self, revenue_store, cache):
        result = await cache.refresh(CATEGORY_REVENUE)
        snapshot = await cache.read(CATEGORY_REVENUE)

        assert result.status == "completed"
        assert result.row_count == 2
        assert revenue_by_category(snapshot.rows) == {1: Decimal("2000"), 2: Decimal("2000")}
        assert sum(row["revenue"] for row in snapshot.rows) == Decimal("4000")
        assert snapshot.rows[0]["category_name"] == "Category_1"

    async def test_snapshot_matches_live_computation(self, small_store, cache):
        await small_store.generate("order_detail", 3)

        await cache.refresh(CATEGORY_REVENUE)
        snapshot = await cache.read(CATEGORY_REVENUE)
        live = await cache.compute_live(CATEGORY_REVENUE)

        assert revenue_by_category(snapshot.rows) == revenue_by_category(live)
        assert [r["category_id"] for r in snapshot.rows] == [r["category_id"] for r in live]

    async def test_snapshot_survives_base_changes_until_refresh(self, revenue_store, cache, engine):
        await cache.refresh(CATEGORY_REVENUE)
        async with engine.begin() as conn:
            await conn.execute(insert(OrderDetail).values(order_id=1, product_id=5, quantity=1, unit_price=3000))

        before = await cache.read(CATEGORY_REVENUE)
        await cache.refresh(CATEGORY_REVENUE)
        after = await cache.read(CATEGORY_REVENUE)

        assert before.row_count == 2
        assert after.row_count == 3
        assert revenue_by_category(after.rows)[3] == Decimal("3000")
        assert after.refreshed_at >= before.refreshed_at

    async def test_rows_ordered_by_revenue(self, revenue_store, cache, engine):
        async with engine.begin() as conn:
            await conn.execute(insert(OrderDetail).values(order_id=2, product_id=6, quantity=1, unit_price=9000))
        await cache.refresh(CATEGORY_REVENUE)

        snapshot = await cache.read(CATEGORY_REVENUE)

        assert [r["category_id"] for r in snapshot.rows] == [3, 1, 2]

    async def test_empty_result_is_ready(self, small_store, cache):
        result = await cache.refresh(CATEGORY_REVENUE)
        snapshot = await cache.read(CATEGORY_REVENUE)

        assert result.row_count == 0
        assert snapshot.rows == []

    async def test_top_spenders(self, revenue_store, engine, cache_settings):
        async with engine.begin() as conn:
            await conn.execute(insert(OrderDetail).values(order_id=2, product_id=2, quantity=1, unit_price=500))
        cache = AggregateCache(engine, settings=cache_settings.model_copy(update={"top_spenders_limit": 1}))

        await cache.refresh(TOP_SPENDERS)
        snapshot = await cache.read(TOP_SPENDERS)

        assert snapshot.row_count == 1
        top = snapshot.rows[0]
        assert top["customer_id"] == 2
        assert top["email"] == "customer_2@example.com"
        assert top["total_spent"] == Decimal("2500")

    async def test_snapshot_to_frame(self, revenue_store, cache):
        await cache.refresh(CATEGORY_REVENUE)
        frame = (await cache.read(CATEGORY_REVENUE)).to_frame()

        assert frame.columns == ["category_id", "category_name", "revenue"]
        assert len(frame) == 2


class TestInvalidateAndStatus:
    """Tests for invalidation and staleness"""

    async def test_invalidate(self, revenue_store, cache):
        await cache.refresh(CATEGORY_REVENUE)

        assert await cache.invalidate(CATEGORY_REVENUE) is True
        with pytest.raises(AggregateNotReady):
            await cache.read(CATEGORY_REVENUE)
        assert await cache.invalidate(CATEGORY_REVENUE) is False

    async def test_invalidate_leaves_other_aggregates(self, revenue_store, cache):
        await cache.refresh_all()
        await cache.invalidate(CATEGORY_REVENUE)

        snapshot = await cache.read(TOP_SPENDERS)
        assert snapshot.row_count == 2

    async def test_status_and_staleness(self, revenue_store, cache):
        assert await cache.status(CATEGORY_REVENUE) is None
        assert await cache.is_stale(CATEGORY_REVENUE) is True

        await cache.refresh(CATEGORY_REVENUE)
        info = await cache.status(CATEGORY_REVENUE)

        assert info.row_count == 2
        assert info.backend == "table"
        assert await cache.is_stale(CATEGORY_REVENUE, max_age=timedelta(hours=1)) is False
        assert await cache.is_stale(CATEGORY_REVENUE, max_age=timedelta(seconds=-1)) is True


class TestConcurrency:
    """Tests for refresh serialization, cancellation and timeouts"""

    async def test_concurrent_refreshes_coalesce(self, revenue_store, cache):
        first, second = await asyncio.gather(
            cache.refresh(CATEGORY_REVENUE),
            cache.refresh(CATEGORY_REVENUE),
        )

        assert [first.coalesced, second.coalesced].count(True) == 1
        assert first.refreshed_at == second.refreshed_at
        assert not cache.is_refreshing(CATEGORY_REVENUE)

    async def test_no_coalesce_raises_in_progress(self, revenue_store, cache):
        running = asyncio.create_task(cache.refresh(CATEGORY_REVENUE))
        await asyncio.sleep(0)

        with pytest.raises(RefreshInProgress):
            await cache.refresh(CATEGORY_REVENUE, coalesce=False)

        result = await running
        assert result.row_count == 2

    async def test_different_aggregates_refresh_independently(self, revenue_store, cache):
        results = await cache.refresh_all()

        assert set(results) == {CATEGORY_REVENUE, TOP_SPENDERS}
        assert not any(r.coalesced for r in results.values())

    async def test_cancel_before_swap_keeps_snapshot(self, revenue_store, cache):
        cancel = asyncio.Event()
        cancel.set()

        result = await cache.refresh(CATEGORY_REVENUE, cancel_event=cancel)

        assert result.status == "cancelled"
        with pytest.raises(AggregateNotReady):
            await cache.read(CATEGORY_REVENUE)

    async def test_timeout_keeps_previous_snapshot(self, revenue_store, engine, cache_settings):
        cache = AggregateCache(engine, store=SlowStore(engine), settings=cache_settings)
        await cache.setup()

        with pytest.raises(asyncio.TimeoutError):
            await cache.refresh(CATEGORY_REVENUE, timeout=0.05)

        with pytest.raises(AggregateNotReady):
            await cache.read(CATEGORY_REVENUE)
        await asyncio.sleep(0)
        assert not cache.is_refreshing(CATEGORY_REVENUE)

    async def test_reads_during_refresh_see_whole_snapshots(self, revenue_store, cache, engine):
        await cache.refresh(CATEGORY_REVENUE)
        async with engine.begin() as conn:
            await conn.execute(insert(OrderDetail).values(order_id=1, product_id=5, quantity=1, unit_price=2000))

        outcomes = await asyncio.gather(
            cache.refresh(CATEGORY_REVENUE),
            *(cache.read(CATEGORY_REVENUE) for _ in range(10)),
        )

        for snapshot in outcomes[1:]:
            total = sum(row["revenue"] for row in snapshot.rows)
            assert (snapshot.row_count, total) in {(2, Decimal("4000")), (3, Decimal("6000"))}

    async def test_run_periodic_stops(self, revenue_store, cache):
        cycles = await cache.run_periodic(interval=0.01, max_cycles=2)

        assert cycles == 2
        assert (await cache.read(CATEGORY_REVENUE)).row_count == 2

    async def test_run_periodic_stop_event(self, revenue_store, cache):
        stop = asyncio.Event()

        async def stop_soon():
            await asyncio.sleep(0.05)
            stop.set()

        cycles, _ = await asyncio.gather(cache.run_periodic(interval=0.01, stop_event=stop), stop_soon())

        assert cycles >= 1


class TestStores:
    """Tests for backend selection and materialized view DDL"""

    def test_create_store_table(self, engine):
        assert isinstance(create_store(engine, "table"), TableSnapshotStore)

    def test_materialized_view_needs_postgres(self, engine):
        with pytest.raises(ValueError):
            create_store(engine, "materialized_view")

    def test_unknown_backend(self, engine):
        with pytest.raises(ValueError):
            create_store(engine, "redis")

    def test_materialized_view_ddl(self):
        definitions = default_definitions(top_spenders_limit=5)

        revenue_sql = MaterializedViewStore.create_view_sql(definitions[CATEGORY_REVENUE])
        spenders_sql = MaterializedViewStore.create_view_sql(definitions[TOP_SPENDERS])

        assert revenue_sql.startswith("CREATE MATERIALIZED VIEW IF NOT EXISTS mv_category_revenue AS SELECT")
        assert revenue_sql.endswith("WITH NO DATA")
        assert "GROUP BY" in revenue_sql
        assert "LIMIT 5" in spenders_sql

    def test_settings_reject_unknown_backend(self):
        with pytest.raises(ValueError):
            CacheSettings(backend="memcached")
