"""
Unit Tests - Referential Integrity and Physical Tuning
"""
from sqlalchemy import insert, text
from sqlalchemy.ext.asyncio import create_async_engine

from datagen.database.models import OrderDetail
from datagen.database.physical import (
    SECONDARY_INDEXES,
    IndexSpec,
    cluster_table,
    create_secondary_indexes,
    tune_store,
)
from datagen.quality import ValidationStatus, check_referential_integrity


class TestReferentialIntegrity:
    """Tests for orphan detection"""

    async def test_generated_store_passes(self, revenue_store, engine):
        report = await check_referential_integrity(engine)

        assert report.status == ValidationStatus.PASSED
        assert report.failed_checks == 0
        assert report.total_checks == 5
        assert report.row_counts == {
            "categories": 3,
            "products": 6,
            "customers": 2,
            "orders": 2,
            "order_details": 2,
        }

    async def test_orphan_detected(self, small_store, engine):
        # a second engine without the foreign key pragma lets an orphan in
        url = engine.url.render_as_string(hide_password=False)
        unchecked = create_async_engine(url)
        try:
            async with unchecked.begin() as conn:
                await conn.execute(insert(OrderDetail).values(order_id=99, product_id=1, quantity=1, unit_price=1000))
        finally:
            await unchecked.dispose()

        report = await check_referential_integrity(engine)
        failed = {c.name: c.failed_rows for c in report.checks if not c.passed}

        assert report.status == ValidationStatus.FAILED
        assert failed == {"fk_order_details.order_id": 1}


class TestPhysicalTuning:
    """Tests for secondary indexes and clustering"""

    async def test_indexes_created_idempotently(self, engine):
        first = await create_secondary_indexes(engine)
        second = await create_secondary_indexes(engine)

        async with engine.connect() as conn:
            names = (await conn.execute(
                text("SELECT name FROM sqlite_master WHERE type = 'index'")
            )).scalars().all()

        assert first == second == [spec.name for spec in SECONDARY_INDEXES]
        assert {"ix_orders_placed_at", "ix_products_stock_quantity"} <= set(names)

    def test_index_sql(self):
        spec = IndexSpec("ix_t_a_b", "t", ("a", "b"))

        assert spec.create_sql() == "CREATE INDEX IF NOT EXISTS ix_t_a_b ON t (a, b)"

    async def test_cluster_skipped_outside_postgres(self, engine):
        assert await cluster_table(engine, "orders", "ix_orders_placed_at") is False

    async def test_tune_store(self, engine):
        tuned = await tune_store(engine)

        assert tuned["clustered"] == []
        assert "ix_order_details_order_id" in tuned["indexes"]
