"""
Test Suite Configuration
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import insert

from datagen.cache import AggregateCache
from datagen.config import Settings
from datagen.config.settings import CacheSettings, GeneratorSettings
from datagen.database.connection import create_engine, create_schema
from datagen.database.models import OrderDetail
from datagen.generation import (
    DatasetGenerator,
    Entity,
    OrderParameters,
)

PLACED_AT = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        app_env="testing",
        debug=True,
    )


@pytest.fixture
def generator_settings() -> GeneratorSettings:
    return GeneratorSettings(batch_size=4, retry_divisor=2, seed=7, concurrent=False)


@pytest.fixture
def cache_settings() -> CacheSettings:
    return CacheSettings(backend="table", top_spenders_limit=10, refresh_timeout_seconds=30)


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite store with foreign keys on and the schema created"""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}", echo=False)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def generator(engine, generator_settings) -> DatasetGenerator:
    return DatasetGenerator(engine, settings=generator_settings)


@pytest.fixture
async def small_store(generator) -> DatasetGenerator:
    """
    3 categories x 2 products (ids 1..6, category k owns 2k-1 and 2k),
    2 customers with 1 order each (order ids 1..2).
    """
    await generator.generate(Entity.CATEGORY, 3)
    await generator.generate(Entity.PRODUCT, 2)
    await generator.generate(Entity.CUSTOMER, 2)
    await generator.generate(Entity.ORDER, 1, OrderParameters(placed_at=PLACED_AT))
    return generator


@pytest.fixture
async def revenue_store(small_store, engine) -> DatasetGenerator:
    """One detail per order, quantity 2 at 1000: category 1 and 2 earn 2000 each"""
    async with engine.begin() as conn:
        await conn.execute(insert(OrderDetail), [
            {"order_id": 1, "product_id": 1, "quantity": 2, "unit_price": 1000},
            {"order_id": 2, "product_id": 3, "quantity": 2, "unit_price": 1000},
        ])
    return small_store


@pytest.fixture
def cache(engine, cache_settings) -> AggregateCache:
    return AggregateCache(engine, settings=cache_settings)
