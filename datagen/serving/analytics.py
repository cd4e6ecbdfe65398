"""
Read-path Analytics

Answers analytical questions from the aggregate cache when a snapshot exists
and from live joins otherwise. Every cached answer reports where it came from
and how old it is.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine

from datagen.cache import CATEGORY_REVENUE, TOP_SPENDERS, AggregateCache
from datagen.cache.stores import as_utc
from datagen.database.models import Order, Product
from datagen.errors import AggregateNotReady

logger = structlog.get_logger(__name__)

SOURCE_CACHE = "cache"
SOURCE_LIVE = "live"


class AggregateAnswer(BaseModel):
    """Rows of one aggregate plus their provenance"""
    name: str
    source: str
    refreshed_at: datetime
    rows: List[Dict[str, Any]] = Field(default_factory=list)


class AnalyticsService:
    """
    Analytics queries over the populated store.

    Example:
        service = AnalyticsService(engine, cache)
        answer = await service.category_revenue()
        answer.source  # "cache" or "live"
    """

    def __init__(self, engine: AsyncEngine, cache: AggregateCache):
        self.engine = engine
        self.cache = cache

    async def _aggregate(self, name: str, bypass_cache: bool) -> AggregateAnswer:
        if not bypass_cache:
            try:
                snapshot = await self.cache.read(name)
                return AggregateAnswer(
                    name=name,
                    source=SOURCE_CACHE,
                    refreshed_at=snapshot.refreshed_at,
                    rows=snapshot.rows,
                )
            except AggregateNotReady:
                logger.info("Snapshot not ready, computing live", aggregate=name)

        computed_at = datetime.now(timezone.utc)
        rows = await self.cache.compute_live(name)
        return AggregateAnswer(name=name, source=SOURCE_LIVE, refreshed_at=computed_at, rows=rows)

    async def category_revenue(self, bypass_cache: bool = False) -> AggregateAnswer:
        """Revenue per category"""
        return await self._aggregate(CATEGORY_REVENUE, bypass_cache)

    async def top_spenders(self, bypass_cache: bool = False) -> AggregateAnswer:
        """Top customers by total spend"""
        return await self._aggregate(TOP_SPENDERS, bypass_cache)

    async def orders_placed_between(self, start: datetime, end: datetime) -> int:
        """Orders with start <= placed_at < end; naive datetimes are taken as UTC"""
        start = as_utc(start).astimezone(timezone.utc)
        end = as_utc(end).astimezone(timezone.utc)
        if end < start:
            raise ValueError("end must not be before start")

        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(func.count(Order.id)).where(Order.placed_at >= start, Order.placed_at < end)
            )
            return result.scalar_one()

    async def low_stock_products(
        self,
        threshold: int = 10,
        limit: Optional[int] = 100,
    ) -> List[Dict[str, Any]]:
        """Products with stock at or below ``threshold``, lowest stock first"""
        stmt = (
            select(Product.id, Product.name, Product.category_id, Product.stock_quantity)
            .where(Product.stock_quantity <= threshold)
            .order_by(Product.stock_quantity, Product.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return [dict(row) for row in result.mappings()]
