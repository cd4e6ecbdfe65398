"""
Physical Tuning

Secondary indexes and table clustering issued once during setup, after bulk
generation. The engine's planner does the rest.
"""

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class IndexSpec:
    """A secondary index on one table"""
    name: str
    table: str
    columns: Tuple[str, ...]

    def create_sql(self) -> str:
        cols = ", ".join(self.columns)
        return f"CREATE INDEX IF NOT EXISTS {self.name} ON {self.table} ({cols})"


SECONDARY_INDEXES: Tuple[IndexSpec, ...] = (
    IndexSpec("ix_orders_placed_at", "orders", ("placed_at",)),
    IndexSpec("ix_products_stock_quantity", "products", ("stock_quantity",)),
    IndexSpec("ix_order_details_order_id", "order_details", ("order_id",)),
    IndexSpec("ix_order_details_product_id", "order_details", ("product_id",)),
)

# (table, index) pairs clustered after indexing
CLUSTER_TARGETS: Tuple[Tuple[str, str], ...] = (
    ("orders", "ix_orders_placed_at"),
    ("products", "ix_products_stock_quantity"),
)


async def create_secondary_indexes(
    engine: AsyncEngine,
    indexes: Sequence[IndexSpec] = SECONDARY_INDEXES,
) -> List[str]:
    """
    Create secondary indexes if they do not exist.

    Returns:
        Names of the indexes issued
    """
    async with engine.begin() as conn:
        for spec in indexes:
            await conn.execute(text(spec.create_sql()))
            logger.info("Index ensured", index=spec.name, table=spec.table, columns=list(spec.columns))
    return [spec.name for spec in indexes]


async def cluster_table(engine: AsyncEngine, table: str, index: str) -> bool:
    """
    Physically reorder a table along an index.

    Only PostgreSQL supports CLUSTER; other dialects log and skip.

    Returns:
        True if the CLUSTER statement was issued
    """
    if engine.dialect.name != "postgresql":
        logger.info("Clustering not supported, skipping", dialect=engine.dialect.name, table=table)
        return False

    async with engine.begin() as conn:
        await conn.execute(text(f"CLUSTER {table} USING {index}"))
        await conn.execute(text(f"ANALYZE {table}"))
    logger.info("Table clustered", table=table, index=index)
    return True


async def tune_store(engine: AsyncEngine) -> dict:
    """Create secondary indexes then cluster the configured tables"""
    indexes = await create_secondary_indexes(engine)
    clustered = []
    for table, index in CLUSTER_TARGETS:
        if await cluster_table(engine, table, index):
            clustered.append(table)
    return {"indexes": indexes, "clustered": clustered}
