"""
Snapshot Stores

Backends that hold the readable snapshot of each aggregate:

- TableSnapshotStore: typed snapshot tables rebuilt by INSERT ... SELECT
- MaterializedViewStore: PostgreSQL materialized views (REFRESH MATERIALIZED VIEW)

Both write snapshot rows and the ``aggregate_snapshots`` metadata row in one
transaction, so a reader sees either the previous snapshot or the new one.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import polars as pl
import structlog
from sqlalchemy import column, delete, desc, func, insert, select, table, text, true
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import FromClause

from datagen.cache.aggregates import AggregateDefinition
from datagen.database.models import AggregateSnapshot

logger = structlog.get_logger(__name__)

BACKEND_TABLE = "table"
BACKEND_MATERIALIZED_VIEW = "materialized_view"


def as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back naive
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class SnapshotInfo:
    """Metadata of a readable snapshot"""
    name: str
    backend: str
    row_count: int
    refreshed_at: datetime

    def age(self, now: Optional[datetime] = None) -> timedelta:
        now = now or datetime.now(timezone.utc)
        return now - as_utc(self.refreshed_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "backend": self.backend,
            "row_count": self.row_count,
            "refreshed_at": as_utc(self.refreshed_at).isoformat(),
        }


@dataclass
class Snapshot:
    """Rows of an aggregate as of its last completed refresh"""
    name: str
    refreshed_at: datetime
    rows: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def age(self, now: Optional[datetime] = None) -> timedelta:
        now = now or datetime.now(timezone.utc)
        return now - as_utc(self.refreshed_at)

    def to_frame(self) -> pl.DataFrame:
        return pl.DataFrame(self.rows)


class SnapshotStore(ABC):
    """Storage backend for aggregate snapshots"""

    backend: str = ""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    @abstractmethod
    async def setup(self, definition: AggregateDefinition) -> None:
        """Create whatever the backend needs before the first refresh"""

    @abstractmethod
    async def _rebuild(self, conn: AsyncConnection, definition: AggregateDefinition) -> None:
        """Replace the snapshot rows inside the caller's transaction"""

    @abstractmethod
    def snapshot_source(self, definition: AggregateDefinition) -> FromClause:
        """Selectable holding the snapshot rows"""

    async def swap(self, definition: AggregateDefinition, refreshed_at: datetime) -> int:
        """
        Recompute the aggregate and publish it atomically.

        Returns:
            Number of rows in the new snapshot
        """
        source = self.snapshot_source(definition)
        async with self.engine.begin() as conn:
            await self._rebuild(conn, definition)
            row_count = (await conn.execute(select(func.count()).select_from(source))).scalar_one()
            await conn.execute(delete(AggregateSnapshot).where(AggregateSnapshot.name == definition.name))
            await conn.execute(
                insert(AggregateSnapshot).values(
                    name=definition.name,
                    backend=self.backend,
                    row_count=row_count,
                    refreshed_at=refreshed_at,
                )
            )
        return row_count

    async def info(self, name: str) -> Optional[SnapshotInfo]:
        async with self.engine.connect() as conn:
            row = (await conn.execute(
                select(AggregateSnapshot).where(AggregateSnapshot.name == name)
            )).first()
        if row is None:
            return None
        return SnapshotInfo(
            name=row.name,
            backend=row.backend,
            row_count=row.row_count,
            refreshed_at=as_utc(row.refreshed_at),
        )

    def _ordering(self, source: FromClause, definition: AggregateDefinition) -> list:
        return [
            desc(source.c[name]) if descending else source.c[name]
            for name, descending in definition.order_by
        ]

    @abstractmethod
    async def fetch(self, definition: AggregateDefinition) -> Optional[Snapshot]:
        """Snapshot rows with their metadata, or None when not readable"""

    @abstractmethod
    async def drop(self, definition: AggregateDefinition) -> bool:
        """Remove the snapshot; returns whether one existed"""


class TableSnapshotStore(SnapshotStore):
    """Snapshots in regular tables, rebuilt with DELETE + INSERT ... SELECT"""

    backend = BACKEND_TABLE

    async def setup(self, definition: AggregateDefinition) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(
                lambda sync_conn: definition.snapshot_model.__table__.create(sync_conn, checkfirst=True)
            )

    def snapshot_source(self, definition: AggregateDefinition) -> FromClause:
        return definition.snapshot_model.__table__

    async def _rebuild(self, conn: AsyncConnection, definition: AggregateDefinition) -> None:
        target = definition.snapshot_model.__table__
        await conn.execute(delete(target))
        await conn.execute(insert(target).from_select(definition.columns, definition.query()))

    async def fetch(self, definition: AggregateDefinition) -> Optional[Snapshot]:
        # metadata and rows come from one statement so they share a snapshot
        meta = AggregateSnapshot.__table__
        source = self.snapshot_source(definition)
        statement = (
            select(meta.c.refreshed_at, *source.c)
            .select_from(meta.outerjoin(source, true()))
            .where(meta.c.name == definition.name)
            .order_by(*self._ordering(source, definition))
        )
        async with self.engine.connect() as conn:
            result = (await conn.execute(statement)).mappings().all()

        if not result:
            return None

        key_column = next(iter(source.primary_key)).name
        rows = [
            {name: row[name] for name in definition.columns}
            for row in result
            if row[key_column] is not None
        ]
        return Snapshot(name=definition.name, refreshed_at=as_utc(result[0]["refreshed_at"]), rows=rows)

    async def drop(self, definition: AggregateDefinition) -> bool:
        async with self.engine.begin() as conn:
            removed = await conn.execute(
                delete(AggregateSnapshot).where(AggregateSnapshot.name == definition.name)
            )
            await conn.execute(delete(definition.snapshot_model.__table__))
        return removed.rowcount > 0


class MaterializedViewStore(SnapshotStore):
    """Snapshots in PostgreSQL materialized views named ``mv_<aggregate>``"""

    backend = BACKEND_MATERIALIZED_VIEW

    @staticmethod
    def view_name(definition: AggregateDefinition) -> str:
        return f"mv_{definition.name}"

    @classmethod
    def create_view_sql(cls, definition: AggregateDefinition) -> str:
        query = definition.query().compile(
            dialect=postgresql.dialect(),
            compile_kwargs={"literal_binds": True},
        )
        return (
            f"CREATE MATERIALIZED VIEW IF NOT EXISTS {cls.view_name(definition)} AS "
            f"{query} WITH NO DATA"
        )

    def snapshot_source(self, definition: AggregateDefinition) -> FromClause:
        return table(self.view_name(definition), *(column(name) for name in definition.columns))

    async def setup(self, definition: AggregateDefinition) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(text(self.create_view_sql(definition)))
        logger.info("Materialized view ready", view=self.view_name(definition))

    async def _rebuild(self, conn: AsyncConnection, definition: AggregateDefinition) -> None:
        await conn.execute(text(f"REFRESH MATERIALIZED VIEW {self.view_name(definition)}"))

    async def fetch(self, definition: AggregateDefinition) -> Optional[Snapshot]:
        # an unpopulated view cannot be scanned, so check metadata first
        # under one repeatable-read snapshot
        source = self.snapshot_source(definition)
        async with self.engine.connect() as conn:
            conn = await conn.execution_options(isolation_level="REPEATABLE READ")
            async with conn.begin():
                refreshed_at = (await conn.execute(
                    select(AggregateSnapshot.refreshed_at).where(AggregateSnapshot.name == definition.name)
                )).scalar_one_or_none()
                if refreshed_at is None:
                    return None
                result = (await conn.execute(
                    select(*source.c).order_by(*self._ordering(source, definition))
                )).mappings().all()

        return Snapshot(
            name=definition.name,
            refreshed_at=as_utc(refreshed_at),
            rows=[dict(row) for row in result],
        )

    async def drop(self, definition: AggregateDefinition) -> bool:
        async with self.engine.begin() as conn:
            removed = await conn.execute(
                delete(AggregateSnapshot).where(AggregateSnapshot.name == definition.name)
            )
            await conn.execute(text(f"REFRESH MATERIALIZED VIEW {self.view_name(definition)} WITH NO DATA"))
        return removed.rowcount > 0


def create_store(engine: AsyncEngine, backend: str = BACKEND_TABLE) -> SnapshotStore:
    """
    Build the snapshot store for a backend name.

    Raises:
        ValueError: Unknown backend, or materialized views on a non-PostgreSQL engine
    """
    if backend == BACKEND_TABLE:
        return TableSnapshotStore(engine)
    if backend == BACKEND_MATERIALIZED_VIEW:
        if engine.dialect.name != "postgresql":
            raise ValueError(
                f"Materialized views need PostgreSQL, engine dialect is {engine.dialect.name}"
            )
        return MaterializedViewStore(engine)
    raise ValueError(f"Unknown cache backend: {backend}")
