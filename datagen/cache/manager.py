"""
Derived Aggregate Cache

Maintains precomputed snapshots of expensive analytical aggregates.

Features:
- Explicit refresh: read-only recomputation followed by an atomic swap
- Reads serve the last completed snapshot; never-refreshed aggregates raise
- At most one refresh per aggregate; concurrent requests join the running one
- Refresh timeout and cooperative cancellation
- Periodic refresh loop for deployments without an external scheduler
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncEngine

from datagen.cache.aggregates import AggregateDefinition, default_definitions
from datagen.cache.stores import Snapshot, SnapshotInfo, SnapshotStore, create_store
from datagen.config import get_settings
from datagen.config.settings import CacheSettings
from datagen.errors import AggregateNotReady, RefreshInProgress, UnknownAggregateError

logger = structlog.get_logger(__name__)


class RefreshResult(BaseModel):
    """Outcome of one refresh request"""
    name: str
    status: str = "completed"  # completed | cancelled
    row_count: int = 0
    refreshed_at: Optional[datetime] = None
    duration_seconds: float = 0
    coalesced: bool = False


class AggregateCache:
    """
    Snapshot cache for registered aggregates.

    Example:
        cache = AggregateCache(engine)
        await cache.refresh("category_revenue")
        snapshot = await cache.read("category_revenue")
    """

    def __init__(
        self,
        engine: AsyncEngine,
        store: Optional[SnapshotStore] = None,
        definitions: Optional[Dict[str, AggregateDefinition]] = None,
        settings: Optional[CacheSettings] = None,
    ):
        self.engine = engine
        self.settings = settings or get_settings().cache
        self.store = store or create_store(engine, self.settings.backend)
        self.definitions = definitions or default_definitions(self.settings.top_spenders_limit)
        self._inflight: Dict[str, asyncio.Task] = {}
        self._ready: set = set()

    @property
    def names(self) -> List[str]:
        return list(self.definitions)

    def definition(self, name: str) -> AggregateDefinition:
        try:
            return self.definitions[name]
        except KeyError:
            raise UnknownAggregateError(name) from None

    def is_refreshing(self, name: str) -> bool:
        task = self._inflight.get(name)
        return task is not None and not task.done()

    async def setup(self) -> None:
        """Prepare backend storage for every registered aggregate"""
        for definition in self.definitions.values():
            await self._ensure_setup(definition)

    async def _ensure_setup(self, definition: AggregateDefinition) -> None:
        if definition.name not in self._ready:
            await self.store.setup(definition)
            self._ready.add(definition.name)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def _run_refresh(
        self,
        definition: AggregateDefinition,
        cancel_event: Optional[asyncio.Event],
    ) -> RefreshResult:
        log = logger.bind(aggregate=definition.name, backend=self.store.backend)
        start = time.perf_counter()

        await self._ensure_setup(definition)
        if cancel_event is not None and cancel_event.is_set():
            log.warning("Refresh cancelled before swap")
            return RefreshResult(name=definition.name, status="cancelled")

        refreshed_at = datetime.now(timezone.utc)
        row_count = await self.store.swap(definition, refreshed_at)
        duration = time.perf_counter() - start

        log.info("Aggregate refreshed", row_count=row_count, duration_seconds=round(duration, 3))
        return RefreshResult(
            name=definition.name,
            row_count=row_count,
            refreshed_at=refreshed_at,
            duration_seconds=duration,
        )

    def _forget(self, name: str, task: asyncio.Task) -> None:
        if self._inflight.get(name) is task:
            del self._inflight[name]

    async def refresh(
        self,
        name: str,
        *,
        coalesce: bool = True,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RefreshResult:
        """
        Recompute an aggregate and atomically replace its snapshot.

        A request arriving while the same aggregate is refreshing joins the
        running refresh instead of starting a second one.

        Args:
            name: Aggregate name
            coalesce: Join a running refresh; when False raise RefreshInProgress
            timeout: Seconds to wait; defaults to the configured refresh timeout
            cancel_event: Abandons the refresh if set before the swap

        Returns:
            RefreshResult: Row count and the new snapshot timestamp

        Raises:
            UnknownAggregateError: Name not registered
            RefreshInProgress: Already refreshing and coalesce is False
            asyncio.TimeoutError: The refresh did not finish in time; the
                previous snapshot is kept
        """
        definition = self.definition(name)
        if timeout is None:
            timeout = self.settings.refresh_timeout_seconds

        running = self._inflight.get(name)
        if running is not None and not running.done():
            if not coalesce:
                raise RefreshInProgress(name)
            logger.info("Joining in-flight refresh", aggregate=name)
            result = await self._wait(name, running, timeout, owner=False)
            return result.model_copy(update={"coalesced": True})

        task = asyncio.ensure_future(self._run_refresh(definition, cancel_event))
        self._inflight[name] = task
        task.add_done_callback(lambda t: self._forget(name, t))
        return await self._wait(name, task, timeout, owner=True)

    async def _wait(
        self,
        name: str,
        task: asyncio.Task,
        timeout: Optional[float],
        owner: bool,
    ) -> RefreshResult:
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            if owner:
                task.cancel()
            raise

        if not done:
            if owner:
                task.cancel()
            logger.error("Refresh timed out", aggregate=name, timeout=timeout)
            raise asyncio.TimeoutError(f"Refresh of '{name}' exceeded {timeout}s")
        if task.cancelled():
            raise asyncio.TimeoutError(f"Refresh of '{name}' was abandoned by its initiator")
        return task.result()

    async def refresh_all(
        self,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, RefreshResult]:
        """Refresh every registered aggregate concurrently"""
        names = self.names
        outcomes = await asyncio.gather(
            *(self.refresh(name, timeout=timeout, cancel_event=cancel_event) for name in names),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return dict(zip(names, outcomes))

    async def run_periodic(
        self,
        interval: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None,
        max_cycles: Optional[int] = None,
    ) -> int:
        """
        Refresh all aggregates every ``interval`` seconds until stopped.

        A failed cycle is logged and the schedule continues.

        Returns:
            Number of cycles run
        """
        interval = interval if interval is not None else self.settings.refresh_interval_seconds
        stop_event = stop_event or asyncio.Event()
        cycles = 0

        logger.info("Periodic refresh started", interval=interval, aggregates=self.names)
        while not stop_event.is_set():
            try:
                await self.refresh_all(cancel_event=stop_event)
            except Exception as e:
                logger.error("Periodic refresh cycle failed", cycle=cycles + 1, error=str(e))
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Periodic refresh stopped", cycles=cycles)
        return cycles

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read(self, name: str) -> Snapshot:
        """
        Return the last completed snapshot.

        Raises:
            UnknownAggregateError: Name not registered
            AggregateNotReady: No refresh has completed yet (or it was invalidated)
        """
        definition = self.definition(name)
        await self._ensure_setup(definition)
        snapshot = await self.store.fetch(definition)
        if snapshot is None:
            raise AggregateNotReady(name)
        return snapshot

    async def compute_live(self, name: str) -> List[Dict[str, Any]]:
        """Evaluate the defining query directly against the base tables"""
        definition = self.definition(name)
        async with self.engine.connect() as conn:
            result = await conn.execute(definition.query())
            rows = [dict(row) for row in result.mappings()]
        return definition.sort_rows(rows)

    async def status(self, name: str) -> Optional[SnapshotInfo]:
        """Snapshot metadata, or None when the aggregate is not readable"""
        definition = self.definition(name)
        await self._ensure_setup(definition)
        return await self.store.info(name)

    async def is_stale(self, name: str, max_age: Optional[timedelta] = None) -> bool:
        """Whether the snapshot is missing or older than ``max_age``"""
        info = await self.status(name)
        if info is None:
            return True
        max_age = max_age if max_age is not None else timedelta(seconds=self.settings.staleness_seconds)
        return info.age() > max_age

    async def invalidate(self, name: str) -> bool:
        """
        Drop a snapshot; reads raise AggregateNotReady until the next refresh.

        Returns:
            Whether a snapshot existed
        """
        definition = self.definition(name)
        await self._ensure_setup(definition)
        removed = await self.store.drop(definition)
        logger.info("Aggregate invalidated", aggregate=name, removed=removed)
        return removed
