"""
Transactional Batch Writer

Re-chunks a stream of row blocks into fixed-size batches and commits each in
its own transaction. A failed batch is retried once as smaller sub-batches;
if that fails too, BatchCommitError carries the committed row count.

Cancellation and deadlines are checked between batches only, so a stop never
leaves a partially applied batch behind.
"""

import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import polars as pl
import structlog
from sqlalchemy import Table, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from datagen.errors import BatchCommitError

logger = structlog.get_logger(__name__)


@dataclass
class WriteOutcome:
    """Counters for one write run"""
    rows_committed: int = 0
    batches: int = 0
    retries: int = 0
    stopped: Optional[str] = None  # "cancelled" or "timed_out"


class BatchWriter:
    """
    Batched inserter for one target table at a time.

    Example:
        writer = BatchWriter(engine, batch_size=5000)
        outcome = await writer.write(Product.__table__, blocks, entity="product")
    """

    def __init__(
        self,
        engine: AsyncEngine,
        batch_size: int = 5000,
        retry_divisor: int = 4,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.engine = engine
        self.batch_size = batch_size
        self.retry_divisor = max(2, retry_divisor)

    def rebatch(self, blocks: Iterable[pl.DataFrame]) -> Iterator[pl.DataFrame]:
        """Yield exact ``batch_size`` frames (the last one may be shorter)"""
        pending: List[pl.DataFrame] = []
        pending_rows = 0

        for block in blocks:
            if block.is_empty():
                continue

            pending.append(block)
            pending_rows += len(block)

            while pending_rows >= self.batch_size:
                merged = pl.concat(pending, how="vertical_relaxed")
                yield merged.slice(0, self.batch_size)
                rest = merged.slice(self.batch_size)
                pending = [rest] if not rest.is_empty() else []
                pending_rows = len(rest)

        if pending_rows:
            yield pl.concat(pending, how="vertical_relaxed")

    @staticmethod
    def _stop_reason(
        cancel_event: Optional[asyncio.Event],
        deadline: Optional[float],
    ) -> Optional[str]:
        if cancel_event is not None and cancel_event.is_set():
            return "cancelled"
        if deadline is not None and time.monotonic() >= deadline:
            return "timed_out"
        return None

    async def _insert(self, table: Table, records: Sequence[Dict[str, Any]]) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(insert(table), list(records))

    async def _commit_with_retry(
        self,
        table: Table,
        records: List[Dict[str, Any]],
        entity: str,
        outcome: WriteOutcome,
    ) -> None:
        try:
            await self._insert(table, records)
            outcome.rows_committed += len(records)
            outcome.batches += 1
            return
        except SQLAlchemyError as e:
            logger.warning(
                "Batch failed, retrying at reduced size",
                entity=entity,
                batch_rows=len(records),
                rows_committed=outcome.rows_committed,
                error=str(e),
            )

        outcome.retries += 1
        reduced = max(1, len(records) // self.retry_divisor)
        for start in range(0, len(records), reduced):
            chunk = records[start:start + reduced]
            try:
                await self._insert(table, chunk)
            except SQLAlchemyError as e:
                logger.error(
                    "Batch retry failed, halting generation",
                    entity=entity,
                    batch_rows=len(chunk),
                    rows_committed=outcome.rows_committed,
                    error=str(e),
                )
                raise BatchCommitError(entity, outcome.rows_committed, reduced, cause=e) from e
            outcome.rows_committed += len(chunk)
            outcome.batches += 1

    async def write(
        self,
        table: Table,
        blocks: Iterable[pl.DataFrame],
        *,
        entity: str,
        decimal_columns: Sequence[str] = (),
        cancel_event: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
    ) -> WriteOutcome:
        """
        Write every block to ``table`` in transactional batches.

        Args:
            table: Target table
            blocks: Row blocks whose columns match the table
            entity: Entity name for logs and errors
            decimal_columns: Columns converted to Decimal before binding
            cancel_event: Stop issuing batches once set
            deadline: time.monotonic() value after which no batch is issued

        Returns:
            WriteOutcome: Committed rows, batches, retries, and stop reason

        Raises:
            BatchCommitError: A batch and its retry both failed
        """
        outcome = WriteOutcome()

        for batch in self.rebatch(blocks):
            stop = self._stop_reason(cancel_event, deadline)
            if stop:
                outcome.stopped = stop
                logger.warning(
                    "Generation stopped before next batch",
                    entity=entity,
                    reason=stop,
                    rows_committed=outcome.rows_committed,
                )
                break

            records = batch.to_dicts()
            for record in records:
                for column in decimal_columns:
                    record[column] = Decimal(record[column])

            await self._commit_with_retry(table, records, entity, outcome)
            logger.debug(
                "Batch committed",
                entity=entity,
                batch_rows=len(records),
                rows_committed=outcome.rows_committed,
            )
            # let concurrent generations and cancellers run between batches
            await asyncio.sleep(0)

        return outcome
