"""
Unit Tests - Transactional Batch Writer
"""
import asyncio
from decimal import Decimal
from typing import List

import polars as pl
import pytest
from sqlalchemy import Column, Integer, MetaData, Table, insert, select
from sqlalchemy.exc import SQLAlchemyError

from datagen.database.models import Customer
from datagen.errors import BatchCommitError
from datagen.generation import BatchWriter

TABLE = Table("things", MetaData(), Column("value", Integer))


class RecordingWriter(BatchWriter):
    """Writer that records batches instead of touching a database"""

    def __init__(self, batch_size: int, fail_on: int = 0, fail_retries: bool = False, **kwargs):
        super().__init__(engine=None, batch_size=batch_size, **kwargs)
        self.committed: List[List[int]] = []
        self.attempts = 0
        self.fail_on = fail_on
        self.fail_retries = fail_retries

    async def _insert(self, table, records):
        self.attempts += 1
        if self.attempts == self.fail_on:
            raise SQLAlchemyError("simulated failure")
        if self.fail_retries and self.attempts > self.fail_on > 0:
            raise SQLAlchemyError("simulated retry failure")
        self.committed.append([r["value"] for r in records])


def blocks_of(*sizes: int):
    start = 0
    for size in sizes:
        yield pl.DataFrame({"value": list(range(start, start + size))})
        start += size


class TestRebatch:
    """Tests for re-chunking blocks into exact batches"""

    def test_exact_batch_sizes(self):
        writer = BatchWriter(engine=None, batch_size=4)

        batches = list(writer.rebatch(blocks_of(3, 3, 5)))

        assert [len(b) for b in batches] == [4, 4, 3]
        assert pl.concat(batches)["value"].to_list() == list(range(11))

    def test_empty_blocks_are_ignored(self):
        writer = BatchWriter(engine=None, batch_size=2)

        batches = list(writer.rebatch(blocks_of(0, 3, 0)))

        assert [len(b) for b in batches] == [2, 1]

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValueError):
            BatchWriter(engine=None, batch_size=0)


class TestWrite:
    """Tests for batch commits, retry and stop conditions"""

    async def test_all_rows_committed(self):
        writer = RecordingWriter(batch_size=4)

        outcome = await writer.write(TABLE, blocks_of(10), entity="thing")

        assert outcome.rows_committed == 10
        assert outcome.batches == 3
        assert outcome.retries == 0
        assert outcome.stopped is None

    async def test_failed_batch_retried_at_reduced_size(self):
        writer = RecordingWriter(batch_size=4, fail_on=2, retry_divisor=2)

        outcome = await writer.write(TABLE, blocks_of(8), entity="thing")

        assert outcome.rows_committed == 8
        assert outcome.retries == 1
        assert writer.committed == [[0, 1, 2, 3], [4, 5], [6, 7]]

    async def test_retry_failure_reports_committed_rows(self):
        writer = RecordingWriter(batch_size=4, fail_on=2, fail_retries=True, retry_divisor=2)

        with pytest.raises(BatchCommitError) as exc_info:
            await writer.write(TABLE, blocks_of(12), entity="thing")

        error = exc_info.value
        assert error.entity == "thing"
        assert error.rows_committed == 4
        assert error.batch_size == 2
        assert writer.committed == [[0, 1, 2, 3]]

    async def test_cancel_stops_between_batches(self):
        cancel = asyncio.Event()

        class CancellingWriter(RecordingWriter):
            async def _insert(self, table, records):
                await super()._insert(table, records)
                cancel.set()

        writer = CancellingWriter(batch_size=3)
        outcome = await writer.write(TABLE, blocks_of(10), entity="thing", cancel_event=cancel)

        # the in-flight batch finishes, nothing after it is issued
        assert outcome.stopped == "cancelled"
        assert outcome.rows_committed == 3
        assert writer.committed == [[0, 1, 2]]

    async def test_expired_deadline_issues_nothing(self):
        writer = RecordingWriter(batch_size=3)

        outcome = await writer.write(TABLE, blocks_of(10), entity="thing", deadline=0.0)

        assert outcome.stopped == "timed_out"
        assert outcome.rows_committed == 0

    async def test_decimal_columns_converted(self):
        seen = []

        class CapturingWriter(RecordingWriter):
            async def _insert(self, table, records):
                seen.extend(records)

        writer = CapturingWriter(batch_size=5)
        await writer.write(TABLE, blocks_of(2), entity="thing", decimal_columns=("value",))

        assert all(isinstance(r["value"], Decimal) for r in seen)


def customers(*emails: str) -> pl.DataFrame:
    return pl.DataFrame({
        "first_name": ["First"] * len(emails),
        "last_name": ["Last"] * len(emails),
        "email": list(emails),
        "password_hash": ["0" * 64] * len(emails),
    })


async def stored_emails(engine) -> List[str]:
    async with engine.connect() as conn:
        return list((await conn.execute(select(Customer.email).order_by(Customer.id))).scalars())


class FlakyWriter(BatchWriter):
    """Writer whose first insert fails before reaching the store"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failed = False

    async def _insert(self, table, records):
        if not self.failed:
            self.failed = True
            raise SQLAlchemyError("connection reset")
        await super()._insert(table, records)


class TestWriteToStore:
    """Tests for batch transactions against a real store"""

    async def test_retry_commits_every_row(self, engine):
        writer = FlakyWriter(engine, batch_size=4, retry_divisor=2)

        outcome = await writer.write(
            Customer.__table__,
            [customers(*(f"c{i}@example.com" for i in range(6)))],
            entity="customer",
        )

        assert outcome.retries == 1
        assert outcome.batches == 3
        assert outcome.rows_committed == 6
        assert await stored_emails(engine) == [f"c{i}@example.com" for i in range(6)]

    async def test_failed_sub_batch_rolls_back_alone(self, engine):
        async with engine.begin() as conn:
            await conn.execute(insert(Customer.__table__), customers("taken@example.com").to_dicts())
        writer = BatchWriter(engine, batch_size=4, retry_divisor=2)

        with pytest.raises(BatchCommitError) as exc_info:
            await writer.write(
                Customer.__table__,
                [customers("a@example.com", "b@example.com", "c@example.com", "taken@example.com")],
                entity="customer",
            )

        # [a, b] committed on retry; [c, taken] rolled back together
        assert exc_info.value.rows_committed == 2
        assert exc_info.value.batch_size == 2
        assert await stored_emails(engine) == ["taken@example.com", "a@example.com", "b@example.com"]
