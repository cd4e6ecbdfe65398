"""
Deterministic Row Blocks

Index-driven builders for the five base entities. Each builder lazily yields
polars DataFrames whose columns match the target table, so generation memory
stays bounded by the block size regardless of the total row count.

Index arithmetic (1-based, ids offset from the start of the parent range):
- Category:    name = Category_i
- Product:     category i, slot j -> price i*j, stock (i*j) // (i+j)
- Customer:    index i -> FirstName_i, LastName_i, customer_i@example.com
- Order:       customer i, k in [1, orders_per_customer]
- OrderDetail: i in [1, M], j in [1, N], k in [1, K]
               -> order i*j, product j, quantity j // i, random unit price
"""

import hashlib
from datetime import datetime
from typing import Iterator, Optional, Tuple

import numpy as np
import polars as pl
from faker import Faker

DEFAULT_BLOCK_ROWS = 10_000


def _spans(first: int, last: int, size: int) -> Iterator[Tuple[int, int]]:
    """Inclusive [start, stop] spans of at most ``size`` covering first..last"""
    for start in range(first, last + 1, size):
        yield start, min(start + size - 1, last)


def category_blocks(count: int, block_rows: int = DEFAULT_BLOCK_ROWS) -> Iterator[pl.DataFrame]:
    for start, stop in _spans(1, count, block_rows):
        yield pl.DataFrame({"i": np.arange(start, stop + 1)}).select(
            pl.format("Category_{}", pl.col("i")).alias("name"),
        )


def product_blocks(
    category_range: Tuple[int, int],
    per_category: int,
    block_rows: int = DEFAULT_BLOCK_ROWS,
) -> Iterator[pl.DataFrame]:
    """One or more blocks per category; category index i counts from 1 within the range"""
    first_id, last_id = category_range
    for i, category_id in enumerate(range(first_id, last_id + 1), start=1):
        for start, stop in _spans(1, per_category, block_rows):
            j = pl.col("j")
            yield pl.DataFrame({"j": np.arange(start, stop + 1, dtype=np.int64)}).select(
                pl.lit(category_id, dtype=pl.Int64).alias("category_id"),
                pl.format("Name_{}", j).alias("name"),
                pl.lit(f"DESCRIPTION_{i}").alias("description"),
                (j * i).alias("price"),
                ((j * i) // (j + i)).alias("stock_quantity"),
                pl.lit(f"AUTHOR_{i}").alias("author"),
            )


def password_hash(index: int) -> str:
    """SHA256 hex digest of the index-derived password"""
    return hashlib.sha256(f"password_{index}".encode()).hexdigest()


def customer_blocks(
    count: int,
    start_index: int = 1,
    block_rows: int = DEFAULT_BLOCK_ROWS,
    faker_seed: Optional[int] = None,
) -> Iterator[pl.DataFrame]:
    """
    Customer rows for indexes start_index .. start_index + count - 1.

    With ``faker_seed`` set, first and last names come from a Faker instance
    reseeded per block, so any block can be rebuilt on its own.
    """
    last_index = start_index + count - 1
    fake = Faker() if faker_seed is not None else None

    for start, stop in _spans(start_index, last_index, block_rows):
        idx = np.arange(start, stop + 1, dtype=np.int64)
        df = pl.DataFrame({
            "i": idx,
            "password_hash": [password_hash(int(i)) for i in idx],
        })

        if fake is not None:
            fake.seed_instance(faker_seed + start)
            df = df.with_columns(
                pl.Series("first_name", [fake.first_name() for _ in idx]),
                pl.Series("last_name", [fake.last_name() for _ in idx]),
            )
        else:
            df = df.with_columns(
                pl.format("FirstName_{}", pl.col("i")).alias("first_name"),
                pl.format("LastName_{}", pl.col("i")).alias("last_name"),
            )

        yield df.select(
            "first_name",
            "last_name",
            pl.format("customer_{}@example.com", pl.col("i")).alias("email"),
            "password_hash",
        )


def order_blocks(
    customer_range: Tuple[int, int],
    orders_per_customer: int,
    placed_at: datetime,
    block_rows: int = DEFAULT_BLOCK_ROWS,
) -> Iterator[pl.DataFrame]:
    customers_per_block = max(1, block_rows // orders_per_customer)
    first_id, last_id = customer_range
    for start, stop in _spans(first_id, last_id, customers_per_block):
        customer_ids = np.repeat(np.arange(start, stop + 1, dtype=np.int64), orders_per_customer)
        yield pl.DataFrame({"customer_id": customer_ids}).with_columns(
            pl.lit(placed_at).alias("placed_at"),
        )


def order_detail_blocks(
    multiplier: int,
    products: int,
    details_per_pair: int,
    order_start: int,
    product_start: int,
    seed: int,
    unit_price_step: int = 1000,
    unit_price_multiples: Tuple[int, int] = (1, 10),
) -> Iterator[pl.DataFrame]:
    """
    One block per outer index i, holding N * K candidate rows.

    Candidates are not range-checked here: order ids past the last order and
    zero quantities are left for the constraint screen to count and drop.
    The unit price stream is seeded by (seed, i) so every block is
    reproducible independently of the others.
    """
    j = np.repeat(np.arange(1, products + 1, dtype=np.int64), details_per_pair)
    low, high = unit_price_multiples

    for i in range(1, multiplier + 1):
        rng = np.random.default_rng([seed, i])
        yield pl.DataFrame({
            "order_id": order_start - 1 + i * j,
            "product_id": product_start - 1 + j,
            "quantity": j // i,
            "unit_price": rng.integers(low, high + 1, size=len(j)) * unit_price_step,
        })
