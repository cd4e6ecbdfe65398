"""
Dataset Generator

Populates the five base tables in dependency order with deterministic,
referentially-valid rows:

    Category ─┐
              ├─> Product ─┐
    Customer ─┼─> Order ───┴─> OrderDetail

Parent id ranges are validated before any dependent row is produced. Rows
that would break an invariant are screened out and counted, and every batch
is its own transaction.
"""

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Type

import polars as pl
import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncEngine

from datagen.config import get_settings
from datagen.config.settings import GeneratorSettings
from datagen.database.models import Base, Category, Customer, Order, OrderDetail, Product
from datagen.errors import ParentNotFoundError
from datagen.generation import rows
from datagen.generation.parameters import (
    PARAMETER_TYPES,
    CategoryParameters,
    CustomerParameters,
    Entity,
    GenerationParameters,
    GenerationPlan,
    GenerationResult,
    GenerationStatus,
    IdRange,
    OrderDetailParameters,
    OrderParameters,
    ProductParameters,
)
from datagen.generation.writer import BatchWriter
from datagen.quality.constraints import ConstraintScreen

logger = structlog.get_logger(__name__)

MODELS: Dict[Entity, Type[Base]] = {
    Entity.CATEGORY: Category,
    Entity.PRODUCT: Product,
    Entity.CUSTOMER: Customer,
    Entity.ORDER: Order,
    Entity.ORDER_DETAIL: OrderDetail,
}


@dataclass
class _Job:
    """Everything the writer needs for one entity"""
    model: Type[Base]
    blocks: Iterable[pl.DataFrame]
    screen: ConstraintScreen
    conflicts: Optional[ConstraintScreen] = None
    decimal_columns: Tuple[str, ...] = ()
    context: Dict[str, object] = field(default_factory=dict)


def _resume_cut(mask: pl.Series, passing_rows: int) -> int:
    """Row offset just past the ``passing_rows``-th True of ``mask``"""
    return int(mask.cast(pl.Int64).cum_sum().search_sorted(passing_rows, side="left")) + 1


def _screened(
    job: _Job,
    violations: Counter,
    resume_from: int = 0,
) -> Iterator[pl.DataFrame]:
    """
    Screen blocks and drop the resumed prefix.

    The first ``resume_from`` rows passing the row rules were committed by an
    earlier run, so they and the violations among them are neither written
    nor counted again. Store conflicts are checked after the prefix is dropped.
    """
    to_skip = resume_from
    for block in job.blocks:
        if to_skip:
            mask = job.screen.passes(block)
            passing = int(mask.sum())
            if passing < to_skip:
                to_skip -= passing
                continue
            block = block.slice(_resume_cut(mask, to_skip))
            to_skip = 0

        result = job.screen.apply(block)
        violations.update(result.violations)
        valid = result.valid
        if job.conflicts is not None:
            result = job.conflicts.apply(valid)
            violations.update(result.violations)
            valid = result.valid
        yield valid


class DatasetGenerator:
    """
    Deterministic synthetic data generator.

    Example:
        generator = DatasetGenerator(engine)
        await generator.generate(Entity.CATEGORY, 100)
        await generator.generate(Entity.PRODUCT, 1000)
        results = await generator.generate_all(GenerationPlan.from_settings(settings.generator))
    """

    def __init__(
        self,
        engine: AsyncEngine,
        settings: Optional[GeneratorSettings] = None,
    ):
        self.engine = engine
        self.settings = settings or get_settings().generator

    # ------------------------------------------------------------------
    # Parent ranges
    # ------------------------------------------------------------------

    async def id_stats(self, model: Type[Base]) -> Tuple[Optional[int], Optional[int], int]:
        """(min id, max id, row count) of a table"""
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(func.min(model.id), func.max(model.id), func.count(model.id))
            )
            low, high, count = result.one()
        return low, high, count

    async def resolve_parent_range(
        self,
        entity: Entity,
        parent: Type[Base],
        requested: Optional[IdRange] = None,
    ) -> IdRange:
        """
        Validate that a contiguous parent id range exists.

        Without an explicit range, the full range present in the store is used.

        Raises:
            ParentNotFoundError: The parent table is empty or the range has gaps
        """
        parent_name = parent.__tablename__
        if requested is None:
            low, high, count = await self.id_stats(parent)
            if count == 0:
                logger.error("Parent table empty", entity=entity.value, parent=parent_name)
                raise ParentNotFoundError(entity.value, parent_name)
            id_range = (low, high)
        else:
            id_range = requested
            async with self.engine.connect() as conn:
                count = (await conn.execute(
                    select(func.count(parent.id)).where(parent.id.between(*id_range))
                )).scalar_one()

        expected = id_range[1] - id_range[0] + 1
        if count != expected:
            logger.error(
                "Parent id range incomplete",
                entity=entity.value,
                parent=parent_name,
                id_range=id_range,
                present=count,
                expected=expected,
            )
            raise ParentNotFoundError(entity.value, parent_name, id_range)
        return id_range

    # ------------------------------------------------------------------
    # Per-entity jobs
    # ------------------------------------------------------------------

    async def _category_job(self, count: int, params: CategoryParameters) -> _Job:
        return _Job(
            model=Category,
            blocks=rows.category_blocks(count),
            screen=ConstraintScreen(Entity.CATEGORY.value, strict=params.strict),
        )

    async def _product_job(self, count: int, params: ProductParameters) -> _Job:
        category_range = await self.resolve_parent_range(Entity.PRODUCT, Category, params.category_range)
        screen = (
            ConstraintScreen(Entity.PRODUCT.value, strict=params.strict)
            .add_positive_check("price")
            .add_range_check("stock_quantity", min_value=0)
        )
        return _Job(
            model=Product,
            blocks=rows.product_blocks(category_range, count),
            screen=screen,
            decimal_columns=("price",),
            context={"category_range": category_range},
        )

    async def existing_emails(self) -> List[str]:
        """Emails already taken in the store"""
        _, _, count = await self.id_stats(Customer)
        if count == 0:
            return []
        async with self.engine.connect() as conn:
            return list((await conn.execute(select(Customer.email))).scalars())

    async def _customer_job(self, count: int, params: CustomerParameters) -> _Job:
        faker_seed = None
        if params.realistic_names:
            faker_seed = params.seed if params.seed is not None else self.settings.seed

        conflicts = None
        taken = await self.existing_emails()
        if taken:
            conflicts = (
                ConstraintScreen(Entity.CUSTOMER.value, strict=params.strict)
                .add_unique_check("email", taken)
            )

        return _Job(
            model=Customer,
            blocks=rows.customer_blocks(count, params.start_index, faker_seed=faker_seed),
            screen=ConstraintScreen(Entity.CUSTOMER.value, strict=params.strict),
            conflicts=conflicts,
            context={"start_index": params.start_index, "existing_customers": len(taken)},
        )

    async def _order_job(self, count: int, params: OrderParameters) -> _Job:
        customer_range = await self.resolve_parent_range(Entity.ORDER, Customer, params.customer_range)
        placed_at = params.placed_at or datetime.now(timezone.utc)
        return _Job(
            model=Order,
            blocks=rows.order_blocks(customer_range, count, placed_at),
            screen=ConstraintScreen(Entity.ORDER.value, strict=params.strict),
            context={"customer_range": customer_range, "placed_at": placed_at.isoformat()},
        )

    async def _order_detail_job(self, count: int, params: OrderDetailParameters) -> _Job:
        order_range = await self.resolve_parent_range(Entity.ORDER_DETAIL, Order, params.order_range)
        product_range = await self.resolve_parent_range(Entity.ORDER_DETAIL, Product, params.product_range)
        products = params.products or (product_range[1] - product_range[0] + 1)
        seed = params.seed if params.seed is not None else self.settings.seed

        screen = (
            ConstraintScreen(Entity.ORDER_DETAIL.value, strict=params.strict)
            .add_range_check("order_id", *order_range)
            .add_range_check("product_id", *product_range)
            .add_positive_check("quantity")
            .add_positive_check("unit_price")
        )
        blocks = rows.order_detail_blocks(
            multiplier=count,
            products=products,
            details_per_pair=params.details_per_pair,
            order_start=order_range[0],
            product_start=product_range[0],
            seed=seed,
            unit_price_step=params.unit_price_step,
            unit_price_multiples=params.unit_price_multiples,
        )
        return _Job(
            model=OrderDetail,
            blocks=blocks,
            screen=screen,
            decimal_columns=("unit_price",),
            context={"order_range": order_range, "product_range": product_range, "products": products},
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(
        self,
        entity: Entity,
        count: int,
        parameters: Optional[GenerationParameters] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> GenerationResult:
        """
        Generate and insert rows for one entity.

        Args:
            entity: Entity to generate
            count: Categories, products per category, customers, orders per
                customer, or the order-detail multiplier M
            parameters: Entity-specific parameters
            cancel_event: Stops issuing batches once set
            timeout: Seconds after which no further batch is issued

        Returns:
            GenerationResult: Inserted and skipped counts

        Raises:
            ParentNotFoundError: Required parent rows are missing
            ConstraintViolation: A row breaks an invariant and strict is set
            BatchCommitError: A batch failed after its retry
        """
        entity = Entity(entity)
        if count < 1:
            raise ValueError(f"count must be positive, got {count}")

        expected_type = PARAMETER_TYPES[entity]
        params = parameters if parameters is not None else expected_type()
        if not isinstance(params, expected_type):
            raise TypeError(f"{entity.value} expects {expected_type.__name__}, got {type(params).__name__}")

        started_at = datetime.now(timezone.utc)
        deadline = time.monotonic() + timeout if timeout is not None else None

        builders = {
            Entity.CATEGORY: self._category_job,
            Entity.PRODUCT: self._product_job,
            Entity.CUSTOMER: self._customer_job,
            Entity.ORDER: self._order_job,
            Entity.ORDER_DETAIL: self._order_detail_job,
        }
        job = await builders[entity](count, params)

        log = logger.bind(entity=entity.value)
        log.info("Starting generation", count=count, resume_from=params.resume_from, **job.context)

        violations: Counter = Counter()
        writer = BatchWriter(
            self.engine,
            batch_size=params.batch_size or self.settings.batch_size,
            retry_divisor=self.settings.retry_divisor,
        )
        outcome = await writer.write(
            job.model.__table__,
            _screened(job, violations, params.resume_from),
            entity=entity.value,
            decimal_columns=job.decimal_columns,
            cancel_event=cancel_event,
            deadline=deadline,
        )

        completed_at = datetime.now(timezone.utc)
        result = GenerationResult(
            entity=entity,
            status=GenerationStatus(outcome.stopped) if outcome.stopped else GenerationStatus.COMPLETED,
            rows_inserted=outcome.rows_committed,
            rows_skipped=sum(violations.values()),
            violations=dict(violations),
            batches=outcome.batches,
            retries=outcome.retries,
            started_at=started_at,
            completed_at=completed_at,
            duration_seconds=(completed_at - started_at).total_seconds(),
        )

        log.info(
            "Generation finished",
            status=result.status.value,
            rows_inserted=result.rows_inserted,
            rows_skipped=result.rows_skipped,
            violations=result.violations,
            batches=result.batches,
            duration_seconds=result.duration_seconds,
        )
        return result

    async def _run_stage(
        self,
        jobs: Sequence[Tuple[Entity, int, GenerationParameters]],
        concurrent: bool,
        cancel_event: Optional[asyncio.Event],
    ) -> List[GenerationResult]:
        """Run entities that share no dependency; the stage ends when all have committed"""
        if not concurrent:
            return [
                await self.generate(entity, count, params, cancel_event=cancel_event)
                for entity, count, params in jobs
            ]

        outcomes = await asyncio.gather(
            *(self.generate(entity, count, params, cancel_event=cancel_event) for entity, count, params in jobs),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)

    async def generate_all(
        self,
        plan: GenerationPlan,
        *,
        concurrent: Optional[bool] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[Entity, GenerationResult]:
        """
        Populate every entity in three dependency stages.

        1. Category and Customer
        2. Product and Order
        3. OrderDetail

        A stage starts only after every batch of the previous stage committed;
        if a stage stops early, later stages are not started.
        """
        concurrent = self.settings.concurrent if concurrent is None else concurrent
        stages = [
            [
                (Entity.CATEGORY, plan.categories, CategoryParameters()),
                (Entity.CUSTOMER, plan.customers, CustomerParameters()),
            ],
            [
                (Entity.PRODUCT, plan.products_per_category, ProductParameters()),
                (Entity.ORDER, plan.orders_per_customer, OrderParameters()),
            ],
            [
                (
                    Entity.ORDER_DETAIL,
                    plan.detail_multiplier,
                    OrderDetailParameters(products=plan.detail_products, details_per_pair=plan.details_per_pair),
                ),
            ],
        ]

        results: Dict[Entity, GenerationResult] = {}
        for number, stage in enumerate(stages, start=1):
            for result in await self._run_stage(stage, concurrent, cancel_event):
                results[result.entity] = result

            incomplete = [r.entity.value for r in results.values() if r.status != GenerationStatus.COMPLETED]
            if incomplete:
                logger.warning("Population halted", stage=number, incomplete=incomplete)
                break

        logger.info(
            "Population finished",
            rows_inserted={e.value: r.rows_inserted for e, r in results.items()},
            rows_skipped={e.value: r.rows_skipped for e, r in results.items()},
        )
        return results

    async def delete(self, entity: Entity, ids: Sequence[int]) -> int:
        """
        Delete rows by id; dependent rows go with them through ON DELETE CASCADE.

        Returns:
            Number of rows deleted from the entity's own table
        """
        entity = Entity(entity)
        model = MODELS[entity]
        async with self.engine.begin() as conn:
            result = await conn.execute(delete(model).where(model.id.in_(list(ids))))
        logger.info("Rows deleted", entity=entity.value, requested=len(ids), deleted=result.rowcount)
        return result.rowcount
