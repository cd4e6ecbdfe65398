"""
Prefect Workflow Orchestration - Store Population & Aggregate Refresh

Workflows for:
- Full store population in dependency stages
- Scheduled refresh of derived aggregate snapshots
- Post-population integrity checks
"""

import asyncio
from typing import List, Optional

from prefect import flow, get_run_logger, task

from datagen.cache import AggregateCache, default_definitions
from datagen.config import get_settings
from datagen.database.connection import create_engine, create_schema
from datagen.database.physical import tune_store
from datagen.generation import DatasetGenerator, Entity, GenerationPlan, GenerationStatus
from datagen.generation.parameters import PARAMETER_TYPES
from datagen.quality.integrity import ValidationStatus, check_referential_integrity


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="create_schema",
    description="Create base and snapshot tables",
    retries=2,
    retry_delay_seconds=10,
)
async def create_schema_task(database_url: Optional[str] = None, drop_existing: bool = False) -> dict:
    logger = get_run_logger()
    engine = create_engine(database_url)
    try:
        await create_schema(engine, drop_existing=drop_existing)
    finally:
        await engine.dispose()
    logger.info(f"Schema ready (dropped existing: {drop_existing})")
    return {"dropped": drop_existing}


@task(
    name="generate_entity",
    description="Generate and insert rows for one entity",
)
async def generate_entity(
    entity: str,
    count: int,
    parameters: Optional[dict] = None,
    database_url: Optional[str] = None,
) -> dict:
    """Generate one entity; a BatchCommitError fails the task with rows_committed attached"""
    logger = get_run_logger()
    entity_enum = Entity(entity)
    params = PARAMETER_TYPES[entity_enum](**(parameters or {}))

    engine = create_engine(database_url)
    try:
        result = await DatasetGenerator(engine).generate(entity_enum, count, params)
    finally:
        await engine.dispose()

    logger.info(
        f"{entity}: {result.rows_inserted} rows inserted, "
        f"{result.rows_skipped} skipped ({result.status.value})"
    )
    return result.model_dump(mode="json")


@task(
    name="tune_store",
    description="Create secondary indexes and cluster tables",
    retries=1,
    retry_delay_seconds=30,
)
async def tune_store_task(database_url: Optional[str] = None) -> dict:
    logger = get_run_logger()
    engine = create_engine(database_url)
    try:
        tuned = await tune_store(engine)
    finally:
        await engine.dispose()
    logger.info(f"Indexes: {tuned['indexes']}, clustered: {tuned['clustered']}")
    return tuned


@task(
    name="refresh_aggregate",
    description="Recompute one aggregate snapshot",
    retries=2,
    retry_delay_seconds=60,
)
async def refresh_aggregate(name: str, database_url: Optional[str] = None) -> dict:
    logger = get_run_logger()
    engine = create_engine(database_url)
    try:
        result = await AggregateCache(engine).refresh(name)
    finally:
        await engine.dispose()
    logger.info(f"Refreshed {name}: {result.row_count} rows in {result.duration_seconds:.2f}s")
    return result.model_dump(mode="json")


@task(
    name="integrity_check",
    description="Count orphaned rows per foreign key",
)
async def integrity_check(database_url: Optional[str] = None) -> dict:
    logger = get_run_logger()
    engine = create_engine(database_url)
    try:
        report = await check_referential_integrity(engine)
    finally:
        await engine.dispose()

    logger.info(f"Integrity {report.status.value}: {report.failed_checks}/{report.total_checks} checks failed")
    return {
        "passed": report.status == ValidationStatus.PASSED,
        "row_counts": report.row_counts,
        "failed_checks": [c.name for c in report.checks if not c.passed],
    }


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="refresh_aggregates",
    description="Refresh derived aggregate snapshots",
)
async def refresh_aggregates(
    names: Optional[List[str]] = None,
    database_url: Optional[str] = None,
) -> dict:
    """Refresh the given aggregates (default: all) concurrently."""
    if names is None:
        names = list(default_definitions(get_settings().cache.top_spenders_limit))

    results = await asyncio.gather(*(refresh_aggregate(name, database_url) for name in names))
    return dict(zip(names, results))


@flow(
    name="populate_store",
    description="Populate the store in dependency stages",
)
async def populate_store(
    plan: Optional[dict] = None,
    database_url: Optional[str] = None,
    drop_existing: bool = False,
    tune: bool = True,
    refresh: bool = True,
) -> dict:
    """
    Full population run.

    Steps:
    1. Create schema
    2. Categories and customers
    3. Products and orders
    4. Order details
    5. Integrity check, physical tuning, aggregate refresh
    """
    logger = get_run_logger()
    settings = get_settings()
    generation_plan = GenerationPlan.from_settings(settings.generator).model_copy(update=plan or {})

    results = {"plan": generation_plan.model_dump(), "entities": {}}
    await create_schema_task(database_url, drop_existing)

    stages = [
        [
            (Entity.CATEGORY, generation_plan.categories, None),
            (Entity.CUSTOMER, generation_plan.customers, None),
        ],
        [
            (Entity.PRODUCT, generation_plan.products_per_category, None),
            (Entity.ORDER, generation_plan.orders_per_customer, None),
        ],
        [
            (
                Entity.ORDER_DETAIL,
                generation_plan.detail_multiplier,
                {
                    "products": generation_plan.detail_products,
                    "details_per_pair": generation_plan.details_per_pair,
                },
            ),
        ],
    ]

    for number, stage in enumerate(stages, start=1):
        stage_results = await asyncio.gather(
            *(generate_entity(entity.value, count, params, database_url) for entity, count, params in stage)
        )
        for (entity, _, _), result in zip(stage, stage_results):
            results["entities"][entity.value] = result

        incomplete = [r["entity"] for r in stage_results if r["status"] != GenerationStatus.COMPLETED.value]
        if incomplete:
            logger.warning(f"Population halted at stage {number}: {incomplete} incomplete")
            results["status"] = "halted"
            return results

    results["integrity"] = await integrity_check(database_url)
    if tune:
        results["tuning"] = await tune_store_task(database_url)
    if refresh:
        results["aggregates"] = await refresh_aggregates(database_url=database_url)

    results["status"] = "success" if results["integrity"]["passed"] else "integrity_failed"
    return results


# =============================================================================
# DEPLOYMENT CONFIGURATION
# =============================================================================

if __name__ == "__main__":
    settings = get_settings()
    refresh_aggregates.serve(
        name="scheduled-aggregate-refresh",
        interval=settings.cache.refresh_interval_seconds,
    )
