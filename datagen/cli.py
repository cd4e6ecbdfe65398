"""
Command Line Interface

Usage:
    datagen init-db [--drop]
    datagen populate [--categories N ...] [--sequential] [--tune]
    datagen populate --entity product --count 1000
    datagen refresh [NAME ...]
    datagen read NAME [--live]
    datagen integrity
    datagen serve [--host HOST] [--port PORT] [--reload]
"""

import argparse
import asyncio
import inspect
import json
import sys
from typing import List, Optional

import structlog

from datagen.cache import AggregateCache
from datagen.config import get_settings
from datagen.config.logging import configure_logging
from datagen.database.connection import close_database, create_schema, init_database
from datagen.database.physical import tune_store
from datagen.errors import DatagenError
from datagen.generation import DatasetGenerator, Entity, GenerationPlan, GenerationStatus
from datagen.quality.integrity import ValidationStatus, check_referential_integrity

logger = structlog.get_logger(__name__)


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def cmd_init_db(args: argparse.Namespace) -> int:
    engine = await init_database(args.database_url)
    try:
        await create_schema(engine, drop_existing=args.drop)
        await AggregateCache(engine).setup()
    finally:
        await close_database()
    print("Schema ready")
    return 0


async def cmd_populate(args: argparse.Namespace) -> int:
    settings = get_settings()
    engine = await init_database(args.database_url)
    try:
        generator = DatasetGenerator(engine)

        if args.entity:
            if args.count is None:
                print("--count is required with --entity", file=sys.stderr)
                return 2
            result = await generator.generate(Entity(args.entity), args.count, timeout=args.timeout)
            _print_json(result.model_dump(mode="json"))
            return 0 if result.status == GenerationStatus.COMPLETED else 1

        plan = GenerationPlan.from_settings(settings.generator)
        overrides = {
            field: getattr(args, field)
            for field in GenerationPlan.model_fields
            if getattr(args, field, None) is not None
        }
        plan = plan.model_copy(update=overrides)

        results = await generator.generate_all(plan, concurrent=not args.sequential)
        _print_json({entity.value: result.model_dump(mode="json") for entity, result in results.items()})

        if args.tune:
            _print_json(await tune_store(engine))
        if args.refresh:
            refreshed = await AggregateCache(engine).refresh_all()
            _print_json({name: result.model_dump(mode="json") for name, result in refreshed.items()})

        complete = len(results) == len(Entity) and all(
            r.status == GenerationStatus.COMPLETED for r in results.values()
        )
        return 0 if complete else 1
    finally:
        await close_database()


async def cmd_refresh(args: argparse.Namespace) -> int:
    engine = await init_database(args.database_url)
    try:
        cache = AggregateCache(engine)
        names = args.names or cache.names
        for name in names:
            result = await cache.refresh(name, timeout=args.timeout)
            _print_json(result.model_dump(mode="json"))
    finally:
        await close_database()
    return 0


async def cmd_read(args: argparse.Namespace) -> int:
    engine = await init_database(args.database_url)
    try:
        cache = AggregateCache(engine)
        if args.live:
            rows = await cache.compute_live(args.name)
            _print_json({"name": args.name, "source": "live", "rows": rows})
        else:
            snapshot = await cache.read(args.name)
            _print_json({
                "name": snapshot.name,
                "source": "cache",
                "refreshed_at": snapshot.refreshed_at,
                "rows": snapshot.rows,
            })
    finally:
        await close_database()
    return 0


async def cmd_integrity(args: argparse.Namespace) -> int:
    engine = await init_database(args.database_url)
    try:
        report = await check_referential_integrity(engine)
    finally:
        await close_database()

    _print_json({
        "status": report.status.value,
        "row_counts": report.row_counts,
        "checks": [
            {"name": c.name, "passed": c.passed, "failed_rows": c.failed_rows, "message": c.message}
            for c in report.checks
        ],
    })
    return 0 if report.status == ValidationStatus.PASSED else 1


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "datagen.main:app",
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        reload=args.reload,
        log_level=settings.monitoring.log_level.lower(),
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="datagen",
        description="Synthetic e-commerce store generator and aggregate cache",
    )
    parser.add_argument("--database-url", help="SQLAlchemy async URL (overrides configuration)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    sub = parser.add_subparsers(dest="command", required=True)

    init_db = sub.add_parser("init-db", help="Create the schema")
    init_db.add_argument("--drop", action="store_true", help="Drop existing tables first")
    init_db.set_defaults(handler=cmd_init_db)

    populate = sub.add_parser("populate", help="Generate rows")
    populate.add_argument("--entity", choices=[e.value for e in Entity], help="Generate a single entity")
    populate.add_argument("--count", type=int, help="Count for --entity")
    populate.add_argument("--timeout", type=float, help="Seconds before no further batch is issued")
    populate.add_argument("--categories", type=int)
    populate.add_argument("--products-per-category", dest="products_per_category", type=int)
    populate.add_argument("--customers", type=int)
    populate.add_argument("--orders-per-customer", dest="orders_per_customer", type=int)
    populate.add_argument("--detail-multiplier", dest="detail_multiplier", type=int)
    populate.add_argument("--detail-products", dest="detail_products", type=int)
    populate.add_argument("--details-per-pair", dest="details_per_pair", type=int)
    populate.add_argument("--sequential", action="store_true", help="Generate one entity at a time")
    populate.add_argument("--tune", action="store_true", help="Create secondary indexes and cluster afterwards")
    populate.add_argument("--refresh", action="store_true", help="Refresh all aggregates afterwards")
    populate.set_defaults(handler=cmd_populate)

    refresh = sub.add_parser("refresh", help="Refresh aggregate snapshots")
    refresh.add_argument("names", nargs="*", help="Aggregates to refresh (default: all)")
    refresh.add_argument("--timeout", type=float)
    refresh.set_defaults(handler=cmd_refresh)

    read = sub.add_parser("read", help="Print an aggregate")
    read.add_argument("name")
    read.add_argument("--live", action="store_true", help="Compute from base tables instead of the snapshot")
    read.set_defaults(handler=cmd_read)

    integrity = sub.add_parser("integrity", help="Check referential integrity")
    integrity.set_defaults(handler=cmd_integrity)

    serve = sub.add_parser("serve", help="Run the API server")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(handler=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(log_level=args.log_level)

    handler = args.handler
    if not inspect.iscoroutinefunction(handler):
        return handler(args)

    try:
        return asyncio.run(handler(args))
    except DatagenError as e:
        logger.error("Command failed", command=args.command, **e.to_dict())
        print(json.dumps(e.to_dict(), default=str), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
