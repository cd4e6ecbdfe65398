"""
Referential Integrity Checks

Post-generation verification that every foreign key in the store resolves,
reported as a validation suite result.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine

from datagen.database.models import Category, Customer, Order, OrderDetail, Product

logger = structlog.get_logger(__name__)


class ValidationStatus(str, Enum):
    """Overall validation status"""
    PASSED = "passed"
    FAILED = "failed"


@dataclass
class ValidationCheck:
    """Single validation check result"""
    name: str
    passed: bool
    message: str
    failed_rows: int = 0
    details: Optional[Dict[str, Any]] = None


@dataclass
class IntegrityReport:
    """Complete integrity suite result"""
    status: ValidationStatus
    checks: List[ValidationCheck] = field(default_factory=list)
    row_counts: Dict[str, int] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_checks(self) -> int:
        return len(self.checks)

    @property
    def failed_checks(self) -> int:
        return sum(1 for c in self.checks if not c.passed)


# (check name, child model, child fk column, parent model)
FOREIGN_KEYS = (
    ("products.category_id", Product, Product.category_id, Category),
    ("orders.customer_id", Order, Order.customer_id, Customer),
    ("order_details.order_id", OrderDetail, OrderDetail.order_id, Order),
    ("order_details.product_id", OrderDetail, OrderDetail.product_id, Product),
)


async def count_rows(engine: AsyncEngine) -> Dict[str, int]:
    """Row count per base table"""
    counts = {}
    async with engine.connect() as conn:
        for model in (Category, Product, Customer, Order, OrderDetail):
            result = await conn.execute(select(func.count()).select_from(model))
            counts[model.__tablename__] = result.scalar_one()
    return counts


async def check_referential_integrity(engine: AsyncEngine) -> IntegrityReport:
    """
    Count orphaned children for every foreign key.

    Also checks the order-detail positivity invariants, which the schema
    enforces but a store without CHECK support would not.
    """
    checks = []
    async with engine.connect() as conn:
        for name, child, fk_column, parent in FOREIGN_KEYS:
            stmt = (
                select(func.count())
                .select_from(child)
                .outerjoin(parent, fk_column == parent.id)
                .where(parent.id.is_(None))
            )
            orphans = (await conn.execute(stmt)).scalar_one()
            checks.append(ValidationCheck(
                name=f"fk_{name}",
                passed=orphans == 0,
                message=f"{name} has {orphans} orphaned rows" if orphans else f"{name} resolves",
                failed_rows=orphans,
            ))

        bad_details = (await conn.execute(
            select(func.count())
            .select_from(OrderDetail)
            .where((OrderDetail.quantity < 1) | (OrderDetail.unit_price <= 0))
        )).scalar_one()
        checks.append(ValidationCheck(
            name="order_details_positive",
            passed=bad_details == 0,
            message=f"{bad_details} order details with non-positive quantity or price",
            failed_rows=bad_details,
        ))

    report = IntegrityReport(
        status=ValidationStatus.PASSED if all(c.passed for c in checks) else ValidationStatus.FAILED,
        checks=checks,
        row_counts=await count_rows(engine),
    )
    logger.info(
        "Integrity check completed",
        status=report.status.value,
        failed_checks=report.failed_checks,
        row_counts=report.row_counts,
    )
    return report
