"""
Aggregate Definitions

Each derived aggregate is a pure function of the base tables, expressed as a
SQLAlchemy Select whose labels match the columns of its snapshot table.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple, Type

from sqlalchemy import Select, func, select

from datagen.database.models import (
    AggCategoryRevenue,
    AggTopSpender,
    Base,
    Category,
    Customer,
    Order,
    OrderDetail,
    Product,
)

CATEGORY_REVENUE = "category_revenue"
TOP_SPENDERS = "top_spenders"


@dataclass(frozen=True)
class AggregateDefinition:
    """
    Named aggregate keyed by its defining query.

    ``order_by`` lists (column, descending) pairs applied when reading, so a
    snapshot and a live computation come back in the same order.
    """
    name: str
    snapshot_model: Type[Base]
    build_query: Callable[[], Select]
    order_by: Tuple[Tuple[str, bool], ...]
    description: str = ""

    @property
    def columns(self) -> List[str]:
        return [column.name for column in self.snapshot_model.__table__.columns]

    def query(self) -> Select:
        return self.build_query()

    def sort_rows(self, rows: List[dict]) -> List[dict]:
        """Order rows in Python the same way reads order them in SQL"""
        for column, descending in reversed(self.order_by):
            rows = sorted(rows, key=lambda row: row[column], reverse=descending)
        return rows


def line_total():
    return OrderDetail.unit_price * OrderDetail.quantity


def category_revenue_query() -> Select:
    """Revenue per category over Category ⋈ Product ⋈ OrderDetail ⋈ Order"""
    revenue = func.sum(line_total())
    return (
        select(
            Category.id.label("category_id"),
            Category.name.label("category_name"),
            revenue.label("revenue"),
        )
        .select_from(OrderDetail)
        .join(Order, OrderDetail.order_id == Order.id)
        .join(Product, OrderDetail.product_id == Product.id)
        .join(Category, Product.category_id == Category.id)
        .group_by(Category.id, Category.name)
    )


def top_spenders_query(limit: int) -> Callable[[], Select]:
    """Top ``limit`` customers by total spend, ties broken by customer id"""
    def build() -> Select:
        total_spent = func.sum(line_total())
        return (
            select(
                Customer.id.label("customer_id"),
                Customer.first_name.label("first_name"),
                Customer.last_name.label("last_name"),
                Customer.email.label("email"),
                total_spent.label("total_spent"),
            )
            .select_from(OrderDetail)
            .join(Order, OrderDetail.order_id == Order.id)
            .join(Customer, Order.customer_id == Customer.id)
            .group_by(Customer.id, Customer.first_name, Customer.last_name, Customer.email)
            .order_by(total_spent.desc(), Customer.id)
            .limit(limit)
        )
    return build


def default_definitions(top_spenders_limit: int = 10) -> Dict[str, AggregateDefinition]:
    definitions = [
        AggregateDefinition(
            name=CATEGORY_REVENUE,
            snapshot_model=AggCategoryRevenue,
            build_query=category_revenue_query,
            order_by=(("revenue", True), ("category_id", False)),
            description="Sum of unit_price * quantity per product category",
        ),
        AggregateDefinition(
            name=TOP_SPENDERS,
            snapshot_model=AggTopSpender,
            build_query=top_spenders_query(top_spenders_limit),
            order_by=(("total_spent", True), ("customer_id", False)),
            description=f"Top {top_spenders_limit} customers by total spend",
        ),
    ]
    return {definition.name: definition for definition in definitions}
