"""
Database Models - Normalized Store Schema

Base entities (written once by the dataset generator, removed only by cascade):
- Category
- Product      (-> Category)
- Customer
- Order        (-> Customer)
- OrderDetail  (-> Order, -> Product)

Derived aggregate snapshots (rebuilt by the aggregate cache):
- AggCategoryRevenue
- AggTopSpender
- AggregateSnapshot (snapshot metadata, one row per readable aggregate)
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# BASE ENTITIES
# =============================================================================

class Category(Base):
    """Product category"""
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    products: Mapped[List["Product"]] = relationship(
        back_populates="category", cascade="all, delete-orphan", passive_deletes=True
    )


class Product(Base):
    """
    Product catalog entry.

    ``price`` is fixed-point with two decimals; ``stock_quantity`` never goes
    below zero.
    """
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    author: Mapped[Optional[str]] = mapped_column(String(100))

    category: Mapped["Category"] = relationship(back_populates="products")
    order_details: Mapped[List["OrderDetail"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        Index("ix_products_category_id", "category_id"),
    )


class Customer(Base):
    """Store customer"""
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(64), nullable=False)  # SHA256 hex

    orders: Mapped[List["Order"]] = relationship(
        back_populates="customer", cascade="all, delete-orphan", passive_deletes=True
    )


class Order(Base):
    """Customer order header"""
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    placed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    customer: Mapped["Customer"] = relationship(back_populates="orders")
    details: Mapped[List["OrderDetail"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_orders_customer_id", "customer_id"),
    )


class OrderDetail(Base):
    """Order line item"""
    __tablename__ = "order_details"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    order: Mapped["Order"] = relationship(back_populates="details")
    product: Mapped["Product"] = relationship(back_populates="order_details")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_details_quantity_positive"),
        CheckConstraint("unit_price > 0", name="ck_order_details_unit_price_positive"),
    )


# =============================================================================
# AGGREGATE SNAPSHOTS
# =============================================================================

class AggregateSnapshot(Base):
    """
    Snapshot metadata.

    A row exists only while the named aggregate has a readable snapshot; it is
    written in the same transaction as the snapshot rows it describes.
    """
    __tablename__ = "aggregate_snapshots"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    backend: Mapped[str] = mapped_column(String(30), nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refreshed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AggCategoryRevenue(Base):
    """Revenue per category snapshot"""
    __tablename__ = "agg_category_revenue"

    category_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    category_name: Mapped[str] = mapped_column(String(100), nullable=False)
    revenue: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)


class AggTopSpender(Base):
    """Top-N customers by total spend snapshot"""
    __tablename__ = "agg_top_spenders"

    customer_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    total_spent: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    __table_args__ = (
        Index("ix_agg_top_spenders_total", "total_spent"),
    )
