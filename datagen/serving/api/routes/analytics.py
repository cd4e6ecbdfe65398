"""
Analytics API Endpoints

REST API over the analytics read path. Aggregate answers carry their source
(cache or live) and the time the numbers were computed.
"""

from datetime import datetime
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from datagen.serving.analytics import AnalyticsService
from datagen.serving.api.dependencies import get_analytics

router = APIRouter()
logger = structlog.get_logger(__name__)


class CategoryRevenueRow(BaseModel):
    """Revenue of one category"""
    category_id: int
    category_name: str
    revenue: float


class CategoryRevenueResponse(BaseModel):
    source: str
    refreshed_at: datetime
    total_revenue: float
    data: List[CategoryRevenueRow]


class TopSpenderRow(BaseModel):
    """One top-spending customer"""
    customer_id: int
    first_name: str
    last_name: str
    email: str
    total_spent: float


class TopSpendersResponse(BaseModel):
    source: str
    refreshed_at: datetime
    data: List[TopSpenderRow]


class OrderCountResponse(BaseModel):
    start: datetime
    end: datetime
    orders: int


class LowStockProduct(BaseModel):
    id: int
    name: str
    category_id: int
    stock_quantity: int


class LowStockResponse(BaseModel):
    threshold: int
    count: int
    products: List[LowStockProduct]


@router.get("/category-revenue", response_model=CategoryRevenueResponse)
async def get_category_revenue(
    bypass_cache: bool = Query(False, description="Compute from base tables"),
    analytics: AnalyticsService = Depends(get_analytics),
) -> CategoryRevenueResponse:
    """Revenue per product category, highest first."""
    answer = await analytics.category_revenue(bypass_cache=bypass_cache)
    rows = [CategoryRevenueRow(**row) for row in answer.rows]
    return CategoryRevenueResponse(
        source=answer.source,
        refreshed_at=answer.refreshed_at,
        total_revenue=sum(row.revenue for row in rows),
        data=rows,
    )


@router.get("/top-spenders", response_model=TopSpendersResponse)
async def get_top_spenders(
    bypass_cache: bool = Query(False, description="Compute from base tables"),
    analytics: AnalyticsService = Depends(get_analytics),
) -> TopSpendersResponse:
    """Customers with the highest total spend."""
    answer = await analytics.top_spenders(bypass_cache=bypass_cache)
    return TopSpendersResponse(
        source=answer.source,
        refreshed_at=answer.refreshed_at,
        data=[TopSpenderRow(**row) for row in answer.rows],
    )


@router.get("/orders/count", response_model=OrderCountResponse)
async def get_order_count(
    start: datetime = Query(..., description="Inclusive lower bound"),
    end: datetime = Query(..., description="Exclusive upper bound"),
    analytics: AnalyticsService = Depends(get_analytics),
) -> OrderCountResponse:
    """Number of orders placed in a time window."""
    try:
        orders = await analytics.orders_placed_between(start, end)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return OrderCountResponse(start=start, end=end, orders=orders)


@router.get("/products/low-stock", response_model=LowStockResponse)
async def get_low_stock_products(
    threshold: int = Query(10, ge=0, description="Maximum stock quantity"),
    limit: Optional[int] = Query(100, ge=1, le=10_000),
    analytics: AnalyticsService = Depends(get_analytics),
) -> LowStockResponse:
    """Products at or below a stock threshold, lowest stock first."""
    products = await analytics.low_stock_products(threshold=threshold, limit=limit)
    logger.debug("Low stock query", threshold=threshold, matched=len(products))
    return LowStockResponse(
        threshold=threshold,
        count=len(products),
        products=[LowStockProduct(**product) for product in products],
    )
