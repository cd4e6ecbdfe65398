"""
Aggregate Cache Endpoints

Snapshot reads, explicit refreshes, and invalidation. Domain errors are
mapped to HTTP status codes by the application's exception handlers.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from datagen.cache import AggregateCache, RefreshResult
from datagen.serving.api.dependencies import get_cache

router = APIRouter()


class AggregateStatus(BaseModel):
    name: str
    ready: bool
    refreshing: bool
    stale: bool
    row_count: Optional[int] = None
    refreshed_at: Optional[datetime] = None


class SnapshotResponse(BaseModel):
    name: str
    refreshed_at: datetime
    row_count: int
    rows: List[Dict[str, Any]]


class InvalidateResponse(BaseModel):
    name: str
    removed: bool


async def _status(cache: AggregateCache, name: str) -> AggregateStatus:
    info = await cache.status(name)
    return AggregateStatus(
        name=name,
        ready=info is not None,
        refreshing=cache.is_refreshing(name),
        stale=await cache.is_stale(name),
        row_count=info.row_count if info else None,
        refreshed_at=info.refreshed_at if info else None,
    )


@router.get("", response_model=List[AggregateStatus])
async def list_aggregates(cache: AggregateCache = Depends(get_cache)) -> List[AggregateStatus]:
    """Registered aggregates and their snapshot status."""
    return [await _status(cache, name) for name in cache.names]


@router.get("/{name}/status", response_model=AggregateStatus)
async def get_aggregate_status(name: str, cache: AggregateCache = Depends(get_cache)) -> AggregateStatus:
    return await _status(cache, name)


@router.get("/{name}", response_model=SnapshotResponse)
async def read_aggregate(name: str, cache: AggregateCache = Depends(get_cache)) -> SnapshotResponse:
    """Last completed snapshot; 404 until the first refresh."""
    snapshot = await cache.read(name)
    return SnapshotResponse(
        name=snapshot.name,
        refreshed_at=snapshot.refreshed_at,
        row_count=snapshot.row_count,
        rows=snapshot.rows,
    )


@router.post("/{name}/refresh", response_model=RefreshResult)
async def refresh_aggregate(
    name: str,
    coalesce: bool = Query(True, description="Join a running refresh instead of failing with 409"),
    timeout: Optional[float] = Query(None, gt=0, description="Seconds to wait for the refresh"),
    cache: AggregateCache = Depends(get_cache),
) -> RefreshResult:
    """Recompute the aggregate and swap in the new snapshot."""
    return await cache.refresh(name, coalesce=coalesce, timeout=timeout)


@router.delete("/{name}", response_model=InvalidateResponse)
async def invalidate_aggregate(name: str, cache: AggregateCache = Depends(get_cache)) -> InvalidateResponse:
    """Drop the snapshot; reads return 404 until the next refresh."""
    removed = await cache.invalidate(name)
    return InvalidateResponse(name=name, removed=removed)
