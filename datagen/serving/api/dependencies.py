"""
Request dependencies resolving the services stored on ``app.state``.
"""

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from datagen.cache import AggregateCache
from datagen.serving.analytics import AnalyticsService


def get_engine_dependency(request: Request) -> AsyncEngine:
    return request.app.state.engine


def get_cache(request: Request) -> AggregateCache:
    return request.app.state.cache


def get_analytics(request: Request) -> AnalyticsService:
    return request.app.state.analytics
