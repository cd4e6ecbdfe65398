"""
API Routes Module
"""
from .health import router as health_router
from .analytics import router as analytics_router
from .aggregates import router as aggregates_router

__all__ = [
    "health_router",
    "analytics_router",
    "aggregates_router",
]
