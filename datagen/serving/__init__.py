"""
Serving layer: analytics read path and the HTTP API.
"""

from datagen.serving.analytics import AggregateAnswer, AnalyticsService

__all__ = ["AggregateAnswer", "AnalyticsService"]
