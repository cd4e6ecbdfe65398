"""
Derived aggregate cache: definitions, snapshot stores, and the refresh manager.
"""

from datagen.cache.aggregates import (
    CATEGORY_REVENUE,
    TOP_SPENDERS,
    AggregateDefinition,
    default_definitions,
)
from datagen.cache.manager import AggregateCache, RefreshResult
from datagen.cache.stores import (
    MaterializedViewStore,
    Snapshot,
    SnapshotInfo,
    SnapshotStore,
    TableSnapshotStore,
    create_store,
)

__all__ = [
    "CATEGORY_REVENUE",
    "TOP_SPENDERS",
    "AggregateDefinition",
    "default_definitions",
    "AggregateCache",
    "RefreshResult",
    "MaterializedViewStore",
    "Snapshot",
    "SnapshotInfo",
    "SnapshotStore",
    "TableSnapshotStore",
    "create_store",
]
