"""MongoDB integration for eventide.

This module provides MongoDB implementations of the EventStore,
SnapshotStore, ProjectionStateStore and QuarantineStore interfaces using
the async PyMongo driver.

Usage:
    >>> from eventide.integrations.mongodb import (
    ...     MongoConfiguration,
    ...     MongoEventStore,
    ...     MongoSnapshotStore,
    ... )
    >>>
    >>> config = MongoConfiguration(uri="mongodb://localhost:27017", database="myapp")
    >>> event_store = MongoEventStore(config)
    >>> await event_store.on_startup()
    >>> snapshot_store = MongoSnapshotStore(config)
"""

from .collection import IndexDirection, IndexedCollection, IndexSpec
from .config import MongoConfiguration
from .event_store import MongoEventStore
from .projection_store import MongoProjectionStateStore, MongoQuarantineStore
from .snapshot_store import MongoSnapshotStore

__all__ = [
    "IndexDirection",
    "IndexSpec",
    "IndexedCollection",
    "MongoConfiguration",
    "MongoEventStore",
    "MongoProjectionStateStore",
    "MongoQuarantineStore",
    "MongoSnapshotStore",
]
