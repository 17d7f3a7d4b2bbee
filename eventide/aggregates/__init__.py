from .repository import AggregateRepository, CommandOutcome
from .snapshot import (
    InMemorySnapshotStore,
    NeverSnapshot,
    NullSnapshotStore,
    Snapshot,
    SnapshotAfterTime,
    SnapshotEveryN,
    SnapshotStore,
    SnapshotStrategy,
)

__all__ = [
    "AggregateRepository",
    "CommandOutcome",
    "InMemorySnapshotStore",
    "NeverSnapshot",
    "NullSnapshotStore",
    "Snapshot",
    "SnapshotAfterTime",
    "SnapshotEveryN",
    "SnapshotStore",
    "SnapshotStrategy",
]
