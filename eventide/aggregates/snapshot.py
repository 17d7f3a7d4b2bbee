from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from ..domain.event import utc_now

if TYPE_CHECKING:
    from ..domain import Aggregate


class Snapshot(BaseModel):
    """Serialized aggregate state at a known stream version.

    A snapshot at version V is only a replay base for the same stream's
    events with ``stream_version > V``. It is advisory: deleting it at any
    time only makes the next load slower.

    Attributes:
        stream_id: Stream the state was folded from.
        stream_type: Kind of aggregate that produced the state.
        version: stream_version of the last event folded into ``state``.
        state: The aggregate's serialized fields.
        occurred_at: occurred_at of the event at ``version``.
        taken_at: When the snapshot was captured.
    """

    model_config = ConfigDict(frozen=True)

    stream_id: str
    stream_type: str
    version: int = Field(ge=1)
    state: dict[str, Any]
    occurred_at: datetime
    taken_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def of(cls, aggregate: "Aggregate") -> "Snapshot":
        if aggregate.version < 1 or aggregate.last_event_time is None:
            raise ValueError(f"Cannot snapshot {aggregate.stream_id!r} before its first event")
        return cls(
            stream_id=aggregate.stream_id,
            stream_type=aggregate.stream_type,
            version=aggregate.version,
            state=aggregate.snapshot_state(),
            occurred_at=aggregate.last_event_time,
        )


class SnapshotStrategy(ABC):
    """Decides when the write path captures a snapshot.

    Cadence is a tunable with no effect on correctness.
    """

    @staticmethod
    def never() -> "SnapshotStrategy":
        return NeverSnapshot()

    @staticmethod
    def from_interval(interval: int) -> "SnapshotStrategy":
        """SnapshotEveryN for a positive interval, NeverSnapshot for 0."""
        return SnapshotEveryN(interval) if interval > 0 else NeverSnapshot()

    @abstractmethod
    def should_snapshot(self, aggregate: "Aggregate", previous_version: int) -> bool:
        """Called after an append moved ``aggregate`` from ``previous_version``."""
        ...


class NeverSnapshot(SnapshotStrategy):
    def should_snapshot(self, aggregate: "Aggregate", previous_version: int) -> bool:
        return False


class SnapshotEveryN(SnapshotStrategy):
    """Snapshot when an append brings the head to or past a multiple of N.

    A batch that jumps from 98 to 103 with N=100 still triggers, so batched
    appends never skip a boundary.
    """

    def __init__(self, version_increment: int):
        if version_increment < 1:
            raise ValueError("version_increment must be at least 1")
        self.version_increment = version_increment

    def should_snapshot(self, aggregate: "Aggregate", previous_version: int) -> bool:
        return aggregate.version // self.version_increment > previous_version // self.version_increment


class SnapshotAfterTime(SnapshotStrategy):
    """Snapshot once events have moved ``time_increment`` past the last snapshot.

    Measured on event time, not wall-clock time. A stream that has never
    been snapshotted gets one on its first append.
    """

    def __init__(self, time_increment: timedelta):
        self.time_increment = time_increment

    def should_snapshot(self, aggregate: "Aggregate", previous_version: int) -> bool:
        if aggregate.last_event_time is None:
            return False
        if aggregate.last_snapshot_time is None:
            return True
        return aggregate.last_event_time >= aggregate.last_snapshot_time + self.time_increment


class SnapshotStore(ABC):
    """Keyed cache of aggregate state, one current snapshot per stream."""

    @staticmethod
    def null() -> "SnapshotStore":
        """A snapshot store that does not store any snapshots."""
        return NullSnapshotStore()

    @abstractmethod
    async def save(self, snapshot: Snapshot) -> None:
        """Upsert the stream's snapshot. The last write wins."""
        ...

    @abstractmethod
    async def load(self, stream_id: str) -> Snapshot | None: ...

    @abstractmethod
    async def delete(self, stream_id: str) -> None: ...


class NullSnapshotStore(SnapshotStore):
    async def save(self, snapshot: Snapshot) -> None:
        pass

    async def load(self, stream_id: str) -> Snapshot | None:
        return None

    async def delete(self, stream_id: str) -> None:
        pass


class InMemorySnapshotStore(SnapshotStore):
    """A snapshot store that keeps snapshots in a dict.

    This is not intended for production use. It is neither persistent nor
    shared between processes.
    """

    def __init__(self) -> None:
        self.snapshots: dict[str, Snapshot] = {}

    async def save(self, snapshot: Snapshot) -> None:
        self.snapshots[snapshot.stream_id] = snapshot

    async def load(self, stream_id: str) -> Snapshot | None:
        return self.snapshots.get(stream_id)

    async def delete(self, stream_id: str) -> None:
        self.snapshots.pop(stream_id, None)
