"""Stored progress of each projection through the event log."""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from ..domain.event import utc_now


class ProjectionStatus(str, Enum):
    """Lifecycle of a projection.

    UNINITIALIZED → CATCHING_UP → LIVE is the normal path. A projection that
    quarantined an event is STALLED until resumed. REBUILDING is persisted
    for the whole duration of a rebuild, so a rebuild that was interrupted
    is detected and restarted from scratch.
    """

    UNINITIALIZED = "uninitialized"
    CATCHING_UP = "catching_up"
    LIVE = "live"
    STALLED = "stalled"
    REBUILDING = "rebuilding"
    STOPPED = "stopped"


class ProjectionState(BaseModel):
    """Per-projection bookkeeping.

    Attributes:
        projection_name: Name of the projection.
        last_consumed_event_id: event_id of the last consumed event.
        last_consumed_position: Global position of the last consumed event.
            Consumption resumes after it.
        status: Status at the time the state was saved.
        updated_at: When the state was saved.
    """

    projection_name: str
    last_consumed_event_id: UUID | None = None
    last_consumed_position: int = Field(default=0, ge=0)
    status: ProjectionStatus = ProjectionStatus.UNINITIALIZED
    updated_at: datetime = Field(default_factory=utc_now)


class ProjectionStateStore(ABC):
    """Abstract interface for persisting projection positions.

    Implementations should handle:
    - Atomic updates (a save replaces the previous state entirely)
    - Persistence (states survive process restarts)
    """

    @abstractmethod
    async def load(self, projection_name: str) -> ProjectionState | None:
        """Load the state of a projection, None if it never ran."""
        ...

    @abstractmethod
    async def save(self, state: ProjectionState) -> None: ...

    @abstractmethod
    async def delete(self, projection_name: str) -> None: ...


class InMemoryProjectionStateStore(ProjectionStateStore):
    """In-memory projection state storage for testing.

    Not suitable for production use as positions are lost on restart.
    """

    def __init__(self) -> None:
        self.states: dict[str, ProjectionState] = {}

    async def load(self, projection_name: str) -> ProjectionState | None:
        return self.states.get(projection_name)

    async def save(self, state: ProjectionState) -> None:
        self.states[state.projection_name] = state

    async def delete(self, projection_name: str) -> None:
        self.states.pop(projection_name, None)
