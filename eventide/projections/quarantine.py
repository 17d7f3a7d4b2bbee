"""Holding area for events a projection could not handle."""

from abc import ABC, abstractmethod
from datetime import datetime

from pydantic import BaseModel, Field

from ..domain import DomainEvent
from ..domain.event import utc_now


class QuarantinedEvent(BaseModel):
    """An event a projection gave up on after exhausting its retries.

    The projection stalls on it: nothing after ``event.position`` is
    consumed until the entry is resumed (retried) or skipped.
    """

    projection_name: str
    event: DomainEvent
    error: str
    attempts: int = Field(ge=1)
    quarantined_at: datetime = Field(default_factory=utc_now)


class QuarantineStore(ABC):
    """Stores at most one quarantined event per projection."""

    @abstractmethod
    async def put(self, entry: QuarantinedEvent) -> None: ...

    @abstractmethod
    async def get(self, projection_name: str) -> QuarantinedEvent | None: ...

    @abstractmethod
    async def list(self) -> list[QuarantinedEvent]: ...

    @abstractmethod
    async def remove(self, projection_name: str) -> None: ...


class InMemoryQuarantineStore(QuarantineStore):
    def __init__(self) -> None:
        self.entries: dict[str, QuarantinedEvent] = {}

    async def put(self, entry: QuarantinedEvent) -> None:
        self.entries[entry.projection_name] = entry

    async def get(self, projection_name: str) -> QuarantinedEvent | None:
        return self.entries.get(projection_name)

    async def list(self) -> list[QuarantinedEvent]:
        return sorted(self.entries.values(), key=lambda entry: entry.quarantined_at)

    async def remove(self, projection_name: str) -> None:
        self.entries.pop(projection_name, None)
