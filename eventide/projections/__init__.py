from .manager import ProjectionManager
from .projection import Projection
from .quarantine import InMemoryQuarantineStore, QuarantinedEvent, QuarantineStore
from .state import (
    InMemoryProjectionStateStore,
    ProjectionState,
    ProjectionStateStore,
    ProjectionStatus,
)
from .worker import ProjectionWorker

__all__ = [
    "InMemoryProjectionStateStore",
    "InMemoryQuarantineStore",
    "Projection",
    "ProjectionManager",
    "ProjectionState",
    "ProjectionStateStore",
    "ProjectionStatus",
    "ProjectionWorker",
    "QuarantineStore",
    "QuarantinedEvent",
]
