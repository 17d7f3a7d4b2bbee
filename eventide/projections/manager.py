import asyncio
import logging
from contextlib import suppress

from ..domain.exceptions import UnknownProjection
from ..events import EventBus
from ..retry import RetryPolicy
from .projection import Projection
from .quarantine import InMemoryQuarantineStore, QuarantinedEvent, QuarantineStore
from .state import (
    InMemoryProjectionStateStore,
    ProjectionState,
    ProjectionStateStore,
    ProjectionStatus,
)
from .worker import ProjectionWorker

LOGGER = logging.getLogger(__name__)


class ProjectionManager:
    """Runs any number of independent projections over one event log.

    Each started projection gets its own asyncio task running a
    ProjectionWorker. Workers share nothing but the read-only event log, so
    a projection that stalls or crashes never holds up another one, and
    none of them is on the write path.

    Administrative operations:
    - ``rebuild(name)``: replay a projection from an empty read model
    - ``quarantined(name)`` / ``resume(name, skip=...)``: inspect and
      release a stalled projection

    Example:
        >>> manager = ProjectionManager(event_bus)
        >>> manager.register(AccountBalances())
        >>> await manager.start()
        >>> await manager.catch_up("AccountBalances")
        >>> await manager.rebuild("AccountBalances")
    """

    def __init__(
        self,
        event_bus: EventBus,
        state_store: ProjectionStateStore | None = None,
        quarantine_store: QuarantineStore | None = None,
        retry_policy: RetryPolicy | None = None,
        batch_size: int = 100,
        poll_interval: float = 1.0,
    ):
        self.event_bus = event_bus
        self.state_store = state_store or InMemoryProjectionStateStore()
        self.quarantine_store = quarantine_store or InMemoryQuarantineStore()
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self._workers: dict[str, ProjectionWorker] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._started: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}

    def register(self, projection: Projection) -> ProjectionWorker:
        """Add a projection. It is not started until start() is called.

        Raises:
            ValueError: If a projection with the same name is registered.
        """
        if projection.name in self._workers:
            raise ValueError(f"A projection named {projection.name!r} is already registered")
        worker = ProjectionWorker(
            projection,
            self.event_bus,
            self.state_store,
            self.quarantine_store,
            retry_policy=self.retry_policy,
            batch_size=self.batch_size,
            poll_interval=self.poll_interval,
        )
        self._workers[projection.name] = worker
        self._locks[projection.name] = asyncio.Lock()
        return worker

    async def unregister(self, name: str, *, forget: bool = False) -> None:
        """Stop and remove a projection.

        Args:
            forget: Also delete its stored position and quarantine entry.
        """
        await self.stop(name)
        self._workers.pop(name)
        self._locks.pop(name)
        if forget:
            await self.state_store.delete(name)
            await self.quarantine_store.remove(name)

    @property
    def names(self) -> list[str]:
        return list(self._workers)

    def projection(self, name: str) -> Projection:
        return self._worker(name).projection

    def status(self, name: str) -> ProjectionStatus:
        return self._worker(name).status

    async def state(self, name: str) -> ProjectionState | None:
        self._worker(name)
        return await self.state_store.load(name)

    async def start(self, name: str | None = None) -> None:
        """Start one projection, or all registered ones."""
        for projection_name in self._select(name):
            self._started.add(projection_name)
            self._spawn(projection_name)

    async def stop(self, name: str | None = None) -> None:
        """Stop one projection, or all of them, keeping their positions."""
        for projection_name in self._select(name):
            self._started.discard(projection_name)
            await self._cancel(projection_name)
            await self._workers[projection_name].mark_stopped()

    async def catch_up(self, name: str | None = None) -> None:
        """Consume up to the current tail and return.

        For a running projection this waits until its worker got there (or
        stalled). A projection that is not running is driven directly.
        """
        tail = await self.event_bus.tail_position()
        for projection_name in self._select(name):
            worker = self._workers[projection_name]
            task = self._tasks.get(projection_name)
            if task is not None and not task.done():
                waiter = asyncio.ensure_future(worker.wait_until(tail))
                # Stop waiting if the worker dies before getting there
                await asyncio.wait({waiter, task}, return_when=asyncio.FIRST_COMPLETED)
                if not waiter.done():
                    waiter.cancel()
            else:
                async with self._locks[projection_name]:
                    await worker.catch_up()

    async def rebuild(self, name: str) -> None:
        """Rebuild a projection from an empty read model.

        The projection is paused, reset and replayed from the start of the
        log, then resumed if it was running. Calling rebuild again after a
        failed or cancelled rebuild starts over from scratch.
        """
        worker = self._worker(name)
        async with self._locks[name]:
            await self._cancel(name)
            rebuilt = await worker.rebuild()
        if rebuilt and name in self._started:
            self._spawn(name)

    async def quarantined(self, name: str | None = None) -> list[QuarantinedEvent]:
        """Quarantined events, of one projection or of all of them."""
        if name is None:
            return await self.quarantine_store.list()
        self._worker(name)
        entry = await self.quarantine_store.get(name)
        return [entry] if entry is not None else []

    async def resume(self, name: str, *, skip: bool = False) -> QuarantinedEvent | None:
        """Release a stalled projection.

        Args:
            skip: Treat the quarantined event as consumed instead of
                retrying it.

        Returns:
            The released quarantine entry, None if there was none.
        """
        worker = self._worker(name)
        async with self._locks[name]:
            await self._cancel(name)
            entry = await worker.resume(skip=skip)
        if name in self._started:
            self._spawn(name)
        return entry

    async def __aenter__(self) -> "ProjectionManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def _worker(self, name: str) -> ProjectionWorker:
        try:
            return self._workers[name]
        except KeyError:
            raise UnknownProjection(name) from None

    def _select(self, name: str | None) -> list[str]:
        if name is None:
            return list(self._workers)
        self._worker(name)
        return [name]

    def _is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def _spawn(self, name: str) -> None:
        if self._is_running(name):
            return
        task = asyncio.create_task(self._workers[name].run(), name=f"projection:{name}")
        task.add_done_callback(self._on_task_done)
        self._tasks[name] = task

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        if (error := task.exception()) is not None:
            LOGGER.error(
                "Projection worker crashed",
                exc_info=error,
                extra={"projection": task.get_name().removeprefix("projection:")},
            )

    async def _cancel(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
