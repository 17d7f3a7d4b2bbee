import asyncio
import logging
from uuid import UUID

from ..context import ExecutionContext, reset_context, set_context
from ..domain import DomainEvent
from ..domain.exceptions import ProjectionHandlerFailure, UpcastFailure
from ..events import EventBus
from ..retry import RetryPolicy
from .projection import Projection
from .quarantine import QuarantinedEvent, QuarantineStore
from .state import ProjectionState, ProjectionStateStore, ProjectionStatus

LOGGER = logging.getLogger(__name__)


class ProjectionWorker:
    """Runtime execution engine for one projection.

    ProjectionWorker drives a projection through the event log by:
    1. Loading the projection's stored position
    2. Reading the log after that position in batches
    3. Routing each event to the projection, retrying failing handlers
       with bounded exponential backoff
    4. Persisting the position after each batch
    5. Tailing the log once it reached the end (LIVE)

    The position is committed after the events were applied, so after a
    crash the last batch may be delivered again; the projection's
    per-stream watermarks make that harmless.

    **Quarantine:**
    When a handler still fails after the last retry, or an event cannot be
    upcast to a handled schema, the event is quarantined and the worker
    stalls just before it. Later events are never applied past a
    quarantined one, so per-stream order is preserved. ``resume`` (with or
    without skipping the event) is the way out.

    Attributes:
        projection: The read model being maintained.
        status: Current ProjectionStatus.
        position: Global position of the last consumed event.
    """

    __slots__ = (
        "projection",
        "event_bus",
        "state_store",
        "quarantine_store",
        "retry_policy",
        "batch_size",
        "poll_interval",
        "status",
        "position",
        "last_event_id",
        "_progress",
    )

    def __init__(
        self,
        projection: Projection,
        event_bus: EventBus,
        state_store: ProjectionStateStore,
        quarantine_store: QuarantineStore,
        retry_policy: RetryPolicy | None = None,
        batch_size: int = 100,
        poll_interval: float = 1.0,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.projection = projection
        self.event_bus = event_bus
        self.state_store = state_store
        self.quarantine_store = quarantine_store
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.status = ProjectionStatus.UNINITIALIZED
        self.position = 0
        self.last_event_id: UUID | None = None
        self._progress = asyncio.Condition()

    @property
    def name(self) -> str:
        return self.projection.name

    def _log_extra(self, **extra: object) -> dict[str, object]:
        return {"projection": self.name, "position": self.position, **extra}

    async def run(self) -> None:
        """Catch up, then tail the log until cancelled or stalled."""
        if not await self.prepare():
            return

        await self._set_status(ProjectionStatus.CATCHING_UP)
        LOGGER.info("Projection catching up", extra=self._log_extra())

        while True:
            if not await self._consume_available():
                return
            if self.status is ProjectionStatus.CATCHING_UP:
                await self._set_status(ProjectionStatus.LIVE)
                LOGGER.info("Projection live", extra=self._log_extra())
            await self.event_bus.wait_for_events(self.position, self.poll_interval)

    async def catch_up(self) -> int:
        """Consume up to the current tail once, without tailing.

        Returns:
            Number of events consumed.
        """
        if not await self.prepare():
            return 0
        start = self.position
        await self._set_status(ProjectionStatus.CATCHING_UP)
        if not await self._consume_available():
            return self.position - start
        await self._set_status(ProjectionStatus.STOPPED)
        return self.position - start

    async def prepare(self) -> bool:
        """Restore the stored position and status.

        An interrupted rebuild is restarted from scratch here.

        Returns:
            False if the projection is stalled on a quarantined event.
        """
        state = await self.state_store.load(self.name)
        if state is None:
            self.status = ProjectionStatus.UNINITIALIZED
            self.position = 0
            self.last_event_id = None
        else:
            self.status = state.status
            self.position = state.last_consumed_position
            self.last_event_id = state.last_consumed_event_id

        if self.status is ProjectionStatus.REBUILDING:
            LOGGER.info("Restarting interrupted rebuild", extra=self._log_extra())
            if not await self.rebuild():
                return False

        if await self.quarantine_store.get(self.name) is not None:
            self.status = ProjectionStatus.STALLED
            return False
        return True

    async def rebuild(self) -> bool:
        """Reset the read model and replay the whole log into it.

        The state row is overwritten with REBUILDING at position 0 instead
        of being deleted, and keeps that status until the replay reached the
        tail. Cancelling a rebuild therefore leaves a state that the next run
        recognises and restarts from scratch, never resuming from a partial
        read model.

        Returns:
            False if the replay stalled on a quarantined event.
        """
        self.position = 0
        self.last_event_id = None
        await self._set_status(ProjectionStatus.REBUILDING)
        await self.projection.reset()
        await self.quarantine_store.remove(self.name)
        LOGGER.info("Rebuilding projection", extra=self._log_extra())

        if not await self._consume_available():
            return False

        await self._set_status(ProjectionStatus.STOPPED)
        LOGGER.info("Rebuilt projection", extra=self._log_extra())
        return True

    async def resume(self, skip: bool = False) -> QuarantinedEvent | None:
        """Release the quarantined event, if any.

        Args:
            skip: When True the quarantined event is treated as consumed and
                never applied. Otherwise it is retried on the next run.

        Returns:
            The released entry.
        """
        entry = await self.quarantine_store.get(self.name)
        if entry is None:
            return None

        state = await self.state_store.load(self.name)
        if state is not None:
            self.position = state.last_consumed_position
            self.last_event_id = state.last_consumed_event_id

        if skip:
            LOGGER.warning(
                "Skipping quarantined event",
                extra=self._log_extra(event_id=str(entry.event.event_id)),
            )
            self.position = entry.event.position
            self.last_event_id = entry.event.event_id

        await self._set_status(ProjectionStatus.STOPPED)
        await self.quarantine_store.remove(self.name)
        return entry

    async def mark_stopped(self) -> None:
        if self.status in (
            ProjectionStatus.UNINITIALIZED,
            ProjectionStatus.CATCHING_UP,
            ProjectionStatus.LIVE,
        ):
            await self._set_status(ProjectionStatus.STOPPED)

    async def wait_until(self, position: int) -> None:
        """Wait until the worker consumed ``position`` or stalled."""
        async with self._progress:
            await self._progress.wait_for(
                lambda: self.position >= position or self.status is ProjectionStatus.STALLED
            )

    async def _consume_available(self) -> bool:
        """Consume batches until the tail. Returns False if the worker stalled."""
        while True:
            page = await self.event_bus.store.read_page(self.position, self.batch_size)
            if not await self._consume_batch(page):
                return False
            if len(page) < self.batch_size:
                return True

    async def _consume_batch(self, events: list[DomainEvent]) -> bool:
        consumed: DomainEvent | None = None
        for event in events:
            try:
                await self._apply_with_retries(event)
            except ProjectionHandlerFailure as failure:
                await self._commit(consumed)
                await self._quarantine(failure)
                return False
            consumed = event
        await self._commit(consumed)
        return True

    async def _apply_with_retries(self, event: DomainEvent) -> None:
        upcasters = self.event_bus.upcasters
        # Unsubscribed events are never upcast, so a broken one cannot stall us
        event_type, _ = upcasters.latest_version(event.event_type, event.schema_version)
        if not self.projection.handles_type(event_type):
            return

        max_attempts = self.retry_policy.max_attempts
        attempt = 0

        while True:
            attempt += 1
            # Handlers see the context of the event they are processing
            token = set_context(
                ExecutionContext(
                    correlation_id=event.correlation_id,
                    causation_id=event.event_id,
                    actor=event.actor,
                )
            )
            try:
                await self.projection.apply(upcasters.upcast(event))
                return
            except UpcastFailure as err:
                # Deterministic, retrying cannot help
                raise ProjectionHandlerFailure(self.name, event, attempt, err) from err
            except Exception as err:
                LOGGER.warning(
                    "Projection handler failed",
                    exc_info=True,
                    extra=self._log_extra(
                        event_id=str(event.event_id),
                        event_position=event.position,
                        attempt=attempt,
                        max_attempts=max_attempts,
                    ),
                )
                if attempt >= max_attempts:
                    raise ProjectionHandlerFailure(self.name, event, attempt, err) from err
            finally:
                reset_context(token)

            await self.retry_policy.sleep(attempt)

    async def _commit(self, event: DomainEvent | None) -> None:
        if event is None:
            return
        self.position = event.position
        self.last_event_id = event.event_id
        await self._save_state()
        async with self._progress:
            self._progress.notify_all()

    async def _quarantine(self, failure: ProjectionHandlerFailure) -> None:
        entry = QuarantinedEvent(
            projection_name=self.name,
            event=failure.event,
            error=repr(failure.__cause__),
            attempts=failure.attempts,
        )
        await self.quarantine_store.put(entry)
        await self._set_status(ProjectionStatus.STALLED)
        LOGGER.error(
            "Quarantined event, projection stalled",
            extra=self._log_extra(
                event_id=str(failure.event.event_id),
                event_position=failure.event.position,
                attempts=failure.attempts,
                error=entry.error,
            ),
        )
        async with self._progress:
            self._progress.notify_all()

    async def _set_status(self, status: ProjectionStatus) -> None:
        self.status = status
        await self._save_state()

    async def _save_state(self) -> None:
        await self.state_store.save(
            ProjectionState(
                projection_name=self.name,
                last_consumed_event_id=self.last_event_id,
                last_consumed_position=self.position,
                status=self.status,
            )
        )
