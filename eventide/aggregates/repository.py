import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from pydantic import ValidationError

from ..context import ExecutionContext, get_context, reset_context, set_context
from ..domain import Aggregate, Command, DomainEvent, PendingEvent
from ..domain.exceptions import (
    ConcurrencyConflict,
    RetriesExhausted,
    StreamNotFound,
    StreamTypeMismatch,
)
from ..events import EventBus
from ..retry import RetryPolicy
from .snapshot import Snapshot, SnapshotStore, SnapshotStrategy

LOGGER = logging.getLogger(__name__)

A = TypeVar("A", bound=Aggregate)


@dataclass(frozen=True)
class CommandOutcome:
    """Result of a successfully handled command.

    Attributes:
        stream_id: The stream the command targeted.
        version: Head version of the stream after the command.
        events: The events appended by the command, as recorded.
        attempts: Load-execute-append attempts it took.
    """

    stream_id: str
    version: int
    events: list[DomainEvent] = field(default_factory=list)
    attempts: int = 1


class AggregateRepository(Generic[A]):
    """Loads aggregates from their streams and appends what they emit.

    The repository is the write path of the system. A business operation
    goes through four steps:

    1. **Load**: Restore the aggregate from its snapshot (if any) and fold
       the remaining events, upcast to their current schema
    2. **Execute**: Run the command against a copy of the aggregate; the
       result is the list of new events, or a DomainRuleViolation
    3. **Append**: Append the new events with the loaded version as the
       expected version, then fold them in
    4. **Snapshot**: If the snapshot strategy says so, capture the state in
       the background

    ``handle()`` wraps these steps in the optimistic-concurrency retry loop,
    ``acquire()`` offers the same cycle as a unit of work.
    """

    # The repository itself decides very little about how aggregates are
    # stored. It mediates between the event bus, the snapshot store and the
    # policies that say when to snapshot and how often to retry.

    __slots__ = (
        "aggregate_type",
        "event_bus",
        "snapshot_store",
        "snapshot_strategy",
        "retry_policy",
        "_pending_snapshots",
    )

    def __init__(
        self,
        aggregate_type: type[A],
        event_bus: EventBus,
        snapshot_store: SnapshotStore | None = None,
        snapshot_strategy: SnapshotStrategy | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.aggregate_type = aggregate_type
        self.event_bus = event_bus
        self.snapshot_store = snapshot_store or SnapshotStore.null()
        self.snapshot_strategy = snapshot_strategy or SnapshotStrategy.never()
        self.retry_policy = retry_policy or RetryPolicy()
        self._pending_snapshots: set[asyncio.Task[None]] = set()

    @property
    def stream_type(self) -> str:
        return self.aggregate_type.stream_type

    def create(self, stream_id: str) -> A:
        """Return the zero state of a new stream. Nothing is written."""
        return self.aggregate_type(stream_id=stream_id)

    async def load(self, stream_id: str) -> A:
        """Reconstruct the current state of a stream.

        Raises:
            StreamNotFound: If the stream has no events.
            StreamTypeMismatch: If the stream belongs to another aggregate type.
            UpcastFailure: If an event cannot be brought to a known schema.
        """
        aggregate = await self.restore_snapshot(stream_id)
        if aggregate is None:
            aggregate = self.create(stream_id)

        async for event in self.event_bus.read(stream_id, aggregate.version):
            if event.stream_type != self.stream_type:
                raise StreamTypeMismatch(stream_id, self.stream_type, event.stream_type)
            aggregate.apply_event(event)

        if aggregate.version == 0:
            raise StreamNotFound(stream_id)

        LOGGER.debug(
            "Loaded aggregate",
            extra={"stream_id": stream_id, "version": aggregate.version},
        )
        return aggregate

    async def load_or_create(self, stream_id: str) -> A:
        try:
            return await self.load(stream_id)
        except StreamNotFound:
            return self.create(stream_id)

    def execute(self, aggregate: A, command: Command) -> list[PendingEvent]:
        """Run a command and return the events it produced.

        The command runs against a deep copy, so ``aggregate`` is left
        exactly as it was whether the command succeeds or not.

        Raises:
            DomainRuleViolation: If the aggregate rejects the command.
        """
        working = aggregate.model_copy(deep=True)
        working.clear_uncommitted_events()
        working.handle(command)
        return working.get_uncommitted_events()

    async def append(self, aggregate: A, events: Sequence[PendingEvent]) -> int:
        """Append events produced by execute() and fold them into ``aggregate``.

        Returns:
            The stream's head version after the append.

        Raises:
            ConcurrencyConflict: If the stream moved past ``aggregate.version``.
        """
        previous_version = aggregate.version
        recorded = await self.event_bus.append(
            aggregate.stream_id, self.stream_type, previous_version, events
        )
        aggregate.replay(recorded)
        self._maybe_snapshot(aggregate, previous_version)
        return aggregate.version

    async def handle(self, command: Command, *, create: bool = False) -> CommandOutcome:
        """Run the full load-execute-append cycle with conflict retries.

        Args:
            command: The command to run. Its ``stream_id`` selects the stream.
            create: When True a missing stream starts from its zero state
                instead of raising StreamNotFound.

        Raises:
            ConcurrencyConflict: Immediately, if the command carries an
                ``expected_version`` the stream no longer has.
            RetriesExhausted: If every attempt lost the append race.
            DomainRuleViolation: If the aggregate rejects the command.
                Never retried.
        """
        ctx = get_context()
        if ctx.correlation_id is None:
            ctx = ExecutionContext.create(correlation_id=command.correlation_id, actor=ctx.actor)
        token = set_context(ctx.for_command(command.command_id))
        try:
            return await self._handle_with_retries(command, create)
        finally:
            reset_context(token)

    async def _handle_with_retries(self, command: Command, create: bool) -> CommandOutcome:
        stream_id = command.stream_id
        max_attempts = self.retry_policy.max_attempts
        attempt = 0

        while True:
            attempt += 1
            aggregate = await (self.load_or_create(stream_id) if create else self.load(stream_id))

            if command.expected_version is not None and aggregate.version != command.expected_version:
                raise ConcurrencyConflict(stream_id, command.expected_version, aggregate.version)

            events = self.execute(aggregate, command)
            if not events:
                return CommandOutcome(stream_id, aggregate.version, [], attempt)

            previous_version = aggregate.version
            try:
                recorded = await self.event_bus.append(
                    stream_id, self.stream_type, previous_version, events
                )
            except ConcurrencyConflict as conflict:
                if command.expected_version is not None:
                    raise
                if attempt >= max_attempts:
                    raise RetriesExhausted(stream_id, attempt, conflict) from conflict
                LOGGER.warning(
                    "Concurrency conflict, retrying command",
                    extra={
                        "stream_id": stream_id,
                        "command_type": type(command).__name__,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "actual_version": conflict.actual_version,
                    },
                )
                await self.retry_policy.sleep(attempt)
                continue

            aggregate.replay(recorded)
            self._maybe_snapshot(aggregate, previous_version)
            return CommandOutcome(stream_id, aggregate.version, recorded, attempt)

    @asynccontextmanager
    async def acquire(self, stream_id: str, *, create: bool = True) -> AsyncIterator[A]:
        """Unit of work over one aggregate.

        Commands handled on the yielded aggregate mutate it in place. On a
        clean exit the uncommitted events are appended with the loaded
        version as the expected version; on an exception they are dropped.
        Conflicts are not retried here; use handle() for that.

        Example:
            >>> async with repository.acquire("account-1") as account:
            ...     account.handle(Deposit(stream_id="account-1", amount=10))
        """
        aggregate = await (self.load_or_create(stream_id) if create else self.load(stream_id))
        original_version = aggregate.version

        try:
            yield aggregate
        except Exception:
            aggregate.clear_uncommitted_events()
            raise

        if aggregate.changed_since(original_version):
            await self.event_bus.append(
                stream_id, self.stream_type, original_version, aggregate.get_uncommitted_events()
            )
            aggregate.clear_uncommitted_events()
            self._maybe_snapshot(aggregate, original_version)

    async def drain(self) -> None:
        """Wait for background snapshot captures to finish."""
        while self._pending_snapshots:
            await asyncio.gather(*list(self._pending_snapshots))

    async def restore_snapshot(
        self,
        stream_id: str,
        eligible: Callable[[Snapshot], bool] | None = None,
    ) -> A | None:
        """Restore the aggregate from its snapshot, if there is a usable one.

        Snapshots are advisory: a snapshot that cannot be loaded or no longer
        matches the aggregate is logged and ignored, which means a full replay.

        Args:
            eligible: Optional filter; a snapshot it rejects is not used.
        """
        try:
            snapshot = await self.snapshot_store.load(stream_id)
        except Exception:
            LOGGER.warning("Failed to load snapshot", exc_info=True, extra={"stream_id": stream_id})
            return None

        if snapshot is None or (eligible is not None and not eligible(snapshot)):
            return None
        if snapshot.stream_type != self.stream_type:
            LOGGER.warning(
                "Ignoring snapshot of another stream type",
                extra={"stream_id": stream_id, "stream_type": snapshot.stream_type},
            )
            return None

        try:
            aggregate = self.aggregate_type.from_snapshot_state(snapshot.state)
        except ValidationError:
            LOGGER.warning(
                "Ignoring snapshot that no longer matches the aggregate",
                exc_info=True,
                extra={"stream_id": stream_id, "version": snapshot.version},
            )
            return None

        if aggregate.stream_id != stream_id or aggregate.version != snapshot.version:
            LOGGER.warning(
                "Ignoring inconsistent snapshot",
                extra={"stream_id": stream_id, "version": snapshot.version},
            )
            return None

        aggregate.last_snapshot_time = snapshot.occurred_at
        return aggregate  # type: ignore[return-value]

    def _maybe_snapshot(self, aggregate: A, previous_version: int) -> None:
        if not self.snapshot_strategy.should_snapshot(aggregate, previous_version):
            return
        try:
            # Serialized now, so later changes to the aggregate are not captured
            snapshot = Snapshot.of(aggregate)
        except Exception:
            LOGGER.warning(
                "Failed to serialize snapshot",
                exc_info=True,
                extra={"stream_id": aggregate.stream_id, "version": aggregate.version},
            )
            return
        aggregate.mark_snapshot()
        task = asyncio.create_task(self._save_snapshot(snapshot))
        self._pending_snapshots.add(task)
        task.add_done_callback(self._pending_snapshots.discard)

    async def _save_snapshot(self, snapshot: Snapshot) -> None:
        try:
            await self.snapshot_store.save(snapshot)
        except Exception:
            LOGGER.warning(
                "Failed to save snapshot",
                exc_info=True,
                extra={"stream_id": snapshot.stream_id, "version": snapshot.version},
            )
            return
        LOGGER.debug(
            "Captured snapshot",
            extra={"stream_id": snapshot.stream_id, "version": snapshot.version},
        )
