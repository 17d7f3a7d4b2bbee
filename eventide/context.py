import contextvars
from dataclasses import dataclass, replace
from uuid import UUID, uuid4


@dataclass(frozen=True)
class ExecutionContext:
    """Immutable context for tracking who and what caused a change.

    ExecutionContext captures the causal relationship between commands and
    the events they produce, plus the actor on whose behalf the work runs.
    Aggregates stamp these values onto every event they emit.

    Attributes:
        correlation_id: Unique ID that traces an entire logical operation.
            Remains constant throughout the flow.
        causation_id: ID of what directly caused this operation. For events
            this is the command_id; for work triggered by an event it is the
            event_id.
        command_id: Unique identifier for the command currently executing.
        actor: Who or what is performing the operation (user, service, job).

    Examples:
        Create a new context at a system entry point:

        >>> ctx = ExecutionContext.create(actor="alice")
        >>> set_context(ctx)

        Create a child context for a command:

        >>> cmd_ctx = ctx.for_command(command.command_id)
    """

    correlation_id: UUID | None = None
    causation_id: UUID | None = None
    command_id: UUID | None = None
    actor: str | None = None

    @classmethod
    def create(
        cls,
        correlation_id: UUID | None = None,
        actor: str | None = None,
    ) -> "ExecutionContext":
        """Create a new context, typically at a system entry point.

        Args:
            correlation_id: Optional correlation ID. A new one is generated
                if omitted. At entry points the causation_id is set to the
                correlation_id (self-referencing).
            actor: Optional actor performing the operation.

        Returns:
            A new ExecutionContext instance.
        """
        if correlation_id is None:
            correlation_id = uuid4()

        return cls(
            correlation_id=correlation_id,
            causation_id=correlation_id,
            command_id=None,
            actor=actor,
        )

    def for_command(self, command_id: UUID) -> "ExecutionContext":
        """Create a child context for executing a command.

        Args:
            command_id: The ID of the command being executed.

        Returns:
            A new ExecutionContext with command_id set.
        """
        return replace(self, command_id=command_id)

    def for_event(self, event_id: UUID) -> "ExecutionContext":
        """Create a child context for processing an event.

        The correlation_id and actor are inherited, the causation_id becomes
        the event_id and the command_id is cleared.

        Args:
            event_id: The ID of the event being processed.

        Returns:
            A new ExecutionContext with causation_id set to event_id.
        """
        return replace(self, causation_id=event_id, command_id=None)

    def with_actor(self, actor: str | None) -> "ExecutionContext":
        return replace(self, actor=actor)


_context: contextvars.ContextVar[ExecutionContext | None] = contextvars.ContextVar(
    "execution_context", default=None
)


def get_context() -> ExecutionContext:
    """Get the current execution context.

    If no context has been set, returns an empty ExecutionContext with all
    fields None.
    """
    ctx = _context.get()
    if ctx is None:
        return ExecutionContext()
    return ctx


def set_context(context: ExecutionContext) -> contextvars.Token[ExecutionContext | None]:
    """Set the current execution context.

    Args:
        context: The ExecutionContext to set.

    Returns:
        A token that can be passed to reset_context() to restore the
        previous context.
    """
    return _context.set(context)


def reset_context(token: contextvars.Token[ExecutionContext | None]) -> None:
    """Restore the context that was active before set_context()."""
    _context.reset(token)


def clear_context() -> None:
    """Clear the current execution context.

    This is useful for cleanup or testing.
    """
    _context.set(None)


def get_or_create_context() -> ExecutionContext:
    """Get the current context, or create and set a new one if not set."""
    ctx = _context.get()
    if ctx is None:
        ctx = ExecutionContext.create()
        set_context(ctx)
    return ctx
