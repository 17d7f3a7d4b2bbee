"""Command base class for the write side.

Commands carry the arguments of a business operation to an aggregate.
Validation and authorization happen before a command reaches eventide.
"""

from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class Command(BaseModel):
    """Base class for all commands.

    Attributes:
        stream_id: Identity of the aggregate stream the command targets.
        expected_version: Optional head version the issuer observed. When
            set, the command is rejected with ConcurrencyConflict if the
            stream has moved on, instead of being retried against newer
            state.
        correlation_id: Optional correlation ID for tracing.
        command_id: Unique identifier for this command instance.

    Examples:
        >>> class DepositMoney(Command):
        ...     amount: Decimal
        >>>
        >>> DepositMoney(stream_id="account-1", amount=Decimal("10.00"))
    """

    stream_id: str
    expected_version: int | None = Field(default=None, ge=0)
    correlation_id: UUID | None = None
    command_id: UUID = Field(default_factory=uuid4)
