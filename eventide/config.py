"""Runtime settings for the event-sourcing core, using pydantic-settings."""

from pydantic import Field
from pydantic_settings import BaseSettings

from .retry import RetryPolicy


class EventideSettings(BaseSettings):
    """Tunable policies for the write path and the projection workers.

    All settings can be configured via environment variables with the
    EVENTIDE_ prefix. For example:
    - EVENTIDE_SNAPSHOT_INTERVAL=100
    - EVENTIDE_COMMAND_MAX_ATTEMPTS=5
    - EVENTIDE_PROJECTION_BATCH_SIZE=500

    None of these settings affect correctness: snapshots are advisory and
    the retry bounds only decide when a failure is surfaced.

    Attributes:
        snapshot_interval: Capture a snapshot whenever an append crosses a
            multiple of this many stream versions. 0 disables snapshots.
        command_max_attempts: Load-execute-append attempts per command
            before a ConcurrencyConflict is surfaced as RetriesExhausted.
        command_initial_backoff: First delay (seconds) between attempts.
        command_max_backoff: Upper bound (seconds) on that delay.
        projection_max_attempts: Handler attempts per event before the
            event is quarantined.
        projection_initial_backoff: First delay (seconds) between attempts.
        projection_max_backoff: Upper bound (seconds) on that delay.
        projection_batch_size: Events read per batch; the projection offset
            is persisted after each batch.
        poll_interval: Seconds a live projection waits for new events
            before re-checking the store.

    Example:
        >>> settings = EventideSettings(snapshot_interval=50)
        >>> app = Application.in_memory(settings)
    """

    snapshot_interval: int = Field(default=100, ge=0)

    command_max_attempts: int = Field(default=3, ge=1)
    command_initial_backoff: float = Field(default=0.01, ge=0)
    command_max_backoff: float = Field(default=0.5, ge=0)

    projection_max_attempts: int = Field(default=5, ge=1)
    projection_initial_backoff: float = Field(default=0.05, ge=0)
    projection_max_backoff: float = Field(default=5.0, ge=0)
    projection_batch_size: int = Field(default=100, ge=1)

    poll_interval: float = Field(default=1.0, gt=0)

    model_config = {"env_prefix": "EVENTIDE_"}

    def command_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.command_max_attempts,
            initial_delay=self.command_initial_backoff,
            max_delay=self.command_max_backoff,
            jitter=True,
        )

    def projection_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.projection_max_attempts,
            initial_delay=self.projection_initial_backoff,
            max_delay=self.projection_max_backoff,
            jitter=False,
        )
