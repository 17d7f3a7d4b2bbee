"""MongoDB configuration using pydantic-settings."""

from functools import cached_property
from typing import Any

from pydantic_settings import BaseSettings
from pymongo.asynchronous.collection import AsyncCollection
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.asynchronous.mongo_client import AsyncMongoClient


class MongoConfiguration(BaseSettings):
    """Configuration and factory for MongoDB resources.

    All settings can be configured via environment variables with the
    EVENTIDE_MONGO_ prefix. For example:
    - EVENTIDE_MONGO_URI=mongodb://localhost:27017
    - EVENTIDE_MONGO_DATABASE=myapp
    - EVENTIDE_MONGO_COMMITS_COLLECTION=event_commits

    The configuration also acts as a factory, providing lazy-initialized
    properties for the MongoDB client, database, and collections. None of
    the collections need a replica set: every write the stores make is a
    single-document operation.

    Attributes:
        uri: MongoDB connection URI.
        database: Database name to use.
        commits_collection: Collection holding event commits (the event log).
        snapshots_collection: Collection for aggregate snapshots.
        projection_states_collection: Collection for projection positions.
        quarantine_collection: Collection for quarantined events.
        server_selection_timeout_ms: How long to wait for a server before
            an operation fails.

    Example:
        >>> config = MongoConfiguration()
        >>> store = MongoEventStore(config)
        >>> await config.on_startup()
        >>> ...
        >>> await config.on_shutdown()
    """

    # Connection settings
    uri: str = "mongodb://localhost:27017"
    database: str = "eventide"
    server_selection_timeout_ms: int = 30000

    # Collection names
    commits_collection: str = "event_commits"
    snapshots_collection: str = "snapshots"
    projection_states_collection: str = "projection_states"
    quarantine_collection: str = "projection_quarantine"

    model_config = {"env_prefix": "EVENTIDE_MONGO_"}

    @cached_property
    def client(self) -> AsyncMongoClient[dict[str, Any]]:
        """Get the MongoDB async client.

        The client is lazily created and cached for reuse. Datetimes are
        returned timezone-aware (UTC).
        """
        return AsyncMongoClient(
            self.uri,
            tz_aware=True,
            serverSelectionTimeoutMS=self.server_selection_timeout_ms,
        )

    @cached_property
    def db(self) -> AsyncDatabase[dict[str, Any]]:
        return self.client[self.database]

    @cached_property
    def commits(self) -> AsyncCollection[dict[str, Any]]:
        return self.db[self.commits_collection]

    @cached_property
    def snapshots(self) -> AsyncCollection[dict[str, Any]]:
        return self.db[self.snapshots_collection]

    @cached_property
    def projection_states(self) -> AsyncCollection[dict[str, Any]]:
        return self.db[self.projection_states_collection]

    @cached_property
    def quarantine(self) -> AsyncCollection[dict[str, Any]]:
        return self.db[self.quarantine_collection]

    async def on_startup(self) -> None:
        """Called when the application starts.

        No-op for MongoDB - connections are established lazily.
        """
        pass

    async def on_shutdown(self) -> None:
        """Close the MongoDB client if it was created."""
        if "client" in self.__dict__:
            await self.client.close()
            for name in ("client", "db", "commits", "snapshots", "projection_states", "quarantine"):
                self.__dict__.pop(name, None)
