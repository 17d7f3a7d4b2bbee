"""Pytest fixtures for MongoDB integration tests."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import pytest
import pytest_asyncio
from pymongo.errors import PyMongoError

from eventide.integrations.mongodb import MongoConfiguration

# Assumes a MongoDB server is running locally on port 27017
LOCAL_MONGO_URI = os.environ.get("EVENTIDE_TEST_MONGO_URI", "mongodb://localhost:27017")


@asynccontextmanager
async def create_config(
    request: pytest.FixtureRequest,
    prefix: str = "test",
) -> AsyncIterator[MongoConfiguration]:
    """Create a MongoConfiguration on a fresh database, with cleanup."""
    db_name = f"{prefix}_{request.node.name}"[:63]
    config = MongoConfiguration(
        uri=LOCAL_MONGO_URI,
        database=db_name,
        server_selection_timeout_ms=2000,
    )
    try:
        await config.client.drop_database(config.database)
    except PyMongoError as err:
        await config.on_shutdown()
        pytest.skip(f"MongoDB is not reachable at {LOCAL_MONGO_URI}: {err}")
    try:
        yield config
    finally:
        await config.client.drop_database(config.database)
        await config.on_shutdown()


@pytest_asyncio.fixture
async def mongo_config(request: pytest.FixtureRequest) -> AsyncIterator[MongoConfiguration]:
    """Create a MongoConfiguration pointing to local MongoDB."""
    async with create_config(request) as config:
        yield config
