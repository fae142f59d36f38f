"""Pytest fixtures for integration tests.

Overrides the in-memory store with RedisVoteStore, so the tally, ledger and
orchestrator fixtures from tests/conftest.py run against a live Redis. Tests
are skipped when Redis is not reachable.

    docker-compose up -d redis
    pytest -m docker
"""

import os
from typing import AsyncGenerator

import pytest

from services.shared.errors import StoreUnavailable
from services.vote_api.database import RedisVoteStore


@pytest.fixture(scope="session")
def redis_url() -> str:
    """Dedicated database so test runs never touch real data."""
    return os.getenv("TEST_REDIS_URL", "redis://localhost:6379/15")


@pytest.fixture
async def store(redis_url: str) -> AsyncGenerator[RedisVoteStore, None]:
    redis_store = RedisVoteStore(redis_url)
    try:
        await redis_store.initialize()
    except StoreUnavailable as e:
        pytest.skip(f"Redis not available: {e.message}")

    await redis_store.client.flushdb()
    yield redis_store

    await redis_store.client.flushdb()
    await redis_store.close()
