"""Integration fixtures — each test starts from an empty Redis keyspace."""

from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
async def clean_redis(redis_client):
    await redis_client.flushdb()
    yield
    await redis_client.flushdb()
