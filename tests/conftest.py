"""Root conftest — suite markers and the session-scoped Redis container.

The container starts lazily, the first time an integration test asks for
Redis.  Without Docker those tests are skipped; unit tests never touch it.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

import pytest
import redis as sync_redis
from dotenv import load_dotenv
from redis.asyncio import Redis
from testcontainers.core.container import DockerContainer

logger = logging.getLogger(__name__)

_ROOT = Path(__file__).resolve().parents[1]
_REDIS_IMAGE = "redis:7-alpine"
_REDIS_READY_TIMEOUT_SECONDS = 30.0

# Optional test opt-ins; variables already in the environment win.
load_dotenv(dotenv_path=_ROOT / ".env", override=False)

_SUITE_MARKERS = {
    "unit": pytest.mark.unit,
    "integration": pytest.mark.integration,
}


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Mark each test with its suite, taken from ``tests/<suite>/``."""
    for item in items:
        try:
            rel = Path(str(item.fspath)).resolve().relative_to(_ROOT / "tests")
        except ValueError:
            continue
        marker = _SUITE_MARKERS.get(rel.parts[0]) if len(rel.parts) > 1 else None
        if marker is not None:
            item.add_marker(marker)


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


def _wait_for_redis(host: str, port: int) -> None:
    client = sync_redis.Redis(host=host, port=port)
    deadline = time.monotonic() + _REDIS_READY_TIMEOUT_SECONDS
    try:
        while True:
            try:
                client.ping()
                return
            except sync_redis.ConnectionError as exc:
                if time.monotonic() >= deadline:
                    raise
                logger.debug("Redis not ready host=%s port=%d error=%s", host, port, exc)
                time.sleep(0.5)
    finally:
        client.close()


@pytest.fixture(scope="session")
def redis_container():
    """Yield the URL of a Redis container shared by the whole session."""
    container = DockerContainer(_REDIS_IMAGE).with_exposed_ports(6379)
    try:
        container.start()
    except Exception as exc:
        pytest.skip(f"Docker unavailable for Redis container: {exc}")
    try:
        host = container.get_container_host_ip()
        port = int(container.get_exposed_port(6379))
        _wait_for_redis(host, port)
        yield f"redis://{host}:{port}"
    finally:
        container.stop()


@pytest.fixture()
async def redis_client(redis_container):
    client = Redis.from_url(redis_container)
    yield client
    await client.aclose()
