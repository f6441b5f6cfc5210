"""Unit test fixtures — metrics and service state cleanup."""

from __future__ import annotations

import pytest

from tutorstream.observability import reset_metrics


@pytest.fixture(autouse=True)
def clean_metrics():
    """Reset in-process metrics between tests."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture()
async def service_shutdown():
    """Shut the service down after a test that configured it."""
    from tutorstream.service import shutdown

    yield
    await shutdown()
