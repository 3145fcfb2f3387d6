"""
Machine Metrics Hub - Test Fixtures
"""

import os

import pytest_asyncio

# Ensure test environment before importing app
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["API_TOKEN"] = ""
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["LOCAL_SAMPLER_ENABLED"] = "false"
os.environ["API_DEBUG"] = "true"

from db import MetricsStore  # noqa: E402


@pytest_asyncio.fixture
async def store():
    """Fresh in-memory store per test."""
    s = MetricsStore(":memory:")
    await s.connect()
    yield s
    await s.close()
