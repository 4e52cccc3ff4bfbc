"""Live Redis fixtures for integration tests.

Point ``REDIS_URL`` at a disposable server (default
``redis://localhost:6379/0``); tests skip when it does not answer.  The
cluster test additionally needs ``REDIS_CLUSTER_NODES``, a comma-separated
node list.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import AsyncIterator

import pytest
from redis.asyncio import Redis
from redis.exceptions import RedisError

from casbin_redis_watcher.config.models import RetryConfig

DEFAULT_REDIS_URL = "redis://localhost:6379/0"


@pytest.fixture
async def redis_url() -> AsyncIterator[str]:
    url = os.environ.get("REDIS_URL", DEFAULT_REDIS_URL)
    client = Redis.from_url(url, socket_connect_timeout=1)
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        pytest.skip(f"Redis not reachable at {url}: {exc}")
    finally:
        await client.aclose()
    yield url


@pytest.fixture
def cluster_nodes() -> list[str]:
    raw = os.environ.get("REDIS_CLUSTER_NODES", "")
    nodes = [n.strip() for n in raw.split(",") if n.strip()]
    if len(nodes) < 2:
        pytest.skip("REDIS_CLUSTER_NODES not set")
    return nodes


@pytest.fixture
def channel() -> str:
    """A channel no other test run is using."""
    return f"/casbin-it-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def quick_retry() -> RetryConfig:
    return RetryConfig(initial_wait_seconds=0.05, max_wait_seconds=0.5, jitter_seconds=0)
