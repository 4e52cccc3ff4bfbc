#!/usr/bin/env python3
"""Runnable demo: two watcher instances keeping each other informed.

Prerequisites:
    docker run --rm -p 6379:6379 redis:7
    REDIS_URL=redis://localhost:6379/0 python examples/distributed_sync.py
"""

from __future__ import annotations

import asyncio
import os
import sys

import structlog

from casbin_redis_watcher.config.models import WatcherOptions
from casbin_redis_watcher.messages.codec import decode
from casbin_redis_watcher.observability.health import check_health
from casbin_redis_watcher.watcher import RedisWatcher

logger = structlog.get_logger()

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
CHANNEL = "/casbin-policy-updates"


def _printer(instance: str):  # noqa: ANN202
    def _on_update(message: str) -> None:
        notification = decode(message)
        logger.info(
            "demo.notification_received",
            instance=instance,
            method=str(notification.method),
            origin=notification.origin_id,
            rule=notification.new_rule,
        )

    return _on_update


async def main() -> None:
    # 1. Broker must be reachable
    health = await check_health(REDIS_URL)
    if not health.healthy:
        logger.error("demo.redis_unavailable", summary=health.summary)
        sys.exit(1)

    # 2. Two instances on the same channel, each ignoring its own messages
    options = WatcherOptions(channel=CHANNEL, ignore_self=True)
    async with (
        await RedisWatcher.create(
            REDIS_URL, options.with_local_id("service-instance-1")
        ) as first,
        await RedisWatcher.create(
            REDIS_URL, options.with_local_id("service-instance-2")
        ) as second,
    ):
        await first.set_update_callback(_printer("instance-1"))
        await second.set_update_callback(_printer("instance-2"))
        await asyncio.gather(first.wait_for_ready(), second.wait_for_ready())

        # 3. Instance 1 adds a rule; instance 2 is told about it
        await first.update_for_add_policy("p", "p", "alice", "data3", "read")
        await asyncio.sleep(0.2)

        # 4. Instance 2 removes a rule; instance 1 is told about it
        await second.update_for_remove_policy("p", "p", "alice", "data1", "read")
        await asyncio.sleep(0.2)

        health = await check_health(REDIS_URL, [first, second])
        logger.info("demo.finished", summary=health.summary)


if __name__ == "__main__":
    asyncio.run(main())
