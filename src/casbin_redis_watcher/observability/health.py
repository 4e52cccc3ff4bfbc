"""Health probes for the Redis broker and running watchers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

import structlog

from casbin_redis_watcher.config.models import RedisConfig
from casbin_redis_watcher.errors import BrokerConnectionError
from casbin_redis_watcher.streaming.connection import (
    BrokerConnection,
    standalone_target,
)
from casbin_redis_watcher.watcher import RedisWatcher

logger = structlog.get_logger()


class Status(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ComponentHealth:
    name: str
    status: Status = Status.UNKNOWN
    detail: str = ""


@dataclass
class WatcherHealth:
    components: list[ComponentHealth] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return all(c.status == Status.HEALTHY for c in self.components)

    @property
    def summary(self) -> dict[str, str]:
        return {c.name: c.status.value for c in self.components}


async def check_redis(address: str, config: RedisConfig | None = None) -> ComponentHealth:
    """Probe a Redis node with a PING handshake."""
    try:
        connection = BrokerConnection(standalone_target(address), config)
        await connection.open()
    except BrokerConnectionError as exc:
        return ComponentHealth(name="redis", status=Status.UNHEALTHY, detail=str(exc))
    await connection.close()
    return ComponentHealth(name="redis", status=Status.HEALTHY, detail=address)


def check_watcher(watcher: RedisWatcher) -> ComponentHealth:
    """Report whether *watcher* currently holds a live subscription."""
    snapshot = watcher.health()
    status = Status.HEALTHY if snapshot["status"] == "subscribed" else Status.UNHEALTHY
    detail = (
        f"channel={snapshot['channel']} state={snapshot['status']} "
        f"reconnects={snapshot['reconnects']}"
    )
    return ComponentHealth(name=f"watcher:{watcher.local_id}", status=status, detail=detail)


async def check_health(
    address: str, watchers: list[RedisWatcher] | None = None
) -> WatcherHealth:
    """Run the broker probe plus a state check for each watcher."""
    result = WatcherHealth()
    result.components.append(await check_redis(address))
    for watcher in watchers or []:
        result.components.append(check_watcher(watcher))
    logger.info("health.checked", summary=result.summary)
    return result
