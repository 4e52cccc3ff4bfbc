"""Redis broker connection: standalone and pinned-cluster targets.

In the clustered deployments this watcher targets, a subscriber on one node
does not see messages published against another node, so a clustered
deployment is pinned to the first configured node for both publish and
subscribe.  Every watcher in the deployment must be given the same first
address; no per-call node selection happens.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from casbin_redis_watcher.config.models import RedisConfig
from casbin_redis_watcher.errors import BrokerConnectionError

logger = structlog.get_logger()

_URL_SCHEMES = ("redis://", "rediss://", "unix://")


@dataclass(frozen=True, slots=True)
class ConnectionTarget:
    """The single node used for both publish and subscribe traffic."""

    url: str
    clustered: bool = False
    candidates: tuple[str, ...] = field(default=())


def normalize_address(address: str) -> str:
    """Turn ``host:port`` into ``redis://host:port``; full URLs pass through."""
    address = address.strip()
    if not address:
        msg = "Redis address must not be empty"
        raise BrokerConnectionError(msg, address=address)
    if address.startswith(_URL_SCHEMES):
        return address
    if "://" in address:
        msg = f"Unsupported Redis URL scheme in '{address}'"
        raise BrokerConnectionError(msg, address=address)
    return f"redis://{address}"


def standalone_target(address: str) -> ConnectionTarget:
    return ConnectionTarget(url=normalize_address(address))


def cluster_target(addresses: str | Sequence[str]) -> ConnectionTarget:
    """Pin a clustered deployment to its first node.

    *addresses* may be a list or a comma-separated string.  The remaining
    nodes are recorded for diagnostics only and never receive traffic.
    """
    if isinstance(addresses, str):
        addresses = addresses.split(",")
    candidates = tuple(a.strip() for a in addresses if a.strip())
    if not candidates:
        msg = "Cluster address list must contain at least one node"
        raise BrokerConnectionError(msg)
    pinned = normalize_address(candidates[0])
    logger.warning(
        "connection.cluster_pinned",
        pinned_node=pinned,
        ignored_nodes=list(candidates[1:]),
        hint="all watchers sharing a channel must pin the same node",
    )
    return ConnectionTarget(url=pinned, clustered=True, candidates=candidates)


class BrokerConnection:
    """Owns the publish and subscribe Redis handles for one target.

    Both handles point at the same node; they are separate so that a
    blocked subscription never stalls a publish.
    """

    def __init__(
        self, target: ConnectionTarget, config: RedisConfig | None = None
    ) -> None:
        self._target = target
        self._config = config or RedisConfig()
        self._publish_client: Redis | None = None
        self._subscribe_client: Redis | None = None

    @property
    def target(self) -> ConnectionTarget:
        return self._target

    def _build_client(self, *, socket_timeout: float | None) -> Redis:
        kwargs: dict[str, Any] = {
            "socket_connect_timeout": self._config.socket_connect_timeout,
            "socket_timeout": socket_timeout,
            "health_check_interval": self._config.health_check_interval,
        }
        if self._config.client_name:
            kwargs["client_name"] = self._config.client_name
        try:
            return Redis.from_url(self._target.url, **kwargs)
        except ValueError as exc:
            msg = f"Malformed Redis address '{self._target.url}': {exc}"
            raise BrokerConnectionError(msg, address=self._target.url) from exc

    async def open(self) -> None:
        """Build both handles and complete a PING handshake.

        Raises:
            BrokerConnectionError: the address is malformed or the node did
                not answer.  Nothing is left open in that case.
        """
        self._publish_client = self._build_client(
            socket_timeout=self._config.socket_timeout
        )
        try:
            self._subscribe_client = self._build_client(socket_timeout=None)
            await self._publish_client.ping()
        except BrokerConnectionError:
            await self.close()
            raise
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            await self.close()
            msg = f"Could not connect to Redis at {self._target.url}: {exc}"
            raise BrokerConnectionError(msg, address=self._target.url) from exc
        logger.info(
            "connection.opened",
            url=self._target.url,
            clustered=self._target.clustered,
        )

    @property
    def publish_client(self) -> Redis:
        if self._publish_client is None:
            msg = "BrokerConnection not open; call open() first"
            raise RuntimeError(msg)
        return self._publish_client

    @property
    def subscribe_client(self) -> Redis:
        if self._subscribe_client is None:
            msg = "BrokerConnection not open; call open() first"
            raise RuntimeError(msg)
        return self._subscribe_client

    async def close(self) -> None:
        """Release both handles; safe to call more than once."""
        for client in (self._publish_client, self._subscribe_client):
            if client is None:
                continue
            try:
                await client.aclose()
            except (RedisError, OSError) as exc:
                logger.debug("connection.close_failed", error=str(exc))
        self._publish_client = None
        self._subscribe_client = None
