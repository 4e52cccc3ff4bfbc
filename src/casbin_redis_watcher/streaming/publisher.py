"""Publishes change notifications on the watcher channel."""

from __future__ import annotations

import asyncio

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from casbin_redis_watcher.errors import PublishError
from casbin_redis_watcher.messages.codec import ChangeNotification, encode

logger = structlog.get_logger()


class Publisher:
    """Encodes a notification and issues a single ``PUBLISH``.

    No buffering and no retry: a failure is raised to the caller straight
    away as a ``PublishError``.
    """

    def __init__(self, client: Redis, channel: str) -> None:
        self._client = client
        self._channel = channel

    @property
    def channel(self) -> str:
        return self._channel

    async def publish(self, notification: ChangeNotification) -> int:
        """Publish *notification*; returns the number of subscribers reached."""
        payload = encode(notification)
        try:
            receivers = await self._client.publish(self._channel, payload)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.error(
                "publisher.publish_failed",
                channel=self._channel,
                method=str(notification.method),
                error=str(exc),
            )
            msg = f"Failed to publish {notification.method} on '{self._channel}': {exc}"
            raise PublishError(msg, cause=exc) from exc

        logger.debug(
            "publisher.published",
            channel=self._channel,
            method=str(notification.method),
            receivers=receivers,
        )
        return int(receivers)
