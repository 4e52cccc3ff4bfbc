"""In-memory Redis pub/sub stand-in for unit tests."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from typing import Any
from unittest.mock import patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from casbin_redis_watcher.config.models import RetryConfig


class FakePubSub:
    def __init__(self, broker: FakeBroker, node: str) -> None:
        self._broker = broker
        self.node = node
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        self.channels: set[str] = set()
        self.closed = False

    async def subscribe(self, channel: str) -> None:
        self._broker.subscribe_attempts += 1
        if self._broker.down:
            raise RedisConnectionError("Connection refused")
        if self._broker.fail_subscribes > 0:
            self._broker.fail_subscribes -= 1
            raise RedisConnectionError("Connection reset by peer")
        self.channels.add(channel)
        self._broker.subscribers[channel].append(self)
        if not self._broker.withhold_confirmation:
            self.queue.put_nowait(
                {"type": "subscribe", "pattern": None, "channel": channel.encode(), "data": 1}
            )

    async def get_message(
        self, ignore_subscribe_messages: bool = False, timeout: float | None = 0.0
    ) -> dict[str, Any] | None:
        try:
            item = await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except TimeoutError:
            return None
        if isinstance(item, BaseException):
            raise item
        return item

    async def listen(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self.queue.get()
            if isinstance(item, BaseException):
                raise item
            yield item

    async def aclose(self) -> None:
        self.closed = True
        for channel in self.channels:
            subs = self._broker.subscribers[channel]
            if self in subs:
                subs.remove(self)


class FakeRedis:
    def __init__(self, broker: FakeBroker, url: str, kwargs: dict[str, Any]) -> None:
        self._broker = broker
        self.url = url
        self.kwargs = kwargs
        self.closed = False

    async def ping(self) -> bool:
        if self._broker.down:
            raise RedisConnectionError(f"Error connecting to {self.url}")
        return True

    async def publish(self, channel: str, payload: str) -> int:
        if self._broker.down or self._broker.fail_publish:
            raise RedisConnectionError("Connection closed by server.")
        return self._broker.deliver(self.url, channel, payload)

    def pubsub(self) -> FakePubSub:
        pubsub = FakePubSub(self._broker, self.url)
        self._broker.pubsubs.append(pubsub)
        return pubsub

    async def aclose(self) -> None:
        self.closed = True


class FakeBroker:
    """Routes PUBLISH to subscribers of the same node URL and channel."""

    def __init__(self) -> None:
        self.subscribers: dict[str, list[FakePubSub]] = defaultdict(list)
        self.published: list[tuple[str, str, str]] = []
        self.clients: list[FakeRedis] = []
        self.pubsubs: list[FakePubSub] = []
        self.down = False
        self.fail_publish = False
        self.fail_subscribes = 0
        self.subscribe_attempts = 0
        self.withhold_confirmation = False

    def client(self, url: str, **kwargs: Any) -> FakeRedis:
        if not url.startswith(("redis://", "rediss://", "unix://")):
            msg = "Redis URL must specify one of the following schemes"
            raise ValueError(msg)
        client = FakeRedis(self, url, kwargs)
        self.clients.append(client)
        return client

    def deliver(self, url: str, channel: str, payload: str) -> int:
        self.published.append((url, channel, payload))
        receivers = [
            ps
            for ps in self.subscribers[channel]
            if ps.node == url and not ps.closed
        ]
        for ps in receivers:
            ps.queue.put_nowait(
                {
                    "type": "message",
                    "pattern": None,
                    "channel": channel.encode(),
                    "data": payload.encode(),
                }
            )
        return len(receivers)

    def inject(self, channel: str, data: bytes | str) -> None:
        """Push a raw payload to every live subscriber of *channel*."""
        for ps in list(self.subscribers[channel]):
            ps.queue.put_nowait(
                {"type": "message", "pattern": None, "channel": channel.encode(), "data": data}
            )

    def drop_connections(self) -> None:
        """Break every live subscription stream."""
        for channel, subs in self.subscribers.items():
            for ps in list(subs):
                ps.queue.put_nowait(RedisConnectionError("Connection closed by server."))
            subs.clear()


@pytest.fixture
def broker() -> Iterator[FakeBroker]:
    fake = FakeBroker()
    with patch("casbin_redis_watcher.streaming.connection.Redis") as redis_cls:
        redis_cls.from_url.side_effect = fake.client
        yield fake


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(initial_wait_seconds=0.01, max_wait_seconds=0.05, jitter_seconds=0)


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[bool]]:
    async def _wait(predicate: Callable[[], bool], timeout: float = 1.0) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if predicate():
                return True
            await asyncio.sleep(0.005)
        return predicate()

    return _wait
