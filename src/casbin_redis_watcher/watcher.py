"""RedisWatcher: policy change notifications over Redis pub/sub.

One watcher per enforcer process.  Building a watcher opens the broker
connection and starts the subscription loop immediately, so a notification
published right after construction is not missed while the application is
still wiring up its callback::

    watcher = await RedisWatcher.create("redis://localhost:6379/0")
    await watcher.set_update_callback(on_policy_change)
    await watcher.wait_for_ready()
    await watcher.update_for_add_policy("p", "p", "alice", "data1", "read")
    await watcher.close()
"""

from __future__ import annotations

from collections.abc import Sequence
from types import TracebackType
from typing import Any, Self

import structlog

from casbin_redis_watcher.config.models import (
    RedisConfig,
    RetryConfig,
    WatcherConfig,
    WatcherOptions,
)
from casbin_redis_watcher.errors import WatcherClosedError
from casbin_redis_watcher.messages.codec import (
    ChangeNotification,
    PolicyChange,
    UpdateType,
)
from casbin_redis_watcher.streaming.connection import (
    BrokerConnection,
    cluster_target,
    standalone_target,
)
from casbin_redis_watcher.streaming.publisher import Publisher
from casbin_redis_watcher.streaming.subscriber import (
    CallbackSlot,
    SubscriptionLoop,
    SubscriptionState,
    UpdateCallback,
)

logger = structlog.get_logger()

DEFAULT_READY_TIMEOUT = 5.0


class RedisWatcher:
    """Publishes local policy changes and delivers remote ones to a callback.

    Use :meth:`create` or :meth:`create_clustered` rather than the
    constructor; they open the connection and start the subscription.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        options: WatcherOptions | None = None,
        *,
        retry: RetryConfig | None = None,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
        subscribe_timeout: float = 5.0,
    ) -> None:
        self._connection = connection
        self._options = options or WatcherOptions()
        self._ready_timeout = ready_timeout
        self._callbacks = CallbackSlot()
        self._subscription = SubscriptionLoop(
            connection,
            self._options,
            self._callbacks,
            retry=retry,
            subscribe_timeout=subscribe_timeout,
        )
        self._publisher: Publisher | None = None
        self._closed = False

    # -- construction ------------------------------------------------------

    @classmethod
    async def create(
        cls,
        address: str,
        options: WatcherOptions | None = None,
        *,
        redis_config: RedisConfig | None = None,
        retry: RetryConfig | None = None,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
    ) -> RedisWatcher:
        """Connect to a standalone Redis node and start subscribing.

        Raises:
            BrokerConnectionError: malformed address or failed handshake.
        """
        connection = BrokerConnection(standalone_target(address), redis_config)
        return await cls._start(connection, options, redis_config, retry, ready_timeout)

    @classmethod
    async def create_clustered(
        cls,
        addresses: str | Sequence[str],
        options: WatcherOptions | None = None,
        *,
        redis_config: RedisConfig | None = None,
        retry: RetryConfig | None = None,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
    ) -> RedisWatcher:
        """Connect to a cluster, pinned to the first address in *addresses*.

        Raises:
            BrokerConnectionError: empty list, malformed address or failed
                handshake with the pinned node.
        """
        connection = BrokerConnection(cluster_target(addresses), redis_config)
        return await cls._start(connection, options, redis_config, retry, ready_timeout)

    @classmethod
    async def from_config(cls, config: WatcherConfig) -> RedisWatcher:
        """Build a watcher from a loaded :class:`WatcherConfig`."""
        kwargs: dict[str, Any] = {
            "redis_config": config.redis,
            "retry": config.retry,
            "ready_timeout": config.ready_timeout_seconds,
        }
        if config.address:
            return await cls.create(config.address, config.options, **kwargs)
        return await cls.create_clustered(
            config.cluster_addresses, config.options, **kwargs
        )

    @classmethod
    async def _start(
        cls,
        connection: BrokerConnection,
        options: WatcherOptions | None,
        redis_config: RedisConfig | None,
        retry: RetryConfig | None,
        ready_timeout: float,
    ) -> RedisWatcher:
        await connection.open()
        redis_config = redis_config or RedisConfig()
        watcher = cls(
            connection,
            options,
            retry=retry,
            ready_timeout=ready_timeout,
            subscribe_timeout=redis_config.subscribe_timeout_seconds,
        )
        watcher._publisher = Publisher(
            connection.publish_client, watcher._options.channel
        )
        watcher._subscription.start()
        logger.info(
            "watcher.started",
            channel=watcher.channel,
            local_id=watcher.local_id,
            node=connection.target.url,
            ignore_self=watcher._options.ignore_self,
        )
        return watcher

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    # -- properties --------------------------------------------------------

    @property
    def options(self) -> WatcherOptions:
        return self._options

    @property
    def local_id(self) -> str:
        return self._options.local_id

    @property
    def channel(self) -> str:
        return self._options.channel

    @property
    def state(self) -> SubscriptionState:
        return self._subscription.state

    @property
    def is_ready(self) -> bool:
        return self._subscription.ready.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    # -- subscription side -------------------------------------------------

    async def set_update_callback(self, callback: UpdateCallback | None) -> None:
        """Replace the callback that receives remote notification text.

        Safe to call at any time.  From another task it waits for an
        in-flight delivery to finish; from inside the callback it takes effect
        with the next delivery.  Notifications that arrive while no callback
        is set are dropped, not buffered.
        """
        await self._callbacks.replace(callback)

    async def wait_for_ready(self, timeout: float | None = None) -> bool:
        """Wait for the first confirmed subscription.

        Returns ``False`` if *timeout* (default: the watcher's ready timeout)
        passes first; that is not an error.
        """
        return await self._subscription.ready.wait(
            self._ready_timeout if timeout is None else timeout
        )

    # -- publish side ------------------------------------------------------

    async def update(self, change: PolicyChange | None = None) -> int:
        """Publish *change* (a generic ``Update`` when omitted).

        Returns the number of subscribers the broker delivered to.

        Raises:
            PublishError: the broker rejected or never received the publish.
            WatcherClosedError: the watcher has been closed.
        """
        if self._closed or self._publisher is None:
            msg = "Watcher already closed"
            raise WatcherClosedError(msg)
        notification = ChangeNotification.from_change(
            change or PolicyChange(), self.local_id
        )
        return await self._publisher.publish(notification)

    async def update_for_add_policy(self, sec: str, ptype: str, *params: str) -> int:
        return await self.update(
            PolicyChange(
                UpdateType.ADD_POLICY, sec=sec, ptype=ptype, new_rule=list(params)
            )
        )

    async def update_for_remove_policy(
        self, sec: str, ptype: str, *params: str
    ) -> int:
        return await self.update(
            PolicyChange(
                UpdateType.REMOVE_POLICY, sec=sec, ptype=ptype, new_rule=list(params)
            )
        )

    async def update_for_remove_filtered_policy(
        self, sec: str, ptype: str, field_index: int, *field_values: str
    ) -> int:
        return await self.update(
            PolicyChange(
                UpdateType.REMOVE_FILTERED_POLICY,
                sec=sec,
                ptype=ptype,
                field_index=field_index,
                field_values=list(field_values),
            )
        )

    async def update_for_save_policy(self) -> int:
        return await self.update(PolicyChange(UpdateType.SAVE_POLICY))

    async def update_for_add_policies(
        self, sec: str, ptype: str, rules: Sequence[Sequence[str]]
    ) -> int:
        return await self.update(
            PolicyChange(
                UpdateType.ADD_POLICIES,
                sec=sec,
                ptype=ptype,
                new_rules=[list(r) for r in rules],
            )
        )

    async def update_for_remove_policies(
        self, sec: str, ptype: str, rules: Sequence[Sequence[str]]
    ) -> int:
        return await self.update(
            PolicyChange(
                UpdateType.REMOVE_POLICIES,
                sec=sec,
                ptype=ptype,
                new_rules=[list(r) for r in rules],
            )
        )

    async def update_for_update_policy(
        self, sec: str, ptype: str, old_rule: Sequence[str], new_rule: Sequence[str]
    ) -> int:
        return await self.update(
            PolicyChange(
                UpdateType.UPDATE_POLICY,
                sec=sec,
                ptype=ptype,
                old_rule=list(old_rule),
                new_rule=list(new_rule),
            )
        )

    async def update_for_update_policies(
        self,
        sec: str,
        ptype: str,
        old_rules: Sequence[Sequence[str]],
        new_rules: Sequence[Sequence[str]],
    ) -> int:
        return await self.update(
            PolicyChange(
                UpdateType.UPDATE_POLICIES,
                sec=sec,
                ptype=ptype,
                old_rules=[list(r) for r in old_rules],
                new_rules=[list(r) for r in new_rules],
            )
        )

    # -- lifecycle ---------------------------------------------------------

    async def close(self) -> None:
        """Stop the subscription loop and release the connection (idempotent).

        When awaited from inside the update callback, the loop task is the
        caller itself; it finishes right after the callback returns instead
        of before ``close()`` does.
        """
        if self._closed:
            return
        self._closed = True
        await self._subscription.stop()
        await self._connection.close()
        logger.info("watcher.closed", channel=self.channel, local_id=self.local_id)

    def health(self) -> dict[str, Any]:
        """Return a snapshot of the watcher's subscription state."""
        target = self._connection.target
        return {
            "status": "stopped" if self._closed else str(self.state),
            "channel": self.channel,
            "local_id": self.local_id,
            "ready": self.is_ready,
            "reconnects": self._subscription.reconnects,
            "pinned_node": target.url if target.clustered else None,
            "callback_registered": self._callbacks.registered,
        }
