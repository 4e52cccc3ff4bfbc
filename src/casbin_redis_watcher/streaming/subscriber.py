"""Background subscription loop with reconnect-and-backoff.

States::

    connecting -> subscribed -> (receive loop) -> disconnected -> connecting
                                                        any state -> closed

Connection faults never end the loop; only ``stop()`` does.  Every reconnect,
whether after a failed SUBSCRIBE or a lost stream, waits on one exponential
backoff with jitter capped near ``RetryConfig.max_wait_seconds``.  The backoff
starts over once a stream proves healthy: it delivered a message or stayed up
for ``RetryConfig.healthy_after_seconds``.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections.abc import Awaitable
from enum import StrEnum
from typing import Any, Protocol

import structlog
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    wait_exponential,
    wait_random,
)
from tenacity.wait import wait_base

from casbin_redis_watcher.config.models import RetryConfig, WatcherOptions
from casbin_redis_watcher.errors import DecodeError
from casbin_redis_watcher.messages.codec import decode
from casbin_redis_watcher.streaming.connection import BrokerConnection
from casbin_redis_watcher.streaming.readiness import ReadinessSignal

logger = structlog.get_logger()

# Everything the transport can throw at us is treated as transient.
_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (RedisError, OSError)


class SubscriptionState(StrEnum):
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


class StreamLostError(ConnectionError):
    """The subscription stream ended while the loop was still running."""


class UpdateCallback(Protocol):
    """Receives the raw notification text; may be sync or async."""

    def __call__(self, message: str) -> Awaitable[None] | None: ...


class CallbackSlot:
    """The registered update callback, guarded by a lock.

    The lock is held for the whole invocation, so a replacement from another
    task waits for an in-flight delivery and a delivery never sees a
    half-installed callback.  A replacement made by the callback itself
    takes effect from the next delivery.
    """

    def __init__(self) -> None:
        self._callback: UpdateCallback | None = None
        self._lock = asyncio.Lock()
        self._delivering: asyncio.Task[Any] | None = None

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    @property
    def registered(self) -> bool:
        return self._callback is not None

    async def replace(self, callback: UpdateCallback | None) -> None:
        if self._delivering is not None and self._delivering is asyncio.current_task():
            # Called from inside the running callback; this task holds the lock.
            self._callback = callback
            return
        async with self._lock:
            self._callback = callback

    async def invoke(self, message: str) -> bool:
        """Deliver *message*; returns ``False`` when no callback is registered."""
        async with self._lock:
            callback = self._callback
            if callback is None:
                return False
            self._delivering = asyncio.current_task()
            try:
                result = callback(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("subscriber.callback_failed")
            finally:
                self._delivering = None
            return True


class SubscriptionLoop:
    """Owns the subscribe handle's pub/sub stream for one watcher."""

    def __init__(
        self,
        connection: BrokerConnection,
        options: WatcherOptions,
        callbacks: CallbackSlot,
        *,
        retry: RetryConfig | None = None,
        ready: ReadinessSignal | None = None,
        subscribe_timeout: float = 5.0,
    ) -> None:
        self._connection = connection
        self._options = options
        self._callbacks = callbacks
        self._retry = retry or RetryConfig()
        self._ready = ready or ReadinessSignal()
        self._subscribe_timeout = subscribe_timeout
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._state = SubscriptionState.CONNECTING
        self._reconnects = 0

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def ready(self) -> ReadinessSignal:
        return self._ready

    @property
    def reconnects(self) -> int:
        return self._reconnects

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Spawn the loop task on the running event loop."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(
            self._run(), name=f"casbin-watcher:{self._options.channel}"
        )
        self._task.add_done_callback(self._on_task_done)

    async def stop(self) -> None:
        """Stop the loop, letting the current delivery finish first.

        From inside a callback this only requests the stop: the loop task is
        the caller, so it ends as soon as that callback returns.
        """
        self._stopping.set()
        task = self._task
        if task is None:
            self._state = SubscriptionState.CLOSED
            return
        if task is asyncio.current_task():
            return
        if not task.done():
            async with self._callbacks.lock:
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._state = SubscriptionState.CLOSED

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "subscriber.crashed",
                channel=self._options.channel,
                error=str(exc),
                exc_info=exc,
            )

    # -- loop --------------------------------------------------------------

    async def _run(self) -> None:
        retrying = AsyncRetrying(
            stop=self._stop_when_closing,
            wait=self._backoff(),
            retry=retry_if_exception_type(_TRANSIENT_ERRORS),
            before_sleep=self._log_retry,
            sleep=self._pause,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if self._stopping.is_set():
                        return
                    await self._session(attempt.retry_state)
        except RetryError:
            # stop() arrived while a reconnect was pending.
            return
        finally:
            self._state = SubscriptionState.CLOSED
            logger.info("subscriber.stopped", channel=self._options.channel)

    async def _session(self, retry_state: RetryCallState) -> None:
        """Subscribe and consume until the stream ends or ``stop()`` is called.

        Raises:
            StreamLostError: the stream ended; tenacity schedules the reconnect.
        """
        pubsub = await self._subscribe()
        self._mark_subscribed()
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            await self._consume(pubsub, retry_state)
            reason = "stream closed"
        except _TRANSIENT_ERRORS as exc:
            reason = str(exc) or type(exc).__name__
        finally:
            await self._release(pubsub)

        if self._stopping.is_set():
            return
        if loop.time() - started >= self._retry.healthy_after_seconds:
            self._reset_backoff(retry_state)
        self._state = SubscriptionState.DISCONNECTED
        self._reconnects += 1
        logger.warning(
            "subscriber.disconnected",
            channel=self._options.channel,
            reason=reason,
            reconnects=self._reconnects,
        )
        raise StreamLostError(reason)

    def _mark_subscribed(self) -> None:
        self._state = SubscriptionState.SUBSCRIBED
        self._ready.set()
        logger.info(
            "subscriber.subscribed",
            channel=self._options.channel,
            node=self._connection.target.url,
            reconnects=self._reconnects,
        )

    async def _subscribe(self) -> PubSub:
        self._state = SubscriptionState.CONNECTING
        pubsub = self._connection.subscribe_client.pubsub()
        try:
            await pubsub.subscribe(self._options.channel)
            await self._await_confirmation(pubsub)
        except BaseException:
            await self._release(pubsub)
            raise
        return pubsub

    async def _await_confirmation(self, pubsub: PubSub) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._subscribe_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                msg = (
                    f"SUBSCRIBE {self._options.channel} not confirmed "
                    f"within {self._subscribe_timeout}s"
                )
                raise TimeoutError(msg)
            message = await pubsub.get_message(timeout=remaining)
            if message is not None and message.get("type") == "subscribe":
                return

    async def _consume(self, pubsub: PubSub, retry_state: RetryCallState) -> None:
        async for message in pubsub.listen():
            if self._stopping.is_set():
                return
            if message.get("type") != "message":
                continue
            self._reset_backoff(retry_state)
            await self._handle(message.get("data"))
            if self._stopping.is_set():
                return

    async def _handle(self, data: Any) -> None:
        try:
            notification = decode(data)
        except DecodeError as exc:
            logger.warning(
                "subscriber.decode_failed",
                channel=self._options.channel,
                error=str(exc),
            )
            return
        except Exception:
            logger.exception("subscriber.decode_failed", channel=self._options.channel)
            return

        if self._options.ignore_self and notification.origin_id == self._options.local_id:
            logger.debug(
                "subscriber.ignored_self",
                channel=self._options.channel,
                method=str(notification.method),
            )
            return

        text = data if isinstance(data, str) else bytes(data).decode("utf-8")
        delivered = await self._callbacks.invoke(text)
        if not delivered:
            # Notifications arriving before a callback is registered are not buffered.
            logger.debug(
                "subscriber.dropped_no_callback",
                channel=self._options.channel,
                method=str(notification.method),
            )

    # -- helpers -----------------------------------------------------------

    def _backoff(self) -> wait_base:
        return wait_exponential(
            multiplier=self._retry.initial_wait_seconds,
            max=self._retry.max_wait_seconds,
        ) + wait_random(0, self._retry.jitter_seconds)

    @staticmethod
    def _reset_backoff(retry_state: RetryCallState) -> None:
        # The next wait is computed as if this were the first failure.
        retry_state.attempt_number = 1

    def _stop_when_closing(self, retry_state: RetryCallState) -> bool:
        return self._stopping.is_set()

    def _log_retry(self, retry_state: RetryCallState) -> None:
        self._state = SubscriptionState.DISCONNECTED
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        backoff = retry_state.next_action.sleep if retry_state.next_action else None
        logger.warning(
            "subscriber.reconnect_scheduled",
            channel=self._options.channel,
            attempt=retry_state.attempt_number,
            backoff_seconds=backoff,
            error=str(error),
        )

    async def _pause(self, seconds: float) -> None:
        """Sleep that returns early once ``stop()`` is requested."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)

    async def _release(self, pubsub: PubSub) -> None:
        try:
            await pubsub.aclose()
        except _TRANSIENT_ERRORS as exc:
            logger.debug("subscriber.release_failed", error=str(exc))
