"""Exception hierarchy for the Redis watcher."""

from __future__ import annotations


class WatcherError(Exception):
    """Base class for every error raised by the watcher."""


class BrokerConnectionError(WatcherError, ConnectionError):
    """The broker address is malformed or the initial handshake failed."""

    def __init__(self, message: str, *, address: str | None = None) -> None:
        super().__init__(message)
        self.address = address


class PublishError(WatcherError):
    """A notification could not be published; ``cause`` is the transport error."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class WatcherClosedError(PublishError):
    """Publish attempted after the watcher was closed."""


class DecodeError(WatcherError, ValueError):
    """An inbound payload is not a well-formed change notification."""
