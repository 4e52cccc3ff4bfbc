"""Pydantic configuration models for the Redis watcher."""

from __future__ import annotations

import uuid
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CHANNEL = "/casbin"


def _new_local_id() -> str:
    return str(uuid.uuid4())


class WatcherOptions(BaseModel):
    """Per-instance watcher options, fixed at construction.

    Every instance gets its own ``local_id``; two watchers built from default
    options never share one.
    """

    model_config = ConfigDict(frozen=True)

    channel: str = Field(default=DEFAULT_CHANNEL, min_length=1)
    local_id: str = Field(default_factory=_new_local_id, min_length=1)
    ignore_self: bool = False

    def with_channel(self, channel: str) -> WatcherOptions:
        return WatcherOptions(
            channel=channel, local_id=self.local_id, ignore_self=self.ignore_self
        )

    def with_local_id(self, local_id: str) -> WatcherOptions:
        return WatcherOptions(
            channel=self.channel, local_id=local_id, ignore_self=self.ignore_self
        )

    def with_ignore_self(self, ignore_self: bool) -> WatcherOptions:
        return WatcherOptions(
            channel=self.channel, local_id=self.local_id, ignore_self=ignore_self
        )


class RedisConfig(BaseModel):
    """Redis client settings shared by the publish and subscribe handles."""

    socket_connect_timeout: float = Field(default=5.0, gt=0)
    # Applies to the publish handle only; the subscribe handle blocks on
    # receive without a deadline.
    socket_timeout: float | None = Field(default=5.0, gt=0)
    health_check_interval: int = Field(default=30, ge=0)
    subscribe_timeout_seconds: float = Field(default=5.0, gt=0)
    client_name: str | None = None


class RetryConfig(BaseModel):
    """Reconnect backoff for the subscription loop (unbounded attempts)."""

    initial_wait_seconds: float = Field(default=0.5, gt=0)
    max_wait_seconds: float = Field(default=30.0, gt=0)
    jitter_seconds: float = Field(default=1.0, ge=0)
    # A stream that stayed up this long, or delivered a message, resets the backoff.
    healthy_after_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def check_bounds(self) -> Self:
        if self.max_wait_seconds < self.initial_wait_seconds:
            msg = "max_wait_seconds must be >= initial_wait_seconds"
            raise ValueError(msg)
        return self


class WatcherConfig(BaseModel):
    """Complete watcher configuration, typically loaded from YAML."""

    address: str | None = None
    cluster_addresses: list[str] = Field(default_factory=list)
    options: WatcherOptions = Field(default_factory=WatcherOptions)
    redis: RedisConfig = RedisConfig()
    retry: RetryConfig = RetryConfig()
    ready_timeout_seconds: float = Field(default=5.0, gt=0)

    @field_validator("cluster_addresses", mode="before")
    @classmethod
    def split_cluster_addresses(cls, v: object) -> object:
        """Accept ``"host1:7000,host2:7001"`` as well as a list."""
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @model_validator(mode="after")
    def check_target(self) -> Self:
        if self.address and self.cluster_addresses:
            msg = "Set either address or cluster_addresses, not both"
            raise ValueError(msg)
        if not self.address and not self.cluster_addresses:
            msg = "One of address or cluster_addresses is required"
            raise ValueError(msg)
        return self

    @property
    def clustered(self) -> bool:
        return bool(self.cluster_addresses)
