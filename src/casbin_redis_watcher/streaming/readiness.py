"""Startup readiness broadcast for the subscription loop."""

from __future__ import annotations

import asyncio


class ReadinessSignal:
    """Released once, by the first confirmed subscription.

    Any number of tasks may wait on it; all of them are woken by the same
    event.  Later reconnects do not reset it.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Block until ready or *timeout* seconds pass; ``False`` on timeout."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True
