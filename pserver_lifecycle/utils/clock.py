"""Wall-clock access and cancellable delayed callbacks."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Protocol


class TimerHandle(Protocol):
    """Handle returned by ``Clock.call_later``."""

    def cancel(self) -> None:
        """Cancel the callback."""


class Clock:
    """Source of time for schedulers and orchestrators.

    Subclasses provide the current time and delayed callbacks. Keeping both
    behind one object lets every timer in the system be driven by the same
    notion of time.
    """

    def now(self) -> datetime:
        """Get the current time as an aware UTC datetime."""
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        """Run a callback after a delay.

        Args:
            delay: Delay in seconds
            callback: Callable to invoke
            *args: Arguments for the callback

        Returns:
            Handle that cancels the callback
        """
        raise NotImplementedError


class LoopClock(Clock):
    """Clock backed by the running asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Initialize loop clock.

        Args:
            loop: Event loop to schedule on (defaults to the running loop)
        """
        self._loop = loop

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(delay, 0.0), callback, *args)
