"""Shared fixtures: a manually advanced clock and a scripted control client."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import pytest

from pserver_lifecycle.config_loader import LifecycleSettings
from pserver_lifecycle.models import ControlAction, ManagedServer, RemoteState, StatusPayload
from pserver_lifecycle.services import LifecycleService
from pserver_lifecycle.utils.backoff import RetryPolicy
from pserver_lifecycle.utils.clock import Clock
from pserver_lifecycle.utils.control_api import ControlClient

START = datetime(2024, 1, 1, 7, 59, 59, tzinfo=timezone.utc)


class ManualTimer:
    def __init__(self, when: datetime, callback: Callable[..., Any], args: tuple) -> None:
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock(Clock):
    """Clock whose time only moves when ``advance`` is awaited."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start
        self._heap: list[tuple[datetime, int, ManualTimer]] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ManualTimer:
        timer = ManualTimer(self._now + timedelta(seconds=max(delay, 0.0)), callback, args)
        heapq.heappush(self._heap, (timer.when, next(self._seq), timer))
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for _, _, timer in self._heap if not timer.cancelled)

    async def advance(self, seconds: float, settle: Callable[[], Awaitable[None]] | None = None) -> None:
        """Move time forward, firing due timers one at a time.

        ``settle`` is awaited after every fired timer so events caused by one
        timer are processed before the next timer is considered.
        """
        target = self._now + timedelta(seconds=seconds)
        if settle is not None:
            await settle()
        while self._heap and self._heap[0][0] <= target:
            when, _, timer = heapq.heappop(self._heap)
            if timer.cancelled:
                continue
            self._now = max(self._now, when)
            timer.callback(*timer.args)
            if settle is not None:
                await settle()
        self._now = target


class FakeClient(ControlClient):
    """Control client returning scripted outcomes per action."""

    TYPE = "fake"

    def __init__(self, server_name: str = "fake", clock: Clock | None = None) -> None:
        super().__init__(server_name)
        self.clock = clock
        self.calls: list[ControlAction] = []
        self.call_times: list[datetime] = []
        self.scripts: dict[ControlAction, list[Any]] = {action: [] for action in ControlAction}
        self.gate: asyncio.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def script(self, action: ControlAction, *outcomes: Any) -> None:
        self.scripts[action].extend(outcomes)

    async def _run(self, action: ControlAction) -> StatusPayload:
        self.calls.append(action)
        if self.clock is not None:
            self.call_times.append(self.clock.now())
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            outcome = self.scripts[action].pop(0) if self.scripts[action] else StatusPayload(RemoteState.UNKNOWN)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1

    async def start(self) -> StatusPayload:
        return await self._run(ControlAction.START)

    async def stop(self) -> StatusPayload:
        return await self._run(ControlAction.STOP)

    async def status(self) -> StatusPayload:
        return await self._run(ControlAction.STATUS)

    async def close(self) -> None:
        self.closed = True


class Harness:
    """A LifecycleService wired to a manual clock and fake clients."""

    def __init__(self, clock: ManualClock, settings: LifecycleSettings | None = None) -> None:
        self.clock = clock
        self.clients: dict[str, FakeClient] = {}
        self.alerts: list = []
        self._bound: set[str] = set()
        self.service = LifecycleService(
            settings or LifecycleSettings(sync_status_on_start=False),
            clock=clock,
            client_factory=self._client_for,
            rng=random.Random(0),
        )
        self.service.add_alert_handler(self.alerts.append)

    def _client_for(self, server: ManagedServer) -> FakeClient:
        client = self.clients.get(server.id)
        if client is None or server.id in self._bound:
            client = FakeClient(server.display_name, self.clock)
            self.clients[server.id] = client
        self._bound.add(server.id)
        return client

    def client(self, server_id: str) -> FakeClient:
        if server_id not in self.clients:
            self.clients[server_id] = FakeClient(server_id, self.clock)
        return self.clients[server_id]

    def phase(self, server_id: str):
        return self.service.snapshot(server_id).phase

    async def advance(self, seconds: float) -> None:
        await self.clock.advance(seconds, settle=self.service.join)


async def drain() -> None:
    """Let the event loop run queued callbacks without waiting on tasks."""
    for _ in range(20):
        await asyncio.sleep(0)


NO_JITTER = RetryPolicy(max_retries=5, base_delay=1.0, multiplier=2.0, jitter=0.0)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def harness(clock: ManualClock) -> Harness:
    return Harness(clock)
