"""Service turning cron schedules into window events."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Iterator

from pserver_lifecycle.models import ManagedServer, ScheduleDefinition, WindowChanged
from pserver_lifecycle.utils.cron import WindowState, evaluate_windows, iter_transitions, validate_schedule

if TYPE_CHECKING:
    from pserver_lifecycle.utils.clock import Clock, TimerHandle

log = logging.getLogger(__name__)

EventSink = Callable[[WindowChanged], Any]


@dataclass
class _Registration:
    """Schedules of one server plus the scheduler's view of them."""

    schedules: tuple[ScheduleDefinition, ...]
    state: WindowState | None = None
    handle: TimerHandle | None = field(default=None, repr=False)


class CronScheduler:
    """Emits WindowChanged events for registered servers.

    Each server gets one timer. The timer sleeps until the next computed
    transition but never longer than ``tick``; every wake-up re-evaluates the
    windows against the clock, so wall-clock adjustments are picked up within
    one tick.
    """

    def __init__(self, clock: Clock, sink: EventSink, tick: float = 60.0) -> None:
        """Initialize scheduler.

        Args:
            clock: Time source and timer factory
            sink: Receives every WindowChanged event
            tick: Maximum seconds between re-evaluations
        """
        self._clock = clock
        self._sink = sink
        self.tick = tick
        self._servers: dict[str, _Registration] = {}
        self._running = False

    @property
    def running(self) -> bool:
        """Check if the scheduler is emitting events."""
        return self._running

    def add_server(self, server: ManagedServer) -> None:
        """Register or replace a server's schedules.

        A replaced server keeps its last emitted state, so an event is only
        emitted if the new schedules change the answer.

        Args:
            server: Server definition

        Raises:
            ConfigError: If a schedule is malformed
        """
        for schedule in server.schedules:
            validate_schedule(schedule)

        previous = self._servers.get(server.id)
        registration = _Registration(schedules=tuple(server.schedules))
        if previous is not None:
            self._cancel(previous)
            registration.state = previous.state
        self._servers[server.id] = registration
        log.debug("Server '%s': %d schedule(s) registered", server.id, len(server.schedules))

        if self._running:
            self._evaluate(server.id)

    def remove_server(self, server_id: str) -> None:
        """Stop tracking a server.

        Args:
            server_id: Server ID
        """
        registration = self._servers.pop(server_id, None)
        if registration is not None:
            self._cancel(registration)
            log.debug("Server '%s': schedules removed", server_id)

    def is_in_window(self, server_id: str) -> bool:
        """Check whether a server is currently inside a window.

        Args:
            server_id: Server ID

        Returns:
            True if any schedule of the server is open right now
        """
        registration = self._servers.get(server_id)
        if registration is None:
            return False
        return evaluate_windows(registration.schedules, self._clock.now()).inside

    def next_transition(self, server_id: str) -> datetime | None:
        """Get the next instant a server's window may change.

        Args:
            server_id: Server ID

        Returns:
            Aware datetime or None if the server has no schedules
        """
        registration = self._servers.get(server_id)
        if registration is None:
            return None
        return evaluate_windows(registration.schedules, self._clock.now()).next_transition

    def iter_events(self, server_id: str, start: datetime | None = None) -> Iterator[WindowChanged]:
        """Lazily yield the future window events of one server.

        Args:
            server_id: Server ID
            start: Instant to begin from (defaults to now)

        Yields:
            WindowChanged events in chronological order
        """
        registration = self._servers.get(server_id)
        if registration is None:
            return
        for in_window, at in iter_transitions(registration.schedules, start or self._clock.now()):
            yield WindowChanged(server_id, in_window, at)

    def start(self) -> None:
        """Emit the initial state of every server and begin tracking."""
        if self._running:
            return
        self._running = True
        for server_id in list(self._servers):
            self._evaluate(server_id)
        log.info("Scheduler started (servers: %d)", len(self._servers))

    def stop(self) -> None:
        """Cancel every pending wake-up."""
        self._running = False
        for registration in self._servers.values():
            self._cancel(registration)
        log.debug("Scheduler stopped")

    def _cancel(self, registration: _Registration) -> None:
        if registration.handle is not None:
            registration.handle.cancel()
            registration.handle = None

    def _evaluate(self, server_id: str) -> None:
        registration = self._servers.get(server_id)
        if registration is None or not self._running:
            return
        registration.handle = None

        now = self._clock.now()
        state = evaluate_windows(registration.schedules, now)
        previous = registration.state
        registration.state = state
        if previous is None or previous.inside != state.inside:
            log.info(
                "Server '%s': schedule window %s",
                server_id,
                "open" if state.inside else "closed",
            )
            self._sink(WindowChanged(server_id, state.inside, now))

        if state.next_transition is None:
            return
        delay = min(self.tick, (state.next_transition - now).total_seconds())
        registration.handle = self._clock.call_later(max(delay, 0.0), self._evaluate, server_id)
