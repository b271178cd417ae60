"""Per-server lifecycle state machine.

A ServerOrchestrator owns the ServerState of exactly one managed server. It
is driven by events delivered one at a time by the Dispatcher; every handler
is synchronous. Control commands run as separate tasks and report back as
CommandCompleted events, and timers report back as TimerFired events, so all
state changes happen on the same serialized path.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import random
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from pserver_lifecycle.exceptions import ControlError, ControlErrorKind, InvariantViolation
from pserver_lifecycle.models import (
    Alert,
    ArmedTimer,
    CommandCompleted,
    ConfigUpdated,
    ControlAction,
    ControlCommand,
    ControlResult,
    ManualOverride,
    Phase,
    PresenceChanged,
    RemoteState,
    ServerEvent,
    ServerState,
    StateSnapshot,
    StatusPayload,
    TimerFired,
    TimerKind,
    WindowChanged,
)
from pserver_lifecycle.utils.durations import format_duration

if TYPE_CHECKING:
    from pserver_lifecycle.models import ManagedServer
    from pserver_lifecycle.utils.clock import Clock
    from pserver_lifecycle.utils.control_api import ControlClient

log = logging.getLogger(__name__)

PostFn = Callable[[ServerEvent], None]
SpawnFn = Callable[[Coroutine[Any, Any, None]], None]
AlertFn = Callable[[Alert], None]


class ServerOrchestrator:
    """Decides start/stop actions for one managed server."""

    def __init__(
        self,
        server: ManagedServer,
        client: ControlClient,
        clock: Clock,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            server: Managed server definition
            client: Control API adapter for this server
            clock: Time source and timer factory
            rng: Random source for backoff jitter
        """
        self.server = server
        self.state = ServerState(last_transition_at=clock.now())
        self._client = client
        self._clock = clock
        self._rng = rng
        self._tokens = itertools.count(1)
        self._queued_manual = False
        self._post: PostFn | None = None
        self._spawn: SpawnFn | None = None
        self._alert: AlertFn | None = None

    @property
    def server_id(self) -> str:
        """Get the managed server's ID."""
        return self.server.id

    @property
    def client(self) -> ControlClient:
        """Get the control API adapter."""
        return self._client

    def attach(self, post: PostFn, spawn: SpawnFn, alert: AlertFn) -> None:
        """Connect the orchestrator to its dispatcher mailbox.

        Args:
            post: Enqueues an event for this orchestrator
            spawn: Runs a coroutine owned by this orchestrator
            alert: Publishes an alert
        """
        self._post = post
        self._spawn = spawn
        self._alert = alert

    def snapshot(self) -> StateSnapshot:
        """Get a read-only copy of the current state."""
        state = self.state
        return StateSnapshot(
            server_id=self.server_id,
            phase=state.phase,
            last_transition_at=state.last_transition_at,
            failure_count=state.failure_count,
            player_count=state.player_count,
            in_window=state.in_window,
            pending_command=state.pending_command is not None,
            last_error=str(state.last_error) if state.last_error else None,
        )

    def close(self) -> None:
        """Cancel every armed timer and drop queued intents."""
        for kind in list(self.state.timers):
            self._cancel_timer(kind)
        self.state.queued_action = None

    # ------------------------------------------------------------------
    # Event entry point
    # ------------------------------------------------------------------

    def handle(self, event: ServerEvent) -> None:
        """Apply one event to the state machine.

        Args:
            event: Event addressed to this server
        """
        if isinstance(event, WindowChanged):
            self._on_window_changed(event)
        elif isinstance(event, PresenceChanged):
            self._on_presence_changed(event)
        elif isinstance(event, CommandCompleted):
            self._on_command_completed(event)
        elif isinstance(event, TimerFired):
            self._on_timer_fired(event)
        elif isinstance(event, ManualOverride):
            self._on_manual_override(event)
        elif isinstance(event, ConfigUpdated):
            self._on_config_updated(event)
        else:
            log.warning("Server '%s': ignoring unsupported event %r", self.server_id, event)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_window_changed(self, event: WindowChanged) -> None:
        was_inside = self.state.in_window
        self.state.in_window = event.in_window
        if event.in_window and not was_inside:
            self._request_start("schedule window opened")
        elif not event.in_window and was_inside:
            self._check_stop_conditions("schedule window closed")

    def _on_presence_changed(self, event: PresenceChanged) -> None:
        try:
            count = _checked_count(event.count)
        except InvariantViolation as e:
            log.warning("Server '%s': %s, clamped to 0", self.server_id, e)
            count = 0

        previous = self.state.player_count
        self.state.player_count = count

        if count > 0:
            self._cancel_timer(TimerKind.IDLE)
            if previous == 0:
                self._request_start("player connected")
            return

        if self.state.phase is Phase.RUNNING:
            self._arm_idle_timer()
        self._check_stop_conditions("last player left")

    def _on_command_completed(self, event: CommandCompleted) -> None:
        result = event.result
        pending = self.state.pending_command
        if pending is None or pending.correlation_id != result.command.correlation_id:
            log.warning(
                "Server '%s': ignoring result for unknown command %s",
                self.server_id,
                result.command.correlation_id,
            )
            return

        self.state.pending_command = None
        if result.success:
            self._on_command_succeeded(result)
        else:
            self._on_command_failed(result)

    def _on_command_succeeded(self, result: ControlResult) -> None:
        now = self._clock.now()
        action = result.command.action
        self.state.last_success_at = now
        self.state.last_error = None

        if action is ControlAction.STATUS:
            self._apply_status(result.payload or StatusPayload())
            self._apply_queued()
            return

        self.state.failure_count = 0
        if action is ControlAction.START:
            self.state.started_at = now
            self._transition(Phase.RUNNING, "start confirmed")
            if self.state.queued_action is ControlAction.START:
                self.state.queued_action = None
            if self.state.queued_action is ControlAction.STOP:
                self._apply_queued()
            else:
                self._after_running()
        else:
            self.state.stopped_at = now
            self._transition(Phase.STOPPED, "stop confirmed")
            if self.state.queued_action is ControlAction.STOP:
                self.state.queued_action = None
            self._apply_queued()

    def _on_command_failed(self, result: ControlResult) -> None:
        action = result.command.action
        error = result.error or ControlError(ControlErrorKind.UNKNOWN)
        self.state.last_error = error

        if action is ControlAction.STATUS:
            log.warning("Server '%s': status query failed: %s", self.server_id, error)
            self._apply_queued()
            return

        self.state.failure_count += 1

        if self.state.queued_action is action.opposite:
            # The opposite intent arrived while this command was in flight
            manual = self._queued_manual
            self.state.queued_action = None
            self.state.failure_count = 0
            log.info(
                "Server '%s': %s failed (%s); switching to queued %s",
                self.server_id,
                action.value,
                error,
                action.opposite.value,
            )
            if action is ControlAction.START and not manual and not self._stop_wanted():
                self._transition(Phase.STOPPED, "start abandoned")
                return
            self._issue(action.opposite, f"queued {action.opposite.value}")
            return

        policy = self.server.retry
        if policy.exhausted(self.state.failure_count):
            failed_phase = Phase.START_FAILED if action is ControlAction.START else Phase.STOP_FAILED
            self._transition(failed_phase, f"{action.value} failed after {self.state.failure_count} attempts")
            self._raise_alert(
                f"{action.value} failed after {self.state.failure_count} attempts: {error}", error
            )
            return

        delay = policy.delay_for(self.state.failure_count, error, self._rng)
        log.warning(
            "Server '%s': %s attempt %d failed (%s); retrying in %s",
            self.server_id,
            action.value,
            self.state.failure_count,
            error,
            format_duration(delay),
        )
        self._arm_timer(TimerKind.RETRY, delay)

    def _on_timer_fired(self, event: TimerFired) -> None:
        armed = self.state.timers.get(event.kind)
        if armed is None or armed.token != event.token:
            log.debug("Server '%s': ignoring stale %s timer", self.server_id, event.kind.value)
            return
        del self.state.timers[event.kind]

        phase = self.state.phase
        if event.kind is TimerKind.RETRY:
            if phase is Phase.STARTING:
                self._issue(ControlAction.START, "retry")
            elif phase is Phase.STOPPING:
                self._issue(ControlAction.STOP, "retry")
        elif event.kind is TimerKind.IDLE:
            if phase is Phase.RUNNING and self.state.player_count == 0:
                self._request_stop(f"idle for {format_duration(self.server.idle_timeout or 0)}")
        elif event.kind is TimerKind.UPTIME_GUARD:
            self._check_stop_conditions("minimum uptime reached")
        elif event.kind is TimerKind.COOLDOWN:
            if phase is Phase.STOPPED and (self.state.in_window or self.state.player_count > 0):
                self._issue(ControlAction.START, "cooldown elapsed")

    def _on_manual_override(self, event: ManualOverride) -> None:
        if event.action is ControlAction.START:
            self._request_start("manual start", manual=True)
        elif event.action is ControlAction.STOP:
            self._request_stop("manual stop", manual=True)
        else:
            self._request_status()

    def _on_config_updated(self, event: ConfigUpdated) -> None:
        old = self.server
        self.server = event.server
        if event.client is not None and event.client is not self._client:
            previous_client = self._client
            self._client = event.client
            if self._spawn is not None:
                self._spawn(previous_client.close())
        log.info("Server '%s': configuration updated", self.server_id)

        if old.idle_timeout != self.server.idle_timeout:
            self._cancel_timer(TimerKind.IDLE)
            self._arm_idle_timer()
        if old.minimum_uptime != self.server.minimum_uptime and TimerKind.UPTIME_GUARD in self.state.timers:
            self._cancel_timer(TimerKind.UPTIME_GUARD)
            self._check_stop_conditions("minimum uptime changed")
        if not self.server.schedules and self.state.in_window:
            self.state.in_window = False
            self._check_stop_conditions("schedules removed")

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _request_start(self, reason: str, manual: bool = False) -> None:
        """Handle a start-direction trigger."""
        state = self.state
        pending = state.pending_command
        if pending is not None:
            if pending.action is ControlAction.START:
                log.debug("Server '%s': %s coalesced with in-flight start", self.server_id, reason)
                state.queued_action = None
            else:
                log.debug("Server '%s': %s queued behind in-flight %s", self.server_id, reason, pending.action.value)
                state.queued_action = ControlAction.START
                self._queued_manual = manual
            return

        phase = state.phase
        if phase is Phase.RUNNING:
            log.debug("Server '%s': %s ignored, already running", self.server_id, reason)
            return
        if phase is Phase.STOP_FAILED:
            # A failed stop leaves the server up
            state.failure_count = 0
            self._transition(Phase.RUNNING, f"{reason}, server still up after failed stop")
            self._after_running()
            return
        if phase is Phase.STARTING:
            if not manual:
                log.debug("Server '%s': %s coalesced with pending start retry", self.server_id, reason)
                return
            self._cancel_timer(TimerKind.RETRY)
        elif phase is Phase.STOPPING:
            log.info("Server '%s': %s cancels stop retry", self.server_id, reason)
            self._cancel_timer(TimerKind.RETRY)
        elif phase is Phase.STOPPED and not manual:
            remaining = self._cooldown_remaining()
            if remaining > 0:
                log.info(
                    "Server '%s': %s deferred, cooldown has %s left",
                    self.server_id,
                    reason,
                    format_duration(remaining),
                )
                self._arm_timer(TimerKind.COOLDOWN, remaining)
                return

        self._cancel_timer(TimerKind.COOLDOWN)
        state.failure_count = 0
        self._issue(ControlAction.START, reason)

    def _request_stop(self, reason: str, manual: bool = False) -> None:
        """Handle a stop-direction trigger whose conditions already hold."""
        state = self.state
        pending = state.pending_command
        if pending is not None:
            if pending.action is ControlAction.STOP:
                log.debug("Server '%s': %s coalesced with in-flight stop", self.server_id, reason)
                state.queued_action = None
            else:
                log.debug("Server '%s': %s queued behind in-flight %s", self.server_id, reason, pending.action.value)
                state.queued_action = ControlAction.STOP
                self._queued_manual = manual
            return

        phase = state.phase
        if phase is Phase.STOPPED:
            if self._cancel_timer(TimerKind.COOLDOWN):
                log.info("Server '%s': %s cancels deferred start", self.server_id, reason)
            else:
                log.debug("Server '%s': %s ignored, already stopped", self.server_id, reason)
            return
        if phase is Phase.START_FAILED and not manual:
            log.debug("Server '%s': %s ignored, start failed earlier", self.server_id, reason)
            return
        if phase is Phase.STOPPING:
            if not manual:
                log.debug("Server '%s': %s coalesced with pending stop retry", self.server_id, reason)
                return
            self._cancel_timer(TimerKind.RETRY)
        elif phase is Phase.STARTING:
            log.info("Server '%s': %s cancels start retry", self.server_id, reason)
            self._cancel_timer(TimerKind.RETRY)

        state.failure_count = 0
        self._issue(ControlAction.STOP, reason)

    def _request_status(self) -> None:
        if self.state.pending_command is not None or self.state.phase in (Phase.STARTING, Phase.STOPPING):
            log.debug("Server '%s': status refresh skipped, a command is pending", self.server_id)
            return
        self._issue(ControlAction.STATUS, "status refresh")

    def _stop_wanted(self) -> bool:
        """Check the schedule-driven stop condition, ignoring the uptime guard."""
        return bool(self.server.schedules) and not self.state.in_window and self.state.player_count == 0

    def _check_stop_conditions(self, reason: str) -> None:
        """Stop when the window is closed and nobody is connected.

        Presence always overrides the schedule, and the minimum-uptime guard
        defers the stop instead of dropping it.
        """
        if not self._stop_wanted():
            return

        state = self.state
        if state.pending_command is not None:
            if state.pending_command.action is not ControlAction.STOP and not (
                state.queued_action is not None and self._queued_manual
            ):
                state.queued_action = ControlAction.STOP
                self._queued_manual = False
            return

        if state.phase is Phase.RUNNING:
            remaining = self._uptime_guard_remaining()
            if remaining > 0:
                log.info(
                    "Server '%s': %s, stop deferred for %s (minimum uptime)",
                    self.server_id,
                    reason,
                    format_duration(remaining),
                )
                self._arm_timer(TimerKind.UPTIME_GUARD, remaining)
                return
        elif state.phase not in (Phase.STARTING, Phase.STOP_FAILED):
            # STARTING here means a start retry is waiting on backoff
            return

        self._request_stop(reason)

    def _after_running(self) -> None:
        if self.state.player_count == 0:
            self._arm_idle_timer()
            self._check_stop_conditions("no players connected")

    def _apply_queued(self) -> None:
        action = self.state.queued_action
        manual = self._queued_manual
        self.state.queued_action = None
        self._queued_manual = False

        if action is ControlAction.START:
            self._request_start("queued start", manual=manual)
        elif action is ControlAction.STOP:
            if manual:
                self._request_stop("queued manual stop", manual=True)
            else:
                self._check_stop_conditions("queued stop")

    def _apply_status(self, payload: StatusPayload) -> None:
        phase = self.state.phase
        remote = payload.state
        log.debug("Server '%s': panel reports %s", self.server_id, remote.value)

        if remote in (RemoteState.ONLINE, RemoteState.STARTING, RemoteState.RESTARTING):
            if phase in (Phase.STOPPED, Phase.START_FAILED):
                self.state.started_at = self._clock.now()
                self.state.failure_count = 0
                self._cancel_timer(TimerKind.COOLDOWN)
                self._transition(Phase.RUNNING, f"panel reports {remote.value}")
                self._after_running()
        elif remote is RemoteState.OFFLINE:
            if phase in (Phase.RUNNING, Phase.STOP_FAILED):
                self.state.stopped_at = self._clock.now()
                self.state.failure_count = 0
                self._transition(Phase.STOPPED, "panel reports offline")
        elif remote is RemoteState.FAILED:
            log.warning("Server '%s': panel reports the server as failed", self.server_id)

    # ------------------------------------------------------------------
    # Mechanics
    # ------------------------------------------------------------------

    def _transition(self, phase: Phase, reason: str) -> None:
        old = self.state.phase
        if phase is old:
            return
        self.state.phase = phase
        self.state.last_transition_at = self._clock.now()
        log.info("Server '%s': %s -> %s (%s)", self.server_id, old.value, phase.value, reason)
        if phase is not Phase.RUNNING:
            self._cancel_timer(TimerKind.IDLE)
            self._cancel_timer(TimerKind.UPTIME_GUARD)

    def _issue(self, action: ControlAction, reason: str) -> None:
        command = ControlCommand.create(self.server_id, action, self._clock.now())
        self.state.pending_command = command
        self._cancel_timer(TimerKind.RETRY)
        if action is ControlAction.START:
            self._transition(Phase.STARTING, reason)
        elif action is ControlAction.STOP:
            self._transition(Phase.STOPPING, reason)
        log.debug("Server '%s': issuing %s (%s) [%s]", self.server_id, action.value, reason, command.correlation_id)
        if self._spawn is None:
            raise RuntimeError(f"Orchestrator for '{self.server_id}' is not attached to a dispatcher")
        self._spawn(self._execute(command))

    async def _execute(self, command: ControlCommand) -> None:
        try:
            payload = await asyncio.wait_for(self._client.execute(command), timeout=self.server.command_timeout)
            result = ControlResult(command, payload=payload)
        except ControlError as e:
            result = ControlResult(command, error=e)
        except asyncio.TimeoutError:
            result = ControlResult(
                command,
                error=ControlError(
                    ControlErrorKind.TIMEOUT, f"no response within {format_duration(self.server.command_timeout)}"
                ),
            )
        except Exception as e:
            log.exception("Server '%s': control adapter raised unexpectedly", self.server_id)
            result = ControlResult(command, error=ControlError(ControlErrorKind.UNKNOWN, repr(e)))

        if self._post is not None:
            self._post(CommandCompleted(self.server_id, result))

    def _arm_idle_timer(self) -> None:
        timeout = self.server.idle_timeout
        if timeout is None or self.state.phase is not Phase.RUNNING or self.state.player_count > 0:
            return
        if TimerKind.IDLE in self.state.timers:
            return
        log.debug("Server '%s': idle timer armed for %s", self.server_id, format_duration(timeout))
        self._arm_timer(TimerKind.IDLE, timeout)

    def _arm_timer(self, kind: TimerKind, delay: float) -> None:
        self._cancel_timer(kind)
        token = next(self._tokens)
        handle = self._clock.call_later(delay, self._fire_timer, kind, token)
        self.state.timers[kind] = ArmedTimer(kind, token, handle)

    def _fire_timer(self, kind: TimerKind, token: int) -> None:
        if self._post is not None:
            self._post(TimerFired(self.server_id, kind, token))

    def _cancel_timer(self, kind: TimerKind) -> bool:
        armed = self.state.timers.pop(kind, None)
        if armed is None:
            return False
        armed.cancel()
        log.debug("Server '%s': %s timer canceled", self.server_id, kind.value)
        return True

    def _cooldown_remaining(self) -> float:
        if not self.server.cooldown or self.state.stopped_at is None:
            return 0.0
        elapsed = (self._clock.now() - self.state.stopped_at).total_seconds()
        return self.server.cooldown - elapsed

    def _uptime_guard_remaining(self) -> float:
        if not self.server.minimum_uptime or self.state.started_at is None:
            return 0.0
        elapsed = (self._clock.now() - self.state.started_at).total_seconds()
        return self.server.minimum_uptime - elapsed

    def _raise_alert(self, message: str, error: ControlError | None = None) -> None:
        alert = Alert(
            server_id=self.server_id,
            phase=self.state.phase,
            message=message,
            at=self._clock.now(),
            error=error,
        )
        if self._alert is not None:
            self._alert(alert)


def _checked_count(count: int) -> int:
    if count < 0:
        raise InvariantViolation(f"negative player count {count}")
    return count
