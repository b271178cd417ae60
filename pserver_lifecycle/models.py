"""Data models for PServer Lifecycle."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pserver_lifecycle.exceptions import ControlError
from pserver_lifecycle.utils.backoff import RetryPolicy


class Phase(Enum):
    """Lifecycle phase of a managed server."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    START_FAILED = "start_failed"
    STOP_FAILED = "stop_failed"

    @property
    def logically_running(self) -> bool:
        """Whether the server must be treated as up.

        A failed stop keeps the server logically running: it is never
        assumed stopped without confirmation.
        """
        return self in (Phase.RUNNING, Phase.STOPPING, Phase.STOP_FAILED)


class ControlAction(Enum):
    """Action carried by a control command."""

    START = "start"
    STOP = "stop"
    STATUS = "status"

    @property
    def opposite(self) -> ControlAction:
        """Get the opposite direction (STATUS has none and maps to itself)."""
        if self is ControlAction.START:
            return ControlAction.STOP
        if self is ControlAction.STOP:
            return ControlAction.START
        return self


class RemoteState(Enum):
    """Normalized server state reported by a control panel."""

    UNKNOWN = "unknown"
    OFFLINE = "offline"
    STARTING = "starting"
    STOPPING = "stopping"
    RESTARTING = "restarting"
    ONLINE = "online"
    FAILED = "failed"


class TimerKind(Enum):
    """Timers an orchestrator may arm."""

    IDLE = "idle"
    RETRY = "retry"
    UPTIME_GUARD = "uptime_guard"
    COOLDOWN = "cooldown"


@dataclass(frozen=True)
class ScheduleDefinition:
    """A cron-defined uptime window.

    The window opens at each fire of ``start`` and closes at the next fire of
    ``stop`` or ``duration`` seconds later.
    """

    start: str
    stop: str | None = None
    duration: float | None = None
    time_zone: str = "UTC"
    name: str = ""


@dataclass(frozen=True)
class ControlApiDefinition:
    """Control API type and adapter options for a server."""

    type: str
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ManagedServer:
    """A configured backend server under orchestration."""

    id: str
    name: str = ""
    schedules: tuple[ScheduleDefinition, ...] = ()
    idle_timeout: float | None = None
    minimum_uptime: float = 0.0
    cooldown: float = 0.0
    command_timeout: float = 30.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    control_api: ControlApiDefinition | None = None

    @property
    def display_name(self) -> str:
        """Get the name to show in logs."""
        return self.name or self.id


@dataclass(frozen=True)
class ControlCommand:
    """A command passed to a control API adapter."""

    server_id: str
    action: ControlAction
    issued_at: datetime
    correlation_id: str

    @classmethod
    def create(cls, server_id: str, action: ControlAction, issued_at: datetime) -> ControlCommand:
        """Create a command with a fresh correlation ID.

        Args:
            server_id: Target server ID
            action: Action to perform
            issued_at: Issue timestamp

        Returns:
            ControlCommand instance
        """
        return cls(server_id, action, issued_at, uuid.uuid4().hex[:12])


@dataclass(frozen=True)
class StatusPayload:
    """Status returned by a control API call."""

    state: RemoteState = RemoteState.UNKNOWN
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ControlResult:
    """Outcome of an executed control command."""

    command: ControlCommand
    payload: StatusPayload | None = None
    error: ControlError | None = None

    @property
    def success(self) -> bool:
        """Check if the command succeeded."""
        return self.error is None


# Events routed by the dispatcher. Every event names the server it belongs to.


@dataclass(frozen=True)
class ServerEvent:
    """Base class for events addressed to one server."""

    server_id: str


@dataclass(frozen=True)
class WindowChanged(ServerEvent):
    """The server's schedule window opened or closed."""

    in_window: bool
    at: datetime


@dataclass(frozen=True)
class PresenceChanged(ServerEvent):
    """First player arrived (count=1) or last player left (count=0)."""

    count: int


@dataclass(frozen=True)
class CommandCompleted(ServerEvent):
    """A control command resolved."""

    result: ControlResult


@dataclass(frozen=True)
class TimerFired(ServerEvent):
    """An armed timer expired."""

    kind: TimerKind
    token: int


@dataclass(frozen=True)
class ManualOverride(ServerEvent):
    """Operator-requested start, stop or status refresh."""

    action: ControlAction


@dataclass(frozen=True)
class ConfigUpdated(ServerEvent):
    """The server's definition changed on reload.

    ``client`` carries a replacement control adapter when the control API
    definition changed, otherwise None.
    """

    server: ManagedServer
    client: Any = None


@dataclass
class ArmedTimer:
    """A pending timer with the token that identifies it."""

    kind: TimerKind
    token: int
    handle: Any

    def cancel(self) -> None:
        """Cancel the underlying timer."""
        self.handle.cancel()


@dataclass
class ServerState:
    """Mutable runtime record owned by one orchestrator."""

    phase: Phase = Phase.STOPPED
    player_count: int = 0
    in_window: bool = False
    last_transition_at: datetime | None = None
    last_success_at: datetime | None = None
    pending_command: ControlCommand | None = None
    failure_count: int = 0
    last_error: ControlError | None = None
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    queued_action: ControlAction | None = None
    timers: dict[TimerKind, ArmedTimer] = field(default_factory=dict)


@dataclass(frozen=True)
class StateSnapshot:
    """Read-only view of a server's state for observers."""

    server_id: str
    phase: Phase
    last_transition_at: datetime | None
    failure_count: int
    player_count: int = 0
    in_window: bool = False
    pending_command: bool = False
    last_error: str | None = None


@dataclass(frozen=True)
class Alert:
    """Raised when a command exhausts its retries."""

    server_id: str
    phase: Phase
    message: str
    at: datetime
    error: ControlError | None = None
