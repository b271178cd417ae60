"""Lifecycle state machine scenarios driven through the service."""

import asyncio
import logging
from datetime import timedelta

from conftest import NO_JITTER, START, drain

from pserver_lifecycle.exceptions import ControlError, ControlErrorKind
from pserver_lifecycle.models import (
    ControlAction,
    ManagedServer,
    Phase,
    PresenceChanged,
    RemoteState,
    ScheduleDefinition,
    StatusPayload,
)
from pserver_lifecycle.utils.backoff import RetryPolicy

ONLINE = StatusPayload(RemoteState.ONLINE)
DAYTIME = ScheduleDefinition("0 8 * * *", stop="0 20 * * *")


def unreachable():
    return ControlError(ControlErrorKind.UNREACHABLE, "connection refused")


def test_reconnect_before_idle_timeout_keeps_server_running(harness):
    """A connection one second before the idle timeout cancels the stop."""

    async def scenario():
        service = harness.service
        await service.start([ManagedServer("lobby", idle_timeout=600.0)])

        service.on_player_connect("lobby", "alice")
        await service.join()
        assert harness.phase("lobby") is Phase.RUNNING

        service.on_player_disconnect("lobby", "alice")
        await harness.advance(599)
        service.on_player_connect("lobby", "bob")
        await harness.advance(3600)

        snapshot = service.snapshot("lobby")
        assert snapshot.phase is Phase.RUNNING
        assert snapshot.player_count == 1
        assert harness.client("lobby").calls == [ControlAction.START]
        await service.close()

    asyncio.run(scenario())


def test_idle_timeout_stops_empty_server(harness):
    async def scenario():
        service = harness.service
        await service.start([ManagedServer("lobby", idle_timeout=600.0)])
        service.on_player_connect("lobby", "alice")
        service.on_player_disconnect("lobby", "alice")
        await harness.advance(599)
        assert harness.phase("lobby") is Phase.RUNNING

        await harness.advance(1)
        assert harness.phase("lobby") is Phase.STOPPED
        assert harness.client("lobby").calls == [ControlAction.START, ControlAction.STOP]
        await service.close()

    asyncio.run(scenario())


def test_idle_timeout_stops_inside_open_window(harness):
    """Inactivity stops a server even while its window is open."""

    async def scenario():
        service = harness.service
        server = ManagedServer("survival", schedules=(DAYTIME,), idle_timeout=300.0)
        await service.start([server])
        await harness.advance(1)
        assert harness.phase("survival") is Phase.RUNNING

        await harness.advance(300)
        assert harness.phase("survival") is Phase.STOPPED
        assert service.snapshot("survival").in_window is True
        await service.close()

    asyncio.run(scenario())


def test_window_open_retries_with_backoff_until_success(harness):
    """Three unreachable attempts back off 1s, 2s, 4s before succeeding."""

    async def scenario():
        service = harness.service
        client = harness.client("survival")
        client.script(ControlAction.START, unreachable(), unreachable(), unreachable(), ONLINE)
        server = ManagedServer("survival", schedules=(DAYTIME,), retry=NO_JITTER)
        await service.start([server])

        await harness.advance(1)
        snapshot = service.snapshot("survival")
        assert snapshot.phase is Phase.STARTING
        assert snapshot.failure_count == 1
        assert snapshot.last_error.startswith("unreachable")

        await harness.advance(7)
        snapshot = service.snapshot("survival")
        assert snapshot.phase is Phase.RUNNING
        assert snapshot.failure_count == 0
        assert snapshot.last_error is None

        opened = START + timedelta(seconds=1)
        offsets = [(at - opened).total_seconds() for at in client.call_times]
        assert offsets == [0, 1, 3, 7]
        await service.close()

    asyncio.run(scenario())


def test_minimum_uptime_defers_schedule_stop(harness):
    """Window closes two minutes after start; stop waits for the 5-minute mark."""

    async def scenario():
        service = harness.service
        schedule = ScheduleDefinition("0 8 * * *", stop="2 8 * * *")
        server = ManagedServer("minigames", schedules=(schedule,), minimum_uptime=300.0)
        await service.start([server])
        client = harness.client("minigames")

        await harness.advance(1)
        assert harness.phase("minigames") is Phase.RUNNING

        await harness.advance(120)
        assert service.snapshot("minigames").in_window is False
        assert client.calls == [ControlAction.START]

        await harness.advance(179)
        assert client.calls == [ControlAction.START]
        assert harness.phase("minigames") is Phase.RUNNING

        await harness.advance(1)
        assert client.calls == [ControlAction.START, ControlAction.STOP]
        assert client.call_times[-1] == START + timedelta(seconds=301)
        assert harness.phase("minigames") is Phase.STOPPED
        await service.close()

    asyncio.run(scenario())


def test_players_keep_server_running_past_window(harness):
    async def scenario():
        service = harness.service
        schedule = ScheduleDefinition("0 8 * * *", stop="0 9 * * *")
        await service.start([ManagedServer("survival", schedules=(schedule,))])
        client = harness.client("survival")

        await harness.advance(1801)
        service.on_player_connect("survival", "alice")
        await harness.advance(1800)

        assert service.snapshot("survival").in_window is False
        assert harness.phase("survival") is Phase.RUNNING
        assert client.calls == [ControlAction.START]

        service.on_player_disconnect("survival", "alice")
        await service.join()
        assert client.calls == [ControlAction.START, ControlAction.STOP]
        assert harness.phase("survival") is Phase.STOPPED
        await service.close()

    asyncio.run(scenario())


def test_opposite_triggers_wait_for_in_flight_command(harness):
    """Never more than one command in flight; the latest intent wins."""

    async def scenario():
        service = harness.service
        client = harness.client("creative")
        await service.start([ManagedServer("creative")])
        client.gate = asyncio.Event()

        service.manual_start("creative")
        await drain()
        assert harness.phase("creative") is Phase.STARTING
        assert service.snapshot("creative").pending_command is True

        service.manual_stop("creative")
        service.manual_start("creative")
        service.manual_stop("creative")
        await drain()
        assert client.calls == [ControlAction.START]

        client.gate.set()
        await service.join()
        assert client.calls == [ControlAction.START, ControlAction.STOP]
        assert client.max_in_flight == 1
        assert harness.phase("creative") is Phase.STOPPED
        await service.close()

    asyncio.run(scenario())


def test_same_direction_triggers_are_coalesced(harness):
    async def scenario():
        service = harness.service
        client = harness.client("creative")
        await service.start([ManagedServer("creative")])
        client.gate = asyncio.Event()

        service.on_player_connect("creative", "alice")
        service.manual_start("creative")
        service.manual_start("creative")
        await drain()
        client.gate.set()
        await service.join()

        assert client.calls == [ControlAction.START]
        assert harness.phase("creative") is Phase.RUNNING
        await service.close()

    asyncio.run(scenario())


def test_exhausted_retries_end_in_start_failed_with_alert(harness):
    async def scenario():
        service = harness.service
        client = harness.client("modded")
        client.script(ControlAction.START, unreachable(), unreachable(), unreachable())
        policy = RetryPolicy(max_retries=2, base_delay=1.0, jitter=0.0)
        await service.start([ManagedServer("modded", retry=policy)])

        service.manual_start("modded")
        await harness.advance(60)

        snapshot = service.snapshot("modded")
        assert snapshot.phase is Phase.START_FAILED
        assert snapshot.failure_count == 3
        assert client.calls == [ControlAction.START] * 3
        assert len(harness.alerts) == 1
        assert harness.alerts[0].phase is Phase.START_FAILED
        assert harness.alerts[0].error.kind is ControlErrorKind.UNREACHABLE

        await harness.advance(3600)
        assert client.calls == [ControlAction.START] * 3

        service.on_player_connect("modded", "alice")
        await service.join()
        snapshot = service.snapshot("modded")
        assert snapshot.phase is Phase.RUNNING
        assert snapshot.failure_count == 0
        await service.close()

    asyncio.run(scenario())


def test_window_open_rearms_start_failed(harness):
    """A new window retries a server left in START_FAILED by the previous one."""

    async def scenario():
        service = harness.service
        client = harness.client("event")
        client.script(ControlAction.START, unreachable(), ONLINE)
        schedule = ScheduleDefinition("0 8 * * *", duration=3600.0)
        server = ManagedServer("event", schedules=(schedule,), retry=RetryPolicy(max_retries=0))
        await service.start([server])

        await harness.advance(1)
        assert harness.phase("event") is Phase.START_FAILED

        await harness.advance(24 * 3600)
        assert client.calls == [ControlAction.START, ControlAction.START]
        assert harness.phase("event") is Phase.RUNNING
        await service.close()

    asyncio.run(scenario())


def test_failed_stop_keeps_server_logically_running(harness):
    async def scenario():
        service = harness.service
        client = harness.client("lobby")
        client.script(ControlAction.STOP, unreachable())
        server = ManagedServer("lobby", idle_timeout=60.0, retry=RetryPolicy(max_retries=0))
        await service.start([server])

        service.on_player_connect("lobby", "alice")
        service.on_player_disconnect("lobby", "alice")
        await harness.advance(60)

        snapshot = service.snapshot("lobby")
        assert snapshot.phase is Phase.STOP_FAILED
        assert snapshot.phase.logically_running
        assert harness.alerts[-1].phase is Phase.STOP_FAILED

        service.manual_stop("lobby")
        await service.join()
        assert harness.phase("lobby") is Phase.STOPPED
        await service.close()

    asyncio.run(scenario())


def test_player_connect_after_failed_stop_resumes_without_start(harness):
    async def scenario():
        service = harness.service
        client = harness.client("lobby")
        client.script(ControlAction.STOP, unreachable())
        server = ManagedServer("lobby", idle_timeout=60.0, retry=RetryPolicy(max_retries=0))
        await service.start([server])

        service.on_player_connect("lobby", "alice")
        service.on_player_disconnect("lobby", "alice")
        await harness.advance(60)
        assert harness.phase("lobby") is Phase.STOP_FAILED

        service.on_player_connect("lobby", "bob")
        await service.join()

        snapshot = service.snapshot("lobby")
        assert snapshot.phase is Phase.RUNNING
        assert snapshot.failure_count == 0
        assert client.calls == [ControlAction.START, ControlAction.STOP]

        service.on_player_disconnect("lobby", "bob")
        await harness.advance(60)
        assert client.calls == [ControlAction.START, ControlAction.STOP, ControlAction.STOP]
        assert harness.phase("lobby") is Phase.STOPPED
        await service.close()

    asyncio.run(scenario())


def test_rate_limit_honours_retry_after(harness):
    async def scenario():
        service = harness.service
        client = harness.client("lobby")
        client.script(
            ControlAction.START,
            ControlError(ControlErrorKind.RATE_LIMITED, "slow down", retry_after=45.0),
            ONLINE,
        )
        await service.start([ManagedServer("lobby", retry=NO_JITTER)])

        service.manual_start("lobby")
        await harness.advance(44)
        assert client.calls == [ControlAction.START]

        await harness.advance(1)
        assert client.calls == [ControlAction.START, ControlAction.START]
        assert harness.phase("lobby") is Phase.RUNNING
        await service.close()

    asyncio.run(scenario())


def test_opposite_trigger_cancels_backoff(harness):
    async def scenario():
        service = harness.service
        client = harness.client("lobby")
        client.script(ControlAction.START, unreachable())
        policy = RetryPolicy(max_retries=5, base_delay=60.0, jitter=0.0)
        await service.start([ManagedServer("lobby", retry=policy)])

        service.manual_start("lobby")
        await service.join()
        assert harness.phase("lobby") is Phase.STARTING

        service.manual_stop("lobby")
        await service.join()
        assert client.calls == [ControlAction.START, ControlAction.STOP]
        assert harness.phase("lobby") is Phase.STOPPED

        await harness.advance(600)
        assert client.calls == [ControlAction.START, ControlAction.STOP]
        await service.close()

    asyncio.run(scenario())


def test_window_close_cancels_start_backoff(harness):
    """A window closing during a start backoff stops instead of retrying later."""

    async def scenario():
        service = harness.service
        client = harness.client("event")
        client.script(ControlAction.START, unreachable())
        schedule = ScheduleDefinition("0 8 * * *", stop="1 8 * * *")
        policy = RetryPolicy(max_retries=5, base_delay=300.0, jitter=0.0)
        await service.start([ManagedServer("event", schedules=(schedule,), retry=policy)])

        await harness.advance(1)
        assert harness.phase("event") is Phase.STARTING
        assert client.calls == [ControlAction.START]

        await harness.advance(60)
        assert client.calls == [ControlAction.START, ControlAction.STOP]
        assert harness.phase("event") is Phase.STOPPED

        await harness.advance(600)
        assert client.calls == [ControlAction.START, ControlAction.STOP]
        await service.close()

    asyncio.run(scenario())


def test_unexpected_adapter_error_does_not_flip_phase(harness):
    async def scenario():
        service = harness.service
        client = harness.client("lobby")
        client.script(ControlAction.START, RuntimeError("boom"), ONLINE)
        await service.start([ManagedServer("lobby", retry=NO_JITTER)])

        service.manual_start("lobby")
        await service.join()
        snapshot = service.snapshot("lobby")
        assert snapshot.phase is Phase.STARTING
        assert snapshot.last_error.startswith("unknown")

        await harness.advance(1)
        assert harness.phase("lobby") is Phase.RUNNING
        await service.close()

    asyncio.run(scenario())


def test_slow_adapter_call_times_out(harness):
    async def scenario():
        service = harness.service
        client = harness.client("lobby")
        await service.start([ManagedServer("lobby", command_timeout=0.01, retry=NO_JITTER)])
        client.gate = asyncio.Event()

        service.manual_start("lobby")
        await service.join()

        snapshot = service.snapshot("lobby")
        assert snapshot.phase is Phase.STARTING
        assert snapshot.failure_count == 1
        assert snapshot.last_error.startswith("timeout")
        await service.close()

    asyncio.run(scenario())


def test_cooldown_defers_restart_after_stop(harness):
    async def scenario():
        service = harness.service
        client = harness.client("lobby")
        await service.start([ManagedServer("lobby", cooldown=60.0)])

        service.manual_start("lobby")
        service.manual_stop("lobby")
        await service.join()
        assert harness.phase("lobby") is Phase.STOPPED

        await harness.advance(10)
        service.on_player_connect("lobby", "alice")
        await harness.advance(49)
        assert client.calls == [ControlAction.START, ControlAction.STOP]

        await harness.advance(1)
        assert client.calls == [ControlAction.START, ControlAction.STOP, ControlAction.START]
        assert harness.phase("lobby") is Phase.RUNNING
        await service.close()

    asyncio.run(scenario())


def test_cooldown_start_dropped_when_demand_disappears(harness):
    async def scenario():
        service = harness.service
        client = harness.client("lobby")
        await service.start([ManagedServer("lobby", cooldown=60.0)])

        service.manual_start("lobby")
        service.manual_stop("lobby")
        await service.join()
        service.on_player_connect("lobby", "alice")
        service.on_player_disconnect("lobby", "alice")
        await harness.advance(120)

        assert client.calls == [ControlAction.START, ControlAction.STOP]
        assert harness.phase("lobby") is Phase.STOPPED
        await service.close()

    asyncio.run(scenario())


def test_manual_start_bypasses_cooldown(harness):
    async def scenario():
        service = harness.service
        client = harness.client("lobby")
        await service.start([ManagedServer("lobby", cooldown=600.0)])

        service.manual_start("lobby")
        service.manual_stop("lobby")
        await service.join()
        service.manual_start("lobby")
        await service.join()

        assert client.calls == [ControlAction.START, ControlAction.STOP, ControlAction.START]
        await service.close()

    asyncio.run(scenario())


def test_status_refresh_corrects_phase(harness):
    async def scenario():
        service = harness.service
        client = harness.client("lobby")
        client.script(ControlAction.STATUS, ONLINE, StatusPayload(RemoteState.OFFLINE))
        await service.start([ManagedServer("lobby")])

        service.refresh_status("lobby")
        await service.join()
        assert harness.phase("lobby") is Phase.RUNNING

        service.refresh_status("lobby")
        await service.join()
        assert harness.phase("lobby") is Phase.STOPPED
        assert client.calls == [ControlAction.STATUS, ControlAction.STATUS]
        await service.close()

    asyncio.run(scenario())


def test_unknown_status_changes_nothing(harness):
    async def scenario():
        service = harness.service
        await service.start([ManagedServer("lobby")])
        service.refresh_status("lobby")
        await service.join()
        assert harness.phase("lobby") is Phase.STOPPED
        await service.close()

    asyncio.run(scenario())


def test_negative_presence_is_ignored(harness):
    async def scenario():
        service = harness.service
        await service.start([ManagedServer("lobby")])
        service.on_player_disconnect("lobby", "ghost")
        service.on_player_disconnect("lobby", "ghost")
        await service.join()

        snapshot = service.snapshot("lobby")
        assert snapshot.player_count == 0
        assert snapshot.phase is Phase.STOPPED
        assert harness.client("lobby").calls == []
        await service.close()

    asyncio.run(scenario())


def test_negative_count_event_is_clamped(harness, caplog):
    async def scenario():
        service = harness.service
        await service.start([ManagedServer("lobby")])
        with caplog.at_level(logging.WARNING, logger="pserver_lifecycle.controllers.orchestrator"):
            service.dispatcher.dispatch(PresenceChanged("lobby", -3))
            await service.join()

        assert service.dispatcher.snapshot("lobby").player_count == 0
        assert "negative player count -3" in caplog.text
        assert harness.client("lobby").calls == []
        await service.close()

    asyncio.run(scenario())
