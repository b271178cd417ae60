"""Presence tracking and cron-driven window events."""

import asyncio
import itertools
import logging
from datetime import timedelta

import pytest
from conftest import START

from pserver_lifecycle.exceptions import ConfigError
from pserver_lifecycle.models import ManagedServer, PresenceChanged, ScheduleDefinition
from pserver_lifecycle.services import CronScheduler, PresenceTracker


def test_presence_emits_only_edges():
    events = []
    tracker = PresenceTracker(events.append)

    tracker.on_player_connect("lobby", "alice")
    tracker.on_player_connect("lobby", "bob")
    tracker.on_player_disconnect("lobby", "alice")
    tracker.on_player_disconnect("lobby", "bob")

    assert events == [PresenceChanged("lobby", 1), PresenceChanged("lobby", 0)]
    assert tracker.count("lobby") == 0


def test_presence_ignores_duplicates_and_unknown_players():
    events = []
    tracker = PresenceTracker(events.append)

    tracker.on_player_connect("lobby", "alice")
    tracker.on_player_connect("lobby", "alice")
    tracker.on_player_disconnect("lobby", "mallory")
    tracker.on_player_disconnect("lobby", "alice")
    tracker.on_player_disconnect("lobby", "alice")

    assert events == [PresenceChanged("lobby", 1), PresenceChanged("lobby", 0)]
    assert tracker.count("lobby") == 0


def test_player_switch_moves_between_servers():
    events = []
    tracker = PresenceTracker(events.append)

    tracker.on_player_switch("alice", None, "lobby")
    tracker.on_player_switch("alice", "lobby", "survival")

    assert events == [
        PresenceChanged("lobby", 1),
        PresenceChanged("lobby", 0),
        PresenceChanged("survival", 1),
    ]
    assert tracker.players("survival") == frozenset({"alice"})


def daytime_server(server_id="survival"):
    return ManagedServer(server_id, schedules=(ScheduleDefinition("0 8 * * *", stop="0 20 * * *"),))


def test_scheduler_emits_initial_state_and_transitions(clock):
    async def scenario():
        events = []
        scheduler = CronScheduler(clock, events.append, tick=60.0)
        scheduler.add_server(daytime_server())
        scheduler.start()
        assert [(e.server_id, e.in_window) for e in events] == [("survival", False)]

        await clock.advance(1)
        assert events[-1].in_window is True
        assert events[-1].at == START + timedelta(seconds=1)

        await clock.advance(12 * 3600)
        assert [e.in_window for e in events] == [False, True, False]
        scheduler.stop()
        assert clock.pending == 0

    asyncio.run(scenario())


def test_scheduler_wakes_at_least_every_tick(clock):
    async def scenario():
        scheduler = CronScheduler(clock, lambda event: None, tick=30.0)
        scheduler.add_server(daytime_server())
        scheduler.start()
        await clock.advance(3600)

        assert scheduler.is_in_window("survival")
        assert scheduler.next_transition("survival") == START.replace(hour=20, minute=0, second=0)
        assert clock.pending == 1

    asyncio.run(scenario())


def test_scheduler_add_and_remove_while_running(clock):
    async def scenario():
        events = []
        scheduler = CronScheduler(clock, events.append)
        scheduler.start()

        scheduler.add_server(daytime_server("a"))
        scheduler.add_server(daytime_server("b"))
        scheduler.add_server(daytime_server("a"))
        scheduler.remove_server("b")
        await clock.advance(1)

        assert [(e.server_id, e.in_window) for e in events] == [("a", False), ("b", False), ("a", True)]
        assert not scheduler.is_in_window("b")

    asyncio.run(scenario())


def test_scheduler_rejects_malformed_schedule(clock):
    scheduler = CronScheduler(clock, lambda event: None)
    bad = ManagedServer("broken", schedules=(ScheduleDefinition("61 * * * *", stop="0 8 * * *"),))
    with pytest.raises(ConfigError):
        scheduler.add_server(bad)


def test_scheduler_iterates_future_events(clock):
    scheduler = CronScheduler(clock, lambda event: None)
    scheduler.add_server(daytime_server())

    upcoming = list(itertools.islice(scheduler.iter_events("survival"), 3))

    assert [e.in_window for e in upcoming] == [True, False, True]
    assert upcoming[0].at == START + timedelta(seconds=1)
    assert list(scheduler.iter_events("missing")) == []


def test_presence_anomalies_are_logged(caplog):
    tracker = PresenceTracker(lambda event: None)

    with caplog.at_level(logging.WARNING, logger="pserver_lifecycle.services.presence_service"):
        tracker.on_player_disconnect("lobby", "mallory")

    assert "Ignoring presence anomaly" in caplog.text
    assert "mallory" in caplog.text
    assert tracker.count("lobby") == 0
