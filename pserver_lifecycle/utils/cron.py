"""Cron expression and schedule window evaluation.

All functions here are pure: they take the current time as an argument and
recompute fire instants on demand instead of keeping running iterators, so
they stay correct when the wall clock jumps.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from functools import lru_cache
from typing import TYPE_CHECKING, Iterator, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from pserver_lifecycle.exceptions import ConfigError

if TYPE_CHECKING:
    from pserver_lifecycle.models import ScheduleDefinition

# Overlapping duration windows are merged by walking forward through openings;
# a schedule whose duration exceeds its period never closes.
_MAX_MERGED_OPENINGS = 1000

_OFFSET_PATTERN = re.compile(r"^([+-])(\d{1,2})(?::?(\d{2}))?$")


@dataclass(frozen=True)
class WindowState:
    """Result of evaluating a window at an instant."""

    inside: bool
    next_transition: datetime | None


@lru_cache(maxsize=128)
def parse_time_zone(value: str | None) -> tzinfo:
    """Parse a time zone name or UTC offset.

    Args:
        value: IANA name ("Europe/Berlin"), "UTC", "UTC+3", "GMT-05:30" or "+03:00"

    Returns:
        tzinfo instance (UTC when value is empty)

    Raises:
        ConfigError: If the time zone is unknown
    """
    if value is None or not value.strip():
        return timezone.utc

    text = value.strip()
    upper = text.upper()
    if upper in ("UTC", "GMT", "Z"):
        return timezone.utc

    offset_text = text
    if upper.startswith(("UTC", "GMT")):
        offset_text = text[3:]

    match = _OFFSET_PATTERN.match(offset_text)
    if match:
        sign, hours, minutes = match.groups()
        delta = timedelta(hours=int(hours), minutes=int(minutes or 0))
        if delta > timedelta(hours=18):
            raise ConfigError(f"Time zone offset out of range: {value!r}")
        return timezone(-delta if sign == "-" else delta)

    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"Unknown time zone: {value!r}") from e


def validate_expression(expression: str) -> None:
    """Check that a cron expression parses.

    Args:
        expression: 5-field (or 6-field with seconds) cron expression

    Raises:
        ConfigError: If the expression is empty or malformed
    """
    if not expression or not str(expression).strip():
        raise ConfigError("Cron expression cannot be empty")
    if not croniter.is_valid(str(expression)):
        raise ConfigError(f"Invalid cron expression: {expression!r}")


def validate_schedule(schedule: ScheduleDefinition) -> None:
    """Validate a schedule definition.

    Args:
        schedule: Schedule to validate

    Raises:
        ConfigError: If any part of the schedule is invalid
    """
    validate_expression(schedule.start)
    if schedule.stop is None and schedule.duration is None:
        raise ConfigError(f"Schedule {schedule.start!r} needs either 'stop' or 'duration'")
    if schedule.stop is not None and schedule.duration is not None:
        raise ConfigError(f"Schedule {schedule.start!r} cannot have both 'stop' and 'duration'")
    if schedule.stop is not None:
        validate_expression(schedule.stop)
    if schedule.duration is not None and schedule.duration <= 0:
        raise ConfigError(f"Schedule {schedule.start!r} duration must be positive")
    parse_time_zone(schedule.time_zone)


def next_fire_after(expression: str, tz: tzinfo, now: datetime) -> datetime:
    """Get the first fire instant strictly after ``now``.

    Args:
        expression: Cron expression
        tz: Time zone the expression is evaluated in
        now: Reference instant (aware)

    Returns:
        Aware datetime in ``tz``
    """
    return croniter(expression, now.astimezone(tz)).get_next(datetime)


def last_fire_at_or_before(expression: str, tz: tzinfo, now: datetime) -> datetime:
    """Get the latest fire instant not after ``now``.

    Args:
        expression: Cron expression
        tz: Time zone the expression is evaluated in
        now: Reference instant (aware)

    Returns:
        Aware datetime in ``tz``
    """
    local = now.astimezone(tz)
    previous = croniter(expression, local).get_prev(datetime)
    # get_prev is strict; an instant that is itself a fire time counts as fired
    following = croniter(expression, previous).get_next(datetime)
    return following if following <= local else previous


def evaluate_window(schedule: ScheduleDefinition, now: datetime) -> WindowState:
    """Evaluate whether ``now`` is inside a schedule's window.

    Args:
        schedule: Schedule definition
        now: Reference instant (aware)

    Returns:
        WindowState with the next instant the answer may change
    """
    tz = parse_time_zone(schedule.time_zone)
    last_open = last_fire_at_or_before(schedule.start, tz, now)

    if schedule.stop is not None:
        last_close = last_fire_at_or_before(schedule.stop, tz, now)
        # A close firing at the same instant as an open wins
        if last_open > last_close:
            return WindowState(True, next_fire_after(schedule.stop, tz, now))
        return WindowState(False, next_fire_after(schedule.start, tz, now))

    length = timedelta(seconds=schedule.duration or 0)
    end = last_open + length
    if now >= end:
        return WindowState(False, next_fire_after(schedule.start, tz, now))

    opening = last_open
    for _ in range(_MAX_MERGED_OPENINGS):
        opening = next_fire_after(schedule.start, tz, opening)
        if opening > end:
            break
        end = opening + length
    return WindowState(True, end)


def evaluate_windows(schedules: Sequence[ScheduleDefinition], now: datetime) -> WindowState:
    """Evaluate several schedules as one window (inside if any is inside).

    Args:
        schedules: Schedule definitions
        now: Reference instant (aware)

    Returns:
        Combined WindowState; next_transition is the earliest instant any
        schedule may change, or None when there are no schedules
    """
    if not schedules:
        return WindowState(False, None)

    states = [evaluate_window(schedule, now) for schedule in schedules]
    upcoming = [s.next_transition for s in states if s.next_transition is not None]
    return WindowState(
        inside=any(s.inside for s in states),
        next_transition=min(upcoming) if upcoming else None,
    )


def iter_transitions(
    schedules: Sequence[ScheduleDefinition], start: datetime
) -> Iterator[tuple[bool, datetime]]:
    """Lazily yield window transitions after ``start``.

    The sequence is infinite for any non-empty schedule list and can be
    restarted from any instant by calling again.

    Args:
        schedules: Schedule definitions of one server
        start: Instant to begin from (aware)

    Yields:
        (in_window, at) tuples, each flipping the previous state
    """
    state = evaluate_windows(schedules, start)
    current = state.inside
    at = state.next_transition
    unchanged = 0
    while at is not None and unchanged < _MAX_MERGED_OPENINGS:
        state = evaluate_windows(schedules, at)
        if state.inside != current:
            current = state.inside
            unchanged = 0
            yield current, at.astimezone(timezone.utc)
        else:
            unchanged += 1
        at = state.next_transition
