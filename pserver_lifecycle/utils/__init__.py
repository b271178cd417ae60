"""Utility modules."""

from pserver_lifecycle.utils.backoff import RetryPolicy
from pserver_lifecycle.utils.clock import Clock, LoopClock
from pserver_lifecycle.utils.cron import (
    WindowState,
    evaluate_window,
    evaluate_windows,
    iter_transitions,
    last_fire_at_or_before,
    next_fire_after,
    parse_time_zone,
)
from pserver_lifecycle.utils.durations import format_duration, parse_duration, parse_optional_duration

__all__ = [
    "Clock",
    "LoopClock",
    "RetryPolicy",
    "WindowState",
    "evaluate_window",
    "evaluate_windows",
    "iter_transitions",
    "last_fire_at_or_before",
    "next_fire_after",
    "parse_time_zone",
    "format_duration",
    "parse_duration",
    "parse_optional_duration",
]
