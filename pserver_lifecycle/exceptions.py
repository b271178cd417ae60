"""Exception types for PServer Lifecycle."""

from __future__ import annotations

from enum import Enum


class ConfigError(ValueError):
    """Raised when configuration (schedules, durations, control APIs) is invalid.

    Only raised while loading or registering configuration, never while the
    orchestrators are running.
    """


class ControlErrorKind(Enum):
    """Failure categories reported by control API adapters."""

    UNREACHABLE = "unreachable"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    SERVER_NOT_FOUND = "server_not_found"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ControlError(Exception):
    """A control API call failed."""

    def __init__(
        self, kind: ControlErrorKind, message: str = "", retry_after: float | None = None
    ) -> None:
        """Initialize control error.

        Args:
            kind: Failure category
            message: Human readable detail
            retry_after: Server-provided retry hint in seconds (rate limiting)
        """
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value
        self.retry_after = retry_after

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class InvariantViolation(RuntimeError):
    """An internal invariant was broken (e.g. negative presence count).

    Raised at the point of detection and handled by the owning component,
    which logs it and corrects the state instead of propagating.
    """
