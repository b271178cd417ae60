"""Control API adapter interface."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

from pserver_lifecycle.exceptions import ConfigError, ControlError, ControlErrorKind
from pserver_lifecycle.models import ControlAction, ControlCommand, StatusPayload

if TYPE_CHECKING:
    import aiohttp

DEFAULT_REQUEST_TIMEOUT = 30.0


class ControlClient:
    """Starts, stops and queries one remote server instance.

    Subclasses implement ``start``, ``stop`` and ``status``. Implementations
    raise ControlError on failure and never retry; retrying is the
    orchestrator's job. A client may be shared by concurrent callers and
    must not hold locks across network calls.
    """

    TYPE: ClassVar[str] = ""
    REQUIRED_OPTIONS: ClassVar[tuple[str, ...]] = ()

    def __init__(self, server_name: str) -> None:
        """Initialize control client.

        Args:
            server_name: Name of the controlled server (for log messages)
        """
        self.server_name = server_name

    @classmethod
    def validate_options(cls, options: dict[str, Any]) -> None:
        """Check that required adapter options are present.

        Args:
            options: Adapter options from configuration

        Raises:
            ConfigError: If a required option is missing or blank
        """
        for key in cls.REQUIRED_OPTIONS:
            value = options.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ConfigError(f"control_api '{cls.TYPE}' requires option '{key}'")

    @classmethod
    def from_options(
        cls,
        server_name: str,
        options: dict[str, Any],
        session: aiohttp.ClientSession | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> ControlClient:
        """Build a client from configuration options.

        Args:
            server_name: Name of the controlled server
            options: Adapter options
            session: Shared HTTP session (HTTP adapters only)
            request_timeout: Per-request timeout in seconds (HTTP adapters only)

        Returns:
            Configured client
        """
        raise NotImplementedError

    async def execute(self, command: ControlCommand) -> StatusPayload:
        """Execute a control command.

        Args:
            command: Command to execute

        Returns:
            Status payload (empty for start/stop unless the panel returns one)

        Raises:
            ControlError: If the call failed
        """
        if command.action is ControlAction.START:
            return await self.start()
        if command.action is ControlAction.STOP:
            return await self.stop()
        if command.action is ControlAction.STATUS:
            return await self.status()
        raise ControlError(ControlErrorKind.UNKNOWN, f"Unsupported action {command.action!r}")

    async def start(self) -> StatusPayload:
        """Request the server to start."""
        raise NotImplementedError

    async def stop(self) -> StatusPayload:
        """Request the server to stop."""
        raise NotImplementedError

    async def status(self) -> StatusPayload:
        """Query the server's current state."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release adapter resources (shared sessions are not closed)."""
