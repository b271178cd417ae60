"""Shell-command control adapter."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from pserver_lifecycle.exceptions import ControlError, ControlErrorKind
from pserver_lifecycle.models import RemoteState, StatusPayload
from pserver_lifecycle.utils.control_api import DEFAULT_REQUEST_TIMEOUT, ControlClient
from pserver_lifecycle.utils.durations import parse_duration

log = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30.0


class ShellClient(ControlClient):
    """Controls a server by running local shell commands.

    The status command is optional; its exit code decides the state
    (0 = online, anything else = offline).
    """

    TYPE = "shell"
    REQUIRED_OPTIONS = ("start_command", "stop_command")

    def __init__(
        self,
        server_name: str,
        start_command: str,
        stop_command: str,
        status_command: str | None = None,
        working_directory: Path | None = None,
        environment: dict[str, str] | None = None,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        """Initialize shell client.

        Args:
            server_name: Name of the controlled server
            start_command: Command that starts the server
            stop_command: Command that stops the server
            status_command: Command whose exit code reports the state
            working_directory: Directory to run commands in
            environment: Extra environment variables
            command_timeout: Seconds before a command is killed
        """
        super().__init__(server_name)
        self.start_command = start_command
        self.stop_command = stop_command
        self.status_command = status_command
        self.working_directory = working_directory
        self.environment = environment or {}
        self.command_timeout = command_timeout

    @classmethod
    def from_options(cls, server_name, options, session=None, request_timeout=DEFAULT_REQUEST_TIMEOUT):
        timeout = options.get("command_timeout")
        working_directory = options.get("working_directory")
        return cls(
            server_name,
            start_command=str(options["start_command"]),
            stop_command=str(options["stop_command"]),
            status_command=options.get("status_command"),
            working_directory=Path(working_directory) if working_directory else None,
            environment={str(k): str(v) for k, v in (options.get("environment") or {}).items()},
            command_timeout=parse_duration(timeout) if timeout is not None else DEFAULT_COMMAND_TIMEOUT,
        )

    async def _run(self, command: str) -> tuple[int, str]:
        """Run a command and wait for it.

        Returns:
            Tuple of (exit_code, combined_output)

        Raises:
            ControlError: If the command cannot be launched or times out
        """
        log.debug("Server '%s': running %r", self.server_name, command)
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env={**os.environ, **self.environment},
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise ControlError(ControlErrorKind.UNREACHABLE, f"cannot run command: {e}") from e

        try:
            output, _ = await asyncio.wait_for(process.communicate(), timeout=self.command_timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ControlError(
                ControlErrorKind.TIMEOUT, f"command did not finish within {self.command_timeout:g}s"
            ) from e

        return process.returncode, output.decode(errors="replace").strip()

    async def _run_checked(self, command: str, action: str) -> None:
        code, output = await self._run(command)
        if code != 0:
            raise ControlError(ControlErrorKind.UNKNOWN, f"{action} command exited with {code}: {output[-200:]}")

    async def start(self) -> StatusPayload:
        await self._run_checked(self.start_command, "start")
        return StatusPayload()

    async def stop(self) -> StatusPayload:
        await self._run_checked(self.stop_command, "stop")
        return StatusPayload()

    async def status(self) -> StatusPayload:
        if not self.status_command:
            return StatusPayload()
        code, output = await self._run(self.status_command)
        state = RemoteState.ONLINE if code == 0 else RemoteState.OFFLINE
        return StatusPayload(state, {"exit_code": code, "output": output})
