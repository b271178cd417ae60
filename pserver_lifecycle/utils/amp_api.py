"""AMP panel control adapter (through the ADS controller)."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any

import aiohttp

from pserver_lifecycle.exceptions import ConfigError, ControlError, ControlErrorKind
from pserver_lifecycle.models import RemoteState, StatusPayload
from pserver_lifecycle.utils.control_api import DEFAULT_REQUEST_TIMEOUT, ControlClient
from pserver_lifecycle.utils.durations import parse_duration
from pserver_lifecycle.utils.pterodactyl_api import parse_retry_after

log = logging.getLogger(__name__)

DEFAULT_INSTANCE_START_TIMEOUT = 30.0
LOGIN_POLL_INTERVAL = 0.5

# AMP ApplicationState values
_STATE_MAP = {
    0: RemoteState.OFFLINE,  # Stopped
    5: RemoteState.STARTING,  # PreStart
    7: RemoteState.STARTING,  # Configuring
    10: RemoteState.STARTING,  # Starting
    20: RemoteState.ONLINE,  # Ready
    30: RemoteState.RESTARTING,
    40: RemoteState.STOPPING,
    45: RemoteState.STOPPING,  # PreparingForSleep
    50: RemoteState.OFFLINE,  # Sleeping
    100: RemoteState.FAILED,
}


class StartMode(Enum):
    """What a start request brings up."""

    INSTANCE_AND_SERVER = "instance_and_server"
    SERVER = "server"


class StopMode(Enum):
    """What a stop request takes down."""

    INSTANCE_AND_SERVER = "instance_and_server"
    SERVER = "server"


def parse_application_state(data: Any) -> StatusPayload:
    """Parse a Core/GetStatus response.

    Args:
        data: Decoded JSON response

    Returns:
        StatusPayload with the normalized state
    """
    if not isinstance(data, dict):
        return StatusPayload()
    state = data.get("State")
    if not isinstance(state, int):
        return StatusPayload(detail=data)
    return StatusPayload(_STATE_MAP.get(state, RemoteState.UNKNOWN), data)


def check_action_result(data: Any, action: str) -> None:
    """Raise if an AMP ActionResult reports failure.

    Args:
        data: Decoded JSON response (ActionResult or null)
        action: Action name for the error message

    Raises:
        ControlError: If the result's Status is false
    """
    if isinstance(data, dict) and data.get("Status") is False:
        reason = data.get("Reason") or "no reason given"
        raise ControlError(ControlErrorKind.UNKNOWN, f"{action} rejected: {reason}")


class AmpClient(ControlClient):
    """Controls an AMP instance through its ADS controller.

    Sessions are created lazily and dropped when AMP reports the session as
    unauthorized, so the next attempt logs in again.
    """

    TYPE = "amp"
    REQUIRED_OPTIONS = ("ads_url", "username", "password", "instance_id")

    def __init__(
        self,
        server_name: str,
        ads_url: str,
        username: str,
        password: str,
        instance_id: str,
        token: str = "",
        remember_me: bool = False,
        start_mode: StartMode = StartMode.INSTANCE_AND_SERVER,
        stop_mode: StopMode = StopMode.SERVER,
        instance_start_timeout: float = DEFAULT_INSTANCE_START_TIMEOUT,
        login_poll_interval: float = LOGIN_POLL_INTERVAL,
        session: aiohttp.ClientSession | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Initialize AMP client.

        Args:
            server_name: Name of the controlled server
            ads_url: ADS base URL (e.g., "http://localhost:8080/")
            username: AMP username
            password: AMP password
            instance_id: Instance ID or name to control
            token: 2FA or remember-me token
            remember_me: Whether to request a remember-me session
            start_mode: Start the instance too, or only the server
            stop_mode: Stop the instance too, or only the server
            instance_start_timeout: Seconds to wait for a started instance to
                accept logins
            login_poll_interval: Seconds between instance login attempts
            session: Shared HTTP session (one is created if omitted)
            request_timeout: Timeout for each request in seconds
        """
        super().__init__(server_name)
        self.ads_url = ads_url if ads_url.endswith("/") else ads_url + "/"
        self.instance_id = instance_id
        self.start_mode = start_mode
        self.stop_mode = stop_mode
        self.instance_start_timeout = instance_start_timeout
        self.login_poll_interval = login_poll_interval
        self.request_timeout = request_timeout
        self._username = username
        self._password = password
        self._token = token or ""
        self._remember_me = remember_me
        self._session = session
        self._owns_session = session is None
        self._ads_session_id: str | None = None
        self._instance_session_id: str | None = None

    @classmethod
    def validate_options(cls, options):
        super().validate_options(options)
        _instance_start_timeout(options)

    @classmethod
    def from_options(cls, server_name, options, session=None, request_timeout=DEFAULT_REQUEST_TIMEOUT):
        try:
            start_mode = StartMode(str(options.get("start") or "instance_and_server").lower())
        except ValueError:
            log.warning("Server '%s': unknown AMP start mode %r, using instance_and_server", server_name, options.get("start"))
            start_mode = StartMode.INSTANCE_AND_SERVER
        try:
            stop_mode = StopMode(str(options.get("stop") or "server").lower())
        except ValueError:
            log.warning("Server '%s': unknown AMP stop mode %r, using server", server_name, options.get("stop"))
            stop_mode = StopMode.SERVER

        instance_start_timeout = _instance_start_timeout(options)
        return cls(
            server_name,
            ads_url=str(options["ads_url"]),
            username=str(options["username"]),
            password=str(options["password"]),
            instance_id=str(options["instance_id"]),
            token=str(options.get("token") or ""),
            remember_me=bool(options.get("remember_me", False)),
            start_mode=start_mode,
            stop_mode=stop_mode,
            instance_start_timeout=instance_start_timeout,
            session=session,
            request_timeout=request_timeout,
        )

    @property
    def _instance_api(self) -> str:
        return f"{self.ads_url}API/ADSModule/Servers/{self.instance_id}/API/"

    @property
    def _ads_api(self) -> str:
        return f"{self.ads_url}API/"

    async def _post(self, url: str, payload: dict[str, Any]) -> Any:
        """POST a JSON payload and decode the response.

        Raises:
            ControlError: On HTTP, connection and authorization failures
        """
        if self._session is None:
            self._session = aiohttp.ClientSession()

        try:
            async with self._session.post(
                url,
                json=payload,
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            ) as response:
                if response.status in (401, 403):
                    raise ControlError(ControlErrorKind.UNAUTHORIZED, f"HTTP {response.status}")
                if response.status == 404:
                    raise ControlError(ControlErrorKind.SERVER_NOT_FOUND, f"instance '{self.instance_id}' not found")
                if response.status == 429:
                    raise ControlError(
                        ControlErrorKind.RATE_LIMITED,
                        "too many requests",
                        retry_after=parse_retry_after(response.headers.get("Retry-After")),
                    )
                if response.status >= 500:
                    raise ControlError(ControlErrorKind.UNREACHABLE, f"ADS returned HTTP {response.status}")
                if response.status != 200:
                    raise ControlError(ControlErrorKind.UNKNOWN, f"unexpected HTTP {response.status}")
                data = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ControlError(ControlErrorKind.TIMEOUT, f"request to {url} timed out") from e
        except aiohttp.ClientError as e:
            raise ControlError(ControlErrorKind.UNREACHABLE, str(e) or type(e).__name__) from e
        except ValueError as e:
            raise ControlError(ControlErrorKind.UNKNOWN, f"invalid JSON from ADS: {e}") from e

        if isinstance(data, dict) and data.get("Title") == "Unauthorized Access":
            raise ControlError(ControlErrorKind.UNAUTHORIZED, data.get("Message") or "session rejected")
        return data

    async def _login(self, api_base: str) -> str:
        data = await self._post(
            f"{api_base}Core/Login",
            {
                "username": self._username,
                "password": self._password,
                "token": self._token,
                "rememberMe": self._remember_me,
            },
        )
        session_id = data.get("sessionID") if isinstance(data, dict) else None
        if not (isinstance(data, dict) and data.get("success") and session_id):
            raise ControlError(ControlErrorKind.UNAUTHORIZED, "login failed (invalid credentials?)")
        return session_id

    async def _ads_call(self, method: str, **params: Any) -> Any:
        if self._ads_session_id is None:
            log.debug("Server '%s': logging in to ADS at %s", self.server_name, self.ads_url)
            self._ads_session_id = await self._login(self._ads_api)
        try:
            return await self._post(f"{self._ads_api}{method}", {"SESSIONID": self._ads_session_id, **params})
        except ControlError as e:
            if e.kind is ControlErrorKind.UNAUTHORIZED:
                self._ads_session_id = None
            raise

    async def _instance_call(self, method: str, **params: Any) -> Any:
        if self._instance_session_id is None:
            log.debug("Server '%s': logging in to instance '%s'", self.server_name, self.instance_id)
            self._instance_session_id = await self._login(self._instance_api)
        try:
            return await self._post(
                f"{self._instance_api}{method}", {"SESSIONID": self._instance_session_id, **params}
            )
        except ControlError as e:
            if e.kind is ControlErrorKind.UNAUTHORIZED:
                self._instance_session_id = None
            raise

    async def _wait_for_instance_login(self) -> None:
        """Poll the instance login until it succeeds or the start timeout passes.

        A freshly started instance refuses logins for a while. On timeout the
        start proceeds and the next instance call reports the failure.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.instance_start_timeout
        attempts = 0
        while loop.time() < deadline:
            attempts += 1
            try:
                self._instance_session_id = await self._login(self._instance_api)
            except ControlError as e:
                log.debug(
                    "Server '%s': instance '%s' not accepting logins yet (attempt %d): %s",
                    self.server_name,
                    self.instance_id,
                    attempts,
                    e,
                )
                await asyncio.sleep(self.login_poll_interval)
                continue
            log.debug(
                "Server '%s': instance '%s' accepts logins after %d attempt(s)",
                self.server_name,
                self.instance_id,
                attempts,
            )
            return

        log.warning(
            "Server '%s': instance '%s' did not accept logins within %ss, starting anyway",
            self.server_name,
            self.instance_id,
            f"{self.instance_start_timeout:g}",
        )

    async def start(self) -> StatusPayload:
        if self.start_mode is StartMode.INSTANCE_AND_SERVER:
            result = await self._ads_call("ADSModule/StartInstance", InstanceName=self.instance_id)
            if isinstance(result, dict) and result.get("Status") is False:
                # Already running instances report failure here
                log.debug("Server '%s': StartInstance returned %s", self.server_name, result.get("Reason"))
            # The instance restarts with fresh sessions
            self._instance_session_id = None
            await self._wait_for_instance_login()
        check_action_result(await self._instance_call("Core/Start"), "Start")
        return StatusPayload()

    async def stop(self) -> StatusPayload:
        if self.stop_mode is StopMode.INSTANCE_AND_SERVER:
            check_action_result(
                await self._ads_call("ADSModule/StopInstance", InstanceName=self.instance_id), "StopInstance"
            )
            self._instance_session_id = None
            return StatusPayload(RemoteState.OFFLINE)
        check_action_result(await self._instance_call("Core/Stop"), "Stop")
        return StatusPayload()

    async def status(self) -> StatusPayload:
        return parse_application_state(await self._instance_call("Core/GetStatus"))

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


def _instance_start_timeout(options: dict[str, Any]) -> float:
    value = options.get("instance_start_timeout")
    if value is None:
        return DEFAULT_INSTANCE_START_TIMEOUT
    try:
        return parse_duration(value)
    except ConfigError as e:
        raise ConfigError(f"control_api 'amp': instance_start_timeout: {e}") from e
