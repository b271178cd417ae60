"""Pterodactyl panel control adapter (client API)."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from pserver_lifecycle.exceptions import ControlError, ControlErrorKind
from pserver_lifecycle.models import RemoteState, StatusPayload
from pserver_lifecycle.utils.control_api import DEFAULT_REQUEST_TIMEOUT, ControlClient

log = logging.getLogger(__name__)

_STATE_MAP = {
    "offline": RemoteState.OFFLINE,
    "starting": RemoteState.STARTING,
    "stopping": RemoteState.STOPPING,
    "running": RemoteState.ONLINE,
}


def parse_error_message(body: str) -> str | None:
    """Extract the first error from a Pterodactyl error response.

    Args:
        body: Response body

    Returns:
        "code: detail" string, or None if the body has no errors
    """
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return None

    errors = data.get("errors") if isinstance(data, dict) else None
    if not errors:
        return None

    first = errors[0]
    if isinstance(first, dict):
        parts = [str(first[key]) for key in ("code", "detail") if first.get(key)]
        return ": ".join(parts) or None
    return str(first)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds.

    Args:
        value: Header value

    Returns:
        Seconds to wait, or None if absent or not numeric
    """
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def error_for_status(status: int, body: str, retry_after: str | None = None) -> ControlError:
    """Map an unexpected HTTP status to a ControlError.

    Args:
        status: HTTP status code
        body: Response body
        retry_after: Retry-After header value

    Returns:
        ControlError describing the failure
    """
    detail = parse_error_message(body)
    if status in (401, 403):
        return ControlError(ControlErrorKind.UNAUTHORIZED, detail or "invalid API key?")
    if status == 404:
        return ControlError(ControlErrorKind.SERVER_NOT_FOUND, detail or "invalid server_id?")
    if status == 429:
        return ControlError(
            ControlErrorKind.RATE_LIMITED,
            detail or "too many requests",
            retry_after=parse_retry_after(retry_after),
        )
    if status >= 500:
        return ControlError(ControlErrorKind.UNREACHABLE, detail or f"panel returned HTTP {status}")
    if status == 422:
        # Usually the server is already in the requested state
        return ControlError(ControlErrorKind.UNKNOWN, detail or "server may be in wrong state (HTTP 422)")
    return ControlError(ControlErrorKind.UNKNOWN, detail or f"unexpected HTTP {status}")


def parse_resources(body: str) -> StatusPayload:
    """Parse a /resources response into a status payload.

    Args:
        body: Response body

    Returns:
        StatusPayload (UNKNOWN state if current_state is missing)
    """
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return StatusPayload()

    if not isinstance(data, dict) or not isinstance(data.get("attributes"), dict):
        return StatusPayload()

    attributes = data["attributes"]
    current = attributes.get("current_state")
    if not isinstance(current, str):
        return StatusPayload(detail=attributes)
    return StatusPayload(_STATE_MAP.get(current.lower(), RemoteState.UNKNOWN), attributes)


class PterodactylClient(ControlClient):
    """Controls a server through the Pterodactyl client API."""

    TYPE = "pterodactyl"
    REQUIRED_OPTIONS = ("panel_url", "api_key", "server_id")

    def __init__(
        self,
        server_name: str,
        panel_url: str,
        api_key: str,
        server_id: str,
        session: aiohttp.ClientSession | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Initialize Pterodactyl client.

        Args:
            server_name: Name of the controlled server
            panel_url: Panel base URL
            api_key: Client API key
            server_id: Panel server identifier
            session: Shared HTTP session (one is created if omitted)
            request_timeout: Timeout for each request in seconds
        """
        super().__init__(server_name)
        self.panel_url = panel_url if panel_url.endswith("/") else panel_url + "/"
        self.server_id = server_id
        self.request_timeout = request_timeout
        self._api_key = api_key
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_options(cls, server_name, options, session=None, request_timeout=DEFAULT_REQUEST_TIMEOUT):
        return cls(
            server_name,
            panel_url=str(options["panel_url"]),
            api_key=str(options["api_key"]),
            server_id=str(options["server_id"]),
            session=session,
            request_timeout=request_timeout,
        )

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "Application/vnd.pterodactyl.v1+json",
            "Content-Type": "application/json",
        }

    def _server_url(self, endpoint: str) -> str:
        return f"{self.panel_url}api/client/servers/{self.server_id}/{endpoint}"

    async def _request(
        self, method: str, endpoint: str, payload: dict[str, Any] | None = None
    ) -> tuple[int, str, str | None]:
        """Send a request to the panel.

        Returns:
            Tuple of (status, body, retry_after_header)

        Raises:
            ControlError: On timeouts and connection failures
        """
        if self._session is None:
            self._session = aiohttp.ClientSession()

        try:
            async with self._session.request(
                method,
                self._server_url(endpoint),
                headers=self._headers,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            ) as response:
                body = await response.text()
                return response.status, body, response.headers.get("Retry-After")
        except asyncio.TimeoutError as e:
            raise ControlError(ControlErrorKind.TIMEOUT, f"{method} {endpoint} timed out") from e
        except aiohttp.ClientError as e:
            raise ControlError(ControlErrorKind.UNREACHABLE, str(e) or type(e).__name__) from e

    async def _power(self, signal: str) -> StatusPayload:
        log.debug("Sending '%s' signal to server '%s' (server_id: %s)", signal, self.server_name, self.server_id)
        status, body, retry_after = await self._request("POST", "power", {"signal": signal})
        if status != 204:
            raise error_for_status(status, body, retry_after)
        return StatusPayload()

    async def start(self) -> StatusPayload:
        return await self._power("start")

    async def stop(self) -> StatusPayload:
        return await self._power("stop")

    async def status(self) -> StatusPayload:
        status, body, retry_after = await self._request("GET", "resources")
        if status != 200:
            raise error_for_status(status, body, retry_after)
        return parse_resources(body)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
