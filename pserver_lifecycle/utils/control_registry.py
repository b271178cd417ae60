"""Registry of control API adapter types."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pserver_lifecycle.exceptions import ConfigError
from pserver_lifecycle.utils.amp_api import AmpClient
from pserver_lifecycle.utils.control_api import DEFAULT_REQUEST_TIMEOUT
from pserver_lifecycle.utils.pterodactyl_api import PterodactylClient
from pserver_lifecycle.utils.shell_api import ShellClient

if TYPE_CHECKING:
    import aiohttp

    from pserver_lifecycle.models import ControlApiDefinition
    from pserver_lifecycle.utils.control_api import ControlClient

CONTROL_API_TYPES: dict[str, type[ControlClient]] = {
    AmpClient.TYPE: AmpClient,
    PterodactylClient.TYPE: PterodactylClient,
    ShellClient.TYPE: ShellClient,
}


def get_client_class(type_name: str) -> type[ControlClient]:
    """Look up an adapter class by type name.

    Args:
        type_name: Control API type from configuration

    Returns:
        Adapter class

    Raises:
        ConfigError: If the type is unknown
    """
    client_class = CONTROL_API_TYPES.get(type_name.lower())
    if client_class is None:
        known = ", ".join(sorted(CONTROL_API_TYPES))
        raise ConfigError(f"Unknown control_api type {type_name!r} (expected one of: {known})")
    return client_class


def validate_control_api(definition: ControlApiDefinition) -> None:
    """Validate a control API definition.

    Args:
        definition: Definition to validate

    Raises:
        ConfigError: If the type is unknown or options are missing
    """
    get_client_class(definition.type).validate_options(definition.options)


def create_control_client(
    server_name: str,
    definition: ControlApiDefinition,
    session: aiohttp.ClientSession | None = None,
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> ControlClient:
    """Create an adapter for a server.

    Args:
        server_name: Name of the controlled server
        definition: Control API definition
        session: Shared HTTP session
        request_timeout: Per-request timeout for HTTP adapters, in seconds

    Returns:
        Configured adapter
    """
    client_class = get_client_class(definition.type)
    client_class.validate_options(definition.options)
    return client_class.from_options(server_name, definition.options, session, request_timeout)
