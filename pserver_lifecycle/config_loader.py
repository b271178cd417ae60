"""Configuration loader for managed servers."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from pserver_lifecycle.exceptions import ConfigError
from pserver_lifecycle.models import ControlApiDefinition, ManagedServer, ScheduleDefinition
from pserver_lifecycle.utils.backoff import RetryPolicy
from pserver_lifecycle.utils.control_registry import validate_control_api
from pserver_lifecycle.utils.cron import validate_schedule
from pserver_lifecycle.utils.durations import parse_duration, parse_optional_duration

log = logging.getLogger(__name__)

SERVER_KEYS = {
    "id",
    "name",
    "schedules",
    "idle_timeout",
    "minimum_uptime",
    "cooldown",
    "command_timeout",
    "retry",
    "control_api",
}
SCHEDULE_KEYS = {"start", "expression", "stop", "duration", "time_zone", "timezone", "name"}
RETRY_KEYS = {"max_retries", "base_delay", "max_delay", "multiplier", "jitter", "rate_limit_cooldown"}


@dataclass(frozen=True)
class LifecycleSettings:
    """Global settings from the ``settings`` section."""

    scheduler_tick: float = 60.0
    request_timeout: float = 30.0
    sync_status_on_start: bool = True
    stop_on_shutdown: bool = False
    shutdown_timeout: float = 30.0
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> LifecycleSettings:
        """Create settings from a mapping.

        Args:
            data: ``settings`` section (may be None)

        Returns:
            LifecycleSettings instance
        """
        data = data or {}
        try:
            settings = cls(
                scheduler_tick=parse_duration(data.get("scheduler_tick", "60s")),
                request_timeout=parse_duration(data.get("request_timeout", "30s")),
                sync_status_on_start=bool(data.get("sync_status_on_start", True)),
                stop_on_shutdown=bool(data.get("stop_on_shutdown", False)),
                shutdown_timeout=parse_duration(data.get("shutdown_timeout", "30s")),
                log_level=str(data.get("log_level", "INFO")).upper(),
            )
        except ConfigError as e:
            raise ConfigError(f"settings: {e}") from e

        if settings.scheduler_tick <= 0:
            raise ConfigError("settings: scheduler_tick must be positive")
        return settings


@dataclass
class LifecycleConfig:
    """Complete loaded configuration."""

    settings: LifecycleSettings = field(default_factory=LifecycleSettings)
    servers: list[ManagedServer] = field(default_factory=list)

    def get_server(self, server_id: str) -> ManagedServer | None:
        """Get a server by ID.

        Args:
            server_id: Server ID to find

        Returns:
            ManagedServer or None if not found
        """
        for server in self.servers:
            if server.id == server_id:
                return server
        return None


def expand_env(value: Any) -> Any:
    """Expand ``${VAR}`` references in every string of a YAML tree.

    Args:
        value: Parsed YAML value

    Returns:
        Value with environment variables substituted
    """
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    return value


def merge_defaults(defaults: dict[str, Any], data: dict[str, Any]) -> dict[str, Any]:
    """Merge server data over defaults; nested mappings merge key by key.

    Args:
        defaults: Default server values
        data: Server values

    Returns:
        New merged mapping
    """
    merged = dict(defaults)
    for key, value in data.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _check_keys(data: dict[str, Any], allowed: set[str], where: str) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(f"{where}: unknown key(s) {', '.join(unknown)}")


def _duration(data: dict[str, Any], key: str, default: Any, where: str) -> float:
    try:
        return parse_duration(data.get(key, default))
    except ConfigError as e:
        raise ConfigError(f"{where}: {key}: {e}") from e


def parse_schedule(data: dict[str, Any], where: str) -> ScheduleDefinition:
    """Parse one schedule entry.

    Args:
        data: Schedule mapping
        where: Location prefix for error messages

    Returns:
        Validated ScheduleDefinition
    """
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: schedule must be a mapping")
    _check_keys(data, SCHEDULE_KEYS, where)

    duration = None
    if data.get("duration") is not None:
        duration = _duration(data, "duration", None, where)

    schedule = ScheduleDefinition(
        start=str(data.get("start", data.get("expression", ""))),
        stop=str(data["stop"]) if data.get("stop") is not None else None,
        duration=duration,
        time_zone=str(data.get("time_zone", data.get("timezone", "UTC"))),
        name=str(data.get("name", "")),
    )
    try:
        validate_schedule(schedule)
    except ConfigError as e:
        raise ConfigError(f"{where}: {e}") from e
    return schedule


def parse_retry(data: dict[str, Any] | None, where: str) -> RetryPolicy:
    """Parse the retry section.

    Args:
        data: Retry mapping (may be None)
        where: Location prefix for error messages

    Returns:
        RetryPolicy instance
    """
    data = data or {}
    _check_keys(data, RETRY_KEYS, where)
    defaults = RetryPolicy()
    try:
        policy = RetryPolicy(
            max_retries=int(data.get("max_retries", defaults.max_retries)),
            base_delay=_duration(data, "base_delay", "1s", where),
            max_delay=_duration(data, "max_delay", "5m", where),
            multiplier=float(data.get("multiplier", defaults.multiplier)),
            jitter=float(data.get("jitter", defaults.jitter)),
            rate_limit_cooldown=_duration(data, "rate_limit_cooldown", "30s", where),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{where}: {e}") from e

    if policy.max_retries < 0:
        raise ConfigError(f"{where}: max_retries cannot be negative")
    if policy.multiplier < 1:
        raise ConfigError(f"{where}: multiplier must be at least 1")
    if not 0 <= policy.jitter < 1:
        raise ConfigError(f"{where}: jitter must be between 0 and 1")
    return policy


def parse_server(server_id: str, data: dict[str, Any]) -> ManagedServer:
    """Parse one server definition.

    Args:
        server_id: Server ID (mapping key or file stem)
        data: Server mapping, already merged with defaults

    Returns:
        Validated ManagedServer
    """
    where = f"Server '{server_id}'"
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: definition must be a mapping")
    _check_keys(data, SERVER_KEYS, where)

    schedules_data = data.get("schedules") or []
    if not isinstance(schedules_data, list):
        raise ConfigError(f"{where}: schedules must be a list")
    schedules = tuple(
        parse_schedule(entry, f"{where} schedule #{index + 1}") for index, entry in enumerate(schedules_data)
    )

    try:
        idle_timeout = parse_optional_duration(data.get("idle_timeout"))
    except ConfigError as e:
        raise ConfigError(f"{where}: idle_timeout: {e}") from e

    control_data = data.get("control_api")
    if not isinstance(control_data, dict) or not control_data.get("type"):
        raise ConfigError(f"{where}: control_api with a 'type' is required")
    options = {k: v for k, v in control_data.items() if k != "type"}
    control_api = ControlApiDefinition(type=str(control_data["type"]).lower(), options=options)
    try:
        validate_control_api(control_api)
    except ConfigError as e:
        raise ConfigError(f"{where}: {e}") from e

    return ManagedServer(
        id=server_id,
        name=str(data.get("name") or server_id),
        schedules=schedules,
        idle_timeout=idle_timeout,
        minimum_uptime=_duration(data, "minimum_uptime", 0, where),
        cooldown=_duration(data, "cooldown", 0, where),
        command_timeout=_duration(data, "command_timeout", "30s", where),
        retry=parse_retry(data.get("retry"), f"{where} retry"),
        control_api=control_api,
    )


class ConfigLoader:
    """Loads settings and server definitions from YAML files."""

    def __init__(self, config_path: Path, servers_dir: Path | None = None):
        """Initialize config loader.

        Args:
            config_path: Main configuration file
            servers_dir: Directory of per-server YAML files (defaults to
                a ``servers`` directory next to the main file)
        """
        self.config_path = config_path
        self.servers_dir = servers_dir if servers_dir else config_path.parent / "servers"

    def _read_yaml(self, path: Path) -> dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: top level must be a mapping")
        return expand_env(data)

    def load(self) -> LifecycleConfig:
        """Load the complete configuration.

        Returns:
            LifecycleConfig with validated servers

        Raises:
            ConfigError: If any file or definition is invalid
        """
        data = self._read_yaml(self.config_path)
        settings = LifecycleSettings.from_dict(data.get("settings"))

        defaults_section = data.get("defaults") or {}
        defaults = defaults_section.get("server") or {} if isinstance(defaults_section, dict) else None
        if not isinstance(defaults, dict):
            raise ConfigError("defaults.server must be a mapping")

        raw_servers: list[tuple[str, dict[str, Any], str]] = []
        servers_section = data.get("servers") or {}
        if not isinstance(servers_section, dict):
            raise ConfigError("servers must be a mapping of server id to definition")
        for server_id, server_data in servers_section.items():
            raw_servers.append((str(server_id), server_data, str(self.config_path)))
        raw_servers.extend(self.load_server_files())

        servers: list[ManagedServer] = []
        seen: dict[str, str] = {}
        for server_id, server_data, source in raw_servers:
            if server_id in seen:
                raise ConfigError(f"Duplicate server id '{server_id}' in {source} (first defined in {seen[server_id]})")
            seen[server_id] = source
            if not isinstance(server_data, dict):
                raise ConfigError(f"Server '{server_id}': definition must be a mapping")
            servers.append(parse_server(server_id, merge_defaults(defaults, server_data)))

        log.info("Configuration loaded from %s (servers: %d)", self.config_path, len(servers))
        return LifecycleConfig(settings=settings, servers=servers)

    def load_server_files(self) -> list[tuple[str, dict[str, Any], str]]:
        """Load raw server definitions from the servers directory.

        Returns:
            List of (server_id, data, source_path) tuples, sorted by file name
        """
        servers: list[tuple[str, dict[str, Any], str]] = []
        if not self.servers_dir.is_dir():
            return servers

        for yaml_file in sorted(self.servers_dir.glob("*.yaml")):
            data = self._read_yaml(yaml_file)
            server_id = str(data.pop("id", yaml_file.stem))
            servers.append((server_id, data, str(yaml_file)))

        return servers
