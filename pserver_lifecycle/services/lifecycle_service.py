"""Service wiring schedules, presence and orchestrators together."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
from dataclasses import dataclass, field
from typing import Callable, Iterable

import aiohttp

from pserver_lifecycle.config_loader import LifecycleSettings
from pserver_lifecycle.controllers.dispatcher import AlertHandler, Dispatcher
from pserver_lifecycle.controllers.orchestrator import ServerOrchestrator
from pserver_lifecycle.exceptions import ConfigError, InvariantViolation
from pserver_lifecycle.models import (
    ConfigUpdated,
    ControlAction,
    ManagedServer,
    ManualOverride,
    Phase,
    PresenceChanged,
    ServerEvent,
    StateSnapshot,
)
from pserver_lifecycle.services.presence_service import PresenceTracker
from pserver_lifecycle.services.schedule_service import CronScheduler
from pserver_lifecycle.utils.clock import Clock, LoopClock
from pserver_lifecycle.utils.control_api import ControlClient
from pserver_lifecycle.utils.control_registry import create_control_client

log = logging.getLogger(__name__)

ClientFactory = Callable[[ManagedServer], ControlClient]


@dataclass
class ReconcileResult:
    """Server IDs touched by a reconcile pass."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Check if anything changed."""
        return bool(self.added or self.removed or self.updated)


class LifecycleService:
    """Runs the lifecycle of every managed server.

    Owns the dispatcher, the cron scheduler, the presence tracker and one
    shared HTTP session. Proxy glue calls the presence hooks; operators call
    the manual overrides; observers read snapshots.
    """

    def __init__(
        self,
        settings: LifecycleSettings | None = None,
        clock: Clock | None = None,
        client_factory: ClientFactory | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize lifecycle service.

        Args:
            settings: Global settings
            clock: Time source (defaults to the running event loop)
            client_factory: Builds a control client for a server (defaults
                to the configured control API adapter)
            rng: Random source for backoff jitter
        """
        self.settings = settings or LifecycleSettings()
        self.clock = clock or LoopClock()
        self._client_factory = client_factory
        self._rng = rng
        self.dispatcher = Dispatcher()
        self.scheduler = CronScheduler(self.clock, self._dispatch, self.settings.scheduler_tick)
        self.presence = PresenceTracker(self._dispatch_presence)
        self._servers: dict[str, ManagedServer] = {}
        self._session: aiohttp.ClientSession | None = None
        self._started = False
        self._closed = False

    async def __aenter__(self) -> LifecycleService:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def servers(self) -> list[ManagedServer]:
        """Get the managed server definitions."""
        return list(self._servers.values())

    # ------------------------------------------------------------------
    # Setup and reload
    # ------------------------------------------------------------------

    async def start(self, servers: Iterable[ManagedServer]) -> None:
        """Register servers and begin orchestration.

        With ``sync_status_on_start`` every server first queries the panel so
        already running servers are not started twice.

        Args:
            servers: Managed server definitions
        """
        for server in self._unique(servers):
            self._add_server(server, sync_status=self.settings.sync_status_on_start)
        self.scheduler.start()
        self._started = True
        log.info("Lifecycle service started (servers: %d)", len(self._servers))

    async def reconcile(self, servers: Iterable[ManagedServer]) -> ReconcileResult:
        """Apply a new set of server definitions.

        Unchanged servers are not touched; changed servers keep their phase.

        Args:
            servers: New managed server definitions

        Returns:
            ReconcileResult listing added, removed and updated server IDs
        """
        wanted = {server.id: server for server in self._unique(servers)}
        result = ReconcileResult()

        for server_id in [sid for sid in self._servers if sid not in wanted]:
            await self._remove_server(server_id)
            result.removed.append(server_id)

        for server_id, server in wanted.items():
            current = self._servers.get(server_id)
            if current is None:
                if self._add_server(server, sync_status=self.settings.sync_status_on_start):
                    result.added.append(server_id)
            elif current != server:
                self._update_server(current, server)
                result.updated.append(server_id)

        if result.changed:
            log.info(
                "Reconciled servers (added: %d, removed: %d, updated: %d)",
                len(result.added),
                len(result.removed),
                len(result.updated),
            )
        return result

    def _unique(self, servers: Iterable[ManagedServer]) -> list[ManagedServer]:
        unique: dict[str, ManagedServer] = {}
        for server in servers:
            try:
                _check_new_id(unique, server.id)
            except InvariantViolation as e:
                log.error("Ignoring server definition: %s", e)
                continue
            unique[server.id] = server
        return list(unique.values())

    def _add_server(self, server: ManagedServer, sync_status: bool) -> bool:
        orchestrator = ServerOrchestrator(server, self._create_client(server), self.clock, self._rng)
        if not self.dispatcher.register(orchestrator):
            return False
        self._servers[server.id] = server

        if sync_status:
            self.dispatcher.dispatch(ManualOverride(server.id, ControlAction.STATUS))
        try:
            self.scheduler.add_server(server)
        except ConfigError:
            self.dispatcher.unregister(server.id)
            del self._servers[server.id]
            raise
        if self.presence.count(server.id) > 0:
            self.dispatcher.dispatch(PresenceChanged(server.id, 1))
        log.info("Server '%s': now managed", server.id)
        return True

    def _update_server(self, current: ManagedServer, server: ManagedServer) -> None:
        client = None
        if current.control_api != server.control_api or current.display_name != server.display_name:
            client = self._create_client(server)
        self._servers[server.id] = server
        self.dispatcher.dispatch(ConfigUpdated(server.id, server, client))
        if current.schedules != server.schedules:
            self.scheduler.add_server(server)

    async def _remove_server(self, server_id: str) -> None:
        self.scheduler.remove_server(server_id)
        self._servers.pop(server_id, None)
        orchestrator = self.dispatcher.unregister(server_id)
        if orchestrator is not None:
            await orchestrator.client.close()
        log.info("Server '%s': no longer managed", server_id)

    def _create_client(self, server: ManagedServer) -> ControlClient:
        if self._client_factory is not None:
            return self._client_factory(server)
        if server.control_api is None:
            raise ConfigError(f"Server '{server.id}': no control_api configured")
        return create_control_client(
            server.display_name,
            server.control_api,
            self._get_session(),
            request_timeout=self.settings.request_timeout,
        )

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.settings.request_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    # ------------------------------------------------------------------
    # Event sources
    # ------------------------------------------------------------------

    def _dispatch(self, event: ServerEvent) -> None:
        self.dispatcher.dispatch(event)

    def _dispatch_presence(self, event: PresenceChanged) -> None:
        if event.server_id not in self._servers:
            log.debug("Presence change on unmanaged server '%s'", event.server_id)
            return
        self.dispatcher.dispatch(event)

    def on_player_connect(self, server_id: str, player_id: str) -> None:
        """Forward a proxy connect notification.

        Args:
            server_id: Server the player connected to
            player_id: Player ID
        """
        self.presence.on_player_connect(server_id, player_id)

    def on_player_disconnect(self, server_id: str, player_id: str) -> None:
        """Forward a proxy disconnect notification.

        Args:
            server_id: Server the player left
            player_id: Player ID
        """
        self.presence.on_player_disconnect(server_id, player_id)

    def on_player_switch(self, player_id: str, previous_server: str | None, server_id: str) -> None:
        """Forward a proxy server-switch notification.

        Args:
            player_id: Player ID
            previous_server: Server the player left (None on first join)
            server_id: Server the player joined
        """
        self.presence.on_player_switch(player_id, previous_server, server_id)

    def manual_start(self, server_id: str) -> bool:
        """Request a start regardless of schedule and presence.

        Returns:
            True if the server is managed
        """
        return self.dispatcher.dispatch(ManualOverride(server_id, ControlAction.START))

    def manual_stop(self, server_id: str) -> bool:
        """Request a stop, bypassing the minimum-uptime guard.

        Returns:
            True if the server is managed
        """
        return self.dispatcher.dispatch(ManualOverride(server_id, ControlAction.STOP))

    def refresh_status(self, server_id: str) -> bool:
        """Query the panel and correct the phase if it disagrees.

        Returns:
            True if the server is managed
        """
        return self.dispatcher.dispatch(ManualOverride(server_id, ControlAction.STATUS))

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def snapshot(self, server_id: str) -> StateSnapshot | None:
        """Get a read-only view of one server.

        Args:
            server_id: Server ID

        Returns:
            StateSnapshot with the live player count, or None if unknown
        """
        snapshot = self.dispatcher.snapshot(server_id)
        if snapshot is None:
            return None
        return dataclasses.replace(snapshot, player_count=self.presence.count(server_id))

    def snapshots(self) -> list[StateSnapshot]:
        """Get read-only views of every managed server."""
        return [
            dataclasses.replace(snapshot, player_count=self.presence.count(snapshot.server_id))
            for snapshot in self.dispatcher.snapshots()
        ]

    def add_alert_handler(self, handler: AlertHandler) -> None:
        """Register a callable receiving every alert.

        Args:
            handler: Alert callback
        """
        self.dispatcher.add_alert_handler(handler)

    async def join(self) -> None:
        """Wait until all queued events and in-flight commands are processed."""
        await self.dispatcher.join()

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Stop orchestration and release resources.

        With ``stop_on_shutdown`` every logically running server is stopped
        first, waiting at most ``shutdown_timeout`` for the stop commands.
        """
        if self._closed:
            return
        self._closed = True
        self.scheduler.stop()

        if self.settings.stop_on_shutdown and self._started:
            running = [
                snapshot.server_id
                for snapshot in self.dispatcher.snapshots()
                if snapshot.phase.logically_running or snapshot.phase is Phase.STARTING
            ]
            for server_id in running:
                self.manual_stop(server_id)
            if running:
                log.info("Stopping %d server(s) before shutdown", len(running))
                try:
                    await asyncio.wait_for(self.join(), timeout=self.settings.shutdown_timeout)
                except asyncio.TimeoutError:
                    log.warning("Shutdown stop did not finish within %ss", self.settings.shutdown_timeout)

        clients = [
            orchestrator.client
            for orchestrator in (self.dispatcher.get(sid) for sid in self.dispatcher.server_ids)
            if orchestrator is not None
        ]
        await self.dispatcher.close()
        for client in clients:
            await client.close()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        log.info("Lifecycle service closed")


def _check_new_id(seen: dict[str, ManagedServer], server_id: str) -> None:
    if server_id in seen:
        raise InvariantViolation(f"duplicate server id '{server_id}'")
