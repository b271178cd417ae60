"""Service tracking connected players per server."""

from __future__ import annotations

import logging
from typing import Any, Callable

from pserver_lifecycle.exceptions import InvariantViolation
from pserver_lifecycle.models import PresenceChanged

log = logging.getLogger(__name__)

EventSink = Callable[[PresenceChanged], Any]


class PresenceTracker:
    """Counts players per server from proxy connect/disconnect notifications.

    Only the first-player and last-player edges are forwarded to the sink.
    Players are tracked by ID, so duplicate notifications do not skew counts.
    """

    def __init__(self, sink: EventSink) -> None:
        """Initialize presence tracker.

        Args:
            sink: Receives PresenceChanged events
        """
        self._sink = sink
        self._players: dict[str, set[str]] = {}

    def count(self, server_id: str) -> int:
        """Get the number of connected players.

        Args:
            server_id: Server ID

        Returns:
            Player count (0 for unknown servers)
        """
        return len(self._players.get(server_id, ()))

    def players(self, server_id: str) -> frozenset[str]:
        """Get IDs of connected players.

        Args:
            server_id: Server ID

        Returns:
            Frozen set of player IDs
        """
        return frozenset(self._players.get(server_id, ()))

    def on_player_connect(self, server_id: str, player_id: str) -> None:
        """Record a player joining a server.

        Args:
            server_id: Server the player connected to
            player_id: Player ID
        """
        players = self._players.setdefault(server_id, set())
        if player_id in players:
            log.debug("Server '%s': duplicate connect for player %s", server_id, player_id)
            return
        players.add(player_id)
        log.debug("Server '%s': player %s connected (%d online)", server_id, player_id, len(players))
        if len(players) == 1:
            self._sink(PresenceChanged(server_id, 1))

    def on_player_disconnect(self, server_id: str, player_id: str) -> None:
        """Record a player leaving a server.

        Unknown players are logged and ignored; the count never goes negative.

        Args:
            server_id: Server the player left
            player_id: Player ID
        """
        try:
            players = self._players_with(server_id, player_id)
        except InvariantViolation as e:
            log.warning("Ignoring presence anomaly: %s", e)
            return

        players.discard(player_id)
        log.debug("Server '%s': player %s disconnected (%d online)", server_id, player_id, len(players))
        if not players:
            del self._players[server_id]
            self._sink(PresenceChanged(server_id, 0))

    def _players_with(self, server_id: str, player_id: str) -> set[str]:
        players = self._players.get(server_id)
        if not players or player_id not in players:
            raise InvariantViolation(f"disconnect of player {player_id} who is not on '{server_id}'")
        return players

    def on_player_switch(self, player_id: str, previous_server: str | None, server_id: str) -> None:
        """Record a player moving between servers.

        Args:
            player_id: Player ID
            previous_server: Server the player left (None on first join)
            server_id: Server the player joined
        """
        if previous_server is not None:
            self.on_player_disconnect(previous_server, player_id)
        self.on_player_connect(server_id, player_id)

