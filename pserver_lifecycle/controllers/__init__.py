"""Controllers module for per-server lifecycle decisions."""

from pserver_lifecycle.controllers.dispatcher import Dispatcher
from pserver_lifecycle.controllers.orchestrator import ServerOrchestrator

__all__ = [
    "Dispatcher",
    "ServerOrchestrator",
]
