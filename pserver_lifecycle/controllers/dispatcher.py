"""Routes events to per-server orchestrators.

Each registered server gets a mailbox: an asyncio queue drained by one worker
task. Events for one server are handled strictly in arrival order, while
servers never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine

from pserver_lifecycle.controllers.orchestrator import ServerOrchestrator
from pserver_lifecycle.exceptions import InvariantViolation
from pserver_lifecycle.models import Alert, ServerEvent, StateSnapshot

log = logging.getLogger(__name__)

AlertHandler = Callable[[Alert], None]


class _Mailbox:
    """Event queue, worker task and owned tasks of one orchestrator."""

    def __init__(self, orchestrator: ServerOrchestrator) -> None:
        self.orchestrator = orchestrator
        self.queue: asyncio.Queue[ServerEvent] = asyncio.Queue()
        self.tasks: set[asyncio.Task] = set()
        self.worker: asyncio.Task | None = None
        self.closed = False

    def post(self, event: ServerEvent) -> None:
        if self.closed:
            log.debug("Server '%s': dropping %s after removal", self.orchestrator.server_id, type(event).__name__)
            return
        self.queue.put_nowait(event)

    def spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        if self.closed:
            coro.close()
            return
        task = asyncio.get_running_loop().create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    def start(self) -> None:
        self.worker = asyncio.get_running_loop().create_task(
            self.run(), name=f"orchestrator-{self.orchestrator.server_id}"
        )

    async def run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                self.orchestrator.handle(event)
            except Exception:
                # One server's failure must not stop its mailbox
                log.exception(
                    "Server '%s': error while handling %s", self.orchestrator.server_id, type(event).__name__
                )
            finally:
                self.queue.task_done()

    async def join(self) -> None:
        while True:
            await self.queue.join()
            running = [task for task in self.tasks if not task.done()]
            if not running:
                if self.queue.empty():
                    return
                continue
            await asyncio.gather(*running, return_exceptions=True)

    def close(self) -> list[asyncio.Task]:
        self.closed = True
        self.orchestrator.close()
        cancelled = []
        if self.worker is not None:
            self.worker.cancel()
            cancelled.append(self.worker)
        for task in list(self.tasks):
            task.cancel()
            cancelled.append(task)
        return cancelled


class Dispatcher:
    """Owns the mailboxes of every managed server."""

    def __init__(self) -> None:
        self._mailboxes: dict[str, _Mailbox] = {}
        self._alert_handlers: list[AlertHandler] = []
        self._closing: list[asyncio.Task] = []

    @property
    def server_ids(self) -> list[str]:
        """Get IDs of registered servers."""
        return list(self._mailboxes)

    def get(self, server_id: str) -> ServerOrchestrator | None:
        """Get a registered orchestrator.

        Args:
            server_id: Server ID

        Returns:
            ServerOrchestrator or None if not registered
        """
        mailbox = self._mailboxes.get(server_id)
        return mailbox.orchestrator if mailbox else None

    def register(self, orchestrator: ServerOrchestrator) -> bool:
        """Register an orchestrator and start its worker.

        Must be called from within a running event loop.

        Args:
            orchestrator: Orchestrator to register

        Returns:
            True if registered, False if the server ID was already taken
        """
        try:
            self._check_unregistered(orchestrator.server_id)
        except InvariantViolation as e:
            log.error("Ignoring registration: %s", e)
            return False

        mailbox = _Mailbox(orchestrator)
        orchestrator.attach(mailbox.post, mailbox.spawn, self.publish_alert)
        mailbox.start()
        self._mailboxes[orchestrator.server_id] = mailbox
        log.debug("Server '%s': registered", orchestrator.server_id)
        return True

    def _check_unregistered(self, server_id: str) -> None:
        if server_id in self._mailboxes:
            raise InvariantViolation(f"server id '{server_id}' is already registered")

    def unregister(self, server_id: str) -> ServerOrchestrator | None:
        """Remove an orchestrator, cancel its timers, worker and in-flight commands.

        Args:
            server_id: Server ID

        Returns:
            The removed orchestrator, or None if it was not registered
        """
        mailbox = self._mailboxes.pop(server_id, None)
        if mailbox is None:
            return None
        self._closing.extend(mailbox.close())
        log.debug("Server '%s': unregistered", server_id)
        return mailbox.orchestrator

    def dispatch(self, event: ServerEvent) -> bool:
        """Queue an event for its server.

        Args:
            event: Event to deliver

        Returns:
            True if queued, False if the server is unknown
        """
        mailbox = self._mailboxes.get(event.server_id)
        if mailbox is None:
            log.warning("Dropping %s for unknown server '%s'", type(event).__name__, event.server_id)
            return False
        mailbox.post(event)
        return True

    def snapshot(self, server_id: str) -> StateSnapshot | None:
        """Get a read-only view of one server's state.

        Args:
            server_id: Server ID

        Returns:
            StateSnapshot or None if the server is unknown
        """
        mailbox = self._mailboxes.get(server_id)
        return mailbox.orchestrator.snapshot() if mailbox else None

    def snapshots(self) -> list[StateSnapshot]:
        """Get read-only views of every server, in registration order."""
        return [mailbox.orchestrator.snapshot() for mailbox in self._mailboxes.values()]

    def add_alert_handler(self, handler: AlertHandler) -> None:
        """Register a callable that receives every alert.

        Args:
            handler: Alert callback
        """
        self._alert_handlers.append(handler)

    def publish_alert(self, alert: Alert) -> None:
        """Deliver an alert to every handler.

        Args:
            alert: Alert to deliver
        """
        log.error("Server '%s': ALERT (%s) %s", alert.server_id, alert.phase.value, alert.message)
        for handler in self._alert_handlers:
            try:
                handler(alert)
            except Exception:
                log.exception("Alert handler %r failed", handler)

    async def join(self) -> None:
        """Wait until every mailbox is empty and no command is in flight.

        Armed timers do not count; they fire later.
        """
        while True:
            mailboxes = list(self._mailboxes.values())
            for mailbox in mailboxes:
                await mailbox.join()
            if all(m.queue.empty() and not any(not t.done() for t in m.tasks) for m in mailboxes):
                return

    async def close(self) -> None:
        """Unregister every server and wait for their tasks to finish."""
        for server_id in list(self._mailboxes):
            self.unregister(server_id)
        closing, self._closing = self._closing, []
        if closing:
            await asyncio.gather(*closing, return_exceptions=True)
