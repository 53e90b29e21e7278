"""
Supervisor — owns the transport lifecycle.

State machine:

    IDLE ──start()──▶ STARTING ──ready──▶ READY
                        ▲   │               │
          port bumped   │   │ exit code 1   │ unexpected exit
                        │   ▼               ▼
                      DEGRADED          RESTARTING ──backoff──▶ STARTING
                        │                   │
           ports spent  ▼   restarts spent  ▼
                      STOPPED ◀──────── stop() from anywhere

Port search and crash recovery are separate paths with separate
budgets: a busy port bumps ``current_port`` and never touches
``restart_attempts``; a crash after readiness restarts on the same port
and never touches the port.

The supervisor is the only component that creates or destroys a
transport. Everything runs on one event loop, so state changes happen
one event at a time and need no locking.
"""

from __future__ import annotations

import asyncio
import logging
import re
from enum import Enum
from typing import Any, Callable, Coroutine

from mcp_gateway.config import STARTUP_FAILURE_EXIT_CODE, ClientConfig
from mcp_gateway.errors import (
    ClientStoppedError,
    PortExhaustedError,
    RestartExhaustedError,
    TransportClosedError,
    TransportStartError,
)
from mcp_gateway.router import ResponseRouter
from mcp_gateway.transport import (
    Transport,
    TransportListener,
    build_transport,
    parse_response,
)

logger = logging.getLogger(__name__)

TransportFactory = Callable[[ClientConfig, int, TransportListener], Transport]

# Log lines from a tool server start with an ISO-8601 timestamp
_TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")
_ADDRESS_IN_USE_MARKERS = ("eaddrinuse", "address already in use")


class SupervisorState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"
    RESTARTING = "restarting"
    STOPPED = "stopped"


class Supervisor(TransportListener):
    """
    Starts, watches and replaces the transport for one client.

    Args:
        config: Client settings (ports, budgets, timings).
        router: Pending-request table; drained whenever a transport is lost.
        transport_factory: Builds a transport for a given port. Defaults to
            the variant selected by ``config.mode``.
    """

    def __init__(
        self,
        config: ClientConfig,
        router: ResponseRouter,
        transport_factory: TransportFactory = build_transport,
    ):
        self.config = config
        self.router = router
        self._transport_factory = transport_factory

        self.state = SupervisorState.IDLE
        self.initial_port = config.port
        self.current_port = config.port
        self.restart_attempts = 0
        self.is_ready = False
        self.is_exiting = False
        self.last_error: BaseException | None = None

        self._transport: Transport | None = None
        self._retiring: set[Transport] = set()
        self._ever_ready = False
        self._address_in_use = False
        self._ready_waiters: list[asyncio.Future] = []
        self._readiness_timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    # ── Public surface ─────────────────────────────────────

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def is_connected(self) -> bool:
        """True when a ready transport can take a request."""
        return (
            self.state is SupervisorState.READY
            and self._transport is not None
            and self._transport.is_alive()
        )

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "mode": self.config.mode.value,
            "port": self.current_port,
            "restart_attempts": self.restart_attempts,
            "transport": self._transport.status() if self._transport else None,
        }

    async def start(self) -> None:
        """
        Bring the transport up and wait until it is ready.

        Called while a restart or port search is under way, waits for
        that relaunch to become ready.

        Raises:
            TransportStartError: Spawn/connect failed, the process died
                before readiness, or every port in the budget was busy.
            ClientStoppedError: The supervisor was stopped.
        """
        if self.state is SupervisorState.STOPPED:
            raise ClientStoppedError(
                "Client is stopped; create a new client to start again"
            )
        if self.state is SupervisorState.READY:
            return

        waiter = asyncio.get_running_loop().create_future()
        self._ready_waiters.append(waiter)
        try:
            if self.state is SupervisorState.IDLE:
                await self._launch()
            await waiter
        finally:
            if waiter in self._ready_waiters:
                self._ready_waiters.remove(waiter)

    def request_restart(self, reason: str) -> bool:
        """
        Replace a ready transport that a caller found unusable.

        Only owned processes are restarted, and only from READY: if a
        relaunch is already under way there is nothing more to do.

        Returns:
            True if a restart was started.
        """
        transport = self._transport
        if self.is_exiting or self.state is not SupervisorState.READY:
            return False
        if transport is not None and not transport.restartable:
            return False

        logger.warning(f"Restart requested: {reason}")
        self._detach()
        return self._handle_unexpected_exit(transport, f"Connection to tool server lost: {reason}")

    async def stop(self) -> None:
        """Shut everything down. Idempotent, never raises."""
        if self.is_exiting:
            return
        self.is_exiting = True
        logger.debug("Stopping tool client")

        self._set_state(SupervisorState.STOPPED)
        self.is_ready = False
        self._cancel_readiness_timer()

        error = ClientStoppedError("Tool client stopped")
        self._release_waiters(error)
        self.router.drain_all(error)

        # A cancelled retire task leaves its close() unfinished; every
        # retiring transport is closed again below
        transports = set(self._retiring)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        transports |= self._retiring
        if self._transport is not None:
            transports.add(self._transport)
        self._transport = None
        self._retiring.clear()
        for transport in transports:
            await self._close_quietly(transport)

    # ── TransportListener ──────────────────────────────────

    def on_connected(self, transport: Transport) -> None:
        if transport is not self._transport or self.is_exiting:
            return
        if transport.ready_on_connect:
            self._mark_ready(transport, "connected")

    def on_line(self, transport: Transport, line: str) -> None:
        if transport is not self._transport or not line.strip():
            return
        if self.config.debug:
            logger.debug(f"Raw tool server output: {line}")

        try:
            response = parse_response(line)
        except ValueError as e:
            if self.config.debug:
                logger.debug(f"Error parsing tool server output: {e}. Line: {line[:200]!r}")
            return

        if response is not None:
            self.router.resolve(response)
            return
        self._scan_diagnostic(transport, line, from_stdout=True)

    def on_diagnostic(self, transport: Transport, line: str) -> None:
        if transport is not self._transport or not line.strip():
            return
        logger.debug(f"Tool server stderr: {line}")
        self._scan_diagnostic(transport, line, from_stdout=False)

    def on_closed(
        self,
        transport: Transport,
        returncode: int | None,
        error: BaseException | None,
    ) -> None:
        if transport is not self._transport or self.is_exiting:
            logger.debug(f"Ignoring close of retired transport {transport.description}")
            return

        was_ready = self.state is SupervisorState.READY
        self._detach()

        if transport.restartable:
            cause = f"Tool server exited with code {returncode}"
        else:
            cause = f"Connection to tool server closed{f': {error}' if error else ''}"
        logger.warning(f"{cause} (state={'ready' if was_ready else 'starting'})")

        if (
            transport.restartable
            and returncode == STARTUP_FAILURE_EXIT_CODE
            and (not was_ready or self._address_in_use)
        ):
            self._handle_port_conflict(transport, cause)
            return

        if not transport.restartable:
            self._fail(TransportClosedError(cause), transport)
            return

        if not self._ever_ready:
            self._fail(TransportStartError(f"{cause} before becoming ready"), transport)
            return

        self._handle_unexpected_exit(transport, cause)

    # ── Transitions ────────────────────────────────────────

    async def _launch(self) -> None:
        """Create a transport on ``current_port`` and open it."""
        self._set_state(SupervisorState.STARTING)
        self.is_ready = False
        self._address_in_use = False

        transport = self._transport_factory(self.config, self.current_port, self)
        self._transport = transport
        try:
            await transport.open()
        except TransportStartError as e:
            logger.error(f"Failed to start tool server transport: {e}")
            if self._transport is transport:
                self._transport = None
            self._fail(e)
            return

        if self.is_exiting or self._transport is not transport:
            # stop() ran while we were spawning
            await self._close_quietly(transport)
            return

        if self.state is SupervisorState.STARTING and not transport.ready_on_connect:
            self._readiness_timer = asyncio.get_running_loop().call_later(
                self.config.readiness_timeout,
                self._on_readiness_timeout,
                transport,
            )

    def _scan_diagnostic(self, transport: Transport, line: str, from_stdout: bool) -> None:
        lowered = line.lower()
        if any(marker in lowered for marker in _ADDRESS_IN_USE_MARKERS):
            if not self._address_in_use:
                logger.warning(f"Port conflict detected on port {self.current_port}")
            self._address_in_use = True
            return

        if self.state is not SupervisorState.STARTING:
            return
        if any(marker.lower() in lowered for marker in self.config.ready_markers):
            self._mark_ready(transport, "readiness marker")
        elif from_stdout and _TIMESTAMP_RE.match(line):
            self._mark_ready(transport, "log output")

    def _on_readiness_timeout(self, transport: Transport) -> None:
        self._readiness_timer = None
        if transport is not self._transport or self.state is not SupervisorState.STARTING:
            return
        if transport.is_alive():
            self._mark_ready(transport, "timeout")

    def _mark_ready(self, transport: Transport, reason: str) -> None:
        if self.state is not SupervisorState.STARTING or transport is not self._transport:
            return
        self._cancel_readiness_timer()
        self._set_state(SupervisorState.READY)
        self.is_ready = True
        self._ever_ready = True
        logger.info(f"Tool server ready on port {self.current_port} ({reason})")
        self._release_waiters()

    def _handle_port_conflict(self, transport: Transport, cause: str) -> None:
        self._set_state(SupervisorState.DEGRADED)
        budget = self.config.max_port_attempts * self.config.port_increment
        if self.current_port - self.initial_port >= budget:
            logger.error(
                f"Tried {self.config.max_port_attempts} different ports without success. Giving up."
            )
            self._fail(PortExhaustedError(self.config.max_port_attempts), transport)
            return

        self.router.drain_all(TransportClosedError(cause))
        self.current_port += self.config.port_increment
        logger.info(f"Port conflict detected. Trying port {self.current_port}")
        self._retiring.add(transport)
        self._spawn(self._relaunch(transport, delay=0))

    def _handle_unexpected_exit(self, transport: Transport | None, cause: str) -> bool:
        """Schedule a relaunch on the same port. Returns False once the budget is spent."""
        if self.restart_attempts >= self.config.max_restart_attempts:
            logger.error(
                f"Maximum restart attempts ({self.config.max_restart_attempts}) reached. Giving up."
            )
            self._fail(RestartExhaustedError(self.config.max_restart_attempts), transport)
            return False

        self.router.drain_all(TransportClosedError(cause))
        self.restart_attempts += 1
        self._set_state(SupervisorState.RESTARTING)
        logger.info(f"Restarting tool server (attempt {self.restart_attempts})...")
        if transport is not None:
            self._retiring.add(transport)
        self._spawn(self._relaunch(transport, delay=self.config.restart_backoff))
        return True

    async def _relaunch(self, old: Transport | None, delay: float) -> None:
        if old is not None:
            await self._retire(old)
        if delay > 0:
            await asyncio.sleep(delay)
        if self.is_exiting:
            return
        await self._launch()

    def _fail(self, error: BaseException, transport: Transport | None = None) -> None:
        """Enter STOPPED for good and fail everyone still waiting."""
        if transport is None:
            transport = self._transport
        self._detach()
        self._set_state(SupervisorState.STOPPED)
        self.last_error = error
        self._release_waiters(error)
        self.router.drain_all(error)
        if transport is not None:
            self._retiring.add(transport)
            self._spawn(self._retire(transport))

    # ── Helpers ────────────────────────────────────────────

    def _set_state(self, state: SupervisorState) -> None:
        if state is not self.state:
            logger.debug(f"Supervisor {self.state.value} -> {state.value}")
            self.state = state

    def _release_waiters(self, error: BaseException | None = None) -> None:
        """Resolve every pending start() call, or fail them with ``error``."""
        waiters, self._ready_waiters = self._ready_waiters, []
        for waiter in waiters:
            if waiter.done():
                continue
            if error is None:
                waiter.set_result(None)
            else:
                waiter.set_exception(error)

    def _detach(self) -> None:
        self._transport = None
        self.is_ready = False
        self._cancel_readiness_timer()

    def _cancel_readiness_timer(self) -> None:
        if self._readiness_timer is not None:
            self._readiness_timer.cancel()
            self._readiness_timer = None

    async def _retire(self, transport: Transport) -> None:
        """Close a transport that has been replaced. stop() closes any left behind."""
        try:
            await self._close_quietly(transport)
        finally:
            self._retiring.discard(transport)

    async def _close_quietly(self, transport: Transport) -> None:
        try:
            await transport.close(self.config.stop_grace)
        except Exception as e:
            logger.debug(f"Error closing {transport.description}: {e}")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not self.is_exiting:
            logger.error(f"Tool server relaunch failed: {error}")
            self._fail(error)
