"""
Shared fixtures: scripted fake transports for driving the supervisor
without real processes, plus helpers for the integration tests.
"""

from __future__ import annotations

import asyncio
import json
import socket
import sys
from pathlib import Path
from typing import Any, Callable

import pytest

from mcp_gateway.config import ClientConfig, ConnectionMode
from mcp_gateway.errors import BrokenPipeTransportError
from mcp_gateway.transport import Transport, TransportListener

PROJECT_ROOT = Path(__file__).resolve().parent.parent
READY_LINE = "2026-10-18T07:57:00.000+00:00 Tool server running on port {port}"


class FakeTransport(Transport):
    """A transport whose peer is scripted by the test."""

    ready_on_connect = False
    restartable = True

    def __init__(self, listener: TransportListener, port: int, open_error: Exception | None = None):
        super().__init__(listener)
        self.port = port
        self.open_error = open_error
        self.sent: list[dict[str, Any]] = []
        self.alive = False
        self.broken = False
        self.closed = False

    @property
    def description(self) -> str:
        return f"fake[{self.port}]"

    async def open(self) -> None:
        if self.open_error is not None:
            raise self.open_error
        self.alive = True
        self._listener.on_connected(self)

    def write_line(self, data: bytes) -> None:
        if not self.alive or self.broken:
            raise BrokenPipeTransportError("fake pipe is closed (EPIPE)")
        assert data.endswith(b"\n") and data.count(b"\n") == 1
        self.sent.append(json.loads(data))

    async def close(self, grace: float = 1.0) -> None:
        self.closed = True
        self.alive = False

    def is_alive(self) -> bool:
        return self.alive

    # ── Peer behaviour ─────────────────────────────────────

    def emit(self, line: str) -> None:
        self._listener.on_line(self, line)

    def emit_stderr(self, line: str) -> None:
        self._listener.on_diagnostic(self, line)

    def exit(self, code: int | None) -> None:
        self.alive = False
        self._listener.on_closed(self, code, None)

    def announce_ready(self) -> None:
        self.emit(READY_LINE.format(port=self.port))

    def respond(self, request_id: str, result: Any = None, error: dict | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
        if result is not None:
            message["result"] = result
        if error is not None:
            message["error"] = error
        self.emit(json.dumps(message))


class FakeSocketTransport(FakeTransport):
    ready_on_connect = True
    restartable = False


class FakeFactory:
    """
    Transport factory recording every transport it builds.

    ``script(transport)`` runs (via call_soon) right after the transport
    is created; by default the peer announces readiness.
    """

    def __init__(
        self,
        script: Callable[[FakeTransport], None] | None = None,
        transport_cls: type[FakeTransport] = FakeTransport,
        open_error: Exception | None = None,
    ):
        self.script = script if script is not None else FakeTransport.announce_ready
        self.transport_cls = transport_cls
        self.open_error = open_error
        self.created: list[FakeTransport] = []

    def __call__(self, config: ClientConfig, port: int, listener: TransportListener) -> FakeTransport:
        transport = self.transport_cls(listener, port, open_error=self.open_error)
        self.created.append(transport)
        if self.open_error is None:
            asyncio.get_running_loop().call_soon(self.script, transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.created[-1]

    @property
    def ports(self) -> list[int]:
        return [t.port for t in self.created]


def fast_config(**overrides: Any) -> ClientConfig:
    values: dict[str, Any] = dict(
        port=3001,
        readiness_timeout=5.0,
        restart_backoff=0.0,
        stop_grace=0.1,
        command=["fake-tool-server"],
    )
    values.update(overrides)
    return ClientConfig(**values)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


async def settle(rounds: int = 3) -> None:
    """Let scheduled callbacks and freshly created tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def free_port(consecutive: int = 1) -> int:
    """Find ``consecutive`` free ports in a row and return the first."""
    for _ in range(50):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            probe.bind(("127.0.0.1", 0))
            base = probe.getsockname()[1]
        if base + consecutive > 65535:
            continue
        if all(_port_is_free(base + i) for i in range(consecutive)):
            return base
    raise RuntimeError("no free port range found")


def _port_is_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        try:
            probe.bind(("127.0.0.1", port))
        except OSError:
            return False
    return True


def echo_server_command() -> list[str]:
    return [sys.executable, "-m", "mcp_gateway.servers.echo"]


_IGNORES_SIGTERM = (
    "import signal, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('2026-10-18T08:00:00.000Z Tool server running', flush=True)\n"
    "while True:\n"
    "    time.sleep(0.1)\n"
)


def stubborn_server_command() -> list[str]:
    """A server that announces readiness and then ignores SIGTERM."""
    return [sys.executable, "-c", _IGNORES_SIGTERM]


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def socket_factory() -> FakeFactory:
    return FakeFactory(script=lambda t: None, transport_cls=FakeSocketTransport)


@pytest.fixture
def process_config() -> Callable[..., ClientConfig]:
    """Config for spawning the real echo server from the project root."""

    def _make(**overrides: Any) -> ClientConfig:
        values: dict[str, Any] = dict(
            mode=ConnectionMode.OWNED_PROCESS,
            port=free_port(),
            command=echo_server_command(),
            cwd=str(PROJECT_ROOT),
            readiness_timeout=10.0,
            restart_backoff=0.1,
            stop_grace=2.0,
        )
        values.update(overrides)
        return ClientConfig(**values)

    return _make
