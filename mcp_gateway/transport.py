"""
Transport layer for tool server communication.

Implements:
  - ProcessTransport: JSON-RPC over the stdin/stdout pipes of a child
    process the client spawns and owns
  - SocketTransport: JSON-RPC over a TCP connection to a server that is
    already running

Both deliver newline-delimited lines to a TransportListener and never
look inside the messages they carry. Deciding what a line means, and
what to do when a transport dies, is the supervisor's job.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from mcp_gateway.config import ClientConfig
from mcp_gateway.errors import BrokenPipeTransportError, TransportStartError

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
READ_CHUNK_SIZE = 65536


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request."""
    method: str
    params: dict[str, Any]
    id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
            "params": self.params,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: str
    result: Any = None
    error: dict | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "JsonRpcResponse":
        error = payload.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"message": str(error)}
        return cls(
            id=str(payload.get("id")),
            result=payload.get("result"),
            error=error,
            raw=payload,
        )

    @classmethod
    def from_json(cls, data: str) -> "JsonRpcResponse":
        return cls.from_dict(json.loads(data))

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def is_valid(self) -> bool:
        """A response must carry a result or an error."""
        return self.result is not None or self.error is not None

    @property
    def error_message(self) -> str:
        if not self.error:
            return ""
        return self.error.get("message") or "Unknown error"


def encode_message(message: JsonRpcRequest | dict[str, Any]) -> bytes:
    """Serialize one message as a single newline-terminated UTF-8 line."""
    payload = message.to_dict() if isinstance(message, JsonRpcRequest) else message
    return (json.dumps(payload) + "\n").encode("utf-8")


def parse_response(line: str) -> JsonRpcResponse | None:
    """
    Parse a line as a JSON-RPC response.

    Returns None for anything that is not a JSON-RPC 2.0 response
    carrying an id: log output, notifications, requests from the peer.

    Raises:
        ValueError: If the line looks like JSON but cannot be decoded.
    """
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None

    payload = json.loads(stripped)
    if not isinstance(payload, dict):
        return None
    if payload.get("jsonrpc") != JSONRPC_VERSION or "method" in payload:
        return None
    if payload.get("id") is None:
        return None
    return JsonRpcResponse.from_dict(payload)


class LineFramer:
    """
    Incremental newline-delimited decoder.

    Bytes go in however the transport chunked them; complete lines come
    out. A partial line stays buffered until its delimiter arrives.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> list[str]:
        self._buffer += self._decoder.decode(data)
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return the unterminated tail once the stream has ended."""
        tail = (self._buffer + self._decoder.decode(b"", final=True)).rstrip("\r")
        self._buffer = ""
        return [tail] if tail else []

    @property
    def pending(self) -> str:
        return self._buffer


class TransportListener(ABC):
    """Receives transport events. Implemented by the supervisor."""

    @abstractmethod
    def on_connected(self, transport: "Transport") -> None:
        ...

    @abstractmethod
    def on_line(self, transport: "Transport", line: str) -> None:
        """A line arrived on the message stream (stdout or socket)."""
        ...

    @abstractmethod
    def on_diagnostic(self, transport: "Transport", line: str) -> None:
        """A line arrived on the diagnostic stream (stderr)."""
        ...

    @abstractmethod
    def on_closed(
        self,
        transport: "Transport",
        returncode: int | None,
        error: BaseException | None,
    ) -> None:
        """The transport is gone: the process exited or the socket closed."""
        ...


class Transport(ABC):
    """Abstract transport layer for tool server communication."""

    # Reaching "connected" means the peer is ready to serve
    ready_on_connect: bool = False
    # The peer is ours to relaunch when it dies
    restartable: bool = False

    def __init__(self, listener: TransportListener):
        self._listener = listener
        self._pump_task: asyncio.Task | None = None
        self._closing = False

    @property
    def description(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    async def open(self) -> None:
        """Establish the transport (spawn the process or connect the socket)."""
        ...

    @abstractmethod
    def write_line(self, data: bytes) -> None:
        """
        Queue one framed line for sending.

        Raises:
            BrokenPipeTransportError: If the peer can no longer be written to.
        """
        ...

    @abstractmethod
    async def close(self, grace: float = 1.0) -> None:
        """Tear the transport down. Never raises."""
        ...

    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the transport can carry a request right now."""
        ...

    def status(self) -> dict[str, Any]:
        """Snapshot of transport state for error reports."""
        return {"transport": self.description, "alive": self.is_alive()}

    async def _pump_stream(
        self,
        stream: asyncio.StreamReader,
        deliver: Callable[["Transport", str], None],
    ) -> BaseException | None:
        """Read ``stream`` to EOF, handing each complete line to ``deliver``."""
        framer = LineFramer()
        error = None
        while True:
            try:
                chunk = await stream.read(READ_CHUNK_SIZE)
            except (ConnectionError, OSError) as e:
                error = e
                break
            if not chunk:
                break
            for line in framer.feed(chunk):
                self._deliver(deliver, line)
        for line in framer.flush():
            self._deliver(deliver, line)
        return error

    def _deliver(self, deliver: Callable[["Transport", str], None], line: str) -> None:
        try:
            deliver(self, line)
        except Exception:
            # A bad line must not kill the read loop
            logger.exception(f"Error handling line from {self.description}: {line[:200]!r}")

    async def _cancel_pump(self, grace: float) -> None:
        task = self._pump_task
        if task is None or task is asyncio.current_task():
            return
        done, _ = await asyncio.wait({task}, timeout=grace)
        if not done:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


class ProcessTransport(Transport):
    """
    JSON-RPC over the standard streams of a child process.

    stdout carries protocol lines (and whatever the server logs there),
    stderr carries diagnostics, stdin takes our requests.
    """

    ready_on_connect = False
    restartable = True

    def __init__(
        self,
        command: list[str],
        listener: TransportListener,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ):
        super().__init__(listener)
        self.command = command
        self.env = env
        self.cwd = cwd
        self._process: asyncio.subprocess.Process | None = None

    @property
    def description(self) -> str:
        pid = self._process.pid if self._process else None
        return f"process[{pid}]"

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    async def open(self) -> None:
        """Launch the tool server subprocess."""
        logger.info(f"Starting tool server: {' '.join(self.command)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
            )
        except OSError as e:
            raise TransportStartError(
                f"Failed to spawn tool server ({' '.join(self.command)}): {e}"
            ) from e

        logger.debug(f"Tool server spawned with PID {self._process.pid}")
        self._pump_task = asyncio.create_task(self._pump())
        self._listener.on_connected(self)

    async def _pump(self) -> None:
        process = self._process
        await asyncio.gather(
            self._pump_stream(process.stdout, self._listener.on_line),
            self._pump_stream(process.stderr, self._listener.on_diagnostic),
        )
        returncode = await process.wait()
        self._listener.on_closed(self, returncode, None)

    def is_alive(self) -> bool:
        """Check if the subprocess is running and its stdin is writable."""
        process = self._process
        return (
            not self._closing
            and process is not None
            and process.returncode is None
            and process.stdin is not None
            and not process.stdin.is_closing()
        )

    def write_line(self, data: bytes) -> None:
        if not self.is_alive():
            raise BrokenPipeTransportError(
                "The connection to the tool server process has been closed (EPIPE)"
            )
        try:
            self._process.stdin.write(data)
        except (BrokenPipeError, ConnectionResetError) as e:
            raise BrokenPipeTransportError(
                f"The connection to the tool server process has been closed (EPIPE): {e}"
            ) from e

    async def close(self, grace: float = 1.0) -> None:
        """Close stdin, SIGTERM, then SIGKILL if the process lingers."""
        self._closing = True
        process = self._process
        if process is None:
            return

        if process.stdin is not None and not process.stdin.is_closing():
            with contextlib.suppress(OSError):
                process.stdin.close()

        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.debug(f"Force killing tool server {process.pid}")
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        await self._cancel_pump(grace)
        logger.info(f"Tool server {process.pid} stopped (code {process.returncode})")

    def status(self) -> dict[str, Any]:
        process = self._process
        return {
            "transport": "process",
            "pid": self.pid,
            "exit_code": self.returncode,
            "stdin_writable": bool(
                process and process.stdin and not process.stdin.is_closing()
            ),
        }


class SocketTransport(Transport):
    """JSON-RPC over a TCP connection to an already-running tool server."""

    ready_on_connect = True
    restartable = False

    def __init__(self, host: str, port: int, listener: TransportListener):
        super().__init__(listener)
        self.host = host
        self.port = port
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def description(self) -> str:
        return f"socket[{self.host}:{self.port}]"

    async def open(self) -> None:
        logger.info(f"Connecting to tool server on {self.host}:{self.port}...")
        try:
            self._reader, self._writer = await asyncio.open_connection(self.host, self.port)
        except OSError as e:
            raise TransportStartError(
                f"Error connecting to tool server at {self.host}:{self.port}: {e}"
            ) from e

        logger.info(f"Connected to tool server on {self.host}:{self.port}")
        self._pump_task = asyncio.create_task(self._pump())
        self._listener.on_connected(self)

    async def _pump(self) -> None:
        error = await self._pump_stream(self._reader, self._listener.on_line)
        self._listener.on_closed(self, None, error)

    def is_alive(self) -> bool:
        return (
            not self._closing
            and self._writer is not None
            and not self._writer.is_closing()
        )

    def write_line(self, data: bytes) -> None:
        if not self.is_alive():
            raise BrokenPipeTransportError(
                "The connection to the tool server socket has been closed (EPIPE)"
            )
        try:
            self._writer.write(data)
        except (BrokenPipeError, ConnectionResetError) as e:
            raise BrokenPipeTransportError(
                f"The connection to the tool server socket has been closed (EPIPE): {e}"
            ) from e

    async def close(self, grace: float = 1.0) -> None:
        self._closing = True
        writer = self._writer
        if writer is None:
            return
        if not writer.is_closing():
            writer.close()
        with contextlib.suppress(OSError, asyncio.TimeoutError):
            await asyncio.wait_for(writer.wait_closed(), timeout=grace)
        await self._cancel_pump(grace)
        logger.info(f"Closed socket connection to {self.host}:{self.port}")

    def status(self) -> dict[str, Any]:
        return {
            "transport": "socket",
            "host": self.host,
            "port": self.port,
            "writable": self.is_alive(),
        }


def build_transport(
    config: ClientConfig,
    port: int,
    listener: TransportListener,
) -> Transport:
    """Create the transport variant selected by ``config.mode``."""
    if config.owns_process:
        return ProcessTransport(
            config.command,
            listener,
            env=config.process_env(port),
            cwd=config.cwd,
        )
    return SocketTransport(config.host, port, listener)
