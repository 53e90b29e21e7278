from __future__ import annotations

import asyncio
import json
import signal
import sys

import pytest

from conftest import free_port, stubborn_server_command
from mcp_gateway.config import ClientConfig, ConnectionMode
from mcp_gateway.errors import BrokenPipeTransportError, TransportStartError
from mcp_gateway.transport import (
    JsonRpcRequest,
    JsonRpcResponse,
    LineFramer,
    ProcessTransport,
    SocketTransport,
    TransportListener,
    build_transport,
    encode_message,
    parse_response,
)


class RecordingListener(TransportListener):
    def __init__(self):
        self.connected = 0
        self.lines: list[str] = []
        self.diagnostics: list[str] = []
        self.closed: asyncio.Future = asyncio.get_running_loop().create_future()

    def on_connected(self, transport):
        self.connected += 1

    def on_line(self, transport, line):
        self.lines.append(line)

    def on_diagnostic(self, transport, line):
        self.diagnostics.append(line)

    def on_closed(self, transport, returncode, error):
        if not self.closed.done():
            self.closed.set_result((returncode, error))


# ── Line framing ──────────────────────────────────────────


def test_framer_splits_lines_regardless_of_chunking():
    framer = LineFramer()

    assert framer.feed(b'{"a": 1}\n{"b"') == ['{"a": 1}']
    assert framer.pending == '{"b"'
    assert framer.feed(b": 2}\n") == ['{"b": 2}']
    assert framer.feed(b"one\ntwo\nthree") == ["one", "two"]
    assert framer.flush() == ["three"]
    assert framer.flush() == []


def test_framer_keeps_multibyte_characters_split_across_chunks():
    framer = LineFramer()
    data = "héllo wörld\n".encode("utf-8")

    lines = []
    for i in range(len(data)):
        lines.extend(framer.feed(data[i:i + 1]))

    assert lines == ["héllo wörld"]


def test_framer_strips_carriage_returns():
    framer = LineFramer()
    assert framer.feed(b"first\r\nsecond\r\n") == ["first", "second"]


def test_encode_message_is_one_line_with_single_newline():
    request = JsonRpcRequest(
        method="tools/call",
        params={"name": "echo", "arguments": {"text": "line one\nline two"}},
        id="12",
    )
    data = encode_message(request)

    assert data.endswith(b"\n")
    assert data.count(b"\n") == 1
    assert json.loads(data) == {
        "jsonrpc": "2.0",
        "id": "12",
        "method": "tools/call",
        "params": {"name": "echo", "arguments": {"text": "line one\nline two"}},
    }


# ── Response parsing ──────────────────────────────────────


def test_parse_response_ignores_log_lines_and_peer_messages():
    assert parse_response("2026-10-18T07:57:00Z Tool server running") is None
    assert parse_response('{"jsonrpc": "2.0", "method": "notify"}') is None
    assert parse_response('{"jsonrpc": "2.0", "id": "3", "method": "ping"}') is None
    assert parse_response('{"jsonrpc": "1.0", "id": "3", "result": 1}') is None
    assert parse_response('{"jsonrpc": "2.0", "result": 1}') is None
    assert parse_response("[1, 2]") is None


def test_parse_response_raises_on_malformed_json():
    with pytest.raises(ValueError):
        parse_response('{"jsonrpc": "2.0", "id": ')


def test_parse_response_normalizes_id_and_error():
    response = parse_response('{"jsonrpc": "2.0", "id": 5, "error": "boom"}')

    assert response.id == "5"
    assert response.is_error
    assert response.error_message == "boom"
    assert response.is_valid


def test_response_without_result_or_error_is_invalid():
    response = JsonRpcResponse.from_json('{"jsonrpc": "2.0", "id": "1"}')
    assert not response.is_valid


def test_build_transport_follows_mode():
    listener = object()
    process = build_transport(ClientConfig(port=4100), 4105, listener)
    sock = build_transport(ClientConfig(mode=ConnectionMode.EXTERNAL_SOCKET, host="10.0.0.2"), 4200, listener)

    assert isinstance(process, ProcessTransport)
    assert process.env["PORT"] == "4105"
    assert process.env["DISABLE_HTTP_SERVER"] == "true"
    assert isinstance(sock, SocketTransport)
    assert (sock.host, sock.port) == ("10.0.0.2", 4200)


# ── Real streams ──────────────────────────────────────────

_LINE_ECHO = (
    "import sys\n"
    "print('hello from stderr', file=sys.stderr, flush=True)\n"
    "for line in sys.stdin:\n"
    "    sys.stdout.write(line.upper()); sys.stdout.flush()\n"
)


@pytest.mark.asyncio
async def test_process_transport_delivers_lines_and_exit_code():
    listener = RecordingListener()
    transport = ProcessTransport([sys.executable, "-c", _LINE_ECHO], listener)
    await transport.open()

    assert listener.connected == 1
    assert transport.is_alive()
    transport.write_line(b"ping\n")
    transport.write_line(b"pong\n")

    for _ in range(200):
        if len(listener.lines) == 2:
            break
        await asyncio.sleep(0.01)
    assert listener.lines == ["PING", "PONG"]

    await transport.close(grace=2.0)
    assert not transport.is_alive()
    assert "hello from stderr" in listener.diagnostics

    with pytest.raises(BrokenPipeTransportError):
        transport.write_line(b"late\n")


@pytest.mark.asyncio
async def test_process_transport_reports_exit():
    listener = RecordingListener()
    transport = ProcessTransport([sys.executable, "-c", "import sys; sys.exit(3)"], listener)
    await transport.open()

    returncode, error = await asyncio.wait_for(listener.closed, 10)
    assert returncode == 3
    assert error is None
    assert not transport.is_alive()
    await transport.close()


@pytest.mark.asyncio
async def test_process_transport_spawn_failure():
    listener = RecordingListener()
    transport = ProcessTransport(["/nonexistent/tool-server-binary"], listener)

    with pytest.raises(TransportStartError, match="Failed to spawn"):
        await transport.open()
    assert listener.connected == 0


@pytest.mark.asyncio
async def test_socket_transport_refused_connection():
    listener = RecordingListener()
    transport = SocketTransport("127.0.0.1", free_port(), listener)

    with pytest.raises(TransportStartError, match="Error connecting"):
        await transport.open()


@pytest.mark.asyncio
async def test_socket_transport_round_trip():
    async def handle(reader, writer):
        while line := await reader.readline():
            writer.write(b"got " + line)
            await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    listener = RecordingListener()
    transport = SocketTransport("127.0.0.1", port, listener)
    try:
        await transport.open()
        assert listener.connected == 1
        transport.write_line(b"one\n")
        for _ in range(200):
            if listener.lines:
                break
            await asyncio.sleep(0.01)
        assert listener.lines == ["got one"]
    finally:
        await transport.close()
        server.close()
        await server.wait_closed()

    assert not transport.is_alive()


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
async def test_process_transport_close_kills_process_ignoring_sigterm():
    listener = RecordingListener()
    transport = ProcessTransport(stubborn_server_command(), listener)
    await transport.open()
    for _ in range(500):
        if listener.lines:
            break
        await asyncio.sleep(0.01)
    assert listener.lines, "server never announced itself"

    loop = asyncio.get_running_loop()
    started = loop.time()
    await transport.close(grace=0.5)
    elapsed = loop.time() - started

    assert transport.returncode == -signal.SIGKILL
    assert 0.5 <= elapsed < 3.5
    assert not transport.is_alive()
