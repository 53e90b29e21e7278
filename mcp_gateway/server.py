"""
Tool server base class.

A tool server is a standalone process that:
1. Reads JSON-RPC requests, one per line, from stdin
2. Also accepts the same line protocol on a TCP port, when PORT is set
3. Dispatches to registered ToolHandlers
4. Writes JSON-RPC responses back on the stream the request came from

It announces itself with a timestamped "Tool server running" line on
stdout once it is listening, and exits with code 1 if its port is taken,
which is what ToolClient's supervisor watches for.

To create a tool server:

    from mcp_gateway.server import ToolServer, ToolHandler

    class MyTool(ToolHandler):
        name = "my_tool"
        description = "Does something useful"
        input_schema = {
            "type": "object",
            "properties": {"input": {"type": "string"}},
            "required": ["input"],
        }

        def handle(self, arguments: dict) -> dict:
            return {"result": f"processed: {arguments['input']}"}

    if __name__ == "__main__":
        server = ToolServer()
        server.register(MyTool())
        server.run()
"""

from __future__ import annotations

import argparse
import asyncio
import errno
import json
import logging
import os
import sys
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from mcp_gateway.config import PORT_ENV_VAR, STARTUP_FAILURE_EXIT_CODE
from mcp_gateway.transport import JSONRPC_VERSION, LineFramer, READ_CHUNK_SIZE

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class ToolHandler(ABC):
    """
    Base class for a tool implementation.

    Subclasses define what a tool does. The server handles transport.
    """

    # Subclasses must set these
    name: str = ""
    description: str = ""
    input_schema: dict[str, Any] = {"type": "object", "properties": {}}

    @abstractmethod
    def handle(self, arguments: dict[str, Any]) -> Any:
        """
        Execute the tool with the given arguments.

        Returns:
            The tool result (JSON-serialized into a text content entry)
        """
        ...

    def get_schema(self) -> dict:
        """Return the tool descriptor for discovery."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class ToolServer:
    """
    JSON-RPC tool server speaking one message per line.

    Supports methods:
        - "tools/list" → {"tools": [descriptor, ...]}
        - "tools/call" → {"content": [{"type": "text", "text": ...}]}
        - "ping"       → health check
    """

    def __init__(self, name: str = "tool-server"):
        self.name = name
        self._handlers: dict[str, ToolHandler] = {}

    def register(self, handler: ToolHandler) -> None:
        """Register a tool handler."""
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        self._handlers[handler.name] = handler
        logger.info(f"Registered tool: {handler.name}")

    # ── Dispatch ───────────────────────────────────────────

    def handle_line(self, line: str) -> dict | None:
        """Handle one request line. Returns the response, or None for notifications."""
        line = line.strip()
        if not line:
            return None
        try:
            request = json.loads(line)
        except json.JSONDecodeError as e:
            return _error(None, PARSE_ERROR, f"Parse error: {e}")
        if not isinstance(request, dict):
            return _error(None, INVALID_REQUEST, "Request must be a JSON object")
        return self.handle_message(request)

    def handle_message(self, request: dict[str, Any]) -> dict | None:
        request_id = request.get("id")
        method = request.get("method", "")
        params = request.get("params") or {}

        try:
            result = self._dispatch(method, params)
        except _RpcError as e:
            response = _error(request_id, e.code, e.message)
        except Exception as e:
            response = _error(request_id, INTERNAL_ERROR, str(e))
        else:
            response = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}

        if request_id is None:
            return None
        return response

    def _dispatch(self, method: str, params: dict) -> Any:
        """Route a method call to the appropriate handler."""

        if method == "ping":
            return {"status": "ok", "server": self.name, "tools": list(self._handlers)}

        if method == "tools/list":
            return {"tools": [h.get_schema() for h in self._handlers.values()]}

        if method == "tools/call":
            tool_name = params.get("name", "")
            arguments = params.get("arguments") or {}

            handler = self._handlers.get(tool_name)
            if not handler:
                raise _RpcError(
                    INVALID_PARAMS,
                    f"Unknown tool: '{tool_name}'. Available: {list(self._handlers)}",
                )

            try:
                result = handler.handle(arguments)
            except Exception as e:
                logger.warning(f"Tool {tool_name} failed: {e}")
                return {
                    "content": [{"type": "text", "text": str(e), "isError": True}],
                    "isError": True,
                }
            text = result if isinstance(result, str) else json.dumps(result)
            return {"content": [{"type": "text", "text": text}]}

        raise _RpcError(METHOD_NOT_FOUND, f"Unknown method: '{method}'")

    # ── Serving ────────────────────────────────────────────

    async def serve(
        self,
        port: int | None = None,
        host: str = "127.0.0.1",
        stdio: bool = True,
    ) -> int:
        """
        Serve until stdin closes (or forever, without stdio).

        Returns:
            Process exit code: 0 on clean shutdown, 1 if the port is taken.
        """
        tcp_server = None
        if port is not None:
            try:
                tcp_server = await asyncio.start_server(self._handle_connection, host, port)
            except OSError as e:
                if e.errno == errno.EADDRINUSE:
                    logger.error(f"listen EADDRINUSE: address already in use {host}:{port}")
                else:
                    logger.error(f"Failed to listen on {host}:{port}: {e}")
                return STARTUP_FAILURE_EXIT_CODE

        where = f"port {port}" if port is not None else "stdio"
        _announce(f"Tool server running on {where} with {len(self._handlers)} tools: {list(self._handlers)}")

        try:
            if stdio:
                await self._serve_stdio()
            elif tcp_server is not None:
                await tcp_server.serve_forever()
        finally:
            if tcp_server is not None:
                tcp_server.close()
                await tcp_server.wait_closed()
        logger.info("Tool server shutting down")
        return 0

    def run(self, argv: list[str] | None = None) -> None:
        """Command-line entry point for a tool server module."""
        parser = argparse.ArgumentParser(description=f"Run the {self.name} tool server.")
        parser.add_argument("--port", type=int, default=None, help=f"TCP port (default: ${PORT_ENV_VAR})")
        parser.add_argument("--host", default=os.environ.get("HOST", "127.0.0.1"))
        parser.add_argument("--no-stdio", action="store_true", help="Serve TCP only")
        args = parser.parse_args(argv)

        logging.basicConfig(
            level=logging.INFO,
            stream=sys.stderr,
            format="%(levelname)s %(name)s: %(message)s",
        )

        port = args.port
        if port is None and os.environ.get(PORT_ENV_VAR):
            port = int(os.environ[PORT_ENV_VAR])
        if args.no_stdio and port is None:
            parser.error("--no-stdio requires --port or $PORT")

        try:
            code = asyncio.run(self.serve(port=port, host=args.host, stdio=not args.no_stdio))
        except KeyboardInterrupt:
            code = 0
        sys.exit(code)

    async def _serve_stdio(self) -> None:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                return
            response = self.handle_line(line)
            if response is not None:
                sys.stdout.write(json.dumps(response) + "\n")
                sys.stdout.flush()

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        peer = writer.get_extra_info("peername")
        logger.info(f"Client connected: {peer}")
        framer = LineFramer()
        try:
            while True:
                chunk = await reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for line in framer.feed(chunk):
                    response = self.handle_line(line)
                    if response is not None:
                        writer.write((json.dumps(response) + "\n").encode("utf-8"))
                await writer.drain()
        except ConnectionError as e:
            logger.info(f"Client {peer} dropped: {e}")
        finally:
            writer.close()
            logger.info(f"Client disconnected: {peer}")


class _RpcError(Exception):
    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


def _error(request_id: Any, code: int, message: str) -> dict:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def _announce(message: str) -> None:
    """Write a timestamped log line to stdout."""
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    sys.stdout.write(f"{stamp} {message}\n")
    sys.stdout.flush()
