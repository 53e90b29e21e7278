"""
Tool Client — the call surface for a tool server.

Callers see four coroutines and nothing of the transport underneath:

Usage:
    client = ToolClient(ClientConfig(port=3001))

    # Spawn the tool server (or connect, in socket mode) and wait for it
    await client.start()

    # Discover tools
    tools = await client.list_tools()

    # Call a tool
    result = await client.call_tool("echo", {"message": "hello"})

    # Shut down
    await client.stop()

Or as a context manager:

    async with ToolClient.from_env() as client:
        tools = await client.list_tools()
"""

from __future__ import annotations

import itertools
import json
import logging
from typing import Any

from mcp_gateway.config import ClientConfig
from mcp_gateway.errors import (
    BrokenPipeTransportError,
    ConnectionLostError,
    InvalidResponseError,
    NoConnectionError,
    ToolError,
)
from mcp_gateway.router import ResponseRouter
from mcp_gateway.supervisor import Supervisor, SupervisorState, TransportFactory
from mcp_gateway.transport import JsonRpcRequest, JsonRpcResponse, build_transport, encode_message

logger = logging.getLogger(__name__)


class ToolClient:
    """
    Resilient JSON-RPC client for one tool server.

    Responsibilities:
    - Start the server (owned process) or connect to it (external socket)
    - Correlate responses to requests by id
    - Turn tool-level failures into ToolError, transport failures into
      TransportError subclasses
    - Recover from crashes through the supervisor
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        transport_factory: TransportFactory = build_transport,
        **overrides: Any,
    ):
        config = config or ClientConfig()
        if overrides:
            config = config.with_overrides(**overrides)
        self.config = config
        self._router = ResponseRouter()
        self._supervisor = Supervisor(config, self._router, transport_factory)
        self._request_ids = itertools.count(1)

    @classmethod
    def from_env(cls, **overrides: Any) -> "ToolClient":
        """Build a client from MCP_* environment variables."""
        return cls(ClientConfig.from_env(**overrides))

    # ── Lifecycle ──────────────────────────────────────────

    async def start(self) -> None:
        """Start the tool server or connect to an existing one."""
        await self._supervisor.start()
        logger.info(f"Tool client started on port {self._supervisor.current_port}")

    async def stop(self) -> None:
        """Stop the client. Safe to call any number of times."""
        await self._supervisor.stop()

    async def __aenter__(self) -> "ToolClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    # ── State ──────────────────────────────────────────────

    @property
    def state(self) -> SupervisorState:
        return self._supervisor.state

    @property
    def is_ready(self) -> bool:
        return self._supervisor.is_ready

    @property
    def current_port(self) -> int:
        return self._supervisor.current_port

    @property
    def restart_attempts(self) -> int:
        return self._supervisor.restart_attempts

    @property
    def pending_requests(self) -> int:
        return len(self._router)

    def status(self) -> dict[str, Any]:
        return {**self._supervisor.status(), "pending_requests": len(self._router)}

    # ── Calls ──────────────────────────────────────────────

    async def list_tools(self) -> Any:
        """
        List the tools the server exposes.

        Returns:
            The server's ``result`` verbatim (normally ``{"tools": [...]}``).
        """
        response = await self._request("tools/list", {})
        if response.result is not None:
            return response.result
        if response.is_error:
            logger.error(f"Error listing tools: {response.error_message}")
            raise _tool_error(response)
        logger.error("Invalid response from tool server")
        raise InvalidResponseError()

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        """
        Call a tool by name.

        Args:
            name: Tool name, as reported by list_tools()
            arguments: Tool arguments

        Returns:
            The nested result object when the tool returned one inside its
            text content, otherwise the raw ``result``.

        Raises:
            ToolError: The tool (or the server) reported a failure.
        """
        response = await self._request(
            "tools/call",
            {"name": name, "arguments": arguments or {}},
        )
        try:
            return unwrap_tool_result(response)
        except ToolError as e:
            logger.error(f"Tool call failed ({name}): {e}")
            raise

    async def _request(self, method: str, params: dict[str, Any]) -> JsonRpcResponse:
        supervisor = self._supervisor
        transport = supervisor.transport
        if not supervisor.is_connected or transport is None:
            error = NoConnectionError(
                "No connection to tool server available",
                details=supervisor.status(),
            )
            logger.error(f"Cannot send {method}: {error} {error.details}")
            supervisor.request_restart(f"no connection available for {method}")
            raise error

        request = JsonRpcRequest(
            method=method,
            params=params,
            id=str(next(self._request_ids)),
        )
        if self.config.debug:
            logger.debug(f"Sending {method} request: {request.to_json()}")

        completion = self._router.register(request.id)
        try:
            transport.write_line(encode_message(request))
        except BrokenPipeTransportError as e:
            self._router.discard(request.id)
            logger.error(f"Error sending {method}: {e}")
            if supervisor.request_restart("broken pipe"):
                raise ConnectionLostError(
                    "Connection to tool server lost. Attempting to restart."
                ) from e
            raise ConnectionLostError(
                "Connection to tool server lost. Please reconnect."
            ) from e

        try:
            response = await completion
        finally:
            self._router.discard(request.id)

        if self.config.debug:
            logger.debug(f"Received response: {json.dumps(response.raw)}")
        return response


def unwrap_tool_result(response: JsonRpcResponse) -> Any:
    """
    Interpret a ``tools/call`` response.

    Checked in order:
      1. a content entry flagged ``isError`` → ToolError with its text
      2. a JSON-RPC ``error`` → ToolError with its message
      3. a text entry holding JSON with a nested result object, such as
         ``{"tweet": {"id": "123"}}`` → that nested object
      4. anything else → the raw ``result``
    """
    result = response.result
    content = _content_entries(result)

    flagged = [entry for entry in content if entry.get("isError")]
    if flagged or (isinstance(result, dict) and result.get("isError")):
        entry = flagged[0] if flagged else (content[0] if content else {})
        raise ToolError(entry.get("text") or "Unknown error in response")

    if response.is_error:
        raise _tool_error(response)

    for entry in content:
        nested = _nested_result(entry.get("text"))
        if nested is not None:
            return nested

    if result is None:
        raise InvalidResponseError()
    return result


def _content_entries(result: Any) -> list[dict]:
    if not isinstance(result, dict):
        return []
    content = result.get("content")
    if not isinstance(content, list):
        return []
    return [entry for entry in content if isinstance(entry, dict)]


def _nested_result(text: Any) -> dict | None:
    """Pull ``inner`` out of text shaped like ``{"<kind>": {inner}}``."""
    if not isinstance(text, str) or not text.lstrip().startswith("{"):
        return None
    try:
        data = json.loads(text)
    except ValueError:
        logger.debug(f"Tool content is not JSON: {text[:200]!r}")
        return None
    if isinstance(data, dict) and len(data) == 1:
        inner = next(iter(data.values()))
        if isinstance(inner, dict):
            return inner
    return None


def _tool_error(response: JsonRpcResponse) -> ToolError:
    error = response.error or {}
    return ToolError(
        response.error_message,
        code=error.get("code"),
        data=error.get("data"),
    )
