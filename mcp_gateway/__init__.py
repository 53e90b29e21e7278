"""
mcp-gateway — resilient JSON-RPC client for tool servers.

Architecture:
    ┌──────────────┐   stdio or TCP   ┌──────────────┐
    │  ToolClient  │ ──────────────── │ Tool Server  │
    │ (supervisor) │  JSON-RPC lines  │ (subprocess) │
    └──────────────┘                  └──────────────┘

A tool server exposes named tools over JSON-RPC 2.0, one message per
line. ToolClient either spawns and owns that server or connects to one
that is already listening, correlates responses to requests by id, and
recovers when the server dies: a busy port is skipped by moving to the
next one, a crash is answered with a bounded number of restarts.

The ToolServer base class is the other end of the wire; the bundled
echo server is built on it.

The LangChain bridge turns discovered tools into agent tools.
"""

from mcp_gateway.client import ToolClient, unwrap_tool_result
from mcp_gateway.config import ClientConfig, ConnectionMode
from mcp_gateway.errors import (
    ClientStoppedError,
    ConnectionLostError,
    GatewayError,
    InvalidResponseError,
    NoConnectionError,
    PortExhaustedError,
    RestartExhaustedError,
    ToolError,
    TransportClosedError,
    TransportError,
    TransportStartError,
)
from mcp_gateway.server import ToolHandler, ToolServer
from mcp_gateway.supervisor import SupervisorState

# Bridge requires langchain — lazy import to keep the client standalone
def mcp_to_langchain_tool(*args, **kwargs):
    from mcp_gateway.bridge import mcp_to_langchain_tool as _impl
    return _impl(*args, **kwargs)

async def load_langchain_tools(*args, **kwargs):
    from mcp_gateway.bridge import load_langchain_tools as _impl
    return await _impl(*args, **kwargs)

__all__ = [
    "ToolClient",
    "ClientConfig",
    "ConnectionMode",
    "SupervisorState",
    "ToolServer",
    "ToolHandler",
    "unwrap_tool_result",
    "GatewayError",
    "TransportError",
    "TransportStartError",
    "TransportClosedError",
    "NoConnectionError",
    "ConnectionLostError",
    "PortExhaustedError",
    "RestartExhaustedError",
    "ClientStoppedError",
    "InvalidResponseError",
    "ToolError",
    "mcp_to_langchain_tool",
    "load_langchain_tools",
]
