"""
Bridge between tool servers and LangChain.

Turns the tools a ToolClient discovers into LangChain tools that an
agent can call directly.

Usage:
    from mcp_gateway.bridge import load_langchain_tools

    async with ToolClient() as client:
        tools = await load_langchain_tools(client)
        agent = create_agent(model, tools)
"""

from __future__ import annotations

import json
from typing import Any

from langchain_core.tools import StructuredTool

from mcp_gateway.client import ToolClient
from mcp_gateway.errors import GatewayError

_EMPTY_SCHEMA = {"type": "object", "properties": {}}


def mcp_to_langchain_tool(
    client: ToolClient,
    descriptor: dict[str, Any],
    description_override: str | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that wraps a tool server call.

    The returned tool, when invoked by an agent, sends a ``tools/call``
    request through the client and returns the result as text.

    Args:
        client: A started ToolClient
        descriptor: Tool descriptor from list_tools() ({name, inputSchema, ...})
        description_override: Optional override for the tool description

    Returns:
        A LangChain StructuredTool that proxies calls to the tool server.
    """
    tool_name = descriptor["name"]
    description = description_override or descriptor.get("description") or f"Tool: {tool_name}"
    schema = descriptor.get("inputSchema") or _EMPTY_SCHEMA

    async def _call_tool(**kwargs: Any) -> str:
        """Proxy call to the tool server."""
        try:
            result = await client.call_tool(tool_name, kwargs)
        except GatewayError as e:
            return f"Error calling {tool_name}: {e}"
        if isinstance(result, str):
            return result
        return json.dumps(result, indent=2)

    return StructuredTool.from_function(
        coroutine=_call_tool,
        name=tool_name,
        description=description,
        args_schema=schema,
    )


async def load_langchain_tools(client: ToolClient) -> list[StructuredTool]:
    """Discover every tool on the server and wrap each one for LangChain."""
    return [mcp_to_langchain_tool(client, d) for d in tool_descriptors(await client.list_tools())]


def tool_descriptors(listing: Any) -> list[dict[str, Any]]:
    """Extract descriptors from a list_tools() result (``{"tools": [...]}`` or a bare list)."""
    if isinstance(listing, dict):
        listing = listing.get("tools", [])
    if not isinstance(listing, list):
        return []
    return [d for d in listing if isinstance(d, dict) and d.get("name")]

