"""
Echo Tool Server — minimal reference implementation.

Use this as a template for building new tool servers. Its tools exist
to exercise the client: a result nested inside text content, a tool
that always fails, and a tool that kills the server.

Launch:
    python -m mcp_gateway.servers.echo
    PORT=3001 python -m mcp_gateway.servers.echo
    python -m mcp_gateway.servers.echo --port 3001 --no-stdio

Test:
    echo '{"jsonrpc":"2.0","method":"ping","params":{},"id":"1"}' | python -m mcp_gateway.servers.echo
"""

import os
import sys

from mcp_gateway.server import ToolHandler, ToolServer


class EchoTool(ToolHandler):
    name = "echo"
    description = "Echoes back the input message. Useful for testing."
    input_schema = {
        "type": "object",
        "properties": {
            "message": {
                "type": "string",
                "description": "The message to echo back",
            },
        },
        "required": ["message"],
    }

    def handle(self, arguments: dict) -> dict:
        message = arguments.get("message", "")
        return {"echo": {"message": message, "length": len(message)}}


class FailTool(ToolHandler):
    name = "fail"
    description = "Always fails with the given message."
    input_schema = {
        "type": "object",
        "properties": {
            "message": {"type": "string", "description": "Error text to report"},
        },
    }

    def handle(self, arguments: dict) -> dict:
        raise RuntimeError(arguments.get("message") or "tool failed")


class ExitTool(ToolHandler):
    name = "exit"
    description = "Terminates the server process immediately, without replying."
    input_schema = {
        "type": "object",
        "properties": {
            "code": {"type": "integer", "description": "Exit code (default 2)"},
        },
    }

    def handle(self, arguments: dict) -> dict:
        sys.stdout.flush()
        sys.stderr.flush()
        os._exit(int(arguments.get("code", 2)))


def build_server() -> ToolServer:
    server = ToolServer(name="echo")
    server.register(EchoTool())
    server.register(FailTool())
    server.register(ExitTool())
    return server


if __name__ == "__main__":
    build_server().run()
