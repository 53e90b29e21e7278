"""
mcp-gateway — talk to a tool server from the command line.

Usage:
    # List tools on a freshly spawned echo server
    mcp-gateway --list

    # Call a tool
    mcp-gateway --tool echo --args '{"message": "hello"}'

    # Connect to a server that is already listening
    mcp-gateway --mode socket --port 3001 --list

    # Spawn some other tool server
    mcp-gateway --command "node build/index.js" --list
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import shlex
import signal
import sys
from typing import Any

from mcp_gateway.client import ToolClient
from mcp_gateway.config import ClientConfig, ConnectionMode
from mcp_gateway.errors import GatewayError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Call tools on a JSON-RPC tool server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mcp-gateway --list
  mcp-gateway --tool echo --args '{"message": "hello"}'
  mcp-gateway --mode socket --host localhost --port 3001 --list
        """,
    )
    parser.add_argument("--list", action="store_true", help="List available tools and exit")
    parser.add_argument("--tool", "-t", type=str, help="Tool to call")
    parser.add_argument("--args", "-a", type=str, default="{}", help="Tool arguments as a JSON object")
    parser.add_argument("--mode", choices=[m.value for m in ConnectionMode], default=None, help="Spawn the server (process) or connect to one (socket)")
    parser.add_argument("--host", type=str, default=None, help="Server host (socket mode)")
    parser.add_argument("--port", "-p", type=int, default=None, help="Server port")
    parser.add_argument("--command", "-c", type=str, default=None, help="Command that launches the tool server")
    parser.add_argument("--debug", action="store_true", help="Log raw protocol traffic")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")
    return parser


def config_from_args(args: argparse.Namespace) -> ClientConfig:
    overrides: dict[str, Any] = {}
    if args.mode:
        overrides["mode"] = ConnectionMode(args.mode)
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.command:
        overrides["command"] = shlex.split(args.command)
    if args.debug:
        overrides["debug"] = True
    return ClientConfig.from_env(**overrides)


async def run(
    args: argparse.Namespace,
    config: ClientConfig,
    arguments: dict[str, Any] | None = None,
) -> int:
    client = ToolClient(config)

    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()
    try:
        loop.add_signal_handler(signal.SIGINT, main_task.cancel)
    except (NotImplementedError, RuntimeError):
        pass  # Windows: fall back to KeyboardInterrupt

    try:
        await client.start()

        if args.list:
            listing = await client.list_tools()
            tools = listing.get("tools", listing) if isinstance(listing, dict) else listing
            print(f"\nAvailable tools ({len(tools)}):\n")
            for tool in tools:
                print(f"  {tool.get('name', '?'):<25} {tool.get('description', '')}")
            print()
            return 0

        result = await client.call_tool(args.tool, arguments or {})
        print(result if isinstance(result, str) else json.dumps(result, indent=2))
        return 0
    except GatewayError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except asyncio.CancelledError:
        print("\nShutting down tool client...", file=sys.stderr)
        return 130
    finally:
        await client.stop()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.list and not args.tool:
        parser.error("--tool is required (or use --list)")

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s", stream=sys.stderr)
    if args.verbose or args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = config_from_args(args)
        arguments = json.loads(args.args)
    except ValueError as e:
        parser.error(str(e))
    if not isinstance(arguments, dict):
        parser.error("--args must be a JSON object")

    try:
        return asyncio.run(run(args, config, arguments))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
