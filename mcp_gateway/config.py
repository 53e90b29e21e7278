"""
Client configuration.

Defaults mirror what a tool server deployment normally expects: the
server listens on 3001, a busy port is skipped by bumping the number,
and a crashed server is restarted a few times before giving up.

Usage:
    config = ClientConfig(port=4000, debug=True)

    # Or from the environment (and a .env file, if present)
    config = ClientConfig.from_env(max_restart_attempts=5)
"""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from dotenv import load_dotenv

# Exit code a tool server uses when it cannot bind its port
STARTUP_FAILURE_EXIT_CODE = 1

# Environment handed to a spawned tool server
PORT_ENV_VAR = "PORT"
DISABLE_HTTP_ENV_VAR = "DISABLE_HTTP_SERVER"

DEFAULT_READY_MARKERS = (
    "server running",
    "Initial health check completed",
)


class ConnectionMode(str, Enum):
    """How the client reaches the tool server."""
    OWNED_PROCESS = "process"
    EXTERNAL_SOCKET = "socket"


def default_server_command() -> list[str]:
    """Command for the bundled echo tool server."""
    return [sys.executable, "-m", "mcp_gateway.servers.echo"]


@dataclass
class ClientConfig:
    """Settings consumed by the supervisor and client facade."""

    mode: ConnectionMode = ConnectionMode.OWNED_PROCESS
    host: str = "localhost"
    port: int = 3001
    max_port_attempts: int = 10
    port_increment: int = 1
    max_restart_attempts: int = 3
    debug: bool = False

    # Timings, in seconds
    readiness_timeout: float = 5.0
    restart_backoff: float = 1.0
    stop_grace: float = 1.0

    # Owned-process launch settings
    command: list[str] = field(default_factory=default_server_command)
    cwd: str | None = None
    env: dict[str, str] | None = None
    ready_markers: tuple[str, ...] = DEFAULT_READY_MARKERS

    def __post_init__(self):
        self.mode = ConnectionMode(self.mode)
        if self.port <= 0:
            raise ValueError(f"port must be positive, got {self.port}")
        if self.port_increment <= 0:
            raise ValueError(f"port_increment must be positive, got {self.port_increment}")
        if self.max_port_attempts < 0:
            raise ValueError("max_port_attempts cannot be negative")
        if self.max_restart_attempts < 0:
            raise ValueError("max_restart_attempts cannot be negative")
        if self.mode is ConnectionMode.OWNED_PROCESS and not self.command:
            raise ValueError("command is required to launch the tool server")

    @property
    def owns_process(self) -> bool:
        return self.mode is ConnectionMode.OWNED_PROCESS

    def process_env(self, port: int) -> dict[str, str]:
        """Environment for a spawned tool server bound to ``port``."""
        env = dict(os.environ)
        if self.env:
            env.update(self.env)
        env[DISABLE_HTTP_ENV_VAR] = "true"
        env[PORT_ENV_VAR] = str(port)
        return env

    def with_overrides(self, **overrides: Any) -> "ClientConfig":
        return replace(self, **overrides)

    @classmethod
    def from_env(cls, dotenv: bool = True, **overrides: Any) -> "ClientConfig":
        """
        Build a config from MCP_* environment variables.

        Args:
            dotenv: Load a .env file from the working directory first.
            **overrides: Explicit values; these win over the environment.
        """
        if dotenv:
            load_dotenv()

        values: dict[str, Any] = {}
        env = os.environ

        if "MCP_CONNECTION_MODE" in env:
            values["mode"] = ConnectionMode(env["MCP_CONNECTION_MODE"].strip().lower())
        if "MCP_HOST" in env:
            values["host"] = env["MCP_HOST"]
        if "MCP_SERVER_COMMAND" in env:
            values["command"] = shlex.split(env["MCP_SERVER_COMMAND"])
        if "MCP_DEBUG" in env:
            values["debug"] = _parse_bool(env["MCP_DEBUG"])

        int_fields = {
            "MCP_PORT": "port",
            "MCP_MAX_PORT_ATTEMPTS": "max_port_attempts",
            "MCP_PORT_INCREMENT": "port_increment",
            "MCP_MAX_RESTART_ATTEMPTS": "max_restart_attempts",
        }
        for var, name in int_fields.items():
            if var in env:
                values[name] = int(env[var])

        float_fields = {
            "MCP_READINESS_TIMEOUT": "readiness_timeout",
            "MCP_RESTART_BACKOFF": "restart_backoff",
            "MCP_STOP_GRACE": "stop_grace",
        }
        for var, name in float_fields.items():
            if var in env:
                values[name] = float(env[var])

        values.update(overrides)
        return cls(**values)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}
