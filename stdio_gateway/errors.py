"""Exception types raised by the gateway."""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all gateway errors."""


class ConfigError(GatewayError):
    """Configuration could not be parsed or failed validation."""


class SpawnError(GatewayError):
    """A backend executable could not be launched."""

    def __init__(self, name: str, command: str, reason: str) -> None:
        super().__init__(f"Failed to start '{name}' ({command}): {reason}")
        self.name = name
        self.command = command
        self.reason = reason


class ReadinessTimeout(GatewayError):
    """A backend did not accept TCP connections within the probe bound."""

    def __init__(self, port: int, attempts: int) -> None:
        super().__init__(
            f"Port {port} not accepting connections after {attempts} attempts"
        )
        self.port = port
        self.attempts = attempts


class BackendUnreachable(GatewayError):
    """Connecting to a backend failed before any response headers arrived."""

    def __init__(self, server: str, message: str) -> None:
        super().__init__(f"{server}: {message}")
        self.server = server
        self.message = message


class StreamInterrupted(GatewayError):
    """A backend closed or broke its response after headers were sent."""
