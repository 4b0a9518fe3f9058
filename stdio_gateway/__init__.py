"""stdio-gateway: serve several stdio protocol servers behind one HTTP/SSE port.

Each backend is launched as a child process (usually a stdio-to-HTTP bridge)
and reached through ``/<name>/...`` on the public listener.
"""

from stdio_gateway.config import GatewayConfig, ServerConfig
from stdio_gateway.gateway import Gateway

__all__ = ["Gateway", "GatewayConfig", "ServerConfig"]
