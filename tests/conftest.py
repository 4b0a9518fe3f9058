"""Pytest configuration for stdio-gateway tests."""

import asyncio

import pytest
import pytest_asyncio

from stdio_gateway.process_manager.supervisor import BackendStatus
from stdio_gateway.server import GatewayServer
from tests.helpers import make_server

GATEWAY_ENV_VARS = (
    "PORT", "HOST", "GATEWAY_NAME", "GATEWAY_CONFIG", "GATEWAY_SERVERS",
    "GATEWAY_FAIL_FAST", "CORS_ORIGIN", "READY_MAX_ATTEMPTS", "READY_INTERVAL",
    "READY_TIMEOUT", "SHUTDOWN_GRACE", "BACKEND_BASE_PORT", "BRIDGE_COMMAND",
    "KEEP_ALIVE_TIMEOUT", "ACCESS_LOG", "SUPABASE_PROJECT_REF",
    "SUPABASE_ACCESS_TOKEN",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every gateway-related variable from the environment.

    Each name is set before being deleted so monkeypatch also undoes
    values that load_dotenv() writes during the test.
    """
    for name in GATEWAY_ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


@pytest_asyncio.fixture
async def start_gateway():
    """Start GatewayServers on ephemeral ports; returns their base URLs."""
    started: list[GatewayServer] = []

    async def _start(
        routes: dict[str, int],
        statuses: dict[str, BackendStatus] | None = None,
        cors_origin: str = "*",
    ) -> str:
        server = make_server(routes, statuses, cors_origin)
        await server.start("127.0.0.1", 0, graceful_timeout=1)
        started.append(server)
        return f"http://127.0.0.1:{server.port}"

    yield _start

    for server in started:
        server.stop_accepting()
        try:
            await asyncio.wait_for(server.wait_closed(), timeout=5)
        finally:
            await server.abort()
            await server.proxy.aclose()
