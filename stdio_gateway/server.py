"""Public HTTP listener: informational endpoints plus name-prefixed proxying."""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Protocol

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .process_manager.supervisor import BackendStatus
from .proxy import StreamingProxy, cors_headers, error_response
from .routes import RouteTable

log = logging.getLogger(__name__)

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class StatusSource(Protocol):
    def status(self, name: str) -> BackendStatus: ...


def bind_listener(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


class CorsMiddleware:
    """Answers preflight requests and stamps CORS headers on every response."""

    def __init__(self, app: ASGIApp, origin: str = "*") -> None:
        self.app = app
        self.headers = [
            (k.lower().encode("latin-1"), v.encode("latin-1"))
            for k, v in cors_headers(origin)
        ]

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if scope["method"] == "OPTIONS":
            await send({
                "type": "http.response.start",
                "status": 200,
                "headers": [*self.headers, (b"content-length", b"0")],
            })
            await send({"type": "http.response.body", "body": b""})
            return

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                present = {name.lower() for name, _ in message.get("headers", [])}
                missing = [(k, v) for k, v in self.headers if k not in present]
                if missing:
                    message = {**message, "headers": [*message.get("headers", []), *missing]}
            await send(message)

        await self.app(scope, receive, send_with_cors)


class GatewayServer:
    """Owns the public listener and dispatches requests to backends.

    Routes whose backend is not ``ready`` answer 503; the listener itself
    is available from the moment :meth:`start` returns.
    """

    def __init__(
        self,
        *,
        name: str,
        routes: RouteTable,
        backends: StatusSource,
        proxy: StreamingProxy,
        cors_origin: str = "*",
    ) -> None:
        self.name = name
        self.routes = routes
        self.backends = backends
        self.proxy = proxy
        self.cors_origin = cors_origin
        self.app: ASGIApp = CorsMiddleware(
            Starlette(routes=[
                Route("/", self.index, methods=["GET"]),
                Route("/health", self.health, methods=["GET"]),
                Route("/{path:path}", self.dispatch, methods=ALL_METHODS),
            ]),
            origin=cors_origin,
        )
        self.port: int | None = None
        self._uvicorn: uvicorn.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def index(self, request: Request) -> Response:
        """List every route with its externally reachable URLs."""
        scheme = request.headers.get("x-forwarded-proto", request.url.scheme)
        scheme = scheme.split(",")[0].strip()
        host = request.headers.get("host", request.url.netloc)
        base = f"{scheme}://{host}"
        return JSONResponse({
            "name": self.name,
            "servers": [
                {
                    "name": route.name,
                    "sseUrl": f"{base}/{route.name}/sse",
                    "messageUrl": f"{base}/{route.name}/message",
                    "status": self.backends.status(route.name).value,
                }
                for route in self.routes
            ],
        })

    async def health(self, request: Request) -> Response:
        servers = [
            {
                "name": route.name,
                "port": route.port,
                "status": self.backends.status(route.name).value,
            }
            for route in self.routes
        ]
        ready = all(s["status"] == BackendStatus.READY.value for s in servers)
        return JSONResponse({"status": "ok" if ready else "starting", "servers": servers})

    async def dispatch(self, request: Request) -> Response:
        raw_path = request.scope.get("raw_path") or b""
        path = raw_path.partition(b"?")[0].decode("latin-1") or request.url.path
        query = request.scope.get("query_string", b"").decode("latin-1")
        if query:
            path = f"{path}?{query}"

        resolution = self.routes.resolve(path)
        if resolution is None:
            return error_response(
                404, "Not Found", None,
                f"No server configured for {request.url.path}", self.cors_origin,
            )

        name = resolution.route.name
        status = self.backends.status(name)
        if status is not BackendStatus.READY:
            return error_response(
                503, "Service Unavailable", name,
                f"Server '{name}' is {status.value}", self.cors_origin,
            )
        return await self.proxy.forward(request, resolution)

    # ------------------------------------------------------------------
    # Listener lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        host: str,
        port: int,
        *,
        keep_alive_timeout: int = 86400,
        graceful_timeout: float | None = None,
        access_log: bool = False,
        sock: socket.socket | None = None,
    ) -> None:
        """Open the listener and return once uvicorn is accepting.

        The socket is bound here rather than by uvicorn so that a busy port
        surfaces as an ``OSError`` instead of uvicorn's ``sys.exit``.
        """
        if sock is None:
            sock = bind_listener(host, port)
        self.port = sock.getsockname()[1]
        config = uvicorn.Config(
            self.app,
            host=host,
            port=port,
            lifespan="off",
            access_log=access_log,
            log_config=None,
            timeout_keep_alive=keep_alive_timeout,
            timeout_graceful_shutdown=graceful_timeout,
        )
        self._uvicorn = uvicorn.Server(config)
        # _serve() rather than serve(): serve() installs its own signal
        # handlers, which would bypass the ShutdownCoordinator.
        self._serve_task = asyncio.create_task(
            self._uvicorn._serve(sockets=[sock]),
            name="gateway-listener",
        )
        while not self._uvicorn.started:
            if self._serve_task.done():
                self._serve_task.result()
                raise RuntimeError(f"Listener failed to start on {host}:{self.port}")
            await asyncio.sleep(0.05)
        log.info("Gateway listening on http://%s:%d", host, self.port)

    def stop_accepting(self) -> None:
        if self._uvicorn is not None:
            self._uvicorn.should_exit = True

    async def wait_closed(self) -> None:
        if self._serve_task is not None:
            await self._serve_task

    async def abort(self) -> None:
        """Cancel the listener task outright (after the grace period)."""
        if self._serve_task is not None and not self._serve_task.done():
            self._serve_task.cancel()
            try:
                await self._serve_task
            except asyncio.CancelledError:
                pass
