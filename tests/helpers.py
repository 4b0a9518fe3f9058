"""Test backends and small utilities shared by the test suite."""

import asyncio
import socket
import sys
import textwrap
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from stdio_gateway.config import ServerConfig
from stdio_gateway.process_manager.supervisor import BackendStatus
from stdio_gateway.proxy import StreamingProxy
from stdio_gateway.routes import RouteEntry, RouteTable
from stdio_gateway.server import GatewayServer


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class StaticStatuses:
    """Stand-in for the supervisor when only route status matters."""

    def __init__(self, **statuses: BackendStatus) -> None:
        self.statuses = dict(statuses)

    def status(self, name: str) -> BackendStatus:
        return self.statuses.get(name, BackendStatus.STOPPED)


def make_server(
    routes: dict[str, int],
    statuses: dict[str, BackendStatus] | None = None,
    cors_origin: str = "*",
) -> GatewayServer:
    """GatewayServer over fixed routes, with every route ready by default."""
    table = RouteTable(RouteEntry(name, "127.0.0.1", port) for name, port in routes.items())
    if statuses is None:
        statuses = {name: BackendStatus.READY for name in routes}
    return GatewayServer(
        name="test-gateway",
        routes=table,
        backends=StaticStatuses(**statuses),
        proxy=StreamingProxy(cors_origin=cors_origin, connect_timeout=2.0),
        cors_origin=cors_origin,
    )


@asynccontextmanager
async def serve_asgi(app) -> AsyncIterator[int]:
    """Serve ``app`` with uvicorn on an ephemeral port; yields the port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind(("127.0.0.1", 0))
    config = uvicorn.Config(
        app, lifespan="off", log_config=None, access_log=False,
        timeout_graceful_shutdown=1,
    )
    server = uvicorn.Server(config)
    task = asyncio.create_task(server._serve(sockets=[sock]))
    while not server.started:
        await asyncio.sleep(0.01)
    try:
        yield sock.getsockname()[1]
    finally:
        server.should_exit = True
        await asyncio.wait_for(task, timeout=5)


def echo_app(tag: str) -> Starlette:
    """Backend that describes the request it received."""

    async def echo(request: Request) -> JSONResponse:
        body = await request.body()
        return JSONResponse({
            "backend": tag,
            "method": request.method,
            "path": request.url.path,
            "query": request.url.query,
            "headers": dict(request.headers),
            "body": body.decode(),
        })

    return Starlette(routes=[
        Route("/{path:path}", echo, methods=["GET", "POST", "PUT", "DELETE", "PATCH"]),
    ])


def paced_stream_app(pauses: list[float], sent_at: list[float]) -> Starlette:
    """Backend emitting one SSE event per pause; records each send time."""

    async def events() -> AsyncIterator[bytes]:
        for i, pause in enumerate(pauses):
            await asyncio.sleep(pause)
            sent_at.append(time.monotonic())
            yield f"data: event-{i}\n\n".encode()

    async def sse(request: Request) -> StreamingResponse:
        return StreamingResponse(events(), media_type="text/event-stream")

    async def bare(request: Request) -> StreamingResponse:
        async def once() -> AsyncIterator[bytes]:
            yield b"data: hi\n\n"
        return StreamingResponse(once())

    return Starlette(routes=[Route("/sse", sse), Route("/bare/sse", bare)])


class EndlessStreamBackend:
    """Raw TCP backend streaming events until its client goes away.

    ``closed`` is set as soon as the peer closes the connection, which is
    how the tests observe that the gateway dropped its outbound socket.
    """

    def __init__(self) -> None:
        self.connected = asyncio.Event()
        self.closed = asyncio.Event()
        self.port: int | None = None
        self._server: asyncio.AbstractServer | None = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        assert self._server is not None
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await reader.readuntil(b"\r\n\r\n")
        writer.write(
            b"HTTP/1.1 200 OK\r\n"
            b"Content-Type: text/event-stream\r\n"
            b"Transfer-Encoding: chunked\r\n\r\n"
        )
        self.connected.set()
        eof = asyncio.create_task(reader.read())
        try:
            n = 0
            while not eof.done():
                event = f"data: {n}\n\n".encode()
                writer.write(b"%x\r\n%s\r\n" % (len(event), event))
                await writer.drain()
                n += 1
                await asyncio.wait({eof}, timeout=0.05)
        except (ConnectionError, OSError):
            pass
        finally:
            self.closed.set()
            eof.cancel()
            writer.close()


class BrokenStreamBackend:
    """Raw TCP backend that sends headers and one event, then hangs up."""

    def __init__(self) -> None:
        self.port: int | None = None
        self._server: asyncio.AbstractServer | None = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        assert self._server is not None
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await reader.readuntil(b"\r\n\r\n")
        event = b"data: partial\n\n"
        writer.write(
            b"HTTP/1.1 200 OK\r\n"
            b"Content-Type: text/event-stream\r\n"
            b"Transfer-Encoding: chunked\r\n\r\n"
            + b"%x\r\n%s\r\n" % (len(event), event)
        )
        await writer.drain()
        writer.close()


class SilentBackend:
    """Raw TCP backend that reads a request and never answers it."""

    def __init__(self) -> None:
        self.connected = asyncio.Event()
        self.closed = asyncio.Event()
        self.port: int | None = None
        self._server: asyncio.AbstractServer | None = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        assert self._server is not None
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await reader.readuntil(b"\r\n\r\n")
        self.connected.set()
        try:
            await reader.read()
        except (ConnectionError, OSError):
            pass
        finally:
            self.closed.set()
            writer.close()


def python_backend(name: str, port: int, script: str, **extra) -> ServerConfig:
    """ServerConfig running an inline Python script as the backend."""
    return ServerConfig(
        name=name,
        port=port,
        command=sys.executable,
        args=("-u", "-c", textwrap.dedent(script)),
        **extra,
    )


def delayed_listener_script(port: int, delay: float, marker: str | None = None) -> str:
    """Script that opens ``port`` after ``delay`` seconds and records SIGTERM."""
    return f"""
        import signal, socket, sys, time

        def on_term(signum, frame):
            if {marker!r}:
                with open({marker!r}, "w") as f:
                    f.write("terminated")
            sys.exit(0)

        signal.signal(signal.SIGTERM, on_term)
        time.sleep({delay})
        s = socket.socket()
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind(("127.0.0.1", {port}))
        s.listen(16)
        print("listening on", {port}, flush=True)
        while True:
            conn, _ = s.accept()
            conn.close()
    """
