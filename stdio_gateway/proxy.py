"""Streaming reverse proxy.

Forwards one inbound request to a backend and relays the response chunk by
chunk. Event streams never end on their own, so nothing here may wait for
EOF before writing to the client.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import AsyncIterator, Iterable

import httpx
from starlette.requests import ClientDisconnect, Request
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

from .errors import BackendUnreachable, StreamInterrupted
from .routes import Resolution, RouteEntry

log = logging.getLogger(__name__)

EVENT_STREAM = "text/event-stream"
ALLOW_METHODS = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
ALLOW_HEADERS = (
    "Content-Type, Authorization, Accept, Cache-Control, "
    "Last-Event-ID, Mcp-Session-Id, Mcp-Protocol-Version"
)

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

SOCKET_OPTIONS = [
    (socket.IPPROTO_TCP, socket.TCP_NODELAY, 1),
    (socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1),
]


def cors_headers(origin: str = "*") -> list[tuple[str, str]]:
    return [
        ("Access-Control-Allow-Origin", origin),
        ("Access-Control-Allow-Methods", ALLOW_METHODS),
        ("Access-Control-Allow-Headers", ALLOW_HEADERS),
    ]


def compute_response_headers(
    backend_headers: Iterable[tuple[str, str]],
    is_event_stream: bool,
    cors_origin: str = "*",
) -> list[tuple[str, str]]:
    """Headers sent to the client for a proxied response.

    Backend headers are copied minus hop-by-hop ones; CORS, cache and
    anti-buffering headers always win over whatever the backend sent.
    """
    forced = [
        *cors_headers(cors_origin),
        ("Cache-Control", "no-cache, no-transform"),
        ("Connection", "keep-alive"),
        ("X-Accel-Buffering", "no"),
    ]
    skip = HOP_BY_HOP_HEADERS | {name.lower() for name, _ in forced}
    result = [(k, v) for k, v in backend_headers if k.lower() not in skip]
    result.extend(forced)
    if is_event_stream and not any(k.lower() == "content-type" for k, _ in result):
        result.append(("Content-Type", EVENT_STREAM))
    return result


def build_request_headers(
    inbound: Iterable[tuple[str, str]], route: RouteEntry
) -> list[tuple[str, str]]:
    headers = [
        (k, v) for k, v in inbound
        if k.lower() != "host" and k.lower() not in HOP_BY_HOP_HEADERS
    ]
    headers.append(("Host", route.netloc))
    headers.append(("Connection", "keep-alive"))
    return headers


def is_event_stream(remainder: str, accept: str = "") -> bool:
    path = remainder.partition("?")[0].rstrip("/")
    return path.endswith("/sse") or EVENT_STREAM in accept.lower()


def error_response(
    status_code: int,
    error: str,
    server: str | None,
    message: str,
    cors_origin: str = "*",
) -> JSONResponse:
    return JSONResponse(
        {"error": error, "server": server, "message": message},
        status_code=status_code,
        headers=dict(cors_headers(cors_origin)),
    )


async def _body_stream(request: Request, done: asyncio.Event) -> AsyncIterator[bytes]:
    async for chunk in request.stream():
        if chunk:
            yield chunk
    done.set()


async def _wait_disconnect(receive: Receive) -> None:
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return


async def _wait_disconnect_after(body_sent: asyncio.Event, receive: Receive) -> None:
    # The body stream owns receive() until the request body is consumed
    await body_sent.wait()
    await _wait_disconnect(receive)


class ProxiedStreamResponse(Response):
    """ASGI response relaying an open upstream httpx response.

    Runs the relay alongside a watcher on ``receive``; whichever finishes
    first cancels the other, and the upstream response is closed exactly
    once afterwards.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        headers: list[tuple[str, str]],
        server: str,
    ) -> None:
        self.upstream = upstream
        self.server = server
        self.status_code = upstream.status_code
        self.background = None
        self.raw_headers = [
            (k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers
        ]

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        relay = asyncio.create_task(self._relay(send))
        watcher = asyncio.create_task(_wait_disconnect(receive))
        try:
            await asyncio.wait({relay, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (relay, watcher):
                task.cancel()
            outcome, _ = await asyncio.gather(relay, watcher, return_exceptions=True)
            await self.upstream.aclose()

        if isinstance(outcome, asyncio.CancelledError):
            log.debug("Client disconnected from '%s', upstream closed", self.server)
        elif isinstance(outcome, Exception):
            raise outcome

    async def _relay(self, send: Send) -> None:
        await send({
            "type": "http.response.start",
            "status": self.status_code,
            "headers": self.raw_headers,
        })
        try:
            await self._forward_body(send)
        except StreamInterrupted as exc:
            log.warning("%s", exc)
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def _forward_body(self, send: Send) -> None:
        try:
            async for chunk in self.upstream.aiter_raw():
                if chunk:
                    await send({"type": "http.response.body", "body": chunk, "more_body": True})
        except httpx.HTTPError as exc:
            raise StreamInterrupted(
                f"Backend '{self.server}' broke off its response: {exc!r}"
            ) from exc


class StreamingProxy:
    """Forwards requests to backends over a shared httpx client."""

    def __init__(
        self,
        *,
        cors_origin: str = "*",
        connect_timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.cors_origin = cors_origin
        self._client = client or self._create_client(connect_timeout)

    @staticmethod
    def _create_client(connect_timeout: float) -> httpx.AsyncClient:
        transport = httpx.AsyncHTTPTransport(socket_options=SOCKET_OPTIONS)
        client = httpx.AsyncClient(
            transport=transport,
            # Streams stay open indefinitely; only connecting is bounded
            timeout=httpx.Timeout(None, connect=connect_timeout),
            limits=httpx.Limits(max_connections=None, max_keepalive_connections=32),
            follow_redirects=False,
            trust_env=False,
        )
        # Forward only what the client sent, not httpx's own defaults
        client.headers.clear()
        return client

    async def aclose(self) -> None:
        await self._client.aclose()

    async def forward(self, request: Request, resolution: Resolution) -> Response:
        route = resolution.route
        has_body = (
            request.method in BODY_METHODS
            or "content-length" in request.headers
            or "transfer-encoding" in request.headers
        )
        body_sent = asyncio.Event()
        if not has_body:
            body_sent.set()
        outbound = self._client.build_request(
            request.method,
            route.base_url + resolution.remainder,
            headers=build_request_headers(request.headers.items(), route),
            content=_body_stream(request, body_sent) if has_body else None,
        )

        # A backend may sit on a request for a long time before answering;
        # the client leaving in the meantime must still drop the connection
        sending = asyncio.create_task(self._client.send(outbound, stream=True))
        watcher = asyncio.create_task(_wait_disconnect_after(body_sent, request.receive))
        abandoned = True
        try:
            done, _ = await asyncio.wait(
                {sending, watcher}, return_when=asyncio.FIRST_COMPLETED
            )
            abandoned = sending not in done
        finally:
            for task in (sending, watcher):
                task.cancel()
            outcome, _ = await asyncio.gather(sending, watcher, return_exceptions=True)
            if abandoned and isinstance(outcome, httpx.Response):
                await outcome.aclose()

        if abandoned:
            log.debug("Client left before '%s' answered; request cancelled", route.name)
            return Response(status_code=499)

        try:
            upstream = sending.result()
        except httpx.RequestError as exc:
            error = BackendUnreachable(route.name, str(exc) or type(exc).__name__)
            log.warning("Proxy error for '%s': %s", route.name, error.message)
            return error_response(
                502, "Bad Gateway", route.name, error.message, self.cors_origin
            )
        except ClientDisconnect:
            log.debug("Client went away while sending body to '%s'", route.name)
            return Response(status_code=499)

        log.debug(
            "%s %s -> %s%s [%d]",
            request.method, request.url.path, route.name,
            resolution.remainder, upstream.status_code,
        )
        headers = compute_response_headers(
            upstream.headers.multi_items(),
            is_event_stream(resolution.remainder, request.headers.get("accept", "")),
            self.cors_origin,
        )
        return ProxiedStreamResponse(upstream, headers, route.name)
