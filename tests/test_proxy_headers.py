"""Test the pure header helpers of the streaming proxy."""
import pytest

from stdio_gateway.proxy import (
    build_request_headers,
    compute_response_headers,
    is_event_stream,
)
from stdio_gateway.routes import RouteEntry


def _lookup(headers, name):
    return [v for k, v in headers if k.lower() == name.lower()]


class TestComputeResponseHeaders:

    def test_required_headers_always_present(self):
        headers = compute_response_headers([], is_event_stream=False)
        assert _lookup(headers, "Access-Control-Allow-Origin") == ["*"]
        assert _lookup(headers, "Access-Control-Allow-Methods")
        assert _lookup(headers, "Access-Control-Allow-Headers")
        assert _lookup(headers, "Cache-Control") == ["no-cache, no-transform"]
        assert _lookup(headers, "Connection") == ["keep-alive"]
        assert _lookup(headers, "X-Accel-Buffering") == ["no"]
        assert _lookup(headers, "Content-Type") == []

    def test_backend_values_are_overridden_not_duplicated(self):
        backend = [
            ("access-control-allow-origin", "https://evil.example"),
            ("cache-control", "max-age=3600"),
            ("Connection", "close"),
        ]
        headers = compute_response_headers(backend, is_event_stream=False, cors_origin="https://app.example")
        assert _lookup(headers, "Access-Control-Allow-Origin") == ["https://app.example"]
        assert _lookup(headers, "Cache-Control") == ["no-cache, no-transform"]
        assert _lookup(headers, "Connection") == ["keep-alive"]

    def test_hop_by_hop_headers_dropped(self):
        backend = [("Transfer-Encoding", "chunked"), ("Keep-Alive", "timeout=5"), ("Upgrade", "h2c")]
        headers = compute_response_headers(backend, is_event_stream=True)
        assert not _lookup(headers, "Transfer-Encoding")
        assert not _lookup(headers, "Keep-Alive")
        assert not _lookup(headers, "Upgrade")

    def test_other_headers_preserved_including_repeats(self):
        backend = [
            ("content-type", "application/json"),
            ("set-cookie", "a=1"),
            ("set-cookie", "b=2"),
            ("mcp-session-id", "abc"),
        ]
        headers = compute_response_headers(backend, is_event_stream=True)
        assert _lookup(headers, "set-cookie") == ["a=1", "b=2"]
        assert _lookup(headers, "mcp-session-id") == ["abc"]
        # Backend content type wins even on event-stream paths
        assert _lookup(headers, "content-type") == ["application/json"]

    def test_event_stream_default_content_type(self):
        headers = compute_response_headers([("x-custom", "1")], is_event_stream=True)
        assert _lookup(headers, "Content-Type") == ["text/event-stream"]


def test_build_request_headers_rewrites_host_and_connection():
    route = RouteEntry("supabase", "127.0.0.1", 9001)
    inbound = [
        ("host", "gateway.example:8000"),
        ("connection", "close"),
        ("transfer-encoding", "chunked"),
        ("accept", "text/event-stream"),
        ("authorization", "Bearer t"),
        ("content-length", "12"),
    ]
    headers = build_request_headers(inbound, route)
    assert _lookup(headers, "Host") == ["127.0.0.1:9001"]
    assert _lookup(headers, "Connection") == ["keep-alive"]
    assert not _lookup(headers, "transfer-encoding")
    assert _lookup(headers, "accept") == ["text/event-stream"]
    assert _lookup(headers, "authorization") == ["Bearer t"]
    assert _lookup(headers, "content-length") == ["12"]


@pytest.mark.parametrize("remainder, accept, expected", [
    ("/sse", "", True),
    ("/sse/", "", True),
    ("/sse?sessionId=1", "", True),
    ("/v1/sse", "", True),
    ("/message", "", False),
    ("/mcp", "application/json, text/event-stream", True),
    ("/", "TEXT/EVENT-STREAM", True),
    ("/ssex", "", False),
])
def test_is_event_stream(remainder, accept, expected):
    assert is_event_stream(remainder, accept) is expected
