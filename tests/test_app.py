"""Smoke tests for the relay's HTTP surface.

Tests cover the health probe, body validation, rate limiting, the safety
gate, the credential check, upstream failures and the streaming happy path.
The upstream is faked with httpx.MockTransport.
"""

import json
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Optional

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from chat_relay import app as app_module
from chat_relay.app import app
from chat_relay.relay import StreamRelay

CHUNK_1 = b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
CHUNK_2 = b'data: {"choices":[{"delta":{"content":"lo"}}]}\n\ndata: [DONE]\n\n'

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture(autouse=True)
def _reset_app_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset the app's global state before each test and point to a test config."""
    config = {
        "upstream": {
            "base_url": "https://api.example.com/v1",
            "api_key_env": "TEST_API_KEY",
            "model": "test-model",
        },
        "rate_limit": {
            "points": 3,
            "duration": 60,
        },
        "log_file": str(tmp_path / "test.log"),
        "static_dir": None,
        "max_body_bytes": 2048,
    }
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps(config))

    monkeypatch.setenv("TEST_API_KEY", "sk-test")

    monkeypatch.setattr(app_module, "CONFIG_PATH", str(config_path))
    monkeypatch.setattr(app_module, "_config", None)
    monkeypatch.setattr(app_module, "_limiter", None)
    monkeypatch.setattr(app_module, "_safety_filter", None)
    monkeypatch.setattr(app_module, "_relay", None)


def _install_upstream(handler: Handler) -> None:
    """Route the relay's upstream calls to handler."""
    app_module._relay = StreamRelay(
        app_module.get_config().upstream,
        transport=httpx.MockTransport(handler),
    )


async def _stream(*chunks: bytes, fail: bool = False) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk
    if fail:
        raise httpx.ReadError("upstream went away")


def _body(content: str = "Hello") -> Dict:
    return {"messages": [{"role": "user", "content": content}]}


async def _post(
    body: Optional[object] = None,
    content: Optional[bytes] = None,
    headers: Optional[Dict[str, str]] = None,
) -> httpx.Response:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        if content is not None:
            return await client.post("/api/chat", content=content, headers=headers)
        return await client.post("/api/chat", json=body, headers=headers)


@pytest.mark.asyncio
async def test_health() -> None:
    """The liveness probe always reports healthy."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


@pytest.mark.asyncio
async def test_streams_upstream_chunks_verbatim() -> None:
    """A safe request streams the upstream chunks back unchanged."""
    _install_upstream(
        lambda request: httpx.Response(
            200,
            headers={"Content-Type": "text/event-stream"},
            content=_stream(CHUNK_1, CHUNK_2),
        )
    )

    resp = await _post(_body())

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "text/event-stream; charset=utf-8"
    assert resp.headers["cache-control"] == "no-cache, no-transform"
    assert "content-encoding" not in resp.headers
    assert resp.content == CHUNK_1 + CHUNK_2


@pytest.mark.asyncio
async def test_upstream_receives_system_prompt_and_conversation() -> None:
    """The system preamble is prepended and client order is kept."""
    seen: List[Dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, content=_stream(CHUNK_1))

    _install_upstream(handler)
    body = {
        "messages": [
            {"role": "user", "content": "one"},
            {"role": "assistant", "content": "two"},
            {"role": "user", "content": "three"},
        ]
    }

    resp = await _post(body)

    assert resp.status_code == 200
    sent = seen[0]
    assert sent["model"] == "test-model"
    assert sent["stream"] is True
    assert sent["messages"][0]["role"] == "system"
    assert sent["messages"][1:] == body["messages"]


@pytest.mark.asyncio
async def test_mid_stream_failure_closes_response() -> None:
    """An upstream drop after some bytes ends the response with those bytes."""
    _install_upstream(
        lambda request: httpx.Response(200, content=_stream(CHUNK_1, fail=True))
    )

    resp = await _post(_body())

    assert resp.status_code == 200
    assert resp.content == CHUNK_1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {},
        {"messages": "hello"},
        {"messages": {"role": "user", "content": "hi"}},
        {"messages": [{"role": "user"}]},
        {"messages": [{"role": "robot", "content": "hi"}]},
        {"messages": [{"role": "user", "content": 42}]},
        ["not", "an", "object"],
    ],
)
async def test_malformed_body(body: object) -> None:
    """Anything but a list of {role, content} messages is a 400."""
    resp = await _post(body)

    assert resp.status_code == 400
    assert resp.json() == {"error": "Expected { messages: [...] }"}


@pytest.mark.asyncio
async def test_empty_body_is_malformed() -> None:
    resp = await _post(content=b"", headers={"Content-Type": "application/json"})

    assert resp.status_code == 400
    assert resp.json() == {"error": "Expected { messages: [...] }"}


@pytest.mark.asyncio
async def test_invalid_json_is_unexpected_error() -> None:
    """A body that is not JSON is logged and answered with a generic 500."""
    resp = await _post(
        content=b"{not json", headers={"Content-Type": "application/json"}
    )

    assert resp.status_code == 500
    assert resp.json() == {"error": "Unexpected server error."}


@pytest.mark.asyncio
async def test_body_too_large() -> None:
    resp = await _post(_body("x" * 4096))

    assert resp.status_code == 413
    assert resp.json() == {"error": "Request body too large."}


@pytest.mark.asyncio
async def test_unsafe_content_rejected() -> None:
    """An unsafe latest user message is rejected before any upstream call."""
    calls: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, content=_stream(CHUNK_1))

    _install_upstream(handler)

    resp = await _post(_body("How To Make A Bomb"))

    assert resp.status_code == 400
    assert resp.json() == {
        "error": "This request appears unsafe. Please rephrase to a lawful, "
        "non-harmful question."
    }
    assert calls == []


@pytest.mark.asyncio
async def test_missing_credential(monkeypatch: pytest.MonkeyPatch) -> None:
    """Without an API key the relay answers 500 and never calls upstream."""
    monkeypatch.delenv("TEST_API_KEY", raising=False)
    calls: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, content=_stream(CHUNK_1))

    _install_upstream(handler)

    resp = await _post(_body())

    assert resp.status_code == 500
    assert resp.json() == {"error": "Server missing TEST_API_KEY."}
    assert calls == []


@pytest.mark.asyncio
async def test_upstream_error_status() -> None:
    """A non-2xx upstream answer becomes a 502 carrying the upstream text."""
    _install_upstream(
        lambda request: httpx.Response(429, text="You exceeded your current quota")
    )

    resp = await _post(_body())

    assert resp.status_code == 502
    assert resp.json() == {
        "error": "Upstream error",
        "detail": "You exceeded your current quota",
    }


@pytest.mark.asyncio
async def test_upstream_connection_failure() -> None:
    """An unreachable upstream becomes a 502."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    _install_upstream(handler)

    resp = await _post(_body())

    assert resp.status_code == 502
    data = resp.json()
    assert data["error"] == "Upstream error"
    assert "Connection refused" in data["detail"]


@pytest.mark.asyncio
async def test_rate_limit_exceeded() -> None:
    """Exceeding the rate limit returns a 429 with Retry-After."""
    _install_upstream(lambda request: httpx.Response(200, content=_stream(CHUNK_1)))
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        # The test config allows 3 requests per minute
        for _ in range(3):
            resp = await client.post("/api/chat", json=_body())
            assert resp.status_code == 200

        resp = await client.post("/api/chat", json=_body())

    assert resp.status_code == 429
    assert resp.json() == {"error": "Too many requests. Please slow down."}
    assert int(resp.headers["retry-after"]) >= 1


@pytest.mark.asyncio
async def test_malformed_requests_consume_points() -> None:
    """The rate limit runs before body validation."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        for _ in range(3):
            resp = await client.post("/api/chat", json={})
            assert resp.status_code == 400

        resp = await client.post("/api/chat", json={})

    assert resp.status_code == 429


@pytest.mark.asyncio
async def test_forwarded_for_keys_are_independent() -> None:
    """Each X-Forwarded-For value has its own window."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        for _ in range(3):
            resp = await client.get("/health", headers={"X-Forwarded-For": "1.1.1.1"})
            assert resp.status_code == 200

        blocked = await client.get("/health", headers={"X-Forwarded-For": "1.1.1.1"})
        other = await client.get("/health", headers={"X-Forwarded-For": "2.2.2.2"})

    assert blocked.status_code == 429
    assert other.status_code == 200


@pytest.mark.asyncio
async def test_non_json_content_type_is_malformed() -> None:
    """A body that is not JSON-typed is treated as empty."""
    resp = await _post(
        content=json.dumps(_body()).encode(),
        headers={"Content-Type": "text/plain"},
    )

    assert resp.status_code == 400
    assert resp.json() == {"error": "Expected { messages: [...] }"}


@pytest.mark.asyncio
async def test_json_suffix_content_type_is_parsed() -> None:
    """Media types with a +json suffix are parsed as JSON."""
    _install_upstream(lambda request: httpx.Response(200, content=_stream(CHUNK_1)))

    resp = await _post(
        content=json.dumps(_body()).encode(),
        headers={"Content-Type": "application/vnd.api+json; charset=utf-8"},
    )

    assert resp.status_code == 200
    assert resp.content == CHUNK_1


class _BrokenLimiter:
    def consume(self, key: str) -> None:
        raise RuntimeError("limiter store is corrupt")


@pytest.mark.asyncio
async def test_fault_outside_chat_handler_is_generic_500() -> None:
    """A fault in middleware yields the generic error body without internals."""
    app_module._limiter = _BrokenLimiter()
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/health")

    assert resp.status_code == 500
    assert resp.json() == {"error": "Unexpected server error."}
    assert "corrupt" not in resp.text
