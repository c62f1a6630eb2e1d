"""FastAPI application for the chat relay.

Provides a /api/chat endpoint that admits a browser chat request, forwards
it to the upstream chat-completions service and streams the upstream
Server-Sent-Events body back verbatim, plus a /health liveness probe.

Admission order:
1. Per-client fixed-window rate limit (middleware, before body parsing)
2. Body shape validation
3. Content safety filter on the latest user message
4. Upstream credential presence check
5. Streaming relay
"""

import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from starlette.background import BackgroundTask
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from chat_relay.config import RelayConfig, load_config
from chat_relay.limiter import RateLimitExceeded, RateLimiter
from chat_relay.models import ChatRequest, ErrorResponse
from chat_relay.relay import StreamRelay, UpstreamError, UpstreamStream
from chat_relay.safety import SafetyFilter, build_safety_filter, latest_user_content
from chat_relay.telemetry import log_request, setup_logging

logger = logging.getLogger("chat_relay")

CONFIG_PATH = os.getenv("RELAY_CONFIG")

RATE_LIMITED_MESSAGE = "Too many requests. Please slow down."
MALFORMED_BODY_MESSAGE = "Expected { messages: [...] }"
UNSAFE_CONTENT_MESSAGE = (
    "This request appears unsafe. Please rephrase to a lawful, non-harmful question."
)
BODY_TOO_LARGE_MESSAGE = "Request body too large."
UPSTREAM_ERROR_MESSAGE = "Upstream error"
UNEXPECTED_ERROR_MESSAGE = "Unexpected server error."

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_config: Optional[RelayConfig] = None
_limiter: Optional[RateLimiter] = None
_safety_filter: Optional[SafetyFilter] = None
_relay: Optional[StreamRelay] = None


def get_config() -> RelayConfig:
    """Return the loaded relay configuration (lazy-init)."""
    global _config
    if _config is None:
        _config = load_config(CONFIG_PATH)
    return _config


def get_limiter() -> RateLimiter:
    """Return the rate limiter (lazy-init from config)."""
    global _limiter
    if _limiter is None:
        cfg = get_config()
        _limiter = RateLimiter(
            points=cfg.rate_limit.points,
            duration=cfg.rate_limit.duration,
            max_keys=cfg.rate_limit.max_keys,
        )
    return _limiter


def get_safety_filter() -> SafetyFilter:
    """Return the safety filter (lazy-init from config)."""
    global _safety_filter
    if _safety_filter is None:
        _safety_filter = build_safety_filter(get_config().safety_rules_file)
    return _safety_filter


def get_relay() -> StreamRelay:
    """Return the upstream stream relay (lazy-init from config)."""
    global _relay
    if _relay is None:
        _relay = StreamRelay(get_config().upstream)
    return _relay


def client_key(request: Request) -> str:
    """Derive the rate-limit key: forwarded address, peer address, or 'global'."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded
    if request.client and request.client.host:
        return request.client.host
    return "global"


def _error_response(
    status: int,
    message: str,
    detail: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(error=message, detail=detail)
    return JSONResponse(
        status_code=status,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


def _is_json(request: Request) -> bool:
    """Only JSON-typed bodies are parsed; anything else is treated as empty."""
    media_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


def _is_rate_limited(path: str) -> bool:
    return path == "/health" or path.startswith("/api/")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Consumes one rate-limit point per API request, before the route runs.

    Static assets are served without consuming points.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not _is_rate_limited(request.url.path):
            return await call_next(request)

        key = client_key(request)
        try:
            get_limiter().consume(key)
        except RateLimitExceeded as exc:
            log_request(
                client_key=key,
                outcome="rate_limited",
                status=429,
                error=exc.detail,
            )
            return _error_response(
                429,
                RATE_LIMITED_MESSAGE,
                headers={"Retry-After": str(exc.retry_after)},
            )

        return await call_next(request)


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Initialize config, logging, limiter, filter and relay on startup."""
    cfg = get_config()
    setup_logging(cfg.log_file)
    get_limiter()
    get_safety_filter()
    get_relay()
    if not cfg.upstream.api_key:
        logger.warning(
            "%s is not set; /api/chat will answer 500 until it is.",
            cfg.upstream.api_key_env,
        )
    yield


async def health() -> Dict[str, bool]:
    """Liveness probe; performs no dependency checks."""
    return {"ok": True}


async def _relay_body(
    stream: UpstreamStream, request_id: str, key: str
) -> AsyncIterator[bytes]:
    """Pass upstream chunks through and log how the stream ended."""
    try:
        async for chunk in stream.iter_bytes():
            yield chunk
    finally:
        await stream.aclose()
        log_request(
            client_key=key,
            outcome="stream_complete" if stream.completed else "stream_aborted",
            error=stream.error,
            request_id=request_id,
            bytes_relayed=stream.bytes_relayed,
        )


async def _handle_chat(request: Request, request_id: str, key: str) -> Response:
    config = get_config()

    # --- Body parsing and shape validation ---
    raw_body = await request.body()
    if len(raw_body) > config.max_body_bytes:
        log_request(
            client_key=key,
            outcome="payload_too_large",
            status=413,
            request_id=request_id,
        )
        return _error_response(413, BODY_TOO_LARGE_MESSAGE)

    data = json.loads(raw_body) if _is_json(request) and raw_body.strip() else {}

    try:
        chat_request = ChatRequest.model_validate(data)
    except ValidationError as exc:
        log_request(
            client_key=key,
            outcome="validation_error",
            status=400,
            error="{} validation error(s)".format(exc.error_count()),
            request_id=request_id,
        )
        return _error_response(400, MALFORMED_BODY_MESSAGE)

    # --- Content safety ---
    matched_rule = get_safety_filter().first_match(
        latest_user_content(chat_request.messages)
    )
    if matched_rule is not None:
        log_request(
            client_key=key,
            outcome="unsafe_content",
            status=400,
            error="Matched safety rule {}".format(matched_rule),
            request_id=request_id,
        )
        return _error_response(400, UNSAFE_CONTENT_MESSAGE)

    # --- Credential ---
    api_key = config.upstream.api_key
    if not api_key:
        log_request(
            client_key=key,
            outcome="missing_credential",
            status=500,
            error="{} is not set".format(config.upstream.api_key_env),
            request_id=request_id,
        )
        return _error_response(
            500, "Server missing {}.".format(config.upstream.api_key_env)
        )

    # --- Upstream ---
    try:
        stream = await get_relay().open(chat_request.messages, api_key)
    except UpstreamError as exc:
        log_request(
            client_key=key,
            outcome="upstream_error",
            status=502,
            error=exc.detail,
            request_id=request_id,
            upstream_status=exc.status_code,
        )
        return _error_response(502, UPSTREAM_ERROR_MESSAGE, detail=exc.detail)

    log_request(
        client_key=key,
        outcome="streaming",
        status=200,
        request_id=request_id,
        messages=len(chat_request.messages),
    )
    return StreamingResponse(
        _relay_body(stream, request_id, key),
        status_code=200,
        media_type="text/event-stream; charset=utf-8",
        headers=STREAM_HEADERS,
        background=BackgroundTask(stream.aclose),
    )


async def chat(request: Request) -> Response:
    """Handle a chat request and stream the upstream completion back.

    Any fault not mapped to a specific status is logged with its traceback
    and answered with a generic 500; no internal detail reaches the client.
    """
    request_id = "relay-{}".format(uuid.uuid4().hex[:12])
    key = client_key(request)
    try:
        return await _handle_chat(request, request_id, key)
    except Exception as exc:
        logger.exception("Unexpected error handling request %s", request_id)
        log_request(
            client_key=key,
            outcome="unexpected_error",
            status=500,
            error=exc.__class__.__name__,
            request_id=request_id,
        )
        return _error_response(500, UNEXPECTED_ERROR_MESSAGE)


async def unexpected_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map stray faults on any route to the generic error body."""
    logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
    return _error_response(500, UNEXPECTED_ERROR_MESSAGE)


def create_app() -> FastAPI:
    """Build the FastAPI application.

    Middleware execute in reverse order of addition, so CORS wraps
    compression, which wraps the rate limiter.
    """
    cfg = get_config()
    application = FastAPI(title="Chat Relay", version="1.0.0", lifespan=lifespan)

    application.add_middleware(RateLimitMiddleware)
    # Starlette skips text/event-stream, so relayed bytes are left as-is.
    application.add_middleware(GZipMiddleware, minimum_size=1000)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After"],
    )
    application.add_exception_handler(Exception, unexpected_exception_handler)

    application.add_api_route("/health", health, methods=["GET"])
    application.add_api_route(
        "/api/chat", chat, methods=["POST"], response_model=None
    )

    if cfg.static_dir and Path(cfg.static_dir).is_dir():
        application.mount(
            "/", StaticFiles(directory=cfg.static_dir, html=True), name="static"
        )

    return application


app = create_app()
