"""HTTP/WebSocket front end for the relay.

Serves one WebSocket chat endpoint plus a few small JSON endpoints::

    WS   /chat           question in, streamed answer out
    GET  /hint           a few sample questions
    GET  /welcome        welcome text and announcement
    GET  /stats          session counters
    GET  /admin/config   current client config (admin secret required)
    POST /admin/config   replace client config, keeping a backup

Usage:
    chat-relay -c chat-relay.yaml serve --port 8787
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import os
import random
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState

from .config import load_config, parse_client_config, validate_client_config
from .errors import Forbidden, InternalError, InvalidRequest, RelayError
from .identity import utc_timestamp
from .metrics import RelayMetrics
from .relay.session import ClientGone, RelaySession, RelaySettings
from .storage import RelayStore, create_store
from .types import CallerMetadata, RelayConfig, RelayMessage
from .verifier import CaptchaVerifier, TurnstileVerifier

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
POLICY_VIOLATION = 1008


class WebSocketChannel:
    """Adapts a Starlette WebSocket to the session's ClientChannel."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def receive(self) -> str | None:
        try:
            message = await self.websocket.receive()
        except WebSocketDisconnect:
            return None
        if message["type"] == "websocket.disconnect":
            return None
        text = message.get("text")
        if text is None:
            data = message.get("bytes") or b""
            text = data.decode("utf-8", errors="replace")
        return text

    async def send(self, message: RelayMessage) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            raise ClientGone("websocket already closed")
        try:
            await self.websocket.send_text(json.dumps(message.to_wire(), ensure_ascii=False))
        except (WebSocketDisconnect, RuntimeError) as e:
            raise ClientGone(str(e)) from e

    async def close(self, code: int = NORMAL_CLOSURE) -> None:
        if (
            self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        ):
            try:
                await self.websocket.close(code=code)
            except RuntimeError:
                logger.debug("Websocket closed by peer before close frame")


def caller_metadata(headers, peer_host: str | None) -> CallerMetadata:
    """Read network origin and coarse location from edge headers."""
    remote_ip = headers.get("cf-connecting-ip")
    if not remote_ip:
        forwarded = headers.get("x-forwarded-for", "")
        remote_ip = forwarded.split(",")[0].strip() if forwarded else ""
    return CallerMetadata(
        remote_ip=remote_ip or peer_host or "",
        country=headers.get("cf-ipcountry"),
        region=headers.get("cf-region"),
        city=headers.get("cf-ipcity"),
        timezone=headers.get("cf-timezone"),
        user_agent=headers.get("user-agent"),
        timestamp=utc_timestamp(),
    )


def _origin_allowed(origin: str | None, allowed: list[str]) -> bool:
    # No Origin header: curl or direct access, not a browser page.
    return origin is None or origin in allowed


def create_app(
    config: RelayConfig | None = None,
    config_path: str | None = None,
    *,
    store: RelayStore | None = None,
    verifier: CaptchaVerifier | None = None,
    http_client: httpx.AsyncClient | None = None,
    metrics: RelayMetrics | None = None,
) -> FastAPI:
    """Create the FastAPI relay application.

    Args:
        config: Loaded configuration; loaded from *config_path* when None.
        config_path: Path to a chat-relay config file.
        store: Storage backend; built from ``config.storage`` when None.
        verifier: Captcha verifier; Turnstile when None.
        http_client: Shared client for upstream and captcha calls.
        metrics: Shared metrics collector.
    """
    if config is None:
        config = load_config(config_path)

    owns_store = store is None
    if store is None:
        store = create_store(config.storage)
    if config.client is not None and store.get_client_config() is None:
        store.put_client_config(config.client)
        logger.info("Seeded client config from %s", config_path or "config")

    owns_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(config.upstream.timeout, connect=config.upstream.connect_timeout),
        )

    if verifier is None:
        turnstile_secret = os.environ.get(config.captcha.secret_env, "")
        if not turnstile_secret:
            logger.warning("%s is not set; captcha checks will fail", config.captcha.secret_env)
        verifier = TurnstileVerifier(
            http_client,
            turnstile_secret,
            verify_url=config.captcha.verify_url,
            timeout=config.captcha.timeout,
        )

    api_key = os.environ.get(config.upstream.api_key_env, "")
    if not api_key:
        logger.warning("%s is not set; upstream calls will be rejected", config.upstream.api_key_env)
    settings = RelaySettings(
        upstream_url=config.upstream.url,
        api_key=api_key,
        max_question_length=config.server.max_question_length,
        default_max_tokens=config.server.default_max_tokens,
        default_timezone=config.server.timezone,
    )
    metrics = metrics or RelayMetrics()
    allowed_origins = list(config.server.allowed_origins)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        yield
        if owns_client:
            await http_client.aclose()
        if owns_store:
            store.close()

    app = FastAPI(title="chat-relay", lifespan=lifespan)
    app.state.store = store
    app.state.metrics = metrics
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        if isinstance(exc, InternalError):
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return exc.to_http_response()

    async def _client_config():
        config_doc = await asyncio.to_thread(store.get_client_config)
        if config_doc is None:
            raise InternalError("client config is missing")
        return config_doc

    def _require_admin(request: Request) -> None:
        secret = os.environ.get(config.server.admin_secret_env, "")
        if not secret:
            raise Forbidden("admin access is not configured")
        auth = request.headers.get("authorization", "")
        scheme, _, token = auth.partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(token.encode(), secret.encode()):
            raise Forbidden()

    @app.websocket("/chat")
    async def chat(websocket: WebSocket) -> None:
        origin = websocket.headers.get("origin")
        if not _origin_allowed(origin, allowed_origins):
            logger.warning("Rejected websocket from origin %s", origin)
            await websocket.close(code=POLICY_VIOLATION)
            return

        await websocket.accept()
        peer = websocket.client.host if websocket.client else None
        channel = WebSocketChannel(websocket)
        session = RelaySession(
            channel,
            verifier=verifier,
            store=store,
            client=http_client,
            settings=settings,
            metadata=caller_metadata(websocket.headers, peer),
            metrics=metrics,
        )
        await session.run()
        await channel.close(NORMAL_CLOSURE)

    @app.get("/hint")
    async def hint() -> dict:
        config_doc = await _client_config()
        k = min(config.server.hint_count, len(config_doc.questions))
        return {"hint": random.sample(config_doc.questions, k)}

    @app.get("/welcome")
    async def welcome() -> dict:
        config_doc = await _client_config()
        return {"welcome": config_doc.welcome, "announcement": config_doc.announcement}

    @app.get("/stats")
    async def stats() -> dict:
        return metrics.snapshot()

    @app.get("/admin/config")
    async def get_config(request: Request) -> dict:
        _require_admin(request)
        config_doc = await _client_config()
        return config_doc.to_dict()

    @app.post("/admin/config")
    async def post_config(request: Request) -> dict:
        _require_admin(request)
        try:
            raw = await request.json()
            new_config = parse_client_config(raw)
        except ValueError as e:
            raise InvalidRequest(str(e)) from e
        errors = validate_client_config(new_config)
        if errors:
            raise InvalidRequest("; ".join(errors))

        old_config = await asyncio.to_thread(store.get_client_config)
        backup_key = None
        if old_config is not None:
            backup_key = await asyncio.to_thread(store.backup_client_config, old_config)
        await asyncio.to_thread(store.put_client_config, new_config)
        logger.info("Client config updated (backup=%s)", backup_key)
        return {"success": True, "backup": backup_key}

    return app
