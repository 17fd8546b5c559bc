"""HTTP API: session management and guarded messaging commands.

Every response uses the same envelope, ``{error, message, details?, timestamp}``
for failures and ``{error: false, success: true, ..., timestamp}`` for success.
"""

import math
import time
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from wagate import __version__
from wagate.api.media import resolve_media
from wagate.api.ratelimit import RateLimiter
from wagate.api.schemas import (
    ClearGroupRequest,
    ForwardMessageRequest,
    SendMediaRequest,
    SendTextRequest,
    TriggerMessageRequest,
)
from wagate.backend.base import RawMessage
from wagate.config import Config
from wagate.errors import GatewayError, Unauthorized, ValidationError
from wagate.guard import abandoned_count
from wagate.relay.events import InboundMessageEvent, is_group_id
from wagate.relay.gateway import MessageGateway
from wagate.session.registry import SessionRegistry, validate_session_id
from wagate.session.supervisor import ConnectionSupervisor

OPEN_PATHS = {"/", "/health"}


def timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def ok(message: str | None = None, **data: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"error": False, "success": True}
    if message:
        body["message"] = message
    body.update(data)
    body["timestamp"] = timestamp()
    return body


def error_body(message: str, details: Any = None, **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"error": True, "message": message}
    if details is not None:
        body["details"] = details
    body.update(extra)
    body["timestamp"] = timestamp()
    return body


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def to_chat_id(phone: str) -> str:
    phone = phone.strip()
    return phone if "@" in phone else f"{phone}@c.us"


def _validation_details(exc: RequestValidationError) -> list[str]:
    details = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        details.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return details


def create_app(
    config: Config,
    registry: SessionRegistry,
    gateway: MessageGateway | None = None,
    media_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the FastAPI app around an existing registry and gateway."""

    async def verify_api_key(request: Request) -> None:
        expected = config.api.api_key
        if not expected or request.url.path in OPEN_PATHS:
            return
        provided = request.headers.get("x-api-key") or request.query_params.get("api_key")
        if provided != expected:
            raise Unauthorized("Invalid or missing API key")

    app = FastAPI(title="wagate", version=__version__, dependencies=[Depends(verify_api_key)])
    limiter = RateLimiter(config.api.rate_limit_requests, config.api.rate_limit_window_seconds)

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        if not limiter.enabled or request.url.path == "/health":
            return await call_next(request)
        client = client_address(request)
        if not limiter.allow(client):
            logger.warning(f"API: rate limit hit by {client} on {request.method} {request.url.path}")
            return JSONResponse(
                status_code=429,
                content=error_body("Too many requests from this IP, please try again later."),
                headers={"Retry-After": str(math.ceil(limiter.retry_after(client)))},
            )
        response = await call_next(request)
        response.headers["RateLimit-Limit"] = str(limiter.max_calls)
        response.headers["RateLimit-Remaining"] = str(limiter.remaining(client))
        return response

    if config.api.access_log:

        @app.middleware("http")
        async def access_log(request: Request, call_next):
            started = time.perf_counter()
            response = await call_next(request)
            elapsed_ms = (time.perf_counter() - started) * 1000
            # Path only: the query string may carry the API key.
            logger.info(
                f'API: {client_address(request)} "{request.method} {request.url.path} '
                f'HTTP/{request.scope.get("http_version", "1.1")}" {response.status_code} {elapsed_ms:.0f}ms'
            )
            return response

    # Outermost, so 429 responses carry CORS headers too.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.limiter = limiter
    app.state.config = config
    app.state.registry = registry
    app.state.gateway = gateway
    # Owned by the caller, which closes it on shutdown.
    app.state.media_client = media_client or httpx.AsyncClient()

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        if exc.status_code >= 500:
            logger.error(f"API: {request.method} {request.url.path} -> {exc.status_code} {exc.message}")
        else:
            logger.info(f"API: {request.method} {request.url.path} -> {exc.status_code} {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.details))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content=error_body("Validation error", _validation_details(exc)))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content=error_body("Route not found", path=request.url.path, method=request.method),
            )
        return JSONResponse(status_code=exc.status_code, content=error_body(str(exc.detail)))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"API: unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content=error_body("Internal server error", str(exc)))

    def supervisor_for(session_id: str | None) -> ConnectionSupervisor:
        return registry.supervisor(validate_session_id(session_id or config.sessions.default_session))

    # -- service -------------------------------------------------------

    @app.get("/")
    async def root():
        return {"message": "Hi there"}

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": timestamp(),
            "version": __version__,
            # Timed-out backend calls that are still running in a browser.
            "abandonedOperations": abandoned_count(),
        }

    @app.get("/whatsapp-status")
    async def whatsapp_status():
        default = config.sessions.default_session
        status = registry.status(default)
        info = status.get("info") if status.get("ready") else None
        return {
            "connected": bool(status.get("ready")),
            "timestamp": timestamp(),
            "client_info": {"pushname": info.get("pushname"), "me": info.get("wid")} if info else None,
        }

    # -- sessions and messaging ----------------------------------------

    router = APIRouter()

    @router.get("/sessions")
    async def list_sessions():
        return ok(**registry.status_all())

    @router.get("/sessions/{session_id}/status")
    async def session_status(session_id: str):
        validate_session_id(session_id)
        return ok(**registry.status(session_id))

    @router.get("/sessions/{session_id}/qr")
    async def session_qr(session_id: str):
        validate_session_id(session_id)
        challenge = registry.qr(session_id)
        return ok(qr=challenge.code, qrImage=challenge.image, issuedAt=challenge.issued_at)

    @router.post("/sessions/{session_id}/initialize")
    async def initialize_session(session_id: str):
        session = registry.create(session_id)
        return ok(f"Session {session_id} initialization started", sessionId=session.id, status=session.state.value)

    @router.post("/sessions/{session_id}/logout")
    async def logout_session(session_id: str):
        validate_session_id(session_id)
        await registry.destroy(session_id, logout=True)
        return ok(f"Session {session_id} logged out and destroyed")

    @router.get("/sessions/{session_id}/chats")
    async def session_chats(session_id: str):
        supervisor = supervisor_for(session_id)
        chats = [
            {
                "id": c.id,
                "name": c.name or "No Name",
                "isGroup": c.is_group,
                "participants": c.participants,
                "lastMessage": c.last_message or "No messages",
                "timestamp": c.timestamp,
            }
            for c in await supervisor.get_chats()
        ]
        logger.info(f"API: session {session_id} has {len(chats)} chats")
        return ok(
            sessionId=session_id,
            chats=chats,
            groups=[c for c in chats if c["isGroup"]],
            contacts=[c for c in chats if not c["isGroup"]],
        )

    @router.post("/send-text")
    async def send_text(body: SendTextRequest):
        supervisor = supervisor_for(body.session_id)
        chat_id = to_chat_id(body.phone)
        message_id = await supervisor.send_text(chat_id, body.message, quoted_message_id=body.message_id_to_reply)
        return ok(messageId=message_id, data={"sessionId": supervisor.id, "phone": body.phone, "chatId": chat_id})

    @router.post("/send-media")
    async def send_media(body: SendMediaRequest):
        supervisor = supervisor_for(body.session_id)
        chat_id = to_chat_id(body.phone)
        media = await resolve_media(
            body.media, config, app.state.media_client, filename=body.filename, mimetype=body.mimetype
        )
        message_id = await supervisor.send_media(
            chat_id, media, caption=body.caption, quoted_message_id=body.message_id_to_reply
        )
        return ok(
            messageId=message_id,
            data={
                "sessionId": supervisor.id,
                "phone": body.phone,
                "caption": body.caption or "",
                "filename": media.filename,
                "mimetype": media.mimetype,
            },
        )

    @router.post("/forward-message")
    async def forward_message(body: ForwardMessageRequest):
        supervisor = supervisor_for(body.session_id)
        await supervisor.forward_message(body.message_id, body.to_chat_id)
        return ok("Message forwarded successfully", messageId=body.message_id, toChatId=body.to_chat_id)

    @router.post("/clear-group-messages")
    async def clear_group_messages(body: ClearGroupRequest):
        if not is_group_id(body.chat_id):
            raise ValidationError("Chat is not a group", details={"chatId": body.chat_id})
        supervisor = supervisor_for(body.session_id)
        await supervisor.clear_chat(body.chat_id)
        return ok(f"Messages cleared in {body.chat_id}", chatId=body.chat_id)

    app.include_router(router)
    app.include_router(router, prefix="/api")

    if config.api.debug_routes:

        @app.post("/debug/trigger-message")
        async def trigger_message(body: TriggerMessageRequest):
            if gateway is None or not gateway.enabled:
                raise ValidationError("Message handling is disabled")
            raw = RawMessage(
                id=f"DEBUG_{int(datetime.now().timestamp() * 1000)}",
                from_id=body.from_id,
                to_id=body.to_id,
                body=body.message,
                author=body.author,
                quoted_id=body.quoted_message_id,
            )
            event = InboundMessageEvent.from_raw(body.session_id or config.sessions.default_session, raw)
            logger.info(f"API: triggering debug message {raw.id} from {raw.from_id}")
            delivered = await gateway.handle(event)
            return ok("Message event triggered", messageId=raw.id, delivered=delivered)

    return app
