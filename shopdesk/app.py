from __future__ import annotations

import logging
import os
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import Cookie, FastAPI, HTTPException, Query, Response

from .audit import EVENT_CONVERSATION_CLOSED, record_event
from .config import Settings, load_settings
from .errors import StoreError, best_effort
from .gemini_client import GeminiClient
from .identity import Inbound
from .integrations import Integrations
from .models import (
    ChatRequest,
    ChatResponse,
    CloseConversationRequest,
    HealthResponse,
    LatestConversationResponse,
    MessageOut,
    SessionRequest,
    SessionResponse,
    WhatsAppInbound,
)
from .router import DialogueRouter
from .store import JsonStore, Store
from .supabase_store import SupabaseStore
from .utils import normalize_phone

BASE_DIR = Path(__file__).resolve().parent
SESSION_COOKIE = "sid"
WHATSAPP_CHANNEL = "whatsapp"
DEFAULT_HISTORY_PAGE = 50
MAX_HISTORY_PAGE = 200

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("shopdesk").setLevel(log_level)
logger = logging.getLogger("shopdesk.app")

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)


def build_store(settings: Settings) -> Store:
    """Pick the store backend named by STORE_BACKEND."""
    if settings.store_backend == "supabase":
        if not settings.supabase_url or not settings.supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for the supabase backend")
        return SupabaseStore(settings.supabase_url, settings.supabase_key, timeout_seconds=settings.store_timeout_seconds)
    return JsonStore(settings.store_path)


def build_router(settings: Settings, store: Optional[Store] = None) -> DialogueRouter:
    """Purpose: Assemble the router with its store, LLM client and integrations.
    Inputs/Outputs: Inputs are Settings and an optional prebuilt store; output is a
        DialogueRouter.
    Side Effects / State: May open an HTTP client (supabase) or configure the Gemini SDK.
    Dependencies: build_store, GeminiClient, Integrations.
    Failure Modes: Invalid backend configuration raises ValueError.
    If Removed: The endpoints have nothing to route through.
    Testing Notes: With no GEMINI_API_KEY the router runs without an LLM.
    """
    # The LLM is optional; without a key replies use the canned fallbacks.
    store = store or build_store(settings)
    llm = GeminiClient(settings) if settings.gemini_api_key else None
    if llm is None:
        logger.warning("GEMINI_API_KEY not set; running without language model")
    integrations = Integrations(timeout_seconds=settings.integration_timeout_seconds)
    return DialogueRouter(store, settings, llm=llm, integrations=integrations)


def session_key(explicit: Optional[str], cookie: Optional[str]) -> str:
    """Explicit session id, then the sid cookie, then a fresh one."""
    return (explicit or "").strip() or (cookie or "").strip() or uuid.uuid4().hex


def create_app(router: Optional[DialogueRouter] = None) -> FastAPI:
    """Purpose: Build the FastAPI application around one DialogueRouter.
    Inputs/Outputs: Input is an optional router (tests inject one); output is the app.
    Side Effects / State: Loads settings and builds the router when none is given.
    Dependencies: FastAPI, DialogueRouter, models request/response schemas.
    Failure Modes: Configuration errors raise at startup.
    If Removed: The service has no HTTP surface.
    Testing Notes: Use fastapi.testclient.TestClient(create_app(router)).
    """
    # Wire one router per app; handlers stay thin.
    if router is None:
        router = build_router(load_settings())
    store = router.store

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Flush buffered writes and release the HTTP pool on shutdown.
        with best_effort("store_close", logger):
            store.close()

    app = FastAPI(title="Shopdesk Support Router", lifespan=lifespan)

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        store_ok = store.ping()
        checks = [] if store_ok else ["store unreachable"]
        return HealthResponse(ok=True, store=store_ok, checks=checks)

    @app.post("/api/chat", response_model=ChatResponse)
    def chat(request: ChatRequest, response: Response, sid: Optional[str] = Cookie(default=None)) -> ChatResponse:
        """Purpose: Route one web chat message.
        Inputs/Outputs: Input is ChatRequest plus the optional sid cookie; output is
            ChatResponse.
        Side Effects / State: Sets the sid cookie; the router persists the turn.
        Dependencies: DialogueRouter.handle.
        Failure Modes: Empty message returns 400.
        If Removed: The web widget cannot talk to the router.
        Testing Notes: Omit session_id twice with the cookie jar and assert one user.
        """
        # Session key: explicit id, then cookie, then a fresh one.
        message = (request.message or "").strip()
        if not message:
            raise HTTPException(status_code=400, detail="message is required")
        session_id = session_key(request.session_id, sid)
        response.set_cookie(SESSION_COOKIE, session_id, httponly=True, samesite="lax")
        result = router.handle(
            Inbound(
                channel=request.channel or "web",
                locale=request.locale or "en",
                session_id=session_id,
                user_text=message,
                model=request.model,
            )
        )
        return ChatResponse(
            intent=result.intent,
            reply=result.reply,
            conversation_id=result.conversation_id,
            session_id=session_id,
            extracted=result.extracted,
            extractor_error=result.extractor_error,
        )

    @app.post("/api/whatsapp/webhook", response_model=ChatResponse)
    def whatsapp_webhook(payload: WhatsAppInbound) -> ChatResponse:
        """Purpose: Route a messaging-channel message and deliver the reply.
        Inputs/Outputs: Input is the flattened WhatsAppInbound; output is ChatResponse.
        Side Effects / State: Idempotency key per message id; one outbound send,
            none for a duplicate delivery.
        Dependencies: DialogueRouter.handle, Integrations.channel.
        Failure Modes: Bad sender phone returns 400; send failures are logged only.
        If Removed: Messaging-channel users get no answers.
        Testing Notes: Post the same message_id twice and assert the duplicate reply.
        """
        # The sender phone is channel-verified and becomes the session key.
        phone = normalize_phone(payload.from_phone)
        if not phone:
            raise HTTPException(status_code=400, detail="from_phone is required")
        session_id = f"wa:{phone}"
        result = router.handle(
            Inbound(
                channel=WHATSAPP_CHANNEL,
                locale=payload.locale or "en",
                session_id=session_id,
                user_text=payload.text or "",
                channel_message_id=payload.message_id,
                channel_phone=phone,
            )
        )
        if result.duplicate:
            logger.info("channel send skipped for duplicate delivery message_id=%s", payload.message_id)
        else:
            with best_effort("channel_send", logger):
                router.integrations.channel.send_text(phone, result.reply)
        return ChatResponse(
            intent=result.intent,
            reply=result.reply,
            conversation_id=result.conversation_id,
            session_id=session_id,
            extracted=result.extracted,
            extractor_error=result.extractor_error,
        )

    @app.post("/api/session", response_model=SessionResponse)
    def open_session(
        request: SessionRequest, response: Response, sid: Optional[str] = Cookie(default=None)
    ) -> SessionResponse:
        """Purpose: Bootstrap user, session and open conversation ahead of the first message.
        Inputs/Outputs: Input is SessionRequest plus the optional sid cookie; output is
            SessionResponse with the bound user and conversation ids.
        Side Effects / State: Sets the sid cookie; may create user, session and conversation.
        Dependencies: DialogueRouter.open_session.
        Failure Modes: Store failures return 503.
        If Removed: The widget cannot show a conversation id before the first turn.
        Testing Notes: Open, then chat with the same cookie and compare conversation ids.
        """
        # Same session-key precedence as /api/chat so both land on one user.
        session_id = session_key(request.session_id, sid)
        try:
            user, conversation = router.open_session(session_id, request.channel or "web", request.locale or "en")
        except StoreError as exc:
            logger.error("open session failed session=%s error=%s", session_id, exc)
            raise HTTPException(status_code=503, detail="store unavailable") from exc
        response.set_cookie(SESSION_COOKIE, session_id, httponly=True, samesite="lax")
        return SessionResponse(session_id=session_id, user_id=user.id, conversation_id=conversation.id)

    @app.get("/api/conversations/latest", response_model=LatestConversationResponse)
    def latest_conversation(
        response: Response,
        session_id: Optional[str] = None,
        limit: int = Query(default=DEFAULT_HISTORY_PAGE, ge=1, le=MAX_HISTORY_PAGE),
        sid: Optional[str] = Cookie(default=None),
    ) -> LatestConversationResponse:
        """Resume the session's open conversation with its latest messages."""
        key = session_key(session_id, sid)
        try:
            conversation, messages = router.latest_conversation(key, limit)
        except StoreError as exc:
            logger.error("resume conversation failed session=%s error=%s", key, exc)
            raise HTTPException(status_code=503, detail="store unavailable") from exc
        response.set_cookie(SESSION_COOKIE, key, httponly=True, samesite="lax")
        return LatestConversationResponse(
            session_id=key,
            conversation_id=conversation.id,
            messages=[
                MessageOut(role=message.role, content=message.content, created_at=message.created_at)
                for message in messages
            ],
        )

    @app.post("/api/conversations/close")
    def close_conversations(request: CloseConversationRequest) -> dict:
        """Close every open conversation of the user bound to a session."""
        try:
            session = store.get_user_session(request.session_id)
            if session is None:
                raise HTTPException(status_code=404, detail="unknown session")
            closed = store.close_open_conversations(session.user_id)
        except StoreError as exc:
            logger.error("close conversations failed session=%s error=%s", request.session_id, exc)
            raise HTTPException(status_code=503, detail="store unavailable") from exc
        record_event(store, session.user_id, EVENT_CONVERSATION_CLOSED, {"session_id": request.session_id, "closed": closed})
        logger.info("conversations closed session=%s user=%s count=%s", request.session_id, session.user_id, closed)
        return {"session_id": request.session_id, "closed": closed}

    return app
