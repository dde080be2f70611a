from __future__ import annotations

import os
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware import Middleware

from xlai.agents.intensity_client import IntensityClassifier
from xlai.agents.message_agent import MessageMetadata, MessageService, get_message_service
from xlai.agents.pause_flow import pause_decision
from xlai.agents.rephrase_client import ToneRewriteClient
from xlai.pipelines.retention import RetentionSweeper
from xlai.schemas.models import (
    AnalyzeIntensityRequest,
    AnalyzeIntensityResponse,
    AuthResponse,
    BehaviorFeedbackResponse,
    ContactListResponse,
    CreateMessageRequest,
    DbHealthResponse,
    LastMessagesResponse,
    LoginRequest,
    MeResponse,
    MessageListResponse,
    MessageResponse,
    RephraseRequest,
    RephraseResponse,
    SendMessageRequest,
    SendMessageResponse,
    SignupRequest,
)
from xlai.utils import user_store
from xlai.utils.env import load_env_file, read_bool_env
from xlai.utils.errors import ValidationError, XLAIError
from xlai.utils.logging import get_logger
from xlai.utils.observability import get_metrics
from xlai.utils.prompt_catalog import normalize_tone
from xlai.utils.security import bearer_token, get_rate_limiter, verify_api_key

load_env_file()

raw_origins = os.getenv("CORS_ALLOW_ORIGINS", "*")
raw_credentials = os.getenv("CORS_ALLOW_CREDENTIALS", "true")

if raw_origins.strip() == "*":
    cors_origins = ["*"]
else:
    cors_origins = [entry.strip() for entry in raw_origins.split(",") if entry.strip()]

cors_allow_credentials = raw_credentials.strip().lower() in {"1", "true", "yes"}

if cors_origins == ["*"] and cors_allow_credentials:
    cors_allow_credentials = False

cors_middleware = Middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

log = get_logger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper: RetentionSweeper | None = None
    if read_bool_env("XLAI_RETENTION_SWEEP", True):
        sweeper = RetentionSweeper(get_message_service())
        sweeper.start()
    app.state.sweeper = sweeper
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.stop()


app = FastAPI(title="XL AI Messaging API", version="0.1.0", middleware=[cors_middleware], lifespan=lifespan)

static_dir = os.getenv("XLAI_STATIC_DIR")
if static_dir and Path(static_dir).is_dir():
    app.mount("/static", StaticFiles(directory=static_dir, html=True), name="static")


@app.middleware("http")
async def observability_middleware(request: Request, call_next):
    metrics = get_metrics()
    request_id = uuid.uuid4().hex
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record(request.url.path, duration_ms)
        log.error(
            "api_request_failed",
            path=request.url.path,
            duration_ms=duration_ms,
            request_id=request_id,
            error=str(exc),
        )
        response = JSONResponse(status_code=500, content={"error": GENERIC_ERROR_MESSAGE})
        response.headers["X-Request-ID"] = request_id
        return response
    duration_ms = (time.perf_counter() - start) * 1000
    metrics.record(request.url.path, duration_ms)
    log.info(
        "api_request",
        path=request.url.path,
        status=response.status_code,
        duration_ms=duration_ms,
        request_id=request_id,
    )
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(XLAIError)
async def xlai_error_handler(request: Request, exc: XLAIError) -> JSONResponse:
    log.warning(
        "api_error",
        path=request.url.path,
        status=exc.status_code,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    log.info("api_invalid_body", path=request.url.path, errors=len(exc.errors()))
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


def get_service() -> MessageService:
    return get_message_service()


def get_rephrase_client() -> ToneRewriteClient:
    return ToneRewriteClient()


def get_intensity_classifier() -> IntensityClassifier:
    return IntensityClassifier()


def _rate_limit_identity(client_host: str | None, path: str) -> str:
    identity = (client_host or "anonymous").strip() or "anonymous"
    return f"{identity}:{path}"


def rate_limited(request: Request, limiter=Depends(get_rate_limiter)) -> None:
    host = request.client.host if request.client else None
    limiter.allow(_rate_limit_identity(host, request.url.path))


def require_admin(api_key: str | None = Header(default=None, alias="X-API-Key")) -> str | None:
    verify_api_key(api_key)
    return api_key


# --- health -----------------------------------------------------------------


@app.get("/health", response_class=PlainTextResponse)
def health_plain() -> str:
    return "healthy"


@app.get("/api/health")
def health() -> dict:
    return {"ok": True}


@app.get("/api/db-health", response_model=DbHealthResponse)
def db_health(service: MessageService = Depends(get_service)) -> DbHealthResponse:
    return DbHealthResponse(**service.db_health())


# --- coaching ---------------------------------------------------------------


@app.post("/api/rephrase", response_model=RephraseResponse)
async def rephrase(
    payload: RephraseRequest,
    background_tasks: BackgroundTasks,
    client: ToneRewriteClient = Depends(get_rephrase_client),
    service: MessageService = Depends(get_service),
    _: None = Depends(rate_limited),
) -> RephraseResponse:
    tone = normalize_tone(payload.tone)
    suggestion = await client.rephrase(payload.text, tone, rewrite_strength=payload.rewrite_strength)
    if payload.conversation_id and payload.user_id:
        background_tasks.add_task(
            service.log_suggestion,
            conversation_id=payload.conversation_id,
            user_id=payload.user_id,
            tone=tone,
            original_text=payload.text,
            suggestion=suggestion,
        )
    return RephraseResponse(suggestion=suggestion, tone=tone)


@app.post("/api/analyze-intensity", response_model=AnalyzeIntensityResponse)
async def analyze_intensity(
    payload: AnalyzeIntensityRequest,
    classifier: IntensityClassifier = Depends(get_intensity_classifier),
    _: None = Depends(rate_limited),
) -> AnalyzeIntensityResponse:
    if not payload.text or not payload.text.strip():
        raise ValidationError("Missing text")
    result = await classifier.analyze(
        payload.text,
        tone=payload.tone,
        emotion=payload.emotion,
        rewrite_strength=payload.rewrite_strength,
    )
    decision = pause_decision(result.analysis.intensity, payload.coach_mode or os.getenv("XLAI_COACH_MODE"))
    log.info(
        "intensity_routed",
        intensity=result.analysis.intensity,
        coach_mode=decision.coach_mode,
        pause=decision.required,
        degraded=result.degraded,
    )
    return AnalyzeIntensityResponse(intensity=result.analysis, suggestion=result.suggestion, pause=decision)


# --- messages ---------------------------------------------------------------


@app.post("/api/messages", response_model=MessageResponse, status_code=201)
def create_message(
    payload: CreateMessageRequest,
    service: MessageService = Depends(get_service),
) -> MessageResponse:
    message = service.send_message(
        payload.conversation_id,
        payload.sender_id,
        payload.recipient_id,
        payload.ciphertext,
        MessageMetadata(encrypted=True),
    )
    return MessageResponse(message=message)


@app.get("/api/messages", response_model=MessageListResponse)
def list_messages(
    conversation_id: str | None = Query(default=None, alias="conversationId"),
    service: MessageService = Depends(get_service),
) -> MessageListResponse:
    return MessageListResponse(messages=service.list_messages(conversation_id))


@app.get("/api/last-messages", response_model=LastMessagesResponse)
def last_messages(service: MessageService = Depends(get_service)) -> LastMessagesResponse:
    return LastMessagesResponse(last_messages=service.latest_per_conversation())


@app.get("/api/contacts", response_model=ContactListResponse)
def contacts(
    user_id: str | None = Query(default=None, alias="userId"),
    service: MessageService = Depends(get_service),
) -> ContactListResponse:
    return ContactListResponse(contacts=service.contacts(user_id))


@app.post("/api/send", response_model=SendMessageResponse, status_code=201)
def send(
    payload: SendMessageRequest,
    response: Response,
    smoke_test: str | None = Header(default=None, alias="X-Smoke-Test"),
    service: MessageService = Depends(get_service),
) -> SendMessageResponse:
    if smoke_test == "1":
        log.info("send_dry_run", conversation_id=payload.conversation_id)
        response.status_code = 200
        return SendMessageResponse(ok=True, id=None, created_at=service.now(), dry_run=True)
    message = service.send_message(
        payload.conversation_id,
        payload.user_id,
        payload.recipient_id,
        payload.final_text,
        MessageMetadata(
            original_text=payload.original_text,
            pre_send_emotion=payload.pre_send_emotion,
            intensity_score=payload.intensity_score,
            was_pause_taken=payload.was_pause_taken,
            used_suggestion=payload.used_suggestion,
            is_repair_attempt=payload.is_repair_attempt,
        ),
    )
    return SendMessageResponse(ok=True, id=message.id, created_at=message.created_at)


@app.get("/api/history", response_model=MessageListResponse)
def history(
    conversation: str | None = Query(default=None),
    service: MessageService = Depends(get_service),
) -> MessageListResponse:
    return MessageListResponse(messages=service.history(conversation))


@app.get("/api/behavior-feedback", response_model=BehaviorFeedbackResponse)
def behavior_feedback(
    conversation: str | None = Query(default=None),
    service: MessageService = Depends(get_service),
) -> BehaviorFeedbackResponse:
    return BehaviorFeedbackResponse(feedback=service.behavior_feedback(conversation))


# --- accounts ---------------------------------------------------------------


@app.post("/api/signup", response_model=AuthResponse, status_code=201)
def signup(payload: SignupRequest, service: MessageService = Depends(get_service)) -> AuthResponse:
    profile, issued = user_store.signup(
        service.store,
        email=payload.email,
        password=payload.password,
        display_name=payload.display_name,
    )
    log.info("user_signed_up", user_id=profile.id)
    return AuthResponse(user=profile, token=issued.token, expires_at=issued.expires_at)


@app.post("/api/login", response_model=AuthResponse)
def login(payload: LoginRequest, service: MessageService = Depends(get_service)) -> AuthResponse:
    profile, issued = user_store.login(service.store, email=payload.email, password=payload.password)
    log.info("user_logged_in", user_id=profile.id)
    return AuthResponse(user=profile, token=issued.token, expires_at=issued.expires_at)


@app.get("/api/me", response_model=MeResponse)
def me(
    authorization: str | None = Header(default=None),
    service: MessageService = Depends(get_service),
) -> MeResponse:
    return MeResponse(user=user_store.authenticate(service.store, bearer_token(authorization)))


# --- admin ------------------------------------------------------------------


@app.get("/api/metrics")
def metrics_snapshot(api_key: str | None = Depends(require_admin)) -> dict:
    return get_metrics().snapshot()
