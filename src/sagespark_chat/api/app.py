"""
FastAPI Application Module

HTTP surface of the SageSpark chat service. Each browser session is bound
to a ConversationStateMachine: guests get an ephemeral store, signed-in
users share the persistent JSON store.

Key Features:
- Cookie sessions with signup, login and logout
- Conversation list management with edit-and-regenerate
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support
"""

import time
from contextlib import asynccontextmanager
from datetime import timedelta
from functools import lru_cache
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel, Field
from structlog import get_logger

from ..config import Settings, configure_logging, get_settings
from ..domain.errors import (
    AccessDeniedError,
    ChatError,
    ConflictError,
    ConversationNotFoundError,
    ForbiddenError,
    InvalidCredentialsError,
    PendingCompletionError,
    ProviderError,
    StoreError,
    UnknownConversationError,
    UserExistsError,
    ValidationError,
)
from ..domain.models import Conversation, Identity, Notice
from ..repositories.json_file import JsonFileRepository
from ..services.auth import (
    MIN_PASSWORD_LENGTH,
    MIN_USERNAME_LENGTH,
    AuthService,
    SessionTokens,
)
from ..services.conversation import ConversationStateMachine
from ..services.llm import CompletionProvider, GeminiCompletionProvider
from ..services.sessions import SessionRegistry

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed operations", registry=CUSTOM_REGISTRY)
PROCESSING_TIME = Counter("processing_time_seconds", "Total request processing time", registry=CUSTOM_REGISTRY)
COMPLETION_FAILURES = Counter("completion_failures_total", "Assistant replies that failed", registry=CUSTOM_REGISTRY)

logger = get_logger()


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""
    content: str
    image_url: Optional[str] = None


class MessageEdit(BaseModel):
    """New content for an edited message"""
    content: str = Field(min_length=1)


class Credentials(BaseModel):
    username: str = Field(min_length=MIN_USERNAME_LENGTH)
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)


class SessionInfo(BaseModel):
    authenticated: bool
    username: Optional[str] = None
    active_conversation_id: Optional[UUID] = None


@lru_cache()
def get_completion_provider() -> CompletionProvider:
    """Returns the language model provider"""
    settings = get_settings()
    return GeminiCompletionProvider(
        api_key=settings.gemini_api_key,
        model_name=settings.gemini_model,
        system_prompt=settings.system_prompt,
        temperature=settings.temperature,
    )


@lru_cache()
def get_user_repository() -> JsonFileRepository:
    """Returns the persistent store for users and their conversations"""
    return JsonFileRepository(get_settings().database_path)


@lru_cache()
def get_session_registry() -> SessionRegistry:
    """Returns the per-session conversation state"""
    return SessionRegistry(
        get_completion_provider(),
        get_user_repository(),
        max_guest_sessions=get_settings().max_guest_sessions,
    )


def get_session_tokens(settings: Settings = Depends(get_settings)) -> SessionTokens:
    return SessionTokens(
        settings.session_secret,
        algorithm=settings.session_algorithm,
        max_age=timedelta(days=settings.session_max_age_days),
    )


def set_session_cookie(response: Response, identity: Identity, tokens: SessionTokens, settings: Settings) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        tokens.encode(identity),
        max_age=int(tokens.max_age.total_seconds()),
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


async def get_identity(
    request: Request,
    response: Response,
    settings: Settings = Depends(get_settings),
    tokens: SessionTokens = Depends(get_session_tokens),
) -> Identity:
    """Resolves the caller, starting a guest session when there is none"""
    identity = tokens.decode(request.cookies.get(settings.session_cookie_name))
    if identity is None:
        identity = Identity()
        set_session_cookie(response, identity, tokens, settings)
    return identity


async def get_state_machine(
    identity: Identity = Depends(get_identity),
    registry: SessionRegistry = Depends(get_session_registry),
) -> ConversationStateMachine:
    try:
        return await registry.get(identity)
    except StoreError as e:
        raise to_http_error(e)


def to_http_error(error: ChatError) -> HTTPException:
    """Maps a domain error onto an HTTP status"""
    ERRORS.inc()
    if isinstance(error, (ConversationNotFoundError, UnknownConversationError)):
        status_code = 404
    elif isinstance(error, ForbiddenError):
        status_code = 403
    elif isinstance(error, (ConflictError, PendingCompletionError, UserExistsError)):
        status_code = 409
    elif isinstance(error, (AccessDeniedError, InvalidCredentialsError)):
        status_code = 401
    elif isinstance(error, ValidationError):
        status_code = 400
    elif isinstance(error, ProviderError):
        status_code = 502
    elif isinstance(error, StoreError):
        status_code = 503
    else:
        status_code = 500
    logger.warning("request_error", status_code=status_code, error=error.message)
    return HTTPException(status_code=status_code, detail=error.message)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles app startup/shutdown"""
    settings = get_settings()
    configure_logging(json=settings.log_json)
    logger.info("application_startup_complete")

    yield

    await get_session_registry().wait_idle()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="SageSpark Chat API",
    description="Multi-turn chat with per-user conversation history",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Counts and times requests"""
    REQUESTS.inc()
    started = time.perf_counter()
    logger.info("request_started", path=request.url.path, method=request.method)
    try:
        return await call_next(request)
    except Exception as e:
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise
    finally:
        PROCESSING_TIME.inc(time.perf_counter() - started)


@app.post("/signup", status_code=201)
async def signup(
    credentials: Credentials,
    response: Response,
    settings: Settings = Depends(get_settings),
    tokens: SessionTokens = Depends(get_session_tokens),
    users: JsonFileRepository = Depends(get_user_repository),
) -> SessionInfo:
    """Registers a user and signs them in"""
    try:
        identity = await AuthService(users).signup(credentials.username, credentials.password)
    except ChatError as e:
        raise to_http_error(e)
    set_session_cookie(response, identity, tokens, settings)
    return SessionInfo(authenticated=True, username=identity.username)


@app.post("/login")
async def login(
    credentials: Credentials,
    response: Response,
    settings: Settings = Depends(get_settings),
    tokens: SessionTokens = Depends(get_session_tokens),
    users: JsonFileRepository = Depends(get_user_repository),
) -> SessionInfo:
    """Checks credentials and replaces the session cookie"""
    try:
        identity = await AuthService(users).login(credentials.username, credentials.password)
    except ChatError as e:
        raise to_http_error(e)
    set_session_cookie(response, identity, tokens, settings)
    return SessionInfo(authenticated=True, username=identity.username)


@app.post("/logout")
async def logout(
    response: Response,
    identity: Identity = Depends(get_identity),
    settings: Settings = Depends(get_settings),
    registry: SessionRegistry = Depends(get_session_registry),
) -> dict:
    """Ends the session; guest conversations are discarded"""
    registry.forget(identity)
    response.delete_cookie(settings.session_cookie_name, path="/")
    return {"message": "Logged out successfully"}


@app.get("/session", response_model=SessionInfo)
async def session_info(
    identity: Identity = Depends(get_identity),
    machine: ConversationStateMachine = Depends(get_state_machine),
) -> SessionInfo:
    return SessionInfo(
        authenticated=not identity.is_guest,
        username=identity.username,
        active_conversation_id=machine.active_conversation_id,
    )


@app.get("/conversations", response_model=List[Conversation])
async def list_conversations(
    machine: ConversationStateMachine = Depends(get_state_machine),
) -> List[Conversation]:
    """Gets the session's conversations, newest first"""
    return machine.conversations


@app.post("/conversations", response_model=Conversation)
async def create_conversation(
    machine: ConversationStateMachine = Depends(get_state_machine),
) -> Conversation:
    """Starts a new conversation and makes it active"""
    try:
        return await machine.create_conversation()
    except ChatError as e:
        raise to_http_error(e)


@app.get("/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: UUID,
    machine: ConversationStateMachine = Depends(get_state_machine),
) -> Conversation:
    """Retrieves a specific conversation by its ID"""
    conversation = machine.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@app.post("/conversations/{conversation_id}/select", response_model=Conversation)
async def select_conversation(
    conversation_id: UUID,
    machine: ConversationStateMachine = Depends(get_state_machine),
) -> Conversation:
    if not machine.select_conversation(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return machine.active_conversation


@app.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: UUID,
    machine: ConversationStateMachine = Depends(get_state_machine),
) -> dict:
    try:
        deleted = await machine.delete_conversation(conversation_id)
    except ChatError as e:
        raise to_http_error(e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"message": "Conversation deleted successfully"}


async def _send(
    machine: ConversationStateMachine, message: MessageCreate, conversation_id: Optional[UUID]
) -> Conversation:
    try:
        reply = await machine.send_message(message.content, message.image_url, conversation_id)
    except ChatError as e:
        raise to_http_error(e)
    if reply is None:
        COMPLETION_FAILURES.inc()
        raise HTTPException(status_code=502, detail="Failed to get response from AI")
    for conversation in machine.conversations:
        if conversation.find_message(reply.id) is not None:
            return conversation
    raise HTTPException(status_code=404, detail="Conversation not found")


@app.post("/messages", response_model=Conversation)
async def send_message(
    message: MessageCreate,
    machine: ConversationStateMachine = Depends(get_state_machine),
) -> Conversation:
    """Sends to the active conversation, creating one when none is active"""
    return await _send(machine, message, None)


@app.post("/conversations/{conversation_id}/messages", response_model=Conversation)
async def create_message(
    conversation_id: UUID,
    message: MessageCreate,
    machine: ConversationStateMachine = Depends(get_state_machine),
) -> Conversation:
    """Processes a user message and generates the AI response"""
    return await _send(machine, message, conversation_id)


@app.put("/conversations/{conversation_id}/messages/{message_id}", response_model=Conversation)
async def edit_message(
    conversation_id: UUID,
    message_id: UUID,
    edit: MessageEdit,
    machine: ConversationStateMachine = Depends(get_state_machine),
) -> Conversation:
    """Rewrites a user message and regenerates everything after it"""
    conversation = machine.get_conversation(conversation_id)
    if conversation is None or conversation.find_message(message_id) is None:
        raise HTTPException(status_code=404, detail="Message not found")
    try:
        reply = await machine.edit_message(conversation_id, message_id, edit.content)
    except ChatError as e:
        raise to_http_error(e)
    if reply is None:
        COMPLETION_FAILURES.inc()
        raise HTTPException(status_code=502, detail="Failed to get response from AI")
    return conversation


@app.get("/notices", response_model=List[Notice])
async def drain_notices(
    machine: ConversationStateMachine = Depends(get_state_machine),
) -> List[Notice]:
    """Returns and clears pending error and sync notices"""
    return machine.drain_notices()


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
