from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager, suppress
from typing import Any, Dict, Optional

import psycopg
from psycopg_pool import PoolTimeout

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    FastAPI,
    Header,
    Query,
    Request,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from . import chat
from .config import Settings, load_settings
from .db import Database, init_db
from .errors import (
    GChatError,
    InvalidCredential,
    InvariantViolation,
    RateLimitExceeded,
    ValidationFailed,
)
from .identity import ANONYMOUS, Identity, authenticate, require_activated
from .mailer import Mailer, send_activation_email
from .models import Models
from .pagination import DEFAULT_PAGE, DEFAULT_PAGE_SIZE, Filters
from .ratelimit import RateLimiter
from .users import User

LOGGER = logging.getLogger("gchat.api")

API_PREFIX = "/api/v1"
SERVER_ERROR_MESSAGE = "the server encountered a problem and could not process your request"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


# =========================
# Schemas
# =========================
class StrictIn(BaseModel):
    model_config = ConfigDict(extra="forbid")


class UserCreateIn(StrictIn):
    username: str
    email: str
    password: str
    bio: Optional[str] = None


class ActivateIn(StrictIn):
    token: str


class AccessTokenIn(StrictIn):
    email: str
    password: str


class GroupCreateIn(StrictIn):
    name: str


class ParticipantIn(StrictIn):
    user_id: int


class MessageCreateIn(StrictIn):
    type: str
    content: str
    replied_message_id: Optional[int] = None


# =========================
# Dependencies
# =========================
def get_models(request: Request) -> Models:
    return request.app.state.models


def rate_limit(request: Request) -> None:
    host = request.client.host if request.client else "na"
    request.app.state.rate_limiter.check(host)


def get_identity(request: Request, authorization: Optional[str] = Header(default=None)) -> Identity:
    identity = authenticate(request.app.state.models.tokens, authorization)
    request.state.identity = identity
    return identity


def get_activated_user(identity: Identity = Depends(get_identity)) -> User:
    return require_activated(identity)


def _page_payload(items: Any, metadata: Any, key: str) -> Dict[str, Any]:
    return {key: items, "metadata": metadata}


# =========================
# Routes
# =========================
router = APIRouter(prefix=API_PREFIX)


@router.get("/healthcheck")
def healthcheck(request: Request):
    settings: Settings = request.app.state.settings
    return {
        "status": "available",
        "system_info": {"environment": settings.environment, "version": settings.version},
    }


@router.post("/auth/token", status_code=201)
def create_access_token(data: AccessTokenIn, models: Models = Depends(get_models)):
    token = chat.create_access_token(models, data.email, data.password)
    return {"token": token.plaintext, "expiry": token.expiry}


@router.post("/users", status_code=201)
def create_user(
    data: UserCreateIn,
    request: Request,
    background_tasks: BackgroundTasks,
    models: Models = Depends(get_models),
):
    user, token = chat.register_user(models, data.username, data.email, data.password, data.bio)
    background_tasks.add_task(
        send_activation_email,
        request.app.state.mailer,
        user.id,
        user.email,
        token.plaintext,
    )
    return {"user": user}


@router.post("/users/account/activate")
def activate_user(data: ActivateIn, models: Models = Depends(get_models)):
    return {"user": chat.activate_user(models, data.token)}


@router.get("/conversations")
def list_conversations(
    page: int = Query(DEFAULT_PAGE),
    page_size: int = Query(DEFAULT_PAGE_SIZE),
    user: User = Depends(get_activated_user),
    models: Models = Depends(get_models),
):
    items, metadata = chat.list_conversations(models, user, Filters(page=page, page_size=page_size))
    return _page_payload(items, metadata, "conversations")


@router.post("/conversations/group", status_code=201)
def create_group(
    data: GroupCreateIn,
    user: User = Depends(get_activated_user),
    models: Models = Depends(get_models),
):
    return {"conversation": chat.create_group(models, user, data.name)}


@router.post("/conversations/group/{group_id}/participants", status_code=201)
def add_group_participant(
    group_id: int,
    data: ParticipantIn,
    user: User = Depends(get_activated_user),
    models: Models = Depends(get_models),
):
    return {"participant": chat.add_group_participant(models, user, group_id, data.user_id)}


@router.get("/conversations/private/{other_user_id}/messages")
def list_private_messages(
    other_user_id: int,
    page: int = Query(DEFAULT_PAGE),
    page_size: int = Query(DEFAULT_PAGE_SIZE),
    user: User = Depends(get_activated_user),
    models: Models = Depends(get_models),
):
    messages, metadata = chat.list_private_messages(
        models, user, other_user_id, Filters(page=page, page_size=page_size)
    )
    return _page_payload(messages, metadata, "messages")


@router.post("/conversations/private/{other_user_id}/messages", status_code=201)
def create_private_message(
    other_user_id: int,
    data: MessageCreateIn,
    user: User = Depends(get_activated_user),
    models: Models = Depends(get_models),
):
    message = chat.send_private_message(
        models, user, other_user_id, data.type, data.content, data.replied_message_id
    )
    return {"message": message}


@router.get("/conversations/group/{group_id}/messages")
def list_group_messages(
    group_id: int,
    page: int = Query(DEFAULT_PAGE),
    page_size: int = Query(DEFAULT_PAGE_SIZE),
    sort: str = Query(""),
    user: User = Depends(get_activated_user),
    models: Models = Depends(get_models),
):
    messages, metadata = chat.list_group_messages(
        models, user, group_id, chat.group_filters(page, page_size, sort)
    )
    return _page_payload(messages, metadata, "messages")


@router.post("/conversations/group/{group_id}/messages", status_code=201)
def create_group_message(
    group_id: int,
    data: MessageCreateIn,
    user: User = Depends(get_activated_user),
    models: Models = Depends(get_models),
):
    message = chat.send_group_message(models, user, group_id, data.type, data.content, data.replied_message_id)
    return {"message": message}


# =========================
# Error handlers
# =========================
def _server_error(request: Request, exc: BaseException) -> JSONResponse:
    LOGGER.error(
        "%s (method=%s url=%s)",
        exc,
        request.method,
        request.url,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    return JSONResponse(status_code=500, content={"error": SERVER_ERROR_MESSAGE})


async def gchat_error_handler(request: Request, exc: GChatError):
    if isinstance(exc, InvariantViolation):
        return _server_error(request, exc)

    headers: Dict[str, str] = {}
    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    if isinstance(exc, InvalidCredential):
        headers["WWW-Authenticate"] = "Bearer"

    content = exc.errors if isinstance(exc, ValidationFailed) else exc.message
    return JSONResponse(status_code=exc.status_code, content={"error": content}, headers=headers)


async def request_validation_handler(_request: Request, exc: RequestValidationError):
    errors: Dict[str, str] = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors.setdefault(".".join(loc) or "body", err.get("msg", "invalid value"))
    return JSONResponse(status_code=422, content={"error": errors})


async def server_error_handler(request: Request, exc: Exception):
    return _server_error(request, exc)


# =========================
# App
# =========================
def create_app(
    settings: Optional[Settings] = None,
    database: Any = None,
    mailer: Optional[Mailer] = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    database = database if database is not None else Database(settings)
    rate_limiter = RateLimiter(
        window_seconds=settings.rate_limit_window_seconds,
        max_requests=settings.rate_limit_max_requests,
        enabled=settings.rate_limit_enabled,
    )

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        database.open()
        init_db(database)
        sweeper = asyncio.create_task(rate_limiter.run_sweeper())
        LOGGER.info("starting server (env=%s, version=%s)", settings.environment, settings.version)
        try:
            yield
        finally:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
            database.close()
            LOGGER.info("stopped server")

    app = FastAPI(
        title="gchat",
        version=settings.version,
        lifespan=_lifespan,
        dependencies=[Depends(rate_limit)],
    )
    app.state.settings = settings
    app.state.database = database
    app.state.models = Models(database)
    app.state.mailer = mailer or Mailer(settings)
    app.state.rate_limiter = rate_limiter

    app.add_exception_handler(GChatError, gchat_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(psycopg.Error, server_error_handler)
    app.add_exception_handler(PoolTimeout, server_error_handler)
    app.add_exception_handler(Exception, server_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers.append("Vary", "Authorization")
            return response
        finally:
            latency_ms = round((time.perf_counter() - started) * 1000, 2)
            identity = getattr(request.state, "identity", ANONYMOUS)
            LOGGER.info(
                json.dumps(
                    {
                        "method": request.method,
                        "path": request.url.path,
                        "status": status_code,
                        "latency_ms": latency_ms,
                        "user_id": identity.user_id,
                    },
                    ensure_ascii=False,
                )
            )

    app.include_router(router)
    return app


app = create_app()
