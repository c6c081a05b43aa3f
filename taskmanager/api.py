"""FastAPI application that exposes the task manager JSON API."""
from __future__ import annotations

import functools
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, TypeVar

import anyio
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator, model_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, load_settings
from .context import AppContext
from .database import Database, DuplicateEmailError
from .models import Identity, Task, User
from .security import AuthFailure, BearerAuth, TokenResult

logger = logging.getLogger("taskmanager.api")

T = TypeVar("T")

_MAX_TASK_ID = 2**63 - 1
_PAYLOAD_TOO_LARGE = 413


class UserResponse(BaseModel):
    id: int
    name: str
    email: str


class AuthResponse(BaseModel):
    user: UserResponse
    token: str


class CurrentUserResponse(BaseModel):
    user: UserResponse


class TaskResponse(BaseModel):
    id: int
    title: str
    description: str
    status: str
    created_at: datetime
    updated_at: datetime


class TaskEnvelope(BaseModel):
    task: TaskResponse


class TaskListResponse(BaseModel):
    tasks: List[TaskResponse]


def _is_blank(value: object) -> bool:
    return not isinstance(value, str) or not value.strip()


class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str

    @model_validator(mode="before")
    @classmethod
    def _require_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            data = {}
        password = data.get("password")
        if (
            _is_blank(data.get("name"))
            or _is_blank(data.get("email"))
            or not isinstance(password, str)
            or not password
        ):
            raise ValueError("Name, email, and password are required")
        if "\x00" in password:
            raise ValueError("Password must not contain NUL characters")
        return data

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return value.strip()

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class LoginRequest(BaseModel):
    email: str
    password: str

    @model_validator(mode="before")
    @classmethod
    def _require_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            data = {}
        password = data.get("password")
        if _is_blank(data.get("email")) or not isinstance(password, str) or not password:
            raise ValueError("Email and password are required")
        return data


class TaskRequest(BaseModel):
    """Full replacement payload; omitted description/status fall back to defaults."""

    title: str = Field(default=None, validate_default=True)
    description: Optional[str] = None
    status: Optional[str] = None

    @field_validator("title", mode="before")
    @classmethod
    def _require_title(cls, value: object) -> str:
        if _is_blank(value):
            raise ValueError("Title is required")
        return str(value).strip()


def user_to_response(user: User | Identity) -> UserResponse:
    return UserResponse(id=user.id, name=user.name, email=user.email)


def task_to_response(task: Task) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        title=task.title,
        description=task.description,
        status=task.status,
        created_at=task.created_at,
        updated_at=task.updated_at,
    )


def _parse_task_id(raw: str) -> Optional[int]:
    # Canonical decimal ids only.
    if not (raw.isascii() and raw.isdigit()):
        return None
    value = int(raw)
    if value < 1 or value > _MAX_TASK_ID:
        return None
    return value


async def _in_thread(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run blocking database or hashing work off the event loop."""

    return await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))


def _validation_message(exc: RequestValidationError) -> str:
    for error in exc.errors():
        context = error.get("ctx") or {}
        if isinstance(context.get("error"), Exception):
            return str(context["error"])
        if error.get("type") == "json_invalid":
            return "Invalid JSON body"
        if error.get("type") == "missing" and tuple(error.get("loc", ())) == ("body",):
            return "Request body is required"
        location = ".".join(str(part) for part in error.get("loc", ())[1:])
        message = str(error.get("msg", "Invalid request"))
        return f"{location}: {message}" if location else message
    return "Invalid request"


def _install_body_limit(app: FastAPI, max_body_bytes: int) -> None:
    too_large = {"message": "Request body too large"}

    @app.middleware("http")
    async def limit_request_body(request: Request, call_next):
        declared = request.headers.get("content-length")
        if declared is not None:
            try:
                length = int(declared)
            except ValueError:
                return JSONResponse(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    content={"message": "Invalid Content-Length header"},
                )
            if length > max_body_bytes:
                return JSONResponse(status_code=_PAYLOAD_TOO_LARGE, content=too_large)
        else:
            body = await request.body()
            if len(body) > max_body_bytes:
                return JSONResponse(status_code=_PAYLOAD_TOO_LARGE, content=too_large)
        return await call_next(request)


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(_: Request, exc: StarletteHTTPException) -> Response:
        # Routing misses come through as the base Starlette exception.
        if not isinstance(exc, HTTPException) and exc.status_code in {
            status.HTTP_404_NOT_FOUND,
            status.HTTP_405_METHOD_NOT_ALLOWED,
        }:
            return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"message": "Not found"})
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> Response:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"message": _validation_message(exc)},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> Response:
        logger.error("Unhandled error while serving %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"message": "Internal server error"},
        )


def _register_auth_routes(router: APIRouter, context: AppContext, current_identity: Callable[..., Any]) -> None:
    db = context.database
    tokens = context.tokens

    @router.post("/auth/register", status_code=status.HTTP_201_CREATED, response_model=AuthResponse)
    async def register(payload: RegisterRequest) -> AuthResponse:
        try:
            user = await _in_thread(db.create_user, payload.name, payload.email, payload.password)
            token = tokens.issue(user)
        except DuplicateEmailError:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")
        except Exception:
            logger.exception("Registration failed for %s", payload.email)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to register",
            )

        logger.info("Registered user %s", user.id)
        return AuthResponse(user=user_to_response(user), token=token)

    @router.post("/auth/login", response_model=AuthResponse)
    async def login(payload: LoginRequest) -> AuthResponse:
        try:
            user = await _in_thread(db.authenticate_user, payload.email, payload.password)
            token = tokens.issue(user) if user is not None else None
        except Exception:
            logger.exception("Login lookup failed for %s", payload.email)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to login",
            )

        if user is None:
            logger.warning("Failed login attempt for %s", payload.email.strip().lower())
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

        logger.info("User %s signed in", user.id)
        return AuthResponse(user=user_to_response(user), token=token)

    @router.get("/auth/me", response_model=CurrentUserResponse)
    async def read_current_user(identity: Identity = Depends(current_identity)) -> CurrentUserResponse:
        return CurrentUserResponse(user=user_to_response(identity))


def _register_task_routes(router: APIRouter, db: Database, task_owner: Callable[..., Any]) -> None:
    @router.get("/tasks", response_model=TaskListResponse)
    async def list_tasks(owner: Optional[int] = Depends(task_owner)) -> TaskListResponse:
        try:
            tasks = await _in_thread(db.list_tasks, owner)
        except Exception:
            logger.exception("Failed to load tasks for owner %s", owner)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to load tasks",
            )
        return TaskListResponse(tasks=[task_to_response(task) for task in tasks])

    @router.post("/tasks", status_code=status.HTTP_201_CREATED, response_model=TaskEnvelope)
    async def create_task(payload: TaskRequest, owner: Optional[int] = Depends(task_owner)) -> TaskEnvelope:
        try:
            task = await _in_thread(
                db.create_task,
                owner,
                title=payload.title,
                description=payload.description,
                status=payload.status,
            )
        except Exception:
            logger.exception("Failed to create task for owner %s", owner)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to create task",
            )
        return TaskEnvelope(task=task_to_response(task))

    @router.put("/tasks/{task_id}", response_model=TaskEnvelope)
    async def update_task(
        task_id: str,
        payload: TaskRequest,
        owner: Optional[int] = Depends(task_owner),
    ) -> TaskEnvelope:
        parsed_id = _parse_task_id(task_id)
        updated: Optional[Task] = None
        if parsed_id is not None:
            try:
                updated = await _in_thread(
                    db.update_task,
                    owner,
                    parsed_id,
                    title=payload.title,
                    description=payload.description,
                    status=payload.status,
                )
            except Exception:
                logger.exception("Failed to update task %s for owner %s", task_id, owner)
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail="Failed to update task",
                )
        if updated is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
        return TaskEnvelope(task=task_to_response(updated))

    @router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_task(task_id: str, owner: Optional[int] = Depends(task_owner)) -> Response:
        parsed_id = _parse_task_id(task_id)
        deleted = False
        if parsed_id is not None:
            try:
                deleted = await _in_thread(db.delete_task, owner, parsed_id)
            except Exception:
                logger.exception("Failed to delete task %s for owner %s", task_id, owner)
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail="Failed to delete task",
                )
        if not deleted:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
        return Response(status_code=status.HTTP_204_NO_CONTENT)


def create_app(
    *,
    settings: Settings | None = None,
    context: AppContext | None = None,
    database: Database | None = None,
    initialize_database: bool = True,
) -> FastAPI:
    """Instantiate the FastAPI application around an explicit :class:`AppContext`."""

    if context is None:
        context = AppContext.from_settings(settings or load_settings(), database=database)
    settings = context.settings
    db = context.database

    if initialize_database:
        db.initialize()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        db.close()

    app = FastAPI(
        title="Task Manager API",
        description="Minimal task tracking API with optional per-user ownership.",
        version="1.0.0",
        redirect_slashes=False,
        lifespan=lifespan,
    )
    app.state.context = context
    app.state.database = db

    _install_body_limit(app, settings.max_body_bytes)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)

    bearer_auth = BearerAuth(context.tokens)

    async def current_identity(request: Request, result: TokenResult = Depends(bearer_auth)) -> Identity:
        if isinstance(result, AuthFailure):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=result.message,
                headers={"WWW-Authenticate": "Bearer"},
            )
        request.state.identity = result.identity
        return result.identity

    if settings.require_auth:

        async def task_owner(identity: Identity = Depends(current_identity)) -> Optional[int]:
            return identity.id

    else:

        async def task_owner() -> Optional[int]:
            return None

    router = APIRouter(prefix="/api")

    @router.get("/health")
    async def healthcheck() -> Dict[str, Any]:
        try:
            await _in_thread(db.healthcheck)
        except Exception:
            logger.exception("Database healthcheck failed")
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"ok": False, "message": "Database unavailable"},
            )
        return {"ok": True}

    if settings.require_auth:
        _register_auth_routes(router, context, current_identity)
    _register_task_routes(router, db, task_owner)

    app.include_router(router)
    return app


__all__ = ["create_app", "task_to_response", "user_to_response"]
