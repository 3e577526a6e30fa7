"""FastAPI web server for the bot manager."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from fastapi import Depends, FastAPI, Request, Response, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from .. import __version__
from ..auth import AuthGateway, extract_token
from ..config import AppConfig, load_config
from ..constants import SESSION_COOKIE
from ..domain.models import Principal
from ..errors import AuthenticationError, BotManagerError, PersistenceError
from ..events.bus import EventBus
from ..events.hub import TaskEventHub
from ..scheduler import PersistenceScheduler
from ..service import BotManagerService
from ..storage.container import Container
from .channel import EventChannel
from .models import (
    ControlRequest,
    ControlResponse,
    CreateTaskRequest,
    CreateUserRequest,
    LoginRequest,
    LoginResponse,
    SuccessResponse,
    SystemStats,
)


def _bearer_token(request: Request) -> Optional[str]:
    return extract_token(request.headers.get("authorization"), request.cookies.get(SESSION_COOKIE))


def create_app(
    config: Optional[AppConfig] = None,
    data_dir: Optional[Path] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    State is loaded here, so a corrupt data directory fails before the
    server starts listening.

    Args:
        config: Effective configuration (loaded from the environment if omitted).
        data_dir: Data directory override used when ``config`` is omitted.

    Returns:
        Configured FastAPI app. ``app.state`` exposes the container, hub,
        auth gateway, service and scheduler.
    """
    config = config or load_config(data_dir)
    container = Container(config)
    hub = TaskEventHub()
    bus = EventBus(hub)
    auth = AuthGateway(
        container.users,
        secret_key=config.secret_key,
        token_expire_minutes=config.token_expire_minutes,
    )
    service = BotManagerService(container, auth, bus)
    scheduler = PersistenceScheduler(container, config.flush_interval_seconds)
    channel = EventChannel(hub, auth, service, heartbeat_interval=config.heartbeat_interval_seconds)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        scheduler.start()
        logger.info("Bot manager {} serving data from {}", __version__, container.data_dir)
        try:
            yield
        finally:
            await scheduler.stop()
            container.close()
            logger.info("Bot manager stopped; state flushed")

    app = FastAPI(
        title="Bot Manager",
        description="Multi-user administration of long-running bot tasks",
        version=__version__,
        lifespan=lifespan,
    )

    if config.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.config = config
    app.state.container = container
    app.state.hub = hub
    app.state.auth = auth
    app.state.service = service
    app.state.scheduler = scheduler

    @app.exception_handler(BotManagerError)
    async def _bot_manager_error(_request: Request, exc: BotManagerError) -> JSONResponse:
        if isinstance(exc, PersistenceError):
            logger.error("Persistence failure: {}", exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid field {field}: {first.get('msg', 'invalid')}" if field else "Invalid request"
        return JSONResponse(status_code=400, content={"error": message, "code": "validation_error"})

    def current_principal(request: Request) -> Principal:
        return auth.current_principal(_bearer_token(request))

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {"name": "Bot Manager", "version": __version__, "status": "running"}

    @app.get("/api/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    # -- session -----------------------------------------------------------

    @app.post("/api/login")
    def login(body: LoginRequest, response: Response) -> LoginResponse:
        principal, token = service.login(body.username, body.password)
        response.set_cookie(
            SESSION_COOKIE,
            token,
            httponly=True,
            samesite="lax",
            max_age=config.token_expire_minutes * 60,
        )
        return LoginResponse(token=token, user=principal.to_dict())

    @app.post("/api/logout")
    async def logout(request: Request, response: Response) -> SuccessResponse:
        try:
            principal = auth.current_principal(_bearer_token(request))
        except AuthenticationError:
            principal = None
        if principal is not None:
            service.logout(principal)
        response.delete_cookie(SESSION_COOKIE)
        return SuccessResponse()

    @app.get("/api/user")
    async def get_current_user(principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        return {"user": principal.to_dict()}

    # -- tasks -------------------------------------------------------------

    @app.get("/api/tasks")
    async def list_tasks(principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        tasks = service.list_tasks(principal)
        return {"tasks": {task.id: task.to_payload() for task in tasks}}

    @app.post("/api/tasks")
    async def create_task(
        body: CreateTaskRequest,
        principal: Principal = Depends(current_principal),
    ) -> dict[str, Any]:
        task = service.create_task(
            principal,
            name=body.name,
            thread_id=body.thread_id,
            credential_content=body.cookie_content,
            messages=body.messages,
            delay=body.delay,
            haters_name=body.haters_name,
            last_here_name=body.last_here_name,
            max_messages=body.max_messages,
            auto_restart=body.auto_restart,
        )
        return {"success": True, "taskId": task.id, "task": task.to_payload()}

    @app.get("/api/tasks/{task_id}")
    async def get_task(task_id: str, principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        return {"task": service.get_task(principal, task_id).to_payload()}

    @app.post("/api/tasks/{task_id}/control")
    async def control_task(
        task_id: str,
        body: ControlRequest,
        principal: Principal = Depends(current_principal),
    ) -> ControlResponse:
        task = service.control_task(principal, task_id, body.action)
        return ControlResponse(status=task.status)

    @app.delete("/api/tasks/{task_id}")
    async def delete_task(task_id: str, principal: Principal = Depends(current_principal)) -> SuccessResponse:
        service.delete_task(principal, task_id)
        return SuccessResponse()

    # -- administration ----------------------------------------------------

    @app.get("/api/admin/users")
    async def list_users(principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        return {"users": [user.to_summary() for user in service.list_users(principal)]}

    @app.post("/api/admin/users")
    def create_user(body: CreateUserRequest, principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        user = service.create_user(principal, body.username, body.password, body.role)
        return {"success": True, "user": user.to_summary()}

    @app.delete("/api/admin/users/{username}")
    async def delete_user(username: str, principal: Principal = Depends(current_principal)) -> SuccessResponse:
        service.delete_user(principal, username)
        return SuccessResponse()

    @app.get("/api/admin/stats")
    async def system_stats(principal: Principal = Depends(current_principal)) -> SystemStats:
        return SystemStats(**service.system_stats(principal))

    # -- live events -------------------------------------------------------

    @app.websocket("/ws")
    async def events(websocket: WebSocket) -> None:
        await channel.handle_connection(websocket)

    return app
