import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ezhost.core.config import (
    APP_VERSION, LOG_LEVEL, OPERATION_STATE_FILE, SERVERS_FILE, LifecycleSettings, load_settings,
)
from ezhost.core.errors import LifecycleError, RegistryWriteError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


_logging_configured = False


def configure_logging(level: str = LOG_LEVEL):
    """Attach a single stream handler to the root logger."""
    global _logging_configured
    if _logging_configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))
    _logging_configured = True


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup/shutdown."""
    orchestrator = app.state.orchestrator

    reset = orchestrator.recover_stale_statuses()
    logger.info(f"Loaded {len(orchestrator.list_servers())} server(s), reset {reset} stale status(es)")

    yield

    await orchestrator.shutdown()
    logger.info("App shutting down")


def create_app(
    settings: Optional[LifecycleSettings] = None,
    servers_file: Optional[Path] = None,
    operation_state_file: Optional[Path] = None,
    spawn=None,
    rcon_client_factory=None,
    sleep: Optional[Callable] = None,
    windows: Optional[bool] = None,
):
    """FastAPI application factory.

    Every collaborator can be swapped out; by default the registry lives in
    EZHOST_DATA_DIR, scripts run as real child processes and RCON goes over TCP.
    """
    from ezhost.services.events import EventBus
    from ezhost.services.launcher import ProcessLauncher
    from ezhost.services.lifecycle import ServerOrchestrator
    from ezhost.services.operations import OperationRunner
    from ezhost.services.rcon import RconChannel
    from ezhost.services.registry import ServerRegistry

    configure_logging()
    settings = settings or load_settings()

    events = EventBus()
    registry = ServerRegistry(servers_file or SERVERS_FILE, events=events)

    launcher_kwargs = {"events": events}
    if spawn is not None:
        launcher_kwargs["spawn"] = spawn
    if windows is not None:
        launcher_kwargs["windows"] = windows
    launcher = ProcessLauncher(settings, **launcher_kwargs)

    channel_kwargs = {}
    if rcon_client_factory is not None:
        channel_kwargs["client_factory"] = rcon_client_factory
    if sleep is not None:
        channel_kwargs["sleep"] = sleep
    channel = RconChannel(registry, settings, **channel_kwargs)

    orchestrator_kwargs = {"sleep": sleep} if sleep is not None else {}
    orchestrator = ServerOrchestrator(registry, launcher, channel, settings, **orchestrator_kwargs)
    operations = OperationRunner(orchestrator, operation_state_file or OPERATION_STATE_FILE)

    app = FastAPI(
        title="EZHost Server Manager",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.events = events
    app.state.orchestrator = orchestrator
    app.state.operations = operations

    @app.exception_handler(LifecycleError)
    async def lifecycle_error_handler(request: Request, exc: LifecycleError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.detail})")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @app.exception_handler(RegistryWriteError)
    async def registry_write_error_handler(request: Request, exc: RegistryWriteError):
        logger.error(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(
            {
                "status": "error",
                "message": "Server registry could not be saved",
                "error": str(exc),
                "error_code": "registry_write_failed",
            },
            status_code=500,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            {"status": "error", "message": str(exc.detail), "error": str(exc.detail), "error_code": "http_error"},
            status_code=exc.status_code,
        )

    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["*"],
    )

    from ezhost.routers import events as events_router, servers

    app.include_router(servers.router, tags=["Servers"])
    app.include_router(events_router.router, tags=["Events"])

    return app
