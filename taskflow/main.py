"""
Main FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskflow import __version__
from taskflow.config import get_settings
from taskflow.database import close_db, init_db
from taskflow.services.tasks import TaskService
from taskflow.services.users import UserService
from taskflow.websocket.dispatcher import MessageRouter
from taskflow.websocket.manager import ConnectionManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.
    Initializes database on startup; closes WebSockets and connections on shutdown.
    """
    settings = get_settings()
    logger.info("Starting %s v%s (debug=%s)", settings.app_name, __version__, settings.debug)

    await init_db()

    yield

    await app.state.realtime.shutdown()
    await close_db()

    logger.info("%s shutdown complete", settings.app_name)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        description="Real-time collaboration server for task management",
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
    )

    # Realtime state lives on the app so each app (and each test) gets its own
    user_service = UserService(settings=settings)
    app.state.user_service = user_service
    app.state.task_service = TaskService()
    app.state.realtime = ConnectionManager(
        user_service=user_service,
        send_timeout=settings.ws_send_timeout,
    )
    app.state.message_router = MessageRouter(app.state.realtime, app.state.task_service)

    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1|192\.168\.\d+\.\d+)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from taskflow.routers import health, realtime
    from taskflow.websocket import handler

    app.include_router(health.router, tags=["Health"])
    app.include_router(realtime.router, prefix="/api", tags=["Realtime"])
    app.include_router(handler.router, tags=["WebSocket"])

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions."""
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error"},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "taskflow.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )
