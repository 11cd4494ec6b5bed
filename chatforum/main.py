"""
ChatForum

FastAPI application entry point.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatforum.api import ws
from chatforum.api.middleware.request_id import RequestIdMiddleware
from chatforum.api.v1 import router as api_v1_router
from chatforum.config import get_settings
from chatforum.database import async_session_maker, close_db, init_db
from chatforum.kernel.errors import PersistentStoreFailure
from chatforum.logging_config import configure_logging, get_logger
from chatforum.realtime import RealtimeHub
from chatforum.schemas.common import HealthResponse

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan handler.

    Runs startup and shutdown tasks.
    """
    # Configure logging first
    configure_logging(
        log_level=settings.log_level,
        environment=settings.environment,
        debug=settings.debug,
    )

    # Startup
    logger.info("Starting %s v%s", settings.project_name, settings.version)
    await init_db()
    logger.info("Database initialized")

    hub = RealtimeHub(async_session_maker, settings=settings)
    await hub.start()
    app.state.hub = hub

    yield

    # Shutdown
    logger.info("Shutting down...")
    await hub.stop()
    await close_db()
    logger.info("Database connections closed")


# Create FastAPI application
app = FastAPI(
    title=settings.project_name,
    description="""
    ChatForum realtime chat backend.

    ## Features

    - **Accounts**: Registration, login sessions, logout, password change
    - **Presence**: One live connection per user, list of who is online
    - **Moderation**: Mute, ban and kick with timed auto-expiry
    - **Realtime**: WebSocket channel at `/ws/chat?token=<access token>`
    """,
    version=settings.version,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# add_middleware stacks innermost-first, so CORS (added last) wraps everything
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _request_headers(request: Request) -> dict:
    req_id = getattr(request.state, "request_id", None)
    return {"X-Request-ID": req_id} if req_id else {}


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    headers = {**(exc.headers or {}), **_request_headers(request)}
    content = {"detail": exc.detail}
    req_id = getattr(request.state, "request_id", None)
    if req_id and exc.status_code >= 500:
        content["request_id"] = req_id
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
):
    """Handle request validation errors."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })
    content = {"detail": "Validation error", "errors": errors}
    req_id = getattr(request.state, "request_id", None)
    if req_id:
        content["request_id"] = req_id
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=content,
        headers=_request_headers(request),
    )


@app.exception_handler(PersistentStoreFailure)
async def store_failure_handler(request: Request, exc: PersistentStoreFailure):
    """Session/punishment store unreachable; nothing was applied."""
    logger.error("Persistent store failure: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "detail": "Persistent store unavailable, try again later",
            "code": exc.code,
            "request_id": getattr(request.state, "request_id", None),
        },
        headers=_request_headers(request),
    )


@app.exception_handler(Exception)
async def general_exception_handler(
    request: Request,
    exc: Exception,
):
    """Handle unexpected exceptions."""
    logger.exception("Unhandled exception: %s", exc)
    req_id = getattr(request.state, "request_id", None)
    if settings.debug:
        content = {
            "detail": str(exc),
            "type": type(exc).__name__,
            "request_id": req_id,
        }
    else:
        content = {"detail": "Internal server error", "request_id": req_id}
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=content,
        headers=_request_headers(request),
    )


# Health check endpoint
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(request: Request):
    """Check application health."""
    hub = getattr(request.app.state, "hub", None)
    return HealthResponse(
        status="ok",
        version=settings.version,
        database="connected",
        online_users=len(hub.registry) if hub else 0,
    )


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.project_name,
        "version": settings.version,
        "docs": "/docs" if settings.debug else "disabled",
        "api": {
            "v1": settings.api_v1_prefix,
            "websocket": "/ws/chat",
        },
    }


# Mount API v1 routes
app.include_router(
    api_v1_router,
    prefix=settings.api_v1_prefix,
)
app.include_router(ws.router)


# Main entry point for development
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chatforum.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
