"""
Main FastAPI application entry point.
Initializes the application with middleware, exception handlers, routes,
and the realtime and purge background tasks.
"""
import asyncio
import logging
from uuid import uuid4
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from core.config import settings
from core.exceptions import ChatAPIError
from core.logging_config import configure_logging, request_id_var
from db.database import init_db, seed_db

# Prometheus metrics
from prometheus_fastapi_instrumentator import Instrumentator

# Configure structured JSON logging
configure_logging(service_name="securechat-api", level=settings.log_level, enable_json=settings.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting SecureChat API...")
    init_db()
    seed_db()
    logger.info("Database initialized and seeded")

    from api.websocket_manager import heartbeat_monitor
    from workers.message_purger import purge_loop

    heartbeat_task = asyncio.create_task(heartbeat_monitor())
    logger.info("WebSocket heartbeat monitor started")

    purge_task = asyncio.create_task(purge_loop(settings.purge_interval_seconds))
    logger.info("Message purge loop started")

    yield

    # Shutdown
    logger.info("Shutting down SecureChat API...")

    for task in (heartbeat_task, purge_task):
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    logger.info("Background tasks stopped")


# Create FastAPI application
app = FastAPI(
    title="SecureChat API",
    description="Secure messaging backend with expiring messages and realtime delivery",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI with Prometheus metrics
# Exposes /metrics endpoint with HTTP request metrics
Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Metrics"])


# Request ID middleware
class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add unique request_id to each request.
    The request_id is included in every log record emitted while the
    request is handled.
    """
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            logger.info(
                f"{request.method} {request.url.path} - "
                f"Client: {request.client.host if request.client else 'unknown'}"
            )

            response = await call_next(request)

            response.headers["X-Request-ID"] = request_id
            logger.info(f"Response: {response.status_code}")
            return response
        finally:
            request_id_var.reset(token)


# Add middlewares (last added runs first)
from api.rate_limit import RateLimitMiddleware
app.add_middleware(RateLimitMiddleware)
app.add_middleware(RequestIDMiddleware)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(ChatAPIError)
async def chat_api_error_handler(request: Request, exc: ChatAPIError):
    if exc.status_code >= 500:
        logger.error(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail
    if exc.status_code == 404 and exc.detail == "Not Found":
        message = "Route not found"
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": message},
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg"),
            "type": error.get("type"),
        }
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": errors})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    # RequestIDMiddleware has already reset the context var by the time this runs
    request_id = getattr(request.state, "request_id", request_id_var.get())
    logger.error(
        f"Unhandled error on {request.method} {request.url.path}: {exc}",
        exc_info=exc,
        extra={"request_id": request_id}
    )
    return JSONResponse(
        status_code=500,
        content={"message": "Something went wrong!"},
        headers={"X-Request-ID": request_id}
    )


@app.get("/", tags=["Health"])
async def root():
    return {
        "message": "SecureChat API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready"
    }


# Register endpoint routers
from api.health import router as health_router
from api.auth import router as auth_router
from api.chats import router as chats_router
from api.messages import router as messages_router
from api.users import router as users_router
from api.admin import router as admin_router
from api.files import router as files_router
from api.realtime import router as realtime_router

app.include_router(health_router)

app.include_router(auth_router, prefix="/api")
app.include_router(chats_router, prefix="/api")
app.include_router(messages_router, prefix="/api")
app.include_router(users_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(files_router, prefix="/api")

# WebSocket endpoint
app.include_router(realtime_router, tags=["WebSocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower()
    )
