"""
Application
===========

FastAPI application factory: routers, error rendering, request ids,
CORS and the Prometheus endpoint.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis import asyncio as aioredis

from .config import settings
from .database import dispose_engine
from .exceptions import BookingEngineError, RateLimitExceeded
from .logging_config import configure_logging, request_id
from .paystack import PaystackClient
from .rate_limiter import RateLimiter, create_rate_limiter
from .routes import router

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Booking engine starting", environment=settings.ENVIRONMENT)
    yield
    await app.state.paystack.close()
    await app.state.rate_limiter.close()
    if app.state.redis is not None:
        await app.state.redis.aclose()
    await dispose_engine()
    logger.info("Booking engine stopped")


def create_app(
    paystack: Optional[PaystackClient] = None,
    rate_limiter: Optional[RateLimiter] = None,
    redis: Optional[aioredis.Redis] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        paystack: Payment provider client (defaults to one built from settings)
        rate_limiter: Limiter for the public endpoints (RATE_LIMIT_BACKEND)
        redis: Redis client for calendar locks (from REDIS_URL when set)
    """
    configure_logging()

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

    app.state.paystack = paystack or PaystackClient()
    app.state.rate_limiter = rate_limiter or create_rate_limiter()
    if redis is None and settings.REDIS_URL:
        redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    app.state.redis = redis

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next):
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = request_id.set(req_id)
        structlog.contextvars.bind_contextvars(path=request.url.path, method=request.method)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()
            request_id.reset(token)
        response.headers["X-Request-ID"] = req_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/health", include_in_schema=False)
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


# =============================================================================
# ERROR RENDERING
# =============================================================================

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(BookingEngineError)
    async def booking_engine_error(request: Request, exc: BookingEngineError) -> JSONResponse:
        headers = None
        if isinstance(exc, RateLimitExceeded):
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            logger.error("Request failed", reason=exc.reason, error=exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "reason": exc.reason},
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"loc": [str(part) for part in error["loc"]], "msg": error["msg"], "type": error["type"]}
            for error in exc.errors()
        ]
        message = details[0]["msg"] if details else "Invalid request"
        return JSONResponse(
            status_code=400,
            content={"error": message, "reason": "validation_error", "details": details},
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error", error_type=type(exc).__name__)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
