import logging
import math
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.core.config import get_settings
from app.core.container import Resilience
from app.core.deps import get_resilience, rate_limit
from app.core.errors import (
    CircuitOpenError,
    OperationTimeoutError,
    RateLimitExceeded,
)
from app.core.logging import configure_logging
from app.database import create_db_and_tables, engine
from app.routers import ai, tasks
from app.services.ai_client import AIProviderError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings)
    if settings.create_tables_on_startup:
        await create_db_and_tables()

    resilience = Resilience.build(settings)
    app.state.resilience = resilience
    resilience.start()
    logger.info("Resilience layer started")
    try:
        yield
    finally:
        await resilience.stop()
        await engine.dispose()
        logger.info("Resilience layer stopped")


app = FastAPI(
    title="Eisenhower Task API",
    description="Async task management API organised by Eisenhower quadrants",
    swagger_ui_parameters={"displayRequestDuration": True},
    version="1.0.0",
    lifespan=lifespan,
    dependencies=[Depends(rate_limit("general", points=False))],
)

# Include routers
app.include_router(tasks.router)
app.include_router(ai.router)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        headers={"Retry-After": str(exc.retry_after)},
        content={
            "error": "Too many requests",
            "reason": exc.reason,
            "retry_after": exc.retry_after,
        },
    )


@app.exception_handler(CircuitOpenError)
async def circuit_open_handler(request: Request, exc: CircuitOpenError):
    retry_after = max(1, math.ceil(exc.retry_after))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        headers={"Retry-After": str(retry_after)},
        content={
            "error": "Service temporarily unavailable",
            "message": f"Circuit breaker '{exc.name}' is open due to repeated failures",
            "retry_after": retry_after,
        },
    )


@app.exception_handler(OperationTimeoutError)
async def timeout_handler(request: Request, exc: OperationTimeoutError):
    return JSONResponse(
        status_code=status.HTTP_504_GATEWAY_TIMEOUT,
        content={"error": "Upstream timeout", "message": str(exc)},
    )


@app.exception_handler(httpx.HTTPError)
@app.exception_handler(AIProviderError)
async def upstream_error_handler(request: Request, exc: Exception):
    logger.error(f"Upstream error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"error": "Upstream service error"},
    )


@app.get("/")
async def root():
    return {
        "message": "Welcome to Eisenhower Task API",
        "docs": "/docs",
        "version": "1.0.0",
    }


@app.get("/health")
async def health_check(resilience: Resilience = Depends(get_resilience)):
    return resilience.health()
