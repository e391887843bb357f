"""FastAPI application entry point.

Run with: uvicorn src.main:app --reload --port 8000
"""

# ruff: noqa: E402  -- uvloop.install() must run before other imports

import uvloop

uvloop.install()

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config.settings import settings
from src.container import build_container
from src.tl_common.database import async_session_factory, engine
from src.tl_common.errors import AppError
from src.tl_common.redis_client import close_redis, ping_redis
from src.tl_common.response import app_error_response
from src.tl_gateway.middleware.request_log import RequestLogMiddleware
from src.tl_reconciliation.api.router import router as reconciliation_router
from src.tl_trust.api.router import router as trust_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: verify DB (+ Redis when used), wire listeners, start schedule. Shutdown: reverse."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    if settings.ACCOUNT_LOCK_BACKEND == "redis":
        await ping_redis()

    container = app.state.container
    container.payment_listener.register(container.bus)
    if settings.RECONCILIATION_ENABLED:
        container.reconciliation_scheduler.start()
    if settings.EVENT_RETRY_ENABLED:
        container.event_retry_scheduler.start()
    yield
    await container.event_retry_scheduler.stop()
    await container.reconciliation_scheduler.stop()
    container.payment_listener.unregister()
    await engine.dispose()
    await close_redis()


app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    lifespan=lifespan,
)

app.state.container = build_container(async_session_factory)
app.state.container.bind(app)

app.add_middleware(RequestLogMiddleware)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("Unhandled application error %d: %s", exc.code, exc.message)
    return app_error_response(request, exc)


app.include_router(trust_router, prefix="/api/v1")
app.include_router(reconciliation_router, prefix="/api/v1")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "version": "0.1.0"}
