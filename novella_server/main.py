# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Novella Server - Main FastAPI application."""

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from novella_server.api.schemas import ApiResponse
from novella_server.auth import Credentials
from novella_server.config import Settings, settings
from novella_server.database import async_session_maker, init_db
from novella_server.exceptions import AppError, RateLimited
from novella_server.rate_limit import AttemptLedger, RateLimiter, default_policies
from novella_server.routers import auth
from novella_server.services.accounts import AccountService
from novella_server.services.avatars import FileAvatarStore
from novella_server.services.email import Mailer
from novella_server.services.users import SqlUserStore
from novella_server.services.verification import VerificationCodeStore

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def _get_cors_origins() -> list[str]:
    raw = (settings.cors_origins or "*").strip()
    if raw == "*":
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


def build_account_service(config: Settings) -> AccountService:
    """Wire the process-scoped services. State lives for the process lifetime only."""
    mailer = Mailer(config)
    return AccountService(
        users=SqlUserStore(async_session_maker),
        codes=VerificationCodeStore(
            code_length=config.verification_code_length,
            ttl=config.verification_code_ttl_seconds,
            max_attempts=config.verification_max_attempts,
        ),
        limiter=RateLimiter(AttemptLedger(), default_policies(config)),
        credentials=Credentials.from_settings(config),
        deliver=mailer.send_verification_code,
        avatars=FileAvatarStore(config.data_path),
        avatar_max_bytes=config.avatar_max_bytes,
    )


async def cleanup_loop(accounts: AccountService, interval: float) -> None:
    """Periodically drop expired verification codes and stale rate counters."""
    while True:
        await asyncio.sleep(interval)
        codes = accounts.codes.purge_expired()
        counters = accounts.limiter.ledger.prune()
        if codes or counters:
            logger.debug("Pruned %d verification entries and %d rate counters", codes, counters)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    await init_db()
    if settings.jwt_secret == "change-me-in-production":
        logger.warning("JWT_SECRET is not set - tokens are signed with the development default")
    app.state.accounts = build_account_service(settings)
    cleanup = asyncio.create_task(
        cleanup_loop(app.state.accounts, settings.verification_cleanup_interval_seconds)
    )
    yield
    cleanup.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup


app = FastAPI(
    title="Novella Server",
    description="Accounts and authentication API for the Novella reading site",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


def _envelope(status_code: int, message: str, error: str | None = None, headers: dict | None = None) -> JSONResponse:
    body = ApiResponse[None](success=False, message=message, error=error)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


def _rate_limit_headers(request: Request) -> dict[str, str] | None:
    """RateLimit-* headers recorded by the route's rate-limit dependency, if it ran."""
    return getattr(request.state, "rate_limit_headers", None)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    headers = dict(_rate_limit_headers(request) or {})
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
        cause = exc.__cause__
        error = str(cause) if settings.is_development and cause is not None else None
        return _envelope(exc.status_code, exc.message, error, headers=headers or None)
    if isinstance(exc, RateLimited):
        headers.update(exc.headers)
    return _envelope(exc.status_code, exc.message, headers=headers or None)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = str(exc.errors()) if settings.is_development else None
    return _envelope(400, "Invalid request data", error)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = "API not found" if exc.status_code == 404 else str(exc.detail)
    return _envelope(exc.status_code, message, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = str(exc) if settings.is_development else None
    return _envelope(500, "Internal server error", error)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log method, path, status, and duration for each request (no body or auth headers)."""
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, duration_ms)
    return response


app.include_router(auth.router, prefix="/api")


@app.get("/")
async def root():
    """API info."""
    return {
        "name": "Novella Server",
        "version": VERSION,
        "api": "/api",
        "docs": "/api/docs",
    }


@app.get("/api/health")
async def health():
    """Health check for load balancers."""
    return {"success": True, "message": "ok"}


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=settings.host, port=settings.port)
