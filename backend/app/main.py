"""
FastAPI application entry point
"""

import asyncio
import os
from contextlib import asynccontextmanager, suppress
from datetime import timedelta
from typing import Callable, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .api import api_router
from .core.config import Settings, get_settings
from .core.error_handlers import (
    app_exception_handler,
    request_validation_handler,
    sqlalchemy_exception_handler,
    unhandled_exception_handler
)
from .core.exceptions import BaseAppException
from .core.logging_config import configure_logging
from .db.database import build_engine, build_session_factory
from .db.init_db import init_db
from .db.utils import check_database_connection
from .middleware.request_gate import RequestAuthenticator, RequestGate
from .services.auth import AuthService
from .services.background_tasks import BackgroundTaskManager
from .services.cleanup import run_periodic_cleanup
from .services.identity import IdentityProviderClient
from .services.login_registry import LoginRegistry
from .services.rate_limiter import RateLimiter, build_rate_limiter
from .services.response_transform import build_response_transform
from .services.session_registry import SessionRegistry
from .services.token_codec import build_token_codec
from .utils.clock import Clock, utcnow
from .utils.logging import get_logger

logger = get_logger(__name__)

CLEANUP_INTERVAL_SECONDS = 3600
BACKGROUND_DRAIN_TIMEOUT_SECONDS = 10

def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[Callable[[], AsyncSession]] = None,
    clock: Optional[Clock] = None,
    rate_limiter: Optional[RateLimiter] = None,
    identity_transport: Optional[httpx.AsyncBaseTransport] = None
) -> FastAPI:
    """
    Build the API application

    Args:
        settings: Configuration; read from the environment when omitted
        session_factory: Database session factory; an engine for
            settings.database_url is created when omitted
        clock: Time source shared by every component
        rate_limiter: Limiter override; built from settings when omitted
        identity_transport: httpx transport for identity provider calls
    """
    settings = settings or get_settings()
    clock = clock or utcnow
    configure_logging(settings.log_level, settings.log_format)

    engine = None
    if session_factory is None:
        engine = build_engine(settings.database_url, echo=settings.db_echo)
        session_factory = build_session_factory(engine)

    background_tasks = BackgroundTaskManager()
    codec = build_token_codec(settings.user_token_secret, settings.auth_token_scheme)
    login_registry = LoginRegistry(codec, clock)
    session_registry = SessionRegistry(session_factory, background_tasks, clock)
    authenticator = RequestAuthenticator(codec, login_registry, session_registry, clock)
    rate_limiter = rate_limiter or build_rate_limiter(settings, session_factory, clock)
    auth_service = AuthService(
        login_registry,
        session_registry,
        clock=clock,
        login_ttl=timedelta(hours=settings.login_ttl_hours),
        max_failed_logins=settings.max_failed_logins,
        lockout=timedelta(minutes=settings.login_lockout_minutes)
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown events"""
        logger.info("Starting up FastAPI application...")
        # Refuse to serve without a token secret
        settings.require_token_secret()

        if engine is not None:
            await init_db(engine)

        cleanup_task = asyncio.create_task(run_periodic_cleanup(
            session_factory,
            rate_limiter,
            interval_seconds=CLEANUP_INTERVAL_SECONDS,
            retention=timedelta(seconds=settings.rate_limit_offense_reset_seconds),
            clock=clock
        ))
        logger.info(f"Started periodic cleanup task with interval {CLEANUP_INTERVAL_SECONDS} seconds")

        yield

        cleanup_task.cancel()
        with suppress(asyncio.CancelledError):
            await cleanup_task
        await background_tasks.drain(timeout=BACKGROUND_DRAIN_TIMEOUT_SECONDS)
        if engine is not None:
            await engine.dispose()
        logger.info("Shutting down FastAPI application...")

    app = FastAPI(title="Pixalpedia API", lifespan=lifespan)

    app.state.settings = settings
    app.state.clock = clock
    app.state.db_pool = session_factory
    app.state.background_tasks = background_tasks
    app.state.authenticator = authenticator
    app.state.auth_service = auth_service
    app.state.identity_client = IdentityProviderClient(settings, clock, transport=identity_transport)
    app.state.rate_limiter = rate_limiter

    # Gate first so CORS wraps it and answers preflights itself
    app.add_middleware(
        RequestGate,
        settings=settings,
        authenticator=authenticator,
        rate_limiter=rate_limiter,
        clock=clock,
        response_transform=build_response_transform(settings.storage_public_url, settings.image_proxy_url)
    )

    allowed_origins = settings.allowed_origins()
    logger.info(f"Configuring CORS with allowed origins: {allowed_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Accept",
            "Origin",
            "X-Requested-With",
            "X-Session-Token",
            "X-User-Id",
            "Authentication",
            "ts",
        ],
        max_age=3600,  # Cache preflight requests for 1 hour
    )

    # Register error handlers
    app.add_exception_handler(BaseAppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(api_router)
    app.add_api_route("/health", health_check, methods=["GET"])
    app.add_api_route("/api/health", health_check, methods=["GET"], include_in_schema=False)

    return app

async def health_check(request: Request):
    """Health check endpoint with database verification"""
    try:
        async with request.app.state.db_pool() as session:
            health = await check_database_connection(session)
    except Exception as e:
        logger.error(f"Health check failed: {str(e)}", exc_info=True)
        return {
            "status": "unhealthy",
            "database": {
                "status": "error",
                "error": str(e)
            }
        }

    return {
        "status": "healthy" if health.healthy else "unhealthy",
        "database": health.to_dict()
    }

app = create_app()

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("app.main:app", host="0.0.0.0", port=port, reload=app.state.settings.environment == "development")
