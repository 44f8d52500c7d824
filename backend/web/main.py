"Cinderella school backend: real-time chat service"
from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.web import config as _cfg
from backend.web.routes import chat as chat_routes


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out/opt-in via CINDERELLA_ENABLE_DOTENV (default true
      outside pytest).
    """
    # Under pytest, do not load .env – tests provide their own env.
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("CINDERELLA_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


if _should_load_dotenv():
    from dotenv import load_dotenv

    load_dotenv()

logger = logging.getLogger("cinderella.web")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the presence registry and message store at startup, tear down at shutdown.

    A handler injected beforehand via `chat_routes.configure` (tests) is kept.
    """
    if not chat_routes.is_configured():
        settings = _cfg.load_chat_settings()
        chat_routes.configure(chat_routes.build_default_handler(settings))
        logger.info(
            "chat started env=%s store=%s duplicate_sessions=%s",
            settings.environment,
            settings.messages_backend,
            settings.duplicate_sessions,
        )
    try:
        yield
    finally:
        await chat_routes.shutdown()


def create_app() -> FastAPI:
    """Build the FastAPI app: security guard, middleware, chat routes, health."""
    # Minimal production safety checks (fail-fast on insecure config)
    _cfg.ensure_secure_config_on_startup()
    settings = _cfg.load_chat_settings()

    application = FastAPI(
        title="Cinderella Backend",
        description="School backend: real-time messaging",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins) or ["*"],
        allow_methods=["GET"],
        allow_headers=["Authorization", "Content-Type"],
    )

    @application.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        # Baseline security headers; the service only returns JSON.
        response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if settings.prod_like:
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return response

    application.include_router(chat_routes.chat_router)

    @application.get("/")
    async def index():
        return JSONResponse({"status": "ok", "message": "Cinderella Backend API is running"})

    @application.get("/health")
    async def health_check():
        # Minimal health endpoint used by orchestrators and tests.
        # Security: include no-store to avoid caching any runtime status.
        return JSONResponse({"status": "ok"}, headers={"Cache-Control": "private, no-store"})

    return application


app = create_app()
