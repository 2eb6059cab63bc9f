from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hikariauth.api.error_handling import register_exception_handlers
from hikariauth.api.routes import router
from hikariauth.config import Settings, get_settings
from hikariauth.logging import get_logger, bind_request_id
from hikariauth.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts only; no wildcard because the session rides a cookie.
    return [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        settings.app_base_url.rstrip("/"),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open pooled connections on startup and release them on shutdown."""
    runtime: Runtime = app.state.runtime
    await runtime.startup()
    yield
    try:
        await runtime.shutdown()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app(
    runtime: Optional[Runtime] = None, settings: Optional[Settings] = None
) -> FastAPI:
    """Build the HTTP application around ``runtime``.

    Without a runtime one is assembled from ``settings`` (or the
    environment). Serve with ``uvicorn --factory hikariauth.app:create_app``.
    """
    if runtime is None:
        runtime = Runtime.from_settings(settings or get_settings())
    settings = runtime.settings

    app = FastAPI(title="Hikari Chat Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=sorted(set(_allowed_origins(settings))),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_request_id(request, call_next):
        """Tag every log line of the request with ``X-Request-ID``."""
        request_id = bind_request_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault(
            "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
        )
        if request.url.scheme == "https":
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router)
    return app
