from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from phoneauth.api.error_handling import register_exception_handlers
from phoneauth.api.routes import router
from phoneauth.api.schemas import Envelope, HealthResponse
from phoneauth.config import Settings
from phoneauth.logging import get_logger, set_correlation_id
from phoneauth.service.errors import ServiceUnavailableError

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from phoneauth.service.runtime import get_runtime

    get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await get_runtime().aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="phoneauth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # credentials are allowed, so never fall back to a wildcard
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs and the response with ``X-Request-ID`` (client supplied or new)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    path = request.url.path
    if path.startswith("/auth/") or path.startswith("/users") or path == "/health":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3
_UNHEALTHY_DETAIL = {"status": "unhealthy", "checks": {"database": "unhealthy"}}


@app.get("/health", response_model=Envelope, tags=["health"])
async def health():
    """Liveness plus a bounded store connectivity check; 503 when the store is down."""
    from phoneauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        raise ServiceUnavailableError(
            "Database connection timed out", detail=_UNHEALTHY_DETAIL
        )
    except Exception as exc:
        logger.error(
            "health_check_database_failed", error_type=type(exc).__name__, error=str(exc)
        )
        raise ServiceUnavailableError(
            "Database connection failed", detail=_UNHEALTHY_DETAIL
        )
    data = HealthResponse(status="healthy", checks={"database": "healthy"})
    return Envelope(status="ok", data=data.model_dump())
