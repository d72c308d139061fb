from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from passgate.api.error_handling import register_exception_handlers
from passgate.api.routes import router
from passgate.config import Settings
from passgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    from passgate.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Passgate", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_origins:
        return _settings.cors_origins
    # Local dev hosts; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Add a correlation ID to each request for tracing.

    The ID is taken from the X-Request-ID header when the client sends one,
    otherwise generated. It is bound into the logging context and echoed
    back in the X-Request-ID response header.
    """
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
    # Token-bearing responses must never be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> JSONResponse:
    """Health check for the credential store and the session store.

    Returns 503 when either dependency fails its probe.
    """
    from passgate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, probe) -> bool:
        try:
            result = await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS)
            return result is not False
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    db_ok = await _run_bounded(
        "database", lambda: asyncio.to_thread(runtime.store.verify_connection)
    )
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    sessions_ok = await _run_bounded("sessions", runtime.sessions.ping)
    checks["sessions"] = {
        "status": "healthy" if sessions_ok else "unhealthy",
        "type": type(runtime.sessions).__name__,
    }

    healthy = db_ok and sessions_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app() -> FastAPI:
    return app
