from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from peaceverse.api.error_handling import register_exception_handlers
from peaceverse.api.routes import router
from peaceverse.config import Settings
from peaceverse.logging import get_logger, sanitize_error_message, set_correlation_id
from peaceverse.service.auth import AuthService
from peaceverse.storage.errors import StorageUnavailable
from peaceverse.storage.models import utcnow

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0

_cleanup_task: asyncio.Task | None = None


async def _run_unverified_cleanup(auth: AuthService, interval_seconds: int) -> None:
    """Background loop deleting accounts that never finished verification."""

    interval = max(interval_seconds, 1)
    try:
        while True:
            try:
                await asyncio.to_thread(auth.purge_unverified_accounts)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "unverified_cleanup_failed",
                    error_type=type(exc).__name__,
                    error=sanitize_error_message(str(exc)),
                )
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("unverified_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the unverified-account sweep and release clients on shutdown."""
    global _cleanup_task
    from peaceverse.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.unverified_sweep_enabled:
        _cleanup_task = asyncio.create_task(
            _run_unverified_cleanup(
                runtime.auth, runtime.settings.unverified_sweep_interval_seconds
            )
        )
        logger.info(
            "unverified_cleanup_scheduled",
            interval_seconds=runtime.settings.unverified_sweep_interval_seconds,
            retention_minutes=runtime.settings.unverified_retention_minutes,
        )

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Peace-Verse Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev servers only; credentialed CORS cannot use a wildcard
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
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag each request with a correlation id.

    Taken from the client's X-Request-ID header when present, otherwise
    generated, bound into the structlog context and echoed back.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Auth responses carry account data and must not sit in shared caches
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    if request.url.scheme == "https" and _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Check the credential store and the revocation store."""
    from peaceverse.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, check) -> bool:
        try:
            await asyncio.wait_for(check(), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout",
                component=label,
                timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
            )
        except StorageUnavailable as exc:
            logger.error(
                "health_check_failed",
                component=label,
                error=sanitize_error_message(str(exc)),
            )
        return False

    store_ok = await _run_bounded(
        "store", lambda: asyncio.to_thread(runtime.store.ping)
    )
    checks["store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": type(runtime.store).__name__,
    }
    revocation_ok = await _run_bounded("revocation", runtime.revocation.ping)
    checks["revocation"] = {
        "status": "healthy" if revocation_ok else "unhealthy",
        "type": type(runtime.revocation).__name__,
    }

    healthy = store_ok and revocation_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": utcnow().isoformat(),
        },
    )


def create_app() -> FastAPI:
    return app
