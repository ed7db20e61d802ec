from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tessera.api.error_handling import register_exception_handlers
from tessera.api.routes import router
from tessera.logging import bind_request_context, clear_request_context, get_logger, set_correlation_id
from tessera.service.errors import SigningUnavailableError

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_maintenance_task: asyncio.Task | None = None


async def _run_maintenance(runtime) -> None:
    """Expire sessions, purge dead refresh tokens, sweep the cache and rotate keys when due."""

    interval = max(1, runtime.settings.maintenance_interval_seconds)
    rotation_days = runtime.settings.signing_key_rotation_days
    try:
        while True:
            try:
                await runtime.sessions.cleanup_expired()
                if rotation_days > 0:
                    await runtime.sessions.rotate_signing_key_if_due(
                        timedelta(days=rotation_days)
                    )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("maintenance_failed", error_type=type(exc).__name__, error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("maintenance_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Warm the signing key, start maintenance, and close pools on shutdown."""
    global _maintenance_task
    from tessera.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        key = await asyncio.to_thread(runtime.keys.get_active_key_pair)
    except SigningUnavailableError:
        logger.critical("signing_key_unavailable_on_startup")
        raise
    logger.info("signing_key_ready", key_id=key.key_id, algorithm=key.algorithm)
    _maintenance_task = asyncio.create_task(_run_maintenance(runtime))

    yield

    try:
        if _maintenance_task:
            _maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _maintenance_task
            _maintenance_task = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Tessera Auth", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
    ],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its ``X-Request-ID``.

    The client-supplied id is reused when present, otherwise a new one is
    generated; either way it is echoed back in the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    clear_request_context()
    bind_request_context(method=request.method, path=request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("API-Version", __version__)
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Probe the store and the cache with bounded timeouts."""
    from tessera.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }
    healthy = db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
