from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from ssocenter.api.error_handling import register_exception_handlers
from ssocenter.api.routes import router
from ssocenter.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_NO_STORE_PATHS = ("/authorize", "/token", "/userinfo", "/revoke", "/login", "/logout", "/session")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the blacklist reaper on startup and release resources on shutdown."""
    from ssocenter.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.reaper_enabled:
            await runtime.reaper.start()
    except Exception as exc:
        logger.error("startup_reaper_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="SSO Center", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID (client supplied or generated) for log tracing."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Credentials must never be cached by browsers or proxies
    if request.url.path in _NO_STORE_PATHS:
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("Pragma", "no-cache")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from ssocenter.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "ok",
        "version": __version__,
        "revocation_mode": runtime.revocations.mode,
        "revocation_local_entries": runtime.revocations.local_size,
    }


def create_app() -> FastAPI:
    return app
