from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from gatekeep.api.error_handling import register_exception_handlers
from gatekeep.api.routes import router
from gatekeep.config import get_settings
from gatekeep.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_settings = get_settings()

app = FastAPI(title="Gatekeep Auth", version=__version__)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation ID.

    Taken from the client's ``X-Request-ID`` header when present, otherwise
    generated. It is bound into log context and echoed on the response.
    """
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
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Auth responses carry tokens; keep them out of shared caches
    if request.url.path.startswith(_settings.api_prefix + "/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.secure_cookies:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router, prefix=_settings.api_prefix)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from gatekeep.service.runtime import get_runtime

    runtime = get_runtime()
    fs_root = getattr(runtime.store, "fs_root", None)
    return {
        "status": "healthy",
        "checks": {
            "store": {
                "status": "healthy",
                "type": "memory",
                "persisted": fs_root is not None,
            },
            "email": {"status": "configured" if getattr(runtime.email, "is_configured", False) else "dev_log"},
        },
        "version": __version__,
        "environment": runtime.settings.environment.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
