from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Dict
from urllib.parse import urljoin

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse

from chatgate.api.error_handling import register_exception_handlers
from chatgate.api.routes import router
from chatgate.api.schemas import HealthResponse
from chatgate.logging import get_logger, set_correlation_id
from chatgate.service.auth import SESSION_COOKIE
from chatgate.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    logger.info(
        "app_started",
        protected_prefixes=list(runtime.settings.protected_prefixes),
    )
    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="chatgate", version=__version__, lifespan=lifespan)


# Later registrations wrap earlier ones: correlation id, then security headers, then the guard
@app.middleware("http")
async def enforce_route_guard(request: Request, call_next):
    """Redirect requests the route guard refuses before they reach a handler."""
    guard = get_runtime().auth.route_guard
    decision = guard.decide(request.url.path, request.cookies.get(SESSION_COOKIE))
    if not decision.allowed:
        logger.info(
            "route_guard_redirect",
            path=request.url.path,
            redirect_to=decision.redirect_to,
        )
        return RedirectResponse(
            urljoin(str(request.base_url), decision.redirect_to), status_code=307
        )
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and get_runtime().settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag every log line of the request with X-Request-ID and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", response_model=HealthResponse)
async def health() -> Dict[str, str]:
    return {"status": "ok"}
