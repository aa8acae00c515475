"""
api/main.py -- FastAPI application entry point for the IAM console.

The console is a local, single-operator web app: it holds exactly one
session (app.state.session) and forwards every data request to the IAM
backend through core.gateway.ApiClient.

Run with:      uvicorn asgi:app --port 8080

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (token store, session restore, gateway, login flow,
vault cache) and shutdown (close HTTP pool and token store) symmetrically.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.dashboard import router as dashboard_router
from api.routes.v1.secrets import router as secrets_router
from api.routes.v1.session import router as session_router
from auth.flow import LoginFlow, resume_session
from auth.session import SessionStore
from auth.store import TokenStore
from core.config import get_settings
from core.errors import ConsoleError, UnauthorizedError
from core.gateway import ApiClient
from vault.clipboard import BufferClipboard
from vault.visibility import SecretVisibilityCache

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if get_settings().debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("iamconsole.api")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the console's collaborators and restore any persisted session.

    Startup order matters:
      1. Token store, then session.load() -- the gateway reads the token
         from the session on every call.
      2. Gateway, login flow, vault -- all hold the session.
      3. Vault subscribes to session changes before resume_session() so a
         failed resume can never leave revealed state behind.
      4. resume_session() last -- it needs the gateway.
    """
    settings = get_settings()
    logger.info("IAM console starting up (backend %s)", settings.api_base_url)

    token_store = TokenStore(settings.session_db_url)
    session = SessionStore(token_store)
    session.load()
    client = ApiClient(settings.api_base_url, session, timeout=settings.request_timeout)
    clipboard = BufferClipboard()
    vault = SecretVisibilityCache(client, clipboard, refetch_on_reveal=settings.secret_refetch_on_reveal)
    session.subscribe(vault.on_session_change)

    app.state.settings = settings
    app.state.token_store = token_store
    app.state.session = session
    app.state.client = client
    app.state.login_flow = LoginFlow(client, session)
    app.state.clipboard = clipboard
    app.state.vault = vault

    if await resume_session(client, session):
        logger.info("Resumed session for %s", session.principal.username)

    yield

    client.close()
    token_store.close()
    logger.info("IAM console shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="IAM Console",
    description="Operator console for the IAM platform: users, secret vault and audit trail.",
    version=VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        ms,
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(session_router, prefix="/api/v1", tags=["Session"])
app.include_router(dashboard_router, prefix="/api/v1", tags=["Dashboard"])
app.include_router(secrets_router, prefix="/api/v1", tags=["Vault"])
# Web UI router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# JSON endpoints (/api/...) get the ErrorResponse envelope. HTML pages get a
# redirect, because a browser navigating the console cannot act on JSON.
# ---------------------------------------------------------------------------


def _is_api(request: Request) -> bool:
    return request.url.path.startswith("/api/")


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(UnauthorizedError)
async def unauthorized_handler(request: Request, exc: UnauthorizedError):
    """The backend rejected the token; the gateway has already cleared the session.

    Pages redirect to /login?expired=1 so the operator sees why they were
    logged out. The login flow is reset so no half-finished attempt survives.
    """
    request.app.state.login_flow.cancel()
    if _is_api(request):
        return _error(401, "unauthorized", "Session expired. Log in again.")
    return RedirectResponse("/login?expired=1", status_code=302)


@app.exception_handler(ConsoleError)
async def console_error_handler(request: Request, exc: ConsoleError) -> JSONResponse:
    """Backend failures that a route did not handle itself. Message surfaced as-is."""
    status = exc.status if exc.status and 400 <= exc.status < 500 else 502
    return _error(status, "backend_error", exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """429 for API clients; the login page re-renders with a throttling message."""
    if not _is_api(request):
        return RedirectResponse("/login?error=rate_limited", status_code=302)
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured detail dicts are passed through; anything else is wrapped."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all. The traceback goes to the log, never to the response body."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Console liveness. Does not call the backend."""
    return HealthResponse(version=VERSION, backend=request.app.state.settings.api_base_url)
