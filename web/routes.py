"""
web/routes.py -- Jinja2 template routes for the IAM console.

These routes serve server-rendered HTML. They share app.state with the JSON
routes (same session, gateway, login flow and vault cache) but return HTML
or redirects instead of JSON.

Every protected handler starts with the route guard:
    if redirect := require_session(request):
        return redirect
so no protected page is ever rendered, even partially, without a principal.

Routes:
  GET  /login                          -- password form, or TOTP form while one is pending
  POST /login                          -- submit username/password (rate limited)
  POST /login/totp                     -- submit the 6-digit code (rate limited)
  POST /login/cancel                   -- abandon a pending TOTP step
  POST /logout                         -- clear the session
  GET  /                               -- dashboard
  GET  /users                          -- user list
  POST /users/register                 -- create a user
  POST /users/{user_id}/active         -- activate / deactivate
  POST /users/{user_id}/roles          -- assign a role
  GET  /secrets                        -- vault listing with reveal state
  POST /secrets                        -- store a new secret
  POST /secrets/{secret_id}/reveal     -- fetch + show
  POST /secrets/{secret_id}/hide       -- stop showing
  POST /secrets/{secret_id}/delete     -- delete
  GET  /audit                          -- audit trail with filter and paging
  GET  /settings                       -- account settings
  POST /settings/totp                  -- enroll the current operator in TOTP

Backend failures on a page action re-render that page with the backend's
message. UnauthorizedError is left to the app-level handler, which redirects
to /login?expired=1.
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from api.limiter import limiter, login_rate_limit
from auth.dependencies import require_session, safe_next
from auth.flow import LoginFlow
from auth.models import LoginState
from auth.session import SessionStore
from core.audit import action_category, action_tone, filter_events
from core.dashboard import load_dashboard
from core.errors import ConsoleError, LoginStateError, UnauthorizedError
from core.gateway import ApiClient
from vault.visibility import SecretVisibilityCache

logger = logging.getLogger("iamconsole.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


def _current_principal(request: Request):
    return request.app.state.session.principal


# layout.html calls this to render the operator's name and the logout button.
templates.env.globals["current_principal"] = _current_principal
templates.env.filters["action_category"] = action_category
templates.env.filters["action_tone"] = action_tone
router = APIRouter()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# Whitelist mapping for ?error= query params on /login.
# The raw query param is never passed to templates -- only the message from
# this dict is.
_ERROR_MESSAGES: dict[str, str] = {
    "rate_limited": "Too many login attempts. Wait a minute and try again.",
}

_EXPIRED_MESSAGE = "Your session has expired. Log in again."


def _login_redirect(next_url: Optional[str]) -> RedirectResponse:
    target = safe_next(next_url)
    if target == "/":
        return RedirectResponse("/login", status_code=302)
    return RedirectResponse(f"/login?next={quote(target, safe='/')}", status_code=302)


def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> HTMLResponse:
    """Render the password form, or the TOTP form while a second factor is pending."""
    session: SessionStore = request.app.state.session
    if session.principal is not None:
        return RedirectResponse("/", status_code=302)

    flow: LoginFlow = request.app.state.login_flow
    params = request.query_params
    error_msg = _ERROR_MESSAGES.get(params.get("error", ""))
    if error_msg is None and flow.state is LoginState.FAILED:
        error_msg = flow.failure_reason
    if error_msg is None and params.get("expired"):
        error_msg = _EXPIRED_MESSAGE

    return _no_store(
        templates.TemplateResponse(
            request,
            "login.html",
            {
                "state": flow.state.value,
                "pending_username": flow.pending_username,
                "in_flight": flow.in_flight,
                "error_msg": error_msg,
                "next": safe_next(params.get("next")),
            },
        )
    )


@limiter.limit(login_rate_limit)
@router.post("/login", response_class=HTMLResponse)
async def login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
) -> RedirectResponse:
    """Handle the username/password form."""
    flow: LoginFlow = request.app.state.login_flow
    next_url = request.query_params.get("next")
    state = await flow.submit(username, password)
    if state is LoginState.AUTHENTICATED:
        return _no_store(RedirectResponse(safe_next(next_url), status_code=302))
    return _no_store(_login_redirect(next_url))


@limiter.limit(login_rate_limit)
@router.post("/login/totp", response_class=HTMLResponse)
async def login_totp_post(request: Request, code: str = Form(...)) -> RedirectResponse:
    """Handle the TOTP form. Outside the TOTP step this just goes back to /login."""
    flow: LoginFlow = request.app.state.login_flow
    next_url = request.query_params.get("next")
    try:
        state = await flow.submit_totp(code)
    except LoginStateError:
        return _login_redirect(next_url)
    if state is LoginState.AUTHENTICATED:
        return _no_store(RedirectResponse(safe_next(next_url), status_code=302))
    return _no_store(_login_redirect(next_url))


@router.post("/login/cancel")
def login_cancel(request: Request) -> RedirectResponse:
    request.app.state.login_flow.cancel()
    return RedirectResponse("/login", status_code=302)


@router.post("/logout")
def logout(request: Request) -> RedirectResponse:
    """Clear the session (memory and disk) and return to the login page."""
    request.app.state.session.clear()
    request.app.state.login_flow.cancel()
    return RedirectResponse("/login", status_code=302)


# ---------------------------------------------------------------------------
# GET / -- dashboard
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
async def dashboard(request: Request) -> HTMLResponse:
    if redirect := require_session(request):
        return redirect
    settings = request.app.state.settings
    stats = None
    error_msg = None
    try:
        stats = await load_dashboard(
            request.app.state.client,
            policy=settings.dashboard_policy,
            audit_limit=settings.dashboard_audit_limit,
        )
    except UnauthorizedError:
        raise
    except ConsoleError as e:
        logger.warning("Dashboard unavailable: %s", e.message)
        error_msg = f"Dashboard unavailable: {e.message}"
    return templates.TemplateResponse(request, "dashboard.html", {"stats": stats, "error_msg": error_msg})


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _render_users(request: Request, error_msg: Optional[str] = None, status_code: int = 200) -> HTMLResponse:
    client: ApiClient = request.app.state.client
    users = []
    try:
        users = client.list_users()
    except UnauthorizedError:
        raise
    except ConsoleError as e:
        error_msg = error_msg or f"Failed to load users: {e.message}"
    return templates.TemplateResponse(
        request,
        "users.html",
        {"users": users, "error_msg": error_msg},
        status_code=status_code,
    )


@router.get("/users", response_class=HTMLResponse)
def users_page(request: Request) -> HTMLResponse:
    if redirect := require_session(request):
        return redirect
    return _render_users(request)


@router.post("/users/register", response_class=HTMLResponse)
def users_register(
    request: Request,
    username: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
) -> HTMLResponse:
    if redirect := require_session(request):
        return redirect
    client: ApiClient = request.app.state.client
    try:
        client.register(username.strip(), email.strip(), password)
    except ConsoleError as e:
        return _render_users(request, error_msg=e.message, status_code=400)
    return RedirectResponse("/users", status_code=302)


@router.post("/users/{user_id}/active", response_class=HTMLResponse)
def users_set_active(request: Request, user_id: str, is_active: bool = Form(...)) -> HTMLResponse:
    if redirect := require_session(request):
        return redirect
    client: ApiClient = request.app.state.client
    try:
        client.update_user(user_id, {"is_active": is_active})
    except UnauthorizedError:
        raise
    except ConsoleError as e:
        return _render_users(request, error_msg=e.message, status_code=400)
    return RedirectResponse("/users", status_code=302)


@router.post("/users/{user_id}/roles", response_class=HTMLResponse)
def users_assign_role(request: Request, user_id: str, role_id: str = Form(...)) -> HTMLResponse:
    if redirect := require_session(request):
        return redirect
    client: ApiClient = request.app.state.client
    try:
        client.assign_role(user_id, role_id.strip())
    except UnauthorizedError:
        raise
    except ConsoleError as e:
        return _render_users(request, error_msg=e.message, status_code=400)
    return RedirectResponse("/users", status_code=302)


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


async def _render_secrets(request: Request, error_msg: Optional[str] = None, status_code: int = 200) -> HTMLResponse:
    vault: SecretVisibilityCache = request.app.state.vault
    try:
        await vault.refresh()
    except UnauthorizedError:
        raise
    except ConsoleError as e:
        error_msg = error_msg or f"Failed to load secrets: {e.message}"
    rows = [
        {"secret": s, "visible": vault.is_visible(s.id), "value": vault.value(s.id)}
        for s in vault.summaries
    ]
    return _no_store(
        templates.TemplateResponse(
            request,
            "secrets.html",
            {"rows": rows, "error_msg": error_msg},
            status_code=status_code,
        )
    )


@router.get("/secrets", response_class=HTMLResponse)
async def secrets_page(request: Request) -> HTMLResponse:
    if redirect := require_session(request):
        return redirect
    return await _render_secrets(request)


@router.post("/secrets", response_class=HTMLResponse)
async def secrets_create(
    request: Request,
    name: str = Form(...),
    data: str = Form(...),
    description: str = Form(""),
) -> HTMLResponse:
    if redirect := require_session(request):
        return redirect
    vault: SecretVisibilityCache = request.app.state.vault
    try:
        await vault.create(name.strip(), description.strip(), data)
    except UnauthorizedError:
        raise
    except ConsoleError as e:
        return await _render_secrets(request, error_msg=e.message, status_code=400)
    return RedirectResponse("/secrets", status_code=302)


@router.post("/secrets/{secret_id}/reveal", response_class=HTMLResponse)
async def secrets_reveal(request: Request, secret_id: str) -> HTMLResponse:
    if redirect := require_session(request):
        return redirect
    vault: SecretVisibilityCache = request.app.state.vault
    try:
        await vault.reveal(secret_id)
    except UnauthorizedError:
        raise
    except ConsoleError as e:
        return await _render_secrets(request, error_msg=f"Failed to decrypt secret: {e.message}", status_code=400)
    return RedirectResponse("/secrets", status_code=302)


@router.post("/secrets/{secret_id}/hide", response_class=HTMLResponse)
def secrets_hide(request: Request, secret_id: str) -> RedirectResponse:
    if redirect := require_session(request):
        return redirect
    request.app.state.vault.hide(secret_id)
    return RedirectResponse("/secrets", status_code=302)


@router.post("/secrets/{secret_id}/delete", response_class=HTMLResponse)
async def secrets_delete(request: Request, secret_id: str) -> HTMLResponse:
    if redirect := require_session(request):
        return redirect
    vault: SecretVisibilityCache = request.app.state.vault
    try:
        await vault.delete(secret_id)
    except UnauthorizedError:
        raise
    except ConsoleError as e:
        return await _render_secrets(request, error_msg=e.message, status_code=400)
    return RedirectResponse("/secrets", status_code=302)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@router.get("/audit", response_class=HTMLResponse)
def audit_page(request: Request, q: str = "", page: int = 1) -> HTMLResponse:
    if redirect := require_session(request):
        return redirect
    client: ApiClient = request.app.state.client
    page_size = request.app.state.settings.audit_page_size
    page = max(1, page)
    events = []
    error_msg = None
    try:
        events = client.list_audit(limit=page_size, offset=(page - 1) * page_size)
    except UnauthorizedError:
        raise
    except ConsoleError as e:
        error_msg = f"Failed to load audit logs: {e.message}"
    return templates.TemplateResponse(
        request,
        "audit.html",
        {
            "events": filter_events(events, q),
            "q": q,
            "page": page,
            # A full page means there may be more.
            "has_next": len(events) == page_size,
            "error_msg": error_msg,
        },
    )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@router.get("/settings", response_class=HTMLResponse)
def settings_page(request: Request) -> HTMLResponse:
    if redirect := require_session(request):
        return redirect
    return templates.TemplateResponse(request, "settings.html", {"enrollment": None, "error_msg": None})


@router.post("/settings/totp", response_class=HTMLResponse)
def settings_enable_totp(request: Request) -> HTMLResponse:
    """Enroll the operator in TOTP. The secret is shown once and never stored here."""
    if redirect := require_session(request):
        return redirect
    client: ApiClient = request.app.state.client
    enrollment = None
    error_msg = None
    try:
        enrollment = client.enable_totp()
    except UnauthorizedError:
        raise
    except ConsoleError as e:
        error_msg = f"Failed to enable TOTP: {e.message}"
    return _no_store(
        templates.TemplateResponse(
            request,
            "settings.html",
            {"enrollment": enrollment, "error_msg": error_msg},
            status_code=200 if enrollment else 400,
        )
    )
