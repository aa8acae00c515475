"""
auth/dependencies.py -- Route protection for console views.

RouteGuard is a pure predicate over the SessionStore: a navigation to a
protected view proceeds only when a principal is present; otherwise the
operator is sent to /login. The decision is never cached -- logout, a 401
from an unrelated call, or a failed session resume can empty the store
between two navigations.

FastAPI integration:
  require_session()       -- HTML views: returns a RedirectResponse or None.
      if redirect := require_session(request):
          return redirect
  get_current_principal() -- JSON endpoints: raises HTTP 401 when denied.
      @router.get("/protected")
      async def route(principal: Principal = Depends(get_current_principal)): ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional
from urllib.parse import quote

from fastapi import HTTPException, Request
from fastapi.responses import RedirectResponse

from core.models import Principal

if TYPE_CHECKING:
    from auth.session import SessionStore

LOGIN_PATH = "/login"


def safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths.

    Rejects absolute URLs and protocol-relative ones ("//attacker.com"),
    both of which would send the operator off-site after login.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return "/"


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    redirect_to: Optional[str] = None


class RouteGuard:
    def __init__(self, session: SessionStore) -> None:
        self._session = session

    def check(self, path: str = "/") -> GuardDecision:
        """Allow when a principal is present, else redirect to the login page."""
        if self._session.principal is not None:
            return GuardDecision(allowed=True)
        target = safe_next(path)
        if target == "/":
            return GuardDecision(allowed=False, redirect_to=LOGIN_PATH)
        return GuardDecision(allowed=False, redirect_to=f"{LOGIN_PATH}?next={quote(target, safe='/')}")


def require_session(request: Request) -> Optional[RedirectResponse]:
    """Return a redirect to /login if the console has no session, None if OK."""
    # Only a GET can be replayed after login; form posts return to the dashboard.
    path = request.url.path if request.method == "GET" else "/"
    decision = RouteGuard(request.app.state.session).check(path)
    if decision.allowed:
        return None
    return RedirectResponse(decision.redirect_to, status_code=302)


def get_current_principal(request: Request) -> Principal:
    """Require a session. Raises HTTP 401 if the console is not authenticated."""
    principal = request.app.state.session.principal
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal
