"""
api/routes/v1/session.py -- Read-only view of the console session.

GET /api/v1/session is public: the login page polls it to decide between the
password form, the TOTP form and a redirect home. It never returns the token.
"""

from fastapi import APIRouter, Request

from api.models import SessionResponse
from auth.flow import LoginFlow
from auth.session import SessionStore

router = APIRouter()


@router.get("/session", response_model=SessionResponse)
async def get_session(request: Request) -> SessionResponse:
    session: SessionStore = request.app.state.session
    flow: LoginFlow = request.app.state.login_flow
    principal = session.principal
    return SessionResponse(
        authenticated=principal is not None,
        login_state=flow.state,
        username=principal.username if principal else None,
        roles=principal.role_names if principal else [],
        pending_username=flow.pending_username,
    )
