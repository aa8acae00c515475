"""
api/routes/v1/dashboard.py -- Aggregated console statistics as JSON.

Returns the same numbers as the HTML dashboard:
  - total users, total secrets, audit events in the fetched window
  - successful logins in the trailing 24 hours
  - the five most recent audit events
  - degraded_sources when DASHBOARD_POLICY=degrade absorbed a failed fetch

Read-only -- no mutations here.
"""

from fastapi import APIRouter, Depends, Request

from api.models import DashboardResponse
from auth.dependencies import get_current_principal
from core.dashboard import load_dashboard

# Router-level dependency enforces the session; the handler does not repeat it.
router = APIRouter(dependencies=[Depends(get_current_principal)])


@router.get("/dashboard", response_model=DashboardResponse)
async def get_dashboard(request: Request) -> DashboardResponse:
    settings = request.app.state.settings
    stats = await load_dashboard(
        request.app.state.client,
        policy=settings.dashboard_policy,
        audit_limit=settings.dashboard_audit_limit,
    )
    return DashboardResponse.from_stats(stats)
