"""
API request and response models for the console's JSON endpoints.

These Pydantic v2 models define the HTTP transport contract between the
console pages (and any script driving them) and the console server. They are
intentionally separate from the dataclasses in core/models.py, which own the
internal domain representation. Route handlers map between the two.

Separation of concerns: core/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import LoginState
from core.models import AuditEvent, DashboardStats

# ---------------------------------------------------------------------------
# Shared / error
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    backend: str


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class SessionResponse(BaseModel):
    """Response for GET /api/v1/session.

    Never includes the token itself -- only whether one is held.
    """

    model_config = ConfigDict(frozen=True)

    authenticated: bool
    login_state: LoginState
    username: Optional[str] = None
    roles: list[str] = Field(default_factory=list)
    pending_username: Optional[str] = None


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------


class VisibilityResponse(BaseModel):
    """Response for POST /api/v1/secrets/{id}/reveal and /hide.

    data is present only while the secret is visible.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    visible: bool
    data: Optional[str] = None


class CopyResponse(BaseModel):
    """Response for POST /api/v1/secrets/{id}/copy -- the page writes data to the clipboard."""

    model_config = ConfigDict(frozen=True)

    id: str
    data: str


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    action: str
    resource: str
    username: str
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    ip_address: str = ""
    user_agent: str = ""
    created_at: Optional[datetime] = None

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id,
            action=event.action,
            resource=event.resource,
            username=event.username,
            user_id=event.user_id,
            resource_id=event.resource_id,
            details=event.details,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            created_at=event.created_at,
        )


class DashboardResponse(BaseModel):
    """Response for GET /api/v1/dashboard."""

    model_config = ConfigDict(frozen=True)

    total_users: int
    total_secrets: int
    recent_logins: int
    total_audit_logs: int
    recent_activity: list[AuditEventResponse]
    degraded_sources: list[str] = Field(default_factory=list)

    @classmethod
    def from_stats(cls, stats: DashboardStats) -> "DashboardResponse":
        return cls(
            total_users=stats.total_users,
            total_secrets=stats.total_secrets,
            recent_logins=stats.recent_logins,
            total_audit_logs=stats.total_audit_logs,
            recent_activity=[AuditEventResponse.from_event(e) for e in stats.recent_activity],
            degraded_sources=stats.degraded_sources,
        )
