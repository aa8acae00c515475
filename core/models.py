from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Substring of the audit action recorded for a successful login. The backend
# emits "auth.login.success"; matching on the suffix keeps the dashboard
# working if the prefix changes.
LOGIN_SUCCESS_ACTION = "login.success"
LOGIN_FAILED_ACTION = "login.failed"


@dataclass
class Role:
    id: str
    name: str
    description: str = ""


@dataclass
class Principal:
    """An identity known to the backend: the logged-in operator or a user row."""

    id: str
    username: str
    email: str = ""
    is_active: bool = True
    roles: list[Role] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def role_names(self) -> list[str]:
        return [r.name for r in self.roles]


@dataclass
class SecretSummary:
    """Vault entry metadata. Never carries the decrypted payload."""

    id: str
    name: str
    description: str = ""
    created_by: str = ""
    created_by_username: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class SecretValue:
    secret_id: str
    data: str = field(repr=False)  # plaintext -- kept out of reprs and logs


@dataclass
class AuditEvent:
    id: str
    action: str
    resource: str
    username: str = ""
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)  # opaque, action-dependent
    ip_address: str = ""
    user_agent: str = ""
    created_at: Optional[datetime] = None


@dataclass
class TotpEnrollment:
    secret: str = field(repr=False)
    qr_url: str = field(repr=False)


@dataclass
class LoginResult:
    """Outcome of POST /auth/login that is not an error.

    requires_totp=True is a flow continuation signal, not a failure: the
    password was accepted but no token was issued yet.
    """

    requires_totp: bool = False
    token: Optional[str] = field(default=None, repr=False)
    principal: Optional[Principal] = None


@dataclass
class DashboardStats:
    total_users: int = 0
    total_secrets: int = 0
    recent_logins: int = 0  # login.success events in the trailing 24 hours
    total_audit_logs: int = 0
    recent_activity: list[AuditEvent] = field(default_factory=list)
    degraded_sources: list[str] = field(default_factory=list)  # slices that failed to load
