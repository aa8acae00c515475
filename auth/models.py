"""
auth/models.py -- Login flow states and the transient login attempt.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in core/models.py -- dataclasses own domain shape; the flow does the work.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class LoginState(str, Enum):
    ANONYMOUS = "anonymous"
    PASSWORD_SUBMITTED = "password_submitted"
    TOTP_REQUIRED = "totp_required"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass
class LoginAttempt:
    """Credentials for one login attempt.

    Never persisted. Held by LoginFlow only while a second factor is pending
    (so the TOTP step can re-submit username + password + code together) and
    dropped as soon as the attempt resolves. repr=False keeps the password
    and code out of tracebacks and log lines.
    """

    username: str
    password: str = field(repr=False)
    totp_code: str | None = field(default=None, repr=False)
