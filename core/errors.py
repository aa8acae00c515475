"""
core/errors.py -- Exception taxonomy for the IAM console.

Every failure the console can surface derives from ConsoleError, so the web
layer and the CLI can catch one base class at their edges. Messages are
user-facing: they are shown verbatim in notifications and never contain
tokens, passwords or secret values.

Not an exception: the "TOTP required" step. The login call reports it as a
normal LoginResult(requires_totp=True) because it continues the flow.
"""

from typing import Optional


class ConsoleError(Exception):
    """Base class for all console failures."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class AuthenticationFailedError(ConsoleError):
    """Login rejected: bad credentials, inactive account, or rate limited."""


class TotpInvalidError(AuthenticationFailedError):
    """The second-factor code was rejected."""


class UnauthorizedError(ConsoleError):
    """A protected call failed authentication (token missing or expired).

    Raised by the gateway after it has already cleared the session store.
    """


class NotVisibleError(ConsoleError):
    """copy() was attempted on a secret that is not currently revealed."""


class NetworkOrServerError(ConsoleError):
    """Any other collaborator failure; the message is surfaced as-is."""


class LoginStateError(ConsoleError):
    """The requested login step is not valid in the current state."""
