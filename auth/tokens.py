"""
auth/tokens.py -- Read-only helpers for the opaque session token.

The console never validates tokens: it does not hold the signing key, and
expiry is enforced by the backend (a 401 clears the session lazily). The only
thing read from a token is the user_id claim, used on start to rebuild the
principal for a persisted token (see auth/flow.resume_session).

python-jose's get_unverified_claims() decodes the payload without checking
the signature. The result is a lookup hint, never an authorization decision:
the backend still authenticates the GET /users/{id} that follows.
"""

from __future__ import annotations

import logging

from jose import JWTError, jwt

logger = logging.getLogger("iamconsole.auth")


def read_token_claims(token: str) -> dict | None:
    """Return the token's claims without verification, or None if it is not a JWT."""
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return None
    return claims if isinstance(claims, dict) else None


def token_user_id(token: str) -> str | None:
    """Return the user_id claim (falling back to sub), or None."""
    claims = read_token_claims(token)
    if not claims:
        return None
    user_id = claims.get("user_id") or claims.get("sub")
    return str(user_id) if user_id else None
