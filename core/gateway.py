"""
gateway.py -- All calls to the backing IAM REST service.

ApiClient translates typed calls into HTTP requests against API_BASE_URL and
maps the JSON answers onto core.models dataclasses. It owns no state beyond
the pooled requests.Session; the bearer token is read from the SessionStore
on every call so a logout or expiry takes effect immediately.

Error normalization:
  - Non-2xx bodies are parsed as {"error": "..."}; an unparsable body yields
    "Unknown error".
  - 401 on a protected call clears the session store, then raises
    UnauthorizedError. The login endpoint is the exception: a 401 there means
    bad credentials (AuthenticationFailedError / TotpInvalidError) and must
    not end an unrelated session.
  - Transport failures (DNS, refused, timeout) raise NetworkOrServerError.

All methods are blocking. Async callers run them with asyncio.to_thread().
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

import requests

from core.errors import (
    AuthenticationFailedError,
    NetworkOrServerError,
    TotpInvalidError,
    UnauthorizedError,
)
from core.models import AuditEvent, LoginResult, Principal, Role, SecretSummary, SecretValue, TotpEnrollment

if TYPE_CHECKING:
    from auth.session import SessionStore

logger = logging.getLogger("iamconsole.gateway")

UNKNOWN_ERROR = "Unknown error"

# The backend emits up to nine fractional digits; fromisoformat accepts at
# most six.
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


# ---------------------------------------------------------------------------
# Payload mapping
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp into an aware UTC datetime. None if unparsable."""
    if not value or not isinstance(value, str):
        return None
    text = _FRACTION_RE.sub(r".\1", value.strip())
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def principal_from_payload(data: dict[str, Any]) -> Principal:
    roles = [
        Role(id=str(r.get("id", "")), name=r.get("name", ""), description=r.get("description", ""))
        for r in (data.get("roles") or [])
    ]
    return Principal(
        id=str(data.get("id", "")),
        username=data.get("username", ""),
        email=data.get("email", ""),
        is_active=bool(data.get("is_active", True)),
        roles=roles,
        created_at=parse_timestamp(data.get("created_at")),
        updated_at=parse_timestamp(data.get("updated_at")),
    )


def secret_from_payload(data: dict[str, Any]) -> SecretSummary:
    return SecretSummary(
        id=str(data.get("id", "")),
        name=data.get("name", ""),
        description=data.get("description", ""),
        created_by=str(data.get("created_by", "")),
        created_by_username=data.get("created_by_username", ""),
        created_at=parse_timestamp(data.get("created_at")),
        updated_at=parse_timestamp(data.get("updated_at")),
    )


def audit_event_from_payload(data: dict[str, Any]) -> AuditEvent:
    details = data.get("details")
    return AuditEvent(
        id=str(data.get("id", "")),
        action=data.get("action", ""),
        resource=data.get("resource", ""),
        username=data.get("username") or "",
        user_id=_str_or_none(data.get("user_id")),
        resource_id=_str_or_none(data.get("resource_id")),
        details=details if isinstance(details, dict) else {},
        ip_address=data.get("ip_address", ""),
        user_agent=data.get("user_agent", ""),
        created_at=parse_timestamp(data.get("created_at")),
    )


def error_message(resp: requests.Response) -> str:
    """Extract {"error": "..."} from a failed response, else a generic message."""
    try:
        body = resp.json()
    except ValueError:
        return UNKNOWN_ERROR
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, str) and err:
            return err
        # Structured envelopes ({"error": {"message": ...}}) from proxies
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
    return f"HTTP {resp.status_code}" if body else UNKNOWN_ERROR


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ApiClient:
    """Blocking client for the IAM backend.

    Usage:
        client = ApiClient("http://localhost:5000/api/v1", session)
        result = client.login("alice", "pw")
        secrets = client.list_secrets()
        client.close()
    """

    def __init__(
        self,
        base_url: str,
        session: SessionStore,
        timeout: float = 10.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session
        self.timeout = timeout
        # max_redirects=3 replaces the requests default of 30; the backend is
        # a known API and a redirect chain would re-send the bearer header.
        self._http = http or requests.Session()
        self._http.max_redirects = 3

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> requests.Response:
        headers = {"Content-Type": "application/json"}
        if authenticated:
            headers.update(self.session.authorization_header())
        try:
            return self._http.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("%s %s failed: %s", method, path, e)
            raise NetworkOrServerError(f"Could not reach the IAM service: {e}") from e

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send an authenticated request and return the decoded JSON body."""
        resp = self._send(method, path, **kwargs)
        if resp.status_code == 401:
            message = error_message(resp)
            logger.warning("%s %s returned 401 (%s); clearing session", method, path, message)
            self.session.clear()
            raise UnauthorizedError(message, status=401)
        if not resp.ok:
            message = error_message(resp)
            logger.warning("%s %s returned %d: %s", method, path, resp.status_code, message)
            raise NetworkOrServerError(message, status=resp.status_code)
        return self._decode(resp)

    @staticmethod
    def _decode(resp: requests.Response) -> Any:
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise NetworkOrServerError("Malformed response from the IAM service.", status=resp.status_code) from e

    @staticmethod
    def _object(data: Any, status: Optional[int] = None) -> dict[str, Any]:
        """An empty body decodes to {}; any other non-object is malformed."""
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise NetworkOrServerError("Malformed response from the IAM service.", status=status)
        return data

    # ------------------------------------------------------------------
    # /auth, /totp
    # ------------------------------------------------------------------

    def login(self, username: str, password: str, totp_code: Optional[str] = None) -> LoginResult:
        """POST /auth/login. Never sends the current bearer token.

        Returns LoginResult(requires_totp=True) when the password was accepted
        but a second factor is needed. Raises AuthenticationFailedError (or
        TotpInvalidError when a code was supplied) on rejection.
        """
        body: dict[str, Any] = {"username": username, "password": password}
        if totp_code:
            body["totp_code"] = totp_code
        resp = self._send("POST", "/auth/login", json=body, authenticated=False)

        if resp.status_code in (401, 403, 429):
            message = error_message(resp)
            if totp_code and resp.status_code == 401:
                raise TotpInvalidError(message, status=401)
            raise AuthenticationFailedError(message, status=resp.status_code)
        if not resp.ok:
            raise NetworkOrServerError(error_message(resp), status=resp.status_code)

        data = self._object(self._decode(resp), resp.status_code)
        if data.get("requires_totp"):
            return LoginResult(requires_totp=True)
        token = data.get("token")
        user = data.get("user")
        if not token or not isinstance(user, dict):
            raise NetworkOrServerError("Login response did not include a token.", status=resp.status_code)
        return LoginResult(token=token, principal=principal_from_payload(user))

    def register(self, username: str, email: str, password: str) -> str:
        """POST /auth/register. Returns the new user id."""
        resp = self._send(
            "POST",
            "/auth/register",
            json={"username": username, "email": email, "password": password},
            authenticated=False,
        )
        if not resp.ok:
            raise NetworkOrServerError(error_message(resp), status=resp.status_code)
        data = self._object(self._decode(resp), resp.status_code)
        return str(data.get("user_id", ""))

    def enable_totp(self) -> TotpEnrollment:
        data = self._object(self._request("POST", "/totp/enable"))
        return TotpEnrollment(secret=data.get("secret", ""), qr_url=data.get("qr_url", ""))

    # ------------------------------------------------------------------
    # /users
    # ------------------------------------------------------------------

    def list_users(self) -> list[Principal]:
        return [principal_from_payload(u) for u in (self._request("GET", "/users") or [])]

    def get_user(self, user_id: str) -> Principal:
        data = self._request("GET", f"/users/{user_id}")
        if not isinstance(data, dict):
            raise NetworkOrServerError("User not found.", status=404)
        return principal_from_payload(data)

    def update_user(self, user_id: str, updates: dict[str, Any]) -> None:
        self._request("PUT", f"/users/{user_id}", json=updates)

    def assign_role(self, user_id: str, role_id: str) -> None:
        self._request("POST", f"/users/{user_id}/roles", json={"role_id": role_id})

    # ------------------------------------------------------------------
    # /secrets
    # ------------------------------------------------------------------

    def list_secrets(self) -> list[SecretSummary]:
        return [secret_from_payload(s) for s in (self._request("GET", "/secrets") or [])]

    def get_secret(self, secret_id: str) -> SecretValue:
        """GET /secrets/{id} -- the backend decrypts and returns the payload."""
        data = self._request("GET", f"/secrets/{secret_id}")
        if not isinstance(data, dict) or "data" not in data:
            raise NetworkOrServerError("Secret payload missing from response.")
        return SecretValue(secret_id=str(secret_id), data=str(data["data"]))

    def create_secret(self, name: str, description: str, data: str) -> str:
        body = self._request("POST", "/secrets", json={"name": name, "description": description, "data": data})
        if isinstance(body, dict):
            return str(body.get("id", ""))
        return ""

    def delete_secret(self, secret_id: str) -> None:
        self._request("DELETE", f"/secrets/{secret_id}")

    # ------------------------------------------------------------------
    # /audit
    # ------------------------------------------------------------------

    def list_audit(self, limit: int = 100, offset: int = 0) -> list[AuditEvent]:
        rows = self._request("GET", "/audit", params={"limit": limit, "offset": offset}) or []
        return [audit_event_from_payload(r) for r in rows]


