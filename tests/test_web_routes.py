"""
tests/test_web_routes.py -- Integration tests for the HTML console routes.

These run through the real ASGI stack (TrustedHost, SlowAPI, exception
handlers) using the web_client fixture (follow_redirects=False). We assert
on redirect Location headers directly -- following the redirect would hide
them.

Coverage:
  - Unauthenticated requests -> 302 /login (with next= for deep links)
  - Password login, TOTP step-up, cancel and logout
  - next= is always a relative path (open-redirect prevention)
  - A 401 from the backend mid-page -> 302 /login?expired=1, session cleared
  - Dashboard, users, secrets (reveal/hide/delete), audit and settings pages
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from api.limiter import limiter
from conftest import make_jwt, make_principal
from core.config import get_settings
from core.errors import AuthenticationFailedError, NetworkOrServerError, UnauthorizedError
from core.models import AuditEvent, LoginResult, SecretSummary, SecretValue, TotpEnrollment


@pytest.fixture
def logged_in(console):
    console.session.set(make_jwt(), make_principal())
    return console


def _success() -> LoginResult:
    return LoginResult(token=make_jwt(), principal=make_principal())


class TestAuthRedirectChain:
    @pytest.mark.parametrize("path", ["/", "/users", "/secrets", "/audit", "/settings"])
    def test_protected_pages_redirect(self, web_client, path):
        resp = web_client.get(path)
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("/login")

    def test_deep_link_keeps_next(self, web_client):
        resp = web_client.get("/secrets")
        assert resp.headers["location"] == "/login?next=/secrets"

    def test_dashboard_redirect_has_no_next(self, web_client):
        assert web_client.get("/").headers["location"] == "/login"

    def test_form_post_without_session_does_not_act(self, web_client, console):
        resp = web_client.post("/secrets/s1/delete")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"
        console.client.delete_secret.assert_not_called()

    def test_authenticated_request_passes(self, web_client, logged_in):
        resp = web_client.get("/settings")
        assert resp.status_code == 200
        assert "alice" in resp.text

    def test_backend_401_redirects_with_expired_flag(self, web_client, logged_in):
        def expired():
            logged_in.session.clear()
            raise UnauthorizedError("Invalid or expired token", status=401)

        logged_in.client.list_users.side_effect = expired
        resp = web_client.get("/users")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?expired=1"
        assert logged_in.session.principal is None

        page = web_client.get("/login?expired=1")
        assert "session has expired" in page.text


class TestLogin:
    def test_login_page_renders(self, web_client):
        resp = web_client.get("/login")
        assert resp.status_code == 200
        assert 'name="password"' in resp.text
        assert resp.headers["cache-control"] == "no-store"

    def test_login_page_when_authenticated_goes_home(self, web_client, logged_in):
        resp = web_client.get("/login")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"

    def test_password_login(self, web_client, console):
        console.client.login.return_value = _success()
        resp = web_client.post("/login", data={"username": "alice", "password": "pw"})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert console.session.principal.username == "alice"

    def test_login_honours_relative_next(self, web_client, console):
        console.client.login.return_value = _success()
        resp = web_client.post("/login?next=/audit", data={"username": "alice", "password": "pw"})
        assert resp.headers["location"] == "/audit"

    @pytest.mark.parametrize("evil", ["//evil.example.com", "https://evil.example.com"])
    def test_login_rejects_offsite_next(self, web_client, console, evil):
        console.client.login.return_value = _success()
        resp = web_client.post("/login", params={"next": evil}, data={"username": "alice", "password": "pw"})
        assert resp.headers["location"] == "/"

    def test_bad_credentials_show_backend_message(self, web_client, console):
        console.client.login.side_effect = AuthenticationFailedError("Invalid credentials", status=401)
        resp = web_client.post("/login", data={"username": "alice", "password": "nope"})
        assert resp.headers["location"] == "/login"
        page = web_client.get("/login")
        assert "Invalid credentials" in page.text
        assert console.session.principal is None

    def test_totp_step_up(self, web_client, console):
        console.client.login.side_effect = [LoginResult(requires_totp=True), _success()]
        resp = web_client.post("/login", data={"username": "alice", "password": "pw"})
        assert resp.headers["location"] == "/login"

        page = web_client.get("/login")
        assert 'name="code"' in page.text
        assert "alice" in page.text

        resp = web_client.post("/login/totp", data={"code": "123456"})
        assert resp.headers["location"] == "/"
        assert console.session.is_authenticated
        assert console.client.login.call_args.args == ("alice", "pw", "123456")

    def test_wrong_totp_code_returns_to_password_form(self, web_client, console):
        console.client.login.side_effect = [
            LoginResult(requires_totp=True),
            AuthenticationFailedError("Invalid TOTP code", status=401),
        ]
        web_client.post("/login", data={"username": "alice", "password": "pw"})
        web_client.post("/login/totp", data={"code": "000000"})
        page = web_client.get("/login")
        assert 'name="password"' in page.text
        assert "Invalid TOTP code" in page.text
        assert not console.session.is_authenticated

    def test_totp_without_pending_login(self, web_client, console):
        resp = web_client.post("/login/totp", data={"code": "123456"})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login"
        console.client.login.assert_not_called()

    def test_cancel_pending_totp(self, web_client, console):
        console.client.login.return_value = LoginResult(requires_totp=True)
        web_client.post("/login", data={"username": "alice", "password": "pw"})
        web_client.post("/login/cancel")
        page = web_client.get("/login")
        assert 'name="password"' in page.text

    def test_logout_clears_session(self, web_client, logged_in):
        resp = web_client.post("/logout")
        assert resp.headers["location"] == "/login"
        assert logged_in.session.principal is None
        assert logged_in.token_store.load() is None
        assert web_client.get("/").status_code == 302

    def test_login_is_rate_limited(self, web_client, console, monkeypatch):
        monkeypatch.setenv("LOGIN_RATE_LIMIT", "2/minute")
        get_settings.cache_clear()
        limiter.reset()
        limiter.enabled = True
        console.client.login.side_effect = AuthenticationFailedError("Invalid credentials", status=401)
        try:
            locations = [
                web_client.post("/login", data={"username": "alice", "password": "guess"}).headers["location"]
                for _ in range(3)
            ]
        finally:
            get_settings.cache_clear()
        assert locations[-1] == "/login?error=rate_limited"
        assert console.client.login.call_count == 2

    def test_rate_limit_message_is_whitelisted(self, web_client):
        page = web_client.get("/login?error=<script>alert(1)</script>")
        assert "<script>alert(1)</script>" not in page.text
        page = web_client.get("/login?error=rate_limited")
        assert "Too many login attempts" in page.text


class TestDashboard:
    def test_renders_stats(self, web_client, logged_in):
        logged_in.client.list_users.return_value = [make_principal(), make_principal("bob", user_id="u-2")]
        logged_in.client.list_audit.return_value = [
            AuditEvent(id="a1", action="login.success", resource="auth", username="bob", created_at=datetime.now(timezone.utc))
        ]
        resp = web_client.get("/")
        assert resp.status_code == 200
        assert "Logins (24h)" in resp.text
        assert "login.success" in resp.text

    def test_degraded_slice_is_flagged(self, web_client, logged_in):
        logged_in.client.list_secrets.side_effect = NetworkOrServerError("Failed to fetch secrets", status=500)
        resp = web_client.get("/")
        assert resp.status_code == 200
        assert "Some data could not be loaded: secrets" in resp.text


class TestUsers:
    def test_lists_users(self, web_client, logged_in):
        logged_in.client.list_users.return_value = [make_principal("carol", user_id="u-3")]
        resp = web_client.get("/users")
        assert resp.status_code == 200
        assert "carol@example.com" in resp.text

    def test_register(self, web_client, logged_in):
        logged_in.client.register.return_value = "u-9"
        resp = web_client.post("/users/register", data={"username": " dave ", "email": "dave@example.com", "password": "pw"})
        assert resp.headers["location"] == "/users"
        logged_in.client.register.assert_called_once_with("dave", "dave@example.com", "pw")

    def test_register_conflict_shows_backend_message(self, web_client, logged_in):
        logged_in.client.register.side_effect = NetworkOrServerError("Username or email already exists", status=409)
        resp = web_client.post("/users/register", data={"username": "alice", "email": "a@example.com", "password": "pw"})
        assert resp.status_code == 400
        assert "Username or email already exists" in resp.text

    def test_deactivate(self, web_client, logged_in):
        resp = web_client.post("/users/u-2/active", data={"is_active": "false"})
        assert resp.headers["location"] == "/users"
        logged_in.client.update_user.assert_called_once_with("u-2", {"is_active": False})

    def test_assign_role(self, web_client, logged_in):
        resp = web_client.post("/users/u-2/roles", data={"role_id": "r-1"})
        assert resp.headers["location"] == "/users"
        logged_in.client.assign_role.assert_called_once_with("u-2", "r-1")


class TestSecrets:
    @pytest.fixture
    def vault_backend(self, logged_in):
        logged_in.client.list_secrets.return_value = [SecretSummary(id="s1", name="db-password")]
        logged_in.client.get_secret.return_value = SecretValue(secret_id="s1", data="hunter2")
        return logged_in

    def test_listing_hides_values(self, web_client, vault_backend):
        resp = web_client.get("/secrets")
        assert resp.status_code == 200
        assert "db-password" in resp.text
        assert "hunter2" not in resp.text
        assert resp.headers["cache-control"] == "no-store"

    def test_reveal_then_hide(self, web_client, vault_backend):
        resp = web_client.post("/secrets/s1/reveal")
        assert resp.headers["location"] == "/secrets"
        assert "hunter2" in web_client.get("/secrets").text

        web_client.post("/secrets/s1/hide")
        assert "hunter2" not in web_client.get("/secrets").text

    def test_reveal_failure_is_shown(self, web_client, vault_backend):
        vault_backend.client.get_secret.side_effect = NetworkOrServerError("Failed to decrypt secret", status=500)
        resp = web_client.post("/secrets/s1/reveal")
        assert resp.status_code == 400
        assert "Failed to decrypt secret" in resp.text

    def test_expiry_during_reveal_redirects_to_login(self, web_client, vault_backend):
        def expired(secret_id):
            vault_backend.session.clear()
            raise UnauthorizedError("Invalid or expired token", status=401)

        vault_backend.client.get_secret.side_effect = expired
        resp = web_client.post("/secrets/s1/reveal")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?expired=1"
        assert vault_backend.session.principal is None

    def test_reveal_unknown_secret(self, web_client, vault_backend):
        resp = web_client.post("/secrets/s9/reveal")
        assert resp.status_code == 400
        assert "Secret not found" in resp.text
        vault_backend.client.get_secret.assert_not_called()

    def test_create(self, web_client, vault_backend):
        vault_backend.client.create_secret.return_value = "s2"
        resp = web_client.post("/secrets", data={"name": "api-key", "data": "abc", "description": "prod"})
        assert resp.headers["location"] == "/secrets"
        vault_backend.client.create_secret.assert_called_once_with("api-key", "prod", "abc")

    def test_delete_visible_secret(self, web_client, vault_backend):
        web_client.post("/secrets/s1/reveal")
        vault_backend.client.list_secrets.return_value = []
        resp = web_client.post("/secrets/s1/delete")
        assert resp.headers["location"] == "/secrets"
        vault_backend.client.delete_secret.assert_called_once_with("s1")
        assert not vault_backend.vault.is_visible("s1")

    def test_logout_forgets_revealed_values(self, web_client, vault_backend):
        web_client.post("/secrets/s1/reveal")
        web_client.post("/logout")
        assert vault_backend.vault.value("s1") is None


class TestAudit:
    def test_filter_and_paging(self, web_client, logged_in):
        logged_in.client.list_audit.return_value = [
            AuditEvent(id="a1", action="login.success", resource="auth", username="alice"),
            AuditEvent(id="a2", action="secret.delete", resource="secrets", username="bob"),
        ]
        resp = web_client.get("/audit", params={"q": "secret", "page": 3})
        assert resp.status_code == 200
        assert "secret.delete" in resp.text
        assert "login.success" not in resp.text
        page_size = logged_in.settings.audit_page_size
        logged_in.client.list_audit.assert_called_once_with(limit=page_size, offset=2 * page_size)


class TestSettings:
    def test_enable_totp_shows_secret_once(self, web_client, logged_in):
        logged_in.client.enable_totp.return_value = TotpEnrollment(
            secret="JBSWY3DPEHPK3PXP", qr_url="otpauth://totp/IAM:alice?secret=JBSWY3DPEHPK3PXP"
        )
        resp = web_client.post("/settings/totp")
        assert resp.status_code == 200
        assert "JBSWY3DPEHPK3PXP" in resp.text
        assert resp.headers["cache-control"] == "no-store"
        assert "JBSWY3DPEHPK3PXP" not in web_client.get("/settings").text
