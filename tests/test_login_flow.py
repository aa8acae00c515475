"""Tests for auth/flow.py -- the login state machine and session resume.

Covers:
- Correct credentials, no second factor: exactly one session, attempt discarded
- requires_totp: correct code -> session; wrong code -> FAILED, not TOTP_REQUIRED
- submit_totp outside TOTP_REQUIRED raises LoginStateError
- Single flight: a second submit while one is pending is ignored
- cancel() while a call is in flight discards the late response
- resume_session rebuilds the principal from the token's user_id
"""

import asyncio
import threading
from unittest.mock import MagicMock

import pytest

from auth.flow import INVALID_CODE_MESSAGE, LoginFlow, resume_session
from auth.models import LoginState
from conftest import make_jwt, make_principal
from core.errors import (
    AuthenticationFailedError,
    LoginStateError,
    NetworkOrServerError,
    TotpInvalidError,
    UnauthorizedError,
)
from core.gateway import ApiClient
from core.models import LoginResult


@pytest.fixture
def client():
    return MagicMock(spec=ApiClient)


@pytest.fixture
def flow(client, session):
    return LoginFlow(client, session)


def _success(username: str = "alice") -> LoginResult:
    return LoginResult(token=make_jwt(), principal=make_principal(username))


class TestPasswordOnly:
    @pytest.mark.asyncio
    async def test_success_establishes_one_session(self, flow, client, session):
        client.login.return_value = _success()
        sets = []
        session.subscribe(lambda s: sets.append(s.principal))

        state = await flow.submit("alice", "pw")

        assert state is LoginState.AUTHENTICATED
        assert session.principal.username == "alice"
        assert len(sets) == 1
        assert flow.pending_username is None
        client.login.assert_called_once_with("alice", "pw", None)

    @pytest.mark.asyncio
    async def test_username_is_trimmed(self, flow, client):
        client.login.return_value = _success()
        await flow.submit("  alice ", "pw")
        client.login.assert_called_once_with("alice", "pw", None)

    @pytest.mark.asyncio
    async def test_bad_credentials_fail_then_retry(self, flow, client, session):
        client.login.side_effect = AuthenticationFailedError("Invalid credentials", status=401)
        state = await flow.submit("alice", "wrong")
        assert state is LoginState.FAILED
        assert flow.failure_reason == "Invalid credentials"
        assert session.principal is None

        client.login.side_effect = None
        client.login.return_value = _success()
        assert await flow.submit("alice", "right") is LoginState.AUTHENTICATED
        assert flow.failure_reason is None

    @pytest.mark.asyncio
    async def test_network_error_fails_attempt(self, flow, client):
        client.login.side_effect = NetworkOrServerError("Could not reach the IAM service")
        assert await flow.submit("alice", "pw") is LoginState.FAILED
        assert "Could not reach" in flow.failure_reason

    @pytest.mark.asyncio
    async def test_existing_session_short_circuits(self, flow, client, session):
        session.set("tok", make_principal())
        assert flow.state is LoginState.AUTHENTICATED
        assert await flow.submit("bob", "pw") is LoginState.AUTHENTICATED
        client.login.assert_not_called()

    @pytest.mark.asyncio
    async def test_logout_returns_flow_to_anonymous(self, flow, client, session):
        client.login.return_value = _success()
        await flow.submit("alice", "pw")
        session.clear()
        assert flow.state is LoginState.ANONYMOUS


class TestTotp:
    @pytest.mark.asyncio
    async def test_requires_totp_then_correct_code(self, flow, client, session):
        client.login.side_effect = [LoginResult(requires_totp=True), _success()]

        assert await flow.submit("alice", "pw") is LoginState.TOTP_REQUIRED
        assert flow.pending_username == "alice"
        assert session.principal is None

        assert await flow.submit_totp(" 123 456 ") is LoginState.AUTHENTICATED
        assert client.login.call_args.args == ("alice", "pw", "123456")
        assert session.principal.username == "alice"
        assert flow.pending_username is None

    @pytest.mark.asyncio
    async def test_wrong_code_fails(self, flow, client, session):
        client.login.side_effect = [
            LoginResult(requires_totp=True),
            TotpInvalidError("Invalid TOTP code", status=401),
        ]
        await flow.submit("alice", "pw")
        state = await flow.submit_totp("000000")
        assert state is LoginState.FAILED
        assert flow.state is not LoginState.TOTP_REQUIRED
        assert session.principal is None
        assert flow.pending_username is None

    @pytest.mark.asyncio
    async def test_repeated_requires_totp_is_invalid_code(self, flow, client):
        client.login.side_effect = [LoginResult(requires_totp=True), LoginResult(requires_totp=True)]
        await flow.submit("alice", "pw")
        assert await flow.submit_totp("999999") is LoginState.FAILED
        assert flow.failure_reason == INVALID_CODE_MESSAGE

    @pytest.mark.asyncio
    async def test_totp_without_pending_attempt(self, flow, client):
        with pytest.raises(LoginStateError):
            await flow.submit_totp("123456")
        client.login.assert_not_called()

    @pytest.mark.asyncio
    async def test_totp_after_failure_is_rejected(self, flow, client):
        client.login.side_effect = [LoginResult(requires_totp=True), TotpInvalidError("Invalid TOTP code")]
        await flow.submit("alice", "pw")
        await flow.submit_totp("000000")
        with pytest.raises(LoginStateError):
            await flow.submit_totp("111111")

    @pytest.mark.asyncio
    async def test_cancel_drops_pending_credentials(self, flow, client):
        client.login.return_value = LoginResult(requires_totp=True)
        await flow.submit("alice", "pw")
        flow.cancel()
        assert flow.state is LoginState.ANONYMOUS
        assert flow.pending_username is None


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_cancel_discards_in_flight_response(self, flow, client, session):
        gate = threading.Event()

        def slow_login(*args):
            gate.wait(timeout=5)
            return _success()

        client.login.side_effect = slow_login
        task = asyncio.create_task(flow.submit("alice", "pw"))
        while not flow.in_flight:
            await asyncio.sleep(0)

        flow.cancel()
        gate.set()
        await task

        assert session.principal is None
        assert flow.state is LoginState.ANONYMOUS

    @pytest.mark.asyncio
    async def test_second_submit_while_in_flight_is_ignored(self, flow, client, session):
        gate = threading.Event()

        def slow_login(*args):
            gate.wait(timeout=5)
            return _success()

        client.login.side_effect = slow_login
        first = asyncio.create_task(flow.submit("alice", "pw"))
        while not flow.in_flight:
            await asyncio.sleep(0)

        state = await flow.submit("alice", "pw")
        assert state is LoginState.PASSWORD_SUBMITTED

        gate.set()
        assert await first is LoginState.AUTHENTICATED
        assert client.login.call_count == 1


class TestResumeSession:
    @pytest.mark.asyncio
    async def test_rebuilds_principal_from_token(self, client, session, token_store):
        token_store.save(make_jwt("u-7"))
        session.load()
        client.get_user.return_value = make_principal(user_id="u-7")

        assert await resume_session(client, session) is True
        client.get_user.assert_called_once_with("u-7")
        assert session.principal.id == "u-7"

    @pytest.mark.asyncio
    async def test_no_token(self, client, session):
        assert await resume_session(client, session) is False
        client.get_user.assert_not_called()

    @pytest.mark.asyncio
    async def test_token_without_user_id_is_discarded(self, client, session, token_store):
        token_store.save("not-a-jwt")
        session.load()
        assert await resume_session(client, session) is False
        assert token_store.load() is None

    @pytest.mark.asyncio
    async def test_expired_token(self, client, session, token_store):
        token_store.save(make_jwt())
        session.load()

        def expired(user_id):
            session.clear()
            raise UnauthorizedError("Invalid or expired token", status=401)

        client.get_user.side_effect = expired
        assert await resume_session(client, session) is False
        assert session.token is None

    @pytest.mark.asyncio
    async def test_backend_down_keeps_token(self, client, session, token_store):
        token = make_jwt()
        token_store.save(token)
        session.load()
        client.get_user.side_effect = NetworkOrServerError("Could not reach the IAM service")
        assert await resume_session(client, session) is False
        assert session.principal is None
        assert token_store.load() == token
