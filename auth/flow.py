"""
auth/flow.py -- Login state machine with optional TOTP step-up.

States (auth.models.LoginState):

    ANONYMOUS --submit--> PASSWORD_SUBMITTED --+--> AUTHENTICATED
                                               +--> TOTP_REQUIRED --submit_totp--+--> AUTHENTICATED
                                               +--> FAILED                       +--> FAILED

The backend protocol has no pending-session handle: after it answers
{"requires_totp": true}, the TOTP step re-submits username + password + code
in one login call. The flow therefore keeps the LoginAttempt while (and only
while) it sits in TOTP_REQUIRED.

FAILED ends the attempt: cached credentials are dropped and the next submit()
starts over as if from ANONYMOUS. A repeated requires_totp answer to a TOTP
submission is FAILED (invalid code), never a second TOTP_REQUIRED.

Concurrency:
  Single flight -- a submission while a login call is pending is ignored, not
      queued, so one click can never mint two tokens.
  Stale responses -- every attempt carries a generation number. cancel() and
      new attempts bump it; a response for an older generation is dropped and
      never touches the session store.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from auth.models import LoginAttempt, LoginState
from auth.tokens import token_user_id
from core.errors import ConsoleError, LoginStateError, UnauthorizedError
from core.models import LoginResult

if TYPE_CHECKING:
    from auth.session import SessionStore
    from core.gateway import ApiClient

logger = logging.getLogger("iamconsole.auth")

INVALID_CODE_MESSAGE = "Invalid verification code."


class LoginFlow:
    """Drives one operator's login through the states above.

    Usage:
        flow = LoginFlow(client, session)
        state = await flow.submit("alice", "pw")
        if state is LoginState.TOTP_REQUIRED:
            state = await flow.submit_totp("123456")
    """

    def __init__(self, client: ApiClient, session: SessionStore) -> None:
        self._client = client
        self._session = session
        self._state = LoginState.ANONYMOUS
        self._attempt: LoginAttempt | None = None
        self._generation = 0
        self._pending: int | None = None
        self.failure_reason: str | None = None

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    @property
    def state(self) -> LoginState:
        # An existing session short-circuits straight to AUTHENTICATED.
        if self._session.is_authenticated:
            return LoginState.AUTHENTICATED
        # Logged out or expired since this flow authenticated.
        if self._state is LoginState.AUTHENTICATED:
            return LoginState.ANONYMOUS
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._pending is not None

    @property
    def pending_username(self) -> str | None:
        """Username awaiting a second factor, for display on the TOTP form."""
        return self._attempt.username if self._attempt else None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def submit(self, username: str, password: str) -> LoginState:
        """Submit username and password. Starts a fresh attempt."""
        if self.in_flight:
            logger.warning("Login submission ignored: another attempt is in flight")
            return self.state
        if self._session.is_authenticated:
            return LoginState.AUTHENTICATED

        # A new password submission abandons any attempt waiting for TOTP.
        self._generation += 1
        self._attempt = None
        self.failure_reason = None
        self._state = LoginState.PASSWORD_SUBMITTED
        return await self._run(LoginAttempt(username=username.strip(), password=password), second_factor=False)

    async def submit_totp(self, code: str) -> LoginState:
        """Re-submit the stored credentials together with a TOTP code."""
        if self.in_flight:
            logger.warning("TOTP submission ignored: another attempt is in flight")
            return self.state
        if self.state is not LoginState.TOTP_REQUIRED or self._attempt is None:
            raise LoginStateError("No login is waiting for a verification code.")

        attempt = LoginAttempt(
            username=self._attempt.username,
            password=self._attempt.password,
            totp_code="".join(code.split()),
        )
        return await self._run(attempt, second_factor=True)

    def cancel(self) -> None:
        """Abandon the current attempt. Any in-flight response is discarded."""
        self._generation += 1
        self._pending = None
        self._attempt = None
        self.failure_reason = None
        self._state = LoginState.ANONYMOUS

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, attempt: LoginAttempt, second_factor: bool) -> LoginState:
        generation = self._generation
        self._pending = generation
        result: LoginResult | None = None
        error: ConsoleError | None = None
        try:
            result = await asyncio.to_thread(
                self._client.login, attempt.username, attempt.password, attempt.totp_code
            )
        except ConsoleError as e:
            error = e
        finally:
            if self._pending == generation:
                self._pending = None

        if generation != self._generation:
            logger.info("Discarding stale login response for %s", attempt.username)
            return self.state

        if error is not None:
            logger.info("Login failed for %s: %s", attempt.username, error.message)
            return self._fail(error.message)

        if result.requires_totp:
            if second_factor:
                logger.info("Login failed for %s: TOTP code rejected", attempt.username)
                return self._fail(INVALID_CODE_MESSAGE)
            self._attempt = attempt
            self._state = LoginState.TOTP_REQUIRED
            logger.info("Second factor required for %s", attempt.username)
            return self._state

        self._session.set(result.token, result.principal)
        self._attempt = None
        self._state = LoginState.AUTHENTICATED
        return self._state

    def _fail(self, reason: str) -> LoginState:
        self._attempt = None
        self.failure_reason = reason
        self._state = LoginState.FAILED
        return self._state


async def resume_session(client: ApiClient, session: SessionStore) -> bool:
    """Rebuild the principal for a persisted token. Returns True if authenticated.

    Called once at start after SessionStore.load(). A token whose user cannot
    be resolved leaves the console unauthenticated; a 401 has already cleared
    the store by the time UnauthorizedError reaches us.
    """
    token = session.token
    if session.is_authenticated or not token:
        return session.is_authenticated

    user_id = token_user_id(token)
    if user_id is None:
        logger.warning("Persisted token carries no user id; discarding it")
        session.clear()
        return False

    try:
        principal = await asyncio.to_thread(client.get_user, user_id)
    except UnauthorizedError:
        logger.info("Persisted session has expired")
        return False
    except ConsoleError as e:
        logger.warning("Could not restore persisted session: %s", e.message)
        return False

    if session.token != token:
        # Logged in or out while the lookup was pending.
        return session.is_authenticated
    session.set(token, principal)
    return True
