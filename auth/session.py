"""
auth/session.py -- Process-wide session state: the current token and principal.

SessionStore is the single source of truth for "is an operator authenticated,
and with which token". It is an explicit object injected into its consumers
(app.state.session in the web console, a per-run instance in the CLI) rather
than module-level globals, so tests build isolated instances.

Lifecycle:
  load()                  -- restore the token from durable storage at start
  set(token, principal)   -- both at once; the token is persisted
  clear()                 -- drop both from memory and storage; idempotent

Invariants:
  - A non-None principal implies a non-empty token.
  - At most one token per store; set() replaces the previous session wholesale.
  - Only set() and clear() mutate state. Everything else reads.

Listeners registered with subscribe() run synchronously after each actual
change, so e.g. the vault can purge revealed plaintext the moment the
session ends. A clear() on an already-empty store changes nothing and
notifies nobody.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from core.models import Principal

if TYPE_CHECKING:
    from auth.store import TokenStore

logger = logging.getLogger("iamconsole.session")

SessionListener = Callable[["SessionStore"], None]


class SessionStore:
    def __init__(self, token_store: TokenStore) -> None:
        self._token_store = token_store
        self._token: str | None = None
        self._principal: Principal | None = None
        self._listeners: list[SessionListener] = []
        # Gateway calls clear() from worker threads; the check and the
        # mutation must happen together.
        self._lock = threading.Lock()
        # Bumped on every actual change; lets readers detect that the
        # session they started with is gone.
        self.version = 0

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def principal(self) -> Principal | None:
        return self._principal

    @property
    def is_authenticated(self) -> bool:
        return self._principal is not None

    def authorization_header(self) -> dict[str, str]:
        """Bearer header for the current token, or {} when there is none.

        An absent token omits the header entirely rather than sending
        "Bearer " or "Bearer None".
        """
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self) -> bool:
        """Restore the persisted token. Returns True if one was found.

        The principal is not persisted; it stays None until resume_session()
        (or a fresh login) rebuilds it.
        """
        token = self._token_store.load()
        self._token = token or None
        self._principal = None
        if self._token:
            logger.info("Restored persisted session token")
            return True
        logger.info("No persisted session; starting unauthenticated")
        return False

    def set(self, token: str, principal: Principal) -> None:
        """Establish a session. Persists the token before it becomes visible."""
        if not token:
            raise ValueError("Cannot establish a session with an empty token.")
        with self._lock:
            self._token_store.save(token)
            self._token = token
            self._principal = principal
            self.version += 1
        logger.info("Session established for %s", principal.username)
        self._notify()

    def clear(self) -> bool:
        """End the session. Returns True only if there was something to clear.

        Concurrent callers are serialized: exactly one of them sees the
        session and notifies listeners, the rest return False.
        """
        with self._lock:
            had_state = self._token is not None or self._principal is not None
            removed = self._token_store.delete()
            if not had_state and not removed:
                return False
            username = self._principal.username if self._principal else None
            self._token = None
            self._principal = None
            self.version += 1
        logger.info("Session cleared%s", f" for {username}" if username else "")
        self._notify()
        return True

    def subscribe(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)
