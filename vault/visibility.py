"""
vault/visibility.py -- Reveal/hide state and on-demand decryption for vault entries.

SecretVisibilityCache keeps secret *metadata* (SecretSummary) for as long as
the session lasts, but a decrypted value exists only between an explicit
reveal() and the matching hide(). Nothing here is persisted.

Reveal policy (SECRET_REFETCH_ON_REVEAL):
  True (default) -- every reveal fetches GET /secrets/{id} again and hide()
      drops the plaintext. Exposure is limited to the visible window and a
      value rotated server-side is never shown stale.
  False -- hide() keeps the plaintext in memory and a later reveal() shows it
      again without a round trip. It is still never shown or copied while
      hidden.

Stale responses: each reveal takes a ticket. hide(), delete() and reset()
withdraw the ticket, so a decrypt response that lands after the operator
moved on is dropped instead of re-exposing the value.

Session change: subscribe on_session_change to the SessionStore so logout,
a 401 or a re-login purges every revealed value immediately.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from core.errors import ConsoleError, NetworkOrServerError, NotVisibleError, UnauthorizedError
from core.models import SecretSummary, SecretValue

if TYPE_CHECKING:
    from auth.session import SessionStore
    from core.gateway import ApiClient
    from vault.clipboard import Clipboard

logger = logging.getLogger("iamconsole.vault")


class SecretVisibilityCache:
    def __init__(self, client: ApiClient, clipboard: Clipboard, refetch_on_reveal: bool = True) -> None:
        self._client = client
        self._clipboard = clipboard
        self.refetch_on_reveal = refetch_on_reveal
        self._summaries: dict[str, SecretSummary] = {}
        self._visible: set[str] = set()
        self._values: dict[str, SecretValue] = {}
        self._pending: dict[str, int] = {}
        self._ticket = 0

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    @property
    def summaries(self) -> list[SecretSummary]:
        return list(self._summaries.values())

    def is_visible(self, secret_id: str) -> bool:
        return secret_id in self._visible

    def is_pending(self, secret_id: str) -> bool:
        return secret_id in self._pending

    def value(self, secret_id: str) -> str | None:
        """Plaintext for a revealed secret; None whenever it is hidden."""
        if secret_id not in self._visible:
            return None
        cached = self._values.get(secret_id)
        return cached.data if cached else None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def refresh(self) -> list[SecretSummary]:
        """Reload metadata. Entries gone from the backend lose all local state."""
        summaries = await asyncio.to_thread(self._client.list_secrets)
        self._summaries = {s.id: s for s in summaries}
        for secret_id in list(self._visible | set(self._values) | set(self._pending)):
            if secret_id not in self._summaries:
                self._purge(secret_id)
        return self.summaries

    async def reveal(self, secret_id: str) -> bool:
        """Fetch and show one secret. Returns True if it is visible afterwards.

        No-op when already visible or when a reveal for the same id is still
        pending. Raises the gateway error on failure; the secret stays hidden.
        An id with no listed summary is reloaded once, then rejected as not
        found. An expired session always propagates, even for a withdrawn
        ticket.
        """
        if secret_id in self._visible:
            return True
        if secret_id in self._pending:
            return False
        if secret_id not in self._summaries:
            await self.refresh()
            if secret_id not in self._summaries:
                raise NetworkOrServerError("Secret not found", status=404)
        if not self.refetch_on_reveal and secret_id in self._values:
            self._visible.add(secret_id)
            return True

        self._ticket += 1
        ticket = self._ticket
        self._pending[secret_id] = ticket
        try:
            secret = await asyncio.to_thread(self._client.get_secret, secret_id)
        except UnauthorizedError:
            if self._pending.get(secret_id) == ticket:
                del self._pending[secret_id]
            raise
        except ConsoleError as e:
            if self._pending.get(secret_id) != ticket:
                return False
            del self._pending[secret_id]
            logger.warning("Reveal failed for secret %s: %s", secret_id, e.message)
            raise

        if self._pending.get(secret_id) != ticket:
            logger.info("Discarding stale reveal for secret %s", secret_id)
            return False
        del self._pending[secret_id]
        self._values[secret_id] = secret
        self._visible.add(secret_id)
        logger.info("Secret %s revealed", secret_id)
        return True

    def hide(self, secret_id: str) -> None:
        self._visible.discard(secret_id)
        self._pending.pop(secret_id, None)
        if self.refetch_on_reveal:
            self._values.pop(secret_id, None)

    def copy(self, secret_id: str) -> None:
        """Copy a revealed secret to the clipboard collaborator."""
        cached = self._values.get(secret_id)
        if secret_id not in self._visible or cached is None:
            raise NotVisibleError("Reveal the secret before copying it.")
        self._clipboard.write(cached.data)
        logger.info("Secret %s copied to clipboard", secret_id)

    async def create(self, name: str, description: str, data: str) -> str:
        secret_id = await asyncio.to_thread(self._client.create_secret, name, description, data)
        await self.refresh()
        return secret_id

    async def delete(self, secret_id: str) -> None:
        """Delete on the backend, then drop every trace of the entry locally."""
        await asyncio.to_thread(self._client.delete_secret, secret_id)
        self._purge(secret_id)
        logger.info("Secret %s deleted", secret_id)

    def reset(self) -> None:
        """Forget everything, including metadata. Used when the session ends."""
        self._summaries.clear()
        self._visible.clear()
        self._values.clear()
        self._pending.clear()

    def on_session_change(self, session: SessionStore) -> None:
        # Logout, expiry and a login as someone else all invalidate the view.
        self.reset()

    def _purge(self, secret_id: str) -> None:
        self._summaries.pop(secret_id, None)
        self._visible.discard(secret_id)
        self._values.pop(secret_id, None)
        self._pending.pop(secret_id, None)
