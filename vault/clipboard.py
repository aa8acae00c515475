"""
vault/clipboard.py -- Clipboard collaborator for copying revealed secrets.

The console never talks to an OS clipboard itself. In the web console the
browser owns the clipboard: the copy endpoint hands the plaintext to the page,
which writes it with navigator.clipboard. BufferClipboard is the hand-off
point -- SecretVisibilityCache.copy() writes into it and the route take()s the
text straight back out, so nothing lingers between requests.
"""

from __future__ import annotations

from typing import Protocol


class Clipboard(Protocol):
    def write(self, text: str) -> None: ...


class BufferClipboard:
    """Holds at most one pending write until it is taken."""

    def __init__(self) -> None:
        self._text: str | None = None

    def write(self, text: str) -> None:
        self._text = text

    def take(self) -> str | None:
        text, self._text = self._text, None
        return text
