"""
auth/store.py -- Durable storage for the console's single session token.

Pattern: Repository over SQLAlchemy Core. TokenStore owns one table with a
single-row invariant (id=1 enforced by a CHECK constraint). There is no
multi-account support; saving a new token replaces the previous one.

Only the token is persisted. The principal is rebuilt from the backend on
start (see auth/flow.resume_session) so a stale identity is never shown.

Security:
  All queries use bound parameters. No f-strings in SQL.
  The token is never logged.

DB path: ~/.iam-console/session.db by default (core.config.default_session_db_url).
Tests pass a named shared-memory SQLite URI instead.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import CheckConstraint, Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine, make_url

logger = logging.getLogger("iamconsole.session")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_session_token = Table(
    "session_token",
    _metadata,
    Column("id", Integer, primary_key=True),
    Column("token", Text, nullable=False),
    Column("saved_at", String(32), nullable=False),
    CheckConstraint("id = 1", name="single_row"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so the CLI and the web console can share the file."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TokenStore:
    """Persist, load and delete the one session token.

    Usage:
        store = TokenStore("sqlite:///session.db")
        store.save(token)
        token = store.load()     # str or None
        store.delete()           # True if a token was removed
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        url = make_url(db_url)
        if url.get_backend_name() == "sqlite":
            connect_args["check_same_thread"] = False
            database = url.database or ""
            if database and not database.startswith("file:") and database != ":memory:":
                Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if url.get_backend_name() == "sqlite" and not (url.database or "").startswith("file:"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def load(self) -> str | None:
        """Return the persisted token, or None when nothing is stored."""
        with self.engine.connect() as conn:
            row = conn.execute(_session_token.select().where(_session_token.c.id == 1)).fetchone()
        if row is None or not row.token:
            return None
        return row.token

    def save(self, token: str) -> None:
        """Replace the stored token (single row, id=1)."""
        with self.engine.begin() as conn:
            conn.execute(_session_token.delete())
            conn.execute(_session_token.insert().values(id=1, token=token, saved_at=_now_iso()))

    def delete(self) -> bool:
        """Remove the stored token. Returns True if a row was deleted."""
        with self.engine.begin() as conn:
            result = conn.execute(_session_token.delete())
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()
