"""
core/dashboard.py -- Summary statistics for the console home page.

aggregate_dashboard() is pure: it takes the three collections and a reference
time and returns DashboardStats. No I/O, no clock reads unless `now` is
omitted. load_dashboard() does the fetching and decides what a failed slice
means.

Failure policy (DASHBOARD_POLICY):
  degrade (default) -- the three fetches run concurrently; a slice that fails
      counts as empty and its name is listed in degraded_sources so the page
      can say the numbers are partial.
  atomic -- the first failure propagates and the caller shows no stats.
UnauthorizedError always propagates: the session is gone, so partial numbers
would be shown to nobody.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from core.errors import ConsoleError, UnauthorizedError
from core.models import LOGIN_SUCCESS_ACTION, AuditEvent, DashboardStats, Principal, SecretSummary

if TYPE_CHECKING:
    from core.gateway import ApiClient

logger = logging.getLogger("iamconsole.dashboard")

RECENT_LOGIN_WINDOW = timedelta(hours=24)
RECENT_ACTIVITY_SIZE = 5


def count_recent_logins(events: list[AuditEvent], now: datetime) -> int:
    """Successful logins strictly inside the trailing 24-hour window ending at now."""
    cutoff = now - RECENT_LOGIN_WINDOW
    return sum(
        1
        for e in events
        if LOGIN_SUCCESS_ACTION in e.action and e.created_at is not None and e.created_at > cutoff
    )


def aggregate_dashboard(
    users: list[Principal],
    secrets: list[SecretSummary],
    events: list[AuditEvent],
    now: Optional[datetime] = None,
) -> DashboardStats:
    now = now or datetime.now(timezone.utc)
    return DashboardStats(
        total_users=len(users),
        total_secrets=len(secrets),
        recent_logins=count_recent_logins(events, now),
        total_audit_logs=len(events),
        recent_activity=events[:RECENT_ACTIVITY_SIZE],
    )


async def load_dashboard(
    client: ApiClient,
    policy: str = "degrade",
    audit_limit: int = 100,
    now: Optional[datetime] = None,
) -> DashboardStats:
    """Fetch users, secrets and recent audit events concurrently and aggregate."""
    sources = ("users", "secrets", "audit")
    results = await asyncio.gather(
        asyncio.to_thread(client.list_users),
        asyncio.to_thread(client.list_secrets),
        asyncio.to_thread(client.list_audit, audit_limit, 0),
        return_exceptions=True,
    )

    for result in results:
        if isinstance(result, UnauthorizedError):
            raise result

    slices: list[list] = []
    degraded: list[str] = []
    for name, result in zip(sources, results):
        if isinstance(result, BaseException):
            if policy == "atomic" or not isinstance(result, ConsoleError):
                raise result
            logger.warning("Dashboard %s unavailable: %s", name, result.message)
            degraded.append(name)
            slices.append([])
        else:
            slices.append(result)

    stats = aggregate_dashboard(slices[0], slices[1], slices[2], now=now)
    stats.degraded_sources = degraded
    return stats
