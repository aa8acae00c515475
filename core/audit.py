"""
core/audit.py -- Read-side helpers for browsing the audit trail.

Audit events are server-assigned and immutable; these functions only select
and label them for display.
"""

from core.models import LOGIN_FAILED_ACTION, LOGIN_SUCCESS_ACTION, AuditEvent


def filter_events(events: list[AuditEvent], query: str) -> list[AuditEvent]:
    """Keep events whose action, resource or username contains query (any case),
    or whose IP address contains it verbatim. An empty query keeps everything.
    """
    needle = query.strip()
    if not needle:
        return list(events)
    lowered = needle.lower()
    return [
        e
        for e in events
        if lowered in e.action.lower()
        or lowered in e.resource.lower()
        or lowered in e.username.lower()
        or needle in e.ip_address
    ]


def action_category(action: str) -> str:
    """Coarse grouping used to label rows: login, secret, user, role or other."""
    for category in ("login", "secret", "user", "role"):
        if category in action:
            return category
    return "other"


def action_tone(action: str) -> str:
    """success / danger / info / warning / muted -- how alarming an action looks."""
    if LOGIN_SUCCESS_ACTION in action:
        return "success"
    if LOGIN_FAILED_ACTION in action or "delete" in action:
        return "danger"
    if "create" in action:
        return "info"
    if "update" in action:
        return "warning"
    return "muted"
