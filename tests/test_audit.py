"""Unit tests for core/audit.py -- filtering and labelling audit rows."""

import pytest

from core.audit import action_category, action_tone, filter_events
from core.models import AuditEvent

EVENTS = [
    AuditEvent(id="1", action="login.success", resource="auth", username="alice", ip_address="10.0.0.5"),
    AuditEvent(id="2", action="secret.create", resource="secrets", username="bob", ip_address="10.0.0.9"),
    AuditEvent(id="3", action="user.update", resource="users", username="Alice", ip_address="192.168.1.4"),
]


def test_empty_query_keeps_everything():
    assert filter_events(EVENTS, "   ") == EVENTS


def test_username_match_ignores_case():
    assert [e.id for e in filter_events(EVENTS, "ALICE")] == ["1", "3"]


def test_action_and_resource_match():
    assert [e.id for e in filter_events(EVENTS, "secret")] == ["2"]
    assert [e.id for e in filter_events(EVENTS, "users")] == ["3"]


def test_ip_address_substring():
    assert [e.id for e in filter_events(EVENTS, "192.168")] == ["3"]


@pytest.mark.parametrize(
    "action, category",
    [
        ("login.success", "login"),
        ("secret.delete", "secret"),
        ("user.create", "user"),
        ("role.assign", "role"),
        ("totp.enable", "other"),
    ],
)
def test_action_category(action, category):
    assert action_category(action) == category


@pytest.mark.parametrize(
    "action, tone",
    [
        ("login.success", "success"),
        ("login.failed", "danger"),
        ("secret.delete", "danger"),
        ("secret.create", "info"),
        ("user.update", "warning"),
        ("secret.read", "muted"),
    ],
)
def test_action_tone(action, tone):
    assert action_tone(action) == tone
