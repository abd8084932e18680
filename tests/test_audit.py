"""The security event trail is best effort: a broken sink never blocks auth."""

import pytest

from staykey.service.audit import AuditRecorder
from staykey.service.auth import AuthService, RequestContext, hash_refresh_token
from staykey.storage.models import SecurityEventType


class BrokenSink:
    def __init__(self):
        self.attempts = 0

    def append_security_event(self, event):
        self.attempts += 1
        raise RuntimeError("audit table unavailable")

    def list_security_events(self, user_id, *, limit=100):
        return []


@pytest.fixture
def guest(memory_store):
    return memory_store.create_user("guest@example.com", user_id="42", roles=["guest"])


def test_record_returns_event(memory_store):
    recorder = AuditRecorder(memory_store)
    event = recorder.record(
        "42",
        SecurityEventType.LOGIN,
        "203.0.113.1",
        token_id="r1",
        user_agent="booking-app/2.1",
        detail="user login",
    )
    assert event is not None
    stored = recorder.list_events("42")
    assert [e.id for e in stored] == [event.id]
    assert stored[0].user_agent == "booking-app/2.1"


def test_record_swallows_sink_failure():
    sink = BrokenSink()
    recorder = AuditRecorder(sink)
    assert recorder.record("42", SecurityEventType.LOGIN, "127.0.0.1") is None
    assert sink.attempts == 1


def test_record_rejects_unknown_event_type_quietly(memory_store):
    recorder = AuditRecorder(memory_store)
    assert recorder.record("42", "PasswordReset", "127.0.0.1") is None
    assert memory_store.list_security_events("42") == []


async def test_operations_succeed_when_audit_fails(memory_store, settings, clock, guest):
    sink = BrokenSink()
    service = AuthService(
        memory_store, None, settings, audit=AuditRecorder(sink), clock=clock
    )
    context = RequestContext(ip_addr="203.0.113.1")

    pair = await service.issue_tokens(guest, ["guest"], context=context)
    rotated = await service.refresh_tokens(
        pair.refresh_token, pair.access_token, context=context
    )
    assert await service.revoke_token(rotated.refresh_token, context=context) is True
    await service.issue_tokens(guest, ["guest"], context=context)
    assert await service.revoke_all_user_tokens("42", context=context) is True

    assert sink.attempts == 5
    record = memory_store.get_refresh_record_by_hash(hash_refresh_token(rotated.refresh_token))
    assert record.is_revoked is True
    assert service.list_active_tokens("42") == []


async def test_list_security_events_defaults_to_configured_limit(
    memory_store, settings, clock, guest
):
    service = AuthService(
        memory_store,
        None,
        settings.model_copy(update={"default_audit_limit": 2}),
        clock=clock,
    )
    for _ in range(3):
        await service.issue_tokens(guest, ["guest"])

    assert len(service.list_security_events("42")) == 2
    assert len(service.list_security_events("42", limit=10)) == 3
