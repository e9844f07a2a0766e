"""Audit sink behavior."""

from taskhub.service.audit import LOGIN_FAILURE, AuditLogger
from taskhub.storage.memory import MemoryStore
from taskhub.storage.models import AuditCategory


class _BrokenStore:
    def __init__(self):
        self.calls = 0

    def record_audit_event(self, entry):
        self.calls += 1
        raise RuntimeError("database unavailable")


class TestAuditLogger:
    def test_record_persists_entry(self):
        store = MemoryStore()
        entry = AuditLogger(store).record(
            LOGIN_FAILURE,
            user_id="u1",
            ip_address="192.0.2.4",
            details={"reason": "invalid_credentials"},
            level="warning",
        )
        stored = store.list_audit_events(user_id="u1")
        assert [e.id for e in stored] == [entry.id]
        assert stored[0].category == AuditCategory.USER_LOG
        assert stored[0].details == {"reason": "invalid_credentials"}

    def test_persist_failure_never_reaches_caller(self):
        broken = _BrokenStore()
        entry = AuditLogger(broken).record(LOGIN_FAILURE, user_id="u1")
        assert entry.action == LOGIN_FAILURE
        assert broken.calls == 1

    def test_persistence_can_be_disabled(self):
        store = MemoryStore()
        AuditLogger(store, persist=False).record(LOGIN_FAILURE)
        assert store.list_audit_events() == []

    def test_without_store_only_logs(self):
        assert AuditLogger().record(LOGIN_FAILURE).action == LOGIN_FAILURE

    def test_details_are_copied(self):
        details = {"reason": "x"}
        entry = AuditLogger().record(LOGIN_FAILURE, details=details)
        details["reason"] = "mutated"
        assert entry.details == {"reason": "x"}

    def test_newest_first(self):
        store = MemoryStore()
        audit = AuditLogger(store)
        audit.record("FIRST")
        audit.record("SECOND")
        assert [e.action for e in store.list_audit_events()] == ["SECOND", "FIRST"]
        assert [e.action for e in store.list_audit_events(limit=1)] == ["SECOND"]
