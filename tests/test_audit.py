"""
Tests for the audit log
"""

from phasegate.audit import AuditHistory, AuditLog
from phasegate.models import AuditEntry, AuditEventType


class TestAuditLog:

    def test_record_builds_entry(self, audit_log):
        entry = audit_log.record("wi_1", AuditEventType.PHASE_ENTERED, actor="alice", phase=1)

        assert entry.work_item_id == "wi_1"
        assert entry.actor == "alice"
        assert entry.payload == {"phase": 1}
        assert entry.sequence is not None

    def test_append(self, audit_log):
        stored = audit_log.append(AuditEntry("wi_1", AuditEventType.GATE_EVALUATED, {"score": 80}))
        assert stored.payload == {"score": 80}
        assert list(audit_log.history("wi_1")) == [stored]

    def test_history_is_lazy_and_restartable(self, audit_log):
        audit_log.record("wi_1", AuditEventType.PHASE_ENTERED, phase=1)
        history = audit_log.history("wi_1")

        assert isinstance(history, AuditHistory)
        assert len(list(history)) == 1

        audit_log.record("wi_1", AuditEventType.GATE_EVALUATED, phase=1)

        assert [e.event_type for e in history] == [
            AuditEventType.PHASE_ENTERED,
            AuditEventType.GATE_EVALUATED,
        ]

    def test_history_of_unknown_item_is_empty(self, audit_log):
        assert list(audit_log.history("wi_none")) == []

    def test_stats(self, audit_log):
        audit_log.record("wi_1", AuditEventType.PHASE_ENTERED, actor="alice")
        audit_log.record("wi_1", AuditEventType.GATE_EVALUATED)
        audit_log.record("wi_2", AuditEventType.PHASE_ENTERED, actor="bob")

        stats = audit_log.stats()

        assert stats["total_entries"] == 3
        assert stats["work_items"] == 2
        assert stats["events"] == {"phase_entered": 2, "gate_evaluated": 1}
        assert stats["actors"] == {"alice": 1, "system": 1, "bob": 1}

    def test_stats_for_one_item(self, audit_log):
        audit_log.record("wi_1", AuditEventType.PHASE_ENTERED)
        audit_log.record("wi_2", AuditEventType.PHASE_ENTERED)

        assert audit_log.stats("wi_2")["total_entries"] == 1

    def test_backed_by_sqlite(self, sqlite_store):
        audit = AuditLog(sqlite_store)
        audit.record("wi_1", AuditEventType.WORK_ITEM_REJECTED, actor="bob", reason="duplicate idea")

        entries = list(audit.history("wi_1"))

        assert entries[0].payload == {"reason": "duplicate idea"}
        assert entries[0].actor == "bob"
