"""
Tests for the phase/gate data model
"""

from datetime import timedelta

import pytest

from phasegate.models import (
    Assessment,
    AssessorSource,
    AuditEntry,
    AuditEventType,
    Criterion,
    Decision,
    GateResult,
    PhaseDefinition,
    StatusReport,
    WorkItem,
    WorkItemStatus,
    utcnow,
)


def _phase(**overrides):
    values = dict(
        ordinal=1,
        name="Screen",
        criteria=(Criterion("c1", "Q1", 10), Criterion("c2", "Q2", 10)),
        pass_threshold=70,
        escalate_threshold=40,
    )
    values.update(overrides)
    return PhaseDefinition(**values)


class TestWorkItemStatus:

    @pytest.mark.parametrize("status,terminal", [
        (WorkItemStatus.ACTIVE, False),
        (WorkItemStatus.STALLED, False),
        (WorkItemStatus.PASSED_ALL, True),
        (WorkItemStatus.REJECTED, True),
    ])
    def test_is_terminal(self, status, terminal):
        assert status.is_terminal is terminal

    def test_values_are_strings(self):
        assert WorkItemStatus("passed_all") == WorkItemStatus.PASSED_ALL
        assert Decision.ESCALATE.value == "escalate"


class TestPhaseDefinition:

    def test_fallback_score_is_threshold_midpoint(self):
        assert _phase().fallback_score == 55

    def test_criterion_lookup(self):
        phase = _phase()
        assert phase.criterion("c2").prompt == "Q2"

    def test_unknown_criterion_raises(self):
        with pytest.raises(KeyError):
            _phase().criterion("nope")

    def test_is_immutable(self):
        phase = _phase()
        with pytest.raises(AttributeError):
            phase.pass_threshold = 10


class TestWorkItem:

    def test_defaults(self):
        item = WorkItem(owner_id="alice")
        assert item.id.startswith("wi_")
        assert item.phase == 1
        assert item.status == WorkItemStatus.ACTIVE
        assert item.attempt == 1
        assert item.version == 0
        assert item.pending_escalation is None

    def test_dict_conversion_keeps_lease(self):
        expires = utcnow() + timedelta(seconds=30)
        item = WorkItem(owner_id="alice", payload={"title": "x"}, lease_token="tok",
                        lease_expires_at=expires, pending_escalation=2)

        restored = WorkItem.from_dict(item.to_dict())

        assert restored == item

    def test_lease_active(self):
        now = utcnow()
        item = WorkItem(owner_id="alice", lease_token="tok", lease_expires_at=now + timedelta(seconds=5))
        assert item.lease_active(now)
        assert not item.lease_active(now + timedelta(seconds=10))

    def test_lease_inactive_without_token(self):
        assert not WorkItem(owner_id="alice").lease_active()


class TestRecords:

    def test_fallback_assessment_is_degraded(self):
        fallback = Assessment("wi_1", 1, "c1", 1, 55.0, "fallback", AssessorSource.FALLBACK)
        human = Assessment("wi_1", 1, "c1", 1, 80.0, "ok", AssessorSource.HUMAN)
        assert fallback.degraded
        assert not human.degraded

    def test_gate_result_from_dict(self):
        result = GateResult("wi_1", 1, 1, 80.0, Decision.PASS, ("as_1", "as_2"),
                            weak_criteria=("c2",))
        restored = GateResult.from_dict(result.to_dict())
        assert restored == result
        assert isinstance(restored.assessment_ids, tuple)

    def test_audit_entry_defaults_to_system_actor(self):
        entry = AuditEntry("wi_1", AuditEventType.PHASE_ENTERED, {"phase": 1})
        assert entry.actor == "system"
        assert entry.sequence is None
        assert entry.to_dict()["event_type"] == "phase_entered"

    def test_status_report_to_dict(self):
        report = StatusReport("wi_1", 4, None, WorkItemStatus.PASSED_ALL, 5, False)
        data = report.to_dict()
        assert data["status"] == "passed_all"
        assert data["last_gate_result"] is None
