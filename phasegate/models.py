"""
Data model for the phase/gate engine.
All records except WorkItem are immutable once written.
"""
import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class WorkItemStatus(str, Enum):
    """Lifecycle status of a work item"""
    ACTIVE = "active"
    PASSED_ALL = "passed_all"
    REJECTED = "rejected"
    STALLED = "stalled"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkItemStatus.PASSED_ALL, WorkItemStatus.REJECTED)


class Decision(str, Enum):
    """Outcome of one gate evaluation"""
    PASS = "pass"
    FAIL = "fail"
    ESCALATE = "escalate"


class AssessorSource(str, Enum):
    """Where an assessment score came from"""
    AUTOMATED = "automated"
    HUMAN = "human"
    FALLBACK = "fallback"


class AuditEventType(str, Enum):
    """Event types recorded in the audit trail"""
    PHASE_ENTERED = "phase_entered"
    GATE_EVALUATED = "gate_evaluated"
    PHASE_ADVANCED = "phase_advanced"
    OVERRIDE_APPLIED = "override_applied"
    ASSESSMENT_DEGRADED = "assessment_degraded"
    DELIVERABLE_GENERATED = "deliverable_generated"
    DELIVERABLE_FAILED = "deliverable_failed"
    WORK_ITEM_STALLED = "work_item_stalled"
    WORK_ITEM_REJECTED = "work_item_rejected"
    WORK_ITEM_RESUMED = "work_item_resumed"
    REVIEW_RECORDED = "review_recorded"


SYSTEM_ACTOR = "system"


# ============================================================
# Registry definitions
# ============================================================

@dataclass(frozen=True)
class Criterion:
    """One weighted question scored independently"""
    id: str
    prompt: str
    weight: float = 1.0

    def to_dict(self) -> dict:
        return {"id": self.id, "prompt": self.prompt, "weight": self.weight}


@dataclass(frozen=True)
class PhaseDefinition:
    """An ordered stage and the gate protecting its exit"""
    ordinal: int
    name: str
    criteria: tuple
    pass_threshold: float
    escalate_threshold: float
    deliverables: tuple = ()
    description: str = ""

    @property
    def fallback_score(self) -> float:
        """Neutral score used when the assessor cannot be reached"""
        return (self.pass_threshold + self.escalate_threshold) / 2

    def criterion(self, criterion_id: str) -> Criterion:
        for criterion in self.criteria:
            if criterion.id == criterion_id:
                return criterion
        raise KeyError(f"Phase {self.ordinal} has no criterion '{criterion_id}'")

    def to_dict(self) -> dict:
        return {
            "ordinal": self.ordinal,
            "name": self.name,
            "description": self.description,
            "criteria": [c.to_dict() for c in self.criteria],
            "pass_threshold": self.pass_threshold,
            "escalate_threshold": self.escalate_threshold,
            "deliverables": list(self.deliverables),
        }


# ============================================================
# Runtime records
# ============================================================

@dataclass
class WorkItem:
    """The entity progressing through phases. Mutated only by the controller."""
    owner_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    registry: str = ""
    id: str = field(default_factory=lambda: _new_id("wi"))
    phase: int = 1
    status: WorkItemStatus = WorkItemStatus.ACTIVE
    attempt: int = 1
    phase_failures: int = 0
    pending_escalation: Optional[int] = None
    version: int = 0
    lease_token: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def lease_active(self, now: Optional[datetime] = None) -> bool:
        if self.lease_token is None or self.lease_expires_at is None:
            return False
        return self.lease_expires_at > (now or utcnow())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "payload": copy.deepcopy(self.payload),
            "registry": self.registry,
            "phase": self.phase,
            "status": self.status.value,
            "attempt": self.attempt,
            "phase_failures": self.phase_failures,
            "pending_escalation": self.pending_escalation,
            "version": self.version,
            "lease_token": self.lease_token,
            "lease_expires_at": self.lease_expires_at.isoformat() if self.lease_expires_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'WorkItem':
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            payload=copy.deepcopy(data.get("payload") or {}),
            registry=data.get("registry", ""),
            phase=data["phase"],
            status=WorkItemStatus(data["status"]),
            attempt=data["attempt"],
            phase_failures=data.get("phase_failures", 0),
            pending_escalation=data.get("pending_escalation"),
            version=data.get("version", 0),
            lease_token=data.get("lease_token"),
            lease_expires_at=_parse_dt(data.get("lease_expires_at")),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass(frozen=True)
class Assessment:
    """Score of one criterion for one work item at one phase attempt"""
    work_item_id: str
    phase: int
    criterion_id: str
    attempt: int
    score: float
    rationale: str
    source: AssessorSource
    id: str = field(default_factory=lambda: _new_id("as"))
    created_at: datetime = field(default_factory=utcnow)

    @property
    def degraded(self) -> bool:
        return self.source == AssessorSource.FALLBACK

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "work_item_id": self.work_item_id,
            "phase": self.phase,
            "criterion_id": self.criterion_id,
            "attempt": self.attempt,
            "score": self.score,
            "rationale": self.rationale,
            "source": self.source.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Assessment':
        return cls(
            id=data["id"],
            work_item_id=data["work_item_id"],
            phase=data["phase"],
            criterion_id=data["criterion_id"],
            attempt=data["attempt"],
            score=data["score"],
            rationale=data.get("rationale", ""),
            source=AssessorSource(data["source"]),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(frozen=True)
class GateResult:
    """Aggregated outcome of one gate evaluation attempt"""
    work_item_id: str
    phase: int
    attempt: int
    score: float
    decision: Decision
    assessment_ids: tuple
    degraded: bool = False
    timed_out: bool = False
    weak_criteria: tuple = ()
    id: str = field(default_factory=lambda: _new_id("gr"))
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "work_item_id": self.work_item_id,
            "phase": self.phase,
            "attempt": self.attempt,
            "score": self.score,
            "decision": self.decision.value,
            "assessment_ids": list(self.assessment_ids),
            "degraded": self.degraded,
            "timed_out": self.timed_out,
            "weak_criteria": list(self.weak_criteria),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'GateResult':
        return cls(
            id=data["id"],
            work_item_id=data["work_item_id"],
            phase=data["phase"],
            attempt=data["attempt"],
            score=data["score"],
            decision=Decision(data["decision"]),
            assessment_ids=tuple(data.get("assessment_ids", [])),
            degraded=data.get("degraded", False),
            timed_out=data.get("timed_out", False),
            weak_criteria=tuple(data.get("weak_criteria", [])),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(frozen=True)
class ReviewerScore:
    """
    A human reviewer's score for one criterion of a work item's phase.

    Recording again for the same (work item, phase, criterion) replaces the
    previous score.
    """
    work_item_id: str
    phase: int
    criterion_id: str
    score: float
    reviewer: str
    rationale: str = ""
    recorded_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "work_item_id": self.work_item_id,
            "phase": self.phase,
            "criterion_id": self.criterion_id,
            "score": self.score,
            "reviewer": self.reviewer,
            "rationale": self.rationale,
            "recorded_at": self.recorded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ReviewerScore':
        return cls(
            work_item_id=data["work_item_id"],
            phase=data["phase"],
            criterion_id=data["criterion_id"],
            score=data["score"],
            reviewer=data.get("reviewer", ""),
            rationale=data.get("rationale", ""),
            recorded_at=datetime.fromisoformat(data["recorded_at"]),
        )


@dataclass(frozen=True)
class AuditEntry:
    """
    One append-only record of what happened to a work item.

    sequence is assigned by the store on append and breaks ties between
    entries sharing a timestamp.
    """
    work_item_id: str
    event_type: AuditEventType
    payload: Dict[str, Any] = field(default_factory=dict)
    actor: str = SYSTEM_ACTOR
    timestamp: datetime = field(default_factory=utcnow)
    sequence: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "work_item_id": self.work_item_id,
            "event_type": self.event_type.value,
            "payload": self.payload,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'AuditEntry':
        return cls(
            work_item_id=data["work_item_id"],
            event_type=AuditEventType(data["event_type"]),
            payload=data.get("payload") or {},
            actor=data.get("actor", SYSTEM_ACTOR),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            sequence=data.get("sequence"),
        )


# ============================================================
# Caller-facing results
# ============================================================

@dataclass
class AdvanceResult:
    """What one advance() or override() call did"""
    work_item_id: str
    phase: int
    status: WorkItemStatus
    decision: Optional[Decision] = None
    gate_result: Optional[GateResult] = None
    audit_entries: List[AuditEntry] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "work_item_id": self.work_item_id,
            "phase": self.phase,
            "status": self.status.value,
            "decision": self.decision.value if self.decision else None,
            "gate_result": self.gate_result.to_dict() if self.gate_result else None,
            "audit_entries": [e.to_dict() for e in self.audit_entries],
        }


@dataclass
class StatusReport:
    """Read-only view of a work item's position"""
    work_item_id: str
    phase: int
    phase_name: Optional[str]
    status: WorkItemStatus
    attempt: int
    awaiting_override: bool
    last_gate_result: Optional[GateResult] = None

    def to_dict(self) -> dict:
        return {
            "work_item_id": self.work_item_id,
            "phase": self.phase,
            "phase_name": self.phase_name,
            "status": self.status.value,
            "attempt": self.attempt,
            "awaiting_override": self.awaiting_override,
            "last_gate_result": self.last_gate_result.to_dict() if self.last_gate_result else None,
        }
