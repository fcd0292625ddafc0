"""
Transition controller: the work item state machine.

States are Phase[1..N], PassedAll, Rejected and Stalled. A gate decision
moves an active item through an explicit transition table:

    pass     -> next phase (or PassedAll after the last one)
    fail     -> same phase, next attempt; Stalled once the retry budget is spent
    escalate -> same phase, waiting for override()

At most one gate evaluation runs per work item. The controller takes a
durable lease on the item through a compare-and-swap update before
evaluating and clears it with the transition (or in a finally block when
evaluation raises). Leases expire, so a crashed process cannot wedge an item.
"""
import logging
import math
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .audit import AuditHistory, AuditLog
from .config import ControllerConfig
from .deliverables import DeliverableHook
from .error_handling import (
    AwaitingOverrideError,
    ConcurrencyError,
    GateInProgressError,
    PhasegateError,
    PreconditionFailedError,
)
from .gate_engine import GateEvaluator
from .models import (
    SYSTEM_ACTOR,
    AdvanceResult,
    AuditEntry,
    AuditEventType,
    Decision,
    GateResult,
    ReviewerScore,
    StatusReport,
    WorkItem,
    WorkItemStatus,
    utcnow,
)
from .registry import TERMINAL, PhaseRegistry
from .store import Store

logger = logging.getLogger(__name__)

# (event type, payload) pairs recorded after a transition is stored
PendingEvents = List[Tuple[AuditEventType, Dict[str, Any]]]


class TransitionController:
    """Caller-facing operations on work items"""

    def __init__(
        self,
        registry: PhaseRegistry,
        store: Store,
        gate_evaluator: GateEvaluator,
        audit: AuditLog,
        deliverables: Optional[DeliverableHook] = None,
        config: Optional[ControllerConfig] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.registry = registry
        self.store = store
        self.gate_evaluator = gate_evaluator
        self.audit = audit
        self.deliverables = deliverables
        self.config = config or ControllerConfig()
        self._clock = clock

        self._transitions = {
            Decision.PASS: self._on_pass,
            Decision.FAIL: self._on_fail,
            Decision.ESCALATE: self._on_escalate,
        }

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_work_item(self, owner_id: str, payload: Optional[Dict[str, Any]] = None) -> str:
        """Create a work item in phase 1 and return its id"""
        if not owner_id:
            raise PreconditionFailedError("owner_id is required")
        if payload is not None and not isinstance(payload, dict):
            raise PreconditionFailedError("payload must be a mapping")

        item = self.store.create_work_item(WorkItem(
            owner_id=owner_id,
            payload=dict(payload or {}),
            registry=self.registry.name,
        ))
        first = self.registry.definition_for(1)
        self.audit.record(item.id, AuditEventType.PHASE_ENTERED, actor=owner_id,
                          phase=1, phase_name=first.name, attempt=item.attempt)
        logger.info("Created work item %s for %s in phase 1 (%s)", item.id, owner_id, first.name)
        self._fire_deliverables(item, 1)
        return item.id

    def advance(self, work_item_id: str) -> AdvanceResult:
        """
        Evaluate the current phase gate and apply the decision

        Advancing a terminal item is a no-op.

        Raises:
            GateInProgressError: Another evaluation holds the item's lease
            AwaitingOverrideError: The current attempt escalated
            PreconditionFailedError: The item is stalled
            WorkItemNotFoundError: No such work item
        """
        item = self.store.get_work_item(work_item_id)
        now = self._clock()

        if item.lease_active(now):
            raise GateInProgressError(work_item_id)
        if item.status.is_terminal:
            return AdvanceResult(work_item_id=item.id, phase=item.phase, status=item.status)
        self._check_registry(item)
        if item.status == WorkItemStatus.STALLED:
            raise PreconditionFailedError(f"Work item {item.id} is stalled; resume it first")
        if item.pending_escalation is not None:
            raise AwaitingOverrideError(
                f"Work item {item.id} attempt {item.pending_escalation} escalated and awaits an override"
            )

        leased = self._acquire_lease(item, now)
        transitioned = False
        try:
            entries: List[AuditEntry] = []
            gate_result = self.store.get_gate_result(leased.id, leased.phase, leased.attempt)
            if gate_result is None:
                gate_result = self.gate_evaluator.evaluate(leased, leased.phase, leased.attempt)
                entries.append(self._record_gate(gate_result))
            else:
                # Evaluated before an interrupted transition; apply it now
                logger.info("Reusing gate result %s for %s attempt %d",
                            gate_result.id, leased.id, leased.attempt)
                if not self._gate_audited(gate_result):
                    entries.append(self._record_gate(gate_result))

            stored, applied = self._apply(leased, gate_result, SYSTEM_ACTOR)
            transitioned = True
            entries.extend(applied)
        finally:
            if not transitioned:
                self._release_lease(leased)

        return AdvanceResult(
            work_item_id=stored.id,
            phase=stored.phase,
            status=stored.status,
            decision=gate_result.decision,
            gate_result=gate_result,
            audit_entries=entries,
        )

    def override(self, work_item_id: str, decision: Union[Decision, str], actor_id: str,
                 reason: str = "") -> AdvanceResult:
        """
        Resolve an escalated gate to pass or fail

        Raises:
            PreconditionFailedError: Nothing awaits an override, or the decision is not pass/fail
            GateInProgressError: An evaluation holds the item's lease
        """
        try:
            decision = Decision(decision)
        except ValueError:
            raise PreconditionFailedError(f"Unknown decision '{decision}'")
        if decision == Decision.ESCALATE:
            raise PreconditionFailedError("An override must resolve to pass or fail")
        if not actor_id:
            raise PreconditionFailedError("actor_id is required for an override")

        item = self.store.get_work_item(work_item_id)
        if item.lease_active(self._clock()):
            raise GateInProgressError(work_item_id)
        if item.pending_escalation is None or item.status != WorkItemStatus.ACTIVE:
            raise PreconditionFailedError(f"Work item {item.id} is not awaiting an override")
        self._check_registry(item)

        gate_result = self.store.get_gate_result(item.id, item.phase, item.pending_escalation)
        override_event = (AuditEventType.OVERRIDE_APPLIED, {
            "phase": item.phase,
            "attempt": item.pending_escalation,
            "gate_result_id": gate_result.id if gate_result else None,
            "original_decision": Decision.ESCALATE.value,
            "decision": decision.value,
            "reason": reason,
        })
        logger.info("Override %s on %s phase %d by %s", decision.value, item.id, item.phase, actor_id)

        stored, entries = self._apply(
            replace(item, pending_escalation=None), gate_result, actor_id,
            decision=decision, leading=[override_event],
        )
        return AdvanceResult(
            work_item_id=stored.id,
            phase=stored.phase,
            status=stored.status,
            decision=decision,
            gate_result=gate_result,
            audit_entries=entries,
        )

    def reject(self, work_item_id: str, actor_id: str, reason: str = "") -> AdvanceResult:
        """Terminate a work item as rejected"""
        if not actor_id:
            raise PreconditionFailedError("actor_id is required to reject a work item")
        item = self.store.get_work_item(work_item_id)
        if item.lease_active(self._clock()):
            raise GateInProgressError(work_item_id)
        if item.status.is_terminal:
            raise PreconditionFailedError(f"Work item {item.id} is already {item.status.value}")

        stored = self.store.compare_and_swap(
            replace(item, status=WorkItemStatus.REJECTED, pending_escalation=None), item.version
        )
        entry = self.audit.record(stored.id, AuditEventType.WORK_ITEM_REJECTED, actor=actor_id,
                                  phase=stored.phase, reason=reason)
        logger.info("Work item %s rejected in phase %d by %s", stored.id, stored.phase, actor_id)
        return AdvanceResult(work_item_id=stored.id, phase=stored.phase, status=stored.status,
                             audit_entries=[entry])

    def resume(self, work_item_id: str, actor_id: str, reason: str = "") -> AdvanceResult:
        """Reactivate a stalled work item in its phase with a fresh retry budget"""
        if not actor_id:
            raise PreconditionFailedError("actor_id is required to resume a work item")
        item = self.store.get_work_item(work_item_id)
        if item.lease_active(self._clock()):
            raise GateInProgressError(work_item_id)
        if item.status != WorkItemStatus.STALLED:
            raise PreconditionFailedError(f"Work item {item.id} is {item.status.value}, not stalled")

        stored = self.store.compare_and_swap(
            replace(item, status=WorkItemStatus.ACTIVE, phase_failures=0), item.version
        )
        entry = self.audit.record(stored.id, AuditEventType.WORK_ITEM_RESUMED, actor=actor_id,
                                  phase=stored.phase, attempt=stored.attempt, reason=reason)
        logger.info("Work item %s resumed in phase %d by %s", stored.id, stored.phase, actor_id)
        return AdvanceResult(work_item_id=stored.id, phase=stored.phase, status=stored.status,
                             audit_entries=[entry])

    def record_review(self, work_item_id: str, criterion_id: str, score: float,
                      reviewer_id: str, rationale: str = "") -> ReviewerScore:
        """
        Record a human reviewer's score for a criterion of the item's current phase

        The human assessor serves the latest recorded score when the gate runs.

        Raises:
            PreconditionFailedError: Missing reviewer, terminal item, unknown
                criterion, or a score outside 0-100
        """
        if not reviewer_id:
            raise PreconditionFailedError("reviewer_id is required to record a score")
        if isinstance(score, bool) or not isinstance(score, (int, float)) \
                or not math.isfinite(score) or not 0 <= score <= 100:
            raise PreconditionFailedError(f"Score must be a number from 0 to 100, got {score!r}")

        item = self.store.get_work_item(work_item_id)
        if item.status.is_terminal:
            raise PreconditionFailedError(f"Work item {item.id} is already {item.status.value}")
        self._check_registry(item)
        phase = self.registry.definition_for(item.phase)
        try:
            phase.criterion(criterion_id)
        except KeyError:
            raise PreconditionFailedError(
                f"Phase {phase.ordinal} ({phase.name}) has no criterion '{criterion_id}'"
            )

        review = self.store.put_reviewer_score(ReviewerScore(
            work_item_id=item.id,
            phase=item.phase,
            criterion_id=criterion_id,
            score=float(score),
            reviewer=reviewer_id,
            rationale=rationale,
        ))
        self.audit.record(item.id, AuditEventType.REVIEW_RECORDED, actor=reviewer_id,
                          phase=item.phase, criterion_id=criterion_id, score=review.score)
        logger.info("Reviewer %s scored %s on %s phase %d: %.1f",
                    reviewer_id, criterion_id, item.id, item.phase, review.score)
        return review

    def get_status(self, work_item_id: str) -> StatusReport:
        item = self.store.get_work_item(work_item_id)
        results = self.store.list_gate_results(item.id)
        phase_name = None
        if item.phase <= self.registry.last_ordinal:
            phase_name = self.registry.definition_for(item.phase).name
        return StatusReport(
            work_item_id=item.id,
            phase=item.phase,
            phase_name=phase_name,
            status=item.status,
            attempt=item.attempt,
            awaiting_override=item.pending_escalation is not None,
            last_gate_result=results[-1] if results else None,
        )

    def get_history(self, work_item_id: str) -> AuditHistory:
        """Audit trail of the work item, oldest first; iterable more than once"""
        self.store.get_work_item(work_item_id)
        return self.audit.history(work_item_id)

    def list_work_items(self, owner_id: Optional[str] = None,
                        status: Optional[Union[WorkItemStatus, str]] = None,
                        phase: Optional[int] = None) -> List[WorkItem]:
        if status is not None:
            status = WorkItemStatus(status)
        return self.store.list_work_items(owner_id=owner_id, status=status, phase=phase)

    def gate_summary(self, work_item_id: str) -> List[Dict[str, Any]]:
        """Per-phase attempts, last score, last decision and when it was evaluated"""
        self.store.get_work_item(work_item_id)
        by_phase: Dict[int, List[GateResult]] = {}
        for result in self.store.list_gate_results(work_item_id):
            by_phase.setdefault(result.phase, []).append(result)

        summary = []
        for phase in self.registry.phases:
            results = by_phase.get(phase.ordinal, [])
            last = results[-1] if results else None
            summary.append({
                "phase": phase.ordinal,
                "name": phase.name,
                "attempts": len(results),
                "last_score": round(last.score, 2) if last else None,
                "last_decision": last.decision.value if last else None,
                "last_evaluated_at": last.created_at.isoformat() if last else None,
                "weak_criteria": list(last.weak_criteria) if last else [],
                "degraded": any(r.degraded for r in results),
            })
        return summary

    # ------------------------------------------------------------------
    # Transition table
    # ------------------------------------------------------------------

    def _on_pass(self, item: WorkItem, gate_result: Optional[GateResult]) -> Tuple[WorkItem, PendingEvents]:
        next_ordinal = self.registry.next_ordinal(item.phase)
        if next_ordinal is TERMINAL:
            updated = replace(item, phase=self.registry.terminal_ordinal,
                              status=WorkItemStatus.PASSED_ALL,
                              attempt=item.attempt + 1, phase_failures=0)
            return updated, [(AuditEventType.PHASE_ADVANCED, {
                "from_phase": item.phase,
                "to_phase": updated.phase,
                "status": updated.status.value,
            })]

        updated = replace(item, phase=next_ordinal, attempt=item.attempt + 1, phase_failures=0)
        return updated, [
            (AuditEventType.PHASE_ADVANCED, {
                "from_phase": item.phase,
                "to_phase": next_ordinal,
                "status": updated.status.value,
            }),
            (AuditEventType.PHASE_ENTERED, {
                "phase": next_ordinal,
                "phase_name": self.registry.definition_for(next_ordinal).name,
                "attempt": updated.attempt,
            }),
        ]

    def _on_fail(self, item: WorkItem, gate_result: Optional[GateResult]) -> Tuple[WorkItem, PendingEvents]:
        failures = item.phase_failures + 1
        if failures > self.config.retry_budget:
            updated = replace(item, status=WorkItemStatus.STALLED,
                              attempt=item.attempt + 1, phase_failures=failures)
            return updated, [(AuditEventType.WORK_ITEM_STALLED, {
                "phase": item.phase,
                "failed_attempts": failures,
                "retry_budget": self.config.retry_budget,
            })]
        return replace(item, attempt=item.attempt + 1, phase_failures=failures), []

    def _on_escalate(self, item: WorkItem, gate_result: Optional[GateResult]) -> Tuple[WorkItem, PendingEvents]:
        return replace(item, pending_escalation=item.attempt), []

    def _apply(
        self,
        item: WorkItem,
        gate_result: Optional[GateResult],
        actor: str,
        decision: Optional[Decision] = None,
        leading: Optional[PendingEvents] = None
    ) -> Tuple[WorkItem, List[AuditEntry]]:
        """Store the transition for `decision` (default: the gate's), clearing any lease"""
        decision = decision or gate_result.decision
        updated, events = self._transitions[decision](item, gate_result)
        updated = replace(updated, lease_token=None, lease_expires_at=None)

        stored = self.store.compare_and_swap(updated, item.version)
        entries = [
            self.audit.record(stored.id, event_type, actor=actor, **payload)
            for event_type, payload in (leading or []) + events
        ]

        if stored.phase != item.phase:
            logger.info("Work item %s moved from phase %d to %s", stored.id, item.phase,
                        stored.phase if stored.status == WorkItemStatus.ACTIVE else stored.status.value)
            self._fire_deliverables(stored, stored.phase)
        elif stored.status == WorkItemStatus.STALLED:
            logger.warning("Work item %s stalled in phase %d after %d failed attempts",
                           stored.id, stored.phase, stored.phase_failures)
        return stored, entries

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record_gate(self, gate_result: GateResult) -> AuditEntry:
        return self.audit.record(
            gate_result.work_item_id,
            AuditEventType.GATE_EVALUATED,
            phase=gate_result.phase,
            attempt=gate_result.attempt,
            gate_result_id=gate_result.id,
            score=round(gate_result.score, 2),
            decision=gate_result.decision.value,
            degraded=gate_result.degraded,
            timed_out=gate_result.timed_out,
            weak_criteria=list(gate_result.weak_criteria),
        )

    def _gate_audited(self, gate_result: GateResult) -> bool:
        return any(
            e.event_type == AuditEventType.GATE_EVALUATED
            and e.payload.get("gate_result_id") == gate_result.id
            for e in self.audit.history(gate_result.work_item_id)
        )

    def _check_registry(self, item: WorkItem) -> None:
        if item.registry and item.registry != self.registry.name:
            raise PreconditionFailedError(
                f"Work item {item.id} runs under registry '{item.registry}', not '{self.registry.name}'"
            )

    def _acquire_lease(self, item: WorkItem, now: datetime) -> WorkItem:
        phase = self.registry.definition_for(item.phase)
        duration = self.gate_evaluator.timeout_seconds(phase) + self.config.lease_margin_seconds
        leased = replace(item, lease_token=uuid.uuid4().hex,
                         lease_expires_at=now + timedelta(seconds=duration))
        try:
            return self.store.compare_and_swap(leased, item.version)
        except ConcurrencyError:
            raise GateInProgressError(item.id)

    def _release_lease(self, leased: WorkItem) -> None:
        try:
            current = self.store.get_work_item(leased.id)
            if current.lease_token != leased.lease_token:
                return
            self.store.compare_and_swap(
                replace(current, lease_token=None, lease_expires_at=None), current.version
            )
        except PhasegateError as e:
            # The lease still expires on its own
            logger.warning("Could not release lease on %s: %s", leased.id, e)

    def _fire_deliverables(self, item: WorkItem, phase_ordinal: int) -> None:
        if self.deliverables is not None:
            self.deliverables.on_phase_entered(item, phase_ordinal)
