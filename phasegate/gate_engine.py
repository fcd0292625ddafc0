"""
Weighted quality gate evaluation.

A gate turns the per-criterion assessments of one phase attempt into a
single weighted score and a decision:

    score >= pass_threshold                     -> pass
    escalate_threshold <= score < pass_threshold -> escalate
    score < escalate_threshold                  -> fail

Criteria are scored concurrently. An evaluation that outlives its overall
timeout is failed, with fallback scores for whatever was still outstanding.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Iterable, List, Optional, Sequence

from .config import GateConfig
from .error_handling import DuplicateRecordError, PreconditionFailedError
from .models import Assessment, Criterion, Decision, GateResult, PhaseDefinition, WorkItem
from .registry import PhaseRegistry
from .scorer import CriterionScorer
from .store import Store

logger = logging.getLogger(__name__)


def weighted_score(assessments: Iterable[Assessment], criteria: Sequence[Criterion]) -> float:
    """
    Σ(score × weight) / Σ(weight) over the phase's criteria

    Pure function of the assessment set; multiplying every weight by the
    same positive factor leaves the result unchanged.

    Raises:
        ValueError: A criterion has no assessment
    """
    by_criterion = {a.criterion_id: a.score for a in assessments}
    missing = [c.id for c in criteria if c.id not in by_criterion]
    if missing:
        raise ValueError(f"No assessment for criteria: {', '.join(missing)}")

    total_weight = sum(c.weight for c in criteria)
    if total_weight <= 0:
        raise ValueError("Criterion weights must sum to a positive number")
    return sum(by_criterion[c.id] * c.weight for c in criteria) / total_weight


def decide(score: float, phase: PhaseDefinition) -> Decision:
    """Map a weighted score to a decision; both thresholds are inclusive lower bounds"""
    if score >= phase.pass_threshold:
        return Decision.PASS
    if score >= phase.escalate_threshold:
        return Decision.ESCALATE
    return Decision.FAIL


def weak_criteria(assessments: Iterable[Assessment], criteria: Sequence[Criterion],
                  threshold: float) -> tuple:
    """Ids of criteria scoring below `threshold`, in registry order"""
    by_criterion = {a.criterion_id: a.score for a in assessments}
    return tuple(c.id for c in criteria if by_criterion.get(c.id, threshold) < threshold)


class GateEvaluator:
    """Evaluates the gate of one phase attempt and stores its GateResult"""

    def __init__(
        self,
        store: Store,
        scorer: CriterionScorer,
        registry: PhaseRegistry,
        config: Optional[GateConfig] = None
    ):
        self.store = store
        self.scorer = scorer
        self.registry = registry
        self.config = config or GateConfig()

    def timeout_seconds(self, phase: PhaseDefinition) -> float:
        """Overall budget: every criterion's worst case plus a fixed margin"""
        return len(phase.criteria) * self.scorer.max_duration_seconds() + self.config.timeout_margin_seconds

    def evaluate(self, work_item: WorkItem, phase_ordinal: int, attempt: int) -> GateResult:
        """
        Evaluate a phase gate for one attempt

        Criteria already assessed for this attempt (by an interrupted earlier
        run) are reused; only the missing ones are scored.

        Raises:
            PreconditionFailedError: The work item has not reached the phase
            DuplicateRecordError: The attempt already has a GateResult
        """
        if phase_ordinal > work_item.phase:
            raise PreconditionFailedError(
                f"Work item {work_item.id} is in phase {work_item.phase}, cannot evaluate phase {phase_ordinal}"
            )

        if self.store.get_gate_result(work_item.id, phase_ordinal, attempt) is not None:
            raise DuplicateRecordError(
                f"Gate for {work_item.id} phase {phase_ordinal} attempt {attempt} was already evaluated"
            )

        phase = self.registry.definition_for(phase_ordinal)
        assessments = {
            a.criterion_id: a
            for a in self.store.list_assessments(work_item.id, phase_ordinal, attempt)
        }
        missing = [c for c in phase.criteria if c.id not in assessments]

        timed_out = False
        if missing:
            timed_out = self._score_missing(work_item, phase, attempt, missing, assessments)

        ordered: List[Assessment] = [assessments[c.id] for c in phase.criteria]
        score = weighted_score(ordered, phase.criteria)
        decision = Decision.FAIL if timed_out else decide(score, phase)

        result = GateResult(
            work_item_id=work_item.id,
            phase=phase_ordinal,
            attempt=attempt,
            score=score,
            decision=decision,
            assessment_ids=tuple(a.id for a in ordered),
            degraded=any(a.degraded for a in ordered),
            timed_out=timed_out,
            weak_criteria=weak_criteria(ordered, phase.criteria, self.config.weak_score_threshold),
        )

        self.store.add_gate_result(result)
        logger.info(
            "Gate %s phase %d attempt %d: score=%.1f decision=%s%s%s",
            work_item.id, phase_ordinal, attempt, score, decision.value,
            " (degraded)" if result.degraded else "",
            " (timed out)" if timed_out else "",
        )
        return result

    def _score_missing(self, work_item: WorkItem, phase: PhaseDefinition, attempt: int,
                       missing: List[Criterion], assessments: dict) -> bool:
        """Score `missing` concurrently into `assessments`; returns True on overall timeout"""
        timeout = self.timeout_seconds(phase)
        executor = ThreadPoolExecutor(
            max_workers=min(len(missing), self.config.max_workers),
            thread_name_prefix="phasegate-gate",
        )
        try:
            futures = {
                executor.submit(self.scorer.score, work_item, phase, criterion, attempt): criterion
                for criterion in missing
            }
            done, not_done = wait(futures, timeout=timeout)
        finally:
            # Workers still blocked on the assessor are abandoned, not joined
            executor.shutdown(wait=False, cancel_futures=True)

        for future in done:
            assessment = future.result()
            assessments[assessment.criterion_id] = assessment

        if not not_done:
            return False

        logger.warning("Gate %s phase %d attempt %d timed out after %.1fs with %d criteria outstanding",
                       work_item.id, phase.ordinal, attempt, timeout, len(not_done))
        for future in not_done:
            criterion = futures[future]
            assessments[criterion.id] = self.scorer.fallback(
                work_item, phase, criterion, attempt, reason=f"gate timed out after {timeout:.1f}s"
            )
        return True
