"""
Criterion scorer.

Asks the assessor for one criterion's score, retrying transient failures
with exponential backoff. When the assessor stays unreachable the criterion
gets the phase's neutral fallback score instead, so a gate can always be
evaluated. Every assessment is persisted before it is returned.
"""
import logging
import math
import time
from typing import Callable, Optional

from .assessors.base import Assessor, AssessmentRequest, AssessorResponse
from .audit import AuditLog
from .config import ScoringConfig
from .error_handling import DuplicateRecordError, MalformedResponseError, RetryHandler
from .models import (
    Assessment,
    AssessorSource,
    AuditEventType,
    Criterion,
    PhaseDefinition,
    WorkItem,
)
from .store import Store

logger = logging.getLogger(__name__)

MIN_SCORE = 0.0
MAX_SCORE = 100.0


class CriterionScorer:
    """Produces exactly one stored Assessment per (work item, phase, criterion, attempt)"""

    def __init__(
        self,
        store: Store,
        audit: AuditLog,
        assessor: Assessor,
        config: Optional[ScoringConfig] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.store = store
        self.audit = audit
        self.assessor = assessor
        self.config = config or ScoringConfig()
        self.retry_handler = RetryHandler(self.config.retry_policy(), sleep=sleep)

    def max_duration_seconds(self) -> float:
        """Longest one criterion can take: every attempt timing out plus the backoff between them"""
        policy = self.retry_handler.policy
        return self.config.assessor_timeout_seconds * policy.max_attempts + policy.total_delay_seconds()

    def score(self, work_item: WorkItem, phase: PhaseDefinition, criterion: Criterion,
              attempt: int) -> Assessment:
        """
        Score one criterion

        Returns the stored assessment, which may have been written by a
        concurrent caller for the same key.
        """
        existing = self.store.get_assessment(work_item.id, phase.ordinal, criterion.id, attempt)
        if existing is not None:
            return existing

        request = AssessmentRequest(
            work_item_id=work_item.id,
            payload=work_item.payload,
            phase=phase.ordinal,
            phase_name=phase.name,
            criterion_id=criterion.id,
            criterion_prompt=criterion.prompt,
            attempt=attempt,
            timeout_seconds=self.config.assessor_timeout_seconds,
        )

        try:
            response = self.retry_handler.execute(self._ask, request)
        except self.retry_handler.policy.retryable_exceptions as e:
            logger.warning(
                "Assessor failed for %s/%s after %d attempts (%s); using fallback score %.1f",
                work_item.id, criterion.id, self.retry_handler.policy.max_attempts, e,
                phase.fallback_score,
            )
            return self.fallback(work_item, phase, criterion, attempt,
                                 reason=f"{type(e).__name__}: {e}")

        if MIN_SCORE <= response.score <= MAX_SCORE:
            return self._persist(Assessment(
                work_item_id=work_item.id,
                phase=phase.ordinal,
                criterion_id=criterion.id,
                attempt=attempt,
                score=float(response.score),
                rationale=response.rationale,
                source=self.assessor.source,
            ))

        clamped = min(max(response.score, MIN_SCORE), MAX_SCORE)
        logger.warning("Score %.1f for %s/%s out of range, clamped to %.1f",
                       response.score, work_item.id, criterion.id, clamped)
        assessment = Assessment(
            work_item_id=work_item.id,
            phase=phase.ordinal,
            criterion_id=criterion.id,
            attempt=attempt,
            score=clamped,
            rationale=response.rationale,
            source=AssessorSource.FALLBACK,
        )
        return self._persist(assessment, degraded_reason=f"score {response.score} out of range")

    def fallback(self, work_item: WorkItem, phase: PhaseDefinition, criterion: Criterion,
                 attempt: int, reason: str) -> Assessment:
        """Store the neutral fallback score for a criterion the assessor could not score"""
        assessment = Assessment(
            work_item_id=work_item.id,
            phase=phase.ordinal,
            criterion_id=criterion.id,
            attempt=attempt,
            score=phase.fallback_score,
            rationale=f"Fallback score: {reason}",
            source=AssessorSource.FALLBACK,
        )
        return self._persist(assessment, degraded_reason=reason)

    def _ask(self, request: AssessmentRequest) -> AssessorResponse:
        try:
            response = self.assessor.assess(request)
        except self.retry_handler.policy.retryable_exceptions:
            raise
        except Exception as e:
            # Any other assessor failure is treated as an unusable answer
            raise MalformedResponseError(
                f"Assessor '{self.assessor.name()}' failed: {type(e).__name__}: {e}"
            ) from e
        score = response.score
        if isinstance(score, bool) or not isinstance(score, (int, float)) or math.isnan(score):
            raise MalformedResponseError(f"Score is not a number: {score!r}")
        return response

    def _persist(self, assessment: Assessment, degraded_reason: Optional[str] = None) -> Assessment:
        try:
            self.store.add_assessment(assessment)
        except DuplicateRecordError:
            stored = self.store.get_assessment(
                assessment.work_item_id, assessment.phase, assessment.criterion_id, assessment.attempt
            )
            logger.debug("Assessment for %s/%s already stored, keeping it",
                         assessment.work_item_id, assessment.criterion_id)
            return stored

        if degraded_reason is not None:
            self.audit.record(
                assessment.work_item_id,
                AuditEventType.ASSESSMENT_DEGRADED,
                phase=assessment.phase,
                criterion_id=assessment.criterion_id,
                attempt=assessment.attempt,
                score=assessment.score,
                reason=degraded_reason,
            )
        return assessment
