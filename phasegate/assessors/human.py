"""
Human reviewer assessor.

Reviewers record their scores ahead of a gate run, through the controller
or the `score` CLI command; the assessor reads them back from the store when
the gate asks. A criterion nobody has scored yet is reported as
unavailable, which the scorer turns into a fallback score.
"""

from typing import List, Optional

from ..error_handling import AssessorUnavailableError
from ..models import AssessorSource, ReviewerScore
from ..store import InMemoryStore, Store
from .base import Assessor, AssessmentRequest, AssessorResponse


class HumanAssessor(Assessor):
    """Serves scores recorded by human reviewers"""

    source = AssessorSource.HUMAN

    def __init__(self, store: Optional[Store] = None):
        """
        Args:
            store: Where reviewer scores are kept. Pass the engine's store so
                scores recorded by other processes are seen.
        """
        self.store = store or InMemoryStore()

    def name(self) -> str:
        return "human"

    def record(self, work_item_id: str, phase: int, criterion_id: str,
               score: float, rationale: str = "", reviewer: str = "") -> ReviewerScore:
        """Record a reviewer's score for a criterion of a work item's phase"""
        return self.store.put_reviewer_score(ReviewerScore(
            work_item_id=work_item_id,
            phase=phase,
            criterion_id=criterion_id,
            score=score,
            reviewer=reviewer,
            rationale=rationale,
        ))

    def pending(self, work_item_id: str, phase: int, criterion_ids) -> List[str]:
        """Criteria of the phase that still have no recorded score"""
        return [c for c in criterion_ids
                if self.store.get_reviewer_score(work_item_id, phase, c) is None]

    def assess(self, request: AssessmentRequest) -> AssessorResponse:
        review = self.store.get_reviewer_score(request.work_item_id, request.phase, request.criterion_id)
        if review is None:
            raise AssessorUnavailableError(
                f"No reviewer score for {request.criterion_id} "
                f"(work item {request.work_item_id}, phase {request.phase})"
            )
        return AssessorResponse(score=review.score, rationale=review.rationale,
                                metadata={"reviewer": review.reviewer})
