"""Fixed-score assessor for dry runs and tests."""

from typing import Dict, Optional

from .base import Assessor, AssessmentRequest, AssessorResponse


class StaticAssessor(Assessor):
    """Returns a configured score per criterion, or a default"""

    def __init__(self, default_score: float = 75.0, scores: Optional[Dict[str, float]] = None):
        self.default_score = default_score
        self.scores = dict(scores or {})

    def name(self) -> str:
        return "static"

    def assess(self, request: AssessmentRequest) -> AssessorResponse:
        score = self.scores.get(request.criterion_id, self.default_score)
        return AssessorResponse(score=score, rationale="static score")
