"""
Base assessor interface.

An assessor is the external judge (a language model or a human reviewer)
that scores one work item against one criterion. The engine treats it as a
pure scoring oracle and handles its failures in the criterion scorer.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict

from ..models import AssessorSource


@dataclass
class AssessmentRequest:
    """What the assessor is asked to judge"""
    work_item_id: str
    payload: Dict[str, Any]
    phase: int
    phase_name: str
    criterion_id: str
    criterion_prompt: str
    attempt: int = 1
    timeout_seconds: float = 30.0


@dataclass
class AssessorResponse:
    """Raw answer from an assessor; the score is validated by the scorer"""
    score: float
    rationale: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


class Assessor(ABC):
    """
    Abstract base class for assessors.

    Implementations raise AssessorError (or TimeoutError/ConnectionError)
    when they cannot produce a score; they never invent one.
    """

    #: Tag written on assessments produced by this assessor
    source: AssessorSource = AssessorSource.AUTOMATED

    @abstractmethod
    def name(self) -> str:
        """Assessor identifier (e.g. 'llm', 'human', 'static')"""
        pass

    @abstractmethod
    def assess(self, request: AssessmentRequest) -> AssessorResponse:
        """
        Score the work item against the criterion.

        Args:
            request: Work item content plus the criterion prompt

        Returns:
            AssessorResponse with a 0-100 score and rationale

        Raises:
            AssessorError: If no score can be produced
        """
        pass
