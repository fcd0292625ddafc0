"""
Assessor registry.

This module maps assessor names to implementations so hosts can pick one
from configuration.
"""

import logging
from typing import List, Type

from .base import Assessor, AssessmentRequest, AssessorResponse
from .human import HumanAssessor
from .llm import LLMAssessor, LLMClient, parse_score_response
from .static import StaticAssessor

logger = logging.getLogger(__name__)

_ASSESSORS: dict[str, Type[Assessor]] = {
    "llm": LLMAssessor,
    "human": HumanAssessor,
    "static": StaticAssessor,
}


def list_assessors() -> List[str]:
    """List all registered assessor names."""
    return list(_ASSESSORS.keys())


def get_assessor(name: str, **kwargs) -> Assessor:
    """
    Get an assessor instance by name.

    Args:
        name: Registered assessor name
        **kwargs: Passed to the assessor constructor

    Raises:
        ValueError: If the name is not registered
    """
    if name not in _ASSESSORS:
        available = ", ".join(list_assessors())
        raise ValueError(f"Unknown assessor '{name}'. Available: {available}")
    logger.debug("Using assessor '%s'", name)
    return _ASSESSORS[name](**kwargs)


__all__ = [
    "Assessor",
    "AssessmentRequest",
    "AssessorResponse",
    "HumanAssessor",
    "LLMAssessor",
    "LLMClient",
    "StaticAssessor",
    "get_assessor",
    "list_assessors",
    "parse_score_response",
]
