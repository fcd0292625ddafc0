"""
Phasegate - staged workflow engine with weighted quality gates.

Work items move through the ordered phases of a registry. Each phase exit is
guarded by a gate that scores the item against weighted criteria and decides
pass, fail or escalate.
"""

from .audit import AuditLog
from .config import ConfigManager, PhasegateConfig
from .controller import TransitionController
from .error_handling import (
    AssessorError,
    AwaitingOverrideError,
    ConcurrencyError,
    ConfigurationError,
    DuplicateRecordError,
    GateInProgressError,
    PhasegateError,
    PreconditionFailedError,
    WorkItemNotFoundError,
)
from .factory import Engine, EngineFactory
from .gate_engine import GateEvaluator, decide, weighted_score
from .models import (
    AdvanceResult,
    Assessment,
    AuditEntry,
    AuditEventType,
    Decision,
    GateResult,
    ReviewerScore,
    StatusReport,
    WorkItem,
    WorkItemStatus,
)
from .registry import PhaseRegistry, load_bundled_registry, load_registry
from .scorer import CriterionScorer
from .store import InMemoryStore, SQLiteStore, Store

__version__ = "1.0.0"

__all__ = [
    "AdvanceResult",
    "Assessment",
    "AssessorError",
    "AuditEntry",
    "AuditEventType",
    "AuditLog",
    "AwaitingOverrideError",
    "ConcurrencyError",
    "ConfigManager",
    "ConfigurationError",
    "CriterionScorer",
    "Decision",
    "DuplicateRecordError",
    "Engine",
    "EngineFactory",
    "GateEvaluator",
    "GateInProgressError",
    "GateResult",
    "InMemoryStore",
    "PhaseRegistry",
    "PhasegateConfig",
    "PhasegateError",
    "PreconditionFailedError",
    "ReviewerScore",
    "SQLiteStore",
    "StatusReport",
    "Store",
    "TransitionController",
    "WorkItem",
    "WorkItemNotFoundError",
    "WorkItemStatus",
    "decide",
    "load_bundled_registry",
    "load_registry",
    "weighted_score",
]
