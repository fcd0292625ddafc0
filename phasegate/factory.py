"""Engine factory: builds a wired controller from configuration."""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .assessors import get_assessor
from .assessors.base import Assessor
from .assessors.llm import LLMClient
from .audit import AuditLog
from .config import PhasegateConfig
from .controller import TransitionController
from .deliverables import DeliverableHook, Generator, LLMGenerator, LoggingGenerator
from .error_handling import ConfigurationError
from .gate_engine import GateEvaluator
from .registry import PhaseRegistry, load_bundled_registry, load_registry
from .scorer import CriterionScorer
from .store import Store, create_store

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """All components of one engine instance"""
    registry: PhaseRegistry
    store: Store
    audit: AuditLog
    assessor: Assessor
    scorer: CriterionScorer
    gate_evaluator: GateEvaluator
    deliverables: DeliverableHook
    controller: TransitionController

    def close(self) -> None:
        """Drain deliverables and close the store"""
        self.deliverables.wait()
        self.deliverables.shutdown()
        self.store.close()


class EngineFactory:
    """Create engine components from a PhasegateConfig"""

    def __init__(self, config: Optional[PhasegateConfig] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            config: Engine configuration. Defaults to built-in defaults.
            sleep: Backoff sleep used by the scorer, replaceable in tests.
        """
        self.config = config or PhasegateConfig()
        self._sleep = sleep

    def create_registry(self) -> PhaseRegistry:
        cfg = self.config.registry
        if cfg.path:
            return load_registry(Path(cfg.path))
        return load_bundled_registry(cfg.name)

    def create_store(self) -> Store:
        try:
            return create_store(self.config.storage.backend, self.config.storage.path)
        except ValueError as e:
            raise ConfigurationError(str(e))

    def _llm_client(self) -> LLMClient:
        cfg = self.config.assessor
        return LLMClient(api_url=cfg.api_url, model=cfg.model, api_key_env_var=cfg.api_key_env_var)

    def create_assessor(self, store: Optional[Store] = None) -> Assessor:
        """
        Args:
            store: Engine store; the human assessor reads reviewer scores from it
        """
        cfg = self.config.assessor
        try:
            if cfg.provider == "llm":
                return get_assessor("llm", client=self._llm_client())
            if cfg.provider == "static":
                return get_assessor("static", default_score=cfg.static_score)
            if cfg.provider == "human":
                return get_assessor("human", store=store)
            return get_assessor(cfg.provider)
        except ValueError as e:
            raise ConfigurationError(str(e))

    def create_generator(self) -> Generator:
        name = self.config.deliverables.generator
        if name == "logging":
            return LoggingGenerator()
        if name == "llm":
            return LLMGenerator(client=self._llm_client())
        raise ConfigurationError(f"Unknown deliverable generator '{name}'")

    def create_engine(self, assessor: Optional[Assessor] = None,
                      store: Optional[Store] = None, inline_deliverables: bool = False) -> Engine:
        """
        Build every component and wire the controller

        Args:
            assessor: Use this assessor instead of the configured one
            store: Use this store instead of the configured one
            inline_deliverables: Generate deliverables synchronously
        """
        registry = self.create_registry()
        store = store or self.create_store()
        audit = AuditLog(store)
        assessor = assessor or self.create_assessor(store)
        scorer = CriterionScorer(store, audit, assessor, self.config.scoring, sleep=self._sleep)
        gate_evaluator = GateEvaluator(store, scorer, registry, self.config.gate)
        deliverables = DeliverableHook(
            self.create_generator(),
            audit,
            registry,
            max_workers=self.config.deliverables.max_workers,
            enabled=self.config.deliverables.enabled,
            inline=inline_deliverables,
        )
        controller = TransitionController(
            registry, store, gate_evaluator, audit, deliverables, self.config.controller
        )
        logger.debug("Engine ready: registry=%s store=%s assessor=%s",
                     registry.name, type(store).__name__, assessor.name())
        return Engine(registry, store, audit, assessor, scorer, gate_evaluator, deliverables, controller)
