"""
Deliverable generation on phase entry.

Entering a phase triggers one generator call per deliverable template the
phase lists (reports, briefs, plans). Generation runs in the background and
is fire-and-forget: a failure is logged and audited but never undoes the
transition that triggered it.
"""
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from typing import List, Optional, Set

from .assessors.llm import LLMClient
from .audit import AuditLog
from .models import AuditEventType, PhaseDefinition, WorkItem
from .registry import PhaseRegistry

logger = logging.getLogger(__name__)


class Generator(ABC):
    """Produces one deliverable document for a work item"""

    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def generate(self, work_item: WorkItem, phase: PhaseDefinition, template_id: str) -> str:
        """
        Generate a deliverable

        Returns:
            Reference to (or content of) the generated document
        """
        pass


class LoggingGenerator(Generator):
    """Records deliverable requests without producing documents"""

    def __init__(self):
        self.generated: List[tuple] = []
        self._lock = threading.Lock()

    def name(self) -> str:
        return "logging"

    def generate(self, work_item: WorkItem, phase: PhaseDefinition, template_id: str) -> str:
        logger.info("Deliverable '%s' requested for %s (phase %d: %s)",
                    template_id, work_item.id, phase.ordinal, phase.name)
        with self._lock:
            self.generated.append((work_item.id, phase.ordinal, template_id))
        return f"{work_item.id}/{phase.ordinal}/{template_id}"


class LLMGenerator(Generator):
    """Drafts deliverables with a language model"""

    SYSTEM_PROMPT = (
        "You write concise, well-structured business documents in Markdown. "
        "Use only the information provided about the work item."
    )

    def __init__(self, client: Optional[LLMClient] = None, timeout_seconds: float = 120.0, **client_kwargs):
        self.client = client or LLMClient(**client_kwargs)
        self.timeout_seconds = timeout_seconds

    def name(self) -> str:
        return "llm"

    def generate(self, work_item: WorkItem, phase: PhaseDefinition, template_id: str) -> str:
        title = template_id.replace("_", " ").title()
        lines = [f"Write the '{title}' document for the phase '{phase.name}'.", "", "## Work item"]
        lines.extend(f"- {key}: {value}" for key, value in work_item.payload.items())
        return self.client.complete(self.SYSTEM_PROMPT, "\n".join(lines), timeout=self.timeout_seconds)


class DeliverableHook:
    """
    Fires deliverable generation when a work item enters a phase

    Runs generation on a background pool unless `inline` is set, in which
    case on_phase_entered() returns after all generators have finished.
    """

    def __init__(
        self,
        generator: Generator,
        audit: AuditLog,
        registry: PhaseRegistry,
        max_workers: int = 4,
        enabled: bool = True,
        inline: bool = False
    ):
        self.generator = generator
        self.audit = audit
        self.registry = registry
        self.enabled = enabled
        self.inline = inline
        self._executor = None if inline else ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="phasegate-deliverable"
        )
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def on_phase_entered(self, work_item: WorkItem, phase_ordinal: int) -> None:
        """Schedule every deliverable of the phase; never raises on generator failure"""
        if not self.enabled or phase_ordinal > self.registry.last_ordinal:
            return

        phase = self.registry.definition_for(phase_ordinal)
        for template_id in phase.deliverables:
            if self._executor is None:
                self._generate(work_item, phase, template_id)
                continue
            future = self._executor.submit(self._generate, work_item, phase, template_id)
            with self._lock:
                self._pending.add(future)
            future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _generate(self, work_item: WorkItem, phase: PhaseDefinition, template_id: str) -> None:
        try:
            reference = self.generator.generate(work_item, phase, template_id)
        except Exception as e:
            # Deliverables never roll back a transition
            logger.error("Deliverable '%s' failed for %s phase %d: %s",
                         template_id, work_item.id, phase.ordinal, e)
            self.audit.record(
                work_item.id,
                AuditEventType.DELIVERABLE_FAILED,
                phase=phase.ordinal,
                template_id=template_id,
                error=f"{type(e).__name__}: {e}",
            )
            return

        self.audit.record(
            work_item.id,
            AuditEventType.DELIVERABLE_GENERATED,
            phase=phase.ordinal,
            template_id=template_id,
            generator=self.generator.name(),
            reference=str(reference)[:200],
        )

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until scheduled deliverables finish; False if some are still running"""
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
