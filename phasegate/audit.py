"""
Audit Log

Append-only record of everything that happens to a work item: phases
entered, gates evaluated, overrides, degraded scoring and deliverables.
Entries are never updated or deleted.
"""

from typing import Any, Dict, Iterator, Optional
import logging

from .models import SYSTEM_ACTOR, AuditEntry, AuditEventType
from .store import Store

logger = logging.getLogger(__name__)


class AuditHistory:
    """
    Lazy, restartable view over one work item's audit trail

    Each iteration queries the store again, so iterating twice yields the
    entries appended in between as well.
    """

    def __init__(self, store: Store, work_item_id: str):
        self._store = store
        self.work_item_id = work_item_id

    def __iter__(self) -> Iterator[AuditEntry]:
        return self._store.iter_audit(self.work_item_id)

    def __repr__(self) -> str:
        return f"AuditHistory(work_item_id={self.work_item_id!r})"


class AuditLog:
    """
    Audit log backed by a store

    Thread-safe as far as the underlying store is.
    """

    def __init__(self, store: Store):
        """
        Initialize audit log

        Args:
            store: Persistence collaborator that assigns sequence numbers
        """
        self._store = store

    def append(self, entry: AuditEntry) -> AuditEntry:
        """
        Append an entry

        Args:
            entry: Entry to append

        Returns:
            The stored entry with its sequence number
        """
        stored = self._store.append_audit(entry)
        logger.debug("audit %s %s #%s", entry.work_item_id, entry.event_type.value, stored.sequence)
        return stored

    def record(
        self,
        work_item_id: str,
        event_type: AuditEventType,
        actor: str = SYSTEM_ACTOR,
        **payload: Any
    ) -> AuditEntry:
        """
        Build and append an entry

        Convenience method for callers that do not hold an AuditEntry.
        """
        return self.append(AuditEntry(
            work_item_id=work_item_id,
            event_type=event_type,
            payload=payload,
            actor=actor,
        ))

    def history(self, work_item_id: str) -> AuditHistory:
        """
        Entries for a work item ordered by (timestamp, sequence)

        Returns:
            A lazy, finite iterable that can be iterated more than once
        """
        return AuditHistory(self._store, work_item_id)

    def stats(self, work_item_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Get audit log statistics

        Args:
            work_item_id: Restrict to one work item; all items when None

        Returns:
            Dict with total entry count, counts per event type and per actor
        """
        by_event: Dict[str, int] = {}
        by_actor: Dict[str, int] = {}
        items = set()
        total = 0

        for entry in self._store.iter_audit(work_item_id):
            total += 1
            items.add(entry.work_item_id)
            by_event[entry.event_type.value] = by_event.get(entry.event_type.value, 0) + 1
            by_actor[entry.actor] = by_actor.get(entry.actor, 0) + 1

        return {
            "total_entries": total,
            "work_items": len(items),
            "events": by_event,
            "actors": by_actor,
        }
