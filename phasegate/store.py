"""
Persistence for work items, assessments, gate results and the audit trail.

Two backends share one contract:
- InMemoryStore: process-local, for tests and dry runs
- SQLiteStore: durable, WAL mode with busy_timeout, safe across processes

Assessments, gate results and audit entries are append-only; their natural
keys are unique so repeated writes fail with DuplicateRecordError instead of
overwriting. Reviewer scores are the one upserted record: the latest
score for a criterion wins. Work items are updated only through
compare_and_swap().
"""
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union
import json
import logging
import sqlite3
import threading
import time

from .error_handling import (
    ConcurrencyError,
    DuplicateRecordError,
    PhasegateError,
    WorkItemNotFoundError,
)
from .models import (
    Assessment,
    AssessorSource,
    AuditEntry,
    AuditEventType,
    Decision,
    GateResult,
    ReviewerScore,
    WorkItem,
    WorkItemStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class DatabaseError(PhasegateError):
    """Raised when a database operation fails."""
    pass


def _ts(value: datetime) -> str:
    # Fixed-width timestamps so text ordering matches time ordering
    return value.isoformat(timespec="microseconds")


class Store(ABC):
    """Persistence contract required by the engine"""

    # ---- work items ------------------------------------------------------

    @abstractmethod
    def create_work_item(self, item: WorkItem) -> WorkItem:
        """Insert a new work item. Raises DuplicateRecordError if the id exists."""

    @abstractmethod
    def get_work_item(self, work_item_id: str) -> WorkItem:
        """Return a copy of the work item. Raises WorkItemNotFoundError."""

    @abstractmethod
    def compare_and_swap(self, item: WorkItem, expected_version: int) -> WorkItem:
        """
        Replace the stored work item if its version still equals expected_version.

        Returns the stored copy with version incremented and updated_at set.

        Raises:
            ConcurrencyError: The stored version moved on
            WorkItemNotFoundError: No such work item
        """

    @abstractmethod
    def list_work_items(self, owner_id: Optional[str] = None,
                        status: Optional[WorkItemStatus] = None,
                        phase: Optional[int] = None) -> List[WorkItem]:
        """Work items matching all given filters, oldest first"""

    # ---- assessments -----------------------------------------------------

    @abstractmethod
    def add_assessment(self, assessment: Assessment) -> Assessment:
        """Raises DuplicateRecordError on an existing (item, phase, criterion, attempt)."""

    @abstractmethod
    def get_assessment(self, work_item_id: str, phase: int, criterion_id: str,
                       attempt: int) -> Optional[Assessment]:
        pass

    @abstractmethod
    def list_assessments(self, work_item_id: str, phase: int, attempt: int) -> List[Assessment]:
        pass

    # ---- gate results ----------------------------------------------------

    @abstractmethod
    def add_gate_result(self, result: GateResult) -> GateResult:
        """Raises DuplicateRecordError on an existing (item, phase, attempt)."""

    @abstractmethod
    def get_gate_result(self, work_item_id: str, phase: int, attempt: int) -> Optional[GateResult]:
        pass

    @abstractmethod
    def list_gate_results(self, work_item_id: str) -> List[GateResult]:
        """All gate results of a work item ordered by attempt"""

    # ---- reviewer scores -------------------------------------------------

    @abstractmethod
    def put_reviewer_score(self, review: ReviewerScore) -> ReviewerScore:
        """Insert or replace the score for (item, phase, criterion)"""

    @abstractmethod
    def get_reviewer_score(self, work_item_id: str, phase: int,
                           criterion_id: str) -> Optional[ReviewerScore]:
        pass

    # ---- audit -----------------------------------------------------------

    @abstractmethod
    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        """Append an entry and return it with its sequence number assigned"""

    @abstractmethod
    def iter_audit(self, work_item_id: Optional[str] = None) -> Iterator[AuditEntry]:
        """Entries ordered by (timestamp, sequence); all work items when id is None"""

    def close(self) -> None:
        pass


class InMemoryStore(Store):
    """
    Thread-safe in-process store.

    Records are kept as dicts so callers never share mutable state with it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._items: Dict[str, dict] = {}
        self._assessments: Dict[Tuple[str, int, str, int], dict] = {}
        self._gate_results: Dict[Tuple[str, int, int], dict] = {}
        self._reviews: Dict[Tuple[str, int, str], dict] = {}
        self._audit: List[dict] = []
        self._sequence = 0

    def create_work_item(self, item: WorkItem) -> WorkItem:
        with self._lock:
            if item.id in self._items:
                raise DuplicateRecordError(f"Work item {item.id} already exists")
            self._items[item.id] = item.to_dict()
            return WorkItem.from_dict(self._items[item.id])

    def get_work_item(self, work_item_id: str) -> WorkItem:
        with self._lock:
            data = self._items.get(work_item_id)
            if data is None:
                raise WorkItemNotFoundError(f"No work item {work_item_id}")
            return WorkItem.from_dict(data)

    def compare_and_swap(self, item: WorkItem, expected_version: int) -> WorkItem:
        with self._lock:
            current = self._items.get(item.id)
            if current is None:
                raise WorkItemNotFoundError(f"No work item {item.id}")
            if current["version"] != expected_version:
                raise ConcurrencyError(
                    f"Work item {item.id} is at version {current['version']}, expected {expected_version}"
                )
            updated = replace(item, version=expected_version + 1, updated_at=utcnow())
            self._items[item.id] = updated.to_dict()
            return WorkItem.from_dict(self._items[item.id])

    def list_work_items(self, owner_id=None, status=None, phase=None) -> List[WorkItem]:
        with self._lock:
            items = [WorkItem.from_dict(d) for d in self._items.values()]
        return sorted(
            (i for i in items
             if (owner_id is None or i.owner_id == owner_id)
             and (status is None or i.status == status)
             and (phase is None or i.phase == phase)),
            key=lambda i: i.created_at,
        )

    def add_assessment(self, assessment: Assessment) -> Assessment:
        key = (assessment.work_item_id, assessment.phase, assessment.criterion_id, assessment.attempt)
        with self._lock:
            if key in self._assessments:
                raise DuplicateRecordError(f"Assessment already recorded for {key}")
            self._assessments[key] = assessment.to_dict()
        return assessment

    def get_assessment(self, work_item_id, phase, criterion_id, attempt) -> Optional[Assessment]:
        with self._lock:
            data = self._assessments.get((work_item_id, phase, criterion_id, attempt))
        return Assessment.from_dict(data) if data else None

    def list_assessments(self, work_item_id, phase, attempt) -> List[Assessment]:
        with self._lock:
            return [
                Assessment.from_dict(d) for (wi, p, _, a), d in self._assessments.items()
                if wi == work_item_id and p == phase and a == attempt
            ]

    def add_gate_result(self, result: GateResult) -> GateResult:
        key = (result.work_item_id, result.phase, result.attempt)
        with self._lock:
            if key in self._gate_results:
                raise DuplicateRecordError(f"Gate result already recorded for {key}")
            self._gate_results[key] = result.to_dict()
        return result

    def get_gate_result(self, work_item_id, phase, attempt) -> Optional[GateResult]:
        with self._lock:
            data = self._gate_results.get((work_item_id, phase, attempt))
        return GateResult.from_dict(data) if data else None

    def list_gate_results(self, work_item_id) -> List[GateResult]:
        with self._lock:
            results = [GateResult.from_dict(d) for (wi, _, _), d in self._gate_results.items()
                       if wi == work_item_id]
        return sorted(results, key=lambda r: r.attempt)

    def put_reviewer_score(self, review: ReviewerScore) -> ReviewerScore:
        with self._lock:
            self._reviews[(review.work_item_id, review.phase, review.criterion_id)] = review.to_dict()
        return review

    def get_reviewer_score(self, work_item_id, phase, criterion_id) -> Optional[ReviewerScore]:
        with self._lock:
            data = self._reviews.get((work_item_id, phase, criterion_id))
        return ReviewerScore.from_dict(data) if data else None

    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            self._sequence += 1
            stored = replace(entry, sequence=self._sequence)
            self._audit.append(stored.to_dict())
        return stored

    def iter_audit(self, work_item_id=None) -> Iterator[AuditEntry]:
        with self._lock:
            snapshot = [AuditEntry.from_dict(d) for d in self._audit
                        if work_item_id is None or d["work_item_id"] == work_item_id]
        snapshot.sort(key=lambda e: (e.timestamp, e.sequence))
        return iter(snapshot)


class SQLiteStore(Store):
    """
    SQLite-backed store.

    Features:
    - WAL mode for concurrent readers during writes
    - busy_timeout plus retry for transient lock contention
    - UNIQUE constraints as idempotency keys for immutable records
    - Version-checked UPDATE for compare-and-swap on work items
    """

    BUSY_TIMEOUT_MS = 5000
    MAX_RETRIES = 3
    RETRY_DELAY_MS = 100
    PAGE_SIZE = 200

    def __init__(self, db_path: Union[str, Path]):
        """
        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute(f"PRAGMA busy_timeout = {self.BUSY_TIMEOUT_MS}")
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS work_items (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    phase INTEGER NOT NULL,
                    version INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    data TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_work_items_owner ON work_items(owner_id);

                CREATE TABLE IF NOT EXISTS assessments (
                    id TEXT PRIMARY KEY,
                    work_item_id TEXT NOT NULL,
                    phase INTEGER NOT NULL,
                    criterion_id TEXT NOT NULL,
                    attempt INTEGER NOT NULL,
                    score REAL NOT NULL,
                    rationale TEXT NOT NULL,
                    source TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE(work_item_id, phase, criterion_id, attempt)
                );

                CREATE TABLE IF NOT EXISTS gate_results (
                    id TEXT PRIMARY KEY,
                    work_item_id TEXT NOT NULL,
                    phase INTEGER NOT NULL,
                    attempt INTEGER NOT NULL,
                    score REAL NOT NULL,
                    decision TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE(work_item_id, phase, attempt)
                );

                CREATE TABLE IF NOT EXISTS reviewer_scores (
                    work_item_id TEXT NOT NULL,
                    phase INTEGER NOT NULL,
                    criterion_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (work_item_id, phase, criterion_id)
                );

                CREATE TABLE IF NOT EXISTS audit_log (
                    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
                    work_item_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_audit_item ON audit_log(work_item_id, timestamp, sequence);
            """)

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute one statement, retrying while the database is locked"""
        for attempt in range(self.MAX_RETRIES):
            try:
                with self._lock:
                    return self._conn.execute(sql, params)
            except sqlite3.IntegrityError:
                raise
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) and attempt < self.MAX_RETRIES - 1:
                    time.sleep(self.RETRY_DELAY_MS / 1000)
                    continue
                raise DatabaseError(f"Database operation failed: {e}")
        raise DatabaseError("Database operation failed: retries exhausted")

    def _fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._execute(sql, params).fetchone()

    # ---- work items ------------------------------------------------------

    def create_work_item(self, item: WorkItem) -> WorkItem:
        try:
            self._execute(
                "INSERT INTO work_items (id, owner_id, status, phase, version, created_at, data) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (item.id, item.owner_id, item.status.value, item.phase, item.version,
                 _ts(item.created_at), json.dumps(item.to_dict())),
            )
        except sqlite3.IntegrityError:
            raise DuplicateRecordError(f"Work item {item.id} already exists")
        return self.get_work_item(item.id)

    def get_work_item(self, work_item_id: str) -> WorkItem:
        row = self._fetchone("SELECT data FROM work_items WHERE id = ?", (work_item_id,))
        if row is None:
            raise WorkItemNotFoundError(f"No work item {work_item_id}")
        return WorkItem.from_dict(json.loads(row["data"]))

    def compare_and_swap(self, item: WorkItem, expected_version: int) -> WorkItem:
        """Uses BEGIN IMMEDIATE so the version check and the update share one write lock"""
        updated = replace(item, version=expected_version + 1, updated_at=utcnow())
        with self._lock:
            self._execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT version FROM work_items WHERE id = ?", (item.id,)
                ).fetchone()
                if row is None:
                    raise WorkItemNotFoundError(f"No work item {item.id}")
                if row["version"] != expected_version:
                    raise ConcurrencyError(
                        f"Work item {item.id} is at version {row['version']}, expected {expected_version}"
                    )
                self._conn.execute(
                    "UPDATE work_items SET status = ?, phase = ?, version = ?, data = ? "
                    "WHERE id = ? AND version = ?",
                    (updated.status.value, updated.phase, updated.version,
                     json.dumps(updated.to_dict()), item.id, expected_version),
                )
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
        return updated

    def list_work_items(self, owner_id=None, status=None, phase=None) -> List[WorkItem]:
        clauses, params = [], []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(WorkItemStatus(status).value)
        if phase is not None:
            clauses.append("phase = ?")
            params.append(phase)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(f"SELECT data FROM work_items {where} ORDER BY created_at", tuple(params))
        return [WorkItem.from_dict(json.loads(r["data"])) for r in rows]

    # ---- assessments -----------------------------------------------------

    def add_assessment(self, assessment: Assessment) -> Assessment:
        try:
            self._execute(
                "INSERT INTO assessments (id, work_item_id, phase, criterion_id, attempt, score, "
                "rationale, source, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (assessment.id, assessment.work_item_id, assessment.phase, assessment.criterion_id,
                 assessment.attempt, assessment.score, assessment.rationale,
                 assessment.source.value, _ts(assessment.created_at)),
            )
        except sqlite3.IntegrityError:
            raise DuplicateRecordError(
                f"Assessment already recorded for {assessment.work_item_id}/"
                f"{assessment.phase}/{assessment.criterion_id}/{assessment.attempt}"
            )
        return assessment

    @staticmethod
    def _row_to_assessment(row: sqlite3.Row) -> Assessment:
        return Assessment(
            id=row["id"],
            work_item_id=row["work_item_id"],
            phase=row["phase"],
            criterion_id=row["criterion_id"],
            attempt=row["attempt"],
            score=row["score"],
            rationale=row["rationale"],
            source=AssessorSource(row["source"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def get_assessment(self, work_item_id, phase, criterion_id, attempt) -> Optional[Assessment]:
        row = self._fetchone(
            "SELECT * FROM assessments WHERE work_item_id = ? AND phase = ? "
            "AND criterion_id = ? AND attempt = ?",
            (work_item_id, phase, criterion_id, attempt),
        )
        return self._row_to_assessment(row) if row else None

    def list_assessments(self, work_item_id, phase, attempt) -> List[Assessment]:
        rows = self._fetchall(
            "SELECT * FROM assessments WHERE work_item_id = ? AND phase = ? AND attempt = ?",
            (work_item_id, phase, attempt),
        )
        return [self._row_to_assessment(r) for r in rows]

    # ---- gate results ----------------------------------------------------

    def add_gate_result(self, result: GateResult) -> GateResult:
        try:
            self._execute(
                "INSERT INTO gate_results (id, work_item_id, phase, attempt, score, decision, "
                "data, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (result.id, result.work_item_id, result.phase, result.attempt, result.score,
                 result.decision.value, json.dumps(result.to_dict()), _ts(result.created_at)),
            )
        except sqlite3.IntegrityError:
            raise DuplicateRecordError(
                f"Gate result already recorded for {result.work_item_id}/{result.phase}/{result.attempt}"
            )
        return result

    def get_gate_result(self, work_item_id, phase, attempt) -> Optional[GateResult]:
        row = self._fetchone(
            "SELECT data FROM gate_results WHERE work_item_id = ? AND phase = ? AND attempt = ?",
            (work_item_id, phase, attempt),
        )
        return GateResult.from_dict(json.loads(row["data"])) if row else None

    def list_gate_results(self, work_item_id) -> List[GateResult]:
        rows = self._fetchall(
            "SELECT data FROM gate_results WHERE work_item_id = ? ORDER BY attempt",
            (work_item_id,),
        )
        return [GateResult.from_dict(json.loads(r["data"])) for r in rows]

    # ---- reviewer scores -------------------------------------------------

    def put_reviewer_score(self, review: ReviewerScore) -> ReviewerScore:
        self._execute(
            "INSERT OR REPLACE INTO reviewer_scores (work_item_id, phase, criterion_id, data) "
            "VALUES (?, ?, ?, ?)",
            (review.work_item_id, review.phase, review.criterion_id, json.dumps(review.to_dict())),
        )
        return review

    def get_reviewer_score(self, work_item_id, phase, criterion_id) -> Optional[ReviewerScore]:
        row = self._fetchone(
            "SELECT data FROM reviewer_scores WHERE work_item_id = ? AND phase = ? AND criterion_id = ?",
            (work_item_id, phase, criterion_id),
        )
        return ReviewerScore.from_dict(json.loads(row["data"])) if row else None

    # ---- audit -----------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> AuditEntry:
        cursor = self._execute(
            "INSERT INTO audit_log (work_item_id, event_type, payload, actor, timestamp) "
            "VALUES (?, ?, ?, ?, ?)",
            (entry.work_item_id, entry.event_type.value, json.dumps(entry.payload),
             entry.actor, _ts(entry.timestamp)),
        )
        return replace(entry, sequence=cursor.lastrowid)

    def iter_audit(self, work_item_id=None) -> Iterator[AuditEntry]:
        """Pages through the log by (timestamp, sequence) keyset; no lock held between pages"""
        last_ts, last_seq = "", 0
        while True:
            params: list = [last_ts, last_ts, last_seq]
            item_clause = ""
            if work_item_id is not None:
                item_clause = "work_item_id = ? AND "
                params.insert(0, work_item_id)
            rows = self._fetchall(
                f"SELECT * FROM audit_log WHERE {item_clause}"
                "(timestamp > ? OR (timestamp = ? AND sequence > ?)) "
                f"ORDER BY timestamp, sequence LIMIT {self.PAGE_SIZE}",
                tuple(params),
            )
            for row in rows:
                yield AuditEntry(
                    work_item_id=row["work_item_id"],
                    event_type=AuditEventType(row["event_type"]),
                    payload=json.loads(row["payload"]),
                    actor=row["actor"],
                    timestamp=datetime.fromisoformat(row["timestamp"]),
                    sequence=row["sequence"],
                )
            if len(rows) < self.PAGE_SIZE:
                return
            last_ts, last_seq = rows[-1]["timestamp"], rows[-1]["sequence"]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def create_store(backend: str, path: Optional[str] = None) -> Store:
    """Build a store from the storage configuration section"""
    if backend == "memory":
        return InMemoryStore()
    if backend == "sqlite":
        return SQLiteStore(path or ":memory:")
    raise ValueError(f"Unknown storage backend '{backend}'")
