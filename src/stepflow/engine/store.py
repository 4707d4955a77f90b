"""Execution record storage.

The engine treats persistence as a capability: any ExecutionStore can be
plugged into the TransitionEngine and RecoveryManager. Two reference
implementations are provided:

- InMemoryExecutionStore: dict-backed, for tests and single-process callers
- SqliteExecutionStore: SQLite table with indexed metadata columns and the
  full execution as a JSON document

Both implement optimistic concurrency: ``save(execution, expected_version=n)``
succeeds only if the stored version is still ``n`` and then stores the
execution with its own (incremented) version. A mismatch raises
StaleExecutionError so the losing writer reloads and retries.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .exceptions import ExecutionNotFound, StaleExecutionError, StoreError
from .execution import ExecutionState
from .execution_status import ExecutionStatus
from .state_config import StateConfig

if TYPE_CHECKING:
    from ..settings import EngineSettings

logger = logging.getLogger(__name__)


class ExecutionStore(ABC):
    """Abstract execution storage."""

    @abstractmethod
    def create(self, execution: ExecutionState) -> str:
        """Insert a new execution, return its id. Raises StoreError on duplicates."""
        ...

    @abstractmethod
    def load(self, execution_id: str) -> ExecutionState:
        """Load a detached copy of an execution. Raises ExecutionNotFound."""
        ...

    @abstractmethod
    def save(self, execution: ExecutionState, expected_version: int | None = None) -> None:
        """
        Persist an execution.

        Args:
            execution: State to store (its ``version`` is stored as-is)
            expected_version: Version the caller started from; None skips the check

        Raises:
            ExecutionNotFound: If the execution was never created
            StaleExecutionError: If the stored version differs from expected_version
        """
        ...

    @abstractmethod
    def query(
        self,
        *,
        workflow: str | None = None,
        status: ExecutionStatus | str | None = None,
        step: str | None = None,
        subject_type: str | None = None,
        subject_id: str | None = None,
    ) -> list[ExecutionState]:
        """Filter executions by attributes (all given filters must match)."""
        ...

    def exists(self, execution_id: str) -> bool:
        try:
            self.load(execution_id)
        except ExecutionNotFound:
            return False
        return True


def _status_value(status: ExecutionStatus | str | None) -> str | None:
    if status is None:
        return None
    return status.value if isinstance(status, ExecutionStatus) else str(status)


class InMemoryExecutionStore(ExecutionStore):
    """Dict-backed store holding detached JSON copies (thread-safe)."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create(self, execution: ExecutionState) -> str:
        with self._lock:
            if execution.id in self._records:
                raise StoreError(f"Execution '{execution.id}' already exists")
            self._records[execution.id] = execution.model_dump(mode="json")
        logger.debug(f"Execution created in memory store: {execution.id}")
        return execution.id

    def load(self, execution_id: str) -> ExecutionState:
        with self._lock:
            record = self._records.get(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        return ExecutionState.model_validate(record)

    def save(self, execution: ExecutionState, expected_version: int | None = None) -> None:
        with self._lock:
            record = self._records.get(execution.id)
            if record is None:
                raise ExecutionNotFound(execution.id)
            stored_version = int(record["version"])
            if expected_version is not None and stored_version != expected_version:
                raise StaleExecutionError(execution.id, expected_version, stored_version)
            self._records[execution.id] = execution.model_dump(mode="json")

    def query(
        self,
        *,
        workflow: str | None = None,
        status: ExecutionStatus | str | None = None,
        step: str | None = None,
        subject_type: str | None = None,
        subject_id: str | None = None,
    ) -> list[ExecutionState]:
        status_value = _status_value(status)
        with self._lock:
            records = list(self._records.values())

        matches = []
        for record in records:
            if workflow is not None and record["workflow"] != workflow:
                continue
            if status_value is not None and record["status"] != status_value:
                continue
            if step is not None and record["current_step"] != step:
                continue
            if subject_type is not None and record["subject"]["type"] != subject_type:
                continue
            if subject_id is not None and record["subject"]["id"] != str(subject_id):
                continue
            matches.append(ExecutionState.model_validate(record))
        return matches


class SqliteExecutionStore(ExecutionStore):
    """
    SQLite-backed execution store.

    Metadata columns (workflow, status, current_step, subject, version) are
    indexed for queries; the full execution is stored as a JSON document.
    The version check and the write happen in one UPDATE statement, so two
    writers racing on the same version cannot both succeed.

    Example:
        store = SqliteExecutionStore(tmp_path / "executions.db")
        store.create(execution)
        loaded = store.load(execution.id)
        active = store.query(workflow="document-approval", status="active")
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path) if db_path is not None else StateConfig.get_db_path()
        self._lock = threading.Lock()
        self._init_db()
        logger.info(f"SqliteExecutionStore initialized: db={self._db_path}")

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> SqliteExecutionStore:
        """Store at ``<state_dir>/executions.db`` of the given settings."""
        return cls(StateConfig.get_db_path(settings.state_dir))

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            # WAL mode for concurrent readers across processes
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS executions (
                    id TEXT PRIMARY KEY,
                    workflow TEXT NOT NULL,
                    status TEXT NOT NULL,
                    current_step TEXT NOT NULL,
                    subject_type TEXT NOT NULL,
                    subject_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_exec_workflow ON executions(workflow)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_exec_status ON executions(status)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_exec_subject ON executions(subject_type, subject_id)"
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_values(execution: ExecutionState) -> dict[str, Any]:
        data = execution.model_dump(mode="json")
        return {
            "id": execution.id,
            "workflow": execution.workflow,
            "status": execution.status.value,
            "current_step": execution.current_step,
            "subject_type": execution.subject.type,
            "subject_id": execution.subject.id,
            "version": execution.version,
            "updated_at": data["updated_at"],
            "data": json.dumps(data, ensure_ascii=False),
        }

    def create(self, execution: ExecutionState) -> str:
        values = self._row_values(execution)
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO executions
                        (id, workflow, status, current_step, subject_type, subject_id,
                         version, updated_at, data)
                    VALUES
                        (:id, :workflow, :status, :current_step, :subject_type, :subject_id,
                         :version, :updated_at, :data)
                    """,
                    values,
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise StoreError(f"Execution '{execution.id}' already exists") from e
            finally:
                conn.close()
        logger.debug(f"Execution created: {execution.id}")
        return execution.id

    def load(self, execution_id: str) -> ExecutionState:
        with self._lock:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT data FROM executions WHERE id = ?", (execution_id,)
                ).fetchone()
            finally:
                conn.close()
        if row is None:
            raise ExecutionNotFound(execution_id)
        return ExecutionState.model_validate_json(row["data"])

    def save(self, execution: ExecutionState, expected_version: int | None = None) -> None:
        values = self._row_values(execution)
        sql = """
            UPDATE executions
               SET workflow = :workflow, status = :status, current_step = :current_step,
                   subject_type = :subject_type, subject_id = :subject_id,
                   version = :version, updated_at = :updated_at, data = :data
             WHERE id = :id
        """
        if expected_version is not None:
            sql += " AND version = :expected_version"
            values["expected_version"] = expected_version

        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(sql, values)
                if cursor.rowcount == 0:
                    row = conn.execute(
                        "SELECT version FROM executions WHERE id = ?", (execution.id,)
                    ).fetchone()
                    conn.rollback()
                    if row is None:
                        raise ExecutionNotFound(execution.id)
                    assert expected_version is not None
                    raise StaleExecutionError(execution.id, expected_version, int(row["version"]))
                conn.commit()
            finally:
                conn.close()

    def query(
        self,
        *,
        workflow: str | None = None,
        status: ExecutionStatus | str | None = None,
        step: str | None = None,
        subject_type: str | None = None,
        subject_id: str | None = None,
    ) -> list[ExecutionState]:
        clauses = []
        params: list[Any] = []
        for column, value in (
            ("workflow", workflow),
            ("status", _status_value(status)),
            ("current_step", step),
            ("subject_type", subject_type),
            ("subject_id", None if subject_id is None else str(subject_id)),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)

        sql = "SELECT data FROM executions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY updated_at"

        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute(sql, params).fetchall()
            finally:
                conn.close()
        return [ExecutionState.model_validate_json(row["data"]) for row in rows]


__all__ = ["ExecutionStore", "InMemoryExecutionStore", "SqliteExecutionStore"]
