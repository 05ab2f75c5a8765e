import logging
import sqlite3
import threading

import msgspec

from lumeflow.application.port import ExecutionStore
from lumeflow.domain.entity import WorkflowExecutionResult

logger = logging.getLogger(__name__)


class SQLiteExecutionStore(ExecutionStore):
    """SQLite-based store for workflow execution records."""

    def __init__(self, db_path: str = ":memory:"):
        """
        Initialize the SQLite execution store.

        :param db_path: Path to SQLite database file (defaults to in-memory)
        :type db_path: str
        """
        self.db_path = db_path
        self._conn = None
        self._lock = threading.Lock()
        self._encoder = msgspec.json.Encoder(enc_hook=str)
        self._decoder = msgspec.json.Decoder(WorkflowExecutionResult)
        self._init_database()

    def _get_connection(self):
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        return self._conn

    def _init_database(self):
        """Initialize the database schema."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS workflow_executions (
                execution_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                record TEXT NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflow_executions_workflow ON workflow_executions (workflow_id)"
        )
        conn.commit()

    def save(self, result: WorkflowExecutionResult) -> None:
        """
        Store an execution record, replacing any record with the same execution id.

        Node outputs that are not JSON serializable are stored as their string form.

        :param result: The finished run
        :type result: WorkflowExecutionResult
        """
        record = self._encoder.encode(result).decode("utf-8")
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                "INSERT OR REPLACE INTO workflow_executions (execution_id, workflow_id, status, started_at, record) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    result.execution_id,
                    result.workflow_id,
                    result.status.value,
                    result.start_time.isoformat(),
                    record,
                ),
            )
            conn.commit()
        logger.debug("Stored execution %s", result.execution_id)

    def get(self, execution_id: str) -> WorkflowExecutionResult:
        """
        Retrieve an execution record.

        :param execution_id: The execution identifier
        :type execution_id: str
        :returns: The stored record
        :rtype: WorkflowExecutionResult
        :raises KeyError: If the execution is not found
        """
        with self._lock:
            cursor = self._get_connection().execute(
                "SELECT record FROM workflow_executions WHERE execution_id = ?", (execution_id,)
            )
            row = cursor.fetchone()

        if row is None:
            raise KeyError(f"Execution '{execution_id}' not found")
        return self._decoder.decode(row[0].encode("utf-8"))

    def list(self, workflow_id: str | None = None) -> list[WorkflowExecutionResult]:
        """
        List execution records, oldest first.

        :param workflow_id: Only return runs of this workflow
        :type workflow_id: str | None
        :returns: The stored records
        :rtype: list[WorkflowExecutionResult]
        """
        query = "SELECT record FROM workflow_executions"
        params: tuple = ()
        if workflow_id is not None:
            query += " WHERE workflow_id = ?"
            params = (workflow_id,)
        query += " ORDER BY started_at, rowid"
        with self._lock:
            rows = self._get_connection().execute(query, params).fetchall()
        return [self._decoder.decode(row[0].encode("utf-8")) for row in rows]

    def delete(self, execution_id: str) -> bool:
        """
        Delete an execution record.

        :param execution_id: The execution identifier
        :type execution_id: str
        :returns: True if a record was deleted, False otherwise
        :rtype: bool
        """
        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute("DELETE FROM workflow_executions WHERE execution_id = ?", (execution_id,))
            conn.commit()
        return cursor.rowcount > 0

    def list_workflow_ids(self) -> "list[str]":
        """
        Get a list of all workflow IDs that have stored executions.

        :returns: List of workflow identifiers
        :rtype: list[str]
        """
        with self._lock:
            rows = self._get_connection().execute(
                "SELECT DISTINCT workflow_id FROM workflow_executions ORDER BY workflow_id"
            ).fetchall()
        return [row[0] for row in rows]

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __del__(self):
        """Close the database connection on cleanup."""
        if getattr(self, "_conn", None):
            self._conn.close()
