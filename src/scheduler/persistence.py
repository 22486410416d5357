"""
Durable State Store for the automation hub.

SQLite with WAL mode. Owns, at rest:
- Watermarks: workflow_id -> cursor (JSON)
- DedupKeys: dedup_key -> last handled or seen timestamp, pruned by age
- Deliveries: delivery_id -> seen timestamp, pruned by age
- EscalationRecords: escalation_key -> {task_id, status, updated_at}
- Runs: append-only history, pruned by count and age

Every public operation is a single atomic transaction. Read-modify-write
operations (watermark advance, delivery check-and-set, escalation open) use
BEGIN IMMEDIATE so concurrent callers serialize on the database write lock.
Any sqlite3 failure surfaces as StoreError, which is a TransientError.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from .entities import (
    DeliveryStatus,
    EscalationRecord,
    EscalationStatus,
    Run,
    RunOutcome,
    RunTrigger,
    WebhookDelivery,
    from_iso,
    now_iso,
    to_iso,
)
from .errors import (
    InvalidOperationError,
    RunNotFoundError,
    StoreError,
)


logger = logging.getLogger(__name__)

# Seconds a connection waits for the write lock before failing
BUSY_TIMEOUT_SECONDS = 30.0

# Key tagging a datetime watermark in its stored JSON
DATETIME_TAG = "$datetime"


def advance_cursor(current: Any, candidate: Any) -> Any:
    """
    Return the watermark after observing candidate.

    The watermark only moves forward. None never replaces a value, and a
    value that cannot be compared with the current one is rejected rather
    than silently rewinding the cursor.
    """
    if candidate is None:
        return current
    if current is None:
        return candidate
    try:
        return candidate if candidate > current else current
    except TypeError:
        raise InvalidOperationError(
            f"Watermark values are not comparable: {current!r} vs {candidate!r}"
        )


def _encode_tagged(value: Any) -> Any:
    if isinstance(value, datetime):
        return {DATETIME_TAG: to_iso(value)}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_tagged(obj: dict) -> Any:
    if len(obj) == 1 and DATETIME_TAG in obj:
        return from_iso(obj[DATETIME_TAG])
    return obj


def encode_cursor(value: Any) -> str:
    """
    Serialize a watermark for storage.

    Datetimes are stored as tagged ISO strings and come back as aware UTC
    datetimes, so a timestamp cursor keeps comparing with new positions.

    Raises:
        InvalidOperationError: The value has no stored representation
    """
    try:
        return json.dumps(value, default=_encode_tagged)
    except (TypeError, ValueError) as e:
        raise InvalidOperationError(f"Watermark value cannot be stored: {value!r} ({e})")


def decode_cursor(text: str) -> Any:
    """Inverse of encode_cursor()."""
    return json.loads(text, object_hook=_decode_tagged)


def check_position(current: Any, position: Any) -> None:
    """
    Verify an item position can be committed on top of the current watermark.

    Raises:
        InvalidOperationError: The position cannot be stored or compared
    """
    encode_cursor(position)
    advance_cursor(current, position)


class StateStore:
    """
    SQLite-based persistence for watermarks, dedup keys, deliveries,
    escalation records and run history.

    Does NOT contain business logic: the Job Runner decides when to commit,
    the EscalationTracker decides when to open or close.
    """

    def __init__(self, db_path: str | Path):
        """
        Initialize the state store.

        Args:
            db_path: Path to SQLite database file. Parent directories are
                created. Each operation opens its own connection, so an
                in-memory database is not supported.
        """
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode enabled."""
        conn = sqlite3.connect(
            self.db_path,
            timeout=BUSY_TIMEOUT_SECONDS,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    @contextmanager
    def _connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Context manager for read-only access."""
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise StoreError(operation, e) from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreError(operation, e) from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """
        Context manager for an immediate write transaction.

        Rolls back on any exception; nothing is committed unless the block
        completes, so an interrupted mutation simply never happened.
        """
        try:
            conn = self._get_connection()
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StoreError(operation, e) from e
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            raise StoreError(operation, e) from e
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction("init") as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS watermarks (
                    workflow_id TEXT PRIMARY KEY,
                    cursor TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS dedup_keys (
                    dedup_key TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    handled_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_dedup_keys_handled_at
                ON dedup_keys (handled_at)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS deliveries (
                    delivery_id TEXT PRIMARY KEY,
                    source_id TEXT NOT NULL,
                    received_at TEXT NOT NULL,
                    status TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_deliveries_received_at
                ON deliveries (received_at)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS escalations (
                    record_id TEXT PRIMARY KEY,
                    escalation_key TEXT NOT NULL,
                    workflow_id TEXT,
                    task_id TEXT,
                    status TEXT NOT NULL,
                    occurrences INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    resolved_at TEXT
                )
            """)

            # At most one open record per escalation key
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_escalations_one_open
                ON escalations (escalation_key) WHERE status = 'open'
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_escalations_key_created
                ON escalations (escalation_key, created_at)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    trigger TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    outcome TEXT,
                    items_processed INTEGER NOT NULL DEFAULT 0,
                    items_escalated INTEGER NOT NULL DEFAULT 0,
                    items_skipped INTEGER NOT NULL DEFAULT 0,
                    items_failed INTEGER NOT NULL DEFAULT 0,
                    error_summary TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_runs_workflow_started
                ON runs (workflow_id, started_at)
            """)

    # =========================================================================
    # Watermarks
    # =========================================================================

    def get_watermark(self, workflow_id: str) -> Any:
        """Get a workflow's cursor, or None if it has never advanced."""
        with self._connection("get_watermark") as conn:
            row = conn.execute(
                "SELECT cursor FROM watermarks WHERE workflow_id = ?",
                (workflow_id,),
            ).fetchone()

        if row is None:
            return None

        return decode_cursor(row["cursor"])

    def _advance_watermark(self, conn: sqlite3.Connection, workflow_id: str, cursor: Any) -> Any:
        row = conn.execute(
            "SELECT cursor FROM watermarks WHERE workflow_id = ?",
            (workflow_id,),
        ).fetchone()
        current = decode_cursor(row["cursor"]) if row is not None else None

        advanced = advance_cursor(current, cursor)
        if advanced is not None and (row is None or advanced != current):
            conn.execute(
                """
                INSERT INTO watermarks (workflow_id, cursor, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(workflow_id) DO UPDATE SET
                    cursor = excluded.cursor,
                    updated_at = excluded.updated_at
                """,
                (workflow_id, encode_cursor(advanced), now_iso()),
            )
        return advanced

    def set_watermark(self, workflow_id: str, cursor: Any) -> Any:
        """
        Advance a workflow's cursor.

        Must only be called after the corresponding items were durably
        handled. Monotonic: a lower cursor never replaces a higher one.

        Returns:
            The watermark after the call
        """
        with self._transaction("set_watermark") as conn:
            return self._advance_watermark(conn, workflow_id, cursor)

    def clear_watermark(self, workflow_id: str) -> None:
        """Forget a workflow's cursor so the next run starts from scratch."""
        with self._transaction("clear_watermark") as conn:
            conn.execute("DELETE FROM watermarks WHERE workflow_id = ?", (workflow_id,))

    # =========================================================================
    # Dedup keys
    # =========================================================================

    def is_handled(self, dedup_key: str) -> bool:
        """Check whether an item's DedupKey was recorded as handled."""
        with self._connection("is_handled") as conn:
            row = conn.execute(
                "SELECT 1 FROM dedup_keys WHERE dedup_key = ?",
                (dedup_key,),
            ).fetchone()
        return row is not None

    def touch_handled(self, dedup_key: str) -> bool:
        """
        Refresh the timestamp of a handled DedupKey.

        Keys a source keeps listing stay inside the retention window, so
        pruning only forgets items the source has stopped returning.

        Returns:
            True if the key was handled, False if it is unknown
        """
        with self._transaction("touch_handled") as conn:
            cursor = conn.execute(
                "UPDATE dedup_keys SET handled_at = ? WHERE dedup_key = ?",
                (now_iso(), dedup_key),
            )
            return cursor.rowcount == 1

    def mark_handled(self, dedup_key: str, workflow_id: str) -> bool:
        """
        Record a DedupKey as handled.

        Returns:
            True if newly recorded, False if it was already handled
        """
        with self._transaction("mark_handled") as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO dedup_keys (dedup_key, workflow_id, handled_at)
                VALUES (?, ?, ?)
                """,
                (dedup_key, workflow_id, now_iso()),
            )
            return cursor.rowcount == 1

    def commit_item(self, workflow_id: str, dedup_key: str, position: Any) -> Any:
        """
        Atomically mark an item handled and advance the watermark to it.

        This is the only write the Job Runner makes per item, so a crash
        either commits both or neither.

        Returns:
            The watermark after the commit
        """
        with self._transaction("commit_item") as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO dedup_keys (dedup_key, workflow_id, handled_at)
                VALUES (?, ?, ?)
                """,
                (dedup_key, workflow_id, now_iso()),
            )
            return self._advance_watermark(conn, workflow_id, position)

    def prune_dedup_keys(self, older_than: datetime) -> int:
        """Delete dedup keys last handled or seen before older_than. Returns count."""
        with self._transaction("prune_dedup_keys") as conn:
            cursor = conn.execute(
                "DELETE FROM dedup_keys WHERE handled_at < ?",
                (to_iso(older_than),),
            )
            return cursor.rowcount

    # =========================================================================
    # Webhook deliveries
    # =========================================================================

    def record_delivery(self, delivery_id: str, source_id: str) -> bool:
        """
        Atomic check-and-set for an inbound delivery.

        Returns:
            True if the delivery was already seen (caller must not process it)
        """
        with self._transaction("record_delivery") as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO deliveries (delivery_id, source_id, received_at, status)
                VALUES (?, ?, ?, ?)
                """,
                (delivery_id, source_id, now_iso(), DeliveryStatus.RECEIVED.value),
            )
            return cursor.rowcount == 0

    def update_delivery_status(self, delivery_id: str, status: DeliveryStatus) -> None:
        """Record the final status of a delivery."""
        with self._transaction("update_delivery_status") as conn:
            conn.execute(
                "UPDATE deliveries SET status = ? WHERE delivery_id = ?",
                (status.value, delivery_id),
            )

    def release_delivery(self, delivery_id: str) -> None:
        """
        Forget a delivery whose processing failed transiently.

        The sender is told to retry; without the release its retry would be
        dropped as a duplicate.
        """
        with self._transaction("release_delivery") as conn:
            conn.execute("DELETE FROM deliveries WHERE delivery_id = ?", (delivery_id,))

    def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        """Get a delivery by ID."""
        with self._connection("get_delivery") as conn:
            row = conn.execute(
                "SELECT * FROM deliveries WHERE delivery_id = ?",
                (delivery_id,),
            ).fetchone()

        if row is None:
            return None

        return WebhookDelivery(
            delivery_id=row["delivery_id"],
            source_id=row["source_id"],
            received_at=row["received_at"],
            status=DeliveryStatus(row["status"]),
        )

    def prune_deliveries(self, older_than: datetime) -> int:
        """Delete deliveries received before older_than. Returns count."""
        with self._transaction("prune_deliveries") as conn:
            cursor = conn.execute(
                "DELETE FROM deliveries WHERE received_at < ?",
                (to_iso(older_than),),
            )
            return cursor.rowcount

    # =========================================================================
    # Escalation records
    # =========================================================================

    def _row_to_escalation(self, row: sqlite3.Row) -> EscalationRecord:
        """Convert a database row to an EscalationRecord."""
        return EscalationRecord(
            record_id=row["record_id"],
            escalation_key=row["escalation_key"],
            workflow_id=row["workflow_id"],
            task_id=row["task_id"],
            status=EscalationStatus(row["status"]),
            occurrences=row["occurrences"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            resolved_at=row["resolved_at"],
        )

    def _select_escalation(self, conn: sqlite3.Connection, escalation_key: str) -> Optional[EscalationRecord]:
        row = conn.execute(
            """
            SELECT * FROM escalations
            WHERE escalation_key = ?
            ORDER BY CASE status WHEN 'open' THEN 0 ELSE 1 END, created_at DESC, rowid DESC
            LIMIT 1
            """,
            (escalation_key,),
        ).fetchone()
        return self._row_to_escalation(row) if row is not None else None

    def get_escalation(self, escalation_key: str) -> Optional[EscalationRecord]:
        """
        Get the escalation record for a key.

        Returns the open record if one exists, otherwise the most recently
        created closed record, otherwise None.
        """
        with self._connection("get_escalation") as conn:
            return self._select_escalation(conn, escalation_key)

    def get_escalation_by_id(self, record_id: str) -> Optional[EscalationRecord]:
        """Get an escalation record by record ID."""
        with self._connection("get_escalation_by_id") as conn:
            row = conn.execute(
                "SELECT * FROM escalations WHERE record_id = ?",
                (record_id,),
            ).fetchone()
        return self._row_to_escalation(row) if row is not None else None

    def open_escalation(
        self,
        escalation_key: str,
        task_id: Optional[str],
        workflow_id: Optional[str] = None,
    ) -> EscalationRecord:
        """
        Insert a new OPEN record.

        Raises:
            InvalidOperationError: An open record already exists for the key
        """
        record = EscalationRecord.open(escalation_key, task_id, workflow_id)
        with self._transaction("open_escalation") as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO escalations
                    (record_id, escalation_key, workflow_id, task_id, status,
                     occurrences, created_at, updated_at, resolved_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.record_id,
                        record.escalation_key,
                        record.workflow_id,
                        record.task_id,
                        record.status.value,
                        record.occurrences,
                        record.created_at,
                        record.updated_at,
                        record.resolved_at,
                    ),
                )
            except sqlite3.IntegrityError:
                raise InvalidOperationError(
                    f"Escalation '{escalation_key}' already has an open record"
                )
        return record

    def touch_escalation(
        self,
        record_id: str,
        task_id: Optional[str] = None,
        count_occurrence: bool = True,
    ) -> EscalationRecord:
        """
        Register another occurrence on an OPEN record.

        With count_occurrence=False only the task link is updated (used when
        the external task is created after the record was opened).

        Raises:
            InvalidOperationError: The record is not open
        """
        with self._transaction("touch_escalation") as conn:
            cursor = conn.execute(
                """
                UPDATE escalations
                SET occurrences = occurrences + ?,
                    task_id = COALESCE(?, task_id),
                    updated_at = ?
                WHERE record_id = ? AND status = 'open'
                """,
                (1 if count_occurrence else 0, task_id, now_iso(), record_id),
            )
            if cursor.rowcount == 0:
                raise InvalidOperationError(
                    f"Escalation record {record_id} is not open"
                )
            row = conn.execute(
                "SELECT * FROM escalations WHERE record_id = ?",
                (record_id,),
            ).fetchone()
        return self._row_to_escalation(row)

    def close_escalation(self, record_id: str, status: EscalationStatus) -> EscalationRecord:
        """
        Close an OPEN record as RESOLVED or SUPERSEDED.

        Closing an already closed record is a no-op that returns it unchanged.
        """
        if status == EscalationStatus.OPEN:
            raise InvalidOperationError("close_escalation requires a closed status")

        now = now_iso()
        with self._transaction("close_escalation") as conn:
            conn.execute(
                """
                UPDATE escalations
                SET status = ?, updated_at = ?, resolved_at = ?
                WHERE record_id = ? AND status = 'open'
                """,
                (status.value, now, now, record_id),
            )
            row = conn.execute(
                "SELECT * FROM escalations WHERE record_id = ?",
                (record_id,),
            ).fetchone()

        if row is None:
            raise InvalidOperationError(f"Escalation record not found: {record_id}")

        return self._row_to_escalation(row)

    def upsert_escalation(
        self,
        escalation_key: str,
        task_id: Optional[str],
        status: EscalationStatus,
        workflow_id: Optional[str] = None,
    ) -> Optional[EscalationRecord]:
        """
        Key-level upsert in one transaction.

        - OPEN: update the open record (bump occurrences) or insert one
        - RESOLVED / SUPERSEDED: close the open record, if any

        Returns:
            The affected record, or None when closing a key with no open record
        """
        now = now_iso()
        with self._transaction("upsert_escalation") as conn:
            current = self._select_escalation(conn, escalation_key)
            has_open = current is not None and current.is_open()

            if status == EscalationStatus.OPEN:
                if has_open:
                    conn.execute(
                        """
                        UPDATE escalations
                        SET occurrences = occurrences + 1,
                            task_id = COALESCE(?, task_id),
                            updated_at = ?
                        WHERE record_id = ?
                        """,
                        (task_id, now, current.record_id),
                    )
                else:
                    record = EscalationRecord.open(escalation_key, task_id, workflow_id)
                    conn.execute(
                        """
                        INSERT INTO escalations
                        (record_id, escalation_key, workflow_id, task_id, status,
                         occurrences, created_at, updated_at, resolved_at)
                        VALUES (?, ?, ?, ?, ?, 1, ?, ?, NULL)
                        """,
                        (
                            record.record_id,
                            escalation_key,
                            workflow_id,
                            task_id,
                            EscalationStatus.OPEN.value,
                            now,
                            now,
                        ),
                    )
            elif has_open:
                conn.execute(
                    """
                    UPDATE escalations
                    SET status = ?, task_id = COALESCE(?, task_id),
                        updated_at = ?, resolved_at = ?
                    WHERE record_id = ?
                    """,
                    (status.value, task_id, now, now, current.record_id),
                )
            else:
                return current

            return self._select_escalation(conn, escalation_key)

    def list_escalations(
        self,
        status: Optional[EscalationStatus] = None,
        workflow_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[EscalationRecord]:
        """List escalation records, newest first."""
        clauses = []
        values: list = []
        if status is not None:
            clauses.append("status = ?")
            values.append(status.value)
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            values.append(workflow_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        values.append(limit)

        with self._connection("list_escalations") as conn:
            rows = conn.execute(
                f"SELECT * FROM escalations {where} ORDER BY updated_at DESC, rowid DESC LIMIT ?",
                values,
            ).fetchall()

        return [self._row_to_escalation(row) for row in rows]

    # =========================================================================
    # Run history
    # =========================================================================

    def _row_to_run(self, row: sqlite3.Row) -> Run:
        """Convert a database row to a Run entity."""
        return Run(
            run_id=row["run_id"],
            workflow_id=row["workflow_id"],
            trigger=RunTrigger(row["trigger"]),
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            outcome=RunOutcome(row["outcome"]) if row["outcome"] else None,
            items_processed=row["items_processed"],
            items_escalated=row["items_escalated"],
            items_skipped=row["items_skipped"],
            items_failed=row["items_failed"],
            error_summary=row["error_summary"],
        )

    def create_run(self, run: Run) -> Run:
        """Append a new unsealed run."""
        with self._transaction("create_run") as conn:
            conn.execute(
                """
                INSERT INTO runs
                (run_id, workflow_id, trigger, started_at, finished_at, outcome,
                 items_processed, items_escalated, items_skipped, items_failed, error_summary)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.run_id,
                    run.workflow_id,
                    run.trigger.value,
                    run.started_at,
                    run.finished_at,
                    run.outcome.value if run.outcome else None,
                    run.items_processed,
                    run.items_escalated,
                    run.items_skipped,
                    run.items_failed,
                    run.error_summary,
                ),
            )
        return run

    def seal_run(self, run: Run) -> Run:
        """
        Seal a run with its final counts and outcome.

        Raises:
            InvalidOperationError: The run is already sealed or has no outcome
            RunNotFoundError: The run does not exist
        """
        if run.outcome is None:
            raise InvalidOperationError(f"Cannot seal run {run.run_id} without an outcome")

        finished_at = run.finished_at or now_iso()
        with self._transaction("seal_run") as conn:
            cursor = conn.execute(
                """
                UPDATE runs
                SET finished_at = ?, outcome = ?, items_processed = ?,
                    items_escalated = ?, items_skipped = ?, items_failed = ?,
                    error_summary = ?
                WHERE run_id = ? AND outcome IS NULL
                """,
                (
                    finished_at,
                    run.outcome.value,
                    run.items_processed,
                    run.items_escalated,
                    run.items_skipped,
                    run.items_failed,
                    run.error_summary,
                    run.run_id,
                ),
            )
            if cursor.rowcount == 0:
                exists = conn.execute(
                    "SELECT 1 FROM runs WHERE run_id = ?",
                    (run.run_id,),
                ).fetchone()
                if exists is None:
                    raise RunNotFoundError(run.run_id)
                raise InvalidOperationError(
                    f"Run {run.run_id} is already sealed and cannot be modified"
                )

        run.finished_at = finished_at
        return run

    def get_run(self, run_id: str) -> Optional[Run]:
        """Get a run by ID."""
        with self._connection("get_run") as conn:
            row = conn.execute(
                "SELECT * FROM runs WHERE run_id = ?",
                (run_id,),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_run(row)

    def list_runs(self, workflow_id: Optional[str] = None, limit: int = 100) -> list[Run]:
        """List runs, newest first, optionally for one workflow."""
        with self._connection("list_runs") as conn:
            if workflow_id is None:
                rows = conn.execute(
                    "SELECT * FROM runs ORDER BY started_at DESC, rowid DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM runs WHERE workflow_id = ?
                    ORDER BY started_at DESC, rowid DESC LIMIT ?
                    """,
                    (workflow_id, limit),
                ).fetchall()

        return [self._row_to_run(row) for row in rows]

    def list_unsealed_runs(self) -> list[Run]:
        """List runs that were never sealed (crash recovery)."""
        with self._connection("list_unsealed_runs") as conn:
            rows = conn.execute(
                "SELECT * FROM runs WHERE outcome IS NULL ORDER BY started_at"
            ).fetchall()

        return [self._row_to_run(row) for row in rows]

    def count_runs(self, workflow_id: Optional[str] = None) -> int:
        """Count runs, optionally for one workflow."""
        with self._connection("count_runs") as conn:
            if workflow_id is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM runs").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM runs WHERE workflow_id = ?",
                    (workflow_id,),
                ).fetchone()
        return row["n"]

    def prune_runs(self, keep_per_workflow: int, older_than: Optional[datetime] = None) -> int:
        """
        Delete sealed runs beyond the per-workflow count or older than a cutoff.

        Unsealed runs are never pruned.

        Returns:
            Number of runs deleted
        """
        deleted = 0
        with self._transaction("prune_runs") as conn:
            cursor = conn.execute(
                """
                DELETE FROM runs
                WHERE outcome IS NOT NULL AND run_id IN (
                    SELECT run_id FROM (
                        SELECT run_id, ROW_NUMBER() OVER (
                            PARTITION BY workflow_id ORDER BY started_at DESC, rowid DESC
                        ) AS rank
                        FROM runs
                    ) WHERE rank > ?
                )
                """,
                (keep_per_workflow,),
            )
            deleted += cursor.rowcount

            if older_than is not None:
                cursor = conn.execute(
                    "DELETE FROM runs WHERE outcome IS NOT NULL AND started_at < ?",
                    (to_iso(older_than),),
                )
                deleted += cursor.rowcount

        return deleted
