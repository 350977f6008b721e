"""SQLite implementations of JobStore and QueueBackend.

This module provides the local-first, crash-safe job store using:
- sqlite-utils for schema management and reads
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic claim and read-modify-write
- Exponential backoff retry for database lock handling

Each SQLite connection belongs to one thread. Workers open their own
SQLiteJobStore/SQLiteQueue pair on the same database file.
"""

import json
import logging
import sqlite3
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlite_utils import Database

from ..errors import NotFoundError, ValidationError
from . import state
from .backends import JobStore, QueueBackend
from .models import (
    JobError,
    JobStatus,
    ProcessingJob,
    QueueName,
    StateTransition,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
-- Processing jobs
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL,
    stages TEXT NOT NULL,
    overall_progress INTEGER DEFAULT 0,
    error TEXT,
    retry_count INTEGER DEFAULT 0,
    max_retries INTEGER DEFAULT 3,
    queue_name TEXT NOT NULL,
    priority INTEGER DEFAULT 0,
    options TEXT,
    worker_id TEXT,
    last_heartbeat TEXT,
    available_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_video ON jobs(video_id, status);
CREATE INDEX IF NOT EXISTS idx_jobs_expires ON jobs(expires_at);

-- Pending sets, one per queue name
CREATE TABLE IF NOT EXISTS queue_entries (
    job_id TEXT NOT NULL,
    queue_name TEXT NOT NULL,
    priority INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    enqueued_at TEXT NOT NULL,
    PRIMARY KEY (job_id, queue_name)
);

CREATE INDEX IF NOT EXISTS idx_queue_order
    ON queue_entries(queue_name, priority DESC, created_at ASC);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);
"""

_TIMESTAMP_COLUMNS = (
    "last_heartbeat",
    "available_at",
    "created_at",
    "updated_at",
    "started_at",
    "completed_at",
    "expires_at",
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Serialize timestamps so that string order matches time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _job_to_row(job: ProcessingJob) -> Dict[str, Any]:
    data = job.model_dump(mode="json")
    row = {
        "id": job.id,
        "video_id": job.video_id,
        "job_type": job.job_type.value,
        "status": job.status.value,
        "stages": json.dumps(data["stages"]),
        "overall_progress": job.overall_progress,
        "error": json.dumps(data["error"]) if job.error else None,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "queue_name": job.queue_name.value,
        "priority": job.priority,
        "options": json.dumps(data["options"]),
        "worker_id": job.worker_id,
    }
    for column in _TIMESTAMP_COLUMNS:
        row[column] = _ts(getattr(job, column))
    return row


def _row_to_job(row: Dict[str, Any]) -> ProcessingJob:
    data = dict(row)
    data["stages"] = json.loads(data["stages"])
    data["error"] = json.loads(data["error"]) if data.get("error") else None
    data["options"] = json.loads(data["options"]) if data.get("options") else {}
    return ProcessingJob.model_validate(data)


class SQLiteJobStore(JobStore):
    """SQLite-based job store with ACID guarantees.

    Features:
    - WAL mode for better concurrent reads
    - Indexed lookups by id, status, video and expiry
    - Atomic per-job read-modify-write via BEGIN IMMEDIATE
    - Transition audit log
    """

    def __init__(self, db_path: str, lock_retries: int = 3):
        """Initialize job database.

        Args:
            db_path: Path to SQLite database file
            lock_retries: Attempts when the database is locked by another writer

        Creates schema if database doesn't exist.
        Enables WAL mode for concurrent performance.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_retries = lock_retries

        self.db = Database(str(self.db_path))
        self.conn = self.db.conn

        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.conn.commit()

        self._create_schema()

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        self.db.executescript(SCHEMA_SQL)

    def close(self) -> None:
        self.conn.close()

    def write_transaction(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        """Run fn inside BEGIN IMMEDIATE, retrying on lock contention.

        BEGIN IMMEDIATE takes the write lock at transaction start, so two
        connections can never both read a pending job and both claim it.
        Backoff on "database is locked": 100ms, 200ms, 400ms...
        """
        for attempt in range(self.lock_retries):
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < self.lock_retries - 1:
                    logger.debug("Database locked, retrying (attempt %d)", attempt + 1)
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise

            try:
                result = fn(self.conn)
            except Exception:
                self.conn.rollback()
                raise
            self.conn.commit()
            return result

        return None

    # ----- reads -------------------------------------------------------

    def _load(
        self, conn: sqlite3.Connection, job_id: str, now: Optional[datetime] = None
    ) -> Optional[ProcessingJob]:
        cursor = conn.execute(
            "SELECT * FROM jobs WHERE id = ? AND expires_at > ?", (job_id, _ts(now or utcnow()))
        )
        row = cursor.fetchone()
        if row is None:
            return None
        columns = [c[0] for c in cursor.description]
        return _row_to_job(dict(zip(columns, row)))

    def get(self, job_id: str, now: Optional[datetime] = None) -> Optional[ProcessingJob]:
        rows = list(self.db["jobs"].rows_where(
            "id = ? AND expires_at > ?",
            [job_id, _ts(now or utcnow())],
        ))
        if not rows:
            return None
        return _row_to_job(rows[0])

    def list_jobs(
        self,
        status: Optional[str] = None,
        video_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ProcessingJob]:
        clauses, params = ["expires_at > ?"], [_ts(now or utcnow())]
        if status:
            clauses.append("status = ?")
            params.append(status.value if isinstance(status, JobStatus) else status)
        if video_id:
            clauses.append("video_id = ?")
            params.append(video_id)

        rows = self.db["jobs"].rows_where(
            " AND ".join(clauses),
            params,
            order_by="created_at DESC",
        )
        return [_row_to_job(row) for row in rows]

    def transitions(self, job_id: str) -> List[StateTransition]:
        rows = self.db["state_transitions"].rows_where(
            "job_id = ?", [job_id], order_by="id ASC"
        )
        return [StateTransition(**row) for row in rows]

    # ----- writes ------------------------------------------------------

    def _write(self, conn: sqlite3.Connection, job: ProcessingJob, insert: bool = False) -> None:
        row = _job_to_row(job)
        columns = list(row)
        if insert:
            sql = "INSERT INTO jobs ({}) VALUES ({})".format(
                ", ".join(columns), ", ".join("?" for _ in columns)
            )
            conn.execute(sql, [row[c] for c in columns])
        else:
            assignments = ", ".join(f"{c} = ?" for c in columns if c != "id")
            conn.execute(
                f"UPDATE jobs SET {assignments} WHERE id = ?",
                [row[c] for c in columns if c != "id"] + [job.id],
            )

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log state transition to audit trail."""
        conn.execute(
            """
            INSERT INTO state_transitions
                (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, _ts(utcnow()), worker_id,
             error[:200] if error else None),
        )

    def insert(self, job: ProcessingJob) -> None:
        def _insert(conn):
            try:
                self._write(conn, job, insert=True)
            except sqlite3.IntegrityError:
                raise ValidationError(f"Job already exists: {job.id}") from None
            self._log_transition(conn, job.id, None, job.status.value)

        self.write_transaction(_insert)

    def apply(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        fn: Callable[[ProcessingJob], ProcessingJob],
        worker_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[ProcessingJob, ProcessingJob]:
        """Read-modify-write inside an already open write transaction.

        Expired records are absent here exactly as they are for ``get``.
        """
        before = self._load(conn, job_id, now)
        if before is None:
            raise NotFoundError("Job", job_id)

        after = fn(before)
        if after is before:
            return before, after

        self._write(conn, after)
        if after.status != before.status:
            error = after.error.message if isinstance(after.error, JobError) else None
            self._log_transition(
                conn, job_id, before.status.value, after.status.value,
                worker_id=worker_id or after.worker_id, error=error,
            )
        return before, after

    def update(
        self,
        job_id: str,
        fn: Callable[[ProcessingJob], ProcessingJob],
        worker_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[ProcessingJob, ProcessingJob]:
        return self.write_transaction(lambda conn: self.apply(conn, job_id, fn, worker_id, now))

    def delete(self, job_id: str) -> bool:
        def _delete(conn):
            conn.execute("DELETE FROM queue_entries WHERE job_id = ?", (job_id,))
            cursor = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return cursor.rowcount > 0

        return self.write_transaction(_delete)

    def delete_for_video(self, video_id: str) -> int:
        def _delete(conn):
            conn.execute(
                "DELETE FROM queue_entries WHERE job_id IN (SELECT id FROM jobs WHERE video_id = ?)",
                (video_id,),
            )
            cursor = conn.execute("DELETE FROM jobs WHERE video_id = ?", (video_id,))
            return cursor.rowcount

        return self.write_transaction(_delete)

    def delete_expired(self, now: datetime) -> List[Tuple[str, str]]:
        cutoff = _ts(now)

        def _delete(conn):
            rows = conn.execute(
                "SELECT id, status FROM jobs WHERE expires_at <= ?", (cutoff,)
            ).fetchall()
            conn.execute(
                "DELETE FROM queue_entries WHERE job_id IN "
                "(SELECT id FROM jobs WHERE expires_at <= ?)",
                (cutoff,),
            )
            conn.execute("DELETE FROM jobs WHERE expires_at <= ?", (cutoff,))
            return [(row[0], row[1]) for row in rows]

        return self.write_transaction(_delete)


class SQLiteQueue(QueueBackend):
    """SQLite-based dispatcher with atomic claim operations.

    Features:
    - One pending set per queue name (``queue_entries`` table)
    - Priority DESC, created_at ASC selection order
    - Claim via BEGIN IMMEDIATE + pure state transition (exactly one winner)
    - Heartbeat support for long-running jobs
    """

    def __init__(self, store: SQLiteJobStore):
        """Initialize queue backend.

        Args:
            store: SQLiteJobStore instance (shares same database connection)
        """
        self.store = store
        self.db = store.db

    def enqueue(self, job: ProcessingJob, queue_name: Optional[str] = None) -> bool:
        """Add job to a queue (idempotent per job id and queue)."""
        queue = QueueName(queue_name or job.queue_name)

        def _enqueue(conn):
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO queue_entries
                    (job_id, queue_name, priority, created_at, enqueued_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (job.id, queue.value, job.priority, _ts(job.created_at), _ts(utcnow())),
            )
            return cursor.rowcount > 0

        return self.store.write_transaction(_enqueue)

    def remove(self, job_id: str, queue_name: Optional[str] = None) -> int:
        def _remove(conn):
            if queue_name is None:
                cursor = conn.execute("DELETE FROM queue_entries WHERE job_id = ?", (job_id,))
            else:
                cursor = conn.execute(
                    "DELETE FROM queue_entries WHERE job_id = ? AND queue_name = ?",
                    (job_id, QueueName(queue_name).value),
                )
            return cursor.rowcount

        return self.store.write_transaction(_remove)

    def _claim_in(self, conn, job_id: str, worker_id: str) -> ProcessingJob:
        now = utcnow()
        _, claimed = self.store.apply(
            conn, job_id, lambda job: state.claim(job, worker_id, now), worker_id
        )
        conn.execute(
            "DELETE FROM queue_entries WHERE job_id = ? AND queue_name = ?",
            (job_id, claimed.queue_name.value),
        )
        return claimed

    def claim(self, job_id: str, worker_id: str) -> ProcessingJob:
        """Atomically transition a specific job pending → processing.

        Raises:
            NotFoundError: Job absent (or expired)
            ConcurrencyError: Job not pending (someone else claimed it first), or
                still inside its retry backoff window (``available_at`` in the future)
        """
        def _claim(conn):
            row = conn.execute(
                "SELECT expires_at FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
            if row is None or row[0] <= _ts(utcnow()):
                raise NotFoundError("Job", job_id)
            return self._claim_in(conn, job_id, worker_id)

        return self.store.write_transaction(_claim)

    def claim_next(self, queue_name: str, worker_id: str) -> Optional[ProcessingJob]:
        """Claim the best pending job of a queue.

        Returns:
            Claimed job, or None if nothing is claimable
        """
        queue = QueueName(queue_name)

        def _claim_next(conn):
            now = _ts(utcnow())
            row = conn.execute(
                """
                SELECT q.job_id FROM queue_entries q
                JOIN jobs j ON j.id = q.job_id
                WHERE q.queue_name = ?
                  AND j.status = ?
                  AND j.expires_at > ?
                  AND (j.available_at IS NULL OR j.available_at <= ?)
                ORDER BY q.priority DESC, q.created_at ASC
                LIMIT 1
                """,
                (queue.value, JobStatus.PENDING.value, now, now),
            ).fetchone()
            if row is None:
                return None
            return self._claim_in(conn, row[0], worker_id)

        return self.store.write_transaction(_claim_next)

    def pop_cleanup(self, worker_id: str) -> Optional[ProcessingJob]:
        """Take the next completed job from the cleanup queue (no status change)."""
        def _pop(conn):
            row = conn.execute(
                """
                SELECT q.job_id FROM queue_entries q
                JOIN jobs j ON j.id = q.job_id
                WHERE q.queue_name = ? AND j.status = ? AND j.expires_at > ?
                ORDER BY q.priority DESC, q.created_at ASC
                LIMIT 1
                """,
                (QueueName.CLEANUP.value, JobStatus.COMPLETED.value, _ts(utcnow())),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "DELETE FROM queue_entries WHERE job_id = ? AND queue_name = ?",
                (row[0], QueueName.CLEANUP.value),
            )
            return self.store._load(conn, row[0])

        return self.store.write_transaction(_pop)

    def pending(self, queue_name: str) -> List[str]:
        rows = self.db["queue_entries"].rows_where(
            "queue_name = ?",
            [QueueName(queue_name).value],
            order_by="priority DESC, created_at ASC",
        )
        return [row["job_id"] for row in rows]

    def is_enqueued(self, job_id: str, queue_name: str) -> bool:
        return self.db["queue_entries"].count_where(
            "job_id = ? AND queue_name = ?", [job_id, QueueName(queue_name).value]
        ) > 0

    def update_heartbeat(self, job_id: str) -> None:
        """Update heartbeat timestamp for long-running job.

        Only updates if job is in 'processing' state.
        """
        def _beat(conn):
            conn.execute(
                "UPDATE jobs SET last_heartbeat = ? WHERE id = ? AND status = ?",
                (_ts(utcnow()), job_id, JobStatus.PROCESSING.value),
            )

        self.store.write_transaction(_beat)

    def find_stale_processing(self, timeout_s: int, now: datetime) -> List[ProcessingJob]:
        """Processing jobs with no heartbeat (or start, if never beaten) in timeout_s."""
        cutoff = _ts(now - timedelta(seconds=timeout_s))
        rows = self.db["jobs"].rows_where(
            """
            status = ?
            AND (
                last_heartbeat < ?
                OR (last_heartbeat IS NULL AND started_at < ?)
            )
            """,
            [JobStatus.PROCESSING.value, cutoff, cutoff],
        )
        return [_row_to_job(row) for row in rows]

    def stats(self) -> Dict[str, Any]:
        """Queue statistics.

        Returns:
            Dictionary with a count per job status, ``total``, and
            ``queues`` mapping each queue name to its pending depth
        """
        stats: Dict[str, Any] = {status.value: 0 for status in JobStatus}
        for row in self.db.query("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status"):
            stats[row["status"]] = row["n"]
        stats["total"] = sum(stats[status.value] for status in JobStatus)

        queues = {queue.value: 0 for queue in QueueName}
        for row in self.db.query(
            "SELECT queue_name, COUNT(*) AS n FROM queue_entries GROUP BY queue_name"
        ):
            queues[row["queue_name"]] = row["n"]
        stats["queues"] = queues
        return stats
