# storage.py
import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

from models import (
    FAILED,
    JOB_STATUSES,
    LOG_LEVELS,
    QUEUED,
    RUNNING,
    Job,
    JobErrorRecord,
    JobLogEntry,
)


def utc_now():
    return datetime.now(timezone.utc).isoformat()


class Storage:
    """
    SQLite-backed job store.

    Every scheduler process opens its own Storage on the same database file.
    Inside a process the connection is shared by the poll thread and the
    runner threads, so every statement runs under `self._lock`.
    """

    def __init__(self, db_path="queue.db", timeout=30.0):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, timeout=timeout, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        # Better concurrency for multiple scheduler processes
        if db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA foreign_keys=ON;")

        self._init_schema()

    def _init_schema(self):
        with self._transaction() as conn:
            # Jobs table
            conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                source_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'queued',
                created_by TEXT NOT NULL,
                total_items INTEGER NOT NULL DEFAULT 0,
                processed_items INTEGER NOT NULL DEFAULT 0,
                error_count INTEGER NOT NULL DEFAULT 0,
                last_checkpoint TEXT,
                claimed_by TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs (status, created_at)")

            # Append-only narrative trace
            conn.execute("""
            CREATE TABLE IF NOT EXISTS job_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                details_json TEXT,
                created_at TEXT NOT NULL
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_job_logs_job ON job_logs (job_id, created_at)")

            # Structured failure records for triage
            conn.execute("""
            CREATE TABLE IF NOT EXISTS job_errors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                stage TEXT NOT NULL,
                error_message TEXT NOT NULL,
                error_code TEXT,
                external_id TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                resolved INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_job_errors_job ON job_errors (job_id, created_at)")

            # Config table
            conn.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)

    @contextmanager
    def _transaction(self):
        with self._lock:
            # Take the write lock up front, as the claim needs read-then-write atomicity
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def close(self):
        with self._lock:
            self.conn.close()

    # ---------------- Jobs ----------------
    def insert_job(self, source_id, kind, created_by) -> Job:
        job_id = str(uuid.uuid4())
        now = utc_now()
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO jobs (id, source_id, kind, status, created_by,
                                  total_items, processed_items, error_count, created_at)
                VALUES (?, ?, ?, ?, ?, 0, 0, 0, ?)
            """, (job_id, source_id, kind, QUEUED, created_by, now))
            return self._fetch_job(conn, job_id)

    def get_job(self, job_id):
        with self._lock:
            return self._fetch_job(self.conn, job_id)

    def _fetch_job(self, conn, job_id):
        row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        return Job.from_row(row) if row else None

    def select_oldest_queued(self):
        """Cheap, non-atomic read of the next claim candidate."""
        with self._lock:
            row = self.conn.execute("""
                SELECT * FROM jobs
                WHERE status=?
                ORDER BY created_at ASC, rowid ASC
                LIMIT 1
            """, (QUEUED,)).fetchone()
        return Job.from_row(row) if row else None

    def conditional_claim(self, job_id, claimed_by=None):
        """
        Move a job from queued to running only if it is still queued.
        Returns the claimed job, or None if another scheduler got there first.
        """
        now = utc_now()
        with self._transaction() as conn:
            updated = conn.execute("""
                UPDATE jobs
                SET status=?, started_at=?, finished_at=NULL, claimed_by=?
                WHERE id=? AND status=?
            """, (RUNNING, now, claimed_by, job_id, QUEUED)).rowcount
            if updated != 1:
                return None
            return self._fetch_job(conn, job_id)

    def _claim_guard(self, claim):
        """WHERE fragment pinning an update to the claim a runner holds."""
        if claim is None:
            return "", ()
        return " AND claimed_by IS ? AND started_at IS ?", (claim.claimed_by, claim.started_at)

    def finalize(self, job_id, status, finished_at=None, expected_status=RUNNING, claim=None):
        """
        Set a terminal or requeued status, guarded by the status the caller
        expects the row to still have. Passing the `claim` snapshot returned
        by `conditional_claim` also requires the row to still carry that
        claim, so a runner whose job was rescued and re-claimed changes
        nothing. Returns True if the row moved.
        """
        if status not in JOB_STATUSES:
            raise ValueError(f"Unknown job status: {status}")
        if status == QUEUED:
            finished_at = None
        guard, guard_params = self._claim_guard(claim)
        with self._transaction() as conn:
            updated = conn.execute(
                "UPDATE jobs SET status=?, finished_at=? WHERE id=? AND status=?" + guard,
                (status, finished_at, job_id, expected_status) + guard_params,
            ).rowcount
        return updated == 1

    def increment_error_count(self, job_id, claim=None):
        """
        Bump the persisted failure count and return the new value.
        With `claim`, only a running row still holding that claim is
        touched; None is returned when the claim was lost.
        """
        guard, guard_params = self._claim_guard(claim)
        if claim is not None:
            guard = " AND status=?" + guard
            guard_params = (RUNNING,) + guard_params
        with self._transaction() as conn:
            updated = conn.execute(
                "UPDATE jobs SET error_count = error_count + 1 WHERE id=?" + guard,
                (job_id,) + guard_params,
            ).rowcount
            row = conn.execute("SELECT error_count FROM jobs WHERE id=?", (job_id,)).fetchone()
        if row is None:
            raise LookupError(f"Job {job_id} not found")
        if updated != 1:
            return None
        return row["error_count"]

    def update_progress(self, job_id, processed, total):
        with self._transaction() as conn:
            conn.execute(
                "UPDATE jobs SET processed_items=?, total_items=? WHERE id=?",
                (processed, total, job_id),
            )

    def update_checkpoint(self, job_id, checkpoint):
        with self._transaction() as conn:
            conn.execute("UPDATE jobs SET last_checkpoint=? WHERE id=?", (checkpoint, job_id))

    def list_jobs(self, status=None, limit=50):
        with self._lock:
            if status:
                rows = self.conn.execute(
                    "SELECT * FROM jobs WHERE status=? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                    (status, limit),
                ).fetchall()
            else:
                rows = self.conn.execute(
                    "SELECT * FROM jobs ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
                ).fetchall()
        return [Job.from_row(r) for r in rows]

    def count_by_status(self):
        with self._lock:
            rows = self.conn.execute(
                "SELECT status, COUNT(*) AS count FROM jobs GROUP BY status"
            ).fetchall()
        counts = {s: 0 for s in JOB_STATUSES}
        counts.update({r["status"]: r["count"] for r in rows})
        return counts

    def requeue_failed(self, job_id):
        with self._transaction() as conn:
            updated = conn.execute("""
                UPDATE jobs
                SET status=?, error_count=0, finished_at=NULL, claimed_by=NULL
                WHERE id=? AND status=?
            """, (QUEUED, job_id, FAILED)).rowcount
        return updated == 1

    def requeue_stale(self, cutoff_iso):
        """Return running jobs claimed before `cutoff_iso` to the queue."""
        with self._transaction() as conn:
            rows = conn.execute("""
                SELECT id FROM jobs
                WHERE status=? AND started_at IS NOT NULL AND started_at <= ?
            """, (RUNNING, cutoff_iso)).fetchall()
            ids = []
            for r in rows:
                # Same guard as the claim: skip rows whose runner finished meanwhile
                updated = conn.execute("""
                    UPDATE jobs SET status=?, finished_at=NULL, claimed_by=NULL
                    WHERE id=? AND status=?
                """, (QUEUED, r["id"], RUNNING)).rowcount
                if updated == 1:
                    ids.append(r["id"])
        return ids

    # ---------------- Logs & errors ----------------
    def append_log(self, job_id, level, message, details=None):
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {level}")
        details_json = json.dumps(details, default=str) if details is not None else None
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO job_logs (job_id, level, message, details_json, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (job_id, level, message, details_json, utc_now()))

    def append_error(self, job_id, stage, message, code=None, external_id=None, retry_count=0):
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO job_errors (job_id, stage, error_message, error_code, external_id,
                                        retry_count, resolved, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
            """, (job_id, stage, message, code, external_id, retry_count, utc_now()))

    def get_logs(self, job_id, limit=None, offset=0):
        with self._lock:
            rows = self.conn.execute("""
                SELECT * FROM job_logs WHERE job_id=?
                ORDER BY created_at ASC, id ASC
                LIMIT ? OFFSET ?
            """, (job_id, -1 if limit is None else limit, offset)).fetchall()
        return [JobLogEntry.from_row(r) for r in rows]

    def get_errors(self, job_id, unresolved_only=False):
        query = "SELECT * FROM job_errors WHERE job_id=?"
        if unresolved_only:
            query += " AND resolved=0"
        query += " ORDER BY created_at ASC, id ASC"
        with self._lock:
            rows = self.conn.execute(query, (job_id,)).fetchall()
        return [JobErrorRecord.from_row(r) for r in rows]

    def resolve_error(self, error_id):
        with self._transaction() as conn:
            updated = conn.execute(
                "UPDATE job_errors SET resolved=1 WHERE id=? AND resolved=0", (error_id,)
            ).rowcount
        return updated == 1

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        with self._lock:
            row = self.conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        now = utc_now()
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now))

    def list_config(self):
        with self._lock:
            rows = self.conn.execute("SELECT key, value, updated_at FROM config ORDER BY key").fetchall()
        return [dict(r) for r in rows]
