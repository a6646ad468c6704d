"""
Job Store Module

Durable record of jobs and their segments, backed by SQLite:
- Jobs: create, load, list, state changes (compare-and-set), delete
- Segments: idempotent upsert, atomic claim, attempt/result recording,
  stale in-flight recovery
- Translation memory: source text -> translated text per language pair
- App config: key/value settings

Every call opens its own connection, so a single JobStore can be shared
between worker threads and several processes can share one database file.
For schema management and migrations, see core/schema.py
"""

import sqlite3
import time
import uuid
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, TypeVar

from transloom.core import schema
from transloom.core.models import (
    Job,
    JobState,
    Segment,
    SegmentOutcome,
    SegmentStatus,
    can_transition,
)
from transloom.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    PersistenceError,
    SegmentationError,
)
from transloom.logger import get_logger
from transloom.utils import calculate_hash, utc_iso, utcnow

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_BUSY_TIMEOUT = 30.0
DEFAULT_LOCK_RETRIES = 3
LOCK_RETRY_DELAY = 0.05

_JOB_SELECT = """
    SELECT j.*,
           COALESCE(c.total, 0) AS total,
           COALESCE(c.completed, 0) AS completed,
           COALESCE(c.failed, 0) AS failed
    FROM jobs j
    LEFT JOIN (
        SELECT job_id,
               COUNT(*) AS total,
               SUM(CASE WHEN status = 'done' THEN 1 ELSE 0 END) AS completed,
               SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed
        FROM segments
        GROUP BY job_id
    ) c ON c.job_id = j.id
"""


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        source_lang=row["source_lang"],
        target_lang=row["target_lang"],
        created_at=row["created_at"],
        state=JobState(row["state"]),
        source_path=row["source_path"],
        output_path=row["output_path"],
        source_format=row["source_format"],
        target_format=row["target_format"],
        model=row["model"],
        last_error=row["last_error"],
        updated_at=row["updated_at"],
        total=row["total"],
        completed=row["completed"],
        failed=row["failed"],
    )


def _row_to_segment(row: sqlite3.Row) -> Segment:
    return Segment(
        id=row["id"],
        job_id=row["job_id"],
        ordinal=row["ordinal"],
        source_text=row["source_text"],
        translated_text=row["translated_text"],
        status=SegmentStatus(row["status"]),
        attempts=row["attempts"],
        last_error=row["last_error"],
        updated_at=row["updated_at"],
        claimed_by=row["claimed_by"],
    )


def _normalize_lang(language: str) -> str:
    return language.strip().lower()


def _status_values(statuses: Optional[Iterable[SegmentStatus]]) -> List[str]:
    return [SegmentStatus(status).value for status in statuses or []]


class JobStore:
    """SQLite-backed store for jobs, segments and translation memory."""

    def __init__(
        self,
        db_path,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
        lock_retries: int = DEFAULT_LOCK_RETRIES,
    ):
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self.lock_retries = lock_retries
        self.initialize()

    # ============================================================
    # Connection handling
    # ============================================================

    def get_connection(self) -> sqlite3.Connection:
        """Get a database connection in autocommit mode (transactions are explicit)."""
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside one transaction.

        ``BEGIN IMMEDIATE`` takes the database write lock up front, which makes
        read-then-update sequences (claims, state changes) atomic across
        threads and processes.
        """
        conn = self.get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _run(self, operation: str, work: Callable[[sqlite3.Connection], T], write: bool = True) -> T:
        """Run work in a transaction, retrying on lock contention, wrapping sqlite errors."""
        for attempt in range(self.lock_retries + 1):
            try:
                with self.transaction(immediate=write) as conn:
                    return work(conn)
            except sqlite3.OperationalError as e:
                message = str(e).lower()
                locked = "locked" in message or "busy" in message
                if locked and attempt < self.lock_retries:
                    wait_time = LOCK_RETRY_DELAY * (2 ** attempt)
                    logger.warning(f"Job store {operation}: database locked, retrying in {wait_time:.2f}s")
                    time.sleep(wait_time)
                    continue
                raise PersistenceError(
                    f"Job store {operation} failed: {e}",
                    code="store_io_error",
                    details={"operation": operation, "db_path": str(self.db_path)},
                ) from e
            except sqlite3.Error as e:
                raise PersistenceError(
                    f"Job store {operation} failed: {e}",
                    code="store_io_error",
                    details={"operation": operation, "db_path": str(self.db_path)},
                ) from e
        raise AssertionError("unreachable")

    def initialize(self):
        """Create or migrate the database schema."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self.get_connection()
            try:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("BEGIN IMMEDIATE")
                schema.initialize_database(conn)
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(
                f"Could not initialize job store at {self.db_path}: {e}",
                code="store_init_failed",
                details={"db_path": str(self.db_path)},
            ) from e

    # ============================================================
    # Job operations
    # ============================================================

    def create_job(
        self,
        source_lang: str,
        target_lang: str,
        source_path: Optional[str] = None,
        output_path: Optional[str] = None,
        source_format: Optional[str] = None,
        target_format: Optional[str] = None,
        model: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Job:
        """Create a new job in the created state."""
        job_id = job_id or uuid.uuid4().hex
        now = utc_iso()

        def work(conn):
            conn.execute("""
                INSERT INTO jobs (id, source_lang, target_lang, created_at, state,
                                  source_path, output_path, source_format, target_format,
                                  model, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (job_id, source_lang, target_lang, now, JobState.CREATED.value,
                  source_path, output_path, source_format, target_format, model, now))
            row = conn.execute(_JOB_SELECT + " WHERE j.id = ?", (job_id,)).fetchone()
            return _row_to_job(row)

        job = self._run("create_job", work)
        logger.info(f"Created job {job_id} ({source_lang} -> {target_lang})")
        return job

    def load_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID, with segment counts taken from its segment rows."""
        def work(conn):
            row = conn.execute(_JOB_SELECT + " WHERE j.id = ?", (job_id,)).fetchone()
            return _row_to_job(row) if row else None

        return self._run("load_job", work, write=False)

    def require_job(self, job_id: str) -> Job:
        job = self.load_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found", code="job_not_found", details={"job_id": job_id})
        return job

    def list_jobs(self, states: Optional[Iterable[JobState]] = None) -> List[Job]:
        """Get all jobs, optionally filtered by state, oldest first."""
        state_values = [JobState(state).value for state in states or []]

        def work(conn):
            query = _JOB_SELECT
            params: list = []
            if state_values:
                query += f" WHERE j.state IN ({', '.join('?' for _ in state_values)})"
                params.extend(state_values)
            query += " ORDER BY j.created_at, j.id"
            return [_row_to_job(row) for row in conn.execute(query, params).fetchall()]

        return self._run("list_jobs", work, write=False)

    def update_job_state(
        self,
        job_id: str,
        new_state: JobState,
        expected: Optional[JobState] = None,
        last_error: Optional[str] = None,
    ) -> Job:
        """
        Move a job to a new state.

        The check and the update happen in one transaction. Staying in the
        same state is allowed (resume re-enters the current phase).

        Raises:
            JobNotFoundError: no such job
            InvalidTransitionError: current state differs from ``expected``
                or the transition is not allowed
        """
        new_state = JobState(new_state)

        def work(conn):
            row = conn.execute("SELECT state FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                raise JobNotFoundError(f"Job {job_id} not found", code="job_not_found", details={"job_id": job_id})
            current = JobState(row["state"])
            if expected is not None and current != JobState(expected):
                raise InvalidTransitionError(
                    f"Job {job_id} is {current.value}, expected {JobState(expected).value}",
                    code="job_state_conflict",
                    details={"job_id": job_id, "current": current.value, "requested": new_state.value},
                )
            if current != new_state and not can_transition(current, new_state):
                raise InvalidTransitionError(
                    f"Job {job_id} cannot move from {current.value} to {new_state.value}",
                    code="job_transition_invalid",
                    details={"job_id": job_id, "current": current.value, "requested": new_state.value},
                )
            if last_error is not None:
                conn.execute(
                    "UPDATE jobs SET state = ?, last_error = ?, updated_at = ? WHERE id = ?",
                    (new_state.value, last_error, utc_iso(), job_id),
                )
            else:
                conn.execute(
                    "UPDATE jobs SET state = ?, updated_at = ? WHERE id = ?",
                    (new_state.value, utc_iso(), job_id),
                )
            return _row_to_job(conn.execute(_JOB_SELECT + " WHERE j.id = ?", (job_id,)).fetchone())

        job = self._run("update_job_state", work)
        logger.debug(f"Job {job_id} is now {new_state.value}")
        return job

    def set_job_error(self, job_id: str, message: Optional[str]):
        """Record (or clear) the job's last error without changing its state."""
        def work(conn):
            conn.execute(
                "UPDATE jobs SET last_error = ?, updated_at = ? WHERE id = ?",
                (message, utc_iso(), job_id),
            )

        self._run("set_job_error", work)

    def delete_job(self, job_id: str) -> bool:
        """Delete a job and all its segments."""
        def work(conn):
            # Delete segments first (foreign key constraint)
            conn.execute("DELETE FROM segments WHERE job_id = ?", (job_id,))
            cursor = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return cursor.rowcount > 0

        deleted = self._run("delete_job", work)
        if deleted:
            logger.info(f"Deleted job {job_id}")
        return deleted

    # ============================================================
    # Segment operations
    # ============================================================

    def upsert_segments(self, segments: Sequence[Segment]) -> int:
        """
        Insert segments that are not stored yet.

        Re-inserting a segment that already exists with the same ordinal and
        source text leaves the stored row untouched, including its status,
        attempts and translation. A different segment at an existing
        (job, ordinal) position means the document changed since the job was
        segmented.

        Returns:
            Number of rows inserted
        """
        now = utc_iso()

        def work(conn):
            inserted = 0
            for segment in segments:
                existing = conn.execute(
                    "SELECT id, source_text FROM segments WHERE job_id = ? AND ordinal = ?",
                    (segment.job_id, segment.ordinal),
                ).fetchone()
                if existing is not None:
                    if existing["id"] != segment.id or existing["source_text"] != segment.source_text:
                        raise SegmentationError(
                            f"Segment {segment.ordinal} of job {segment.job_id} no longer matches the stored "
                            f"segment; the document changed since the job was created",
                            code="segments_mismatch",
                            details={"job_id": segment.job_id, "ordinal": segment.ordinal,
                                     "stored_id": existing["id"], "new_id": segment.id},
                        )
                    continue
                conn.execute("""
                    INSERT INTO segments (id, job_id, ordinal, source_text, translated_text,
                                          status, attempts, last_error, updated_at)
                    VALUES (?, ?, ?, ?, NULL, ?, 0, NULL, ?)
                """, (segment.id, segment.job_id, segment.ordinal, segment.source_text,
                      SegmentStatus.PENDING.value, now))
                inserted += 1
            return inserted

        inserted = self._run("upsert_segments", work)
        logger.debug(f"Upserted {len(segments)} segments ({inserted} new)")
        return inserted

    def claim_next_pending(
        self,
        job_id: str,
        limit: int,
        claimed_by: Optional[str] = None,
        stale_after: Optional[float] = None,
    ) -> List[Segment]:
        """
        Atomically move up to ``limit`` claimable segments to in-flight.

        Claimable means pending, or in-flight without an update for more than
        ``stale_after`` seconds. Segments are claimed in ordinal order. The
        select and the guarded updates run under the write lock, so no
        segment is ever handed to two callers.
        """
        if limit <= 0:
            return []
        claim_token = claimed_by or uuid.uuid4().hex

        condition = "status = 'pending'"
        condition_params: list = []
        if stale_after is not None:
            cutoff = utc_iso(utcnow() - timedelta(seconds=stale_after))
            condition = "(status = 'pending' OR (status = 'in_flight' AND updated_at < ?))"
            condition_params.append(cutoff)

        def work(conn):
            rows = conn.execute(
                f"SELECT id FROM segments WHERE job_id = ? AND {condition} ORDER BY ordinal LIMIT ?",
                (job_id, *condition_params, limit),
            ).fetchall()
            now = utc_iso()
            claimed_ids = []
            for row in rows:
                cursor = conn.execute(
                    f"UPDATE segments SET status = 'in_flight', claimed_by = ?, updated_at = ? "
                    f"WHERE id = ? AND {condition}",
                    (claim_token, now, row["id"], *condition_params),
                )
                if cursor.rowcount == 1:
                    claimed_ids.append(row["id"])
            if not claimed_ids:
                return []
            placeholders = ", ".join("?" for _ in claimed_ids)
            claimed = conn.execute(
                f"SELECT * FROM segments WHERE id IN ({placeholders}) ORDER BY ordinal",
                claimed_ids,
            ).fetchall()
            return [_row_to_segment(row) for row in claimed]

        return self._run("claim_next_pending", work)

    def record_attempt(self, segment_id: str, error: str, claimed_by: Optional[str] = None) -> bool:
        """
        Count a failed provider call on an in-flight segment that will be retried.

        Also refreshes updated_at, which keeps the claim from going stale
        while the worker waits to retry.
        """
        def work(conn):
            query = ("UPDATE segments SET attempts = attempts + 1, last_error = ?, updated_at = ? "
                     "WHERE id = ? AND status = 'in_flight'")
            params = [error, utc_iso(), segment_id]
            if claimed_by is not None:
                query += " AND claimed_by = ?"
                params.append(claimed_by)
            return conn.execute(query, params).rowcount == 1

        return self._run("record_attempt", work)

    def record_result(self, segment_id: str, outcome: SegmentOutcome, claimed_by: Optional[str] = None) -> bool:
        """
        Move an in-flight segment to done or failed.

        Returns False when the segment is no longer in flight (or held by
        another claim), in which case nothing is written.
        """
        status = SegmentStatus(outcome.status)
        if status not in (SegmentStatus.DONE, SegmentStatus.FAILED):
            raise ValueError(f"Not a terminal segment status: {status.value}")
        attempt_increment = 1 if outcome.provider_called else 0

        def work(conn):
            if status == SegmentStatus.DONE:
                query = ("UPDATE segments SET status = 'done', translated_text = ?, "
                         "attempts = attempts + ?, claimed_by = NULL, updated_at = ? "
                         "WHERE id = ? AND status = 'in_flight'")
                params = [outcome.translated_text, attempt_increment, utc_iso(), segment_id]
            else:
                query = ("UPDATE segments SET status = 'failed', last_error = ?, "
                         "attempts = attempts + ?, claimed_by = NULL, updated_at = ? "
                         "WHERE id = ? AND status = 'in_flight'")
                params = [outcome.error, attempt_increment, utc_iso(), segment_id]
            if claimed_by is not None:
                query += " AND claimed_by = ?"
                params.append(claimed_by)
            return conn.execute(query, params).rowcount == 1

        recorded = self._run("record_result", work)
        if not recorded:
            logger.warning(f"Result for segment {segment_id} dropped: segment is no longer claimed")
        return recorded

    def release_segment(self, segment_id: str, claimed_by: Optional[str] = None) -> bool:
        """Return an in-flight segment to pending without counting an attempt."""
        def work(conn):
            query = ("UPDATE segments SET status = 'pending', claimed_by = NULL, updated_at = ? "
                     "WHERE id = ? AND status = 'in_flight'")
            params = [utc_iso(), segment_id]
            if claimed_by is not None:
                query += " AND claimed_by = ?"
                params.append(claimed_by)
            return conn.execute(query, params).rowcount == 1

        return self._run("release_segment", work)

    def recover_stale_segments(self, stale_after: float, job_id: Optional[str] = None) -> int:
        """Reset in-flight segments without an update for ``stale_after`` seconds to pending."""
        cutoff = utc_iso(utcnow() - timedelta(seconds=stale_after))

        def work(conn):
            query = ("UPDATE segments SET status = 'pending', claimed_by = NULL "
                     "WHERE status = 'in_flight' AND updated_at <= ?")
            params = [cutoff]
            if job_id is not None:
                query += " AND job_id = ?"
                params.append(job_id)
            return conn.execute(query, params).rowcount

        recovered = self._run("recover_stale_segments", work)
        if recovered:
            logger.info(f"Recovered {recovered} stale in-flight segments")
        return recovered

    def requeue_failed(self, job_id: str) -> int:
        """Give failed segments of a job a fresh attempt budget (used on resume)."""
        def work(conn):
            return conn.execute(
                "UPDATE segments SET status = 'pending', attempts = 0, claimed_by = NULL, updated_at = ? "
                "WHERE job_id = ? AND status = 'failed'",
                (utc_iso(), job_id),
            ).rowcount

        requeued = self._run("requeue_failed", work)
        if requeued:
            logger.info(f"Requeued {requeued} failed segments of job {job_id}")
        return requeued

    def get_segment(self, segment_id: str) -> Optional[Segment]:
        def work(conn):
            row = conn.execute("SELECT * FROM segments WHERE id = ?", (segment_id,)).fetchone()
            return _row_to_segment(row) if row else None

        return self._run("get_segment", work, write=False)

    def list_segments(self, job_id: str, statuses: Optional[Iterable[SegmentStatus]] = None) -> List[Segment]:
        """Get segments of a job in ordinal order, optionally filtered by status."""
        status_values = _status_values(statuses)

        def work(conn):
            query = "SELECT * FROM segments WHERE job_id = ?"
            params: list = [job_id]
            if status_values:
                query += f" AND status IN ({', '.join('?' for _ in status_values)})"
                params.extend(status_values)
            query += " ORDER BY ordinal"
            return [_row_to_segment(row) for row in conn.execute(query, params).fetchall()]

        return self._run("list_segments", work, write=False)

    def count_segments(self, job_id: str, statuses: Optional[Iterable[SegmentStatus]] = None) -> int:
        status_values = _status_values(statuses)

        def work(conn):
            query = "SELECT COUNT(*) FROM segments WHERE job_id = ?"
            params: list = [job_id]
            if status_values:
                query += f" AND status IN ({', '.join('?' for _ in status_values)})"
                params.extend(status_values)
            return conn.execute(query, params).fetchone()[0]

        return self._run("count_segments", work, write=False)

    # ============================================================
    # Translation memory
    # ============================================================

    def lookup_memory(self, source_text: str, source_lang: str, target_lang: str) -> Optional[str]:
        """Get a previously stored translation of exactly this source text."""
        def work(conn):
            row = conn.execute("""
                SELECT translated_text FROM translation_memory
                WHERE source_hash = ? AND source_lang = ? AND target_lang = ? AND source_text = ?
            """, (calculate_hash(source_text), _normalize_lang(source_lang),
                  _normalize_lang(target_lang), source_text)).fetchone()
            return row["translated_text"] if row else None

        return self._run("lookup_memory", work, write=False)

    def remember(self, source_text: str, translated_text: str, source_lang: str, target_lang: str):
        """Store a translation unless this source text is already known."""
        def work(conn):
            conn.execute("""
                INSERT OR IGNORE INTO translation_memory
                (source_hash, source_lang, target_lang, source_text, translated_text, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (calculate_hash(source_text), _normalize_lang(source_lang), _normalize_lang(target_lang),
                  source_text, translated_text, utc_iso()))

        self._run("remember", work)

    # ============================================================
    # App config
    # ============================================================

    def get_app_config(self, key: str) -> Optional[str]:
        def work(conn):
            row = conn.execute("SELECT value FROM app_config WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None

        return self._run("get_app_config", work, write=False)

    def set_app_config(self, key: str, value: str):
        def work(conn):
            conn.execute("""
                INSERT INTO app_config (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
            """, (key, value))

        self._run("set_app_config", work)
