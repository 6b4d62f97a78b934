"""Durable job store on SQLite.

All writes go through one connection guarded by a re-entrant lock, and
multi-statement operations run inside ``BEGIN IMMEDIATE`` so another
process sharing the file is serialized too. Status changes are checked
against the state machine before they are committed.
"""
from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from jobforge.errors import (
    ClaimConflictError,
    DuplicateIdentityError,
    InvariantViolation,
    JobNotFoundError,
    StaleStatusError,
)
from jobforge.log import get_logger
from jobforge.models import (
    CallMetadata,
    CandidateJob,
    DetailedAnalysis,
    FeedSource,
    JobRecord,
    ProcessingRunStats,
    Rating,
)
from jobforge.status import EMAILED_OR_LATER, JobStatus, validate_transition

log = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    unique_id TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    company TEXT NOT NULL,
    location TEXT,
    salary_range TEXT,
    description TEXT,
    source_url TEXT NOT NULL,
    published_date TEXT,
    source_name TEXT,
    status TEXT NOT NULL DEFAULT 'new',
    rating TEXT,
    reasoning TEXT,
    top_matches TEXT,
    detailed_analysis TEXT,
    emailed INTEGER NOT NULL DEFAULT 0,
    processing_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    date_processed TEXT,
    claim_token TEXT,
    claimed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_source_url ON jobs(source_url);

CREATE TABLE IF NOT EXISTS feed_sources (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    name TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    last_fetched TEXT,
    last_fetch_status TEXT,
    last_error TEXT,
    job_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS processing_stats (
    run_date TEXT PRIMARY KEY,
    jobs_processed INTEGER NOT NULL DEFAULT 0,
    jobs_approved INTEGER NOT NULL DEFAULT 0,
    jobs_filtered INTEGER NOT NULL DEFAULT 0,
    jobs_emailed INTEGER NOT NULL DEFAULT 0,
    errors_count INTEGER NOT NULL DEFAULT 0,
    processing_time_seconds REAL NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS llm_analyses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    tier INTEGER NOT NULL,
    provider TEXT,
    model TEXT,
    rating TEXT,
    processing_time_ms REAL,
    cost_estimate REAL DEFAULT 0,
    confidence_score INTEGER,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_llm_analyses_created_at ON llm_analyses(created_at);
"""

# A claim this old belongs to a run that died before releasing it.
CLAIM_TTL = timedelta(minutes=15)

# Columns added after the first release; ALTERed into older databases.
_LATE_COLUMNS = {"claim_token": "TEXT", "claimed_at": "TEXT"}

# Columns a status write may touch besides status/updated_at.
_TRANSITION_FIELDS = frozenset({
    "rating", "reasoning", "top_matches", "detailed_analysis",
    "processing_error", "date_processed", "emailed",
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


class JobStore:
    def __init__(self, path: str | Path = ":memory:", clock: Callable[[], datetime] = utcnow) -> None:
        self.path = str(path)
        self.clock = clock
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self.path, timeout=30, isolation_level=None, check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        with self._lock:
            if self.path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA)
            self._migrate()
        log.debug("Job store ready at %s", self.path)

    def _migrate(self) -> None:
        have = {r["name"] for r in self._conn.execute("PRAGMA table_info(jobs)")}
        for column, kind in _LATE_COLUMNS.items():
            if column not in have:
                log.info("Adding jobs.%s to %s", column, self.path)
                self._conn.execute(f"ALTER TABLE jobs ADD COLUMN {column} {kind}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def now(self) -> str:
        return _iso(self.clock())

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["JobStore"]:
        """Serialize a read-check-write sequence; nests without committing early."""
        with self._lock:
            outer = self._depth == 0
            if outer:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outer:
                    self._conn.execute("ROLLBACK")
                raise
            self._depth -= 1
            if outer:
                self._conn.execute("COMMIT")

    def _execute(self, sql: str, params: tuple | dict = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    def _one(self, sql: str, params: tuple | dict = ()) -> sqlite3.Row | None:
        return self._execute(sql, params).fetchone()

    def _all(self, sql: str, params: tuple | dict = ()) -> list[sqlite3.Row]:
        return self._execute(sql, params).fetchall()

    # ------------------------------------------------------------------
    # jobs
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> JobRecord:
        analysis = json.loads(row["detailed_analysis"]) if row["detailed_analysis"] else None
        return JobRecord(
            id=row["id"],
            unique_id=row["unique_id"],
            title=row["title"],
            company=row["company"],
            description=row["description"] or "",
            source_url=row["source_url"],
            source_name=row["source_name"] or "",
            status=JobStatus(row["status"]),
            location=row["location"],
            salary_range=row["salary_range"],
            published_date=row["published_date"],
            rating=Rating(row["rating"]) if row["rating"] else None,
            reasoning=row["reasoning"],
            top_matches=json.loads(row["top_matches"]) if row["top_matches"] else [],
            detailed_analysis=DetailedAnalysis.from_dict(analysis) if analysis else None,
            emailed=bool(row["emailed"]),
            processing_error=row["processing_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            date_processed=row["date_processed"],
        )

    def get_job(self, job_id: str) -> JobRecord:
        row = self._one("SELECT * FROM jobs WHERE id = ?", (job_id,))
        if row is None:
            raise JobNotFoundError(job_id)
        return self._row_to_job(row)

    def list_jobs(
        self,
        status: JobStatus | None = None,
        *,
        emailed: bool | None = None,
        limit: int | None = None,
    ) -> list[JobRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(JobStatus(status).value)
        if emailed is not None:
            clauses.append("emailed = ?")
            params.append(int(emailed))
        sql = "SELECT * FROM jobs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, rowid"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [self._row_to_job(r) for r in self._all(sql, tuple(params))]

    def count_jobs(self) -> int:
        return self._one("SELECT COUNT(*) AS n FROM jobs")["n"]

    def status_counts(self) -> dict[str, int]:
        rows = self._all("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status")
        return {r["status"]: r["n"] for r in rows}

    def find_by_source_url(self, url: str) -> JobRecord | None:
        row = self._one("SELECT * FROM jobs WHERE source_url = ? LIMIT 1", (url,))
        return self._row_to_job(row) if row else None

    def find_by_unique_id(self, unique_id: str) -> JobRecord | None:
        row = self._one("SELECT * FROM jobs WHERE unique_id = ?", (unique_id,))
        return self._row_to_job(row) if row else None

    def find_recent_by_title_company(self, title: str, company: str, days: int) -> JobRecord | None:
        cutoff = _iso(self.clock() - timedelta(days=days))
        row = self._one(
            """
            SELECT * FROM jobs
            WHERE LOWER(title) = LOWER(?) AND LOWER(company) = LOWER(?)
              AND created_at > ?
            LIMIT 1
            """,
            (title, company, cutoff),
        )
        return self._row_to_job(row) if row else None

    def insert_job(self, candidate: CandidateJob) -> JobRecord:
        """Create a job in state ``new``. Only the dedup gate calls this."""
        now = self.now()
        job_id = f"job_{uuid.uuid4().hex[:16]}"
        try:
            self._execute(
                """
                INSERT INTO jobs (
                    id, unique_id, title, company, location, salary_range,
                    description, source_url, published_date, source_name,
                    status, emailed, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    job_id, candidate.unique_id, candidate.title, candidate.company,
                    candidate.location, candidate.salary_range, candidate.description,
                    candidate.source_url, candidate.published_date, candidate.source_name,
                    JobStatus.NEW.value, now, now,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateIdentityError(candidate.unique_id) from exc
        return self.get_job(job_id)

    def transition(
        self,
        job_id: str,
        target: JobStatus,
        *,
        expected: JobStatus | None = None,
        by_user: bool = False,
        **fields: Any,
    ) -> JobRecord:
        """Move a job to ``target``, writing ``fields`` in the same statement.

        ``expected`` turns the write into a compare-and-set: if the stored
        status differs, StaleStatusError is raised and nothing changes.
        """
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot write {sorted(unknown)} through a status transition")

        with self.transaction():
            job = self.get_job(job_id)
            if expected is not None and job.status != JobStatus(expected):
                raise StaleStatusError(job_id, JobStatus(expected).value, job.status.value)
            target = validate_transition(job.status, target, job_id=job_id, by_user=by_user)

            emailed = fields.get("emailed", job.emailed)
            if emailed and target not in EMAILED_OR_LATER:
                raise InvariantViolation(f"Job {job_id!r} cannot be marked emailed while {target.value}")
            rating = fields.get("rating", job.rating)
            analysis = fields.get("detailed_analysis", job.detailed_analysis)
            if analysis is not None and rating == Rating.REJECT:
                raise InvariantViolation(f"Job {job_id!r} rated REJECT cannot carry a detailed analysis")

            columns = {"status": target.value, "updated_at": self.now()}
            columns.update(self._encode_fields(fields))
            assignments = ", ".join(f"{col} = :{col}" for col in columns)
            cur = self._execute(
                f"UPDATE jobs SET {assignments} WHERE id = :_id AND status = :_current",
                {**columns, "_id": job_id, "_current": job.status.value},
            )
            if cur.rowcount != 1:
                current = self.get_job(job_id).status.value
                raise StaleStatusError(job_id, job.status.value, current)
            log.debug("Job %s: %s -> %s", job_id, job.status.value, target.value)
            return self.get_job(job_id)

    @staticmethod
    def _encode_fields(fields: dict[str, Any]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key, value in fields.items():
            if key == "rating":
                value = Rating(value).value if value is not None else None
            elif key == "top_matches":
                value = json.dumps(list(value or []))
            elif key == "detailed_analysis":
                value = json.dumps(value.to_dict()) if value is not None else None
            elif key == "emailed":
                value = int(bool(value))
            out[key] = value
        return out

    def set_detailed_analysis(self, job_id: str, analysis: DetailedAnalysis) -> JobRecord:
        """Attach a Tier 2 write-up without touching status."""
        with self.transaction():
            job = self.get_job(job_id)
            if job.rating in (None, Rating.REJECT):
                raise InvariantViolation(
                    f"Job {job_id!r} has rating {job.rating}; detailed analysis requires APPROVE or MAYBE"
                )
            self._execute(
                "UPDATE jobs SET detailed_analysis = ?, updated_at = ? WHERE id = ?",
                (json.dumps(analysis.to_dict()), self.now(), job_id),
            )
            return self.get_job(job_id)

    def apply_user_action(self, job_id: str, target: JobStatus) -> JobRecord:
        """Entry point for the user-action collaborator (applied, interview, ...)."""
        return self.transition(job_id, target, by_user=True)

    def requeue(self, job_id: str) -> JobRecord:
        """Send a job that needed review back through classification."""
        return self.transition(
            job_id, JobStatus.NEW, expected=JobStatus.NEEDS_REVIEW, processing_error=None,
        )

    @contextmanager
    def claim(self, job_id: str) -> Iterator[str]:
        """Hold a ``new`` job for classification across every store on this file.

        The token lives in the row, so a second process sharing the database
        sees the claim too. A claim older than CLAIM_TTL is treated as left
        behind by a crashed run and may be taken over.
        """
        token = uuid.uuid4().hex
        stale_before = _iso(self.clock() - CLAIM_TTL)
        with self.transaction():
            cur = self._execute(
                """
                UPDATE jobs SET claim_token = ?, claimed_at = ?
                WHERE id = ? AND status = ? AND (claim_token IS NULL OR claimed_at < ?)
                """,
                (token, self.now(), job_id, JobStatus.NEW.value, stale_before),
            )
            if cur.rowcount != 1:
                job = self.get_job(job_id)
                if job.status is not JobStatus.NEW:
                    raise StaleStatusError(job_id, JobStatus.NEW.value, job.status.value)
                raise ClaimConflictError(job_id)
        try:
            yield token
        finally:
            self._execute(
                "UPDATE jobs SET claim_token = NULL, claimed_at = NULL WHERE id = ? AND claim_token = ?",
                (job_id, token),
            )

    # ------------------------------------------------------------------
    # feeds
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_feed(row: sqlite3.Row) -> FeedSource:
        return FeedSource(
            id=row["id"],
            url=row["url"],
            name=row["name"],
            enabled=bool(row["enabled"]),
            last_fetched=row["last_fetched"],
            last_fetch_status=row["last_fetch_status"],
            last_error=row["last_error"],
            job_count=row["job_count"],
        )

    def upsert_feed(self, feed: FeedSource) -> FeedSource:
        """Insert or update a feed's configuration; fetch history is preserved."""
        self._execute(
            """
            INSERT INTO feed_sources (id, url, name, enabled) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                url = excluded.url, name = excluded.name, enabled = excluded.enabled
            """,
            (feed.id, feed.url, feed.name, int(feed.enabled)),
        )
        return self.get_feed(feed.id)

    def get_feed(self, feed_id: str) -> FeedSource | None:
        row = self._one("SELECT * FROM feed_sources WHERE id = ?", (feed_id,))
        return self._row_to_feed(row) if row else None

    def list_feeds(self, enabled_only: bool = True) -> list[FeedSource]:
        sql = "SELECT * FROM feed_sources"
        if enabled_only:
            sql += " WHERE enabled = 1"
        return [self._row_to_feed(r) for r in self._all(sql + " ORDER BY name")]

    def record_feed_fetch(
        self, feed_id: str, *, success: bool, jobs_added: int = 0, error: str | None = None,
    ) -> None:
        self._execute(
            """
            UPDATE feed_sources SET
                last_fetched = ?, last_fetch_status = ?, last_error = ?,
                job_count = job_count + ?
            WHERE id = ?
            """,
            (self.now(), "success" if success else "error", error, int(jobs_added), feed_id),
        )

    # ------------------------------------------------------------------
    # run statistics and model usage
    # ------------------------------------------------------------------

    def record_run_stats(self, stats: ProcessingRunStats) -> ProcessingRunStats:
        """Accumulate into the row for ``stats.run_date``."""
        self._execute(
            """
            INSERT INTO processing_stats (
                run_date, jobs_processed, jobs_approved, jobs_filtered,
                jobs_emailed, errors_count, processing_time_seconds
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_date) DO UPDATE SET
                jobs_processed = jobs_processed + excluded.jobs_processed,
                jobs_approved = jobs_approved + excluded.jobs_approved,
                jobs_filtered = jobs_filtered + excluded.jobs_filtered,
                jobs_emailed = jobs_emailed + excluded.jobs_emailed,
                errors_count = errors_count + excluded.errors_count,
                processing_time_seconds = processing_time_seconds + excluded.processing_time_seconds
            """,
            (
                stats.run_date, stats.jobs_processed, stats.jobs_approved,
                stats.jobs_filtered, stats.jobs_emailed, stats.errors_count,
                stats.processing_time_seconds,
            ),
        )
        return self.get_run_stats(stats.run_date)

    def get_run_stats(self, run_date: str) -> ProcessingRunStats | None:
        row = self._one("SELECT * FROM processing_stats WHERE run_date = ?", (run_date,))
        if row is None:
            return None
        return ProcessingRunStats(**{k: row[k] for k in row.keys()})

    def record_analysis(
        self,
        job_id: str,
        tier: int,
        meta: CallMetadata,
        *,
        rating: Rating | None = None,
        confidence: int | None = None,
    ) -> None:
        self._execute(
            """
            INSERT INTO llm_analyses (
                job_id, tier, provider, model, rating, processing_time_ms,
                cost_estimate, confidence_score, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id, tier, meta.provider, meta.model,
                rating.value if rating else None, meta.processing_time_ms,
                meta.cost_estimate, confidence, self.now(),
            ),
        )

    def usage_summary(self, days: int = 30) -> list[dict[str, Any]]:
        cutoff = _iso(self.clock() - timedelta(days=days))
        rows = self._all(
            """
            SELECT tier, provider, model, COUNT(*) AS calls,
                   AVG(processing_time_ms) AS avg_processing_time_ms,
                   SUM(cost_estimate) AS total_cost
            FROM llm_analyses WHERE created_at >= ?
            GROUP BY tier, provider, model ORDER BY tier, provider, model
            """,
            (cutoff,),
        )
        return [dict(r) for r in rows]
