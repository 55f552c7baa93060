"""
SQLite database layer for AutoDub.
Thread-safe via check_same_thread=False + explicit locking.
"""

import json
import sqlite3
import threading
import uuid
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

from autodub.core.constants import DB_PATH, TERMINAL_STATUSES, LOG_MAX_ENTRIES
from autodub.core.error_codes import NotFoundError
from autodub.core.job_store import is_expired
from autodub.core.models_sqlite import Job, JobChunk, LogEntry, PipelineConfig, VideoInfo

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 2

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    source_url TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    stage TEXT,
    progress_pct INTEGER DEFAULT 0,
    video_info TEXT,
    config TEXT NOT NULL,
    output_file TEXT,
    error TEXT,
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);

CREATE TABLE IF NOT EXISTS job_chunks (
    job_id TEXT NOT NULL,
    idx INTEGER NOT NULL,
    start_sec REAL,
    end_sec REAL,
    source_path TEXT,
    status TEXT DEFAULT 'pending',
    attempts INTEGER DEFAULT 0,
    dubbed_path TEXT,
    error_message TEXT,
    PRIMARY KEY (job_id, idx),
    FOREIGN KEY (job_id) REFERENCES jobs(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_job_chunks_job_idx ON job_chunks(job_id, idx);

CREATE TABLE IF NOT EXISTS job_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    level TEXT NOT NULL,
    stage TEXT,
    message TEXT NOT NULL,
    metadata TEXT,
    FOREIGN KEY (job_id) REFERENCES jobs(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_job_logs_job_id ON job_logs(job_id, id);
"""

# Columns that hold JSON documents
_JSON_COLUMNS = ('video_info', 'config', 'error')

_CHUNK_COLUMNS = ('source_path', 'status', 'attempts', 'dubbed_path', 'error_message',
                  'start_sec', 'end_sec')

_JOB_COLUMNS = ('status', 'stage', 'progress_pct', 'video_info', 'config',
                'output_file', 'error', 'completed_at')


class Database:
    """SQLite-backed job store."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = Path(db_path or DB_PATH)
        self._lock = threading.RLock()
        self._ensure_dirs()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(_CREATE_TABLES)
            cur.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )
            self.conn.commit()

    def close(self):
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _encode(key: str, value):
        if key not in _JSON_COLUMNS or value is None:
            return value
        if hasattr(value, 'to_dict'):
            value = value.to_dict()
        return json.dumps(value)

    def _row_to_job(self, row: sqlite3.Row, with_chunks: bool = True) -> Job:
        data = dict(row)
        video_info = json.loads(data['video_info']) if data['video_info'] else None
        job = Job(
            id=data['id'],
            source_url=data['source_url'],
            config=PipelineConfig.from_dict(json.loads(data['config'])),
            status=data['status'],
            stage=data['stage'],
            progress_pct=data['progress_pct'] or 0,
            video_info=VideoInfo.from_dict(video_info) if video_info else None,
            output_file=data['output_file'],
            error=json.loads(data['error']) if data['error'] else None,
            created_at=data['created_at'],
            updated_at=data['updated_at'],
            completed_at=data['completed_at'],
        )
        if with_chunks:
            job.chunks = self.get_chunks(job.id)
        return job

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> JobChunk:
        return JobChunk(**dict(row))

    # ── Job CRUD ──────────────────────────────────────────────────────

    def create_job(self, source_url: str, config: PipelineConfig,
                   job_id: str | None = None) -> Job:
        job_id = job_id or str(uuid.uuid4())
        now = self._now()
        job = Job(
            id=job_id,
            source_url=source_url,
            config=config,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self.conn.execute(
                """INSERT INTO jobs
                   (id, source_url, status, progress_pct, config,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (job.id, job.source_url, job.status, job.progress_pct,
                 self._encode('config', config), job.created_at, job.updated_at),
            )
            self.conn.commit()
        return job

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
            return self._row_to_job(row) if row else None

    def list_jobs(self, limit: int | None = None, offset: int = 0,
                  status: str | None = None) -> list[Job]:
        query = "SELECT * FROM jobs"
        params: list = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
        params.extend([-1 if limit is None else limit, offset])
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
            return [self._row_to_job(r) for r in rows]

    def count_jobs(self, status: str | None = None) -> int:
        with self._lock:
            if status:
                row = self.conn.execute(
                    "SELECT COUNT(*) FROM jobs WHERE status = ?", (status,)
                ).fetchone()
            else:
                row = self.conn.execute("SELECT COUNT(*) FROM jobs").fetchone()
            return int(row[0])

    def get_unfinished_jobs(self) -> list[Job]:
        placeholders = ', '.join('?' for _ in TERMINAL_STATUSES)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM jobs WHERE status NOT IN ({placeholders}) ORDER BY created_at ASC",
                tuple(TERMINAL_STATUSES),
            ).fetchall()
            return [self._row_to_job(r) for r in rows]

    def update_job(self, job_id: str, **kwargs):
        unknown = set(kwargs) - set(_JOB_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown job fields: {', '.join(sorted(unknown))}")
        kwargs['updated_at'] = self._now()
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = [self._encode(k, v) for k, v in kwargs.items()] + [job_id]
        with self._lock:
            cur = self.conn.execute(
                f"UPDATE jobs SET {sets} WHERE id = ?", vals
            )
            self.conn.commit()
            if cur.rowcount == 0:
                raise NotFoundError(job_id)

    def update_job_status(self, job_id: str, status: str, stage: str | None = None,
                          progress_pct: int | None = None, **extra):
        fields = {'status': status}
        if stage is not None:
            fields['stage'] = stage
        if progress_pct is not None:
            fields['progress_pct'] = progress_pct
        if status in TERMINAL_STATUSES:
            fields['completed_at'] = self._now()
        fields.update(extra)
        self.update_job(job_id, **fields)

    def delete_job(self, job_id: str):
        with self._lock:
            self.conn.execute("DELETE FROM job_logs WHERE job_id = ?", (job_id,))
            self.conn.execute("DELETE FROM job_chunks WHERE job_id = ?", (job_id,))
            self.conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            self.conn.commit()

    # ── Chunk CRUD ────────────────────────────────────────────────────

    def create_chunks(self, chunks: list[JobChunk]):
        with self._lock:
            self.conn.executemany(
                """INSERT OR REPLACE INTO job_chunks
                   (job_id, idx, start_sec, end_sec, source_path, status, attempts)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                [(c.job_id, c.idx, c.start_sec, c.end_sec, c.source_path,
                  c.status, c.attempts) for c in chunks],
            )
            self.conn.commit()

    def get_chunks(self, job_id: str) -> list[JobChunk]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM job_chunks WHERE job_id = ? ORDER BY idx",
                (job_id,),
            ).fetchall()
            return [self._row_to_chunk(r) for r in rows]

    def update_chunk(self, job_id: str, idx: int, **kwargs):
        unknown = set(kwargs) - set(_CHUNK_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown chunk fields: {', '.join(sorted(unknown))}")
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [job_id, idx]
        with self._lock:
            cur = self.conn.execute(
                f"UPDATE job_chunks SET {sets} WHERE job_id = ? AND idx = ?", vals
            )
            self.conn.commit()
        if cur.rowcount == 0:
            raise NotFoundError(f"{job_id}#{idx}")

    def delete_chunks(self, job_id: str):
        with self._lock:
            self.conn.execute("DELETE FROM job_chunks WHERE job_id = ?", (job_id,))
            self.conn.commit()

    # ── Job logs ──────────────────────────────────────────────────────

    def add_log(self, job_id: str, entry: LogEntry):
        with self._lock:
            if self.conn.execute("SELECT 1 FROM jobs WHERE id = ?", (job_id,)).fetchone() is None:
                raise NotFoundError(job_id)
            self.conn.execute(
                """INSERT INTO job_logs (job_id, timestamp, level, stage, message, metadata)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (job_id, entry.timestamp, entry.level, entry.stage, entry.message,
                 json.dumps(entry.metadata) if entry.metadata is not None else None),
            )
            # keep only the newest LOG_MAX_ENTRIES per job
            self.conn.execute(
                """DELETE FROM job_logs WHERE job_id = ? AND id NOT IN
                   (SELECT id FROM job_logs WHERE job_id = ? ORDER BY id DESC LIMIT ?)""",
                (job_id, job_id, LOG_MAX_ENTRIES),
            )
            self.conn.commit()

    def get_logs(self, job_id: str, limit: int | None = None) -> list[LogEntry]:
        """Oldest first; with a limit, only the newest `limit` entries."""
        with self._lock:
            rows = self.conn.execute(
                """SELECT timestamp, level, stage, message, metadata FROM job_logs
                   WHERE job_id = ? ORDER BY id DESC LIMIT ?""",
                (job_id, -1 if limit is None else max(limit, 0)),
            ).fetchall()
        entries = []
        for row in reversed(rows):
            data = dict(row)
            data['metadata'] = json.loads(data['metadata']) if data['metadata'] else None
            entries.append(LogEntry(**data))
        return entries

    def delete_old_jobs(self, max_age_sec: float) -> list[str]:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_sec)
        placeholders = ', '.join('?' for _ in TERMINAL_STATUSES)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM jobs WHERE status IN ({placeholders})",
                tuple(TERMINAL_STATUSES),
            ).fetchall()
            expired = [job.id for job in (self._row_to_job(r, with_chunks=False) for r in rows)
                       if is_expired(job, cutoff)]
            for job_id in expired:
                self.delete_job(job_id)
        if expired:
            logger.info("Deleted %d expired job record(s)", len(expired))
        return expired
