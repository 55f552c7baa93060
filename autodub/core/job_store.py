"""
Job persistence interface and an in-process implementation.

The orchestrator depends only on the JobStore protocol. Database
(db_sqlite.py) is the durable implementation; MemoryJobStore backs
tests and throwaway runs.
"""

import copy
import threading
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Protocol

from autodub.core.constants import TERMINAL_STATUSES, LOG_MAX_ENTRIES
from autodub.core.error_codes import NotFoundError
from autodub.core.models_sqlite import Job, JobChunk, LogEntry, PipelineConfig


class JobStore(Protocol):
    def create_job(self, source_url: str, config: PipelineConfig) -> Job: ...

    def get_job(self, job_id: str) -> Job | None: ...

    def update_job(self, job_id: str, **fields) -> None: ...

    def update_job_status(self, job_id: str, status: str, stage: str | None = None,
                          progress_pct: int | None = None, **extra) -> None: ...

    def delete_job(self, job_id: str) -> None: ...

    def list_jobs(self, limit: int | None = None, offset: int = 0,
                  status: str | None = None) -> list[Job]: ...

    def count_jobs(self, status: str | None = None) -> int: ...

    def get_unfinished_jobs(self) -> list[Job]: ...

    def create_chunks(self, chunks: list[JobChunk]) -> None: ...

    def get_chunks(self, job_id: str) -> list[JobChunk]: ...

    def update_chunk(self, job_id: str, idx: int, **fields) -> None: ...

    def delete_chunks(self, job_id: str) -> None: ...

    def add_log(self, job_id: str, entry: LogEntry) -> None: ...

    def get_logs(self, job_id: str, limit: int | None = None) -> list[LogEntry]: ...

    def delete_old_jobs(self, max_age_sec: float) -> list[str]: ...

    def close(self) -> None: ...


def is_expired(job: Job, cutoff: datetime) -> bool:
    """True for a terminal job that finished (or was last touched) before cutoff."""
    if job.status not in TERMINAL_STATUSES:
        return False
    stamp = job.completed_at or job.updated_at
    if not stamp:
        return False
    return datetime.fromisoformat(stamp) < cutoff


class MemoryJobStore:
    """Dict-backed JobStore. Callers always receive copies."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._chunks: dict[str, dict[int, JobChunk]] = {}
        self._seq: dict[str, int] = {}
        self._logs: dict[str, deque] = {}
        self._counter = 0
        self._lock = threading.RLock()

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def _snapshot(self, job: Job) -> Job:
        snap = copy.deepcopy(job)
        snap.chunks = self.get_chunks(job.id)
        return snap

    # ── Jobs ──────────────────────────────────────────────────────────

    def create_job(self, source_url: str, config: PipelineConfig,
                   job_id: str | None = None) -> Job:
        now = self._now()
        job = Job(
            id=job_id or str(uuid.uuid4()),
            source_url=source_url,
            config=config,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._counter += 1
            self._jobs[job.id] = job
            self._chunks[job.id] = {}
            self._seq[job.id] = self._counter
            self._logs[job.id] = deque(maxlen=LOG_MAX_ENTRIES)
        return copy.deepcopy(job)

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return self._snapshot(job) if job else None

    def update_job(self, job_id: str, **fields):
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(job_id)
            for key, value in fields.items():
                if key in ('id', 'source_url', 'created_at', 'chunks') or not hasattr(job, key):
                    raise ValueError(f"Unknown job field: {key}")
                setattr(job, key, copy.deepcopy(value))
            job.updated_at = self._now()

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
            self._jobs.pop(job_id, None)
            self._chunks.pop(job_id, None)
            self._seq.pop(job_id, None)
            self._logs.pop(job_id, None)

    def delete_old_jobs(self, max_age_sec: float) -> list[str]:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_sec)
        with self._lock:
            expired = [j.id for j in self._jobs.values() if is_expired(j, cutoff)]
            for job_id in expired:
                self.delete_job(job_id)
        return expired

    def _ordered(self, status: str | None) -> list[Job]:
        jobs = [j for j in self._jobs.values() if not status or j.status == status]
        jobs.sort(key=lambda j: (j.created_at or '', self._seq[j.id]), reverse=True)
        return jobs

    def list_jobs(self, limit: int | None = None, offset: int = 0,
                  status: str | None = None) -> list[Job]:
        with self._lock:
            jobs = self._ordered(status)
            end = None if limit is None else offset + limit
            return [self._snapshot(j) for j in jobs[offset:end]]

    def count_jobs(self, status: str | None = None) -> int:
        with self._lock:
            return len(self._ordered(status))

    def get_unfinished_jobs(self) -> list[Job]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.status not in TERMINAL_STATUSES]
            jobs.sort(key=lambda j: self._seq[j.id])
            return [self._snapshot(j) for j in jobs]

    # ── Chunks ────────────────────────────────────────────────────────

    def create_chunks(self, chunks: list[JobChunk]):
        with self._lock:
            for chunk in chunks:
                if chunk.job_id not in self._jobs:
                    raise NotFoundError(chunk.job_id)
                self._chunks[chunk.job_id][chunk.idx] = copy.deepcopy(chunk)

    def get_chunks(self, job_id: str) -> list[JobChunk]:
        with self._lock:
            rows = self._chunks.get(job_id, {})
            return [copy.deepcopy(rows[i]) for i in sorted(rows)]

    def update_chunk(self, job_id: str, idx: int, **fields):
        with self._lock:
            chunk = self._chunks.get(job_id, {}).get(idx)
            if chunk is None:
                raise NotFoundError(f"{job_id}#{idx}")
            for key, value in fields.items():
                if key in ('job_id', 'idx') or not hasattr(chunk, key):
                    raise ValueError(f"Unknown chunk field: {key}")
                setattr(chunk, key, value)

    def delete_chunks(self, job_id: str):
        with self._lock:
            if job_id in self._chunks:
                self._chunks[job_id] = {}

    # ── Logs ──────────────────────────────────────────────────────────

    def add_log(self, job_id: str, entry: LogEntry):
        with self._lock:
            logs = self._logs.get(job_id)
            if logs is None:
                raise NotFoundError(job_id)
            logs.append(copy.deepcopy(entry))

    def get_logs(self, job_id: str, limit: int | None = None) -> list[LogEntry]:
        """Oldest first; with a limit, only the newest `limit` entries."""
        with self._lock:
            logs = list(self._logs.get(job_id, ()))
        if limit is not None:
            logs = logs[-limit:] if limit > 0 else []
        return copy.deepcopy(logs)

    def close(self):
        pass
