"""
Data models (plain dataclasses) for AutoDub.
"""

from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from typing import Any, Optional

from autodub.core.constants import (
    ALLOWED_CHUNK_DURATIONS, CHUNKING_STRATEGIES, DEFAULT_PIPELINE,
    MAX_PARALLEL_JOBS, MIN_PARALLEL_JOBS, OUTPUT_FORMATS,
    ChunkStatus, JobStatus, STATUS_STAGE, PROGRESS_PENDING, PROGRESS_COMPLETE,
)
from autodub.core.error_codes import ValidationError


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class PipelineConfig:
    chunk_duration: int = 60
    target_language: str = "es"
    source_language: Optional[str] = None
    max_parallel_jobs: int = 3
    video_quality: str = "1080p"
    output_format: str = "mp4"
    use_watermark: bool = False
    keep_intermediate_files: bool = False
    chunking_strategy: str = "fixed"

    @classmethod
    def from_dict(cls, data: dict | None, defaults: dict | None = None) -> "PipelineConfig":
        """Build a config from a (possibly partial) dict. Unknown keys are ignored."""
        merged = dict(DEFAULT_PIPELINE)
        merged.update(defaults or {})
        merged.update({k: v for k, v in (data or {}).items() if v is not None})
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in merged.items() if k in known})

    def validate(self, strategies=CHUNKING_STRATEGIES) -> "PipelineConfig":
        if isinstance(self.chunk_duration, bool) or self.chunk_duration not in ALLOWED_CHUNK_DURATIONS:
            allowed = ", ".join(str(d) for d in ALLOWED_CHUNK_DURATIONS)
            raise ValidationError(f"Chunk duration must be one of {allowed} seconds")
        if (not isinstance(self.max_parallel_jobs, int) or isinstance(self.max_parallel_jobs, bool)
                or not MIN_PARALLEL_JOBS <= self.max_parallel_jobs <= MAX_PARALLEL_JOBS):
            raise ValidationError(
                f"Max parallel jobs must be between {MIN_PARALLEL_JOBS} and {MAX_PARALLEL_JOBS}")
        if not isinstance(self.target_language, str) or not self.target_language.strip():
            raise ValidationError("Target language is required")
        if self.output_format not in OUTPUT_FORMATS:
            raise ValidationError(f"Output format must be one of {', '.join(OUTPUT_FORMATS)}")
        if self.chunking_strategy not in strategies:
            raise ValidationError(f"Unknown chunking strategy: {self.chunking_strategy}")
        return self

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class VideoInfo:
    title: str
    duration: float                  # seconds
    thumbnail: Optional[str] = None
    resolution: Optional[str] = None
    codec: Optional[str] = None
    file_size: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "VideoInfo":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class JobPaths:
    root: str
    source: str
    chunks: str
    dubbed: str
    output: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class JobChunk:
    job_id: str
    idx: int
    start_sec: float
    end_sec: float
    source_path: Optional[str] = None
    status: str = ChunkStatus.PENDING
    attempts: int = 0
    dubbed_path: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def duration(self) -> float:
        return self.end_sec - self.start_sec

    def summary(self) -> dict:
        entry = {'index': self.idx, 'status': self.status, 'attempts': self.attempts}
        if self.error_message:
            entry['error'] = self.error_message
        return entry


@dataclass
class Job:
    id: str                          # UUID
    source_url: str
    config: PipelineConfig
    status: str = JobStatus.PENDING
    stage: Optional[str] = None
    progress_pct: int = PROGRESS_PENDING
    video_info: Optional[VideoInfo] = None
    output_file: Optional[str] = None
    error: Optional[dict] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    chunks: list[JobChunk] = field(default_factory=list)

    @property
    def failed_chunk_indices(self) -> list[int]:
        return [c.idx for c in self.chunks if c.status == ChunkStatus.FAILED]

    @property
    def progress(self) -> dict:
        """Structured snapshot: overall stage plus the per-chunk breakdown."""
        counts = {s: 0 for s in (ChunkStatus.PENDING, ChunkStatus.RUNNING,
                                 ChunkStatus.SUCCEEDED, ChunkStatus.FAILED)}
        for c in self.chunks:
            counts[c.status] = counts.get(c.status, 0) + 1
        return {
            'stage': self.stage or STATUS_STAGE.get(self.status),
            'status': self.status,
            'overall_percent': PROGRESS_COMPLETE if self.status == JobStatus.COMPLETE else self.progress_pct,
            'chunks': [c.summary() for c in self.chunks],
            'completed': counts[ChunkStatus.SUCCEEDED],
            'failed': counts[ChunkStatus.FAILED],
            'running': counts[ChunkStatus.RUNNING],
            'pending': counts[ChunkStatus.PENDING],
        }

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            'id': self.id,
            'status': self.status,
            'source_url': self.source_url,
            'video_info': self.video_info.to_dict() if self.video_info else None,
            'config': self.config.to_dict(),
            'progress': self.progress,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }
        if self.output_file:
            data['output_file'] = self.output_file
        if self.error:
            data['error'] = self.error
        if self.completed_at:
            data['completed_at'] = self.completed_at
        return data


@dataclass
class LogEntry:
    timestamp: str
    level: str
    stage: Optional[str]
    message: str
    metadata: Optional[dict] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    kind: str
    payload: Any
    timestamp: str = field(default_factory=utc_now)
