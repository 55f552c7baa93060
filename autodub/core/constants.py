"""
Shared constants for AutoDub.
Single source of truth — imported by every other module.
"""

import os
import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "AutoDub"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_HOME = pathlib.Path(os.environ.get("AUTODUB_HOME", str(HOME / ".config" / "autodub")))
APP_CACHE_DIR = pathlib.Path(os.environ.get("AUTODUB_CACHE", str(HOME / ".cache" / "autodub")))
DEFAULT_TEMP_ROOT = APP_CACHE_DIR / "automation"
DB_PATH = APP_HOME / "jobs.db"
CONFIG_PATH = APP_HOME / "config.json"
LOG_DIR = APP_HOME / "logs"

# Job directory layout (under <temp_root>/<job_id>/)
JOB_SUBDIRS = ("source", "chunks", "dubbed", "output")
INTERMEDIATE_SUBDIRS = ("source", "chunks", "dubbed")
# Reserved entries under temp_root that are never treated as job directories
RESERVED_DIRS = frozenset({"jobs"})

SOURCE_BASENAME = "video"
CHUNK_FILE_TEMPLATE = "chunk_{idx:03d}.{ext}"
DUBBED_FILE_TEMPLATE = "chunk_{idx:03d}_dubbed.mp3"
FINAL_OUTPUT_BASENAME = "final_dubbed_video"
MANIFEST_NAME = "manifest.json"

# ── Job status values ─────────────────────────────────────────────────
class JobStatus:
    PENDING = "pending"
    DOWNLOADING = "downloading"
    CHUNKING = "chunking"
    DUBBING = "dubbing"
    MERGING = "merging"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = (PENDING, DOWNLOADING, CHUNKING, DUBBING, MERGING,
           FINALIZING, COMPLETE, FAILED, CANCELLED)


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED})
CANCELLABLE_STATUSES = frozenset({
    JobStatus.DOWNLOADING, JobStatus.CHUNKING, JobStatus.DUBBING,
    JobStatus.MERGING, JobStatus.FINALIZING,
})

# Legal state transitions. failed -> dubbing is reachable only through a chunk retry.
ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.DOWNLOADING, JobStatus.FAILED},
    JobStatus.DOWNLOADING: {JobStatus.CHUNKING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.CHUNKING: {JobStatus.DUBBING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.DUBBING: {JobStatus.MERGING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.MERGING: {JobStatus.FINALIZING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.FINALIZING: {JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.COMPLETE: set(),
    JobStatus.FAILED: {JobStatus.DUBBING},
    JobStatus.CANCELLED: set(),
}

# ── Pipeline stage values (ordered) ───────────────────────────────────
class JobStage:
    DOWNLOAD = "download"
    CHUNK = "chunk"
    DUB = "dub"
    MERGE = "merge"
    FINALIZE = "finalize"


STATUS_STAGE = {
    JobStatus.PENDING: JobStage.DOWNLOAD,
    JobStatus.DOWNLOADING: JobStage.DOWNLOAD,
    JobStatus.CHUNKING: JobStage.CHUNK,
    JobStatus.DUBBING: JobStage.DUB,
    JobStatus.MERGING: JobStage.MERGE,
    JobStatus.FINALIZING: JobStage.FINALIZE,
}

# ── Chunk status ──────────────────────────────────────────────────────
class ChunkStatus:
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_CHUNK_STATUSES = frozenset({ChunkStatus.SUCCEEDED, ChunkStatus.FAILED})

# ── Progress event kinds ──────────────────────────────────────────────
class EventKind:
    PROGRESS = "progress"
    LOG = "log"
    COMPLETE = "complete"
    ERROR = "error"

    ALL = (PROGRESS, LOG, COMPLETE, ERROR)


class LogLevel:
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # API boundary
    VALIDATION = "ERR_VALIDATION"
    NOT_FOUND = "ERR_NOT_FOUND"
    INVALID_STATE = "ERR_INVALID_STATE"
    INVALID_URL = "ERR_INVALID_URL"

    # Pipeline stages (non-retryable)
    CHUNKING = "ERR_CHUNKING"
    MERGE_FAILED = "ERR_MERGE_FAILED"
    PIPELINE_FAILED = "ERR_PIPELINE_FAILED"
    CHUNK_FAILED = "ERR_CHUNK_FAILED"
    UNEXPECTED = "ERR_UNEXPECTED"
    INTERRUPTED = "ERR_INTERRUPTED"
    CANCELLED = "CANCELLED"

    # Retryable
    DOWNLOAD_FAILED = "ERR_DOWNLOAD_FAILED"
    DUBBING_API = "ERR_DUBBING_API"
    DUBBING_TIMEOUT = "ERR_DUBBING_TIMEOUT"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"

RETRYABLE_ERRORS = {
    ErrorCode.DOWNLOAD_FAILED,
    ErrorCode.DUBBING_API,
    ErrorCode.DUBBING_TIMEOUT,
    ErrorCode.NETWORK_TRANSIENT,
    ErrorCode.CHUNK_FAILED,
}

# ── Pipeline configuration bounds ─────────────────────────────────────
ALLOWED_CHUNK_DURATIONS = (30, 60, 120, 300)
MIN_PARALLEL_JOBS = 1
MAX_PARALLEL_JOBS = 5
OUTPUT_FORMATS = ("mp4", "webm")
CHUNKING_STRATEGIES = ("fixed", "silence")

DEFAULT_PIPELINE = {
    'chunk_duration': 60,
    'target_language': 'es',
    'source_language': None,
    'max_parallel_jobs': 3,
    'video_quality': '1080p',
    'output_format': 'mp4',
    'use_watermark': False,
    'keep_intermediate_files': False,
    'chunking_strategy': 'fixed',
}

# Silence-aligned chunking: boundaries may move this far from the fixed grid
SILENCE_SNAP_WINDOW_SEC = 10.0
SILENCE_NOISE_DB = -35
SILENCE_MIN_DURATION_SEC = 0.4

# ── Chunk dispatch / retry ────────────────────────────────────────────
CHUNK_MAX_ATTEMPTS = 3
CHUNK_RETRY_DELAY_SEC = 5.0
CHUNK_BACKOFF_MULTIPLIER = 2

# ── Listing ───────────────────────────────────────────────────────────
LIST_DEFAULT_LIMIT = 10
LIST_MAX_LIMIT = 100

# ── Per-job log history ───────────────────────────────────────────────
LOG_MAX_ENTRIES = 1000

# ── Retention ─────────────────────────────────────────────────────────
OUTPUT_RETENTION_SEC = 24 * 60 * 60
OLD_JOB_MAX_AGE_SEC = 7 * 24 * 60 * 60

# ── Progress mapping ─────────────────────────────────────────────────
PROGRESS_PENDING = 0
PROGRESS_DOWNLOAD_START = 5
PROGRESS_DOWNLOAD_END = 20
PROGRESS_CHUNK_END = 25
PROGRESS_DUB_START = 25
PROGRESS_DUB_END = 95
PROGRESS_MERGE_END = 98
PROGRESS_COMPLETE = 100

# ── Pricing (dubbing provider, USD) ───────────────────────────────────
DUBBING_PRICE_PER_MINUTE = 0.24
WATERMARK_DISCOUNT = 0.5
PROCESSING_COST_PER_CHUNK = 0.01

# ── Time estimation (seconds) ─────────────────────────────────────────
DOWNLOAD_SEC_PER_MINUTE = 45
CHUNKING_SEC_PER_MINUTE = 1
DUBBING_DURATION_MULTIPLIER = 2.5
MERGING_SEC_PER_MINUTE = 2
FINALIZATION_SEC = 5

# ── Dubbing API ───────────────────────────────────────────────────────
DUBBING_API_BASE = "https://api.elevenlabs.io/v1"
DUBBING_API_KEY_ENV = "AUTODUB_DUBBING_API_KEY"
DUBBING_POLL_INTERVAL_SEC = 5
DUBBING_MAX_WAIT_SEC = 600

# ── Misc ──────────────────────────────────────────────────────────────
DIRECT_MEDIA_EXTENSIONS = (".mp4", ".webm", ".mkv", ".mov", ".m4v")
DOWNLOAD_CHUNK_BYTES = 1024 * 1024
JOB_ID_PATTERN = r'^[A-Za-z0-9_-]{1,64}$'
