"""
Time-based video chunking.

A chunk plan partitions [0, duration] into contiguous, non-overlapping
slices. Strategies decide where the boundaries go; FfmpegSplitter cuts
the source file along them.
"""

import json
import math
import re
import logging
from pathlib import Path

from autodub.core.security_utils import run_subprocess_capture
from autodub.core.error_codes import JobError
from autodub.core.constants import (
    ErrorCode, CHUNK_FILE_TEMPLATE, MANIFEST_NAME,
    SILENCE_SNAP_WINDOW_SEC, SILENCE_NOISE_DB, SILENCE_MIN_DURATION_SEC,
)
from autodub.core.models_sqlite import JobChunk

logger = logging.getLogger(__name__)

# Boundaries closer than this to a neighbour are not moved
_MIN_CHUNK_SEC = 1.0

_SILENCE_START_RE = re.compile(r'silence_start:\s*(-?[\d.]+)')
_SILENCE_END_RE = re.compile(r'silence_end:\s*(-?[\d.]+)')


def create_chunk_manifest(duration_sec: float, chunk_duration_sec: int) -> list[dict]:
    """
    Fixed-grid plan: ceil(duration / chunk) entries of chunk_duration_sec,
    the last one possibly shorter.
    Returns list of dicts with idx, start_sec, end_sec.
    """
    if duration_sec <= 0:
        raise JobError(ErrorCode.CHUNKING, f"Cannot chunk a video of duration {duration_sec}")
    if chunk_duration_sec <= 0:
        raise JobError(ErrorCode.CHUNKING, f"Invalid chunk duration {chunk_duration_sec}")

    count = math.ceil(duration_sec / chunk_duration_sec)
    chunks = []
    for idx in range(count):
        start = float(idx * chunk_duration_sec)
        end = float(min((idx + 1) * chunk_duration_sec, duration_sec))
        chunks.append({'idx': idx, 'start_sec': start, 'end_sec': end})
    return chunks


def plan_silence_aligned(duration_sec: float, chunk_duration_sec: int,
                         silences: list[tuple[float, float]],
                         window_sec: float = SILENCE_SNAP_WINDOW_SEC) -> list[dict]:
    """
    Start from the fixed grid and move each inner boundary to the midpoint
    of the nearest silence within window_sec. Boundaries with no silence
    nearby stay on the grid. The chunk count never changes.
    """
    grid = create_chunk_manifest(duration_sec, chunk_duration_sec)
    midpoints = sorted((s + e) / 2.0 for s, e in silences if e > s)

    boundaries = [0.0]
    for entry in grid[:-1]:
        target = entry['end_sec']
        candidates = [m for m in midpoints if abs(m - target) <= window_sec]
        best = min(candidates, key=lambda m: abs(m - target)) if candidates else target
        # keep boundaries strictly increasing
        if best - boundaries[-1] < _MIN_CHUNK_SEC:
            best = target
        boundaries.append(best)
    boundaries.append(float(duration_sec))

    return [
        {'idx': idx, 'start_sec': boundaries[idx], 'end_sec': boundaries[idx + 1]}
        for idx in range(len(grid))
    ]


def detect_silences(source_path: Path,
                    noise_db: int = SILENCE_NOISE_DB,
                    min_duration: float = SILENCE_MIN_DURATION_SEC) -> list[tuple[float, float]]:
    """Run ffmpeg silencedetect over the audio track. Returns (start, end) pairs."""
    args = [
        "ffmpeg",
        "-hide_banner",
        "-i", str(source_path),
        "-af", f"silencedetect=noise={noise_db}dB:d={min_duration}",
        "-f", "null",
        "-",
    ]
    try:
        result = run_subprocess_capture(args, timeout=600)
    except Exception as e:
        raise JobError(ErrorCode.CHUNKING, f"Silence detection failed: {e}")

    if result.returncode != 0:
        raise JobError(ErrorCode.CHUNKING,
                       f"ffmpeg silencedetect failed: {result.stderr[:200] if result.stderr else 'unknown error'}")

    silences = []
    start = None
    for line in (result.stderr or "").splitlines():
        m = _SILENCE_START_RE.search(line)
        if m:
            start = max(0.0, float(m.group(1)))
            continue
        m = _SILENCE_END_RE.search(line)
        if m and start is not None:
            silences.append((start, float(m.group(1))))
            start = None
    logger.debug("Detected %d silences in %s", len(silences), source_path)
    return silences


# ── Strategies ────────────────────────────────────────────────────────

class FixedChunking:
    name = "fixed"

    def plan(self, source_path: Path, duration_sec: float, chunk_duration_sec: int) -> list[dict]:
        return create_chunk_manifest(duration_sec, chunk_duration_sec)


class SilenceChunking:
    """Fixed grid nudged onto pauses in speech."""

    name = "silence"

    def __init__(self, detector=detect_silences, window_sec: float = SILENCE_SNAP_WINDOW_SEC):
        self.detector = detector
        self.window_sec = window_sec

    def plan(self, source_path: Path, duration_sec: float, chunk_duration_sec: int) -> list[dict]:
        silences = self.detector(source_path)
        return plan_silence_aligned(duration_sec, chunk_duration_sec, silences, self.window_sec)


def default_strategies() -> dict:
    return {s.name: s for s in (FixedChunking(), SilenceChunking())}


# ── Probing / splitting ───────────────────────────────────────────────

def get_media_duration(source_path: Path) -> float:
    """Container duration in seconds, via ffprobe."""
    args = [
        "ffprobe",
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "json",
        str(source_path),
    ]
    try:
        result = run_subprocess_capture(args, timeout=60)
    except Exception as e:
        raise JobError(ErrorCode.CHUNKING, f"ffprobe failed: {e}")

    if result.returncode != 0:
        raise JobError(ErrorCode.CHUNKING,
                       f"ffprobe failed: {result.stderr[:200] if result.stderr else 'unknown error'}")
    try:
        return float(json.loads(result.stdout)['format']['duration'])
    except (ValueError, KeyError, TypeError) as e:
        raise JobError(ErrorCode.CHUNKING, f"Could not read duration of {source_path.name}: {e}")


def chunk_file_name(idx: int, ext: str) -> str:
    return CHUNK_FILE_TEMPLATE.format(idx=idx, ext=ext)


class FfmpegSplitter:
    """Cuts a source video into the slices of a chunk plan."""

    def __init__(self, timeout: int = 300):
        self.timeout = timeout

    def split(self, source_path: Path, chunks_dir: Path,
              manifest_entries: list[dict]) -> list[Path]:
        """
        Split source video into chunk files with ffmpeg.
        Returns chunk file paths in index order and writes manifest.json.
        """
        chunks_dir.mkdir(parents=True, exist_ok=True)
        ext = source_path.suffix.lstrip('.') or 'mp4'
        chunk_paths = []

        for entry in manifest_entries:
            idx = entry['idx']
            start = entry['start_sec']
            duration = entry['end_sec'] - start
            chunk_file = chunks_dir / chunk_file_name(idx, ext)

            args = [
                "ffmpeg",
                "-y",
                "-ss", f"{start:.3f}",
                "-i", str(source_path),
                "-t", f"{duration:.3f}",
                "-c", "copy",
                "-avoid_negative_ts", "make_zero",
                str(chunk_file),
            ]

            try:
                result = run_subprocess_capture(args, timeout=self.timeout)
            except Exception as e:
                raise JobError(ErrorCode.CHUNKING, f"Chunk {idx} creation failed: {e}")

            if result.returncode != 0:
                raise JobError(ErrorCode.CHUNKING,
                               f"ffmpeg chunk {idx} failed: {result.stderr[:200] if result.stderr else 'unknown error'}")

            if not chunk_file.exists():
                raise JobError(ErrorCode.CHUNKING, f"Chunk file {idx} not created")

            chunk_paths.append(chunk_file)

        write_manifest(chunks_dir, manifest_entries, ext)
        logger.info("Created %d chunks in %s", len(chunk_paths), chunks_dir)
        return chunk_paths


def write_manifest(chunks_dir: Path, manifest_entries: list[dict], ext: str = 'mp4') -> Path:
    manifest = {
        'chunking_mode': 'time_based',
        'chunks': [
            {
                'idx': e['idx'],
                'file': chunk_file_name(e['idx'], ext),
                'start_sec': e['start_sec'],
                'end_sec': e['end_sec'],
            }
            for e in manifest_entries
        ],
    }
    path = chunks_dir / MANIFEST_NAME
    with open(path, 'w') as f:
        json.dump(manifest, f, indent=2)
    return path


def read_manifest(chunks_dir: Path) -> list[dict]:
    with open(chunks_dir / MANIFEST_NAME, 'r') as f:
        return json.load(f)['chunks']


def create_job_chunks(job_id: str, manifest_entries: list[dict],
                      chunk_paths: list[Path] | None = None) -> list[JobChunk]:
    """Create JobChunk objects from manifest entries."""
    paths = chunk_paths or [None] * len(manifest_entries)
    return [
        JobChunk(
            job_id=job_id,
            idx=e['idx'],
            start_sec=e['start_sec'],
            end_sec=e['end_sec'],
            source_path=str(p) if p else None,
        )
        for e, p in zip(manifest_entries, paths)
    ]
