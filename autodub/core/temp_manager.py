"""
Temporary file manager: per-job directory trees and their cleanup.

Layout: <base>/<job_id>/{source,chunks,dubbed,output}
"""

import shutil
import logging
import threading
import time
from pathlib import Path

from autodub.core.constants import (
    DEFAULT_TEMP_ROOT, JOB_SUBDIRS, INTERMEDIATE_SUBDIRS, RESERVED_DIRS,
    OUTPUT_RETENTION_SEC, OLD_JOB_MAX_AGE_SEC,
)
from autodub.core.error_codes import ValidationError
from autodub.core.models_sqlite import JobPaths
from autodub.core.security_utils import ensure_within, validate_job_id

logger = logging.getLogger(__name__)


class TempManager:
    """Creates, measures and tears down job working directories."""

    def __init__(self, base_path: Path | None = None):
        self.base_path = Path(base_path or DEFAULT_TEMP_ROOT).expanduser().resolve()
        self._timers: dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    # ── Paths ─────────────────────────────────────────────────────────

    def _job_root(self, job_id: str) -> Path:
        validate_job_id(job_id)
        return ensure_within(self.base_path, self.base_path / job_id)

    def get_job_paths(self, job_id: str) -> JobPaths:
        root = self._job_root(job_id)
        return JobPaths(
            root=str(root),
            source=str(root / "source"),
            chunks=str(root / "chunks"),
            dubbed=str(root / "dubbed"),
            output=str(root / "output"),
        )

    def get_job_file_path(self, job_id: str, filename: str, subdir: str) -> Path:
        if subdir not in JOB_SUBDIRS:
            raise ValidationError(f"Unknown job subdirectory: {subdir}")
        folder = self._job_root(job_id) / subdir
        return ensure_within(folder, folder / filename)

    def job_exists(self, job_id: str) -> bool:
        return self._job_root(job_id).is_dir()

    # ── Creation ──────────────────────────────────────────────────────

    def create_job_directories(self, job_id: str) -> JobPaths:
        """Create source/, chunks/, dubbed/, output/ for a job. Safe to repeat."""
        paths = self.get_job_paths(job_id)
        for subdir in JOB_SUBDIRS:
            Path(getattr(paths, subdir)).mkdir(parents=True, exist_ok=True)
        logger.debug("Created job directories: %s", paths.root)
        return paths

    # ── Cleanup ───────────────────────────────────────────────────────

    def _remove_tree(self, path: Path):
        ensure_within(self.base_path, path)
        shutil.rmtree(path, ignore_errors=False)

    def cleanup_intermediate_files(self, paths: JobPaths):
        """
        Delete source/, chunks/ and dubbed/ for a job.
        Never touches the job root or output/. Never raises.
        """
        for subdir in INTERMEDIATE_SUBDIRS:
            dir_path = Path(getattr(paths, subdir))
            if not dir_path.exists():
                continue
            try:
                self._remove_tree(dir_path)
                logger.debug("Deleted: %s", dir_path)
            except Exception as e:
                logger.warning("Failed to delete %s: %s", dir_path, e)

    def cleanup_job_files(self, job_id: str):
        """Delete the whole job directory. A directory that is already gone is fine."""
        self._cancel_timer(job_id)
        root = self._job_root(job_id)
        try:
            self._remove_tree(root)
            logger.info("Removed job directory: %s", root)
        except FileNotFoundError:
            pass
        except Exception as e:
            logger.warning("Failed to remove job directory %s: %s", root, e)

    def schedule_output_cleanup(self, paths: JobPaths,
                                delay_sec: float = OUTPUT_RETENTION_SEC) -> threading.Timer:
        """Remove output/ after a retention window. Fire-and-forget."""
        job_id = Path(paths.root).name
        output = Path(paths.output)

        def _expire():
            with self._lock:
                self._timers.pop(job_id, None)
            try:
                if output.exists():
                    self._remove_tree(output)
                    logger.info("Expired output for job %s", job_id)
            except Exception as e:
                logger.warning("Scheduled cleanup of %s failed: %s", output, e)

        timer = threading.Timer(delay_sec, _expire)
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(job_id, None)
            self._timers[job_id] = timer
        if previous:
            previous.cancel()
        timer.start()
        return timer

    def _cancel_timer(self, job_id: str):
        with self._lock:
            timer = self._timers.pop(job_id, None)
        if timer:
            timer.cancel()

    def cleanup_old_jobs(self, max_age_sec: float = OLD_JOB_MAX_AGE_SEC,
                         exclude: set[str] | frozenset = frozenset()) -> int:
        """
        Remove job directories whose mtime is older than max_age_sec.
        Skips reserved metadata directories and any job id in exclude.
        Returns the number of directories removed.
        """
        if not self.base_path.is_dir():
            return 0

        now = time.time()
        removed = 0
        for entry in self.base_path.iterdir():
            if not entry.is_dir() or entry.is_symlink():
                continue
            if entry.name in RESERVED_DIRS or entry.name in exclude:
                continue
            try:
                age = now - entry.stat().st_mtime
            except FileNotFoundError:
                continue
            if age <= max_age_sec:
                continue
            try:
                self._cancel_timer(entry.name)
                self._remove_tree(entry)
                removed += 1
                logger.info("Reaped old job directory %s (age %.0fs)", entry.name, age)
            except Exception as e:
                logger.warning("Failed to reap %s: %s", entry, e)
        return removed

    # ── Disk usage ────────────────────────────────────────────────────

    def get_job_disk_usage(self, job_id: str) -> int:
        return _directory_size(self._job_root(job_id))

    def get_total_disk_usage(self) -> int:
        return _directory_size(self.base_path)

    def close(self):
        """Cancel any pending scheduled cleanups."""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()


def _directory_size(path: Path) -> int:
    total = 0
    if not path.exists():
        return 0
    for item in path.rglob('*'):
        try:
            if item.is_file() and not item.is_symlink():
                total += item.stat().st_size
        except FileNotFoundError:
            continue
    return total


def format_bytes(size: float) -> str:
    """Human-readable size, e.g. 1536 -> '1.50 KB'."""
    units = ['B', 'KB', 'MB', 'GB', 'TB']
    unit = 0
    while size >= 1024 and unit < len(units) - 1:
        size /= 1024
        unit += 1
    return f"{size:.2f} {units[unit]}"
