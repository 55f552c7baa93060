#!/usr/bin/env python3
"""
Unit tests for per-job temp directory management.
"""

import sys
import os
import time
import tempfile
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from autodub.core.error_codes import ValidationError
from autodub.core.temp_manager import TempManager, format_bytes


class TestTempManager(unittest.TestCase):
    """Test directory layout, cleanup and reaping."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.base = Path(self.tmpdir.name).resolve() / "automation"
        self.manager = TempManager(self.base)

    def tearDown(self):
        self.manager.close()
        self.tmpdir.cleanup()

    def _age(self, path: Path, seconds: float):
        past = time.time() - seconds
        os.utime(path, (past, past))

    def test_create_job_directories(self):
        paths = self.manager.create_job_directories("job-1")
        for sub in (paths.source, paths.chunks, paths.dubbed, paths.output):
            self.assertTrue(Path(sub).is_dir())
            self.assertEqual(Path(sub).parent, self.base / "job-1")
        # idempotent
        self.assertEqual(self.manager.create_job_directories("job-1"), paths)
        self.assertTrue(self.manager.job_exists("job-1"))
        self.assertFalse(self.manager.job_exists("job-2"))

    def test_paths_confined_to_base(self):
        for bad in ("../escape", "..", "a/b", ""):
            with self.assertRaises(ValidationError):
                self.manager.get_job_paths(bad)
        with self.assertRaises(ValidationError):
            self.manager.get_job_file_path("job-1", "../../etc/passwd", "output")
        with self.assertRaises(ValidationError):
            self.manager.get_job_file_path("job-1", "a.mp4", "elsewhere")
        path = self.manager.get_job_file_path("job-1", "final.mp4", "output")
        self.assertEqual(path, self.base / "job-1" / "output" / "final.mp4")

    def test_cleanup_intermediate_keeps_output(self):
        paths = self.manager.create_job_directories("job-1")
        (Path(paths.chunks) / "chunk_000.mp4").write_bytes(b"x")
        (Path(paths.output) / "final.mp4").write_bytes(b"y")

        self.manager.cleanup_intermediate_files(paths)

        self.assertFalse(Path(paths.source).exists())
        self.assertFalse(Path(paths.chunks).exists())
        self.assertFalse(Path(paths.dubbed).exists())
        self.assertTrue((Path(paths.output) / "final.mp4").exists())
        # second call is a no-op, not an error
        self.manager.cleanup_intermediate_files(paths)

    def test_cleanup_job_files(self):
        paths = self.manager.create_job_directories("job-1")
        self.manager.cleanup_job_files("job-1")
        self.assertFalse(Path(paths.root).exists())
        # already gone is fine
        self.manager.cleanup_job_files("job-1")

    def test_cleanup_job_files_leaves_other_jobs(self):
        self.manager.create_job_directories("job-1")
        other = self.manager.create_job_directories("job-2")
        self.manager.cleanup_job_files("job-1")
        self.assertTrue(Path(other.root).is_dir())

    def test_schedule_output_cleanup(self):
        paths = self.manager.create_job_directories("job-1")
        (Path(paths.output) / "final.mp4").write_bytes(b"y")
        timer = self.manager.schedule_output_cleanup(paths, delay_sec=0.05)
        timer.join(5)
        self.assertFalse(Path(paths.output).exists())
        self.assertTrue(Path(paths.root).exists())

    def test_cleanup_job_files_cancels_scheduled_cleanup(self):
        paths = self.manager.create_job_directories("job-1")
        timer = self.manager.schedule_output_cleanup(paths, delay_sec=60)
        self.manager.cleanup_job_files("job-1")
        timer.join(1)
        self.assertFalse(timer.is_alive())

    def test_cleanup_old_jobs_by_age(self):
        for job_id in ("old-1", "old-2", "new-1"):
            self.manager.create_job_directories(job_id)
        (self.base / "jobs").mkdir()
        (self.base / "stray.txt").write_text("not a job")

        self._age(self.base / "old-1", 7200)
        self._age(self.base / "old-2", 7200)
        self._age(self.base / "jobs", 7200)

        removed = self.manager.cleanup_old_jobs(max_age_sec=3600)

        self.assertEqual(removed, 2)
        self.assertFalse((self.base / "old-1").exists())
        self.assertFalse((self.base / "old-2").exists())
        self.assertTrue((self.base / "new-1").exists())
        self.assertTrue((self.base / "jobs").exists())
        self.assertTrue((self.base / "stray.txt").exists())

    def test_cleanup_old_jobs_respects_exclude(self):
        self.manager.create_job_directories("old-1")
        self._age(self.base / "old-1", 7200)
        self.assertEqual(self.manager.cleanup_old_jobs(3600, exclude={"old-1"}), 0)
        self.assertTrue((self.base / "old-1").exists())

    def test_cleanup_old_jobs_missing_base(self):
        manager = TempManager(self.base / "nothing-here")
        self.assertEqual(manager.cleanup_old_jobs(0), 0)

    def test_disk_usage(self):
        paths = self.manager.create_job_directories("job-1")
        (Path(paths.chunks) / "a.mp4").write_bytes(b"x" * 100)
        (Path(paths.dubbed) / "a.mp3").write_bytes(b"x" * 50)
        other = self.manager.create_job_directories("job-2")
        (Path(other.output) / "b.mp4").write_bytes(b"x" * 10)

        self.assertEqual(self.manager.get_job_disk_usage("job-1"), 150)
        self.assertEqual(self.manager.get_total_disk_usage(), 160)
        self.assertEqual(self.manager.get_job_disk_usage("job-3"), 0)

    def test_format_bytes(self):
        self.assertEqual(format_bytes(0), "0.00 B")
        self.assertEqual(format_bytes(1536), "1.50 KB")
        self.assertEqual(format_bytes(5 * 1024 ** 3), "5.00 GB")


if __name__ == "__main__":
    unittest.main()
