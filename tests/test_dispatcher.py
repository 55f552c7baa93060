#!/usr/bin/env python3
"""
Unit tests for the bounded chunk dispatcher.
"""

import sys
import threading
import time
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from autodub.core.constants import ChunkStatus, ErrorCode
from autodub.core.chunk_dispatcher import ChunkDispatcher
from autodub.core.error_codes import JobError
from autodub.core.models_sqlite import JobChunk


def make_chunks(n: int) -> list[JobChunk]:
    return [JobChunk(job_id="job", idx=i, start_sec=i * 60.0, end_sec=(i + 1) * 60.0) for i in range(n)]


class TestChunkDispatcher(unittest.TestCase):
    """Test admission control, bulkhead isolation, retry and cancellation."""

    def test_never_exceeds_concurrency(self):
        lock = threading.Lock()
        state = {'running': 0, 'peak': 0}

        def operation(chunk):
            with lock:
                state['running'] += 1
                state['peak'] = max(state['peak'], state['running'])
                self.assertLessEqual(state['running'], 3)
            time.sleep(0.02)
            with lock:
                state['running'] -= 1
            return f"/tmp/{chunk.idx}.mp3"

        result = ChunkDispatcher(3).run(make_chunks(10), operation)
        self.assertEqual(len(result.succeeded), 10)
        self.assertLessEqual(state['peak'], 3)
        self.assertGreaterEqual(state['peak'], 2)

    def test_failure_is_isolated(self):
        def operation(chunk):
            if chunk.idx == 2:
                raise RuntimeError("provider exploded")
            return f"/tmp/{chunk.idx}.mp3"

        chunks = make_chunks(5)
        result = ChunkDispatcher(2).run(chunks, operation)

        self.assertEqual(len(result.succeeded), 4)
        self.assertEqual([c.idx for c in result.failed], [2])
        self.assertFalse(result.cancelled)
        self.assertEqual(result.not_started, [])
        for chunk in chunks:
            self.assertIn(chunk.status, (ChunkStatus.SUCCEEDED, ChunkStatus.FAILED))
            self.assertEqual(chunk.attempts, 1)
        self.assertIn("provider exploded", chunks[2].error_message)
        self.assertIsNone(chunks[2].dubbed_path)
        self.assertEqual(chunks[0].dubbed_path, "/tmp/0.mp3")
        self.assertEqual(result.errors[2].code, ErrorCode.CHUNK_FAILED)

    def test_updates_are_immediate_and_on_calling_thread(self):
        seen = []
        caller = threading.current_thread()

        def on_update(chunk):
            self.assertIs(threading.current_thread(), caller)
            seen.append((chunk.idx, chunk.status))

        ChunkDispatcher(2, on_chunk_update=on_update).run(make_chunks(3), lambda c: "/tmp/x.mp3")

        self.assertEqual(len(seen), 6)
        for idx in range(3):
            states = [s for i, s in seen if i == idx]
            self.assertEqual(states, [ChunkStatus.RUNNING, ChunkStatus.SUCCEEDED])

    def test_retries_with_backoff(self):
        calls = {}

        def flaky(chunk):
            calls[chunk.idx] = calls.get(chunk.idx, 0) + 1
            if calls[chunk.idx] < 3:
                raise RuntimeError("try again")
            return "/tmp/ok.mp3"

        chunks = make_chunks(2)
        result = ChunkDispatcher(2, max_attempts=3, retry_delay_sec=0.01).run(chunks, flaky)
        self.assertEqual(len(result.succeeded), 2)
        self.assertEqual([c.attempts for c in chunks], [3, 3])

    def test_gives_up_after_max_attempts(self):
        chunks = make_chunks(1)

        def always_fails(chunk):
            raise RuntimeError("nope")

        result = ChunkDispatcher(1, max_attempts=2, retry_delay_sec=0).run(chunks, always_fails)
        self.assertEqual(len(result.failed), 1)
        self.assertEqual(chunks[0].attempts, 2)

    def test_non_retryable_error_is_not_retried(self):
        chunks = make_chunks(1)

        def rejects(chunk):
            raise JobError(ErrorCode.DUBBING_API, "bad request", retryable=False)

        result = ChunkDispatcher(1, max_attempts=3).run(chunks, rejects)
        self.assertEqual(len(result.failed), 1)
        self.assertEqual(chunks[0].attempts, 1)
        self.assertIn("bad request", chunks[0].error_message)

    def test_cancel_stops_admission(self):
        cancel = threading.Event()

        def operation(chunk):
            cancel.set()
            return "/tmp/x.mp3"

        chunks = make_chunks(5)
        result = ChunkDispatcher(1, cancel_event=cancel).run(chunks, operation)

        self.assertTrue(result.cancelled)
        self.assertEqual([c.idx for c in result.succeeded], [0])
        self.assertEqual([c.idx for c in result.not_started], [1, 2, 3, 4])
        for chunk in chunks[1:]:
            self.assertEqual(chunk.status, ChunkStatus.PENDING)
            self.assertEqual(chunk.attempts, 0)

    def test_cancel_cuts_backoff_short(self):
        cancel = threading.Event()

        def fails_then_cancels(chunk):
            cancel.set()
            raise RuntimeError("down")

        started = time.monotonic()
        result = ChunkDispatcher(1, cancel_event=cancel, max_attempts=3,
                                 retry_delay_sec=30).run(make_chunks(1), fails_then_cancels)
        self.assertLess(time.monotonic() - started, 5)
        self.assertEqual(result.failed[0].attempts, 1)

    def test_empty_run(self):
        result = ChunkDispatcher(3).run([], lambda c: "/tmp/x.mp3")
        self.assertEqual((result.succeeded, result.failed, result.not_started), ([], [], []))

    def test_invalid_concurrency(self):
        with self.assertRaises(ValueError):
            ChunkDispatcher(0)


if __name__ == "__main__":
    unittest.main()
