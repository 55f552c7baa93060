"""
Bounded-concurrency dispatcher for per-chunk work.

At most `concurrency` operations run at once. As each one settles the
next chunk is admitted, so a slow chunk never holds back the others and a
failing chunk never aborts its siblings. All chunk state changes happen
on the calling (coordinating) thread.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, FIRST_COMPLETED, wait
from dataclasses import dataclass, field
from typing import Callable, Optional

from autodub.core.constants import ChunkStatus, CHUNK_BACKOFF_MULTIPLIER
from autodub.core.error_codes import ChunkOperationError, JobError
from autodub.core.models_sqlite import JobChunk

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    succeeded: list[JobChunk] = field(default_factory=list)
    failed: list[JobChunk] = field(default_factory=list)
    not_started: list[JobChunk] = field(default_factory=list)
    cancelled: bool = False
    errors: dict[int, ChunkOperationError] = field(default_factory=dict)


@dataclass
class _Outcome:
    attempts: int
    path: Optional[str] = None
    error: Optional[ChunkOperationError] = None


class ChunkDispatcher:
    """Runs an operation over chunks with a fixed number of slots."""

    def __init__(self, concurrency: int,
                 cancel_event: Optional[threading.Event] = None,
                 on_chunk_update: Optional[Callable[[JobChunk], None]] = None,
                 max_attempts: int = 1,
                 retry_delay_sec: float = 0,
                 backoff_multiplier: float = CHUNK_BACKOFF_MULTIPLIER):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.concurrency = concurrency
        self.cancel_event = cancel_event or threading.Event()
        self.on_chunk_update = on_chunk_update
        self.max_attempts = max_attempts
        self.retry_delay_sec = retry_delay_sec
        self.backoff_multiplier = backoff_multiplier

    def _notify(self, chunk: JobChunk):
        if self.on_chunk_update:
            self.on_chunk_update(chunk)

    def run(self, chunks: list[JobChunk], operation: Callable[[JobChunk], object]) -> DispatchResult:
        """
        Dispatch every chunk through operation. The operation returns the
        dubbed file path or raises. Returns once every admitted chunk has
        settled; chunks not admitted because of cancellation are left
        pending and reported in not_started.
        """
        queue = list(chunks)
        result = DispatchResult()
        cursor = 0
        in_flight = {}

        with ThreadPoolExecutor(max_workers=self.concurrency,
                                thread_name_prefix="chunk") as pool:
            while cursor < len(queue) or in_flight:
                while (cursor < len(queue) and len(in_flight) < self.concurrency
                       and not self.cancel_event.is_set()):
                    chunk = queue[cursor]
                    cursor += 1
                    chunk.status = ChunkStatus.RUNNING
                    chunk.error_message = None
                    self._notify(chunk)
                    in_flight[pool.submit(self._execute, chunk, operation)] = chunk

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    chunk = in_flight.pop(future)
                    self._settle(chunk, future.result(), result)

        result.not_started = queue[cursor:]
        result.cancelled = self.cancel_event.is_set()
        if result.not_started:
            logger.info("Dispatch stopped with %d chunks not started", len(result.not_started))
        return result

    def _settle(self, chunk: JobChunk, outcome: _Outcome, result: DispatchResult):
        chunk.attempts += outcome.attempts
        if outcome.error is None:
            chunk.status = ChunkStatus.SUCCEEDED
            chunk.dubbed_path = outcome.path
            chunk.error_message = None
            result.succeeded.append(chunk)
        else:
            chunk.status = ChunkStatus.FAILED
            chunk.error_message = outcome.error.message
            result.failed.append(chunk)
            result.errors[chunk.idx] = outcome.error
        self._notify(chunk)

    def _execute(self, chunk: JobChunk, operation) -> _Outcome:
        """Worker side: attempt the operation with backoff. Never raises."""
        delay = self.retry_delay_sec
        attempts = 0
        while True:
            attempts += 1
            try:
                path = operation(chunk)
                return _Outcome(attempts, path=str(path) if path is not None else None)
            except Exception as e:
                error = _wrap(chunk.idx, e)

            if attempts >= self.max_attempts or not error.retryable:
                return _Outcome(attempts, error=error)
            logger.warning("Chunk %d attempt %d/%d failed: %s",
                           chunk.idx, attempts, self.max_attempts, error.message)
            # backoff wait ends early on cancellation
            if delay > 0 and self.cancel_event.wait(delay):
                return _Outcome(attempts, error=error)
            if self.cancel_event.is_set():
                return _Outcome(attempts, error=error)
            delay *= self.backoff_multiplier


def _wrap(index: int, exc: Exception) -> ChunkOperationError:
    if isinstance(exc, ChunkOperationError):
        return exc
    message = exc.message if isinstance(exc, JobError) else str(exc) or type(exc).__name__
    error = ChunkOperationError(index, message, cause=exc)
    if isinstance(exc, JobError):
        error.retryable = exc.retryable
    return error
