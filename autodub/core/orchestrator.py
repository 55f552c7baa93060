"""
Pipeline orchestrator: drives each dubbing job through
pending → downloading → chunking → dubbing → merging → finalizing → complete.

One background thread per job run. The orchestrator is the only writer of
a job's status; every transition goes through _transition under one lock.
"""

import logging
import threading
import time
from pathlib import Path

from autodub.core.constants import (
    JobStatus, JobStage, ChunkStatus, ErrorCode, LogLevel, ALLOWED_TRANSITIONS,
    STATUS_STAGE, TERMINAL_STATUSES, CANCELLABLE_STATUSES, TERMINAL_CHUNK_STATUSES,
    CHUNK_MAX_ATTEMPTS, CHUNK_RETRY_DELAY_SEC, CHUNK_BACKOFF_MULTIPLIER,
    LIST_DEFAULT_LIMIT, LIST_MAX_LIMIT, OUTPUT_RETENTION_SEC, OLD_JOB_MAX_AGE_SEC,
    PROGRESS_DOWNLOAD_START, PROGRESS_DOWNLOAD_END, PROGRESS_CHUNK_END,
    PROGRESS_DUB_START, PROGRESS_DUB_END, PROGRESS_MERGE_END, PROGRESS_COMPLETE,
)
from autodub.core.error_codes import (
    JobError, ValidationError, NotFoundError, InvalidStateError, PipelineFatalError,
)
from autodub.core.models_sqlite import Job, JobPaths, LogEntry, PipelineConfig, VideoInfo
from autodub.core.chunk_dispatcher import ChunkDispatcher
from autodub.core.chunking_timebased import create_job_chunks, default_strategies
from autodub.core.cost_estimator import calculate_cost, calculate_time, CostEstimate, TimeEstimate
from autodub.core.progress_bus import ProgressBus, create_log_entry
from autodub.core.url_parse import validate_source_url

logger = logging.getLogger(__name__)

_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class _JobCancelled(Exception):
    """Raised inside a worker once its cancel event is set."""


class PipelineOrchestrator:
    """Public API over the job store, temp manager, bus and collaborators."""

    def __init__(self, store, temp_manager, bus: ProgressBus,
                 fetcher, splitter, translator, merger,
                 chunking_strategies: dict | None = None,
                 chunk_max_attempts: int = CHUNK_MAX_ATTEMPTS,
                 chunk_retry_delay_sec: float = CHUNK_RETRY_DELAY_SEC,
                 backoff_multiplier: float = CHUNK_BACKOFF_MULTIPLIER,
                 output_retention_sec: float = OUTPUT_RETENTION_SEC):
        self.store = store
        self.temp = temp_manager
        self.bus = bus
        self.fetcher = fetcher
        self.splitter = splitter
        self.translator = translator
        self.merger = merger
        self.strategies = chunking_strategies or default_strategies()
        self.chunk_max_attempts = chunk_max_attempts
        self.chunk_retry_delay_sec = chunk_retry_delay_sec
        self.backoff_multiplier = backoff_multiplier
        self.output_retention_sec = output_retention_sec

        self._lock = threading.RLock()
        self._cancel_events: dict[str, threading.Event] = {}
        self._threads: dict[str, threading.Thread] = {}

    # ── Public API ────────────────────────────────────────────────────

    def start_pipeline(self, source_url: str, config: PipelineConfig | dict | None = None) -> str:
        """
        Validate input, create the job in pending, allocate its directories
        and start the pipeline in the background. Returns the job id.
        """
        url = validate_source_url(source_url)
        config = self._coerce_config(config)

        job = self.store.create_job(url, config)
        try:
            paths = self.temp.create_job_directories(job.id)
        except Exception as e:
            self.store.delete_job(job.id)
            raise JobError(ErrorCode.UNEXPECTED, f"Could not allocate job directories: {e}")

        self._log(job.id, None, LogLevel.INFO, f"Job created for {url}")
        self._spawn(job.id, self._run_pipeline, paths)
        return job.id

    def get_job_status(self, job_id: str) -> Job | None:
        return self.store.get_job(job_id)

    def cancel_job(self, job_id: str):
        """
        Cancel a running job. Returns immediately; chunk operations already
        in flight finish in the background and are not merged.
        """
        with self._lock:
            job = self._require(job_id)
            if job.status not in CANCELLABLE_STATUSES:
                raise InvalidStateError(f"Job cannot be cancelled while {job.status}", status=job.status)
            event = self._cancel_events.get(job_id)
            if event:
                event.set()
            error = {
                'code': ErrorCode.CANCELLED,
                'message': "Job cancelled by user",
                'stage': job.stage,
                'recoverable': False,
                'failed_chunks': [],
            }
            self.store.update_job_status(job_id, JobStatus.CANCELLED, error=error)

        self._log(job_id, job.stage, LogLevel.WARN, "Job cancelled")
        self.bus.publish_error(job_id, error)
        if not job.config.keep_intermediate_files:
            self.temp.cleanup_intermediate_files(self.temp.get_job_paths(job_id))

    def retry_failed_chunks(self, job_id: str, chunk_indices: list[int] | None = None) -> list[int]:
        """
        Re-dub failed chunks of a failed job. With no indices every failed
        chunk is retried. Succeeded chunks are left as they are.
        """
        with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.FAILED:
                raise InvalidStateError(f"Only failed jobs can be retried (job is {job.status})",
                                        status=job.status)
            failed = job.failed_chunk_indices
            if not failed:
                raise InvalidStateError("Job has no failed chunks to retry", status=job.status)

            if chunk_indices is None:
                indices = failed
            else:
                indices = sorted(set(chunk_indices))
                if not indices:
                    raise ValidationError("No chunk indices given")
                not_failed = [i for i in indices if i not in failed]
                if not_failed:
                    raise ValidationError(f"Chunks are not in failed state: {not_failed}")

            for idx in indices:
                self.store.update_chunk(job_id, idx, status=ChunkStatus.PENDING, error_message=None)
            settled = len(job.chunks) - len(indices)
            self._transition(job_id, JobStatus.DUBBING, _dub_percent(settled, len(job.chunks)),
                             error=None, completed_at=None, output_file=None)

        self._log(job_id, JobStage.DUB, LogLevel.INFO, f"Retrying chunks {indices}")
        self._spawn(job_id, self._resume, self.temp.get_job_paths(job_id), indices)
        return indices

    def list_jobs(self, limit: int = LIST_DEFAULT_LIMIT, offset: int = 0,
                  status: str | None = None) -> dict:
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= LIST_MAX_LIMIT:
            raise ValidationError(f"Limit must be between 1 and {LIST_MAX_LIMIT}")
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise ValidationError("Offset must be a non-negative integer")
        if status is not None and status not in JobStatus.ALL:
            raise ValidationError(f"Unknown status filter: {status}")

        jobs = self.store.list_jobs(limit=limit, offset=offset, status=status)
        total = self.store.count_jobs(status=status)
        return {'jobs': jobs, 'total': total, 'has_more': offset + len(jobs) < total}

    def delete_job(self, job_id: str):
        """Remove a finished job's files, record and listeners."""
        with self._lock:
            job = self._require(job_id)
            if job.status not in TERMINAL_STATUSES:
                raise InvalidStateError(f"Cannot delete a job that is {job.status}", status=job.status)
            self.temp.cleanup_job_files(job_id)
            self.store.delete_job(job_id)
            self._cancel_events.pop(job_id, None)
        self.bus.unsubscribe_all(job_id)
        logger.info("Deleted job %s", job_id)

    def get_cost_estimate(self, video_info: VideoInfo | dict,
                          config: PipelineConfig | dict | None = None) -> CostEstimate:
        return calculate_cost(_coerce_video_info(video_info), self._coerce_config(config))

    def get_time_estimate(self, video_info: VideoInfo | dict,
                          config: PipelineConfig | dict | None = None) -> TimeEstimate:
        return calculate_time(_coerce_video_info(video_info), self._coerce_config(config))

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        """Block until the job's current run finishes. False on timeout."""
        with self._lock:
            thread = self._threads.get(job_id)
        deadline = None if timeout is None else time.monotonic() + timeout
        while thread is not None:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
            if thread.is_alive():
                return False
            # a retry started from an event handler replaces the finished run
            with self._lock:
                successor = self._threads.get(job_id)
            thread = successor if successor is not thread else None
        return True

    def recover_interrupted_jobs(self) -> int:
        """
        Mark jobs left mid-pipeline by a previous process as failed.
        Jobs that already have chunks become retryable.
        """
        count = 0
        for job in self.store.get_unfinished_jobs():
            with self._lock:
                if job.id in self._threads:
                    continue
            if self._mark_interrupted(job.id, "Interrupted by application restart"):
                count += 1
        if count:
            logger.info("Marked %d interrupted job(s) as failed", count)
        return count

    def cleanup_old_jobs(self, max_age_sec: float = OLD_JOB_MAX_AGE_SEC) -> int:
        """
        Delete finished jobs older than max_age_sec (record, logs, files and
        listeners), then reap stale directories no record points at.
        Unfinished jobs are never touched. Returns the number of jobs removed.
        """
        with self._lock:
            expired = self.store.delete_old_jobs(max_age_sec)
            for job_id in expired:
                self.temp.cleanup_job_files(job_id)
                self._cancel_events.pop(job_id, None)
            active = set(self._threads)
        for job_id in expired:
            self.bus.unsubscribe_all(job_id)
        active.update(j.id for j in self.store.get_unfinished_jobs())
        reaped = self.temp.cleanup_old_jobs(max_age_sec, exclude=active)
        if expired:
            logger.info("Deleted %d expired job(s)", len(expired))
        return len(expired) + reaped

    def get_job_logs(self, job_id: str, limit: int | None = None) -> list[LogEntry]:
        """Stored log history of a job, oldest first."""
        self._require(job_id)
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
            raise ValidationError("Limit must be a positive integer")
        return self.store.get_logs(job_id, limit)

    def shutdown(self, timeout: float | None = None):
        """Stop all running jobs and cancel scheduled cleanups."""
        with self._lock:
            for event in self._cancel_events.values():
                event.set()
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)
        self.temp.close()

    # ── Workers ───────────────────────────────────────────────────────

    def _spawn(self, job_id: str, target, *args):
        event = threading.Event()
        thread = threading.Thread(
            target=self._worker,
            args=(job_id, event, target, args),
            name=f"job-{job_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._cancel_events[job_id] = event
            self._threads[job_id] = thread
        thread.start()

    def _worker(self, job_id: str, cancel_event: threading.Event, target, args):
        try:
            target(job_id, cancel_event, *args)
        except _JobCancelled:
            self._on_cancelled(job_id)
        except NotFoundError:
            logger.info("Job %s was removed while its worker was running", job_id)
        except PipelineFatalError as e:
            self._fail(job_id, e, e.stage, e.failed_chunks)
        except JobError as e:
            self._fail(job_id, e, self._current_stage(job_id))
        except Exception as e:
            logger.error("Unexpected error in job %s", job_id, exc_info=True)
            self._fail(job_id, JobError(ErrorCode.UNEXPECTED, str(e) or type(e).__name__, retryable=False),
                       self._current_stage(job_id))
        finally:
            with self._lock:
                if self._threads.get(job_id) is threading.current_thread():
                    del self._threads[job_id]
                # deleted while chunk calls were in flight; they may have recreated files
                if self.store.get_job(job_id) is None:
                    self.temp.cleanup_job_files(job_id)

    def _run_pipeline(self, job_id: str, cancel_event: threading.Event, paths: JobPaths):
        job = self._require(job_id)
        config = job.config

        self._transition(job_id, JobStatus.DOWNLOADING, PROGRESS_DOWNLOAD_START, cancel_event)
        source_path, info = self._stage(JobStage.DOWNLOAD, ErrorCode.DOWNLOAD_FAILED, cancel_event,
                                        self.fetcher.fetch, job.source_url, Path(paths.source))
        self.store.update_job(job_id, video_info=info)
        self._log(job_id, JobStage.DOWNLOAD, LogLevel.INFO,
                  f"Downloaded '{info.title}' ({info.duration:.1f}s)",
                  {'duration': info.duration, 'file_size': info.file_size})

        self._transition(job_id, JobStatus.CHUNKING, PROGRESS_DOWNLOAD_END, cancel_event)
        strategy = self.strategies[config.chunking_strategy]
        entries = self._stage(JobStage.CHUNK, ErrorCode.CHUNKING, cancel_event,
                              strategy.plan, source_path, info.duration, config.chunk_duration)
        chunk_paths = self._stage(JobStage.CHUNK, ErrorCode.CHUNKING, cancel_event,
                                  self.splitter.split, source_path, Path(paths.chunks), entries)
        if len(chunk_paths) != len(entries):
            raise PipelineFatalError(JobStage.CHUNK,
                                     f"Splitter produced {len(chunk_paths)} files for {len(entries)} chunks",
                                     code=ErrorCode.CHUNKING)
        self.store.create_chunks(create_job_chunks(job_id, entries, chunk_paths))
        self._log(job_id, JobStage.CHUNK, LogLevel.INFO,
                  f"Split into {len(entries)} chunks using '{strategy.name}' strategy")

        self._transition(job_id, JobStatus.DUBBING, PROGRESS_CHUNK_END, cancel_event)
        self._dub_and_finish(job_id, cancel_event, paths, self.store.get_chunks(job_id))

    def _resume(self, job_id: str, cancel_event: threading.Event, paths: JobPaths,
                indices: list[int]):
        chunks = [c for c in self.store.get_chunks(job_id) if c.idx in indices]
        self._dub_and_finish(job_id, cancel_event, paths, chunks)

    def _dub_and_finish(self, job_id: str, cancel_event: threading.Event, paths: JobPaths, chunks):
        job = self._require(job_id)
        config = job.config
        total = len(job.chunks)
        settled = {'count': total - len(chunks)}
        dubbed_dir = Path(paths.dubbed)

        def on_chunk_update(chunk):
            self._on_chunk_update(job_id, chunk, settled, total, cancel_event)

        def translate(chunk):
            return self.translator.translate(Path(chunk.source_path), dubbed_dir, chunk.idx, config)

        dispatcher = ChunkDispatcher(
            config.max_parallel_jobs,
            cancel_event=cancel_event,
            on_chunk_update=on_chunk_update,
            max_attempts=self.chunk_max_attempts,
            retry_delay_sec=self.chunk_retry_delay_sec,
            backoff_multiplier=self.backoff_multiplier,
        )
        result = dispatcher.run(chunks, translate)
        if result.cancelled:
            raise _JobCancelled()

        job = self._require(job_id)
        failed = job.failed_chunk_indices
        if failed:
            raise PipelineFatalError(JobStage.DUB,
                                     f"{len(failed)} of {total} chunks failed to dub",
                                     code=ErrorCode.CHUNK_FAILED, failed_chunks=failed)
        unfinished = [c.idx for c in job.chunks if c.status != ChunkStatus.SUCCEEDED]
        if unfinished:
            raise PipelineFatalError(JobStage.DUB, f"Chunks never dubbed: {unfinished}")

        self._transition(job_id, JobStatus.MERGING, PROGRESS_DUB_END, cancel_event)
        output = self._stage(JobStage.MERGE, ErrorCode.MERGE_FAILED, cancel_event,
                             self.merger.merge, job.chunks, Path(paths.output), config)

        self._transition(job_id, JobStatus.FINALIZING, PROGRESS_MERGE_END, cancel_event)
        self._stage(JobStage.FINALIZE, ErrorCode.PIPELINE_FAILED, cancel_event,
                    self._finalize, job_id, paths, Path(output), config)

        job = self._transition(job_id, JobStatus.COMPLETE, PROGRESS_COMPLETE, cancel_event,
                               output_file=str(output), error=None)
        self.bus.publish_complete(job_id, {
            'job_id': job_id,
            'output_file': str(output),
            'video_info': job.video_info.to_dict() if job.video_info else None,
            'chunks': len(job.chunks),
        })

    def _finalize(self, job_id: str, paths: JobPaths, output: Path, config: PipelineConfig):
        if not output.is_file() or output.stat().st_size == 0:
            raise JobError(ErrorCode.MERGE_FAILED, f"Merged output missing or empty: {output.name}")
        if not config.keep_intermediate_files:
            self.temp.cleanup_intermediate_files(paths)
        self.temp.schedule_output_cleanup(paths, self.output_retention_sec)
        self._log(job_id, JobStage.FINALIZE, LogLevel.INFO, f"Output ready: {output.name}")

    def _on_chunk_update(self, job_id: str, chunk, settled: dict, total: int,
                         cancel_event: threading.Event):
        self.store.update_chunk(
            job_id, chunk.idx,
            status=chunk.status,
            attempts=chunk.attempts,
            dubbed_path=chunk.dubbed_path,
            error_message=chunk.error_message,
        )
        if chunk.status in TERMINAL_CHUNK_STATUSES:
            settled['count'] += 1
            if not cancel_event.is_set():
                self.store.update_job(job_id, progress_pct=_dub_percent(settled['count'], total))
            if chunk.status == ChunkStatus.SUCCEEDED:
                self._log(job_id, JobStage.DUB, LogLevel.INFO,
                          f"Chunk {chunk.idx} dubbed ({settled['count']}/{total})")
            else:
                self._log(job_id, JobStage.DUB, LogLevel.WARN,
                          f"Chunk {chunk.idx} failed after {chunk.attempts} attempt(s): {chunk.error_message}")
        job = self.store.get_job(job_id)
        if job:
            self.bus.publish_progress(job_id, job.progress)

    # ── State machine helpers ─────────────────────────────────────────

    def _transition(self, job_id: str, status: str, progress_pct: int,
                    cancel_event: threading.Event | None = None, **extra) -> Job:
        with self._lock:
            job = self._require(job_id)
            if job.status == JobStatus.CANCELLED or (cancel_event is not None and cancel_event.is_set()):
                raise _JobCancelled()
            if status not in ALLOWED_TRANSITIONS[job.status]:
                raise InvalidStateError(f"Illegal transition {job.status} -> {status}", status=job.status)
            stage = STATUS_STAGE.get(status, job.stage)
            self.store.update_job_status(job_id, status, stage=stage,
                                         progress_pct=progress_pct, **extra)
            job = self._require(job_id)

        self.bus.publish_progress(job_id, job.progress)
        self._log(job_id, stage, LogLevel.INFO, f"Status changed to {status}")
        return job

    def _stage(self, stage: str, code: str, cancel_event: threading.Event, fn, *args):
        """Run one collaborator call; any failure becomes a PipelineFatalError."""
        try:
            result = fn(*args)
        except PipelineFatalError:
            raise
        except JobError as e:
            raise PipelineFatalError(stage, e.message, code=e.code)
        except Exception as e:
            logger.error("%s stage failed", stage, exc_info=True)
            raise PipelineFatalError(stage, str(e) or type(e).__name__, code=code)
        if cancel_event.is_set():
            raise _JobCancelled()
        return result

    def _fail(self, job_id: str, exc: JobError, stage: str | None,
              failed_chunks: list[int] | None = None):
        failed_chunks = failed_chunks or []
        error = {
            'code': exc.code,
            'message': exc.message,
            'stage': stage,
            'recoverable': bool(failed_chunks),
            'failed_chunks': failed_chunks,
        }
        with self._lock:
            job = self.store.get_job(job_id)
            if job is None or job.status in TERMINAL_STATUSES:
                return
            self.store.update_job_status(job_id, JobStatus.FAILED, error=error)

        self._log(job_id, stage, LogLevel.ERROR, exc.message, {'code': exc.code})
        self.bus.publish_error(job_id, error)
        # chunk files are kept so failed chunks can be retried
        if not failed_chunks and not job.config.keep_intermediate_files:
            self.temp.cleanup_intermediate_files(self.temp.get_job_paths(job_id))

    def _on_cancelled(self, job_id: str):
        job = self.store.get_job(job_id)
        if job is None:
            return
        if job.status != JobStatus.CANCELLED:
            # cancel event set by shutdown(), not by cancel_job()
            self._mark_interrupted(job_id, "Interrupted by shutdown")
            return
        if not job.config.keep_intermediate_files:
            self.temp.cleanup_intermediate_files(self.temp.get_job_paths(job_id))
        logger.info("Worker for cancelled job %s stopped", job_id)

    def _mark_interrupted(self, job_id: str, message: str) -> bool:
        with self._lock:
            job = self.store.get_job(job_id)
            if job is None or job.status in TERMINAL_STATUSES:
                return False
            unfinished = [c.idx for c in job.chunks if c.status != ChunkStatus.SUCCEEDED]
            for idx in unfinished:
                self.store.update_chunk(job_id, idx, status=ChunkStatus.FAILED, error_message=message)
            error = {
                'code': ErrorCode.INTERRUPTED,
                'message': message,
                'stage': job.stage,
                'recoverable': bool(unfinished),
                'failed_chunks': unfinished,
            }
            self.store.update_job_status(job_id, JobStatus.FAILED, error=error)
        self._log(job_id, job.stage, LogLevel.WARN, message)
        self.bus.publish_error(job_id, error)
        return True

    def _current_stage(self, job_id: str) -> str | None:
        job = self.store.get_job(job_id)
        return job.stage if job else None

    def _require(self, job_id: str) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return job

    def _coerce_config(self, config) -> PipelineConfig:
        if config is None:
            config = PipelineConfig()
        elif isinstance(config, dict):
            config = PipelineConfig.from_dict(config)
        elif not isinstance(config, PipelineConfig):
            raise ValidationError("Config must be a PipelineConfig or a dict")
        return config.validate(strategies=tuple(self.strategies))

    def _log(self, job_id: str, stage: str | None, level: str, message: str,
             metadata: dict | None = None):
        logger.log(_PY_LEVELS.get(level, logging.INFO), "[%s] %s", job_id[:8], message)
        entry = create_log_entry(stage, level, message, metadata)
        try:
            self.store.add_log(job_id, entry)
        except NotFoundError:
            logger.debug("Job %s is gone, log entry not stored", job_id)
        self.bus.publish_log(job_id, entry)


def _dub_percent(settled: int, total: int) -> int:
    if total <= 0:
        return PROGRESS_DUB_START
    span = PROGRESS_DUB_END - PROGRESS_DUB_START
    return PROGRESS_DUB_START + int(span * settled / total)


def _coerce_video_info(video_info) -> VideoInfo:
    if isinstance(video_info, dict):
        if 'duration' not in video_info:
            raise ValidationError("Video info must include a duration")
        video_info = VideoInfo.from_dict({'title': "video", **video_info})
    if not isinstance(video_info, VideoInfo):
        raise ValidationError("Video info must be a VideoInfo or a dict")
    if isinstance(video_info.duration, bool) or not isinstance(video_info.duration, (int, float)) \
            or video_info.duration <= 0:
        raise ValidationError("Video duration must be a positive number of seconds")
    return video_info
