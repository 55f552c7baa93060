#!/usr/bin/env python3
"""
AutoDub v1.0.0 — command-line entry point.

    python3 main.py run https://example.com/video.mp4 --target-language fr
    python3 main.py estimate --duration 600 --chunk-duration 60
    python3 main.py list --status failed
    python3 main.py retry <job_id>
    python3 main.py cleanup
"""

import sys
import os
import argparse
import json
import logging
import traceback
from pathlib import Path
from datetime import datetime

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from autodub.core.constants import APP_NAME, APP_VERSION, LOG_DIR, JobStatus
from autodub.core.config import AppConfig
from autodub.core.error_codes import JobError

LOG_FILE = LOG_DIR / "app.log"

logger = logging.getLogger("autodub")


def setup_logging(verbose: bool = False):
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(LOG_FILE, encoding="utf-8"),
            logging.StreamHandler(sys.stderr),
        ],
    )


def check_prerequisites():
    """Check that yt-dlp, ffmpeg and ffprobe are available."""
    from autodub.core.diagnostics import missing_tools
    import shutil

    missing = missing_tools()
    if missing:
        logger.error("Missing tools: %s. PATH = %s", ", ".join(missing), os.environ.get("PATH", ""))
        print(f"Missing required tools: {', '.join(missing)}", file=sys.stderr)
        sys.exit(1)

    for tool in ("yt-dlp", "ffmpeg", "ffprobe"):
        logger.debug("%s found at: %s", tool, shutil.which(tool))


def build_orchestrator(config: AppConfig):
    from autodub.core.db_sqlite import Database
    from autodub.core.temp_manager import TempManager
    from autodub.core.progress_bus import ProgressBus
    from autodub.core.download_video import MediaFetcher
    from autodub.core.chunking_timebased import FfmpegSplitter
    from autodub.core.translate_chunk import DubbingClient
    from autodub.core.merge import FfmpegMerger
    from autodub.core.orchestrator import PipelineOrchestrator

    pipeline_defaults = config.pipeline_config()
    translator = DubbingClient(
        config.dubbing_api_key,
        api_base=config.get('dubbing_api_base'),
        poll_interval=config.get('dubbing_poll_interval_sec'),
        max_wait=config.get('dubbing_max_wait_sec'),
    )
    return PipelineOrchestrator(
        store=Database(config.db_path),
        temp_manager=TempManager(config.temp_root),
        bus=ProgressBus(),
        fetcher=MediaFetcher(video_quality=pipeline_defaults.video_quality),
        splitter=FfmpegSplitter(),
        translator=translator,
        merger=FfmpegMerger(),
        chunk_max_attempts=config.get('chunk_max_attempts'),
        chunk_retry_delay_sec=config.get('chunk_retry_delay_sec'),
        output_retention_sec=config.output_retention_sec,
    )


def _print_job(job, paths=None, logs=None):
    data = job.to_dict()
    if paths is not None:
        data['paths'] = paths.to_dict()
    if logs is not None:
        data['logs'] = [entry.to_dict() for entry in logs]
    print(json.dumps(data, indent=2))


def _follow(orch, job_id: str) -> int:
    """Stream progress of a job to stdout until its run ends."""
    def on_progress(event):
        p = event.payload
        print(f"\r[{p['status']:>11}] {p['overall_percent']:3d}%  "
              f"chunks {p['completed']}/{len(p['chunks'])} done, {p['failed']} failed",
              end="", flush=True)

    def on_log(event):
        entry = event.payload
        if entry.level in ("warn", "error"):
            print(f"\n{entry.level.upper()}: {entry.message}", flush=True)

    unsubscribe = orch.bus.subscribe(job_id, on_progress=on_progress, on_log=on_log)
    try:
        while not orch.wait(job_id, timeout=0.5):
            pass
    except KeyboardInterrupt:
        print("\nCancelling...", flush=True)
        orch.cancel_job(job_id)
        orch.wait(job_id, timeout=30)
    finally:
        unsubscribe()
    print()

    job = orch.get_job_status(job_id)
    if job.status == JobStatus.COMPLETE:
        print(f"Done: {job.output_file}")
        return 0
    if job.error:
        print(f"Job {job.status}: [{job.error['code']}] {job.error['message']}", file=sys.stderr)
        if job.error.get('failed_chunks'):
            print(f"Retry with: main.py retry {job_id}", file=sys.stderr)
    return 1


# ── Commands ──────────────────────────────────────────────────────────

def cmd_run(args, config: AppConfig) -> int:
    check_prerequisites()
    orch = build_orchestrator(config)
    orch.recover_interrupted_jobs()
    overrides = {
        'chunk_duration': args.chunk_duration,
        'max_parallel_jobs': args.parallel,
        'target_language': args.target_language,
        'source_language': args.source_language,
        'video_quality': args.quality,
        'output_format': args.format,
        'use_watermark': args.watermark or None,
        'keep_intermediate_files': args.keep_intermediate or None,
        'chunking_strategy': args.strategy,
    }
    job_id = orch.start_pipeline(args.url, config.pipeline_config(overrides))
    print(f"Job {job_id}")
    try:
        return _follow(orch, job_id)
    finally:
        orch.shutdown(timeout=5)


def cmd_retry(args, config: AppConfig) -> int:
    check_prerequisites()
    orch = build_orchestrator(config)
    orch.recover_interrupted_jobs()
    indices = orch.retry_failed_chunks(args.job_id, args.chunks)
    print(f"Retrying chunks {indices}")
    try:
        return _follow(orch, args.job_id)
    finally:
        orch.shutdown(timeout=5)


def cmd_status(args, config: AppConfig) -> int:
    orch = build_orchestrator(config)
    job = orch.get_job_status(args.job_id)
    if job is None:
        print(f"Job {args.job_id} not found", file=sys.stderr)
        return 1
    logs = orch.get_job_logs(job.id, args.logs) if args.logs else None
    _print_job(job, orch.temp.get_job_paths(job.id), logs)
    return 0


def cmd_list(args, config: AppConfig) -> int:
    orch = build_orchestrator(config)
    page = orch.list_jobs(limit=args.limit, offset=args.offset, status=args.status)
    for job in page['jobs']:
        title = job.video_info.title if job.video_info else job.source_url
        print(f"{job.id}  {job.status:<11} {job.progress_pct:3d}%  {job.created_at}  {title}")
    print(f"{len(page['jobs'])} of {page['total']} job(s)" + (" (more)" if page['has_more'] else ""))
    return 0


def cmd_delete(args, config: AppConfig) -> int:
    orch = build_orchestrator(config)
    orch.delete_job(args.job_id)
    print(f"Deleted {args.job_id}")
    return 0


def cmd_estimate(args, config: AppConfig) -> int:
    from autodub.core.cost_estimator import (
        choose_chunk_duration, format_cost, format_time, estimate_completion,
    )
    orch = build_orchestrator(config)
    overrides = {
        'chunk_duration': args.chunk_duration or choose_chunk_duration(args.duration),
        'max_parallel_jobs': args.parallel,
        'use_watermark': args.watermark or None,
    }
    pipeline = config.pipeline_config(overrides)
    video = {'title': 'estimate', 'duration': args.duration}
    cost = orch.get_cost_estimate(video, pipeline)
    eta = orch.get_time_estimate(video, pipeline)
    print(f"Chunks:      {cost.total_chunks} x {pipeline.chunk_duration}s "
          f"({pipeline.max_parallel_jobs} in parallel)")
    print(f"Cost:        {format_cost(cost.total_cost)} "
          f"(dubbing {format_cost(cost.dubbing_cost)}, processing {format_cost(cost.processing_cost)})")
    print(f"Time:        {format_time(eta.total_time)}")
    for stage, seconds in eta.breakdown.items():
        print(f"  {stage:<13}{format_time(seconds)}")
    print(f"Done around: {estimate_completion(eta).astimezone().strftime('%H:%M')}")
    return 0


def cmd_cleanup(args, config: AppConfig) -> int:
    orch = build_orchestrator(config)
    max_age = args.max_age_days * 86400 if args.max_age_days else config.old_job_max_age_sec
    removed = orch.cleanup_old_jobs(max_age)
    print(f"Removed {removed} old job{'' if removed == 1 else 's'}")
    return 0


def cmd_diagnostics(args, config: AppConfig) -> int:
    from autodub.core.diagnostics import get_diagnostics
    from autodub.core.temp_manager import TempManager
    info = get_diagnostics(TempManager(config.temp_root), config.dubbing_api_key)
    if args.verify_key:
        from autodub.core.translate_chunk import verify_api_key
        if config.dubbing_api_key:
            ok, message = verify_api_key(config.dubbing_api_key, config.get('dubbing_api_base'))
        else:
            ok, message = False, "No API key configured"
        info["api_key_valid"] = ok
        info["api_key_message"] = message
    print(json.dumps(info, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autodub", description=f"{APP_NAME} video dubbing pipeline")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {APP_VERSION}")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="dub a video")
    run.add_argument("url")
    run.add_argument("--chunk-duration", type=int)
    run.add_argument("--parallel", type=int)
    run.add_argument("--target-language")
    run.add_argument("--source-language")
    run.add_argument("--quality")
    run.add_argument("--format", choices=("mp4", "webm"))
    run.add_argument("--strategy", choices=("fixed", "silence"))
    run.add_argument("--watermark", action="store_true")
    run.add_argument("--keep-intermediate", action="store_true")
    run.set_defaults(func=cmd_run)

    retry = sub.add_parser("retry", help="re-dub failed chunks of a failed job")
    retry.add_argument("job_id")
    retry.add_argument("--chunks", type=int, nargs="+")
    retry.set_defaults(func=cmd_retry)

    status = sub.add_parser("status", help="show one job")
    status.add_argument("job_id")
    status.add_argument("--logs", type=int, metavar="N", help="include the last N log entries")
    status.set_defaults(func=cmd_status)

    lst = sub.add_parser("list", help="list jobs, newest first")
    lst.add_argument("--limit", type=int, default=10)
    lst.add_argument("--offset", type=int, default=0)
    lst.add_argument("--status", choices=JobStatus.ALL)
    lst.set_defaults(func=cmd_list)

    delete = sub.add_parser("delete", help="delete a finished job and its files")
    delete.add_argument("job_id")
    delete.set_defaults(func=cmd_delete)

    est = sub.add_parser("estimate", help="cost and time estimate")
    est.add_argument("--duration", type=float, required=True, help="video length in seconds")
    est.add_argument("--chunk-duration", type=int)
    est.add_argument("--parallel", type=int)
    est.add_argument("--watermark", action="store_true")
    est.set_defaults(func=cmd_estimate)

    clean = sub.add_parser("cleanup", help="delete old finished jobs and stale job directories")
    clean.add_argument("--max-age-days", type=float)
    clean.set_defaults(func=cmd_cleanup)

    diag = sub.add_parser("diagnostics", help="tool versions and paths")
    diag.add_argument("--verify-key", action="store_true", help="check the dubbing API key with the provider")
    diag.set_defaults(func=cmd_diagnostics)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    logger.info("%s v%s starting at %s (%s)", APP_NAME, APP_VERSION,
                datetime.now().isoformat(), args.command)

    try:
        return args.func(args, AppConfig())
    except JobError as e:
        logger.error("%s", e)
        print(f"Error: {e.message}", file=sys.stderr)
        return 2
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        logger.critical("Fatal error: %s\n%s", error_msg, traceback.format_exc())
        print(f"Fatal error: {error_msg} (see {LOG_FILE})", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
