"""
Merge dubbed chunks back into one video.
Each chunk gets its audio replaced by the dubbed track, then the chunks
are joined with the ffmpeg concat demuxer.
"""

import shutil
import logging
from pathlib import Path

from autodub.core.security_utils import run_subprocess_capture
from autodub.core.error_codes import JobError
from autodub.core.constants import ErrorCode, FINAL_OUTPUT_BASENAME
from autodub.core.models_sqlite import JobChunk, PipelineConfig

logger = logging.getLogger(__name__)

_CONCAT_LIST_NAME = "concat_list.txt"


def _run_ffmpeg(args: list[str], what: str, timeout: int):
    try:
        result = run_subprocess_capture(args, timeout=timeout)
    except Exception as e:
        raise JobError(ErrorCode.MERGE_FAILED, f"{what} failed: {e}")
    if result.returncode != 0:
        raise JobError(ErrorCode.MERGE_FAILED,
                       f"{what} failed: {result.stderr[-300:] if result.stderr else 'unknown error'}")


def replace_audio(video_path: Path, audio_path: Path, output_path: Path, timeout: int = 300) -> Path:
    """Keep the chunk's video stream, swap in the dubbed audio."""
    args = [
        "ffmpeg",
        "-y",
        "-i", str(video_path),
        "-i", str(audio_path),
        "-c:v", "copy",
        "-c:a", "aac",
        "-map", "0:v:0",
        "-map", "1:a:0",
        "-shortest",
        str(output_path),
    ]
    _run_ffmpeg(args, f"Audio replacement for {video_path.name}", timeout)
    return output_path


def _concat_list_line(path: Path) -> str:
    # concat demuxer quoting: ' becomes '\''
    escaped = str(path.resolve()).replace("'", "'\\''")
    return f"file '{escaped}'\n"


def concatenate_videos(video_paths: list[Path], output_path: Path,
                       output_format: str = 'mp4', timeout: int = 900) -> Path:
    if not video_paths:
        raise JobError(ErrorCode.MERGE_FAILED, "No videos to concatenate")

    if len(video_paths) == 1 and output_format == 'mp4':
        shutil.copyfile(video_paths[0], output_path)
        return output_path

    list_file = output_path.parent / _CONCAT_LIST_NAME
    with open(list_file, 'w') as f:
        f.writelines(_concat_list_line(p) for p in video_paths)

    args = [
        "ffmpeg",
        "-y",
        "-f", "concat",
        "-safe", "0",
        "-i", str(list_file),
    ]
    if output_format == 'webm':
        args.extend(["-c:v", "libvpx-vp9", "-c:a", "libopus"])
    else:
        args.extend(["-c", "copy"])
    args.append(str(output_path))

    try:
        _run_ffmpeg(args, "Concatenation", timeout)
    finally:
        list_file.unlink(missing_ok=True)
    return output_path


class FfmpegMerger:
    """Default merger: audio replacement per chunk, then concat."""

    def __init__(self, timeout: int = 900):
        self.timeout = timeout

    def merge(self, chunks: list[JobChunk], output_dir: Path, config: PipelineConfig) -> Path:
        ordered = sorted(chunks, key=lambda c: c.idx)
        missing = [c.idx for c in ordered if not c.source_path or not c.dubbed_path]
        if missing:
            raise JobError(ErrorCode.MERGE_FAILED,
                           f"Chunks without source or dubbed file: {missing}")

        output_dir.mkdir(parents=True, exist_ok=True)
        merged = []
        for chunk in ordered:
            dubbed = Path(chunk.dubbed_path)
            video = Path(chunk.source_path)
            target = dubbed.with_name(f"merged_{chunk.idx:03d}{video.suffix or '.mp4'}")
            merged.append(replace_audio(video, dubbed, target, timeout=self.timeout))
            logger.debug("Replaced audio for chunk %d", chunk.idx)

        output_path = output_dir / f"{FINAL_OUTPUT_BASENAME}.{config.output_format}"
        concatenate_videos(merged, output_path, config.output_format, timeout=self.timeout)
        logger.info("Merged %d chunks into %s", len(merged), output_path)
        return output_path
