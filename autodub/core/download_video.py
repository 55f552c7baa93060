"""
Source video download.
Direct media URLs are streamed with requests; everything else goes through yt-dlp.
"""

import json
import logging
from pathlib import Path

import requests

from autodub.core.security_utils import run_subprocess_capture
from autodub.core.error_codes import JobError
from autodub.core.constants import ErrorCode, SOURCE_BASENAME, DOWNLOAD_CHUNK_BYTES
from autodub.core.models_sqlite import VideoInfo
from autodub.core.url_parse import is_direct_media_url, title_from_url
from autodub.core.chunking_timebased import get_media_duration

logger = logging.getLogger(__name__)

# yt-dlp format selectors keyed by PipelineConfig.video_quality
_QUALITY_FORMATS = {
    '2160p': 'bestvideo[height<=2160]+bestaudio/best[height<=2160]',
    '1440p': 'bestvideo[height<=1440]+bestaudio/best[height<=1440]',
    '1080p': 'bestvideo[height<=1080]+bestaudio/best[height<=1080]',
    '720p': 'bestvideo[height<=720]+bestaudio/best[height<=720]',
    '480p': 'bestvideo[height<=480]+bestaudio/best[height<=480]',
}


def fetch_metadata(video_url: str) -> dict:
    """
    Fetch video metadata using yt-dlp --dump-json.
    Returns the raw yt-dlp info dict.
    """
    args = [
        "yt-dlp",
        "--dump-json",
        "--no-playlist",
        "--skip-download",
        video_url,
    ]

    try:
        result = run_subprocess_capture(args, timeout=60)
    except Exception as e:
        raise JobError(ErrorCode.NETWORK_TRANSIENT, f"yt-dlp metadata fetch failed: {e}")

    if result.returncode != 0:
        stderr = result.stderr or ""
        if "Unsupported URL" in stderr:
            raise JobError(ErrorCode.INVALID_URL, f"Unsupported URL: {video_url}")
        raise JobError(ErrorCode.DOWNLOAD_FAILED, f"yt-dlp failed (rc={result.returncode}): {stderr[:300]}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise JobError(ErrorCode.DOWNLOAD_FAILED, f"Failed to parse yt-dlp JSON: {e}")


def video_info_from_metadata(metadata: dict) -> VideoInfo:
    width, height = metadata.get('width'), metadata.get('height')
    return VideoInfo(
        title=metadata.get('title') or metadata.get('id') or "video",
        duration=float(metadata.get('duration') or 0),
        thumbnail=metadata.get('thumbnail'),
        resolution=f"{width}x{height}" if width and height else metadata.get('resolution'),
        codec=metadata.get('vcodec'),
        file_size=metadata.get('filesize') or metadata.get('filesize_approx'),
    )


class MediaFetcher:
    """Resolves a source URL to a local video file plus its VideoInfo."""

    def __init__(self, video_quality: str = '1080p', timeout: int = 1800,
                 session: requests.Session | None = None):
        self.video_quality = video_quality
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self, source_url: str, dest_dir: Path) -> tuple[Path, VideoInfo]:
        dest_dir.mkdir(parents=True, exist_ok=True)
        if is_direct_media_url(source_url):
            path = self._stream_download(source_url, dest_dir)
            info = VideoInfo(title=title_from_url(source_url), duration=0.0,
                             file_size=path.stat().st_size)
        else:
            info = video_info_from_metadata(fetch_metadata(source_url))
            path = self._ytdlp_download(source_url, dest_dir)
            info.file_size = info.file_size or path.stat().st_size

        if not info.duration:
            try:
                info.duration = get_media_duration(path)
            except JobError as e:
                raise JobError(ErrorCode.DOWNLOAD_FAILED, f"Downloaded file is not readable media: {e.message}")
        logger.info("Fetched %s (%.1fs) -> %s", info.title, info.duration, path)
        return path, info

    def _stream_download(self, url: str, dest_dir: Path) -> Path:
        suffix = Path(url.split('?', 1)[0]).suffix.lower() or '.mp4'
        target = dest_dir / f"{SOURCE_BASENAME}{suffix}"
        partial = target.with_name(target.name + '.part')
        try:
            with self.session.get(url, stream=True, timeout=(10, 60)) as resp:
                if resp.status_code != 200:
                    raise JobError(ErrorCode.DOWNLOAD_FAILED,
                                   f"Download returned HTTP {resp.status_code}")
                with open(partial, 'wb') as f:
                    for block in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                        if block:
                            f.write(block)
        except requests.exceptions.Timeout:
            raise JobError(ErrorCode.NETWORK_TRANSIENT, "Download timed out")
        except requests.exceptions.ConnectionError:
            raise JobError(ErrorCode.NETWORK_TRANSIENT, "Network error during download")
        partial.replace(target)
        return target

    def _ytdlp_download(self, url: str, dest_dir: Path) -> Path:
        args = [
            "yt-dlp",
            "--no-playlist",
            "-f", _QUALITY_FORMATS.get(self.video_quality, 'bestvideo+bestaudio/best'),
            "--merge-output-format", "mp4",
            "-o", str(dest_dir / f"{SOURCE_BASENAME}.%(ext)s"),
            url,
        ]
        try:
            result = run_subprocess_capture(args, timeout=self.timeout)
        except Exception as e:
            raise JobError(ErrorCode.DOWNLOAD_FAILED, f"Video download failed: {e}")

        if result.returncode != 0:
            stderr = result.stderr or ""
            raise JobError(ErrorCode.DOWNLOAD_FAILED,
                           f"yt-dlp download failed (rc={result.returncode}): {stderr[:300]}")

        source_files = [p for p in dest_dir.glob(f"{SOURCE_BASENAME}.*") if p.suffix != '.part']
        if not source_files:
            raise JobError(ErrorCode.DOWNLOAD_FAILED, "No video file found after download")
        return source_files[0]
