"""
Diagnostics: tool version detection and system checks.
"""

import logging
import shutil
from pathlib import Path

from autodub.core.security_utils import run_subprocess_capture
from autodub.core.constants import APP_VERSION, DUBBING_API_KEY_ENV
from autodub.core.temp_manager import format_bytes

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("ffmpeg", "ffprobe", "yt-dlp")


def _tool_version(args: list[str], first_line_only: bool = True) -> str:
    try:
        result = run_subprocess_capture(args, timeout=10)
        if result.returncode == 0:
            out = result.stdout.strip()
            return out.splitlines()[0] if first_line_only and out else out
        return f"Error (rc={result.returncode})"
    except FileNotFoundError:
        return "Not installed"
    except Exception as e:
        return f"Error: {e}"


def get_ytdlp_version() -> str:
    """Return yt-dlp version string, or error message."""
    return _tool_version(["yt-dlp", "--version"])


def get_ffmpeg_version() -> str:
    """Return ffmpeg version string, or error message."""
    return _tool_version(["ffmpeg", "-version"])


def get_ffprobe_version() -> str:
    return _tool_version(["ffprobe", "-version"])


def missing_tools() -> list[str]:
    return [tool for tool in REQUIRED_TOOLS if shutil.which(tool) is None]


def get_diagnostics(temp_manager=None, api_key: str | None = None) -> dict:
    """Gather all diagnostic information."""
    info = {
        "version": APP_VERSION,
        "ytdlp_version": get_ytdlp_version(),
        "ffmpeg_version": get_ffmpeg_version(),
        "ffprobe_version": get_ffprobe_version(),
        "missing_tools": missing_tools(),
        "api_key_configured": bool(api_key),
        "api_key_env": DUBBING_API_KEY_ENV,
    }
    if temp_manager is not None:
        base: Path = temp_manager.base_path
        info["temp_root"] = str(base)
        info["temp_usage"] = format_bytes(temp_manager.get_total_disk_usage())
    return info
