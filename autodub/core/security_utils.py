"""
Security utilities for AutoDub.
- Path confinement under a base directory
- Safe subprocess execution (argument arrays only)
"""

import re
import subprocess
import pathlib
import logging

from autodub.core.constants import JOB_ID_PATTERN
from autodub.core.error_codes import ValidationError

logger = logging.getLogger(__name__)


# ── Path safety ───────────────────────────────────────────────────────

def is_within(root: pathlib.Path, candidate: pathlib.Path) -> bool:
    """True if realpath(candidate) is root itself or lies beneath it."""
    real_root = root.resolve(strict=False)
    real_candidate = candidate.resolve(strict=False)
    return real_candidate == real_root or real_root in real_candidate.parents


def ensure_within(root: pathlib.Path, candidate: pathlib.Path) -> pathlib.Path:
    """
    Return candidate if it is confined under root.
    Raises ValidationError on any attempt to escape it.
    """
    if not is_within(root, candidate):
        raise ValidationError(f"Path escapes base directory: {candidate}")
    return candidate


def validate_job_id(job_id: str) -> str:
    """Job ids become directory names, so only a conservative charset is allowed."""
    if not isinstance(job_id, str) or not re.fullmatch(JOB_ID_PATTERN, job_id) or job_id in ('.', '..'):
        raise ValidationError(f"Invalid job id: {job_id!r}")
    return job_id


# ── Subprocess safety ─────────────────────────────────────────────────

def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")

    # Force shell=False; any caller-supplied value is discarded
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )
