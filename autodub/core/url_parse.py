"""
Source URL parsing and validation.
"""

from urllib.parse import urlparse

from autodub.core.constants import DIRECT_MEDIA_EXTENSIONS
from autodub.core.error_codes import ValidationError


def validate_source_url(url: str) -> str:
    """
    Validate a source video URL and return it stripped.
    Raises ValidationError if it is not an absolute http(s) URL.
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("Source URL is required")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ValidationError(f"Not a valid http(s) URL: {url}")
    return url


def is_direct_media_url(url: str) -> bool:
    """
    True when the URL points straight at a media file (e.g. .../video.mp4)
    rather than at a page that needs a site extractor.
    """
    path = urlparse(url.strip()).path.lower()
    return path.endswith(DIRECT_MEDIA_EXTENSIONS)


def title_from_url(url: str) -> str:
    """Best-effort title for direct media URLs: the file stem."""
    name = urlparse(url.strip()).path.rstrip('/').rsplit('/', 1)[-1]
    stem = name.rsplit('.', 1)[0] if '.' in name else name
    return stem or "video"
