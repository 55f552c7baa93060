"""
Dubbing API client.
Submits one chunk, polls until the provider has dubbed it, then downloads
the dubbed audio track. Includes exponential backoff for rate-limit (429)
responses.
"""

import json
import logging
import time
import random
from pathlib import Path

import requests

from autodub.core.error_codes import JobError
from autodub.core.constants import (
    ErrorCode, DUBBING_API_BASE, DUBBING_POLL_INTERVAL_SEC, DUBBING_MAX_WAIT_SEC,
    DUBBED_FILE_TEMPLATE,
)
from autodub.core.models_sqlite import PipelineConfig

logger = logging.getLogger(__name__)

_MAX_RATE_LIMIT_RETRIES = 4
_RATE_LIMIT_BASE_DELAY = 2.0   # seconds, doubles each retry with jitter

_STATUS_DONE = "dubbed"
_STATUS_FAILED = "failed"


def verify_api_key(api_key: str, api_base: str = DUBBING_API_BASE) -> tuple[bool, str]:
    """
    Verify a dubbing API key with a lightweight request.
    Returns (success: bool, message: str).
    """
    try:
        resp = requests.get(
            f"{api_base}/user",
            headers={"xi-api-key": api_key},
            timeout=10,
        )
        if resp.status_code == 200:
            return True, "Key verified"
        elif resp.status_code in (401, 403):
            return False, "Key invalid or rejected"
        else:
            return False, f"Unexpected response: {resp.status_code}"
    except requests.exceptions.ConnectionError:
        return False, "Network error: could not reach dubbing API"
    except requests.exceptions.Timeout:
        return False, "Network error: request timed out"
    except Exception as e:
        return False, f"Network error: {e}"


class DubbingClient:
    """Chunk translator backed by an HTTP dubbing service."""

    def __init__(self, api_key: str | None, api_base: str = DUBBING_API_BASE,
                 poll_interval: float = DUBBING_POLL_INTERVAL_SEC,
                 max_wait: float = DUBBING_MAX_WAIT_SEC,
                 session: requests.Session | None = None,
                 sleep=time.sleep):
        self.api_key = api_key
        self.api_base = api_base.rstrip('/')
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.session = session or requests.Session()
        self._sleep = sleep

    def translate(self, chunk_path: Path, output_dir: Path, index: int,
                  config: PipelineConfig) -> Path:
        """Dub one chunk. Returns the path of the dubbed audio file."""
        if not self.api_key:
            raise JobError(ErrorCode.DUBBING_API, "Dubbing API key is not configured", retryable=False)

        dubbing_id = self.create_dubbing(chunk_path, config)
        logger.info("Chunk %d submitted as dubbing %s", index, dubbing_id)
        self.wait_for_completion(dubbing_id)

        output_dir.mkdir(parents=True, exist_ok=True)
        target = output_dir / DUBBED_FILE_TEMPLATE.format(idx=index)
        self.download_audio(dubbing_id, config.target_language, target)
        return target

    # ── HTTP helpers ──────────────────────────────────────────────────

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Send a request, retrying 429 responses with exponential backoff."""
        headers = {"xi-api-key": self.api_key}
        for attempt in range(_MAX_RATE_LIMIT_RETRIES + 1):
            files = kwargs.get('files')
            if files:
                for _, value in files.values():
                    if hasattr(value, 'seek'):
                        value.seek(0)
            try:
                resp = self.session.request(method, url, headers=headers, **kwargs)
            except requests.exceptions.Timeout:
                raise JobError(ErrorCode.DUBBING_TIMEOUT, "Dubbing request timed out")
            except requests.exceptions.ConnectionError:
                raise JobError(ErrorCode.NETWORK_TRANSIENT, "Network error connecting to dubbing API")

            if resp.status_code == 429:
                if attempt < _MAX_RATE_LIMIT_RETRIES:
                    # 2s, 4s, 8s, 16s (+/- 10%)
                    delay = _RATE_LIMIT_BASE_DELAY * (2 ** attempt)
                    delay *= 1 + random.uniform(-0.1, 0.1)
                    logger.warning(
                        "Dubbing API rate limited (429), retrying in %.1fs (attempt %d/%d)",
                        delay, attempt + 1, _MAX_RATE_LIMIT_RETRIES,
                    )
                    self._sleep(delay)
                    continue
                raise JobError(ErrorCode.NETWORK_TRANSIENT,
                               f"Dubbing API rate limited (429) after {_MAX_RATE_LIMIT_RETRIES} retries")

            if resp.status_code in (502, 503, 504):
                raise JobError(ErrorCode.NETWORK_TRANSIENT,
                               f"Dubbing API returned {resp.status_code}")

            if resp.status_code != 200:
                # never echo the key
                error_body = resp.text[:300] if resp.text else "No response body"
                raise JobError(ErrorCode.DUBBING_API,
                               f"Dubbing API returned {resp.status_code}: {error_body}",
                               retryable=resp.status_code >= 500)
            return resp

        raise JobError(ErrorCode.NETWORK_TRANSIENT, "Dubbing request exhausted retries")

    @staticmethod
    def _json(resp: requests.Response) -> dict:
        try:
            return resp.json()
        except (json.JSONDecodeError, ValueError):
            raise JobError(ErrorCode.DUBBING_API, "Failed to parse dubbing API response JSON")

    # ── Dubbing lifecycle ─────────────────────────────────────────────

    def create_dubbing(self, chunk_path: Path, config: PipelineConfig) -> str:
        data = {
            'target_lang': config.target_language,
            'watermark': 'true' if config.use_watermark else 'false',
        }
        if config.source_language:
            data['source_lang'] = config.source_language

        with open(chunk_path, 'rb') as f:
            resp = self._request(
                'POST', f"{self.api_base}/dubbing",
                data=data,
                files={'file': (chunk_path.name, f)},
                timeout=(10, 300),
            )
        dubbing_id = self._json(resp).get('dubbing_id')
        if not dubbing_id:
            raise JobError(ErrorCode.DUBBING_API, "Dubbing API response has no dubbing_id")
        return dubbing_id

    def get_status(self, dubbing_id: str) -> dict:
        resp = self._request('GET', f"{self.api_base}/dubbing/{dubbing_id}", timeout=30)
        return self._json(resp)

    def wait_for_completion(self, dubbing_id: str):
        """Poll until the dubbing is done. Raises on provider failure or timeout."""
        waited = 0.0
        while True:
            status = self.get_status(dubbing_id)
            state = status.get('status')
            if state == _STATUS_DONE:
                return status
            if state == _STATUS_FAILED:
                raise JobError(ErrorCode.DUBBING_API,
                               f"Dubbing {dubbing_id} failed: {status.get('error') or 'unknown error'}",
                               retryable=False)
            if waited >= self.max_wait:
                raise JobError(ErrorCode.DUBBING_TIMEOUT,
                               f"Dubbing {dubbing_id} not finished after {int(self.max_wait)}s")
            self._sleep(self.poll_interval)
            waited += self.poll_interval

    def download_audio(self, dubbing_id: str, language: str, target: Path) -> Path:
        resp = self._request('GET', f"{self.api_base}/dubbing/{dubbing_id}/audio/{language}",
                             timeout=(10, 300), stream=True)
        partial = target.with_name(target.name + '.part')
        with open(partial, 'wb') as f:
            for block in resp.iter_content(chunk_size=64 * 1024):
                if block:
                    f.write(block)
        partial.replace(target)
        if target.stat().st_size == 0:
            raise JobError(ErrorCode.DUBBING_API, f"Dubbing {dubbing_id} returned empty audio")
        return target
