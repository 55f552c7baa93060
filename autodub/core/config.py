"""
Application configuration manager.
Stores settings in a JSON file under the AutoDub home directory.
"""

import json
import logging
import os
from pathlib import Path

from autodub.core.constants import (
    CONFIG_PATH, DB_PATH, DEFAULT_TEMP_ROOT, DEFAULT_PIPELINE,
    CHUNK_MAX_ATTEMPTS, CHUNK_RETRY_DELAY_SEC,
    DUBBING_API_BASE, DUBBING_API_KEY_ENV,
    DUBBING_POLL_INTERVAL_SEC, DUBBING_MAX_WAIT_SEC,
)
from autodub.core.models_sqlite import PipelineConfig

# Validation bounds
_RETENTION_HOURS_MIN = 1
_RETENTION_HOURS_MAX = 168      # 1 week
_MAX_AGE_DAYS_MIN = 1
_MAX_AGE_DAYS_MAX = 90
_ATTEMPTS_MIN = 1
_ATTEMPTS_MAX = 5
_RETRY_DELAY_MIN = 0
_RETRY_DELAY_MAX = 60

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'temp_root': str(DEFAULT_TEMP_ROOT),
    'db_path': str(DB_PATH),
    'output_retention_hours': 24,
    'old_job_max_age_days': 7,
    'chunk_max_attempts': CHUNK_MAX_ATTEMPTS,
    'chunk_retry_delay_sec': CHUNK_RETRY_DELAY_SEC,
    'dubbing_api_base': DUBBING_API_BASE,
    'dubbing_poll_interval_sec': DUBBING_POLL_INTERVAL_SEC,
    'dubbing_max_wait_sec': DUBBING_MAX_WAIT_SEC,
    'default_pipeline': dict(DEFAULT_PIPELINE),
}


def _clamp_number(key: str, value, cast, low, high, default):
    try:
        value = cast(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s %r — using default", key, value)
        return default
    return max(low, min(high, value))


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = json.loads(json.dumps(_DEFAULTS))
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except Exception as e:
                logger.warning("Failed to load config: %s", e)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key == 'output_retention_hours':
            return _clamp_number(key, value, float, _RETENTION_HOURS_MIN,
                                 _RETENTION_HOURS_MAX, _DEFAULTS[key])

        if key == 'old_job_max_age_days':
            return _clamp_number(key, value, float, _MAX_AGE_DAYS_MIN,
                                 _MAX_AGE_DAYS_MAX, _DEFAULTS[key])

        if key == 'chunk_max_attempts':
            return _clamp_number(key, value, int, _ATTEMPTS_MIN,
                                 _ATTEMPTS_MAX, _DEFAULTS[key])

        if key == 'chunk_retry_delay_sec':
            return _clamp_number(key, value, float, _RETRY_DELAY_MIN,
                                 _RETRY_DELAY_MAX, _DEFAULTS[key])

        if key == 'default_pipeline':
            if not isinstance(value, dict):
                logger.warning("Invalid default_pipeline %r — using defaults", value)
                return dict(DEFAULT_PIPELINE)
            merged = dict(DEFAULT_PIPELINE)
            merged.update({k: v for k, v in value.items() if k in DEFAULT_PIPELINE})
            return merged

        if key == 'dubbing_api_base':
            return str(value).rstrip('/')

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    @property
    def temp_root(self) -> Path:
        return Path(self._data.get('temp_root', _DEFAULTS['temp_root'])).expanduser()

    @property
    def db_path(self) -> Path:
        return Path(self._data.get('db_path', _DEFAULTS['db_path'])).expanduser()

    @property
    def output_retention_sec(self) -> float:
        return float(self._data.get('output_retention_hours', 24)) * 3600

    @property
    def old_job_max_age_sec(self) -> float:
        return float(self._data.get('old_job_max_age_days', 7)) * 86400

    @property
    def dubbing_api_key(self) -> str | None:
        # Never persisted in the JSON file
        return os.environ.get(DUBBING_API_KEY_ENV) or None

    def pipeline_config(self, overrides: dict | None = None) -> PipelineConfig:
        """Build a PipelineConfig from the saved defaults plus per-run overrides."""
        return PipelineConfig.from_dict(overrides, defaults=self._data.get('default_pipeline'))
