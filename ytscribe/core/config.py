"""
Application configuration manager.
Stores settings in a JSON file under the data directory; selected keys can be
overridden from the environment at load time.
"""

import json
import logging
import os
from pathlib import Path

from ytscribe.core.constants import (
    CONFIG_PATH, DB_PATH, SCRATCH_DIR, LOG_DIR,
    OPENAI_API_BASE, TRANSCRIPTION_MODEL, CHAT_MODEL,
    MAX_UPLOAD_BYTES, COMPRESSION_PRESETS, MAX_CONTEXT_CHARS,
    DOWNLOAD_TIMEOUT_SEC, METADATA_TIMEOUT_SEC, ENCODE_TIMEOUT_SEC,
    TRANSCRIPTION_TIMEOUT_SEC, CHAT_TIMEOUT_SEC,
    DOWNLOAD_RETRIES, DOWNLOAD_BACKOFF_SEC, RATE_LIMIT_RETRIES,
    MAX_CONCURRENT_JOBS, ENCODE_WORKERS,
    DEFAULT_HOST, DEFAULT_PORT,
)

# Validation bounds
_MIN_UPLOAD_BYTES = 1024 * 1024           # 1 MB
_MAX_RETRIES = 10
_MAX_WORKERS = 32
_MIN_TIMEOUT_SEC = 5
_MAX_TIMEOUT_SEC = 3600
_MIN_CONTEXT_CHARS = 4000

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'db_path': str(DB_PATH),
    'scratch_dir': str(SCRATCH_DIR),
    'log_dir': str(LOG_DIR),
    'log_level': "INFO",
    'host': DEFAULT_HOST,
    'port': DEFAULT_PORT,
    'openai_api_key': None,
    'openai_base_url': OPENAI_API_BASE,
    'transcription_model': TRANSCRIPTION_MODEL,
    'chat_model': CHAT_MODEL,
    'max_upload_bytes': MAX_UPLOAD_BYTES,
    'compression_presets': [list(p) for p in COMPRESSION_PRESETS],
    'max_context_chars': MAX_CONTEXT_CHARS,
    'download_timeout_sec': DOWNLOAD_TIMEOUT_SEC,
    'metadata_timeout_sec': METADATA_TIMEOUT_SEC,
    'encode_timeout_sec': ENCODE_TIMEOUT_SEC,
    'transcription_timeout_sec': TRANSCRIPTION_TIMEOUT_SEC,
    'chat_timeout_sec': CHAT_TIMEOUT_SEC,
    'download_retries': DOWNLOAD_RETRIES,
    'download_backoff_sec': DOWNLOAD_BACKOFF_SEC,
    'rate_limit_retries': RATE_LIMIT_RETRIES,
    'max_concurrent_jobs': MAX_CONCURRENT_JOBS,
    'encode_workers': ENCODE_WORKERS,
    'cookies_file': None,
    'keep_debug_artifacts': False,
}

# Environment variable → config key
_ENV_OVERRIDES = {
    'OPENAI_API_KEY': 'openai_api_key',
    'OPENAI_BASE_URL': 'openai_base_url',
    'YTSCRIBE_DB_PATH': 'db_path',
    'YTSCRIBE_SCRATCH_DIR': 'scratch_dir',
    'YTSCRIBE_LOG_LEVEL': 'log_level',
    'YTSCRIBE_HOST': 'host',
    'YTSCRIBE_PORT': 'port',
    'YTSCRIBE_MAX_CONCURRENT_JOBS': 'max_concurrent_jobs',
    'YT_COOKIES_FILE': 'cookies_file',
}

_INT_BOUNDS = {
    'max_upload_bytes': (_MIN_UPLOAD_BYTES, MAX_UPLOAD_BYTES),
    'max_context_chars': (_MIN_CONTEXT_CHARS, 10 * MAX_CONTEXT_CHARS),
    'download_retries': (0, _MAX_RETRIES),
    'rate_limit_retries': (0, _MAX_RETRIES),
    'max_concurrent_jobs': (1, _MAX_WORKERS),
    'encode_workers': (1, _MAX_WORKERS),
    'port': (1, 65535),
}

_TIMEOUT_KEYS = (
    'download_timeout_sec', 'metadata_timeout_sec', 'encode_timeout_sec',
    'transcription_timeout_sec', 'chat_timeout_sec',
)


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None, environ: dict | None = None):
        self.path = config_path or CONFIG_PATH
        self._environ = os.environ if environ is None else environ
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merge with defaults, then apply env overrides."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load config: %s", e)

        for env_name, key in _ENV_OVERRIDES.items():
            value = self._environ.get(env_name)
            if value:
                self._data[key] = self._validate(key, value)

    def save(self):
        """Persist config to disk. The API key is never written."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {k: v for k, v in self._data.items() if k != 'openai_api_key'}
        with open(self.path, 'w') as f:
            json.dump(data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _INT_BOUNDS:
            lo, hi = _INT_BOUNDS[key]
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r — using default", key, value)
                return _DEFAULTS[key]
            return max(lo, min(hi, value))

        if key in _TIMEOUT_KEYS or key == 'download_backoff_sec':
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r — using default", key, value)
                return _DEFAULTS[key]
            if key == 'download_backoff_sec':
                return max(0.0, min(300.0, value))
            return max(_MIN_TIMEOUT_SEC, min(_MAX_TIMEOUT_SEC, value))

        if key == 'compression_presets':
            return self._validate_presets(value)

        if key == 'log_level':
            level = str(value).upper()
            if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
                logger.warning("Invalid log_level %r — using INFO", value)
                return "INFO"
            return level

        if key == 'openai_base_url' and value:
            return str(value).rstrip('/')

        if key == 'keep_debug_artifacts':
            return bool(value)

        return value

    @staticmethod
    def _validate_presets(value) -> list:
        presets = []
        try:
            for bitrate, sample_rate in value:
                bitrate = str(bitrate)
                if not bitrate.rstrip('kK').isdigit():
                    raise ValueError(f"bad bitrate {bitrate!r}")
                presets.append([bitrate, int(sample_rate)])
        except (TypeError, ValueError) as e:
            logger.warning("Invalid compression_presets (%s) — using defaults", e)
            return _DEFAULTS['compression_presets']
        return presets or _DEFAULTS['compression_presets']

    def as_dict(self) -> dict:
        return dict(self._data)

    @property
    def db_path(self) -> Path:
        return Path(self._data['db_path'])

    @property
    def scratch_dir(self) -> Path:
        return Path(self._data['scratch_dir'])

    @property
    def log_dir(self) -> Path:
        return Path(self._data['log_dir'])

    @property
    def openai_api_key(self) -> str | None:
        return self._data.get('openai_api_key')

    @property
    def compression_presets(self) -> list[tuple[str, int]]:
        return [(b, int(r)) for b, r in self._data['compression_presets']]
