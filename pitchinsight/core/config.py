"""
Application configuration manager.
Stores settings in a JSON file under the app support dir; environment
variables (optionally from a .env file) override the file.
"""

import json
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

from pitchinsight.core.constants import (
    CONFIG_PATH, DB_PATH, DEFAULT_STORAGE_ROOT, DEFAULT_BUCKET,
    DEFAULT_PUBLIC_BASE_URL, StorageBackend, SIGNED_URL_TTL_SEC, MAX_MEDIA_BYTES,
    DEFAULT_LANGUAGE, TRANSCRIPTION_MODEL, ANALYSIS_MODEL, PROVIDER_TIMEOUT_SEC,
    PROCESSING_LEASE_SEC, PERSIST_RETRY_ATTEMPTS, PERSIST_RETRY_BASE_DELAY,
    POLL_INTERVAL_SEC,
)

# Validation bounds
_SIGNED_TTL_MIN = 60
_SIGNED_TTL_MAX = 7 * 24 * 3600
_TIMEOUT_MIN = 5
_TIMEOUT_MAX = 900
_POLL_MIN = 0.05
_POLL_MAX = 300

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'db_path': str(DB_PATH),
    'storage_backend': StorageBackend.LOCAL,
    'storage_root': str(DEFAULT_STORAGE_ROOT),
    'storage_bucket': DEFAULT_BUCKET,
    'storage_public': False,
    'public_base_url': DEFAULT_PUBLIC_BASE_URL,
    'signing_secret': None,
    's3_endpoint_url': None,
    's3_access_key': None,
    's3_secret_key': None,
    's3_public_base_url': None,
    'signed_url_ttl_sec': SIGNED_URL_TTL_SEC,
    'max_media_bytes': MAX_MEDIA_BYTES,
    'language': DEFAULT_LANGUAGE,
    'openai_api_key': None,
    'transcription_model': TRANSCRIPTION_MODEL,
    'analysis_model': ANALYSIS_MODEL,
    'provider_timeout_sec': PROVIDER_TIMEOUT_SEC,
    'processing_lease_sec': PROCESSING_LEASE_SEC,
    'persist_retry_attempts': PERSIST_RETRY_ATTEMPTS,
    'persist_retry_base_delay': PERSIST_RETRY_BASE_DELAY,
    'poll_interval_sec': POLL_INTERVAL_SEC,
}

# Environment variable -> config key
_ENV_KEYS = {
    'PITCHINSIGHT_DB_PATH': 'db_path',
    'PITCHINSIGHT_STORAGE_BACKEND': 'storage_backend',
    'PITCHINSIGHT_STORAGE_ROOT': 'storage_root',
    'PITCHINSIGHT_STORAGE_BUCKET': 'storage_bucket',
    'PITCHINSIGHT_STORAGE_PUBLIC': 'storage_public',
    'PITCHINSIGHT_PUBLIC_BASE_URL': 'public_base_url',
    'PITCHINSIGHT_SIGNING_SECRET': 'signing_secret',
    'PITCHINSIGHT_S3_ENDPOINT_URL': 's3_endpoint_url',
    'PITCHINSIGHT_S3_ACCESS_KEY': 's3_access_key',
    'PITCHINSIGHT_S3_SECRET_KEY': 's3_secret_key',
    'PITCHINSIGHT_S3_PUBLIC_BASE_URL': 's3_public_base_url',
    'PITCHINSIGHT_SIGNED_URL_TTL_SEC': 'signed_url_ttl_sec',
    'PITCHINSIGHT_LANGUAGE': 'language',
    'PITCHINSIGHT_PROVIDER_TIMEOUT_SEC': 'provider_timeout_sec',
    'PITCHINSIGHT_POLL_INTERVAL_SEC': 'poll_interval_sec',
    'OPENAI_API_KEY': 'openai_api_key',
}

# Never written back to config.json
_SECRET_KEYS = {'openai_api_key', 's3_secret_key', 'signing_secret'}


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None, use_env: bool = True,
                 overrides: dict | None = None):
        self.path = config_path or CONFIG_PATH
        self.use_env = use_env
        self._data: dict = {}
        self._from_env: set = set()
        self.load()
        for key, value in (overrides or {}).items():
            self._data[key] = self._validate(key, value)

    def load(self):
        """Load config from disk, merging with defaults, then the environment."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load config: %s", e)

        if self.use_env:
            load_dotenv()
            for env_name, key in _ENV_KEYS.items():
                value = os.environ.get(env_name)
                if value:
                    self._data[key] = self._validate(key, value)
                    self._from_env.add(key)

    def save(self):
        """Persist config to disk (secrets and env overrides excluded)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {k: v for k, v in self._data.items()
                if k not in _SECRET_KEYS and k not in self._from_env}
        with open(self.path, 'w') as f:
            json.dump(data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self._from_env.discard(key)
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key == 'signed_url_ttl_sec':
            return self._clamp_int(key, value, SIGNED_URL_TTL_SEC,
                                   _SIGNED_TTL_MIN, _SIGNED_TTL_MAX)

        if key == 'provider_timeout_sec':
            return self._clamp_int(key, value, PROVIDER_TIMEOUT_SEC,
                                   _TIMEOUT_MIN, _TIMEOUT_MAX)

        if key == 'max_media_bytes':
            # Never above the provider ceiling
            return self._clamp_int(key, value, MAX_MEDIA_BYTES, 1, MAX_MEDIA_BYTES)

        if key == 'processing_lease_sec':
            return self._clamp_int(key, value, PROCESSING_LEASE_SEC, 30, 24 * 3600)

        if key == 'persist_retry_attempts':
            return self._clamp_int(key, value, PERSIST_RETRY_ATTEMPTS, 1, 10)

        if key in ('persist_retry_base_delay', 'poll_interval_sec'):
            default = _DEFAULTS[key]
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r; using default", key, value)
                return default
            return max(0.0 if key == 'persist_retry_base_delay' else _POLL_MIN,
                       min(_POLL_MAX, value))

        if key == 'storage_backend':
            if value not in (StorageBackend.LOCAL, StorageBackend.S3):
                logger.warning("Invalid storage_backend %r; using local", value)
                return StorageBackend.LOCAL

        if key == 'storage_public':
            if isinstance(value, str):
                return value.strip().lower() in ('1', 'true', 'yes', 'on')
            return bool(value)

        return value

    @staticmethod
    def _clamp_int(key: str, value, default: int, low: int, high: int) -> int:
        try:
            value = int(value)
        except (TypeError, ValueError):
            logger.warning("Invalid %s %r; using default", key, value)
            return default
        return max(low, min(high, value))

    def as_dict(self) -> dict:
        return dict(self._data)

    def redacted(self) -> dict:
        """Config for display/diagnostics with secrets masked."""
        return {k: ('***' if k in _SECRET_KEYS and v else v)
                for k, v in self._data.items()}

    @property
    def db_path(self) -> Path:
        return Path(self._data['db_path'])

    @property
    def openai_api_key(self) -> str | None:
        return self._data.get('openai_api_key')

    @property
    def language(self) -> str | None:
        return self._data.get('language') or None
