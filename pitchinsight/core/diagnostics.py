"""
Diagnostics: configuration and system checks.
"""

import logging
import sqlite3
from pathlib import Path

import requests

from pitchinsight.core.config import AppConfig
from pitchinsight.core.constants import APP_VERSION, StorageBackend

logger = logging.getLogger(__name__)


def check_api_key(config: AppConfig) -> dict:
    """Report whether the provider key is present, never the key itself."""
    key = config.openai_api_key
    return {"configured": bool(key), "suffix": key[-4:] if key and len(key) > 8 else None}


def check_database(db_path: Path) -> dict:
    """Check that the SQLite file opens and return its row count."""
    info = {"path": str(db_path), "exists": db_path.exists(), "videos": None, "error": None}
    if not info["exists"]:
        return info
    try:
        conn = sqlite3.connect(str(db_path))
        try:
            info["videos"] = conn.execute("SELECT COUNT(*) FROM videos").fetchone()[0]
        finally:
            conn.close()
    except sqlite3.Error as e:
        info["error"] = str(e)
    return info


def check_storage(config: AppConfig) -> dict:
    """Check the configured object store settings."""
    backend = config.get('storage_backend')
    info = {"backend": backend, "bucket": config.get('storage_bucket')}
    if backend == StorageBackend.S3:
        info["endpoint_url"] = config.get('s3_endpoint_url')
        info["credentials"] = bool(config.get('s3_access_key') and config.get('s3_secret_key'))
    else:
        root = Path(config.get('storage_root'))
        info["root"] = str(root)
        info["root_exists"] = root.exists()
        info["public"] = bool(config.get('storage_public'))
        info["signing_secret"] = bool(config.get('signing_secret'))
    return info


def check_media_server(config: AppConfig, timeout: float = 2.0) -> dict:
    """
    With the local backend the worker downloads media through this
    server's /media route, so `serve` must be running at public_base_url.
    """
    base_url = (config.get('public_base_url') or "").rstrip('/')
    info = {"required": config.get('storage_backend') != StorageBackend.S3,
            "base_url": base_url, "reachable": None, "error": None}
    if not info["required"]:
        return info
    try:
        resp = requests.get(f"{base_url}/health", timeout=timeout)
        info["reachable"] = resp.status_code == 200
        if not info["reachable"]:
            info["error"] = f"HTTP {resp.status_code}"
    except requests.exceptions.RequestException as e:
        info["reachable"] = False
        info["error"] = type(e).__name__
    return info


def get_diagnostics(config: AppConfig | None = None) -> dict:
    """Gather all diagnostic information."""
    config = config or AppConfig()
    return {
        "version": APP_VERSION,
        "api_key": check_api_key(config),
        "database": check_database(config.db_path),
        "storage": check_storage(config),
        "media_server": check_media_server(config),
        "config": config.redacted(),
    }
