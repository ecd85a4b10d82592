"""
Security utilities for PitchInsight.
- Object path construction (owner-scoped, traversal-safe)
- Title sanitization
- HMAC signing of expiring media URLs
- URL redaction for logs
"""

import hashlib
import hmac
import re
import secrets
import time
import logging
from urllib.parse import urlsplit, urlunsplit

from pitchinsight.core.constants import UNSAFE_FILENAME_CHARS, MAX_TITLE_LEN

logger = logging.getLogger(__name__)


# ── Names / paths ─────────────────────────────────────────────────────

def sanitize_title(title: str) -> str:
    """Sanitize a user supplied title for storage and display."""
    if not title:
        return ""
    safe = re.sub(UNSAFE_FILENAME_CHARS, ' ', title)
    safe = re.sub(r'\s+', ' ', safe).strip()
    if len(safe) > MAX_TITLE_LEN:
        safe = safe[:MAX_TITLE_LEN].rstrip()
    return safe


def sanitize_path_segment(segment: str) -> str:
    """Reduce an identifier to characters safe inside an object key."""
    safe = re.sub(r'[^A-Za-z0-9_.-]', '_', segment or '')
    safe = safe.replace('..', '_').strip('.')
    return safe


def build_object_path(owner_id: str, extension: str, now_ms: int | None = None) -> str:
    """
    Owner-scoped, collision-resistant object key:
    "<owner_id>/<epoch_ms>-<random>.<ext>".
    """
    owner = sanitize_path_segment(owner_id)
    if not owner:
        raise ValueError("owner_id is required to build an object path")
    ext = sanitize_path_segment(extension.lstrip('.').lower()) or "bin"
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{owner}/{stamp}-{secrets.token_hex(6)}.{ext}"


def is_safe_object_path(path: str) -> bool:
    if not path or path.startswith('/') or '\\' in path:
        return False
    return all(part not in ('', '.', '..') for part in path.split('/'))


# ── Signed URLs ───────────────────────────────────────────────────────

def sign_path(secret: str, path: str, expires_at: int) -> str:
    message = f"{path}:{expires_at}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, path: str, expires_at: int, signature: str,
                     now: float | None = None) -> bool:
    """Constant-time check of a signature, rejecting expired links."""
    current = now if now is not None else time.time()
    if expires_at < current:
        return False
    expected = sign_path(secret, path, expires_at)
    return hmac.compare_digest(expected, signature or "")


# ── Logging hygiene ───────────────────────────────────────────────────

def redact_url(url: str | None) -> str:
    """Drop the query string (signatures, tokens) from a URL before logging."""
    if not url:
        return ""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "<invalid url>"
    if parts.query:
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "<redacted>", ""))
    return url
