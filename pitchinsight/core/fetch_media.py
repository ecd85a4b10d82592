"""
Media download over HTTP and pre-transcription validation.
"""

import logging

import requests

from pitchinsight.core.constants import MAX_MEDIA_BYTES, MIB, DOWNLOAD_TIMEOUT_SEC
from pitchinsight.core.error_codes import DownloadError, EmptyMediaError, SizeLimitError
from pitchinsight.core.security_utils import redact_url

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 256 * 1024


def size_limit_message(size_bytes: int | None, limit_bytes: int = MAX_MEDIA_BYTES) -> str:
    """Size unknown (download cut short) gives a message without a byte count."""
    if size_bytes is None:
        return f"Video file exceeds the {limit_bytes // MIB} MiB limit"
    return (f"Video file is too large ({size_bytes / MIB:.1f} MiB); "
            f"the limit is {limit_bytes // MIB} MiB")


def validate_media(data: bytes, limit_bytes: int = MAX_MEDIA_BYTES) -> bytes:
    """Reject empty or oversized payloads before any provider call."""
    if not data:
        raise EmptyMediaError("Video file is empty (0 bytes); nothing to transcribe")
    if len(data) > limit_bytes:
        raise SizeLimitError(size_limit_message(len(data), limit_bytes),
                             size_bytes=len(data), limit_bytes=limit_bytes)
    return data


def fetch_media(url: str, limit_bytes: int = MAX_MEDIA_BYTES,
                timeout: int = DOWNLOAD_TIMEOUT_SEC) -> bytes:
    """
    Download a media file. Raises SizeLimitError as soon as the declared
    or received size passes `limit_bytes`, so huge files are never fully
    buffered.
    """
    safe_url = redact_url(url)
    try:
        resp = requests.get(url, stream=True, timeout=timeout)
    except requests.exceptions.Timeout:
        raise DownloadError(f"Timed out downloading video from {safe_url}")
    except requests.exceptions.RequestException as e:
        raise DownloadError(f"Video download failed: {type(e).__name__}")

    with resp:
        if resp.status_code != 200:
            raise DownloadError(
                f"Video download returned HTTP {resp.status_code}",
                status_code=resp.status_code,
            )

        declared = resp.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > limit_bytes:
            logger.info("Declared size %s exceeds limit for %s", declared, safe_url)
            raise SizeLimitError(size_limit_message(int(declared), limit_bytes),
                                 size_bytes=int(declared), limit_bytes=limit_bytes)

        buf = bytearray()
        try:
            for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                if not chunk:
                    continue
                buf.extend(chunk)
                if len(buf) > limit_bytes:
                    logger.info("Stopped reading %s past %d bytes", safe_url, limit_bytes)
                    raise SizeLimitError(size_limit_message(None, limit_bytes),
                                         limit_bytes=limit_bytes)
        except requests.exceptions.RequestException as e:
            raise DownloadError(f"Video download interrupted: {type(e).__name__}")

    logger.info("Downloaded %d bytes from %s", len(buf), safe_url)
    return bytes(buf)
