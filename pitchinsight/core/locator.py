"""
Locator resolution: turn a VideoRecord into a URL that can be fetched.
"""

import logging
import posixpath
from urllib.parse import urlsplit

from pitchinsight.core.constants import ALLOWED_MEDIA_FORMATS, SIGNED_URL_TTL_SEC
from pitchinsight.core.error_codes import AccessError
from pitchinsight.core.models_sqlite import VideoRecord
from pitchinsight.core.object_store import ObjectStore

logger = logging.getLogger(__name__)

_DEFAULT_EXTENSION = "webm"


def resolve_fetch_url(record: VideoRecord, store: ObjectStore | None,
                      ttl_sec: int = SIGNED_URL_TTL_SEC) -> str:
    """
    Prefer the stable public locator; otherwise sign the storage path with a
    bounded TTL. Raises AccessError when neither works.
    """
    if record.public_url:
        return record.public_url

    if not record.storage_path:
        raise AccessError("Video has neither a public URL nor a storage path")
    if store is None:
        raise AccessError("No object store configured to sign the storage path")

    logger.info("Signing storage path %s for video %s", record.storage_path, record.id)
    try:
        return store.create_signed_url(record.storage_path, ttl_sec)
    except AccessError:
        raise
    except Exception as e:
        raise AccessError(f"Could not create a signed URL for the video: {e}") from e


def playback_url(record: VideoRecord, store: ObjectStore | None,
                 ttl_sec: int = SIGNED_URL_TTL_SEC) -> str:
    """URL for viewing a video: public link when the store exposes one."""
    if record.storage_path and store is not None:
        public = store.public_url(record.storage_path)
        if public:
            return public
    return resolve_fetch_url(record, store, ttl_sec)


def media_filename(record: VideoRecord) -> tuple[str, str]:
    """(filename, content_type) to present to the speech-to-text provider."""
    source = record.storage_path or urlsplit(record.public_url or "").path
    name = posixpath.basename(source or "") or f"{record.id}.{_DEFAULT_EXTENSION}"
    ext = name.rsplit('.', 1)[-1].lower() if '.' in name else ""
    if ext not in ALLOWED_MEDIA_FORMATS:
        ext = _DEFAULT_EXTENSION
        name = f"{name}.{ext}"
    content_type = record.content_type or ALLOWED_MEDIA_FORMATS[ext]
    return name, content_type
