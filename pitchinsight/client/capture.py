"""
Capture/Upload Client.

Records (or picks up) a pitch video, checks it against the same limits the
Transcription Worker enforces, uploads the binary, creates the record and
hands the video to the pipeline without waiting for it.
"""

import logging
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pitchinsight.core.constants import ALLOWED_MEDIA_FORMATS, MAX_MEDIA_BYTES
from pitchinsight.core.error_codes import (
    MediaPermissionError, NotFoundError, ValidationError,
)
from pitchinsight.core.fetch_media import validate_media
from pitchinsight.core.locator import playback_url
from pitchinsight.core.models_sqlite import Session, VideoRecord
from pitchinsight.core.pipeline import Pipeline
from pitchinsight.core.security_utils import build_object_path, sanitize_title
from pitchinsight.core.services import Services

logger = logging.getLogger(__name__)


@dataclass
class RecordedMedia:
    data: bytes
    content_type: str
    filename: Optional[str] = None
    duration_seconds: Optional[float] = None


class MediaDevice(ABC):
    """Camera/microphone (or any other media source)."""

    @abstractmethod
    def request_permission(self) -> bool:
        """Ask for access. False means the user (or the OS) refused."""

    @abstractmethod
    def record(self) -> RecordedMedia:
        ...


class FileMediaSource(MediaDevice):
    """Treats an existing file as a finished recording."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def request_permission(self) -> bool:
        return self.path.is_file()

    def record(self) -> RecordedMedia:
        content_type = (ALLOWED_MEDIA_FORMATS.get(media_extension(self.path.name, ""))
                        or mimetypes.guess_type(self.path.name)[0] or "")
        return RecordedMedia(data=self.path.read_bytes(), content_type=content_type,
                             filename=self.path.name)


def media_extension(filename: str | None, content_type: str | None) -> str:
    """Extension from the filename, else from the (codec-stripped) mime type."""
    if filename and '.' in filename:
        return filename.rsplit('.', 1)[-1].lower()
    mime = (content_type or "").split(';', 1)[0].strip().lower()
    for ext, known in ALLOWED_MEDIA_FORMATS.items():
        if known == mime:
            return ext
    return ""


def precheck_media(media: RecordedMedia, limit_bytes: int = MAX_MEDIA_BYTES) -> str:
    """
    Client-side copy of the worker's checks: format allow-list, empty
    payload, size ceiling. Returns the file extension to store under.
    """
    ext = media_extension(media.filename, media.content_type)
    if ext not in ALLOWED_MEDIA_FORMATS:
        allowed = ", ".join(sorted(ALLOWED_MEDIA_FORMATS))
        raise ValidationError(
            f"Unsupported video format {ext or media.content_type!r}; allowed: {allowed}")
    validate_media(media.data, limit_bytes)
    return ext


class CaptureUploadClient:

    def __init__(self, services: Services, pipeline: Pipeline | None = None):
        self.services = services
        self.pipeline = pipeline or Pipeline(services)
        self.max_bytes = services.config.get('max_media_bytes')

    @staticmethod
    def _require_session(session: Session):
        if session is None or not session.owner_id:
            raise ValidationError("A signed-in session is required")

    # ── Capture ───────────────────────────────────────────────────────

    def capture(self, session: Session, device: MediaDevice, title: str | None = None,
                description: str | None = None) -> VideoRecord:
        """Ask for device permission, record, then upload."""
        self._require_session(session)
        try:
            granted = device.request_permission()
        except PermissionError as e:
            granted = False
            logger.info("Media device refused access: %s", e)
        if not granted:
            raise MediaPermissionError(
                "Camera/microphone access was denied; allow access to record a pitch")

        media = device.record()
        return self.upload(session, media, title=title, description=description)

    def upload_file(self, session: Session, path: Path, title: str | None = None,
                    description: str | None = None) -> VideoRecord:
        source = FileMediaSource(path)
        if not source.request_permission():
            raise NotFoundError(f"File not found: {path}")
        return self.upload(session, source.record(),
                           title=title or Path(path).stem, description=description)

    # ── Upload ────────────────────────────────────────────────────────

    def upload(self, session: Session, media: RecordedMedia, title: str | None = None,
               description: str | None = None) -> VideoRecord:
        """
        Upload, create the record and dispatch transcription.

        If the record cannot be created after the upload, the binary stays in
        storage as an orphan; it is logged and the error re-raised.
        """
        self._require_session(session)
        ext = precheck_media(media, self.max_bytes)
        content_type = (media.content_type.split(';', 1)[0].strip()
                        or ALLOWED_MEDIA_FORMATS[ext])

        store = self.services.object_store
        path = build_object_path(session.owner_id, ext)
        storage_path = store.upload(path, media.data, content_type)
        logger.info("Uploaded %d bytes to %s", len(media.data), storage_path)

        try:
            record = self.services.db.create_video(
                owner_id=session.owner_id,
                storage_path=storage_path,
                public_url=store.public_url(storage_path),
                title=sanitize_title(title) if title else None,
                description=description,
                content_type=content_type,
                file_size_bytes=len(media.data),
                duration_seconds=media.duration_seconds,
            )
        except Exception as e:
            logger.error("Orphaned upload %s: record creation failed: %s", storage_path, e)
            raise

        self.pipeline.start_transcription(record.id)
        return record

    # ── Listing / playback ────────────────────────────────────────────

    def get_owned(self, session: Session, video_id: str) -> VideoRecord:
        self._require_session(session)
        record = self.services.db.get_video(video_id)
        if record is None or record.owner_id != session.owner_id:
            raise NotFoundError(f"Video {video_id} not found")
        return record

    def list_videos(self, session: Session, status: str | None = None,
                    page: int = 1, page_size: int = 10) -> tuple[list[VideoRecord], int]:
        self._require_session(session)
        return self.services.db.list_videos(session.owner_id, status=status,
                                            page=page, page_size=page_size)

    def playback_url(self, session: Session, video_id: str) -> str:
        record = self.get_owned(session, video_id)
        return playback_url(record, self.services.object_store,
                            self.services.config.get('signed_url_ttl_sec'))
