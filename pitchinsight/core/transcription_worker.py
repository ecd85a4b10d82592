"""
Transcription Worker.

One invocation handles one video: claim -> resolve locator -> download ->
validate -> speech-to-text -> single terminal write (transcribed or error).
"""

import logging
from dataclasses import dataclass
from typing import Optional

from pitchinsight.core.db_sqlite import with_write_retry
from pitchinsight.core.error_codes import (
    ClaimError, NotFoundError, PipelineError, TranscriptionError,
)
from pitchinsight.core.fetch_media import validate_media
from pitchinsight.core.locator import media_filename, resolve_fetch_url
from pitchinsight.core.models_sqlite import TranscriptionResult, VideoRecord
from pitchinsight.core.services import Services
from pitchinsight.core.security_utils import redact_url

logger = logging.getLogger(__name__)


@dataclass
class TranscriptionOutcome:
    video_id: str
    result: TranscriptionResult
    record: Optional[VideoRecord] = None


class TranscriptionWorker:
    """Stateless; safe to share between tasks."""

    def __init__(self, services: Services):
        self.services = services
        cfg = services.config
        self.lease_sec = cfg.get('processing_lease_sec')
        self.signed_ttl = cfg.get('signed_url_ttl_sec')
        self.max_bytes = cfg.get('max_media_bytes')
        self.language = cfg.language
        self.retry_attempts = cfg.get('persist_retry_attempts')
        self.retry_delay = cfg.get('persist_retry_base_delay')

    def _persist(self, write):
        return with_write_retry(write, attempts=self.retry_attempts,
                                base_delay=self.retry_delay)

    def run(self, video_id: str) -> TranscriptionOutcome:
        db = self.services.db

        record = db.get_video(video_id)
        if record is None:
            raise NotFoundError(f"Video {video_id} not found")

        # Claim: at most one in-flight attempt per video
        token = db.claim_for_transcription(video_id, lease_sec=self.lease_sec)
        if token is None:
            current = db.get_video(video_id)
            status = current.status if current else "missing"
            logger.info("Claim refused for video %s (status=%s)", video_id, status)
            raise ClaimError(
                f"Video {video_id} cannot be claimed for transcription (status: {status})")

        logger.info("Claimed video %s for transcription", video_id)

        try:
            result = self._transcribe(record)
        except PipelineError as e:
            logger.warning("Transcription failed for video %s: %s", video_id, e)
            self._persist(lambda: db.fail_transcription(video_id, token, e.user_message()))
            raise
        except Exception as e:
            logger.error("Unexpected error transcribing video %s: %s", video_id, e,
                         exc_info=True)
            self._persist(lambda: db.fail_transcription(
                video_id, token, f"Unexpected error during transcription: {type(e).__name__}"))
            raise

        # The provider call is the expensive part; retry the local write instead
        stored = self._persist(lambda: db.complete_transcription(video_id, token, result))
        if not stored:
            raise ClaimError(f"Transcription of video {video_id} was superseded by a newer attempt")

        logger.info("Video %s transcribed (%d chars, %d segments)",
                    video_id, len(result.text), len(result.segments))
        return TranscriptionOutcome(video_id=video_id, result=result,
                                    record=db.get_video(video_id))

    def _transcribe(self, record: VideoRecord) -> TranscriptionResult:
        url = resolve_fetch_url(record, self.services.object_store, self.signed_ttl)
        logger.info("Fetching video %s from %s", record.id, redact_url(url))

        data = self.services.fetch(url, limit_bytes=self.max_bytes)
        validate_media(data, self.max_bytes)

        filename, content_type = media_filename(record)
        result = self.services.transcriber.transcribe(
            data, filename, content_type, language=self.language)
        if not isinstance(result, TranscriptionResult):
            raise TranscriptionError("Transcription provider returned no result")
        return result
