"""
Pipeline: chains the Transcription Worker and the Analysis Worker.

Analysis is only ever dispatched after a successful transcription write, so
the analysis task never observes a missing transcript.
"""

import logging
from typing import Callable, Optional

from pitchinsight.core.analysis_worker import AnalysisOutcome, AnalysisWorker
from pitchinsight.core.constants import VideoStatus
from pitchinsight.core.error_codes import NotFoundError
from pitchinsight.core.models_sqlite import VideoRecord
from pitchinsight.core.services import Services
from pitchinsight.core.transcription_worker import TranscriptionOutcome, TranscriptionWorker

logger = logging.getLogger(__name__)


class Pipeline:
    """
    Entry point used by the HTTP handlers, the upload client and the CLI.
    Emits an optional callback after each analysis attempt.
    """

    def __init__(self, services: Services):
        self.services = services
        self.transcription = TranscriptionWorker(services)
        self.analysis = AnalysisWorker(services)

        self.on_analysis_finished: Optional[Callable[[AnalysisOutcome], None]] = None

    # ── Transcription ─────────────────────────────────────────────────

    def transcribe(self, video_id: str, analyze: bool = True) -> TranscriptionOutcome:
        """Run one transcription attempt in the caller. Raises PipelineError."""
        outcome = self.transcription.run(video_id)
        if analyze:
            self.services.dispatcher.submit(f"analyze-{video_id}", self.analyze, video_id)
        return outcome

    def start_transcription(self, video_id: str):
        """Dispatch a transcription attempt without waiting for it."""
        logger.info("Dispatching transcription for video %s", video_id)
        self.services.dispatcher.submit(f"transcribe-{video_id}", self.transcribe, video_id)

    # ── Analysis ──────────────────────────────────────────────────────

    def analyze(self, video_id: str) -> AnalysisOutcome:
        outcome = self.analysis.run(video_id)
        if self.on_analysis_finished:
            self.on_analysis_finished(outcome)
        return outcome

    # ── Retry ─────────────────────────────────────────────────────────

    def retry(self, video_id: str, wait: bool = False) -> VideoRecord:
        """
        Re-run transcription for a record in error. Any other status is left
        alone and returned unchanged.
        """
        record = self.services.db.get_video(video_id)
        if record is None:
            raise NotFoundError(f"Video {video_id} not found")
        if record.status != VideoStatus.ERROR:
            logger.info("Retry ignored for video %s (status=%s)", video_id, record.status)
            return record

        logger.info("Retrying transcription for video %s (attempt %d)",
                    video_id, record.transcription_attempts + 1)
        if wait:
            self.transcribe(video_id)
        else:
            self.start_transcription(video_id)
        return self.services.db.get_video(video_id) or record
