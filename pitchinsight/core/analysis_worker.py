"""
Analysis Worker.

Runs after a successful transcription write. Analysis failures are recovered
here: the record keeps its transcribed status and no error_message is set.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from pitchinsight.core.analyze_llm import (
    ANALYSIS_INSTRUCTIONS, parse_analysis, truncate_transcript,
)
from pitchinsight.core.constants import VideoStatus
from pitchinsight.core.db_sqlite import with_write_retry
from pitchinsight.core.error_codes import AnalysisError, NotFoundError, PreconditionError
from pitchinsight.core.models_sqlite import Analysis
from pitchinsight.core.services import Services

logger = logging.getLogger(__name__)


@dataclass
class AnalysisOutcome:
    video_id: str
    analyzed: bool
    analysis: Optional[Analysis] = None
    error: Optional[str] = None


class AnalysisWorker:

    def __init__(self, services: Services):
        self.services = services
        cfg = services.config
        self.retry_attempts = cfg.get('persist_retry_attempts')
        self.retry_delay = cfg.get('persist_retry_base_delay')

    def run(self, video_id: str) -> AnalysisOutcome:
        db = self.services.db

        record = db.get_video(video_id)
        if record is None:
            raise NotFoundError(f"Video {video_id} not found")

        if record.transcript_text is None:
            logger.error("Analysis requested for video %s before transcription (status=%s)",
                         video_id, record.status)
            raise PreconditionError(f"Video {video_id} has no transcript yet")

        if record.status == VideoStatus.ANALYZED:
            logger.info("Video %s already analyzed", video_id)
            return AnalysisOutcome(video_id, analyzed=True, analysis=record.analysis)

        if record.status != VideoStatus.TRANSCRIBED:
            logger.error("Analysis requested for video %s in status %s",
                         video_id, record.status)
            raise PreconditionError(
                f"Video {video_id} is {record.status}, expected {VideoStatus.TRANSCRIBED}")

        try:
            raw = self.services.analyzer.complete(
                ANALYSIS_INSTRUCTIONS, truncate_transcript(record.transcript_text))
            analysis = parse_analysis(raw)
        except AnalysisError as e:
            # Non-fatal: the transcript stays usable
            logger.warning("Analysis failed for video %s: %s", video_id, e.message)
            return AnalysisOutcome(video_id, analyzed=False, error=e.message)

        stored = with_write_retry(lambda: db.complete_analysis(video_id, analysis),
                                  attempts=self.retry_attempts,
                                  base_delay=self.retry_delay)
        if not stored:
            return AnalysisOutcome(video_id, analyzed=False,
                                   error="Record changed before the analysis was stored")

        logger.info("Video %s analyzed", video_id)
        return AnalysisOutcome(video_id, analyzed=True, analysis=analysis)
