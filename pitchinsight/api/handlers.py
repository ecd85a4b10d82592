"""
Invocation handlers for the transcription and analysis functions.

Framework-free: each handler takes the decoded request body and returns
(http_status, response_body). server.py wraps them in FastAPI routes and the
CLI calls them directly.
"""

import logging
from typing import Any

from pitchinsight.core.error_codes import (
    ClaimError, NotFoundError, PipelineError, PreconditionError, ValidationError,
)
from pitchinsight.core.pipeline import Pipeline

logger = logging.getLogger(__name__)

# First match wins; anything else is a processing failure (500)
_STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (ValidationError, 400),
    (PreconditionError, 400),
    (ClaimError, 409),
)


def status_for(error: Exception) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


def error_body(title: str, details: str) -> dict:
    return {"error": title, "details": details}


def extract_video_id(payload: Any) -> str:
    """Accepts {"video_id": ...} or the legacy {"videoId": ...}."""
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    video_id = payload.get("video_id") or payload.get("videoId")
    if not isinstance(video_id, str) or not video_id.strip():
        raise ValidationError("video_id is required")
    return video_id.strip()


def _failure(title: str, error: Exception) -> tuple[int, dict]:
    status = status_for(error)
    if isinstance(error, PipelineError):
        details = error.user_message()
    else:
        details = f"Unexpected error: {type(error).__name__}"
    if status == 404:
        title = "Video not found"
    elif status == 400:
        title = "Invalid request"
    elif status == 409:
        title = "Transcription already in progress"
    return status, error_body(title, details)


def invoke_transcription(pipeline: Pipeline, payload: Any) -> tuple[int, dict]:
    try:
        video_id = extract_video_id(payload)
        pipeline.transcribe(video_id)
    except PipelineError as e:
        logger.warning("Transcription request failed: %s", e)
        return _failure("Transcription failed", e)
    except Exception as e:
        logger.error("Transcription request crashed: %s", e, exc_info=True)
        return _failure("Transcription failed", e)

    return 200, {
        "success": True,
        "message": "Transcription completed",
        "video_id": video_id,
    }


def invoke_analysis(pipeline: Pipeline, payload: Any) -> tuple[int, dict]:
    try:
        video_id = extract_video_id(payload)
        outcome = pipeline.analyze(video_id)
    except PipelineError as e:
        logger.warning("Analysis request failed: %s", e)
        return _failure("Analysis failed", e)
    except Exception as e:
        logger.error("Analysis request crashed: %s", e, exc_info=True)
        return _failure("Analysis failed", e)

    if not outcome.analyzed:
        # The transcript is intact; only the analysis portion failed
        return 200, {
            "success": True,
            "analyzed": False,
            "message": "Transcription kept; analysis failed",
            "video_id": video_id,
            "details": outcome.error,
        }
    return 200, {
        "success": True,
        "analyzed": True,
        "message": "Analysis completed",
        "video_id": video_id,
    }
