"""
Speech-to-text integration (OpenAI Whisper REST API).
Requests verbose JSON with segment timestamps and a language hint.
Includes exponential backoff for rate-limit (429) responses.
"""

import json
import logging
import math
import time
import random
from abc import ABC, abstractmethod

import requests

from pitchinsight.core.error_codes import TranscriptionError
from pitchinsight.core.models_sqlite import TranscriptionResult, TranscriptSegment
from pitchinsight.core.constants import (
    OPENAI_API_BASE, TRANSCRIPTION_MODEL, DEFAULT_LANGUAGE, PROVIDER_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)

TRANSCRIPTIONS_URL = f"{OPENAI_API_BASE}/audio/transcriptions"

_MAX_RATE_LIMIT_RETRIES = 4
_RATE_LIMIT_BASE_DELAY = 2.0   # seconds; doubles each retry with jitter


class SpeechToTextProvider(ABC):
    """Adapter boundary for speech-to-text vendors."""

    @abstractmethod
    def transcribe(self, media: bytes, filename: str, content_type: str,
                   language: str | None = None) -> TranscriptionResult:
        """Raises TranscriptionError on any provider failure."""


def provider_error_message(resp: requests.Response) -> tuple[str, str | None]:
    """Extract (message, code) from a JSON error body, else the raw text."""
    try:
        body = resp.json()
    except ValueError:
        return (resp.text[:300] if resp.text else "No response body"), None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error)[:300], error.get("code") or error.get("type")
    if error:
        return str(error)[:300], None
    return json.dumps(body)[:300], None


def _segment_confidence(seg: dict) -> float | None:
    if seg.get("confidence") is not None:
        return float(seg["confidence"])
    # Whisper reports avg_logprob; exp() maps it to a 0..1 probability
    if seg.get("avg_logprob") is not None:
        return round(min(1.0, math.exp(float(seg["avg_logprob"]))), 4)
    return None


def parse_transcription(payload: dict) -> TranscriptionResult:
    """Normalise a verbose_json response; segments may be absent."""
    if not isinstance(payload, dict) or not isinstance(payload.get("text"), str):
        raise TranscriptionError("Transcription response has no text field")

    raw_segments = payload.get("segments") or []
    if not isinstance(raw_segments, list):
        raise TranscriptionError("Transcription response has malformed segments")

    segments = []
    for index, seg in enumerate(raw_segments):
        if not isinstance(seg, dict):
            raise TranscriptionError(
                f"Transcription response has malformed segments (segment {index})")
        try:
            segment = TranscriptSegment.from_dict(seg)
            segment.confidence = _segment_confidence(seg)
        except (TypeError, ValueError, AttributeError) as e:
            raise TranscriptionError(
                f"Transcription response has malformed segments (segment {index}: {e})"
            ) from e
        segments.append(segment)
    return TranscriptionResult(
        text=payload["text"].strip(),
        segments=segments,
        language=payload.get("language"),
    )


class WhisperTranscriber(SpeechToTextProvider):
    """OpenAI audio transcription endpoint, called with requests."""

    def __init__(self, api_key: str, model: str = TRANSCRIPTION_MODEL,
                 timeout: int = PROVIDER_TIMEOUT_SEC, url: str = TRANSCRIPTIONS_URL,
                 sleep=time.sleep):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.url = url
        self._sleep = sleep

    def transcribe(self, media: bytes, filename: str, content_type: str,
                   language: str | None = DEFAULT_LANGUAGE) -> TranscriptionResult:
        """
        Transcribe one media payload.
        Retries up to 4 times with exponential backoff on 429 responses.
        """
        headers = {"Authorization": f"Bearer {self.api_key}"}
        data = [
            ("model", self.model),
            ("response_format", "verbose_json"),
            ("timestamp_granularities[]", "segment"),
        ]
        if language:
            data.append(("language", language))

        for attempt in range(_MAX_RATE_LIMIT_RETRIES + 1):
            try:
                resp = requests.post(
                    self.url,
                    headers=headers,
                    data=data,
                    files={"file": (filename, media, content_type)},
                    timeout=self.timeout,
                )
            except requests.exceptions.Timeout:
                raise TranscriptionError(
                    f"Transcription request timed out after {self.timeout}s",
                    provider_code="timeout")
            except requests.exceptions.ConnectionError:
                raise TranscriptionError("Network error connecting to the transcription service",
                                         provider_code="network")
            except requests.exceptions.RequestException as e:
                raise TranscriptionError(f"Transcription request failed: {type(e).__name__}")

            if resp.status_code == 429:
                if attempt < _MAX_RATE_LIMIT_RETRIES:
                    # Exponential backoff with jitter: 2s, 4s, 8s, 16s (+/- 10%)
                    delay = _RATE_LIMIT_BASE_DELAY * (2 ** attempt)
                    delay *= 1 + random.uniform(-0.1, 0.1)
                    logger.warning(
                        "Transcription rate limited (429); retrying in %.1fs (attempt %d/%d)",
                        delay, attempt + 1, _MAX_RATE_LIMIT_RETRIES,
                    )
                    self._sleep(delay)
                    continue
                raise TranscriptionError(
                    f"Transcription rate limited (429) after {_MAX_RATE_LIMIT_RETRIES} retries",
                    status_code=429)

            if resp.status_code != 200:
                # Never log the API key; the body is vendor text only
                message, code = provider_error_message(resp)
                raise TranscriptionError(
                    f"Transcription service returned {resp.status_code}: {message}",
                    status_code=resp.status_code, provider_code=code)

            try:
                payload = resp.json()
            except ValueError:
                raise TranscriptionError("Failed to parse transcription response JSON",
                                         status_code=resp.status_code)

            return parse_transcription(payload)

        # Should never reach here
        raise TranscriptionError("Transcription request exhausted retries")
