"""
Transcript analysis via an LLM chat-completion API (OpenAI REST).
The model is asked for one JSON object with a fixed schema; anything that
does not parse into that schema is an AnalysisError.
"""

import json
import logging
import random
import time
from abc import ABC, abstractmethod

import requests

from pitchinsight.core.constants import (
    OPENAI_API_BASE, ANALYSIS_MODEL, PROVIDER_TIMEOUT_SEC, MAX_TRANSCRIPT_CHARS,
    ANALYSIS_MAX_TOKENS,
)
from pitchinsight.core.error_codes import AnalysisError
from pitchinsight.core.models_sqlite import Analysis, Evaluation
from pitchinsight.core.transcribe_whisper import provider_error_message

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_URL = f"{OPENAI_API_BASE}/chat/completions"

_MAX_RATE_LIMIT_RETRIES = 4
_RATE_LIMIT_BASE_DELAY = 2.0

ANALYSIS_INSTRUCTIONS = """You are an expert speech coach analysing the transcript of a short video pitch.
Provide:
1. A concise summary (5-7 sentences)
2. 5-7 key points, in the order they appear
3. An evaluation of clarity and structure, each scored from 1 to 10
4. 3-5 suggestions for improvement, most important first
5. 3-5 strengths, most important first

Answer in the language of the transcript, as a single JSON object with exactly these keys:
{
  "summary": "string",
  "key_points": ["string", ...],
  "evaluation": {"clarity": number, "structure": number},
  "suggestions": ["string", ...],
  "strengths": ["string", ...]
}"""


class TextAnalysisProvider(ABC):
    """Adapter boundary for the transcript analysis vendor."""

    @abstractmethod
    def complete(self, instructions: str, transcript: str) -> str:
        """Return the raw model output. Raises AnalysisError on provider failure."""


def _string_list(value, field: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise AnalysisError(f"Analysis field '{field}' is not a list")
    return [str(item).strip() for item in value if str(item).strip()]


def _score(value, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise AnalysisError(f"Analysis score '{field}' is not a number")
    return float(max(1, min(10, value)))


def parse_analysis(raw: str) -> Analysis:
    """Parse model output into an Analysis, or raise AnalysisError."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise AnalysisError(f"Analysis response is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise AnalysisError("Analysis response is not a JSON object")

    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        raise AnalysisError("Analysis response has no summary")

    evaluation = data.get("evaluation")
    if not isinstance(evaluation, dict):
        raise AnalysisError("Analysis response has no evaluation object")

    return Analysis(
        summary=summary.strip(),
        key_points=_string_list(data.get("key_points"), "key_points"),
        evaluation=Evaluation(
            clarity=_score(evaluation.get("clarity"), "clarity"),
            structure=_score(evaluation.get("structure"), "structure"),
        ),
        suggestions=_string_list(data.get("suggestions"), "suggestions"),
        strengths=_string_list(data.get("strengths"), "strengths"),
    )


def truncate_transcript(text: str, limit: int = MAX_TRANSCRIPT_CHARS) -> str:
    return text if len(text) <= limit else text[:limit]


class ChatCompletionAnalyzer(TextAnalysisProvider):
    """OpenAI chat completions with response_format=json_object."""

    def __init__(self, api_key: str, model: str = ANALYSIS_MODEL,
                 timeout: int = PROVIDER_TIMEOUT_SEC, url: str = CHAT_COMPLETIONS_URL,
                 sleep=time.sleep):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.url = url
        self._sleep = sleep

    def complete(self, instructions: str, transcript: str) -> str:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": instructions},
                {"role": "user", "content": transcript},
            ],
            "response_format": {"type": "json_object"},
            "max_tokens": ANALYSIS_MAX_TOKENS,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        for attempt in range(_MAX_RATE_LIMIT_RETRIES + 1):
            try:
                resp = requests.post(self.url, headers=headers, json=body,
                                     timeout=self.timeout)
            except requests.exceptions.Timeout:
                raise AnalysisError(f"Analysis request timed out after {self.timeout}s",
                                    provider_code="timeout")
            except requests.exceptions.RequestException as e:
                raise AnalysisError(f"Analysis request failed: {type(e).__name__}",
                                    provider_code="network")

            if resp.status_code == 429 and attempt < _MAX_RATE_LIMIT_RETRIES:
                delay = _RATE_LIMIT_BASE_DELAY * (2 ** attempt)
                delay *= 1 + random.uniform(-0.1, 0.1)
                logger.warning("Analysis rate limited (429); retrying in %.1fs", delay)
                self._sleep(delay)
                continue

            if resp.status_code != 200:
                message, code = provider_error_message(resp)
                raise AnalysisError(
                    f"Analysis service returned {resp.status_code}: {message}",
                    status_code=resp.status_code, provider_code=code)

            try:
                return resp.json()["choices"][0]["message"]["content"] or ""
            except (ValueError, KeyError, IndexError, TypeError):
                raise AnalysisError("Malformed chat completion response",
                                    status_code=resp.status_code)

        raise AnalysisError("Analysis request exhausted retries")
