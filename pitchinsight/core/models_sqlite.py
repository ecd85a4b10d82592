"""
Data models (plain dataclasses) for PitchInsight.
"""

import json
from dataclasses import dataclass, field, asdict
from typing import Optional

from pitchinsight.core.constants import VideoStatus


@dataclass
class TranscriptSegment:
    start: float
    end: float
    text: str
    confidence: Optional[float] = None

    @classmethod
    def from_dict(cls, data: dict) -> "TranscriptSegment":
        confidence = data.get('confidence')
        return cls(
            start=float(data.get('start') or 0.0),
            end=float(data.get('end') or 0.0),
            text=str(data.get('text') or '').strip(),
            confidence=float(confidence) if confidence is not None else None,
        )


@dataclass
class Evaluation:
    clarity: float
    structure: float


@dataclass
class Analysis:
    summary: str
    key_points: list[str] = field(default_factory=list)
    evaluation: Optional[Evaluation] = None
    suggestions: list[str] = field(default_factory=list)
    strengths: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Analysis":
        evaluation = data.get('evaluation')
        return cls(
            summary=data['summary'],
            key_points=list(data.get('key_points') or []),
            evaluation=Evaluation(**evaluation) if evaluation else None,
            suggestions=list(data.get('suggestions') or []),
            strengths=list(data.get('strengths') or []),
        )


@dataclass
class VideoRecord:
    id: str                          # UUID
    owner_id: str
    public_url: Optional[str] = None
    storage_path: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    content_type: Optional[str] = None
    file_size_bytes: Optional[int] = None
    duration_seconds: Optional[float] = None
    status: str = VideoStatus.UPLOADED
    transcript_text: Optional[str] = None
    transcript_segments: list[TranscriptSegment] = field(default_factory=list)
    transcript_language: Optional[str] = None
    analysis: Optional[Analysis] = None
    error_message: Optional[str] = None
    transcription_attempts: int = 0
    processing_token: Optional[str] = None
    lease_expires_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        """Persisted shape as exposed to consumers (no lease internals)."""
        data = asdict(self)
        data.pop('processing_token')
        data.pop('lease_expires_at')
        return data

    @classmethod
    def from_row(cls, row: dict) -> "VideoRecord":
        row = dict(row)
        segments = json.loads(row.pop('transcript_segments') or '[]')
        analysis = row.pop('analysis')
        return cls(
            transcript_segments=[TranscriptSegment.from_dict(s) for s in segments],
            analysis=Analysis.from_dict(json.loads(analysis)) if analysis else None,
            **row,
        )


@dataclass
class TranscriptionResult:
    """Normalised speech-to-text output, independent of the vendor."""
    text: str
    segments: list[TranscriptSegment] = field(default_factory=list)
    language: Optional[str] = None


@dataclass
class Session:
    """Explicit caller identity, supplied by the authentication layer."""
    owner_id: str
    access_token: Optional[str] = None
