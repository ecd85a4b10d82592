"""
Shared constants for PitchInsight.
Single source of truth, imported by every other module.
"""

import os
import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "PitchInsight"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_SUPPORT_DIR = pathlib.Path(
    os.environ.get("PITCHINSIGHT_HOME", str(HOME / ".pitchinsight"))
)
DB_PATH = APP_SUPPORT_DIR / "videos.db"
CONFIG_PATH = APP_SUPPORT_DIR / "config.json"
DEFAULT_STORAGE_ROOT = APP_SUPPORT_DIR / "storage"
LOG_DIR = APP_SUPPORT_DIR / "logs"

# ── Video status values ───────────────────────────────────────────────
class VideoStatus:
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    TRANSCRIBED = "transcribed"
    ANALYZED = "analyzed"
    ERROR = "error"


ALL_STATUSES = (
    VideoStatus.UPLOADED,
    VideoStatus.PROCESSING,
    VideoStatus.TRANSCRIBED,
    VideoStatus.ANALYZED,
    VideoStatus.ERROR,
)

# Edges the record store accepts. processing -> processing is only taken
# when a stale lease is reclaimed.
ALLOWED_TRANSITIONS = {
    VideoStatus.UPLOADED: {VideoStatus.PROCESSING},
    VideoStatus.ERROR: {VideoStatus.PROCESSING},
    VideoStatus.PROCESSING: {
        VideoStatus.PROCESSING, VideoStatus.TRANSCRIBED, VideoStatus.ERROR,
    },
    VideoStatus.TRANSCRIBED: {VideoStatus.ANALYZED},
    VideoStatus.ANALYZED: set(),
}

CLAIMABLE_STATUSES = (VideoStatus.UPLOADED, VideoStatus.ERROR)
TERMINAL_STATUSES = (VideoStatus.TRANSCRIBED, VideoStatus.ANALYZED, VideoStatus.ERROR)

STATUS_LABELS = {
    VideoStatus.UPLOADED: "Uploaded, waiting for processing",
    VideoStatus.PROCESSING: "Transcribing",
    VideoStatus.TRANSCRIBED: "Transcription ready",
    VideoStatus.ANALYZED: "Analysis complete",
    VideoStatus.ERROR: "Processing failed",
}

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    CONFIGURATION = "ERR_CONFIGURATION"
    NOT_FOUND = "ERR_NOT_FOUND"
    PRECONDITION = "ERR_PRECONDITION"
    CLAIM_REFUSED = "ERR_CLAIM_REFUSED"
    PERMISSION_DENIED = "ERR_PERMISSION_DENIED"
    INVALID_FORMAT = "ERR_INVALID_FORMAT"

    # Retryable
    ACCESS = "ERR_ACCESS"
    DOWNLOAD_FAILED = "ERR_DOWNLOAD_FAILED"
    EMPTY_MEDIA = "ERR_EMPTY_MEDIA"
    SIZE_LIMIT = "ERR_SIZE_LIMIT"
    TRANSCRIPTION_FAILED = "ERR_TRANSCRIPTION_FAILED"
    ANALYSIS_FAILED = "ERR_ANALYSIS_FAILED"
    PERSISTENCE = "ERR_PERSISTENCE"


RETRYABLE_ERRORS = {
    ErrorCode.ACCESS,
    ErrorCode.DOWNLOAD_FAILED,
    ErrorCode.EMPTY_MEDIA,
    ErrorCode.SIZE_LIMIT,
    ErrorCode.TRANSCRIPTION_FAILED,
    ErrorCode.ANALYSIS_FAILED,
    ErrorCode.PERSISTENCE,
    ErrorCode.CLAIM_REFUSED,
}

MAX_ERROR_MESSAGE_LEN = 2000

# ── Media limits ──────────────────────────────────────────────────────
MIB = 1024 * 1024
MAX_MEDIA_BYTES = 25 * MIB     # speech-to-text provider hard ceiling

# Extensions accepted by the speech-to-text provider
ALLOWED_MEDIA_FORMATS = {
    "webm": "video/webm",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "m4a": "audio/mp4",
    "mp3": "audio/mpeg",
    "mpeg": "video/mpeg",
    "mpga": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "oga": "audio/ogg",
    "flac": "audio/flac",
}

# ── Storage ───────────────────────────────────────────────────────────
class StorageBackend:
    LOCAL = "local"
    S3 = "s3"


DEFAULT_BUCKET = "videos"
SIGNED_URL_TTL_SEC = 3600
DEFAULT_PUBLIC_BASE_URL = "http://127.0.0.1:8000"

# ── Providers ─────────────────────────────────────────────────────────
OPENAI_API_BASE = "https://api.openai.com/v1"
TRANSCRIPTION_MODEL = "whisper-1"
ANALYSIS_MODEL = "gpt-4o"
DEFAULT_LANGUAGE = "fr"
PROVIDER_TIMEOUT_SEC = 120
DOWNLOAD_TIMEOUT_SEC = 120
MAX_TRANSCRIPT_CHARS = 12000
ANALYSIS_MAX_TOKENS = 2000

# ── Concurrency / retries ─────────────────────────────────────────────
PROCESSING_LEASE_SEC = 900
PERSIST_RETRY_ATTEMPTS = 4
PERSIST_RETRY_BASE_DELAY = 0.5

# ── Status sync ───────────────────────────────────────────────────────
POLL_INTERVAL_SEC = 5.0
RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0

# Characters forbidden in object names
UNSAFE_FILENAME_CHARS = r'[<>:"/\\|?*\x00-\x1f]'
MAX_TITLE_LEN = 200
