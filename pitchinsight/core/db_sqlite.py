"""
SQLite video record store for PitchInsight.
Thread-safe via check_same_thread=False + explicit locking.

Every status change is a single conditional UPDATE, so the WHERE clause is
the state machine: a write whose precondition no longer holds touches zero
rows and reports False instead of clobbering a newer state.
"""

import json
import random
import sqlite3
import threading
import time
import uuid
import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, TypeVar

from pitchinsight.core.constants import (
    DB_PATH, VideoStatus, ALLOWED_TRANSITIONS, CLAIMABLE_STATUSES,
    PROCESSING_LEASE_SEC, PERSIST_RETRY_ATTEMPTS, PERSIST_RETRY_BASE_DELAY,
    MAX_ERROR_MESSAGE_LEN,
)
from pitchinsight.core.change_feed import ChangeEvent, ChangeFeed
from pitchinsight.core.error_codes import PersistenceError, ValidationError
from pitchinsight.core.models_sqlite import Analysis, TranscriptionResult, VideoRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    public_url TEXT,
    storage_path TEXT,
    title TEXT,
    description TEXT,
    content_type TEXT,
    file_size_bytes INTEGER,
    duration_seconds REAL,
    status TEXT NOT NULL DEFAULT 'uploaded',
    transcript_text TEXT,
    transcript_segments TEXT,
    transcript_language TEXT,
    analysis TEXT,
    error_message TEXT,
    transcription_attempts INTEGER DEFAULT 0,
    processing_token TEXT,
    lease_expires_at TEXT,
    created_at TEXT,
    updated_at TEXT,
    CHECK (public_url IS NOT NULL OR storage_path IS NOT NULL)
);

CREATE INDEX IF NOT EXISTS idx_videos_owner_created ON videos(owner_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(status);
"""


def is_allowed_transition(old: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(old, set())


def with_write_retry(write: Callable[[], T],
                     attempts: int = PERSIST_RETRY_ATTEMPTS,
                     base_delay: float = PERSIST_RETRY_BASE_DELAY,
                     sleep: Callable[[float], None] = time.sleep) -> T:
    """
    Run a store write, retrying PersistenceError with exponential backoff.
    Used for terminal writes whose external side effect already happened.
    """
    for attempt in range(attempts):
        try:
            return write()
        except PersistenceError as e:
            if attempt + 1 >= attempts:
                logger.error("Write failed after %d attempts: %s", attempts, e.message)
                raise
            # 0.5s, 1s, 2s ... (+/- 10%)
            delay = base_delay * (2 ** attempt)
            delay *= 1 + random.uniform(-0.1, 0.1)
            logger.warning("Write failed (%s); retrying in %.2fs (attempt %d/%d)",
                           e.message, delay, attempt + 1, attempts)
            sleep(delay)
    raise PersistenceError("Write retries exhausted")


class Database:
    """SQLite store for VideoRecord rows."""

    def __init__(self, db_path: Path | None = None,
                 change_feed: ChangeFeed | None = None):
        self.db_path = db_path or DB_PATH
        self.change_feed = change_feed
        self._lock = threading.RLock()
        self._ensure_dirs()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        cur = self.conn.cursor()
        cur.executescript(_CREATE_TABLES)
        cur.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (_SCHEMA_VERSION,),
        )
        self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat(timespec="microseconds")

    def _write(self, sql: str, params: tuple) -> int:
        """Execute one write statement and commit; returns rowcount."""
        with self._lock:
            try:
                cur = self.conn.execute(sql, params)
                self.conn.commit()
                return cur.rowcount
            except sqlite3.Error as e:
                try:
                    self.conn.rollback()
                except sqlite3.Error as rollback_error:
                    logger.warning("Rollback failed: %s", rollback_error)
                raise PersistenceError(f"Database write failed: {e}") from e

    def _notify(self, video_id: str, status: str):
        if self.change_feed:
            self.change_feed.publish(ChangeEvent(video_id=video_id, status=status))

    # ── Create / read ─────────────────────────────────────────────────

    def create_video(self, owner_id: str, storage_path: str | None = None,
                     public_url: str | None = None, title: str | None = None,
                     description: str | None = None,
                     content_type: str | None = None,
                     file_size_bytes: int | None = None,
                     duration_seconds: float | None = None,
                     video_id: str | None = None) -> VideoRecord:
        if not storage_path and not public_url:
            raise ValidationError("A video needs a public URL or a storage path")

        now = self._now()
        record = VideoRecord(
            id=video_id or str(uuid.uuid4()),
            owner_id=owner_id,
            public_url=public_url,
            storage_path=storage_path,
            title=title,
            description=description,
            content_type=content_type,
            file_size_bytes=file_size_bytes,
            duration_seconds=duration_seconds,
            created_at=now,
            updated_at=now,
        )
        self._write(
            """INSERT INTO videos
               (id, owner_id, public_url, storage_path, title, description,
                content_type, file_size_bytes, duration_seconds, status,
                transcription_attempts, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (record.id, record.owner_id, record.public_url, record.storage_path,
             record.title, record.description, record.content_type,
             record.file_size_bytes, record.duration_seconds, record.status,
             record.transcription_attempts, record.created_at, record.updated_at),
        )
        self._notify(record.id, record.status)
        return record

    def get_video(self, video_id: str) -> VideoRecord | None:
        with self._lock:
            try:
                row = self.conn.execute(
                    "SELECT * FROM videos WHERE id = ?", (video_id,)
                ).fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"Database read failed: {e}") from e
        return VideoRecord.from_row(row) if row else None

    def list_videos(self, owner_id: str, status: str | None = None,
                    page: int = 1, page_size: int = 10) -> tuple[list[VideoRecord], int]:
        """Owner's videos, newest first. Returns (page of records, total count)."""
        page = max(1, page)
        page_size = max(1, min(100, page_size))
        where = "owner_id = ?"
        params: list = [owner_id]
        if status:
            where += " AND status = ?"
            params.append(status)

        with self._lock:
            try:
                total = self.conn.execute(
                    f"SELECT COUNT(*) FROM videos WHERE {where}", params
                ).fetchone()[0]
                rows = self.conn.execute(
                    f"SELECT * FROM videos WHERE {where} "
                    "ORDER BY created_at DESC LIMIT ? OFFSET ?",
                    params + [page_size, (page - 1) * page_size],
                ).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"Database read failed: {e}") from e
        return [VideoRecord.from_row(r) for r in rows], total

    # ── Transcription lifecycle ───────────────────────────────────────

    def claim_for_transcription(self, video_id: str,
                                lease_sec: int = PROCESSING_LEASE_SEC) -> Optional[str]:
        """
        Atomically move uploaded|error (or an expired processing lease) to
        processing. Returns the new processing token, or None if another
        attempt holds the record or the status does not allow a claim.
        """
        token = uuid.uuid4().hex
        now_dt = datetime.now(timezone.utc)
        now = now_dt.isoformat(timespec="microseconds")
        lease = (now_dt + timedelta(seconds=lease_sec)).isoformat(timespec="microseconds")
        placeholders = ', '.join('?' for _ in CLAIMABLE_STATUSES)

        claimed = self._write(
            f"""UPDATE videos
                SET status = ?, processing_token = ?, lease_expires_at = ?,
                    error_message = NULL,
                    transcription_attempts = transcription_attempts + 1,
                    updated_at = ?
                WHERE id = ?
                  AND (status IN ({placeholders})
                       OR (status = ? AND lease_expires_at < ?))""",
            (VideoStatus.PROCESSING, token, lease, now, video_id,
             *CLAIMABLE_STATUSES, VideoStatus.PROCESSING, now),
        )
        if claimed != 1:
            return None
        self._notify(video_id, VideoStatus.PROCESSING)
        return token

    def complete_transcription(self, video_id: str, token: str,
                               result: TranscriptionResult) -> bool:
        """processing -> transcribed, only for the holder of `token`."""
        segments = json.dumps([asdict(s) for s in result.segments])
        updated = self._write(
            """UPDATE videos
               SET status = ?, transcript_text = ?, transcript_segments = ?,
                   transcript_language = ?, analysis = NULL,
                   error_message = NULL, processing_token = NULL,
                   lease_expires_at = NULL, updated_at = ?
               WHERE id = ? AND status = ? AND processing_token = ?""",
            (VideoStatus.TRANSCRIBED, result.text, segments, result.language,
             self._now(), video_id, VideoStatus.PROCESSING, token),
        )
        if updated != 1:
            logger.warning("Dropped transcription result for %s: claim superseded", video_id)
            return False
        self._notify(video_id, VideoStatus.TRANSCRIBED)
        return True

    def fail_transcription(self, video_id: str, token: str, message: str) -> bool:
        """processing -> error, only for the holder of `token`."""
        updated = self._write(
            """UPDATE videos
               SET status = ?, error_message = ?, processing_token = NULL,
                   lease_expires_at = NULL, updated_at = ?
               WHERE id = ? AND status = ? AND processing_token = ?""",
            (VideoStatus.ERROR, message[:MAX_ERROR_MESSAGE_LEN], self._now(),
             video_id, VideoStatus.PROCESSING, token),
        )
        if updated != 1:
            logger.warning("Dropped error write for %s: claim superseded", video_id)
            return False
        self._notify(video_id, VideoStatus.ERROR)
        return True

    # ── Analysis lifecycle ────────────────────────────────────────────

    def complete_analysis(self, video_id: str, analysis: Analysis) -> bool:
        """transcribed -> analyzed; refused if the transcript is missing."""
        updated = self._write(
            """UPDATE videos
               SET status = ?, analysis = ?, updated_at = ?
               WHERE id = ? AND status = ? AND transcript_text IS NOT NULL""",
            (VideoStatus.ANALYZED, json.dumps(analysis.to_dict()), self._now(),
             video_id, VideoStatus.TRANSCRIBED),
        )
        if updated != 1:
            logger.warning("Analysis for %s not stored: record is no longer transcribed",
                           video_id)
            return False
        self._notify(video_id, VideoStatus.ANALYZED)
        return True
