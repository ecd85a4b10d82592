"""
Status Sync Client.

Keeps a consumer's view of a video in line with the record store. Change
notifications (push) and polling (pull) are only triggers: every observed
change is followed by a full re-read of the record.

When the change feed drops, a watch falls back to polling and keeps trying to
re-subscribe with exponential backoff.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from pitchinsight.core.change_feed import ChangeEvent, FeedDisconnected, Subscription
from pitchinsight.core.constants import (
    STATUS_LABELS, TERMINAL_STATUSES, VideoStatus,
    RECONNECT_BASE_DELAY, RECONNECT_MAX_DELAY,
)
from pitchinsight.core.error_codes import NotFoundError, ValidationError
from pitchinsight.core.models_sqlite import Session, VideoRecord
from pitchinsight.core.pipeline import Pipeline
from pitchinsight.core.services import Services

logger = logging.getLogger(__name__)


@dataclass
class StatusView:
    """What a consumer shows for one video."""
    video_id: str
    status: str
    label: str
    in_progress: bool
    can_retry: bool
    error_message: Optional[str] = None
    has_transcript: bool = False
    has_analysis: bool = False

    @classmethod
    def from_record(cls, record: VideoRecord) -> "StatusView":
        return cls(
            video_id=record.id,
            status=record.status,
            label=STATUS_LABELS.get(record.status, record.status),
            in_progress=record.status in (VideoStatus.UPLOADED, VideoStatus.PROCESSING),
            can_retry=record.status == VideoStatus.ERROR,
            error_message=record.error_message if record.status == VideoStatus.ERROR else None,
            has_transcript=record.transcript_text is not None,
            has_analysis=record.analysis is not None,
        )


class Watch:
    """
    Observer handle for one video. Calls `callback(record)` whenever a
    re-read shows the record changed.
    """

    def __init__(self, client: "StatusSyncClient", video_id: str,
                 callback: Callable[[VideoRecord], None], push: bool = True,
                 stop_on_terminal: bool = False):
        self.client = client
        self.video_id = video_id
        self.callback = callback
        self.push = push
        self.stop_on_terminal = stop_on_terminal
        self.last_record: Optional[VideoRecord] = None

        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._subscription: Optional[Subscription] = None
        self._poller: Optional[threading.Thread] = None

    @property
    def mode(self) -> str:
        if self._subscription is not None and self._subscription.active:
            return "push"
        return "poll"

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def start(self) -> "Watch":
        if self.push and self._try_subscribe():
            logger.debug("Watching video %s via change feed", self.video_id)
        else:
            self._start_polling()
        # Subscribed first so a change between read and subscribe is not lost
        self.refresh()
        return self

    def stop(self):
        self._stop.set()
        sub = self._subscription
        if sub is not None:
            sub.unsubscribe()

    unsubscribe = stop

    def refresh(self) -> Optional[VideoRecord]:
        """Re-read the record; notify the callback if it changed."""
        if self._stop.is_set():
            return self.last_record
        with self._lock:
            record = self.client.fetch(self.video_id)
            if record is None:
                return None
            previous = self.last_record
            changed = (previous is None
                       or (previous.status, previous.updated_at)
                       != (record.status, record.updated_at))
            self.last_record = record
            if changed:
                try:
                    self.callback(record)
                except Exception as e:
                    logger.error("Status callback failed for %s: %s", self.video_id, e,
                                 exc_info=True)
        if self.stop_on_terminal and record.status in TERMINAL_STATUSES:
            self.stop()
        return record

    # ── Push ──────────────────────────────────────────────────────────

    def _try_subscribe(self) -> bool:
        try:
            self._subscription = self.client.services.change_feed.subscribe(
                self._on_change, video_id=self.video_id,
                on_disconnect=self._on_disconnect)
            return True
        except FeedDisconnected:
            logger.warning("Change feed unavailable for %s; polling", self.video_id)
            return False

    def _on_change(self, event: ChangeEvent):
        # The event payload is not trusted; re-read the record
        self.refresh()

    def _on_disconnect(self):
        if self._stop.is_set():
            return
        logger.warning("Change feed dropped for video %s; falling back to polling",
                       self.video_id)
        self._subscription = None
        self._start_polling()

    # ── Pull ──────────────────────────────────────────────────────────

    def _start_polling(self):
        if self._poller is not None and self._poller.is_alive():
            return
        self._poller = threading.Thread(target=self._poll_loop,
                                        name=f"poll-{self.video_id}", daemon=True)
        self._poller.start()

    def _poll_loop(self):
        interval = self.client.poll_interval
        delay = self.client.reconnect_base_delay
        next_reconnect = time.monotonic() + delay

        while not self._stop.wait(interval):
            try:
                self.refresh()
            except Exception as e:
                logger.warning("Polling video %s failed: %s", self.video_id, e)

            if not self.push or time.monotonic() < next_reconnect:
                continue
            if self._try_subscribe():
                logger.info("Change feed reconnected for video %s", self.video_id)
                self.refresh()
                return
            delay = min(self.client.reconnect_max_delay, delay * 2)
            next_reconnect = time.monotonic() + delay


class StatusSyncClient:

    def __init__(self, services: Services, pipeline: Pipeline | None = None,
                 poll_interval: float | None = None,
                 reconnect_base_delay: float = RECONNECT_BASE_DELAY,
                 reconnect_max_delay: float = RECONNECT_MAX_DELAY):
        self.services = services
        self.pipeline = pipeline or Pipeline(services)
        self.poll_interval = poll_interval or services.config.get('poll_interval_sec')
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay

    def fetch(self, video_id: str) -> VideoRecord | None:
        return self.services.db.get_video(video_id)

    def get(self, session: Session, video_id: str) -> VideoRecord:
        """Fresh record for a video the session owns."""
        if session is None or not session.owner_id:
            raise ValidationError("A signed-in session is required")
        record = self.fetch(video_id)
        if record is None or record.owner_id != session.owner_id:
            raise NotFoundError(f"Video {video_id} not found")
        return record

    def view(self, session: Session, video_id: str) -> StatusView:
        return StatusView.from_record(self.get(session, video_id))

    # ── Observers ─────────────────────────────────────────────────────

    def subscribe(self, session: Session, video_id: str,
                  callback: Callable[[VideoRecord], None],
                  stop_on_terminal: bool = False) -> Watch:
        """Push-driven watch with polling fallback."""
        self.get(session, video_id)
        return Watch(self, video_id, callback, push=True,
                     stop_on_terminal=stop_on_terminal).start()

    def poll(self, session: Session, video_id: str,
             callback: Callable[[VideoRecord], None],
             stop_on_terminal: bool = False) -> Watch:
        """Pull-only watch."""
        self.get(session, video_id)
        return Watch(self, video_id, callback, push=False,
                     stop_on_terminal=stop_on_terminal).start()

    def wait_for_terminal(self, session: Session, video_id: str,
                          timeout: float | None = None,
                          statuses: tuple = TERMINAL_STATUSES) -> VideoRecord:
        """Block until the record reaches one of `statuses`. Raises TimeoutError."""
        reached = threading.Event()

        def on_record(record: VideoRecord):
            if record.status in statuses:
                reached.set()

        watch = self.subscribe(session, video_id, on_record)
        try:
            if not reached.wait(timeout):
                raise TimeoutError(f"Video {video_id} did not finish within {timeout}s")
        finally:
            watch.stop()
        return self.get(session, video_id)

    # ── Retry ─────────────────────────────────────────────────────────

    def retry(self, session: Session, video_id: str, wait: bool = False) -> VideoRecord:
        """
        Re-run transcription for a failed video. The only way out of error;
        for any other status this is a no-op.
        """
        record = self.get(session, video_id)
        if record.status != VideoStatus.ERROR:
            logger.info("Nothing to retry for video %s (status=%s)", video_id, record.status)
            return record
        return self.pipeline.retry(video_id, wait=wait)
