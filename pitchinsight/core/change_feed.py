"""
In-process change feed for video records.

The record store publishes a small notification after every committed write.
Notifications only say *which* record changed; subscribers re-read the record
from the store rather than trusting the payload.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    video_id: str
    status: str


class FeedDisconnected(Exception):
    """Raised by subscribe() while the feed is down."""


class Subscription:
    """Handle returned by ChangeFeed.subscribe()."""

    def __init__(self, feed: "ChangeFeed", sub_id: int, video_id: Optional[str]):
        self._feed = feed
        self.id = sub_id
        self.video_id = video_id
        self.active = True

    def unsubscribe(self):
        if self.active:
            self._feed._remove(self.id)
            self.active = False


class ChangeFeed:
    """
    Thread-safe publish/subscribe channel.

    A subscriber registers a change callback and an optional disconnect
    callback; disconnect() drops every subscription and fires the latter.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subs: dict[int, tuple[Optional[str], Callable, Optional[Callable]]] = {}
        self._connected = True

    @property
    def connected(self) -> bool:
        return self._connected

    def subscribe(self, on_change: Callable[[ChangeEvent], None],
                  video_id: str | None = None,
                  on_disconnect: Callable[[], None] | None = None) -> Subscription:
        with self._lock:
            if not self._connected:
                raise FeedDisconnected("Change feed is not connected")
            sub_id = next(self._ids)
            self._subs[sub_id] = (video_id, on_change, on_disconnect)
        return Subscription(self, sub_id, video_id)

    def _remove(self, sub_id: int):
        with self._lock:
            self._subs.pop(sub_id, None)

    def publish(self, event: ChangeEvent):
        with self._lock:
            if not self._connected:
                return
            targets = [cb for vid, cb, _ in self._subs.values()
                       if vid is None or vid == event.video_id]
        for callback in targets:
            try:
                callback(event)
            except Exception as e:
                # A broken observer must not break the writer
                logger.error("Change subscriber failed for %s: %s",
                             event.video_id, e, exc_info=True)

    def disconnect(self):
        """Drop all subscribers (simulates a lost realtime connection)."""
        with self._lock:
            self._connected = False
            dropped = list(self._subs.values())
            self._subs.clear()
        for _, _, on_disconnect in dropped:
            if on_disconnect:
                try:
                    on_disconnect()
                except Exception as e:
                    logger.error("Disconnect handler failed: %s", e, exc_info=True)

    def reconnect(self):
        with self._lock:
            self._connected = True

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)
