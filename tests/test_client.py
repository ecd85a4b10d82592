#!/usr/bin/env python3
"""
Tests for the capture/upload client and the status sync client.
"""

import sys
import tempfile
import time
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent))

import unittest

from fakes import FakeAnalyzer, FakeFetch, FakeTranscriber, make_services
from pitchinsight.client.capture import (
    CaptureUploadClient, MediaDevice, RecordedMedia, precheck_media,
)
from pitchinsight.client.status_sync import StatusSyncClient, StatusView
from pitchinsight.core.change_feed import ChangeEvent
from pitchinsight.core.constants import MIB, VideoStatus
from pitchinsight.core.error_codes import (
    EmptyMediaError, MediaPermissionError, NotFoundError, PersistenceError,
    SizeLimitError, ValidationError,
)
from pitchinsight.core.models_sqlite import Session
from pitchinsight.core.task_queue import ThreadDispatcher

WEBM = b"\x1a\x45\xdf\xa3" + b"\0" * 2048


class FakeDevice(MediaDevice):

    def __init__(self, granted=True, media=None, refuse_with=None):
        self.granted = granted
        self.refuse_with = refuse_with
        self.media = media or RecordedMedia(data=WEBM, content_type="video/webm;codecs=vp9",
                                            duration_seconds=42.0)
        self.recorded = False

    def request_permission(self):
        if self.refuse_with is not None:
            raise self.refuse_with
        return self.granted

    def record(self):
        self.recorded = True
        return self.media


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class ClientTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.transcriber = FakeTranscriber()
        self.fetch = FakeFetch(payload=WEBM)
        self.services = make_services(self.tmpdir.name, transcriber=self.transcriber,
                                      analyzer=FakeAnalyzer(), fetch=self.fetch)
        self.db = self.services.db
        self.session = Session(owner_id="owner-1", access_token="token")
        self.capture = CaptureUploadClient(self.services)

    def tearDown(self):
        self.services.close()
        self.tmpdir.cleanup()

    def _stored_objects(self):
        root = Path(self.services.object_store.root)
        return [p for p in root.rglob("*") if p.is_file()] if root.exists() else []


class TestCapture(ClientTestCase):

    def test_permission_denied_creates_nothing(self):
        device = FakeDevice(granted=False)
        with self.assertRaises(PermissionError) as ctx:
            self.capture.capture(self.session, device)
        self.assertIsInstance(ctx.exception, MediaPermissionError)
        self.assertFalse(device.recorded)
        self.assertEqual(self.db.list_videos("owner-1")[1], 0)
        self.assertEqual(self._stored_objects(), [])

    def test_device_raising_permission_error(self):
        device = FakeDevice(refuse_with=PermissionError("NotAllowedError"))
        with self.assertRaises(MediaPermissionError):
            self.capture.capture(self.session, device)
        self.assertEqual(self.db.list_videos("owner-1")[1], 0)

    def test_capture_uploads_and_dispatches(self):
        record = self.capture.capture(self.session, FakeDevice(), title="Mon pitch")
        self.assertTrue(record.storage_path.startswith("owner-1/"))
        self.assertTrue(record.storage_path.endswith(".webm"))
        self.assertEqual(record.content_type, "video/webm")
        self.assertEqual(record.file_size_bytes, len(WEBM))
        self.assertEqual(record.duration_seconds, 42.0)
        self.assertEqual(record.title, "Mon pitch")
        self.assertTrue(self.services.object_store.exists(record.storage_path))
        # Inline dispatcher: the pipeline has already run
        self.assertEqual(self.db.get_video(record.id).status, VideoStatus.ANALYZED)

    def test_dispatch_does_not_block(self):
        self.services.dispatcher = mock.MagicMock()
        record = self.capture.upload(self.session, FakeDevice().media)
        self.services.dispatcher.submit.assert_called_once()
        name = self.services.dispatcher.submit.call_args.args[0]
        self.assertEqual(name, f"transcribe-{record.id}")
        self.assertEqual(self.db.get_video(record.id).status, VideoStatus.UPLOADED)

    def test_precheck_format(self):
        media = RecordedMedia(data=b"%PDF", content_type="application/pdf", filename="deck.pdf")
        with self.assertRaises(ValidationError):
            self.capture.upload(self.session, media)
        self.assertEqual(self._stored_objects(), [])

    def test_precheck_size(self):
        media = RecordedMedia(data=b"\0" * (26 * MIB), content_type="video/mp4")
        with self.assertRaises(SizeLimitError) as ctx:
            self.capture.upload(self.session, media)
        self.assertIn("25 MiB", ctx.exception.message)
        self.assertEqual(self.db.list_videos("owner-1")[1], 0)

    def test_precheck_empty(self):
        with self.assertRaises(EmptyMediaError):
            precheck_media(RecordedMedia(data=b"", content_type="video/webm"))

    def test_precheck_extension_from_mime(self):
        media = RecordedMedia(data=b"x", content_type="audio/mpeg")
        self.assertIn(precheck_media(media), ("mp3", "mpga"))

    def test_orphaned_upload_logged(self):
        with mock.patch.object(self.db, 'create_video',
                               side_effect=PersistenceError("database is locked")):
            with self.assertLogs("pitchinsight.client.capture", level="ERROR") as logs:
                with self.assertRaises(PersistenceError):
                    self.capture.upload(self.session, FakeDevice().media)
        self.assertTrue(any("Orphaned upload" in line for line in logs.output))
        self.assertEqual(len(self._stored_objects()), 1)
        self.assertEqual(self.transcriber.calls, [])

    def test_upload_file(self):
        path = Path(self.tmpdir.name) / "pitch-final.mp4"
        path.write_bytes(b"\0" * 1024)
        record = self.capture.upload_file(self.session, path)
        self.assertEqual(record.title, "pitch-final")
        self.assertEqual(record.content_type, "video/mp4")
        self.assertTrue(record.storage_path.endswith(".mp4"))

    def test_upload_missing_file(self):
        with self.assertRaises(NotFoundError):
            self.capture.upload_file(self.session, Path(self.tmpdir.name) / "nope.mp4")

    def test_session_required(self):
        with self.assertRaises(ValidationError):
            self.capture.upload(Session(owner_id=""), FakeDevice().media)

    def test_list_and_playback(self):
        record = self.capture.upload(self.session, FakeDevice().media)
        self.capture.upload(Session(owner_id="owner-2"), FakeDevice().media)
        items, total = self.capture.list_videos(self.session)
        self.assertEqual(total, 1)
        self.assertEqual(items[0].id, record.id)

        url = self.capture.playback_url(self.session, record.id)
        self.assertIn("signature=", url)
        with self.assertRaises(NotFoundError):
            self.capture.playback_url(Session(owner_id="owner-2"), record.id)


class TestStatusSync(ClientTestCase):

    def setUp(self):
        super().setUp()
        self.sync = StatusSyncClient(self.services, poll_interval=0.05,
                                     reconnect_base_delay=0.05, reconnect_max_delay=0.2)

    def _create(self):
        return self.db.create_video("owner-1", public_url="https://cdn.example.com/a.webm")

    def _fail(self, video_id, message="Video download returned HTTP 404"):
        token = self.db.claim_for_transcription(video_id)
        self.db.fail_transcription(video_id, token, message)

    def test_view_for_error(self):
        rec = self._create()
        self._fail(rec.id)
        view = self.sync.view(self.session, rec.id)
        self.assertEqual(view, StatusView(
            video_id=rec.id, status=VideoStatus.ERROR, label="Processing failed",
            in_progress=False, can_retry=True,
            error_message="Video download returned HTTP 404",
            has_transcript=False, has_analysis=False))

    def test_view_in_progress(self):
        rec = self._create()
        view = self.sync.view(self.session, rec.id)
        self.assertTrue(view.in_progress)
        self.assertFalse(view.can_retry)
        self.assertIsNone(view.error_message)

    def test_owner_scoped(self):
        rec = self._create()
        with self.assertRaises(NotFoundError):
            self.sync.get(Session(owner_id="someone-else"), rec.id)

    def test_push_updates(self):
        rec = self._create()
        seen = []
        watch = self.sync.subscribe(self.session, rec.id, lambda r: seen.append(r.status))
        self.assertEqual(watch.mode, "push")
        self.capture.pipeline.transcribe(rec.id)
        watch.stop()
        self.assertEqual(seen[0], VideoStatus.UPLOADED)
        self.assertIn(VideoStatus.PROCESSING, seen)
        self.assertEqual(seen[-1], VideoStatus.ANALYZED)

    def test_push_payload_not_trusted(self):
        rec = self._create()
        seen = []
        watch = self.sync.subscribe(self.session, rec.id, seen.append)
        self.services.change_feed.publish(ChangeEvent(rec.id, VideoStatus.ANALYZED))
        watch.stop()
        self.assertEqual([r.status for r in seen], [VideoStatus.UPLOADED])
        self.assertEqual(watch.last_record.status, VideoStatus.UPLOADED)

    def test_disconnect_falls_back_to_polling_then_reconnects(self):
        rec = self._create()
        seen = []
        watch = self.sync.subscribe(self.session, rec.id, lambda r: seen.append(r.status))
        try:
            self.services.change_feed.disconnect()
            self.assertEqual(watch.mode, "poll")

            # Written while the feed is down: only polling can observe it
            self.db.claim_for_transcription(rec.id)
            self.assertTrue(_wait_until(lambda: VideoStatus.PROCESSING in seen))

            self.services.change_feed.reconnect()
            self.assertTrue(_wait_until(lambda: watch.mode == "push"))
        finally:
            watch.stop()

    def test_poll_only(self):
        rec = self._create()
        seen = []
        watch = self.sync.poll(self.session, rec.id, lambda r: seen.append(r.status))
        try:
            self.assertEqual(watch.mode, "poll")
            self._fail(rec.id)
            self.assertTrue(_wait_until(lambda: VideoStatus.ERROR in seen))
        finally:
            watch.stop()

    def test_stop_on_terminal(self):
        rec = self._create()
        watch = self.sync.subscribe(self.session, rec.id, lambda r: None,
                                    stop_on_terminal=True)
        self._fail(rec.id)
        self.assertTrue(watch.stopped)
        self.assertEqual(self.services.change_feed.subscriber_count(), 0)

    def test_wait_for_terminal(self):
        self.services.dispatcher = ThreadDispatcher()
        rec = self._create()
        self.capture.pipeline.start_transcription(rec.id)
        record = self.sync.wait_for_terminal(self.session, rec.id, timeout=5)
        self.assertIn(record.status, (VideoStatus.TRANSCRIBED, VideoStatus.ANALYZED))
        self.services.dispatcher.wait_idle(5)

    def test_wait_for_terminal_timeout(self):
        rec = self._create()
        with self.assertRaises(TimeoutError):
            self.sync.wait_for_terminal(self.session, rec.id, timeout=0.2)

    def test_retry(self):
        rec = self._create()
        self._fail(rec.id)
        self.sync.retry(self.session, rec.id)
        fetched = self.sync.get(self.session, rec.id)
        self.assertEqual(fetched.status, VideoStatus.ANALYZED)
        self.assertIsNone(fetched.error_message)

        calls = len(self.transcriber.calls)
        self.assertEqual(self.sync.retry(self.session, rec.id).status, VideoStatus.ANALYZED)
        self.assertEqual(len(self.transcriber.calls), calls)

    def test_retry_other_owner(self):
        rec = self._create()
        self._fail(rec.id)
        with self.assertRaises(NotFoundError):
            self.sync.retry(Session(owner_id="owner-2"), rec.id)
        self.assertEqual(self.db.get_video(rec.id).status, VideoStatus.ERROR)


if __name__ == "__main__":
    unittest.main()
