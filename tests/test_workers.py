#!/usr/bin/env python3
"""
Tests for the transcription/analysis workers and the pipeline that chains
them: end-to-end scenarios, validation ordering, claim exclusivity, retry,
persistence retries and status monotonicity.
"""

import sys
import random
import tempfile
import threading
import time
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent))

import unittest

from fakes import (
    FakeAnalyzer, FakeFetch, FakeTranscriber, PUBLIC_URL, make_services,
)
from pitchinsight.core.constants import MIB, VideoStatus
from pitchinsight.core.db_sqlite import is_allowed_transition
from pitchinsight.core.error_codes import (
    AccessError, AnalysisError, ClaimError, DownloadError, EmptyMediaError,
    NotFoundError, PersistenceError, PipelineError, PreconditionError,
    SizeLimitError, TranscriptionError,
)
from pitchinsight.core.pipeline import Pipeline
from pitchinsight.core.task_queue import ThreadDispatcher
from pitchinsight.core.transcribe_whisper import WhisperTranscriber


class PipelineTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.transcriber = FakeTranscriber()
        self.analyzer = FakeAnalyzer()
        self.fetch = FakeFetch()
        self.services = make_services(self.tmpdir.name, transcriber=self.transcriber,
                                      analyzer=self.analyzer, fetch=self.fetch)
        self.db = self.services.db
        self.pipeline = Pipeline(self.services)

    def tearDown(self):
        self.services.close()
        self.tmpdir.cleanup()

    def _create(self, **kwargs):
        kwargs.setdefault('public_url', PUBLIC_URL)
        return self.db.create_video("owner-1", **kwargs)


class TestScenarios(PipelineTestCase):

    def test_scenario_a_empty_binary(self):
        self.fetch.payload = b""
        rec = self._create()
        with self.assertRaises(EmptyMediaError):
            self.pipeline.transcribe(rec.id)
        fetched = self.db.get_video(rec.id)
        self.assertEqual(fetched.status, VideoStatus.ERROR)
        self.assertIn("empty", fetched.error_message)
        self.assertEqual(self.transcriber.calls, [])

    def test_scenario_b_oversized_binary(self):
        self.fetch.payload = b"\0" * (30 * MIB)
        rec = self._create()
        with self.assertRaises(SizeLimitError):
            self.pipeline.transcribe(rec.id)
        fetched = self.db.get_video(rec.id)
        self.assertEqual(fetched.status, VideoStatus.ERROR)
        self.assertIn("25 MiB", fetched.error_message)
        self.assertEqual(self.transcriber.calls, [])
        self.assertEqual(self.analyzer.calls, [])

    def test_scenario_c_happy_path(self):
        self.fetch.payload = b"\0" * (2 * MIB)
        rec = self._create()
        outcome = self.pipeline.transcribe(rec.id)
        self.assertEqual(outcome.result.text, "bonjour")

        fetched = self.db.get_video(rec.id)
        self.assertEqual(fetched.status, VideoStatus.ANALYZED)
        self.assertEqual(fetched.transcript_text, "bonjour")
        self.assertEqual(len(fetched.transcript_segments), 1)
        self.assertIsNone(fetched.error_message)
        self.assertEqual(fetched.analysis.summary, "Un pitch court et direct.")
        self.assertEqual(fetched.analysis.evaluation.clarity, 8)
        self.assertEqual(fetched.analysis.key_points, ["Le problème", "La solution"])
        self.assertEqual(self.transcriber.calls[0]["language"], "fr")
        self.assertEqual(self.analyzer.calls, ["bonjour"])

    def test_scenario_d_malformed_analysis(self):
        self.analyzer.raw = "Voici mon analyse : très bien !"
        rec = self._create()
        self.pipeline.transcribe(rec.id)
        fetched = self.db.get_video(rec.id)
        self.assertEqual(fetched.status, VideoStatus.TRANSCRIBED)
        self.assertEqual(fetched.transcript_text, "bonjour")
        self.assertIsNone(fetched.analysis)
        self.assertIsNone(fetched.error_message)

    def test_analysis_provider_failure_keeps_transcript(self):
        self.analyzer.error = AnalysisError("Analysis service returned 503", status_code=503)
        rec = self._create()
        self.pipeline.transcribe(rec.id, analyze=False)
        outcome = self.pipeline.analyze(rec.id)
        self.assertFalse(outcome.analyzed)
        self.assertIn("503", outcome.error)
        fetched = self.db.get_video(rec.id)
        self.assertEqual(fetched.status, VideoStatus.TRANSCRIBED)
        self.assertIsNone(fetched.error_message)

    def test_threaded_dispatch(self):
        self.services.dispatcher = ThreadDispatcher()
        rec = self._create()
        self.pipeline.start_transcription(rec.id)
        self.assertTrue(self.services.dispatcher.wait_idle(10))
        self.assertEqual(self.db.get_video(rec.id).status, VideoStatus.ANALYZED)


class TestTranscriptionFailures(PipelineTestCase):

    def test_missing_record(self):
        with self.assertRaises(NotFoundError):
            self.pipeline.transcribe("does-not-exist")
        self.assertEqual(self.fetch.urls, [])

    def test_unresolvable_locator_is_error(self):
        rec = self._create(public_url=None, storage_path="owner-1/missing.webm")
        with self.assertRaises(AccessError):
            self.pipeline.transcribe(rec.id)
        fetched = self.db.get_video(rec.id)
        self.assertEqual(fetched.status, VideoStatus.ERROR)
        self.assertEqual(self.fetch.urls, [])
        self.assertEqual(self.transcriber.calls, [])

    def test_storage_path_is_signed(self):
        path = self.services.object_store.upload("owner-1/1-a.mp4", b"x" * 10, "video/mp4")
        rec = self._create(public_url=None, storage_path=path)
        self.pipeline.transcribe(rec.id)
        self.assertIn("signature=", self.fetch.urls[0])
        self.assertEqual(self.transcriber.calls[0]["filename"], "1-a.mp4")
        self.assertEqual(self.transcriber.calls[0]["content_type"], "video/mp4")

    def test_download_failure(self):
        self.fetch.error = DownloadError("Video download returned HTTP 404", status_code=404)
        rec = self._create()
        with self.assertRaises(DownloadError):
            self.pipeline.transcribe(rec.id)
        fetched = self.db.get_video(rec.id)
        self.assertEqual(fetched.status, VideoStatus.ERROR)
        self.assertIn("404", fetched.error_message)
        self.assertIsNone(fetched.transcript_text)

    def test_provider_failure(self):
        self.transcriber.error = TranscriptionError(
            "Transcription service returned 400: Invalid file format", status_code=400)
        rec = self._create()
        with self.assertRaises(TranscriptionError):
            self.pipeline.transcribe(rec.id)
        fetched = self.db.get_video(rec.id)
        self.assertEqual(fetched.status, VideoStatus.ERROR)
        self.assertIn("Invalid file format", fetched.error_message)
        self.assertEqual(self.analyzer.calls, [])

    def test_malformed_provider_segments(self):
        resp = mock.MagicMock(status_code=200)
        resp.json.return_value = {"text": "bonjour",
                                  "segments": [{"start": "n/a", "end": 1, "text": "bonjour"}]}
        self.services.transcriber = WhisperTranscriber("sk-x")
        rec = self._create()
        with mock.patch("pitchinsight.core.transcribe_whisper.requests.post", return_value=resp):
            with self.assertRaises(TranscriptionError):
                self.pipeline.transcribe(rec.id)
        fetched = self.db.get_video(rec.id)
        self.assertEqual(fetched.status, VideoStatus.ERROR)
        self.assertIn("malformed segments", fetched.error_message)
        self.assertIsNone(fetched.transcript_text)

    def test_unexpected_failure_still_terminal(self):
        self.transcriber.error = RuntimeError("adapter bug")
        rec = self._create()
        with self.assertRaises(RuntimeError):
            self.pipeline.transcribe(rec.id)
        fetched = self.db.get_video(rec.id)
        self.assertEqual(fetched.status, VideoStatus.ERROR)
        self.assertIn("RuntimeError", fetched.error_message)

    def test_claim_refused_while_processing(self):
        rec = self._create()
        self.assertIsNotNone(self.db.claim_for_transcription(rec.id))
        with self.assertRaises(ClaimError):
            self.pipeline.transcribe(rec.id)
        self.assertEqual(self.transcriber.calls, [])
        self.assertEqual(self.db.get_video(rec.id).status, VideoStatus.PROCESSING)

    def test_claim_refused_when_done(self):
        rec = self._create()
        self.pipeline.transcribe(rec.id)
        with self.assertRaises(ClaimError):
            self.pipeline.transcribe(rec.id)
        self.assertEqual(len(self.transcriber.calls), 1)


class TestConcurrency(PipelineTestCase):

    def test_concurrent_claims_single_provider_call(self):
        gate = threading.Event()
        self.transcriber.gate = gate
        rec = self._create()
        barrier = threading.Barrier(2)
        refused, done = [], []

        def attempt():
            barrier.wait()
            try:
                self.pipeline.transcribe(rec.id, analyze=False)
                done.append(True)
            except ClaimError:
                refused.append(True)

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        deadline = time.monotonic() + 5
        while not refused and time.monotonic() < deadline:
            time.sleep(0.01)
        gate.set()
        for t in threads:
            t.join(5)

        self.assertEqual(len(refused), 1)
        self.assertEqual(len(done), 1)
        self.assertEqual(len(self.transcriber.calls), 1)
        self.assertEqual(self.db.get_video(rec.id).status, VideoStatus.TRANSCRIBED)

    def test_superseded_attempt_write_dropped(self):
        rec = self._create()
        db = self.db
        takeover = {}
        original = self.transcriber.transcribe

        def transcribe_then_lose_lease(*args, **kwargs):
            db.conn.execute("UPDATE videos SET lease_expires_at = ? WHERE id = ?",
                            ("2000-01-01T00:00:00.000000+00:00", rec.id))
            db.conn.commit()
            takeover['token'] = db.claim_for_transcription(rec.id)
            return original(*args, **kwargs)

        self.transcriber.transcribe = transcribe_then_lose_lease
        with self.assertRaises(ClaimError):
            self.pipeline.transcribe(rec.id)

        fetched = self.db.get_video(rec.id)
        self.assertIsNotNone(takeover['token'])
        self.assertEqual(fetched.status, VideoStatus.PROCESSING)
        self.assertEqual(fetched.processing_token, takeover['token'])
        self.assertIsNone(fetched.transcript_text)


class TestRetry(PipelineTestCase):

    def test_retry_recovers_and_is_idempotent(self):
        self.fetch.error = DownloadError("Video download returned HTTP 503", status_code=503)
        rec = self._create()
        with self.assertRaises(DownloadError):
            self.pipeline.transcribe(rec.id)
        self.assertEqual(self.db.get_video(rec.id).status, VideoStatus.ERROR)

        self.fetch.error = None
        self.pipeline.retry(rec.id, wait=True)
        fetched = self.db.get_video(rec.id)
        self.assertEqual(fetched.status, VideoStatus.ANALYZED)
        self.assertIsNone(fetched.error_message)
        self.assertEqual(fetched.transcription_attempts, 2)

        again = self.pipeline.retry(rec.id, wait=True)
        self.assertEqual(again.status, VideoStatus.ANALYZED)
        self.assertEqual(len(self.transcriber.calls), 1)
        self.assertEqual(self.db.get_video(rec.id).transcription_attempts, 2)

    def test_retry_missing(self):
        with self.assertRaises(NotFoundError):
            self.pipeline.retry("nope")

    def test_retry_ignores_uploaded(self):
        rec = self._create()
        result = self.pipeline.retry(rec.id)
        self.assertEqual(result.status, VideoStatus.UPLOADED)
        self.assertEqual(self.transcriber.calls, [])


class TestAnalysisWorker(PipelineTestCase):

    def test_precondition_without_transcript(self):
        rec = self._create()
        with self.assertRaises(PreconditionError):
            self.pipeline.analyze(rec.id)
        self.assertEqual(self.analyzer.calls, [])
        self.assertEqual(self.db.get_video(rec.id).status, VideoStatus.UPLOADED)

    def test_already_analyzed_is_noop(self):
        rec = self._create()
        self.pipeline.transcribe(rec.id)
        outcome = self.pipeline.analyze(rec.id)
        self.assertTrue(outcome.analyzed)
        self.assertEqual(len(self.analyzer.calls), 1)

    def test_long_transcript_truncated(self):
        self.transcriber.text = "mot " * 5000
        rec = self._create()
        self.pipeline.transcribe(rec.id)
        self.assertEqual(len(self.analyzer.calls[0]), 12000)

    def test_callback(self):
        seen = []
        self.pipeline.on_analysis_finished = seen.append
        rec = self._create()
        self.pipeline.transcribe(rec.id)
        self.assertEqual(len(seen), 1)
        self.assertTrue(seen[0].analyzed)


class TestPersistenceRetry(PipelineTestCase):

    def test_terminal_write_retried(self):
        real = self.db.complete_transcription
        attempts = []

        def flaky(*args):
            attempts.append(1)
            if len(attempts) == 1:
                raise PersistenceError("database is locked")
            return real(*args)

        rec = self._create()
        with mock.patch.object(self.db, 'complete_transcription', side_effect=flaky):
            self.pipeline.transcribe(rec.id, analyze=False)
        self.assertEqual(len(attempts), 2)
        self.assertEqual(self.db.get_video(rec.id).status, VideoStatus.TRANSCRIBED)

    def test_error_write_retried(self):
        real = self.db.fail_transcription
        attempts = []

        def flaky(*args):
            attempts.append(1)
            if len(attempts) < 3:
                raise PersistenceError("database is locked")
            return real(*args)

        self.fetch.payload = b""
        rec = self._create()
        with mock.patch.object(self.db, 'fail_transcription', side_effect=flaky):
            with self.assertRaises(EmptyMediaError):
                self.pipeline.transcribe(rec.id)
        self.assertEqual(len(attempts), 3)
        self.assertEqual(self.db.get_video(rec.id).status, VideoStatus.ERROR)


class TestStatusMonotonicity(PipelineTestCase):
    """Random invocation orders never produce an edge outside the table."""

    def test_random_invocations(self):
        rng = random.Random(1234)
        history: dict[str, list[str]] = {}

        def record(event):
            history.setdefault(event.video_id, []).append(event.status)

        self.services.change_feed.subscribe(record)
        ids = [self._create().id for _ in range(4)]

        for _ in range(150):
            video_id = rng.choice(ids)
            self.fetch.error = rng.choice([None, None, DownloadError("flaky network")])
            self.fetch.payload = rng.choice([b"ok" * 10, b"", b"ok" * 10])
            self.analyzer.raw = rng.choice(['{"oops"', None]) or FakeAnalyzer().raw
            op = rng.choice(["transcribe", "analyze", "retry"])
            try:
                if op == "transcribe":
                    self.pipeline.transcribe(video_id)
                elif op == "analyze":
                    self.pipeline.analyze(video_id)
                else:
                    self.pipeline.retry(video_id, wait=True)
            except PipelineError:
                pass

        self.assertEqual(set(history), set(ids))
        for video_id, statuses in history.items():
            self.assertEqual(statuses[0], VideoStatus.UPLOADED)
            for old, new in zip(statuses, statuses[1:]):
                self.assertTrue(is_allowed_transition(old, new),
                                f"{video_id}: {old} -> {new}")


if __name__ == "__main__":
    unittest.main()
