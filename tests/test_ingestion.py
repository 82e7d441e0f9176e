#!/usr/bin/env python3
"""
Tests for the ingestion orchestrator.
External tools and services are replaced by in-process fakes.
"""

import sys
import tempfile
import threading
from pathlib import Path
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from ytscribe.core.constants import VideoStage, VideoStatus, ErrorCode
from ytscribe.core.db_sqlite import Database
from ytscribe.core.error_codes import (
    AcquisitionError, DuplicateVideoError, IngestError, TranscriptionError,
)
from ytscribe.core.ingestion import IngestionOrchestrator
from ytscribe.core.models_sqlite import TranscriptionResult
from ytscribe.core.transcribe_openai import TranscriptionClient

from tests.fakes import FakeDownloader, FakeTranscriber, fake_metadata

URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
SHORT_URL = "https://youtu.be/dQw4w9WgXcQ"


class TestIngestionOrchestrator(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.scratch = Path(self.tmpdir.name) / "scratch"
        self.db = Database(":memory:")
        self.orchestrators = []

    def tearDown(self):
        for orch in self.orchestrators:
            orch.shutdown(wait=True)
        self.db.close()
        self.tmpdir.cleanup()

    def make(self, transcriber=None, downloader=None, metadata_fetcher=fake_metadata,
             conditioner=None, **config_overrides):
        config = {
            'scratch_dir': str(self.scratch),
            'download_backoff_sec': 0,
            'download_retries': 2,
            'max_concurrent_jobs': 2,
            'encode_workers': 1,
        }
        config.update(config_overrides)
        extra = {'conditioner': conditioner} if conditioner else {}
        orch = IngestionOrchestrator(
            self.db, config,
            transcriber=transcriber or FakeTranscriber(),
            downloader=downloader or FakeDownloader(),
            metadata_fetcher=metadata_fetcher,
            **extra,
        )
        self.orchestrators.append(orch)
        return orch

    def submit_and_wait(self, orch, url=URL, owner="alice"):
        video = orch.submit(url, owner)
        orch.wait(video.id, timeout=10)
        return self.db.get_video(video.id)

    # ── Happy path ───────────────────────────────────────────────────

    def test_submit_returns_pending_and_completes(self):
        orch = self.make()
        video = orch.submit(URL, "alice")
        self.assertEqual(video.status, VideoStatus.PENDING)
        orch.wait(video.id, timeout=10)

        done = self.db.get_video(video.id)
        self.assertEqual(done.status, VideoStatus.COMPLETED)
        self.assertEqual(done.title, "Demo video")
        self.assertEqual(done.duration_seconds, 212.0)
        self.assertEqual(done.progress_pct, 100)
        self.assertEqual(done.stage, VideoStage.DONE)

        segments = self.db.get_segments(video.id)
        self.assertEqual([s.sequence_index for s in segments], [0, 1])
        self.assertTrue(all(s.end_seconds > s.start_seconds for s in segments))
        starts = [s.start_seconds for s in segments]
        self.assertEqual(starts, sorted(starts))
        self.assertEqual(self.db.get_transcript(video.id).content, "hello world")

    def test_state_sequence_never_skips_processing(self):
        orch = self.make()
        seen = []
        orch.on_video_updated = lambda v: seen.append(v.status)
        self.submit_and_wait(orch)
        self.assertEqual(seen[0], VideoStatus.PROCESSING)
        self.assertEqual(seen[-1], VideoStatus.COMPLETED)
        self.assertNotIn(VideoStatus.PENDING, seen)

    def test_small_audio_sent_unmodified(self):
        transcriber = FakeTranscriber()
        orch = self.make(transcriber=transcriber)
        self.submit_and_wait(orch)
        self.assertEqual(transcriber.paths[0].name, "audio.m4a")

    def test_scratch_released_after_run(self):
        orch = self.make()
        self.submit_and_wait(orch)
        self.assertEqual(list(self.scratch.iterdir()), [])

    def test_invalid_segments_reindexed(self):
        result = TranscriptionResult(
            text="a b",
            segments=[{"start": 5.0, "end": 6.0, "text": "b"},
                      {"start": 3.0, "end": 3.0, "text": "dropped"},
                      {"start": 0.0, "end": 1.0, "text": "a"}],
            duration_seconds=6.0,
        )
        orch = self.make(transcriber=FakeTranscriber(result=result))
        video = self.submit_and_wait(orch)
        segments = self.db.get_segments(video.id)
        self.assertEqual([(s.sequence_index, s.text) for s in segments], [(0, "a"), (1, "b")])

    def test_non_finite_segment_dropped_not_fatal(self):
        result = TranscriptionResult(
            text="a",
            segments=[{"start": 0.0, "end": float("nan"), "text": "bad"},
                      {"start": 0.0, "end": 1.0, "text": "a"}],
            duration_seconds=1.0,
        )
        orch = self.make(transcriber=FakeTranscriber(result=result))
        video = self.submit_and_wait(orch)
        self.assertEqual(video.status, VideoStatus.COMPLETED)
        self.assertEqual([s.text for s in self.db.get_segments(video.id)], ["a"])

    # ── Submission ───────────────────────────────────────────────────

    def test_duplicate_submission_references_first(self):
        orch = self.make()
        first = orch.submit(URL, "alice")
        with self.assertRaises(DuplicateVideoError) as ctx:
            orch.submit(SHORT_URL, "alice")
        self.assertEqual(ctx.exception.existing_id, first.id)
        self.assertEqual(self.db.count_videos("alice"), 1)

    def test_invalid_url_creates_nothing(self):
        downloader = FakeDownloader()
        orch = self.make(downloader=downloader)
        with self.assertRaises(IngestError) as ctx:
            orch.submit("https://not-a-video-url.example", "alice")
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_URL)
        self.assertEqual(self.db.count_videos("alice"), 0)
        self.assertEqual(downloader.calls, 0)

    def test_failed_video_still_blocks_resubmission(self):
        downloader = FakeDownloader(errors=[
            AcquisitionError(ErrorCode.VIDEO_UNAVAILABLE, "gone", retryable=False)])
        orch = self.make(downloader=downloader)
        first = self.submit_and_wait(orch)
        self.assertEqual(first.status, VideoStatus.FAILED)
        with self.assertRaises(DuplicateVideoError):
            orch.submit(URL, "alice")

    # ── Failures ─────────────────────────────────────────────────────

    @mock.patch("ytscribe.core.transcribe_openai.time.sleep")
    def test_rate_limited_transcription_fails_without_segments(self, mock_sleep):
        session = mock.MagicMock()
        session.post.return_value = mock.MagicMock(
            status_code=429, json=mock.Mock(return_value={"error": {"message": "slow down"}}))
        client = TranscriptionClient("sk-test", max_rate_limit_retries=1, session=session)
        orch = self.make(transcriber=client)

        video = self.submit_and_wait(orch)
        self.assertEqual(video.status, VideoStatus.FAILED)
        self.assertEqual(video.error_code, ErrorCode.RATE_LIMIT)
        self.assertEqual(self.db.get_segments(video.id), [])
        self.assertIsNone(self.db.get_transcript(video.id))
        self.assertEqual(session.post.call_count, 2)

    def test_unavailable_video_not_retried(self):
        downloader = FakeDownloader(errors=[
            AcquisitionError(ErrorCode.VIDEO_UNAVAILABLE, "private", retryable=False)])
        orch = self.make(downloader=downloader)
        video = self.submit_and_wait(orch)
        self.assertEqual(video.status, VideoStatus.FAILED)
        self.assertEqual(video.error_code, ErrorCode.VIDEO_UNAVAILABLE)
        self.assertEqual(downloader.calls, 1)

    def test_transient_download_retried(self):
        downloader = FakeDownloader(errors=[AcquisitionError(ErrorCode.DOWNLOAD_FAILED, "503")])
        orch = self.make(downloader=downloader)
        video = self.submit_and_wait(orch)
        self.assertEqual(video.status, VideoStatus.COMPLETED)
        self.assertEqual(downloader.calls, 2)

    def test_download_retries_exhausted(self):
        downloader = FakeDownloader(errors=[
            AcquisitionError(ErrorCode.DOWNLOAD_FAILED, "503") for _ in range(3)])
        orch = self.make(downloader=downloader)
        video = self.submit_and_wait(orch)
        self.assertEqual(video.status, VideoStatus.FAILED)
        self.assertEqual(video.error_code, ErrorCode.DOWNLOAD_FAILED)
        self.assertEqual(downloader.calls, 3)

    def test_metadata_failure_is_not_fatal(self):
        def broken_metadata(url, cookies_file=None, timeout=None):
            raise AcquisitionError(ErrorCode.DOWNLOAD_FAILED, "metadata timeout")

        orch = self.make(metadata_fetcher=broken_metadata)
        video = self.submit_and_wait(orch)
        self.assertEqual(video.status, VideoStatus.COMPLETED)
        self.assertIsNone(video.title)
        self.assertEqual(video.duration_seconds, 4.5)

    def test_unavailable_metadata_is_fatal(self):
        def gone(url, cookies_file=None, timeout=None):
            raise AcquisitionError(ErrorCode.VIDEO_UNAVAILABLE, "removed", retryable=False)

        downloader = FakeDownloader()
        orch = self.make(downloader=downloader, metadata_fetcher=gone)
        video = self.submit_and_wait(orch)
        self.assertEqual(video.error_code, ErrorCode.VIDEO_UNAVAILABLE)
        self.assertEqual(downloader.calls, 0)

    def test_empty_transcript_fails(self):
        result = TranscriptionResult(text="", segments=[], duration_seconds=0.0)
        orch = self.make(transcriber=FakeTranscriber(result=result))
        video = self.submit_and_wait(orch)
        self.assertEqual(video.status, VideoStatus.FAILED)
        self.assertEqual(video.error_code, ErrorCode.API_ERROR)

    def test_internal_error_logged_with_traceback(self):
        error = TranscriptionError(ErrorCode.FILE_NOT_FOUND, "audio vanished")
        orch = self.make(transcriber=FakeTranscriber(error=error))
        with self.assertLogs("ytscribe.core.ingestion", level="ERROR"):
            video = self.submit_and_wait(orch)
        self.assertEqual(video.error_code, ErrorCode.FILE_NOT_FOUND)

    def test_authentication_error_is_critical(self):
        error = TranscriptionError(ErrorCode.AUTHENTICATION, "bad key", retryable=False)
        orch = self.make(transcriber=FakeTranscriber(error=error))
        with self.assertLogs("ytscribe.core.ingestion", level="CRITICAL"):
            video = self.submit_and_wait(orch)
        self.assertEqual(video.status, VideoStatus.FAILED)

    def test_unexpected_exception_marks_failed(self):
        orch = self.make(transcriber=FakeTranscriber(error=RuntimeError("boom")))
        video = self.submit_and_wait(orch)
        self.assertEqual(video.status, VideoStatus.FAILED)
        self.assertEqual(video.error_code, ErrorCode.UNEXPECTED)
        self.assertEqual(list(self.scratch.iterdir()), [])

    # ── Scheduling ───────────────────────────────────────────────────

    def test_run_only_claims_pending(self):
        orch = self.make()
        video = self.submit_and_wait(orch)
        self.assertEqual(video.status, VideoStatus.COMPLETED)
        self.assertFalse(orch.run(video.id))
        self.assertEqual(self.db.get_video(video.id).status, VideoStatus.COMPLETED)

    def test_resume_pending(self):
        pending = self.db.create_video("alice", URL, "dQw4w9WgXcQ")
        orch = self.make()
        self.assertEqual(orch.resume_pending(), 1)
        orch.wait(pending.id, timeout=10)
        self.assertEqual(self.db.get_video(pending.id).status, VideoStatus.COMPLETED)

    def test_cancel_between_steps(self):
        gate = threading.Event()
        downloader = FakeDownloader(gate=gate)
        transcriber = FakeTranscriber()
        orch = self.make(downloader=downloader, transcriber=transcriber)

        video = orch.submit(URL, "alice")
        self.assertTrue(downloader.started.wait(5))
        self.assertTrue(orch.cancel(video.id))
        gate.set()
        orch.wait(video.id, timeout=10)

        cancelled = self.db.get_video(video.id)
        self.assertEqual(cancelled.status, VideoStatus.FAILED)
        self.assertEqual(cancelled.error_code, ErrorCode.CANCELLED)
        self.assertEqual(transcriber.paths, [])

    def test_cancel_unknown_video(self):
        orch = self.make()
        self.assertFalse(orch.cancel("no-such-video"))

    def test_small_audio_not_held_behind_reencode(self):
        gate = threading.Event()
        encoding = threading.Event()

        def slow_conditioner(audio_path, ceiling, presets, output_dir, timeout):
            encoding.set()
            gate.wait(5)
            return audio_path

        def downloader(url, output_path, cookies_file=None, timeout=None):
            size = 4096 if "aaaaaaaaaaa" in url else 512
            Path(output_path).parent.mkdir(parents=True, exist_ok=True)
            Path(output_path).write_bytes(b"\x00" * size)

        orch = self.make(downloader=downloader, conditioner=slow_conditioner,
                         max_upload_bytes=1024)
        big = orch.submit("https://youtu.be/aaaaaaaaaaa", "alice")
        self.assertTrue(encoding.wait(5))

        small = orch.submit("https://youtu.be/bbbbbbbbbbb", "alice")
        orch.wait(small.id, timeout=5)
        self.assertEqual(self.db.get_video(small.id).status, VideoStatus.COMPLETED)
        self.assertEqual(self.db.get_video(big.id).status, VideoStatus.PROCESSING)

        gate.set()
        orch.wait(big.id, timeout=5)
        self.assertEqual(self.db.get_video(big.id).status, VideoStatus.COMPLETED)

    def test_owners_run_independently(self):
        orch = self.make()
        a = self.submit_and_wait(orch, owner="alice")
        b = self.submit_and_wait(orch, owner="bob")
        self.assertNotEqual(a.id, b.id)
        self.assertEqual(a.status, VideoStatus.COMPLETED)
        self.assertEqual(b.status, VideoStatus.COMPLETED)


if __name__ == "__main__":
    unittest.main()
