"""
Ingestion Orchestrator.
Accepts video URLs, deduplicates them per owner and drives each video
through pending → processing → completed | failed on a worker pool.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

from ytscribe.core.constants import (
    VideoStatus, VideoStage, ErrorCode, INTERNAL_ERRORS,
    SCRATCH_DIR, DOWNLOAD_AUDIO_FORMAT, MAX_UPLOAD_BYTES, COMPRESSION_PRESETS,
    DOWNLOAD_RETRIES, DOWNLOAD_BACKOFF_SEC, DOWNLOAD_TIMEOUT_SEC,
    METADATA_TIMEOUT_SEC, ENCODE_TIMEOUT_SEC,
    MAX_CONCURRENT_JOBS, ENCODE_WORKERS,
    PROGRESS_START, PROGRESS_METADATA, PROGRESS_DOWNLOAD, PROGRESS_CONDITION,
    PROGRESS_TRANSCRIBE, PROGRESS_SAVE,
)
from ytscribe.core.db_sqlite import Database, InvalidTransition
from ytscribe.core.models_sqlite import Video, Transcript, TranscriptSegment, TranscriptionResult
from ytscribe.core.error_codes import JobError, AcquisitionError, TranscriptionError
from ytscribe.core.url_parse import validate_video_url
from ytscribe.core.yt_metadata import fetch_metadata, VideoMetadata
from ytscribe.core.download_audio import download_audio
from ytscribe.core.conditioning import condition_audio
from ytscribe.core.transcribe_openai import TranscriptionClient, normalize_segments
from ytscribe.core.cleanup import cleanup_job_artifacts
from ytscribe.core.security_utils import scratch_workspace

logger = logging.getLogger(__name__)


class IngestionOrchestrator:
    """
    Owns every status change of a Video after creation.
    Runs for different videos proceed in parallel on the job pool; ffmpeg
    re-encodes go through a separate, smaller encode pool.
    """

    def __init__(self, db: Database, config: dict | None = None,
                 transcriber: TranscriptionClient | None = None,
                 downloader: Callable = download_audio,
                 metadata_fetcher: Callable = fetch_metadata,
                 conditioner: Callable = condition_audio):
        self.db = db
        self.config = config or {}
        self.transcriber = transcriber or TranscriptionClient.from_config(self.config)
        self.downloader = downloader
        self.metadata_fetcher = metadata_fetcher
        self.conditioner = conditioner

        self._job_pool = ThreadPoolExecutor(
            max_workers=self.config.get('max_concurrent_jobs', MAX_CONCURRENT_JOBS),
            thread_name_prefix="ingest")
        self._encode_pool = ThreadPoolExecutor(
            max_workers=self.config.get('encode_workers', ENCODE_WORKERS),
            thread_name_prefix="encode")
        self._lock = threading.Lock()
        self._futures: dict[str, Future] = {}
        self._cancel_events: dict[str, threading.Event] = {}

        # Callbacks
        self.on_video_updated: Optional[Callable[[Video], None]] = None

    # ── Config helpers ────────────────────────────────────────────────

    @property
    def scratch_dir(self) -> Path:
        return Path(self.config.get('scratch_dir', str(SCRATCH_DIR)))

    @property
    def keep_debug(self) -> bool:
        return self.config.get('keep_debug_artifacts', False)

    @property
    def cookies_file(self) -> str | None:
        return self.config.get('cookies_file')

    @property
    def max_upload_bytes(self) -> int:
        return self.config.get('max_upload_bytes', MAX_UPLOAD_BYTES)

    @property
    def compression_presets(self) -> list[tuple[str, int]]:
        presets = self.config.get('compression_presets', COMPRESSION_PRESETS)
        return [(b, int(r)) for b, r in presets]

    @property
    def download_retries(self) -> int:
        return self.config.get('download_retries', DOWNLOAD_RETRIES)

    @property
    def download_backoff_sec(self) -> float:
        return self.config.get('download_backoff_sec', DOWNLOAD_BACKOFF_SEC)

    # ── Submission ────────────────────────────────────────────────────

    def submit(self, url: str, owner_id: str) -> Video:
        """
        Validate, deduplicate and create a pending video, then schedule its
        run.  Raises IngestError (INVALID_URL) or DuplicateVideoError; in
        both cases nothing is written.
        """
        external_id = validate_video_url(url)
        video = self.db.create_video(owner_id=owner_id, source_url=url.strip(),
                                     external_id=external_id)
        logger.info("Accepted video %s (%s) for owner %s", video.id, external_id, owner_id)
        self._schedule(video.id)
        return video

    def resume_pending(self) -> int:
        """Schedule runs for videos left pending by a previous process."""
        pending = self.db.get_videos_by_status(VideoStatus.PENDING)
        for video in pending:
            self._schedule(video.id)
        if pending:
            logger.info("Resumed %d pending video(s)", len(pending))
        return len(pending)

    def _schedule(self, video_id: str):
        cancel_event = threading.Event()
        with self._lock:
            self._cancel_events[video_id] = cancel_event
            future = self._job_pool.submit(self.run, video_id, cancel_event)
            self._futures[video_id] = future
        future.add_done_callback(lambda f, vid=video_id: self._forget(vid, f))

    def _forget(self, video_id: str, future: Future):
        with self._lock:
            if self._futures.get(video_id) is future:
                del self._futures[video_id]
                self._cancel_events.pop(video_id, None)

    def cancel(self, video_id: str) -> bool:
        """Request cancellation; honoured at the next step boundary."""
        with self._lock:
            event = self._cancel_events.get(video_id)
        if event is None:
            return False
        event.set()
        return True

    def wait(self, video_id: str, timeout: float | None = None) -> bool | None:
        """Block until the scheduled run for video_id finishes."""
        with self._lock:
            future = self._futures.get(video_id)
        return future.result(timeout=timeout) if future else None

    def shutdown(self, wait: bool = True):
        self._job_pool.shutdown(wait=wait)
        self._encode_pool.shutdown(wait=wait)

    # ── Progress ──────────────────────────────────────────────────────

    def _notify_video_updated(self, video_id: str):
        if self.on_video_updated:
            video = self.db.get_video(video_id)
            if video:
                self.on_video_updated(video)

    def _update_progress(self, video_id: str, stage: str, progress: int, **extra):
        self.db.update_video(video_id, stage=stage, progress_pct=progress, **extra)
        self._notify_video_updated(video_id)

    @staticmethod
    def _check_cancelled(cancel_event: threading.Event):
        if cancel_event.is_set():
            raise JobError(ErrorCode.CANCELLED, "Processing cancelled", retryable=False)

    # ── Pipeline ──────────────────────────────────────────────────────

    def run(self, video_id: str, cancel_event: threading.Event | None = None) -> bool:
        """
        Process one video.  Returns True on completion, False on failure or
        when the video could not be claimed (it was not pending).
        """
        cancel_event = cancel_event or threading.Event()

        # Claiming pending → processing is the single entry point
        try:
            self.db.transition_status(video_id, VideoStatus.PENDING, VideoStatus.PROCESSING,
                                      stage=VideoStage.FETCHING_METADATA,
                                      progress_pct=PROGRESS_START)
        except InvalidTransition as e:
            logger.warning("Not running video %s: %s", video_id, e)
            return False
        self._notify_video_updated(video_id)

        workspace = None
        try:
            video = self.db.get_video(video_id)
            workspace = scratch_workspace(self.scratch_dir, video_id)

            self._check_cancelled(cancel_event)
            metadata = self._fetch_metadata(video)
            self._update_progress(video_id, VideoStage.FETCHING_METADATA, PROGRESS_METADATA)

            # ── Acquire audio ──
            self._check_cancelled(cancel_event)
            self._update_progress(video_id, VideoStage.DOWNLOADING_AUDIO, PROGRESS_DOWNLOAD)
            audio_path = workspace / "source" / f"audio.{DOWNLOAD_AUDIO_FORMAT}"
            self._download_with_retries(video.source_url, audio_path, cancel_event)

            # ── Condition audio (CPU-bound, bounded pool) ──
            self._check_cancelled(cancel_event)
            self._update_progress(video_id, VideoStage.CONDITIONING_AUDIO, PROGRESS_CONDITION)
            conditioned_path = self._condition(audio_path, workspace)

            # ── Transcribe ──
            self._check_cancelled(cancel_event)
            self._update_progress(video_id, VideoStage.TRANSCRIBING, PROGRESS_TRANSCRIBE)
            result = self.transcriber.transcribe(conditioned_path)

            # ── Persist ──
            self._check_cancelled(cancel_event)
            self._update_progress(video_id, VideoStage.SAVING, PROGRESS_SAVE)
            self._save_transcript(video, metadata, result)
            return True

        except JobError as e:
            self._handle_job_error(video_id, e)
        except Exception as e:
            logger.error("Unexpected error processing video %s: %s", video_id, e, exc_info=True)
            self._mark_failed(video_id, ErrorCode.UNEXPECTED, str(e))
        finally:
            cleanup_job_artifacts(workspace, self.keep_debug)
        return False

    def _fetch_metadata(self, video: Video) -> VideoMetadata | None:
        """Platform metadata is best-effort, except a definitive 'unavailable'."""
        try:
            return self.metadata_fetcher(
                video.source_url, cookies_file=self.cookies_file,
                timeout=self.config.get('metadata_timeout_sec', METADATA_TIMEOUT_SEC))
        except AcquisitionError as e:
            if e.code == ErrorCode.VIDEO_UNAVAILABLE:
                raise
            logger.warning("Metadata fetch failed for video %s, continuing: %s", video.id, e)
            return None

    def _condition(self, audio_path: Path, workspace: Path) -> Path:
        """Audio under the upload ceiling skips the encode pool entirely."""
        size = audio_path.stat().st_size
        if size <= self.max_upload_bytes:
            logger.info("Audio %s is %d bytes, no re-encode needed", audio_path.name, size)
            return audio_path
        return self._encode_pool.submit(
            self.conditioner, audio_path, self.max_upload_bytes,
            self.compression_presets, workspace / "conditioned",
            self.config.get('encode_timeout_sec', ENCODE_TIMEOUT_SEC),
        ).result()

    def _download_with_retries(self, url: str, audio_path: Path,
                               cancel_event: threading.Event):
        """Transient download failures retry with linear backoff."""
        retries = self.download_retries
        for attempt in range(retries + 1):
            try:
                self.downloader(
                    url, audio_path, cookies_file=self.cookies_file,
                    timeout=self.config.get('download_timeout_sec', DOWNLOAD_TIMEOUT_SEC))
                return
            except AcquisitionError as e:
                if not e.retryable or attempt >= retries:
                    raise
                delay = self.download_backoff_sec * (attempt + 1)
                logger.warning("Download failed (%s), retrying in %.1fs (attempt %d/%d)",
                               e.message, delay, attempt + 1, retries)
                # Event.wait doubles as an interruptible sleep
                if cancel_event.wait(delay):
                    self._check_cancelled(cancel_event)

    def _save_transcript(self, video: Video, metadata: VideoMetadata | None,
                         result: TranscriptionResult):
        cleaned = normalize_segments(result.segments)
        if not cleaned:
            raise TranscriptionError(ErrorCode.API_ERROR,
                                     "Transcription produced no timed segments",
                                     retryable=False)
        segments = [
            TranscriptSegment(video_id=video.id, sequence_index=i,
                              start_seconds=s['start'], end_seconds=s['end'], text=s['text'])
            for i, s in enumerate(cleaned)
        ]

        duration = metadata.duration_seconds if metadata and metadata.duration_seconds else None
        self.db.complete_video(
            video.id,
            Transcript(video_id=video.id, content=result.text, language=result.language),
            segments,
            title=metadata.title if metadata else None,
            duration_seconds=duration if duration is not None else result.duration_seconds,
            thumbnail_url=metadata.thumbnail_url if metadata else None,
        )
        logger.info("Completed video %s: %d segments, language=%s",
                    video.id, len(segments), result.language)
        self._notify_video_updated(video.id)

    def _handle_job_error(self, video_id: str, error: JobError):
        if error.code in INTERNAL_ERRORS:
            logger.error("Internal pipeline error for video %s: %s", video_id, error, exc_info=True)
        elif error.code == ErrorCode.AUTHENTICATION:
            logger.critical("Upstream rejected credentials while processing video %s: %s",
                            video_id, error.message)
        else:
            logger.warning("Video %s failed: %s", video_id, error)
        self._mark_failed(video_id, error.code, error.message)

    def _mark_failed(self, video_id: str, code: str, message: str):
        try:
            self.db.fail_video(video_id, code, message)
        except InvalidTransition as e:
            logger.error("Could not mark video %s failed: %s", video_id, e)
            return
        self._notify_video_updated(video_id)
