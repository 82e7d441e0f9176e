"""
SQLite database layer for YTScribe.
Thread-safe via check_same_thread=False + explicit locking.
"""

import sqlite3
import threading
import uuid
import logging
from datetime import datetime, timezone
from pathlib import Path

from ytscribe.core.constants import (
    DB_PATH, VideoStatus, VideoStage, TERMINAL_STATUSES, PROGRESS_DONE,
)
from ytscribe.core.models_sqlite import Video, TranscriptSegment, Transcript
from ytscribe.core.error_codes import DuplicateVideoError

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    source_url TEXT NOT NULL,
    external_id TEXT NOT NULL,
    title TEXT,
    duration_seconds REAL,
    thumbnail_url TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    stage TEXT,
    progress_pct INTEGER DEFAULT 0,
    error_code TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (owner_id, external_id)
);

CREATE INDEX IF NOT EXISTS idx_videos_owner_created ON videos(owner_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(status);

CREATE TABLE IF NOT EXISTS transcripts (
    video_id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    language TEXT NOT NULL DEFAULT 'en',
    FOREIGN KEY (video_id) REFERENCES videos(id)
);

CREATE TABLE IF NOT EXISTS transcript_segments (
    video_id TEXT NOT NULL,
    sequence_index INTEGER NOT NULL,
    start_seconds REAL NOT NULL,
    end_seconds REAL NOT NULL,
    text TEXT NOT NULL,
    PRIMARY KEY (video_id, sequence_index),
    FOREIGN KEY (video_id) REFERENCES videos(id)
);
"""


class InvalidTransition(Exception):
    """A status change was requested from a state that does not allow it."""


class Database:
    """SQLite database wrapper for YTScribe."""

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path) if db_path else DB_PATH
        self._lock = threading.RLock()
        self._ensure_dirs()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        if str(self.db_path) != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _ensure_dirs(self):
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        with self._lock:
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
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _row_to_video(row: sqlite3.Row) -> Video:
        return Video(**dict(row))

    @staticmethod
    def _row_to_segment(row: sqlite3.Row) -> TranscriptSegment:
        return TranscriptSegment(**dict(row))

    # ── Video CRUD ────────────────────────────────────────────────────

    def create_video(self, owner_id: str, source_url: str, external_id: str) -> Video:
        """
        Insert a pending video.  Raises DuplicateVideoError if the owner
        already has a video with this external id; the lookup and insert
        happen under one lock so concurrent submissions cannot both pass.
        """
        now = self._now()
        video = Video(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            source_url=source_url,
            external_id=external_id,
            status=VideoStatus.PENDING,
            stage=VideoStage.QUEUED,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            existing = self.find_video_by_external_id(owner_id, external_id)
            if existing:
                raise DuplicateVideoError(existing.id, external_id)
            try:
                self.conn.execute(
                    """INSERT INTO videos
                       (id, owner_id, source_url, external_id, status, stage,
                        progress_pct, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (video.id, video.owner_id, video.source_url, video.external_id,
                     video.status, video.stage, video.progress_pct,
                     video.created_at, video.updated_at),
                )
                self.conn.commit()
            except sqlite3.IntegrityError:
                # Another connection to the same file won the race
                self.conn.rollback()
                existing = self.find_video_by_external_id(owner_id, external_id)
                if existing is None:
                    raise
                raise DuplicateVideoError(existing.id, external_id)
        return video

    def get_video(self, video_id: str) -> Video | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM videos WHERE id = ?", (video_id,)
            ).fetchone()
        return self._row_to_video(row) if row else None

    def find_video_by_external_id(self, owner_id: str, external_id: str) -> Video | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM videos WHERE owner_id = ? AND external_id = ?",
                (owner_id, external_id),
            ).fetchone()
        return self._row_to_video(row) if row else None

    def list_videos(self, owner_id: str, limit: int = 20, offset: int = 0) -> list[Video]:
        with self._lock:
            rows = self.conn.execute(
                """SELECT * FROM videos WHERE owner_id = ?
                   ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?""",
                (owner_id, limit, offset),
            ).fetchall()
        return [self._row_to_video(r) for r in rows]

    def count_videos(self, owner_id: str) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM videos WHERE owner_id = ?", (owner_id,)
            ).fetchone()
        return row[0]

    def get_videos_by_status(self, status: str) -> list[Video]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM videos WHERE status = ? ORDER BY created_at ASC",
                (status,),
            ).fetchall()
        return [self._row_to_video(r) for r in rows]

    def update_video(self, video_id: str, **kwargs):
        """Update non-status columns (stage, progress, metadata)."""
        if 'status' in kwargs:
            raise ValueError("Use transition_status() to change status")
        kwargs['updated_at'] = self._now()
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [video_id]
        with self._lock:
            self.conn.execute(f"UPDATE videos SET {sets} WHERE id = ?", vals)
            self.conn.commit()

    def transition_status(self, video_id: str, from_status: str, to_status: str, **extra):
        """
        Conditional status change: succeeds only if the row is currently in
        from_status.  Raises InvalidTransition otherwise.
        """
        if from_status in TERMINAL_STATUSES:
            raise InvalidTransition(f"{from_status} is terminal")
        fields = {'status': to_status, 'updated_at': self._now(), **extra}
        sets = ', '.join(f"{k} = ?" for k in fields)
        vals = list(fields.values()) + [video_id, from_status]
        with self._lock:
            cur = self.conn.execute(
                f"UPDATE videos SET {sets} WHERE id = ? AND status = ?", vals
            )
            self.conn.commit()
        if cur.rowcount != 1:
            raise InvalidTransition(
                f"Video {video_id} is not {from_status}; cannot move to {to_status}")

    def complete_video(self, video_id: str, transcript: Transcript,
                       segments: list[TranscriptSegment], **metadata):
        """
        Persist metadata, transcript and the full segment batch, and mark the
        video completed, in one transaction.
        """
        now = self._now()
        fields = {
            **metadata,
            'status': VideoStatus.COMPLETED,
            'stage': VideoStage.DONE,
            'progress_pct': PROGRESS_DONE,
            'error_code': None,
            'error_message': None,
            'updated_at': now,
        }
        sets = ', '.join(f"{k} = ?" for k in fields)
        vals = list(fields.values()) + [video_id, VideoStatus.PROCESSING]
        with self._lock:
            try:
                cur = self.conn.execute(
                    f"UPDATE videos SET {sets} WHERE id = ? AND status = ?", vals
                )
                if cur.rowcount != 1:
                    raise InvalidTransition(f"Video {video_id} is not processing")
                self.conn.execute(
                    "INSERT INTO transcripts (video_id, content, language) VALUES (?, ?, ?)",
                    (video_id, transcript.content, transcript.language),
                )
                self.conn.executemany(
                    """INSERT INTO transcript_segments
                       (video_id, sequence_index, start_seconds, end_seconds, text)
                       VALUES (?, ?, ?, ?, ?)""",
                    [(video_id, s.sequence_index, s.start_seconds, s.end_seconds, s.text)
                     for s in segments],
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def fail_video(self, video_id: str, error_code: str, error_message: str):
        """Move a processing video to failed, recording the internal reason."""
        self.transition_status(video_id, VideoStatus.PROCESSING, VideoStatus.FAILED,
                               error_code=error_code,
                               error_message=error_message[:2000])

    # ── Transcript reads ──────────────────────────────────────────────

    def get_segments(self, video_id: str) -> list[TranscriptSegment]:
        with self._lock:
            rows = self.conn.execute(
                """SELECT video_id, sequence_index, start_seconds, end_seconds, text
                   FROM transcript_segments WHERE video_id = ? ORDER BY sequence_index""",
                (video_id,),
            ).fetchall()
        return [self._row_to_segment(r) for r in rows]

    def get_transcript(self, video_id: str) -> Transcript | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT video_id, content, language FROM transcripts WHERE video_id = ?",
                (video_id,),
            ).fetchone()
        return Transcript(**dict(row)) if row else None
