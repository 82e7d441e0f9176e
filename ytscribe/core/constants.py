"""
Shared constants for YTScribe.
Single source of truth — imported by every other module.
"""

import os
import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "YTScribe"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

DEFAULT_DATA_DIR = pathlib.Path(os.environ.get("YTSCRIBE_DATA_DIR", HOME / ".ytscribe"))
DB_PATH = DEFAULT_DATA_DIR / "app.db"
CONFIG_PATH = DEFAULT_DATA_DIR / "config.json"
SCRATCH_DIR = DEFAULT_DATA_DIR / "scratch"
LOG_DIR = DEFAULT_DATA_DIR / "logs"

# ── Video status values ───────────────────────────────────────────────
class VideoStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

TERMINAL_STATUSES = {VideoStatus.COMPLETED, VideoStatus.FAILED}

# ── Pipeline stage values (ordered) ───────────────────────────────────
class VideoStage:
    QUEUED = "QUEUED"
    FETCHING_METADATA = "FETCHING_METADATA"
    DOWNLOADING_AUDIO = "DOWNLOADING_AUDIO"
    CONDITIONING_AUDIO = "CONDITIONING_AUDIO"
    TRANSCRIBING = "TRANSCRIBING"
    SAVING = "SAVING"
    DONE = "DONE"

# ── Chat roles ────────────────────────────────────────────────────────
class MessageRole:
    USER = "user"
    ASSISTANT = "assistant"

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Ingestion (synchronous, surfaced to the caller)
    INVALID_URL = "ERR_INVALID_URL"
    DUPLICATE_VIDEO = "ERR_DUPLICATE_VIDEO"

    # Media acquisition
    DOWNLOAD_FAILED = "ERR_DOWNLOAD_FAILED"
    VIDEO_UNAVAILABLE = "ERR_VIDEO_UNAVAILABLE"

    # Audio conditioning
    COMPRESSION_FAILED = "ERR_COMPRESSION_FAILED"

    # Transcription / chat upstream
    FILE_NOT_FOUND = "ERR_FILE_NOT_FOUND"
    INVALID_AUDIO_FORMAT = "ERR_INVALID_AUDIO_FORMAT"
    RATE_LIMIT = "ERR_RATE_LIMIT"
    AUTHENTICATION = "ERR_AUTHENTICATION"
    API_ERROR = "ERR_API_ERROR"
    CONTEXT_TOO_LONG = "ERR_CONTEXT_TOO_LONG"

    # Pipeline
    CANCELLED = "ERR_CANCELLED"
    UNEXPECTED = "ERR_UNEXPECTED"

RETRYABLE_ERRORS = {
    ErrorCode.DOWNLOAD_FAILED,
    ErrorCode.RATE_LIMIT,
    ErrorCode.API_ERROR,
}

# Internal bugs rather than external conditions; logged with traceback
INTERNAL_ERRORS = {
    ErrorCode.FILE_NOT_FOUND,
    ErrorCode.INVALID_AUDIO_FORMAT,
}

# ── Audio conditioning ────────────────────────────────────────────────
MAX_UPLOAD_BYTES = 25 * 1024 * 1024     # transcription service hard limit
CONDITIONED_FORMAT = "mp3"
CONDITIONED_CHANNELS = 1

# (bitrate, sample rate), decreasing quality; the last entry is the floor
COMPRESSION_PRESETS = [
    ("64k", 16000),
    ("48k", 16000),
    ("32k", 16000),
    ("24k", 16000),
    ("16k", 8000),
]

SUPPORTED_AUDIO_EXTENSIONS = (
    ".mp3", ".mp4", ".mpeg", ".mpga", ".m4a", ".wav", ".webm",
)

DOWNLOAD_AUDIO_FORMAT = "m4a"

# ── Timeouts (seconds) ───────────────────────────────────────────────
DOWNLOAD_TIMEOUT_SEC = 600
METADATA_TIMEOUT_SEC = 60
ENCODE_TIMEOUT_SEC = 900
TRANSCRIPTION_TIMEOUT_SEC = 600
CHAT_TIMEOUT_SEC = 120

# ── Retries ───────────────────────────────────────────────────────────
DOWNLOAD_RETRIES = 2
DOWNLOAD_BACKOFF_SEC = 5.0             # linear: 5s, 10s
RATE_LIMIT_RETRIES = 3
RATE_LIMIT_BASE_DELAY = 2.0            # exponential: 2s, 4s, 8s

# ── Worker pools ──────────────────────────────────────────────────────
MAX_CONCURRENT_JOBS = 4
ENCODE_WORKERS = 2

# ── OpenAI-compatible upstream ────────────────────────────────────────
OPENAI_API_BASE = "https://api.openai.com/v1"
TRANSCRIPTION_MODEL = "whisper-1"
CHAT_MODEL = "gpt-4o"

# Rough input budget for the chat model, in characters (~4 chars/token)
MAX_CONTEXT_CHARS = 400_000

# ── Progress mapping ─────────────────────────────────────────────────
PROGRESS_START = 5
PROGRESS_METADATA = 10
PROGRESS_DOWNLOAD = 30
PROGRESS_CONDITION = 50
PROGRESS_TRANSCRIBE = 60
PROGRESS_SAVE = 95
PROGRESS_DONE = 100

# ── HTTP facade ───────────────────────────────────────────────────────
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100

# ── URL shapes ────────────────────────────────────────────────────────
VIDEO_ID_PATTERN = r'[a-zA-Z0-9_-]{11}'
YOUTUBE_URL_PATTERNS = [
    r'^(?:https?://)?(?:www\.|m\.|music\.)?youtube\.com/watch\?(?:.*&)?v=([a-zA-Z0-9_-]{11})(?:&|#|$)',
    r'^(?:https?://)?(?:www\.)?youtu\.be/([a-zA-Z0-9_-]{11})(?:[?#]|$)',
    r'^(?:https?://)?(?:www\.|m\.)?youtube(?:-nocookie)?\.com/embed/([a-zA-Z0-9_-]{11})(?:[?#]|$)',
    r'^(?:https?://)?(?:www\.)?youtube\.com/v/([a-zA-Z0-9_-]{11})(?:[?#]|$)',
    r'^(?:https?://)?(?:www\.|m\.)?youtube\.com/shorts/([a-zA-Z0-9_-]{11})(?:[?#]|$)',
    r'^(?:https?://)?(?:www\.)?youtube\.com/live/([a-zA-Z0-9_-]{11})(?:[?#]|$)',
]
CANONICAL_WATCH_URL = "https://www.youtube.com/watch?v={video_id}"

# yt-dlp stderr fragments meaning the video will never be downloadable
UNAVAILABLE_MARKERS = (
    "video unavailable",
    "is not available",
    "private video",
    "has been removed",
    "confirm your age",
    "age-restricted",
    "sign in to confirm",
    "members-only",
    "not available in your country",
    "geo restricted",
)
