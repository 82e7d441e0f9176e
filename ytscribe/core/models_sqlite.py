"""
SQLite data models (plain dataclasses) for YTScribe.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional


@dataclass
class Video:
    id: str                          # UUID
    owner_id: str
    source_url: str
    external_id: str
    title: Optional[str] = None
    duration_seconds: Optional[float] = None
    thumbnail_url: Optional[str] = None
    status: str = "pending"
    stage: Optional[str] = None
    progress_pct: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TranscriptSegment:
    video_id: str
    sequence_index: int
    start_seconds: float
    end_seconds: float
    text: str


@dataclass
class Transcript:
    video_id: str
    content: str
    language: str = "en"


@dataclass
class TranscriptionResult:
    """Normalised speech-to-text output, before it is bound to a video."""
    text: str
    segments: list[dict] = field(default_factory=list)   # {start, end, text}
    language: str = "en"
    duration_seconds: float = 0.0


@dataclass(frozen=True)
class ChatMessage:
    role: str                        # "user" | "assistant"
    content: str
