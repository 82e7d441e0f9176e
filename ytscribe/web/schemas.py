"""
Request/response bodies for the HTTP facade.
Wire field names are camelCase; Python attributes stay snake_case.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ytscribe.core.models_sqlite import Video, TranscriptSegment


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Requests ──────────────────────────────────────────────────────────

class SubmitVideoRequest(BaseModel):
    url: str


class ChatHistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    history: list[ChatHistoryMessage] = Field(default_factory=list)
    stream: bool = False


# ── Responses ─────────────────────────────────────────────────────────

class SegmentOut(_CamelModel):
    sequence_index: int
    start: float
    end: float
    text: str

    @classmethod
    def from_segment(cls, seg: TranscriptSegment) -> "SegmentOut":
        return cls(sequence_index=seg.sequence_index, start=seg.start_seconds,
                   end=seg.end_seconds, text=seg.text)


class VideoOut(_CamelModel):
    id: str
    owner_id: str
    source_url: str
    external_id: str
    title: Optional[str] = None
    duration_seconds: Optional[float] = None
    thumbnail_url: Optional[str] = None
    status: str
    stage: Optional[str] = None
    progress_pct: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_video(cls, video: Video) -> "VideoOut":
        data = video.to_dict()
        # failure reasons are internal; callers only see status
        data.pop('error_code', None)
        data.pop('error_message', None)
        return cls(**data)


class VideoDetailOut(VideoOut):
    language: Optional[str] = None
    segments: list[SegmentOut] = Field(default_factory=list)


class VideoListOut(_CamelModel):
    videos: list[VideoOut]
    limit: int
    offset: int
    count: int
    total: int


class ChatReplyOut(_CamelModel):
    reply: str


class ErrorOut(_CamelModel):
    error: str
    code: Optional[str] = None
    retryable: Optional[bool] = None
    existing_video_id: Optional[str] = None
