"""
Thin HTTP facade over the ingestion orchestrator and the chat engine.
The identity layer in front of this service supplies the caller's id in the
X-User-Id header; it is trusted as-is.
"""

import logging
from typing import Iterator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ytscribe.core.chat import ChatEngine, format_transcript
from ytscribe.core.constants import (
    APP_NAME, APP_VERSION, VideoStatus, ErrorCode, DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT,
)
from ytscribe.core.db_sqlite import Database
from ytscribe.core.diagnostics import get_diagnostics
from ytscribe.core.error_codes import ChatError, DuplicateVideoError, IngestError
from ytscribe.core.ingestion import IngestionOrchestrator
from ytscribe.core.models_sqlite import ChatMessage, Video
from ytscribe.web.schemas import (
    ChatReplyOut, ChatRequest, ErrorOut, SegmentOut, SubmitVideoRequest,
    VideoDetailOut, VideoListOut, VideoOut,
)

logger = logging.getLogger(__name__)

# Marks a streamed reply that was cut short: "\n[error:<code>] <message>"
STREAM_ERROR_PREFIX = "[error:"

# Chat failure → HTTP status
_CHAT_ERROR_STATUS = {
    ErrorCode.RATE_LIMIT: 429,
    ErrorCode.CONTEXT_TOO_LONG: 413,
    ErrorCode.AUTHENTICATION: 502,
    ErrorCode.API_ERROR: 502,
}


def _error_response(status_code: int, error: ErrorOut) -> JSONResponse:
    return JSONResponse(status_code=status_code,
                        content=error.model_dump(by_alias=True, exclude_none=True))


def _chat_error_response(e: ChatError) -> JSONResponse:
    status = _CHAT_ERROR_STATUS.get(e.code, 502)
    return _error_response(status, ErrorOut(error=e.message, code=e.code, retryable=e.retryable))


def stream_error_trailer(e: ChatError) -> str:
    """Final line of a streamed reply that failed after its first chunk."""
    return f"\n{STREAM_ERROR_PREFIX}{e.code}] {e.message}"


# ── Dependencies ──────────────────────────────────────────────────────

def get_owner_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_orchestrator(request: Request) -> IngestionOrchestrator:
    return request.app.state.orchestrator


def get_chat_engine(request: Request) -> ChatEngine:
    return request.app.state.chat_engine


def _owned_video(db: Database, video_id: str, owner_id: str) -> Video:
    video = db.get_video(video_id)
    # other owners' videos are indistinguishable from missing ones
    if video is None or video.owner_id != owner_id:
        raise HTTPException(status_code=404, detail="Video not found")
    return video


# ── App factory ───────────────────────────────────────────────────────

def create_app(config: dict, db: Database | None = None,
               orchestrator: IngestionOrchestrator | None = None,
               chat_engine: ChatEngine | None = None) -> FastAPI:
    """Build the FastAPI app; collaborators not given are built from config."""
    db = db or Database(config.get('db_path'))
    orchestrator = orchestrator or IngestionOrchestrator(db, config)
    chat_engine = chat_engine or ChatEngine.from_config(config)

    app = FastAPI(title=APP_NAME, version=APP_VERSION)
    app.state.config = config
    app.state.db = db
    app.state.orchestrator = orchestrator
    app.state.chat_engine = chat_engine

    @app.get("/health")
    def health(check_key: bool = Query(False, alias="checkKey"),
               orch: IngestionOrchestrator = Depends(get_orchestrator)):
        report = {"status": "ok", "version": APP_VERSION, **get_diagnostics()}
        if check_key:
            # Makes one upstream request
            ok, message = orch.transcriber.verify_api_key()
            report["api_key"] = {"ok": ok, "message": message}
        return report

    @app.post("/api/videos", status_code=201, response_model=VideoOut)
    def submit_video(body: SubmitVideoRequest,
                     owner_id: str = Depends(get_owner_id),
                     orch: IngestionOrchestrator = Depends(get_orchestrator)):
        try:
            video = orch.submit(body.url, owner_id)
        except DuplicateVideoError as e:
            return _error_response(409, ErrorOut(error=e.message, code=e.code,
                                                 existing_video_id=e.existing_id))
        except IngestError as e:
            return _error_response(400, ErrorOut(error=e.message, code=e.code))
        return VideoOut.from_video(video)

    @app.get("/api/videos", response_model=VideoListOut)
    def list_videos(limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
                    offset: int = Query(0, ge=0),
                    owner_id: str = Depends(get_owner_id),
                    db: Database = Depends(get_db)):
        videos = db.list_videos(owner_id, limit=limit, offset=offset)
        return VideoListOut(
            videos=[VideoOut.from_video(v) for v in videos],
            limit=limit,
            offset=offset,
            count=len(videos),
            total=db.count_videos(owner_id),
        )

    @app.get("/api/videos/{video_id}", response_model=VideoDetailOut)
    def get_video(video_id: str,
                  owner_id: str = Depends(get_owner_id),
                  db: Database = Depends(get_db)):
        video = _owned_video(db, video_id, owner_id)
        detail = VideoDetailOut(**VideoOut.from_video(video).model_dump())
        if video.status == VideoStatus.COMPLETED:
            transcript = db.get_transcript(video_id)
            detail.language = transcript.language if transcript else None
            detail.segments = [SegmentOut.from_segment(s) for s in db.get_segments(video_id)]
        return detail

    @app.post("/api/videos/{video_id}/chat")
    def chat(video_id: str, body: ChatRequest,
             owner_id: str = Depends(get_owner_id),
             db: Database = Depends(get_db),
             engine: ChatEngine = Depends(get_chat_engine)):
        video = _owned_video(db, video_id, owner_id)
        if video.status != VideoStatus.COMPLETED:
            return _error_response(400, ErrorOut(
                error=f"Video is {video.status}; chat needs a completed transcript"))

        transcript = format_transcript(db.get_segments(video_id))
        history = [ChatMessage(role=m.role, content=m.content) for m in body.history]

        if not body.stream:
            try:
                reply = engine.complete_reply(transcript, history, body.message, video.title)
            except ChatError as e:
                logger.warning("Chat failed for video %s: %s", video_id, e)
                return _chat_error_response(e)
            return ChatReplyOut(reply=reply)

        chunks = engine.stream_reply(transcript, history, body.message, video.title)
        # Pull the first chunk so upstream errors still map to a status code
        try:
            first = next(chunks)
        except StopIteration:
            first = ""
        except ChatError as e:
            logger.warning("Chat failed for video %s: %s", video_id, e)
            return _chat_error_response(e)

        def stream_body() -> Iterator[str]:
            yield first
            try:
                yield from chunks
            except ChatError as e:
                logger.warning("Chat stream for video %s ended early: %s", video_id, e)
                yield stream_error_trailer(e)

        return StreamingResponse(stream_body(), media_type="text/plain; charset=utf-8")

    return app
