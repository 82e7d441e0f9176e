"""
Transcript-grounded chat over an OpenAI-compatible chat-completions API.

stream_reply() yields text chunks as they arrive; complete_reply() drains the
same stream into one string.  Prompt construction happens in one place.
"""

import json
import logging
from typing import Iterable, Iterator, Sequence

import requests

from ytscribe.core.error_codes import ChatError, classify_http_status, extract_error_message
from ytscribe.core.models_sqlite import ChatMessage
from ytscribe.core.constants import (
    ErrorCode, MessageRole, OPENAI_API_BASE, CHAT_MODEL, CHAT_TIMEOUT_SEC,
    MAX_CONTEXT_CHARS,
)

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n[... transcript truncated ...]"

_SYSTEM_PROMPT = """You are a helpful assistant that answers questions about a YouTube video based on its transcript.

{title_section}Transcript:
{transcript}

Instructions:
- Answer questions using only the transcript content above
- If the information is not in the transcript, say so clearly
- When referencing specific parts of the video, include timestamps in the format [MM:SS] or [HH:MM:SS] for longer videos
- Be concise but thorough in your responses
- If asked about topics not covered in the transcript, politely redirect to what is available"""


def format_timestamp(seconds: float) -> str:
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_transcript(segments: Iterable) -> str:
    """Render segments as '[M:SS] text' lines so replies can cite moments."""
    lines = []
    for seg in segments:
        start = seg.start_seconds if hasattr(seg, 'start_seconds') else seg['start']
        text = seg.text if hasattr(seg, 'text') else seg['text']
        lines.append(f"[{format_timestamp(start)}] {text}")
    return "\n".join(lines)


def build_system_prompt(transcript: str, video_title: str | None = None) -> str:
    title_section = f'Video Title: "{video_title}"\n\n' if video_title else ""
    return _SYSTEM_PROMPT.format(title_section=title_section, transcript=transcript)


def fit_context(transcript: str, history: Sequence[ChatMessage], new_user_message: str,
                max_chars: int, video_title: str | None = None
                ) -> tuple[str, list[ChatMessage]]:
    """
    Shrink (transcript, history) until the whole request fits max_chars.
    Oldest history turns go first, then the transcript is cut from the end.
    Raises ChatError(CONTEXT_TOO_LONG) if even an empty context does not fit.
    """
    history = list(history)
    fixed = len(build_system_prompt("", video_title)) + len(new_user_message)

    def size() -> int:
        return fixed + len(transcript) + sum(len(m.content) for m in history)

    dropped = 0
    while history and size() > max_chars:
        history.pop(0)
        dropped += 1
    if dropped:
        logger.info("Dropped %d oldest chat turns to fit context budget", dropped)

    if size() > max_chars:
        room = max_chars - fixed - len(TRUNCATION_MARKER)
        if room <= 0:
            raise ChatError(ErrorCode.CONTEXT_TOO_LONG,
                            "Message is too long for the model's input budget",
                            retryable=False)
        logger.info("Truncating transcript from %d to %d chars", len(transcript), room)
        transcript = transcript[:room] + TRUNCATION_MARKER

    return transcript, history


def map_chat_error(status: int, body) -> ChatError:
    """Map an upstream HTTP error response to the chat taxonomy."""
    detail = extract_error_message(body)
    lowered = json.dumps(body).lower() if isinstance(body, dict) else str(body).lower()
    too_long = "context" in lowered or "too long" in lowered or ("maximum" in lowered and "tokens" in lowered)
    if status == 413 or (status == 400 and too_long):
        return ChatError(ErrorCode.CONTEXT_TOO_LONG,
                         "The conversation is too long. Trim the history and resend.",
                         retryable=False)
    code = classify_http_status(status)
    if code == ErrorCode.RATE_LIMIT:
        return ChatError(code, "Chat rate limit exceeded. Please try again later.")
    if code == ErrorCode.AUTHENTICATION:
        return ChatError(code, f"Chat service rejected credentials ({status})", retryable=False)
    return ChatError(code, f"Chat service returned {status}: {detail}")


def iter_sse_content(lines: Iterable) -> Iterator[str]:
    """Yield delta text from server-sent 'data:' lines of a streamed completion."""
    for line in lines:
        if isinstance(line, bytes):
            line = line.decode('utf-8', errors='replace')
        if not line or not line.startswith('data:'):
            continue
        payload = line[len('data:'):].strip()
        if payload == '[DONE]':
            return
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Skipping unparseable stream event: %r", payload[:80])
            continue
        if 'error' in event:
            raise ChatError(ErrorCode.API_ERROR,
                            f"Chat stream error: {extract_error_message(event)}")
        for choice in event.get('choices') or []:
            content = (choice.get('delta') or {}).get('content')
            if content:
                yield content


class ChatEngine:
    """Answers questions about one transcript, streaming or buffered."""

    def __init__(self, api_key: str | None, base_url: str = OPENAI_API_BASE,
                 model: str = CHAT_MODEL, timeout: float = CHAT_TIMEOUT_SEC,
                 max_context_chars: int = MAX_CONTEXT_CHARS,
                 session: requests.Session | None = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.timeout = timeout
        self.max_context_chars = max_context_chars
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: dict) -> "ChatEngine":
        return cls(
            api_key=config.get('openai_api_key'),
            base_url=config.get('openai_base_url', OPENAI_API_BASE),
            model=config.get('chat_model', CHAT_MODEL),
            timeout=config.get('chat_timeout_sec', CHAT_TIMEOUT_SEC),
            max_context_chars=config.get('max_context_chars', MAX_CONTEXT_CHARS),
        )

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def build_messages(self, transcript: str, history: Sequence[ChatMessage],
                       new_user_message: str, video_title: str | None = None) -> list[dict]:
        transcript, history = fit_context(transcript, history, new_user_message,
                                          self.max_context_chars, video_title)
        messages = [{"role": "system", "content": build_system_prompt(transcript, video_title)}]
        for msg in history:
            if msg.role not in (MessageRole.USER, MessageRole.ASSISTANT):
                raise ValueError(f"Unsupported chat role: {msg.role!r}")
            messages.append({"role": msg.role, "content": msg.content})
        messages.append({"role": MessageRole.USER, "content": new_user_message})
        return messages

    def stream_reply(self, transcript: str, history: Sequence[ChatMessage],
                     new_user_message: str, video_title: str | None = None) -> Iterator[str]:
        """
        Lazily stream the assistant reply as text chunks.
        Nothing is sent until the first chunk is requested.
        """
        messages = self.build_messages(transcript, history, new_user_message, video_title)
        if not self.api_key:
            raise ChatError(ErrorCode.AUTHENTICATION, "Chat API key not configured",
                            retryable=False)

        try:
            resp = self.session.post(
                self.endpoint,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"model": self.model, "messages": messages, "stream": True},
                stream=True,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            raise ChatError(ErrorCode.API_ERROR, f"Chat request timed out after {self.timeout:.0f}s")
        except requests.exceptions.RequestException as e:
            raise ChatError(ErrorCode.API_ERROR, f"Chat request failed: {type(e).__name__}")

        with resp:
            if resp.status_code != 200:
                try:
                    body = resp.json()
                except ValueError:
                    body = resp.text
                raise map_chat_error(resp.status_code, body)
            try:
                yield from iter_sse_content(resp.iter_lines())
            except requests.exceptions.RequestException as e:
                raise ChatError(ErrorCode.API_ERROR,
                                f"Chat stream interrupted: {type(e).__name__}")

    def complete_reply(self, transcript: str, history: Sequence[ChatMessage],
                       new_user_message: str, video_title: str | None = None) -> str:
        """Return the whole reply; drains stream_reply()."""
        return "".join(self.stream_reply(transcript, history, new_user_message, video_title))
