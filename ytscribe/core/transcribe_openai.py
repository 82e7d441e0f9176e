"""
OpenAI-compatible Speech-to-Text integration (Whisper, pre-recorded).
Requests segment-level timestamps and normalises the verbose_json response.
Includes exponential backoff for rate-limit (429) responses.
"""

import json
import logging
import math
import random
import time
from pathlib import Path

import requests

from ytscribe.core.error_codes import TranscriptionError, classify_http_status, extract_error_message
from ytscribe.core.models_sqlite import TranscriptionResult
from ytscribe.core.constants import (
    ErrorCode, OPENAI_API_BASE, TRANSCRIPTION_MODEL, TRANSCRIPTION_TIMEOUT_SEC,
    SUPPORTED_AUDIO_EXTENSIONS, RATE_LIMIT_RETRIES, RATE_LIMIT_BASE_DELAY,
)

logger = logging.getLogger(__name__)

_MIME_TYPES = {
    ".mp3": "audio/mpeg",
    ".mpga": "audio/mpeg",
    ".mpeg": "audio/mpeg",
    ".mp4": "audio/mp4",
    ".m4a": "audio/mp4",
    ".wav": "audio/wav",
    ".webm": "audio/webm",
}


def map_transcription_error(status: int, body) -> TranscriptionError:
    """Map an upstream HTTP error response to the transcription taxonomy."""
    code = classify_http_status(status)
    detail = extract_error_message(body)
    if code == ErrorCode.RATE_LIMIT:
        return TranscriptionError(code, "Transcription rate limit exceeded. Please try again later.")
    if code == ErrorCode.AUTHENTICATION:
        return TranscriptionError(code, f"Transcription service rejected credentials ({status})",
                                  retryable=False)
    return TranscriptionError(code, f"Transcription service returned {status}: {detail}")


def normalize_segments(raw_segments) -> list[dict]:
    """
    Defensive cleanup of third-party segments: strip text, drop entries with
    empty text, non-finite times or end <= start, order by start (stable).
    """
    segments = []
    for raw in raw_segments or []:
        try:
            start = float(raw.get('start'))
            end = float(raw.get('end'))
        except (AttributeError, TypeError, ValueError):
            logger.warning("Dropping malformed segment: %r", raw)
            continue
        text = str(raw.get('text') or '').strip()
        if not (math.isfinite(start) and math.isfinite(end)):
            logger.warning("Dropping segment with non-finite times: %r", raw)
            continue
        if not text or end <= start or start < 0:
            logger.warning("Dropping invalid segment start=%s end=%s text=%r", start, end, text[:40])
            continue
        segments.append({'start': start, 'end': end, 'text': text})
    segments.sort(key=lambda s: s['start'])
    return segments


def parse_transcription_response(data: dict) -> TranscriptionResult:
    """Map a verbose_json response into a TranscriptionResult."""
    if not isinstance(data, dict):
        raise TranscriptionError(ErrorCode.API_ERROR, "Transcription response is not a JSON object")

    segments = normalize_segments(data.get('segments'))
    if not segments:
        raise TranscriptionError(ErrorCode.API_ERROR,
                                 "Transcription response contained no timed segments",
                                 retryable=False)

    text = (data.get('text') or '').strip() or ' '.join(s['text'] for s in segments)
    try:
        duration = float(data.get('duration') or 0)
    except (TypeError, ValueError):
        duration = 0.0
    if duration <= 0:
        duration = segments[-1]['end']

    return TranscriptionResult(
        text=text,
        segments=segments,
        language=data.get('language') or 'en',
        duration_seconds=duration,
    )


class TranscriptionClient:
    """Uploads conditioned audio to a Whisper-compatible endpoint."""

    def __init__(self, api_key: str | None, base_url: str = OPENAI_API_BASE,
                 model: str = TRANSCRIPTION_MODEL,
                 timeout: float = TRANSCRIPTION_TIMEOUT_SEC,
                 max_rate_limit_retries: int = RATE_LIMIT_RETRIES,
                 session: requests.Session | None = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.timeout = timeout
        self.max_rate_limit_retries = max_rate_limit_retries
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: dict) -> "TranscriptionClient":
        return cls(
            api_key=config.get('openai_api_key'),
            base_url=config.get('openai_base_url', OPENAI_API_BASE),
            model=config.get('transcription_model', TRANSCRIPTION_MODEL),
            timeout=config.get('transcription_timeout_sec', TRANSCRIPTION_TIMEOUT_SEC),
            max_rate_limit_retries=config.get('rate_limit_retries', RATE_LIMIT_RETRIES),
        )

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/audio/transcriptions"

    def _check_input(self, audio_path: Path):
        """Reject missing files and unsupported containers before any network call."""
        if not audio_path.is_file():
            raise TranscriptionError(ErrorCode.FILE_NOT_FOUND,
                                     f"Audio file not found: {audio_path}")
        ext = audio_path.suffix.lower()
        if ext not in SUPPORTED_AUDIO_EXTENSIONS:
            raise TranscriptionError(
                ErrorCode.INVALID_AUDIO_FORMAT,
                f"Unsupported audio format: {ext or '(none)'}. "
                f"Supported formats: {', '.join(SUPPORTED_AUDIO_EXTENSIONS)}")

    def transcribe(self, audio_path: Path | str) -> TranscriptionResult:
        """
        Transcribe an audio file.
        Retries up to max_rate_limit_retries times with exponential backoff on
        429 responses, then raises TranscriptionError(RATE_LIMIT).
        """
        audio_path = Path(audio_path)
        self._check_input(audio_path)

        if not self.api_key:
            raise TranscriptionError(ErrorCode.AUTHENTICATION,
                                     "Transcription API key not configured", retryable=False)

        headers = {"Authorization": f"Bearer {self.api_key}"}
        data = [
            ("model", self.model),
            ("response_format", "verbose_json"),
            ("timestamp_granularities[]", "segment"),
        ]
        mime = _MIME_TYPES.get(audio_path.suffix.lower(), "application/octet-stream")

        for attempt in range(self.max_rate_limit_retries + 1):
            try:
                with open(audio_path, 'rb') as f:
                    resp = self.session.post(
                        self.endpoint,
                        headers=headers,
                        data=data,
                        files={"file": (audio_path.name, f, mime)},
                        timeout=self.timeout,
                    )
            except requests.exceptions.Timeout:
                raise TranscriptionError(ErrorCode.API_ERROR,
                                         f"Transcription request timed out after {self.timeout:.0f}s")
            except requests.exceptions.RequestException as e:
                raise TranscriptionError(ErrorCode.API_ERROR,
                                         f"Transcription request failed: {type(e).__name__}")

            if resp.status_code == 429 and attempt < self.max_rate_limit_retries:
                # Exponential backoff with jitter: 2s, 4s, 8s (+/- 10%)
                delay = RATE_LIMIT_BASE_DELAY * (2 ** attempt)
                delay *= 1 + random.uniform(-0.1, 0.1)
                logger.warning(
                    "Transcription rate limited (429) — retrying in %.1fs (attempt %d/%d)",
                    delay, attempt + 1, self.max_rate_limit_retries,
                )
                time.sleep(delay)
                continue

            if resp.status_code != 200:
                try:
                    body = resp.json()
                except ValueError:
                    body = resp.text
                raise map_transcription_error(resp.status_code, body)

            try:
                payload = resp.json()
            except (ValueError, json.JSONDecodeError):
                raise TranscriptionError(ErrorCode.API_ERROR,
                                         "Failed to parse transcription response JSON")

            result = parse_transcription_response(payload)
            logger.info("Transcribed %s: %d segments, language=%s, %.1fs",
                        audio_path.name, len(result.segments), result.language,
                        result.duration_seconds)
            return result

        # Should never reach here
        raise TranscriptionError(ErrorCode.RATE_LIMIT, "Transcription request exhausted retries")

    def verify_api_key(self) -> tuple[bool, str]:
        """
        Verify the API key with a lightweight request.
        Returns (success: bool, message: str).
        """
        if not self.api_key:
            return False, "No API key configured"
        try:
            resp = self.session.get(
                f"{self.base_url}/models",
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=10,
            )
        except requests.exceptions.Timeout:
            return False, "Network error — request timed out"
        except requests.exceptions.RequestException as e:
            return False, f"Network error: {type(e).__name__}"
        if resp.status_code == 200:
            return True, "Key verified"
        if resp.status_code in (401, 403):
            return False, "Key invalid or rejected"
        return False, f"Unexpected response: {resp.status_code}"
