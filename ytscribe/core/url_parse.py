"""
Video platform URL parsing and validation.
"""

import re
from urllib.parse import urlparse, parse_qs

from ytscribe.core.constants import (
    YOUTUBE_URL_PATTERNS, VIDEO_ID_PATTERN, CANONICAL_WATCH_URL, ErrorCode,
)
from ytscribe.core.error_codes import IngestError

_VIDEO_ID_RE = re.compile(rf'^{VIDEO_ID_PATTERN}$')
_COMPILED_PATTERNS = [re.compile(p) for p in YOUTUBE_URL_PATTERNS]
_WATCH_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com", "music.youtube.com"}


def extract_video_id(url: str) -> str | None:
    """
    Extract the 11-character video id from a YouTube URL.
    Returns None if the URL is not a valid YouTube URL.
    """
    if not isinstance(url, str):
        return None
    url = url.strip()
    if not url:
        return None

    for pattern in _COMPILED_PATTERNS:
        m = pattern.search(url)
        if m:
            return m.group(1)

    # Fallback: watch pages whose 'v' parameter the patterns did not reach
    try:
        parsed = urlparse(url if '://' in url else f"https://{url}")
    except ValueError:
        return None
    if parsed.netloc.lower() in _WATCH_HOSTS and parsed.path == "/watch":
        v = parse_qs(parsed.query).get('v', [None])[0]
        if v and _VIDEO_ID_RE.match(v):
            return v

    return None


def validate_video_url(url: str) -> str:
    """
    Validate a YouTube URL and return the video id.
    Raises IngestError(INVALID_URL) if invalid.
    """
    video_id = extract_video_id(url)
    if not video_id:
        raise IngestError(ErrorCode.INVALID_URL, f"Not a valid YouTube URL: {url}")
    return video_id


def is_video_url(url: str) -> bool:
    """Quick check if a string looks like a YouTube URL."""
    return extract_video_id(url) is not None


def canonical_url(video_id: str) -> str:
    """Watch-page URL for a video id; equivalent URL forms collapse to this."""
    return CANONICAL_WATCH_URL.format(video_id=video_id)
