"""
YouTube metadata fetching via yt-dlp.
"""

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ytscribe.core.security_utils import run_subprocess_capture
from ytscribe.core.error_codes import AcquisitionError
from ytscribe.core.download_audio import cookie_args, map_ytdlp_error
from ytscribe.core.constants import ErrorCode, METADATA_TIMEOUT_SEC

logger = logging.getLogger(__name__)


@dataclass
class VideoMetadata:
    id: str
    title: Optional[str] = None
    duration_seconds: Optional[float] = None
    thumbnail_url: Optional[str] = None
    channel_name: Optional[str] = None
    upload_date: Optional[str] = None


def parse_metadata(data: dict) -> VideoMetadata:
    duration = data.get('duration')
    try:
        duration = float(duration) if duration is not None else None
    except (TypeError, ValueError):
        duration = None
    return VideoMetadata(
        id=data.get('id', ''),
        title=data.get('title'),
        duration_seconds=duration,
        thumbnail_url=data.get('thumbnail'),
        channel_name=data.get('channel') or data.get('uploader'),
        upload_date=data.get('upload_date'),
    )


def fetch_metadata(video_url: str, cookies_file: str | Path | None = None,
                   timeout: float = METADATA_TIMEOUT_SEC) -> VideoMetadata:
    """Fetch video metadata using yt-dlp --dump-json."""
    args = [
        "yt-dlp",
        *cookie_args(cookies_file),
        "--dump-json",
        "--no-playlist",
        "--no-warnings",
        "--skip-download",
        video_url,
    ]

    try:
        result = run_subprocess_capture(args, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise AcquisitionError(ErrorCode.DOWNLOAD_FAILED,
                               f"yt-dlp metadata fetch timed out after {timeout:.0f}s")
    except OSError as e:
        raise AcquisitionError(ErrorCode.DOWNLOAD_FAILED, f"yt-dlp metadata fetch failed: {e}")

    if result.returncode != 0:
        raise map_ytdlp_error(video_url, result.returncode, result.stderr)

    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise AcquisitionError(ErrorCode.DOWNLOAD_FAILED, f"Failed to parse yt-dlp JSON: {e}")

    return parse_metadata(data)
