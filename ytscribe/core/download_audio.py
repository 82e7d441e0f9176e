"""
Audio download via yt-dlp.
"""

import logging
import subprocess
from pathlib import Path

from ytscribe.core.security_utils import run_subprocess_capture
from ytscribe.core.error_codes import AcquisitionError
from ytscribe.core.constants import (
    ErrorCode, UNAVAILABLE_MARKERS, DOWNLOAD_AUDIO_FORMAT, DOWNLOAD_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)


def cookie_args(cookies_file: str | Path | None) -> list[str]:
    """yt-dlp arguments for an optional Netscape cookies file."""
    if cookies_file and Path(cookies_file).exists():
        return ["--cookies", str(cookies_file)]
    return []


def map_ytdlp_error(video_url: str, returncode: int, stderr: str) -> AcquisitionError:
    """
    Classify a failed yt-dlp invocation.
    Removed/private/age-restricted/geo-blocked videos are permanent
    (VideoUnavailable); everything else is a retryable DownloadFailed.
    """
    stderr = (stderr or "").strip()
    lowered = stderr.lower()
    if any(marker in lowered for marker in UNAVAILABLE_MARKERS):
        return AcquisitionError(ErrorCode.VIDEO_UNAVAILABLE,
                                f"Video unavailable ({video_url}): {stderr[:200]}",
                                retryable=False)
    return AcquisitionError(ErrorCode.DOWNLOAD_FAILED,
                            f"yt-dlp failed (rc={returncode}): {stderr[:300] or 'no output'}")


def download_audio(video_url: str, output_path: Path,
                   cookies_file: str | Path | None = None,
                   timeout: float = DOWNLOAD_TIMEOUT_SEC) -> None:
    """
    Download the best available audio-only stream to output_path.
    The file extension of output_path decides the extracted container.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    audio_format = output_path.suffix.lstrip('.') or DOWNLOAD_AUDIO_FORMAT

    args = [
        "yt-dlp",
        *cookie_args(cookies_file),
        "--no-playlist",
        "--no-warnings",
        "-f", "bestaudio/best",
        "--extract-audio",
        "--audio-format", audio_format,
        "--audio-quality", "0",
        "-o", str(output_path.with_suffix('')) + ".%(ext)s",
        video_url,
    ]

    try:
        result = run_subprocess_capture(args, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise AcquisitionError(ErrorCode.DOWNLOAD_FAILED,
                               f"Audio download timed out after {timeout:.0f}s",
                               retryable=True)
    except OSError as e:
        raise AcquisitionError(ErrorCode.DOWNLOAD_FAILED, f"Audio download failed: {e}")

    if result.returncode != 0:
        raise map_ytdlp_error(video_url, result.returncode, result.stderr or result.stdout)

    if not output_path.exists() or output_path.stat().st_size == 0:
        raise AcquisitionError(ErrorCode.DOWNLOAD_FAILED,
                               f"Audio file was not created at: {output_path}")

    logger.info("Downloaded audio: %s (%d bytes)", output_path, output_path.stat().st_size)
