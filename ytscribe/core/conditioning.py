"""
Audio conditioning using ffmpeg.
Re-encodes audio to mono MP3 at decreasing bitrates until it fits under the
transcription service's upload ceiling.
"""

import logging
import subprocess
from pathlib import Path

from ytscribe.core.security_utils import run_subprocess_capture
from ytscribe.core.error_codes import ConditioningError
from ytscribe.core.constants import (
    ErrorCode, CONDITIONED_CHANNELS, CONDITIONED_FORMAT, COMPRESSION_PRESETS,
    ENCODE_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)


def encode_audio(input_path: Path, output_path: Path, bitrate: str,
                 sample_rate: int, timeout: float = ENCODE_TIMEOUT_SEC) -> Path:
    """Re-encode input_path to a mono MP3 at the given bitrate."""
    output_path.parent.mkdir(parents=True, exist_ok=True)

    args = [
        "ffmpeg",
        "-y",                           # overwrite
        "-i", str(input_path),
        "-vn",                          # drop any video/cover-art stream
        "-ac", str(CONDITIONED_CHANNELS),
        "-ar", str(sample_rate),
        "-b:a", bitrate,
        "-codec:a", "libmp3lame",
        str(output_path),
    ]

    try:
        result = run_subprocess_capture(args, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise ConditioningError(ErrorCode.COMPRESSION_FAILED,
                                f"ffmpeg timed out after {timeout:.0f}s at {bitrate}")
    except OSError as e:
        raise ConditioningError(ErrorCode.COMPRESSION_FAILED, f"ffmpeg could not run: {e}")

    if result.returncode != 0:
        stderr = result.stderr or ""
        raise ConditioningError(ErrorCode.COMPRESSION_FAILED,
                                f"ffmpeg failed (rc={result.returncode}): {stderr[-300:]}")

    if not output_path.exists():
        raise ConditioningError(ErrorCode.COMPRESSION_FAILED,
                                f"Encoded file not created: {output_path}")

    return output_path


def condition_audio(input_path: Path, ceiling_bytes: int,
                    presets: list[tuple[str, int]] | None = None,
                    output_dir: Path | None = None,
                    timeout: float = ENCODE_TIMEOUT_SEC) -> Path:
    """
    Return a path to audio no larger than ceiling_bytes.

    Files already under the ceiling are returned unchanged.  Otherwise each
    preset re-encodes the original input, in order, until one fits.
    Raises ConditioningError(COMPRESSION_FAILED) when the floor preset is
    still too large or an encode fails.
    """
    input_path = Path(input_path)
    presets = COMPRESSION_PRESETS if presets is None else presets
    output_dir = Path(output_dir) if output_dir else input_path.parent / "conditioned"

    size = input_path.stat().st_size
    if size <= ceiling_bytes:
        logger.info("Audio %s is %d bytes, under ceiling %d — no conditioning needed",
                    input_path.name, size, ceiling_bytes)
        return input_path

    if not presets:
        raise ConditioningError(ErrorCode.COMPRESSION_FAILED,
                                f"{size} bytes exceeds {ceiling_bytes} and no presets are configured")

    for bitrate, sample_rate in presets:
        output_path = output_dir / f"conditioned_{bitrate}.{CONDITIONED_FORMAT}"
        encode_audio(input_path, output_path, bitrate, sample_rate, timeout=timeout)
        encoded_size = output_path.stat().st_size
        logger.info("Re-encoded %s at %s/%dHz: %d → %d bytes",
                    input_path.name, bitrate, sample_rate, size, encoded_size)
        if encoded_size <= ceiling_bytes:
            return output_path
        output_path.unlink(missing_ok=True)

    floor_bitrate = presets[-1][0]
    raise ConditioningError(ErrorCode.COMPRESSION_FAILED,
                            f"Audio still exceeds {ceiling_bytes} bytes at floor preset {floor_bitrate}")

