"""
Diagnostics: tool version detection and system checks.
"""

import shutil
import logging
import subprocess

from ytscribe.core.security_utils import run_subprocess_capture

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("yt-dlp", "ffmpeg")


def _tool_version(args: list[str]) -> str:
    try:
        result = run_subprocess_capture(args, timeout=10)
        if result.returncode == 0:
            lines = result.stdout.strip().splitlines()
            return lines[0] if lines else "unknown"
        return f"Error (rc={result.returncode})"
    except FileNotFoundError:
        return "Not installed"
    except (OSError, subprocess.TimeoutExpired) as e:
        return f"Error: {e}"


def get_ytdlp_version() -> str:
    """Return yt-dlp version string, or error message."""
    return _tool_version(["yt-dlp", "--version"])


def get_ffmpeg_version() -> str:
    """Return ffmpeg version string, or error message."""
    return _tool_version(["ffmpeg", "-version"])


def missing_tools() -> list[str]:
    return [tool for tool in REQUIRED_TOOLS if not shutil.which(tool)]


def get_diagnostics() -> dict:
    """Gather all diagnostic information."""
    return {
        "ytdlp_version": get_ytdlp_version(),
        "ffmpeg_version": get_ffmpeg_version(),
        "missing_tools": missing_tools(),
    }
