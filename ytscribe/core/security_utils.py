"""
Security utilities for YTScribe.
- Safe subprocess execution (argument arrays only)
- Private per-run scratch workspaces (path traversal protection)
"""

import re
import uuid
import pathlib
import subprocess
import logging

logger = logging.getLogger(__name__)

_SAFE_COMPONENT = re.compile(r'[^a-zA-Z0-9_-]')


# ── Scratch workspace safety ──────────────────────────────────────────

def scratch_workspace(scratch_root: pathlib.Path, video_id: str) -> pathlib.Path:
    """
    Build a unique scratch folder for one pipeline run.  Enforces that
    realpath(result) stays under realpath(scratch_root); the random suffix
    keeps two runs of the same video from sharing files.
    """
    safe_id = _SAFE_COMPONENT.sub('_', str(video_id))[:64] or "video"
    candidate = scratch_root / f"{safe_id}-{uuid.uuid4().hex[:8]}"

    real_root = scratch_root.resolve(strict=False)
    real_candidate = candidate.resolve(strict=False)
    if real_root not in real_candidate.parents:
        raise ValueError(f"Scratch path escapes root: {candidate}")

    candidate.mkdir(parents=True, exist_ok=False)
    return candidate


# ── Subprocess safety ─────────────────────────────────────────────────

def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")

    # Force shell=False: drop any caller-supplied value, then set it once
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: float = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )
