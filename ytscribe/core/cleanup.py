"""
Cleanup: delete a run's scratch workspace after the pipeline exits.
"""

import shutil
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

_AUDIO_DIRS = ('source', 'conditioned')


def cleanup_job_artifacts(job_workspace: Path | None, keep_debug: bool = False):
    """
    Delete a run's scratch artifacts (success or failure).

    Audio (source/, conditioned/) is always removed.  Unless keep_debug is
    set, the workspace itself goes too.
    """
    if job_workspace is None or not job_workspace.exists():
        return

    for dirname in _AUDIO_DIRS:
        dir_path = job_workspace / dirname
        if dir_path.exists():
            try:
                shutil.rmtree(dir_path)
                logger.debug("Deleted: %s", dir_path)
            except OSError as e:
                logger.warning("Failed to delete %s: %s", dir_path, e)

    if keep_debug:
        return

    try:
        shutil.rmtree(job_workspace)
        logger.debug("Removed workspace: %s", job_workspace)
    except OSError as e:
        logger.warning("Failed to remove workspace %s: %s", job_workspace, e)
