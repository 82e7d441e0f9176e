#!/usr/bin/env python3
"""
YTScribe — Main entry point.
Starts the HTTP service that ingests video URLs into timestamped transcripts.
"""

import sys
import os
import logging
import traceback
from pathlib import Path
from datetime import datetime

PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ytscribe.core.constants import APP_NAME, APP_VERSION
from ytscribe.core.config import AppConfig
from ytscribe.core.diagnostics import missing_tools, get_ytdlp_version, get_ffmpeg_version

logger = logging.getLogger("ytscribe")


def setup_logging(config: AppConfig) -> Path:
    """Log to <log_dir>/ytscribe.log and stderr."""
    config.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = config.log_dir / "ytscribe.log"
    logging.basicConfig(
        level=getattr(logging, config.get('log_level', 'INFO')),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding="utf-8"),
            logging.StreamHandler(sys.stderr),
        ],
    )
    return log_file


def check_prerequisites():
    """Exit early when yt-dlp or ffmpeg are not on PATH."""
    missing = missing_tools()
    if missing:
        logger.error("Missing required tools: %s. PATH = %s",
                     ", ".join(missing), os.environ.get("PATH", ""))
        sys.exit(1)

    logger.info("yt-dlp %s", get_ytdlp_version())
    logger.info("ffmpeg: %s", get_ffmpeg_version())


def main():
    config = AppConfig()
    log_file = setup_logging(config)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Log file: %s", log_file)
    logger.info("Database: %s", config.db_path)
    logger.info("=" * 60)

    if not config.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set; transcription and chat will fail")

    try:
        check_prerequisites()

        import uvicorn
        from ytscribe.core.db_sqlite import Database
        from ytscribe.core.ingestion import IngestionOrchestrator
        from ytscribe.web.api import create_app

        settings = config.as_dict()
        db = Database(config.db_path)
        orchestrator = IngestionOrchestrator(db, settings)
        orchestrator.resume_pending()
        app = create_app(settings, db=db, orchestrator=orchestrator)

        try:
            uvicorn.run(app, host=settings['host'], port=settings['port'], log_config=None)
        finally:
            orchestrator.shutdown(wait=False)
            db.close()
    except Exception as e:
        logger.critical("Fatal error: %s: %s\n%s", type(e).__name__, e, traceback.format_exc())
        sys.exit(1)


if __name__ == "__main__":
    main()
