"""Logging setup for the transcoding pipeline."""

import logging
import logging.handlers
import os
import threading

logger = logging.getLogger("ktx2_pipeline")

# 10 MB max per log file, keep 3 rotated backups
_LOG_MAX_BYTES = 10 * 1024 * 1024
_LOG_BACKUP_COUNT = 3
_setup_lock = threading.Lock()

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [T%(thread)d]: %(message)s"


def setup_logging(level: str = "INFO", log_file: str = None, force: bool = False):
    """Configure logging without clobbering host-app handlers by default."""
    with _setup_lock:
        _setup_logging_impl(level, log_file, force)


def _setup_logging_impl(level: str, log_file: str, force: bool):
    handlers = [logging.StreamHandler()]
    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file, maxBytes=_LOG_MAX_BYTES, backupCount=_LOG_BACKUP_COUNT,
            encoding="utf-8",
        ))
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        print(f"Warning: Invalid log level '{level}', defaulting to INFO")
        numeric_level = logging.INFO

    root = logging.getLogger()
    if force or not root.handlers:
        logging.basicConfig(
            level=numeric_level,
            format=_LOG_FORMAT,
            handlers=handlers,
            force=force,
        )
        logger.debug("Logging initialized (level=%s, file=%s)", level, log_file)
        return

    # Embedded mode: only touch our own logger hierarchy.
    pipeline_logger = logging.getLogger("ktx2_pipeline")
    pipeline_logger.setLevel(numeric_level)
    if log_file:
        existing_files = {
            getattr(h, "baseFilename", None)
            for h in pipeline_logger.handlers
            if isinstance(h, logging.FileHandler)
        }
        file_handler = handlers[1]
        if getattr(file_handler, "baseFilename", None) not in existing_files:
            logger.info("Adding file handler: %s", file_handler.baseFilename)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            pipeline_logger.addHandler(file_handler)
        else:
            file_handler.close()
