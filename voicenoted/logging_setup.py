"""Logging configuration for voicenoted."""

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(level: str, log_file: Optional[Path] = None) -> None:
    """Configure root logging to stderr and, optionally, a log file.

    Args:
        level: Logging level name (already validated by DaemonConfig).
        log_file: File to append log records to.
    """
    root = logging.getLogger()
    root.setLevel(level)

    # Drop handlers from a previous call so records are not duplicated
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError as e:
            root.warning(f"Could not open log file {log_file}: {e}")

    # faster-whisper is chatty at INFO
    logging.getLogger("faster_whisper").setLevel(max(root.level, logging.WARNING))
