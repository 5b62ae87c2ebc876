"""
Logging utilities for the Windows multi-arch container builder.
"""

import logging
import sys
from typing import Optional


def setup_logging(
    verbose: bool = False, log_file: Optional[str] = "windows-builder.log"
) -> logging.Logger:
    """
    Set up logging configuration.

    Builds run concurrently, so every record carries the thread name
    (``build-<version>``) it was logged from.

    Args:
        verbose: Enable verbose (DEBUG) logging
        log_file: Path to log file (None logs to stdout only)

    Returns:
        Logger instance
    """
    level = logging.DEBUG if verbose else logging.INFO

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - [%(threadName)s] %(message)s",
        handlers=handlers,
    )

    # Keep request-level chatter out of verbose build logs
    for name in ("urllib3", "google.auth"):
        logging.getLogger(name).setLevel(logging.WARNING)

    return logging.getLogger(__name__)
