"""
Logging configuration for blobwiki.

Keep HTTP client chatter out of the way by default.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_FILENAME = "blobwiki-ops.log"


def configure_quiet_mode(quiet: bool = True):
    """
    Silence transport-level logging from httpx and httpcore.

    Args:
        quiet: If True, only warnings and errors from those libraries get through.
    """
    level = logging.WARNING if quiet else logging.NOTSET
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(level)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    # Re-enable warnings
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("blobwiki", "httpx"):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(directory):
    """Configure a persistent operations log.

    Writes to {directory}/blobwiki-ops.log using a rotating file handler
    (1MB max, 3 backups). Returns the handler so it can be removed on close.
    """
    log_path = Path(directory) / OPS_LOG_FILENAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    wiki_logger = logging.getLogger("blobwiki")
    wiki_logger.addHandler(handler)
    # Let INFO through even if nothing else configured the logger
    if wiki_logger.level == logging.NOTSET or wiki_logger.level > logging.INFO:
        wiki_logger.setLevel(logging.INFO)

    return handler
