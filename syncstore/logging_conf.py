"""Logging configuration with Betterstack support."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from logtail import LogtailHandler

from syncstore import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s"

_configured = False


def _betterstack_handler(formatter: logging.Formatter) -> Optional[logging.Handler]:
    if not settings.BETTERSTACK_SOURCE_TOKEN:
        return None
    handler_kwargs = {"source_token": settings.BETTERSTACK_SOURCE_TOKEN}
    if settings.BETTERSTACK_INGEST_HOST:
        handler_kwargs["host"] = settings.BETTERSTACK_INGEST_HOST
    handler = LogtailHandler(**handler_kwargs)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    return handler


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """Configure the syncstore logger.

    Handlers go on the package logger, not the root logger, so an embedding
    application keeps its own logging setup. Calling again replaces them.
    """
    global _configured

    sync_logger = logging.getLogger("syncstore")
    sync_logger.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    for handler in list(sync_logger.handlers):
        sync_logger.removeHandler(handler)
        handler.close()
    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    sync_logger.addHandler(console_handler)

    log_file = log_file or settings.LOG_FILE
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        sync_logger.addHandler(file_handler)

    try:
        betterstack = _betterstack_handler(formatter)
    except Exception as e:
        sync_logger.warning(f"Failed to initialize BetterStack logging: {e}")
        betterstack = None
    if betterstack is not None:
        sync_logger.addHandler(betterstack)
        host_info = settings.BETTERSTACK_INGEST_HOST or "default (in.logs.betterstack.com)"
        if not _configured:
            sync_logger.info(f"BetterStack logging enabled (host: {host_info})")

    sync_logger.propagate = False
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    _configured = True
    return sync_logger


logger = setup_logging()
