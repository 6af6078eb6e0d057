"""
Centralized logging manager for the application.

Every component obtains its logger through ``get_logger(prefix="[Component]")``.
Handlers live on the shared application logger:

- a console StreamHandler on stdout, always present;
- a per-worker file handler (``{LOG_DIR}/worker_{pid}.log``) when ``LOG_TO_FILE`` is set;
- a LokiLoggerHandler when ``LOKI_ENABLED`` is set.

Component loggers are children of the application logger and carry a prefix
filter, so records propagate to the shared handlers with their tag applied.

Loki Downtime Handling:
----------------------
Records sent while Loki is unreachable are dropped by the Loki handler; the
console and worker file handlers still receive them.
"""

import logging
import os
import sys

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler

from family_hub.config import settings

APP_LOGGER_NAME: str = "family_hub"
LOKI_TAGS: dict[str, str] = {"app": settings.APP_NAME, "env": settings.ENV}
LOG_LEVEL: str = settings.LOG_LEVEL.upper()

_formatter = logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def _ensure_console_handler(logger: logging.Logger) -> bool:
    """
    Ensure logger has a StreamHandler for console output.

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(_formatter)
    logger.addHandler(console_handler)
    return True


def get_worker_log_filename() -> str:
    return os.path.join(settings.LOG_DIR, f"worker_{os.getpid()}.log")


def _ensure_worker_file_handler(logger: logging.Logger) -> bool:
    log_filename = os.path.abspath(get_worker_log_filename())
    if any(
        isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == log_filename
        for h in logger.handlers
    ):
        return False
    os.makedirs(os.path.dirname(log_filename), exist_ok=True)
    file_handler = logging.FileHandler(log_filename)
    file_handler.setFormatter(_formatter)
    logger.addHandler(file_handler)
    return True


def _ensure_loki_handler(logger: logging.Logger) -> bool:
    if any(isinstance(h, LokiLoggerHandler) for h in logger.handlers):
        return False
    try:
        loki_handler = LokiLoggerHandler(
            url=settings.LOKI_URL,
            labels=LOKI_TAGS,
            auth=None,
            compressed=settings.LOKI_COMPRESS,
        )
    except (OSError, ValueError) as e:
        logger.error("[LoggingManager] Failed to attach LokiLoggerHandler: %s", e, exc_info=True)
        return False
    logger.addHandler(loki_handler)
    logger.info("[LoggingManager] LokiLoggerHandler attached (url=%s, labels=%s)", settings.LOKI_URL, LOKI_TAGS)
    return True


def _configure_app_logger() -> logging.Logger:
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    app_logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    if _ensure_console_handler(app_logger):
        app_logger.debug("[LoggingManager] Console StreamHandler attached")
    if settings.LOG_TO_FILE and _ensure_worker_file_handler(app_logger):
        app_logger.debug("[LoggingManager] Worker log file %s attached", get_worker_log_filename())
    if settings.LOKI_ENABLED:
        _ensure_loki_handler(app_logger)
    return app_logger


class PrefixFilter(logging.Filter):
    """Prepend a component tag to every record emitted through a component logger."""

    def __init__(self, prefix: str):
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "_prefix_applied", False):
            record.msg = f"{self.prefix} {record.msg}"
            record._prefix_applied = True
        return True


def get_logger(name: str = APP_LOGGER_NAME, prefix: str = "") -> logging.Logger:
    """
    Return a configured logger.

    Args:
        name: Logger name; defaults to the application logger.
        prefix: Component tag such as "[MergeRequestManager]".
    """
    app_logger = _configure_app_logger()
    if not prefix and name == APP_LOGGER_NAME:
        return app_logger

    child_name = prefix.strip("[]").replace(" ", "_") or name
    if not child_name.startswith(APP_LOGGER_NAME):
        child_name = f"{APP_LOGGER_NAME}.{child_name}"
    logger = logging.getLogger(child_name)

    if prefix and not any(isinstance(f, PrefixFilter) for f in logger.filters):
        logger.addFilter(PrefixFilter(prefix))
    return logger
