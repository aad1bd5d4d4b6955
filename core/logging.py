"""
Logging configuration
"""

import json
import logging
import sys
from core.config import settings


class ContextFormatter(logging.Formatter):
    """Appends the structured error context passed as extra={"error_context": ...}"""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = getattr(record, "error_context", None)
        if context:
            message += " | " + json.dumps(context, default=str, sort_keys=True)
        return message


def setup_logging():
    """Configure application logging"""

    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ContextFormatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    logging.basicConfig(level=log_level, handlers=[handler])

    # Library loggers only report problems
    for name in ("sqlalchemy.engine", "sqlalchemy.pool", "apscheduler", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured at {settings.LOG_LEVEL} level")
