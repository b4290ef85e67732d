"""Logging setup shared by the controller, the Management API and the CLI"""

import contextvars
import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

# ANSI color codes
BLUE = "\033[94m"
RED = "\033[91m"
WHITE = "\033[97m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RESET = "\033[0m"

LOGGER_NAME = "postgres-controller"

LOG_FORMAT = (
    '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", '
    '"correlation_id": "%(correlation_id)s", "message": "%(message)s"}'
)

correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")


class CorrelationIdFilter(logging.Filter):
    """Attach the current correlation id to every record"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get()
        return True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if not name:
        return logging.getLogger(LOGGER_NAME)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def configure_logging(level: str = "INFO"):
    """Configure structured logging on stdout"""
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.basicConfig(level=level, handlers=[handler], force=True)

    # The kubernetes client is chatty at DEBUG and logs request bodies
    logging.getLogger("kubernetes").setLevel(max(logging.INFO, logging.getLevelName(level)))


@contextmanager
def correlated(value: str) -> Iterator[str]:
    """Run a block with the given correlation id bound"""
    token = correlation_id.set(value)
    try:
        yield value
    finally:
        correlation_id.reset(token)
