"""
Logging utilities for internal use.

Usage:
    from llmtrail.internal.logger import get_logger
    log = get_logger(__name__)

Every logger returned by ``get_logger`` carries a rate limit filter: a given call site (file and line) emits at
most one record per ``LLMTRAIL_LOGGING_RATE`` seconds (60 by default, ``0`` disables the limit). The number of
records skipped in between is appended to the next emitted record, e.g.::

    WARNING DeliveryWriter queue full (limit is 10000), evicting oldest item [12 skipped]

Rate limiting is lifted while the ``llmtrail`` logger is set to ``DEBUG``, which is what ``Tracer(debug=True)``
does.
"""

import collections
import logging
import os
import time
from typing import DefaultDict
from typing import Tuple


SECOND = 1
MINUTE = 60 * SECOND
HOUR = 60 * MINUTE

ROOT_LOGGER_NAME = "llmtrail"


def get_logger(name: str) -> logging.Logger:
    """
    Retrieve or create a ``Logger`` instance with consistent behavior for internal use.

    Configure all loggers with a rate limiter filter to prevent excessive logging.
    """
    logger = logging.getLogger(name)
    # addFilter will only add the filter if it is not already present
    logger.addFilter(log_filter)
    logger.propagate = True
    return logger


# Class used for keeping track of a log lines current time bucket and the number of log lines skipped
class LoggingBucket:
    def __init__(self, bucket: float, skipped: int):
        self.bucket = bucket
        self.skipped = skipped

    def __repr__(self):
        return f"LoggingBucket({self.bucket}, {self.skipped})"

    def is_sampled(self, record: logging.LogRecord, rate: float) -> bool:
        current = time.monotonic()
        if current - self.bucket >= rate:
            self.bucket = current
            record.skipped = self.skipped
            self.skipped = 0
            return True
        self.skipped += 1
        return False


_MINF = float("-inf")

_buckets: DefaultDict[Tuple[str, int], LoggingBucket] = collections.defaultdict(lambda: LoggingBucket(_MINF, 0))

# DEV: `LLMTRAIL_LOGGING_RATE=0` means to disable all rate limiting
_rate_limit = int(os.getenv("LLMTRAIL_LOGGING_RATE", default=60))


def log_filter(record: logging.LogRecord) -> bool:
    """
    Function used to determine if a log record should be outputted or not (True = output, False = skip).
    """
    logger = logging.getLogger(record.name)
    if not _rate_limit or logger.getEffectiveLevel() == logging.DEBUG:
        return True
    key = (record.pathname, record.lineno)
    return _buckets[key].is_sampled(record, _rate_limit)


class LLMTrailFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        skipped = getattr(record, "skipped", 0)
        skip_str = f" [{skipped} skipped]" if skipped else ""
        return f"{record.levelname} {super().format(record)}{skip_str}"


def set_debug(enabled: bool) -> None:
    """Toggle debug output for every ``llmtrail`` logger."""
    root_logger.setLevel(logging.DEBUG if enabled else logging.NOTSET)


# setup the default formatter for all llmtrail loggers
root_logger = logging.getLogger(ROOT_LOGGER_NAME)
if not root_logger.handlers:
    root_logger.addHandler(logging.StreamHandler())
    root_logger.handlers[0].setFormatter(LLMTrailFormatter())
root_logger.propagate = True
