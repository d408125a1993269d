"""Run a callable again after failures, waiting longer each time."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from .config import RetryConfig

log = logging.getLogger(__name__)

T = TypeVar("T")


def with_retry(config: RetryConfig, fn: Callable[[], T]) -> T | None:
    """Call ``fn`` up to ``config.max_attempts`` times and return its result.

    The delay after attempt n is ``config.delay * n``, capped at
    ``config.max_delay``. The last failure is re-raised.
    """
    for attempt in range(1, config.max_attempts + 1):
        log.info("Attempt %d of %d", attempt, config.max_attempts)
        try:
            return fn()
        except Exception:
            if attempt == config.max_attempts:
                raise
        delay = min(config.delay * attempt, config.max_delay)
        log.info("Waiting %ss before next attempt", delay)
        time.sleep(delay)
    return None