#!/usr/bin/env python3
"""hydroclim.logging_utils

Logging setup and timing helpers for long-running export runs.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Configure root logging once for CLI runs and return the package logger."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    return logging.getLogger("hydroclim")


@contextmanager
def timer(task_name: str, logger: Optional[logging.Logger] = None) -> Iterator[None]:
    """Log how long the wrapped block took.

    Example:
        >>> with timer("Ramis_S1"):
        ...     run_task()
        Ramis_S1 completed in 12.40 seconds
    """
    log = logger or logging.getLogger("hydroclim")
    start = time.monotonic()
    try:
        yield
    finally:
        log.info(f"{task_name} completed in {time.monotonic() - start:.2f} seconds")
