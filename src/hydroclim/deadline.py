#!/usr/bin/env python3
"""hydroclim.deadline

Per-task timeout and cancellation, checked cooperatively.

Raster queries and reductions are the only steps that can hang, so they call
`Deadline.check()` at the query boundary and before each image. Nothing is
written until a task finishes, so aborting at a check leaves no partial output.
"""

from __future__ import annotations

import threading
import time
from typing import Optional

from hydroclim.errors import SourceUnavailable, TaskCancelled


class Deadline:
    def __init__(
        self,
        timeout_s: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        label: str = "task",
    ) -> None:
        self.timeout_s = timeout_s
        self.label = label
        self._cancel_event = cancel_event
        self._expires_at = time.monotonic() + timeout_s if timeout_s is not None else None

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls()

    @property
    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def check(self, stage: str) -> None:
        """Raise if the task was cancelled or ran out of time."""
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise TaskCancelled(f"{self.label} cancelled during {stage}")
        if self._expires_at is not None and time.monotonic() >= self._expires_at:
            # Timeouts are reported, not retried
            raise SourceUnavailable(
                f"{self.label} timed out during {stage} after {self.timeout_s:.0f}s",
                transient=False,
            )
