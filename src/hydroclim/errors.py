#!/usr/bin/env python3
"""hydroclim.errors

Exception types shared across hydroclim subsystems.

Only the export orchestrator catches these; everything below it lets them
propagate so a failed (region, sensor) task is reported with its real cause.
"""

from __future__ import annotations


class HydroclimError(Exception):
    """Base class for all pipeline errors."""


class SourceUnavailable(HydroclimError):
    """A raster query or reduction could not complete.

    `transient` marks failures worth retrying (I/O hiccups, busy service).
    Unknown catalogs, invalid windows and timeouts are not transient.
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class SinkFailure(HydroclimError):
    """The destination refused or failed to write a table."""


class TaskCancelled(HydroclimError):
    """The task was aborted before it finished."""
