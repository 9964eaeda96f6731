#!/usr/bin/env python3
"""hydroclim.export.orchestrator

Drive every (region, sensor) export task and report on each.

Per task:
    process (query + band algebra) -> zonal reduce -> assemble table -> sink

Tasks share nothing writable, so they run on a bounded thread pool sized to
what the raster source tolerates. A failing task is logged with its id and
reported; the rest keep going. Transient source errors are retried a few times
with exponential backoff; timeouts and cancellations are not retried.
"""

from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from hydroclim.config import PipelineConfig, Region
from hydroclim.deadline import Deadline
from hydroclim.errors import SourceUnavailable, TaskCancelled
from hydroclim.export.sink import CsvTableSink
from hydroclim.features.processors import OpticalProcessor, RadarProcessor, ReanalysisProcessor
from hydroclim.features.schema import OPTICAL, PRECIPITATION, RADAR, SENSORS, SOIL_MOISTURE, SensorSchema
from hydroclim.features.table import assemble
from hydroclim.geo.zonal import ZonalReducer
from hydroclim.ingest.raster import ImageCollection
from hydroclim.ingest.source import RasterSource
from hydroclim.logging_utils import timer

logger = logging.getLogger(__name__)


class TaskStatus(str, enum.Enum):
    OK = "ok"
    EMPTY = "empty"          # zero images after filtering
    MASKED = "masked"        # images found, every row dropped as absent
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ExportTask:
    region: Region
    schema: SensorSchema

    @property
    def name(self) -> str:
        return f"{self.region.id}_{self.schema.tag}"


@dataclass(frozen=True)
class TaskReport:
    task: str
    status: TaskStatus
    rows: int = 0
    source_images: int = 0
    attempts: int = 0
    path: Optional[Path] = None
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status in (TaskStatus.OK, TaskStatus.EMPTY, TaskStatus.MASKED)


class ExportOrchestrator:
    def __init__(
        self,
        source: RasterSource,
        sink: CsvTableSink,
        config: PipelineConfig,
        regions: Sequence[Region],
    ) -> None:
        self.sink = sink
        self.config = config
        self.regions = list(regions)
        self.radar = RadarProcessor(source, config.radar)
        self.optical = OpticalProcessor(source, config.optical)
        self.reanalysis = ReanalysisProcessor(source, config.reanalysis)
        self.reducer = ZonalReducer.from_config(config.reduction)
        self._cancel = threading.Event()

    def plan(self) -> List[ExportTask]:
        return [ExportTask(region, schema) for region in self.regions for schema in SENSORS]

    def cancel(self) -> None:
        """Ask running tasks to stop at their next check and skip pending ones."""
        self._cancel.set()

    def collection_for(self, task: ExportTask) -> ImageCollection:
        window = self.config.window
        if task.schema is RADAR:
            return self.radar.process(task.region, window)
        if task.schema is OPTICAL:
            return self.optical.process(task.region, window)
        if task.schema is SOIL_MOISTURE:
            return self.reanalysis.process(task.region, window).soil_moisture
        if task.schema is PRECIPITATION:
            return self.reanalysis.process(task.region, window).precipitation
        raise ValueError(f"No processor for sensor {task.schema.tag}")

    def _attempt(self, task: ExportTask, deadline: Deadline, attempts: int) -> TaskReport:
        deadline.check("query")
        collection = self.collection_for(task)
        records = self.reducer.reduce(collection, task.region, task.schema, deadline)
        table = assemble(records, task.schema, duplicates=self.config.export.duplicate_policy)

        # Last chance to abort before anything is written
        deadline.check("delivery")
        path = self.sink.write_table(table, task.name)

        if table.is_empty_result:
            status = TaskStatus.EMPTY
        elif table.is_fully_masked:
            status = TaskStatus.MASKED
        else:
            status = TaskStatus.OK
        return TaskReport(
            task=task.name,
            status=status,
            rows=len(table.rows),
            source_images=table.source_images,
            attempts=attempts,
            path=path,
        )

    def run_task(self, task: ExportTask) -> TaskReport:
        """Run one task to completion. Never raises; failures come back in the report."""
        cfg = self.config.export
        deadline = Deadline(cfg.task_timeout_s, self._cancel, label=task.name)
        attempt = 0
        while True:
            attempt += 1
            try:
                with timer(task.name, logger):
                    return self._attempt(task, deadline, attempt)
            except TaskCancelled as e:
                logger.warning(f"[{task.name}] {e}")
                return TaskReport(task.name, TaskStatus.CANCELLED, attempts=attempt, error=str(e))
            except SourceUnavailable as e:
                if e.transient and attempt <= cfg.max_retries:
                    wait = cfg.retry_delay_s * (2 ** (attempt - 1))
                    if deadline.remaining is not None:
                        # Never sleep past the task deadline
                        wait = min(wait, deadline.remaining)
                    logger.warning(f"[{task.name}] {e}; retrying in {wait:.1f}s ({attempt}/{cfg.max_retries})")
                    if self._cancel.wait(wait):
                        return TaskReport(task.name, TaskStatus.CANCELLED, attempts=attempt, error=str(e))
                    continue
                logger.error(f"[{task.name}] source unavailable: {e}")
                return TaskReport(task.name, TaskStatus.FAILED, attempts=attempt, error=str(e))
            except Exception as e:
                # Isolate the task: one broken (region, sensor) pair must not stop the run
                logger.exception(f"[{task.name}] failed")
                return TaskReport(
                    task.name, TaskStatus.FAILED, attempts=attempt, error=f"{type(e).__name__}: {e}"
                )

    def run(self, tasks: Optional[Sequence[ExportTask]] = None) -> List[TaskReport]:
        """Run tasks on the worker pool. Reports come back in plan order."""
        tasks = list(tasks) if tasks is not None else self.plan()
        if not tasks:
            return []

        reports: List[Optional[TaskReport]] = [None] * len(tasks)
        workers = min(self.config.export.max_workers, len(tasks))
        logger.info(f"Running {len(tasks)} export tasks on {workers} workers")

        with ThreadPoolExecutor(max_workers=workers) as ex:
            futures = {ex.submit(self.run_task, t): i for i, t in enumerate(tasks)}
            try:
                for fut in as_completed(futures):
                    idx = futures[fut]
                    reports[idx] = fut.result()
                    r = reports[idx]
                    logger.info(f"[{r.task}] {r.status.value} rows={r.rows} images={r.source_images}")
            except KeyboardInterrupt:
                # Running tasks stop at their next deadline check; the pool exit waits for them
                self.cancel()
                raise

        return [r for r in reports if r is not None]
