#!/usr/bin/env python3
"""hydroclim.features.table

Turn zonal records into the per-(region, sensor) output table.

Rules:
- A record with any absent band carries no usable signal and is dropped.
- Remaining rows are sorted by date (stable, so same-day rows keep the order
  they were produced in).
- Columns are exactly ["date", *bands] in schema order.

Same-day duplicates are kept by default. Radar and optical catalogs can have
more than one pass per day; reanalysis cannot because of its hour filter.
`first` and `mean` collapse same-day rows instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import groupby
from typing import Iterable, List, Optional, Tuple

import pandas as pd

from hydroclim.config import DUPLICATE_POLICIES
from hydroclim.features.schema import SensorSchema, ZonalRecord


@dataclass(frozen=True)
class OutputTable:
    schema: SensorSchema
    rows: Tuple[ZonalRecord, ...]
    source_images: int
    dropped: int = 0

    @property
    def columns(self) -> List[str]:
        return self.schema.columns

    @property
    def is_empty_result(self) -> bool:
        """No images at all after filtering (as opposed to images that were all masked)."""
        return self.source_images == 0

    @property
    def is_fully_masked(self) -> bool:
        return self.source_images > 0 and not self.rows

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([r.as_row() for r in self.rows], columns=self.columns)


def drop_absent(records: Iterable[ZonalRecord]) -> List[ZonalRecord]:
    return [r for r in records if r.is_complete]


def _collapse(records: List[ZonalRecord], schema: SensorSchema, policy: str) -> List[ZonalRecord]:
    out: List[ZonalRecord] = []
    for date, group in groupby(records, key=lambda r: r.date):
        same_day = list(group)
        if policy == "first" or len(same_day) == 1:
            out.append(same_day[0])
            continue
        means = [sum(col) / len(col) for col in zip(*(r.values for r in same_day))]
        out.append(ZonalRecord(date=date, values=schema.values_type(*means)))
    return out


def assemble(
    records: Iterable[ZonalRecord],
    schema: SensorSchema,
    *,
    source_images: Optional[int] = None,
    duplicates: str = "keep",
) -> OutputTable:
    """Build an OutputTable from one record per image.

    `source_images` defaults to the number of records (the reducer emits one per image).
    """
    if duplicates not in DUPLICATE_POLICIES:
        raise ValueError(f"duplicates must be one of {DUPLICATE_POLICIES}, got {duplicates!r}")
    records = list(records)
    complete = drop_absent(records)
    ordered = sorted(complete, key=lambda r: r.date)
    if duplicates != "keep":
        ordered = _collapse(ordered, schema, duplicates)
    return OutputTable(
        schema=schema,
        rows=tuple(ordered),
        source_images=len(records) if source_images is None else source_images,
        dropped=len(records) - len(complete),
    )
