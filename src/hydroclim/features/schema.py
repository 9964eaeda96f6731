#!/usr/bin/env python3
"""hydroclim.features.schema

Fixed band schemas per sensor and the per-image zonal record.

Each sensor's output bands are declared once as a NamedTuple. Building a record
from a band mapping that is missing a band or carries an unknown one raises
TypeError, so a band-name typo fails loudly instead of producing an empty column.

A band value of None means "absent" (no valid pixels). It is never 0.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, NamedTuple, Optional, Tuple, Type


class RadarValues(NamedTuple):
    VV: Optional[float]
    VH: Optional[float]


class OpticalValues(NamedTuple):
    NDMI: Optional[float]
    NDVI: Optional[float]
    NDWI: Optional[float]


class SoilMoistureValues(NamedTuple):
    soil_moisture: Optional[float]


class PrecipitationValues(NamedTuple):
    precipitation_mm: Optional[float]


class ZonalRecord(NamedTuple):
    date: str
    values: Tuple[Optional[float], ...]

    @property
    def is_complete(self) -> bool:
        return all(v is not None for v in self.values)

    def as_row(self) -> List[Any]:
        return [self.date, *self.values]


@dataclass(frozen=True)
class SensorSchema:
    tag: str
    values_type: Type[tuple]

    @property
    def bands(self) -> Tuple[str, ...]:
        return tuple(self.values_type._fields)  # type: ignore[attr-defined]

    @property
    def columns(self) -> List[str]:
        return ["date", *self.bands]

    def record(self, date: str, values: Mapping[str, Optional[float]]) -> ZonalRecord:
        unknown = sorted(set(values) - set(self.bands))
        missing = sorted(set(self.bands) - set(values))
        if unknown or missing:
            raise TypeError(
                f"{self.tag} record bands mismatch: unknown={unknown} missing={missing}"
            )
        return ZonalRecord(date=date, values=self.values_type(**values))


RADAR = SensorSchema("S1", RadarValues)
OPTICAL = SensorSchema("S2", OpticalValues)
SOIL_MOISTURE = SensorSchema("ERA5_SM", SoilMoistureValues)
PRECIPITATION = SensorSchema("ERA5_PR", PrecipitationValues)

# Export order per region
SENSORS: Tuple[SensorSchema, ...] = (RADAR, OPTICAL, SOIL_MOISTURE, PRECIPITATION)
