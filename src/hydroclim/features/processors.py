#!/usr/bin/env python3
"""hydroclim.features.processors

Per-sensor collection processors: source query + per-image band algebra.

- RadarProcessor      → Sentinel-1 GRD, {VV, VH} in dB, speckle-smoothed
- OpticalProcessor    → Sentinel-2 SR, {NDMI, NDVI, NDWI}, SCL-masked
- ReanalysisProcessor → ERA5-Land hourly at a fixed hour, returned as two
                        independent collections (soil moisture, precipitation)

Processors only describe collections; nothing is read until the collection is
reduced. Query errors (unknown catalog, invalid window) surface immediately as
SourceUnavailable.
"""

from __future__ import annotations

from typing import List, NamedTuple

from hydroclim.config import OpticalConfig, RadarConfig, ReanalysisConfig, Region, TimeWindow
from hydroclim.deadline import Deadline
from hydroclim.features.schema import OPTICAL, PRECIPITATION, RADAR, SOIL_MOISTURE
from hydroclim.geo.algebra import focal_median, normalized_difference, quality_mask, scale, to_decibels
from hydroclim.ingest.raster import Filter, ImageCollection, RasterImage
from hydroclim.ingest.source import RasterSource


class CollectionProcessor:
    def __init__(self, source: RasterSource) -> None:
        self.source = source

    def filters(self) -> List[Filter]:
        return []

    def process(self, region: Region, window: TimeWindow):
        raise NotImplementedError


class RadarProcessor(CollectionProcessor):
    def __init__(self, source: RasterSource, config: RadarConfig = RadarConfig()) -> None:
        super().__init__(source)
        if len(config.polarizations) != len(RADAR.bands):
            raise ValueError(f"Radar needs {len(RADAR.bands)} polarizations, got {config.polarizations}")
        self.config = config

    def filters(self) -> List[Filter]:
        cfg = self.config
        out = [Filter.eq("instrumentMode", cfg.instrument_mode)]
        out += [Filter.list_contains("transmitterReceiverPolarisation", p) for p in cfg.polarizations]
        out.append(Filter.eq("orbitProperties_pass", cfg.orbit_pass))
        return out

    def _smooth(self, image: RasterImage, deadline: Deadline) -> RasterImage:
        return focal_median(image, self.config.speckle_radius_m, names=RADAR.bands, deadline=deadline)

    def process(self, region: Region, window: TimeWindow) -> ImageCollection:
        cfg = self.config
        collection = self.source.query(cfg.catalog, region.geometry, window, self.filters())
        collection = collection.select(cfg.polarizations)
        if cfg.linear_units:
            collection = collection.map(to_decibels)
        return collection.map_with_deadline(self._smooth)


class OpticalProcessor(CollectionProcessor):
    def __init__(self, source: RasterSource, config: OpticalConfig = OpticalConfig()) -> None:
        super().__init__(source)
        names = tuple(name for name, _, _ in config.indices)
        if names != OPTICAL.bands:
            raise ValueError(f"Optical indices must be {OPTICAL.bands}, got {names}")
        self.config = config

    def filters(self) -> List[Filter]:
        return [Filter.lt(self.config.cloud_cover_property, self.config.cloud_cover_max)]

    def _prepare(self, image: RasterImage) -> RasterImage:
        cfg = self.config
        keep = quality_mask(image, cfg.quality_band, cfg.exclude_codes)
        indices = {
            name: normalized_difference(image, a, b, name).band(name) for name, a, b in cfg.indices
        }
        return image.with_bands(indices).update_mask(keep)

    def process(self, region: Region, window: TimeWindow) -> ImageCollection:
        collection = self.source.query(self.config.catalog, region.geometry, window, self.filters())
        return collection.map(self._prepare)


class ReanalysisPair(NamedTuple):
    soil_moisture: ImageCollection
    precipitation: ImageCollection


class ReanalysisProcessor(CollectionProcessor):
    def __init__(self, source: RasterSource, config: ReanalysisConfig = ReanalysisConfig()) -> None:
        super().__init__(source)
        self.config = config

    def filters(self) -> List[Filter]:
        return [Filter.hour_of_day(self.config.hour)]

    def _precipitation_mm(self, image: RasterImage) -> RasterImage:
        return scale(image, self.config.precipitation_scale).rename(PRECIPITATION.bands)

    def process(self, region: Region, window: TimeWindow) -> ReanalysisPair:
        cfg = self.config
        base = self.source.query(cfg.catalog, region.geometry, window, self.filters())
        soil_moisture = base.select([cfg.soil_moisture_band]).map(
            lambda img: img.rename(SOIL_MOISTURE.bands)
        )
        precipitation = base.select([cfg.precipitation_band]).map(self._precipitation_mm)
        return ReanalysisPair(soil_moisture=soil_moisture, precipitation=precipitation)
