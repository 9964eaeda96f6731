#!/usr/bin/env python3
"""hydroclim.ingest.source

Raster sources: the query side of the pipeline.

Contract:
    query(catalog_id, bounds, window, filters) -> ImageCollection

- Unknown catalog ids and invalid windows raise SourceUnavailable right away;
  they never come back as an empty collection.
- Returned collections are lazy. Files are scanned and pixels read only when
  the collection is evaluated (i.e. when it is reduced).
- Images are yielded in ascending acquisition time.

Two implementations:
- InMemoryRasterSource: catalogs of ready-made RasterImages (tests, notebooks).
- GeoTiffCatalogSource: catalogs of local GeoTIFFs described in sources.yaml,
  read as AOI windows with rasterio.

sources.yaml layout:
    catalogs:
      COPERNICUS/S1_GRD:
        local_glob: data/raw/s1/*.tif
        timestamp_regex: '(?P<ts>\\d{8}T\\d{6})'
        timestamp_format: '%Y%m%dT%H%M%S'
        bands: [VV, VH, angle]              # optional, else band descriptions
        list_properties: [transmitterReceiverPolarisation]
"""

from __future__ import annotations

import datetime as dt
import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Sequence, Tuple

import rasterio
from rasterio.errors import RasterioError
from rasterio.warp import transform_bounds
from rasterio.windows import Window, from_bounds
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry

from hydroclim.config import TimeWindow
from hydroclim.deadline import Deadline
from hydroclim.errors import SourceUnavailable
from hydroclim.ingest.raster import TIME_START, Filter, ImageCollection, RasterImage, timestamp_ms

logger = logging.getLogger(__name__)


class RasterSource:
    """Base class for raster catalogs."""

    def catalogs(self) -> List[str]:
        raise NotImplementedError

    def query(
        self,
        catalog_id: str,
        bounds: BaseGeometry,
        window: TimeWindow,
        filters: Sequence[Filter] = (),
    ) -> ImageCollection:
        raise NotImplementedError

    def _check_query(self, catalog_id: str, bounds: BaseGeometry, window: TimeWindow) -> None:
        if catalog_id not in self.catalogs():
            raise SourceUnavailable(f"Unknown catalog: {catalog_id}")
        if not window.is_valid:
            raise SourceUnavailable(f"Invalid time window: {window.start} .. {window.end}")
        if bounds is None or bounds.is_empty or not bounds.is_valid:
            raise SourceUnavailable(f"Invalid query geometry for {catalog_id}")


def _accepts(properties: Mapping[str, Any], footprint: Tuple[float, float, float, float],
             bounds: BaseGeometry, window: TimeWindow, filters: Sequence[Filter]) -> bool:
    if TIME_START not in properties:
        return False
    when = dt.datetime.fromtimestamp(int(properties[TIME_START]) / 1000.0, tz=dt.timezone.utc)
    if not window.contains(when):
        return False
    if not box(*footprint).intersects(bounds):
        return False
    return all(f.matches(properties) for f in filters)


# -----------------------------------------------------------------------------
# In-memory source
# -----------------------------------------------------------------------------

class InMemoryRasterSource(RasterSource):
    def __init__(self, catalogs: Mapping[str, Iterable[RasterImage]]) -> None:
        self._catalogs: Dict[str, Tuple[RasterImage, ...]] = {
            cid: tuple(sorted(images, key=lambda img: img.time_start)) for cid, images in catalogs.items()
        }

    def catalogs(self) -> List[str]:
        return sorted(self._catalogs)

    def query(self, catalog_id, bounds, window, filters=()):
        self._check_query(catalog_id, bounds, window)
        images = self._catalogs[catalog_id]
        filters = tuple(filters)

        def loader(deadline: Deadline) -> Iterator[RasterImage]:
            for image in images:
                if _accepts(image.properties, image.bounds_lonlat(), bounds, window, filters):
                    yield image

        return ImageCollection(loader, name=catalog_id)


# -----------------------------------------------------------------------------
# GeoTIFF catalog source
# -----------------------------------------------------------------------------

def _coerce_tag(value: str) -> Any:
    """GeoTIFF tags are strings; give numeric ones back their number."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return value


def _window_for(bounds_in_crs: Tuple[float, float, float, float], transform) -> Window:
    """Integer window covering every pixel the bounds touch."""
    win = from_bounds(*bounds_in_crs, transform=transform)
    col0 = math.floor(win.col_off)
    row0 = math.floor(win.row_off)
    col1 = math.ceil(win.col_off + win.width)
    row1 = math.ceil(win.row_off + win.height)
    return Window(col0, row0, max(1, col1 - col0), max(1, row1 - row0))


@dataclass(frozen=True)
class _Entry:
    path: Path
    properties: Dict[str, Any]
    footprint: Tuple[float, float, float, float]


class GeoTiffCatalogSource(RasterSource):
    def __init__(self, sources_yaml: Mapping[str, Any], base_dir: Path = Path(".")) -> None:
        catalogs = sources_yaml.get("catalogs")
        if not isinstance(catalogs, dict):
            raise SystemExit("sources.yaml must contain top-level 'catalogs:' mapping")
        self._catalogs: Dict[str, Dict[str, Any]] = {}
        for cid, cfg in catalogs.items():
            if not isinstance(cfg, dict) or not str(cfg.get("local_glob", "")).strip():
                raise SystemExit(f"sources.yaml catalog {cid} needs a local_glob")
            self._catalogs[str(cid)] = cfg
        self.base_dir = Path(base_dir)

    def catalogs(self) -> List[str]:
        return sorted(self._catalogs)

    def files(self, catalog_id: str) -> List[Path]:
        cfg = self._catalogs[catalog_id]
        return sorted(self.base_dir.glob(str(cfg["local_glob"])))

    def _timestamp(self, path: Path, tags: Mapping[str, str], cfg: Mapping[str, Any]) -> int:
        tag = str(cfg.get("timestamp_tag", TIME_START))
        if tag in tags:
            return int(float(tags[tag]))
        pattern = cfg.get("timestamp_regex")
        if pattern:
            m = re.search(str(pattern), path.name)
            if m:
                raw = m.group("ts") if "ts" in m.groupdict() else m.group(0)
                fmt = str(cfg.get("timestamp_format", "%Y%m%dT%H%M%S"))
                return timestamp_ms(dt.datetime.strptime(raw, fmt).replace(tzinfo=dt.timezone.utc))
        raise SourceUnavailable(f"Cannot determine acquisition time for {path}")

    def _scan(self, path: Path, cfg: Mapping[str, Any]) -> _Entry:
        list_keys = set(cfg.get("list_properties") or [])
        try:
            with rasterio.open(path) as src:
                tags = src.tags()
                footprint = tuple(src.bounds)
                if src.crs is None:
                    raise SourceUnavailable(f"Raster has no CRS: {path}")
                if src.crs.to_epsg() != 4326:
                    footprint = transform_bounds(src.crs, "EPSG:4326", *footprint, densify_pts=21)
        except RasterioError as e:
            raise SourceUnavailable(f"Failed to open {path}: {e}", transient=True) from e

        props: Dict[str, Any] = {}
        for key, value in tags.items():
            if key in list_keys:
                props[key] = [v.strip() for v in str(value).split(",") if v.strip()]
            else:
                props[key] = _coerce_tag(value)
        props[TIME_START] = self._timestamp(path, tags, cfg)
        props["source_path"] = str(path)
        return _Entry(path=path, properties=props, footprint=footprint)  # type: ignore[arg-type]

    def _read(self, entry: _Entry, bounds: BaseGeometry, cfg: Mapping[str, Any]) -> RasterImage:
        env_opts = {"GDAL_DISABLE_READDIR_ON_OPEN": "EMPTY_DIR"}
        try:
            with rasterio.Env(**env_opts):
                with rasterio.open(entry.path) as src:
                    aoi = bounds.bounds
                    if src.crs.to_epsg() != 4326:
                        aoi = transform_bounds("EPSG:4326", src.crs, *aoi, densify_pts=21)
                    win = _window_for(aoi, src.transform)
                    data = src.read(window=win, boundless=True, masked=True)
                    names = cfg.get("bands") or [
                        d if d else f"b{i + 1}" for i, d in enumerate(src.descriptions)
                    ]
                    if len(names) != data.shape[0]:
                        raise SourceUnavailable(
                            f"{entry.path} has {data.shape[0]} bands but catalog lists {len(names)}"
                        )
                    return RasterImage.from_arrays(
                        {str(n): data[i] for i, n in enumerate(names)},
                        transform=src.window_transform(win),
                        crs=src.crs,
                        properties=entry.properties,
                        nodata=src.nodata,
                    )
        except RasterioError as e:
            raise SourceUnavailable(f"Failed to read {entry.path}: {e}", transient=True) from e

    def query(self, catalog_id, bounds, window, filters=()):
        self._check_query(catalog_id, bounds, window)
        cfg = self._catalogs[catalog_id]
        filters = tuple(filters)

        def loader(deadline: Deadline) -> Iterator[RasterImage]:
            entries: List[_Entry] = []
            for path in self.files(catalog_id):
                deadline.check(f"scanning {catalog_id}")
                entry = self._scan(path, cfg)
                if _accepts(entry.properties, entry.footprint, bounds, window, filters):
                    entries.append(entry)
            entries.sort(key=lambda e: int(e.properties[TIME_START]))
            logger.debug(f"{catalog_id}: {len(entries)} images match query")
            for entry in entries:
                deadline.check(f"reading {entry.path.name}")
                yield self._read(entry, bounds, cfg)

        return ImageCollection(loader, name=catalog_id)
