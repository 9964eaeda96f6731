#!/usr/bin/env python3
"""hydroclim.ingest.raster

In-memory raster model shared by every subsystem.

- RasterImage: named bands (masked 2D float arrays) on one grid, plus properties.
  A masked pixel is absent; absent is never stored as 0.
- Filter: property predicates used by raster source queries.
- ImageCollection: a lazy description (loader + stage chain). Nothing is read
  or computed until the collection is iterated, and each stage only ever sees
  one image at a time.

Images are immutable: every transform returns a new RasterImage.
"""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Sequence, Tuple

import numpy as np
from rasterio.crs import CRS
from rasterio.transform import Affine, array_bounds
from rasterio.warp import transform_bounds

from hydroclim.deadline import Deadline

TIME_START = "system:time_start"

# Approximate metres per degree, used to express geographic pixel sizes in metres
_M_PER_DEG_LAT = 110_574.0
_M_PER_DEG_LON_EQUATOR = 111_320.0


def _as_masked(arr: Any, nodata: Optional[float] = None) -> np.ma.MaskedArray:
    """Coerce to a float64 masked array with a full boolean mask (NaN and nodata masked)."""
    out = np.ma.array(arr, dtype="float64", copy=True)
    mask = np.ma.getmaskarray(out) | np.isnan(out.filled(np.nan))
    if nodata is not None and not np.isnan(nodata):
        mask |= out.filled(np.nan) == nodata
    return np.ma.array(out.filled(np.nan), mask=mask)


def timestamp_ms(when: dt.datetime) -> int:
    """Milliseconds since epoch. Naive datetimes are taken as UTC."""
    if when.tzinfo is None:
        when = when.replace(tzinfo=dt.timezone.utc)
    return int(round(when.timestamp() * 1000))


@dataclass(frozen=True)
class RasterImage:
    bands: Mapping[str, np.ma.MaskedArray]
    transform: Affine
    crs: CRS = field(default_factory=lambda: CRS.from_epsg(4326))
    properties: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.bands:
            raise ValueError("RasterImage needs at least one band")
        bands = {str(k): _as_masked(v) for k, v in self.bands.items()}
        shapes = {b.shape for b in bands.values()}
        if len(shapes) != 1 or len(next(iter(shapes))) != 2:
            raise ValueError(f"All bands must share one 2D shape, got {shapes}")
        object.__setattr__(self, "bands", bands)
        object.__setattr__(self, "crs", CRS.from_user_input(self.crs))
        object.__setattr__(self, "properties", dict(self.properties))

    # -- construction ---------------------------------------------------------

    @classmethod
    def from_arrays(
        cls,
        arrays: Mapping[str, Any],
        *,
        transform: Affine,
        crs: Any = "EPSG:4326",
        timestamp: Optional[dt.datetime] = None,
        properties: Optional[Mapping[str, Any]] = None,
        nodata: Optional[float] = None,
    ) -> "RasterImage":
        props = dict(properties or {})
        if timestamp is not None:
            props[TIME_START] = timestamp_ms(timestamp)
        bands = {name: _as_masked(a, nodata) for name, a in arrays.items()}
        return cls(bands=bands, transform=transform, crs=crs, properties=props)

    # -- metadata -------------------------------------------------------------

    @property
    def band_names(self) -> Tuple[str, ...]:
        return tuple(self.bands.keys())

    @property
    def shape(self) -> Tuple[int, int]:
        return next(iter(self.bands.values())).shape

    @property
    def time_start(self) -> int:
        if TIME_START not in self.properties:
            raise KeyError(f"Image has no {TIME_START} property")
        return int(self.properties[TIME_START])

    @property
    def timestamp(self) -> dt.datetime:
        return dt.datetime.fromtimestamp(self.time_start / 1000.0, tz=dt.timezone.utc)

    def date_string(self) -> str:
        return self.timestamp.strftime("%Y-%m-%d")

    def get(self, key: str, default: Any = None) -> Any:
        return self.properties.get(key, default)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """(xmin, ymin, xmax, ymax) in the image CRS."""
        h, w = self.shape
        west, south, east, north = array_bounds(h, w, self.transform)
        return (west, south, east, north)

    def bounds_lonlat(self) -> Tuple[float, float, float, float]:
        if self.crs == CRS.from_epsg(4326):
            return self.bounds
        return tuple(transform_bounds(self.crs, "EPSG:4326", *self.bounds, densify_pts=21))  # type: ignore[return-value]

    def pixel_size_m(self) -> Tuple[float, float]:
        """Pixel width/height in metres (geographic grids use the centre latitude)."""
        px, py = abs(self.transform.a), abs(self.transform.e)
        if not self.crs.is_geographic:
            return (px, py)
        _, south, _, north = self.bounds
        lat = math.radians((south + north) / 2.0)
        return (px * _M_PER_DEG_LON_EQUATOR * max(math.cos(lat), 1e-6), py * _M_PER_DEG_LAT)

    # -- band access ----------------------------------------------------------

    def band(self, name: str) -> np.ma.MaskedArray:
        if name not in self.bands:
            raise KeyError(f"Band {name!r} not in image (have {list(self.bands)})")
        return self.bands[name]

    def with_bands(self, bands: Mapping[str, Any]) -> "RasterImage":
        return replace(self, bands=dict(bands))

    def select(self, names: Sequence[str]) -> "RasterImage":
        return self.with_bands({n: self.band(n) for n in names})

    def rename(self, names: Sequence[str]) -> "RasterImage":
        if len(names) != len(self.bands):
            raise ValueError(f"rename needs {len(self.bands)} names, got {len(names)}")
        return self.with_bands(dict(zip(names, self.bands.values())))

    def update_mask(self, keep: np.ndarray) -> "RasterImage":
        """Mask every band wherever `keep` is False (absent, never zero)."""
        keep = np.asarray(keep, dtype=bool)
        if keep.shape != self.shape:
            raise ValueError(f"mask shape {keep.shape} != image shape {self.shape}")
        return self.with_bands({
            n: np.ma.array(b.data, mask=np.ma.getmaskarray(b) | ~keep) for n, b in self.bands.items()
        })


# -----------------------------------------------------------------------------
# Query filters
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Filter:
    """A predicate over image properties, mirroring the catalog filter vocabulary."""

    prop: str
    op: str
    value: Any

    @classmethod
    def eq(cls, prop: str, value: Any) -> "Filter":
        return cls(prop, "eq", value)

    @classmethod
    def lt(cls, prop: str, value: float) -> "Filter":
        return cls(prop, "lt", value)

    @classmethod
    def gt(cls, prop: str, value: float) -> "Filter":
        return cls(prop, "gt", value)

    @classmethod
    def list_contains(cls, prop: str, value: Any) -> "Filter":
        return cls(prop, "list_contains", value)

    @classmethod
    def hour_of_day(cls, hour: int) -> "Filter":
        """Keep images whose UTC acquisition hour equals `hour`."""
        return cls(TIME_START, "hour", int(hour))

    def matches(self, properties: Mapping[str, Any]) -> bool:
        """Evaluate against an image's properties (no pixel access needed)."""
        if self.op == "hour":
            if TIME_START not in properties:
                return False
            when = dt.datetime.fromtimestamp(int(properties[TIME_START]) / 1000.0, tz=dt.timezone.utc)
            return when.hour == self.value
        if self.prop not in properties:
            return False
        actual = properties[self.prop]
        if self.op == "eq":
            return actual == self.value
        if self.op == "list_contains":
            return isinstance(actual, (list, tuple)) and self.value in actual
        try:
            if self.op == "lt":
                return float(actual) < float(self.value)
            if self.op == "gt":
                return float(actual) > float(self.value)
        except (TypeError, ValueError):
            return False
        raise ValueError(f"Unknown filter op: {self.op}")


# -----------------------------------------------------------------------------
# Lazy collections
# -----------------------------------------------------------------------------

Loader = Callable[[Deadline], Iterable[RasterImage]]
Stage = Tuple[str, Callable[[RasterImage], Any]]


class ImageCollection:
    """Loader + stage chain, evaluated one image at a time.

    The loader must yield images in ascending time order. Stages are applied in
    the order they were added; `map` returns a new image, `filter` drops it.
    `map_with_deadline` stages also receive the evaluation deadline.
    """

    def __init__(self, loader: Loader, stages: Tuple[Stage, ...] = (), name: str = "") -> None:
        self._loader = loader
        self._stages = stages
        self.name = name

    @classmethod
    def from_images(cls, images: Iterable[RasterImage], name: str = "") -> "ImageCollection":
        ordered = sorted(images, key=lambda img: img.time_start)
        return cls(lambda deadline: iter(ordered), name=name)

    def _with_stage(self, kind: str, fn: Callable[[RasterImage], Any]) -> "ImageCollection":
        return ImageCollection(self._loader, self._stages + ((kind, fn),), self.name)

    def map(self, fn: Callable[[RasterImage], RasterImage]) -> "ImageCollection":
        return self._with_stage("map", fn)

    def map_with_deadline(self, fn: Callable[[RasterImage, Deadline], RasterImage]) -> "ImageCollection":
        """Like `map`, for long per-image work that checks the deadline itself."""
        return self._with_stage("map_deadline", fn)

    def filter(self, predicate: Callable[[RasterImage], bool]) -> "ImageCollection":
        return self._with_stage("filter", predicate)

    def select(self, names: Sequence[str]) -> "ImageCollection":
        names = tuple(names)
        return self.map(lambda img: img.select(names))

    def evaluate(self, deadline: Optional[Deadline] = None) -> Iterator[RasterImage]:
        deadline = deadline or Deadline.unbounded()
        for image in self._loader(deadline):
            deadline.check(f"evaluating {self.name or 'collection'}")
            for kind, fn in self._stages:
                if kind == "filter":
                    if not fn(image):
                        break
                elif kind == "map_deadline":
                    image = fn(image, deadline)
                else:
                    image = fn(image)
            else:
                yield image

    def __iter__(self) -> Iterator[RasterImage]:
        return self.evaluate()

    def to_list(self, deadline: Optional[Deadline] = None) -> list:
        return list(self.evaluate(deadline))

    def size(self, deadline: Optional[Deadline] = None) -> int:
        return sum(1 for _ in self.evaluate(deadline))
