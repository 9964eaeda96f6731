#!/usr/bin/env python3
"""hydroclim.geo.zonal

Zonal reduction: one area-weighted mean per band per image over a region.

How a reduction works:
1. The region geometry is projected into the image CRS.
2. Bands are regridded to the requested scale (block mean of valid pixels when
   coarsening, pixel replication when refining).
3. Each pixel gets a weight equal to the fraction of its area inside the
   geometry (supersampled rasterization), so edge pixels count partially.
4. The mean is taken over pixels that are valid and have weight > 0. Partial
   overlap is fine; zero valid pixels gives None ("absent"), never 0.

Pixel cap (best effort):
    When the covered pixel count exceeds `max_pixels`, the grid is coarsened by
    powers of two until it fits and an approximate mean is returned. This trades
    accuracy for a reduction that always completes. With best_effort=False the
    reduction fails with SourceUnavailable instead.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from rasterio.crs import CRS
from rasterio.features import geometry_mask
from rasterio.transform import Affine
from rasterio.warp import transform_geom
from shapely.geometry import box, mapping, shape
from shapely.geometry.base import BaseGeometry

from hydroclim.config import ReductionConfig, Region
from hydroclim.deadline import Deadline
from hydroclim.errors import SourceUnavailable
from hydroclim.features.schema import SensorSchema, ZonalRecord
from hydroclim.ingest.raster import ImageCollection, RasterImage

logger = logging.getLogger(__name__)

_WGS84 = CRS.from_epsg(4326)


# -----------------------------------------------------------------------------
# Grid helpers
# -----------------------------------------------------------------------------

def _coarsen(band: np.ma.MaskedArray, k: int) -> np.ma.MaskedArray:
    """k x k block mean over valid pixels; blocks with no valid pixel are masked."""
    h, w = band.shape
    H, W = math.ceil(h / k), math.ceil(w / k)
    data = np.zeros((H * k, W * k))
    valid = np.zeros((H * k, W * k), dtype=bool)
    data[:h, :w] = band.filled(0.0)
    valid[:h, :w] = ~np.ma.getmaskarray(band)
    data = np.where(valid, data, 0.0)
    sums = data.reshape(H, k, W, k).sum(axis=(1, 3))
    counts = valid.reshape(H, k, W, k).sum(axis=(1, 3))
    with np.errstate(divide="ignore", invalid="ignore"):
        means = sums / counts
    return np.ma.array(means, mask=counts == 0)


def _refine(band: np.ma.MaskedArray, k: int) -> np.ma.MaskedArray:
    data = np.repeat(np.repeat(band.filled(np.nan), k, axis=0), k, axis=1)
    mask = np.repeat(np.repeat(np.ma.getmaskarray(band), k, axis=0), k, axis=1)
    return np.ma.array(data, mask=mask)


def _regrid(
    bands: Mapping[str, np.ma.MaskedArray], transform: Affine, ratio: float
) -> Tuple[Dict[str, np.ma.MaskedArray], Affine]:
    """Resample to target/native pixel size `ratio`, in whole-pixel steps."""
    if ratio >= 1.5:
        k = int(round(ratio))
        return {n: _coarsen(b, k) for n, b in bands.items()}, transform @ Affine.scale(k)
    if ratio <= 1 / 1.5:
        k = int(round(1 / ratio))
        return {n: _refine(b, k) for n, b in bands.items()}, transform @ Affine.scale(1.0 / k)
    return dict(bands), transform


def coverage_weights(
    geometry: BaseGeometry, out_shape: Tuple[int, int], transform: Affine, supersample: int = 4
) -> np.ndarray:
    """Fraction (0..1) of each pixel's area inside the geometry."""
    h, w = out_shape
    s = max(1, int(supersample))
    inside = geometry_mask(
        [mapping(geometry)],
        out_shape=(h * s, w * s),
        transform=transform @ Affine.scale(1.0 / s),
        invert=True,
    )
    return inside.reshape(h, s, w, s).mean(axis=(1, 3))


def weighted_mean(band: np.ma.MaskedArray, weights: np.ndarray) -> Optional[float]:
    valid = ~np.ma.getmaskarray(band) & (weights > 0)
    if not valid.any():
        return None
    w = weights[valid]
    return float(np.sum(band.data[valid] * w) / np.sum(w))


# -----------------------------------------------------------------------------
# Reducer
# -----------------------------------------------------------------------------

class ZonalReducer:
    def __init__(
        self,
        scale_m: float = 100.0,
        max_pixels: int = 10_000_000_000,
        best_effort: bool = True,
        supersample: int = 4,
    ) -> None:
        if scale_m <= 0:
            raise ValueError(f"scale_m must be positive, got {scale_m}")
        if max_pixels < 1:
            raise ValueError(f"max_pixels must be >= 1, got {max_pixels}")
        self.scale_m = float(scale_m)
        self.max_pixels = int(max_pixels)
        self.best_effort = best_effort
        self.supersample = supersample

    @classmethod
    def from_config(cls, cfg: ReductionConfig) -> "ZonalReducer":
        return cls(scale_m=cfg.scale_m, max_pixels=cfg.max_pixels, best_effort=cfg.best_effort)

    def _geometry_in(self, geometry: BaseGeometry, image: RasterImage) -> BaseGeometry:
        if image.crs == _WGS84:
            return geometry
        return shape(transform_geom(_WGS84, image.crs, mapping(geometry)))

    def _estimate_pixels(self, geom: BaseGeometry, image: RasterImage, ratio: float) -> float:
        """Covered pixel count at the target scale, from areas alone (nothing rasterized)."""
        inside = geom.intersection(box(*image.bounds))
        return inside.area / abs(image.transform.determinant) / (ratio * ratio)

    def reduce_image(
        self,
        image: RasterImage,
        geometry: BaseGeometry,
        band_names: Sequence[str],
        deadline: Optional[Deadline] = None,
    ) -> Dict[str, Optional[float]]:
        """Area-weighted mean of each band over `geometry` (given in EPSG:4326)."""
        deadline = deadline or Deadline.unbounded()
        geom = self._geometry_in(geometry, image)
        bands = {n: image.band(n) for n in band_names}

        px_x, px_y = image.pixel_size_m()
        ratio = self.scale_m / max(px_x, px_y)

        estimate = self._estimate_pixels(geom, image, ratio)
        level = 0
        while estimate / (4 ** level) > self.max_pixels:
            if not self.best_effort:
                raise SourceUnavailable(
                    f"Reduction needs ~{int(estimate)} pixels, over max_pixels={self.max_pixels}"
                )
            level += 1

        while True:
            deadline.check(f"reducing at {self.scale_m * 2 ** level:.0f} m")
            grid, transform = _regrid(bands, image.transform, ratio * (2 ** level))
            shape_ = next(iter(grid.values())).shape
            weights = coverage_weights(geom, shape_, transform, self.supersample)
            covered = int(np.count_nonzero(weights))
            if covered <= self.max_pixels:
                break
            if not self.best_effort:
                raise SourceUnavailable(
                    f"Reduction needs {covered} pixels, over max_pixels={self.max_pixels}"
                )
            level += 1

        if level:
            logger.info(
                f"Pixel cap {self.max_pixels} hit; reduced at {self.scale_m * 2 ** level:.0f} m "
                f"instead of {self.scale_m:.0f} m"
            )

        return {n: weighted_mean(b, weights) for n, b in grid.items()}

    def reduce(
        self,
        collection: ImageCollection,
        region: Region,
        schema: SensorSchema,
        deadline: Optional[Deadline] = None,
    ) -> List[ZonalRecord]:
        """One record per image, keyed by the image's UTC calendar date."""
        deadline = deadline or Deadline.unbounded()
        records: List[ZonalRecord] = []
        for image in collection.evaluate(deadline):
            deadline.check(f"reducing {region.id}/{schema.tag}")
            values = self.reduce_image(image, region.geometry, schema.bands, deadline)
            records.append(schema.record(image.date_string(), values))
        return records
