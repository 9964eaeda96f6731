#!/usr/bin/env python3
"""hydroclim.geo.algebra

Per-image band algebra. Every function takes one RasterImage and returns a new
one; nothing reads from or writes to any other image, so all of these are safe
to map over a collection in any order.

Absent pixels are carried as masks. Operations never turn "no data" into 0.
"""

from __future__ import annotations

import math
from typing import Iterable, Optional, Sequence

import numpy as np
from scipy import ndimage

from hydroclim.deadline import Deadline
from hydroclim.ingest.raster import RasterImage


# -----------------------------------------------------------------------------
# Speckle smoothing
# -----------------------------------------------------------------------------

# Rows per filtering strip; the deadline is checked between strips
_STRIP_ROWS = 512
# Pixels per gather when taking medians over partially valid neighbourhoods
_GATHER_CHUNK = 65_536


def _disk_footprint(rx: float, ry: float) -> np.ndarray:
    """Boolean (elliptical in pixel space) disk with radii rx, ry in pixels."""
    nx, ny = int(math.floor(rx)), int(math.floor(ry))
    yy, xx = np.mgrid[-ny:ny + 1, -nx:nx + 1]
    return (xx / max(rx, 1e-9)) ** 2 + (yy / max(ry, 1e-9)) ** 2 <= 1.0


def _median_strip(filled: np.ndarray, footprint: np.ndarray) -> np.ndarray:
    """Median over valid (non-NaN) neighbours for one strip, NaN where none exist.

    `filled` carries `ny` rows of context above and below the rows returned.
    Out-of-image neighbours count as missing.
    """
    ny, nx = footprint.shape[0] // 2, footprint.shape[1] // 2
    valid = ~np.isnan(filled)
    size = int(footprint.sum())
    counts = ndimage.convolve(valid.astype(np.int32), footprint.astype(np.int32), mode="constant", cval=0)

    out = np.full(filled.shape, np.nan)
    # Whole neighbourhood valid and inside the strip: plain C median filter is exact here
    full = counts == size
    if full.any():
        med = ndimage.median_filter(np.where(valid, filled, 0.0), footprint=footprint, mode="constant", cval=0.0)
        out[full] = med[full]

    partial = np.argwhere((counts > 0) & ~full)
    if len(partial):
        padded = np.pad(np.where(valid, filled, np.nan), ((ny, ny), (nx, nx)), constant_values=np.nan)
        offsets = np.argwhere(footprint)
        for start in range(0, len(partial), _GATHER_CHUNK):
            idx = partial[start:start + _GATHER_CHUNK]
            samples = padded[idx[:, :1] + offsets[:, 0], idx[:, 1:] + offsets[:, 1]]
            out[idx[:, 0], idx[:, 1]] = np.nanmedian(samples, axis=1)
    return out


def focal_median(
    image: RasterImage,
    radius: float,
    names: Optional[Sequence[str]] = None,
    units: str = "meters",
    deadline: Optional[Deadline] = None,
) -> RasterImage:
    """Replace each pixel with the median of its circular neighbourhood.

    Masked neighbours are ignored; a pixel stays masked only when its whole
    neighbourhood is masked. Properties (including the timestamp) are kept.
    Large bands are filtered in row strips, checking `deadline` before each.
    """
    if units == "meters":
        px_x, px_y = image.pixel_size_m()
        rx, ry = radius / px_x, radius / px_y
    elif units == "pixels":
        rx = ry = float(radius)
    else:
        raise ValueError(f"Unknown focal units: {units}")

    deadline = deadline or Deadline.unbounded()
    footprint = _disk_footprint(rx, ry)
    ny = footprint.shape[0] // 2
    smoothed = {}
    for name, band in image.bands.items():
        filled = band.filled(np.nan)
        if footprint.size == 1:
            smoothed[name] = np.ma.masked_invalid(filled)
            continue
        h = filled.shape[0]
        med = np.empty_like(filled)
        for r0 in range(0, h, _STRIP_ROWS):
            deadline.check(f"speckle filter ({name}, rows {r0}..)")
            r1 = min(h, r0 + _STRIP_ROWS)
            lo, hi = max(0, r0 - ny), min(h, r1 + ny)
            strip = _median_strip(filled[lo:hi], footprint)
            med[r0:r1] = strip[r0 - lo:r0 - lo + (r1 - r0)]
        smoothed[name] = np.ma.masked_invalid(med)

    out = image.with_bands(smoothed)
    return out.rename(names) if names is not None else out


# -----------------------------------------------------------------------------
# Quality masking
# -----------------------------------------------------------------------------

def quality_mask(image: RasterImage, band: str, exclude_codes: Iterable[int]) -> np.ndarray:
    """True where the categorical quality band is valid and not an excluded code."""
    q = image.band(band)
    codes = np.asarray(list(exclude_codes))
    return ~np.ma.getmaskarray(q) & ~np.isin(q.filled(np.nan), codes)


def apply_quality_mask(image: RasterImage, band: str, exclude_codes: Iterable[int]) -> RasterImage:
    return image.update_mask(quality_mask(image, band, exclude_codes))


# -----------------------------------------------------------------------------
# Indices and unit conversion
# -----------------------------------------------------------------------------

def normalized_difference(image: RasterImage, a: str, b: str, name: str) -> RasterImage:
    """Single-band image (a - b) / (a + b).

    Absent wherever either input is absent or a + b == 0.
    """
    band_a = image.band(a)
    band_b = image.band(b)
    total = band_a.filled(np.nan) + band_b.filled(np.nan)
    diff = band_a.filled(np.nan) - band_b.filled(np.nan)
    with np.errstate(divide="ignore", invalid="ignore"):
        nd = diff / total
    mask = (
        np.ma.getmaskarray(band_a)
        | np.ma.getmaskarray(band_b)
        | (total == 0)
        | ~np.isfinite(nd)
    )
    return image.with_bands({name: np.ma.array(nd, mask=mask)})


def scale(image: RasterImage, factor: float) -> RasterImage:
    """Multiply every band by a constant. Masks are unchanged."""
    return image.with_bands({n: b * factor for n, b in image.bands.items()})


def to_decibels(image: RasterImage) -> RasterImage:
    """Linear power to dB. Non-positive values have no dB value and become absent."""
    out = {}
    for name, band in image.bands.items():
        data = band.filled(np.nan)
        with np.errstate(divide="ignore", invalid="ignore"):
            db = 10.0 * np.log10(data)
        out[name] = np.ma.array(db, mask=np.ma.getmaskarray(band) | ~(data > 0))
    return image.with_bands(out)
