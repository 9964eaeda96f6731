#!/usr/bin/env python3

from __future__ import annotations

import datetime as dt
import sys
from pathlib import Path

import numpy as np
import pytest
from rasterio.transform import from_origin
from shapely.geometry import box

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from hydroclim.config import ExportConfig, PipelineConfig, Region, TimeWindow  # noqa: E402
from hydroclim.ingest.raster import RasterImage  # noqa: E402

# 10 x 10 grid of 0.001 deg pixels (~107 x 111 m near -15 lat)
RES = 0.001
SIZE = 10


def utc(*args) -> dt.datetime:
    return dt.datetime(*args, tzinfo=dt.timezone.utc)


def grid(value: float, size: int = SIZE) -> np.ndarray:
    return np.full((size, size), float(value))


def make_image(bands, when, *, origin=(-70.0, -15.0), res=RES, properties=None, crs="EPSG:4326"):
    return RasterImage.from_arrays(
        bands,
        transform=from_origin(origin[0], origin[1], res, res),
        crs=crs,
        timestamp=when,
        properties=properties,
    )


def region_over(image_origin=(-70.0, -15.0), rid="zone", size=SIZE, res=RES) -> Region:
    x0, y0 = image_origin
    return Region(id=rid, geometry=box(x0, y0 - size * res, x0 + size * res, y0))


def s1_image(when, vv=-12.0, vh=-18.0, origin=(-70.0, -15.0), **props):
    properties = {
        "instrumentMode": "IW",
        "transmitterReceiverPolarisation": ["VV", "VH"],
        "orbitProperties_pass": "DESCENDING",
    }
    properties.update(props)
    return make_image({"VV": grid(vv), "VH": grid(vh), "angle": grid(38.0)}, when, origin=origin, properties=properties)


def s2_image(when, scl=4, cloud=5.0, origin=(-70.0, -15.0), b3=0.2, b4=0.1, b8=0.5, b11=0.3):
    return make_image(
        {"B3": grid(b3), "B4": grid(b4), "B8": grid(b8), "B11": grid(b11), "SCL": grid(scl)},
        when,
        origin=origin,
        properties={"CLOUDY_PIXEL_PERCENTAGE": cloud},
    )


def era5_image(when, sm=0.31, tp=0.0123, origin=(-70.0, -15.0)):
    # Coarser grid (0.004 deg, ~440 m), refined to the reduction scale
    return make_image(
        {"volumetric_soil_water_layer_1": grid(sm, 3), "total_precipitation_hourly": grid(tp, 3)},
        when,
        origin=origin,
        res=0.004,
    )


@pytest.fixture
def window() -> TimeWindow:
    return TimeWindow(dt.date(2020, 1, 1), dt.date(2020, 2, 1))


@pytest.fixture
def pipeline_config(tmp_path, window) -> PipelineConfig:
    return PipelineConfig(
        window=window,
        export=ExportConfig(output_dir=tmp_path / "exports", max_workers=2, retry_delay_s=0.0),
    )
