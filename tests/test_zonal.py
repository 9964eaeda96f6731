#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pytest
from rasterio.transform import from_origin
from shapely.geometry import box

from conftest import grid, make_image, region_over, utc
from hydroclim.config import Region
from hydroclim.deadline import Deadline
from hydroclim.errors import SourceUnavailable
from hydroclim.features.schema import RADAR
from hydroclim.geo import zonal
from hydroclim.geo.zonal import ZonalReducer, _coarsen, coverage_weights, weighted_mean
from hydroclim.ingest.raster import ImageCollection, RasterImage

FULL = region_over().geometry


def test_full_coverage_mean():
    img = make_image({"VV": grid(-12.0)}, utc(2020, 1, 1))
    out = ZonalReducer().reduce_image(img, FULL, ["VV"])
    assert out["VV"] == pytest.approx(-12.0)


def test_masked_pixels_are_excluded_not_zeroed():
    data = np.ma.array(np.tile(np.r_[np.full(5, 1.0), np.full(5, 3.0)], (10, 1)))
    data[:, :5] = np.ma.masked
    img = make_image({"b": data}, utc(2020, 1, 1))
    assert ZonalReducer().reduce_image(img, FULL, ["b"])["b"] == pytest.approx(3.0)


def test_fully_masked_is_none_and_zero_is_zero():
    masked = make_image({"b": np.ma.masked_all((10, 10))}, utc(2020, 1, 1))
    zeros = make_image({"b": grid(0.0)}, utc(2020, 1, 1))
    reducer = ZonalReducer()
    assert reducer.reduce_image(masked, FULL, ["b"])["b"] is None
    assert reducer.reduce_image(zeros, FULL, ["b"])["b"] == 0.0


def test_region_outside_image_is_none():
    img = make_image({"b": grid(5.0)}, utc(2020, 1, 1))
    far = box(10.0, 10.0, 10.1, 10.1)
    assert ZonalReducer().reduce_image(img, far, ["b"])["b"] is None


def test_partial_pixels_are_area_weighted():
    # columns 0-4 hold 1.0, column 5 holds 5.0; the region covers half of column 5
    data = np.full((10, 10), 9.0)
    data[:, :5] = 1.0
    data[:, 5] = 5.0
    img = make_image({"b": data}, utc(2020, 1, 1))
    geom = box(-70.0, -15.01, -70.0 + 5.5 * 0.001, -15.0)
    out = ZonalReducer().reduce_image(img, geom, ["b"])["b"]
    assert out == pytest.approx((50 * 1.0 + 5 * 5.0) / 55)


def test_coverage_weights_fraction():
    w = coverage_weights(box(0.0, 0.0, 1.5, 2.0), (2, 2), from_origin(0, 2, 1, 1), supersample=4)
    assert w.tolist() == [[1.0, 0.5], [1.0, 0.5]]


def test_weighted_mean_helpers():
    band = np.ma.array([[2.0, 4.0]], mask=[[False, True]])
    assert weighted_mean(band, np.array([[1.0, 1.0]])) == 2.0
    assert weighted_mean(band, np.array([[0.0, 1.0]])) is None

    c = _coarsen(np.ma.array(np.arange(6.0).reshape(2, 3), mask=[[0, 0, 1], [0, 0, 1]]), 2)
    assert c.shape == (1, 2)
    assert c[0, 0] == pytest.approx(2.0)
    assert c.mask[0, 1]


def test_coarser_and_finer_target_scales():
    img = make_image({"b": grid(4.0)}, utc(2020, 1, 1))
    assert ZonalReducer(scale_m=400).reduce_image(img, FULL, ["b"])["b"] == pytest.approx(4.0)
    assert ZonalReducer(scale_m=25).reduce_image(img, FULL, ["b"])["b"] == pytest.approx(4.0)


def test_projected_image():
    img = RasterImage.from_arrays(
        {"b": np.full((20, 20), 7.0)},
        transform=from_origin(300_000, 8_340_000, 10, 10),
        crs="EPSG:32719",
        timestamp=utc(2020, 1, 1),
    )
    geom = box(*img.bounds_lonlat())
    assert ZonalReducer().reduce_image(img, geom, ["b"])["b"] == pytest.approx(7.0)


def test_pixel_cap_best_effort_and_strict():
    img = make_image({"b": grid(2.0)}, utc(2020, 1, 1))
    approx = ZonalReducer(max_pixels=10).reduce_image(img, FULL, ["b"])
    assert approx["b"] == pytest.approx(2.0)

    with pytest.raises(SourceUnavailable, match="max_pixels"):
        ZonalReducer(max_pixels=10, best_effort=False).reduce_image(img, FULL, ["b"])


def test_reducer_rejects_bad_parameters():
    with pytest.raises(ValueError):
        ZonalReducer(scale_m=0)
    with pytest.raises(ValueError):
        ZonalReducer(max_pixels=0)


def test_reduce_collection_one_record_per_image():
    images = [
        make_image({"VV": grid(-10.0), "VH": grid(-16.0)}, utc(2020, 1, 7, 23)),
        make_image({"VV": np.ma.masked_all((10, 10)), "VH": grid(-17.0)}, utc(2020, 1, 2, 10)),
    ]
    region = Region("zone", FULL)
    records = ZonalReducer().reduce(ImageCollection.from_images(images), region, RADAR)
    assert [r.date for r in records] == ["2020-01-02", "2020-01-07"]
    assert records[0].values.VV is None
    assert records[0].values.VH == pytest.approx(-17.0)
    assert records[1].is_complete


def test_pixel_cap_bounds_rasterization(monkeypatch):
    shapes = []
    real = zonal.coverage_weights

    def recording(geometry, out_shape, transform, supersample=4):
        shapes.append(tuple(out_shape))
        return real(geometry, out_shape, transform, supersample)

    monkeypatch.setattr(zonal, "coverage_weights", recording)
    img = make_image({"b": grid(3.0, 200)}, utc(2020, 1, 1))
    geom = region_over(size=200).geometry
    out = ZonalReducer(max_pixels=10).reduce_image(img, geom, ["b"])
    assert out["b"] == pytest.approx(3.0)
    # never rasterized at the native 200 x 200 grid
    assert shapes and all(h * w <= 100 for h, w in shapes)


def test_reduction_checks_deadline():
    img = make_image({"b": grid(3.0)}, utc(2020, 1, 1))
    with pytest.raises(SourceUnavailable, match="timed out during reducing"):
        ZonalReducer().reduce_image(img, FULL, ["b"], deadline=Deadline(timeout_s=0.0))
