#!/usr/bin/env python3

from __future__ import annotations

import datetime as dt
import threading

import numpy as np
import pytest
from rasterio.transform import from_origin

from conftest import grid, make_image, utc
from hydroclim.deadline import Deadline
from hydroclim.errors import SourceUnavailable, TaskCancelled
from hydroclim.ingest.raster import TIME_START, Filter, ImageCollection, RasterImage, timestamp_ms


def test_image_masks_nan_and_nodata():
    arr = np.array([[1.0, np.nan], [-9999.0, 4.0]])
    img = make_image({"b": arr}, utc(2020, 1, 5))
    img2 = img.with_bands({"b": img.band("b")})
    nd = RasterImage.from_arrays({"b": arr}, transform=from_origin(0, 0, 1, 1), nodata=-9999.0)
    assert img.band("b").mask.tolist() == [[False, True], [False, False]]
    assert nd.band("b").mask.tolist() == [[False, True], [True, False]]
    assert img2.band("b").mask.tolist() == img.band("b").mask.tolist()


def test_bands_must_share_shape():
    with pytest.raises(ValueError):
        make_image({"a": grid(1.0, 3), "b": grid(1.0, 4)}, utc(2020, 1, 1))


def test_date_string_is_utc():
    # 23:30 at UTC-5 is already the next day in UTC
    when = dt.datetime(2020, 1, 5, 23, 30, tzinfo=dt.timezone(dt.timedelta(hours=-5)))
    img = make_image({"b": grid(1.0)}, when)
    assert img.date_string() == "2020-01-06"
    assert img.time_start == timestamp_ms(when)
    # naive timestamps are UTC
    assert make_image({"b": grid(1.0)}, dt.datetime(2020, 1, 5, 23, 30)).date_string() == "2020-01-05"


def test_transforms_return_new_images():
    img = make_image({"a": grid(1.0), "b": grid(2.0)}, utc(2020, 1, 5), properties={"k": 1})
    keep = np.ones(img.shape, dtype=bool)
    keep[0, 0] = False

    masked = img.update_mask(keep)
    assert masked.band("a").mask[0, 0]
    assert not img.band("a").mask[0, 0]

    renamed = img.select(["b"]).rename(["x"])
    assert renamed.band_names == ("x",)
    assert renamed.properties == img.properties
    assert img.band_names == ("a", "b")

    with pytest.raises(KeyError):
        img.band("missing")
    with pytest.raises(ValueError):
        img.rename(["only_one"])


def test_pixel_size_geographic_and_bounds():
    img = make_image({"b": grid(1.0)}, utc(2020, 1, 1))
    px, py = img.pixel_size_m()
    assert px == pytest.approx(107.5, abs=0.5)
    assert py == pytest.approx(110.574, abs=1e-3)
    assert img.bounds == pytest.approx((-70.0, -15.01, -69.99, -15.0))
    assert img.bounds_lonlat() == img.bounds


def test_filters():
    props = {
        "instrumentMode": "IW",
        "transmitterReceiverPolarisation": ["VV", "VH"],
        "CLOUDY_PIXEL_PERCENTAGE": 12.5,
        TIME_START: timestamp_ms(utc(2020, 1, 1, 12)),
    }
    assert Filter.eq("instrumentMode", "IW").matches(props)
    assert not Filter.eq("instrumentMode", "EW").matches(props)
    assert Filter.list_contains("transmitterReceiverPolarisation", "VH").matches(props)
    assert not Filter.list_contains("transmitterReceiverPolarisation", "HH").matches(props)
    assert Filter.lt("CLOUDY_PIXEL_PERCENTAGE", 30).matches(props)
    assert not Filter.gt("CLOUDY_PIXEL_PERCENTAGE", 30).matches(props)
    assert Filter.hour_of_day(12).matches(props)
    assert not Filter.hour_of_day(11).matches(props)
    # missing property never matches
    assert not Filter.eq("orbitProperties_pass", "DESCENDING").matches(props)
    with pytest.raises(ValueError):
        Filter("x", "between", 1).matches({"x": 1})


def test_collection_is_lazy_and_ordered():
    calls = []
    images = [make_image({"b": grid(float(d))}, utc(2020, 1, d)) for d in (3, 1, 2)]

    def loader(deadline):
        calls.append("load")
        return iter(sorted(images, key=lambda i: i.time_start))

    coll = (
        ImageCollection(loader)
        .filter(lambda img: img.band("b").mean() != 2.0)
        .map(lambda img: img.rename(["c"]))
    )
    assert calls == []
    out = coll.to_list()
    assert calls == ["load"]
    assert [i.date_string() for i in out] == ["2020-01-01", "2020-01-03"]
    assert all(i.band_names == ("c",) for i in out)

    assert ImageCollection.from_images(images).size() == 3


def test_collection_honours_deadline():
    coll = ImageCollection.from_images([make_image({"b": grid(1.0)}, utc(2020, 1, 1))])
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(TaskCancelled):
        coll.to_list(Deadline(cancel_event=cancel))
    with pytest.raises(SourceUnavailable, match="timed out"):
        coll.to_list(Deadline(timeout_s=0.0))


def test_map_with_deadline_receives_evaluation_deadline():
    seen = []

    def stage(img, deadline):
        seen.append(deadline)
        return img

    coll = ImageCollection.from_images([make_image({"b": grid(1.0)}, utc(2020, 1, 1))]).map_with_deadline(stage)
    deadline = Deadline(timeout_s=60.0)
    assert len(coll.to_list(deadline)) == 1
    assert seen == [deadline]
