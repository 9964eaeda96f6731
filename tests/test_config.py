#!/usr/bin/env python3

from __future__ import annotations

import datetime as dt
from pathlib import Path

import pytest

from conftest import ROOT
from hydroclim.config import (
    ExportConfig,
    TimeWindow,
    coerce_bbox,
    format_bbox,
    load_pipeline_config,
    load_yaml,
    pipeline_config_from_dict,
    region_from_dict,
    regions_from_vector,
    regions_from_yaml,
    union_bbox,
)


def test_coerce_bbox_variants():
    assert coerce_bbox([-70, -15.5, -69, "-14"]) == (-70.0, -15.5, -69.0, -14.0)
    assert coerce_bbox(None) is None
    assert coerce_bbox([1, 2, 3]) is None
    assert coerce_bbox(["a", 2, 3, 4]) is None
    assert coerce_bbox("not a bbox") is None


def test_union_and_format_bbox():
    assert union_bbox([]) is None
    u = union_bbox([(0, 0, 1, 1), (-1, 0.5, 0.5, 2)])
    assert u == (-1, 0, 1, 2)
    assert format_bbox(u, precision=1) == "[-1.0, 0.0, 1.0, 2.0]"


def test_region_from_bounds_and_coordinates():
    r = region_from_dict({"id": "Ramis", "bounds": [-70.8, -15.4, -69.3, -14.2], "color": "FF0000"})
    assert r.bounds == pytest.approx((-70.8, -15.4, -69.3, -14.2))
    assert r.color == "FF0000"

    tri = region_from_dict({"id": "tri", "coordinates": [[0, 0], [1, 0], [0, 1]]})
    assert tri.geometry.area == pytest.approx(0.5)
    assert tri.color is None


@pytest.mark.parametrize(
    "entry",
    [
        {"bounds": [0, 0, 1, 1]},
        {"id": "x"},
        {"id": "x", "coordinates": [[0, 0], [1, 1]]},
        # self-intersecting bow tie
        {"id": "x", "coordinates": [[0, 0], [1, 1], [1, 0], [0, 1]]},
    ],
)
def test_region_from_dict_rejects_bad_entries(entry):
    with pytest.raises(ValueError):
        region_from_dict(entry)


def test_regions_yaml_duplicate_ids(tmp_path: Path):
    p = tmp_path / "regions.yaml"
    p.write_text(
        "regions:\n"
        "  - {id: A, bounds: [0, 0, 1, 1]}\n"
        "  - {id: A, bounds: [2, 2, 3, 3]}\n",
        encoding="utf-8",
    )
    with pytest.raises(ValueError, match="Duplicate region id"):
        regions_from_yaml(p)


def test_load_yaml_missing_and_non_mapping(tmp_path: Path):
    with pytest.raises(SystemExit):
        load_yaml(tmp_path / "nope.yaml")
    p = tmp_path / "list.yaml"
    p.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        load_yaml(p)


def test_shipped_configs_load():
    regions = regions_from_yaml(ROOT / "config" / "regions.yaml")
    assert [r.id for r in regions] == ["Ramis", "Ilave", "Ramis_North", "Ramis_South"]
    assert all(r.color and len(r.color) == 6 for r in regions)

    cfg = load_pipeline_config(ROOT / "config" / "pipeline.yaml")
    assert cfg.window == TimeWindow(dt.date(2016, 1, 1), dt.date(2024, 12, 31))
    assert cfg.reduction.scale_m == 100
    assert cfg.reanalysis.hour == 12
    assert [name for name, _, _ in cfg.optical.indices] == ["NDMI", "NDVI", "NDWI"]

    sources = load_yaml(ROOT / "config" / "sources.yaml")
    assert set(sources["catalogs"]) == {cfg.radar.catalog, cfg.optical.catalog, cfg.reanalysis.catalog}


def test_pipeline_defaults_from_minimal_mapping():
    cfg = pipeline_config_from_dict({"window": {"start": "2020-01-01", "end": "2020-03-01"}})
    assert cfg.window.start == dt.date(2020, 1, 1)
    assert cfg.window.is_valid
    assert cfg.export == ExportConfig()
    assert cfg.optical.exclude_codes == (0, 3, 8, 9, 10, 11)
    assert cfg.radar.polarizations == ("VV", "VH")


def test_pipeline_parses_overrides():
    cfg = pipeline_config_from_dict({
        "window": {"start": dt.date(2020, 1, 1), "end": dt.datetime(2020, 2, 1, 6)},
        "reduction": {"scale_m": 250, "max_pixels": "1e6", "best_effort": False},
        "export": {"max_workers": 0, "duplicate_policy": "mean", "output_dir": "out"},
    })
    assert cfg.window.end == dt.date(2020, 2, 1)
    assert cfg.reduction.max_pixels == 1_000_000
    assert cfg.reduction.best_effort is False
    assert cfg.export.max_workers == 1
    assert cfg.export.duplicate_policy == "mean"
    assert cfg.export.output_dir == Path("out")


@pytest.mark.parametrize(
    "data",
    [
        {"window": {"start": "2020-01-01"}},
        {"window": {"start": "2020-13-01", "end": "2021-01-01"}},
        {"window": {"start": "2020-01-01", "end": "2021-01-01"}, "reanalysis": {"hour": 24}},
        {"window": {"start": "2020-01-01", "end": "2021-01-01"}, "export": {"duplicate_policy": "last"}},
        {"window": {"start": "2020-01-01", "end": "2021-01-01"}, "radar": ["not", "a", "mapping"]},
    ],
)
def test_pipeline_rejects_bad_values(data):
    with pytest.raises(ValueError):
        pipeline_config_from_dict(data)


def test_time_window_end_is_exclusive():
    w = TimeWindow(dt.date(2020, 1, 1), dt.date(2020, 1, 2))
    assert w.contains(dt.datetime(2020, 1, 1, 23, 59))
    assert not w.contains(dt.datetime(2020, 1, 2, 0, 0))
    assert not TimeWindow(dt.date(2020, 1, 2), dt.date(2020, 1, 1)).is_valid


def test_regions_from_vector_dissolves_and_reprojects(tmp_path: Path):
    p = tmp_path / "zones.geojson"
    # Two parts of zone A in Web Mercator, plus zone B
    p.write_text(
        """{
  "type": "FeatureCollection",
  "crs": {"type": "name", "properties": {"name": "urn:ogc:def:crs:EPSG::3857"}},
  "features": [
    {"type": "Feature", "properties": {"name": "A", "color": "FF0000"},
     "geometry": {"type": "Polygon", "coordinates": [[[0, 0], [100000, 0], [100000, 100000], [0, 100000], [0, 0]]]}},
    {"type": "Feature", "properties": {"name": "A", "color": "FF0000"},
     "geometry": {"type": "Polygon", "coordinates": [[[200000, 0], [300000, 0], [300000, 100000], [200000, 100000], [200000, 0]]]}},
    {"type": "Feature", "properties": {"name": "B", "color": "0000FF"},
     "geometry": {"type": "Polygon", "coordinates": [[[0, 200000], [100000, 200000], [100000, 300000], [0, 300000], [0, 200000]]]}}
  ]
}""",
        encoding="utf-8",
    )
    regions = {r.id: r for r in regions_from_vector(p, id_field="name")}
    assert set(regions) == {"A", "B"}
    assert regions["A"].color == "FF0000"
    assert regions["A"].geometry.geom_type == "MultiPolygon"
    xmin, ymin, xmax, ymax = regions["A"].bounds
    # 300 km of Web Mercator at the equator is ~2.7 degrees
    assert xmin == pytest.approx(0.0, abs=1e-9)
    assert xmax == pytest.approx(2.695, abs=1e-3)

    with pytest.raises(ValueError, match="not found"):
        regions_from_vector(p, id_field="missing")
