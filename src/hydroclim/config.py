#!/usr/bin/env python3
"""hydroclim.config

Shared configuration for hydroclim subsystems.

Three YAML files drive a run:
- regions YAML  → study zones (id, bounds or polygon coordinates, display color)
- pipeline YAML → time window, reduction scale, per-sensor settings, export policy
- sources YAML  → where each raster catalog lives on disk (see hydroclim.ingest.source)

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Everything is parsed once at process start into frozen dataclasses and passed
  explicitly into components. Nothing here is mutated after load.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml
from shapely.geometry import Polygon, box
from shapely.geometry.base import BaseGeometry

BBox = Tuple[float, float, float, float]


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    Config errors should fail fast, before any task is scheduled.
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


def load_regions_yaml(path: Path) -> List[dict]:
    """Load the raw region dicts from a regions YAML file.

    Expects structure like:
        regions:
          - id: Ramis
            bounds: [-70.8, -15.4, -69.3, -14.2]
            color: FF0000
    """
    data = load_yaml(path)
    if "regions" not in data or not isinstance(data["regions"], list):
        raise ValueError(f"{path} must have a top-level 'regions:' list.")
    return data["regions"]


# -----------------------------------------------------------------------------
# Bounding box utilities
# -----------------------------------------------------------------------------

def coerce_bbox(x: Any) -> Optional[BBox]:
    """Try to coerce [xmin, ymin, xmax, ymax] into a bbox tuple.

    Returns None if input is invalid or missing.
    """
    if x is None:
        return None
    if isinstance(x, (list, tuple)) and len(x) == 4:
        try:
            xmin, ymin, xmax, ymax = map(float, x)
        except (TypeError, ValueError):
            return None
        return (xmin, ymin, xmax, ymax)
    return None


def union_bbox(bboxes: Iterable[BBox]) -> Optional[BBox]:
    """Compute the bounding box that contains all input bboxes.

    Returns None if input is empty.
    """
    bboxes = list(bboxes)
    if not bboxes:
        return None
    xmin = min(b[0] for b in bboxes)
    ymin = min(b[1] for b in bboxes)
    xmax = max(b[2] for b in bboxes)
    ymax = max(b[3] for b in bboxes)
    return (xmin, ymin, xmax, ymax)


def format_bbox(b: BBox, precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


# -----------------------------------------------------------------------------
# Regions and time window
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Region:
    """A study zone. `id` doubles as the output filename key."""

    id: str
    geometry: BaseGeometry
    color: Optional[str] = None

    @property
    def bounds(self) -> BBox:
        return tuple(self.geometry.bounds)  # type: ignore[return-value]


@dataclass(frozen=True)
class TimeWindow:
    """Acquisition window: start inclusive, end exclusive."""

    start: dt.date
    end: dt.date

    @property
    def is_valid(self) -> bool:
        return self.start < self.end

    def contains(self, when: dt.datetime) -> bool:
        return self.start <= when.date() < self.end


def region_from_dict(r: Dict[str, Any]) -> Region:
    """Build a Region from one entry of the regions YAML.

    Accepts either `bounds: [xmin, ymin, xmax, ymax]` (lon/lat rectangle)
    or `coordinates: [[x, y], ...]` (polygon exterior ring).
    """
    rid = str(r.get("id") or "").strip()
    if not rid:
        raise ValueError(f"Region missing id: {r}")

    bbox = coerce_bbox(r.get("bounds"))
    coords = r.get("coordinates")
    if bbox:
        geom: BaseGeometry = box(*bbox)
    elif isinstance(coords, list) and len(coords) >= 3:
        geom = Polygon([(float(x), float(y)) for x, y in coords])
    else:
        raise ValueError(f"Region {rid} needs 'bounds' or 'coordinates'")

    if geom.is_empty or not geom.is_valid:
        raise ValueError(f"Region {rid} has an empty or invalid geometry")

    color = r.get("color")
    return Region(id=rid, geometry=geom, color=str(color) if color is not None else None)


def regions_from_yaml(path: Path) -> List[Region]:
    """Load and validate all regions. Ids must be unique (they name output files)."""
    regions = [region_from_dict(r) for r in load_regions_yaml(path)]
    seen: Dict[str, Region] = {}
    for region in regions:
        if region.id in seen:
            raise ValueError(f"Duplicate region id in {path}: {region.id}")
        seen[region.id] = region
    return regions


def regions_from_vector(
    path: Path,
    *,
    id_field: str = "id",
    color_field: Optional[str] = "color",
    layer: Optional[str] = None,
) -> List[Region]:
    """Load regions from a vector file (GeoPackage, shapefile, GeoJSON).

    Geometries are repaired, multipart features dissolved per id, and
    everything reprojected to EPSG:4326 to match the query contract.
    """
    # Lazy import: geopandas is only needed when regions come from a vector file
    import geopandas as gpd

    if not path.exists():
        raise SystemExit(f"Regions file not found: {path}")
    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
    if gdf.empty:
        raise SystemExit(f"Regions file has zero features: {path}")
    if gdf.crs is None:
        raise SystemExit(f"Regions file has no CRS: {path}")
    if id_field not in gdf.columns:
        raise ValueError(f"--id-field '{id_field}' not found. Available columns: {list(gdf.columns)}")

    gdf = gdf.copy()
    gdf["geometry"] = gdf.geometry.make_valid()
    gdf = gdf[~gdf.geometry.is_empty & gdf.geometry.notna()]
    gdf[id_field] = gdf[id_field].astype(str).str.strip()

    keep = [id_field] + ([color_field] if color_field and color_field in gdf.columns else [])
    gdf = gdf[keep + ["geometry"]].dissolve(by=id_field, as_index=False, aggfunc="first")
    gdf = gdf.to_crs("EPSG:4326")

    regions = []
    for _, row in gdf.iterrows():
        color = row[color_field] if color_field and color_field in gdf.columns else None
        regions.append(Region(id=row[id_field], geometry=row.geometry, color=None if color is None else str(color)))
    return regions


# -----------------------------------------------------------------------------
# Pipeline configuration
# -----------------------------------------------------------------------------

DUPLICATE_POLICIES = ("keep", "first", "mean")


@dataclass(frozen=True)
class ReductionConfig:
    scale_m: float = 100.0
    max_pixels: int = 10_000_000_000
    best_effort: bool = True


@dataclass(frozen=True)
class RadarConfig:
    catalog: str = "COPERNICUS/S1_GRD"
    instrument_mode: str = "IW"
    polarizations: Tuple[str, ...] = ("VV", "VH")
    orbit_pass: str = "DESCENDING"
    speckle_radius_m: float = 100.0
    linear_units: bool = False


@dataclass(frozen=True)
class OpticalConfig:
    catalog: str = "COPERNICUS/S2_SR_HARMONIZED"
    cloud_cover_max: float = 30.0
    cloud_cover_property: str = "CLOUDY_PIXEL_PERCENTAGE"
    quality_band: str = "SCL"
    # SCL: 0 no data, 3 cloud shadow, 8/9 cloud medium/high, 10 cirrus, 11 snow/ice
    exclude_codes: Tuple[int, ...] = (0, 3, 8, 9, 10, 11)
    indices: Tuple[Tuple[str, str, str], ...] = (
        ("NDMI", "B8", "B11"),
        ("NDVI", "B8", "B4"),
        ("NDWI", "B3", "B8"),
    )


@dataclass(frozen=True)
class ReanalysisConfig:
    catalog: str = "ECMWF/ERA5_LAND/HOURLY"
    hour: int = 12
    soil_moisture_band: str = "volumetric_soil_water_layer_1"
    precipitation_band: str = "total_precipitation_hourly"
    precipitation_scale: float = 1000.0


@dataclass(frozen=True)
class ExportConfig:
    output_dir: Path = Path("data/exports")
    overwrite: bool = False
    max_workers: int = 4
    task_timeout_s: float = 900.0
    max_retries: int = 2
    retry_delay_s: float = 2.0
    duplicate_policy: str = "keep"


@dataclass(frozen=True)
class PipelineConfig:
    window: TimeWindow
    reduction: ReductionConfig = field(default_factory=ReductionConfig)
    radar: RadarConfig = field(default_factory=RadarConfig)
    optical: OpticalConfig = field(default_factory=OpticalConfig)
    reanalysis: ReanalysisConfig = field(default_factory=ReanalysisConfig)
    export: ExportConfig = field(default_factory=ExportConfig)


def _coerce_date(x: Any, key: str) -> dt.date:
    # PyYAML turns unquoted 2016-01-01 into a date already
    if isinstance(x, dt.datetime):
        return x.date()
    if isinstance(x, dt.date):
        return x
    if isinstance(x, str):
        try:
            return dt.date.fromisoformat(x.strip())
        except ValueError as e:
            raise ValueError(f"Invalid date for {key}: {x!r}") from e
    raise ValueError(f"Missing or invalid date for {key}: {x!r}")


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    block = data.get(key) or {}
    if not isinstance(block, dict):
        raise ValueError(f"pipeline config '{key}:' must be a mapping")
    return block


def pipeline_config_from_dict(data: Dict[str, Any]) -> PipelineConfig:
    """Parse a pipeline YAML mapping. Missing keys fall back to the defaults above."""
    window_cfg = _section(data, "window")
    window = TimeWindow(
        start=_coerce_date(window_cfg.get("start"), "window.start"),
        end=_coerce_date(window_cfg.get("end"), "window.end"),
    )

    red = _section(data, "reduction")
    reduction = ReductionConfig(
        scale_m=float(red.get("scale_m", ReductionConfig.scale_m)),
        max_pixels=int(float(red.get("max_pixels", ReductionConfig.max_pixels))),
        best_effort=bool(red.get("best_effort", ReductionConfig.best_effort)),
    )

    rad = _section(data, "radar")
    radar = RadarConfig(
        catalog=str(rad.get("catalog", RadarConfig.catalog)),
        instrument_mode=str(rad.get("instrument_mode", RadarConfig.instrument_mode)),
        polarizations=tuple(str(p) for p in rad.get("polarizations", RadarConfig.polarizations)),
        orbit_pass=str(rad.get("orbit_pass", RadarConfig.orbit_pass)),
        speckle_radius_m=float(rad.get("speckle_radius_m", RadarConfig.speckle_radius_m)),
        linear_units=bool(rad.get("linear_units", RadarConfig.linear_units)),
    )

    opt = _section(data, "optical")
    indices = opt.get("indices")
    optical = OpticalConfig(
        catalog=str(opt.get("catalog", OpticalConfig.catalog)),
        cloud_cover_max=float(opt.get("cloud_cover_max", OpticalConfig.cloud_cover_max)),
        cloud_cover_property=str(opt.get("cloud_cover_property", OpticalConfig.cloud_cover_property)),
        quality_band=str(opt.get("quality_band", OpticalConfig.quality_band)),
        exclude_codes=tuple(int(c) for c in opt.get("exclude_codes", OpticalConfig.exclude_codes)),
        indices=(
            tuple((str(i["name"]), str(i["a"]), str(i["b"])) for i in indices)
            if isinstance(indices, list)
            else OpticalConfig.indices
        ),
    )

    rea = _section(data, "reanalysis")
    hour = int(rea.get("hour", ReanalysisConfig.hour))
    if not 0 <= hour <= 23:
        raise ValueError(f"reanalysis.hour must be in 0..23, got {hour}")
    reanalysis = ReanalysisConfig(
        catalog=str(rea.get("catalog", ReanalysisConfig.catalog)),
        hour=hour,
        soil_moisture_band=str(rea.get("soil_moisture_band", ReanalysisConfig.soil_moisture_band)),
        precipitation_band=str(rea.get("precipitation_band", ReanalysisConfig.precipitation_band)),
        precipitation_scale=float(rea.get("precipitation_scale", ReanalysisConfig.precipitation_scale)),
    )

    exp = _section(data, "export")
    policy = str(exp.get("duplicate_policy", ExportConfig.duplicate_policy))
    if policy not in DUPLICATE_POLICIES:
        raise ValueError(f"export.duplicate_policy must be one of {DUPLICATE_POLICIES}, got {policy!r}")
    export = ExportConfig(
        output_dir=Path(exp.get("output_dir", ExportConfig.output_dir)),
        overwrite=bool(exp.get("overwrite", ExportConfig.overwrite)),
        max_workers=max(1, int(exp.get("max_workers", ExportConfig.max_workers))),
        task_timeout_s=float(exp.get("task_timeout_s", ExportConfig.task_timeout_s)),
        max_retries=max(0, int(exp.get("max_retries", ExportConfig.max_retries))),
        retry_delay_s=float(exp.get("retry_delay_s", ExportConfig.retry_delay_s)),
        duplicate_policy=policy,
    )

    return PipelineConfig(
        window=window,
        reduction=reduction,
        radar=radar,
        optical=optical,
        reanalysis=reanalysis,
        export=export,
    )


def load_pipeline_config(path: Path) -> PipelineConfig:
    return pipeline_config_from_dict(load_yaml(path))


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so all CLIs use the same defaults.

DEFAULT_SOURCES_YAML = Path("config/sources.yaml")
DEFAULT_REGIONS_YAML = Path("config/regions.yaml")
DEFAULT_PIPELINE_YAML = Path("config/pipeline.yaml")
