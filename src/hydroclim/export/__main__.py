#!/usr/bin/env python3
"""hydroclim.export

Export CLI for hydroclim.

Builds one CSV per (region, sensor) from the configured raster catalogs:
- {region}_S1.csv       date,VV,VH
- {region}_S2.csv       date,NDMI,NDVI,NDWI
- {region}_ERA5_SM.csv  date,soil_moisture
- {region}_ERA5_PR.csv  date,precipitation_mm

Design goals:
- Config-driven: regions, pipeline and sources all come from YAML
- One level of subcommands (plan / run / verify)
- --dry-run everywhere so a run can be inspected before it touches disk

Examples:
  # List the tasks a run would execute
  python -m hydroclim.export plan

  # Run everything (failed tasks are reported, the rest still export)
  python -m hydroclim.export run --workers 4

  # Only some regions, replacing earlier outputs
  python -m hydroclim.export --overwrite run --regions Ramis Ilave

  # Check that every catalog glob matches files
  python -m hydroclim.export verify --json
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from hydroclim.config import (
    DEFAULT_PIPELINE_YAML,
    DEFAULT_REGIONS_YAML,
    DEFAULT_SOURCES_YAML,
    PipelineConfig,
    Region,
    format_bbox,
    load_pipeline_config,
    load_yaml,
    regions_from_vector,
    regions_from_yaml,
    union_bbox,
)
from hydroclim.logging_utils import setup_logging


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="hydroclim.export",
        description="Export per-region, per-sensor time-series tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # --- Global args ---
    ap.add_argument("--pipeline-yaml", type=Path, default=DEFAULT_PIPELINE_YAML, help=f"Path to pipeline YAML (default: {DEFAULT_PIPELINE_YAML})")
    ap.add_argument("--regions-yaml", type=Path, default=DEFAULT_REGIONS_YAML, help=f"Path to regions YAML (default: {DEFAULT_REGIONS_YAML})")
    ap.add_argument("--sources-yaml", type=Path, default=DEFAULT_SOURCES_YAML, help=f"Path to sources YAML (default: {DEFAULT_SOURCES_YAML})")
    ap.add_argument("--regions-vector", type=Path, default=None, help="Load regions from a vector file (GeoPackage, shapefile, GeoJSON) instead of the regions YAML")
    ap.add_argument("--id-field", default="id", help="Region id column in --regions-vector (default: id)")
    ap.add_argument("--overwrite", action="store_true", help="Replace existing output tables")
    ap.add_argument("--dry-run", action="store_true", help="Print planned tasks without reading rasters or writing files")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- plan ---
    plan = sub.add_parser("plan", help="List export tasks and output paths")
    plan.add_argument("--regions", nargs="+", default=None, help="Region ids to include (default: all)")

    # --- run ---
    run = sub.add_parser("run", help="Run export tasks")
    run.add_argument("--regions", nargs="+", default=None, help="Region ids to include (default: all)")
    run.add_argument("--workers", type=int, default=None, help="Worker pool size (default from pipeline YAML)")
    run.add_argument("--output-dir", type=Path, default=None, help="Output directory (default from pipeline YAML)")

    # --- verify ---
    ver = sub.add_parser("verify", help="Check that every catalog in sources YAML has files")
    ver.add_argument("--catalog", default="all", help="Catalog id to verify (or 'all')")
    ver.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    return ap


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _load_regions(args: argparse.Namespace) -> List[Region]:
    if args.regions_vector is not None:
        return regions_from_vector(args.regions_vector, id_field=args.id_field)
    return regions_from_yaml(args.regions_yaml)


def _select_regions(regions: List[Region], wanted: Optional[List[str]]) -> List[Region]:
    if not wanted:
        return regions
    by_id = {r.id: r for r in regions}
    unknown = [w for w in wanted if w not in by_id]
    if unknown:
        raise SystemExit(f"Unknown region ids: {unknown} (have {sorted(by_id)})")
    return [by_id[w] for w in wanted]


def _apply_overrides(config: PipelineConfig, args: argparse.Namespace) -> PipelineConfig:
    changes: Dict[str, Any] = {}
    if args.overwrite:
        changes["overwrite"] = True
    if getattr(args, "workers", None):
        changes["max_workers"] = max(1, args.workers)
    if getattr(args, "output_dir", None):
        changes["output_dir"] = args.output_dir
    if not changes:
        return config
    return dataclasses.replace(config, export=dataclasses.replace(config.export, **changes))


def _verify_catalog(catalog_id: str, cfg: Any, base_dir: Path) -> Dict[str, Any]:
    """Presence check only: does the catalog glob match at least one file?"""
    if not isinstance(cfg, dict):
        return {"catalog": catalog_id, "ok": False, "reason": "bad config block"}
    local_glob = cfg.get("local_glob")
    if not isinstance(local_glob, str) or not local_glob.strip():
        return {"catalog": catalog_id, "ok": False, "reason": "missing local_glob"}
    matches = sorted(base_dir.glob(local_glob))
    return {
        "catalog": catalog_id,
        "ok": len(matches) > 0,
        "count": len(matches),
        "sample": [str(p) for p in matches[:5]],
    }


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _print_plan(config: PipelineConfig, regions: List[Region]) -> None:
    from hydroclim.features.schema import SENSORS

    aoi = union_bbox(r.bounds for r in regions)
    print(f"AOI bbox: {format_bbox(aoi) if aoi else '(none)'}")
    print(f"Window: {config.window.start} .. {config.window.end} (end exclusive)")
    print(f"Scale: {config.reduction.scale_m:.0f} m | workers: {config.export.max_workers}")
    for region in regions:
        for schema in SENSORS:
            name = f"{region.id}_{schema.tag}"
            out = config.export.output_dir / f"{name}.csv"
            print(f"  - {name} -> {out} [{','.join(schema.columns)}]")


def _handle_plan(args: argparse.Namespace) -> int:
    config = _apply_overrides(load_pipeline_config(args.pipeline_yaml), args)
    regions = _select_regions(_load_regions(args), args.regions)
    _print_plan(config, regions)
    return 0


def _handle_run(args: argparse.Namespace) -> int:
    config = _apply_overrides(load_pipeline_config(args.pipeline_yaml), args)
    regions = _select_regions(_load_regions(args), args.regions)

    if args.dry_run:
        print("[dry-run] Would run:")
        _print_plan(config, regions)
        return 0

    # Lazy import: keeps plan/verify fast and avoids loading rasterio/scipy until needed
    from hydroclim.export.orchestrator import ExportOrchestrator
    from hydroclim.export.sink import CsvTableSink
    from hydroclim.ingest.source import GeoTiffCatalogSource

    source = GeoTiffCatalogSource(load_yaml(args.sources_yaml), base_dir=Path("."))
    sink = CsvTableSink(config.export.output_dir, overwrite=config.export.overwrite)
    orchestrator = ExportOrchestrator(source, sink, config, regions)

    try:
        reports = orchestrator.run()
    except KeyboardInterrupt:
        raise SystemExit("[EXPORT] Interrupted; finished tables are complete, unfinished ones were not written")

    print("[EXPORT] Summary:")
    for r in reports:
        line = f"  [{r.status.value.upper()}] {r.task} rows={r.rows} images={r.source_images}"
        if r.path:
            line += f" -> {r.path}"
        print(line)
        if r.error:
            print(f"    - error: {r.error}")
    failed = [r for r in reports if not r.delivered]
    print(f"Overall: {len(reports) - len(failed)}/{len(reports)} delivered")
    return 0 if not failed else 2


def _handle_verify(args: argparse.Namespace) -> int:
    sources_yaml = load_yaml(args.sources_yaml)
    catalogs = sources_yaml.get("catalogs")
    if not isinstance(catalogs, dict):
        raise SystemExit("sources.yaml must contain top-level 'catalogs:' mapping")

    base_dir = Path(".")
    if args.catalog == "all":
        results = [_verify_catalog(cid, catalogs[cid], base_dir) for cid in sorted(catalogs)]
    elif args.catalog in catalogs:
        results = [_verify_catalog(args.catalog, catalogs[args.catalog], base_dir)]
    else:
        results = [{"catalog": args.catalog, "ok": False, "reason": "unknown catalog"}]

    ok = all(r.get("ok") for r in results)
    if args.json:
        print(json.dumps({"ok": ok, "results": results}, indent=2))
    else:
        for r in results:
            status = "OK" if r.get("ok") else "MISSING"
            print(f"[{status}] {r['catalog']}")
            if "reason" in r:
                print(f"  - reason: {r['reason']}")
            if "count" in r:
                print(f"  - count: {r['count']}")
            for s in r.get("sample") or []:
                print(f"    - {s}")
        print(f"Overall: {'OK' if ok else 'NOT OK'}")
    return 0 if ok else 2


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    handlers = {
        "plan": _handle_plan,
        "run": _handle_run,
        "verify": _handle_verify,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
