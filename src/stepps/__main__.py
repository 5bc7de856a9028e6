#!/usr/bin/env python3
"""stepps

Calibration data preparation CLI.

Subcommands:
- taxa-template → draft a translation table from a raw dataset
- build-grid    → write the configured grid to a GeoPackage
- query-bbox    → lat/long bbox of the grid extent (for archive queries)
- prepare       → run the full pipeline and write the model input bundle

Design notes:
- Global args (--config, --dry-run, --overwrite, --verbose) apply to all
  subcommands
- Lazy-imports geo modules to keep CLI startup fast
- Errors raised by the core exit with their message, no traceback

Examples:
  # 1. Draft translation tables, then have them completed by hand
  python -m stepps taxa-template --records data/raw/pollen_samples.csv \
    --out config/pollen_translation.csv

  # 2. Bbox for the archive query
  python -m stepps query-bbox

  # 3. Build the model input
  python -m stepps prepare --samples data/raw/pollen_samples.csv \
    --ages data/raw/pollen_ages.csv --veg data/raw/veg_composition.csv \
    --samples-crs EPSG:4326 --out data/processed/calibration_input.npz
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import List, Optional

import pandas as pd

from stepps.config import DEFAULT_CONFIG_YAML, format_bbox, load_calibration_config
from stepps.errors import SteppsError
from stepps.records import SAMPLE_ID_COLUMNS


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for stepps."""
    ap = argparse.ArgumentParser(
        prog="stepps",
        description="Prepare pollen and vegetation data for STEPPS calibration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # --- Global args ---
    ap.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_YAML,
        help=f"Path to calibration YAML (default: {DEFAULT_CONFIG_YAML})",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned actions without writing files",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing output files",
    )
    ap.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Log progress (-v info, -vv debug)",
    )

    sub = ap.add_subparsers(dest="command", required=True)

    # --- taxa-template ---
    tmpl = sub.add_parser(
        "taxa-template",
        help="Draft a translation table listing every raw taxon",
        description="""
List every raw taxon column of a dataset in a CSV with an empty target_taxon
column. Complete the CSV by hand, then point the config at it.
With --existing, rows already translated in an older table are kept.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    tmpl.add_argument("--records", required=True, type=Path, help="Raw dataset CSV (wide: one column per taxon)")
    tmpl.add_argument(
        "--id-columns",
        nargs="+",
        default=SAMPLE_ID_COLUMNS,
        help=f"Non-taxon columns of the dataset (default: {' '.join(SAMPLE_ID_COLUMNS)})",
    )
    tmpl.add_argument("--existing", type=Path, default=None, help="Previous translation table to extend")
    tmpl.add_argument("--out", required=True, type=Path, help="Output CSV")

    # --- build-grid ---
    grid = sub.add_parser("build-grid", help="Write the configured grid to a GeoPackage")
    grid.add_argument("--out", required=True, type=Path, help="Output GeoPackage path")
    grid.add_argument("--layer", default="grid", help="Layer name (default: grid)")

    # --- query-bbox ---
    qb = sub.add_parser("query-bbox", help="Print the lat/long bbox of the grid extent")
    qb.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    # --- prepare ---
    prep = sub.add_parser(
        "prepare",
        help="Build the calibration model input",
        description="""
Run time-bin selection, taxon harmonization, gridding and neighborhood
construction, then write the model input bundle (.npz).
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    prep.add_argument("--samples", required=True, type=Path, help="Pollen samples CSV")
    prep.add_argument("--ages", required=True, type=Path, help="Long ages CSV (sample_id, age_model, age)")
    prep.add_argument("--veg", required=True, type=Path, help="Vegetation composition CSV (x, y, taxa...)")
    prep.add_argument("--veg-sd", type=Path, default=None, help="Optional vegetation standard deviations CSV")
    prep.add_argument("--pollen-table", type=Path, default=None, help="Override config taxa.pollen_table")
    prep.add_argument("--veg-table", type=Path, default=None, help="Override config taxa.veg_table")
    prep.add_argument("--samples-crs", default=None, help="CRS of sample coordinates (default: grid CRS)")
    prep.add_argument("--veg-crs", default=None, help="CRS of vegetation coordinates (default: grid CRS)")
    prep.add_argument("--out", required=True, type=Path, help="Output .npz")
    prep.add_argument("--summary-json", type=Path, default=None, help="Optional JSON summary path")
    prep.add_argument("--excluded-csv", type=Path, default=None, help="Optional CSV of excluded samples")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _refuse_existing(paths: List[Optional[Path]], overwrite: bool) -> None:
    for p in paths:
        if p is not None and p.exists() and not overwrite:
            raise SystemExit(f"Output exists: {p} (use --overwrite)")


def _require_file(path: Path, what: str) -> None:
    if not path.exists():
        raise SystemExit(f"{what} not found: {path}")


def _handle_taxa_template(args: argparse.Namespace) -> int:
    _require_file(args.records, "Records CSV")
    _refuse_existing([args.out], args.overwrite)

    from stepps.taxonomy import build_template, write_template

    records = pd.read_csv(args.records)
    existing = pd.read_csv(args.existing) if args.existing else None
    template = build_template(records, args.id_columns, existing=existing)

    if args.dry_run:
        print(f"[dry-run] Would write {len(template)} raw taxa -> {args.out}")
        return 0

    write_template(template, args.out, overwrite=args.overwrite)
    todo = int((template["target_taxon"].fillna("").astype(str).str.strip() == "").sum())
    print(f"Wrote {len(template)} raw taxa -> {args.out} ({todo} need a target_taxon)")
    return 0


def _handle_build_grid(args: argparse.Namespace) -> int:
    cfg = load_calibration_config(args.config)
    _refuse_existing([args.out], args.overwrite)

    if args.dry_run:
        print("[dry-run] Would build grid:")
        print(f"  Extent: {format_bbox(cfg.grid_bounds, precision=1)} ({cfg.projection})")
        print(f"  Resolution: {cfg.resolution}")
        print(f"  Output: {args.out} (layer={args.layer})")
        return 0

    from stepps.geo.grid import build_grid

    grid = build_grid(cfg.grid_bounds, cfg.resolution, cfg.projection)
    args.out.parent.mkdir(parents=True, exist_ok=True)
    grid.to_file(args.out, layer=args.layer, driver="GPKG")
    print(f"Wrote {len(grid)} cells -> {args.out} (layer={args.layer})")
    return 0


def _handle_query_bbox(args: argparse.Namespace) -> int:
    cfg = load_calibration_config(args.config)

    from stepps.pipeline import query_bbox

    bbox = query_bbox(cfg)
    if args.json:
        print(json.dumps({"crs": cfg.geographic, "bbox": list(bbox)}))
    else:
        print(f"Grid extent in {cfg.geographic}: {format_bbox(bbox)}")
    return 0


def _handle_prepare(args: argparse.Namespace) -> int:
    cfg = load_calibration_config(args.config)
    pollen_table = args.pollen_table or cfg.pollen_table
    veg_table = args.veg_table or cfg.veg_table
    if pollen_table is None or veg_table is None:
        raise SystemExit("Translation tables missing: set taxa.pollen_table/veg_table or pass --pollen-table/--veg-table")

    inputs = [(args.samples, "Samples CSV"), (args.ages, "Ages CSV"), (args.veg, "Vegetation CSV"),
              (pollen_table, "Pollen translation table"), (veg_table, "Vegetation translation table")]
    if args.veg_sd:
        inputs.append((args.veg_sd, "Vegetation SD CSV"))
    for path, what in inputs:
        _require_file(path, what)
    _refuse_existing([args.out, args.summary_json, args.excluded_csv], args.overwrite)

    if args.dry_run:
        print("[dry-run] Would prepare calibration input:")
        print(f"  Samples: {args.samples} (ages: {args.ages})")
        print(f"  Vegetation: {args.veg}")
        print(f"  Translation tables: {pollen_table}, {veg_table}")
        print(f"  Calibration range: {cfg.calibration_range}")
        print(f"  Grid: resolution {cfg.resolution}, radius {cfg.radius} ({cfg.projection})")
        print(f"  Output: {args.out}")
        return 0

    from stepps.pipeline import prepare_calibration_input
    from stepps.taxonomy import read_translation_table

    prepared = prepare_calibration_input(
        samples=pd.read_csv(args.samples),
        ages=pd.read_csv(args.ages),
        veg=pd.read_csv(args.veg),
        pollen_map=read_translation_table(pollen_table),
        veg_map=read_translation_table(veg_table),
        config=cfg,
        samples_crs=args.samples_crs,
        veg_crs=args.veg_crs,
        veg_uncertainty=pd.read_csv(args.veg_sd) if args.veg_sd else None,
    )

    mi = prepared.model_input
    mi.save(args.out, summary_json=args.summary_json)
    if args.excluded_csv:
        args.excluded_csv.parent.mkdir(parents=True, exist_ok=True)
        prepared.excluded_samples.to_csv(args.excluded_csv, index=False)

    print(f"Wrote model input -> {args.out}")
    print(f"  K={mi.K} N_cores={mi.N_cores} N_cells={mi.N_cells} N_pot={mi.N_pot}")
    print(f"  Taxa: {', '.join(mi.taxa)}")
    if len(prepared.excluded_samples):
        counts = prepared.excluded_samples["reason"].value_counts().to_dict()
        print(f"  Excluded samples: {counts}")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for the stepps CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    handlers = {
        "taxa-template": _handle_taxa_template,
        "build-grid": _handle_build_grid,
        "query-bbox": _handle_query_bbox,
        "prepare": _handle_prepare,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    try:
        return handler(args)
    except SteppsError as e:
        raise SystemExit(f"{type(e).__name__}: {e}") from e


if __name__ == "__main__":
    raise SystemExit(main())
