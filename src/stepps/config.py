#!/usr/bin/env python3
"""stepps.config

Shared configuration utilities for the stepps CLI and pipeline.

The calibration YAML holds every workflow-specific constant: projection,
grid extent and resolution, neighborhood radius, calibration window,
age-model preference, and the paths to the expert-edited translation tables.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Grid resolution and neighborhood radius are required. There are no
  defaults for them; a wrong default would bias the calibration silently.
- Grid bounds may be given once (`grid.bounds`) or per subregion
  (`grid.regions[].bounds`), in which case their union is used.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from stepps.errors import ConfigError

BBox = Tuple[float, float, float, float]


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    Config errors should fail fast.
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


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


def grid_bounds_from_yaml(grid_yaml: Dict[str, Any]) -> Optional[BBox]:
    """Resolve the grid extent from the `grid:` section.

    Accepts either:
    - `bounds: [xmin, ymin, xmax, ymax]`
    - `regions:` entries each with `bounds: [...]` (their union is used)

    Returns None if no valid bounds found.
    """
    bbox = coerce_bbox(grid_yaml.get("bounds"))
    if bbox:
        return bbox

    regions = grid_yaml.get("regions")
    if isinstance(regions, list):
        bboxes: List[BBox] = []
        for r in regions:
            if isinstance(r, dict):
                b = coerce_bbox(r.get("bounds"))
                if b:
                    bboxes.append(b)
        return union_bbox(bboxes)

    return None


def format_bbox(b: BBox, precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


# -----------------------------------------------------------------------------
# Calibration config
# -----------------------------------------------------------------------------

# Neotoma age types, most trusted first.
DEFAULT_AGE_MODEL_PRIORITY: Tuple[str, ...] = (
    "Calendar years BP",
    "Calibrated radiocarbon years BP",
    "Varve years BP",
    "Radiocarbon years BP",
)

AGGREGATE_MODES = ("sum", "nearest")


@dataclass(frozen=True)
class CalibrationConfig:
    """Validated contents of a calibration YAML."""

    projection: str
    grid_bounds: BBox
    resolution: float
    radius: float
    calibration_range: Tuple[float, float]
    geographic: str = "EPSG:4326"
    preferred_age_model: Optional[str] = None
    age_model_priority: Tuple[str, ...] = DEFAULT_AGE_MODEL_PRIORITY
    aggregate: str = "sum"
    pollen_table: Optional[Path] = None
    veg_table: Optional[Path] = None
    target_order: Optional[Tuple[str, ...]] = None
    index_base: int = 1
    area_of_use_margin: float = 0.0


def _positive(value: Any, name: str) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}") from None
    if not math.isfinite(v) or v <= 0:
        raise ConfigError(f"{name} must be positive and finite, got {value!r}")
    return v


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    sec = data.get(key, {})
    if not isinstance(sec, dict):
        raise ConfigError(f"'{key}:' must be a mapping")
    return sec


def _resolve_path(value: Any, base: Path) -> Optional[Path]:
    if value in (None, ""):
        return None
    p = Path(str(value))
    return p if p.is_absolute() else base / p


def parse_calibration_config(data: Dict[str, Any], base_dir: Path = Path(".")) -> CalibrationConfig:
    """Build a CalibrationConfig from an already-loaded YAML mapping.

    Relative table paths are resolved against `base_dir`.
    Raises ConfigError for missing or invalid values.
    """
    projection = data.get("projection")
    if not projection:
        raise ConfigError("'projection:' is required (the grid CRS, e.g. EPSG:3175)")

    grid = _section(data, "grid")
    bounds = grid_bounds_from_yaml(grid)
    if bounds is None:
        raise ConfigError(
            "Could not resolve grid bounds. Add 'grid: bounds: [xmin, ymin, xmax, ymax]' "
            "or per-region bounds under 'grid: regions:'"
        )
    if "resolution" not in grid:
        raise ConfigError("'grid: resolution:' is required")
    resolution = _positive(grid["resolution"], "grid.resolution")

    hood = _section(data, "neighborhood")
    if "radius" not in hood:
        raise ConfigError("'neighborhood: radius:' is required")
    radius = _positive(hood["radius"], "neighborhood.radius")

    tb = _section(data, "time_bins")
    rng = tb.get("calibration_range")
    if not (isinstance(rng, (list, tuple)) and len(rng) == 2):
        raise ConfigError("'time_bins: calibration_range:' must be [lo, hi]")
    try:
        lo, hi = float(rng[0]), float(rng[1])
    except (TypeError, ValueError):
        raise ConfigError(f"calibration_range must be numeric, got {rng!r}") from None
    if lo > hi:
        raise ConfigError(f"calibration_range lower bound {lo} exceeds upper bound {hi}")

    priority = tb.get("age_model_priority", list(DEFAULT_AGE_MODEL_PRIORITY))
    if not isinstance(priority, list) or not all(isinstance(p, str) for p in priority):
        raise ConfigError("'time_bins: age_model_priority:' must be a list of strings")

    aggregate = tb.get("aggregate", "sum")
    if aggregate not in AGGREGATE_MODES:
        raise ConfigError(f"time_bins.aggregate must be one of {AGGREGATE_MODES}, got {aggregate!r}")

    taxa = _section(data, "taxa")
    target_order = taxa.get("target_order")
    if target_order is not None:
        if not isinstance(target_order, list) or not target_order:
            raise ConfigError("'taxa: target_order:' must be a non-empty list")
        target_order = tuple(str(t) for t in target_order)

    xform = _section(data, "transform")
    margin = xform.get("area_of_use_margin", 0.0)
    try:
        margin = float(margin)
    except (TypeError, ValueError):
        raise ConfigError(f"transform.area_of_use_margin must be a number, got {margin!r}") from None
    if not math.isfinite(margin) or margin < 0:
        raise ConfigError(f"transform.area_of_use_margin must be >= 0 degrees, got {margin!r}")

    output = _section(data, "output")
    index_base = output.get("index_base", 1)
    if index_base not in (0, 1):
        raise ConfigError(f"output.index_base must be 0 or 1, got {index_base!r}")

    return CalibrationConfig(
        projection=str(projection),
        geographic=str(data.get("geographic", "EPSG:4326")),
        grid_bounds=bounds,
        resolution=resolution,
        radius=radius,
        calibration_range=(lo, hi),
        preferred_age_model=tb.get("preferred_age_model"),
        age_model_priority=tuple(priority),
        aggregate=aggregate,
        pollen_table=_resolve_path(taxa.get("pollen_table"), base_dir),
        veg_table=_resolve_path(taxa.get("veg_table"), base_dir),
        target_order=target_order,
        index_base=int(index_base),
        area_of_use_margin=margin,
    )


def load_calibration_config(path: Path) -> CalibrationConfig:
    """Load and validate a calibration YAML."""
    return parse_calibration_config(load_yaml(path), base_dir=path.parent)


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so the CLI and scripts use the same defaults.

DEFAULT_CONFIG_YAML = Path("config/calibration.yaml")
