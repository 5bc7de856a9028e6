#!/usr/bin/env python3
"""stepps.geo.grid

Regular grid over the calibration region, in the projected CRS.

Tiling rules (these must not change between runs, cell ids feed the
distance matrix and the model indices):
- The lattice is aligned to a fixed origin (default 0, 0): column i spans
  ox + i*res to ox + (i+1)*res, row j likewise in y.
- A cell is kept iff its footprint shares positive area with the region.
  Touching the region only along an edge or at a corner does not count.
  A zero-width bbox side selects the lattice cell that contains it.
- Cells are ordered south to north, then west to east, and `cell_id` is the
  0-based position in that order.

Vegetation estimates arrive as points (usually the cell centres of a
gridded product); `attach_composition` snaps them onto the grid with a
spatial join.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry

from stepps.errors import GridError, TransformFailure
from stepps.geo.transform import CRSLike, resolve_crs
from stepps.records import CELL_COL, X_COL, Y_COL, require_columns, taxon_columns

logger = logging.getLogger(__name__)

BBox = Tuple[float, float, float, float]
Region = Union[BBox, Sequence[float], BaseGeometry, gpd.GeoDataFrame, gpd.GeoSeries]

# Relative slack when snapping bbox edges onto lattice lines (0.3 / 0.1 != 3).
_SNAP_EPS = 1e-9


@dataclass(frozen=True)
class GridCell:
    cell_id: int
    x: float
    y: float
    col: int
    row: int


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _snap(q: float) -> float:
    r = round(q)
    return float(r) if abs(q - r) < _SNAP_EPS else q


def _lattice_range(lo: float, hi: float, origin: float, res: float) -> range:
    """Lattice indices whose cell shares a positive-length stretch with [lo, hi].

    A cell that only meets `lo` or `hi` at its edge is left out. When lo == hi
    the single cell containing that coordinate is returned.
    """
    start = math.floor(_snap((lo - origin) / res))
    stop = math.ceil(_snap((hi - origin) / res))
    if stop <= start:
        stop = start + 1
    return range(start, stop)


def _union(geoms: Union[gpd.GeoDataFrame, gpd.GeoSeries]) -> BaseGeometry:
    """Dissolve a GeoSeries into one geometry across geopandas versions."""
    series = geoms.geometry if isinstance(geoms, gpd.GeoDataFrame) else geoms
    if hasattr(series, "union_all"):
        return series.union_all()
    return series.unary_union


def _resolve_region(region: Region, crs) -> Tuple[BBox, Optional[BaseGeometry]]:
    if isinstance(region, (gpd.GeoDataFrame, gpd.GeoSeries)):
        if region.empty:
            raise GridError("Region GeoDataFrame is empty")
        if region.crs is not None and not region.crs.equals(crs):
            region = region.to_crs(crs)
        geom = _union(region)
        return tuple(geom.bounds), geom  # type: ignore[return-value]
    if isinstance(region, BaseGeometry):
        if region.is_empty:
            raise GridError("Region geometry is empty")
        return tuple(region.bounds), region  # type: ignore[return-value]

    if len(region) != 4:
        raise GridError(f"Region bbox must be [xmin, ymin, xmax, ymax], got {region!r}")
    xmin, ymin, xmax, ymax = (float(v) for v in region)
    if not all(math.isfinite(v) for v in (xmin, ymin, xmax, ymax)):
        raise GridError(f"Region bbox has non-finite values: {region!r}")
    if xmin > xmax or ymin > ymax:
        raise GridError(f"Inverted region bbox: {region!r}")
    return (xmin, ymin, xmax, ymax), None


# -----------------------------------------------------------------------------
# Core
# -----------------------------------------------------------------------------

def build_grid(
    region: Region,
    resolution: float,
    crs: CRSLike,
    *,
    origin: Tuple[float, float] = (0.0, 0.0),
) -> gpd.GeoDataFrame:
    """Build the grid covering `region`.

    Args:
        region: bbox (xmin, ymin, xmax, ymax) or shapely geometry / GeoDataFrame,
            in `crs` (GeoDataFrames in another CRS are reprojected first).
        resolution: cell edge length, in `crs` units.
        crs: projected CRS of the grid.
        origin: lattice anchor.

    Returns:
        GeoDataFrame with cell_id, col, row, x, y (cell centre) and the cell
        footprint as geometry.
    """
    try:
        res = float(resolution)
    except (TypeError, ValueError):
        raise GridError(f"Resolution must be numeric, got {resolution!r}") from None
    if not math.isfinite(res) or res <= 0:
        raise GridError(f"Resolution must be positive, got {resolution!r}")

    grid_crs = resolve_crs(crs)
    if grid_crs.is_geographic:
        logger.warning("Grid CRS %s is geographic; distances will be in degrees", grid_crs.name)

    (xmin, ymin, xmax, ymax), geom = _resolve_region(region, grid_crs)
    ox, oy = float(origin[0]), float(origin[1])

    cols = np.asarray(_lattice_range(xmin, xmax, ox, res))
    rows = np.asarray(_lattice_range(ymin, ymax, oy, res))
    cc, rr = np.meshgrid(cols, rows)  # rows vary slowest: south to north, then west to east
    cc = cc.ravel()
    rr = rr.ravel()

    x0 = ox + cc * res
    y0 = oy + rr * res
    footprints = [box(a, b, a + res, b + res) for a, b in zip(x0, y0)]

    grid = gpd.GeoDataFrame(
        {
            "col": cc.astype(int),
            "row": rr.astype(int),
            X_COL: x0 + res / 2.0,
            Y_COL: y0 + res / 2.0,
        },
        geometry=footprints,
        crs=grid_crs,
    )

    if geom is not None:
        # positive-area overlap only: drop cells that merely touch the region
        keep = grid.intersects(geom) & ~grid.touches(geom)
        grid = grid[keep.to_numpy()]
        if grid.empty:
            raise GridError("No grid cells overlap the region")

    grid = grid.reset_index(drop=True)
    grid.insert(0, CELL_COL, np.arange(len(grid), dtype=int))
    logger.info("Built grid: %d cells at resolution %s (%d cols x %d rows)",
                len(grid), res, len(cols), len(rows))
    return grid


def grid_cells(grid: gpd.GeoDataFrame) -> List[GridCell]:
    """Grid rows as GridCell records, in cell_id order."""
    ordered = grid.sort_values(CELL_COL)
    return [
        GridCell(int(r[CELL_COL]), float(r[X_COL]), float(r[Y_COL]), int(r["col"]), int(r["row"]))
        for _, r in ordered.iterrows()
    ]


def attach_composition(
    grid: gpd.GeoDataFrame,
    veg: pd.DataFrame,
    *,
    x_col: str = X_COL,
    y_col: str = Y_COL,
    id_columns: Sequence[str] = (),
    how: str = "mean",
) -> pd.DataFrame:
    """Snap vegetation records onto grid cells.

    Records sharing a cell are combined with `how` ("mean" for proportions,
    "rms" for standard deviations). Records on a shared cell edge go to the
    lowest cell_id. Returns a cell table (cell_id, x, y, taxa...) holding
    only cells with data, ordered by cell_id; x/y are the cell centres.

    Raises TransformFailure if any record falls outside the grid.
    """
    require_columns(veg, [x_col, y_col], "vegetation table")
    if how not in ("mean", "rms"):
        raise ValueError(f"how must be 'mean' or 'rms', got {how!r}")

    taxa = taxon_columns(veg, [x_col, y_col, *id_columns])
    points = gpd.GeoDataFrame(
        veg[taxa].reset_index(drop=True),
        geometry=gpd.points_from_xy(veg[x_col], veg[y_col]),
        crs=grid.crs,
    )
    points["_rec"] = np.arange(len(points))

    joined = gpd.sjoin(points, grid[[CELL_COL, "geometry"]], how="left", predicate="intersects")
    outside = joined[joined[CELL_COL].isna()]
    if not outside.empty:
        rows = outside["_rec"].tolist()[:10]
        raise TransformFailure(
            f"{outside['_rec'].nunique()} vegetation records fall outside the grid (rows {rows})"
        )

    joined = joined.sort_values(["_rec", CELL_COL]).drop_duplicates("_rec", keep="first")
    joined[CELL_COL] = joined[CELL_COL].astype(int)

    values = joined[[CELL_COL, *taxa]]
    if how == "mean":
        combined = values.groupby(CELL_COL)[taxa].mean()
    else:
        combined = np.sqrt((values[taxa] ** 2).groupby(values[CELL_COL]).mean())

    centres = pd.DataFrame(grid[[CELL_COL, X_COL, Y_COL]]).set_index(CELL_COL)
    out = centres.join(combined, how="inner").reset_index().sort_values(CELL_COL)
    n_multi = int((values[CELL_COL].value_counts() > 1).sum())
    if n_multi:
        logger.info("%d cells received more than one vegetation record (combined by %s)", n_multi, how)
    return out.reset_index(drop=True)
