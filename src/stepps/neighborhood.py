#!/usr/bin/env python3
"""stepps.neighborhood

Site-to-cell geometry for the dispersal model.

Everything is Euclidean in the grid's projected CRS, so distances come out
in the same units as the grid resolution.

- distance_matrix: every site against every cell
- assign_home_cell: nearest cell per site (ties -> lowest cell_id)
- potential_neighborhood: cells within `radius` of each site, home cell
  always included
- potential_domain_distances: distinct centre-to-centre distances on the
  unbounded lattice within `radius`, with multiplicities, used to normalise
  the dispersal kernel over cells outside the gridded region
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.spatial.distance import cdist

from stepps.errors import ConfigError, EmptyDomainError, TransformFailure
from stepps.records import CELL_COL, SITE_COL, X_COL, Y_COL, require_columns, require_unique

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Neighborhood:
    """Cells that may contribute pollen to one site, nearest first."""

    site_id: object
    home_cell: int
    cell_ids: Tuple[int, ...]
    distances: Tuple[float, ...]

    @property
    def size(self) -> int:
        return len(self.cell_ids)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _points(df: pd.DataFrame, id_col: str, table: str) -> Tuple[np.ndarray, np.ndarray]:
    require_columns(df, [id_col, X_COL, Y_COL], table)
    require_unique(df, id_col, table)
    xy = df[[X_COL, Y_COL]].to_numpy(dtype=float)
    bad = ~np.isfinite(xy).all(axis=1)
    if bad.any():
        ids = df.loc[bad, id_col].tolist()[:10]
        raise TransformFailure(f"{table} has non-finite coordinates for {id_col} {ids}")
    return df[id_col].to_numpy(), xy


def _check_positive(value: float, name: str = "radius") -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be numeric, got {value!r}") from None
    if not math.isfinite(v) or v <= 0:
        raise ConfigError(f"{name} must be positive and finite, got {value!r}")
    return v


def _home_index(d: np.ndarray, cell_ids: np.ndarray) -> np.ndarray:
    """Column index of the nearest cell per row; equal distances go to the lowest id."""
    order = np.argsort(cell_ids, kind="stable")
    return order[np.argmin(d[:, order], axis=1)]


# -----------------------------------------------------------------------------
# Core
# -----------------------------------------------------------------------------

def distance_matrix(
    sites: pd.DataFrame,
    cells: pd.DataFrame,
    site_col: str = SITE_COL,
    cell_col: str = CELL_COL,
) -> np.ndarray:
    """(n_sites, n_cells) Euclidean distances, rows/columns in table order."""
    _, site_xy = _points(sites, site_col, "sites")
    _, cell_xy = _points(cells, cell_col, "cells")
    if len(cell_xy) == 0:
        return np.zeros((len(site_xy), 0))
    return cdist(site_xy, cell_xy, metric="euclidean")


def assign_home_cell(
    sites: pd.DataFrame,
    cells: pd.DataFrame,
    site_col: str = SITE_COL,
    cell_col: str = CELL_COL,
) -> Dict[object, int]:
    """Map each site_id to the cell_id of its nearest cell."""
    site_ids, _ = _points(sites, site_col, "sites")
    cell_ids, _ = _points(cells, cell_col, "cells")
    if len(cell_ids) == 0:
        raise EmptyDomainError("No grid cells to assign sites to")
    d = distance_matrix(sites, cells, site_col, cell_col)
    home = _home_index(d, cell_ids)
    return {sid: int(cell_ids[j]) for sid, j in zip(site_ids, home)}


def potential_neighborhood(
    sites: pd.DataFrame,
    cells: pd.DataFrame,
    radius: float,
    site_col: str = SITE_COL,
    cell_col: str = CELL_COL,
    d: Optional[np.ndarray] = None,
) -> List[Neighborhood]:
    """Cells within `radius` (inclusive) of each site, plus the home cell.

    The home cell is kept even when it lies beyond `radius`, so every site
    has at least one contributing cell. Cells are listed by increasing
    distance, ties by cell_id. Pass a precomputed `d` to avoid recomputing
    the distance matrix.
    """
    r = _check_positive(radius)
    site_ids, _ = _points(sites, site_col, "sites")
    cell_ids, _ = _points(cells, cell_col, "cells")
    if len(cell_ids) == 0:
        raise EmptyDomainError("No grid cells: every neighborhood would be empty")

    if d is None:
        d = distance_matrix(sites, cells, site_col, cell_col)
    elif d.shape != (len(site_ids), len(cell_ids)):
        raise ValueError(f"Distance matrix shape {d.shape} != ({len(site_ids)}, {len(cell_ids)})")

    home = _home_index(d, cell_ids)
    hoods: List[Neighborhood] = []
    clamped = 0
    for i, sid in enumerate(site_ids):
        within = d[i] <= r
        if not within[home[i]]:
            clamped += 1
            within = within.copy()
            within[home[i]] = True
        idx = np.flatnonzero(within)
        if idx.size == 0:
            raise EmptyDomainError(f"Site {sid!r} has no cells within radius {r}")
        idx = idx[np.lexsort((cell_ids[idx], d[i, idx]))]
        hoods.append(
            Neighborhood(
                site_id=sid,
                home_cell=int(cell_ids[home[i]]),
                cell_ids=tuple(int(c) for c in cell_ids[idx]),
                distances=tuple(float(v) for v in d[i, idx]),
            )
        )

    if clamped:
        logger.warning("%d sites have their home cell beyond radius %s; kept it anyway", clamped, r)
    sizes = [h.size for h in hoods]
    if sizes:
        logger.info("Neighborhoods: %d sites, %d-%d cells each", len(hoods), min(sizes), max(sizes))
    return hoods


def potential_domain_distances(resolution: float, radius: float) -> np.ndarray:
    """Distinct lattice distances within `radius` and how often each occurs.

    Returns an (N_pot, 2) array of [distance, count], ascending by distance.
    Distance 0 (the cell itself) is the first row.
    """
    res = _check_positive(resolution, "resolution")
    r = _check_positive(radius)
    k = int(math.floor(r / res + 1e-9))
    offsets = np.arange(-k, k + 1)
    ii, jj = np.meshgrid(offsets, offsets)
    sq = (ii ** 2 + jj ** 2).ravel()
    # integer squared offsets make distinct distances exact
    limit = (r / res) ** 2 * (1 + 1e-12)
    sq = sq[sq <= limit]
    uniq, counts = np.unique(sq, return_counts=True)
    return np.column_stack([res * np.sqrt(uniq.astype(float)), counts.astype(float)])
