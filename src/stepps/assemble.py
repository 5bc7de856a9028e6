#!/usr/bin/env python3
"""stepps.assemble

Assemble the calibration model input bundle.

Field names follow the sampler's data block:
    K          number of taxa
    N_cores    number of pollen sites
    N_cells    number of vegetation cells
    N_hood     cells per site neighborhood (vector, length N_cores)
    y          pollen counts, N_cores x K (int)
    r          vegetation proportions, N_cells x K
    idx_cores  home cell per site, length N_cores
    idx_hood   neighborhood cells per site, N_cores x max(N_hood), padded
    d          site-to-cell distances, N_cores x N_cells
    N_pot      rows of d_pot
    d_pot      [distance, count] pairs over the potential domain, N_pot x 2

Row i of y, idx_cores, idx_hood and d is the i-th site of the pollen table.
Row j of r and column j of d is the j-th cell of the vegetation table.
Indices are 1-based by default (Stan); padding is 0, which is never a valid
1-based index. With index_base=0 padding is -1.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from stepps.errors import ShapeMismatchError
from stepps.neighborhood import Neighborhood, distance_matrix
from stepps.records import CELL_COL, SITE_COL, require_unique

logger = logging.getLogger(__name__)

MODEL_FIELDS = ("K", "N_cores", "N_cells", "N_hood", "y", "r",
                "idx_cores", "idx_hood", "d", "N_pot", "d_pot")


def _frozen(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class ModelInput:
    K: int
    N_cores: int
    N_cells: int
    N_hood: np.ndarray
    y: np.ndarray
    r: np.ndarray
    idx_cores: np.ndarray
    idx_hood: np.ndarray
    d: np.ndarray
    N_pot: int
    d_pot: np.ndarray
    taxa: List[str] = field(default_factory=list)
    site_ids: List[Any] = field(default_factory=list)
    cell_ids: List[Any] = field(default_factory=list)
    index_base: int = 1

    @property
    def pad_value(self) -> int:
        return 0 if self.index_base == 1 else -1

    def validate(self) -> "ModelInput":
        """Raise ShapeMismatchError if any array disagrees with K/N_cores/N_cells."""
        K, n, m = self.K, self.N_cores, self.N_cells
        expected = {
            "y": (self.y.shape, (n, K)),
            "r": (self.r.shape, (m, K)),
            "idx_cores": (self.idx_cores.shape, (n,)),
            "N_hood": (self.N_hood.shape, (n,)),
            "d": (self.d.shape, (n, m)),
            "d_pot": (self.d_pot.shape, (self.N_pot, 2)),
        }
        for name, (got, want) in expected.items():
            if got != want:
                raise ShapeMismatchError(f"{name} has shape {got}, expected {want}")

        width = int(self.N_hood.max()) if n else 0
        if self.idx_hood.shape != (n, width):
            raise ShapeMismatchError(f"idx_hood has shape {self.idx_hood.shape}, expected {(n, width)}")
        if len(self.taxa) != K:
            raise ShapeMismatchError(f"{len(self.taxa)} taxon names for K={K}")
        if len(self.site_ids) != n or len(self.cell_ids) != m:
            raise ShapeMismatchError("site_ids / cell_ids do not match N_cores / N_cells")

        lo, hi = self.index_base, m - 1 + self.index_base
        if n and ((self.idx_cores < lo).any() or (self.idx_cores > hi).any()):
            raise ShapeMismatchError(f"idx_cores outside [{lo}, {hi}]")
        for i in range(n):
            k = int(self.N_hood[i])
            if k < 1:
                raise ShapeMismatchError(f"Site {self.site_ids[i]!r} has an empty neighborhood")
            row = self.idx_hood[i]
            if (row[:k] < lo).any() or (row[:k] > hi).any():
                raise ShapeMismatchError(f"idx_hood row {i} has indices outside [{lo}, {hi}]")
            if (row[k:] != self.pad_value).any():
                raise ShapeMismatchError(f"idx_hood row {i} is not padded with {self.pad_value}")
            if self.idx_cores[i] not in row[:k]:
                raise ShapeMismatchError(f"Home cell of site {self.site_ids[i]!r} missing from its neighborhood")

        if (self.y < 0).any():
            raise ShapeMismatchError("y has negative counts")
        if not np.isfinite(self.r).all() or (self.r < 0).any():
            raise ShapeMismatchError("r has negative or non-finite proportions")
        if not np.isfinite(self.d).all() or (self.d < 0).any():
            raise ShapeMismatchError("d has negative or non-finite distances")
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Plain mapping of the sampler fields (e.g. for cmdstanpy `data=`)."""
        return {name: getattr(self, name) for name in MODEL_FIELDS}

    def summary(self) -> Dict[str, Any]:
        return {
            "K": self.K,
            "N_cores": self.N_cores,
            "N_cells": self.N_cells,
            "N_pot": self.N_pot,
            "N_hood_min": int(self.N_hood.min()) if self.N_cores else 0,
            "N_hood_max": int(self.N_hood.max()) if self.N_cores else 0,
            "index_base": self.index_base,
            "taxa": list(self.taxa),
        }

    def save(self, path: Path, summary_json: Optional[Path] = None) -> Path:
        """Write the bundle as .npz (plus an optional JSON summary)."""
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez_compressed(
            path,
            **self.to_dict(),
            taxa=np.asarray(self.taxa, dtype=str),
            site_ids=np.asarray([str(s) for s in self.site_ids], dtype=str),
            cell_ids=np.asarray(self.cell_ids),
            index_base=self.index_base,
        )
        if summary_json is not None:
            summary_json.parent.mkdir(parents=True, exist_ok=True)
            summary_json.write_text(json.dumps(self.summary(), indent=2), encoding="utf-8")
        return path


# -----------------------------------------------------------------------------
# Assembly
# -----------------------------------------------------------------------------

def _counts(pollen: pd.DataFrame, taxa: Sequence[str], site_col: str) -> np.ndarray:
    raw = pollen[list(taxa)].to_numpy(dtype=float)
    if not np.isfinite(raw).all():
        raise ShapeMismatchError("Pollen counts contain missing or non-finite values")
    rounded = np.rint(raw)
    bad = ~np.isclose(raw, rounded, rtol=0, atol=1e-6).all(axis=1)
    if bad.any():
        sites = pollen.loc[bad, site_col].tolist()[:10]
        raise ShapeMismatchError(f"Pollen counts are not whole numbers for sites {sites}")
    return rounded.astype(np.int64)


def assemble_input(
    pollen: pd.DataFrame,
    veg: pd.DataFrame,
    neighborhoods: Sequence[Neighborhood],
    taxa: Sequence[str],
    *,
    d: Optional[np.ndarray] = None,
    d_pot: Optional[np.ndarray] = None,
    site_col: str = SITE_COL,
    cell_col: str = CELL_COL,
    index_base: int = 1,
) -> ModelInput:
    """Build and validate the ModelInput bundle.

    Args:
        pollen: harmonized site table (site_col, x, y, taxa...), one row per site.
        veg: harmonized cell table (cell_col, x, y, taxa...), one row per cell.
        neighborhoods: one Neighborhood per site, built against `veg`'s cells.
        taxa: shared taxon order for the columns of y and r.
        d: site-to-cell distances in (pollen, veg) row order; computed if None.
        d_pot: potential-domain [distance, count] table; empty if None.
        index_base: 1 for Stan, 0 for Python indices.
    """
    if index_base not in (0, 1):
        raise ValueError(f"index_base must be 0 or 1, got {index_base!r}")
    taxa = [str(t) for t in taxa]
    if len(set(taxa)) != len(taxa) or not taxa:
        raise ShapeMismatchError(f"Taxon list must be non-empty and unique, got {taxa}")
    for name, table in (("pollen", pollen), ("vegetation", veg)):
        missing = [t for t in taxa if t not in table.columns]
        if missing:
            raise ShapeMismatchError(f"{name} table lacks taxon columns {missing}")
    require_unique(pollen, site_col, "pollen")
    require_unique(veg, cell_col, "vegetation")

    site_ids = pollen[site_col].tolist()
    cell_ids = veg[cell_col].tolist()
    position = {cid: j for j, cid in enumerate(cell_ids)}

    by_site = {h.site_id: h for h in neighborhoods}
    if len(by_site) != len(neighborhoods):
        raise ShapeMismatchError("More than one neighborhood for the same site")
    missing_sites = [s for s in site_ids if s not in by_site]
    extra_sites = [s for s in by_site if s not in set(site_ids)]
    if missing_sites or extra_sites:
        raise ShapeMismatchError(
            f"Neighborhoods do not match pollen sites: missing {missing_sites[:10]}, extra {extra_sites[:10]}"
        )

    hoods = [by_site[s] for s in site_ids]
    unknown = sorted({c for h in hoods for c in h.cell_ids if c not in position})
    if unknown:
        raise ShapeMismatchError(f"Neighborhoods reference cells absent from the vegetation table: {unknown[:10]}")

    n_hood = np.array([h.size for h in hoods], dtype=np.int64)
    width = int(n_hood.max()) if len(hoods) else 0
    pad = 0 if index_base == 1 else -1
    idx_hood = np.full((len(hoods), width), pad, dtype=np.int64)
    for i, h in enumerate(hoods):
        idx_hood[i, : h.size] = [position[c] + index_base for c in h.cell_ids]
    idx_cores = np.array([position[h.home_cell] + index_base for h in hoods], dtype=np.int64)

    if d is None:
        d = distance_matrix(pollen, veg, site_col, cell_col)
    if d_pot is None:
        d_pot = np.zeros((0, 2))

    bundle = ModelInput(
        K=len(taxa),
        N_cores=len(site_ids),
        N_cells=len(cell_ids),
        N_hood=_frozen(n_hood),
        y=_frozen(_counts(pollen, taxa, site_col)),
        r=_frozen(veg[taxa].to_numpy(dtype=float)),
        idx_cores=_frozen(idx_cores),
        idx_hood=_frozen(idx_hood),
        d=_frozen(np.asarray(d, dtype=float)),
        N_pot=int(np.asarray(d_pot).shape[0]),
        d_pot=_frozen(np.asarray(d_pot, dtype=float)),
        taxa=taxa,
        site_ids=site_ids,
        cell_ids=cell_ids,
        index_base=index_base,
    ).validate()

    logger.info("Model input: K=%d N_cores=%d N_cells=%d N_pot=%d",
                bundle.K, bundle.N_cores, bundle.N_cells, bundle.N_pot)
    return bundle
