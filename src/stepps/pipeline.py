#!/usr/bin/env python3
"""stepps.pipeline

End-to-end preparation of the calibration input.

    samples + ages ──> time bin ──┐
                                  ├─> harmonize taxa ─> neighborhoods ─> assemble
    veg ──> grid + snap to cells ─┘

All inputs are already-materialized tables; nothing here touches the
network or a remote archive. `query_bbox` gives the lat/long box to use
when fetching those tables.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import geopandas as gpd
import pandas as pd

from stepps.assemble import ModelInput, assemble_input
from stepps.config import BBox, CalibrationConfig
from stepps.errors import EmptyDomainError
from stepps.geo.grid import Region, attach_composition, build_grid
from stepps.geo.transform import CoordinateTransformer, CRSLike, resolve_crs, to_projection
from stepps.neighborhood import (
    Neighborhood,
    distance_matrix,
    potential_domain_distances,
    potential_neighborhood,
)
from stepps.records import AGE_COL, AGE_MODEL_COL, CELL_COL, SITE_COL, X_COL, Y_COL
from stepps.taxonomy import TaxonMap, apply_translation, harmonize_pair
from stepps.timebins import select_time_bin

logger = logging.getLogger(__name__)

POLLEN_ID_COLUMNS = [SITE_COL, X_COL, Y_COL, AGE_COL, AGE_MODEL_COL, "n_samples"]
CELL_ID_COLUMNS = [CELL_COL, X_COL, Y_COL]


@dataclass(frozen=True)
class PreparedInput:
    model_input: ModelInput
    excluded_samples: pd.DataFrame
    grid: gpd.GeoDataFrame
    pollen: pd.DataFrame
    veg: pd.DataFrame
    neighborhoods: List[Neighborhood]
    veg_sd: Optional[pd.DataFrame] = None


def query_bbox(config: CalibrationConfig) -> BBox:
    """Lat/long bbox covering the configured grid extent, for archive queries."""
    tr = CoordinateTransformer(config.projection, config.geographic, area_margin=config.area_of_use_margin)
    return tr.transform_bounds(config.grid_bounds)


def _reproject(
    df: pd.DataFrame, crs: Optional[CRSLike], target: str, what: str, margin: float = 0.0
) -> pd.DataFrame:
    if crs is None:
        return df
    if resolve_crs(crs).equals(resolve_crs(target)):
        return df
    logger.info("Reprojecting %s from %s to %s", what, crs, target)
    return to_projection(df, crs, target, area_margin=margin)


def prepare_calibration_input(
    samples: pd.DataFrame,
    ages: pd.DataFrame,
    veg: pd.DataFrame,
    pollen_map: TaxonMap,
    veg_map: TaxonMap,
    config: CalibrationConfig,
    *,
    samples_crs: Optional[CRSLike] = None,
    veg_crs: Optional[CRSLike] = None,
    veg_uncertainty: Optional[pd.DataFrame] = None,
    region: Optional[Region] = None,
) -> PreparedInput:
    """Run every stage and return the assembled bundle plus intermediates.

    Args:
        samples: pollen samples (site_id, sample_id, x, y, raw counts...).
        ages: long ages table (sample_id, age_model, age).
        veg: vegetation records (x, y, raw proportions...).
        pollen_map / veg_map: completed translation tables.
        config: calibration config.
        samples_crs / veg_crs: CRS of the input coordinates when they are not
            already in `config.projection` (sites usually come as lat/long).
            Points outside the projection's area of use (widened by
            `config.area_of_use_margin` degrees) raise TransformFailure.
        veg_uncertainty: optional table shaped like `veg` holding standard
            deviations; translated alongside and returned as `veg_sd`.
        region: optional geometry to clip the grid; defaults to the
            configured bbox.
    """
    margin = config.area_of_use_margin
    samples = _reproject(samples, samples_crs, config.projection, "pollen samples", margin)
    veg = _reproject(veg, veg_crs, config.projection, "vegetation", margin)

    tb = select_time_bin(
        samples,
        ages,
        config.calibration_range,
        preferred=config.preferred_age_model,
        priority=config.age_model_priority,
        aggregate=config.aggregate,
    )
    if tb.selected.empty:
        raise EmptyDomainError(
            f"No pollen sites have samples inside the calibration range {config.calibration_range}"
        )

    grid = build_grid(region if region is not None else config.grid_bounds, config.resolution, config.projection)
    cells = attach_composition(grid, veg)

    pollen_h, veg_h, taxa = harmonize_pair(
        tb.selected,
        cells,
        pollen_map,
        veg_map,
        POLLEN_ID_COLUMNS,
        CELL_ID_COLUMNS,
        target_order=config.target_order,
    )

    veg_sd = None
    if veg_uncertainty is not None:
        veg_uncertainty = _reproject(
            veg_uncertainty, veg_crs, config.projection, "vegetation uncertainty", margin
        )
        sd_cells = attach_composition(grid, veg_uncertainty, how="rms")
        veg_sd = apply_translation(
            sd_cells, veg_map, CELL_ID_COLUMNS,
            target_order=taxa, combine="quadrature", dataset="vegetation uncertainty",
        )

    d = distance_matrix(pollen_h, veg_h)
    hoods = potential_neighborhood(pollen_h, veg_h, config.radius, d=d)
    d_pot = potential_domain_distances(config.resolution, config.radius)

    model_input = assemble_input(
        pollen_h, veg_h, hoods, taxa,
        d=d, d_pot=d_pot, index_base=config.index_base,
    )
    return PreparedInput(
        model_input=model_input,
        excluded_samples=tb.excluded,
        grid=grid,
        pollen=pollen_h,
        veg=veg_h,
        neighborhoods=hoods,
        veg_sd=veg_sd,
    )
