#!/usr/bin/env python3
"""stepps.timebins

Pick the pollen samples that fall inside the calibration window.

A sample can carry several age estimates, one per age model (calendar,
calibrated radiocarbon, varve, radiocarbon...). The ages table is long:
one row per (sample_id, age_model, age).

Representative age per sample:
1. the `preferred` age model, when the sample has a non-missing estimate for it
2. otherwise the first model in `priority` that the sample has
3. models not named in `priority` come after all listed ones, alphabetically
4. two estimates for the same model: the first row in the ages table wins

Samples without a site_id, samples without any age, and samples outside
[lo, hi] (inclusive) are excluded and reported back in
`TimeBinResult.excluded` with a reason, never defaulted.

Retained samples collapse to one row per site:
- "sum": raw counts are added; age is the mean of the retained ages; a
  site whose samples disagree on location keeps the first (with a warning)
- "nearest": the sample closest to the window midpoint is kept
  (ties: lower age, then lower sample_id)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from stepps.config import AGGREGATE_MODES, DEFAULT_AGE_MODEL_PRIORITY
from stepps.errors import ConfigError
from stepps.records import (
    AGE_COL,
    AGE_COLUMNS,
    AGE_MODEL_COL,
    SAMPLE_COL,
    SAMPLE_ID_COLUMNS,
    SITE_COL,
    X_COL,
    Y_COL,
    require_columns,
    require_unique,
    taxon_columns,
)

logger = logging.getLogger(__name__)

REASON_NO_AGE = "no_age"
REASON_OUT_OF_RANGE = "out_of_range"
REASON_NO_SITE = "no_site"


@dataclass(frozen=True)
class TimeBinResult:
    selected: pd.DataFrame
    excluded: pd.DataFrame


def representative_ages(
    ages: pd.DataFrame,
    preferred: Optional[str] = None,
    priority: Sequence[str] = DEFAULT_AGE_MODEL_PRIORITY,
) -> pd.DataFrame:
    """One (sample_id, age, age_model) row per sample that has any usable age."""
    require_columns(ages, AGE_COLUMNS, "ages table")

    usable = ages.loc[ages[AGE_COL].notna(), AGE_COLUMNS].copy()
    usable["_row"] = np.arange(len(usable))

    rank = {model: i for i, model in enumerate(priority)}
    unlisted = len(priority)
    usable["_rank"] = usable[AGE_MODEL_COL].map(lambda m: rank.get(m, unlisted))
    if preferred is not None:
        usable.loc[usable[AGE_MODEL_COL] == preferred, "_rank"] = -1

    # unlisted models tie on _rank; the age_model key orders them alphabetically
    usable["_model_key"] = usable[AGE_MODEL_COL].astype(str)
    usable.loc[usable["_rank"] < unlisted, "_model_key"] = ""

    usable = usable.sort_values([SAMPLE_COL, "_rank", "_model_key", "_row"], kind="mergesort")
    best = usable.drop_duplicates(SAMPLE_COL, keep="first")
    return best[[SAMPLE_COL, AGE_COL, AGE_MODEL_COL]].reset_index(drop=True)


def _collapse_sum(kept: pd.DataFrame, taxa: Sequence[str]) -> pd.DataFrame:
    grouped = kept.groupby(SITE_COL, sort=False)
    spread = grouped[[X_COL, Y_COL]].nunique()
    moved = spread.index[(spread > 1).any(axis=1)].tolist()
    if moved:
        logger.warning("%d sites have samples at more than one location; using the first: %s",
                       len(moved), moved[:10])
    out = grouped.agg(
        **{
            X_COL: (X_COL, "first"),
            Y_COL: (Y_COL, "first"),
            AGE_COL: (AGE_COL, "mean"),
            AGE_MODEL_COL: (AGE_MODEL_COL, lambda s: ", ".join(sorted(s.astype(str).unique()))),
            "n_samples": (SAMPLE_COL, "size"),
        }
    )
    counts = grouped[list(taxa)].sum()
    return out.join(counts).reset_index()


def _collapse_nearest(kept: pd.DataFrame, taxa: Sequence[str], midpoint: float) -> pd.DataFrame:
    site_order = pd.unique(kept[SITE_COL])
    ranked = kept.assign(_dist=(kept[AGE_COL] - midpoint).abs())
    ranked = ranked.sort_values([SITE_COL, "_dist", AGE_COL, SAMPLE_COL], kind="mergesort")
    best = ranked.drop_duplicates(SITE_COL, keep="first").set_index(SITE_COL).loc[site_order]
    best["n_samples"] = 1
    cols = [X_COL, Y_COL, AGE_COL, AGE_MODEL_COL, "n_samples", *taxa]
    return best[cols].reset_index()


def select_time_bin(
    samples: pd.DataFrame,
    ages: pd.DataFrame,
    calibration_range: Tuple[float, float],
    *,
    preferred: Optional[str] = None,
    priority: Sequence[str] = DEFAULT_AGE_MODEL_PRIORITY,
    aggregate: str = "sum",
) -> TimeBinResult:
    """Select calibration-window samples and collapse them to one row per site.

    Args:
        samples: pollen table (site_id, sample_id, x, y, raw taxon counts...).
        ages: long ages table (sample_id, age_model, age).
        calibration_range: inclusive [lo, hi] in the ages' units (years BP).
        preferred / priority: age-model tie-break, see module docstring.
        aggregate: "sum" or "nearest".

    Returns:
        TimeBinResult. `selected` has site_id, x, y, age, age_model, n_samples
        and the raw taxon columns, sites in first-appearance order. `excluded`
        has site_id, sample_id, age, reason.

    A blank taxon cell in the wide samples table means the taxon was not
    counted in that sample and is read as 0.
    """
    lo, hi = (float(v) for v in calibration_range)
    if lo > hi:
        raise ConfigError(f"calibration_range lower bound {lo} exceeds upper bound {hi}")
    if aggregate not in AGGREGATE_MODES:
        raise ConfigError(f"aggregate must be one of {AGGREGATE_MODES}, got {aggregate!r}")

    require_columns(samples, SAMPLE_ID_COLUMNS, "pollen samples")
    require_unique(samples, SAMPLE_COL, "pollen samples")
    taxa = taxon_columns(samples, SAMPLE_ID_COLUMNS)

    reps = representative_ages(ages, preferred=preferred, priority=priority)
    merged = samples.merge(reps, on=SAMPLE_COL, how="left", validate="one_to_one")
    merged[taxa] = merged[taxa].fillna(0)

    no_site = merged[SITE_COL].isna() | (merged[SITE_COL].astype(str).str.strip() == "")
    no_age = merged[AGE_COL].isna() & ~no_site
    in_range = merged[AGE_COL].between(lo, hi, inclusive="both") & ~no_site
    out_of_range = ~no_site & ~no_age & ~in_range

    excluded = pd.concat(
        [
            merged.loc[no_site, [SITE_COL, SAMPLE_COL, AGE_COL]].assign(reason=REASON_NO_SITE),
            merged.loc[no_age, [SITE_COL, SAMPLE_COL, AGE_COL]].assign(reason=REASON_NO_AGE),
            merged.loc[out_of_range, [SITE_COL, SAMPLE_COL, AGE_COL]].assign(reason=REASON_OUT_OF_RANGE),
        ],
        ignore_index=True,
    )
    if no_site.any():
        orphans = merged.loc[no_site, SAMPLE_COL].tolist()
        logger.warning("%d samples have no site_id and were excluded: %s", len(orphans), orphans[:10])
    if no_age.any():
        missing = merged.loc[no_age, SAMPLE_COL].tolist()
        logger.warning("%d samples have no age estimate and were excluded: %s",
                       len(missing), missing[:10])

    kept = merged.loc[in_range]
    if kept.empty:
        logger.warning("No samples fall inside the calibration range [%s, %s]", lo, hi)
        cols = [SITE_COL, X_COL, Y_COL, AGE_COL, AGE_MODEL_COL, "n_samples", *taxa]
        return TimeBinResult(selected=pd.DataFrame(columns=cols), excluded=excluded)

    if aggregate == "sum":
        selected = _collapse_sum(kept, taxa)
    else:
        selected = _collapse_nearest(kept, taxa, midpoint=(lo + hi) / 2.0)

    logger.info("Time bin [%s, %s]: %d samples kept across %d sites, %d excluded",
                lo, hi, len(kept), len(selected), len(excluded))
    return TimeBinResult(selected=selected, excluded=excluded)
