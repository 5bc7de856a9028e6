#!/usr/bin/env python3
"""stepps.taxonomy

Translate raw taxon labels onto a shared set of target taxa.

Pollen and vegetation data are classified independently ("Larix/Pseudotsuga"
vs "Tamarack", "Cupressaceae" vs "Cedar/juniper"). A domain expert maintains
one translation table per dataset; this module never infers a mapping, it
only drafts a template and then validates and applies the finished table.

Two phases:
1. build_template(records) -> skeleton table (one row per raw label),
   written to CSV for the expert to complete.
2. apply_translation(records, table) -> records over the target taxa.

Translation table columns:
    raw_taxon     label as it appears in the data (required)
    target_taxon  harmonized label (required, never blank)
    weight        share of the raw value sent to this target (default 1.0)
    anything else (source, notes, ...) is provenance and is carried, not used

A raw label may appear on several rows (one-to-many split); its weights must
then sum to 1, so per-record totals are preserved. Several raw labels may
share a target (many-to-one); their values are summed.

Raw labels present in the data but missing from the table raise
UnmappedTaxonError; they are never dropped.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from stepps.errors import InvalidTaxonMapError, TaxonMismatchError, UnmappedTaxonError
from stepps.records import require_columns, taxon_columns

logger = logging.getLogger(__name__)

RAW_COL = "raw_taxon"
TARGET_COL = "target_taxon"
WEIGHT_COL = "weight"
TEMPLATE_COLUMNS = [RAW_COL, TARGET_COL, WEIGHT_COL, "source", "notes"]

WEIGHT_TOL = 1e-9

# A translation table is a DataFrame with the columns above.
TaxonMap = pd.DataFrame


# -----------------------------------------------------------------------------
# Phase 1: templates
# -----------------------------------------------------------------------------

def build_template(
    records: pd.DataFrame,
    id_columns: Sequence[str],
    existing: Optional[TaxonMap] = None,
) -> TaxonMap:
    """Draft a translation table listing every raw taxon in `records`.

    Raw labels are the non-identifier columns, sorted. When `existing` is
    given, rows already translated there are kept as-is, so a versioned table
    can be extended with newly seen labels without losing expert edits.
    """
    require_columns(records, id_columns, "records")
    labels = sorted(str(c) for c in taxon_columns(records, id_columns))

    template = pd.DataFrame({
        RAW_COL: labels,
        TARGET_COL: "",
        WEIGHT_COL: 1.0,
        "source": "",
        "notes": "",
    })

    if existing is not None and not existing.empty:
        require_columns(existing, [RAW_COL, TARGET_COL], "existing translation table")
        known = existing[existing[RAW_COL].astype(str).isin(labels)]
        todo = template[~template[RAW_COL].isin(known[RAW_COL].astype(str))]
        template = pd.concat([known, todo], ignore_index=True)
        template = template.sort_values(RAW_COL, kind="mergesort").reset_index(drop=True)
        logger.info("Template: %d labels already translated, %d new", known[RAW_COL].nunique(), len(todo))

    return template


def write_template(template: TaxonMap, path: Path, overwrite: bool = False) -> Path:
    """Write a template CSV for manual completion."""
    if path.exists() and not overwrite:
        raise FileExistsError(f"{path} exists (pass overwrite=True to replace it)")
    path.parent.mkdir(parents=True, exist_ok=True)
    template.to_csv(path, index=False)
    return path


def read_translation_table(path: Path) -> TaxonMap:
    """Read and validate an expert-completed translation table."""
    if not path.exists():
        raise FileNotFoundError(f"Translation table not found: {path}")
    table = pd.read_csv(path, dtype={RAW_COL: str, TARGET_COL: str}, keep_default_na=False, na_values=[""])
    return validate_map(table, name=str(path))


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------

def validate_map(taxon_map: TaxonMap, name: str = "translation table") -> TaxonMap:
    """Return a cleaned copy of `taxon_map`, or raise InvalidTaxonMapError.

    Checks: required columns, no blank targets, numeric non-negative weights,
    no repeated (raw, target) pair, weights summing to 1 per raw label.
    """
    require_columns(taxon_map, [RAW_COL, TARGET_COL], name)
    m = taxon_map.copy()
    if WEIGHT_COL not in m.columns:
        m[WEIGHT_COL] = 1.0

    blank_raw = m[RAW_COL].isna() | (m[RAW_COL].astype(str).str.strip() == "")
    if blank_raw.any():
        raise InvalidTaxonMapError(f"{name}: {int(blank_raw.sum())} rows have a blank {RAW_COL}")
    m[RAW_COL] = m[RAW_COL].astype(str).str.strip()

    blank = m[TARGET_COL].isna() | (m[TARGET_COL].astype(str).str.strip() == "")
    if blank.any():
        raise InvalidTaxonMapError(
            f"{name}: no {TARGET_COL} for raw taxa {sorted(m.loc[blank, RAW_COL].unique())}"
        )
    m[TARGET_COL] = m[TARGET_COL].astype(str).str.strip()

    weights = pd.to_numeric(m[WEIGHT_COL].fillna(1.0), errors="coerce")
    bad_w = weights.isna() | (weights < 0)
    if bad_w.any():
        raise InvalidTaxonMapError(
            f"{name}: invalid weights for raw taxa {sorted(m.loc[bad_w, RAW_COL].unique())}"
        )
    m[WEIGHT_COL] = weights.astype(float)

    dup = m.duplicated([RAW_COL, TARGET_COL], keep=False)
    if dup.any():
        raise InvalidTaxonMapError(
            f"{name}: repeated raw->target rows for {sorted(m.loc[dup, RAW_COL].unique())}"
        )

    totals = m.groupby(RAW_COL)[WEIGHT_COL].sum()
    off = totals[(totals - 1.0).abs() > WEIGHT_TOL]
    if not off.empty:
        detail = {k: round(float(v), 6) for k, v in off.items()}
        raise InvalidTaxonMapError(f"{name}: weights must sum to 1 per raw taxon, got {detail}")

    return m.reset_index(drop=True)


def map_targets(taxon_map: TaxonMap) -> List[str]:
    """Target vocabulary of a table, sorted."""
    return sorted(taxon_map[TARGET_COL].astype(str).str.strip().unique())


def check_map_consistency(
    map_a: TaxonMap,
    map_b: TaxonMap,
    name_a: str = "pollen",
    name_b: str = "vegetation",
) -> List[str]:
    """Raise TaxonMismatchError unless both tables reach the same targets.

    Returns the shared (sorted) target vocabulary.
    """
    a = set(map_targets(map_a))
    b = set(map_targets(map_b))
    if a != b:
        raise TaxonMismatchError(a - b, b - a, name_a, name_b)
    return sorted(a)


# -----------------------------------------------------------------------------
# Phase 2: translation
# -----------------------------------------------------------------------------

def _weight_matrix(m: TaxonMap, raw: Sequence[str], targets: Sequence[str]) -> np.ndarray:
    r_idx: Dict[str, int] = {label: i for i, label in enumerate(raw)}
    t_idx: Dict[str, int] = {label: j for j, label in enumerate(targets)}
    w = np.zeros((len(raw), len(targets)), dtype=float)
    for label, target, weight in m[[RAW_COL, TARGET_COL, WEIGHT_COL]].itertuples(index=False):
        i = r_idx.get(label)
        if i is not None:
            w[i, t_idx[target]] += weight
    return w


def _resolve_order(targets: Sequence[str], target_order: Optional[Sequence[str]], name: str) -> List[str]:
    if target_order is None:
        return sorted(targets)
    order = [str(t) for t in target_order]
    if len(set(order)) != len(order):
        raise InvalidTaxonMapError(f"target_order has repeated taxa: {order}")
    if set(order) != set(targets):
        raise TaxonMismatchError(set(targets) - set(order), set(order) - set(targets), name, "target_order")
    return order


def apply_translation(
    records: pd.DataFrame,
    taxon_map: TaxonMap,
    id_columns: Sequence[str],
    *,
    target_order: Optional[Sequence[str]] = None,
    combine: str = "sum",
    dataset: str = "records",
) -> pd.DataFrame:
    """Re-express `records` over the target taxa of `taxon_map`.

    Each target column is the weighted sum of the raw columns mapped to it.
    With combine="quadrature" (for standard deviations) it is
    sqrt(sum((w * sd) ** 2)) instead.

    Identifier columns are passed through unchanged, first and in the given
    order; every target of the table gets a column (zero where no mapped raw
    taxon occurs in these records). Blank raw values are read as 0.
    `records` is not modified.
    """
    if combine not in ("sum", "quadrature"):
        raise ValueError(f"combine must be 'sum' or 'quadrature', got {combine!r}")
    require_columns(records, id_columns, dataset)
    m = validate_map(taxon_map)

    raw = [str(c) for c in taxon_columns(records, id_columns)]
    known = set(m[RAW_COL])
    unmapped = [label for label in raw if label not in known]
    if unmapped:
        raise UnmappedTaxonError(unmapped, dataset=dataset)

    targets = _resolve_order(map_targets(m), target_order, dataset)
    w = _weight_matrix(m, raw, targets)
    values = records[taxon_columns(records, id_columns)].to_numpy(dtype=float)
    values = np.nan_to_num(values, nan=0.0)

    if combine == "sum":
        out_values = values @ w
    else:
        out_values = np.sqrt((values ** 2) @ (w ** 2))

    out = records[list(id_columns)].copy()
    translated = pd.DataFrame(out_values, columns=targets, index=records.index)
    out = pd.concat([out, translated], axis=1)
    logger.debug("Translated %s: %d raw taxa -> %d targets", dataset, len(raw), len(targets))
    return out


def harmonize_pair(
    pollen: pd.DataFrame,
    veg: pd.DataFrame,
    pollen_map: TaxonMap,
    veg_map: TaxonMap,
    pollen_ids: Sequence[str],
    veg_ids: Sequence[str],
    *,
    target_order: Optional[Sequence[str]] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame, List[str]]:
    """Translate both datasets and guarantee one shared taxon vocabulary.

    Returns (pollen, veg, taxa) where both frames carry exactly `taxa` as
    taxon columns, in that order (`target_order` if given, else sorted).
    Raises TaxonMismatchError when the translated vocabularies differ.
    """
    p = apply_translation(pollen, pollen_map, pollen_ids, dataset="pollen")
    v = apply_translation(veg, veg_map, veg_ids, dataset="vegetation")

    p_taxa = taxon_columns(p, pollen_ids)
    v_taxa = taxon_columns(v, veg_ids)
    if set(p_taxa) != set(v_taxa):
        raise TaxonMismatchError(set(p_taxa) - set(v_taxa), set(v_taxa) - set(p_taxa))

    taxa = _resolve_order(p_taxa, target_order, "harmonized taxa")
    p = p[[*pollen_ids, *taxa]]
    v = v[[*veg_ids, *taxa]]
    logger.info("Harmonized %d pollen records and %d vegetation records onto %d taxa",
                len(p), len(v), len(taxa))
    return p, v, taxa
