#!/usr/bin/env python3
"""stepps.records

Column contracts for the tables stepps consumes.

Pollen samples (one row per sample):
    site_id, sample_id, x, y, <raw taxon count columns...>
Ages (long format, one row per sample per age model):
    sample_id, age_model, age
Vegetation (one row per gridded record):
    x, y, <raw taxon proportion columns...>

Taxon columns are "every column that is not an identifier column", so callers
name their identifier columns and the rest is treated as composition.
"""

from __future__ import annotations

from typing import Iterable, List, Sequence

import pandas as pd

from stepps.errors import DuplicateIdError, MissingColumnsError

SITE_COL = "site_id"
SAMPLE_COL = "sample_id"
CELL_COL = "cell_id"
X_COL = "x"
Y_COL = "y"
AGE_COL = "age"
AGE_MODEL_COL = "age_model"

SAMPLE_ID_COLUMNS = [SITE_COL, SAMPLE_COL, X_COL, Y_COL]
AGE_COLUMNS = [SAMPLE_COL, AGE_MODEL_COL, AGE_COL]
VEG_ID_COLUMNS = [X_COL, Y_COL]


def require_columns(df: pd.DataFrame, columns: Iterable[str], table: str) -> None:
    """Raise MissingColumnsError if any of `columns` is absent from `df`."""
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise MissingColumnsError(table, missing)


def taxon_columns(df: pd.DataFrame, id_columns: Sequence[str]) -> List[str]:
    """Columns of `df` holding taxon values, in table order."""
    ids = set(id_columns)
    return [c for c in df.columns if c not in ids]


def require_unique(df: pd.DataFrame, column: str, table: str) -> None:
    dupes = df.loc[df[column].duplicated(), column].unique().tolist()
    if dupes:
        raise DuplicateIdError(f"{table} has duplicate {column} values: {dupes[:10]}")
