#!/usr/bin/env python3
"""stepps.errors

Exception hierarchy for stepps.

Three kinds of failure, matching how they should be handled:
- data-quality errors (unmapped taxa, vocabulary mismatch, bad translation
  tables): carry the offending labels so the source table can be fixed
- geometric errors (bad CRS, coordinates outside a projection, empty
  neighborhoods): configuration mistakes, always fatal
- shape errors at assembly time: always fatal

The core never catches these. The CLI turns them into SystemExit.
"""

from __future__ import annotations

from typing import Iterable, List


class SteppsError(Exception):
    """Base class for every error raised by stepps."""


# -----------------------------------------------------------------------------
# Configuration / input contract
# -----------------------------------------------------------------------------

class ConfigError(SteppsError, ValueError):
    """Invalid configuration value (radius, resolution, age range, ...)."""


class MissingColumnsError(SteppsError, KeyError):
    """A table lacks columns it is required to have."""

    def __init__(self, table: str, missing: Iterable[str]):
        self.table = table
        self.missing: List[str] = sorted(str(m) for m in missing)
        super().__init__(f"{table} is missing required columns: {self.missing}")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


# -----------------------------------------------------------------------------
# Data quality
# -----------------------------------------------------------------------------

class DuplicateIdError(SteppsError, ValueError):
    """Identifier column that must be unique has repeated values."""


class InvalidTaxonMapError(SteppsError, ValueError):
    """Translation table is structurally broken (blank targets, bad weights)."""


class UnmappedTaxonError(SteppsError, KeyError):
    """Raw taxon present in the data has no entry in the translation table."""

    def __init__(self, labels: Iterable[str], dataset: str = "records"):
        self.labels: List[str] = sorted(str(label) for label in labels)
        self.dataset = dataset
        super().__init__(
            f"Unmapped taxa in {dataset}: {self.labels}. "
            "Add them to the translation table and rerun."
        )

    def __str__(self) -> str:
        return self.args[0]


class TaxonMismatchError(SteppsError, ValueError):
    """The two datasets do not share the same target-taxon vocabulary."""

    def __init__(self, only_a: Iterable[str], only_b: Iterable[str],
                 name_a: str = "pollen", name_b: str = "vegetation"):
        self.only_a = sorted(only_a)
        self.only_b = sorted(only_b)
        super().__init__(
            "Target taxa differ between datasets: "
            f"only in {name_a}: {self.only_a}; only in {name_b}: {self.only_b}"
        )


# -----------------------------------------------------------------------------
# Geometry
# -----------------------------------------------------------------------------

class InvalidReferenceSystem(SteppsError, ValueError):
    """CRS identifier could not be resolved."""


class TransformFailure(SteppsError, ValueError):
    """A coordinate lies outside the valid domain of a transform or grid."""


class GridError(SteppsError, ValueError):
    """Grid cannot be built from the given region/resolution."""


class EmptyDomainError(SteppsError, RuntimeError):
    """A site ended up with no contributing cells."""


# -----------------------------------------------------------------------------
# Assembly
# -----------------------------------------------------------------------------

class ShapeMismatchError(SteppsError, ValueError):
    """Model input arrays disagree with K, N_cores or N_cells."""
