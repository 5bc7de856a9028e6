#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from shapely.geometry import Polygon

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from stepps.errors import GridError, TransformFailure
from stepps.geo.grid import GridCell, attach_composition, build_grid, grid_cells

CRS = "EPSG:3175"


def _centres(grid):
    return list(zip(grid["x"].round(9), grid["y"].round(9)))


def test_grid_is_deterministic():
    a = build_grid((-1234.5, 200.0, 5678.9, 4321.0), 500.0, CRS)
    b = build_grid((-1234.5, 200.0, 5678.9, 4321.0), 500.0, CRS)
    pd.testing.assert_frame_equal(a.drop(columns="geometry"), b.drop(columns="geometry"))
    assert a.geometry.geom_equals(b.geometry).all()


def test_cells_ordered_south_to_north_then_west_to_east():
    grid = build_grid((0, 0, 3, 2), 1, CRS)
    assert grid["cell_id"].tolist() == list(range(6))
    assert _centres(grid) == [
        (0.5, 0.5), (1.5, 0.5), (2.5, 0.5),
        (0.5, 1.5), (1.5, 1.5), (2.5, 1.5),
    ]
    assert grid.crs.to_epsg() == 3175


def test_partially_covered_cells_are_included_edge_touching_are_not():
    grid = build_grid((0.5, 0.5, 2.2, 1.0), 1, CRS)
    # x spans cols 0..2 (2.2 reaches into col 2); ymax == 1 only touches row 1
    assert _centres(grid) == [(0.5, 0.5), (1.5, 0.5), (2.5, 0.5)]


def test_cell_starting_exactly_at_bbox_edge_is_left_out():
    grid = build_grid((1.0, 0.0, 3.0, 1.0), 1, CRS)
    # col 3 starts at xmax and col 0 ends at xmin: neither shares any area
    assert grid["col"].tolist() == [1, 2]
    assert grid["row"].tolist() == [0, 0]

    shifted = build_grid((1.25, 0.25, 3.25, 1.25), 1, CRS, origin=(0.25, 0.25))
    assert shifted["col"].tolist() == [1, 2]


def test_bbox_edges_snap_to_lattice_lines():
    grid = build_grid((0.0, 0.0, 0.3, 0.1), 0.1, CRS)
    assert len(grid) == 3


def test_degenerate_bbox_selects_containing_cell():
    grid = build_grid((1.5, 1.5, 1.5, 1.5), 1, CRS)
    assert _centres(grid) == [(1.5, 1.5)]
    assert grid["col"].tolist() == [1]
    assert grid["row"].tolist() == [1]


def test_origin_shifts_lattice():
    grid = build_grid((0, 0, 1, 1), 1, CRS, origin=(0.5, 0.5))
    assert _centres(grid) == [(0.0, 0.0), (1.0, 0.0), (0.0, 1.0), (1.0, 1.0)]


def test_geometry_region_keeps_only_overlapping_cells():
    triangle = Polygon([(0, 0), (3, 0), (0, 3)])
    grid = build_grid(triangle, 1, CRS)
    kept = set(zip(grid["col"], grid["row"]))
    # (2, 1) and (1, 2) only touch the hypotenuse at a corner
    assert kept == {(0, 0), (1, 0), (2, 0), (0, 1), (1, 1), (0, 2)}
    assert grid["cell_id"].tolist() == list(range(6))


@pytest.mark.parametrize("res", [0, -1, float("nan"), "abc"])
def test_bad_resolution_raises(res):
    with pytest.raises(GridError):
        build_grid((0, 0, 1, 1), res, CRS)


def test_inverted_bbox_raises():
    with pytest.raises(GridError):
        build_grid((1, 0, 0, 1), 1, CRS)


def test_grid_cells_records():
    cells = grid_cells(build_grid((0, 0, 2, 1), 1, CRS))
    assert cells == [GridCell(0, 0.5, 0.5, 0, 0), GridCell(1, 1.5, 0.5, 1, 0)]


def test_attach_composition_snaps_and_averages():
    grid = build_grid((0, 0, 2, 2), 1, CRS)
    veg = pd.DataFrame({
        "x": [0.5, 0.6, 1.5],
        "y": [0.5, 0.4, 1.5],
        "Oak": [0.2, 0.4, 1.0],
        "Pine": [0.8, 0.6, 0.0],
    })
    cells = attach_composition(grid, veg)
    assert list(cells.columns) == ["cell_id", "x", "y", "Oak", "Pine"]
    assert cells["cell_id"].tolist() == [0, 3]
    np.testing.assert_allclose(cells["Oak"], [0.3, 1.0])
    np.testing.assert_allclose(cells["Pine"], [0.7, 0.0])
    # centres, not the record locations
    assert cells.loc[0, "x"] == 0.5 and cells.loc[0, "y"] == 0.5


def test_attach_composition_edge_record_goes_to_lowest_cell():
    grid = build_grid((0, 0, 2, 1), 1, CRS)
    veg = pd.DataFrame({"x": [1.0], "y": [0.5], "Oak": [1.0]})
    assert attach_composition(grid, veg)["cell_id"].tolist() == [0]


def test_attach_composition_rms_for_uncertainty():
    grid = build_grid((0, 0, 1, 1), 1, CRS)
    sd = pd.DataFrame({"x": [0.2, 0.8], "y": [0.2, 0.8], "Oak": [3.0, 4.0]})
    cells = attach_composition(grid, sd, how="rms")
    assert cells.loc[0, "Oak"] == pytest.approx(np.sqrt(12.5))


def test_attach_composition_outside_grid_raises():
    grid = build_grid((0, 0, 1, 1), 1, CRS)
    veg = pd.DataFrame({"x": [0.5, 5.0], "y": [0.5, 5.0], "Oak": [1.0, 1.0]})
    with pytest.raises(TransformFailure, match="outside the grid"):
        attach_composition(grid, veg)
