#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from stepps.errors import InvalidReferenceSystem, TransformFailure
from stepps.geo.transform import CoordinateTransformer, resolve_crs, to_projection

WEB_MERCATOR_HALF_WORLD = 20037508.342789244


def test_geographic_to_web_mercator_known_values():
    tr = CoordinateTransformer("EPSG:4326", "EPSG:3857")
    x, y = tr.transform([0.0, 180.0], [0.0, 0.0])
    assert x == pytest.approx([0.0, WEB_MERCATOR_HALF_WORLD])
    assert y == pytest.approx([0.0, 0.0], abs=1e-6)


def test_inverse_recovers_input():
    tr = CoordinateTransformer("EPSG:4326", "EPSG:3175")
    lon = np.array([-89.4, -84.5, -90.0])
    lat = np.array([43.1, 45.6, 47.2])
    x, y = tr.transform(lon, lat)
    lon2, lat2 = tr.inverse().transform(x, y)
    np.testing.assert_allclose(lon2, lon, atol=1e-8)
    np.testing.assert_allclose(lat2, lat, atol=1e-8)


@pytest.mark.parametrize("bad", ["EPSG:999999", "not a crs"])
def test_unknown_crs_raises(bad):
    with pytest.raises(InvalidReferenceSystem):
        CoordinateTransformer(bad, "EPSG:4326")
    with pytest.raises(InvalidReferenceSystem):
        resolve_crs(bad)


def test_latitude_out_of_range_raises():
    tr = CoordinateTransformer("EPSG:4326", "EPSG:3175")
    with pytest.raises(TransformFailure):
        tr.transform([-89.0], [95.0])


def test_non_finite_input_raises():
    tr = CoordinateTransformer("EPSG:4326", "EPSG:3175")
    with pytest.raises(TransformFailure):
        tr.transform([np.nan], [45.0])


def test_pole_in_mercator_raises():
    tr = CoordinateTransformer("EPSG:4326", "EPSG:3857")
    with pytest.raises(TransformFailure):
        tr.transform([0.0], [90.0])


def test_point_outside_area_of_use_raises_by_default():
    tr = CoordinateTransformer("EPSG:4326", "EPSG:3175")
    tr.transform([-85.0], [45.0])
    # Europe: PROJ computes a finite point, but Great Lakes Albers is meaningless there
    with pytest.raises(TransformFailure, match="area of use"):
        tr.transform([10.0], [50.0])
    with pytest.raises(TransformFailure):
        to_projection(pd.DataFrame({"x": [10.0], "y": [50.0]}), "EPSG:4326", "EPSG:3175")


def test_area_of_use_check_can_be_disabled():
    lenient = CoordinateTransformer("EPSG:4326", "EPSG:3175", check_area_of_use=False)
    x, y = lenient.transform([10.0], [50.0])
    assert np.isfinite(x).all() and np.isfinite(y).all()


def test_area_margin_widens_area_of_use():
    with pytest.raises(TransformFailure):
        CoordinateTransformer("EPSG:4326", "EPSG:3175").transform([-100.0], [45.0])
    wide = CoordinateTransformer("EPSG:4326", "EPSG:3175", area_margin=10.0)
    wide.transform([-100.0], [45.0])
    assert wide.inverse().area_margin == 10.0
    with pytest.raises(TransformFailure):
        wide.transform([10.0], [50.0])


def test_transform_bounds_matches_corners_for_axis_aligned_projection():
    tr = CoordinateTransformer("EPSG:4326", "EPSG:3857")
    xmin, ymin, xmax, ymax = tr.transform_bounds((-10.0, -10.0, 10.0, 10.0))
    cx, cy = tr.transform([-10.0, 10.0], [-10.0, 10.0])
    assert (xmin, xmax) == pytest.approx((cx[0], cx[1]), rel=1e-6)
    assert (ymin, ymax) == pytest.approx((cy[0], cy[1]), rel=1e-6)


def test_transform_frame_is_non_destructive():
    df = pd.DataFrame({"site_id": ["a"], "x": [-89.4], "y": [43.1]})
    out = to_projection(df, "EPSG:4326", "EPSG:3175")
    assert df.loc[0, "x"] == -89.4
    assert out.loc[0, "x"] != -89.4
    assert list(out.columns) == ["site_id", "x", "y"]
