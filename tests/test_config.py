#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from stepps import config as cfg
from stepps.errors import ConfigError


def _minimal():
    return {
        "projection": "EPSG:3175",
        "grid": {"bounds": [0, 0, 10000, 8000], "resolution": 1000},
        "neighborhood": {"radius": 5000},
        "time_bins": {"calibration_range": [150, 350]},
    }


def test_coerce_bbox_accepts_lists_and_tuples():
    assert cfg.coerce_bbox([0, 1, 2, 3]) == (0.0, 1.0, 2.0, 3.0)
    assert cfg.coerce_bbox(("0", "1", "2", "3")) == (0.0, 1.0, 2.0, 3.0)


def test_coerce_bbox_rejects_junk():
    assert cfg.coerce_bbox(None) is None
    assert cfg.coerce_bbox([0, 1, 2]) is None
    assert cfg.coerce_bbox(["a", 1, 2, 3]) is None


def test_union_bbox():
    assert cfg.union_bbox([(0, 0, 1, 1), (-1, 0.5, 0.5, 3)]) == (-1, 0, 1, 3)
    assert cfg.union_bbox([]) is None


def test_parse_minimal_config_uses_defaults():
    c = cfg.parse_calibration_config(_minimal())
    assert c.projection == "EPSG:3175"
    assert c.geographic == "EPSG:4326"
    assert c.grid_bounds == (0.0, 0.0, 10000.0, 8000.0)
    assert c.resolution == 1000.0
    assert c.radius == 5000.0
    assert c.calibration_range == (150.0, 350.0)
    assert c.age_model_priority == cfg.DEFAULT_AGE_MODEL_PRIORITY
    assert c.aggregate == "sum"
    assert c.index_base == 1
    assert c.pollen_table is None
    assert c.area_of_use_margin == 0.0


def test_grid_bounds_union_of_regions():
    data = _minimal()
    data["grid"] = {
        "resolution": 1000,
        "regions": [{"bounds": [0, 0, 10, 10]}, {"bounds": [5, -5, 20, 8]}],
    }
    assert cfg.parse_calibration_config(data).grid_bounds == (0.0, -5.0, 20.0, 10.0)


@pytest.mark.parametrize(
    "section,key",
    [("grid", "resolution"), ("neighborhood", "radius")],
)
def test_resolution_and_radius_are_required(section, key):
    data = _minimal()
    del data[section][key]
    with pytest.raises(ConfigError, match=key):
        cfg.parse_calibration_config(data)


def test_non_positive_radius_rejected():
    data = _minimal()
    data["neighborhood"]["radius"] = 0
    with pytest.raises(ConfigError):
        cfg.parse_calibration_config(data)


def test_inverted_calibration_range_rejected():
    data = _minimal()
    data["time_bins"]["calibration_range"] = [400, 100]
    with pytest.raises(ConfigError):
        cfg.parse_calibration_config(data)


def test_unknown_aggregate_rejected():
    data = _minimal()
    data["time_bins"]["aggregate"] = "median"
    with pytest.raises(ConfigError):
        cfg.parse_calibration_config(data)


@pytest.mark.parametrize("margin", [-1, "wide", float("nan")])
def test_bad_area_of_use_margin_rejected(margin):
    data = _minimal()
    data["transform"] = {"area_of_use_margin": margin}
    with pytest.raises(ConfigError, match="area_of_use_margin"):
        cfg.parse_calibration_config(data)


def test_area_of_use_margin_parsed():
    data = _minimal()
    data["transform"] = {"area_of_use_margin": 7}
    assert cfg.parse_calibration_config(data).area_of_use_margin == 7.0


def test_load_yaml_missing_file_exits(tmp_path):
    with pytest.raises(SystemExit):
        cfg.load_yaml(tmp_path / "nope.yaml")


def test_load_yaml_non_mapping_exits(tmp_path):
    p = tmp_path / "list.yaml"
    p.write_text("- a\n- b\n")
    with pytest.raises(SystemExit):
        cfg.load_yaml(p)


def test_shipped_config_loads_and_resolves_tables():
    c = cfg.load_calibration_config(ROOT / "config" / "calibration.yaml")
    assert c.projection == "EPSG:3175"
    assert c.grid_bounds == (-71000.0, 690000.0, 1100000.0, 1410000.0)
    assert c.resolution == 8000.0
    assert c.preferred_age_model == "Calendar years BP"
    assert c.pollen_table == ROOT / "config" / "pollen_translation.csv"
    assert c.pollen_table.exists()
    assert c.veg_table.exists()
