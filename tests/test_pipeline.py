#!/usr/bin/env python3

from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Ensure we can import from src/ without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from stepps.config import CalibrationConfig, load_calibration_config
from stepps.errors import EmptyDomainError, TaxonMismatchError, TransformFailure
from stepps.pipeline import prepare_calibration_input, query_bbox

CAL = "Calendar years BP"


@pytest.fixture
def config():
    return CalibrationConfig(
        projection="EPSG:3175",
        grid_bounds=(0.0, 0.0, 3000.0, 2000.0),
        resolution=1000.0,
        radius=1500.0,
        calibration_range=(100.0, 400.0),
    )


@pytest.fixture
def samples():
    return pd.DataFrame({
        "site_id": ["s1", "s1", "s1", "s2", "s2"],
        "sample_id": ["a1", "a2", "a3", "b1", "b2"],
        "x": [500.0, 500.0, 500.0, 2500.0, 2500.0],
        "y": [500.0, 500.0, 500.0, 1500.0, 1500.0],
        "Quercus": [10, 5, 99, 2, 7],
        "Pinus": [40, 30, 1, 60, 3],
        "Betula": [3, 0, 0, 1, 4],
    })


@pytest.fixture
def ages():
    # b2 has no age at all
    return pd.DataFrame({
        "sample_id": ["a1", "a2", "a3", "b1"],
        "age_model": [CAL, CAL, CAL, CAL],
        "age": [200.0, 300.0, 900.0, 150.0],
    })


@pytest.fixture
def veg():
    xs = [500.0, 1500.0, 2500.0] * 2
    ys = [500.0] * 3 + [1500.0] * 3
    return pd.DataFrame({
        "x": xs,
        "y": ys,
        "Oak": [0.5, 0.4, 0.3, 0.2, 0.1, 0.0],
        "Pine": [0.3, 0.3, 0.3, 0.6, 0.6, 0.6],
        "Birch": [0.1, 0.2, 0.2, 0.1, 0.1, 0.2],
        "Fir": [0.1, 0.1, 0.2, 0.1, 0.2, 0.2],
    })


@pytest.fixture
def pollen_map():
    return pd.DataFrame({
        "raw_taxon": ["Quercus", "Pinus", "Betula"],
        "target_taxon": ["Oak", "Pine", "Other"],
        "weight": 1.0,
    })


@pytest.fixture
def veg_map():
    return pd.DataFrame({
        "raw_taxon": ["Oak", "Pine", "Birch", "Fir"],
        "target_taxon": ["Oak", "Pine", "Other", "Other"],
        "weight": 1.0,
    })


def test_end_to_end_bundle(samples, ages, veg, pollen_map, veg_map, config):
    prepared = prepare_calibration_input(samples, ages, veg, pollen_map, veg_map, config)
    mi = prepared.model_input

    assert mi.taxa == ["Oak", "Other", "Pine"]
    assert (mi.K, mi.N_cores, mi.N_cells, mi.N_pot) == (3, 2, 6, 3)
    assert mi.site_ids == ["s1", "s2"]
    assert mi.idx_cores.tolist() == [1, 6]
    # s1 sums a1 + a2, s2 keeps b1 only
    assert mi.y.tolist() == [[15, 3, 70], [2, 1, 60]]
    np.testing.assert_allclose(mi.r[:, 1], [0.2, 0.3, 0.4, 0.2, 0.3, 0.4])
    np.testing.assert_allclose(mi.r.sum(axis=1), 1.0)
    # corner cells see the 4 cells within 1500 m
    assert mi.N_hood.tolist() == [4, 4]
    assert mi.d.shape == (2, 6)
    assert mi.d[0, 0] == 0.0


def test_excluded_samples_reported(samples, ages, veg, pollen_map, veg_map, config):
    prepared = prepare_calibration_input(samples, ages, veg, pollen_map, veg_map, config)
    excluded = prepared.excluded_samples.set_index("sample_id")["reason"].to_dict()
    assert excluded == {"a3": "out_of_range", "b2": "no_age"}


def test_intermediates_share_taxa(samples, ages, veg, pollen_map, veg_map, config):
    prepared = prepare_calibration_input(samples, ages, veg, pollen_map, veg_map, config)
    assert list(prepared.pollen.columns[-3:]) == ["Oak", "Other", "Pine"]
    assert list(prepared.veg.columns) == ["cell_id", "x", "y", "Oak", "Other", "Pine"]
    assert len(prepared.grid) == 6
    assert [h.home_cell for h in prepared.neighborhoods] == [0, 5]
    assert prepared.veg_sd is None


def test_target_order_from_config(samples, ages, veg, pollen_map, veg_map, config):
    cfg = replace(config, target_order=("Pine", "Oak", "Other"), index_base=0)
    mi = prepare_calibration_input(samples, ages, veg, pollen_map, veg_map, cfg).model_input
    assert mi.taxa == ["Pine", "Oak", "Other"]
    assert mi.y[0].tolist() == [70, 15, 3]
    assert mi.idx_cores.tolist() == [0, 5]


def test_vegetation_uncertainty_translated(samples, ages, veg, pollen_map, veg_map, config):
    sd = veg.assign(Oak=0.03, Pine=0.0, Birch=0.04, Fir=0.0)
    prepared = prepare_calibration_input(
        samples, ages, veg, pollen_map, veg_map, config, veg_uncertainty=sd
    )
    assert list(prepared.veg_sd.columns) == ["cell_id", "x", "y", "Oak", "Other", "Pine"]
    np.testing.assert_allclose(prepared.veg_sd["Other"], 0.04)
    np.testing.assert_allclose(prepared.veg_sd["Oak"], 0.03)


def test_samples_in_lat_long_are_reprojected(samples, ages, veg, pollen_map, veg_map, config):
    from stepps.geo.transform import CoordinateTransformer

    # the synthetic grid sits a few degrees south-west of the Great Lakes basin
    back = CoordinateTransformer("EPSG:3175", "EPSG:4326", check_area_of_use=False)
    lon, lat = back.transform(samples["x"].to_numpy(), samples["y"].to_numpy())
    geo = samples.assign(x=lon, y=lat)

    cfg = replace(config, area_of_use_margin=10.0)
    prepared = prepare_calibration_input(
        geo, ages, veg, pollen_map, veg_map, cfg, samples_crs="EPSG:4326"
    )
    assert prepared.model_input.idx_cores.tolist() == [1, 6]
    np.testing.assert_allclose(prepared.pollen["x"], [500.0, 2500.0], atol=1e-3)


def test_sites_outside_projection_area_raise(samples, ages, veg, pollen_map, veg_map, config):
    # lat/long sites in Europe cannot be placed on a Great Lakes Albers grid
    europe = samples.assign(x=10.0, y=50.0)
    with pytest.raises(TransformFailure, match="area of use"):
        prepare_calibration_input(europe, ages, veg, pollen_map, veg_map, config, samples_crs="EPSG:4326")
    with pytest.raises(TransformFailure):
        prepare_calibration_input(
            europe, ages, veg, pollen_map, veg_map, replace(config, area_of_use_margin=10.0),
            samples_crs="EPSG:4326",
        )


def test_no_sites_in_window_raises(samples, ages, veg, pollen_map, veg_map, config):
    with pytest.raises(EmptyDomainError):
        prepare_calibration_input(
            samples, ages, veg, pollen_map, veg_map, replace(config, calibration_range=(5000.0, 6000.0))
        )


def test_vegetation_outside_grid_raises(samples, ages, veg, pollen_map, veg_map, config):
    stray = pd.concat([veg, veg.iloc[[0]].assign(x=9500.0)], ignore_index=True)
    with pytest.raises(TransformFailure):
        prepare_calibration_input(samples, ages, stray, pollen_map, veg_map, config)


def test_vocabulary_mismatch_raises(samples, ages, veg, pollen_map, veg_map, config):
    veg_map = veg_map.assign(target_taxon=["Oak", "Pine", "Other", "Fir"])
    with pytest.raises(TaxonMismatchError):
        prepare_calibration_input(samples, ages, veg, pollen_map, veg_map, config)


def test_query_bbox_for_shipped_config():
    cfg = load_calibration_config(ROOT / "config" / "calibration.yaml")
    west, south, east, north = query_bbox(cfg)
    assert -105 < west < east < -75
    assert 38 < south < north < 52
