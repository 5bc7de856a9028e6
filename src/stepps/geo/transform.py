#!/usr/bin/env python3
"""stepps.geo.transform

Reproject coordinates between the grid's projected CRS and lat/long.

The grid and all distances live in a projected, locally isotropic CRS
(e.g. EPSG:3175, Great Lakes Albers). Archive queries (Neotoma etc.) take
lat/long bounding boxes, so we also need the inverse direction and a bbox
transform with edge densification.

Design notes:
- Axis order is always x/lon first (pyproj `always_xy=True`).
- Every failure is loud: an unknown CRS raises InvalidReferenceSystem, any
  coordinate outside the domain of validity (EPSG area of use) of either
  CRS, or that PROJ cannot map, raises TransformFailure.
- `area_margin` widens the area of use by a number of degrees, for grids
  that run a little past a regional projection's published extent.
- Point transforms use pyproj; bbox transforms go through rasterio's
  `transform_bounds`, the same helper used when windowing rasters by AOI.
"""

from __future__ import annotations

import logging
from typing import Sequence, Tuple, Union

import numpy as np
import pandas as pd
from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError, ProjError
from rasterio.errors import CRSError as RasterioCRSError
from rasterio.errors import RasterioError
from rasterio.warp import transform_bounds

from stepps.errors import InvalidReferenceSystem, TransformFailure

logger = logging.getLogger(__name__)

CRSLike = Union[str, int, CRS]
BBox = Tuple[float, float, float, float]


def resolve_crs(value: CRSLike) -> CRS:
    """Parse an EPSG code / authority string / WKT / proj string into a CRS."""
    if isinstance(value, CRS):
        return value
    try:
        return CRS.from_user_input(value)
    except CRSError as e:
        raise InvalidReferenceSystem(f"Unrecognized reference system: {value!r}") from e


def _as_array(values: Sequence[float], name: str) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if arr.ndim != 1:
        arr = arr.ravel()
    bad = ~np.isfinite(arr)
    if bad.any():
        raise TransformFailure(f"Non-finite {name} coordinate at positions {np.flatnonzero(bad)[:10].tolist()}")
    return arr


def _outside_area(lon: np.ndarray, lat: np.ndarray, crs: CRS, margin: float = 0.0) -> np.ndarray:
    """Mask of points outside the CRS area of use (all False if undefined).

    `margin` (degrees) widens the area on every side. NaN counts as outside.
    """
    aou = crs.area_of_use
    if aou is None:
        return np.zeros(lon.shape, dtype=bool)
    west, east = aou.west - margin, aou.east + margin
    if aou.west <= aou.east:
        lon_ok = (lon >= west) & (lon <= east) if east - west < 360.0 else np.isfinite(lon)
    else:
        # area crosses the antimeridian
        lon_ok = (lon >= west) | (lon <= east)
    lat_ok = (lat >= max(aou.south - margin, -90.0)) & (lat <= min(aou.north + margin, 90.0))
    return ~(lon_ok & lat_ok)


class CoordinateTransformer:
    """Transform 2-D coordinates from `source` to `target`.

    Example:
        tr = CoordinateTransformer("EPSG:4326", "EPSG:3175")
        x, y = tr.transform([-89.4], [43.1])
        lonlat_bbox = tr.inverse().transform_bounds(grid_bbox)

    Points outside the published area of use of either CRS are rejected even
    when PROJ could compute something (a lat/long site in Europe projected
    into Great Lakes Albers, the pole in Web Mercator). `area_margin` widens
    that area by a number of degrees; `check_area_of_use=False` turns the
    check off.
    """

    def __init__(
        self,
        source: CRSLike,
        target: CRSLike,
        *,
        check_area_of_use: bool = True,
        area_margin: float = 0.0,
    ):
        self.source = resolve_crs(source)
        self.target = resolve_crs(target)
        self.check_area_of_use = check_area_of_use
        self.area_margin = float(area_margin)
        if not np.isfinite(self.area_margin) or self.area_margin < 0:
            raise ValueError(f"area_margin must be a non-negative number of degrees, got {area_margin!r}")
        self._transformer = Transformer.from_crs(self.source, self.target, always_xy=True)

    def __repr__(self) -> str:
        return f"CoordinateTransformer({self.source.to_string()!r} -> {self.target.to_string()!r})"

    def inverse(self) -> "CoordinateTransformer":
        return CoordinateTransformer(
            self.target, self.source,
            check_area_of_use=self.check_area_of_use, area_margin=self.area_margin,
        )

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _lonlat(self, xs: np.ndarray, ys: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        if self.source.is_geographic:
            return xs, ys
        to_geo = Transformer.from_crs(self.source, self.source.geodetic_crs, always_xy=True)
        lon, lat = to_geo.transform(xs, ys)
        return np.asarray(lon, dtype=float), np.asarray(lat, dtype=float)

    def _validate_input(self, xs: np.ndarray, ys: np.ndarray) -> None:
        if self.source.is_geographic:
            bad = (ys < -90.0) | (ys > 90.0)
            if bad.any():
                raise TransformFailure(
                    f"Latitude outside [-90, 90] at positions {np.flatnonzero(bad)[:10].tolist()}"
                )
        if self.check_area_of_use:
            lon, lat = self._lonlat(xs, ys)
            m = self.area_margin
            bad = _outside_area(lon, lat, self.source, m) | _outside_area(lon, lat, self.target, m)
            if bad.any():
                raise TransformFailure(
                    f"Coordinates outside the area of use of {self.source.name} / {self.target.name} "
                    f"at positions {np.flatnonzero(bad)[:10].tolist()}"
                )

    # -------------------------------------------------------------------------
    # Transforms
    # -------------------------------------------------------------------------

    def transform(self, xs: Sequence[float], ys: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
        """Return (xs, ys) re-expressed in the target CRS."""
        x = _as_array(xs, "x")
        y = _as_array(ys, "y")
        if x.shape != y.shape:
            raise ValueError(f"x and y differ in length: {x.shape[0]} vs {y.shape[0]}")
        self._validate_input(x, y)

        try:
            out_x, out_y = self._transformer.transform(x, y, errcheck=True)
        except ProjError as e:
            raise TransformFailure(f"{self!r} failed: {e}") from e

        out_x = np.asarray(out_x, dtype=float)
        out_y = np.asarray(out_y, dtype=float)
        bad = ~(np.isfinite(out_x) & np.isfinite(out_y))
        if bad.any():
            raise TransformFailure(
                f"{self!r} produced non-finite output at positions {np.flatnonzero(bad)[:10].tolist()}"
            )
        return out_x, out_y

    def transform_frame(self, df: pd.DataFrame, x_col: str = "x", y_col: str = "y") -> pd.DataFrame:
        """Return a copy of `df` with `x_col`/`y_col` reprojected."""
        out = df.copy()
        out[x_col], out[y_col] = self.transform(df[x_col].to_numpy(), df[y_col].to_numpy())
        return out

    def transform_bounds(self, bbox: BBox, densify_pts: int = 21) -> BBox:
        """Reproject a bbox, densifying edges so curved boundaries stay covered."""
        xmin, ymin, xmax, ymax = bbox
        if xmin > xmax or ymin > ymax:
            raise ValueError(f"Inverted bbox: {bbox}")
        corners_x = np.array([xmin, xmax, xmin, xmax], dtype=float)
        corners_y = np.array([ymin, ymin, ymax, ymax], dtype=float)
        self._validate_input(corners_x, corners_y)
        try:
            out = transform_bounds(
                self.source.to_wkt(),
                self.target.to_wkt(),
                xmin, ymin, xmax, ymax,
                densify_pts=densify_pts,
            )
        except (RasterioError, RasterioCRSError) as e:
            raise TransformFailure(f"{self!r} failed on bbox {bbox}: {e}") from e
        if not all(np.isfinite(out)):
            raise TransformFailure(f"{self!r} produced non-finite bbox for {bbox}: {out}")
        logger.debug("bbox %s -> %s", bbox, out)
        return tuple(float(v) for v in out)  # type: ignore[return-value]


def to_projection(
    df: pd.DataFrame,
    source: CRSLike,
    target: CRSLike,
    x_col: str = "x",
    y_col: str = "y",
    *,
    area_margin: float = 0.0,
) -> pd.DataFrame:
    """Reproject a table's coordinate columns, rejecting points outside the
    area of use of either CRS (widened by `area_margin` degrees)."""
    tr = CoordinateTransformer(source, target, area_margin=area_margin)
    return tr.transform_frame(df, x_col=x_col, y_col=y_col)
