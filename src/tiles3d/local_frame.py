from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .geomath import (
    EcefPoint,
    GeodeticPoint,
    ecef_to_wgs84_array,
    enu_axes,
    wgs84_to_ecef,
    wgs84_to_ecef_array,
)


def _pad_xyz(points: np.ndarray | Sequence[Sequence[float]]) -> np.ndarray:
    arr = np.asarray(points, dtype=np.float64)
    if arr.ndim == 1:
        arr = arr.reshape(1, -1)
    if arr.ndim != 2 or arr.shape[1] not in (2, 3):
        raise ValueError(f"expected (N, 2) or (N, 3) model points, got shape {arr.shape}")
    if arr.shape[1] == 2:
        arr = np.column_stack([arr, np.zeros(arr.shape[0])])
    return arr


@dataclass(frozen=True)
class LocalFrame:
    """A local Cartesian model frame anchored to a point on the ellipsoid.

    Model X/Y span a tangent plane at the anchor and Z points up.
    ``north_rotation_deg`` is the counter-clockwise angle from model +Y to
    true north; ``unit_scale_m`` converts one model unit to meters; ``origin``
    is the model point that sits on the anchor.
    """

    anchor_lon_deg: float
    anchor_lat_deg: float
    anchor_height_m: float = 0.0
    origin: tuple[float, float, float] = (0.0, 0.0, 0.0)
    north_rotation_deg: float = 0.0
    unit_scale_m: float = 1.0

    def __post_init__(self) -> None:
        values = (
            self.anchor_lon_deg,
            self.anchor_lat_deg,
            self.anchor_height_m,
            self.north_rotation_deg,
            self.unit_scale_m,
            *self.origin,
        )
        if not all(math.isfinite(float(v)) for v in values):
            raise ValueError("LocalFrame values must be finite")
        if not (-180.0 <= self.anchor_lon_deg <= 180.0):
            raise ValueError("anchor_lon_deg must be within [-180, 180]")
        if not (-90.0 < self.anchor_lat_deg < 90.0):
            raise ValueError("anchor_lat_deg must be within (-90, 90)")
        if self.unit_scale_m <= 0:
            raise ValueError("unit_scale_m must be > 0")
        if len(self.origin) != 3:
            raise ValueError("origin must have 3 components")

    @property
    def anchor_ecef(self) -> EcefPoint:
        return wgs84_to_ecef(self.anchor_lon_deg, self.anchor_lat_deg, self.anchor_height_m)

    @property
    def axes(self) -> np.ndarray:
        return enu_axes(self.anchor_lon_deg, self.anchor_lat_deg)

    def _model_to_enu(self, points: np.ndarray) -> np.ndarray:
        meters = (points - np.asarray(self.origin, dtype=np.float64)) * self.unit_scale_m
        theta = math.radians(self.north_rotation_deg)
        cos_t, sin_t = math.cos(theta), math.sin(theta)
        east = meters[:, 0] * cos_t + meters[:, 1] * sin_t
        north = -meters[:, 0] * sin_t + meters[:, 1] * cos_t
        return np.column_stack([east, north, meters[:, 2]])

    def _enu_to_model(self, enu: np.ndarray) -> np.ndarray:
        theta = math.radians(self.north_rotation_deg)
        cos_t, sin_t = math.cos(theta), math.sin(theta)
        x = enu[:, 0] * cos_t - enu[:, 1] * sin_t
        y = enu[:, 0] * sin_t + enu[:, 1] * cos_t
        meters = np.column_stack([x, y, enu[:, 2]])
        return meters / self.unit_scale_m + np.asarray(self.origin, dtype=np.float64)

    def model_to_ecef_array(self, points: np.ndarray | Sequence[Sequence[float]]) -> np.ndarray:
        enu = self._model_to_enu(_pad_xyz(points))
        return np.asarray(self.anchor_ecef) + enu @ self.axes

    def ecef_to_model_array(self, points: np.ndarray | Sequence[Sequence[float]]) -> np.ndarray:
        ecef = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        enu = (ecef - np.asarray(self.anchor_ecef)) @ self.axes.T
        return self._enu_to_model(enu)

    def model_to_geodetic_array(
        self, points: np.ndarray | Sequence[Sequence[float]]
    ) -> np.ndarray:
        return ecef_to_wgs84_array(self.model_to_ecef_array(points))

    def geodetic_to_model_array(
        self, points: np.ndarray | Sequence[Sequence[float]]
    ) -> np.ndarray:
        return self.ecef_to_model_array(wgs84_to_ecef_array(points))

    def model_to_geodetic(self, point: Sequence[float]) -> GeodeticPoint:
        lon, lat, h = self.model_to_geodetic_array([point])[0]
        return GeodeticPoint(float(lon), float(lat), float(h))

    def geodetic_to_model(self, point: Sequence[float]) -> tuple[float, float, float]:
        x, y, z = self.geodetic_to_model_array([tuple(GeodeticPoint(*point))])[0]
        return float(x), float(y), float(z)
