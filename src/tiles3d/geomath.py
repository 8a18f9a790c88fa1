from __future__ import annotations

import math
from typing import Iterable, NamedTuple, Sequence

import numpy as np


WGS84_A = 6378137.0
WGS84_F = 1.0 / 298.257223563
WGS84_B = WGS84_A * (1.0 - WGS84_F)
WGS84_E2 = 1.0 - (WGS84_B * WGS84_B) / (WGS84_A * WGS84_A)

# Haversine sphere; adequate for pruning and subdivision, not for surveying.
EARTH_RADIUS_M = 6_371_000.0

# Fixed refinement count for ECEF -> geodetic latitude/height.
ECEF_TO_WGS84_ITERATIONS = 5

_DEGENERATE_EDGE_DEG = 1e-10
_SLERP_MIN_ANGLE = 1e-10


class GeodeticPoint(NamedTuple):
    lon_deg: float
    lat_deg: float
    height_m: float = 0.0


class EcefPoint(NamedTuple):
    x: float
    y: float
    z: float


def _prime_vertical_radius(lat_rad: float) -> float:
    sin_lat = math.sin(lat_rad)
    return WGS84_A / math.sqrt(1.0 - WGS84_E2 * sin_lat * sin_lat)


def wgs84_to_ecef(lon_deg: float, lat_deg: float, height_m: float = 0.0) -> EcefPoint:
    lon = math.radians(float(lon_deg))
    lat = math.radians(float(lat_deg))
    sin_lat = math.sin(lat)
    cos_lat = math.cos(lat)

    n = _prime_vertical_radius(lat)
    x = (n + height_m) * cos_lat * math.cos(lon)
    y = (n + height_m) * cos_lat * math.sin(lon)
    z = (n * (1.0 - WGS84_E2) + height_m) * sin_lat
    return EcefPoint(x, y, z)


def ecef_to_wgs84(point: Sequence[float]) -> GeodeticPoint:
    """Convert an ECEF position (meters) to WGS84 longitude/latitude/height.

    Longitude is exact. Latitude and height use a fixed number of
    refinement steps without a convergence check, which keeps the cost
    deterministic and is sub-centimeter accurate for terrestrial points.
    """
    x, y, z = (float(v) for v in point)
    lon = math.atan2(y, x)
    p = math.hypot(x, y)

    lat = math.atan2(z, p * (1.0 - WGS84_E2))
    for _ in range(ECEF_TO_WGS84_ITERATIONS):
        n = _prime_vertical_radius(lat)
        h = p / math.cos(lat) - n
        lat = math.atan2(z, p * (1.0 - WGS84_E2 * n / (n + h)))

    n = _prime_vertical_radius(lat)
    h = p / math.cos(lat) - n
    return GeodeticPoint(math.degrees(lon), math.degrees(lat), h)


def _as_points3(points: np.ndarray | Sequence[Sequence[float]]) -> np.ndarray:
    arr = np.asarray(points, dtype=np.float64)
    if arr.ndim == 1 and arr.shape[0] == 3:
        arr = arr.reshape(1, 3)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"expected an (N, 3) array of points, got shape {arr.shape}")
    return arr


def wgs84_to_ecef_array(points: np.ndarray | Sequence[Sequence[float]]) -> np.ndarray:
    """Vectorised :func:`wgs84_to_ecef` for an (N, 3) array of lon/lat/height."""
    arr = _as_points3(points)
    lon = np.radians(arr[:, 0])
    lat = np.radians(arr[:, 1])
    h = arr[:, 2]
    sin_lat = np.sin(lat)
    cos_lat = np.cos(lat)

    n = WGS84_A / np.sqrt(1.0 - WGS84_E2 * sin_lat * sin_lat)
    x = (n + h) * cos_lat * np.cos(lon)
    y = (n + h) * cos_lat * np.sin(lon)
    z = (n * (1.0 - WGS84_E2) + h) * sin_lat
    return np.column_stack([x, y, z])


def ecef_to_wgs84_array(points: np.ndarray | Sequence[Sequence[float]]) -> np.ndarray:
    """Vectorised :func:`ecef_to_wgs84`; same algorithm and iteration count."""
    arr = _as_points3(points)
    x, y, z = arr[:, 0], arr[:, 1], arr[:, 2]
    lon = np.arctan2(y, x)
    p = np.hypot(x, y)

    lat = np.arctan2(z, p * (1.0 - WGS84_E2))
    for _ in range(ECEF_TO_WGS84_ITERATIONS):
        sin_lat = np.sin(lat)
        n = WGS84_A / np.sqrt(1.0 - WGS84_E2 * sin_lat * sin_lat)
        h = p / np.cos(lat) - n
        lat = np.arctan2(z, p * (1.0 - WGS84_E2 * n / (n + h)))

    sin_lat = np.sin(lat)
    n = WGS84_A / np.sqrt(1.0 - WGS84_E2 * sin_lat * sin_lat)
    h = p / np.cos(lat) - n
    return np.column_stack([np.degrees(lon), np.degrees(lat), h])


def enu_axes(lon_deg: float, lat_deg: float) -> np.ndarray:
    """Unit east/north/up vectors (rows) of the tangent plane at a geodetic point."""
    lon = math.radians(float(lon_deg))
    lat = math.radians(float(lat_deg))
    sin_lon, cos_lon = math.sin(lon), math.cos(lon)
    sin_lat, cos_lat = math.sin(lat), math.cos(lat)
    return np.array(
        [
            [-sin_lon, cos_lon, 0.0],
            [-sin_lat * cos_lon, -sin_lat * sin_lon, cos_lat],
            [cos_lat * cos_lon, cos_lat * sin_lon, sin_lat],
        ],
        dtype=np.float64,
    )


def geodesic_distance_m(
    lat1_deg: float, lon1_deg: float, lat2_deg: float, lon2_deg: float
) -> float:
    phi1 = math.radians(lat1_deg)
    phi2 = math.radians(lat2_deg)
    d_phi = phi2 - phi1
    d_lambda = math.radians(lon2_deg - lon1_deg)

    a = (
        math.sin(d_phi / 2.0) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    )
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_M * 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))


def _unit_vector(lat_deg: float, lon_deg: float) -> tuple[float, float, float]:
    lat = math.radians(lat_deg)
    lon = math.radians(lon_deg)
    cos_lat = math.cos(lat)
    return cos_lat * math.cos(lon), cos_lat * math.sin(lon), math.sin(lat)


def interpolate_great_circle(
    lat1_deg: float, lon1_deg: float, lat2_deg: float, lon2_deg: float, t: float
) -> GeodeticPoint:
    """Spherical linear interpolation between two points; the result has height 0."""
    ax, ay, az = _unit_vector(lat1_deg, lon1_deg)
    bx, by, bz = _unit_vector(lat2_deg, lon2_deg)

    dot = min(1.0, max(-1.0, ax * bx + ay * by + az * bz))
    theta = math.acos(dot)
    if theta < _SLERP_MIN_ANGLE:
        return GeodeticPoint(lon1_deg, lat1_deg, 0.0)

    sin_theta = math.sin(theta)
    wa = math.sin((1.0 - t) * theta) / sin_theta
    wb = math.sin(t * theta) / sin_theta
    x = wa * ax + wb * bx
    y = wa * ay + wb * by
    z = wa * az + wb * bz

    z = min(1.0, max(-1.0, z))
    return GeodeticPoint(math.degrees(math.atan2(y, x)), math.degrees(math.asin(z)), 0.0)


def densify(
    ring: Iterable[Sequence[float]], max_chord_m: float
) -> list[GeodeticPoint]:
    """Insert great-circle points so no edge of a closed ring exceeds ``max_chord_m``.

    The ring wraps from the last vertex back to the first. Input vertices
    are passed through unchanged (height included); inserted points have
    height 0.
    """
    if max_chord_m <= 0 or not math.isfinite(max_chord_m):
        raise ValueError("max_chord_m must be a positive finite number")

    points = [GeodeticPoint(*p) for p in ring]
    count = len(points)
    if count < 2:
        return points

    out: list[GeodeticPoint] = []
    for i, start in enumerate(points):
        end = points[(i + 1) % count]
        out.append(start)

        if (
            abs(end.lon_deg - start.lon_deg) < _DEGENERATE_EDGE_DEG
            and abs(end.lat_deg - start.lat_deg) < _DEGENERATE_EDGE_DEG
        ):
            continue

        length = geodesic_distance_m(
            start.lat_deg, start.lon_deg, end.lat_deg, end.lon_deg
        )
        segments = max(1, math.ceil(length / max_chord_m))
        for step in range(1, segments):
            out.append(
                interpolate_great_circle(
                    start.lat_deg,
                    start.lon_deg,
                    end.lat_deg,
                    end.lon_deg,
                    step / segments,
                )
            )
    return out
