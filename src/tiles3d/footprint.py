"""AOI footprint in ECEF and the broad-phase intersection tests against it.

The AOI is converted to ECEF once; every tile test afterwards compares tile
bounding volumes against the precomputed AABB, bounding sphere and oriented
box without going back to geodetic coordinates.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .errors import ConfigurationError
from .geomath import (
    GeodeticPoint,
    densify,
    ecef_to_wgs84,
    enu_axes,
    wgs84_to_ecef_array,
)
from .local_frame import LocalFrame
from .models import BoundingVolume, BoxVolume, RegionVolume, SphereVolume

DEFAULT_DENSIFY_CHORD_M = 50.0

# Covers terrain extremes above and below the AOI ground.
VERTICAL_INFLATION_M = 10_000.0

_AXIS_EPS = 1e-12


@dataclass(frozen=True)
class Aoi:
    """Closed area-of-interest boundary, in model coordinates or in lon/lat."""

    boundary: tuple[tuple[float, ...], ...]
    frame: Optional[LocalFrame] = None
    geodetic: bool = False

    @classmethod
    def from_model(
        cls, boundary: Sequence[Sequence[float]], frame: Optional[LocalFrame]
    ) -> "Aoi":
        return cls(boundary=tuple(tuple(float(v) for v in p) for p in boundary), frame=frame)

    @classmethod
    def from_geodetic(cls, ring: Sequence[Sequence[float]]) -> "Aoi":
        return cls(
            boundary=tuple(tuple(float(v) for v in p) for p in ring), geodetic=True
        )

    @classmethod
    def from_bbox(cls, west: float, south: float, east: float, north: float) -> "Aoi":
        if west >= east or south >= north:
            raise ConfigurationError(
                f"Invalid AOI bbox: west={west} south={south} east={east} north={north}"
            )
        return cls.from_geodetic([(west, south), (east, south), (east, north), (west, north)])

    def to_geodetic(self) -> list[GeodeticPoint]:
        if len(self.boundary) < 3:
            raise ConfigurationError("AOI boundary needs at least 3 vertices")
        if self.geodetic:
            return [GeodeticPoint(*p) for p in self.boundary]
        if self.frame is None:
            raise ConfigurationError(
                "AOI not geo-referenced: a local frame anchor is required to "
                "place model coordinates on the globe"
            )
        coords = self.frame.model_to_geodetic_array(self.boundary)
        return [GeodeticPoint(float(lon), float(lat), float(h)) for lon, lat, h in coords]


@dataclass(frozen=True, eq=False)
class OrientedBox:
    center: np.ndarray
    half_axes: np.ndarray  # rows are half-extent vectors

    @classmethod
    def from_box_volume(cls, box: BoxVolume) -> "OrientedBox":
        return cls(
            center=np.asarray(box.center, dtype=np.float64),
            half_axes=np.asarray([box.x_axis, box.y_axis, box.z_axis], dtype=np.float64),
        )

    def corners(self) -> np.ndarray:
        signs = np.array(
            [[sx, sy, sz] for sx in (-1.0, 1.0) for sy in (-1.0, 1.0) for sz in (-1.0, 1.0)]
        )
        return self.center + signs @ self.half_axes

    def face_normals(self) -> list[np.ndarray]:
        normals = []
        for axis in self.half_axes:
            length = float(np.linalg.norm(axis))
            if length > _AXIS_EPS:
                normals.append(axis / length)
        return normals


def aabb_disjoint(
    a_min: np.ndarray, a_max: np.ndarray, b_min: np.ndarray, b_max: np.ndarray
) -> bool:
    return bool(np.any(a_max < b_min) or np.any(b_max < a_min))


def obb_overlap(a: OrientedBox, b: OrientedBox) -> bool:
    """Separating-axis test over the six face normals only.

    The nine edge cross-product axes are not tested, so edge-grazing
    configurations may report overlap. Pruning yield depends on this.
    """
    corners_a = a.corners()
    corners_b = b.corners()
    for axis in (*a.face_normals(), *b.face_normals()):
        proj_a = corners_a @ axis
        proj_b = corners_b @ axis
        if proj_a.max() < proj_b.min() or proj_b.max() < proj_a.min():
            return False
    return True


@dataclass(frozen=True, eq=False)
class AoiFootprint:
    points_ecef: np.ndarray
    aabb_min: np.ndarray
    aabb_max: np.ndarray
    expanded_min: np.ndarray
    expanded_max: np.ndarray
    center: np.ndarray
    radius: float
    expanded_radius: float
    box: OrientedBox
    relax_m: float
    width_m: float
    height_m: float

    @classmethod
    def build(
        cls,
        ring: Sequence[Sequence[float]],
        *,
        relax_m: float = 0.0,
        densify_chord_m: float = DEFAULT_DENSIFY_CHORD_M,
    ) -> "AoiFootprint":
        relax = max(0.0, float(relax_m))
        dense = densify(ring, densify_chord_m)
        if not dense:
            raise ConfigurationError("AOI boundary is empty")

        points = wgs84_to_ecef_array([tuple(p) for p in dense])
        aabb_min = points.min(axis=0)
        aabb_max = points.max(axis=0)
        center = points.mean(axis=0)
        radius = float(np.linalg.norm(points - center, axis=1).max())

        center_geo = ecef_to_wgs84(center)
        axes = enu_axes(center_geo.lon_deg, center_geo.lat_deg)
        local = (points - center) @ axes.T
        lo = local.min(axis=0) - np.array([relax, relax, VERTICAL_INFLATION_M])
        hi = local.max(axis=0) + np.array([relax, relax, VERTICAL_INFLATION_M])
        box = OrientedBox(
            center=center + ((lo + hi) / 2.0) @ axes,
            half_axes=axes * ((hi - lo) / 2.0)[:, np.newaxis],
        )

        # Terrain-tolerant bounds shared by the region test and the box gate.
        box_corners = box.corners()

        diagonal = aabb_max - aabb_min
        size = float(max(diagonal[0], diagonal[1]))
        return cls(
            points_ecef=points,
            aabb_min=aabb_min,
            aabb_max=aabb_max,
            expanded_min=box_corners.min(axis=0),
            expanded_max=box_corners.max(axis=0),
            center=center,
            radius=radius,
            expanded_radius=radius + relax,
            box=box,
            relax_m=relax,
            width_m=size,
            height_m=size,
        )

    @classmethod
    def from_aoi(
        cls,
        aoi: Aoi,
        *,
        relax_m: float = 0.0,
        densify_chord_m: float = DEFAULT_DENSIFY_CHORD_M,
    ) -> "AoiFootprint":
        return cls.build(aoi.to_geodetic(), relax_m=relax_m, densify_chord_m=densify_chord_m)

    def intersects_box(self, box: BoxVolume) -> bool:
        tile = OrientedBox.from_box_volume(box)
        corners = tile.corners()
        if aabb_disjoint(
            corners.min(axis=0), corners.max(axis=0), self.expanded_min, self.expanded_max
        ):
            return False
        return obb_overlap(tile, self.box)

    def intersects_sphere(self, sphere: SphereVolume) -> bool:
        distance = float(np.linalg.norm(np.asarray(sphere.center) - self.center))
        return distance <= self.expanded_radius + sphere.radius

    def intersects_region(self, region: RegionVolume) -> bool:
        corners = wgs84_to_ecef_array(region.corners_deg())
        return not aabb_disjoint(
            corners.min(axis=0), corners.max(axis=0), self.expanded_min, self.expanded_max
        )

    def intersects(self, volume: Optional[BoundingVolume]) -> bool:
        if volume is None:
            return False
        if isinstance(volume, BoxVolume):
            return self.intersects_box(volume)
        if isinstance(volume, SphereVolume):
            return self.intersects_sphere(volume)
        if isinstance(volume, RegionVolume):
            return self.intersects_region(volume)
        raise TypeError(f"Unsupported bounding volume: {type(volume).__name__}")


def region_size_m(region: RegionVolume) -> tuple[float, float]:
    """Equirectangular width/height of a region at its mean latitude."""
    meters_per_deg_lat = 111_320.0
    mean_lat = (region.south + region.north) / 2.0
    meters_per_deg_lon = meters_per_deg_lat * math.cos(mean_lat)
    span = region.east - region.west
    if span < 0:
        # Crosses the antimeridian.
        span += 2.0 * math.pi
    width = math.degrees(span) * meters_per_deg_lon
    height = abs(math.degrees(region.north - region.south)) * meters_per_deg_lat
    return width, height
