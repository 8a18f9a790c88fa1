from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Iterator, Mapping, Optional, Sequence, Union
from urllib.parse import urlsplit

from .errors import TilesetFormatError

logger = logging.getLogger(__name__)

TILESET_SUFFIX = ".json"
GLB_SUFFIX = ".glb"

Vec3 = tuple[float, float, float]


class Refine(str, Enum):
    ADD = "ADD"
    REPLACE = "REPLACE"

    @classmethod
    def parse(cls, value: Any) -> Optional["Refine"]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise TilesetFormatError(f"refine must be a string, got {value!r}")
        normalized = value.strip().upper()
        if not normalized:
            return None
        try:
            return cls(normalized)
        except ValueError:
            logger.debug("tileset_unknown_refine", extra={"refine": value})
            return None


def _finite_floats(values: Any, *, count: int, kind: str) -> tuple[float, ...]:
    if not isinstance(values, Sequence) or isinstance(values, (str, bytes)):
        raise TilesetFormatError(f"boundingVolume.{kind} must be an array")
    if len(values) < count:
        raise TilesetFormatError(
            f"boundingVolume.{kind} needs {count} numbers, got {len(values)}"
        )
    try:
        out = tuple(float(v) for v in values[:count])
    except (TypeError, ValueError) as exc:
        raise TilesetFormatError(f"boundingVolume.{kind} must be numeric") from exc
    if not all(math.isfinite(v) for v in out):
        raise TilesetFormatError(f"boundingVolume.{kind} must be finite")
    return out


@dataclass(frozen=True)
class BoxVolume:
    """Oriented box; half-extents are the lengths of the axis vectors."""

    center: Vec3
    x_axis: Vec3
    y_axis: Vec3
    z_axis: Vec3

    @classmethod
    def from_values(cls, values: Any) -> "BoxVolume":
        v = _finite_floats(values, count=12, kind="box")
        return cls(center=v[0:3], x_axis=v[3:6], y_axis=v[6:9], z_axis=v[9:12])  # type: ignore[arg-type]


@dataclass(frozen=True)
class SphereVolume:
    center: Vec3
    radius: float

    @classmethod
    def from_values(cls, values: Any) -> "SphereVolume":
        v = _finite_floats(values, count=4, kind="sphere")
        if v[3] < 0:
            raise TilesetFormatError("boundingVolume.sphere radius must be >= 0")
        return cls(center=v[0:3], radius=v[3])  # type: ignore[arg-type]


@dataclass(frozen=True)
class RegionVolume:
    """Geodetic region; angles in radians, heights in meters."""

    west: float
    south: float
    east: float
    north: float
    min_height: float
    max_height: float

    @classmethod
    def from_values(cls, values: Any) -> "RegionVolume":
        v = _finite_floats(values, count=6, kind="region")
        return cls(*v)

    def corners_deg(self) -> list[tuple[float, float, float]]:
        west, east = math.degrees(self.west), math.degrees(self.east)
        south, north = math.degrees(self.south), math.degrees(self.north)
        return [
            (lon, lat, h)
            for h in (self.min_height, self.max_height)
            for lon, lat in ((west, south), (east, south), (east, north), (west, north))
        ]


BoundingVolume = Union[BoxVolume, SphereVolume, RegionVolume]


def parse_bounding_volume(data: Any) -> Optional[BoundingVolume]:
    """Parse a ``boundingVolume`` object, preferring box, then sphere, then region."""
    if data is None:
        return None
    if not isinstance(data, Mapping):
        raise TilesetFormatError("boundingVolume must be an object")
    if data.get("box") is not None:
        return BoxVolume.from_values(data["box"])
    if data.get("sphere") is not None:
        return SphereVolume.from_values(data["sphere"])
    if data.get("region") is not None:
        return RegionVolume.from_values(data["region"])
    return None


@dataclass(frozen=True)
class TileNode:
    bounding_volume: Optional[BoundingVolume]
    geometric_error: float = 0.0
    refine: Optional[Refine] = None
    content_uri: Optional[str] = None
    children: tuple["TileNode", ...] = ()


@dataclass(frozen=True)
class Tileset:
    root: TileNode
    asset_version: Optional[str] = None
    geometric_error: float = 0.0
    refine: Optional[Refine] = None


def _uri_path(uri: str) -> str:
    return urlsplit(uri.strip()).path


def is_tileset_uri(uri: Optional[str]) -> bool:
    if not uri:
        return False
    return PurePosixPath(_uri_path(uri)).suffix.lower() == TILESET_SUFFIX


def is_glb_uri(uri: Optional[str]) -> bool:
    if not uri:
        return False
    return PurePosixPath(_uri_path(uri)).suffix.lower() == GLB_SUFFIX


def _content_uri(content: Any) -> Optional[str]:
    if content is None:
        return None
    if not isinstance(content, Mapping):
        raise TilesetFormatError("content must be an object")
    for key in ("uri", "url"):
        value = content.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _geometric_error(data: Mapping[str, Any]) -> float:
    value = data.get("geometricError", 0.0)
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise TilesetFormatError(f"geometricError must be numeric, got {value!r}") from exc


def parse_tile_node(data: Any) -> TileNode:
    if not isinstance(data, Mapping):
        raise TilesetFormatError("tile must be an object")

    children_raw = data.get("children") or []
    if not isinstance(children_raw, Sequence) or isinstance(children_raw, (str, bytes)):
        raise TilesetFormatError("children must be an array")

    return TileNode(
        bounding_volume=parse_bounding_volume(data.get("boundingVolume")),
        geometric_error=_geometric_error(data),
        refine=Refine.parse(data.get("refine")),
        content_uri=_content_uri(data.get("content")),
        children=tuple(parse_tile_node(child) for child in children_raw),
    )


def parse_tileset(data: Any, *, source: Optional[str] = None) -> Tileset:
    where = f" ({source})" if source else ""
    if not isinstance(data, Mapping):
        raise TilesetFormatError(f"tileset document must be an object{where}")
    root_raw = data.get("root")
    if root_raw is None:
        raise TilesetFormatError(f"tileset has no root{where}")

    root = parse_tile_node(root_raw)

    asset = data.get("asset")
    version = asset.get("version") if isinstance(asset, Mapping) else None

    return Tileset(
        root=root,
        asset_version=str(version) if version is not None else None,
        geometric_error=_geometric_error(data),
        refine=Refine.parse(data.get("refine")) or root.refine,
    )


def parse_tileset_json(text: Union[str, bytes], *, source: Optional[str] = None) -> Tileset:
    try:
        data = json.loads(text)
    except ValueError as exc:
        where = f": {source}" if source else ""
        raise TilesetFormatError(f"Malformed tileset JSON{where}") from exc
    return parse_tileset(data, source=source)


def iter_content_uris(node: TileNode) -> Iterator[str]:
    stack = [node]
    while stack:
        current = stack.pop()
        if current.content_uri:
            yield current.content_uri
        stack.extend(reversed(current.children))
