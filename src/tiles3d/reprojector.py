from __future__ import annotations

import json
import logging
import struct
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence, Union

import numpy as np

from .errors import InvalidContentError
from .geomath import ecef_to_wgs84_array
from .local_frame import LocalFrame

logger = logging.getLogger(__name__)

GLB_HEADER = struct.Struct("<4sII")
GLB_CHUNK_HEADER = struct.Struct("<II")
GLB_CHUNK_JSON = 0x4E4F534A

# glTF is Y-up; tiles place geometry in a Z-up ECEF frame.
Y_UP_TO_Z_UP = np.array(
    [
        [1.0, 0.0, 0.0],
        [0.0, 0.0, -1.0],
        [0.0, 1.0, 0.0],
    ]
)


def _as_vertices(vertices: Union[np.ndarray, Sequence[Sequence[float]]]) -> np.ndarray:
    arr = np.asarray(vertices, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"vertices must be an (N, 3) array, got shape {arr.shape}")
    return arr


def y_up_to_z_up(vertices: Union[np.ndarray, Sequence[Sequence[float]]]) -> np.ndarray:
    return _as_vertices(vertices) @ Y_UP_TO_Z_UP.T


def apply_rtc(
    vertices: Union[np.ndarray, Sequence[Sequence[float]]], center: Sequence[float]
) -> np.ndarray:
    """Add a relative-to-center offset so vertices become absolute ECEF."""
    return _as_vertices(vertices) + np.asarray(center, dtype=np.float64).reshape(1, 3)


class MeshReprojector:
    """Moves mesh vertices from ECEF meters into a local model frame.

    Each vertex goes ECEF -> WGS84 (same fixed-iteration solver as the
    walker) -> local model coordinates, with heights converted to model
    units by the frame.
    """

    def __init__(self, frame: LocalFrame) -> None:
        self._frame = frame

    @property
    def frame(self) -> LocalFrame:
        return self._frame

    def ecef_to_geodetic(
        self, vertices: Union[np.ndarray, Sequence[Sequence[float]]]
    ) -> np.ndarray:
        return ecef_to_wgs84_array(_as_vertices(vertices))

    def ecef_to_model(
        self, vertices: Union[np.ndarray, Sequence[Sequence[float]]]
    ) -> np.ndarray:
        geodetic = self.ecef_to_geodetic(vertices)
        return self._frame.geodetic_to_model_array(geodetic)


def read_glb_json(path: Union[str, Path]) -> dict[str, Any]:
    """Read the JSON chunk of a binary glTF container."""
    with Path(path).open("rb") as handle:
        header = handle.read(GLB_HEADER.size)
        if len(header) < GLB_HEADER.size:
            raise InvalidContentError(f"GLB file too short: {path}")
        magic, _version, _length = GLB_HEADER.unpack(header)
        if magic != b"glTF":
            raise InvalidContentError(f"Not a GLB file (bad magic {magic!r}): {path}")

        chunk_header = handle.read(GLB_CHUNK_HEADER.size)
        if len(chunk_header) < GLB_CHUNK_HEADER.size:
            raise InvalidContentError(f"GLB file has no chunks: {path}")
        chunk_length, chunk_type = GLB_CHUNK_HEADER.unpack(chunk_header)
        if chunk_type != GLB_CHUNK_JSON:
            raise InvalidContentError(f"First GLB chunk is not JSON: {path}")

        raw = handle.read(chunk_length)
    try:
        data = json.loads(raw.decode("utf-8"))
    except ValueError as exc:
        raise InvalidContentError(f"GLB JSON chunk is malformed: {path}") from exc
    if not isinstance(data, dict):
        raise InvalidContentError(f"GLB JSON chunk must be an object: {path}")
    return data


def extract_copyright(path: Union[str, Path]) -> Optional[str]:
    asset = read_glb_json(path).get("asset")
    if not isinstance(asset, dict):
        return None
    value = asset.get("copyright")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def collect_copyrights(paths: Iterable[Union[str, Path]]) -> set[str]:
    """Unique copyright strings across GLB files; unreadable files are logged and skipped."""
    found: set[str] = set()
    for path in paths:
        try:
            value = extract_copyright(path)
        except (InvalidContentError, OSError) as exc:
            logger.warning(
                "glb_copyright_extract_failed", extra={"path": str(path), "error": str(exc)}
            )
            continue
        if value:
            found.add(value)
    return found
