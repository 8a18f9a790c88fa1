"""3D tileset traversal and acquisition (AOI pruning, LOD planning, GLB caching)."""

from .cache import TileCache
from .cache_metadata import TileCacheMetadata
from .cache_metadata import extract_cache_metadata
from .cache_metadata import is_expired
from .client import RetryPolicy
from .client import SessionState
from .client import TileServiceClient
from .downloader import EnsureSummary
from .downloader import TileDownloader
from .downloader import TileDownloadResult
from .errors import ConfigurationError
from .errors import Tiles3DError
from .footprint import Aoi
from .footprint import AoiFootprint
from .geomath import EcefPoint
from .geomath import GeodeticPoint
from .geomath import densify
from .geomath import ecef_to_wgs84
from .geomath import geodesic_distance_m
from .geomath import wgs84_to_ecef
from .local_frame import LocalFrame
from .models import Refine
from .models import Tileset
from .models import TileNode
from .pipeline import AcquisitionReport
from .pipeline import acquire_tiles
from .reprojector import MeshReprojector
from .walker import CancelToken
from .walker import PlannedTile
from .walker import TilesetWalker
from .walker import TraversalBudgets
from .walker import TraversalStats
from .walker import plan_downloads

__all__ = [
    "AcquisitionReport",
    "acquire_tiles",
    "Aoi",
    "AoiFootprint",
    "CancelToken",
    "ConfigurationError",
    "densify",
    "ecef_to_wgs84",
    "EcefPoint",
    "EnsureSummary",
    "extract_cache_metadata",
    "geodesic_distance_m",
    "GeodeticPoint",
    "is_expired",
    "LocalFrame",
    "MeshReprojector",
    "plan_downloads",
    "PlannedTile",
    "Refine",
    "RetryPolicy",
    "SessionState",
    "TileCache",
    "TileCacheMetadata",
    "TileDownloader",
    "TileDownloadResult",
    "TileNode",
    "Tiles3DError",
    "Tileset",
    "TilesetWalker",
    "TileServiceClient",
    "TraversalBudgets",
    "TraversalStats",
    "wgs84_to_ecef",
]
