from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from .client import SessionState
from .config import Tiles3DConfig, Tiles3DSettings, get_tiles3d_config
from .errors import ConfigurationError, Tiles3DError
from .footprint import Aoi
from .local_frame import LocalFrame
from .pipeline import acquire_from_config, build_client, plan_with_relaxed_retry

EXIT_OK = 0
EXIT_ACQUISITION_ERROR = 1
EXIT_CONFIG_ERROR = 2


def _parse_floats(value: str, *, name: str, counts: Sequence[int]) -> list[float]:
    try:
        parts = [float(v) for v in value.split(",") if v.strip() != ""]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{name} must be comma-separated numbers") from exc
    if len(parts) not in counts:
        expected = " or ".join(str(c) for c in counts)
        raise argparse.ArgumentTypeError(f"{name} needs {expected} values, got {len(parts)}")
    return parts


def _bbox(value: str) -> list[float]:
    return _parse_floats(value, name="--bbox", counts=(4,))


def _anchor(value: str) -> list[float]:
    return _parse_floats(value, name="--anchor", counts=(2, 3))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tiles3d",
        description="Plan and download 3D tiles (GLB) covering an area of interest.",
    )
    parser.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to tiles3d.yaml (defaults to DIGITAL_EARTH_TILES3D_CONFIG / config/tiles3d.yaml).",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO).")

    common = argparse.ArgumentParser(add_help=False)
    aoi = common.add_mutually_exclusive_group(required=True)
    aoi.add_argument("--bbox", type=_bbox, help="AOI as west,south,east,north in degrees.")
    aoi.add_argument(
        "--boundary",
        type=Path,
        help="JSON file with a list of [x, y] or [x, y, z] model points (needs --anchor).",
    )
    common.add_argument(
        "--anchor",
        type=_anchor,
        default=None,
        help="Local frame anchor as lon,lat[,height_m] for --boundary points.",
    )
    common.add_argument(
        "--north-deg",
        type=float,
        default=0.0,
        help="Counter-clockwise angle from model +Y to true north (degrees).",
    )
    common.add_argument(
        "--unit-scale",
        type=float,
        default=1.0,
        help="Meters per model unit for --boundary points (default: 1.0).",
    )
    common.add_argument("--max-lod", type=int, default=None, help="Maximum LOD depth.")
    common.add_argument("--relax-m", type=float, default=None, help="AOI relax margin (m).")
    common.add_argument(
        "--relax-retry-m",
        type=float,
        default=None,
        help="Margin for the re-plan when every node is pruned (0 disables).",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    plan = sub.add_parser("plan", parents=[common], help="Traverse the tileset and list planned tiles.")
    plan.add_argument("--show-uris", action="store_true", help="Print every planned content URI.")

    fetch = sub.add_parser("fetch", parents=[common], help="Plan and download tiles into the cache.")
    fetch.add_argument("--cache-dir", default=None, help="Tile cache directory.")
    fetch.add_argument("--max-gb", type=float, default=None, help="Byte cap for this run in GB.")
    fetch.add_argument("--workers", type=int, default=None, help="Concurrent downloads.")
    fetch.add_argument(
        "--no-download",
        action="store_true",
        help="Only use tiles already in the cache.",
    )
    fetch.add_argument(
        "--clear-cache", action="store_true", help="Delete cached tiles before fetching."
    )
    return parser


def _load_boundary(path: Path) -> list[list[float]]:
    try:
        raw: Any = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"Failed to read AOI boundary {path}: {exc}") from exc
    if not isinstance(raw, list) or not all(isinstance(p, list) for p in raw):
        raise ConfigurationError(f"AOI boundary must be a JSON list of points: {path}")
    return raw


def _resolve_aoi(args: argparse.Namespace) -> Aoi:
    if args.bbox is not None:
        west, south, east, north = args.bbox
        return Aoi.from_bbox(west, south, east, north)

    frame: Optional[LocalFrame] = None
    if args.anchor is not None:
        lon, lat, *rest = args.anchor
        try:
            frame = LocalFrame(
                anchor_lon_deg=lon,
                anchor_lat_deg=lat,
                anchor_height_m=rest[0] if rest else 0.0,
                north_rotation_deg=args.north_deg,
                unit_scale_m=args.unit_scale,
            )
        except ValueError as exc:
            raise ConfigurationError(f"Invalid local frame: {exc}") from exc
    return Aoi.from_model(_load_boundary(args.boundary), frame)


def _apply_overrides(cfg: Tiles3DConfig, args: argparse.Namespace) -> Tiles3DConfig:
    traversal: dict[str, Any] = {}
    if args.max_lod is not None:
        traversal["max_lod"] = args.max_lod
    if args.relax_m is not None:
        traversal["relax_m"] = args.relax_m
    if args.relax_retry_m is not None:
        traversal["relax_retry_m"] = args.relax_retry_m

    download: dict[str, Any] = {}
    if getattr(args, "cache_dir", None) is not None:
        download["cache_dir"] = args.cache_dir
    if getattr(args, "max_gb", None) is not None:
        download["max_gb"] = args.max_gb
    if getattr(args, "workers", None) is not None:
        download["max_workers"] = args.workers
    if getattr(args, "no_download", False):
        download["download"] = False

    data = cfg.model_dump()
    data["traversal"].update(traversal)
    data["download"].update(download)
    return Tiles3DConfig.model_validate(data)


def _print_lines(lines: Iterable[str]) -> None:
    for line in lines:
        print(line)


def _run_plan(
    cfg: Tiles3DConfig, settings: Tiles3DSettings, aoi: Aoi, args: argparse.Namespace
) -> int:
    traversal = cfg.traversal
    session = SessionState()
    with build_client(cfg, settings) as client:
        root = client.fetch_root_tileset(session)
        plan, stats, relaxed = plan_with_relaxed_retry(
            root,
            aoi,
            source=client,
            session=session,
            max_lod=traversal.max_lod,
            relax_m=traversal.relax_m,
            relax_retry_m=traversal.relax_retry_m,
            budgets=traversal.budgets.to_budgets(),
            leaf_size_relax_factor=traversal.leaf_size_relax_factor,
            densify_chord_m=traversal.densify_chord_m,
        )
    _print_lines(stats.to_info_lines())
    if relaxed is not None:
        print(f"Relaxed re-plan (+{relaxed.relax_aoi_meters:g} m): {relaxed.planned_tiles} tiles")
    if args.show_uris:
        _print_lines(tile.content_uri for tile in plan)
    return EXIT_OK


def _run_fetch(
    cfg: Tiles3DConfig, settings: Tiles3DSettings, aoi: Aoi, args: argparse.Namespace
) -> int:
    report = acquire_from_config(
        cfg, aoi, settings=settings, clear_cache=args.clear_cache
    )
    _print_lines(report.to_info_lines())
    if report.summary is not None:
        _print_lines(str(result.file_path) for result in report.summary.results)
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        cfg = _apply_overrides(get_tiles3d_config(args.config_path), args)
        settings = Tiles3DSettings()
        aoi = _resolve_aoi(args)
        aoi.to_geodetic()
    except (ConfigurationError, ValueError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        if args.command == "plan":
            return _run_plan(cfg, settings, aoi, args)
        if args.command == "fetch":
            return _run_fetch(cfg, settings, aoi, args)
    except ConfigurationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except Tiles3DError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_ACQUISITION_ERROR

    raise ValueError(f"Unknown command: {args.command}")


