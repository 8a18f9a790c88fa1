"""Plan -> (relaxed re-plan) -> ensure, as one acquisition run."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from .cache import TileCache
from .client import SessionState, TileServiceClient
from .config import Tiles3DConfig, Tiles3DSettings
from .downloader import EnsureSummary, TileDownloader
from .footprint import DEFAULT_DENSIFY_CHORD_M, Aoi
from .models import Tileset
from .reprojector import collect_copyrights
from .walker import (
    DEFAULT_LEAF_SIZE_RELAX_FACTOR,
    EMPTY_REASON_PRUNED,
    CancelToken,
    PlannedTile,
    TilesetSource,
    TilesetWalker,
    TraversalBudgets,
    TraversalStats,
)

logger = logging.getLogger(__name__)

DEFAULT_RELAX_RETRY_M = 500.0


@dataclass
class AcquisitionReport:
    plan: list[PlannedTile]
    stats: TraversalStats
    relaxed_stats: Optional[TraversalStats] = None
    summary: Optional[EnsureSummary] = None
    copyrights: set[str] = field(default_factory=set)

    @property
    def used_relaxed_plan(self) -> bool:
        return self.relaxed_stats is not None and not self.relaxed_stats.empty_plan

    def to_info_lines(self) -> list[str]:
        lines = list(self.stats.to_info_lines())
        if self.relaxed_stats is not None:
            lines.append(
                f"Relaxed re-plan (+{self.relaxed_stats.relax_aoi_meters:g} m): "
                f"{self.relaxed_stats.planned_tiles} tiles"
            )
            if self.relaxed_stats.empty_plan and self.relaxed_stats.empty_plan_reason:
                lines.append(f"Relaxed plan empty: {self.relaxed_stats.empty_plan_reason}")
        if self.summary is not None:
            lines.extend(self.summary.to_info_lines())
        for copyright_text in sorted(self.copyrights):
            lines.append(f"Data attribution: {copyright_text}")
        return lines


def plan_with_relaxed_retry(
    tileset: Tileset,
    aoi: Aoi,
    *,
    source: TilesetSource,
    session: SessionState,
    max_lod: int,
    relax_m: float = 0.0,
    relax_retry_m: float = DEFAULT_RELAX_RETRY_M,
    budgets: Optional[TraversalBudgets] = None,
    cancel: Optional[CancelToken] = None,
    leaf_size_relax_factor: float = DEFAULT_LEAF_SIZE_RELAX_FACTOR,
    densify_chord_m: float = DEFAULT_DENSIFY_CHORD_M,
) -> tuple[list[PlannedTile], TraversalStats, Optional[TraversalStats]]:
    """Plan once; if every node was pruned, plan again with a wider AOI margin."""

    def walk(relax: float) -> tuple[list[PlannedTile], TraversalStats]:
        walker = TilesetWalker(
            aoi,
            max_lod,
            source=source,
            session=session,
            relax_meters=relax,
            budgets=budgets,
            cancel=cancel,
            leaf_size_relax_factor=leaf_size_relax_factor,
            densify_chord_m=densify_chord_m,
        )
        return walker.plan(tileset)

    plan, stats = walk(relax_m)
    if plan or stats.empty_plan_reason != EMPTY_REASON_PRUNED or relax_retry_m <= 0:
        return plan, stats, None

    logger.info(
        "tiles3d_relaxed_replan",
        extra={"relax_m": relax_m + relax_retry_m, "pruned_by_aoi": stats.pruned_by_aoi},
    )
    relaxed_plan, relaxed_stats = walk(relax_m + relax_retry_m)
    if relaxed_plan:
        return relaxed_plan, stats, relaxed_stats
    return plan, stats, relaxed_stats


def acquire_tiles(
    client: TileServiceClient,
    aoi: Aoi,
    *,
    cache: TileCache,
    max_lod: int = 4,
    download: bool = True,
    cap_bytes: int = 0,
    relax_m: float = 0.0,
    relax_retry_m: float = DEFAULT_RELAX_RETRY_M,
    budgets: Optional[TraversalBudgets] = None,
    max_workers: int = 1,
    cancel: Optional[CancelToken] = None,
    session: Optional[SessionState] = None,
    leaf_size_relax_factor: float = DEFAULT_LEAF_SIZE_RELAX_FACTOR,
    densify_chord_m: float = DEFAULT_DENSIFY_CHORD_M,
) -> AcquisitionReport:
    # Validate the AOI before any network traffic.
    aoi.to_geodetic()
    session = session if session is not None else SessionState()
    root = client.fetch_root_tileset(session)

    plan, stats, relaxed_stats = plan_with_relaxed_retry(
        root,
        aoi,
        source=client,
        session=session,
        max_lod=max_lod,
        relax_m=relax_m,
        relax_retry_m=relax_retry_m,
        budgets=budgets,
        cancel=cancel,
        leaf_size_relax_factor=leaf_size_relax_factor,
        densify_chord_m=densify_chord_m,
    )
    report = AcquisitionReport(plan=plan, stats=stats, relaxed_stats=relaxed_stats)
    if not plan:
        logger.warning(
            "tiles3d_empty_plan", extra={"empty_plan_reason": stats.empty_plan_reason}
        )
        return report

    downloader = TileDownloader(
        client, cache, session, max_workers=max_workers, cancel=cancel
    )
    report.summary = downloader.ensure(plan, download=download, cap_bytes=cap_bytes)
    report.copyrights = collect_copyrights(r.file_path for r in report.summary.results)
    return report


def build_client(
    config: Tiles3DConfig,
    settings: Optional[Tiles3DSettings] = None,
    *,
    transport: Optional[httpx.BaseTransport] = None,
) -> TileServiceClient:
    settings = settings if settings is not None else Tiles3DSettings()
    api_key = settings.api_key.get_secret_value() if settings.api_key else None
    return TileServiceClient(
        api_key,
        base_url=config.service.base_url,
        root_path=config.service.root_path,
        timeout_s=config.service.timeout_s,
        retry_policy=config.service.retry.to_policy(),
        transport=transport,
    )


def acquire_from_config(
    config: Tiles3DConfig,
    aoi: Aoi,
    *,
    settings: Optional[Tiles3DSettings] = None,
    transport: Optional[httpx.BaseTransport] = None,
    clear_cache: bool = False,
    cancel: Optional[CancelToken] = None,
) -> AcquisitionReport:
    cache = TileCache(config.download.resolved_cache_dir())
    if clear_cache:
        cache.clear()
    traversal = config.traversal
    with build_client(config, settings, transport=transport) as client:
        return acquire_tiles(
            client,
            aoi,
            cache=cache,
            max_lod=traversal.max_lod,
            download=config.download.download,
            cap_bytes=config.download.cap_bytes,
            relax_m=traversal.relax_m,
            relax_retry_m=traversal.relax_retry_m,
            budgets=traversal.budgets.to_budgets(),
            max_workers=config.download.max_workers,
            cancel=cancel,
            leaf_size_relax_factor=traversal.leaf_size_relax_factor,
            densify_chord_m=traversal.densify_chord_m,
        )
