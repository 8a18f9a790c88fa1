from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from .client import SessionState
from .errors import Tiles3DError
from .footprint import DEFAULT_DENSIFY_CHORD_M, Aoi, AoiFootprint, region_size_m
from .models import (
    BoundingVolume,
    Refine,
    RegionVolume,
    TileNode,
    Tileset,
    is_glb_uri,
    is_tileset_uri,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_PLANNED_TILES = 20_000
DEFAULT_MAX_JSON_FETCHES = 4_000
DEFAULT_MAX_NODE_VISITS = 80_000
DEFAULT_LEAF_SIZE_RELAX_FACTOR = 1.15

EMPTY_REASON_CANCELLED = "Traversal cancelled before reaching geometry"
EMPTY_REASON_JSON_BUDGET = "JSON fetch budget hit before reaching geometry"
EMPTY_REASON_NODE_BUDGET = "Node visit budget hit before reaching geometry"
EMPTY_REASON_PLAN_BUDGET = "Tile plan budget hit"
EMPTY_REASON_PRUNED = "All nodes pruned by AOI"
EMPTY_REASON_FETCH_FAILED = "Sub-tileset fetches failed (malformed or unreachable tileset)"
EMPTY_REASON_NO_CONTENT = (
    "Traversal produced no binary content (possible deep sub-tileset pointers beyond budgets)"
)


class TilesetSource(Protocol):
    def fetch_tileset(self, uri: str, session: SessionState) -> Tileset: ...


class CancelToken:
    """Cooperative cancellation flag checked between nodes and before I/O."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class TraversalBudgets:
    max_planned_tiles: int = DEFAULT_MAX_PLANNED_TILES
    max_json_fetches: int = DEFAULT_MAX_JSON_FETCHES
    max_node_visits: int = DEFAULT_MAX_NODE_VISITS

    def __post_init__(self) -> None:
        if self.max_planned_tiles < 0 or self.max_json_fetches < 0 or self.max_node_visits < 0:
            raise ValueError("traversal budgets must be >= 0")


@dataclass(frozen=True)
class PlannedTile:
    content_uri: str
    depth: int
    bounding_volume: Optional[BoundingVolume]
    refine: Refine


@dataclass(frozen=True)
class SubtilesetFetch:
    """Outcome of expanding one sub-tileset pointer."""

    uri: str
    tileset: Optional[Tileset] = None
    error: Optional[Exception] = None


@dataclass
class TraversalStats:
    planned_tiles: int = 0
    json_fetches: int = 0
    json_fetch_failures: int = 0
    node_visits: int = 0
    pruned_by_aoi: int = 0
    leaf_heuristic_stops: int = 0
    expanded_json_at_leaf: int = 0
    max_depth_seen: int = 0
    hit_tile_plan_budget: bool = False
    hit_json_fetch_budget: bool = False
    hit_node_visit_budget: bool = False
    cancelled: bool = False
    empty_plan: bool = False
    empty_plan_reason: Optional[str] = None
    relax_aoi_meters: float = 0.0
    duration_s: float = 0.0
    failed_uris: list[str] = field(default_factory=list)

    def explain_empty_plan(self) -> str:
        if self.cancelled:
            return EMPTY_REASON_CANCELLED
        if self.hit_json_fetch_budget:
            return EMPTY_REASON_JSON_BUDGET
        if self.hit_node_visit_budget:
            return EMPTY_REASON_NODE_BUDGET
        if self.hit_tile_plan_budget:
            return EMPTY_REASON_PLAN_BUDGET
        if self.pruned_by_aoi > 0:
            return EMPTY_REASON_PRUNED
        if self.json_fetch_failures > 0:
            return EMPTY_REASON_FETCH_FAILED
        return EMPTY_REASON_NO_CONTENT

    def to_info_lines(self) -> list[str]:
        lines = [
            f"Planned tiles: {self.planned_tiles}",
            f"Sub-tileset fetches: {self.json_fetches} ({self.json_fetch_failures} failed)",
            f"Node visits: {self.node_visits}",
            f"Pruned by AOI: {self.pruned_by_aoi}",
            f"Leaf heuristic stops: {self.leaf_heuristic_stops}",
            f"Sub-tilesets expanded at leaves: {self.expanded_json_at_leaf}",
            f"Max depth seen: {self.max_depth_seen}",
            f"AOI relax margin: {self.relax_aoi_meters:g} m",
        ]
        hits = [
            name
            for name, hit in (
                ("tile plan", self.hit_tile_plan_budget),
                ("json fetch", self.hit_json_fetch_budget),
                ("node visit", self.hit_node_visit_budget),
            )
            if hit
        ]
        if hits:
            lines.append(f"Budgets hit: {', '.join(hits)}")
        if self.cancelled:
            lines.append("Traversal was cancelled")
        if self.empty_plan and self.empty_plan_reason:
            lines.append(f"Empty plan: {self.empty_plan_reason}")
        return lines


class TilesetWalker:
    """Plans GLB downloads by walking a tileset tree against an AOI footprint.

    The walk is an explicit-stack depth-first traversal. Sub-tileset pointers
    are expanded in place and do not count as a level of depth. A node is a
    leaf when it has no children, when it is at or beyond ``max_lod`` with
    binary content, or when its region is already small relative to the AOI.
    """

    def __init__(
        self,
        aoi: Aoi,
        max_lod: int,
        *,
        source: TilesetSource,
        session: Optional[SessionState] = None,
        relax_meters: float = 0.0,
        budgets: Optional[TraversalBudgets] = None,
        cancel: Optional[CancelToken] = None,
        on_fetch_error: Optional[Callable[[str, Exception], None]] = None,
        leaf_size_relax_factor: float = DEFAULT_LEAF_SIZE_RELAX_FACTOR,
        densify_chord_m: float = DEFAULT_DENSIFY_CHORD_M,
    ) -> None:
        self._relax_m = max(0.0, float(relax_meters))
        self._footprint = AoiFootprint.from_aoi(
            aoi, relax_m=self._relax_m, densify_chord_m=densify_chord_m
        )
        self._max_lod = max(0, int(max_lod))
        self._source = source
        self._session = session if session is not None else SessionState()
        self._budgets = budgets or TraversalBudgets()
        self._cancel = cancel
        self._on_fetch_error = on_fetch_error
        self._leaf_size_limit_m = self.target_leaf_m * leaf_size_relax_factor

    @property
    def footprint(self) -> AoiFootprint:
        return self._footprint

    @property
    def target_leaf_m(self) -> float:
        denom = 2.0 ** (self._max_lod if self._max_lod > 0 else 1)
        return max(self._footprint.width_m, self._footprint.height_m) / denom

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.cancelled

    def _expand(
        self, uri: str, visited: set[str], stats: TraversalStats
    ) -> Optional[SubtilesetFetch]:
        key = uri.lower()
        if key in visited:
            return None
        if stats.json_fetches >= self._budgets.max_json_fetches:
            stats.hit_json_fetch_budget = True
            return None
        if self._cancelled():
            stats.cancelled = True
            return None

        visited.add(key)
        stats.json_fetches += 1
        try:
            tileset = self._source.fetch_tileset(uri, self._session)
            outcome = SubtilesetFetch(uri=uri, tileset=tileset)
        except Tiles3DError as exc:
            outcome = SubtilesetFetch(uri=uri, error=exc)
            stats.json_fetch_failures += 1
            stats.failed_uris.append(uri)
            logger.warning(
                "tileset_walker_subtileset_failed",
                extra={"content_uri": uri, "error": str(exc)},
            )
            if self._on_fetch_error is not None:
                self._on_fetch_error(uri, exc)
        return outcome

    def _is_heuristic_leaf(self, node: TileNode, is_glb: bool) -> bool:
        if not isinstance(node.bounding_volume, RegionVolume):
            return False
        width, height = region_size_m(node.bounding_volume)
        limit = self._leaf_size_limit_m
        return is_glb and width <= limit and height <= limit

    def plan(self, tileset: Tileset) -> tuple[list[PlannedTile], TraversalStats]:
        started = time.perf_counter()
        budgets = self._budgets
        stats = TraversalStats(relax_aoi_meters=self._relax_m)
        planned: list[PlannedTile] = []
        seen: set[str] = set()
        visited_json: set[str] = set()
        stack: list[tuple[TileNode, int, Optional[Refine]]] = [
            (tileset.root, 0, tileset.refine)
        ]

        def add(node: TileNode, uri: str, depth: int, refine: Refine) -> None:
            if uri in seen:
                return
            seen.add(uri)
            planned.append(
                PlannedTile(
                    content_uri=uri,
                    depth=depth,
                    bounding_volume=node.bounding_volume,
                    refine=refine,
                )
            )

        logger.info(
            "tileset_walker_started",
            extra={"max_lod": self._max_lod, "relax_m": self._relax_m},
        )

        while stack:
            if self._cancelled():
                stats.cancelled = True
                break
            if len(planned) >= budgets.max_planned_tiles:
                stats.hit_tile_plan_budget = True
                break
            if stats.hit_json_fetch_budget:
                break
            if stats.node_visits >= budgets.max_node_visits:
                stats.hit_node_visit_budget = True
                break

            node, depth, inherited = stack.pop()
            stats.node_visits += 1
            stats.max_depth_seen = max(stats.max_depth_seen, depth)

            if not self._footprint.intersects(node.bounding_volume):
                stats.pruned_by_aoi += 1
                continue

            refine = node.refine or inherited or Refine.REPLACE
            uri = node.content_uri or ""
            is_json = is_tileset_uri(uri)
            is_glb = is_glb_uri(uri)

            leaf = not node.children or (depth >= self._max_lod and is_glb)
            if not leaf and self._is_heuristic_leaf(node, is_glb):
                leaf = True
                stats.leaf_heuristic_stops += 1

            if leaf:
                if is_json:
                    outcome = self._expand(uri, visited_json, stats)
                    if outcome is not None:
                        stats.expanded_json_at_leaf += 1
                        if outcome.tileset is not None:
                            sub = outcome.tileset
                            stack.append((sub.root, depth, sub.refine or refine))
                elif is_glb:
                    add(node, uri, depth, refine)
                continue

            for child in node.children:
                child_uri = child.content_uri or ""
                if is_tileset_uri(child_uri):
                    outcome = self._expand(child_uri, visited_json, stats)
                    if outcome is not None and outcome.tileset is not None:
                        sub = outcome.tileset
                        stack.append((sub.root, depth, sub.refine or refine))
                    continue
                stack.append((child, depth + 1, refine))

            if refine is Refine.ADD and is_glb:
                add(node, uri, depth, refine)

        stats.planned_tiles = len(planned)
        stats.duration_s = time.perf_counter() - started
        if not planned:
            stats.empty_plan = True
            stats.empty_plan_reason = stats.explain_empty_plan()

        logger.info(
            "tileset_walker_finished",
            extra={
                "planned_tiles": stats.planned_tiles,
                "json_fetches": stats.json_fetches,
                "node_visits": stats.node_visits,
                "pruned_by_aoi": stats.pruned_by_aoi,
                "empty_plan_reason": stats.empty_plan_reason,
                "duration_s": stats.duration_s,
            },
        )
        return planned, stats


def plan_downloads(
    tileset: Tileset,
    max_lod: int,
    aoi: Aoi,
    relax_meters: float = 0.0,
    *,
    source: TilesetSource,
    session: Optional[SessionState] = None,
    budgets: Optional[TraversalBudgets] = None,
    cancel: Optional[CancelToken] = None,
    on_fetch_error: Optional[Callable[[str, Exception], None]] = None,
    leaf_size_relax_factor: float = DEFAULT_LEAF_SIZE_RELAX_FACTOR,
) -> tuple[list[PlannedTile], TraversalStats]:
    walker = TilesetWalker(
        aoi,
        max_lod,
        source=source,
        session=session,
        relax_meters=relax_meters,
        budgets=budgets,
        cancel=cancel,
        on_fetch_error=on_fetch_error,
        leaf_size_relax_factor=leaf_size_relax_factor,
    )
    return walker.plan(tileset)
