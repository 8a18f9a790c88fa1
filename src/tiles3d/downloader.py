from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional, Sequence

import httpx

from .cache import CachedTile, TileCache
from .cache_metadata import TileCacheMetadata, is_expired
from .client import ContentResponse, SessionState, TileServiceClient
from .errors import TileAcquisitionError, TileNotCachedError, Tiles3DError
from .walker import CancelToken, PlannedTile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TileDownloadResult:
    content_uri: str
    url: str
    file_path: Path
    size_bytes: int
    from_cache: bool
    cache_metadata: Optional[TileCacheMetadata] = None


@dataclass
class EnsureSummary:
    results: list[TileDownloadResult] = field(default_factory=list)
    total_bytes: int = 0
    skipped_for_cap: int = 0
    failed: int = 0
    first_error_uri: Optional[str] = None
    first_error: Optional[str] = None
    cancelled: bool = False
    duration_s: float = 0.0

    @property
    def from_cache(self) -> int:
        return sum(1 for r in self.results if r.from_cache)

    def to_info_lines(self) -> list[str]:
        lines = [
            f"Tiles obtained: {len(self.results)} ({self.from_cache} from cache)",
            f"Total bytes: {self.total_bytes}",
        ]
        if self.skipped_for_cap:
            lines.append(f"Stopped at byte cap; skipped tiles: {self.skipped_for_cap}")
        if self.failed:
            lines.append(
                f"Failed tiles: {self.failed} (first: {self.first_error_uri}: {self.first_error})"
            )
        if self.cancelled:
            lines.append("Download was cancelled")
        return lines


@dataclass
class _Outcome:
    url: str
    cached: Optional[CachedTile] = None
    response: Optional[ContentResponse] = None
    probe_size: Optional[int] = None
    over_cap: bool = False
    cancelled: bool = False
    error: Optional[Exception] = None


class TileDownloader:
    """Turns a planned tile list into cached local files under a byte cap.

    Byte accounting always follows planned order, also when fetches run on a
    thread pool, so the set of tiles kept under a cap is deterministic.
    """

    def __init__(
        self,
        client: TileServiceClient,
        cache: TileCache,
        session: Optional[SessionState] = None,
        *,
        max_workers: int = 1,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._client = client
        self._cache = cache
        self._session = session if session is not None else SessionState()
        self._max_workers = max_workers
        self._cancel = cancel

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.cancelled

    def _prepare(
        self, tile: PlannedTile, *, download: bool, remaining: Optional[int]
    ) -> _Outcome:
        url = self._client.cache_url(tile.content_uri)
        outcome = _Outcome(url=url)
        try:
            cached = self._cache.lookup(url)
            outcome.cached = cached
            if cached is not None and (not download or not is_expired(cached.metadata)):
                return outcome
            if not download:
                raise TileNotCachedError(f"Tile not in cache: {tile.content_uri}")

            if self._cancelled():
                outcome.cancelled = True
                return outcome

            if cached is None and remaining is not None:
                outcome.probe_size = self._client.probe_content_length(
                    tile.content_uri, self._session
                )
                if outcome.probe_size is not None and outcome.probe_size > remaining:
                    outcome.over_cap = True
                    return outcome
                if self._cancelled():
                    outcome.cancelled = True
                    return outcome

            metadata = cached.metadata if cached is not None else None
            outcome.response = self._client.fetch_content(
                tile.content_uri,
                self._session,
                etag=metadata.etag if metadata else None,
                last_modified=metadata.last_modified if metadata else None,
            )
        except (Tiles3DError, httpx.HTTPError, OSError) as exc:
            outcome.error = exc
        return outcome

    def _outcomes(
        self, plan: Sequence[PlannedTile], *, download: bool, summary: EnsureSummary, cap: int
    ) -> Iterator[tuple[PlannedTile, _Outcome]]:
        if self._max_workers <= 1:
            for tile in plan:
                remaining = cap - summary.total_bytes if cap > 0 else None
                yield tile, self._prepare(tile, download=download, remaining=remaining)
            return

        window = self._max_workers * 2
        with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            for start in range(0, len(plan), window):
                chunk = plan[start : start + window]
                futures = [
                    executor.submit(self._prepare, tile, download=download, remaining=None)
                    for tile in chunk
                ]
                for tile, future in zip(chunk, futures):
                    yield tile, future.result()

    def _record_failure(self, summary: EnsureSummary, uri: str, exc: Exception) -> None:
        summary.failed += 1
        if summary.first_error_uri is None:
            summary.first_error_uri = uri
            summary.first_error = str(exc)
        logger.warning(
            "tile_downloader_tile_failed", extra={"content_uri": uri, "error": str(exc)}
        )

    def ensure(
        self, plan: Sequence[PlannedTile], download: bool = True, cap_bytes: int = 0
    ) -> EnsureSummary:
        """Fetch or reuse every planned tile in order until the byte cap stops it.

        ``cap_bytes <= 0`` disables the cap. Raises :class:`TileAcquisitionError`
        only when nothing was obtained and the cap never stopped the loop.
        """
        started = time.perf_counter()
        cap = int(cap_bytes) if cap_bytes and cap_bytes > 0 else 0
        summary = EnsureSummary()
        first_cause: Optional[Exception] = None

        def fits(size: int) -> bool:
            return cap <= 0 or summary.total_bytes + size <= cap

        for tile, outcome in self._outcomes(plan, download=download, summary=summary, cap=cap):
            if outcome.cancelled or self._cancelled():
                summary.cancelled = True
                break
            if outcome.error is not None:
                if first_cause is None:
                    first_cause = outcome.error
                self._record_failure(summary, tile.content_uri, outcome.error)
                continue
            if outcome.over_cap or (
                outcome.probe_size is not None and not fits(outcome.probe_size)
            ):
                summary.skipped_for_cap += 1
                break

            response = outcome.response
            cached = outcome.cached
            if response is None or response.not_modified:
                if cached is None:
                    continue
                if not fits(cached.size_bytes):
                    summary.skipped_for_cap += 1
                    break
                metadata = cached.metadata
                if response is not None:
                    metadata = response.metadata or cached.metadata
                    try:
                        self._cache.update_metadata(outcome.url, metadata)
                    except OSError as exc:
                        logger.warning(
                            "tile_downloader_metadata_update_failed",
                            extra={"content_uri": tile.content_uri, "error": str(exc)},
                        )
                result = TileDownloadResult(
                    content_uri=tile.content_uri,
                    url=outcome.url,
                    file_path=cached.path,
                    size_bytes=cached.size_bytes,
                    from_cache=True,
                    cache_metadata=metadata,
                )
            else:
                if not fits(len(response.data)):
                    # Fresh bytes are discarded; any older cached file stays as is.
                    summary.skipped_for_cap += 1
                    break
                try:
                    stored = self._cache.store(outcome.url, response.data, response.metadata)
                except OSError as exc:
                    if first_cause is None:
                        first_cause = exc
                    self._record_failure(summary, tile.content_uri, exc)
                    continue
                result = TileDownloadResult(
                    content_uri=tile.content_uri,
                    url=outcome.url,
                    file_path=stored.path,
                    size_bytes=stored.size_bytes,
                    from_cache=False,
                    cache_metadata=stored.metadata,
                )

            summary.results.append(result)
            summary.total_bytes += result.size_bytes

        summary.duration_s = time.perf_counter() - started
        if summary.skipped_for_cap:
            logger.info(
                "tile_downloader_cap_reached",
                extra={
                    "cap_bytes": cap,
                    "total_bytes": summary.total_bytes,
                    "skipped_for_cap": summary.skipped_for_cap,
                },
            )
        logger.info(
            "tile_downloader_finished",
            extra={
                "planned_tiles": len(plan),
                "obtained": len(summary.results),
                "total_bytes": summary.total_bytes,
                "failed": summary.failed,
                "duration_s": summary.duration_s,
            },
        )

        if not summary.results and summary.skipped_for_cap == 0 and not summary.cancelled:
            if summary.first_error_uri is None:
                raise TileAcquisitionError("No tiles obtained: plan was empty")
            raise TileAcquisitionError(
                f"No tiles obtained; first failure for {summary.first_error_uri}: "
                f"{summary.first_error}",
                first_uri=summary.first_error_uri,
                cause=first_cause,
            ) from first_cause
        return summary
