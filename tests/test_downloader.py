from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import httpx
import pytest

from tiles3d.cache import TileCache
from tiles3d.cache_metadata import TileCacheMetadata
from tiles3d.client import TileServiceClient
from tiles3d.downloader import TileDownloader
from tiles3d.errors import TileAcquisitionError
from tiles3d.models import Refine
from tiles3d.walker import CancelToken, PlannedTile

PAYLOAD = b"glTF" + b"\x00" * 36


def _plan(*names: str) -> list[PlannedTile]:
    return [
        PlannedTile(
            content_uri=f"/files/{name}.glb",
            depth=1,
            bounding_volume=None,
            refine=Refine.REPLACE,
        )
        for name in names
    ]


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> TileServiceClient:
    return TileServiceClient(
        "secret-key", transport=httpx.MockTransport(handler), sleep=lambda _s: None
    )


class Recorder:
    def __init__(self, *, head_length: bool = True, missing: tuple[str, ...] = ()) -> None:
        self.head_length = head_length
        self.missing = missing
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if any(request.url.path.endswith(name) for name in self.missing):
            return httpx.Response(404)
        if request.method == "HEAD":
            if self.head_length:
                return httpx.Response(200, headers={"Content-Length": str(len(PAYLOAD))})
            return httpx.Response(405)
        return httpx.Response(200, content=PAYLOAD, headers={"ETag": '"v1"'})

    @property
    def gets(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "GET" and "Range" not in r.headers]


def test_downloads_all_tiles_without_cap(tmp_path: Path) -> None:
    recorder = Recorder()
    with _client(recorder) as client:
        summary = TileDownloader(client, TileCache(tmp_path)).ensure(_plan("a", "b"))
    assert [r.content_uri for r in summary.results] == ["/files/a.glb", "/files/b.glb"]
    assert summary.total_bytes == 2 * len(PAYLOAD)
    assert summary.from_cache == 0
    assert all(r.file_path.read_bytes() == PAYLOAD for r in summary.results)
    assert all("key=" not in r.url for r in summary.results)
    # No cap means no size probes.
    assert all(r.method == "GET" for r in recorder.requests)


def test_cap_stops_before_probe_exceeds_it(tmp_path: Path) -> None:
    recorder = Recorder()
    with _client(recorder) as client:
        summary = TileDownloader(client, TileCache(tmp_path)).ensure(
            _plan("a", "b", "c"), cap_bytes=100
        )
    assert len(summary.results) == 2
    assert summary.total_bytes == 80
    assert summary.skipped_for_cap == 1
    assert len(recorder.gets) == 2
    assert "Stopped at byte cap; skipped tiles: 1" in summary.to_info_lines()


def test_cap_discards_fetched_bytes_when_size_unknown(tmp_path: Path) -> None:
    recorder = Recorder(head_length=False)
    cache = TileCache(tmp_path)
    with _client(recorder) as client:
        summary = TileDownloader(client, cache).ensure(_plan("a", "b", "c"), cap_bytes=100)
        third_url = client.cache_url("/files/c.glb")
    assert len(summary.results) == 2
    assert summary.total_bytes == 80
    assert summary.skipped_for_cap == 1
    assert cache.lookup(third_url) is None


def test_failures_are_counted_and_others_kept(tmp_path: Path) -> None:
    recorder = Recorder(missing=("b.glb",))
    with _client(recorder) as client:
        summary = TileDownloader(client, TileCache(tmp_path)).ensure(_plan("a", "b", "c"))
    assert [r.content_uri for r in summary.results] == ["/files/a.glb", "/files/c.glb"]
    assert summary.failed == 1
    assert summary.first_error_uri == "/files/b.glb"
    assert "HTTP 404" in (summary.first_error or "")


def test_all_failed_raises_with_first_uri(tmp_path: Path) -> None:
    recorder = Recorder(missing=("a.glb", "b.glb"))
    with _client(recorder) as client:
        with pytest.raises(TileAcquisitionError) as excinfo:
            TileDownloader(client, TileCache(tmp_path)).ensure(_plan("a", "b"))
    assert excinfo.value.first_uri == "/files/a.glb"
    assert excinfo.value.cause is not None
    assert "first failure for /files/a.glb" in str(excinfo.value)


def test_empty_plan_raises(tmp_path: Path) -> None:
    with _client(Recorder()) as client:
        with pytest.raises(TileAcquisitionError, match="plan was empty"):
            TileDownloader(client, TileCache(tmp_path)).ensure([])


def test_cache_only_mode(tmp_path: Path) -> None:
    recorder = Recorder()
    cache = TileCache(tmp_path)
    with _client(recorder) as client:
        downloader = TileDownloader(client, cache)
        with pytest.raises(TileAcquisitionError, match="Tile not in cache"):
            downloader.ensure(_plan("a"), download=False)

        cache.store(client.cache_url("/files/a.glb"), PAYLOAD, None)
        summary = downloader.ensure(_plan("a"), download=False)
    assert summary.from_cache == 1
    assert recorder.requests == []


def test_fresh_cache_entry_is_reused(tmp_path: Path) -> None:
    recorder = Recorder()
    cache = TileCache(tmp_path)
    fresh = TileCacheMetadata(downloaded_at_utc=datetime.now(timezone.utc), max_age_seconds=3600)
    with _client(recorder) as client:
        cache.store(client.cache_url("/files/a.glb"), PAYLOAD, fresh)
        summary = TileDownloader(client, cache).ensure(_plan("a"), cap_bytes=1000)
    assert summary.from_cache == 1
    assert recorder.requests == []


def test_expired_entry_is_revalidated(tmp_path: Path) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(304, headers={"Cache-Control": "max-age=600"})

    cache = TileCache(tmp_path)
    stale = TileCacheMetadata(
        downloaded_at_utc=datetime.now(timezone.utc) - timedelta(hours=2),
        max_age_seconds=60,
        etag='"v1"',
    )
    with _client(handler) as client:
        url = client.cache_url("/files/a.glb")
        cache.store(url, PAYLOAD, stale)
        summary = TileDownloader(client, cache).ensure(_plan("a"))

    assert len(seen) == 1
    assert seen[0].headers["If-None-Match"] == '"v1"'
    result = summary.results[0]
    assert result.from_cache is True
    assert result.cache_metadata is not None
    assert result.cache_metadata.max_age_seconds == 600
    refreshed = cache.lookup(url)
    assert refreshed is not None and refreshed.metadata is not None
    assert refreshed.metadata.max_age_seconds == 600


def test_concurrent_downloads_keep_planned_order(tmp_path: Path) -> None:
    names = [f"t{i}" for i in range(7)]
    with _client(Recorder()) as client:
        summary = TileDownloader(client, TileCache(tmp_path), max_workers=3).ensure(
            _plan(*names), cap_bytes=5 * len(PAYLOAD)
        )
    assert [r.content_uri for r in summary.results] == [f"/files/{n}.glb" for n in names[:5]]
    assert summary.skipped_for_cap == 1


def test_cancelled_download_returns_partial_summary(tmp_path: Path) -> None:
    token = CancelToken()
    token.cancel()
    recorder = Recorder()
    with _client(recorder) as client:
        summary = TileDownloader(client, TileCache(tmp_path), cancel=token).ensure(_plan("a"))
    assert summary.cancelled is True
    assert summary.results == []
    assert recorder.requests == []


def test_invalid_worker_count(tmp_path: Path) -> None:
    with _client(Recorder()) as client:
        with pytest.raises(ValueError):
            TileDownloader(client, TileCache(tmp_path), max_workers=0)
