from __future__ import annotations

import json
import math
import struct
from pathlib import Path

import httpx

from tiles3d.cache import TileCache
from tiles3d.client import SessionState, TileServiceClient
from tiles3d.config import Tiles3DConfig, Tiles3DSettings
from tiles3d.footprint import Aoi
from tiles3d.models import parse_tileset
from tiles3d.pipeline import acquire_from_config, acquire_tiles, plan_with_relaxed_retry
from tiles3d.walker import EMPTY_REASON_PRUNED

AOI = Aoi.from_bbox(10.0, 45.0, 10.01, 45.01)
EDGE_URI = "/v1/3dtiles/datasets/abc/files/edge.glb"


def _glb(copyright_text: str) -> bytes:
    body = json.dumps({"asset": {"version": "2.0", "copyright": copyright_text}}).encode()
    body += b" " * (-len(body) % 4)
    return (
        struct.pack("<4sII", b"glTF", 2, 20 + len(body))
        + struct.pack("<II", len(body), 0x4E4F534A)
        + body
    )


def _near_miss_tileset() -> dict:
    region = [math.radians(v) for v in (10.031, 45.0, 10.041, 45.01)] + [0.0, 100.0]
    return {
        "asset": {"version": "1.0"},
        "root": {
            "boundingVolume": {"region": region},
            "geometricError": 10,
            "content": {"uri": f"{EDGE_URI}?session=S1"},
        },
    }


class Service:
    def __init__(self) -> None:
        self.paths: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        if request.url.path.endswith("root.json"):
            return httpx.Response(200, json=_near_miss_tileset())
        if request.url.path.endswith("edge.glb"):
            return httpx.Response(200, content=_glb("Map data provider"))
        return httpx.Response(404)


def _client(service: Service) -> TileServiceClient:
    return TileServiceClient("k", transport=httpx.MockTransport(service), sleep=lambda _s: None)


def test_near_miss_uses_relaxed_plan(tmp_path: Path) -> None:
    service = Service()
    with _client(service) as client:
        report = acquire_tiles(client, AOI, cache=TileCache(tmp_path))

    assert report.stats.empty_plan_reason == EMPTY_REASON_PRUNED
    assert report.used_relaxed_plan is True
    assert report.relaxed_stats is not None
    assert report.relaxed_stats.relax_aoi_meters == 500.0
    assert [tile.content_uri for tile in report.plan] == [f"{EDGE_URI}?session=S1"]
    assert report.summary is not None
    assert len(report.summary.results) == 1
    assert report.copyrights == {"Map data provider"}

    lines = report.to_info_lines()
    assert "Relaxed re-plan (+500 m): 1 tiles" in lines
    assert "Data attribution: Map data provider" in lines


def test_relaxed_retry_disabled_leaves_plan_empty(tmp_path: Path) -> None:
    service = Service()
    with _client(service) as client:
        report = acquire_tiles(client, AOI, cache=TileCache(tmp_path), relax_retry_m=0)

    assert report.plan == []
    assert report.summary is None
    assert report.relaxed_stats is None
    assert report.used_relaxed_plan is False
    assert not any(path.endswith(".glb") for path in service.paths)
    assert f"Empty plan: {EMPTY_REASON_PRUNED}" in report.to_info_lines()


def test_plan_with_relaxed_retry_keeps_first_plan_when_not_pruned() -> None:
    tileset = parse_tileset(
        {
            "root": {
                "boundingVolume": {
                    "region": [math.radians(v) for v in (9.99, 44.99, 10.02, 45.02)] + [0, 100]
                },
                "content": {"uri": "inside.glb"},
            }
        }
    )

    class NoSubtilesets:
        def fetch_tileset(self, uri: str, session: SessionState):
            raise AssertionError(f"unexpected fetch of {uri}")

    plan, stats, relaxed = plan_with_relaxed_retry(
        tileset, AOI, source=NoSubtilesets(), session=SessionState(), max_lod=4
    )
    assert [tile.content_uri for tile in plan] == ["inside.glb"]
    assert relaxed is None
    assert stats.empty_plan is False


def test_acquire_from_config(tmp_path: Path) -> None:
    config = Tiles3DConfig.model_validate({"download": {"cache_dir": str(tmp_path / "tiles")}})
    service = Service()
    report = acquire_from_config(
        config,
        AOI,
        settings=Tiles3DSettings(api_key="k"),
        transport=httpx.MockTransport(service),
        clear_cache=True,
    )
    assert report.summary is not None
    result = report.summary.results[0]
    assert result.file_path.parent == tmp_path / "tiles"
    assert result.from_cache is False
