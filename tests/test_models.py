from __future__ import annotations

import json

import pytest

from tiles3d.errors import TilesetFormatError
from tiles3d.models import (
    BoxVolume,
    Refine,
    RegionVolume,
    SphereVolume,
    is_glb_uri,
    is_tileset_uri,
    iter_content_uris,
    parse_bounding_volume,
    parse_tileset,
    parse_tileset_json,
)

BOX = [1, 2, 3, 10, 0, 0, 0, 20, 0, 0, 0, 30]


def test_parse_each_bounding_volume_kind() -> None:
    box = parse_bounding_volume({"box": BOX})
    assert isinstance(box, BoxVolume)
    assert box.center == (1.0, 2.0, 3.0)
    assert box.z_axis == (0.0, 0.0, 30.0)

    sphere = parse_bounding_volume({"sphere": [1, 2, 3, 4]})
    assert sphere == SphereVolume(center=(1.0, 2.0, 3.0), radius=4.0)

    region = parse_bounding_volume({"region": [-0.1, 0.2, 0.3, 0.4, -10, 50]})
    assert region == RegionVolume(-0.1, 0.2, 0.3, 0.4, -10.0, 50.0)


def test_bounding_volume_priority_box_then_sphere_then_region() -> None:
    both = {"region": [0, 0, 0.1, 0.1, 0, 1], "sphere": [0, 0, 0, 1], "box": BOX}
    assert isinstance(parse_bounding_volume(both), BoxVolume)
    del both["box"]
    assert isinstance(parse_bounding_volume(both), SphereVolume)


def test_bounding_volume_edge_cases() -> None:
    assert parse_bounding_volume(None) is None
    assert parse_bounding_volume({"unknown": [1, 2]}) is None
    with pytest.raises(TilesetFormatError, match="box needs 12"):
        parse_bounding_volume({"box": [0, 0, 0]})
    with pytest.raises(TilesetFormatError, match="numeric"):
        parse_bounding_volume({"sphere": [0, 0, "x", 1]})
    with pytest.raises(TilesetFormatError, match="radius"):
        parse_bounding_volume({"sphere": [0, 0, 0, -1]})


def test_parse_tileset_nodes_and_refine_inheritance() -> None:
    doc = {
        "asset": {"version": "1.0"},
        "geometricError": 5000,
        "root": {
            "boundingVolume": {"box": BOX},
            "geometricError": 100,
            "refine": "add",
            "content": {"url": "/files/root.glb?session=s1"},
            "children": [
                {"boundingVolume": {"sphere": [0, 0, 0, 5]}, "content": {"uri": "/files/child.json"}},
                {"boundingVolume": {"sphere": [0, 0, 0, 5]}},
            ],
        },
    }
    tileset = parse_tileset(doc)
    assert tileset.asset_version == "1.0"
    assert tileset.geometric_error == 5000.0
    assert tileset.refine is Refine.ADD
    assert tileset.root.content_uri == "/files/root.glb?session=s1"
    assert tileset.root.children[0].content_uri == "/files/child.json"
    assert tileset.root.children[0].refine is None
    assert tileset.root.children[1].content_uri is None
    assert list(iter_content_uris(tileset.root)) == [
        "/files/root.glb?session=s1",
        "/files/child.json",
    ]


def test_top_level_refine_overrides_root() -> None:
    tileset = parse_tileset({"refine": "REPLACE", "root": {"refine": "ADD"}})
    assert tileset.refine is Refine.REPLACE


def test_unknown_refine_is_ignored() -> None:
    tileset = parse_tileset({"root": {"refine": "MERGE"}})
    assert tileset.root.refine is None
    assert tileset.refine is None


def test_malformed_documents_raise_format_error() -> None:
    with pytest.raises(TilesetFormatError, match="no root"):
        parse_tileset({"asset": {}})
    with pytest.raises(TilesetFormatError, match="Malformed tileset JSON"):
        parse_tileset_json("{not json", source="child.json")
    with pytest.raises(TilesetFormatError, match="children must be an array"):
        parse_tileset({"root": {"children": "nope"}})

    tileset = parse_tileset_json(json.dumps({"root": {"geometricError": 1}}))
    assert tileset.root.bounding_volume is None


@pytest.mark.parametrize(
    "uri,tileset,glb",
    [
        ("/v1/3dtiles/datasets/x/files/a.json?session=abc", True, False),
        ("https://tile.example.com/files/b.glb?key=k", False, True),
        ("relative/C.GLB", False, True),
        ("/files/d.b3dm", False, False),
        ("/files/e.glb.json", True, False),
        (None, False, False),
    ],
)
def test_uri_kind_ignores_query(uri: str, tileset: bool, glb: bool) -> None:
    assert is_tileset_uri(uri) is tileset
    assert is_glb_uri(uri) is glb
