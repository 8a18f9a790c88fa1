from __future__ import annotations

from typing import Callable

import httpx
import pytest

from tiles3d.client import (
    RetryPolicy,
    SessionState,
    TileServiceClient,
    redact_url,
    strip_credentials,
)
from tiles3d.errors import (
    ConfigurationError,
    InvalidContentError,
    TileServiceError,
    TileServiceHTTPError,
    TilesetFormatError,
    UnexpectedJsonContentError,
)

API_KEY = "secret-key"
GLB = b"glTF" + b"\x02\x00\x00\x00" + b"\x00" * 32

ROOT_TILESET = {
    "asset": {"version": "1.0"},
    "geometricError": 1000,
    "root": {
        "boundingVolume": {"sphere": [0, 0, 0, 10]},
        "geometricError": 500,
        "children": [
            {
                "boundingVolume": {"sphere": [0, 0, 0, 5]},
                "geometricError": 100,
                "content": {"uri": "/v1/3dtiles/datasets/abc/files/child.json?session=SESS1"},
            }
        ],
    },
}


def _client(
    handler: Callable[[httpx.Request], httpx.Response], sleeps: list[float] | None = None
) -> TileServiceClient:
    record = sleeps if sleeps is not None else []
    return TileServiceClient(
        API_KEY,
        transport=httpx.MockTransport(handler),
        sleep=record.append,
    )


def test_missing_api_key_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="DIGITAL_EARTH_TILES3D_API_KEY"):
        TileServiceClient(None)
    with pytest.raises(ConfigurationError):
        TileServiceClient("   ")


def test_resolve_url_appends_key_and_session_for_service_host() -> None:
    client = _client(lambda request: httpx.Response(200))
    assert client.root_url == "https://tile.googleapis.com/v1/3dtiles/root.json?key=secret-key"

    session = SessionState(token="S1")
    url = client.resolve_url("/v1/3dtiles/files/a.glb", session)
    assert url == "https://tile.googleapis.com/v1/3dtiles/files/a.glb?key=secret-key&session=S1"

    relative = client.resolve_url("files/b.glb")
    assert relative == "https://tile.googleapis.com/v1/3dtiles/files/b.glb?key=secret-key"

    existing = client.resolve_url("/x.glb?session=OTHER", session)
    assert existing.count("session=") == 1


def test_foreign_host_is_left_untouched() -> None:
    client = _client(lambda request: httpx.Response(200))
    url = "https://cdn.example.com/tiles/a.glb"
    assert client.resolve_url(url, SessionState(token="S1")) == url


def test_cache_url_strips_credentials() -> None:
    client = _client(lambda request: httpx.Response(200))
    session = SessionState(token="S1")
    assert client.cache_url("/files/a.glb?session=S1&v=2") == (
        "https://tile.googleapis.com/files/a.glb?v=2"
    )
    assert strip_credentials(client.resolve_url("/a.glb", session)) == (
        "https://tile.googleapis.com/a.glb"
    )


def test_redact_url_hides_key_only() -> None:
    redacted = redact_url("https://h/a.glb?key=secret-key&session=S1")
    assert "secret-key" not in redacted
    assert "key=***" in redacted
    assert "session=S1" in redacted


def test_session_capture_is_case_insensitive_and_sticky() -> None:
    session = SessionState()
    assert session.capture("/a.json?SESSION=abc") is True
    assert session.token == "abc"
    assert session.capture("/b.json?session=def") is False
    assert session.token == "abc"


def test_root_fetch_captures_session_and_child_request_carries_it() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path.endswith("root.json"):
            return httpx.Response(200, json=ROOT_TILESET)
        if request.url.path.endswith("child.json"):
            return httpx.Response(
                200,
                json={
                    "root": {
                        "boundingVolume": {"sphere": [0, 0, 0, 1]},
                        "content": {"uri": "/v1/3dtiles/datasets/abc/files/leaf.glb"},
                    }
                },
            )
        return httpx.Response(200, content=GLB)

    session = SessionState()
    with _client(handler) as client:
        root = client.fetch_root_tileset(session)
        assert session.token == "SESS1"
        assert root.root.children[0].content_uri is not None

        client.fetch_tileset(root.root.children[0].content_uri, session)
        response = client.fetch_content("/v1/3dtiles/datasets/abc/files/leaf.glb", session)

    assert response.data == GLB
    assert requests[0].url.params["key"] == API_KEY
    assert "session" not in requests[0].url.params
    assert requests[1].url.params["session"] == "SESS1"
    assert requests[2].url.params["session"] == "SESS1"
    assert requests[2].url.params["key"] == API_KEY


def test_fetch_content_returns_cache_metadata() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=GLB,
            headers={"Cache-Control": "max-age=600", "ETag": '"e1"'},
        )

    with _client(handler) as client:
        response = client.fetch_content("/a.glb", SessionState())
    assert response.not_modified is False
    assert response.metadata is not None
    assert response.metadata.max_age_seconds == 600
    assert response.metadata.etag == '"e1"'


def test_fetch_content_json_payload_is_rejected() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b'  {"error": "session required"}')

    with _client(handler) as client:
        with pytest.raises(UnexpectedJsonContentError, match="Expected GLB but received JSON"):
            client.fetch_content("/a.glb", SessionState())


def test_fetch_content_bad_magic_is_rejected() -> None:
    with _client(lambda request: httpx.Response(200, content=b"\x00\x01garbage")) as client:
        with pytest.raises(InvalidContentError, match="bad magic"):
            client.fetch_content("/a.glb", SessionState())


def test_http_error_message_redacts_key() -> None:
    with _client(lambda request: httpx.Response(404)) as client:
        with pytest.raises(TileServiceHTTPError) as excinfo:
            client.fetch_content("/missing.glb", SessionState())
    assert excinfo.value.status_code == 404
    assert "HTTP 404" in str(excinfo.value)
    assert API_KEY not in str(excinfo.value)
    assert API_KEY not in excinfo.value.url


def test_retryable_status_is_retried_with_backoff() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(503)
        return httpx.Response(200, content=GLB)

    sleeps: list[float] = []
    with _client(handler, sleeps) as client:
        response = client.fetch_content("/a.glb", SessionState())
    assert response.data == GLB
    assert calls["n"] == 2
    assert sleeps == [0.5]


def test_retry_gives_up_after_max_attempts() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(503)

    with _client(handler) as client:
        with pytest.raises(TileServiceHTTPError) as excinfo:
            client.fetch_content("/a.glb", SessionState())
    assert excinfo.value.status_code == 503
    assert calls["n"] == 3


def test_transport_error_becomes_service_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    sleeps: list[float] = []
    with _client(handler, sleeps) as client:
        with pytest.raises(TileServiceError, match="failed after 3 attempts"):
            client.fetch_tileset("/a.json", SessionState())
    assert sleeps == [0.5, 1.0]


def test_malformed_tileset_json() -> None:
    with _client(lambda request: httpx.Response(200, content=b"not json")) as client:
        with pytest.raises(TilesetFormatError, match="Malformed tileset JSON"):
            client.fetch_tileset("/a.json", SessionState())


def test_tileset_without_root() -> None:
    with _client(lambda request: httpx.Response(200, json={"asset": {}})) as client:
        with pytest.raises(TilesetFormatError):
            client.fetch_tileset("/a.json", SessionState())


def test_conditional_fetch_not_modified() -> None:
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(
            {
                "etag": request.headers.get("If-None-Match", ""),
                "since": request.headers.get("If-Modified-Since", ""),
            }
        )
        return httpx.Response(304, headers={"Cache-Control": "max-age=60"})

    with _client(handler) as client:
        response = client.fetch_content(
            "/a.glb", SessionState(), etag='"e1"', last_modified="Tue, 30 Apr 2024 08:00:00 GMT"
        )
    assert response.not_modified is True
    assert response.data == b""
    assert response.metadata is not None and response.metadata.max_age_seconds == 60
    assert seen == {"etag": '"e1"', "since": "Tue, 30 Apr 2024 08:00:00 GMT"}


def test_probe_uses_head_content_length() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "HEAD"
        return httpx.Response(200, headers={"Content-Length": "1234"})

    with _client(handler) as client:
        assert client.probe_content_length("/a.glb", SessionState()) == 1234


def test_probe_falls_back_to_range_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            return httpx.Response(405)
        assert request.headers["Range"] == "bytes=0-0"
        return httpx.Response(206, content=b"g", headers={"Content-Range": "bytes 0-0/4321"})

    with _client(handler) as client:
        assert client.probe_content_length("/a.glb", SessionState()) == 4321


def test_probe_unknown_size() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            return httpx.Response(405)
        return httpx.Response(200, content=GLB)

    with _client(handler) as client:
        assert client.probe_content_length("/a.glb", SessionState()) is None


def test_retry_policy_backoff() -> None:
    policy = RetryPolicy(backoff_base_s=0.5, backoff_factor=2.0, backoff_max_s=1.5)
    assert policy.backoff_s(1) == 0.0
    assert policy.backoff_s(2) == 0.5
    assert policy.backoff_s(3) == 1.0
    assert policy.backoff_s(4) == 1.5
