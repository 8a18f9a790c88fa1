from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import httpx

from .cache_metadata import TileCacheMetadata, _utc_now, extract_cache_metadata
from .errors import (
    ConfigurationError,
    InvalidContentError,
    TileServiceError,
    TileServiceHTTPError,
    TilesetFormatError,
    UnexpectedJsonContentError,
)
from .models import Tileset, iter_content_uris, parse_tileset

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://tile.googleapis.com"
DEFAULT_ROOT_PATH = "/v1/3dtiles/root.json"

GLB_MAGIC = b"glTF"

RETRYABLE_STATUS_CODES: set[int] = {408, 425, 429, 500, 502, 503, 504}

_KEY_PARAM = "key"
_SESSION_PARAM = "session"


def _query_value(url: str, name: str) -> Optional[str]:
    for key, value in parse_qsl(urlsplit(url).query, keep_blank_values=True):
        if key.lower() == name and value:
            return value
    return None


def session_from_url(url: str) -> Optional[str]:
    return _query_value(url, _SESSION_PARAM)


def _append_query(url: str, name: str, value: str) -> str:
    sep = "&" if urlsplit(url).query else ("" if url.endswith("?") else "?")
    return f"{url}{sep}{urlencode({name: value})}"


def strip_credentials(url: str) -> str:
    """Drop the API key and session token from a URL's query string."""
    parts = urlsplit(url)
    kept = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k.lower() not in (_KEY_PARAM, _SESSION_PARAM)
    ]
    return urlunsplit(parts._replace(query=urlencode(kept)))


def redact_url(url: str) -> str:
    parts = urlsplit(url)
    if not parts.query:
        return url
    redacted = [
        (k, "***" if k.lower() == _KEY_PARAM else v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(redacted, safe="*")))


@dataclass
class SessionState:
    """Opaque session token shared by the requests of one acquisition run."""

    token: Optional[str] = None

    def capture(self, url: Optional[str]) -> bool:
        if self.token or not url:
            return False
        token = session_from_url(url)
        if token:
            self.token = token
            logger.debug("tile_service_session_captured")
            return True
        return False


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_s: float = 0.5
    backoff_factor: float = 2.0
    backoff_max_s: float = 10.0
    jitter_s: float = 0.0

    def backoff_s(self, attempt: int) -> float:
        if attempt <= 1:
            return 0.0
        delay = self.backoff_base_s * (self.backoff_factor ** (attempt - 2))
        delay = min(self.backoff_max_s, delay)
        if self.jitter_s <= 0:
            return delay
        return delay + random.random() * self.jitter_s


@dataclass(frozen=True)
class ContentResponse:
    url: str
    data: bytes
    metadata: Optional[TileCacheMetadata]
    not_modified: bool = False


def validate_glb_payload(data: bytes, *, url: str = "") -> None:
    if data[:4] == GLB_MAGIC:
        return
    where = f" from {redact_url(url)}" if url else ""
    if data.lstrip()[:1] in (b"{", b"["):
        raise UnexpectedJsonContentError(
            f"Expected GLB but received JSON{where} "
            "(misrouted URI or missing session token?)"
        )
    raise InvalidContentError(
        f"Invalid GLB payload{where}: bad magic {data[:4]!r}, expected {GLB_MAGIC!r}"
    )


def _parse_content_range_total(value: str) -> Optional[int]:
    # e.g. "bytes 0-0/1234" or "bytes */1234"
    try:
        _, rest = value.split(" ", 1)
        _, total_str = rest.split("/", 1)
    except ValueError:
        return None
    total_str = total_str.strip()
    if total_str.isdigit():
        return int(total_str)
    return None


class TileServiceClient:
    """Synchronous client for a 3D tiles service (root/child tilesets, GLB content).

    Session state is never stored on the client; callers pass a
    :class:`SessionState` into each call so independent runs do not share it.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: str = DEFAULT_BASE_URL,
        root_path: str = DEFAULT_ROOT_PATH,
        timeout_s: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.BaseTransport] = None,
        trust_env: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if api_key is None or api_key.strip() == "":
            raise ConfigurationError(
                "Tile service API key is missing; set DIGITAL_EARTH_TILES3D_API_KEY"
            )
        self._api_key = api_key.strip()
        self._base_url = base_url.rstrip("/")
        self._base_host = urlsplit(self._base_url).netloc.lower()
        self._root_path = root_path if root_path.startswith("/") else f"/{root_path}"
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_s),
            follow_redirects=True,
            trust_env=trust_env,
            transport=transport,
        )

    def __enter__(self) -> "TileServiceClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    @property
    def root_url(self) -> str:
        return self.resolve_url(self._root_path)

    def resolve_url(self, uri: str, session: Optional[SessionState] = None) -> str:
        uri = uri.strip()
        parts = urlsplit(uri)
        if parts.scheme in ("http", "https"):
            url = uri
        elif uri.startswith("/"):
            url = f"{self._base_url}{uri}"
        else:
            url = urljoin(f"{self._base_url}{self._root_path}", uri)

        if urlsplit(url).netloc.lower() != self._base_host:
            return url
        if _query_value(url, _KEY_PARAM) is None:
            url = _append_query(url, _KEY_PARAM, self._api_key)
        if session is not None and session.token and session_from_url(url) is None:
            url = _append_query(url, _SESSION_PARAM, session.token)
        return url

    def cache_url(self, uri: str) -> str:
        """Stable identity for a content URI; credentials are stripped."""
        return strip_credentials(self.resolve_url(uri))

    def _send(
        self, method: str, url: str, *, headers: Optional[Mapping[str, str]] = None
    ) -> httpx.Response:
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._client.request(method, url, headers=headers)
            except httpx.TransportError as exc:
                if attempt >= self._retry_policy.max_attempts:
                    raise TileServiceError(
                        f"{method} {redact_url(url)} failed after {attempt} attempts: {exc}"
                    ) from exc
                logger.warning(
                    "tile_service_request_retry",
                    extra={"url": redact_url(url), "attempt": attempt, "error": str(exc)},
                )
            else:
                if (
                    response.status_code not in RETRYABLE_STATUS_CODES
                    or attempt >= self._retry_policy.max_attempts
                ):
                    return response
                logger.warning(
                    "tile_service_request_retry",
                    extra={
                        "url": redact_url(url),
                        "attempt": attempt,
                        "status_code": response.status_code,
                    },
                )
            delay = self._retry_policy.backoff_s(attempt + 1)
            if delay > 0:
                self._sleep(delay)

    @staticmethod
    def _raise_for_status(response: httpx.Response, url: str) -> None:
        if 200 <= response.status_code < 300:
            return
        raise TileServiceHTTPError(
            f"HTTP {response.status_code} for {redact_url(url)}",
            status_code=response.status_code,
            url=redact_url(url),
        )

    def _fetch_tileset_url(self, url: str, session: SessionState) -> Tileset:
        session.capture(url)
        response = self._send("GET", url)
        session.capture(str(response.url))
        self._raise_for_status(response, url)
        try:
            payload = response.json()
        except ValueError as exc:
            raise TilesetFormatError(
                f"Malformed tileset JSON from {redact_url(url)}"
            ) from exc

        tileset = parse_tileset(payload, source=redact_url(url))
        if session.token is None:
            for content_uri in iter_content_uris(tileset.root):
                if session.capture(content_uri):
                    break
        return tileset

    def fetch_root_tileset(self, session: SessionState) -> Tileset:
        url = self.resolve_url(self._root_path, session)
        logger.info("tile_service_fetch_root", extra={"url": redact_url(url)})
        return self._fetch_tileset_url(url, session)

    def fetch_tileset(self, uri: str, session: SessionState) -> Tileset:
        session.capture(uri)
        return self._fetch_tileset_url(self.resolve_url(uri, session), session)

    def fetch_content(
        self,
        uri: str,
        session: SessionState,
        *,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> ContentResponse:
        session.capture(uri)
        url = self.resolve_url(uri, session)
        headers: dict[str, str] = {}
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified

        response = self._send("GET", url, headers=headers or None)
        session.capture(str(response.url))
        now = _utc_now()
        if response.status_code == 304:
            return ContentResponse(
                url=url,
                data=b"",
                metadata=extract_cache_metadata(response.headers, now=now),
                not_modified=True,
            )
        self._raise_for_status(response, url)

        data = response.content
        validate_glb_payload(data, url=url)
        return ContentResponse(
            url=url, data=data, metadata=extract_cache_metadata(response.headers, now=now)
        )

    def probe_content_length(self, uri: str, session: SessionState) -> Optional[int]:
        """Cheap size probe: HEAD, then a one-byte range GET. ``None`` if unknown."""
        url = self.resolve_url(uri, session)
        try:
            resp: Optional[httpx.Response] = self._client.head(url)
        except httpx.HTTPError:
            resp = None

        if resp is not None and resp.status_code < 400:
            content_length = resp.headers.get("Content-Length")
            if content_length and content_length.isdigit():
                return int(content_length)

        # Fallback: fetch a single byte and parse Content-Range.
        try:
            resp = self._client.get(url, headers={"Range": "bytes=0-0"})
        except httpx.HTTPError:
            return None
        if resp.status_code == 206:
            content_range = resp.headers.get("Content-Range")
            if content_range:
                return _parse_content_range_total(content_range)
        return None
