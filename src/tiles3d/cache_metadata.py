from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TileCacheMetadata(BaseModel):
    """HTTP freshness information captured when a tile was downloaded."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    downloaded_at_utc: datetime
    cache_control_raw: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_modified: Optional[str] = None
    etag: Optional[str] = None
    max_age_seconds: Optional[int] = Field(default=None, ge=0)
    must_revalidate: bool = False
    no_cache: bool = False


def _parse_cache_control(value: str) -> dict[str, Optional[str]]:
    directives: dict[str, Optional[str]] = {}
    for part in value.split(","):
        token = part.strip()
        if not token:
            continue
        name, sep, arg = token.partition("=")
        directives[name.strip().lower()] = arg.strip().strip('"') if sep else None
    return directives


def _parse_http_date(value: str) -> datetime:
    parsed = parsedate_to_datetime(value)
    if parsed is None:
        raise ValueError(f"Invalid HTTP date: {value!r}")
    return _as_utc(parsed)


def extract_cache_metadata(
    headers: Mapping[str, str], *, now: Optional[datetime] = None
) -> Optional[TileCacheMetadata]:
    """Build freshness metadata from response headers.

    Any parse failure yields ``None`` (treated as fresh) instead of an error.
    """
    lowered = {str(k).lower(): str(v) for k, v in headers.items()}
    downloaded_at = _as_utc(now) if now is not None else _utc_now()
    try:
        cache_control = lowered.get("cache-control")
        directives = _parse_cache_control(cache_control) if cache_control else {}

        max_age: Optional[int] = None
        raw_max_age = directives.get("max-age")
        if raw_max_age is not None:
            max_age = int(raw_max_age)

        expires_raw = lowered.get("expires")
        expires_at = _parse_http_date(expires_raw) if expires_raw else None

        return TileCacheMetadata(
            downloaded_at_utc=downloaded_at,
            cache_control_raw=cache_control,
            expires_at=expires_at,
            last_modified=lowered.get("last-modified"),
            etag=lowered.get("etag"),
            max_age_seconds=max_age,
            must_revalidate="must-revalidate" in directives,
            no_cache="no-cache" in directives or "no-store" in directives,
        )
    except (TypeError, ValueError) as exc:
        logger.debug("cache_metadata_extract_failed", extra={"error": str(exc)})
        return None


def is_expired(
    metadata: Optional[TileCacheMetadata], *, now: Optional[datetime] = None
) -> bool:
    if metadata is None:
        return False
    current = _as_utc(now) if now is not None else _utc_now()
    if metadata.no_cache:
        return True
    if metadata.expires_at is not None and _as_utc(metadata.expires_at) < current:
        return True
    if metadata.max_age_seconds is not None:
        fresh_until = _as_utc(metadata.downloaded_at_utc) + timedelta(
            seconds=metadata.max_age_seconds
        )
        if fresh_until < current:
            return True
    return False
