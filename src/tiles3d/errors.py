from __future__ import annotations

from typing import Optional


class Tiles3DError(RuntimeError):
    """Base error for 3D tileset traversal and acquisition."""


class ConfigurationError(Tiles3DError):
    """Raised before traversal when inputs (API key, AOI, config) are unusable."""


class TileServiceError(Tiles3DError):
    """Raised when the tile service cannot be reached or answers unexpectedly."""


class TileServiceHTTPError(TileServiceError):
    def __init__(self, message: str, *, status_code: int, url: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class TilesetFormatError(TileServiceError):
    """Raised when a tileset document is malformed or has no root."""


class ContentValidationError(Tiles3DError):
    """Raised when a binary tile payload fails validation."""


class UnexpectedJsonContentError(ContentValidationError):
    """Expected a binary mesh but the service returned JSON.

    Usually a misrouted URI or a request sent without the session token.
    """


class InvalidContentError(ContentValidationError):
    """Payload does not start with the binary mesh magic."""


class TileNotCachedError(Tiles3DError):
    """Raised in cache-only mode when a planned tile has no cached file."""


class TileAcquisitionError(Tiles3DError):
    def __init__(
        self,
        message: str,
        *,
        first_uri: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.first_uri = first_uri
        self.cause = cause
