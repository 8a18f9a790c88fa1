from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Final, Mapping, Optional, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from .client import DEFAULT_BASE_URL, DEFAULT_ROOT_PATH, RetryPolicy
from .walker import (
    DEFAULT_LEAF_SIZE_RELAX_FACTOR,
    DEFAULT_MAX_JSON_FETCHES,
    DEFAULT_MAX_NODE_VISITS,
    DEFAULT_MAX_PLANNED_TILES,
    TraversalBudgets,
)

SUPPORTED_SCHEMA_VERSIONS: Final[set[int]] = {1}

DEFAULT_TILES3D_CONFIG_NAME: Final[str] = "tiles3d.yaml"
DEFAULT_TILES3D_CONFIG_ENV: Final[str] = "DIGITAL_EARTH_TILES3D_CONFIG"
DEFAULT_CONFIG_DIR_ENV: Final[str] = "DIGITAL_EARTH_CONFIG_DIR"
DEFAULT_CACHE_DIR: Final[Path] = Path.home() / ".cache" / "digital-earth" / "tiles3d"

BYTES_PER_GB: Final[int] = 1024 * 1024 * 1024


class Tiles3DRetryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=20)
    backoff_base_s: float = Field(default=0.5, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    backoff_max_s: float = Field(default=10.0, gt=0)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff_base_s=self.backoff_base_s,
            backoff_factor=self.backoff_factor,
            backoff_max_s=self.backoff_max_s,
        )


class Tiles3DServiceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    base_url: str = DEFAULT_BASE_URL
    root_path: str = DEFAULT_ROOT_PATH
    timeout_s: float = Field(default=30.0, gt=0)
    retry: Tiles3DRetryConfig = Field(default_factory=Tiles3DRetryConfig)

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        if not normalized.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return normalized


class Tiles3DBudgetsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_planned_tiles: int = Field(default=DEFAULT_MAX_PLANNED_TILES, ge=1)
    max_json_fetches: int = Field(default=DEFAULT_MAX_JSON_FETCHES, ge=0)
    max_node_visits: int = Field(default=DEFAULT_MAX_NODE_VISITS, ge=1)

    def to_budgets(self) -> TraversalBudgets:
        return TraversalBudgets(
            max_planned_tiles=self.max_planned_tiles,
            max_json_fetches=self.max_json_fetches,
            max_node_visits=self.max_node_visits,
        )


class Tiles3DTraversalConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_lod: int = Field(default=4, ge=0, le=64)
    relax_m: float = Field(default=0.0, ge=0)
    # Second pass margin when every node was pruned; 0 disables it.
    relax_retry_m: float = Field(default=500.0, ge=0)
    leaf_size_relax_factor: float = Field(default=DEFAULT_LEAF_SIZE_RELAX_FACTOR, gt=0)
    densify_chord_m: float = Field(default=50.0, gt=0)
    budgets: Tiles3DBudgetsConfig = Field(default_factory=Tiles3DBudgetsConfig)


class Tiles3DDownloadConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cache_dir: Optional[str] = None
    download: bool = True
    max_gb: float = Field(default=1.0, ge=0)
    max_workers: int = Field(default=1, ge=1, le=64)

    @property
    def cap_bytes(self) -> int:
        return int(self.max_gb * BYTES_PER_GB)

    def resolved_cache_dir(self) -> Path:
        if self.cache_dir is None or self.cache_dir.strip() == "":
            return DEFAULT_CACHE_DIR
        return Path(self.cache_dir).expanduser()


class Tiles3DConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: int = 1
    service: Tiles3DServiceConfig = Field(default_factory=Tiles3DServiceConfig)
    traversal: Tiles3DTraversalConfig = Field(default_factory=Tiles3DTraversalConfig)
    download: Tiles3DDownloadConfig = Field(default_factory=Tiles3DDownloadConfig)

    @model_validator(mode="after")
    def _validate_schema_version(self) -> "Tiles3DConfig":
        if self.schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ValueError(
                f"Unsupported tiles3d schema_version={self.schema_version}; "
                f"supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )
        return self


class Tiles3DSettings(BaseSettings):
    """Secrets and per-machine overrides read from the environment."""

    model_config = SettingsConfigDict(
        env_prefix="DIGITAL_EARTH_TILES3D_", extra="ignore", case_sensitive=False
    )

    api_key: Optional[SecretStr] = None

    @field_validator("api_key")
    @classmethod
    def _validate_api_key(cls, value: Optional[SecretStr]) -> Optional[SecretStr]:
        if value is not None and value.get_secret_value().strip() == "":
            raise ValueError("DIGITAL_EARTH_TILES3D_API_KEY must not be empty")
        return value


def _resolve_config_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    environ = environ or os.environ
    explicit = environ.get(DEFAULT_CONFIG_DIR_ENV)
    if explicit:
        explicit_path = Path(explicit).expanduser()
        if not explicit_path.is_absolute():
            explicit_path = (Path.cwd() / explicit_path).resolve()
        return explicit_path

    cwd = Path.cwd()
    for candidate_root in (cwd, *cwd.parents):
        config_dir = candidate_root / "config"
        if (config_dir / DEFAULT_TILES3D_CONFIG_NAME).is_file():
            return config_dir

    return cwd / "config"


def _resolve_config_path(path: Optional[Union[str, Path]]) -> tuple[Path, bool]:
    """Return the config path and whether it was requested explicitly."""
    if path is not None:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = (Path.cwd() / candidate).resolve()
        return candidate, True

    explicit = os.environ.get(DEFAULT_TILES3D_CONFIG_ENV)
    if explicit:
        candidate = Path(explicit).expanduser()
        if not candidate.is_absolute():
            candidate = (Path.cwd() / candidate).resolve()
        return candidate, True

    return _resolve_config_dir(os.environ) / DEFAULT_TILES3D_CONFIG_NAME, False


def _parse_yaml(text: str, *, source: Path) -> Mapping[str, Any]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"Failed to load tiles3d YAML: {source}") from exc

    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ValueError(f"tiles3d config must be a mapping: {source}")
    return data


def _validate_no_secrets(data: Mapping[str, Any], *, source: Path) -> None:
    service = data.get("service")
    if "api_key" in data or (isinstance(service, Mapping) and "api_key" in service):
        raise ValueError(
            f"Secrets must not be stored in tiles3d config ({source}); "
            "use DIGITAL_EARTH_TILES3D_API_KEY"
        )


def load_tiles3d_config(path: Optional[Union[str, Path]] = None) -> Tiles3DConfig:
    config_path, explicit = _resolve_config_path(path)
    if not config_path.is_file():
        if explicit:
            raise FileNotFoundError(f"tiles3d config file not found: {config_path}")
        return Tiles3DConfig()

    raw_text = config_path.read_text(encoding="utf-8")
    data = dict(_parse_yaml(raw_text, source=config_path))
    _validate_no_secrets(data, source=config_path)

    try:
        return Tiles3DConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid tiles3d config ({config_path}): {exc}") from exc


@lru_cache(maxsize=8)
def _get_tiles3d_config_cached(config_path: str, mtime_ns: int, size: int) -> Tiles3DConfig:
    _ = (mtime_ns, size)
    return load_tiles3d_config(config_path)


def get_tiles3d_config(path: Optional[Union[str, Path]] = None) -> Tiles3DConfig:
    resolved, explicit = _resolve_config_path(path)
    try:
        stat = resolved.stat()
    except FileNotFoundError as exc:
        if explicit:
            raise FileNotFoundError(f"tiles3d config file not found: {resolved}") from exc
        return Tiles3DConfig()
    return _get_tiles3d_config_cached(str(resolved), stat.st_mtime_ns, stat.st_size)


get_tiles3d_config.cache_clear = _get_tiles3d_config_cached.cache_clear  # type: ignore[attr-defined]
