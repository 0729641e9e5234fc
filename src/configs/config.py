# src/configs/config.py
"""
Source configuration for the ingestion pipeline.

``ingestion.yaml`` declares every venue source under ``sources:``; each entry
is validated into a ``SourceConfig``. Top-level ``defaults:`` are merged into
every source before validation.

Example:
    parallelism: 4
    defaults:
      timezone_default: Europe/London
    sources:
      bristol-the-croft:
        adapter: http_json
        venue_aliases:
          "The Croft Bristol": "The Croft"
        options:
          url: https://example.org/api/events
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.ingestion.errors import ConfigError

DEFAULT_BATCH_SIZE_LIMIT = 500
DEFAULT_RUN_TIMEOUT_MS = 15 * 60 * 1000
DEFAULT_STALE_AFTER_RUNS = 3


class IdentityScope(str, Enum):
    """Namespace the identity key is derived in."""

    # Keys are private to one source
    SOURCE = "source"
    # Keys are shared, so two sources listing the same gig collide
    GLOBAL = "global"


class CrossSourcePolicy(str, Enum):
    """What to do when a gig collides with one stored by another source."""

    MERGE = "merge"
    REJECT = "reject"


class SourceConfig(BaseModel):
    """
    Configuration for one venue source.

    Attributes:
        source_id: Unique source name, also the registry key for runs
        adapter: Registered adapter name (``static``, ``http_json``, ...)
        timezone_default: IANA zone applied to naive local times
        venue_aliases: Raw venue name -> canonical venue name
        venue_aliases_file: Optional YAML mapping merged under ``venue_aliases``
        batch_size_limit: Max operations per bulk write
        run_timeout_ms: Wall-clock budget for one run
        stale_after_runs: Missed runs before a gig is flagged stale
        date_formats: Extra ``strptime`` formats tried before the built-ins
        options: Adapter-specific settings
    """

    model_config = ConfigDict(extra="forbid")

    source_id: str = Field(..., min_length=1)
    adapter: str = "static"
    enabled: bool = True
    timezone_default: str = "UTC"
    venue_aliases: Dict[str, str] = Field(default_factory=dict)
    venue_aliases_file: Optional[Path] = None
    batch_size_limit: int = Field(DEFAULT_BATCH_SIZE_LIMIT, ge=1)
    run_timeout_ms: int = Field(DEFAULT_RUN_TIMEOUT_MS, ge=1)
    stale_after_runs: int = Field(DEFAULT_STALE_AFTER_RUNS, ge=1)
    identity_scope: IdentityScope = IdentityScope.SOURCE
    cross_source_policy: CrossSourcePolicy = CrossSourcePolicy.MERGE
    date_formats: List[str] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timezone_default")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Unknown zones are rejected at load time, never at parse time."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone '{v}'") from e
        return v

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone_default)

    @property
    def run_timeout_s(self) -> float:
        return self.run_timeout_ms / 1000.0

    def resolved_aliases(self) -> Dict[str, str]:
        """Inline aliases layered over the aliases file, if any."""
        aliases: Dict[str, str] = {}
        if self.venue_aliases_file is not None:
            aliases.update(_load_alias_file(self.venue_aliases_file))
        aliases.update(self.venue_aliases)
        return aliases


class IngestionConfig(BaseModel):
    """Parsed ``ingestion.yaml``."""

    # Unset falls back to the PARALLELISM setting
    parallelism: Optional[int] = Field(None, ge=1)
    sources: Dict[str, SourceConfig] = Field(default_factory=dict)

    def enabled_sources(self) -> List[SourceConfig]:
        return [s for s in self.sources.values() if s.enabled]


# ============================================================================
# LOADING
# ============================================================================


def _read_yaml(path: Path) -> Any:
    if not path.exists():
        raise ConfigError(f"Missing config at {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e


@lru_cache(maxsize=32)
def _load_alias_file(path: Path) -> Dict[str, str]:
    data = _read_yaml(Path(path)) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Venue alias file {path} must be a mapping")
    return {str(k): str(v) for k, v in data.items()}


def build_source_config(source_id: str, raw: Dict[str, Any]) -> SourceConfig:
    """
    Validate one source entry.

    Raises:
        ConfigError: If the entry does not validate
    """
    try:
        return SourceConfig(source_id=source_id, **(raw or {}))
    except ValidationError as e:
        raise ConfigError(
            f"Invalid config for source '{source_id}': {e}", source_id=source_id
        ) from e


def parse_ingestion_config(
    data: Dict[str, Any], base_dir: Optional[Path] = None
) -> IngestionConfig:
    """
    Build an ``IngestionConfig`` from an already-parsed mapping.

    Relative ``venue_aliases_file`` paths are resolved against ``base_dir``.
    """
    if not isinstance(data, dict):
        raise ConfigError("Ingestion config must be a mapping")

    defaults = data.get("defaults") or {}
    sources: Dict[str, SourceConfig] = {}
    for source_id, raw in (data.get("sources") or {}).items():
        merged = {**defaults, **(raw or {})}
        alias_file = merged.get("venue_aliases_file")
        if alias_file and base_dir is not None and not Path(alias_file).is_absolute():
            merged["venue_aliases_file"] = base_dir / alias_file
        sources[source_id] = build_source_config(source_id, merged)

    try:
        return IngestionConfig(
            parallelism=data.get("parallelism"),
            sources=sources,
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid ingestion config: {e}") from e


def load_ingestion_config(path: Union[str, Path]) -> IngestionConfig:
    """
    Load and validate the ingestion YAML file.

    Args:
        path: Path to ingestion.yaml

    Returns:
        IngestionConfig with one SourceConfig per declared source

    Raises:
        ConfigError: If the file is missing, malformed or fails validation
    """
    config_file = Path(path)
    return parse_ingestion_config(
        _read_yaml(config_file) or {}, base_dir=config_file.parent
    )


class Config:
    """
    Static paths for the gig ingestion pipeline.
    """

    # This points to src/configs/
    CONFIG_DIR = Path(__file__).parent.resolve()
    # This points to the project root
    PROJECT_ROOT = CONFIG_DIR.parent.parent

    INGESTION_CONFIG_PATH = CONFIG_DIR / "ingestion.yaml"

    @classmethod
    def load_ingestion_config(cls) -> IngestionConfig:
        """Loads the bundled ingestion configuration."""
        return load_ingestion_config(cls.INGESTION_CONFIG_PATH)
