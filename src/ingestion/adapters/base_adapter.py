"""
Base Source Adapter.

Abstract base class defining the interface for all listing sources.
An adapter knows how to get raw listing records out of one venue source;
it knows nothing about normalization or storage.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Iterator
import logging

from src.configs.config import SourceConfig

RawRecord = Dict[str, Any]


class SourceType(str, Enum):
    """Type of data source."""

    API = "api"
    SCRAPER = "scraper"
    STATIC = "static"


class BaseSourceAdapter(ABC):
    """
    Abstract base class for source adapters.

    ``fetch_listings`` returns a lazy, finite iterator that can be consumed
    once. A new adapter instance is created for every run.

    Subclasses must implement:
        - fetch_listings(): Yield raw listing records
        - _validate_config(): Validate adapter-specific options
    """

    source_type: SourceType = SourceType.SCRAPER

    def __init__(self, config: SourceConfig):
        """
        Initialize the adapter.

        Args:
            config: SourceConfig; adapter settings live under ``options``
        """
        self.config = config
        self.logger = logging.getLogger(f"adapter.{config.source_id}")
        self._validate_config()

    @property
    def source_id(self) -> str:
        """Get the source identifier."""
        return self.config.source_id

    @property
    def options(self) -> Dict[str, Any]:
        return self.config.options

    @abstractmethod
    def fetch_listings(self) -> Iterator[RawRecord]:
        """
        Yield raw listing records.

        Raises:
            FetchError: When the source cannot be read. Records already
                yielded stay valid.
        """
        pass

    @abstractmethod
    def _validate_config(self) -> None:
        """
        Validate adapter-specific configuration.

        Raises:
            ConfigError: If configuration is invalid
        """
        pass

    def close(self) -> None:
        """
        Release any resources held by the adapter.

        Override in subclasses that hold resources (e.g., HTTP clients).
        """
        pass

    def __enter__(self) -> "BaseSourceAdapter":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
