"""
Adapter registry.

Maps adapter names (the ``adapter:`` key of a source config) to adapter
classes, so sources are wired by configuration rather than by type checks.
"""

import logging
from typing import Dict, Type

from src.configs.config import SourceConfig
from src.ingestion.adapters.base_adapter import BaseSourceAdapter
from src.ingestion.errors import ConfigError

logger = logging.getLogger(__name__)

ADAPTER_REGISTRY: Dict[str, Type[BaseSourceAdapter]] = {}


def register_adapter(name: str):
    """
    Decorator to register an adapter class.

    Usage:
        @register_adapter("http_json")
        class HttpListingAdapter(BaseSourceAdapter):
            ...
    """

    def decorator(adapter_cls: Type[BaseSourceAdapter]) -> Type[BaseSourceAdapter]:
        existing = ADAPTER_REGISTRY.get(name)
        if existing is not None and existing is not adapter_cls:
            raise ConfigError(
                f"Adapter '{name}' already registered to {existing.__name__}"
            )
        ADAPTER_REGISTRY[name] = adapter_cls
        return adapter_cls

    return decorator


def get_adapter_class(name: str) -> Type[BaseSourceAdapter]:
    """
    Look up a registered adapter class.

    Raises:
        ConfigError: If no adapter is registered under ``name``
    """
    try:
        return ADAPTER_REGISTRY[name]
    except KeyError:
        raise ConfigError(
            f"Unknown adapter '{name}'. Registered: {sorted(ADAPTER_REGISTRY)}"
        ) from None


def create_adapter(config: SourceConfig) -> BaseSourceAdapter:
    """Instantiate the adapter a source config names."""
    adapter_cls = get_adapter_class(config.adapter)
    logger.debug(f"Creating {adapter_cls.__name__} for source {config.source_id}")
    return adapter_cls(config)


def list_adapters() -> Dict[str, str]:
    return {name: cls.__name__ for name, cls in sorted(ADAPTER_REGISTRY.items())}
