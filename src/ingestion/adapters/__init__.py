"""
Source adapters.

Importing this package registers the built-in adapters:
- static: listings declared in config or kept in a YAML/JSON file
- http_json: JSON listing feeds over HTTP
"""

from .base_adapter import BaseSourceAdapter, RawRecord, SourceType
from .field_mapper import FieldMapper, create_field_mapper_from_config
from .http_adapter import HttpListingAdapter
from .registry import (
    ADAPTER_REGISTRY,
    create_adapter,
    get_adapter_class,
    list_adapters,
    register_adapter,
)
from .static_adapter import StaticListingAdapter

__all__ = [
    "BaseSourceAdapter",
    "RawRecord",
    "SourceType",
    "FieldMapper",
    "create_field_mapper_from_config",
    "HttpListingAdapter",
    "StaticListingAdapter",
    "ADAPTER_REGISTRY",
    "create_adapter",
    "get_adapter_class",
    "list_adapters",
    "register_adapter",
]
