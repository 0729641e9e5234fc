"""
Static Listing Adapter.

Serves listings declared inline in the source config or kept in a YAML/JSON
file. Used for venues that publish no feed (listings are curated by hand)
and for dry runs.

Options:
    records: list of raw records
    path: YAML or JSON file holding a list of raw records (or ``{records: [...]}``)
"""

import copy
from pathlib import Path
from typing import Any, Iterator, List

import yaml

from src.ingestion.adapters.base_adapter import BaseSourceAdapter, RawRecord, SourceType
from src.ingestion.adapters.registry import register_adapter
from src.ingestion.errors import ConfigError, FetchError


@register_adapter("static")
class StaticListingAdapter(BaseSourceAdapter):
    """Adapter over a fixed list of records."""

    source_type = SourceType.STATIC

    def _validate_config(self) -> None:
        records = self.options.get("records")
        path = self.options.get("path")
        if records is None and path is None:
            raise ConfigError(
                f"Static source '{self.source_id}' needs 'records' or 'path' option",
                source_id=self.source_id,
            )
        if records is not None and not isinstance(records, list):
            raise ConfigError(
                f"Static source '{self.source_id}': 'records' must be a list",
                source_id=self.source_id,
            )

    def _load_file(self, path: Path) -> List[Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise FetchError(
                f"Cannot read listings file {path}: {e}", source_id=self.source_id
            ) from e

        if isinstance(data, dict):
            data = data.get("records")
        if not isinstance(data, list):
            raise FetchError(
                f"Listings file {path} does not hold a list of records",
                source_id=self.source_id,
            )
        return data

    def fetch_listings(self) -> Iterator[RawRecord]:
        records = self.options.get("records")
        if records is None:
            records = self._load_file(Path(self.options["path"]))

        self.logger.info(f"Serving {len(records)} static listings")
        for record in records:
            yield copy.deepcopy(record)
