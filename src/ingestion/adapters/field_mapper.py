"""
Field Mapper for raw listing payloads.

Maps source-specific JSON onto the field names the normalizer understands.
Supports:
- Dot notation for nested fields: "event.venue.name"
- Array extraction: "performances[*].starts_at" -> list
- Array indexing: "ticket_types[0].price"
- Transformations: default, template, join, coalesce, regex, strip_html
"""

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from src.ingestion.errors import ConfigError

logger = logging.getLogger(__name__)

# One path step: a key, optionally followed by [index] or [*]
_STEP_RE = re.compile(r"^(?P<key>[^\[\]]*)(?:\[(?P<index>\d+|\*)\])?$")
_TAG_RE = re.compile(r"<[^>]+>")
_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")

Step = Tuple[str, Union[int, str, None]]


def parse_path(path: str) -> List[Step]:
    """
    Split a field path into steps.

    >>> parse_path("data.events[*].venue.name")
    [('data', None), ('events', '*'), ('venue', None), ('name', None)]

    Raises:
        ConfigError: On malformed paths such as "a[x]"
    """
    steps: List[Step] = []
    for part in path.split("."):
        match = _STEP_RE.match(part)
        if not match or (not match.group("key") and match.group("index") is None):
            raise ConfigError(f"Invalid field path '{path}'")
        index = match.group("index")
        if index is not None and index != "*":
            index = int(index)
        steps.append((match.group("key"), index))
    return steps


def extract_path(data: Any, steps: List[Step]) -> Any:
    """Follow ``steps`` into ``data``; missing keys yield None, wildcards yield lists."""
    if not steps:
        return data

    (key, index), rest = steps[0], steps[1:]
    value = data.get(key) if key and isinstance(data, dict) else (data if not key else None)

    if index is None:
        return extract_path(value, rest) if value is not None else None
    if not isinstance(value, list):
        return [] if index == "*" else None
    if index == "*":
        return [extract_path(item, rest) for item in value if item is not None]
    if index >= len(value):
        return None
    return extract_path(value[index], rest)


class FieldMapper:
    """
    Maps raw source records onto normalizer field names.

    Example:
        mapper = FieldMapper(
            {"title": "name", "venue": "venue.name", "dates": "shows[*].start"},
            {"title": {"type": "strip_html"}},
        )
        mapper.map_record(raw)
    """

    def __init__(
        self,
        field_mappings: Dict[str, str],
        transformations: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        """
        Initialize the field mapper.

        Args:
            field_mappings: Target field name -> source path
            transformations: Target field name -> transformation config

        Raises:
            ConfigError: For malformed paths or unknown transformation types
        """
        self.field_mappings = dict(field_mappings)
        self.transformations = dict(transformations or {})
        self._paths = {target: parse_path(path) for target, path in self.field_mappings.items()}

        handlers: Dict[str, Callable[[Dict[str, Any], str, Dict[str, Any]], None]] = {
            "default": self._default,
            "template": self._template,
            "join": self._join,
            "coalesce": self._coalesce,
            "regex": self._regex,
            "strip_html": self._strip_html,
        }
        self._handlers = handlers
        for field_name, rule in self.transformations.items():
            if rule.get("type") not in handlers:
                raise ConfigError(
                    f"Unknown transformation '{rule.get('type')}' for field '{field_name}'"
                )

    def map_record(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """
        Extract mapped fields from one raw record.

        Fields without a mapping are not carried over; unmapped targets are
        None.
        """
        result = {target: extract_path(raw, steps) for target, steps in self._paths.items()}
        return self.apply_transformations(result)

    def apply_transformations(self, data: Dict[str, Any]) -> Dict[str, Any]:
        result = dict(data)
        for field_name, rule in self.transformations.items():
            when = rule.get("when")
            if when and not result.get(when):
                continue
            self._handlers[rule["type"]](result, field_name, rule)
        return result

    # ------------------------------------------------------------------
    # Transformations
    # ------------------------------------------------------------------

    @staticmethod
    def _source(result: Dict[str, Any], field_name: str, rule: Dict[str, Any]) -> Any:
        return result.get(rule.get("source", field_name))

    def _default(self, result, field_name, rule) -> None:
        if result.get(field_name) in (None, "", []):
            result[field_name] = rule.get("value")

    def _template(self, result, field_name, rule) -> None:
        def substitute(match: re.Match) -> str:
            value = result.get(match.group(1))
            return "" if value is None else str(value)

        result[field_name] = _PLACEHOLDER_RE.sub(substitute, rule.get("template", ""))

    def _join(self, result, field_name, rule) -> None:
        value = self._source(result, field_name, rule)
        if isinstance(value, list):
            separator = rule.get("separator", ", ")
            result[field_name] = separator.join(str(v) for v in value if v)

    def _coalesce(self, result, field_name, rule) -> None:
        for source in rule.get("sources", []):
            if result.get(source) not in (None, ""):
                result[field_name] = result[source]
                return

    def _regex(self, result, field_name, rule) -> None:
        value = self._source(result, field_name, rule)
        if isinstance(value, str):
            match = re.search(rule.get("pattern", ""), value)
            if match:
                result[field_name] = match.group(rule.get("group", 0))

    def _strip_html(self, result, field_name, rule) -> None:
        value = self._source(result, field_name, rule)
        if isinstance(value, str):
            result[field_name] = " ".join(_TAG_RE.sub(" ", value).split())


def create_field_mapper_from_config(options: Dict[str, Any]) -> Optional[FieldMapper]:
    """
    Create a FieldMapper from an adapter's options, or None when none is configured.

    Example config:
        field_mappings:
          title: "name"
          venue: "venue.name"
          dates: "performances[*].starts_at"
        transformations:
          description:
            type: "strip_html"
    """
    field_mappings = options.get("field_mappings")
    if not field_mappings:
        return None
    return FieldMapper(field_mappings, options.get("transformations"))
