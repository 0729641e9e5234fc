"""
Text canonicalization for titles and venues.

Identity keys are derived from canonical forms, so two listings that differ
only in case, spacing, punctuation or accents must fold to the same string.
"""

import re
import unicodedata
from typing import Any, Dict, Mapping, Optional

_WHITESPACE_RE = re.compile(r"\s+")
_APOSTROPHE_RE = re.compile(r"['’‘`]")
_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")


def collapse_whitespace(value: Any) -> str:
    """Trim and collapse runs of whitespace to a single space."""
    if value is None:
        return ""
    return _WHITESPACE_RE.sub(" ", str(value)).strip()


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def fold_text(value: Any) -> str:
    """
    Case-fold, strip accents and punctuation, collapse whitespace.

    Examples:
        >>> fold_text("  The  Croft!! ")
        'the croft'
        >>> fold_text("Guns N' Roses & Friends")
        'guns n roses and friends'
    """
    text = strip_accents(collapse_whitespace(value)).casefold()
    text = text.replace("&", " and ")
    text = _APOSTROPHE_RE.sub("", text)
    text = _PUNCTUATION_RE.sub(" ", text).replace("_", " ")
    return collapse_whitespace(text)


def slugify(value: Any) -> str:
    """
    ASCII slug of the folded text.

    Characters with no ASCII equivalent are dropped, so a slug can come back
    empty; callers treat that as an unusable name.
    """
    folded = fold_text(value).encode("ascii", "ignore").decode("ascii")
    return _NON_SLUG_RE.sub("-", folded).strip("-")


def canonical_title(title: Any) -> str:
    """Canonical title used in identity keys."""
    return fold_text(title)


class VenueCanonicalizer:
    """
    Resolve raw venue names to a canonical name and slug.

    Alias keys are folded once on construction, so
    ``{"The Croft, Bristol": "The Croft"}`` also matches ``"the croft bristol"``.
    """

    def __init__(self, aliases: Optional[Mapping[str, str]] = None):
        self._aliases: Dict[str, str] = {
            fold_text(raw): collapse_whitespace(canonical)
            for raw, canonical in (aliases or {}).items()
        }

    def canonical_name(self, raw_name: Any) -> str:
        """Display name after alias substitution."""
        cleaned = collapse_whitespace(raw_name)
        return self._aliases.get(fold_text(cleaned), cleaned)

    def slug(self, raw_name: Any) -> str:
        return slugify(self.canonical_name(raw_name))
