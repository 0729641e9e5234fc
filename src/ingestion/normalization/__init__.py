"""
Normalization of raw listing records into gigs.

This package provides:
- GigNormalizer / normalize: raw record -> Gig with identity key and content hash
- Date helpers: parse_datetime, combine_date_and_time, parse_time
- Text helpers: canonical_title, slugify, VenueCanonicalizer
- PriceParser: Price string parsing utilities
"""

from .dates import combine_date_and_time, parse_datetime, parse_time, to_utc
from .normalizer import GigNormalizer, extract_record, normalize
from .price import PriceParser
from .text import VenueCanonicalizer, canonical_title, fold_text, slugify

__all__ = [
    # Normalizer
    "GigNormalizer",
    "extract_record",
    "normalize",
    # Dates
    "combine_date_and_time",
    "parse_datetime",
    "parse_time",
    "to_utc",
    # Text
    "VenueCanonicalizer",
    "canonical_title",
    "fold_text",
    "slugify",
    # Price
    "PriceParser",
]
