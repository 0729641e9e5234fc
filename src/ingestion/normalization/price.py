"""
Price Parser.

Parses advertised ticket prices ("£12.50", "£10 - £15 adv", "Free entry")
into ``PriceInfo``. Prices are kept in their original currency.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any

from src.schemas.gig import PriceInfo


class PriceParser:
    """Parse price strings and identify currency."""

    SYMBOL_TO_CODE = {
        "€": "EUR",
        "£": "GBP",
        "$": "USD",
    }

    CURRENCY_PATTERNS = {
        "EUR": [r"\beur\b", r"\beuros?\b"],
        "GBP": [r"\bgbp\b", r"\bpounds?\b", r"\bsterling\b"],
        "USD": [r"\busd\b", r"\bdollars?\b"],
    }

    FREE_INDICATORS = (
        "free",
        "no charge",
        "no cover",
        "pay what you can",
    )

    NUMBER_PATTERN = re.compile(r"\d+(?:[.,]\d{1,2})?")

    @classmethod
    def parse(cls, value: Any, default_currency: str = "GBP") -> PriceInfo | None:
        """
        Parse a raw price into ``PriceInfo``.

        Handles:
        - "£15" -> min 15
        - "£10 - £15" -> min 10, max 15
        - "Free" -> is_free
        - 12.5 -> min 12.5 (numbers are taken as-is)
        - {"min": 10, "max": 15, "currency": "GBP"} (already structured)

        Args:
            value: Raw price value from the source
            default_currency: Used when the string names no currency

        Returns:
            PriceInfo, or None when the source gave no price
        """
        if value is None or value == "":
            return None

        if isinstance(value, dict):
            return cls._from_mapping(value, default_currency)

        if isinstance(value, bool):
            return None

        if isinstance(value, (int, float, Decimal)):
            amount = Decimal(str(value))
            return PriceInfo(
                minimum=amount,
                currency=default_currency,
                is_free=amount == 0,
                raw=str(value),
            )

        text = str(value).strip()
        if not text:
            return None

        if cls.is_free(text):
            return PriceInfo(
                minimum=Decimal("0"), currency=default_currency, is_free=True, raw=text
            )

        numbers = cls.extract_numbers(text)
        if not numbers:
            # Unpriceable text ("TBC", "See website"); keep it for display
            return PriceInfo(
                currency=cls.detect_currency(text) or default_currency, raw=text
            )

        low, high = min(numbers), max(numbers)
        return PriceInfo(
            minimum=low,
            maximum=high if high != low else None,
            currency=cls.detect_currency(text) or default_currency,
            raw=text,
        )

    @classmethod
    def _from_mapping(cls, value: dict, default_currency: str) -> PriceInfo | None:
        low = cls._to_decimal(value.get("min", value.get("minimum")))
        high = cls._to_decimal(value.get("max", value.get("maximum")))
        if low is None and high is None:
            raw = value.get("raw") or value.get("text")
            return cls.parse(raw, default_currency) if raw else None
        return PriceInfo(
            minimum=low,
            maximum=high,
            currency=value.get("currency") or default_currency,
            is_free=bool(value.get("is_free", low == 0 and not high)),
            raw=value.get("raw"),
        )

    @staticmethod
    def _to_decimal(value: Any) -> Decimal | None:
        if value is None or value == "":
            return None
        try:
            return Decimal(str(value).replace(",", "."))
        except InvalidOperation:
            return None

    @classmethod
    def detect_currency(cls, text: str) -> str:
        """
        Detect currency from a price string.

        Returns:
            ISO currency code (e.g., "GBP") or empty string if not detected
        """
        for symbol, code in cls.SYMBOL_TO_CODE.items():
            if symbol in text:
                return code

        lowered = text.lower()
        for code, patterns in cls.CURRENCY_PATTERNS.items():
            if any(re.search(pattern, lowered) for pattern in patterns):
                return code
        return ""

    @classmethod
    def is_free(cls, text: str) -> bool:
        lowered = text.lower()
        return any(indicator in lowered for indicator in cls.FREE_INDICATORS)

    @classmethod
    def extract_numbers(cls, text: str) -> list[Decimal]:
        """
        Extract numeric values from a price string.

        "£10 - £15 (+ booking fee)" -> [10, 15]
        "12,50€" -> [12.50]
        """
        numbers = []
        for match in cls.NUMBER_PATTERN.findall(text):
            try:
                numbers.append(Decimal(match.replace(",", ".")))
            except InvalidOperation:
                continue
        return numbers
