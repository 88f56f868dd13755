"""Merchant name extraction from free-text provider descriptions."""

from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class NormalizedMerchant:
    name: str
    counterparty: str | None


# Known provider-specific markers -> canonical merchant. Matched against the
# cleaned (upper-cased) description; longer markers are tried first so the most
# specific alias wins.
MERCHANT_ALIASES: dict[str, str] = {
    "SQ *": "Square",
    "AMZN MKTP": "Amazon",
    "PAYPAL *": "PayPal",
    "UBER *": "Uber",
    "STARBUCKS": "Starbucks",
}

_ALIASES_BY_SPECIFICITY: tuple[tuple[str, str], ...] = tuple(
    sorted(MERCHANT_ALIASES.items(), key=lambda kv: len(kv[0]), reverse=True)
)

# Ordered structural patterns; group 1 is the merchant prefix.
_STRUCTURAL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^(.+?)\s+\d{2}/\d{2}"),  # "MERCHANT 12/31"
    re.compile(r"^(.+?)\s*#\d+"),  # "MERCHANT #123"
    re.compile(r"^(.+?)\s+[\d.]+$"),  # "MERCHANT 123.45"
)


def normalize(raw_description: str | None) -> NormalizedMerchant:
    """Return the canonical merchant name and counterparty for a description.

    Total: any input (including ``None`` or blank) yields a result.
    """

    cleaned = (raw_description or "").strip().upper()

    for marker, merchant in _ALIASES_BY_SPECIFICITY:
        if marker in cleaned:
            return NormalizedMerchant(name=merchant, counterparty=merchant)

    for pattern in _STRUCTURAL_PATTERNS:
        m = pattern.match(cleaned)
        if m:
            prefix = m.group(1).strip()
            if prefix:
                return NormalizedMerchant(name=prefix, counterparty=prefix)

    return NormalizedMerchant(name=cleaned, counterparty=None)


__all__ = ["NormalizedMerchant", "MERCHANT_ALIASES", "normalize"]
