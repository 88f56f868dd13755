"""Deterministic idempotency fingerprint for raw provider records."""

from __future__ import annotations

import hashlib
from decimal import ROUND_HALF_UP, Decimal


def scrub(description: str) -> str:
    """Trim, collapse internal whitespace, and upper-case ``description``."""

    return " ".join(description.split()).upper()


def amount_to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def fingerprint(
    provider: str,
    account: str,
    date_iso: str,
    amount_cents: int,
    description: str,
    currency: str,
) -> str:
    """Return the SHA-256 hex digest identifying one raw record.

    The description is scrubbed first so whitespace/case noise from a provider
    never yields a distinct fingerprint for the same event.
    """

    base = "|".join(
        (provider, account, date_iso, str(amount_cents), scrub(description), currency)
    )
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


__all__ = ["scrub", "amount_to_cents", "fingerprint"]
