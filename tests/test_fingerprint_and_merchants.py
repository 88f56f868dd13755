from __future__ import annotations

from decimal import Decimal

import pytest

from canonledger.fingerprint import amount_to_cents, fingerprint, scrub
from canonledger.merchants import normalize


def test_fingerprint_ignores_whitespace_and_case_noise():
    a = fingerprint("P", "A", "2024-01-05", -4200, "  starbucks   #123 ", "USD")
    b = fingerprint("P", "A", "2024-01-05", -4200, "STARBUCKS #123", "USD")
    assert a == b
    assert len(a) == 64
    int(a, 16)  # hex digest


@pytest.mark.parametrize(
    "field_index, replacement",
    [(0, "P2"), (1, "B"), (2, "2024-01-06"), (3, -4201), (4, "STARBUCKS #124"), (5, "EUR")],
)
def test_fingerprint_changes_with_every_field(field_index, replacement):
    args = ["P", "A", "2024-01-05", -4200, "STARBUCKS #123", "USD"]
    base = fingerprint(*args)
    args[field_index] = replacement
    assert fingerprint(*args) != base


def test_scrub_and_cents():
    assert scrub("\tuber   *trip  \n") == "UBER *TRIP"
    assert amount_to_cents(Decimal("-42.00")) == -4200
    assert amount_to_cents(Decimal("0.005")) == 1


@pytest.mark.parametrize(
    "description, name, counterparty",
    [
        ("SQ *BLUE BOTTLE", "Square", "Square"),
        ("AMZN Mktp US*2K4", "Amazon", "Amazon"),
        ("PAYPAL *SPOTIFY", "PayPal", "PayPal"),
        ("UBER *TRIP HELP.UBER.COM", "Uber", "Uber"),
        ("STARBUCKS #123", "Starbucks", "Starbucks"),
        ("SHELL OIL 01/15", "SHELL OIL", "SHELL OIL"),
        ("TARGET #00123", "TARGET", "TARGET"),
        ("ACME SUPPLY 19.99", "ACME SUPPLY", "ACME SUPPLY"),
        # Trimmed and upper-cased only; inner spacing is kept.
        ("  local   bakery ", "LOCAL   BAKERY", None),
    ],
)
def test_normalize_alias_structural_and_fallback(description, name, counterparty):
    result = normalize(description)
    assert result.name == name
    assert result.counterparty == counterparty


def test_normalize_is_total():
    assert normalize("").name == ""
    assert normalize(None).counterparty is None
    assert normalize("#1").name == "#1"
