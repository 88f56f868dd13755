from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from ledger_db.models.ledger import Classification

from canonledger.categories import DEFAULT_CATEGORIES, find_category, get_or_create_category
from canonledger.classify import (
    MANUAL_MODEL_VERSION,
    RULES,
    RULES_MODEL_VERSION,
    classify,
    decide,
    find_sweep_candidates,
    override_classification,
)
from canonledger.errors import NotFoundError
from canonledger.ingest import ingest_one


@pytest.mark.parametrize(
    "description, amount, category, confidence",
    [
        ("Starbucks", "-4.50", "Meals & Entertainment", 0.9),
        ("BLUE BOTTLE COFFEE", "-6.00", "Meals & Entertainment", 0.9),
        ("Uber", "-18.00", "Transportation", 0.85),
        ("Amazon", "-30.00", "Shopping", 0.8),
        ("VENMO CASHOUT", "25.00", "Transfer", 0.7),
        ("MONTHLY SERVICE FEE", "-12.00", "Bank Fees", 0.9),
        ("INTEREST PAYMENT", "0.42", "Interest Income", 0.95),
        ("PAYMENT - THANK YOU", "200.00", "Payment", 0.9),
        ("HARDWARE DEPOT", "-10.00", "Uncategorized Expense", 0.1),
        ("PAYROLL ACME", "10.00", "Uncategorized Income", 0.1),
        ("ZERO AMOUNT", "0.00", "Uncategorized Income", 0.1),
    ],
)
def test_rules_first_match_and_fallback(description, amount, category, confidence):
    decision = decide(description, Decimal(amount))
    assert decision.category == category
    assert decision.confidence == confidence


def test_rule_order_is_first_match_wins():
    # "CAFE" (meals) precedes "charge" (bank fees) in the ordered rules.
    assert decide("CAFE SERVICE CHARGE", Decimal("-3")).category == "Meals & Entertainment"
    assert [r.category for r in RULES][:2] == ["Meals & Entertainment", "Transportation"]


def test_classify_creates_and_updates(session):
    res = ingest_one(
        session,
        provider_id="P",
        account_id="A",
        record={"amount": "-4.50", "description": "STARBUCKS #77", "date": "2024-01-10"},
    )
    row = session.execute(
        select(Classification).where(Classification.txn_id == res.canonical_id)
    ).scalar_one()
    assert row.category.name == "Meals & Entertainment"
    assert row.confidence == pytest.approx(0.9)
    assert row.model_version == RULES_MODEL_VERSION
    assert row.explanations["rule"] == "starbucks|coffee|cafe"
    assert row.locked_by_user is False

    again = classify(session, res.canonical_id)
    assert again.category == "Meals & Entertainment"
    assert again.category_changed is False


def test_locked_classification_is_never_overwritten(session):
    res = ingest_one(
        session,
        provider_id="P",
        account_id="A",
        record={"amount": "-4.50", "description": "STARBUCKS #77", "date": "2024-01-10"},
    )
    override_classification(session, res.canonical_id, "Office Supplies")

    outcome = classify(session, res.canonical_id)
    assert outcome.skipped_locked is True
    row = session.execute(
        select(Classification).where(Classification.txn_id == res.canonical_id)
    ).scalar_one()
    assert row.category.name == "Office Supplies"
    assert row.confidence == pytest.approx(1.0)
    assert row.model_version == MANUAL_MODEL_VERSION
    assert row.locked_by_user is True


def test_classify_unknown_transaction(session):
    with pytest.raises(NotFoundError):
        classify(session, "missing")


def test_unlocked_override_can_be_reclassified(session):
    res = ingest_one(
        session,
        provider_id="P",
        account_id="A",
        record={"amount": "-4.50", "description": "STARBUCKS #77", "date": "2024-01-10"},
    )
    override_classification(session, res.canonical_id, "Software", locked=False)
    outcome = classify(session, res.canonical_id)
    assert outcome.category == "Meals & Entertainment"
    assert outcome.category_changed is True


def test_sweep_candidates_skip_locked_and_confident(session):
    fallback = ingest_one(
        session,
        provider_id="P",
        account_id="A",
        record={"amount": "-10.00", "description": "HARDWARE DEPOT", "date": "2024-01-11"},
    )
    confident = ingest_one(
        session,
        provider_id="P",
        account_id="A",
        record={"amount": "-4.50", "description": "STARBUCKS #1", "date": "2024-01-12"},
    )
    locked = ingest_one(
        session,
        provider_id="P",
        account_id="A",
        record={"amount": "-11.00", "description": "GARDEN CENTER", "date": "2024-01-13"},
    )
    override_classification(session, locked.canonical_id, "Office Supplies")

    ids = find_sweep_candidates(session, threshold=0.6, limit=10)
    assert fallback.canonical_id in ids
    assert confident.canonical_id not in ids
    assert locked.canonical_id not in ids


def test_categories_seeded_and_created_on_demand(session):
    for seed in DEFAULT_CATEGORIES:
        assert find_category(session, seed.name) is not None
    assert find_category(session, "transfer").is_transfer is True

    row, created = get_or_create_category(session, "  Pet   Supplies ")
    assert created and row.name == "Pet Supplies"
    again, created_again = get_or_create_category(session, "pet supplies")
    assert not created_again and again.id == row.id
