"""End-to-end runs of the public API against a file-backed SQLite store."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from ledger_db.client import session_scope
from ledger_db.models.ledger import (
    CanonicalTransaction,
    Classification,
    LedgerEntry,
    RawTransaction,
    TransferLink,
)

from canonledger import api
from canonledger.balances import StaticBalanceProvider
from canonledger.ledger import totals

from tests.helpers.db import count_rows, raw


def _entries(db_url: str, txn_id: str) -> list[LedgerEntry]:
    with session_scope(database_url=db_url) as s:
        return list(
            s.execute(select(LedgerEntry).where(LedgerEntry.txn_id == txn_id)).scalars().all()
        )


def test_starbucks_record_flows_through_every_stage(db_url, accounts):
    txn_id = api.ingest_one(
        "P", "A", {"amount": -42.00, "description": "STARBUCKS #123", "date": "2024-01-05"}, database_url=db_url
    )

    with session_scope(database_url=db_url) as s:
        raws = s.execute(select(RawTransaction)).scalars().all()
        assert len(raws) == 1
        txns = s.execute(select(CanonicalTransaction)).scalars().all()
        assert [t.id for t in txns] == [txn_id]
        txn = txns[0]
        assert txn.amount == Decimal("-42.00")
        assert txn.description_norm == "Starbucks"
        assert txn.raw_ids == [raws[0].id]

        cls = s.execute(select(Classification)).scalar_one()
        assert cls.txn_id == txn_id
        assert cls.category.name == "Meals & Entertainment"
        assert cls.confidence == pytest.approx(0.9)

    entries = _entries(db_url, txn_id)
    assert len(entries) == 2
    assert totals(entries) == (Decimal("42.00"), Decimal("42.00"))
    assert {e.gl_account for e in entries} == {"Expense:Meals & Entertainment", "Asset:Cash:A"}


def test_reingesting_the_same_record_is_a_no_op(db_url, accounts):
    record = raw("-42.00", "STARBUCKS #123", "2024-01-05")
    first = api.ingest_one("P", "A", record, database_url=db_url)
    second = api.ingest_one("P", "A", dict(record), database_url=db_url)

    assert first == second
    assert count_rows(db_url, "raw_transactions") == 1
    assert count_rows(db_url, "canonical_transactions") == 1
    assert count_rows(db_url, "ledger_entries") == 2


def test_pending_then_posted_coffee_merges(db_url, accounts):
    api.ingest_one("P", "A", raw("-42.00", "STARBUCKS #123", "2024-01-05", pending=True), database_url=db_url)
    posted_id = api.ingest_one("P", "A", raw("-42.00", "STARBUCKS COFFEE", "2024-01-07"), database_url=db_url)

    with session_scope(database_url=db_url) as s:
        txns = s.execute(select(CanonicalTransaction)).scalars().all()
        assert [t.id for t in txns] == [posted_id]
        assert txns[0].status == "posted"
        assert len(txns[0].raw_ids) == 2
    assert count_rows(db_url, "raw_transactions") == 2
    # Only the survivor keeps ledger lines.
    assert count_rows(db_url, "ledger_entries") == 2


def test_pending_with_dissimilar_description_is_kept(db_url, accounts):
    api.ingest_one("P", "A", raw("-42.00", "STARBUCKS #123", "2024-01-05", pending=True), database_url=db_url)
    api.ingest_one("P", "A", raw("-42.00", "SHELL OIL 5567", "2024-01-06"), database_url=db_url)

    assert count_rows(db_url, "canonical_transactions") == 2


def test_transfer_between_own_accounts(db_url, accounts):
    out_id = api.ingest_one("P", "A", raw("-500.00", "TRANSFER TO B", "2024-04-01"), database_url=db_url)
    in_id = api.ingest_one("P", "B", raw("500.00", "TRANSFER FROM A", "2024-04-02"), database_url=db_url)

    with session_scope(database_url=db_url) as s:
        link = s.execute(select(TransferLink)).scalar_one()
        assert (link.txn_out_id, link.txn_in_id) == (out_id, in_id)
        assert link.confidence == pytest.approx(0.9)

    assert api.link_transfers("A", date(2024, 4, 1), database_url=db_url) == 0
    assert api.link_transfers("B", date(2024, 4, 2), database_url=db_url) == 0
    assert count_rows(db_url, "transfer_links") == 1

    # Each leg is single-sided; the pair balances across both transactions.
    out_entries = _entries(db_url, out_id)
    in_entries = _entries(db_url, in_id)
    assert [(e.gl_account, e.sign) for e in out_entries] == [("Asset:Cash:A", "credit")]
    assert [(e.gl_account, e.sign) for e in in_entries] == [("Asset:Cash:B", "debit")]
    assert totals(out_entries + in_entries) == (Decimal("500.00"), Decimal("500.00"))


@pytest.mark.parametrize(
    "amount, description",
    [("-19.99", "ADOBE CREATIVE"), ("1200.00", "PAYROLL ACME"), ("-3.00", "MONTHLY FEE")],
)
def test_ordinary_transactions_balance(db_url, accounts, amount, description):
    txn_id = api.ingest_one("P", "A", raw(amount, description, "2024-02-01"), database_url=db_url)
    debit, credit = totals(_entries(db_url, txn_id))
    assert debit == credit == abs(Decimal(amount))


def test_locked_override_survives_reclassification(db_url, accounts):
    txn_id = api.ingest_one("P", "A", raw("-42.00", "STARBUCKS #123", "2024-01-05"), database_url=db_url)
    api.override_classification(txn_id, "Software", database_url=db_url)

    outcome = api.classify(txn_id, database_url=db_url)
    assert outcome.skipped_locked is True
    assert outcome.category == "Software"
    assert outcome.confidence == pytest.approx(1.0)
    # The expense line followed the override.
    assert "Expense:Software" in {e.gl_account for e in _entries(db_url, txn_id)}


def test_reconciliation_threshold_and_rerun(db_url, accounts):
    api.ingest_one("P", "A", raw("100.00", "DEPOSIT", "2024-03-01"), database_url=db_url)

    ok = api.reconcile(
        "A", date(2024, 3, 1), balance_provider=StaticBalanceProvider({"A": "99.00"}), database_url=db_url
    )
    assert (ok.delta, ok.status) == (Decimal("1.00"), "ok")

    drift = api.reconcile(
        "A", date(2024, 3, 1), balance_provider=StaticBalanceProvider({"A": "98.99"}), database_url=db_url
    )
    assert (drift.delta, drift.status) == (Decimal("1.01"), "drift")
    assert count_rows(db_url, "reconciliation_runs") == 1
