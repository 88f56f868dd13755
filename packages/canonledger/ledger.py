"""Double-entry posting for canonical transactions.

Posting rules (``amount`` is the signed canonical amount):

==============  ==========================  ==========================================
Account type    Case                        Lines
==============  ==========================  ==========================================
credit card     amount < 0 (purchase)       Dr Expense:<category>, Cr Liability:CreditCard:<acct>
credit card     amount >= 0 (payment)       Dr Liability:CreditCard:<acct>, Cr Revenue:Refunds
bank            amount < 0, no link         Dr Expense:<category>, Cr Asset:Cash:<acct>
bank            amount < 0, outgoing link   Cr Asset:Cash:<acct>
bank            amount >= 0, no link        Dr Asset:Cash:<acct>, Cr Revenue:Uncategorized
bank            amount >= 0, incoming link  Dr Asset:Cash:<acct>
==============  ==========================  ==========================================

Transfer legs are single-sided: each leg balances only against its linked
counterpart, never within its own transaction.

Reposting deletes and recreates every line for the transaction inside one
savepoint, so readers never see a partially posted transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_db.models.ledger import (
    Account,
    CanonicalTransaction,
    Classification,
    LedgerEntry,
    TransferLink,
)

from .errors import InvariantViolation, NotFoundError
from .logging_setup import get_logger

_logger = get_logger("canonledger.ledger")

DEBIT = "debit"
CREDIT = "credit"
UNCATEGORIZED_EXPENSE_GL = "Expense:Uncategorized"
UNCATEGORIZED_REVENUE_GL = "Revenue:Uncategorized"
REFUNDS_GL = "Revenue:Refunds"


@dataclass(frozen=True, slots=True)
class Posting:
    gl_account: str
    amount: Decimal
    sign: str


def cash_gl(account: Account) -> str:
    return f"Asset:Cash:{account.gl_name}"


def credit_card_gl(account: Account) -> str:
    return f"Liability:CreditCard:{account.gl_name}"


def expense_gl(session: Session, txn_id: str) -> str:
    """``Expense:<category name>`` when classified, else ``Expense:Uncategorized``."""

    classification = session.execute(
        select(Classification).where(Classification.txn_id == txn_id)
    ).scalar_one_or_none()
    if classification is not None and classification.category is not None:
        return f"Expense:{classification.category.name}"
    return UNCATEGORIZED_EXPENSE_GL


def _has_link(session: Session, column, txn_id: str) -> bool:
    return session.execute(select(TransferLink.id).where(column == txn_id).limit(1)).first() is not None


def plan_postings(session: Session, txn: CanonicalTransaction, account: Account) -> list[Posting]:
    """Return the ordered posting lines for ``txn`` without writing anything."""

    amount = txn.amount
    magnitude = abs(amount)

    if account.is_credit_card:
        if amount < 0:
            return [
                Posting(expense_gl(session, txn.id), magnitude, DEBIT),
                Posting(credit_card_gl(account), magnitude, CREDIT),
            ]
        return [
            Posting(credit_card_gl(account), magnitude, DEBIT),
            Posting(REFUNDS_GL, magnitude, CREDIT),
        ]

    if amount < 0:
        if _has_link(session, TransferLink.txn_out_id, txn.id):
            return [Posting(cash_gl(account), magnitude, CREDIT)]
        return [
            Posting(expense_gl(session, txn.id), magnitude, DEBIT),
            Posting(cash_gl(account), magnitude, CREDIT),
        ]

    if _has_link(session, TransferLink.txn_in_id, txn.id):
        return [Posting(cash_gl(account), magnitude, DEBIT)]
    return [
        Posting(cash_gl(account), magnitude, DEBIT),
        Posting(UNCATEGORIZED_REVENUE_GL, magnitude, CREDIT),
    ]


def post_ledger(session: Session, txn_id: str) -> list[LedgerEntry]:
    """Replace all ledger lines for ``txn_id`` atomically and return the new ones."""

    txn = session.get(CanonicalTransaction, txn_id)
    if txn is None:
        raise NotFoundError("canonical transaction", txn_id)
    account = txn.account
    postings = plan_postings(session, txn, account)

    entries = [
        LedgerEntry(
            txn_id=txn.id,
            line_no=i,
            gl_account=p.gl_account,
            amount=p.amount,
            sign=p.sign,
        )
        for i, p in enumerate(postings, start=1)
    ]
    session.expire(txn, ["ledger_entries"])
    try:
        with session.begin_nested():
            session.execute(delete(LedgerEntry).where(LedgerEntry.txn_id == txn.id))
            session.add_all(entries)
    except SQLAlchemyError as exc:
        _logger.error(
            "ledger:repost_failed txn_id=%s lines=%d error=%s",
            txn.id,
            len(entries),
            exc.__class__.__name__,
        )
        raise InvariantViolation(f"ledger repost failed for {txn.id}; no lines changed") from exc

    session.expire(txn, ["ledger_entries"])
    _logger.info("ledger:posted txn_id=%s lines=%d", txn.id, len(entries))
    return entries


def totals(entries: list[LedgerEntry] | list[Posting]) -> tuple[Decimal, Decimal]:
    """Return ``(sum of debits, sum of credits)``."""

    debit = sum((e.amount for e in entries if e.sign == DEBIT), Decimal("0"))
    credit = sum((e.amount for e in entries if e.sign == CREDIT), Decimal("0"))
    return debit, credit


__all__ = [
    "DEBIT",
    "CREDIT",
    "Posting",
    "cash_gl",
    "credit_card_gl",
    "expense_gl",
    "plan_postings",
    "post_ledger",
    "totals",
]
