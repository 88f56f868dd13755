"""Inter-account transfer detection by amount and time.

Matching is greedy and first-match: outgoing transactions are visited in
ascending posted time and each takes the first incoming transaction (posted
time order) from a different account whose absolute amount agrees within the
tolerance. This is not a globally optimal assignment; with several
same-amount candidates in one window a suboptimal pair can be linked.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_db.models.ledger import CanonicalTransaction, TransferLink

from .config import Settings
from .logging_setup import get_logger

_logger = get_logger("canonledger.transfers")

DETECTION_METHOD = "amount+time"


def link_exists(session: Session, txn_out_id: str, txn_in_id: str) -> bool:
    stmt = (
        select(TransferLink.id)
        .where(TransferLink.txn_out_id == txn_out_id, TransferLink.txn_in_id == txn_in_id)
        .limit(1)
    )
    return session.execute(stmt).first() is not None


def _create_link(
    session: Session,
    out_txn: CanonicalTransaction,
    in_txn: CanonicalTransaction,
    *,
    confidence: float,
    window_sec: int,
) -> TransferLink | None:
    link = TransferLink(
        txn_out_id=out_txn.id,
        txn_in_id=in_txn.id,
        detection_method=DETECTION_METHOD,
        confidence=confidence,
        window_sec=window_sec,
    )
    try:
        with session.begin_nested():
            session.add(link)
    except IntegrityError:
        # A concurrent linker inserted the same pair first.
        _logger.info(
            "transfers:pair_exists_concurrently out_id=%s in_id=%s", out_txn.id, in_txn.id
        )
        return None
    return link


def _find_incoming_match(
    out_txn: CanonicalTransaction,
    incoming: list[CanonicalTransaction],
    tolerance: Decimal,
) -> CanonicalTransaction | None:
    target = abs(out_txn.amount)
    for in_txn in incoming:
        if in_txn.account_id == out_txn.account_id:
            continue
        if abs(in_txn.amount - target) < tolerance:
            return in_txn
    return None


def link_transfers(
    session: Session,
    account_id: str,
    around: datetime,
    window_days: int | None = None,
    *,
    settings: Settings | None = None,
) -> list[TransferLink]:
    """Link outgoing/incoming pairs posted within ``around ± window_days``.

    Reads transactions from every account (transfers cross accounts by
    definition); ``account_id`` only scopes the log line. An already-linked
    pair is skipped, so re-running over the same window creates nothing.
    Returns the links created by this call.
    """

    settings = settings or Settings()
    days = settings.transfer_window_days if window_days is None else window_days
    window = timedelta(days=days)
    window_sec = days * 86400

    txns = (
        session.execute(
            select(CanonicalTransaction)
            .where(
                CanonicalTransaction.posted_at >= around - window,
                CanonicalTransaction.posted_at <= around + window,
            )
            .order_by(CanonicalTransaction.posted_at, CanonicalTransaction.created_at, CanonicalTransaction.id)
        )
        .scalars()
        .all()
    )
    outgoing = [t for t in txns if t.amount < 0]
    incoming = [t for t in txns if t.amount > 0]

    created: list[TransferLink] = []
    for out_txn in outgoing:
        match = _find_incoming_match(out_txn, incoming, settings.transfer_amount_tolerance)
        if match is None:
            continue
        if link_exists(session, out_txn.id, match.id):
            continue
        link = _create_link(
            session,
            out_txn,
            match,
            confidence=settings.transfer_confidence,
            window_sec=window_sec,
        )
        if link is None:
            continue
        created.append(link)
        _logger.info(
            "transfers:linked out_id=%s out_amount=%s in_id=%s in_amount=%s",
            out_txn.id,
            out_txn.amount,
            match.id,
            match.amount,
        )

    _logger.info(
        "transfers:done account_id=%s around=%s window_days=%d created=%d",
        account_id,
        around.isoformat(),
        days,
        len(created),
    )
    return created


__all__ = ["DETECTION_METHOD", "link_exists", "link_transfers"]
