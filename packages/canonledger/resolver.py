"""Canonical resolution: fold raw provider records into one economic event.

A raw record joins an existing canonical transaction in the same account when
both share a group key and amount and were posted within the match window
(±3 days by default). Otherwise a new canonical transaction is created.

Group key
---------
- the provider-native id when the provider supplies one, else
- ``<normalized merchant>|<posted date>|<abs(amount) at 2dp>``.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import String, cast, select
from sqlalchemy.orm import Session

from ledger_db.models.ledger import CanonicalTransaction, RawTransaction

from .config import Settings
from .logging_setup import get_logger
from .merchants import NormalizedMerchant, normalize

_logger = get_logger("canonledger.resolver")

_FEE_RE = re.compile(r"FEE|INTEREST", re.IGNORECASE)


def effective_posted_at(raw: RawTransaction) -> datetime:
    """Posted timestamp, else authorized timestamp, else ingest time."""

    return raw.timestamp_posted or raw.timestamp_auth or raw.ingested_at


def build_group_key(merchant_name: str, posted_at: datetime, amount: Decimal) -> str:
    return f"{merchant_name}|{posted_at.date().isoformat()}|{abs(amount):.2f}"


def infer_tx_type(description: str, amount: Decimal) -> str:
    if _FEE_RE.search(description or ""):
        return "fee"
    return "debit" if amount < 0 else "credit"


def append_unique(ids: list[str], *new_ids: str) -> list[str]:
    """Return ``ids`` extended with ``new_ids`` not already present, order kept."""

    out = list(ids)
    for i in new_ids:
        if i not in out:
            out.append(i)
    return out


def find_match(
    session: Session,
    *,
    account_id: str,
    group_key: str,
    amount: Decimal,
    posted_at: datetime,
    window: timedelta,
) -> CanonicalTransaction | None:
    stmt = (
        select(CanonicalTransaction)
        .where(
            CanonicalTransaction.account_id == account_id,
            CanonicalTransaction.group_key == group_key,
            CanonicalTransaction.amount == amount,
            CanonicalTransaction.posted_at >= posted_at - window,
            CanonicalTransaction.posted_at <= posted_at + window,
        )
        .order_by(CanonicalTransaction.created_at, CanonicalTransaction.id)
        .limit(1)
    )
    return session.execute(stmt).scalars().first()


def find_by_raw_id(session: Session, *, account_id: str, raw_id: str) -> CanonicalTransaction | None:
    """Canonical transaction that already folded ``raw_id`` in, if any."""

    stmt = (
        select(CanonicalTransaction)
        .where(
            CanonicalTransaction.account_id == account_id,
            cast(CanonicalTransaction.raw_ids, String).contains(raw_id),
        )
        .order_by(CanonicalTransaction.created_at, CanonicalTransaction.id)
    )
    for ct in session.execute(stmt).scalars():
        if raw_id in (ct.raw_ids or []):
            return ct
    return None


def _absorb(
    existing: CanonicalTransaction, raw: RawTransaction, posted_at: datetime, merchant: NormalizedMerchant
) -> None:
    existing.posted_at = posted_at
    existing.amount = raw.amount
    existing.description_norm = merchant.name
    existing.counterparty_norm = merchant.counterparty
    existing.raw_ids = append_unique(existing.raw_ids or [], raw.id)
    if not raw.is_pending and existing.status == "pending":
        existing.status = "posted"


def resolve(
    session: Session,
    raw: RawTransaction,
    *,
    raw_created: bool = True,
    settings: Settings | None = None,
) -> CanonicalTransaction:
    """Resolve ``raw`` to its canonical transaction, creating one when needed.

    A raw row seen before resolves to whichever canonical transaction already
    holds it, even after a pending merge moved it onto a posted twin.
    """

    settings = settings or Settings()
    posted_at = effective_posted_at(raw)
    merchant = normalize(raw.description_raw)

    if not raw_created:
        known = find_by_raw_id(session, account_id=raw.account_id, raw_id=raw.id)
        if known is not None:
            # A pending record never overwrites the posted row it was merged into.
            if not (raw.is_pending and known.status == "posted"):
                _absorb(known, raw, posted_at, merchant)
                session.flush()
            _logger.info("resolver:known raw_id=%s canonical_id=%s", raw.id, known.id)
            return known

    group_key = raw.provider_tx_id or build_group_key(merchant.name, posted_at, raw.amount)

    existing = find_match(
        session,
        account_id=raw.account_id,
        group_key=group_key,
        amount=raw.amount,
        posted_at=posted_at,
        window=timedelta(days=settings.match_window_days),
    )

    if existing is not None:
        _absorb(existing, raw, posted_at, merchant)
        session.flush()
        _logger.info("resolver:matched raw_id=%s canonical_id=%s", raw.id, existing.id)
        return existing

    ct = CanonicalTransaction(
        group_key=group_key,
        account_id=raw.account_id,
        posted_at=posted_at,
        amount=raw.amount,
        currency=raw.currency,
        description_norm=merchant.name,
        counterparty_norm=merchant.counterparty,
        tx_type=infer_tx_type(raw.description_raw, raw.amount),
        status="pending" if raw.is_pending else "posted",
        raw_ids=[raw.id],
    )
    session.add(ct)
    session.flush()
    _logger.info("resolver:created raw_id=%s canonical_id=%s", raw.id, ct.id)
    return ct


__all__ = [
    "effective_posted_at",
    "build_group_key",
    "infer_tx_type",
    "append_unique",
    "find_match",
    "find_by_raw_id",
    "resolve",
]
