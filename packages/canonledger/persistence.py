# ruff: noqa: I001
"""Raw-record persistence for canonledger.

Writes provider records to ``raw_transactions`` owned by ``ledger_db``.

Idempotency rules:
- A record matches an existing row by ``(provider, account, hash_v1)`` or, when
  the provider supplies a native id, by ``(provider, provider_tx_id)``.
- A matched row only receives timestamp/balance corrections; it is never
  duplicated.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_db.models.ledger import Account, RawTransaction, utcnow
from .errors import NotFoundError
from .fingerprint import amount_to_cents, fingerprint
from .logging_setup import get_logger
from .models import RawRecord

_logger = get_logger("canonledger.persistence")


def compute_record_hash(*, provider_id: str, account_id: str, record: RawRecord, ingested_at: datetime) -> str:
    """Fingerprint a validated record using its effective (posted/auth/ingest) date."""

    effective = record.effective_timestamp(ingested_at)
    return fingerprint(
        provider_id,
        account_id,
        effective.date().isoformat(),
        amount_to_cents(record.amount),
        record.description_raw,
        record.currency,
    )


def require_account(session: Session, account_id: str) -> Account:
    account = session.get(Account, account_id)
    if account is None:
        raise NotFoundError("account", account_id)
    return account


def _find_existing(
    session: Session, *, provider_id: str, account_id: str, hash_v1: str, provider_tx_id: str | None
) -> RawTransaction | None:
    conds = [
        and_(
            RawTransaction.provider_id == provider_id,
            RawTransaction.account_id == account_id,
            RawTransaction.hash_v1 == hash_v1,
        )
    ]
    if provider_tx_id is not None:
        conds.append(
            and_(
                RawTransaction.provider_id == provider_id,
                RawTransaction.provider_tx_id == provider_tx_id,
            )
        )
    return (
        session.execute(select(RawTransaction).where(or_(*conds)).limit(1)).scalars().first()
    )


def _apply_corrections(raw: RawTransaction, record: RawRecord) -> None:
    if record.timestamp_posted is not None:
        raw.timestamp_posted = record.timestamp_posted
        # A posted re-report settles an earlier pending one.
        if not record.is_pending:
            raw.is_pending = False
    if record.timestamp_auth is not None:
        raw.timestamp_auth = record.timestamp_auth
    if record.balance_after is not None:
        raw.balance_after = record.balance_after


def upsert_raw_transaction(
    session: Session,
    *,
    provider_id: str,
    account_id: str,
    record: RawRecord,
    ingested_at: datetime | None = None,
) -> tuple[RawTransaction, bool]:
    """Insert ``record`` or apply corrections to its existing row.

    Returns ``(row, created)``. A concurrent insert of the same record is
    resolved by re-reading the winner's row.
    """

    now = ingested_at or utcnow()
    hash_v1 = compute_record_hash(
        provider_id=provider_id, account_id=account_id, record=record, ingested_at=now
    )

    existing = _find_existing(
        session,
        provider_id=provider_id,
        account_id=account_id,
        hash_v1=hash_v1,
        provider_tx_id=record.provider_tx_id,
    )
    if existing is not None:
        _apply_corrections(existing, record)
        session.flush()
        _logger.debug("raw:matched raw_id=%s hash=%s", existing.id, hash_v1[:12])
        return existing, False

    raw = RawTransaction(
        provider_id=provider_id,
        account_id=account_id,
        hash_v1=hash_v1,
        provider_tx_id=record.provider_tx_id,
        timestamp_posted=record.timestamp_posted,
        timestamp_auth=record.timestamp_auth,
        amount=record.amount,
        currency=record.currency,
        description_raw=record.description_raw,
        counterparty_raw=record.counterparty_raw,
        balance_after=record.balance_after,
        meta_json=dict(record.meta_json),
        is_pending=record.is_pending,
        ingested_at=now,
    )
    try:
        with session.begin_nested():
            session.add(raw)
    except IntegrityError:
        # Lost a race with a concurrent ingest of the same record.
        winner = _find_existing(
            session,
            provider_id=provider_id,
            account_id=account_id,
            hash_v1=hash_v1,
            provider_tx_id=record.provider_tx_id,
        )
        if winner is None:
            raise
        _apply_corrections(winner, record)
        session.flush()
        return winner, False

    _logger.debug("raw:created raw_id=%s hash=%s", raw.id, hash_v1[:12])
    return raw, True


__all__ = [
    "compute_record_hash",
    "require_account",
    "upsert_raw_transaction",
]
