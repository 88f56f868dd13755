"""Compare ledger-derived cash balances with what the institution reports.

One ``ReconciliationRun`` is kept per ``(account, day)``; re-running for the
same day overwrites the earlier result.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_db.models.ledger import CanonicalTransaction, LedgerEntry, ReconciliationRun, utcnow

from .balances import BalanceProvider, LatestRawBalanceProvider
from .config import Settings
from .ledger import cash_gl
from .logging_setup import get_logger
from .persistence import require_account

_logger = get_logger("canonledger.reconcile")

_CENT = Decimal("0.01")


def compute_system_balance(session: Session, gl_account: str, as_of: datetime) -> Decimal:
    """Signed sum of ``gl_account`` lines (debit +, credit -) posted by ``as_of``."""

    signed = case((LedgerEntry.sign == "debit", LedgerEntry.amount), else_=-LedgerEntry.amount)
    stmt = (
        select(func.coalesce(func.sum(signed), 0))
        .join(CanonicalTransaction, CanonicalTransaction.id == LedgerEntry.txn_id)
        .where(LedgerEntry.gl_account == gl_account, CanonicalTransaction.posted_at <= as_of)
    )
    total = session.execute(stmt).scalar_one()
    return Decimal(str(total)).quantize(_CENT, rounding=ROUND_HALF_UP)


def drift_status(delta: Decimal, tolerance: Decimal) -> str:
    return "ok" if abs(delta) <= tolerance else "drift"


def _upsert_run(session: Session, values: dict) -> ReconciliationRun:
    def _load() -> ReconciliationRun | None:
        return (
            session.execute(
                select(ReconciliationRun).where(
                    ReconciliationRun.account_id == values["account_id"],
                    ReconciliationRun.as_of_date == values["as_of_date"],
                )
            )
            .scalars()
            .first()
        )

    def _overwrite(run: ReconciliationRun) -> ReconciliationRun:
        run.system_balance = values["system_balance"]
        run.institution_balance = values["institution_balance"]
        run.delta = values["delta"]
        run.status = values["status"]
        run.updated_at = utcnow()
        session.flush()
        return run

    existing = _load()
    if existing is not None:
        return _overwrite(existing)

    run = ReconciliationRun(**values)
    try:
        with session.begin_nested():
            session.add(run)
    except IntegrityError:
        winner = _load()
        if winner is None:
            raise
        return _overwrite(winner)
    return run


def reconcile(
    session: Session,
    account_id: str,
    as_of: datetime | None = None,
    *,
    balance_provider: BalanceProvider | None = None,
    settings: Settings | None = None,
) -> ReconciliationRun:
    """Reconcile one account as of ``as_of`` (default: now) and store the run."""

    settings = settings or Settings()
    provider = balance_provider or LatestRawBalanceProvider()
    as_of = as_of or utcnow()
    account = require_account(session, account_id)

    system_balance = compute_system_balance(session, cash_gl(account), as_of)
    institution_balance = provider.get_balance(session, account, as_of).quantize(
        _CENT, rounding=ROUND_HALF_UP
    )
    delta = (system_balance - institution_balance).quantize(_CENT, rounding=ROUND_HALF_UP)
    status = drift_status(delta, settings.drift_tolerance)

    run = _upsert_run(
        session,
        {
            "account_id": account.id,
            "as_of_date": as_of.date(),
            "system_balance": system_balance,
            "institution_balance": institution_balance,
            "delta": delta,
            "status": status,
        },
    )

    if status == "drift":
        _logger.warning(
            "reconcile:drift account_id=%s as_of=%s system=%s institution=%s delta=%s",
            account.id,
            as_of.date().isoformat(),
            system_balance,
            institution_balance,
            delta,
        )
    else:
        _logger.info(
            "reconcile:ok account_id=%s as_of=%s delta=%s", account.id, as_of.date().isoformat(), delta
        )
    return run


__all__ = ["compute_system_balance", "drift_status", "reconcile"]
