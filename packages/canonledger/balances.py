"""Institution balance sources used by the reconciler."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ledger_db.models.ledger import Account, RawTransaction

from .errors import NotFoundError
from .models import to_money


class BalanceProvider(Protocol):
    def get_balance(self, session: Session, account: Account, as_of: datetime) -> Decimal: ...


class LatestRawBalanceProvider:
    """Latest post-transaction balance the provider reported at or before ``as_of``."""

    def get_balance(self, session: Session, account: Account, as_of: datetime) -> Decimal:
        effective = func.coalesce(
            RawTransaction.timestamp_posted, RawTransaction.timestamp_auth, RawTransaction.ingested_at
        )
        stmt = (
            select(RawTransaction.balance_after)
            .where(
                RawTransaction.account_id == account.id,
                RawTransaction.balance_after.is_not(None),
                effective <= as_of,
            )
            .order_by(effective.desc(), RawTransaction.ingested_at.desc())
            .limit(1)
        )
        value = session.execute(stmt).scalar_one_or_none()
        if value is None:
            raise NotFoundError("institution balance", account.id)
        return to_money(value)


class StaticBalanceProvider:
    """Fixed balances keyed by account id."""

    def __init__(self, balances: Mapping[str, Decimal | str | int | float]) -> None:
        self._balances = {k: to_money(v) for k, v in balances.items()}

    def get_balance(self, session: Session, account: Account, as_of: datetime) -> Decimal:
        try:
            return self._balances[account.id]
        except KeyError:
            raise NotFoundError("institution balance", account.id) from None


__all__ = ["BalanceProvider", "LatestRawBalanceProvider", "StaticBalanceProvider"]
