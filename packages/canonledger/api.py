"""Public operations for ``canonledger``.

Each function owns one unit of work: it opens a session with
``ledger_db.client.session_scope``, runs the operation, and commits, so
failures leave no partial side effects. Store outages surface as
``TransientStoreError`` so the job layer can retry them.

- :func:`ingest_one` -> canonical transaction id
- :func:`ingest_batch` -> :class:`~canonledger.models.BatchResult`
- :func:`classify`, :func:`override_classification`
- :func:`link_transfers` -> number of links created
- :func:`post_ledger`
- :func:`reconcile` -> :class:`ReconcileSummary`
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import Session

from ledger_db.client import session_scope

from . import classify as _classify
from . import ingest as _ingest
from . import ledger as _ledger
from . import reconcile as _reconcile
from . import transfers as _transfers
from .balances import BalanceProvider
from .config import Settings, load_settings
from .errors import TransientStoreError
from .logging_setup import get_logger
from .models import BatchResult, RecordFailure

_logger = get_logger("canonledger.api")


@contextmanager
def unit_of_work(*, database_url: str | None = None) -> Iterator[Session]:
    """``session_scope`` that reports store outages as ``TransientStoreError``."""

    try:
        with session_scope(database_url=database_url) as session:
            yield session
    except (OperationalError, DisconnectionError) as exc:
        _logger.warning("store:unavailable error=%s", exc.__class__.__name__)
        raise TransientStoreError(str(exc.orig if hasattr(exc, "orig") else exc)) from exc


@dataclass(frozen=True, slots=True)
class ReconcileSummary:
    account_id: str
    as_of_date: date
    system_balance: Decimal
    institution_balance: Decimal
    delta: Decimal
    status: str


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def ingest_one(
    provider_id: str,
    account_id: str,
    record: Mapping[str, Any],
    *,
    database_url: str | None = None,
    settings: Settings | None = None,
) -> str:
    """Ingest one raw record and return its canonical transaction id."""

    with unit_of_work(database_url=database_url) as session:
        result = _ingest.ingest_one(
            session,
            provider_id=provider_id,
            account_id=account_id,
            record=record,
            settings=settings or load_settings(),
        )
        return result.canonical_id


def ingest_batch(
    provider_id: str,
    account_id: str,
    records: Iterable[Mapping[str, Any]],
    *,
    database_url: str | None = None,
    settings: Settings | None = None,
) -> BatchResult:
    """Ingest each record in its own unit of work; failures never abort the batch."""

    settings = settings or load_settings()
    out = BatchResult()
    for idx, record in enumerate(records):
        try:
            with unit_of_work(database_url=database_url) as session:
                result = _ingest.ingest_one(
                    session,
                    provider_id=provider_id,
                    account_id=account_id,
                    record=record,
                    settings=settings,
                )
        except Exception as exc:  # noqa: BLE001 - one bad record never aborts the batch
            _logger.warning(
                "ingest:record_failed index=%d error=%s message=%s",
                idx,
                exc.__class__.__name__,
                exc,
            )
            out.failed.append(RecordFailure(idx, exc.__class__.__name__, str(exc)))
            continue
        out.succeeded.append(result)

    _logger.info(
        "ingest:batch_done provider=%s account_id=%s total=%d succeeded=%d failed=%d",
        provider_id,
        account_id,
        out.total,
        len(out.succeeded),
        len(out.failed),
    )
    return out


def classify(txn_id: str, *, database_url: str | None = None) -> _classify.ClassifyOutcome:
    """Classify one transaction and repost its ledger when the category moved."""

    with unit_of_work(database_url=database_url) as session:
        outcome = _classify.classify(session, txn_id)
        if outcome.category_changed:
            _ledger.post_ledger(session, txn_id)
        return outcome


def override_classification(
    txn_id: str, category_name: str, *, locked: bool = True, database_url: str | None = None
) -> _classify.ClassifyOutcome:
    with unit_of_work(database_url=database_url) as session:
        outcome = _classify.override_classification(session, txn_id, category_name, locked=locked)
        if outcome.category_changed:
            _ledger.post_ledger(session, txn_id)
        return outcome


def link_transfers(
    account_id: str,
    around: date | datetime,
    window_days: int | None = None,
    *,
    database_url: str | None = None,
    settings: Settings | None = None,
) -> int:
    """Detect transfers around ``around`` and repost both legs of each new link."""

    with unit_of_work(database_url=database_url) as session:
        links = _transfers.link_transfers(
            session,
            account_id,
            _as_datetime(around),
            window_days,
            settings=settings or load_settings(),
        )
        for leg_id in sorted({leg for link in links for leg in (link.txn_out_id, link.txn_in_id)}):
            _ledger.post_ledger(session, leg_id)
        return len(links)


def post_ledger(txn_id: str, *, database_url: str | None = None) -> int:
    """Repost one transaction; return the number of lines written."""

    with unit_of_work(database_url=database_url) as session:
        return len(_ledger.post_ledger(session, txn_id))


def reconcile(
    account_id: str,
    as_of: date | datetime | None = None,
    *,
    balance_provider: BalanceProvider | None = None,
    database_url: str | None = None,
    settings: Settings | None = None,
) -> ReconcileSummary:
    """Reconcile one account; a plain date means end of that day."""

    if isinstance(as_of, datetime) or as_of is None:
        as_of_dt = as_of
    else:
        as_of_dt = datetime.combine(as_of + timedelta(days=1), time.min) - timedelta(microseconds=1)

    with unit_of_work(database_url=database_url) as session:
        run = _reconcile.reconcile(
            session,
            account_id,
            as_of_dt,
            balance_provider=balance_provider,
            settings=settings or load_settings(),
        )
        return ReconcileSummary(
            account_id=run.account_id,
            as_of_date=run.as_of_date,
            system_balance=run.system_balance,
            institution_balance=run.institution_balance,
            delta=run.delta,
            status=run.status,
        )


__all__ = [
    "unit_of_work",
    "ReconcileSummary",
    "ingest_one",
    "ingest_batch",
    "classify",
    "override_classification",
    "link_transfers",
    "post_ledger",
    "reconcile",
]
