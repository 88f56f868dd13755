"""Recurring maintenance sweeps.

Each sweep isolates its items: one failing transaction or account is logged
and counted, the rest still run. Every item gets its own unit of work.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func, select

from ledger_db.models.ledger import Account, CanonicalTransaction, utcnow

from . import api
from .balances import BalanceProvider
from .classify import find_sweep_candidates
from .config import Settings, load_settings
from .logging_setup import get_logger

_logger = get_logger("canonledger.sweeps")


@dataclass(slots=True)
class SweepReport:
    name: str
    processed: int = 0
    changed: int = 0
    failures: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "processed": self.processed,
            "changed": self.changed,
            "failures": dict(self.failures),
        }


@dataclass(frozen=True, slots=True)
class Gap:
    account_id: str
    start: datetime
    end: datetime

    @property
    def days(self) -> float:
        return (self.end - self.start).total_seconds() / 86400


def classification_sweep(
    *, database_url: str | None = None, settings: Settings | None = None
) -> SweepReport:
    """Re-classify unclassified and unlocked low-confidence transactions."""

    settings = settings or load_settings()
    report = SweepReport("classification-sweep")
    with api.unit_of_work(database_url=database_url) as session:
        ids = find_sweep_candidates(
            session, threshold=settings.sweep_confidence_threshold, limit=settings.sweep_batch_limit
        )
    for txn_id in ids:
        report.processed += 1
        try:
            outcome = api.classify(txn_id, database_url=database_url)
        except Exception as exc:  # noqa: BLE001 - keep sweeping other transactions
            report.failures[txn_id] = f"{exc.__class__.__name__}: {exc}"
            _logger.error("sweep:classify_failed txn_id=%s error=%s", txn_id, exc.__class__.__name__)
            continue
        report.changed += int(outcome.category_changed)
    _logger.info(
        "sweep:classification processed=%d changed=%d failed=%d",
        report.processed,
        report.changed,
        len(report.failures),
    )
    return report


def recently_active_accounts(
    *, since: datetime, database_url: str | None = None
) -> list[tuple[str, datetime]]:
    """``(account_id, latest posted_at)`` for accounts with activity since ``since``."""

    with api.unit_of_work(database_url=database_url) as session:
        rows = session.execute(
            select(CanonicalTransaction.account_id, func.max(CanonicalTransaction.posted_at))
            .where(CanonicalTransaction.posted_at >= since)
            .group_by(CanonicalTransaction.account_id)
            .order_by(CanonicalTransaction.account_id)
        ).all()
    return [(account_id, latest) for account_id, latest in rows]


def transfer_sweep(
    *, now: datetime | None = None, database_url: str | None = None, settings: Settings | None = None
) -> SweepReport:
    """Run transfer detection for each account with recent activity."""

    settings = settings or load_settings()
    now = now or utcnow()
    report = SweepReport("periodic-transfer-detection")
    since = now - timedelta(days=settings.transfer_lookback_days)
    for account_id, latest in recently_active_accounts(since=since, database_url=database_url):
        report.processed += 1
        try:
            report.changed += api.link_transfers(
                account_id, latest, settings.transfer_window_days, database_url=database_url, settings=settings
            )
        except Exception as exc:  # noqa: BLE001 - keep sweeping other accounts
            report.failures[account_id] = f"{exc.__class__.__name__}: {exc}"
            _logger.error(
                "sweep:transfers_failed account_id=%s error=%s", account_id, exc.__class__.__name__
            )
    _logger.info(
        "sweep:transfers accounts=%d links=%d failed=%d",
        report.processed,
        report.changed,
        len(report.failures),
    )
    return report


def active_account_ids(*, database_url: str | None = None) -> list[str]:
    with api.unit_of_work(database_url=database_url) as session:
        return list(
            session.execute(
                select(Account.id).where(Account.is_active.is_(True)).order_by(Account.id)
            )
            .scalars()
            .all()
        )


def nightly_reconciliation(
    *,
    as_of: datetime | None = None,
    balance_provider: BalanceProvider | None = None,
    database_url: str | None = None,
    settings: Settings | None = None,
) -> SweepReport:
    """Reconcile every active account; a failure for one account spares the rest."""

    settings = settings or load_settings()
    report = SweepReport("nightly-reconciliation")
    for account_id in active_account_ids(database_url=database_url):
        report.processed += 1
        try:
            summary = api.reconcile(
                account_id,
                as_of,
                balance_provider=balance_provider,
                database_url=database_url,
                settings=settings,
            )
        except Exception as exc:  # noqa: BLE001 - per-account isolation
            report.failures[account_id] = f"{exc.__class__.__name__}: {exc}"
            _logger.error(
                "sweep:reconcile_failed account_id=%s error=%s", account_id, exc.__class__.__name__
            )
            continue
        report.changed += int(summary.status == "drift")
    _logger.info(
        "sweep:reconcile accounts=%d drift=%d failed=%d",
        report.processed,
        report.changed,
        len(report.failures),
    )
    return report


def detect_backfill_gaps(
    *, now: datetime | None = None, database_url: str | None = None, settings: Settings | None = None
) -> list[Gap]:
    """Flag quiet stretches longer than the gap threshold in the recent lookback.

    Only reports; nothing is re-fetched.
    """

    settings = settings or load_settings()
    now = now or utcnow()
    since = now - timedelta(days=settings.gap_lookback_days)
    threshold = timedelta(days=settings.gap_threshold_days)

    gaps: list[Gap] = []
    with api.unit_of_work(database_url=database_url) as session:
        account_ids = session.execute(
            select(Account.id).where(Account.is_active.is_(True)).order_by(Account.id)
        ).scalars().all()
        for account_id in account_ids:
            stamps = session.execute(
                select(CanonicalTransaction.posted_at)
                .where(
                    CanonicalTransaction.account_id == account_id,
                    CanonicalTransaction.posted_at >= since,
                )
                .order_by(CanonicalTransaction.posted_at)
            ).scalars().all()
            for prev, cur in zip(stamps, stamps[1:]):
                if cur - prev > threshold:
                    gaps.append(Gap(account_id, prev, cur))

    for gap in gaps:
        _logger.warning(
            "sweep:gap account_id=%s start=%s end=%s days=%.1f",
            gap.account_id,
            gap.start.isoformat(),
            gap.end.isoformat(),
            gap.days,
        )
    _logger.info("sweep:gaps found=%d", len(gaps))
    return gaps


__all__ = [
    "SweepReport",
    "Gap",
    "classification_sweep",
    "recently_active_accounts",
    "transfer_sweep",
    "active_account_ids",
    "nightly_reconciliation",
    "detect_backfill_gaps",
]
