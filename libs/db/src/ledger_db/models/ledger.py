from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    CHAR,
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC ``now``; every timestamp column stores naive UTC."""

    return datetime.now(UTC).replace(tzinfo=None)


# Money columns share one precision so Decimal round-trips stay at 2dp.
Money = Numeric(18, 2)


# ---------------------------
# Reference: accounts, categories
# ---------------------------


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    provider_id: Mapped[str] = mapped_column(String, nullable=False)
    institution_id: Mapped[str | None] = mapped_column(String, nullable=True)
    account_type: Mapped[str] = mapped_column(String, nullable=False)
    currency: Mapped[str] = mapped_column(CHAR(3), nullable=False, default="USD")
    mask: Mapped[str | None] = mapped_column(String(20), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    canonical_txns: Mapped[list[CanonicalTransaction]] = relationship(back_populates="account")

    __table_args__ = (
        CheckConstraint(
            "account_type in ('bank_checking','bank_savings','credit_card','loan','investment')",
            name="ck_accounts_account_type",
        ),
    )

    @property
    def gl_name(self) -> str:
        """Name used inside GL paths, e.g. ``Asset:Cash:<gl_name>``."""
        return self.display_name or self.id

    @property
    def is_credit_card(self) -> bool:
        return "credit_card" in (self.account_type or "").lower()


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    # GAAP-style mapping tag, e.g. "Expense:Meals"
    gaap_map: Mapped[str | None] = mapped_column(String, nullable=True)
    is_transfer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_payment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


# ---------------------------
# Ingestion: raw_transactions
# ---------------------------


class RawTransaction(Base):
    __tablename__ = "raw_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    provider_id: Mapped[str] = mapped_column(String, nullable=False)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("accounts.id"), nullable=False
    )
    hash_v1: Mapped[str] = mapped_column(CHAR(64), nullable=False)
    provider_tx_id: Mapped[str | None] = mapped_column(String, nullable=True)
    timestamp_posted: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    timestamp_auth: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(CHAR(3), nullable=False, default="USD")
    description_raw: Mapped[str] = mapped_column(Text, nullable=False)
    counterparty_raw: Mapped[str | None] = mapped_column(Text, nullable=True)
    balance_after: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    # Open map of primitive values supplied by the provider; no assumed shape.
    meta_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_pending: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ingested_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("provider_id", "account_id", "hash_v1", name="uq_raw_provider_account_hash"),
        # Native ids are optional; uniqueness only applies where present.
        Index(
            "uq_raw_provider_native_id",
            "provider_id",
            "provider_tx_id",
            unique=True,
            postgresql_where=text("provider_tx_id IS NOT NULL"),
            sqlite_where=text("provider_tx_id IS NOT NULL"),
        ),
    )


# ---------------------------
# Core: canonical_transactions
# ---------------------------


class CanonicalTransaction(Base):
    __tablename__ = "canonical_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    group_key: Mapped[str] = mapped_column(String, nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("accounts.id"), nullable=False
    )
    posted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(CHAR(3), nullable=False, default="USD")
    description_norm: Mapped[str] = mapped_column(Text, nullable=False)
    counterparty_norm: Mapped[str | None] = mapped_column(Text, nullable=True)
    tx_type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="posted")
    # Ordered contributing raw ids. Replace the list (never mutate in place)
    # so the ORM notices the change.
    raw_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    account: Mapped[Account] = relationship(back_populates="canonical_txns")
    classification: Mapped[Classification | None] = relationship(
        back_populates="transaction", uselist=False, cascade="all, delete-orphan"
    )
    ledger_entries: Mapped[list[LedgerEntry]] = relationship(
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="LedgerEntry.line_no",
    )

    __table_args__ = (
        CheckConstraint("tx_type in ('debit','credit','fee')", name="ck_canonical_tx_type"),
        CheckConstraint("status in ('pending','posted')", name="ck_canonical_status"),
    )


class TransferLink(Base):
    __tablename__ = "transfer_links"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    txn_out_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("canonical_transactions.id"), nullable=False, index=True
    )
    txn_in_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("canonical_transactions.id"), nullable=False, index=True
    )
    detection_method: Mapped[str] = mapped_column(String, nullable=False)
    confidence: Mapped[float] = mapped_column(Numeric(3, 2, asdecimal=False), nullable=False)
    window_sec: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("txn_out_id", "txn_in_id", name="uq_transfer_pair"),
        CheckConstraint("txn_out_id <> txn_in_id", name="ck_transfer_distinct_legs"),
    )


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    txn_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("canonical_transactions.id"), nullable=False, index=True
    )
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    gl_account: Mapped[str] = mapped_column(String, nullable=False, index=True)
    # Unsigned; direction lives in ``sign``.
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    sign: Mapped[str] = mapped_column(String(6), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    transaction: Mapped[CanonicalTransaction] = relationship(back_populates="ledger_entries")

    __table_args__ = (
        UniqueConstraint("txn_id", "line_no", name="uq_ledger_txn_line"),
        CheckConstraint("sign in ('debit','credit')", name="ck_ledger_sign"),
        CheckConstraint("amount >= 0", name="ck_ledger_amount_unsigned"),
    )


class Classification(Base):
    __tablename__ = "classifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    txn_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("canonical_transactions.id"), nullable=False, unique=True
    )
    category_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("categories.id"), nullable=True
    )
    confidence: Mapped[float] = mapped_column(Numeric(3, 2, asdecimal=False), nullable=False)
    locked_by_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    explanations: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    model_version: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    transaction: Mapped[CanonicalTransaction] = relationship(back_populates="classification")
    category: Mapped[Category | None] = relationship()

    __table_args__ = (
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1",
            name="ck_classification_confidence",
        ),
    )


class ReconciliationRun(Base):
    __tablename__ = "reconciliation_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("accounts.id"), nullable=False
    )
    as_of_date: Mapped[date] = mapped_column(Date, nullable=False)
    system_balance: Mapped[Decimal] = mapped_column(Money, nullable=False)
    institution_balance: Mapped[Decimal] = mapped_column(Money, nullable=False)
    delta: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("account_id", "as_of_date", name="uq_reconciliation_account_day"),
        CheckConstraint("status in ('ok','drift')", name="ck_reconciliation_status"),
    )


__all__ = [
    "Base",
    "Account",
    "Category",
    "RawTransaction",
    "CanonicalTransaction",
    "TransferLink",
    "LedgerEntry",
    "Classification",
    "ReconciliationRun",
    "utcnow",
]
