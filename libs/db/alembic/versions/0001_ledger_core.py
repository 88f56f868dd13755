# ruff: noqa: I001
"""Ledger core tables and seed categories.

Revision ID: 0001_ledger_core
Revises: None
Create Date: 2026-10-18
"""

from __future__ import annotations  # ruff: noqa: I001

import uuid
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_ledger_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _id() -> sa.Column:
    return sa.Column("id", sa.String(36), primary_key=True)


def _ts(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "accounts",
        _id(),
        sa.Column("provider_id", sa.String(), nullable=False),
        sa.Column("institution_id", sa.String(), nullable=True),
        sa.Column("account_type", sa.String(), nullable=False),
        sa.Column("currency", sa.CHAR(3), nullable=False, server_default="USD"),
        sa.Column("mask", sa.String(20), nullable=True),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        sa.CheckConstraint(
            "account_type in ('bank_checking','bank_savings','credit_card','loan','investment')",
            name="ck_accounts_account_type",
        ),
    )

    categories = op.create_table(
        "categories",
        _id(),
        sa.Column("name", sa.String(64), nullable=False, unique=True),
        sa.Column("gaap_map", sa.String(), nullable=True),
        sa.Column("is_transfer", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_payment", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
    )

    # Seed categories (mirrors canonledger.categories.DEFAULT_CATEGORIES)
    seed = (
        ("Meals & Entertainment", "Expense:Meals", False, False),
        ("Software", "Expense:Software", False, False),
        ("Office Supplies", "Expense:Office", False, False),
        ("Transportation", "Expense:Transportation", False, False),
        ("Bank Fees", "Expense:BankFees", False, False),
        ("Interest Income", "Revenue:Interest", False, False),
        ("Shopping", "Expense:Shopping", False, False),
        ("Transfer", "Asset:Cash", True, False),
        ("Payment", "Liability:CreditCard", False, True),
        ("Uncategorized Expense", "Expense:Uncategorized", False, False),
        ("Uncategorized Income", "Revenue:Uncategorized", False, False),
    )
    op.bulk_insert(
        categories,
        [
            {
                "id": str(uuid.uuid4()),
                "name": name,
                "gaap_map": gaap,
                "is_transfer": is_transfer,
                "is_payment": is_payment,
            }
            for name, gaap, is_transfer, is_payment in seed
        ],
    )

    op.create_table(
        "raw_transactions",
        _id(),
        sa.Column("provider_id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("hash_v1", sa.CHAR(64), nullable=False),
        sa.Column("provider_tx_id", sa.String(), nullable=True),
        sa.Column("timestamp_posted", sa.DateTime(), nullable=True),
        sa.Column("timestamp_auth", sa.DateTime(), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.CHAR(3), nullable=False, server_default="USD"),
        sa.Column("description_raw", sa.Text(), nullable=False),
        sa.Column("counterparty_raw", sa.Text(), nullable=True),
        sa.Column("balance_after", sa.Numeric(18, 2), nullable=True),
        sa.Column("meta_json", sa.JSON(), nullable=False),
        sa.Column("is_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("ingested_at"),
        sa.UniqueConstraint(
            "provider_id", "account_id", "hash_v1", name="uq_raw_provider_account_hash"
        ),
    )
    op.create_index(
        "uq_raw_provider_native_id",
        "raw_transactions",
        ["provider_id", "provider_tx_id"],
        unique=True,
        postgresql_where=sa.text("provider_tx_id IS NOT NULL"),
        sqlite_where=sa.text("provider_tx_id IS NOT NULL"),
    )

    op.create_table(
        "canonical_transactions",
        _id(),
        sa.Column("group_key", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("posted_at", sa.DateTime(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.CHAR(3), nullable=False, server_default="USD"),
        sa.Column("description_norm", sa.Text(), nullable=False),
        sa.Column("counterparty_norm", sa.Text(), nullable=True),
        sa.Column("tx_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="posted"),
        sa.Column("raw_ids", sa.JSON(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("tx_type in ('debit','credit','fee')", name="ck_canonical_tx_type"),
        sa.CheckConstraint("status in ('pending','posted')", name="ck_canonical_status"),
    )
    op.create_index(
        "ix_canonical_transactions_group_key", "canonical_transactions", ["group_key"]
    )
    op.create_index(
        "ix_canonical_transactions_posted_at", "canonical_transactions", ["posted_at"]
    )

    op.create_table(
        "transfer_links",
        _id(),
        sa.Column(
            "txn_out_id",
            sa.String(36),
            sa.ForeignKey("canonical_transactions.id"),
            nullable=False,
        ),
        sa.Column(
            "txn_in_id",
            sa.String(36),
            sa.ForeignKey("canonical_transactions.id"),
            nullable=False,
        ),
        sa.Column("detection_method", sa.String(), nullable=False),
        sa.Column("confidence", sa.Numeric(3, 2), nullable=False),
        sa.Column("window_sec", sa.Integer(), nullable=False),
        _ts("created_at"),
        sa.UniqueConstraint("txn_out_id", "txn_in_id", name="uq_transfer_pair"),
        sa.CheckConstraint("txn_out_id <> txn_in_id", name="ck_transfer_distinct_legs"),
    )
    op.create_index("ix_transfer_links_txn_out_id", "transfer_links", ["txn_out_id"])
    op.create_index("ix_transfer_links_txn_in_id", "transfer_links", ["txn_in_id"])

    op.create_table(
        "ledger_entries",
        _id(),
        sa.Column(
            "txn_id",
            sa.String(36),
            sa.ForeignKey("canonical_transactions.id"),
            nullable=False,
        ),
        sa.Column("line_no", sa.Integer(), nullable=False),
        sa.Column("gl_account", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("sign", sa.String(6), nullable=False),
        _ts("created_at"),
        sa.UniqueConstraint("txn_id", "line_no", name="uq_ledger_txn_line"),
        sa.CheckConstraint("sign in ('debit','credit')", name="ck_ledger_sign"),
        sa.CheckConstraint("amount >= 0", name="ck_ledger_amount_unsigned"),
    )
    op.create_index("ix_ledger_entries_txn_id", "ledger_entries", ["txn_id"])
    op.create_index("ix_ledger_entries_gl_account", "ledger_entries", ["gl_account"])

    op.create_table(
        "classifications",
        _id(),
        sa.Column(
            "txn_id",
            sa.String(36),
            sa.ForeignKey("canonical_transactions.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("category_id", sa.String(36), sa.ForeignKey("categories.id"), nullable=True),
        sa.Column("confidence", sa.Numeric(3, 2), nullable=False),
        sa.Column("locked_by_user", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("explanations", sa.JSON(), nullable=False),
        sa.Column("model_version", sa.String(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint(
            "confidence >= 0 AND confidence <= 1", name="ck_classification_confidence"
        ),
    )

    op.create_table(
        "reconciliation_runs",
        _id(),
        sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("as_of_date", sa.Date(), nullable=False),
        sa.Column("system_balance", sa.Numeric(18, 2), nullable=False),
        sa.Column("institution_balance", sa.Numeric(18, 2), nullable=False),
        sa.Column("delta", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("account_id", "as_of_date", name="uq_reconciliation_account_day"),
        sa.CheckConstraint("status in ('ok','drift')", name="ck_reconciliation_status"),
    )


def downgrade() -> None:
    op.drop_table("reconciliation_runs")
    op.drop_table("classifications")
    op.drop_index("ix_ledger_entries_gl_account", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_txn_id", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("ix_transfer_links_txn_in_id", table_name="transfer_links")
    op.drop_index("ix_transfer_links_txn_out_id", table_name="transfer_links")
    op.drop_table("transfer_links")
    op.drop_index("ix_canonical_transactions_posted_at", table_name="canonical_transactions")
    op.drop_index("ix_canonical_transactions_group_key", table_name="canonical_transactions")
    op.drop_table("canonical_transactions")
    op.drop_index("uq_raw_provider_native_id", table_name="raw_transactions")
    op.drop_table("raw_transactions")
    op.drop_table("categories")
    op.drop_table("accounts")
