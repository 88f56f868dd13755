"""Shared SQLAlchemy models registry for the ledger database."""

from .ledger import (
    Account,
    Base,
    CanonicalTransaction,
    Category,
    Classification,
    LedgerEntry,
    RawTransaction,
    ReconciliationRun,
    TransferLink,
    utcnow,
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
