"""Public interface for the ``canonledger`` package.

This module exposes the package's unit-of-work operations, error types and
input/result models as the stable import surface. There is no runtime logic
here, only symbol re-exports. Session-level building blocks live in the
submodules (``resolver``, ``pending``, ``transfers``, ``ledger``,
``classify``, ``reconcile``, ``ingest``).
"""

from .api import (
    ReconcileSummary,
    classify,
    ingest_batch,
    ingest_one,
    link_transfers,
    override_classification,
    post_ledger,
    reconcile,
)
from .config import Settings, load_settings
from .errors import (
    CanonLedgerError,
    InvariantViolation,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from .models import BatchResult, IngestResult, RawRecord, RecordFailure

__all__ = [
    # API
    "ingest_one",
    "ingest_batch",
    "classify",
    "override_classification",
    "link_transfers",
    "post_ledger",
    "reconcile",
    "ReconcileSummary",
    # Config
    "Settings",
    "load_settings",
    # Errors
    "CanonLedgerError",
    "ValidationError",
    "NotFoundError",
    "TransientStoreError",
    "InvariantViolation",
    # Models
    "RawRecord",
    "IngestResult",
    "RecordFailure",
    "BatchResult",
]
