"""Runtime tunables for the processing core and the job layer.

Values come from ``CANONLEDGER_*`` environment variables (entrypoints load a
local ``.env`` with python-dotenv first). Unset or unparsable values fall back
to the defaults below. ``DATABASE_URL`` is read by ``ledger_db.client``, not
here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation


@dataclass(frozen=True, slots=True)
class Settings:
    # Canonical resolution / pending merge
    match_window_days: int = 3
    pending_similarity_threshold: float = 0.8
    # Transfer linking
    transfer_window_days: int = 3
    transfer_amount_tolerance: Decimal = Decimal("0.01")
    transfer_confidence: float = 0.9
    transfer_lookback_days: int = 7
    # Reconciliation
    drift_tolerance: Decimal = Decimal("1.00")
    # Classification sweep
    sweep_confidence_threshold: float = 0.6
    sweep_batch_limit: int = 1000
    # Backfill gap check
    gap_lookback_days: int = 30
    gap_threshold_days: int = 7
    # Job layer
    workers_per_queue: int = 2
    backoff_base_seconds: float = 2.0
    default_attempts: int = 3
    ingestion_attempts: int = 5
    completed_history: int = 100
    failed_history: int = 200


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    try:
        value = int(raw) if raw else None
    except ValueError:
        value = None
    return value if value is not None and value > 0 else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(name)
    try:
        return Decimal(raw) if raw else default
    except InvalidOperation:
        return default


def load_settings() -> Settings:
    """Build :class:`Settings` from the environment."""

    d = Settings()
    return Settings(
        match_window_days=_env_int("CANONLEDGER_MATCH_WINDOW_DAYS", d.match_window_days),
        pending_similarity_threshold=_env_float(
            "CANONLEDGER_PENDING_SIMILARITY", d.pending_similarity_threshold
        ),
        transfer_window_days=_env_int("CANONLEDGER_TRANSFER_WINDOW_DAYS", d.transfer_window_days),
        transfer_amount_tolerance=_env_decimal(
            "CANONLEDGER_TRANSFER_TOLERANCE", d.transfer_amount_tolerance
        ),
        transfer_confidence=d.transfer_confidence,
        transfer_lookback_days=_env_int(
            "CANONLEDGER_TRANSFER_LOOKBACK_DAYS", d.transfer_lookback_days
        ),
        drift_tolerance=_env_decimal("CANONLEDGER_DRIFT_TOLERANCE", d.drift_tolerance),
        sweep_confidence_threshold=_env_float(
            "CANONLEDGER_SWEEP_CONFIDENCE", d.sweep_confidence_threshold
        ),
        sweep_batch_limit=_env_int("CANONLEDGER_SWEEP_LIMIT", d.sweep_batch_limit),
        gap_lookback_days=_env_int("CANONLEDGER_GAP_LOOKBACK_DAYS", d.gap_lookback_days),
        gap_threshold_days=_env_int("CANONLEDGER_GAP_THRESHOLD_DAYS", d.gap_threshold_days),
        workers_per_queue=_env_int("CANONLEDGER_WORKERS_PER_QUEUE", d.workers_per_queue),
        backoff_base_seconds=_env_float("CANONLEDGER_BACKOFF_SECONDS", d.backoff_base_seconds),
        default_attempts=_env_int("CANONLEDGER_ATTEMPTS", d.default_attempts),
        ingestion_attempts=_env_int("CANONLEDGER_INGEST_ATTEMPTS", d.ingestion_attempts),
        completed_history=_env_int("CANONLEDGER_COMPLETED_HISTORY", d.completed_history),
        failed_history=_env_int("CANONLEDGER_FAILED_HISTORY", d.failed_history),
    )


__all__ = ["Settings", "load_settings"]
