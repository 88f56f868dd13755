"""Input and result models for ``canonledger``.

Raw provider records are validated with pydantic at the ingestion boundary;
everything past that point works with ORM rows from ``ledger_db``. Result
shapes returned by operations are small frozen dataclasses.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Opaque provider metadata: an open map of primitive values.
MetaValue = str | int | float | bool | None

_CENT = Decimal("0.01")


def to_money(raw: Any) -> Decimal:
    """Return ``raw`` as a 2dp Decimal (half-up)."""

    if isinstance(raw, float) and not math.isfinite(raw):
        raise ValueError(f"invalid amount: {raw!r}")
    try:
        d = Decimal(str(raw))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"invalid amount: {raw!r}") from exc
    if not d.is_finite():
        raise ValueError(f"invalid amount: {raw!r}")
    return d.quantize(_CENT, rounding=ROUND_HALF_UP)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class RawRecord(BaseModel):
    """A single provider transaction as received at the ingestion boundary.

    ``description`` / ``date`` / ``pending`` are accepted as aliases for the
    long-form field names so simple feeds can be ingested unchanged.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    provider_tx_id: str | None = None
    timestamp_posted: datetime | None = Field(
        default=None, validation_alias=AliasChoices("timestamp_posted", "date")
    )
    timestamp_auth: datetime | None = None
    amount: Decimal
    currency: str = "USD"
    description_raw: str = Field(
        validation_alias=AliasChoices("description_raw", "description"),
        min_length=1,
        max_length=500,
    )
    counterparty_raw: str | None = Field(default=None, max_length=200)
    balance_after: Decimal | None = None
    meta_json: dict[str, MetaValue] = Field(default_factory=dict)
    is_pending: bool = Field(
        default=False, validation_alias=AliasChoices("is_pending", "pending")
    )

    @field_validator("provider_tx_id", "counterparty_raw", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("timestamp_posted", "timestamp_auth", mode="before")
    @classmethod
    def _parse_timestamp(cls, v: Any) -> Any:
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return None
            # fromisoformat accepts both "YYYY-MM-DD" and full timestamps.
            try:
                v = datetime.fromisoformat(s)
            except ValueError as exc:
                raise ValueError(f"invalid timestamp: {s!r}") from exc
        if isinstance(v, datetime):
            return to_naive_utc(v)
        return v

    @field_validator("amount", "balance_after", mode="before")
    @classmethod
    def _parse_money(cls, v: Any) -> Any:
        if v is None:
            return None
        return to_money(v)

    @field_validator("currency", mode="before")
    @classmethod
    def _upper_currency(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().upper()
            if len(v) != 3:
                raise ValueError("currency must be a 3-letter code")
        return v

    @field_validator("description_raw")
    @classmethod
    def _non_blank_description(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("description is required")
        return v

    def effective_timestamp(self, ingested_at: datetime) -> datetime:
        """Posted, else authorized, else the ingest time."""
        return self.timestamp_posted or self.timestamp_auth or ingested_at


@dataclass(frozen=True, slots=True)
class IngestResult:
    raw_id: str
    canonical_id: str
    raw_created: bool


@dataclass(frozen=True, slots=True)
class RecordFailure:
    index: int
    error_type: str
    message: str


@dataclass(slots=True)
class BatchResult:
    """Per-record outcome of an ingestion batch; failures never abort the batch."""

    succeeded: list[IngestResult] = field(default_factory=list)
    failed: list[RecordFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": [
                {"raw_id": r.raw_id, "canonical_id": r.canonical_id} for r in self.succeeded
            ],
            "failed": [
                {"index": f.index, "error_type": f.error_type, "message": f.message}
                for f in self.failed
            ],
        }


__all__ = [
    "MetaValue",
    "RawRecord",
    "IngestResult",
    "RecordFailure",
    "BatchResult",
    "to_money",
    "to_naive_utc",
]
