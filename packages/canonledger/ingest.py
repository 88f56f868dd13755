"""Per-record ingestion pipeline.

``ingest_one`` runs the ordered sequence for a single provider record inside
the caller's session:

    validate -> raw upsert -> resolve -> pending merge -> transfer link
             -> ledger post -> classify (-> repost when the category moved)

The steps share one session so a failure anywhere rolls the record back as a
unit when the caller's scope ends.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

import pydantic
from sqlalchemy.orm import Session

from .classify import classify
from .config import Settings
from .errors import ValidationError
from .ledger import post_ledger
from .logging_setup import get_logger
from .models import IngestResult, RawRecord
from .pending import merge_pending
from .persistence import require_account, upsert_raw_transaction
from .resolver import resolve
from .transfers import link_transfers

_logger = get_logger("canonledger.ingest")


def parse_record(record: RawRecord | Mapping[str, Any]) -> RawRecord:
    """Validate a raw mapping, translating pydantic errors into ``ValidationError``."""

    if isinstance(record, RawRecord):
        return record
    if not isinstance(record, Mapping):
        raise ValidationError(f"raw record must be a mapping, got {type(record).__name__}")
    try:
        return RawRecord.model_validate(dict(record))
    except pydantic.ValidationError as exc:
        errors = exc.errors(include_url=False)
        fields = ", ".join(".".join(str(p) for p in e.get("loc", ())) or "?" for e in errors)
        raise ValidationError(f"invalid raw record ({fields})", errors=errors) from exc


def ingest_one(
    session: Session,
    *,
    provider_id: str,
    account_id: str,
    record: RawRecord | Mapping[str, Any],
    ingested_at: datetime | None = None,
    settings: Settings | None = None,
) -> IngestResult:
    """Ingest one provider record end to end; return raw and canonical ids."""

    settings = settings or Settings()
    parsed = parse_record(record)
    require_account(session, account_id)

    raw, created = upsert_raw_transaction(
        session,
        provider_id=provider_id,
        account_id=account_id,
        record=parsed,
        ingested_at=ingested_at,
    )
    txn = resolve(session, raw, raw_created=created, settings=settings)

    if txn.status == "posted":
        merge_pending(session, txn, settings=settings)

    links = link_transfers(session, txn.account_id, txn.posted_at, settings=settings)
    # Legs of new links were posted without the link; bring them in line.
    relinked = {leg for link in links for leg in (link.txn_out_id, link.txn_in_id)} - {txn.id}
    for leg_id in sorted(relinked):
        post_ledger(session, leg_id)
    post_ledger(session, txn.id)

    outcome = classify(session, txn.id)
    if outcome.category_changed:
        post_ledger(session, txn.id)

    _logger.info(
        "ingest:done provider=%s account_id=%s raw_id=%s raw_created=%s canonical_id=%s status=%s",
        provider_id,
        account_id,
        raw.id,
        created,
        txn.id,
        txn.status,
    )
    return IngestResult(raw_id=raw.id, canonical_id=txn.id, raw_created=created)


def iter_records(payload: Any) -> Iterable[Any]:
    """Accept either a JSON array of records or ``{"records": [...]}``."""

    if isinstance(payload, Mapping) and "records" in payload:
        payload = payload["records"]
    if not isinstance(payload, list):
        raise ValidationError("expected a JSON array of raw records")
    return payload


__all__ = ["parse_record", "ingest_one", "iter_records"]
