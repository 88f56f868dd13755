"""Fold pending duplicates into their posted counterpart.

Providers often report one event twice: first as *pending* with one
description, later as *posted* with a slightly different one. Without this step
the event is counted twice. A pending canonical transaction in the same
account, with the same amount, posted within the match window and whose
normalized description is similar enough, is merged into the posted one: its
raw ids are carried over and the pending row is deleted.
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from ledger_db.models.ledger import CanonicalTransaction, Classification, TransferLink

from .config import Settings
from .logging_setup import get_logger
from .resolver import append_unique

_logger = get_logger("canonledger.pending")


def levenshtein(a: str, b: str) -> int:
    """Classic edit distance (insert/delete/substitute all cost 1)."""

    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """``(maxLen - distance) / maxLen``; two empty strings are identical."""

    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return (longest - levenshtein(a, b)) / longest


def _carry_user_lock(session: Session, posted: CanonicalTransaction, pending: CanonicalTransaction) -> None:
    # A user's locked decision on the pending copy survives the merge unless the
    # posted copy already has its own lock.
    src = pending.classification
    if src is None or not src.locked_by_user:
        return
    dst = posted.classification
    if dst is not None and dst.locked_by_user:
        return
    if dst is None:
        dst = Classification(txn_id=posted.id, model_version=src.model_version, confidence=src.confidence)
        session.add(dst)
        posted.classification = dst
    dst.category_id = src.category_id
    dst.confidence = src.confidence
    dst.locked_by_user = True
    dst.explanations = dict(src.explanations or {})
    dst.model_version = src.model_version


def merge_pending(
    session: Session, posted: CanonicalTransaction, *, settings: Settings | None = None
) -> list[str]:
    """Merge similar pending duplicates into ``posted``; return the merged ids."""

    settings = settings or Settings()
    if posted.status != "posted":
        return []

    window = timedelta(days=settings.match_window_days)
    candidates = (
        session.execute(
            select(CanonicalTransaction)
            .where(
                CanonicalTransaction.account_id == posted.account_id,
                CanonicalTransaction.status == "pending",
                CanonicalTransaction.amount == posted.amount,
                CanonicalTransaction.posted_at >= posted.posted_at - window,
                CanonicalTransaction.posted_at <= posted.posted_at + window,
                CanonicalTransaction.id != posted.id,
            )
            .order_by(CanonicalTransaction.posted_at, CanonicalTransaction.id)
        )
        .scalars()
        .all()
    )

    merged: list[str] = []
    posted_desc = (posted.description_norm or "").lower()
    for candidate in candidates:
        score = similarity(posted_desc, (candidate.description_norm or "").lower())
        if score < settings.pending_similarity_threshold:
            _logger.debug(
                "pending:skip posted_id=%s pending_id=%s similarity=%.3f",
                posted.id,
                candidate.id,
                score,
            )
            continue

        posted.raw_ids = append_unique(posted.raw_ids or [], *(candidate.raw_ids or []))
        _carry_user_lock(session, posted, candidate)

        dropped_links = session.execute(
            delete(TransferLink).where(
                or_(TransferLink.txn_out_id == candidate.id, TransferLink.txn_in_id == candidate.id)
            )
        ).rowcount
        # Classification and ledger entries go with the row (ORM cascade).
        session.delete(candidate)
        session.flush()
        merged.append(candidate.id)
        _logger.info(
            "pending:merged pending_id=%s posted_id=%s similarity=%.3f dropped_links=%d",
            candidate.id,
            posted.id,
            score,
            dropped_links or 0,
        )
    return merged


__all__ = ["levenshtein", "similarity", "merge_pending"]
