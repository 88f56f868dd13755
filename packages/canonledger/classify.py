"""Rule-based spend classification.

Rules are an ordered list of ``(pattern, category, confidence)`` evaluated
top-down against the normalized description; the first match wins, so the
order below is part of the behavior. Nothing matching falls back to
"Uncategorized Expense" (outflow) or "Uncategorized Income" (inflow) at
confidence 0.1.

A classification locked by a user is never touched by automatic runs.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import NamedTuple

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ledger_db.models.ledger import CanonicalTransaction, Classification, utcnow

from .categories import get_or_create_category
from .config import Settings
from .errors import NotFoundError, ValidationError
from .logging_setup import get_logger

_logger = get_logger("canonledger.classify")

RULES_MODEL_VERSION = "rules-1.0"
MANUAL_MODEL_VERSION = "manual"
FALLBACK_CONFIDENCE = 0.1


class Rule(NamedTuple):
    pattern: re.Pattern[str]
    category: str
    confidence: float


def _rule(pattern: str, category: str, confidence: float) -> Rule:
    return Rule(re.compile(pattern, re.IGNORECASE), category, confidence)


RULES: tuple[Rule, ...] = (
    _rule(r"starbucks|coffee|cafe", "Meals & Entertainment", 0.9),
    _rule(r"uber|lyft|taxi", "Transportation", 0.85),
    _rule(r"amazon|amzn mktp", "Shopping", 0.8),
    _rule(r"paypal|venmo|zelle", "Transfer", 0.7),
    _rule(r"fee|charge", "Bank Fees", 0.9),
    _rule(r"interest", "Interest Income", 0.95),
    _rule(r"payment.*thank", "Payment", 0.9),
)


@dataclass(frozen=True, slots=True)
class Decision:
    category: str
    confidence: float
    rule: str | None


@dataclass(frozen=True, slots=True)
class ClassifyOutcome:
    txn_id: str
    category: str | None
    confidence: float | None
    skipped_locked: bool = False
    category_changed: bool = False


def decide(description: str, amount) -> Decision:
    """Pure rule evaluation; no database access."""

    text = description or ""
    for rule in RULES:
        if rule.pattern.search(text):
            return Decision(rule.category, rule.confidence, rule.pattern.pattern)
    fallback = "Uncategorized Expense" if amount < 0 else "Uncategorized Income"
    return Decision(fallback, FALLBACK_CONFIDENCE, None)


def _require_txn(session: Session, txn_id: str) -> CanonicalTransaction:
    txn = session.get(CanonicalTransaction, txn_id)
    if txn is None:
        raise NotFoundError("canonical transaction", txn_id)
    return txn


def classify(session: Session, txn_id: str) -> ClassifyOutcome:
    """Classify ``txn_id`` by rules unless a user has locked its category."""

    txn = _require_txn(session, txn_id)
    current = txn.classification
    if current is not None and current.locked_by_user:
        _logger.debug("classify:locked txn_id=%s", txn_id)
        return ClassifyOutcome(
            txn_id=txn_id,
            category=current.category.name if current.category else None,
            confidence=current.confidence,
            skipped_locked=True,
        )

    decision = decide(txn.description_norm, txn.amount)
    category, _ = get_or_create_category(session, decision.category)
    explanations = {"rule": decision.rule} if decision.rule else {"rule": None, "fallback": True}

    previous_category_id = current.category_id if current is not None else None
    if current is None:
        current = Classification(
            txn_id=txn.id,
            category_id=category.id,
            confidence=decision.confidence,
            locked_by_user=False,
            explanations=explanations,
            model_version=RULES_MODEL_VERSION,
        )
        session.add(current)
        txn.classification = current
    else:
        current.category_id = category.id
        current.confidence = decision.confidence
        current.explanations = explanations
        current.model_version = RULES_MODEL_VERSION
        current.updated_at = utcnow()
    session.flush()
    session.refresh(current, ["category"])

    changed = previous_category_id != category.id
    _logger.info(
        "classify:done txn_id=%s category=%s confidence=%.2f changed=%s",
        txn_id,
        category.name,
        decision.confidence,
        changed,
    )
    return ClassifyOutcome(
        txn_id=txn_id,
        category=category.name,
        confidence=decision.confidence,
        category_changed=changed,
    )


def override_classification(
    session: Session, txn_id: str, category_name: str, *, locked: bool = True
) -> ClassifyOutcome:
    """Set the category by hand; a locked override survives automatic runs."""

    if not category_name or not category_name.strip():
        raise ValidationError("category name is required")
    txn = _require_txn(session, txn_id)
    category, _ = get_or_create_category(session, category_name)

    current = txn.classification
    previous_category_id = current.category_id if current is not None else None
    if current is None:
        current = Classification(txn_id=txn.id, model_version=MANUAL_MODEL_VERSION, confidence=1.0)
        session.add(current)
        txn.classification = current
    current.category_id = category.id
    current.confidence = 1.0
    current.locked_by_user = locked
    current.explanations = {"override": True}
    current.model_version = MANUAL_MODEL_VERSION
    current.updated_at = utcnow()
    session.flush()
    session.refresh(current, ["category"])

    _logger.info(
        "classify:override txn_id=%s category=%s locked=%s", txn_id, category.name, locked
    )
    return ClassifyOutcome(
        txn_id=txn_id,
        category=category.name,
        confidence=1.0,
        category_changed=previous_category_id != category.id,
    )


def find_sweep_candidates(
    session: Session, *, threshold: float | None = None, limit: int | None = None
) -> list[str]:
    """Ids of unclassified or unlocked low-confidence transactions, newest first."""

    settings = Settings()
    threshold = settings.sweep_confidence_threshold if threshold is None else threshold
    limit = settings.sweep_batch_limit if limit is None else limit
    stmt = (
        select(CanonicalTransaction.id)
        .outerjoin(Classification, Classification.txn_id == CanonicalTransaction.id)
        .where(
            or_(
                Classification.id.is_(None),
                (Classification.locked_by_user.is_(False)) & (Classification.confidence < threshold),
            )
        )
        .order_by(CanonicalTransaction.posted_at.desc(), CanonicalTransaction.id)
        .limit(limit)
    )
    return list(session.execute(stmt).scalars().all())


__all__ = [
    "RULES",
    "RULES_MODEL_VERSION",
    "MANUAL_MODEL_VERSION",
    "FALLBACK_CONFIDENCE",
    "Rule",
    "Decision",
    "ClassifyOutcome",
    "decide",
    "classify",
    "override_classification",
    "find_sweep_candidates",
]
