"""Category reference data and resolve-or-create helpers.

The ``categories`` table is small and mostly static: the default set below is
seeded by the initial migration (and by ``seed_default_categories`` for
databases bootstrapped from ORM metadata). Classification may still create a
category by name on first use.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_db.models.ledger import Category

from .errors import NotFoundError, ValidationError
from .logging_setup import get_logger

_logger = get_logger("canonledger.categories")


@dataclass(frozen=True, slots=True)
class CategorySeed:
    name: str
    gaap_map: str
    is_transfer: bool = False
    is_payment: bool = False


DEFAULT_CATEGORIES: tuple[CategorySeed, ...] = (
    CategorySeed("Meals & Entertainment", "Expense:Meals"),
    CategorySeed("Software", "Expense:Software"),
    CategorySeed("Office Supplies", "Expense:Office"),
    CategorySeed("Transportation", "Expense:Transportation"),
    CategorySeed("Bank Fees", "Expense:BankFees"),
    CategorySeed("Interest Income", "Revenue:Interest"),
    CategorySeed("Shopping", "Expense:Shopping"),
    CategorySeed("Transfer", "Asset:Cash", is_transfer=True),
    CategorySeed("Payment", "Liability:CreditCard", is_payment=True),
    CategorySeed("Uncategorized Expense", "Expense:Uncategorized"),
    CategorySeed("Uncategorized Income", "Revenue:Uncategorized"),
)

_SEED_BY_NAME = {s.name.lower(): s for s in DEFAULT_CATEGORIES}


def normalize_name(name: str) -> str:
    """Return a trimmed, single-spaced representation of ``name``.

    Does not change case.
    """

    return " ".join(name.strip().split())


def find_category(session: Session, name: str) -> Category | None:
    """Case-insensitive lookup by name."""

    n = normalize_name(name)
    return (
        session.execute(select(Category).where(func.lower(Category.name) == n.lower()))
        .scalars()
        .first()
    )


def require_category(session: Session, name: str) -> Category:
    row = find_category(session, name)
    if row is None:
        raise NotFoundError("category", name)
    return row


def get_or_create_category(session: Session, name: str) -> tuple[Category, bool]:
    """Return ``(category, created)``; known default names get their flags.

    A concurrent creation of the same name is resolved by re-reading the row.
    """

    n = normalize_name(name)
    if not n or len(n) > 64:
        raise ValidationError(f"invalid category name: {name!r}")

    existing = find_category(session, n)
    if existing is not None:
        return existing, False

    seed = _SEED_BY_NAME.get(n.lower())
    row = Category(
        name=n,
        gaap_map=seed.gaap_map if seed else None,
        is_transfer=seed.is_transfer if seed else False,
        is_payment=seed.is_payment if seed else False,
    )
    try:
        with session.begin_nested():
            session.add(row)
    except IntegrityError:
        existing = find_category(session, n)
        if existing is None:
            raise
        return existing, False

    _logger.info("categories:created name=%s", n)
    return row, True


def seed_default_categories(session: Session) -> int:
    """Ensure every default category exists; return how many were created."""

    created = 0
    for seed in DEFAULT_CATEGORIES:
        _, was_created = get_or_create_category(session, seed.name)
        created += int(was_created)
    _logger.info("categories:seeded created=%d total=%d", created, len(DEFAULT_CATEGORIES))
    return created


def list_categories(session: Session) -> list[Category]:
    return list(session.execute(select(Category).order_by(Category.name)).scalars().all())


__all__ = [
    "CategorySeed",
    "DEFAULT_CATEGORIES",
    "normalize_name",
    "find_category",
    "require_category",
    "get_or_create_category",
    "seed_default_categories",
    "list_categories",
]
