"""Error taxonomy shared by the processing core and the job layer.

- ``ValidationError``: a malformed raw record. Rejects that record only.
- ``NotFoundError``: a referenced account/category/transaction is missing.
- ``TransientStoreError``: the store is unavailable; safe to retry.
- ``InvariantViolation``: a write could not complete without breaking an
  invariant (e.g. a partial ledger repost). Never leaves partial state.

The orchestrator treats ``ValidationError`` and ``NotFoundError`` as terminal
and retries everything else.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class CanonLedgerError(Exception):
    """Base class for all domain errors raised by ``canonledger``."""


class ValidationError(CanonLedgerError, ValueError):
    def __init__(self, message: str, *, errors: Sequence[Any] | None = None) -> None:
        super().__init__(message)
        self.errors: list[Any] = list(errors or [])


class NotFoundError(CanonLedgerError, LookupError):
    def __init__(self, kind: str, key: Any) -> None:
        super().__init__(f"{kind} not found: {key!r}")
        self.kind = kind
        self.key = key


class TransientStoreError(CanonLedgerError):
    pass


class InvariantViolation(CanonLedgerError):
    pass


TERMINAL_ERRORS: tuple[type[BaseException], ...] = (ValidationError, NotFoundError)


def is_retryable(exc: BaseException) -> bool:
    """Return False for errors that would fail identically on every attempt."""

    return not isinstance(exc, TERMINAL_ERRORS)


__all__ = [
    "CanonLedgerError",
    "ValidationError",
    "NotFoundError",
    "TransientStoreError",
    "InvariantViolation",
    "TERMINAL_ERRORS",
    "is_retryable",
]
