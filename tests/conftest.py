"""Pytest configuration for test isolation.

Every DB-backed test gets its own file-backed SQLite database under the test's
``tmp_path``. The ledger client keeps one shared engine per process and
refuses to switch URLs, so the engine is disposed after each test.
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# Make the workspace packages importable without an editable install.
_ROOT = Path(__file__).resolve().parents[1]
for _p in (_ROOT / "libs" / "db" / "src", _ROOT / "packages", _ROOT):
    if str(_p) not in sys.path:
        sys.path.insert(0, str(_p))

from ledger_db.client import dispose_engine, session_scope  # noqa: E402

from tests.helpers.db import bootstrap_sqlite_db, create_account  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep ambient ``CANONLEDGER_*``/``DATABASE_URL`` settings out of tests."""

    import os

    for key in list(os.environ):
        if key.startswith("CANONLEDGER_") or key == "DATABASE_URL":
            monkeypatch.delenv(key, raising=False)
    yield
    dispose_engine()


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return bootstrap_sqlite_db(tmp_path / "ledger.sqlite3")


@pytest.fixture
def session(db_url: str, accounts: dict[str, str]):
    """A session (accounts already created) committed when the test body finishes."""

    with session_scope(database_url=db_url) as s:
        yield s


@pytest.fixture
def accounts(db_url: str) -> dict[str, str]:
    """Two bank accounts and one credit card."""

    return {
        "A": create_account(db_url, account_id="A"),
        "B": create_account(db_url, account_id="B"),
        "CC": create_account(db_url, account_id="CC", account_type="credit_card"),
    }
