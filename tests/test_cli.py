from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from ledger_db.client import dispose_engine

from canonledger.cli import app

from tests.helpers.db import count_rows, raw

runner = CliRunner()


@pytest.fixture(autouse=True)
def _no_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # The CLI loads .env from the working directory; keep it empty.
    monkeypatch.chdir(tmp_path)


def _invoke(*args: str):
    return runner.invoke(app, list(args))


def _json(result) -> object:
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def test_init_db_creates_schema_and_seeds(tmp_path: Path):
    dispose_engine()
    url = f"sqlite+pysqlite:///{tmp_path / 'fresh.sqlite3'}"
    out = _json(_invoke("init-db", "--database-url", url))
    assert out["categories_created"] == 11

    again = _json(_invoke("seed-categories", "--database-url", url))
    assert again == {"categories_created": 0}


def test_account_ingest_classify_post_reconcile(tmp_path: Path, db_url: str):
    acct = _json(
        _invoke("add-account", "--provider", "P", "--id", "CHK", "--name", "Checking", "--database-url", db_url)
    )
    assert acct == {"id": "CHK", "type": "bank_checking", "gl_name": "Checking"}

    payload = tmp_path / "records.json"
    payload.write_text(
        json.dumps(
            [
                raw("-42.00", "STARBUCKS #123", "2024-01-05"),
                raw("250.00", "PAYROLL ACME", "2024-01-06"),
                {"description": "NO AMOUNT"},
            ]
        ),
        encoding="utf-8",
    )
    batch = _json(_invoke("ingest", str(payload), "--provider", "P", "--account", "CHK", "--database-url", db_url))
    assert batch["total"] == 3
    assert len(batch["succeeded"]) == 2
    assert [f["index"] for f in batch["failed"]] == [2]
    txn_id = batch["succeeded"][0]["canonical_id"]

    cls = _json(_invoke("classify", txn_id, "--database-url", db_url))
    assert cls["category"] == "Meals & Entertainment"
    assert cls["locked"] is False

    override = _json(_invoke("override", txn_id, "Software", "--database-url", db_url))
    assert override == {"txn_id": txn_id, "category": "Software", "locked": True}

    posted = _json(_invoke("post", txn_id, "--database-url", db_url))
    assert posted["lines"] == 2

    run = _json(
        _invoke(
            "reconcile", "CHK", "--as-of", "2024-01-31T23:59:59", "--balance", "208.00", "--database-url", db_url
        )
    )
    assert run["system_balance"] == "208.00"
    assert run["status"] == "ok"
    assert count_rows(db_url, "reconciliation_runs") == 1


def test_link_and_sweeps(db_url: str, accounts):
    linked = _json(_invoke("link", "A", "--date", "2024-01-05", "--window", "2", "--database-url", db_url))
    assert linked == {"account_id": "A", "links_created": 0}

    assert _json(_invoke("sweep", "gaps", "--database-url", db_url)) == []
    report = _json(_invoke("sweep", "classification", "--database-url", db_url))
    assert report["name"] == "classification-sweep"
    assert report["processed"] == 0


def test_errors_exit_non_zero(tmp_path: Path, db_url: str, accounts):
    missing = _invoke("classify", "no-such-txn", "--database-url", db_url)
    assert missing.exit_code == 1
    assert "Error" in missing.output

    assert _invoke("post", "no-such-txn", "--database-url", db_url).exit_code == 1
    assert _invoke("sweep", "everything", "--database-url", db_url).exit_code == 1
    assert _invoke("add-account", "--provider", "P", "--type", "piggy_bank", "--database-url", db_url).exit_code == 1
    assert _invoke("reconcile", "A", "--as-of", "yesterday", "--database-url", db_url).exit_code == 1
    assert _invoke("ingest", str(tmp_path / "absent.json"), "--provider", "P", "--account", "A").exit_code == 1

    bad = tmp_path / "bad.json"
    bad.write_text("[1, 2", encoding="utf-8")
    assert (
        _invoke("ingest", str(bad), "--provider", "P", "--account", "A", "--database-url", db_url).exit_code == 1
    )
