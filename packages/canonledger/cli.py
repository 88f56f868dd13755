# ruff: noqa: I001
"""CLI for the ``canonledger`` package.

A Typer console interface over :mod:`canonledger.api`, the sweeps and the job
orchestrator. Environment variables (notably ``DATABASE_URL``) are loaded from
a local ``.env`` using ``python-dotenv`` before any command runs. Business
logic lives in the library modules; commands only parse input and print
results as JSON.
"""

from __future__ import annotations

import json
import signal
import threading
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv

from .errors import CanonLedgerError
from .logging_setup import configure_logging


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="Normalize, link, post and reconcile provider transactions.",
)

DatabaseUrlOption = Annotated[
    str | None, typer.Option("--database-url", help="Override DATABASE_URL (falls back to env var).")
]


def _echo_json(value: Any) -> None:
    typer.echo(json.dumps(value, indent=2, sort_keys=True, default=_json_default))


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "isoformat"):
        return value.isoformat()
    raise TypeError(f"not JSON serializable: {type(value).__name__}")


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


def _parse_datetime(value: str | None, *, option: str) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        _fail(f"{option} must be an ISO date or timestamp, got {value!r}")
    return None  # pragma: no cover - _fail raises


@app.callback()
def main(
    log_level: Annotated[
        str | None, typer.Option("--log-level", help="Logging level (default: env or INFO).")
    ] = None,
) -> None:
    """Load ``.env`` from the working directory and configure logging."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging(log_level)


@app.command("init-db")
def init_db_cmd(database_url: DatabaseUrlOption = None) -> None:
    """Create all tables from the ORM metadata and seed default categories.

    Production databases should use ``alembic upgrade head`` instead.
    """

    from ledger_db.client import get_engine
    from ledger_db.models import Base

    from .api import unit_of_work
    from .categories import seed_default_categories

    Base.metadata.create_all(get_engine(database_url=database_url))
    with unit_of_work(database_url=database_url) as session:
        created = seed_default_categories(session)
    _echo_json({"tables": len(Base.metadata.tables), "categories_created": created})


@app.command("seed-categories")
def seed_categories_cmd(database_url: DatabaseUrlOption = None) -> None:
    """Insert any missing default categories."""

    from .api import unit_of_work
    from .categories import seed_default_categories

    with unit_of_work(database_url=database_url) as session:
        created = seed_default_categories(session)
    _echo_json({"categories_created": created})


@app.command("add-account")
def add_account_cmd(
    provider: Annotated[str, typer.Option("--provider", help="Provider identifier.")],
    account_type: Annotated[
        str,
        typer.Option(
            "--type", help="bank_checking | bank_savings | credit_card | loan | investment"
        ),
    ] = "bank_checking",
    name: Annotated[str | None, typer.Option("--name", help="Display name used in GL paths.")] = None,
    account_id: Annotated[str | None, typer.Option("--id", help="Explicit account id.")] = None,
    currency: Annotated[str, typer.Option("--currency")] = "USD",
    mask: Annotated[str | None, typer.Option("--mask")] = None,
    database_url: DatabaseUrlOption = None,
) -> None:
    """Register an account so records can be ingested for it."""

    from ledger_db.models import Account

    from .api import unit_of_work

    allowed = {"bank_checking", "bank_savings", "credit_card", "loan", "investment"}
    if account_type not in allowed:
        _fail(f"--type must be one of {', '.join(sorted(allowed))}")
    with unit_of_work(database_url=database_url) as session:
        account = Account(
            provider_id=provider,
            account_type=account_type,
            display_name=name,
            currency=currency.upper(),
            mask=mask,
        )
        if account_id:
            account.id = account_id
        session.add(account)
        session.flush()
        out = {"id": account.id, "type": account.account_type, "gl_name": account.gl_name}
    _echo_json(out)


@app.command("ingest")
def ingest_cmd(
    path: Annotated[Path, typer.Argument(help="JSON file holding an array of raw records.")],
    provider: Annotated[str, typer.Option("--provider", help="Provider identifier.")],
    account: Annotated[str, typer.Option("--account", help="Account id the records belong to.")],
    database_url: DatabaseUrlOption = None,
) -> None:
    """Ingest a batch of raw records; bad records are reported, not fatal."""

    from .api import ingest_batch
    from .ingest import iter_records

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        _fail(f"file not found: {path}")
    except json.JSONDecodeError as e:
        _fail(f"invalid JSON in {path}: {e}")
    try:
        records = list(iter_records(payload))
    except CanonLedgerError as e:
        _fail(str(e))

    result = ingest_batch(provider, account, records, database_url=database_url)
    _echo_json(result.as_dict())
    if result.failed and not result.succeeded:
        raise typer.Exit(1)


@app.command("classify")
def classify_cmd(txn_id: str, database_url: DatabaseUrlOption = None) -> None:
    """Classify one canonical transaction by rules."""

    from .api import classify

    try:
        outcome = classify(txn_id, database_url=database_url)
    except CanonLedgerError as e:
        _fail(str(e))
    _echo_json(
        {
            "txn_id": outcome.txn_id,
            "category": outcome.category,
            "confidence": outcome.confidence,
            "locked": outcome.skipped_locked,
        }
    )


@app.command("override")
def override_cmd(
    txn_id: str,
    category: str,
    unlock: Annotated[bool, typer.Option("--unlock", help="Do not lock the override.")] = False,
    database_url: DatabaseUrlOption = None,
) -> None:
    """Set a transaction's category by hand (locked by default)."""

    from .api import override_classification

    try:
        outcome = override_classification(
            txn_id, category, locked=not unlock, database_url=database_url
        )
    except CanonLedgerError as e:
        _fail(str(e))
    _echo_json({"txn_id": outcome.txn_id, "category": outcome.category, "locked": not unlock})


@app.command("link")
def link_cmd(
    account_id: str,
    date: Annotated[str, typer.Option("--date", help="Center of the search window (ISO).")],
    window: Annotated[int | None, typer.Option("--window", help="Window in days (default 3).")] = None,
    database_url: DatabaseUrlOption = None,
) -> None:
    """Detect transfers around a date."""

    from .api import link_transfers

    around = _parse_datetime(date, option="--date")
    created = link_transfers(account_id, around, window, database_url=database_url)
    _echo_json({"account_id": account_id, "links_created": created})


@app.command("post")
def post_cmd(txn_id: str, database_url: DatabaseUrlOption = None) -> None:
    """Repost the ledger lines of one transaction."""

    from .api import post_ledger

    try:
        lines = post_ledger(txn_id, database_url=database_url)
    except CanonLedgerError as e:
        _fail(str(e))
    _echo_json({"txn_id": txn_id, "lines": lines})


@app.command("reconcile")
def reconcile_cmd(
    account_id: str,
    as_of: Annotated[str | None, typer.Option("--as-of", help="ISO date or timestamp.")] = None,
    balance: Annotated[
        str | None,
        typer.Option("--balance", help="Institution balance; default is the latest reported one."),
    ] = None,
    database_url: DatabaseUrlOption = None,
) -> None:
    """Reconcile one account and store the run."""

    from .api import reconcile
    from .balances import StaticBalanceProvider

    when = _parse_datetime(as_of, option="--as-of")
    provider = StaticBalanceProvider({account_id: balance}) if balance is not None else None
    try:
        summary = reconcile(account_id, when, balance_provider=provider, database_url=database_url)
    except CanonLedgerError as e:
        _fail(str(e))
    except ValueError as e:
        _fail(f"--balance: {e}")
    _echo_json(
        {
            "account_id": summary.account_id,
            "as_of_date": summary.as_of_date,
            "system_balance": summary.system_balance,
            "institution_balance": summary.institution_balance,
            "delta": summary.delta,
            "status": summary.status,
        }
    )


@app.command("sweep")
def sweep_cmd(
    kind: Annotated[str, typer.Argument(help="classification | transfers | reconcile | gaps")],
    database_url: DatabaseUrlOption = None,
) -> None:
    """Run one maintenance sweep immediately."""

    from . import sweeps

    if kind == "classification":
        _echo_json(sweeps.classification_sweep(database_url=database_url).as_dict())
    elif kind == "transfers":
        _echo_json(sweeps.transfer_sweep(database_url=database_url).as_dict())
    elif kind == "reconcile":
        _echo_json(sweeps.nightly_reconciliation(database_url=database_url).as_dict())
    elif kind == "gaps":
        gaps = sweeps.detect_backfill_gaps(database_url=database_url)
        _echo_json([{"account_id": g.account_id, "start": g.start, "end": g.end} for g in gaps])
    else:
        _fail("sweep must be one of: classification, transfers, reconcile, gaps")


@app.command("worker")
def worker_cmd(
    poll_seconds: Annotated[
        float, typer.Option("--poll-seconds", help="Seconds between schedule checks.")
    ] = 30.0,
    database_url: DatabaseUrlOption = None,
) -> None:
    """Run the job queues and the recurring schedule until interrupted."""

    from .jobs import Orchestrator

    stop = threading.Event()

    def _handle(signum, _frame):  # pragma: no cover - signal bridge
        stop.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)
    Orchestrator(database_url=database_url).run_forever(poll_seconds=poll_seconds, stop=stop)


if __name__ == "__main__":  # pragma: no cover
    app()
