from __future__ import annotations

import threading
from datetime import datetime

import pytest

from canonledger.config import Settings
from canonledger.errors import NotFoundError, ValidationError
from canonledger.jobs import (
    CLASSIFICATION,
    INGESTION,
    QUEUES,
    RECONCILIATION,
    RECURRING_JOBS,
    Orchestrator,
)


def _orch(**settings_kw) -> tuple[Orchestrator, list[float]]:
    sleeps: list[float] = []
    settings = Settings(**{"workers_per_queue": 1, **settings_kw})
    return Orchestrator(settings=settings, sleep=sleeps.append), sleeps


def test_default_registrations():
    orch, _ = _orch()
    assert set(orch.job_names()) >= {
        "classify-transaction",
        "detect-transfers",
        "reconcile-account",
        "ingest-batch",
        "classification-sweep",
        "periodic-transfer-detection",
        "nightly-reconciliation",
        "backfill-gap-check",
    }
    assert QUEUES == ("classification", "transfer-detection", "reconciliation", "ingestion")
    assert [(cron, job) for _, cron, job in RECURRING_JOBS] == [
        ("0 * * * *", "classification-sweep"),
        ("*/15 * * * *", "periodic-transfer-detection"),
        ("0 2 * * *", "nightly-reconciliation"),
    ]


def test_retry_with_exponential_backoff_then_success():
    orch, sleeps = _orch()
    calls = {"n": 0}

    def flaky(_orch, payload):
        calls["n"] += 1
        if calls["n"] < 3:
            raise RuntimeError("store hiccup")
        return payload["x"] * 2

    orch.register("flaky", CLASSIFICATION, flaky)
    job = orch.run_sync("flaky", {"x": 21})
    assert job.status == "completed"
    assert job.result == 42
    assert job.attempts == 3
    assert sleeps == [2.0, 4.0]
    assert orch.completed[-1] is job


def test_retries_exhausted_records_failure():
    orch, sleeps = _orch()
    failed_hook: list[str] = []
    orch.on_failed(lambda j: failed_hook.append(j.name))

    def broken(_orch, _payload):
        raise RuntimeError("still down")

    orch.register("broken", RECONCILIATION, broken)
    job = orch.run_sync("broken")
    assert job.status == "failed"
    assert job.attempts == 3
    assert sleeps == [2.0, 4.0]
    assert "RuntimeError" in job.error
    assert failed_hook == ["broken"]
    assert orch.failed == [job]


def test_ingestion_queue_gets_five_attempts():
    orch, sleeps = _orch()

    def broken(_orch, _payload):
        raise RuntimeError("down")

    orch.register("ingest-like", INGESTION, broken, attempts=orch.settings.ingestion_attempts)
    job = orch.run_sync("ingest-like")
    assert job.attempts == 5
    assert sleeps == [2.0, 4.0, 8.0, 16.0]


@pytest.mark.parametrize("exc", [ValidationError("bad record"), NotFoundError("account", "x")])
def test_terminal_errors_are_not_retried(exc):
    orch, sleeps = _orch()

    def handler(_orch, _payload):
        raise exc

    orch.register("terminal", CLASSIFICATION, handler)
    job = orch.run_sync("terminal")
    assert job.status == "failed"
    assert job.attempts == 1
    assert sleeps == []


def test_bounded_history():
    orch, _ = _orch(completed_history=3, failed_history=2)
    orch.register("ok", CLASSIFICATION, lambda _o, p: p.get("i"))

    def bad(_o, _p):
        raise ValidationError("x")

    orch.register("bad", CLASSIFICATION, bad)
    for i in range(5):
        orch.run_sync("ok", {"i": i})
        orch.run_sync("bad")
    assert [j.result for j in orch.completed] == [2, 3, 4]
    assert len(orch.failed) == 2


def test_workers_run_by_priority_then_fifo():
    orch, _ = _orch()
    order: list[str] = []
    orch.register("record", CLASSIFICATION, lambda _o, p: order.append(p["tag"]))

    orch.submit("record", {"tag": "low-1"}, priority=5)
    orch.submit("record", {"tag": "high"}, priority=0)
    orch.submit("record", {"tag": "low-2"}, priority=5)
    orch.submit("record", {"tag": "urgent"}, priority=-1)
    orch.start()
    try:
        assert orch.join(timeout=10)
    finally:
        orch.shutdown()
    assert order == ["urgent", "high", "low-1", "low-2"]


def test_delayed_submission_runs_later():
    orch, _ = _orch()
    ran = threading.Event()
    orch.register("later", CLASSIFICATION, lambda _o, _p: ran.set())
    orch.start()
    try:
        orch.submit("later", delay=0.05)
        assert orch.join(timeout=10)
        assert ran.is_set()
    finally:
        orch.shutdown()


def test_unknown_job_and_shutdown_rejects_work():
    orch, _ = _orch()
    with pytest.raises(NotFoundError):
        orch.submit("no-such-job")
    orch.start()
    orch.shutdown()
    with pytest.raises(RuntimeError):
        orch.submit("classification-sweep")


def test_hook_errors_do_not_break_recording():
    orch, _ = _orch()
    orch.on_completed(lambda _j: 1 / 0)
    orch.register("ok", CLASSIFICATION, lambda _o, _p: "done")
    job = orch.run_sync("ok")
    assert job.status == "completed"
    assert orch.completed == [job]


def test_tick_submits_due_recurring_jobs_once():
    orch, _ = _orch()
    fired: list[str] = []
    # Replace the sweep handlers so ticking never touches a database.
    for name in ("classification-sweep", "periodic-transfer-detection", "nightly-reconciliation"):
        queue_name = {"classification-sweep": CLASSIFICATION}.get(name, RECONCILIATION)
        orch.register(name, queue_name, lambda _o, _p, n=name: fired.append(n))

    midnight = datetime(2024, 1, 1, 0, 0)
    names = sorted(j.name for j in orch.tick(midnight))
    assert names == ["classification-sweep", "periodic-transfer-detection"]

    assert orch.tick(midnight) == []
    assert [j.name for j in orch.tick(datetime(2024, 1, 1, 0, 15))] == [
        "periodic-transfer-detection"
    ]
    late = sorted(j.name for j in orch.tick(datetime(2024, 1, 1, 2, 0)))
    assert late == [
        "classification-sweep",
        "nightly-reconciliation",
        "periodic-transfer-detection",
    ]

    orch.start()
    try:
        assert orch.join(timeout=10)
    finally:
        orch.shutdown()
    assert sorted(fired) == sorted(
        ["classification-sweep"] * 2 + ["periodic-transfer-detection"] * 3 + ["nightly-reconciliation"]
    )


def test_invalid_cron_is_rejected():
    orch, _ = _orch()
    with pytest.raises(ValueError):
        orch.add_recurring("bad", "every hour", "classification-sweep")


def test_retry_backoff_does_not_hold_the_worker():
    orch, sleeps = _orch(backoff_base_seconds=0.2)
    order: list[str] = []
    calls = {"n": 0}

    def flaky(_o, _p):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("blip")
        order.append("flaky")

    orch.register("flaky", CLASSIFICATION, flaky)
    orch.register("quick", CLASSIFICATION, lambda _o, _p: order.append("quick"))
    orch.submit("flaky")
    orch.submit("quick")
    orch.start()
    try:
        assert orch.join(timeout=10)
    finally:
        orch.shutdown()

    # One worker: "quick" ran while "flaky" waited out its backoff off-queue.
    assert order == ["quick", "flaky"]
    assert sleeps == []
    flaky_job = next(j for j in orch.completed if j.name == "flaky")
    assert flaky_job.attempts == 2


def test_per_submission_attempts_and_backoff():
    orch, sleeps = _orch()

    def broken(_o, _p):
        raise RuntimeError("down")

    orch.register("broken", RECONCILIATION, broken)
    job = orch.run_sync("broken", attempts=4, backoff=0.5)
    assert (job.attempts, job.max_attempts, job.backoff_base) == (4, 4, 0.5)
    assert sleeps == [0.5, 1.0, 2.0]

    with pytest.raises(ValueError):
        orch.submit("broken", attempts=0)
    with pytest.raises(ValueError):
        orch.submit("broken", backoff=-1)

    queued = orch.submit("broken", attempts=1)
    orch.start()
    try:
        assert orch.join(timeout=10)
    finally:
        orch.shutdown()
    assert queued.status == "failed"
    assert queued.attempts == 1
