"""Queue-driven job layer.

The :class:`Orchestrator` is built once per process and passed to every job
handler. It owns four named queues, each served by its own small pool of
worker threads:

- ``classification``
- ``transfer-detection``
- ``reconciliation``
- ``ingestion``

Within a queue, jobs run by priority (lower first, FIFO among equals). There
is no ordering across queues. A failed attempt goes back on its queue after
``backoff_base * 2**(attempt-1)`` seconds, leaving the worker free meanwhile,
until the job's attempt budget is spent; ``ValidationError`` and ``NotFoundError`` fail immediately. The last
100 completed and 200 failed jobs are kept for inspection.

Recurring work is declared in :data:`RECURRING_JOBS` as cron expressions and
submitted by :meth:`Orchestrator.tick`.
"""

from __future__ import annotations

import itertools
import math
import queue
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from croniter import croniter

from ledger_db.models.ledger import utcnow

from . import api, sweeps
from .balances import BalanceProvider
from .config import Settings, load_settings
from .errors import NotFoundError, ValidationError, is_retryable
from .logging_setup import get_logger

_logger = get_logger("canonledger.jobs")

CLASSIFICATION = "classification"
TRANSFER_DETECTION = "transfer-detection"
RECONCILIATION = "reconciliation"
INGESTION = "ingestion"
QUEUES: tuple[str, ...] = (CLASSIFICATION, TRANSFER_DETECTION, RECONCILIATION, INGESTION)

Handler = Callable[["Orchestrator", Mapping[str, Any]], Any]
Hook = Callable[["JobRecord"], None]


@dataclass(slots=True)
class JobRecord:
    id: str
    name: str
    queue: str
    payload: dict[str, Any]
    priority: int
    max_attempts: int
    backoff_base: float
    submitted_at: datetime
    attempts: int = 0
    status: str = "queued"  # queued | running | retrying | completed | failed
    result: Any = None
    error: str | None = None
    finished_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class JobSpec:
    name: str
    queue: str
    handler: Handler
    attempts: int | None = None


@dataclass(slots=True)
class RecurringJob:
    name: str
    cron: str
    job_name: str
    payload: dict[str, Any] = field(default_factory=dict)
    next_due: datetime | None = None


RECURRING_JOBS: tuple[tuple[str, str, str], ...] = (
    ("hourly-classification-sweep", "0 * * * *", "classification-sweep"),
    ("transfer-detection-sweep", "*/15 * * * *", "periodic-transfer-detection"),
    ("nightly-reconciliation", "0 2 * * *", "nightly-reconciliation"),
)


def _parse_when(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValidationError(f"invalid timestamp in job payload: {value!r}") from exc
    raise ValidationError(f"invalid timestamp in job payload: {value!r}")


def _require(payload: Mapping[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value is None or value == "":
        raise ValidationError(f"job payload missing {key!r}")
    return value


# ---------------------------
# Built-in job handlers
# ---------------------------


def _classify_transaction(orch: Orchestrator, payload: Mapping[str, Any]) -> Any:
    outcome = api.classify(_require(payload, "txn_id"), database_url=orch.database_url)
    return {"category": outcome.category, "changed": outcome.category_changed}


def _detect_transfers(orch: Orchestrator, payload: Mapping[str, Any]) -> Any:
    return api.link_transfers(
        _require(payload, "account_id"),
        _parse_when(_require(payload, "around")),
        payload.get("window_days"),
        database_url=orch.database_url,
        settings=orch.settings,
    )


def _reconcile_account(orch: Orchestrator, payload: Mapping[str, Any]) -> Any:
    summary = api.reconcile(
        _require(payload, "account_id"),
        _parse_when(payload.get("as_of")),
        balance_provider=orch.balance_provider,
        database_url=orch.database_url,
        settings=orch.settings,
    )
    return {"status": summary.status, "delta": str(summary.delta)}


def _ingest_batch(orch: Orchestrator, payload: Mapping[str, Any]) -> Any:
    records = _require(payload, "records")
    if not isinstance(records, list):
        raise ValidationError("job payload 'records' must be a list")
    return api.ingest_batch(
        _require(payload, "provider_id"),
        _require(payload, "account_id"),
        records,
        database_url=orch.database_url,
        settings=orch.settings,
    ).as_dict()


def _classification_sweep(orch: Orchestrator, payload: Mapping[str, Any]) -> Any:
    return sweeps.classification_sweep(database_url=orch.database_url, settings=orch.settings).as_dict()


def _transfer_sweep(orch: Orchestrator, payload: Mapping[str, Any]) -> Any:
    return sweeps.transfer_sweep(
        now=_parse_when(payload.get("now")), database_url=orch.database_url, settings=orch.settings
    ).as_dict()


def _nightly_reconciliation(orch: Orchestrator, payload: Mapping[str, Any]) -> Any:
    return sweeps.nightly_reconciliation(
        as_of=_parse_when(payload.get("as_of")),
        balance_provider=orch.balance_provider,
        database_url=orch.database_url,
        settings=orch.settings,
    ).as_dict()


def _backfill_gap_check(orch: Orchestrator, payload: Mapping[str, Any]) -> Any:
    gaps = sweeps.detect_backfill_gaps(
        now=_parse_when(payload.get("now")), database_url=orch.database_url, settings=orch.settings
    )
    return [
        {"account_id": g.account_id, "start": g.start.isoformat(), "end": g.end.isoformat()}
        for g in gaps
    ]


def default_jobs(settings: Settings) -> list[JobSpec]:
    return [
        JobSpec("classify-transaction", CLASSIFICATION, _classify_transaction),
        JobSpec("detect-transfers", TRANSFER_DETECTION, _detect_transfers),
        JobSpec("reconcile-account", RECONCILIATION, _reconcile_account),
        JobSpec("ingest-batch", INGESTION, _ingest_batch, attempts=settings.ingestion_attempts),
        JobSpec("classification-sweep", CLASSIFICATION, _classification_sweep),
        JobSpec("periodic-transfer-detection", TRANSFER_DETECTION, _transfer_sweep),
        JobSpec("nightly-reconciliation", RECONCILIATION, _nightly_reconciliation),
        JobSpec("backfill-gap-check", RECONCILIATION, _backfill_gap_check),
    ]


def _log_completed(job: JobRecord) -> None:
    _logger.info(
        "job:completed id=%s name=%s queue=%s attempts=%d", job.id, job.name, job.queue, job.attempts
    )


def _log_failed(job: JobRecord) -> None:
    _logger.error(
        "job:failed id=%s name=%s queue=%s attempts=%d error=%s",
        job.id,
        job.name,
        job.queue,
        job.attempts,
        job.error,
    )


# ---------------------------
# Orchestrator
# ---------------------------


class Orchestrator:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        database_url: str | None = None,
        balance_provider: BalanceProvider | None = None,
        sleep: Callable[[float], None] = time.sleep,
        register_defaults: bool = True,
    ) -> None:
        self.settings = settings or load_settings()
        self.database_url = database_url
        self.balance_provider = balance_provider
        self._sleep = sleep

        self._specs: dict[str, JobSpec] = {}
        self._queues: dict[str, queue.PriorityQueue] = {q: queue.PriorityQueue() for q in QUEUES}
        self._seq = itertools.count()
        self._threads: list[threading.Thread] = []
        self._timers: set[threading.Timer] = set()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._outstanding = 0
        self._started = False
        self._stopping = False

        self._completed: deque[JobRecord] = deque(maxlen=self.settings.completed_history)
        self._failed: deque[JobRecord] = deque(maxlen=self.settings.failed_history)
        self._on_completed: list[Hook] = [_log_completed]
        self._on_failed: list[Hook] = [_log_failed]
        self._recurring: list[RecurringJob] = []

        if register_defaults:
            for spec in default_jobs(self.settings):
                self.register(spec.name, spec.queue, spec.handler, attempts=spec.attempts)
            for name, cron, job_name in RECURRING_JOBS:
                self.add_recurring(name, cron, job_name)

    # ---- registration ---------------------------------------------------

    def register(self, name: str, queue_name: str, handler: Handler, *, attempts: int | None = None) -> None:
        if queue_name not in self._queues:
            raise ValueError(f"unknown queue: {queue_name!r}")
        self._specs[name] = JobSpec(name, queue_name, handler, attempts)

    def add_recurring(
        self, name: str, cron: str, job_name: str, payload: Mapping[str, Any] | None = None
    ) -> None:
        if not croniter.is_valid(cron):
            raise ValueError(f"invalid cron expression: {cron!r}")
        if job_name not in self._specs:
            raise NotFoundError("job", job_name)
        self._recurring.append(RecurringJob(name, cron, job_name, dict(payload or {})))

    def on_completed(self, hook: Hook) -> None:
        self._on_completed.append(hook)

    def on_failed(self, hook: Hook) -> None:
        self._on_failed.append(hook)

    # ---- submission -----------------------------------------------------

    def submit(
        self,
        name: str,
        payload: Mapping[str, Any] | None = None,
        *,
        priority: int = 0,
        delay: float = 0.0,
        attempts: int | None = None,
        backoff: float | None = None,
    ) -> JobRecord:
        """Queue ``name``; with ``delay`` it becomes runnable after that many seconds.

        ``attempts`` and ``backoff`` (base seconds) override the registered
        policy for this job only.
        """

        job = self._new_job(name, payload, priority, attempts=attempts, backoff=backoff)
        with self._lock:
            if self._stopping:
                raise RuntimeError("orchestrator is shutting down")
            self._outstanding += 1
            if delay > 0:
                self._arm_timer(job, delay)
        if delay <= 0:
            self._enqueue(job)
        _logger.debug(
            "job:submitted id=%s name=%s queue=%s priority=%d delay=%.2f",
            job.id,
            name,
            job.queue,
            priority,
            delay,
        )
        return job

    def run_sync(
        self,
        name: str,
        payload: Mapping[str, Any] | None = None,
        *,
        attempts: int | None = None,
        backoff: float | None = None,
    ) -> JobRecord:
        """Run ``name`` in the calling thread, sleeping between retries."""

        return self.run_job(self._new_job(name, payload, 0, attempts=attempts, backoff=backoff))

    def _new_job(
        self,
        name: str,
        payload: Mapping[str, Any] | None,
        priority: int,
        *,
        attempts: int | None = None,
        backoff: float | None = None,
    ) -> JobRecord:
        spec = self._specs.get(name)
        if spec is None:
            raise NotFoundError("job", name)
        if attempts is not None and attempts < 1:
            raise ValueError("attempts must be at least 1")
        if backoff is not None and backoff < 0:
            raise ValueError("backoff must not be negative")
        return JobRecord(
            id=uuid.uuid4().hex,
            name=name,
            queue=spec.queue,
            payload=dict(payload or {}),
            priority=priority,
            max_attempts=attempts or spec.attempts or self.settings.default_attempts,
            backoff_base=self.settings.backoff_base_seconds if backoff is None else backoff,
            submitted_at=utcnow(),
        )

    def _enqueue(self, job: JobRecord) -> None:
        self._queues[job.queue].put((job.priority, next(self._seq), job))

    def _arm_timer(self, job: JobRecord, delay: float) -> None:
        # Caller holds self._lock.
        timer = threading.Timer(delay, self._enqueue_delayed, args=(job,))
        timer.daemon = True
        self._timers.add(timer)
        timer.start()

    def _enqueue_delayed(self, job: JobRecord) -> None:
        timer = threading.current_thread()
        with self._lock:
            if timer not in self._timers:
                return  # dropped by shutdown
            self._timers.discard(timer)
        self._enqueue(job)

    # ---- execution ------------------------------------------------------

    def backoff_delay(self, job: JobRecord) -> float:
        """Wait before the attempt after ``job.attempts``."""

        return job.backoff_base * 2 ** (job.attempts - 1)

    def _attempt(self, job: JobRecord) -> float | None:
        """Run one attempt; return the backoff before a retry, or None once the job is final."""

        spec = self._specs[job.name]
        job.status = "running"
        job.attempts += 1
        try:
            job.result = spec.handler(self, job.payload)
        except Exception as exc:  # noqa: BLE001 - recorded on the job and reported via hooks
            job.error = f"{exc.__class__.__name__}: {exc}"
            if not is_retryable(exc) or job.attempts >= job.max_attempts:
                job.status = "failed"
                self._record(job)
                return None
            wait = self.backoff_delay(job)
            job.status = "retrying"
            _logger.warning(
                "job:retry id=%s name=%s attempt=%d/%d wait=%.1fs error=%s",
                job.id,
                job.name,
                job.attempts,
                job.max_attempts,
                wait,
                exc.__class__.__name__,
            )
            return wait
        job.status = "completed"
        job.error = None
        self._record(job)
        return None

    def run_job(self, job: JobRecord) -> JobRecord:
        """Run ``job`` to completion or final failure in the calling thread."""

        while (wait := self._attempt(job)) is not None:
            self._sleep(wait)
        return job

    def _record(self, job: JobRecord) -> None:
        job.finished_at = utcnow()
        with self._lock:
            (self._completed if job.status == "completed" else self._failed).append(job)
        hooks = self._on_completed if job.status == "completed" else self._on_failed
        for hook in list(hooks):
            try:
                hook(job)
            except Exception:  # noqa: BLE001 - a broken hook must not kill the worker
                _logger.exception("job:hook_failed id=%s name=%s", job.id, job.name)

    def _settle(self) -> None:
        with self._idle:
            self._outstanding -= 1
            self._idle.notify_all()

    def _retry_later(self, job: JobRecord, wait: float) -> None:
        """Hand ``job`` back to its queue after ``wait`` without holding a worker."""

        with self._lock:
            if not self._stopping:
                self._arm_timer(job, wait)
                return
        job.status = "failed"
        job.error = f"{job.error} (not retried: orchestrator stopped)"
        self._record(job)
        self._settle()

    def _worker(self, queue_name: str) -> None:
        q = self._queues[queue_name]
        while True:
            _, _, job = q.get()
            try:
                if job is None:
                    return
                wait = self._attempt(job)
                if wait is None:
                    self._settle()
                else:
                    self._retry_later(job, wait)
            finally:
                q.task_done()

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
        for queue_name in QUEUES:
            for i in range(self.settings.workers_per_queue):
                t = threading.Thread(
                    target=self._worker,
                    args=(queue_name,),
                    name=f"canonledger-{queue_name}-{i}",
                    daemon=True,
                )
                t.start()
                self._threads.append(t)
        _logger.info(
            "orchestrator:started queues=%d workers_per_queue=%d",
            len(QUEUES),
            self.settings.workers_per_queue,
        )

    def join(self, timeout: float | None = None) -> bool:
        """Wait until every submitted job (delayed ones included) has finished."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._outstanding > 0:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop accepting work and stop the workers.

        Delayed jobs and pending retries are dropped. Already-queued jobs
        still run before the workers exit.
        """

        with self._lock:
            self._stopping = True
            timers, self._timers = list(self._timers), set()
        for timer in timers:
            timer.cancel()
        if timers:
            with self._idle:
                self._outstanding = max(0, self._outstanding - len(timers))
                self._idle.notify_all()
        for queue_name in QUEUES:
            for _ in range(self.settings.workers_per_queue):
                self._queues[queue_name].put((math.inf, next(self._seq), None))
        if wait:
            for t in self._threads:
                t.join()
        _logger.info("orchestrator:stopped")

    # ---- recurring schedule ---------------------------------------------

    def tick(self, now: datetime | None = None) -> list[JobRecord]:
        """Submit every recurring job whose cron time has arrived.

        The first tick for a registration fires only when ``now`` is itself a
        scheduled time. Missed runs collapse into one.
        """

        now = now or utcnow()
        submitted: list[JobRecord] = []
        for reg in self._recurring:
            if reg.next_due is None:
                reg.next_due = croniter(reg.cron, now - timedelta(seconds=1)).get_next(datetime)
            if reg.next_due > now:
                continue
            submitted.append(self.submit(reg.job_name, reg.payload))
            reg.next_due = croniter(reg.cron, now).get_next(datetime)
            _logger.info(
                "schedule:fired name=%s job=%s next_due=%s",
                reg.name,
                reg.job_name,
                reg.next_due.isoformat(),
            )
        return submitted

    def run_forever(self, *, poll_seconds: float = 30.0, stop: threading.Event | None = None) -> None:
        stop = stop or threading.Event()
        self.start()
        try:
            while not stop.is_set():
                self.tick()
                stop.wait(poll_seconds)
        finally:
            self.shutdown(wait=True)

    # ---- observability --------------------------------------------------

    @property
    def completed(self) -> list[JobRecord]:
        with self._lock:
            return list(self._completed)

    @property
    def failed(self) -> list[JobRecord]:
        with self._lock:
            return list(self._failed)

    @property
    def recurring(self) -> list[RecurringJob]:
        return list(self._recurring)

    def job_names(self) -> list[str]:
        return sorted(self._specs)


__all__ = [
    "QUEUES",
    "CLASSIFICATION",
    "TRANSFER_DETECTION",
    "RECONCILIATION",
    "INGESTION",
    "RECURRING_JOBS",
    "JobRecord",
    "JobSpec",
    "RecurringJob",
    "Orchestrator",
    "default_jobs",
]
