"""Background job runner for TusQueue.

Runs submitted jobs on daemon worker threads and reports a discrete
lifecycle per job:

- ENQUEUED → (BLOCKED while the run constraint fails) → RUNNING
- RUNNING → SUCCEEDED | FAILED | ENQUEUED again after a retry backoff
- any unfinished state → CANCELLED

Each job carries a small key/value progress payload.  Observers consume a
conflated stream of :class:`JobInfo` snapshots via :meth:`JobRunner.observe`.
"""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping

logger = logging.getLogger(__name__)

_DEFAULT_MAX_ATTEMPTS = 5
_DEFAULT_BACKOFF_DELAY = 10.0  # seconds
_DEFAULT_MAX_BACKOFF_DELAY = 300.0  # seconds
_DEFAULT_CONSTRAINT_POLL = 5.0  # seconds between BLOCKED re-checks
_DEFAULT_MAX_FINISHED_JOBS = 256  # finished records kept for get_info/observe

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class JobState(Enum):
    """Lifecycle state of a submitted job."""

    ENQUEUED = auto()
    RUNNING = auto()
    SUCCEEDED = auto()
    FAILED = auto()
    CANCELLED = auto()
    BLOCKED = auto()

    @property
    def is_finished(self) -> bool:
        """True for states no job ever leaves."""
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)


class ResultKind(Enum):
    """What a handler asks the runner to do with its job."""

    SUCCESS = auto()
    FAILURE = auto()
    RETRY = auto()


class BackoffPolicy(Enum):
    """How the delay between retried runs grows."""

    LINEAR = auto()
    EXPONENTIAL = auto()


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


def _frozen(data: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True)
class JobResult:
    """Outcome returned by a job handler."""

    kind: ResultKind
    output: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, output: Mapping[str, Any] | None = None) -> JobResult:
        return cls(ResultKind.SUCCESS, _frozen(output))

    @classmethod
    def failure(cls, output: Mapping[str, Any] | None = None) -> JobResult:
        return cls(ResultKind.FAILURE, _frozen(output))

    @classmethod
    def retry(cls, output: Mapping[str, Any] | None = None) -> JobResult:
        return cls(ResultKind.RETRY, _frozen(output))


@dataclass(frozen=True)
class JobSpec:
    """Everything the runner needs to execute one job.

    ``max_attempts``, ``backoff_delay`` left as ``None`` fall back to the
    runner's defaults.  ``constraint`` is polled before every run; while it
    returns False the job stays BLOCKED.
    """

    handler: Callable[["JobContext"], JobResult]
    input_data: Mapping[str, Any] = field(default_factory=dict)
    name: str = "job"
    constraint: Callable[[], bool] | None = None
    max_attempts: int | None = None
    backoff_policy: BackoffPolicy = BackoffPolicy.EXPONENTIAL
    backoff_delay: float | None = None


@dataclass(frozen=True)
class JobInfo:
    """Immutable snapshot of a job as seen by observers."""

    id: str
    name: str
    state: JobState
    progress: Mapping[str, Any]
    output: Mapping[str, Any]
    run_attempt: int


# ---------------------------------------------------------------------------
# Internal record
# ---------------------------------------------------------------------------


class _JobRecord:
    """Mutable per-job bookkeeping; only touched under the runner's lock."""

    def __init__(self, job_id: str, spec: JobSpec) -> None:
        self.id = job_id
        self.spec = spec
        self.state = JobState.ENQUEUED
        self.progress: Mapping[str, Any] = _frozen(None)
        self.output: Mapping[str, Any] = _frozen(None)
        self.run_attempt = 0
        self.version = 0
        self.cancel_event = threading.Event()
        self.timer: threading.Timer | None = None

    def snapshot(self) -> JobInfo:
        return JobInfo(
            id=self.id,
            name=self.spec.name,
            state=self.state,
            progress=self.progress,
            output=self.output,
            run_attempt=self.run_attempt,
        )


class JobContext:
    """Handle passed to a running handler.

    Lets the handler read its input, publish progress and notice
    cancellation without touching the runner's internals.
    """

    def __init__(self, runner: JobRunner, record: _JobRecord) -> None:
        self._runner = runner
        self._record = record
        self.job_id = record.id
        self.input_data = record.spec.input_data
        self.run_attempt = record.run_attempt

    def is_cancelled(self) -> bool:
        """True once the job has been cancelled."""
        return self._record.cancel_event.is_set()

    def set_progress(self, progress: Mapping[str, Any]) -> None:
        """Publish *progress*; ignored once the job is no longer RUNNING."""
        self._runner._set_progress(self._record, progress)

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return True early if the job is cancelled."""
        return self._record.cancel_event.wait(timeout=max(0.0, seconds))


# ---------------------------------------------------------------------------
# JobRunner
# ---------------------------------------------------------------------------


class JobRunner:
    """Executes jobs on a fixed pool of daemon worker threads.

    Thread-safety:
    - ``_cond`` (a Condition over one lock) protects every job record and
      wakes observers whenever a record's ``version`` changes.
    - Handlers run without the lock held.

    Only the newest ``max_finished_jobs`` finished records are kept; older
    ones are forgotten and their ids become unknown.
    """

    def __init__(
        self,
        max_workers: int = 1,
        default_max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        default_backoff_delay: float = _DEFAULT_BACKOFF_DELAY,
        max_backoff_delay: float = _DEFAULT_MAX_BACKOFF_DELAY,
        constraint_poll_interval: float = _DEFAULT_CONSTRAINT_POLL,
        max_finished_jobs: int = _DEFAULT_MAX_FINISHED_JOBS,
    ) -> None:
        """Initialise the runner and start its worker threads."""
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if max_finished_jobs < 1:
            raise ValueError("max_finished_jobs must be at least 1")
        self.default_max_attempts = default_max_attempts
        self.default_backoff_delay = default_backoff_delay
        self.max_backoff_delay = max_backoff_delay
        self.constraint_poll_interval = constraint_poll_interval
        self.max_finished_jobs = max_finished_jobs

        self._cond = threading.Condition()
        self._jobs: dict[str, _JobRecord] = {}
        self._finished_ids: deque[str] = deque()
        self._queue: queue.Queue[_JobRecord | None] = queue.Queue()
        self._shutdown_event = threading.Event()

        self._workers = [
            threading.Thread(
                target=self._worker_loop,
                name=f"job-worker-{i}",
                daemon=True,
            )
            for i in range(max_workers)
        ]
        for worker in self._workers:
            worker.start()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, spec: JobSpec) -> str:
        """Queue *spec* for execution and return its job id."""
        if self._shutdown_event.is_set():
            raise RuntimeError("JobRunner has been shut down")
        job_id = str(uuid.uuid4())
        record = _JobRecord(job_id, spec)
        with self._cond:
            self._jobs[job_id] = record
            self._cond.notify_all()
        self._queue.put(record)
        logger.info("Job submitted: %s (%s)", spec.name, job_id)
        return job_id

    def cancel(self, job_id: str) -> None:
        """Cancel *job_id*.  Finished or unknown jobs are left untouched."""
        with self._cond:
            record = self._jobs.get(job_id)
            if record is None or record.state.is_finished:
                return
            record.cancel_event.set()
            if record.timer is not None:
                record.timer.cancel()
                record.timer = None
            self._transition(record, JobState.CANCELLED)
        logger.info("Job cancelled: %s (%s)", record.spec.name, job_id)

    def get_info(self, job_id: str) -> JobInfo | None:
        """Return the current snapshot of *job_id*, or ``None`` if unknown."""
        with self._cond:
            record = self._jobs.get(job_id)
            return record.snapshot() if record else None

    def observe(self, job_id: str) -> Iterator[JobInfo]:
        """Yield snapshots of *job_id* until it reaches a finished state.

        The first snapshot is the current one; afterwards a snapshot is
        yielded whenever the job changes.  Changes that happen while the
        consumer is busy are conflated into the latest snapshot.  An unknown
        id yields nothing.  A job forgotten mid-observation still ends on
        its finished snapshot.
        """
        with self._cond:
            record = self._jobs.get(job_id)
        if record is None:
            return
        seen_version = -1
        while True:
            with self._cond:
                while record.version == seen_version:
                    if self._shutdown_event.is_set():
                        return
                    self._cond.wait(timeout=1.0)
                seen_version = record.version
                info = record.snapshot()
            yield info
            if info.state.is_finished:
                return

    def shutdown(self, wait: bool = True) -> None:
        """Cancel unfinished jobs and stop the worker threads."""
        self._shutdown_event.set()
        with self._cond:
            pending = [r.id for r in self._jobs.values() if not r.state.is_finished]
        for job_id in pending:
            self.cancel(job_id)
        for _ in self._workers:
            self._queue.put(None)  # Shutdown sentinel
        with self._cond:
            self._cond.notify_all()
        if wait:
            for worker in self._workers:
                worker.join(timeout=5)
        logger.debug("JobRunner shut down")

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _worker_loop(self) -> None:
        """Pull records off the queue and run them one at a time."""
        logger.debug("Job worker started")
        while not self._shutdown_event.is_set():
            try:
                record = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue

            if record is None:
                break  # Shutdown sentinel

            try:
                self._process(record)
            except Exception:
                logger.exception("Unhandled error processing job %s", record.id)
            finally:
                self._queue.task_done()

        logger.debug("Job worker exiting")

    def _process(self, record: _JobRecord) -> None:
        """Check constraints, run the handler and apply its result."""
        if record.cancel_event.is_set():
            return

        constraint = record.spec.constraint
        if constraint is not None and not self._constraint_met(constraint, record):
            with self._cond:
                if record.state.is_finished:
                    return
                if record.state != JobState.BLOCKED:
                    self._transition(record, JobState.BLOCKED)
                    logger.info("Job blocked by constraint: %s", record.id)
                self._schedule(record, self.constraint_poll_interval)
            return

        with self._cond:
            if record.state.is_finished:
                return
            record.run_attempt += 1
            self._transition(record, JobState.RUNNING)
            context = JobContext(self, record)

        logger.debug("Running job %s (attempt %d)", record.id, context.run_attempt)
        try:
            result = record.spec.handler(context)
        except Exception as exc:
            logger.exception("Job %s raised", record.id)
            result = JobResult.failure({"error": str(exc) or type(exc).__name__})

        if not isinstance(result, JobResult):
            logger.error("Job %s returned %r instead of a JobResult", record.id, result)
            result = JobResult.failure({"error": "handler returned no result"})

        self._apply_result(record, result)

    def _constraint_met(self, constraint: Callable[[], bool], record: _JobRecord) -> bool:
        try:
            return bool(constraint())
        except Exception:
            logger.exception("Constraint check failed for job %s", record.id)
            return False

    def _apply_result(self, record: _JobRecord, result: JobResult) -> None:
        """Move *record* to the state *result* asks for."""
        with self._cond:
            if record.state.is_finished:
                # Cancelled while the handler ran; drop the result
                logger.debug("Discarding result of finished job %s", record.id)
                return

            record.output = _frozen(result.output)
            if result.kind == ResultKind.SUCCESS:
                self._transition(record, JobState.SUCCEEDED)
                logger.info("Job succeeded: %s", record.id)
                return
            if result.kind == ResultKind.FAILURE:
                self._transition(record, JobState.FAILED)
                logger.warning("Job failed: %s (%s)", record.id, result.output.get("error"))
                return

            max_attempts = record.spec.max_attempts or self.default_max_attempts
            if record.run_attempt >= max_attempts:
                self._transition(record, JobState.FAILED)
                logger.warning(
                    "Job %s failed after %d attempts (%s)",
                    record.id,
                    record.run_attempt,
                    result.output.get("error"),
                )
                return

            delay = self.backoff_delay(record.spec, record.run_attempt)
            self._transition(record, JobState.ENQUEUED)
            self._schedule(record, delay)
        logger.info(
            "Job %s will retry in %.1fs (attempt %d/%d)",
            record.id,
            delay,
            record.run_attempt,
            max_attempts,
        )

    def backoff_delay(self, spec: JobSpec, run_attempt: int) -> float:
        """Delay before re-running a job whose *run_attempt*-th run asked to retry."""
        base = spec.backoff_delay if spec.backoff_delay is not None else self.default_backoff_delay
        if spec.backoff_policy == BackoffPolicy.LINEAR:
            delay = base * run_attempt
        else:
            delay = base * (2 ** (run_attempt - 1))
        return min(delay, self.max_backoff_delay)

    # ------------------------------------------------------------------
    # Helpers (call with the lock held)
    # ------------------------------------------------------------------

    def _transition(self, record: _JobRecord, state: JobState) -> None:
        record.state = state
        record.version += 1
        if state.is_finished:
            self._retire(record)
        self._cond.notify_all()

    def _retire(self, record: _JobRecord) -> None:
        """Remember *record* as finished, forgetting the oldest beyond the cap."""
        self._finished_ids.append(record.id)
        while len(self._finished_ids) > self.max_finished_jobs:
            stale = self._finished_ids.popleft()
            self._jobs.pop(stale, None)
            logger.debug("Forgot finished job %s", stale)

    def _schedule(self, record: _JobRecord, delay: float) -> None:
        """Re-queue *record* after *delay* seconds."""
        timer = threading.Timer(delay, self._requeue, args=(record,))
        timer.daemon = True
        record.timer = timer
        timer.start()

    def _requeue(self, record: _JobRecord) -> None:
        with self._cond:
            record.timer = None
            if record.state.is_finished or self._shutdown_event.is_set():
                return
        self._queue.put(record)

    def _set_progress(self, record: _JobRecord, progress: Mapping[str, Any]) -> None:
        with self._cond:
            if record.state != JobState.RUNNING or record.cancel_event.is_set():
                return
            record.progress = _frozen(progress)
            record.version += 1
            self._cond.notify_all()
