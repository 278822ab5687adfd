"""Sequential resumable-upload queue.

Holds an ordered list of :class:`QueueItem` objects and drives exactly one
upload job at a time through a :class:`~tusqueue.jobs.JobRunner`:

- Immutable snapshots, replaced atomically through :meth:`QueueStore.update`
- A single drain-loop thread that submits one job, follows its lifecycle
  and only then moves on to the next item
- Race-free pause/clear via a generation counter checked by the loop
- Push-style observation through :meth:`QueueStore.subscribe`
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Iterable, NamedTuple

from tusqueue.jobs import JobInfo, JobSpec, JobState
from tusqueue.transfer import KEY_ERROR, KEY_UPLOAD_URL, progress_fraction

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class QueueStatus(Enum):
    """Lifecycle state of a QueueItem."""

    PENDING = auto()
    RUNNING = auto()
    PAUSED = auto()
    SUCCESS = auto()
    FAILED = auto()


@dataclass(frozen=True)
class QueueItem:
    """One requested transfer.  Never mutated; updates produce copies."""

    source: str
    endpoint: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str | None = None
    progress: float = 0.0
    status: QueueStatus = QueueStatus.PENDING
    upload_url: str | None = None
    error: str | None = None

    @property
    def fingerprint(self) -> str:
        """Stable key that lets the protocol client resume this item's upload."""
        return f"{Path(self.source).name}#{self.id}"

    @property
    def is_runnable(self) -> bool:
        return self.status in (QueueStatus.PENDING, QueueStatus.PAUSED)

    @property
    def is_terminal(self) -> bool:
        return self.status in (QueueStatus.SUCCESS, QueueStatus.FAILED)


class QueueSnapshot(NamedTuple):
    """Consistent view of the queue at one instant."""

    items: tuple[QueueItem, ...]
    running: bool

    def get(self, item_id: str) -> QueueItem | None:
        return next((item for item in self.items if item.id == item_id), None)


SnapshotCallback = Callable[[QueueSnapshot], None]


class QueueStateError(RuntimeError):
    """Raised when an update would leave the queue in an invalid state."""


# ---------------------------------------------------------------------------
# QueueStore
# ---------------------------------------------------------------------------


class QueueStore:
    """Single source of truth for queue state.

    Thread-safety:
    - ``_lock`` guards the item tuple, the running flag and the version.
      It is held only while a pure transform runs, never across I/O.
    - ``_publish_lock`` serialises subscriber notification so snapshots
      arrive in publication order; an older snapshot is dropped if a newer
      one has already been delivered.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._publish_lock = threading.RLock()
        self._items: tuple[QueueItem, ...] = ()
        self._running = False
        self._version = 0
        self._published_version = 0
        self._subscribers: list[SnapshotCallback] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> QueueSnapshot:
        """Return the current items and running flag."""
        with self._lock:
            return QueueSnapshot(self._items, self._running)

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def update(
        self, transform: Callable[[tuple[QueueItem, ...]], Iterable[QueueItem]]
    ) -> QueueSnapshot:
        """Atomically replace the items with ``transform(items)``.

        Raises:
            QueueStateError: The result would hold more than one RUNNING item.
        """
        with self._lock:
            items = tuple(transform(self._items))
            running_count = sum(1 for item in items if item.status == QueueStatus.RUNNING)
            if running_count > 1:
                raise QueueStateError(f"{running_count} items would be RUNNING at once")
            self._items = items
            snapshot, version = self._bump()
        self._publish(snapshot, version)
        return snapshot

    def set_running(self, value: bool) -> None:
        """Set the running flag."""
        with self._lock:
            if self._running == value:
                return
            self._running = value
            snapshot, version = self._bump()
        self._publish(snapshot, version)

    def try_start(self) -> bool:
        """Set running=True if it was False; return whether this call did it."""
        with self._lock:
            if self._running:
                return False
            self._running = True
            snapshot, version = self._bump()
        self._publish(snapshot, version)
        return True

    def reset(self) -> None:
        """Drop every item and clear the running flag in one step."""
        with self._lock:
            self._items = ()
            self._running = False
            snapshot, version = self._bump()
        self._publish(snapshot, version)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Register *callback* for every published snapshot.

        Returns a function that removes the subscription.
        """
        with self._publish_lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._publish_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _bump(self) -> tuple[QueueSnapshot, int]:
        """Advance the version (must hold ``_lock``)."""
        self._version += 1
        return QueueSnapshot(self._items, self._running), self._version

    def _publish(self, snapshot: QueueSnapshot, version: int) -> None:
        with self._publish_lock:
            if version <= self._published_version:
                return  # A newer snapshot already went out
            self._published_version = version
            for callback in list(self._subscribers):
                try:
                    callback(snapshot)
                except Exception:
                    logger.exception("Exception in queue subscriber callback")


# ---------------------------------------------------------------------------
# Pure item transforms
# ---------------------------------------------------------------------------


def _replace_item(
    items: tuple[QueueItem, ...],
    item_id: str,
    fold: Callable[[QueueItem], QueueItem],
) -> tuple[QueueItem, ...]:
    """Return *items* with the item whose id is *item_id* replaced by ``fold(item)``."""
    return tuple(fold(item) if item.id == item_id else item for item in items)


def _job_fold(job_id: str, fold: Callable[[QueueItem], QueueItem]) -> Callable[[QueueItem], QueueItem]:
    """Apply *fold* only while the item is RUNNING on *job_id*."""

    def _apply(item: QueueItem) -> QueueItem:
        if item.status != QueueStatus.RUNNING or item.job_id != job_id:
            return item
        return fold(item)

    return _apply


# ---------------------------------------------------------------------------
# UploadQueueManager
# ---------------------------------------------------------------------------


class UploadQueueManager:
    """Public facade over the queue plus the drain loop that empties it.

    Usage::

        manager = UploadQueueManager(runner, job_factory)
        manager.subscribe(lambda snap: render(snap.items))
        manager.enqueue("/photos/a.jpg", "https://tus.example.com/files/")
        manager.start()
        # ...
        manager.pause()

    Thread-safety:
    - ``_control_lock`` orders start/pause/clear against the loop's
      "still current? then mark RUNNING" step.  Only pure store updates run
      under it; job submission and cancellation happen outside.
    """

    def __init__(
        self,
        runner,
        job_factory: Callable[[QueueItem], JobSpec],
        store: QueueStore | None = None,
    ) -> None:
        """Initialise the manager.

        Args:
            runner: Task facility with ``submit``, ``observe`` and ``cancel``.
            job_factory: Builds the job spec that uploads a given item.
            store: Queue store to use; a fresh one by default.
        """
        self._runner = runner
        self._job_factory = job_factory
        self._store = store or QueueStore()

        self._control_lock = threading.Lock()
        self._generation = 0
        self._submitted_jobs: set[str] = set()
        self._drain_thread: threading.Thread | None = None

    @property
    def store(self) -> QueueStore:
        return self._store

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(self, source: str, endpoint: str) -> str:
        """Append a PENDING item and return its id."""
        item = QueueItem(source=str(source), endpoint=endpoint)
        self._store.update(lambda items: items + (item,))
        logger.info("Queued %s → %s (%s)", source, endpoint, item.id)
        return item.id

    def start(self) -> bool:
        """Start the drain loop.  Returns False if it was already running."""
        with self._control_lock:
            if not self._store.try_start():
                logger.debug("start() called but queue is already running")
                return False
            self._generation += 1
            generation = self._generation
            thread = threading.Thread(
                target=self._drain_loop,
                args=(generation,),
                name=f"upload-queue-drain-{generation}",
                daemon=True,
            )
            self._drain_thread = thread
        thread.start()
        logger.info("Upload queue started")
        return True

    def pause(self) -> None:
        """Stop the drain loop and cancel the running job, keeping its progress."""
        paused: list[QueueItem] = []
        with self._control_lock:
            if not self._store.running:
                return
            self._generation += 1
            self._store.set_running(False)

            def _pause_running(items: tuple[QueueItem, ...]) -> tuple[QueueItem, ...]:
                result = []
                for item in items:
                    if item.status == QueueStatus.RUNNING:
                        paused.append(item)
                        item = dataclasses.replace(item, status=QueueStatus.PAUSED)
                    result.append(item)
                return tuple(result)

            self._store.update(_pause_running)
            self._submitted_jobs.difference_update(item.job_id for item in paused)

        for item in paused:
            if item.job_id:
                self._runner.cancel(item.job_id)
        logger.info("Upload queue paused (%d item(s) interrupted)", len(paused))

    def clear(self) -> None:
        """Cancel every unfinished submitted job and empty the queue."""
        with self._control_lock:
            self._generation += 1
            job_ids = list(self._submitted_jobs)
            self._submitted_jobs.clear()
            self._store.reset()

        for job_id in job_ids:
            self._runner.cancel(job_id)
        logger.info("Upload queue cleared (%d job(s) cancelled)", len(job_ids))

    def snapshot(self) -> QueueSnapshot:
        """Return the current items and running flag."""
        return self._store.snapshot()

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Register *callback* for every queue snapshot; returns an unsubscribe function.

        Callbacks run on whichever thread changed the queue and must not call
        ``start``, ``pause`` or ``clear`` themselves.
        """
        return self._store.subscribe(callback)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until the current drain loop exits.  Returns True if it did."""
        thread = self._drain_thread
        if thread is None:
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    # ------------------------------------------------------------------
    # Drain loop
    # ------------------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _drain_loop(self, generation: int) -> None:
        """Upload runnable items one at a time until none remain or superseded."""
        logger.debug("Drain loop %d started", generation)
        try:
            while self._drain_step(generation):
                pass
        except Exception:
            logger.exception("Drain loop %d crashed", generation)
            with self._control_lock:
                if self._is_current(generation):
                    self._store.set_running(False)
        logger.debug("Drain loop %d exiting", generation)

    def _drain_step(self, generation: int) -> bool:
        """Run the next runnable item to a terminal job state.

        Returns False when the loop should stop.
        """
        with self._control_lock:
            if not self._is_current(generation):
                return False
            snapshot = self._store.snapshot()
            item = next((i for i in snapshot.items if i.is_runnable), None)
            if item is None:
                self._store.set_running(False)
                logger.info("Upload queue drained")
                return False

        try:
            job_id = self._runner.submit(self._job_factory(item))
        except Exception as exc:
            logger.exception("Could not submit upload job for %s", item.source)
            self._store.update(
                lambda items: _replace_item(
                    items,
                    item.id,
                    lambda it: dataclasses.replace(it, status=QueueStatus.FAILED, error=str(exc)),
                )
            )
            return True

        with self._control_lock:
            current = self._is_current(generation)
            if current:
                self._submitted_jobs.add(job_id)
                self._store.update(
                    lambda items: _replace_item(
                        items,
                        item.id,
                        lambda it: dataclasses.replace(
                            it, job_id=job_id, status=QueueStatus.RUNNING
                        ),
                    )
                )
        if not current:
            # pause()/clear() won the race; this job must not run
            self._runner.cancel(job_id)
            return False

        logger.info("Uploading %s (item %s, job %s)", item.source, item.id, job_id)
        keep_going = self._follow_job(generation, item.id, job_id)
        with self._control_lock:
            self._submitted_jobs.discard(job_id)
        return keep_going

    def _follow_job(self, generation: int, item_id: str, job_id: str) -> bool:
        """Fold every event of *job_id* into the store.  Returns False to stop."""
        first_progress = True
        for info in self._runner.observe(job_id):
            if not self._is_current(generation):
                return False
            if info.state == JobState.RUNNING:
                if self._fold_progress(item_id, job_id, info, reset=first_progress):
                    first_progress = False
            elif info.state == JobState.SUCCEEDED:
                self._fold_terminal(item_id, job_id, QueueStatus.SUCCESS, info)
                return True
            elif info.state == JobState.FAILED:
                self._fold_terminal(item_id, job_id, QueueStatus.FAILED, info)
                return True
            elif info.state == JobState.CANCELLED:
                return self._fold_external_cancel(generation, item_id, job_id)
        # Stream ended without a finished state (job unknown or runner shut down)
        logger.warning("Lost track of job %s for item %s", job_id, item_id)
        return self._fold_external_cancel(generation, item_id, job_id)

    def _fold_progress(self, item_id: str, job_id: str, info: JobInfo, reset: bool) -> bool:
        fraction = progress_fraction(info.progress)
        if fraction is None:
            return False

        def _progress(item: QueueItem) -> QueueItem:
            value = fraction if reset else max(item.progress, fraction)
            return dataclasses.replace(item, progress=value)

        self._store.update(lambda items: _replace_item(items, item_id, _job_fold(job_id, _progress)))
        return True

    def _fold_terminal(
        self, item_id: str, job_id: str, status: QueueStatus, info: JobInfo
    ) -> None:
        def _finish(item: QueueItem) -> QueueItem:
            if status == QueueStatus.SUCCESS:
                return dataclasses.replace(
                    item,
                    status=status,
                    progress=1.0,
                    upload_url=info.output.get(KEY_UPLOAD_URL),
                    error=None,
                )
            return dataclasses.replace(item, status=status, error=info.output.get(KEY_ERROR))

        self._store.update(lambda items: _replace_item(items, item_id, _job_fold(job_id, _finish)))
        logger.info("Item %s finished: %s", item_id, status.name)

    def _fold_external_cancel(self, generation: int, item_id: str, job_id: str) -> bool:
        """Treat a job cancelled behind the queue's back as a pause."""
        with self._control_lock:
            if not self._is_current(generation):
                return False
            self._generation += 1
            self._store.set_running(False)
            self._store.update(
                lambda items: _replace_item(
                    items,
                    item_id,
                    _job_fold(job_id, lambda it: dataclasses.replace(it, status=QueueStatus.PAUSED)),
                )
            )
        logger.warning("Job %s was cancelled externally — queue paused", job_id)
        return False
