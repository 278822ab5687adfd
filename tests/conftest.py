"""Shared fixtures: a scriptable job runner, fake tus sessions and a poller."""

from __future__ import annotations

import itertools
import queue
import threading
import time
from types import MappingProxyType
from typing import Any, Callable

import pytest

from tusqueue.jobs import JobInfo, JobSpec, JobState
from tusqueue.protocol import UPLOAD_DONE


# ---------------------------------------------------------------------------
# Polling helper
# ---------------------------------------------------------------------------


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll *predicate* until it is truthy or *timeout* expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return bool(predicate())


@pytest.fixture()
def wait_for() -> Callable[..., bool]:
    return _wait_for


# ---------------------------------------------------------------------------
# Scriptable job runner
# ---------------------------------------------------------------------------


class FakeJobRunner:
    """Job runner whose lifecycle events are pushed by the test.

    ``observe`` replays every emitted event in order (no conflation), so
    assertions about intermediate states are deterministic.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._streams: dict[str, queue.Queue[JobInfo]] = {}
        self._latest: dict[str, JobInfo] = {}
        self.specs: dict[str, JobSpec] = {}
        self.submitted: list[str] = []
        self.cancelled: list[str] = []

    def submit(self, spec: JobSpec) -> str:
        job_id = f"job-{next(self._ids)}"
        with self._lock:
            self._streams[job_id] = queue.Queue()
            self.specs[job_id] = spec
            self.submitted.append(job_id)
        self.emit(job_id, JobState.ENQUEUED)
        return job_id

    def emit(
        self,
        job_id: str,
        state: JobState,
        progress: dict[str, Any] | None = None,
        output: dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            previous = self._latest.get(job_id)
            if previous is not None and previous.state.is_finished:
                return
            info = JobInfo(
                id=job_id,
                name=self.specs[job_id].name,
                state=state,
                progress=MappingProxyType(dict(progress or {})),
                output=MappingProxyType(dict(output or {})),
                run_attempt=1,
            )
            self._latest[job_id] = info
            self._streams[job_id].put(info)

    def observe(self, job_id: str):
        stream = self._streams.get(job_id)
        if stream is None:
            return
        while True:
            try:
                info = stream.get(timeout=10)
            except queue.Empty:
                return
            yield info
            if info.state.is_finished:
                return

    def cancel(self, job_id: str) -> None:
        with self._lock:
            self.cancelled.append(job_id)
        if job_id in self._streams:
            self.emit(job_id, JobState.CANCELLED)

    def get_info(self, job_id: str) -> JobInfo | None:
        with self._lock:
            return self._latest.get(job_id)

    def item_id_of(self, job_id: str) -> str:
        return self.specs[job_id].input_data["item_id"]


@pytest.fixture()
def fake_runner() -> FakeJobRunner:
    return FakeJobRunner()


# ---------------------------------------------------------------------------
# Fake tus session
# ---------------------------------------------------------------------------


class FakeSession:
    """In-memory stand-in for a tus upload session."""

    def __init__(
        self,
        total_size: int = 1000,
        chunk_size: int = 400,
        offset: int = 0,
        url: str = "https://tus.example.com/files/abc123",
        chunk_errors: dict[int, Exception] | None = None,
        finish_errors: list[Exception] | None = None,
    ) -> None:
        self.total_size = total_size
        self.chunk_size = chunk_size
        self.offset = offset
        self.url = url
        self.chunk_errors = dict(chunk_errors or {})
        self.finish_errors = list(finish_errors or [])
        self.chunk_calls = 0
        self.finish_calls = 0
        self.forget_calls = 0
        self.on_finish: Callable[[], None] | None = None

    def upload_next_chunk(self) -> int:
        call_no = self.chunk_calls
        self.chunk_calls += 1
        if call_no in self.chunk_errors:
            raise self.chunk_errors[call_no]
        if self.offset >= self.total_size:
            return UPLOAD_DONE
        sent = min(self.chunk_size, self.total_size - self.offset)
        self.offset += sent
        return sent

    def finish(self) -> str:
        self.finish_calls += 1
        if self.finish_errors:
            raise self.finish_errors.pop(0)
        if self.on_finish is not None:
            self.on_finish()
        return self.url

    def forget(self) -> None:
        self.forget_calls += 1


@pytest.fixture()
def make_session() -> Callable[..., FakeSession]:
    return FakeSession
