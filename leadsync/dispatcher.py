from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from leadsync.domain.errors import ExhaustedRetries, error_category, is_retryable
from leadsync.observability import incr_metric, log_event


JOB_STATUSES = ("queued", "active", "completed", "failed", "dead_letter")


@dataclass
class Job:
    id: str
    lane: str
    kind: str
    payload: dict[str, Any]
    trace_id: str
    attempt_count: int = 0
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: str = "queued"
    last_error: str | None = None
    ready_at: float = 0.0
    recovered: bool = False

    @property
    def is_redelivery(self) -> bool:
        return self.attempt_count > 1 or self.recovered

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "lane": self.lane,
            "kind": self.kind,
            "trace_id": self.trace_id,
            "attempt_count": self.attempt_count,
            "enqueued_at": self.enqueued_at.isoformat(),
            "status": self.status,
            "last_error": self.last_error,
            "payload": self.payload,
        }


JobHandler = Callable[[Job], None]
DeadLetterHook = Callable[[Job, ExhaustedRetries], None]
BacklogHook = Callable[[str, int], None]


class TokenBucket:
    def __init__(
        self,
        rate_per_second: float,
        capacity: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._rate = rate_per_second
        self._capacity = capacity if capacity is not None else max(1.0, rate_per_second)
        self._tokens = self._capacity
        self._clock = clock
        self._sleep = sleep
        self._updated_at = clock()
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._updated_at = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def acquire(self) -> None:
        while not self.try_acquire():
            self._sleep(1.0 / self._rate if self._rate > 0 else 0.1)


class JobLane:
    """A named queue with its own workers, throughput limit and dead-letter set."""

    def __init__(
        self,
        name: str,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        rate_per_second: float = 10.0,
        max_attempts: int = 3,
        backoff_base_seconds: float = 2.0,
        backoff_max_seconds: float = 60.0,
        backlog_threshold: int | None = None,
        on_dead_letter: DeadLetterHook | None = None,
        on_backlog: BacklogHook | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._handler = handler
        self._concurrency = max(1, concurrency)
        self._bucket = TokenBucket(rate_per_second, clock=clock)
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._backlog_threshold = backlog_threshold
        self._on_dead_letter = on_dead_letter
        self._on_backlog = on_backlog
        self._clock = clock
        self._cond = threading.Condition()
        self._heap: list[tuple[float, int, Job]] = []
        self._seq = itertools.count()
        self._active: dict[str, Job] = {}
        self._dead_letters: dict[str, Job] = {}
        self._counters = {"completed": 0, "failed": 0, "retried": 0, "dead_letter": 0}
        self._stopping = False
        self._threads: list[threading.Thread] = []

    # queueing

    def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        *,
        trace_id: str | None = None,
        recovered: bool = False,
    ) -> Job:
        job = Job(
            id=str(uuid4()),
            lane=self.name,
            kind=kind,
            payload=payload,
            trace_id=trace_id or str(uuid4()),
            recovered=recovered,
        )
        self._push(job, delay=0.0)
        incr_metric("dispatcher.job.enqueued", lane=self.name)
        depth = self.depth
        if self._backlog_threshold is not None and depth > self._backlog_threshold and self._on_backlog:
            self._on_backlog(self.name, depth)
        return job

    def _push(self, job: Job, *, delay: float) -> None:
        job.status = "queued"
        job.ready_at = self._clock() + delay
        with self._cond:
            heapq.heappush(self._heap, (job.ready_at, next(self._seq), job))
            self._cond.notify()

    @property
    def depth(self) -> int:
        with self._cond:
            return len(self._heap)

    def claim(self, timeout: float | None = 0.0) -> Job | None:
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                now = self._clock()
                if self._heap and self._heap[0][0] <= now:
                    _, _, job = heapq.heappop(self._heap)
                    job.status = "active"
                    self._active[job.id] = job
                    return job
                if self._stopping:
                    return None
                if deadline is not None and now >= deadline:
                    return None
                waits = []
                if self._heap:
                    waits.append(self._heap[0][0] - now)
                if deadline is not None:
                    waits.append(deadline - now)
                self._cond.wait(min(waits) if waits else None)

    # execution

    def backoff_delay(self, attempt: int) -> float:
        return min(self._backoff_base * (2 ** (attempt - 1)), self._backoff_max)

    def execute(self, job: Job) -> None:
        job.attempt_count += 1
        started = time.monotonic()
        try:
            self._handler(job)
        except Exception as exc:
            self._handle_failure(job, exc)
            return
        finally:
            with self._cond:
                self._active.pop(job.id, None)
        job.status = "completed"
        job.last_error = None
        with self._cond:
            self._counters["completed"] += 1
        incr_metric("dispatcher.job.completed", lane=self.name)
        log_event(
            "job_completed",
            lane=self.name,
            job_id=job.id,
            trace_id=job.trace_id,
            attempt=job.attempt_count,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def _handle_failure(self, job: Job, exc: Exception) -> None:
        job.last_error = str(exc)
        category = error_category(exc)
        if not is_retryable(exc):
            job.status = "failed"
            with self._cond:
                self._counters["failed"] += 1
            incr_metric("dispatcher.job.failed", lane=self.name, category=category)
            log_event(
                "job_failed_terminal",
                level=logging.WARNING,
                lane=self.name,
                job_id=job.id,
                trace_id=job.trace_id,
                category=category,
                error=str(exc),
            )
            return

        if job.attempt_count >= self._max_attempts:
            job.status = "dead_letter"
            with self._cond:
                self._dead_letters[job.id] = job
                self._counters["dead_letter"] += 1
            incr_metric("dispatcher.job.dead_letter", lane=self.name, category=category)
            log_event(
                "job_dead_lettered",
                level=logging.ERROR,
                lane=self.name,
                job_id=job.id,
                trace_id=job.trace_id,
                attempts=job.attempt_count,
                error=str(exc),
            )
            if self._on_dead_letter:
                self._on_dead_letter(
                    job,
                    ExhaustedRetries(
                        f"Job {job.id} failed after {job.attempt_count} attempts",
                        attempts=job.attempt_count,
                        last_error=str(exc),
                    ),
                )
            return

        delay = self.backoff_delay(job.attempt_count)
        with self._cond:
            self._counters["retried"] += 1
        incr_metric("dispatcher.job.retried", lane=self.name, category=category)
        log_event(
            "job_retry_scheduled",
            level=logging.WARNING,
            lane=self.name,
            job_id=job.id,
            trace_id=job.trace_id,
            attempt=job.attempt_count,
            delay_seconds=delay,
            error=str(exc),
        )
        self._push(job, delay=delay)

    def process_next(self) -> bool:
        """Run one ready job in the calling thread."""
        job = self.claim(timeout=0.0)
        if job is None:
            return False
        self.execute(job)
        return True

    def drain(self, max_jobs: int = 1000) -> int:
        processed = 0
        while processed < max_jobs and self.process_next():
            processed += 1
        return processed

    # workers

    def _worker_loop(self) -> None:
        while True:
            job = self.claim(timeout=0.5)
            if job is None:
                if self._stopping:
                    return
                continue
            self._bucket.acquire()
            self.execute(job)

    def start(self) -> None:
        if self._threads:
            return
        self._stopping = False
        for idx in range(self._concurrency):
            thread = threading.Thread(target=self._worker_loop, name=f"{self.name}-worker-{idx}", daemon=True)
            thread.start()
            self._threads.append(thread)
        log_event("lane_started", lane=self.name, concurrency=self._concurrency)

    def stop(self, timeout: float = 5.0) -> None:
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        log_event("lane_stopped", lane=self.name, pending=self.depth)

    # dead letters

    def dead_letters(self) -> list[Job]:
        with self._cond:
            return sorted(self._dead_letters.values(), key=lambda job: job.enqueued_at)

    def retry_dead_letter(self, job_id: str) -> Job | None:
        with self._cond:
            job = self._dead_letters.pop(job_id, None)
        if job is None:
            return None
        job.attempt_count = 0
        job.last_error = None
        self._push(job, delay=0.0)
        incr_metric("dispatcher.dead_letter.retried", lane=self.name)
        return job

    def retry_all_dead_letters(self) -> list[Job]:
        with self._cond:
            job_ids = list(self._dead_letters)
        return [job for job in (self.retry_dead_letter(job_id) for job_id in job_ids) if job is not None]

    def remove_dead_letter(self, job_id: str) -> bool:
        with self._cond:
            removed = self._dead_letters.pop(job_id, None)
        if removed is not None:
            incr_metric("dispatcher.dead_letter.removed", lane=self.name)
        return removed is not None

    def stats(self) -> dict[str, Any]:
        with self._cond:
            return {
                "lane": self.name,
                "queued": len(self._heap),
                "active": len(self._active),
                "dead_letter": len(self._dead_letters),
                "workers": len(self._threads),
                **{f"total_{key}": value for key, value in self._counters.items()},
            }


class Dispatcher:
    def __init__(self, lanes: list[JobLane]) -> None:
        self._lanes = {lane.name: lane for lane in lanes}

    def lane(self, name: str) -> JobLane:
        try:
            return self._lanes[name]
        except KeyError:
            raise ValueError(f"Unknown lane: {name}") from None

    @property
    def lanes(self) -> list[JobLane]:
        return list(self._lanes.values())

    def enqueue(
        self,
        lane: str,
        kind: str,
        payload: dict[str, Any],
        *,
        trace_id: str | None = None,
        recovered: bool = False,
    ) -> Job:
        return self.lane(lane).enqueue(kind, payload, trace_id=trace_id, recovered=recovered)

    def start(self) -> None:
        for lane in self._lanes.values():
            lane.start()

    def stop(self, timeout: float = 5.0) -> None:
        for lane in self._lanes.values():
            lane.stop(timeout)

    def drain(self) -> int:
        return sum(lane.drain() for lane in self._lanes.values())

    def stats(self) -> list[dict[str, Any]]:
        return [lane.stats() for lane in self._lanes.values()]

    def total_depth(self) -> int:
        return sum(lane.depth for lane in self._lanes.values())

    def recover(self, pending: list[dict[str, Any]]) -> int:
        """Re-enqueue deliveries that were accepted but never finished."""
        recovered = 0
        for row in pending:
            lane_name = row.get("source")
            if lane_name not in self._lanes or not isinstance(row.get("payload"), dict):
                continue
            self.enqueue(
                lane_name,
                row.get("job_kind") or f"{lane_name}.webhook",
                row["payload"],
                trace_id=row.get("trace_id"),
                recovered=True,
            )
            recovered += 1
        if recovered:
            incr_metric("dispatcher.recovered", value=recovered)
            log_event("dispatcher_recovered_jobs", count=recovered)
        return recovered
