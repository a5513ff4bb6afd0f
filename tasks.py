"""In-process task queue used by the scheduled sweeps.

Sweeps enqueue a batch of payloads under an event name; a handler
registered for that event processes them when the queue is drained. A
handler may carry a ``Throttle`` that caps how many tasks sharing a key
(e.g. the same ``user_id``) run per period; throttled tasks stay queued
for a later drain. Store contention is retried with exponential backoff
and a small attempt cap, after which the task is logged and dropped.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Mapping, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from errors import TransientStoreError
from periods import utcnow


logger = logging.getLogger(__name__)

Handler = Callable[[Mapping[str, object]], object]


@dataclass
class Task:
    event_name: str
    payload: dict[str, object]
    enqueued_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class DrainSummary:
    processed: int
    failed: int
    deferred: int


class Throttle:
    """Sliding-window cap of ``limit`` runs per ``period`` for each key value."""

    def __init__(self, limit: int, period: timedelta, key: str) -> None:
        if limit <= 0:
            raise ValueError("Throttle limit must be positive")
        self.limit = limit
        self.period = period
        self.key = key
        self._runs: dict[object, deque[datetime]] = {}

    def prune(self, now: datetime) -> None:
        """Forget keys with no runs inside the current window."""
        cutoff = now - self.period
        stale = [key for key, runs in self._runs.items() if runs[-1] <= cutoff]
        for key in stale:
            del self._runs[key]

    def tracked_keys(self) -> int:
        return len(self._runs)

    def allow(self, payload: Mapping[str, object], now: datetime) -> bool:
        runs = self._runs.setdefault(payload.get(self.key), deque())
        cutoff = now - self.period
        while runs and runs[0] <= cutoff:
            runs.popleft()
        if len(runs) >= self.limit:
            return False
        runs.append(now)
        return True


class TaskQueue:
    def __init__(
        self,
        *,
        max_attempts: int = 2,
        backoff_secs: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_attempts = max_attempts
        self.backoff_secs = backoff_secs
        self._sleep = sleep
        self._handlers: dict[str, tuple[Handler, Optional[Throttle]]] = {}
        self._pending: deque[Task] = deque()
        self._lock = threading.Lock()
        self._drain_lock = threading.Lock()

    def register(
        self, event_name: str, handler: Handler, throttle: Optional[Throttle] = None
    ) -> None:
        self._handlers[event_name] = (handler, throttle)

    def enqueue(
        self, event_name: str, payloads: Iterable[Mapping[str, object]]
    ) -> int:
        tasks = [Task(event_name=event_name, payload=dict(p)) for p in payloads]
        with self._lock:
            self._pending.extend(tasks)
        logger.info(f"tasks_enqueued: event={event_name} count={len(tasks)}")
        return len(tasks)

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_secs, max=60),
            retry=retry_if_exception_type(TransientStoreError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )

    def run_pending(self, now: Optional[datetime] = None) -> DrainSummary:
        with self._drain_lock:
            return self._drain(now or utcnow())

    def _drain(self, now: datetime) -> DrainSummary:
        with self._lock:
            batch = list(self._pending)
            self._pending.clear()
        for _, throttle in self._handlers.values():
            if throttle is not None:
                throttle.prune(now)

        processed = failed = 0
        deferred: list[Task] = []
        for task in batch:
            entry = self._handlers.get(task.event_name)
            if entry is None:
                logger.error(f"task_dropped: event={task.event_name} reason=no_handler")
                failed += 1
                continue
            handler, throttle = entry
            if throttle is not None and not throttle.allow(task.payload, now):
                deferred.append(task)
                continue
            try:
                self._retrying()(handler, task.payload)
                processed += 1
            except Exception:
                failed += 1
                logger.exception(
                    f"task_failed: event={task.event_name} payload={task.payload!r}"
                )

        if deferred:
            with self._lock:
                self._pending.extendleft(reversed(deferred))
        summary = DrainSummary(
            processed=processed, failed=failed, deferred=len(deferred)
        )
        logger.info(
            f"tasks_drained: processed={summary.processed} failed={summary.failed} "
            f"deferred={summary.deferred}"
        )
        return summary
