"""Execution monitoring — per-run records, aggregate counters, bounded history.

Two implementations share the ``ExecutionMonitor`` interface:

* ``NoopExecutionMonitor`` — monitoring disabled; every call is a no-op.
* ``InMemoryExecutionMonitor`` — keeps counters and a ring buffer of recent
  records.

Locking: the scheduler loop makes every monitor call from its own event loop,
so the calls are already serialised. Handlers that report from worker threads
need ``thread_safe=True`` (the default), which guards counters, the pending
map and the ring buffer with one ``threading.Lock``.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from core.clock import SystemClock

if TYPE_CHECKING:
    from core.clock import Clock

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100

# Failure alerting thresholds
_ALERT_WINDOW = 5
_ALERT_CONSECUTIVE = 3
_ALERT_MIN_RUNS = 10
_ALERT_FAILURE_RATE = 0.5

STARTED = "started"
SUCCESS = "success"
FAILURE = "failure"
SKIPPED = "skipped"


# ── Data classes ─────────────────────────────────────────────────────────────

@dataclass
class ExecutionRecord:
    """One execution of one task. Times are epoch milliseconds."""
    task_uuid: str
    task_name: str
    started_at: int
    status: str = STARTED            # started | success | failure | skipped
    completed_at: int | None = None
    duration: float | None = None    # ms
    error: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "task_uuid": self.task_uuid,
            "task_name": self.task_name,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration": self.duration,
            "status": self.status,
            "error": self.error,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ExecutionStats:
    """Immutable counters snapshot."""
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    skipped_executions: int = 0
    last_execution_at: int | None = None
    last_success_at: int | None = None
    last_failure_at: int | None = None
    average_execution_duration: float = 0.0

    @property
    def success_rate(self) -> float:
        if not self.total_executions:
            return 0.0
        return self.successful_executions / self.total_executions

    def to_dict(self) -> dict:
        return {
            "total_executions": self.total_executions,
            "successful_executions": self.successful_executions,
            "failed_executions": self.failed_executions,
            "skipped_executions": self.skipped_executions,
            "last_execution_at": self.last_execution_at,
            "last_success_at": self.last_success_at,
            "last_failure_at": self.last_failure_at,
            "average_execution_duration": round(self.average_execution_duration, 3),
            "success_rate": round(self.success_rate, 4),
        }


@dataclass
class _Counters:
    total: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    timed: int = 0                   # executions contributing to the mean
    average: float = 0.0
    last_at: int | None = None
    last_success_at: int | None = None
    last_failure_at: int | None = None
    recent: deque = field(default_factory=lambda: deque(maxlen=_ALERT_WINDOW))

    def add(self, record: ExecutionRecord) -> None:
        now = record.completed_at
        self.total += 1
        self.last_at = now
        if record.status == SUCCESS:
            self.success += 1
            self.last_success_at = now
        elif record.status == FAILURE:
            self.failed += 1
            self.last_failure_at = now
        elif record.status == SKIPPED:
            self.skipped += 1
        self.recent.append(record.status)

        if record.status != SKIPPED and record.duration is not None:
            self.timed += 1
            self.average += (record.duration - self.average) / self.timed

    def snapshot(self) -> ExecutionStats:
        return ExecutionStats(
            total_executions=self.total,
            successful_executions=self.success,
            failed_executions=self.failed,
            skipped_executions=self.skipped,
            last_execution_at=self.last_at,
            last_success_at=self.last_success_at,
            last_failure_at=self.last_failure_at,
            average_execution_duration=self.average,
        )


# ── Interface ────────────────────────────────────────────────────────────────

class ExecutionMonitor(ABC):
    """What the scheduler loop reports execution outcomes to."""

    @abstractmethod
    def record_execution_start(self, task_uuid: str, task_name: str) -> None: ...

    @abstractmethod
    def record_execution_success(
        self, task_uuid: str, task_name: str, duration: float | None = None,
    ) -> None: ...

    @abstractmethod
    def record_execution_failure(
        self,
        task_uuid: str,
        task_name: str,
        error: BaseException | str | None = None,
        duration: float | None = None,
    ) -> None: ...

    @abstractmethod
    def record_execution_skipped(self, task_uuid: str, task_name: str, reason: str) -> None: ...

    @abstractmethod
    def get_stats(self) -> ExecutionStats: ...

    @abstractmethod
    def get_recent_records(self, limit: int | None = None) -> list[ExecutionRecord]: ...


class NoopExecutionMonitor(ExecutionMonitor):
    """Monitoring disabled."""

    def record_execution_start(self, task_uuid, task_name):
        pass

    def record_execution_success(self, task_uuid, task_name, duration=None):
        pass

    def record_execution_failure(self, task_uuid, task_name, error=None, duration=None):
        pass

    def record_execution_skipped(self, task_uuid, task_name, reason):
        pass

    def get_stats(self) -> ExecutionStats:
        return ExecutionStats()

    def get_recent_records(self, limit=None) -> list[ExecutionRecord]:
        return []


# ── In-memory aggregator ─────────────────────────────────────────────────────

class InMemoryExecutionMonitor(ExecutionMonitor):
    """Aggregates counters and keeps the most recent records in a ring buffer.

    Args:
        capacity: Records retained before the oldest is evicted.
        clock: Millisecond clock used for start / completion times.
        thread_safe: Guard state with a lock (see module docstring).
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        clock: Clock | None = None,
        thread_safe: bool = True,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._clock = clock or SystemClock()
        self._lock = threading.Lock() if thread_safe else nullcontext()
        self._pending: dict[str, ExecutionRecord] = {}
        self._history: deque[ExecutionRecord] = deque(maxlen=capacity)
        self._global = _Counters()
        self._per_task: dict[str, _Counters] = {}

    # ── Recording ────────────────────────────────────────────────────────────

    def record_execution_start(self, task_uuid: str, task_name: str) -> None:
        record = ExecutionRecord(task_uuid=task_uuid, task_name=task_name,
                                 started_at=self._clock.now())
        with self._lock:
            # Last start wins: an unfinished earlier start is overwritten
            self._pending[task_uuid] = record
        logger.debug("Execution started", extra={"task_uuid": task_uuid, "task_name": task_name})

    def record_execution_success(
        self, task_uuid: str, task_name: str, duration: float | None = None,
    ) -> None:
        record = self._finish(task_uuid, task_name, SUCCESS, duration)
        logger.info(
            "Execution succeeded",
            extra={"task_uuid": task_uuid, "task_name": task_name, "duration_ms": record.duration},
        )

    def record_execution_failure(
        self,
        task_uuid: str,
        task_name: str,
        error: BaseException | str | None = None,
        duration: float | None = None,
    ) -> None:
        message = str(error) if error is not None else None
        record = self._finish(task_uuid, task_name, FAILURE, duration, error=message)
        logger.warning(
            "Execution failed",
            extra={"task_uuid": task_uuid, "task_name": task_name,
                   "duration_ms": record.duration, "error": message},
        )
        self._alert_on_failure(task_uuid, task_name, message)

    def record_execution_skipped(self, task_uuid: str, task_name: str, reason: str) -> None:
        now = self._clock.now()
        record = ExecutionRecord(task_uuid=task_uuid, task_name=task_name, started_at=now,
                                 status=SKIPPED, completed_at=now, reason=reason)
        with self._lock:
            self._append(record)
        logger.info("Execution skipped",
                    extra={"task_uuid": task_uuid, "task_name": task_name, "reason": reason})

    # ── Queries ──────────────────────────────────────────────────────────────

    def get_stats(self) -> ExecutionStats:
        with self._lock:
            return self._global.snapshot()

    def get_task_stats(self, task_uuid: str) -> ExecutionStats | None:
        with self._lock:
            counters = self._per_task.get(task_uuid)
            return counters.snapshot() if counters else None

    def get_recent_records(self, limit: int | None = None) -> list[ExecutionRecord]:
        """Most recent finalised records, newest last."""
        with self._lock:
            records = list(self._history)
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return [replace(r) for r in records]

    def get_running(self) -> list[ExecutionRecord]:
        with self._lock:
            return [replace(r) for r in self._pending.values()]

    def reset(self) -> None:
        with self._lock:
            self._pending.clear()
            self._history.clear()
            self._global = _Counters()
            self._per_task.clear()
        logger.info("Execution monitor reset")

    def summary(self) -> str:
        stats = self.get_stats()
        running = self.get_running()
        avg = f"{stats.average_execution_duration:.1f}ms" if stats.total_executions else "-"
        lines = [
            "╔══ Execution Monitor " + "═" * 33,
            f"  Running   : {len(running)}",
            f"  Total     : {stats.total_executions}",
            f"  Succeeded : {stats.successful_executions}",
            f"  Failed    : {stats.failed_executions}",
            f"  Skipped   : {stats.skipped_executions}",
            f"  Success % : {stats.success_rate * 100:.2f}",
            f"  Avg time  : {avg}",
            "",
            f"  {'Task':<24} {'Status':<10} {'Duration':>10}",
            "  " + "─" * 48,
        ]
        for record in self.get_recent_records(10):
            dur = f"{record.duration:.0f}ms" if record.duration is not None else "-"
            lines.append(f"  {record.task_name[:24]:<24} {record.status:<10} {dur:>10}")
        lines.append("╚" + "═" * 54)
        return "\n".join(lines)

    # ── Internal ─────────────────────────────────────────────────────────────

    def _finish(
        self,
        task_uuid: str,
        task_name: str,
        status: str,
        duration: float | None,
        error: str | None = None,
    ) -> ExecutionRecord:
        now = self._clock.now()
        with self._lock:
            record = self._pending.pop(task_uuid, None)
            if record is None:
                logger.warning("No pending start for finished execution",
                               extra={"task_uuid": task_uuid, "status": status})
                record = ExecutionRecord(task_uuid=task_uuid, task_name=task_name,
                                         started_at=now if duration is None else now - int(duration))
            if duration is None and record.started_at is not None:
                duration = float(now - record.started_at)
            record.task_name = task_name or record.task_name
            record.status = status
            record.completed_at = now
            record.duration = duration
            record.error = error
            self._append(record)
        return record

    def _append(self, record: ExecutionRecord) -> None:
        self._history.append(record)
        self._global.add(record)
        self._per_task.setdefault(record.task_uuid, _Counters()).add(record)

    def _alert_on_failure(self, task_uuid: str, task_name: str, error: str | None) -> None:
        with self._lock:
            counters = self._per_task.get(task_uuid)
            if counters is None:
                return
            recent_failures = sum(1 for s in counters.recent if s == FAILURE)
            total, failed = counters.total, counters.failed

        if recent_failures >= _ALERT_CONSECUTIVE:
            logger.error(
                "Task failing repeatedly",
                extra={"task_uuid": task_uuid, "task_name": task_name,
                       "recent_failures": recent_failures, "total_failures": failed,
                       "error": error},
            )
        if total >= _ALERT_MIN_RUNS and failed / total > _ALERT_FAILURE_RATE:
            logger.error(
                "Task failure rate too high",
                extra={"task_uuid": task_uuid, "task_name": task_name,
                       "failure_rate": round(failed / total, 4), "total": total},
            )
