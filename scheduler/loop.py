"""SchedulerLoop — single coordinator that fires due tasks off a priority heap.

One asyncio task owns the heap. Callers never touch it: ``schedule_template``,
``cancel_template`` and ``reschedule_template`` enqueue a command that the
coordinator applies and resolves, which also wakes it early so a new earliest
deadline is picked up at once. Before ``start()`` the caller owns the heap and
commands apply inline.

    IDLE ──► WAITING(deadline) ──► FIRING(batch) ──► IDLE
              ▲     │ command
              └─────┘
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from collections import Counter
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from core.clock import SystemClock
from core.config import CatchUpPolicy, OverlapPolicy
from core.event_bus import NullEventSink
from core.events import ExecutionFailed, ExecutionSkipped, ExecutionSucceeded
from core.logging_config import bind_task_uuid, reset_task_uuid
from monitor.execution_monitor import NoopExecutionMonitor
from recurrence.engine import RecurrenceEngine
from scheduler.heap import PriorityHeap
from scheduler.models import HeapItem

if TYPE_CHECKING:
    from core.clock import Clock
    from core.config import EngineSettings
    from core.event_bus import EventSink
    from monitor.execution_monitor import ExecutionMonitor, ExecutionRecord, ExecutionStats
    from scheduler.models import Template

logger = logging.getLogger(__name__)

TaskHandler = Callable[[HeapItem], Awaitable[None]]

SKIP_REASON_OVERLAP = "previous run still in flight"
SKIP_REASON_MISSED = "missed while the scheduler was down"

_STOP = "stop"


@dataclass(frozen=True)
class LoopPolicy:
    overlap: OverlapPolicy = OverlapPolicy.SKIP
    catch_up: CatchUpPolicy = CatchUpPolicy.SINGLE
    max_replays: int = 5
    misfire_grace_ms: int = 60_000              # later than this → catch-up policy
    max_timer_delay_ms: int = 24 * 60 * 60 * 1000

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> LoopPolicy:
        return cls(
            overlap=settings.overlap_policy,
            catch_up=settings.catch_up_policy,
            max_replays=settings.max_replays,
            misfire_grace_ms=settings.misfire_grace_ms,
            max_timer_delay_ms=settings.max_timer_delay_ms,
        )


@dataclass(frozen=True)
class LoopStatus:
    running: bool
    queue_size: int
    in_flight: int
    next_task_uuid: str | None
    next_task_at: int | None


@dataclass
class _Command:
    action: str
    args: tuple
    future: asyncio.Future


class SchedulerLoop:
    """Waits for the next deadline, drains everything due, dispatches, reschedules.

    Args:
        handler: Async callable run for every due item. Exceptions are caught
            per item and recorded as failures.
        engine: Computes each template's next occurrence.
        monitor: Receives start / success / failure / skip reports.
        events: Outbound event sink.
        clock: Millisecond clock (``SystemClock`` by default).
        policy: Overlap, catch-up and timer settings.
    """

    def __init__(
        self,
        handler: TaskHandler,
        engine: RecurrenceEngine | None = None,
        monitor: ExecutionMonitor | None = None,
        events: EventSink | None = None,
        clock: Clock | None = None,
        policy: LoopPolicy | None = None,
    ):
        self._handler = handler
        self._engine = engine or RecurrenceEngine()
        self._monitor = monitor or NoopExecutionMonitor()
        self._events = events or NullEventSink()
        self._clock = clock or SystemClock()
        self.policy = policy or LoopPolicy()

        self._heap = PriorityHeap()
        self._templates: dict[str, Template] = {}
        self._in_flight: Counter[str] = Counter()
        self._tasks: set[asyncio.Task] = set()

        self._commands: asyncio.Queue[_Command] | None = None
        self._runner: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Spawn the coordinator task on the running event loop."""
        if self._running:
            logger.warning("SchedulerLoop already running")
            return
        self._loop = asyncio.get_running_loop()
        self._commands = asyncio.Queue()
        self._running = True
        self._runner = asyncio.create_task(self._run(), name="scheduler-loop")
        logger.info("SchedulerLoop started", extra={"queue_size": len(self._heap)})

    async def stop(self, wait: bool = True) -> None:
        """Stop the coordinator. With *wait*, also let in-flight executions finish.

        Commands issued once stopping has begun apply inline; commands already
        queued are applied before the coordinator exits.
        """
        if not self._running:
            return
        self._running = False
        done = asyncio.get_running_loop().create_future()
        self._commands.put_nowait(_Command(_STOP, (), done))
        if self._runner is not None:
            await self._runner
        self._runner = None
        if wait:
            await self.wait_idle()
        logger.info("SchedulerLoop stopped", extra={"queue_size": len(self._heap)})

    async def wait_idle(self) -> None:
        """Wait until every dispatched execution has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Commands ─────────────────────────────────────────────────────────────

    async def schedule_template(
        self, template: Template, next_run_at: int | None = None,
    ) -> HeapItem | None:
        """Insert the template at *next_run_at*, or at its next run at or after now.

        A *next_run_at* already in the past is fired on the next drain under
        the catch-up policy. Returns the heap entry, or None when the template
        is not ACTIVE or its rule has no future occurrence.
        """
        return await self._submit("schedule_template", template.model_copy(deep=True), next_run_at)

    async def schedule(self, item: HeapItem) -> bool:
        """Insert a one-off item that is not backed by a template."""
        return await self._submit("schedule", replace(item))

    async def cancel_template(self, task_uuid: str) -> bool:
        """Remove the task's heap entry. False when none was live."""
        return await self._submit("cancel", task_uuid)

    async def reschedule_template(self, task_uuid: str, next_run_at: int) -> bool:
        """Move the task's live entry to *next_run_at*. False when none was live."""
        return await self._submit("reschedule", task_uuid, next_run_at)

    def submit_threadsafe(self, coro: Coroutine[Any, Any, Any]) -> concurrent.futures.Future:
        """Run a command coroutine from another thread, e.g.
        ``loop.submit_threadsafe(loop.cancel_template(uuid)).result()``.
        """
        if self._loop is None or not self._running:
            coro.close()
            raise RuntimeError("SchedulerLoop is not running")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    # ── Queries ──────────────────────────────────────────────────────────────

    def get_execution_stats(self) -> ExecutionStats:
        return self._monitor.get_stats()

    def get_recent_executions(self, limit: int | None = None) -> list[ExecutionRecord]:
        return self._monitor.get_recent_records(limit)

    def status(self) -> LoopStatus:
        head = self._heap.peek()
        return LoopStatus(
            running=self._running,
            queue_size=len(self._heap),
            in_flight=sum(self._in_flight.values()),
            next_task_uuid=head.task_uuid if head else None,
            next_task_at=head.next_run_at if head else None,
        )

    def queued_items(self) -> list[HeapItem]:
        return self._heap.to_array()

    def has_task(self, task_uuid: str) -> bool:
        return self._heap.has(task_uuid)

    # ── Firing ───────────────────────────────────────────────────────────────

    async def drain_due(self, now: int | None = None) -> list[HeapItem]:
        """Pop every item due at *now*, dispatch each, and reschedule recurring ones.

        Coordinator-only: the run loop calls this; callers may use it directly
        only while the loop is not started.
        """
        now = self._clock.now() if now is None else now
        due = self._heap.pop_due(now)
        if due:
            logger.debug("Draining due items", extra={"count": len(due), "now": now})
        for item in due:
            await self._dispatch(item, now)
        return due

    # ── Internal: coordinator ────────────────────────────────────────────────

    async def _submit(self, action: str, *args: Any) -> Any:
        if not self._running:
            return self._apply(action, args)
        future = asyncio.get_running_loop().create_future()
        await self._commands.put(_Command(action, args, future))
        return await future

    async def _run(self) -> None:
        while True:
            command = self._next_command_nowait()
            if command is None:
                timeout = self._next_timeout()
                if timeout is None or timeout > 0:
                    try:
                        command = await asyncio.wait_for(self._commands.get(), timeout)
                    except asyncio.TimeoutError:
                        command = None

            if command is not None:
                if command.action == _STOP:
                    self._flush_commands()
                    command.future.set_result(None)
                    return
                self._resolve(command)
                continue

            try:
                await self.drain_due(self._clock.now())
            except Exception:
                logger.exception("Error while draining due items")

    def _flush_commands(self) -> None:
        """Resolve whatever is still queued so no caller waits on a stopped loop."""
        command = self._next_command_nowait()
        while command is not None:
            self._resolve(command)
            command = self._next_command_nowait()

    def _next_command_nowait(self) -> _Command | None:
        try:
            return self._commands.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def _next_timeout(self) -> float | None:
        """Seconds until the earliest deadline, capped; None when the heap is empty."""
        head = self._heap.peek()
        if head is None:
            return None
        delay = max(0, head.next_run_at - self._clock.now())
        return min(delay, self.policy.max_timer_delay_ms) / 1000

    def _resolve(self, command: _Command) -> None:
        try:
            result = self._apply(command.action, command.args)
        except Exception as exc:
            if not command.future.done():
                command.future.set_exception(exc)
            return
        if not command.future.done():
            command.future.set_result(result)

    def _apply(self, action: str, args: tuple) -> Any:
        if action == "schedule_template":
            return self._apply_schedule_template(*args)
        if action == "schedule":
            return self._apply_schedule(*args)
        if action == "cancel":
            return self._apply_cancel(*args)
        if action == "reschedule":
            return self._heap.update(*args)
        if action == _STOP:
            return None
        raise ValueError(f"Unknown scheduler command: {action}")

    def _apply_schedule_template(
        self, template: Template, next_run_at: int | None = None,
    ) -> HeapItem | None:
        uuid = template.template_uuid
        if not template.is_active:
            self._templates.pop(uuid, None)
            self._heap.remove(uuid)
            logger.info("Template not active, not scheduled",
                        extra={"template_uuid": uuid, "status": template.status.value})
            return None

        next_run = next_run_at
        if next_run is None:
            next_run = self._engine.next_occurrence(template, self._clock.now() - 1)
        if next_run is None:
            self._templates.pop(uuid, None)
            self._heap.remove(uuid)
            logger.info("Template has no future occurrence", extra={"template_uuid": uuid})
            return None

        self._templates[uuid] = template
        self._heap.insert(HeapItem(task_uuid=uuid, next_run_at=next_run, task_name=template.name))
        logger.info("Template scheduled",
                    extra={"template_uuid": uuid, "template_name": template.name, "next_run_at": next_run})
        return self._heap.find(uuid)

    def _apply_schedule(self, item: HeapItem) -> bool:
        if item.next_run_at <= 0:
            logger.warning("Item has no valid next_run_at, skipping",
                           extra={"task_uuid": item.task_uuid})
            return False
        self._heap.insert(item)
        return True

    def _apply_cancel(self, task_uuid: str) -> bool:
        self._templates.pop(task_uuid, None)
        removed = self._heap.remove(task_uuid)
        if removed:
            logger.info("Task cancelled", extra={"task_uuid": task_uuid})
        return removed

    # ── Internal: dispatch ───────────────────────────────────────────────────

    async def _dispatch(self, item: HeapItem, now: int) -> None:
        template = self._templates.get(item.task_uuid)
        lateness = now - item.next_run_at
        late = lateness > self.policy.misfire_grace_ms

        fire_times = [item.next_run_at]
        if late:
            fire_times = self._catch_up_times(item, template, now)
            logger.warning(
                "Deadline missed",
                extra={"task_uuid": item.task_uuid, "lateness_ms": lateness,
                       "policy": self.policy.catch_up.value, "fires": len(fire_times)},
            )

        if not fire_times:
            await self._skip(item, SKIP_REASON_MISSED)
        elif self.policy.overlap == OverlapPolicy.SKIP and self._in_flight[item.task_uuid]:
            await self._skip(item, SKIP_REASON_OVERLAP)
        else:
            self._in_flight[item.task_uuid] += 1
            task = asyncio.create_task(self._execute(item, fire_times))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        # Late items restart their schedule from now instead of replaying history
        self._reschedule_after(item, template, now if late else item.next_run_at)

    def _catch_up_times(self, item: HeapItem, template: Template | None, now: int) -> list[int]:
        policy = self.policy.catch_up
        if policy == CatchUpPolicy.DROP:
            return []
        if policy == CatchUpPolicy.REPLAY and template is not None:
            missed: list[int] = []
            for ts in self._engine.iter_occurrences(template, item.next_run_at):
                if ts > now or len(missed) >= self.policy.max_replays:
                    break
                missed.append(ts)
            return missed or [item.next_run_at]
        return [item.next_run_at]

    def _reschedule_after(self, item: HeapItem, template: Template | None, after: int) -> None:
        if template is None:
            return                                   # one-off item, done
        if not template.is_active:
            self._templates.pop(item.task_uuid, None)
            return
        next_run = self._engine.next_occurrence(template, after)
        if next_run is None:
            self._templates.pop(item.task_uuid, None)
            logger.info("Template exhausted", extra={"template_uuid": item.task_uuid})
            return
        self._heap.insert(HeapItem(task_uuid=item.task_uuid, next_run_at=next_run,
                                   task_name=item.task_name))

    async def _execute(self, item: HeapItem, fire_times: list[int]) -> None:
        token = bind_task_uuid(item.task_uuid)
        try:
            for scheduled_at in fire_times:
                await self._run_one(replace(item, next_run_at=scheduled_at))
        finally:
            self._in_flight[item.task_uuid] -= 1
            if self._in_flight[item.task_uuid] <= 0:
                del self._in_flight[item.task_uuid]
            reset_task_uuid(token)

    async def _run_one(self, item: HeapItem) -> None:
        uuid, name = item.task_uuid, item.task_name
        self._monitor.record_execution_start(uuid, name)
        started = self._clock.now()
        try:
            await self._handler(item)
        except Exception as exc:
            duration = self._clock.now() - started
            logger.exception("Task execution failed",
                             extra={"task_uuid": uuid, "task_name": name})
            self._monitor.record_execution_failure(uuid, name, exc, duration)
            await self._publish(ExecutionFailed(task_uuid=uuid, task_name=name,
                                                scheduled_at=item.next_run_at,
                                                duration=duration, error=str(exc)))
            return
        duration = self._clock.now() - started
        self._monitor.record_execution_success(uuid, name, duration)
        await self._publish(ExecutionSucceeded(task_uuid=uuid, task_name=name,
                                               scheduled_at=item.next_run_at,
                                               duration=duration))

    async def _skip(self, item: HeapItem, reason: str) -> None:
        self._monitor.record_execution_skipped(item.task_uuid, item.task_name, reason)
        await self._publish(ExecutionSkipped(task_uuid=item.task_uuid, task_name=item.task_name,
                                             scheduled_at=item.next_run_at, reason=reason))

    async def _publish(self, event) -> None:
        try:
            await self._events.publish(event)
        except Exception:
            logger.exception("Event sink rejected event", extra={"event_type": event.type})
