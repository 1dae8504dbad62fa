"""Entry point — wire the engine from settings and run the scheduler until Ctrl-C."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from dotenv import load_dotenv

from core.clock import Clock, SystemClock
from core.config import EngineSettings
from core.event_bus import EventBus
from core.logging_config import setup_logging
from monitor.execution_monitor import (
    ExecutionMonitor,
    InMemoryExecutionMonitor,
    NoopExecutionMonitor,
)
from recurrence.engine import GenerationHorizon, RecurrenceEngine
from recurrence.generator import InstanceGenerator
from scheduler.loop import LoopPolicy, SchedulerLoop
from scheduler.service import TaskAction, TemplateService
from store.repository import TaskRepository
from store.task_store import TaskStore

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """Every long-lived object, built once by :func:`build_engine`."""
    settings: EngineSettings
    repository: TaskRepository
    recurrence: RecurrenceEngine
    generator: InstanceGenerator
    monitor: ExecutionMonitor
    events: EventBus
    loop: SchedulerLoop
    service: TemplateService

    async def start(self) -> None:
        await self.repository.init()
        await self.loop.start()
        await self.service.load_active()

    async def stop(self) -> None:
        await self.loop.stop()
        await self.repository.close()
        if isinstance(self.monitor, InMemoryExecutionMonitor):
            logger.info("Final execution stats", extra=self.monitor.get_stats().to_dict())


def build_engine(
    settings: EngineSettings | None = None,
    repository: TaskRepository | None = None,
    action: TaskAction | None = None,
    clock: Clock | None = None,
) -> Engine:
    settings = settings or EngineSettings()
    clock = clock or SystemClock()
    repository = repository or TaskStore(settings.database_url)

    horizon = GenerationHorizon(
        max_count=settings.horizon_max_count,
        max_days=settings.horizon_max_days,
    )
    recurrence = RecurrenceEngine(horizon)
    generator = InstanceGenerator(recurrence, refill_threshold=settings.refill_threshold)

    if settings.monitor_enabled:
        monitor: ExecutionMonitor = InMemoryExecutionMonitor(
            capacity=settings.history_capacity,
            clock=clock,
            thread_safe=settings.monitor_thread_safe,
        )
    else:
        monitor = NoopExecutionMonitor()

    events = EventBus()
    service = TemplateService(repository, generator, events=events, clock=clock, action=action)
    loop = SchedulerLoop(
        handler=service.handle_due,
        engine=recurrence,
        monitor=monitor,
        events=events,
        clock=clock,
        policy=LoopPolicy.from_settings(settings),
    )
    service.attach_loop(loop)

    return Engine(
        settings=settings,
        repository=repository,
        recurrence=recurrence,
        generator=generator,
        monitor=monitor,
        events=events,
        loop=loop,
        service=service,
    )


async def main(seconds: float | None = None, settings: EngineSettings | None = None) -> None:
    """Run the scheduler for *seconds*, or until cancelled when None."""
    settings = settings or EngineSettings()
    setup_logging(settings.log_level, settings.log_json)
    engine = build_engine(settings)
    await engine.start()
    logger.info("Cadence running", extra={"database_url": settings.database_url})
    try:
        if seconds is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(seconds)
    finally:
        await engine.stop()


if __name__ == "__main__":
    load_dotenv()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
