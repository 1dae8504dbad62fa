"""TemplateService — template lifecycle over a repository, the generator and the loop."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING

from core.clock import SystemClock
from core.errors import TemplateNotFoundError
from core.event_bus import NullEventSink
from core.events import InstancesGenerated
from recurrence.rules import check_rule
from scheduler.models import OPEN_STATUSES, Instance, InstanceStatus, Template, TemplateStatus

if TYPE_CHECKING:
    from core.clock import Clock
    from core.event_bus import EventSink
    from recurrence.generator import GenerationPlan, InstanceGenerator
    from scheduler.loop import SchedulerLoop
    from scheduler.models import HeapItem
    from store.repository import TaskRepository

logger = logging.getLogger(__name__)

TaskAction = Callable[[Template, Instance], Awaitable[None]]


async def log_action(template: Template, instance: Instance) -> None:
    """Default action: record that the occurrence fired."""
    logger.info(
        "Task fired",
        extra={"template_uuid": template.template_uuid, "template_name": template.name,
               "instance_uuid": instance.instance_uuid, "scheduled_at": instance.scheduled_at},
    )


class TemplateService:
    """Creates, pauses and archives templates and keeps their instances topped up.

    ``handle_due`` is the execution handler for the ``SchedulerLoop``; wire it
    with ``attach_loop`` once both objects exist.
    """

    def __init__(
        self,
        repository: TaskRepository,
        generator: InstanceGenerator,
        events: EventSink | None = None,
        clock: Clock | None = None,
        action: TaskAction | None = None,
    ):
        self._repo = repository
        self._generator = generator
        self._events = events or NullEventSink()
        self._clock = clock or SystemClock()
        self._action = action or log_action
        self._loop: SchedulerLoop | None = None

    def attach_loop(self, loop: SchedulerLoop) -> None:
        self._loop = loop

    # ── Queries ──────────────────────────────────────────────────────────────

    async def get_template(self, template_uuid: str) -> Template:
        template = await self._repo.get_template(template_uuid)
        if template is None:
            raise TemplateNotFoundError(template_uuid)
        return template

    async def list_templates(self, status: TemplateStatus | None = None) -> list[Template]:
        return await self._repo.list_templates(status)

    async def list_instances(
        self,
        template_uuid: str,
        statuses: Iterable[InstanceStatus] | None = None,
    ) -> list[Instance]:
        await self.get_template(template_uuid)
        return await self._repo.find_by_template(template_uuid, statuses)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def create_template(self, template: Template, now: int | None = None) -> Template:
        """Persist a new template; an ACTIVE one gets its first batch and a heap entry.

        Raises:
            RecurrenceValidationError: the rule is malformed. Nothing is saved.
        """
        check_rule(template.rule)
        await self._repo.save_template(template)
        logger.info("Template created",
                    extra={"template_uuid": template.template_uuid, "template_name": template.name,
                           "rule": template.rule.type})
        if template.is_active:
            await self._generate(template, self._now(now))
            await self._schedule(template)
        return template

    async def activate_template(self, template_uuid: str, now: int | None = None) -> Template:
        template = await self.get_template(template_uuid)
        template.activate()
        await self._repo.save_template(template)
        await self.refill(template_uuid, now)
        await self._schedule(template)
        logger.info("Template activated", extra={"template_uuid": template_uuid})
        return await self.get_template(template_uuid)

    async def pause_template(self, template_uuid: str) -> Template:
        """Stop the template: no heap entry, open instances skipped, nothing generated."""
        template = await self.get_template(template_uuid)
        template.pause()
        await self._repo.save_template(template)
        await self._cancel(template_uuid)
        skipped = await self._skip_open(template_uuid, "template paused")
        logger.info("Template paused", extra={"template_uuid": template_uuid, "skipped": skipped})
        return template

    async def archive_template(self, template_uuid: str) -> Template:
        template = await self.get_template(template_uuid)
        template.archive()
        await self._repo.save_template(template)
        await self._cancel(template_uuid)
        skipped = await self._skip_open(template_uuid, "template archived")
        logger.info("Template archived", extra={"template_uuid": template_uuid, "skipped": skipped})
        return template

    async def refill(self, template_uuid: str, now: int | None = None) -> GenerationPlan | None:
        """Top up future instances when fewer than the refill threshold remain.

        Returns the applied plan, or None when no refill was due.
        """
        template = await self.get_template(template_uuid)
        if not template.is_active:
            return None
        now = self._now(now)
        remaining = await self._repo.count_future_instances(template_uuid, now)
        if not self._generator.should_refill(remaining, template, now):
            return None
        return await self._generate(template, now, existing_future=remaining)

    async def load_active(self) -> int:
        """Top up and schedule every ACTIVE template. Call once at startup.

        A template whose earliest PENDING instance lies in the past was missed
        while the process was down; it is queued at that time so the loop's
        catch-up policy decides what to fire.
        """
        templates = await self._repo.list_templates(TemplateStatus.ACTIVE)
        now = self._clock.now()
        for template in templates:
            missed = await self._earliest_missed(template.template_uuid, now)
            await self.refill(template.template_uuid, now)
            await self._schedule(template, missed)
        logger.info("Active templates loaded", extra={"count": len(templates)})
        return len(templates)

    # ── Execution handler ────────────────────────────────────────────────────

    async def handle_due(self, item: HeapItem) -> None:
        """Run the occurrence *item* points at and record the outcome on its instance.

        Raises whatever the action raises, after marking the instance SKIPPED.
        An instance that reached a final state while the action ran (the
        template was paused or archived meanwhile) keeps that state.
        """
        template = await self.get_template(item.task_uuid)
        if not template.is_active:
            logger.info("Template no longer active, not running",
                        extra={"template_uuid": template.template_uuid})
            return

        instance = await self._claim_instance(template, item.next_run_at)
        instance.start()
        await self._repo.save_instance(instance)
        try:
            await self._action(template, instance)
        except Exception as exc:
            await self._finish(instance, InstanceStatus.SKIPPED, f"failed: {exc}")
            raise
        else:
            await self._finish(instance, InstanceStatus.COMPLETED)
        finally:
            try:
                await self.refill(template.template_uuid)
            except Exception:
                logger.exception("Refill after execution failed",
                                 extra={"template_uuid": template.template_uuid})

    # ── Internal ─────────────────────────────────────────────────────────────

    def _now(self, now: int | None) -> int:
        return self._clock.now() if now is None else now

    async def _generate(
        self, template: Template, now: int, existing_future: int = 0,
    ) -> GenerationPlan:
        plan = self._generator.plan(template, now, existing_future)
        if plan.count:
            await self._repo.save_many(plan.instances)
            template.generation_watermark = plan.watermark
            await self._repo.save_template(template)
            await self._events.publish(InstancesGenerated(
                template_uuid=template.template_uuid, count=plan.count, strategy=plan.strategy,
            ))
        logger.info(
            "Instances generated",
            extra={"template_uuid": template.template_uuid, "count": plan.count,
                   "strategy": plan.strategy, "watermark": plan.watermark},
        )
        return plan

    async def _claim_instance(self, template: Template, scheduled_at: int) -> Instance:
        """Return the PENDING instance for *scheduled_at*, expiring older PENDING ones."""
        open_instances = await self._repo.find_by_template(
            template.template_uuid, [InstanceStatus.PENDING],
        )
        current = None
        stale = []
        for instance in open_instances:
            if instance.scheduled_at < scheduled_at:
                instance.expire()
                stale.append(instance)
            elif instance.scheduled_at == scheduled_at and current is None:
                current = instance
        if stale:
            await self._repo.save_many(stale)
            logger.info("Stale instances expired",
                        extra={"template_uuid": template.template_uuid, "count": len(stale)})

        if current is None:
            # Fired beyond the materialised horizon: create the instance now
            current = Instance(template_uuid=template.template_uuid, scheduled_at=scheduled_at)
            if template.generation_watermark is None or scheduled_at > template.generation_watermark:
                template.generation_watermark = scheduled_at
                await self._repo.save_template(template)
            logger.debug("Instance created on demand",
                         extra={"template_uuid": template.template_uuid,
                                "scheduled_at": scheduled_at})
        return current

    async def _finish(
        self, instance: Instance, outcome: InstanceStatus, note: str | None = None,
    ) -> None:
        """Record *outcome* unless the stored instance already reached a final state."""
        stored = await self._repo.get_instance(instance.instance_uuid)
        if stored is not None and stored.is_terminal:
            logger.info(
                "Instance already final, outcome not recorded",
                extra={"instance_uuid": instance.instance_uuid, "status": stored.status.value,
                       "outcome": outcome.value},
            )
            return
        if outcome == InstanceStatus.COMPLETED:
            instance.complete()
        else:
            instance.skip(note)
        await self._repo.save_instance(instance)

    async def _skip_open(self, template_uuid: str, reason: str) -> int:
        instances = await self._repo.find_by_template(template_uuid, OPEN_STATUSES)
        for instance in instances:
            instance.skip(reason)
        await self._repo.save_many(instances)
        return len(instances)

    async def _earliest_missed(self, template_uuid: str, now: int) -> int | None:
        pending = await self._repo.find_by_template(template_uuid, [InstanceStatus.PENDING])
        if pending and pending[0].scheduled_at < now:
            logger.warning("Missed occurrence found at startup",
                           extra={"template_uuid": template_uuid,
                                  "scheduled_at": pending[0].scheduled_at})
            return pending[0].scheduled_at
        return None

    async def _schedule(self, template: Template, next_run_at: int | None = None) -> None:
        if self._loop is not None:
            await self._loop.schedule_template(template, next_run_at)

    async def _cancel(self, template_uuid: str) -> None:
        if self._loop is not None:
            await self._loop.cancel_template(template_uuid)
