"""Tests for TemplateService: lifecycle, refill, the execution handler and restarts."""

import asyncio

import pytest

from core.clock import DAY_MS, ManualClock
from core.config import CatchUpPolicy
from core.errors import InvalidTransitionError, RecurrenceValidationError, TemplateNotFoundError
from core.event_bus import EventBus
from core.events import InstancesGenerated
from recurrence.engine import GenerationHorizon, RecurrenceEngine
from recurrence.generator import InstanceGenerator
from recurrence.rules import DailyRule, WeeklyRule
from scheduler.loop import LoopPolicy, SchedulerLoop
from scheduler.models import HeapItem, InstanceStatus, Template, TemplateStatus, TimeConfig
from scheduler.service import TemplateService
from store.memory_store import InMemoryTaskStore


# ── Fixtures ─────────────────────────────────────────────────────────────────


class Action:
    def __init__(self, fail: bool = False):
        self.fired: list[int] = []
        self.fail = fail

    async def __call__(self, template, instance):
        self.fired.append(instance.scheduled_at)
        if self.fail:
            raise RuntimeError("boom")


class FlakyCountStore(InMemoryTaskStore):
    """Memory store whose future-instance count can be made to fail."""

    def __init__(self):
        super().__init__()
        self.fail_counts = False

    async def count_future_instances(self, template_uuid, from_ms):
        if self.fail_counts:
            raise RuntimeError("database is locked")
        return await super().count_future_instances(template_uuid, from_ms)


@pytest.fixture
def clock():
    return ManualClock(0)


@pytest.fixture
def store():
    return InMemoryTaskStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def action():
    return Action()


@pytest.fixture
def service(store, bus, clock, action):
    engine = RecurrenceEngine(GenerationHorizon(max_count=10, max_days=100))
    svc = TemplateService(store, InstanceGenerator(engine), events=bus, clock=clock, action=action)
    svc.attach_loop(SchedulerLoop(handler=svc.handle_due, engine=engine, clock=clock))
    return svc


def daily(**kwargs) -> Template:
    return Template(name="water plants", rule=DailyRule(), time_config=TimeConfig(start_at=0),
                    **kwargs)


async def statuses(store, uuid) -> list[InstanceStatus]:
    return [i.status for i in await store.find_by_template(uuid)]


# ── Create ────────────────────────────────────────────────────────────────────


async def test_create_generates_initial_batch(service, store, bus):
    events = bus.subscribe("instances.generated")
    template = await service.create_template(daily())

    instances = await store.find_by_template(template.template_uuid)
    assert [i.scheduled_at for i in instances] == [n * DAY_MS for n in range(10)]
    assert all(i.status == InstanceStatus.PENDING for i in instances)

    saved = await store.get_template(template.template_uuid)
    assert saved.generation_watermark == 9 * DAY_MS

    event = events.get_nowait()
    assert isinstance(event, InstancesGenerated)
    assert event.count == 10
    assert event.strategy == "initial"


async def test_create_schedules_heap_entry(service):
    template = await service.create_template(daily())
    assert service._loop.has_task(template.template_uuid)


async def test_create_paused_generates_nothing(service, store):
    template = await service.create_template(daily(status=TemplateStatus.PAUSED))
    assert await store.find_by_template(template.template_uuid) == []
    assert not service._loop.has_task(template.template_uuid)


async def test_create_rejects_malformed_rule(service, store):
    bad = WeeklyRule.model_construct(type="weekly", interval=1, week_days=[], occurrences=None)
    template = Template.model_construct(name="bad", rule=bad, time_config=TimeConfig(start_at=0))
    with pytest.raises(RecurrenceValidationError):
        await service.create_template(template)
    assert await store.list_templates() == []


# ── Pause / activate / archive ────────────────────────────────────────────────


async def test_pause_skips_open_instances_and_clears_heap(service, store):
    template = await service.create_template(daily())
    uuid = template.template_uuid

    first = (await store.find_by_template(uuid))[0]
    first.start()
    await store.save_instance(first)

    paused = await service.pause_template(uuid)

    assert paused.status == TemplateStatus.PAUSED
    assert set(await statuses(store, uuid)) == {InstanceStatus.SKIPPED}
    assert all(i.note == "template paused" for i in await store.find_by_template(uuid))
    assert not service._loop.has_task(uuid)


async def test_pause_leaves_finished_instances_alone(service, store):
    template = await service.create_template(daily())
    uuid = template.template_uuid
    first = (await store.find_by_template(uuid))[0]
    first.start()
    first.complete()
    await store.save_instance(first)

    await service.pause_template(uuid)
    assert (await statuses(store, uuid))[0] == InstanceStatus.COMPLETED


async def test_paused_template_does_not_refill(service, store, clock):
    template = await service.create_template(daily())
    await service.pause_template(template.template_uuid)
    clock.set(50 * DAY_MS)
    assert await service.refill(template.template_uuid) is None
    assert len(await store.find_by_template(template.template_uuid)) == 10


async def test_pause_twice_is_invalid(service):
    template = await service.create_template(daily())
    await service.pause_template(template.template_uuid)
    with pytest.raises(InvalidTransitionError):
        await service.pause_template(template.template_uuid)


async def test_activate_refills_and_schedules(service, store, clock):
    template = await service.create_template(daily())
    uuid = template.template_uuid
    await service.pause_template(uuid)

    clock.set(20 * DAY_MS)
    activated = await service.activate_template(uuid)

    assert activated.status == TemplateStatus.ACTIVE
    pending = await store.find_by_template(uuid, [InstanceStatus.PENDING])
    assert [i.scheduled_at for i in pending][:2] == [20 * DAY_MS, 21 * DAY_MS]
    assert len(pending) == 10
    assert service._loop.has_task(uuid)


async def test_archive_is_terminal(service, store):
    template = await service.create_template(daily())
    uuid = template.template_uuid
    archived = await service.archive_template(uuid)

    assert archived.status == TemplateStatus.ARCHIVED
    assert set(await statuses(store, uuid)) == {InstanceStatus.SKIPPED}
    assert not service._loop.has_task(uuid)
    with pytest.raises(InvalidTransitionError):
        await service.activate_template(uuid)
    with pytest.raises(InvalidTransitionError):
        await service.archive_template(uuid)


async def test_unknown_template(service):
    with pytest.raises(TemplateNotFoundError):
        await service.pause_template("nope")
    with pytest.raises(KeyError):
        await service.list_instances("nope")


# ── Refill ────────────────────────────────────────────────────────────────────


async def test_refill_at_threshold_boundary(service, store, clock):
    template = await service.create_template(daily())
    uuid = template.template_uuid

    # Threshold is 2 of 10: two future instances left is not enough to refill
    clock.set(8 * DAY_MS)
    assert await service.refill(uuid) is None

    clock.set(9 * DAY_MS)
    plan = await service.refill(uuid)
    assert plan is not None
    assert plan.strategy == "refill"
    assert plan.count == 9
    assert plan.instances[0].scheduled_at == 10 * DAY_MS

    saved = await store.get_template(uuid)
    assert saved.generation_watermark == 18 * DAY_MS


# ── handle_due ────────────────────────────────────────────────────────────────


async def test_handle_due_completes_instance(service, store, action):
    template = await service.create_template(daily())
    uuid = template.template_uuid

    await service.handle_due(HeapItem(uuid, 0))

    assert action.fired == [0]
    instances = await store.find_by_template(uuid)
    assert instances[0].status == InstanceStatus.COMPLETED
    assert instances[0].started_at is not None
    assert instances[0].finished_at is not None
    assert instances[1].status == InstanceStatus.PENDING


async def test_handle_due_expires_older_pending(service, store):
    template = await service.create_template(daily())
    uuid = template.template_uuid

    await service.handle_due(HeapItem(uuid, 2 * DAY_MS))

    assert (await statuses(store, uuid))[:4] == [
        InstanceStatus.EXPIRED, InstanceStatus.EXPIRED,
        InstanceStatus.COMPLETED, InstanceStatus.PENDING,
    ]


async def test_handle_due_failure_skips_instance_and_reraises(store, bus, clock):
    engine = RecurrenceEngine(GenerationHorizon(max_count=10, max_days=100))
    service = TemplateService(store, InstanceGenerator(engine), events=bus, clock=clock,
                              action=Action(fail=True))
    template = await service.create_template(daily())

    with pytest.raises(RuntimeError, match="boom"):
        await service.handle_due(HeapItem(template.template_uuid, 0))

    first = (await store.find_by_template(template.template_uuid))[0]
    assert first.status == InstanceStatus.SKIPPED
    assert first.note == "failed: boom"


async def test_handle_due_beyond_horizon_creates_instance(service, store):
    template = await service.create_template(daily())
    uuid = template.template_uuid

    await service.handle_due(HeapItem(uuid, 30 * DAY_MS))

    done = await store.find_by_template(uuid, [InstanceStatus.COMPLETED])
    assert [i.scheduled_at for i in done] == [30 * DAY_MS]
    assert (await store.get_template(uuid)).generation_watermark >= 30 * DAY_MS


async def test_handle_due_ignores_paused_template(service, action):
    template = await service.create_template(daily())
    await service.pause_template(template.template_uuid)
    await service.handle_due(HeapItem(template.template_uuid, 0))
    assert action.fired == []


# ── Startup ───────────────────────────────────────────────────────────────────


async def test_load_active_schedules_only_active(service, store):
    active = daily()
    paused = daily(status=TemplateStatus.PAUSED)
    await store.save_template(active)
    await store.save_template(paused)

    assert await service.load_active() == 1
    assert service._loop.has_task(active.template_uuid)
    assert not service._loop.has_task(paused.template_uuid)
    assert len(await store.find_by_template(active.template_uuid)) == 10


async def test_pause_during_execution_keeps_instance_skipped(store, bus, clock):
    started, release = asyncio.Event(), asyncio.Event()

    async def slow(template, instance):
        started.set()
        await release.wait()

    engine = RecurrenceEngine(GenerationHorizon(max_count=10, max_days=100))
    service = TemplateService(store, InstanceGenerator(engine), events=bus, clock=clock,
                              action=slow)
    loop = SchedulerLoop(handler=service.handle_due, engine=engine, clock=clock)
    service.attach_loop(loop)
    template = await service.create_template(daily())
    uuid = template.template_uuid

    await loop.drain_due(0)
    await asyncio.wait_for(started.wait(), timeout=1)
    await service.pause_template(uuid)
    release.set()
    await loop.wait_idle()

    first = (await store.find_by_template(uuid))[0]
    assert first.status == InstanceStatus.SKIPPED
    assert first.note == "template paused"


async def test_refill_error_does_not_mask_action_outcome(bus, clock):
    store = FlakyCountStore()
    engine = RecurrenceEngine(GenerationHorizon(max_count=10, max_days=100))
    service = TemplateService(store, InstanceGenerator(engine), events=bus, clock=clock,
                              action=Action(fail=True))
    template = await service.create_template(daily())
    store.fail_counts = True

    with pytest.raises(RuntimeError, match="boom"):
        await service.handle_due(HeapItem(template.template_uuid, 0))


async def test_refill_error_after_success_is_logged_not_raised(bus, clock, caplog):
    store = FlakyCountStore()
    engine = RecurrenceEngine(GenerationHorizon(max_count=10, max_days=100))
    service = TemplateService(store, InstanceGenerator(engine), events=bus, clock=clock)
    template = await service.create_template(daily())
    store.fail_counts = True

    await service.handle_due(HeapItem(template.template_uuid, 0))

    first = (await store.find_by_template(template.template_uuid))[0]
    assert first.status == InstanceStatus.COMPLETED
    assert "Refill after execution failed" in caplog.text


# ── Restart ───────────────────────────────────────────────────────────────────


def restarted(store, clock, action, **policy) -> TemplateService:
    """A fresh service and loop over an existing store, as after a process restart."""
    engine = RecurrenceEngine(GenerationHorizon(max_count=10, max_days=100))
    svc = TemplateService(store, InstanceGenerator(engine), clock=clock, action=action)
    svc.attach_loop(SchedulerLoop(handler=svc.handle_due, engine=engine, clock=clock,
                                  policy=LoopPolicy(**policy)))
    return svc


async def test_restart_fires_missed_occurrence_once(service, store, clock):
    template = await service.create_template(daily())
    uuid = template.template_uuid

    clock.set(3 * DAY_MS + DAY_MS // 2)
    action = Action()
    after = restarted(store, clock, action)
    await after.load_active()

    assert after._loop.queued_items()[0].next_run_at == 0
    await after._loop.drain_due()
    await after._loop.wait_idle()

    assert action.fired == [0]
    assert (await statuses(store, uuid))[0] == InstanceStatus.COMPLETED
    assert after._loop.queued_items()[0].next_run_at == 4 * DAY_MS


async def test_restart_replays_missed_occurrences(service, store, clock):
    template = await service.create_template(daily())

    clock.set(3 * DAY_MS + DAY_MS // 2)
    action = Action()
    after = restarted(store, clock, action, catch_up=CatchUpPolicy.REPLAY)
    await after.load_active()
    await after._loop.drain_due()
    await after._loop.wait_idle()

    assert action.fired == [0, DAY_MS, 2 * DAY_MS, 3 * DAY_MS]
    done = await store.find_by_template(template.template_uuid, [InstanceStatus.COMPLETED])
    assert len(done) == 4


async def test_restart_without_missed_runs_schedules_from_now(service, store, clock):
    template = await service.create_template(
        Template(name="later", rule=DailyRule(), time_config=TimeConfig(start_at=DAY_MS))
    )

    after = restarted(store, clock, Action())
    await after.load_active()
    assert after._loop.queued_items()[0].next_run_at == DAY_MS
    assert template.template_uuid == after._loop.queued_items()[0].task_uuid
