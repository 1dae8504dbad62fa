"""InMemoryTaskStore — dict-backed TaskRepository for tests and dry runs."""

from __future__ import annotations

from collections.abc import Iterable

from scheduler.models import OPEN_STATUSES, Instance, InstanceStatus, Template, TemplateStatus


class InMemoryTaskStore:
    """Keeps deep copies so callers cannot mutate stored state by accident."""

    def __init__(self) -> None:
        self._templates: dict[str, Template] = {}
        self._instances: dict[str, Instance] = {}

    async def init(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def save_template(self, template: Template) -> None:
        self._templates[template.template_uuid] = template.model_copy(deep=True)

    async def get_template(self, template_uuid: str) -> Template | None:
        template = self._templates.get(template_uuid)
        return template.model_copy(deep=True) if template else None

    async def list_templates(self, status: TemplateStatus | None = None) -> list[Template]:
        templates = sorted(self._templates.values(), key=lambda t: t.created_at)
        if status is not None:
            templates = [t for t in templates if t.status == status]
        return [t.model_copy(deep=True) for t in templates]

    async def save_instance(self, instance: Instance) -> None:
        self._instances[instance.instance_uuid] = instance.model_copy(deep=True)

    async def save_many(self, instances: Iterable[Instance]) -> None:
        for instance in instances:
            await self.save_instance(instance)

    async def get_instance(self, instance_uuid: str) -> Instance | None:
        instance = self._instances.get(instance_uuid)
        return instance.model_copy(deep=True) if instance else None

    async def find_by_template(
        self,
        template_uuid: str,
        statuses: Iterable[InstanceStatus] | None = None,
    ) -> list[Instance]:
        wanted = set(statuses) if statuses is not None else None
        found = [
            i for i in self._instances.values()
            if i.template_uuid == template_uuid and (wanted is None or i.status in wanted)
        ]
        found.sort(key=lambda i: i.scheduled_at)
        return [i.model_copy(deep=True) for i in found]

    async def count_future_instances(self, template_uuid: str, from_ms: int) -> int:
        return sum(
            1 for i in self._instances.values()
            if i.template_uuid == template_uuid
            and i.scheduled_at >= from_ms
            and i.status in OPEN_STATUSES
        )
