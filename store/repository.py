"""TaskRepository — the persistence port the engine consumes."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from scheduler.models import Instance, InstanceStatus, Template, TemplateStatus


class TaskRepository(Protocol):
    async def init(self) -> None: ...

    async def close(self) -> None: ...

    async def save_template(self, template: Template) -> None: ...

    async def get_template(self, template_uuid: str) -> Template | None: ...

    async def list_templates(self, status: TemplateStatus | None = None) -> list[Template]: ...

    async def save_instance(self, instance: Instance) -> None: ...

    async def save_many(self, instances: Iterable[Instance]) -> None: ...

    async def get_instance(self, instance_uuid: str) -> Instance | None: ...

    async def find_by_template(
        self,
        template_uuid: str,
        statuses: Iterable[InstanceStatus] | None = None,
    ) -> list[Instance]: ...

    async def count_future_instances(self, template_uuid: str, from_ms: int) -> int: ...
