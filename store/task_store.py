"""TaskStore — SQLite-backed persistence for templates and instances."""

from __future__ import annotations

from collections.abc import Iterable

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import create_async_engine

from scheduler.models import OPEN_STATUSES, Instance, InstanceStatus, Template, TemplateStatus

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_templates = sa.Table(
    "task_templates",
    _metadata,
    sa.Column("template_uuid", sa.String,  primary_key=True),
    sa.Column("name",          sa.String,  nullable=False),
    sa.Column("status",        sa.String,  nullable=False, index=True),
    sa.Column("created_at",    sa.String,  nullable=False),
    sa.Column("data",          sa.Text,    nullable=False),   # full Pydantic JSON
)

_instances = sa.Table(
    "task_instances",
    _metadata,
    sa.Column("instance_uuid", sa.String,     primary_key=True),
    sa.Column("template_uuid", sa.String,     nullable=False, index=True),
    sa.Column("scheduled_at",  sa.BigInteger, nullable=False, index=True),
    sa.Column("status",        sa.String,     nullable=False),
    sa.Column("data",          sa.Text,       nullable=False),
)

_OPEN_VALUES = [s.value for s in OPEN_STATUSES]


def _template_row(template: Template) -> dict:
    return {
        "template_uuid": template.template_uuid,
        "name":          template.name,
        "status":        template.status.value,
        "created_at":    template.created_at.isoformat(),
        "data":          template.model_dump_json(),
    }


def _instance_row(instance: Instance) -> dict:
    return {
        "instance_uuid": instance.instance_uuid,
        "template_uuid": instance.template_uuid,
        "scheduled_at":  instance.scheduled_at,
        "status":        instance.status.value,
        "data":          instance.model_dump_json(),
    }


# ── Store ────────────────────────────────────────────────────────────────────

class TaskStore:
    """Persist and load Templates and Instances via SQLite."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///cadence.db"):
        self._engine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    # ── Templates ────────────────────────────────────────────────────────────

    async def save_template(self, template: Template) -> None:
        """Insert or update a template (upsert)."""
        row = _template_row(template)
        async with self._engine.begin() as conn:
            await conn.execute(
                sqlite_insert(_templates)
                .values(**row)
                .on_conflict_do_update(
                    index_elements=["template_uuid"],
                    set_={k: row[k] for k in ("name", "status", "data")},
                )
            )

    async def get_template(self, template_uuid: str) -> Template | None:
        async with self._engine.connect() as conn:
            row = (await conn.execute(
                sa.select(_templates.c.data).where(_templates.c.template_uuid == template_uuid)
            )).fetchone()
        return Template.model_validate_json(row.data) if row else None

    async def list_templates(self, status: TemplateStatus | None = None) -> list[Template]:
        """All templates, oldest first (a stable order for restarts)."""
        query = sa.select(_templates.c.data)
        if status is not None:
            query = query.where(_templates.c.status == status.value)
        query = query.order_by(_templates.c.created_at, _templates.c.template_uuid)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [Template.model_validate_json(r.data) for r in rows]

    # ── Instances ────────────────────────────────────────────────────────────

    async def save_instance(self, instance: Instance) -> None:
        await self.save_many([instance])

    async def save_many(self, instances: Iterable[Instance]) -> None:
        """Upsert a batch of instances in one transaction."""
        rows = [_instance_row(i) for i in instances]
        if not rows:
            return
        async with self._engine.begin() as conn:
            for row in rows:
                await conn.execute(
                    sqlite_insert(_instances)
                    .values(**row)
                    .on_conflict_do_update(
                        index_elements=["instance_uuid"],
                        set_={k: row[k] for k in ("status", "data")},
                    )
                )

    async def get_instance(self, instance_uuid: str) -> Instance | None:
        async with self._engine.connect() as conn:
            row = (await conn.execute(
                sa.select(_instances.c.data).where(_instances.c.instance_uuid == instance_uuid)
            )).fetchone()
        return Instance.model_validate_json(row.data) if row else None

    async def find_by_template(
        self,
        template_uuid: str,
        statuses: Iterable[InstanceStatus] | None = None,
    ) -> list[Instance]:
        query = sa.select(_instances.c.data).where(_instances.c.template_uuid == template_uuid)
        if statuses is not None:
            query = query.where(_instances.c.status.in_([s.value for s in statuses]))
        query = query.order_by(_instances.c.scheduled_at)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [Instance.model_validate_json(r.data) for r in rows]

    async def count_future_instances(self, template_uuid: str, from_ms: int) -> int:
        """Non-terminal instances of *template_uuid* scheduled at or after *from_ms*."""
        query = (
            sa.select(sa.func.count())
            .select_from(_instances)
            .where(_instances.c.template_uuid == template_uuid)
            .where(_instances.c.scheduled_at >= from_ms)
            .where(_instances.c.status.in_(_OPEN_VALUES))
        )
        async with self._engine.connect() as conn:
            return (await conn.execute(query)).scalar_one()
