"""Scheduling data model — templates, instances, and heap entries."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from core.errors import InvalidTransitionError
from recurrence.rules import RecurrenceRule


class TemplateStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class InstanceStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    InstanceStatus.COMPLETED, InstanceStatus.SKIPPED, InstanceStatus.EXPIRED,
})
OPEN_STATUSES = frozenset({InstanceStatus.PENDING, InstanceStatus.IN_PROGRESS})

_INSTANCE_TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.PENDING: frozenset({InstanceStatus.IN_PROGRESS}) | TERMINAL_STATUSES,
    InstanceStatus.IN_PROGRESS: TERMINAL_STATUSES,
    InstanceStatus.COMPLETED: frozenset(),
    InstanceStatus.SKIPPED: frozenset(),
    InstanceStatus.EXPIRED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimeConfig(BaseModel):
    start_at: int                   # epoch ms; also fixes the time of day
    end_at: int | None = None       # inclusive upper bound on trigger times

    @model_validator(mode="after")
    def check_range(self):
        if self.end_at is not None and self.end_at < self.start_at:
            raise ValueError("end_at must not be earlier than start_at")
        return self


class Template(BaseModel):
    template_uuid: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    rule: RecurrenceRule
    time_config: TimeConfig
    status: TemplateStatus = TemplateStatus.ACTIVE
    # Furthest trigger timestamp already materialised as an Instance
    generation_watermark: int | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == TemplateStatus.ACTIVE

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def activate(self) -> None:
        if self.status != TemplateStatus.PAUSED:
            raise InvalidTransitionError("Template", self.template_uuid,
                                         self.status.value, TemplateStatus.ACTIVE.value)
        self._set_status(TemplateStatus.ACTIVE)

    def pause(self) -> None:
        if self.status != TemplateStatus.ACTIVE:
            raise InvalidTransitionError("Template", self.template_uuid,
                                         self.status.value, TemplateStatus.PAUSED.value)
        self._set_status(TemplateStatus.PAUSED)

    def archive(self) -> None:
        if self.status == TemplateStatus.ARCHIVED:
            raise InvalidTransitionError("Template", self.template_uuid,
                                         self.status.value, TemplateStatus.ARCHIVED.value)
        self._set_status(TemplateStatus.ARCHIVED)

    def _set_status(self, status: TemplateStatus) -> None:
        self.status = status
        self.updated_at = _utcnow()


class Instance(BaseModel):
    instance_uuid: str = Field(default_factory=lambda: str(uuid.uuid4()))
    template_uuid: str
    scheduled_at: int               # epoch ms
    status: InstanceStatus = InstanceStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    note: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def start(self) -> None:
        self._move(InstanceStatus.IN_PROGRESS)
        self.started_at = _utcnow()

    def complete(self) -> None:
        self._move(InstanceStatus.COMPLETED)
        self.finished_at = _utcnow()

    def skip(self, reason: str | None = None) -> None:
        self._move(InstanceStatus.SKIPPED)
        self.finished_at = _utcnow()
        self.note = reason

    def expire(self) -> None:
        self._move(InstanceStatus.EXPIRED)
        self.finished_at = _utcnow()

    def _move(self, target: InstanceStatus) -> None:
        if target not in _INSTANCE_TRANSITIONS[self.status]:
            raise InvalidTransitionError("Instance", self.instance_uuid,
                                         self.status.value, target.value)
        self.status = target


@dataclass
class HeapItem:
    """The (task_uuid, next_run_at) projection tracked by the priority heap."""
    task_uuid: str
    next_run_at: int                 # epoch ms
    task_name: str = ""
    seq: int = 0                     # tie-break, assigned by the heap

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.next_run_at, self.seq)
