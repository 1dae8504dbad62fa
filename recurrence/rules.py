"""Recurrence rule DSL — declarative shapes a template can repeat on."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, model_validator

from core.errors import RecurrenceValidationError


class Weekday(str, Enum):
    MONDAY = "MONDAY"
    TUESDAY = "TUESDAY"
    WEDNESDAY = "WEDNESDAY"
    THURSDAY = "THURSDAY"
    FRIDAY = "FRIDAY"
    SATURDAY = "SATURDAY"
    SUNDAY = "SUNDAY"

    @property
    def index(self) -> int:
        """Offset from Monday, matching ``datetime.weekday()``."""
        return _WEEKDAY_ORDER.index(self)


_WEEKDAY_ORDER = list(Weekday)


class _RuleBase(BaseModel):
    # Total occurrences counted from the template's start; None → unbounded
    occurrences: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def check_parameters(self):
        check_rule(self)
        return self


class DailyRule(_RuleBase):
    type: Literal["daily"] = "daily"
    interval: int = 1            # every N days


class WeeklyRule(_RuleBase):
    type: Literal["weekly"] = "weekly"
    interval: int = 1            # every N weeks
    week_days: list[Weekday]

    @property
    def day_offsets(self) -> list[int]:
        return sorted({d.index for d in self.week_days})


class CustomDatesRule(_RuleBase):
    type: Literal["custom"] = "custom"
    dates: list[int] = []        # explicit epoch-ms trigger times

    @property
    def sorted_dates(self) -> list[int]:
        return sorted(set(self.dates))


RecurrenceRule = Annotated[
    Union[DailyRule, WeeklyRule, CustomDatesRule],
    Field(discriminator="type"),
]


def check_rule(rule: DailyRule | WeeklyRule | CustomDatesRule) -> None:
    """Raise RecurrenceValidationError when *rule* cannot produce a schedule.

    Called on model construction and again by the engine before generating,
    so rules that bypassed validation (``model_construct``, raw storage rows)
    still fail fast.
    """
    interval = getattr(rule, "interval", None)
    if interval is not None and interval < 1:
        raise RecurrenceValidationError(
            f"{rule.type} rule: interval must be at least 1 (got {interval})"
        )
    if isinstance(rule, WeeklyRule) and not rule.week_days:
        raise RecurrenceValidationError("weekly rule: week_days must not be empty")
    if rule.occurrences is not None and rule.occurrences < 1:
        raise RecurrenceValidationError(
            f"{rule.type} rule: occurrences must be at least 1 (got {rule.occurrences})"
        )
