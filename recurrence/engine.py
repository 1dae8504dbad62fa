"""RecurrenceEngine — turn a template's rule into concrete trigger timestamps.

All arithmetic is on UTC epoch milliseconds. Timezone and DST resolution is the
caller's job: a template's ``start_at`` already carries the wall-clock time of
day it should fire at, and every occurrence keeps that offset within its day.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from core.clock import DAY_MS, WEEK_MS
from recurrence.rules import CustomDatesRule, DailyRule, WeeklyRule, check_rule

if TYPE_CHECKING:
    from scheduler.models import Template

logger = logging.getLogger(__name__)

# 1970-01-01 was a Thursday; weekday() numbering has Monday = 0
_EPOCH_WEEKDAY = 3


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[start, end)`` in epoch milliseconds."""
    start: int
    end: int

    @classmethod
    def days(cls, start: int, days: int) -> TimeWindow:
        return cls(start, start + days * DAY_MS)


@dataclass(frozen=True)
class GenerationHorizon:
    """How far ahead instances may be materialised. Whichever cap binds first wins."""
    max_count: int | None = 100
    max_days: int | None = 100

    def __post_init__(self) -> None:
        if self.max_count is None and self.max_days is None:
            raise ValueError("GenerationHorizon needs max_count, max_days, or both")
        if self.max_count is not None and self.max_count < 1:
            raise ValueError("max_count must be at least 1")
        if self.max_days is not None and self.max_days < 1:
            raise ValueError("max_days must be at least 1")


class RecurrenceEngine:
    """Pure, deterministic occurrence calculator.

    Args:
        horizon: Caps applied by :meth:`generate`. :meth:`next_occurrence` and
            :meth:`iter_occurrences` ignore it.
    """

    def __init__(self, horizon: GenerationHorizon | None = None):
        self.horizon = horizon or GenerationHorizon()

    # ── Public API ───────────────────────────────────────────────────────────

    def generate(self, template: Template, window: TimeWindow) -> list[int]:
        """Return the ordered trigger timestamps of *template* inside *window*.

        Raises:
            RecurrenceValidationError: the rule is malformed. Nothing is
                generated in that case.
        """
        check_rule(template.rule)
        if window.end <= window.start:
            return []

        end = window.end
        if self.horizon.max_days is not None:
            end = min(end, window.start + self.horizon.max_days * DAY_MS)
        max_count = self.horizon.max_count

        result: list[int] = []
        capped_by = None
        for ts in self.iter_occurrences(template, window.start):
            if ts >= end:
                if ts < window.end:
                    capped_by = "max_days"
                break
            if max_count is not None and len(result) >= max_count:
                capped_by = "max_count"
                break
            result.append(ts)

        if capped_by:
            logger.info(
                "Generation truncated at horizon",
                extra={
                    "template_uuid": template.template_uuid,
                    "capped_by": capped_by,
                    "generated": len(result),
                },
            )
        return result

    def next_occurrence(self, template: Template, after: int) -> int | None:
        """First trigger strictly later than *after*, or None once the rule is exhausted."""
        check_rule(template.rule)
        return next(self.iter_occurrences(template, after + 1), None)

    def iter_occurrences(self, template: Template, from_ms: int) -> Iterator[int]:
        """Yield every trigger ``>= from_ms`` in ascending order, honouring end conditions.

        The iterator is unbounded for open-ended rules; callers must stop it.
        """
        rule = template.rule
        check_rule(rule)
        end_at = template.time_config.end_at
        limit = rule.occurrences

        for index, ts in self._indexed(template, from_ms):
            if limit is not None and index >= limit:
                return
            if end_at is not None and ts > end_at:
                return
            yield ts

    # ── Rule shapes ──────────────────────────────────────────────────────────

    def _indexed(self, template: Template, from_ms: int) -> Iterator[tuple[int, int]]:
        """Yield ``(occurrence_index, timestamp)`` pairs counted from the anchor."""
        rule = template.rule
        start = template.time_config.start_at
        if isinstance(rule, DailyRule):
            yield from _daily(start, rule.interval, from_ms)
        elif isinstance(rule, WeeklyRule):
            yield from _weekly(start, rule.interval, rule.day_offsets, from_ms)
        elif isinstance(rule, CustomDatesRule):
            dates = [d for d in rule.sorted_dates if d >= start]
            for index, ts in enumerate(dates):
                if ts >= from_ms:
                    yield index, ts
        else:
            raise TypeError(f"Unsupported recurrence rule: {type(rule).__name__}")


def _daily(start: int, interval: int, from_ms: int) -> Iterator[tuple[int, int]]:
    step = interval * DAY_MS
    k = 0 if from_ms <= start else -(-(from_ms - start) // step)   # ceil division
    while True:
        yield k, start + k * step
        k += 1


def _weekly(start: int, interval: int, offsets: list[int], from_ms: int) -> Iterator[tuple[int, int]]:
    time_of_day = start % DAY_MS
    day_start = start - time_of_day
    weekday = (day_start // DAY_MS + _EPOCH_WEEKDAY) % 7
    week0 = day_start - weekday * DAY_MS
    cycle = interval * WEEK_MS

    # Days of the anchor week that fall before start_at never fire
    first_cycle = [off for off in offsets if off >= weekday]
    per_cycle = len(offsets)

    c = 0 if from_ms <= start else max(0, (from_ms - week0) // cycle)
    while True:
        days = first_cycle if c == 0 else offsets
        base = 0 if c == 0 else len(first_cycle) + (c - 1) * per_cycle
        for pos, off in enumerate(days):
            ts = week0 + c * cycle + off * DAY_MS + time_of_day
            if ts >= from_ms:
                yield base + pos, ts
        c += 1
