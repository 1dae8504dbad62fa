"""InstanceGenerator — decide how many instances to materialise, and when to refill."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from core.clock import DAY_MS
from recurrence.engine import GenerationHorizon, RecurrenceEngine, TimeWindow
from scheduler.models import Instance

if TYPE_CHECKING:
    from scheduler.models import Template

logger = logging.getLogger(__name__)

# Upper bound for windows that are only capped by count
_FAR_FUTURE = 2 ** 62

STRATEGY_INITIAL = "initial"
STRATEGY_REFILL = "refill"


@dataclass
class GenerationPlan:
    """Instances to persist for one template plus its advanced watermark."""
    template_uuid: str
    strategy: str
    watermark: int | None
    instances: list[Instance] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.instances)


class InstanceGenerator:
    """Materialises template occurrences up to the configured horizon.

    Args:
        engine: Occurrence calculator.
        horizon: Count / day caps; defaults to the engine's horizon.
        refill_threshold: Fraction of ``horizon.max_count`` below which the
            remaining future instances trigger a refill.
    """

    def __init__(
        self,
        engine: RecurrenceEngine,
        horizon: GenerationHorizon | None = None,
        refill_threshold: float = 0.2,
    ):
        if not 0 < refill_threshold <= 1:
            raise ValueError("refill_threshold must be in (0, 1]")
        self.engine = engine
        self.horizon = horizon or engine.horizon
        self.refill_threshold = refill_threshold

    @property
    def refill_threshold_count(self) -> int | None:
        if self.horizon.max_count is None:
            return None
        return max(1, round(self.horizon.max_count * self.refill_threshold))

    def should_refill(
        self,
        remaining_future: int,
        template: Template | None = None,
        now: int | None = None,
    ) -> bool:
        """True once the still-future, non-terminal instances drop below the threshold."""
        threshold = self.refill_threshold_count
        if threshold is not None:
            return remaining_future < threshold

        # Day-only horizon: compare how far ahead the watermark still reaches
        if template is None or template.generation_watermark is None or now is None:
            return True
        lookahead = template.generation_watermark - now
        return lookahead < self.refill_threshold * self.horizon.max_days * DAY_MS

    def plan(self, template: Template, now: int, existing_future: int = 0) -> GenerationPlan:
        """Compute the next batch for *template* without mutating it.

        Raises:
            RecurrenceValidationError: the template's rule is malformed.
        """
        strategy = STRATEGY_INITIAL if template.generation_watermark is None else STRATEGY_REFILL
        plan = GenerationPlan(
            template_uuid=template.template_uuid,
            strategy=strategy,
            watermark=template.generation_watermark,
        )
        if not template.is_active:
            return plan

        start = now
        if template.generation_watermark is not None:
            start = max(now, template.generation_watermark + 1)
        end = _FAR_FUTURE
        if self.horizon.max_days is not None:
            end = now + self.horizon.max_days * DAY_MS
        if start >= end:
            return plan

        room = None
        if self.horizon.max_count is not None:
            room = self.horizon.max_count - existing_future
            if room <= 0:
                logger.debug(
                    "Horizon already full",
                    extra={"template_uuid": template.template_uuid, "existing": existing_future},
                )
                return plan

        timestamps = self.engine.generate(template, TimeWindow(start, end))
        if room is not None and len(timestamps) > room:
            logger.info(
                "Generation truncated at horizon",
                extra={
                    "template_uuid": template.template_uuid,
                    "capped_by": "max_count",
                    "generated": room,
                },
            )
            timestamps = timestamps[:room]

        plan.instances = [
            Instance(template_uuid=template.template_uuid, scheduled_at=ts)
            for ts in timestamps
        ]
        if timestamps:
            plan.watermark = timestamps[-1]
        return plan
