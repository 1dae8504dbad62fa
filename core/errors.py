"""Error taxonomy for the scheduling engine."""


class SchedulingError(Exception):
    """Base class for every error raised by the engine."""


class RecurrenceValidationError(SchedulingError, ValueError):
    """A recurrence rule has malformed parameters (bad interval, no weekdays)."""


class InvalidTransitionError(SchedulingError):
    """A template or instance was asked to move to a status it cannot reach."""

    def __init__(self, entity: str, uuid: str, current: str, target: str):
        self.entity = entity
        self.uuid = uuid
        self.current = current
        self.target = target
        super().__init__(f"{entity} '{uuid}' cannot move from {current} to {target}")


class TemplateNotFoundError(SchedulingError, KeyError):
    """No template with the given uuid exists in the repository."""

    def __init__(self, template_uuid: str):
        self.template_uuid = template_uuid
        super().__init__(f"Template '{template_uuid}' not found")

    def __str__(self) -> str:
        return self.args[0]
