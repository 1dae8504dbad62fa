"""Outbound engine events — one tagged variant per kind."""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class InstancesGenerated(BaseModel):
    type: Literal["instances.generated"] = "instances.generated"
    template_uuid: str
    count: int
    strategy: str                    # initial | refill


class ExecutionSucceeded(BaseModel):
    type: Literal["execution.success"] = "execution.success"
    task_uuid: str
    task_name: str = ""
    scheduled_at: int
    duration: float | None = None


class ExecutionFailed(BaseModel):
    type: Literal["execution.failure"] = "execution.failure"
    task_uuid: str
    task_name: str = ""
    scheduled_at: int
    duration: float | None = None
    error: str


class ExecutionSkipped(BaseModel):
    type: Literal["execution.skipped"] = "execution.skipped"
    task_uuid: str
    task_name: str = ""
    scheduled_at: int
    reason: str


EngineEvent = Annotated[
    Union[InstancesGenerated, ExecutionSucceeded, ExecutionFailed, ExecutionSkipped],
    Field(discriminator="type"),
]
