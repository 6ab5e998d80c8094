"""Pydantic models for the REST server."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from sequence_engine.engine.sequences.models import StepDefinition, TriggerConfig


class SequenceCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    steps: list[StepDefinition] = Field(default_factory=list)
    created_by: str = ""


class SequenceUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    trigger: TriggerConfig | None = None
    steps: list[StepDefinition] | None = None


class EnrollRequest(BaseModel):
    contact_ids: list[str] = Field(min_length=1)
    enrolled_by: str = "api"
    force: bool = False


class ReasonRequest(BaseModel):
    reason: str | None = None


class EnrollOutcome(BaseModel):
    sequence_id: str
    contact_id: str
    status: Literal["enrolled", "duplicate"]
    enrollment_id: str


class EngagementResponse(BaseModel):
    merged: bool
    routed: bool
    rule: str | None = None
    enrollment_id: str
    current_step: int
    status: str


class SweepSummary(BaseModel):
    worker_id: str
    ran_at: datetime
    due: int
    claimed: int
    conflicts: int
    errors: int
    actions: dict[str, int] = Field(default_factory=dict)
