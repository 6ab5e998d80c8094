"""Sequence definitions: ordered, explicitly indexed steps with closed branch rules.

Branch rules are a tagged union validated when a definition is saved, so the
evaluator never interprets free-form condition maps at run time.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, Field, model_validator

from sequence_engine.engine.errors import DefinitionValidationError


class Channel(str, Enum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    SMS = "sms"


class StepType(str, Enum):
    SEND_EMAIL = "send_email"
    SEND_WHATSAPP = "send_whatsapp"
    SEND_SMS = "send_sms"
    WAIT = "wait"

    @property
    def channel(self) -> Channel | None:
        return _STEP_CHANNELS.get(self)

    @property
    def is_send(self) -> bool:
        return self is not StepType.WAIT


_STEP_CHANNELS: dict[StepType, Channel] = {
    StepType.SEND_EMAIL: Channel.EMAIL,
    StepType.SEND_WHATSAPP: Channel.WHATSAPP,
    StepType.SEND_SMS: Channel.SMS,
}


class TriggerType(str, Enum):
    MANUAL = "manual"
    NEW_LEAD = "new_lead"
    NEW_CONTACT = "new_contact"
    SCORE_THRESHOLD = "score_threshold"
    TAG_ADDED = "tag_added"
    FORM_SUBMIT = "form_submit"
    PURCHASE_COMPLETE = "purchase_complete"
    INACTIVITY_TRIGGER = "inactivity_trigger"
    APPOINTMENT_NOSHOW = "appointment_noshow"


class SequenceStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


COMPLETE = "complete"

# A step index, or "complete" to finish the enrollment.
StepTarget = int | Literal["complete"]


class IfOpened(BaseModel):
    kind: Literal["if_opened"] = "if_opened"
    goto: StepTarget


class IfReplied(BaseModel):
    kind: Literal["if_replied"] = "if_replied"
    goto: StepTarget


class NoEngagementAfter(BaseModel):
    """Route after `sends` consecutive unengaged sends.

    `scope` overrides the engine-wide counting scope. A step sends at most once
    per enrollment, so more than one send can only be counted across the
    enrollment.
    """

    kind: Literal["no_engagement_after"] = "no_engagement_after"
    goto: StepTarget
    sends: int = Field(default=1, ge=1)
    scope: Literal["step", "enrollment"] | None = None
    switch_channel: Channel | None = None


class IfReadNoReply(BaseModel):
    kind: Literal["if_read_no_reply"] = "if_read_no_reply"
    goto: StepTarget
    window_hours: float | None = Field(default=None, ge=0)


BranchCondition = Annotated[
    IfOpened | IfReplied | NoEngagementAfter | IfReadNoReply,
    Field(discriminator="kind"),
]


class StepContent(BaseModel):
    """What a send step delivers. `body` and `subject` accept `$placeholder` fields."""

    template_ref: str = ""
    subject: str = ""
    body: str = ""


class StepDefinition(BaseModel):
    index: int = Field(ge=0)
    type: StepType
    delay_hours: float = Field(default=0.0, ge=0)
    content: StepContent = Field(default_factory=StepContent)
    conditions: list[BranchCondition] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _fold_delay_days(cls, data: object) -> object:
        # The campaign builder stores delays as days + hours.
        if isinstance(data, dict) and "delay_days" in data:
            data = dict(data)
            days = data.pop("delay_days") or 0
            data["delay_hours"] = float(data.get("delay_hours") or 0) + float(days) * 24
        return data

    def condition(self, kind: str) -> BranchCondition | None:
        for cond in self.conditions:
            if cond.kind == kind:
                return cond
        return None

    @property
    def has_conditions(self) -> bool:
        return bool(self.conditions)


class TriggerConfig(BaseModel):
    """Trigger type plus the parameters its predicate reads. Unset means "any"."""

    type: TriggerType = TriggerType.MANUAL
    min_score: float | None = None
    tag: str | None = None
    form_id: str | None = None
    product_id: str | None = None
    min_amount: float | None = None
    inactive_days: int | None = Field(default=None, ge=1)


class SequenceCounters(BaseModel):
    """Derived from enrollments; recomputed, never authoritative."""

    enrolled_count: int = 0
    completed_count: int = 0
    conversion_rate: float = 0.0
    open_rate: float = 0.0
    reply_rate: float = 0.0


class SequenceDefinition(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: str = ""
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    status: SequenceStatus = SequenceStatus.DRAFT
    version: int = 1
    steps: list[StepDefinition] = Field(default_factory=list)
    counters: SequenceCounters = Field(default_factory=SequenceCounters)

    created_by: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_active(self) -> bool:
        return self.status is SequenceStatus.ACTIVE

    @property
    def trigger_type(self) -> TriggerType:
        return self.trigger.type


def validate_steps(steps: list[StepDefinition]) -> None:
    """Reject step lists the engine cannot run. Collects every problem found."""

    problems: list[str] = []
    count = len(steps)
    for position, step in enumerate(steps):
        label = f"step {position}"
        if step.index != position:
            problems.append(f"{label}: index {step.index} does not match its position")

        if step.type is StepType.WAIT and step.conditions:
            problems.append(f"{label}: wait steps cannot carry branch conditions")

        seen: set[str] = set()
        for cond in step.conditions:
            if cond.kind in seen:
                problems.append(f"{label}: duplicate {cond.kind} condition")
            seen.add(cond.kind)

            if isinstance(cond, NoEngagementAfter) and cond.sends > 1 and cond.scope != "enrollment":
                problems.append(
                    f"{label}: no_engagement_after with sends={cond.sends} needs scope 'enrollment'"
                )

            target = cond.goto
            if target == COMPLETE:
                continue
            if not isinstance(target, int) or target >= count:
                problems.append(f"{label}: {cond.kind} targets missing step {target}")
            elif target <= position:
                problems.append(
                    f"{label}: {cond.kind} must route forward (got step {target})"
                )

    if problems:
        raise DefinitionValidationError("; ".join(problems), problems=problems)


def validate_for_activation(definition: SequenceDefinition) -> None:
    if not definition.steps:
        raise DefinitionValidationError(
            f"Sequence {definition.id} has no steps and cannot be activated"
        )
    validate_steps(definition.steps)
