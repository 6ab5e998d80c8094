"""Enrollment, execution history and engagement records."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from sequence_engine.engine.sequences.models import Channel, StepDefinition


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {EnrollmentStatus.COMPLETED, EnrollmentStatus.CANCELLED, EnrollmentStatus.FAILED}
)


class StepPhase(str, Enum):
    """Where an active enrollment stands relative to `current_step`.

    - scheduled: `current_step` runs at `next_due_at`
    - awaiting_engagement: `current_step` was sent and its branch conditions are
      open until `next_due_at`
    """

    SCHEDULED = "scheduled"
    AWAITING_ENGAGEMENT = "awaiting_engagement"


class ExecutionOutcome(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class SignalType(str, Enum):
    OPENED = "opened"
    REPLIED = "replied"
    CLICKED = "clicked"


class SequenceSnapshot(BaseModel):
    """The definition an enrollment runs against, frozen at enrollment time."""

    sequence_version: int
    steps: list[StepDefinition]

    def __len__(self) -> int:
        return len(self.steps)


class Enrollment(BaseModel):
    id: str
    tenant_id: str
    sequence_id: str
    contact_id: str
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_step: int = 0
    phase: StepPhase = StepPhase.SCHEDULED
    enrolled_at: datetime
    next_due_at: datetime | None
    enrolled_by: str = ""
    snapshot: SequenceSnapshot

    last_fired_at: datetime | None = None
    channel_override: Channel | None = None
    dispatch_attempts: int = 0
    in_flight_step: int | None = None
    claimed_by: str | None = None
    claimed_until: datetime | None = None

    paused_at: datetime | None = None
    remaining_delay_seconds: float | None = None
    completed_at: datetime | None = None

    flagged: bool = False
    last_error: str | None = None
    status_reason: str | None = None

    # Optimistic lock counter; bumped by the repository on every write.
    version: int = 0

    @property
    def step(self) -> StepDefinition:
        return self.snapshot.steps[self.current_step]

    @property
    def step_count(self) -> int:
        return len(self.snapshot.steps)

    def is_claimed(self, now: datetime) -> bool:
        return self.claimed_until is not None and self.claimed_until > now

    def context(self) -> dict[str, object]:
        """Log context for this enrollment."""

        return {
            "tenant_id": self.tenant_id,
            "enrollment_id": self.id,
            "sequence_id": self.sequence_id,
            "contact_id": self.contact_id,
            "status": self.status.value,
            "current_step": self.current_step,
            "phase": self.phase.value,
            "next_due_at": self.next_due_at.isoformat() if self.next_due_at else None,
            "version": self.version,
        }


class StepExecutionRecord(BaseModel):
    """Append-only; only the engagement timestamps are merged in later."""

    enrollment_id: str
    tenant_id: str
    step_index: int
    executed_at: datetime
    channel: Channel | None = None
    outcome: ExecutionOutcome
    message_id: str | None = None
    detail: str = ""

    opened_at: datetime | None = None
    replied_at: datetime | None = None
    clicked_at: datetime | None = None

    @property
    def engaged(self) -> bool:
        return any(ts is not None for ts in (self.opened_at, self.replied_at, self.clicked_at))

    def signal_time(self, signal_type: SignalType) -> datetime | None:
        return getattr(self, f"{signal_type.value}_at")


class EngagementSignal(BaseModel):
    tenant_id: str
    enrollment_id: str
    step_index: int = Field(ge=0)
    type: SignalType
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def key(self) -> tuple[str, int, SignalType]:
        return (self.enrollment_id, self.step_index, self.type)
