"""Enrollment records, their state machine and durable repository."""

from sequence_engine.engine.enrollment.models import (
    EngagementSignal,
    Enrollment,
    EnrollmentStatus,
    ExecutionOutcome,
    SignalType,
    StepExecutionRecord,
    StepPhase,
)
from sequence_engine.engine.enrollment.repository import EnrollmentRepository

__all__ = [
    "EngagementSignal",
    "Enrollment",
    "EnrollmentRepository",
    "EnrollmentStatus",
    "ExecutionOutcome",
    "SignalType",
    "StepExecutionRecord",
    "StepPhase",
]
