from __future__ import annotations

import logging
from datetime import datetime

from sequence_engine.engine.enrollment.models import (
    Enrollment,
    EnrollmentStatus,
    StepPhase,
)
from sequence_engine.engine.errors import InvariantViolation

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[EnrollmentStatus, set[EnrollmentStatus]] = {
    EnrollmentStatus.ACTIVE: {
        EnrollmentStatus.PAUSED,
        EnrollmentStatus.COMPLETED,
        EnrollmentStatus.CANCELLED,
        EnrollmentStatus.FAILED,
    },
    EnrollmentStatus.PAUSED: {EnrollmentStatus.ACTIVE, EnrollmentStatus.CANCELLED},
    EnrollmentStatus.COMPLETED: set(),
    EnrollmentStatus.CANCELLED: set(),
    EnrollmentStatus.FAILED: set(),
}


class IllegalTransitionError(ValueError):
    pass


def transition(
    *,
    current: Enrollment,
    to: EnrollmentStatus,
    next_due_at: datetime | None = None,
    reason: str | None = None,
) -> Enrollment:
    """Return a copy of `current` moved to `to`.

    `next_due_at` must be given when entering `active` and is cleared otherwise.
    """

    allowed = ALLOWED_TRANSITIONS.get(current.status, set())
    if to not in allowed:
        raise IllegalTransitionError(
            f"Illegal transition: {current.status.value} -> {to.value} (enrollment {current.id})"
        )
    updates: dict[str, object] = {
        "status": to,
        "next_due_at": next_due_at if to is EnrollmentStatus.ACTIVE else None,
    }
    if reason is not None:
        updates["status_reason"] = reason
    if to.is_terminal:
        updates["in_flight_step"] = None
    return current.model_copy(update=updates)


def check_invariants(enrollment: Enrollment) -> None:
    """Fail loudly, with full context, on state that must never be persisted."""

    problems: list[str] = []
    active = enrollment.status is EnrollmentStatus.ACTIVE
    if active and enrollment.next_due_at is None:
        problems.append("active enrollment without next_due_at")
    if not active and enrollment.next_due_at is not None:
        problems.append(f"{enrollment.status.value} enrollment with next_due_at")
    if not enrollment.status.is_terminal and not (
        0 <= enrollment.current_step < enrollment.step_count
    ):
        problems.append(
            f"current_step {enrollment.current_step} outside [0, {enrollment.step_count})"
        )
    if (
        enrollment.phase is StepPhase.AWAITING_ENGAGEMENT
        and enrollment.last_fired_at is None
    ):
        problems.append("awaiting engagement without a fired step")

    if problems:
        logger.error(
            "Enrollment invariant violated",
            extra={"problems": problems, **enrollment.context()},
        )
        raise InvariantViolation(f"Enrollment {enrollment.id}: " + "; ".join(problems))
