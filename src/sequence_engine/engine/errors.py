"""Error taxonomy for the sequence engine.

Callers decide what to do by type:
- definition and duplicate errors are reported back to whoever asked
- dispatch errors are handled by the executor (retry or record)
- lease conflicts are skipped by the scheduler
- persistence errors propagate; the step is not complete and the lease expires
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sequence_engine.engine.enrollment.models import Enrollment


class EngineError(Exception):
    """Base class for all engine errors."""


class DefinitionValidationError(EngineError):
    """A sequence or step definition was rejected before it was persisted."""

    def __init__(self, message: str, *, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = problems or [message]


@dataclass(frozen=True, slots=True)
class DuplicateEnrollmentError(EngineError):
    """Raised when the contact already has an open enrollment in the sequence."""

    existing: Enrollment

    def __str__(self) -> str:
        return (
            f"Contact {self.existing.contact_id!r} already enrolled in sequence "
            f"{self.existing.sequence_id!r} (enrollment {self.existing.id})"
        )


class TransientDispatchError(EngineError):
    """The gateway call failed in a way that may succeed later (timeouts included)."""


class PermanentDispatchError(EngineError):
    """The gateway rejected the message; retrying would not help."""


class SchedulerLeaseConflict(EngineError):
    """Another worker holds (or just took) the lease. Not a failure: skip the row."""


class StaleEnrollmentError(EngineError):
    """The enrollment changed since it was read (optimistic version mismatch)."""

    def __init__(self, enrollment_id: str, *, expected: int, actual: int) -> None:
        super().__init__(
            f"Enrollment {enrollment_id} is at version {actual}, expected {expected}"
        )
        self.enrollment_id = enrollment_id
        self.expected = expected
        self.actual = actual


class PersistenceError(EngineError):
    """Reading or writing durable state failed."""


class NotFoundError(EngineError, LookupError):
    """A sequence, enrollment or contact does not exist for the tenant."""


class SequenceInactiveError(EngineError):
    """New enrollments are only accepted by active sequences."""


class InvariantViolation(EngineError):
    """Enrollment state would break an engine invariant. Always a bug."""


class SequenceInUseError(EngineError):
    """Archive or delete was refused because the sequence still has open enrollments."""
