"""Enrollment lifecycle: creation, pause/resume/stop, step advancement and branching.

Every write goes through the repository's optimistic version check. Operator
actions (pause, resume, stop, skip, signals) reload and retry on a stale read;
the executor's writes do not, because a stale read there means an operator
acted while the step was in flight and the executor must reconcile instead.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sequence_engine.engine.enrollment.models import (
    EngagementSignal,
    Enrollment,
    EnrollmentStatus,
    ExecutionOutcome,
    SequenceSnapshot,
    SignalType,
    StepExecutionRecord,
    StepPhase,
    utc_now,
)
from sequence_engine.engine.enrollment.repository import EnrollmentRepository
from sequence_engine.engine.enrollment.state_machine import transition
from sequence_engine.engine.errors import (
    DefinitionValidationError,
    DuplicateEnrollmentError,
    NotFoundError,
    SequenceInactiveError,
    SequenceInUseError,
    StaleEnrollmentError,
)
from sequence_engine.engine.sequences.models import SequenceCounters, SequenceDefinition
from sequence_engine.engine.sequences.store import SequenceDefinitionStore
from sequence_engine.engine.workflow.branching import BranchDecision, BranchEvaluator

logger = logging.getLogger(__name__)

_MAX_STALE_RETRIES = 5


def _hours(value: float) -> timedelta:
    return timedelta(hours=value)


@dataclass(frozen=True, slots=True)
class EngagementResult:
    merged: bool
    routed: bool
    enrollment: Enrollment
    rule: str | None = None


class EnrollmentManager:
    def __init__(
        self,
        *,
        repository: EnrollmentRepository,
        sequences: SequenceDefinitionStore,
        branching: BranchEvaluator,
        final_step_window_hours: float = 48.0,
    ) -> None:
        self.repository = repository
        self.sequences = sequences
        self.branching = branching
        self._final_window = _hours(final_step_window_hours)

    # -- creation ----------------------------------------------------------

    def enroll(
        self,
        tenant_id: str,
        *,
        sequence_id: str,
        contact_id: str,
        enrolled_by: str = "",
        force: bool = False,
        now: datetime | None = None,
    ) -> Enrollment:
        """Enroll a contact at step 0.

        Raises DuplicateEnrollmentError if the contact already has an open
        enrollment in the sequence (unless `force`).
        """

        sequence = self.sequences.get(tenant_id, sequence_id)
        return self.enroll_in(
            sequence, contact_id=contact_id, enrolled_by=enrolled_by, force=force, now=now
        )

    def enroll_in(
        self,
        sequence: SequenceDefinition,
        *,
        contact_id: str,
        enrolled_by: str = "",
        force: bool = False,
        now: datetime | None = None,
    ) -> Enrollment:
        if not sequence.is_active:
            raise SequenceInactiveError(
                f"Sequence {sequence.id} is {sequence.status.value}; new enrollments are blocked"
            )
        if not contact_id.strip():
            raise DefinitionValidationError("contact_id is required")

        now = now or utc_now()
        snapshot = SequenceSnapshot(
            sequence_version=sequence.version,
            steps=[s.model_copy(deep=True) for s in sequence.steps],
        )
        enrollment = Enrollment(
            id=uuid.uuid4().hex,
            tenant_id=sequence.tenant_id,
            sequence_id=sequence.id,
            contact_id=contact_id,
            enrolled_at=now,
            next_due_at=now + _hours(snapshot.steps[0].delay_hours),
            enrolled_by=enrolled_by,
            snapshot=snapshot,
        )
        try:
            saved = self.repository.create(enrollment, force=force)
        except DuplicateEnrollmentError as e:
            logger.info(
                "Duplicate enrollment rejected",
                extra={"existing": e.existing.id, **enrollment.context()},
            )
            raise
        logger.info("Contact enrolled", extra={"forced": force, **saved.context()})
        return saved

    # -- operator controls -------------------------------------------------

    def _update_with_retry(
        self, tenant_id: str, enrollment_id: str, fn: Callable[[Enrollment], Enrollment]
    ) -> Enrollment:
        for _ in range(_MAX_STALE_RETRIES):
            current = self.repository.get(tenant_id, enrollment_id)
            updated = fn(current)
            if updated is current:
                return current
            try:
                return self.repository.update_state(updated)
            except StaleEnrollmentError:
                logger.debug(
                    "Stale enrollment write; retrying", extra={"enrollment_id": enrollment_id}
                )
        raise StaleEnrollmentError(enrollment_id, expected=-1, actual=-1)

    def pause(
        self,
        tenant_id: str,
        enrollment_id: str,
        *,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Enrollment:
        """Halt scheduling. The remaining delay is kept for resume."""

        now = now or utc_now()

        def apply(e: Enrollment) -> Enrollment:
            remaining = 0.0
            if e.next_due_at is not None:
                remaining = max(0.0, (e.next_due_at - now).total_seconds())
            paused = transition(current=e, to=EnrollmentStatus.PAUSED, reason=reason)
            return paused.model_copy(
                update={"paused_at": now, "remaining_delay_seconds": remaining}
            )

        saved = self._update_with_retry(tenant_id, enrollment_id, apply)
        logger.info("Enrollment paused", extra={"reason": reason, **saved.context()})
        return saved

    def resume(
        self, tenant_id: str, enrollment_id: str, *, now: datetime | None = None
    ) -> Enrollment:
        """Resume with the elapsed delay preserved: due = now + delay remaining at pause."""

        now = now or utc_now()

        def apply(e: Enrollment) -> Enrollment:
            remaining = timedelta(seconds=e.remaining_delay_seconds or 0.0)
            resumed = transition(
                current=e, to=EnrollmentStatus.ACTIVE, next_due_at=now + remaining
            )
            updates: dict[str, object] = {
                "paused_at": None,
                "remaining_delay_seconds": None,
                "status_reason": None,
            }
            # Later branch targets are timed from the last firing; shift it by the pause.
            if e.last_fired_at is not None and e.paused_at is not None:
                updates["last_fired_at"] = e.last_fired_at + (now - e.paused_at)
            return resumed.model_copy(update=updates)

        saved = self._update_with_retry(tenant_id, enrollment_id, apply)
        logger.info("Enrollment resumed", extra=saved.context())
        return saved

    def stop(
        self,
        tenant_id: str,
        enrollment_id: str,
        *,
        reason: str = "stopped",
    ) -> Enrollment:
        saved = self._update_with_retry(
            tenant_id,
            enrollment_id,
            lambda e: transition(current=e, to=EnrollmentStatus.CANCELLED, reason=reason),
        )
        logger.info("Enrollment cancelled", extra={"reason": reason, **saved.context()})
        return saved

    def opt_out(self, tenant_id: str, contact_id: str, *, reason: str = "opt_out") -> list[Enrollment]:
        """Cancel every open enrollment of a contact who opted out."""

        cancelled: list[Enrollment] = []
        for enrollment in self.repository.list(tenant_id, contact_id=contact_id):
            if enrollment.status.is_terminal:
                continue
            cancelled.append(self.stop(tenant_id, enrollment.id, reason=reason))
        return cancelled

    def skip_step(
        self, tenant_id: str, enrollment_id: str, *, now: datetime | None = None
    ) -> Enrollment:
        """Skip the current step and make the following one due immediately."""

        now = now or utc_now()
        enrollment = self.repository.get(tenant_id, enrollment_id)
        if enrollment.status is not EnrollmentStatus.ACTIVE:
            raise DefinitionValidationError(
                f"Only active enrollments can skip a step (status={enrollment.status.value})"
            )
        if enrollment.phase is StepPhase.SCHEDULED:
            self.repository.append_execution_record(
                StepExecutionRecord(
                    enrollment_id=enrollment.id,
                    tenant_id=tenant_id,
                    step_index=enrollment.current_step,
                    executed_at=now,
                    outcome=ExecutionOutcome.SKIPPED,
                    detail="skipped by operator",
                )
            )

        def apply(e: Enrollment) -> Enrollment:
            following = e.current_step + 1
            if following >= e.step_count:
                return self._complete(e, now, reason="skipped past last step")
            return e.model_copy(
                update={
                    "current_step": following,
                    "phase": StepPhase.SCHEDULED,
                    "next_due_at": now,
                    "last_fired_at": now,
                    "dispatch_attempts": 0,
                }
            )

        saved = self._update_with_retry(tenant_id, enrollment_id, apply)
        logger.info("Enrollment step skipped", extra=saved.context())
        return saved

    # -- executor-facing transitions ---------------------------------------

    def _complete(self, enrollment: Enrollment, now: datetime, *, reason: str) -> Enrollment:
        done = transition(current=enrollment, to=EnrollmentStatus.COMPLETED, reason=reason)
        return done.model_copy(update={"completed_at": now, "claimed_by": None, "claimed_until": None})

    def _release_fields(self) -> dict[str, object]:
        return {"claimed_by": None, "claimed_until": None, "in_flight_step": None}

    def _route(self, enrollment: Enrollment, decision: BranchDecision, now: datetime) -> Enrollment:
        if decision.completes:
            return self._complete(enrollment, now, reason=decision.rule)
        target = decision.next_step
        assert target is not None
        fired_at = enrollment.last_fired_at or now
        updates: dict[str, object] = {
            "current_step": target,
            "phase": StepPhase.SCHEDULED,
            "next_due_at": fired_at + _hours(enrollment.snapshot.steps[target].delay_hours),
        }
        if decision.switch_channel is not None:
            updates["channel_override"] = decision.switch_channel
        return enrollment.model_copy(update=updates)

    def advance(
        self, enrollment: Enrollment, record: StepExecutionRecord, *, now: datetime
    ) -> Enrollment:
        """Move past the step that `record` finished and release the lease.

        A step that sent and carries branch conditions is held in
        `awaiting_engagement` until its next step is due; everything else
        advances linearly at once.
        """

        step = enrollment.step
        fired_at = record.executed_at
        base = enrollment.model_copy(
            update={"last_fired_at": fired_at, "dispatch_attempts": 0, **self._release_fields()}
        )
        if record.outcome is ExecutionOutcome.FAILED:
            base = base.model_copy(update={"flagged": True, "last_error": record.detail})

        if record.outcome is ExecutionOutcome.SENT and step.has_conditions:
            history = self.repository.list_execution_records(enrollment.id)
            decision = self.branching.evaluate(
                step=step,
                step_count=enrollment.step_count,
                history=history,
                now=now,
                at_due_time=False,
            )
            if decision.routed:
                updated = self._route(base, decision, now)
            else:
                following = step.index + 1
                if following < enrollment.step_count:
                    due = fired_at + _hours(enrollment.snapshot.steps[following].delay_hours)
                else:
                    due = fired_at + self._final_window
                if following >= enrollment.step_count and self._final_window <= timedelta(0):
                    updated = self._complete(base, now, reason="last step executed")
                else:
                    updated = base.model_copy(
                        update={"phase": StepPhase.AWAITING_ENGAGEMENT, "next_due_at": due}
                    )
        else:
            following = step.index + 1
            if following >= enrollment.step_count:
                updated = self._complete(base, now, reason="last step executed")
            else:
                updated = base.model_copy(
                    update={
                        "current_step": following,
                        "phase": StepPhase.SCHEDULED,
                        "next_due_at": fired_at
                        + _hours(enrollment.snapshot.steps[following].delay_hours),
                    }
                )

        saved = self.repository.update_state(updated)
        logger.info(
            "Enrollment advanced",
            extra={"executed_step": step.index, "outcome": record.outcome.value, **saved.context()},
        )
        return saved

    def settle(self, enrollment: Enrollment, *, now: datetime) -> Enrollment:
        """Resolve branching for a step whose engagement window has closed.

        The lease is kept so the caller can go on to execute the chosen step.
        """

        decision = self.branching.evaluate(
            step=enrollment.step,
            step_count=enrollment.step_count,
            history=self.repository.list_execution_records(enrollment.id),
            now=now,
            at_due_time=True,
        )
        saved = self.repository.update_state(self._route(enrollment, decision, now))
        logger.info(
            "Branch settled",
            extra={
                "rule": decision.rule,
                "owning_step": enrollment.current_step,
                **saved.context(),
            },
        )
        return saved

    def mark_in_flight(self, enrollment: Enrollment) -> Enrollment:
        return self.repository.update_state(
            enrollment.model_copy(update={"in_flight_step": enrollment.current_step})
        )

    def reschedule_retry(
        self, enrollment: Enrollment, *, retry_at: datetime, attempts: int, error: str
    ) -> Enrollment:
        saved = self.repository.update_state(
            enrollment.model_copy(
                update={
                    "next_due_at": retry_at,
                    "dispatch_attempts": attempts,
                    "last_error": error,
                    **self._release_fields(),
                }
            )
        )
        logger.warning(
            "Transient dispatch failure; retry scheduled",
            extra={"attempts": attempts, "error": error, **saved.context()},
        )
        return saved

    def fail(self, enrollment: Enrollment, *, error: str) -> Enrollment:
        failed = transition(current=enrollment, to=EnrollmentStatus.FAILED, reason="dispatch_failed")
        saved = self.repository.update_state(
            failed.model_copy(update={"last_error": error, "flagged": True, **self._release_fields()})
        )
        logger.error("Enrollment failed", extra={"error": error, **saved.context()})
        return saved

    def release(self, enrollment: Enrollment) -> Enrollment:
        return self.repository.update_state(enrollment.model_copy(update=self._release_fields()))

    # -- engagement --------------------------------------------------------

    def record_engagement(
        self, signal: EngagementSignal, *, now: datetime | None = None
    ) -> EngagementResult:
        """Merge a signal and, if the enrollment is sitting at that step, branch on it.

        Signals for any other step are kept for reporting only and never move
        `current_step`.
        """

        now = now or utc_now()
        enrollment = self.repository.get(signal.tenant_id, signal.enrollment_id)
        if signal.step_index >= enrollment.step_count:
            raise NotFoundError(
                f"Enrollment {enrollment.id} has no step {signal.step_index}"
            )
        merged = self.repository.merge_engagement_signal(signal)

        for _ in range(_MAX_STALE_RETRIES):
            if not (
                enrollment.status is EnrollmentStatus.ACTIVE
                and enrollment.phase is StepPhase.AWAITING_ENGAGEMENT
                and enrollment.current_step == signal.step_index
                and not enrollment.is_claimed(now)
            ):
                logger.info(
                    "Engagement recorded for reporting",
                    extra={"signal": signal.type.value, "step_index": signal.step_index, **enrollment.context()},
                )
                return EngagementResult(merged=merged, routed=False, enrollment=enrollment)

            decision = self.branching.evaluate(
                step=enrollment.step,
                step_count=enrollment.step_count,
                history=self.repository.list_execution_records(enrollment.id),
                now=now,
                at_due_time=False,
            )
            if not decision.routed:
                return EngagementResult(merged=merged, routed=False, enrollment=enrollment)
            try:
                saved = self.repository.update_state(self._route(enrollment, decision, now))
            except StaleEnrollmentError:
                enrollment = self.repository.get(signal.tenant_id, signal.enrollment_id)
                continue
            logger.info(
                "Engagement routed enrollment",
                extra={"rule": decision.rule, "signal": signal.type.value, **saved.context()},
            )
            return EngagementResult(merged=merged, routed=True, enrollment=saved, rule=decision.rule)

        raise StaleEnrollmentError(signal.enrollment_id, expected=-1, actual=-1)

    # -- queries and reporting ---------------------------------------------

    def get(self, tenant_id: str, enrollment_id: str) -> Enrollment:
        return self.repository.get(tenant_id, enrollment_id)

    def history(self, tenant_id: str, enrollment_id: str) -> list[StepExecutionRecord]:
        self.repository.get(tenant_id, enrollment_id)
        return self.repository.list_execution_records(enrollment_id)

    def sequence_stats(self, tenant_id: str, sequence_id: str) -> SequenceCounters:
        """Derived counters.

        open/reply rates: share of enrollments with at least one open/reply.
        conversion: share of enrollments with at least one click.
        """

        enrollments = self.repository.list(tenant_id, sequence_id=sequence_id)
        total = len(enrollments)
        if total == 0:
            return SequenceCounters()
        ids = {e.id for e in enrollments}
        engaged: dict[SignalType, set[str]] = {t: set() for t in SignalType}
        for record in self.repository.list_execution_records_for_tenant(tenant_id):
            if record.enrollment_id not in ids:
                continue
            for signal_type in SignalType:
                if record.signal_time(signal_type) is not None:
                    engaged[signal_type].add(record.enrollment_id)

        def pct(count: int) -> float:
            return round(100.0 * count / total, 1)

        return SequenceCounters(
            enrolled_count=total,
            completed_count=sum(1 for e in enrollments if e.status is EnrollmentStatus.COMPLETED),
            conversion_rate=pct(len(engaged[SignalType.CLICKED])),
            open_rate=pct(len(engaged[SignalType.OPENED])),
            reply_rate=pct(len(engaged[SignalType.REPLIED])),
        )

    def refresh_counters(self, tenant_id: str, sequence_id: str) -> SequenceDefinition:
        return self.sequences.update_counters(
            tenant_id, sequence_id, self.sequence_stats(tenant_id, sequence_id)
        )

    # -- sequence lifecycle guards -----------------------------------------

    def archive_sequence(self, tenant_id: str, sequence_id: str) -> SequenceDefinition:
        """Archive once no enrollment is still open."""

        open_count = self.repository.count_open(tenant_id, sequence_id)
        if open_count:
            raise SequenceInUseError(
                f"Sequence {sequence_id} still has {open_count} open enrollments"
            )
        return self.sequences.archive(tenant_id, sequence_id)

    def delete_sequence(self, tenant_id: str, sequence_id: str) -> None:
        open_count = self.repository.count_open(tenant_id, sequence_id)
        if open_count:
            raise SequenceInUseError(
                f"Sequence {sequence_id} still has {open_count} open enrollments"
            )
        self.sequences.delete(tenant_id, sequence_id)

    def purge_tenant(self, tenant_id: str) -> int:
        removed = self.repository.purge_tenant(tenant_id)
        self.sequences.purge_tenant(tenant_id)
        return removed
