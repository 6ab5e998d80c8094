"""Runs the step a claimed enrollment is due for.

The caller (StepScheduler) hands over an enrollment it holds the lease on. The
gateway call happens outside any lock; while it is in progress the enrollment
is parked with `in_flight_step` set so a crash mid-dispatch is recognisable
after the lease expires.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from sequence_engine.engine.config import EngineSettings
from sequence_engine.engine.enrollment.manager import EnrollmentManager
from sequence_engine.engine.enrollment.models import (
    Enrollment,
    EnrollmentStatus,
    ExecutionOutcome,
    StepExecutionRecord,
    StepPhase,
)
from sequence_engine.engine.errors import (
    PermanentDispatchError,
    StaleEnrollmentError,
    TransientDispatchError,
)
from sequence_engine.engine.gateway.contracts import ContactStore, MessagingGateway
from sequence_engine.engine.sequences.models import Channel, StepType
from sequence_engine.engine.workflow.rate_limit import TenantRateLimiter
from sequence_engine.engine.workflow.rendering import render_content

logger = logging.getLogger(__name__)

ExecutionAction = Literal[
    "sent",
    "skipped",
    "already_sent",
    "failed",
    "retry_scheduled",
    "rescheduled",
    "rate_limited",
    "completed",
    "aborted",
]


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    action: ExecutionAction
    enrollment: Enrollment
    step_index: int | None = None
    detail: str = ""


def backoff_delay(attempt: int, *, base_seconds: float, max_seconds: float) -> timedelta:
    """Exponential backoff for the given 1-based attempt number, capped."""

    attempt = max(1, attempt)
    return timedelta(seconds=min(base_seconds * (2 ** (attempt - 1)), max_seconds))


def idempotency_key(enrollment_id: str, step_index: int) -> str:
    return f"{enrollment_id}:{step_index}"


class StepExecutor:
    def __init__(
        self,
        *,
        manager: EnrollmentManager,
        gateway: MessagingGateway,
        contacts: ContactStore,
        settings: EngineSettings,
        worker_id: str,
        limiter: TenantRateLimiter | None = None,
    ) -> None:
        self.manager = manager
        self.repository = manager.repository
        self.gateway = gateway
        self.contacts = contacts
        self.settings = settings
        self.worker_id = worker_id
        self.limiter = limiter

    def execute(
        self,
        claimed: Enrollment,
        *,
        now: datetime,
        clock: Callable[[], datetime] | None = None,
    ) -> ExecutionResult:
        """Run the due step. `clock` is read to check the lease is still held before dispatch."""

        enrollment = claimed

        if enrollment.phase is StepPhase.AWAITING_ENGAGEMENT:
            enrollment = self.manager.settle(enrollment, now=now)
            if enrollment.status is not EnrollmentStatus.ACTIVE:
                return ExecutionResult("completed", enrollment)
            assert enrollment.next_due_at is not None
            if enrollment.next_due_at > now:
                return ExecutionResult("rescheduled", self.manager.release(enrollment))

        step = enrollment.step

        if step.type is StepType.WAIT:
            record = self._record(enrollment, now, outcome=ExecutionOutcome.SKIPPED, detail="wait")
            saved = self._finalize(
                enrollment, lambda e: self.manager.advance(e, record, now=now)
            )
            return ExecutionResult("skipped", saved, step.index, "wait")

        existing = self.repository.find_execution_record(
            enrollment.id, step.index, outcome=ExecutionOutcome.SENT
        )
        if existing is not None:
            logger.info(
                "Step already sent; advancing without dispatch",
                extra={"step_index": step.index, **enrollment.context()},
            )
            saved = self._finalize(
                enrollment, lambda e: self.manager.advance(e, existing, now=now)
            )
            return ExecutionResult("already_sent", saved, step.index)

        if enrollment.in_flight_step is not None:
            # Lease expired while a dispatch was in progress and nothing was recorded.
            attempts = enrollment.dispatch_attempts + 1
            logger.warning(
                "Reclaimed enrollment with an unfinished dispatch",
                extra={"attempts": attempts, **enrollment.context()},
            )
            channel = self._channel_for(enrollment)
            if attempts >= self.settings.max_dispatch_attempts:
                return self._permanent(
                    enrollment,
                    channel,
                    f"dispatch outcome unknown after {attempts} attempts",
                    now,
                )
            enrollment = self.repository.update_state(
                enrollment.model_copy(update={"dispatch_attempts": attempts, "in_flight_step": None})
            )

        return self._dispatch(enrollment, now, clock or (lambda: now))

    # -- send path ---------------------------------------------------------

    def _channel_for(self, enrollment: Enrollment) -> Channel:
        channel = enrollment.step.type.channel
        assert channel is not None
        return enrollment.channel_override or channel

    def _dispatch(
        self, enrollment: Enrollment, now: datetime, clock: Callable[[], datetime]
    ) -> ExecutionResult:
        step = enrollment.step
        channel = self._channel_for(enrollment)

        contact = self.contacts.get_contact(enrollment.tenant_id, enrollment.contact_id)
        if contact is None:
            return self._permanent(enrollment, channel, "contact not found", now)
        if contact.address_for(channel) is None:
            return self._permanent(enrollment, channel, f"contact has no {channel.value} address", now)

        if self.contacts.is_suppressed(enrollment.tenant_id, enrollment.contact_id, channel):
            record = self._record(
                enrollment, now, outcome=ExecutionOutcome.SKIPPED, channel=channel, detail="suppressed"
            )
            logger.info(
                "Contact suppressed on channel; step skipped",
                extra={"channel": channel.value, **enrollment.context()},
            )
            saved = self._finalize(enrollment, lambda e: self.manager.advance(e, record, now=now))
            return ExecutionResult("skipped", saved, step.index, "suppressed")

        content = render_content(step.content, contact)

        if self.limiter is not None:
            decision = self.limiter.try_acquire(enrollment.tenant_id, now)
            if not decision.allowed:
                logger.info(
                    "Tenant rate limit reached; leaving step due",
                    extra={
                        "retry_at": decision.retry_at.isoformat() if decision.retry_at else None,
                        **enrollment.context(),
                    },
                )
                return ExecutionResult("rate_limited", self.manager.release(enrollment), step.index)

        # Status and lease re-read right before the external call.
        current = self.repository.get(enrollment.tenant_id, enrollment.id)
        if (
            current.version != enrollment.version
            or current.status is not EnrollmentStatus.ACTIVE
            or current.claimed_by != self.worker_id
            or not current.is_claimed(clock())
        ):
            if self.limiter is not None:
                self.limiter.release(enrollment.tenant_id, now)
            logger.info(
                "Enrollment changed or lease lapsed before dispatch; aborting",
                extra=current.context(),
            )
            return ExecutionResult("aborted", self._abandon(current), step.index)

        parked = self.manager.mark_in_flight(current)
        try:
            receipt = self.gateway.send(
                tenant_id=parked.tenant_id,
                channel=channel,
                contact=contact,
                content=content,
                idempotency_key=idempotency_key(parked.id, step.index),
            )
        except TransientDispatchError as e:
            return self._transient(parked, channel, str(e), now)
        except PermanentDispatchError as e:
            return self._permanent(parked, channel, str(e), now)

        record = self._record(
            parked,
            now,
            outcome=ExecutionOutcome.SENT,
            channel=channel,
            message_id=receipt.message_id,
            detail=receipt.status,
        )
        logger.info(
            "Step dispatched",
            extra={
                "channel": channel.value,
                "message_id": receipt.message_id,
                "step_index": step.index,
                **parked.context(),
            },
        )
        saved = self._finalize(parked, lambda e: self.manager.advance(e, record, now=now))
        return ExecutionResult("sent", saved, step.index)

    # -- failure handling --------------------------------------------------

    def _transient(
        self, enrollment: Enrollment, channel: Channel, error: str, now: datetime
    ) -> ExecutionResult:
        attempts = enrollment.dispatch_attempts + 1
        if attempts >= self.settings.max_dispatch_attempts:
            return self._permanent(
                enrollment, channel, f"{error} (gave up after {attempts} attempts)", now
            )
        retry_at = now + backoff_delay(
            attempts,
            base_seconds=self.settings.retry_base_seconds,
            max_seconds=self.settings.retry_max_seconds,
        )
        saved = self._finalize(
            enrollment,
            lambda e: self.manager.reschedule_retry(
                e, retry_at=retry_at, attempts=attempts, error=error
            ),
        )
        return ExecutionResult("retry_scheduled", saved, enrollment.current_step, error)

    def _permanent(
        self, enrollment: Enrollment, channel: Channel, error: str, now: datetime
    ) -> ExecutionResult:
        record = self._record(
            enrollment, now, outcome=ExecutionOutcome.FAILED, channel=channel, detail=error
        )
        logger.error(
            "Step dispatch failed permanently",
            extra={
                "error": error,
                "policy": self.settings.permanent_failure_policy,
                **enrollment.context(),
            },
        )
        if self.settings.permanent_failure_policy == "fail":
            saved = self._finalize(enrollment, lambda e: self.manager.fail(e, error=error))
        else:
            saved = self._finalize(enrollment, lambda e: self.manager.advance(e, record, now=now))
        return ExecutionResult("failed", saved, record.step_index, error)

    # -- helpers -----------------------------------------------------------

    def _record(
        self,
        enrollment: Enrollment,
        now: datetime,
        *,
        outcome: ExecutionOutcome,
        channel: Channel | None = None,
        message_id: str | None = None,
        detail: str = "",
    ) -> StepExecutionRecord:
        return self.repository.append_execution_record(
            StepExecutionRecord(
                enrollment_id=enrollment.id,
                tenant_id=enrollment.tenant_id,
                step_index=enrollment.current_step,
                executed_at=now,
                channel=channel,
                outcome=outcome,
                message_id=message_id,
                detail=detail,
            )
        )

    def _finalize(
        self, enrollment: Enrollment, apply: Callable[[Enrollment], Enrollment]
    ) -> Enrollment:
        """Apply the post-execution write, reconciling with operator changes.

        If the row moved on while the step ran, the write is re-applied only
        when the enrollment is still active at the same step under our lease;
        otherwise the lease is dropped and the operator's state wins.
        """

        try:
            return apply(enrollment)
        except StaleEnrollmentError:
            current = self.repository.get(enrollment.tenant_id, enrollment.id)
            if (
                current.status is EnrollmentStatus.ACTIVE
                and current.current_step == enrollment.current_step
                and current.phase is enrollment.phase
                and current.claimed_by == self.worker_id
            ):
                return apply(current)
            logger.info(
                "Enrollment changed during execution; releasing", extra=current.context()
            )
            return self._abandon(current)

    def _abandon(self, current: Enrollment) -> Enrollment:
        if current.claimed_by != self.worker_id:
            return current
        return self.manager.release(current)
