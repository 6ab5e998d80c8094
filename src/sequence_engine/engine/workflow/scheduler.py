"""Durable due-set sweep.

There is no in-memory timer: each sweep reads the enrollments that are due,
takes a lease on each one and hands it to the executor. A worker that dies
mid-step simply lets its lease expire; the next sweep (on any worker) picks the
row up again.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sequence_engine.engine.enrollment.models import utc_now
from sequence_engine.engine.enrollment.repository import EnrollmentRepository
from sequence_engine.engine.enrollment.state_machine import IllegalTransitionError
from sequence_engine.engine.errors import EngineError, PersistenceError, SchedulerLeaseConflict
from sequence_engine.engine.workflow.executor import ExecutionResult, StepExecutor

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    due: int = 0
    claimed: int = 0
    conflicts: int = 0
    errors: int = 0
    results: list[ExecutionResult] = field(default_factory=list)

    def count(self, action: str) -> int:
        return sum(1 for r in self.results if r.action == action)


class StepScheduler:
    def __init__(
        self,
        *,
        repository: EnrollmentRepository,
        executor: StepExecutor,
        batch_size: int = 100,
        lease_seconds: float = 300.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self.clock = clock

    @property
    def worker_id(self) -> str:
        return self.executor.worker_id

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """Claim and execute every enrollment due at `now` (bounded by the batch size).

        Without an explicit `now` the clock is read again for every claim, so a
        row late in the batch still gets a full lease after earlier rows spent
        time in the gateway.
        """

        clock = self.clock if now is None else (lambda: now)
        report = SweepReport()
        due = self.repository.list_due(clock(), limit=self.batch_size)
        report.due = len(due)

        for row in due:
            claimed_at = clock()
            try:
                claimed = self.repository.claim(
                    row, worker_id=self.worker_id, now=claimed_at, lease_seconds=self.lease_seconds
                )
            except SchedulerLeaseConflict as e:
                logger.debug(
                    "Lease conflict; skipping",
                    extra={"enrollment_id": row.id, "worker_id": self.worker_id, "reason": str(e)},
                )
                report.conflicts += 1
                continue
            report.claimed += 1

            try:
                report.results.append(self.executor.execute(claimed, now=claimed_at, clock=clock))
            except (EngineError, IllegalTransitionError):
                # The lease is left to expire so another sweep retries the row.
                logger.exception(
                    "Step execution failed; row left for lease expiry",
                    extra={"worker_id": self.worker_id, **claimed.context()},
                )
                report.errors += 1

        if report.due:
            logger.info(
                "Sweep finished",
                extra={
                    "worker_id": self.worker_id,
                    "due": report.due,
                    "claimed": report.claimed,
                    "conflicts": report.conflicts,
                    "errors": report.errors,
                    "sent": report.count("sent"),
                },
            )
        return report

    def run_forever(self, stop_event: threading.Event, *, interval_seconds: float) -> None:
        logger.info(
            "Sweep loop started",
            extra={"worker_id": self.worker_id, "interval_seconds": interval_seconds},
        )
        while not stop_event.is_set():
            try:
                self.sweep()
            except PersistenceError:
                logger.exception("Sweep failed", extra={"worker_id": self.worker_id})
            stop_event.wait(interval_seconds)
        logger.info("Sweep loop stopped", extra={"worker_id": self.worker_id})
