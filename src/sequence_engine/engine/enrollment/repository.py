"""Durable enrollment state.

Three JSON tables live side by side in the state directory:
- enrollments: one row per enrollment, versioned for optimistic locking
- executions: append-only step execution history
- engagements: one row per (enrollment_id, step_index, signal_type)

A single process-wide lock serialises writers; the version check on every
enrollment write catches updates based on a stale read.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from sequence_engine.engine.enrollment.models import (
    EngagementSignal,
    Enrollment,
    EnrollmentStatus,
    ExecutionOutcome,
    SignalType,
    StepExecutionRecord,
)
from sequence_engine.engine.enrollment.state_machine import check_invariants
from sequence_engine.engine.errors import (
    DuplicateEnrollmentError,
    NotFoundError,
    PersistenceError,
    SchedulerLeaseConflict,
    StaleEnrollmentError,
)

logger = logging.getLogger(__name__)


def _read_table(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise PersistenceError(f"State file is not valid JSON: {path}") from e
    except OSError as e:
        raise PersistenceError(f"Cannot read {path}: {e}") from e
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise PersistenceError(f"State file has unexpected shape: {path}")
    return raw


def _write_table(path: Path, rows: Iterable[BaseModel]) -> None:
    payload = [row.model_dump(mode="json") for row in rows]
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        tmp.replace(path)
    except OSError as e:
        raise PersistenceError(f"Cannot write {path}: {e}") from e


@dataclass
class EnrollmentRepository:
    enrollments_path: Path
    executions_path: Path
    engagements_path: Path
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    @classmethod
    def in_directory(cls, state_path: Path) -> EnrollmentRepository:
        return cls(
            enrollments_path=state_path / "enrollments.json",
            executions_path=state_path / "executions.json",
            engagements_path=state_path / "engagements.json",
        )

    # -- enrollments -------------------------------------------------------

    def _load_enrollments(self) -> list[Enrollment]:
        return [Enrollment.model_validate(row) for row in _read_table(self.enrollments_path)]

    def _find_open(
        self, rows: list[Enrollment], *, tenant_id: str, sequence_id: str, contact_id: str
    ) -> Enrollment | None:
        for row in rows:
            if (
                row.tenant_id == tenant_id
                and row.sequence_id == sequence_id
                and row.contact_id == contact_id
                and not row.status.is_terminal
            ):
                return row
        return None

    def create(self, enrollment: Enrollment, *, force: bool = False) -> Enrollment:
        """Persist a new enrollment, enforcing one open enrollment per contact and sequence."""

        check_invariants(enrollment)
        with self._lock:
            rows = self._load_enrollments()
            existing = self._find_open(
                rows,
                tenant_id=enrollment.tenant_id,
                sequence_id=enrollment.sequence_id,
                contact_id=enrollment.contact_id,
            )
            if existing is not None and not force:
                raise DuplicateEnrollmentError(existing)
            if any(row.id == enrollment.id for row in rows):
                raise PersistenceError(f"Enrollment id collision: {enrollment.id}")
            saved = enrollment.model_copy(update={"version": 1})
            rows.append(saved)
            _write_table(self.enrollments_path, rows)
            return saved

    def get(self, tenant_id: str, enrollment_id: str) -> Enrollment:
        with self._lock:
            for row in self._load_enrollments():
                if row.id == enrollment_id and row.tenant_id == tenant_id:
                    return row
        raise NotFoundError(f"Enrollment {enrollment_id} not found for tenant {tenant_id}")

    def get_by_contact_and_sequence(
        self, tenant_id: str, *, contact_id: str, sequence_id: str
    ) -> Enrollment | None:
        """The contact's open (non-terminal) enrollment in the sequence, if any."""

        with self._lock:
            return self._find_open(
                self._load_enrollments(),
                tenant_id=tenant_id,
                sequence_id=sequence_id,
                contact_id=contact_id,
            )

    def list(
        self,
        tenant_id: str,
        *,
        sequence_id: str | None = None,
        contact_id: str | None = None,
        status: EnrollmentStatus | None = None,
    ) -> list[Enrollment]:
        with self._lock:
            rows = self._load_enrollments()
        return [
            row
            for row in rows
            if row.tenant_id == tenant_id
            and (sequence_id is None or row.sequence_id == sequence_id)
            and (contact_id is None or row.contact_id == contact_id)
            and (status is None or row.status == status)
        ]

    def count_open(self, tenant_id: str, sequence_id: str) -> int:
        return sum(
            1 for row in self.list(tenant_id, sequence_id=sequence_id) if not row.status.is_terminal
        )

    def list_due(self, now: datetime, *, limit: int = 100) -> list[Enrollment]:
        """Active enrollments whose step is due and whose lease is absent or expired."""

        with self._lock:
            rows = self._load_enrollments()
        due = [
            row
            for row in rows
            if row.status is EnrollmentStatus.ACTIVE
            and row.next_due_at is not None
            and row.next_due_at <= now
            and not row.is_claimed(now)
        ]
        due.sort(key=lambda row: (row.next_due_at, row.enrolled_at))
        return due[:limit]

    def claim(
        self, enrollment: Enrollment, *, worker_id: str, now: datetime, lease_seconds: float
    ) -> Enrollment:
        """Take the lease on a due enrollment read by `list_due`.

        Raises SchedulerLeaseConflict if the row changed since it was read, is no
        longer due, or another worker holds an unexpired lease.
        """

        with self._lock:
            rows = self._load_enrollments()
            for idx, row in enumerate(rows):
                if row.id != enrollment.id:
                    continue
                if row.version != enrollment.version:
                    raise SchedulerLeaseConflict(f"Enrollment {row.id} changed since it was read")
                if row.status is not EnrollmentStatus.ACTIVE:
                    raise SchedulerLeaseConflict(f"Enrollment {row.id} is {row.status.value}")
                if row.next_due_at is None or row.next_due_at > now:
                    raise SchedulerLeaseConflict(f"Enrollment {row.id} is not due")
                if row.is_claimed(now):
                    raise SchedulerLeaseConflict(
                        f"Enrollment {row.id} is leased by {row.claimed_by}"
                    )
                claimed = row.model_copy(
                    update={
                        "claimed_by": worker_id,
                        "claimed_until": now + timedelta(seconds=lease_seconds),
                        "version": row.version + 1,
                    }
                )
                rows[idx] = claimed
                _write_table(self.enrollments_path, rows)
                return claimed
        raise SchedulerLeaseConflict(f"Enrollment {enrollment.id} no longer exists")

    def update_state(self, enrollment: Enrollment) -> Enrollment:
        """Write `enrollment` if nobody else wrote it since it was read."""

        check_invariants(enrollment)
        with self._lock:
            rows = self._load_enrollments()
            for idx, row in enumerate(rows):
                if row.id != enrollment.id or row.tenant_id != enrollment.tenant_id:
                    continue
                if row.version != enrollment.version:
                    raise StaleEnrollmentError(
                        enrollment.id, expected=enrollment.version, actual=row.version
                    )
                saved = enrollment.model_copy(update={"version": row.version + 1})
                rows[idx] = saved
                _write_table(self.enrollments_path, rows)
                return saved
        raise NotFoundError(
            f"Enrollment {enrollment.id} not found for tenant {enrollment.tenant_id}"
        )

    # -- execution history -------------------------------------------------

    def _load_executions(self) -> list[StepExecutionRecord]:
        return [StepExecutionRecord.model_validate(r) for r in _read_table(self.executions_path)]

    def _load_engagements(self) -> list[EngagementSignal]:
        return [EngagementSignal.model_validate(r) for r in _read_table(self.engagements_path)]

    def append_execution_record(self, record: StepExecutionRecord) -> StepExecutionRecord:
        with self._lock:
            if record.outcome is ExecutionOutcome.SENT:
                # Signals can land before the record (crash between send and write).
                for signal in self._load_engagements():
                    if (
                        signal.enrollment_id == record.enrollment_id
                        and signal.step_index == record.step_index
                    ):
                        record = _merge_signal_into(record, signal)
            rows = self._load_executions()
            rows.append(record)
            _write_table(self.executions_path, rows)
            return record

    def find_execution_record(
        self,
        enrollment_id: str,
        step_index: int,
        *,
        outcome: ExecutionOutcome | None = None,
    ) -> StepExecutionRecord | None:
        """The most recent record for the step, optionally filtered by outcome."""

        found: StepExecutionRecord | None = None
        for row in self.list_execution_records(enrollment_id):
            if row.step_index == step_index and (outcome is None or row.outcome == outcome):
                found = row
        return found

    def list_execution_records(self, enrollment_id: str) -> list[StepExecutionRecord]:
        with self._lock:
            rows = self._load_executions()
        return [row for row in rows if row.enrollment_id == enrollment_id]

    def list_execution_records_for_tenant(self, tenant_id: str) -> list[StepExecutionRecord]:
        with self._lock:
            rows = self._load_executions()
        return [row for row in rows if row.tenant_id == tenant_id]

    # -- engagement --------------------------------------------------------

    def merge_engagement_signal(self, signal: EngagementSignal) -> bool:
        """Idempotent upsert keyed by (enrollment_id, step_index, signal_type).

        Keeps the earliest occurrence so arrival order does not matter. Returns
        True when the stored state changed.
        """

        with self._lock:
            engagements = self._load_engagements()
            changed = True
            for idx, existing in enumerate(engagements):
                if existing.key != signal.key:
                    continue
                if existing.occurred_at <= signal.occurred_at:
                    changed = False
                else:
                    engagements[idx] = signal
                break
            else:
                engagements.append(signal)

            if not changed:
                return False
            _write_table(self.engagements_path, engagements)

            executions = self._load_executions()
            touched = False
            for idx, row in enumerate(executions):
                if (
                    row.enrollment_id == signal.enrollment_id
                    and row.step_index == signal.step_index
                    and row.outcome is ExecutionOutcome.SENT
                ):
                    executions[idx] = _merge_signal_into(row, signal)
                    touched = True
            if touched:
                _write_table(self.executions_path, executions)
            return True

    def list_engagements(
        self, enrollment_id: str, *, step_index: int | None = None
    ) -> list[EngagementSignal]:
        with self._lock:
            rows = self._load_engagements()
        return [
            row
            for row in rows
            if row.enrollment_id == enrollment_id
            and (step_index is None or row.step_index == step_index)
        ]

    # -- tenant purge ------------------------------------------------------

    def purge_tenant(self, tenant_id: str) -> int:
        """Physically delete all of a tenant's enrollment state. Returns enrollments removed."""

        with self._lock:
            enrollments = self._load_enrollments()
            kept = [row for row in enrollments if row.tenant_id != tenant_id]
            _write_table(self.enrollments_path, kept)
            _write_table(
                self.executions_path,
                [row for row in self._load_executions() if row.tenant_id != tenant_id],
            )
            _write_table(
                self.engagements_path,
                [row for row in self._load_engagements() if row.tenant_id != tenant_id],
            )
        removed = len(enrollments) - len(kept)
        logger.warning(
            "Tenant enrollment state purged", extra={"tenant_id": tenant_id, "removed": removed}
        )
        return removed


def _merge_signal_into(
    record: StepExecutionRecord, signal: EngagementSignal
) -> StepExecutionRecord:
    attr = f"{signal.type.value}_at"
    current = record.signal_time(SignalType(signal.type))
    if current is not None and current <= signal.occurred_at:
        return record
    return record.model_copy(update={attr: signal.occurred_at})
