"""JSON-file backed store for sequence definitions.

Definitions are tenant-scoped: every lookup takes the tenant explicitly and a
sequence belonging to another tenant is reported as missing.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from sequence_engine.engine.errors import (
    DefinitionValidationError,
    NotFoundError,
    PersistenceError,
)
from sequence_engine.engine.sequences.models import (
    SequenceCounters,
    SequenceDefinition,
    SequenceStatus,
    StepDefinition,
    TriggerConfig,
    validate_for_activation,
    validate_steps,
)

logger = logging.getLogger(__name__)


class SequenceDefinitionStore:
    """Holds ordered step definitions per sequence."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.RLock()

    def _load_unlocked(self) -> list[SequenceDefinition]:
        if not self._path.exists():
            return []
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Sequence state file is not valid JSON: {self._path}") from e
        except OSError as e:
            raise PersistenceError(f"Cannot read {self._path}: {e}") from e
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise PersistenceError(f"Sequence state file has unexpected shape: {self._path}")
        return [SequenceDefinition.model_validate(item) for item in raw]

    def _save_unlocked(self, sequences: list[SequenceDefinition]) -> None:
        payload = [s.model_dump(mode="json") for s in sequences]
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(
                json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
            )
        except OSError as e:
            raise PersistenceError(f"Cannot write {self._path}: {e}") from e

    def _mutate(
        self,
        tenant_id: str,
        sequence_id: str,
        fn: Callable[[SequenceDefinition], SequenceDefinition],
    ) -> SequenceDefinition:
        with self._lock:
            sequences = self._load_unlocked()
            for idx, seq in enumerate(sequences):
                if seq.id != sequence_id or seq.tenant_id != tenant_id:
                    continue
                updated = fn(seq).model_copy(update={"updated_at": datetime.now(UTC)})
                sequences[idx] = updated
                self._save_unlocked(sequences)
                return updated
        raise NotFoundError(f"Sequence {sequence_id} not found for tenant {tenant_id}")

    def list(
        self, tenant_id: str, *, status: SequenceStatus | None = None
    ) -> list[SequenceDefinition]:
        with self._lock:
            return [
                s
                for s in self._load_unlocked()
                if s.tenant_id == tenant_id and (status is None or s.status == status)
            ]

    def get(self, tenant_id: str, sequence_id: str) -> SequenceDefinition:
        with self._lock:
            for seq in self._load_unlocked():
                if seq.id == sequence_id and seq.tenant_id == tenant_id:
                    return seq
        raise NotFoundError(f"Sequence {sequence_id} not found for tenant {tenant_id}")

    def create(
        self,
        tenant_id: str,
        *,
        name: str,
        description: str = "",
        trigger: TriggerConfig | None = None,
        steps: list[StepDefinition] | None = None,
        created_by: str = "",
    ) -> SequenceDefinition:
        if not name.strip():
            raise DefinitionValidationError("Sequence name is required")
        steps = steps or []
        validate_steps(steps)

        record = SequenceDefinition(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            name=name.strip(),
            description=description,
            trigger=trigger or TriggerConfig(),
            steps=steps,
            created_by=created_by,
        )
        with self._lock:
            sequences = self._load_unlocked()
            sequences.append(record)
            self._save_unlocked(sequences)
        logger.info(
            "Sequence created",
            extra={"tenant_id": tenant_id, "sequence_id": record.id, "steps": len(steps)},
        )
        return record

    def update(
        self,
        tenant_id: str,
        sequence_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        trigger: TriggerConfig | None = None,
        steps: list[StepDefinition] | None = None,
    ) -> SequenceDefinition:
        """Edit a definition. In-flight enrollments keep the snapshot they started with."""

        if steps is not None:
            validate_steps(steps)
        if name is not None and not name.strip():
            raise DefinitionValidationError("Sequence name is required")

        def apply(seq: SequenceDefinition) -> SequenceDefinition:
            if seq.status is SequenceStatus.ARCHIVED:
                raise DefinitionValidationError(f"Sequence {seq.id} is archived")
            if seq.is_active and steps is not None and not steps:
                raise DefinitionValidationError("An active sequence needs at least one step")
            updates: dict[str, object] = {}
            if name is not None:
                updates["name"] = name.strip()
            if description is not None:
                updates["description"] = description
            if trigger is not None:
                updates["trigger"] = trigger
            if steps is not None:
                updates["steps"] = steps
            if trigger is not None or steps is not None:
                updates["version"] = seq.version + 1
            return seq.model_copy(update=updates)

        return self._mutate(tenant_id, sequence_id, apply)

    def activate(self, tenant_id: str, sequence_id: str) -> SequenceDefinition:
        def apply(seq: SequenceDefinition) -> SequenceDefinition:
            if seq.status is SequenceStatus.ARCHIVED:
                raise DefinitionValidationError(f"Sequence {seq.id} is archived")
            validate_for_activation(seq)
            return seq.model_copy(update={"status": SequenceStatus.ACTIVE})

        updated = self._mutate(tenant_id, sequence_id, apply)
        logger.info("Sequence activated", extra={"tenant_id": tenant_id, "sequence_id": sequence_id})
        return updated

    def pause(self, tenant_id: str, sequence_id: str) -> SequenceDefinition:
        """Stop accepting new enrollments. Existing enrollments keep running."""

        def apply(seq: SequenceDefinition) -> SequenceDefinition:
            if seq.status is not SequenceStatus.ACTIVE:
                raise DefinitionValidationError(
                    f"Only active sequences can be paused (status={seq.status.value})"
                )
            return seq.model_copy(update={"status": SequenceStatus.PAUSED})

        return self._mutate(tenant_id, sequence_id, apply)

    def archive(self, tenant_id: str, sequence_id: str) -> SequenceDefinition:
        return self._mutate(
            tenant_id,
            sequence_id,
            lambda seq: seq.model_copy(update={"status": SequenceStatus.ARCHIVED}),
        )

    def delete(self, tenant_id: str, sequence_id: str) -> None:
        with self._lock:
            sequences = self._load_unlocked()
            kept = [s for s in sequences if not (s.id == sequence_id and s.tenant_id == tenant_id)]
            if len(kept) == len(sequences):
                raise NotFoundError(f"Sequence {sequence_id} not found for tenant {tenant_id}")
            self._save_unlocked(kept)
        logger.info("Sequence deleted", extra={"tenant_id": tenant_id, "sequence_id": sequence_id})

    def duplicate(
        self, tenant_id: str, sequence_id: str, *, created_by: str = ""
    ) -> SequenceDefinition:
        source = self.get(tenant_id, sequence_id)
        return self.create(
            tenant_id,
            name=f"{source.name} (Copy)",
            description=source.description,
            trigger=source.trigger.model_copy(),
            steps=[s.model_copy(deep=True) for s in source.steps],
            created_by=created_by or source.created_by,
        )

    def update_counters(
        self, tenant_id: str, sequence_id: str, counters: SequenceCounters
    ) -> SequenceDefinition:
        return self._mutate(
            tenant_id, sequence_id, lambda seq: seq.model_copy(update={"counters": counters})
        )

    def purge_tenant(self, tenant_id: str) -> int:
        with self._lock:
            sequences = self._load_unlocked()
            kept = [s for s in sequences if s.tenant_id != tenant_id]
            self._save_unlocked(kept)
            return len(sequences) - len(kept)
