"""Domain events and manual commands that enroll contacts into sequences."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from sequence_engine.engine.enrollment.manager import EnrollmentManager
from sequence_engine.engine.enrollment.models import Enrollment, utc_now
from sequence_engine.engine.errors import DefinitionValidationError, DuplicateEnrollmentError
from sequence_engine.engine.gateway.contracts import ContactStore
from sequence_engine.engine.sequences.models import (
    SequenceDefinition,
    SequenceStatus,
    TriggerConfig,
    TriggerType,
)
from sequence_engine.engine.sequences.store import SequenceDefinitionStore

logger = logging.getLogger(__name__)


class DomainEvent(BaseModel):
    type: TriggerType
    tenant_id: str = Field(min_length=1)
    contact_id: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class TriggerOutcome:
    sequence_id: str
    contact_id: str
    status: Literal["enrolled", "duplicate"]
    enrollment: Enrollment


def _number(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _always(trigger: TriggerConfig, facts: dict[str, Any]) -> bool:
    return True


def _score_threshold(trigger: TriggerConfig, facts: dict[str, Any]) -> bool:
    score = _number(facts.get("score"))
    if score is None:
        return False
    threshold = trigger.min_score or 0.0
    if score < threshold:
        return False
    previous = _number(facts.get("previous_score"))
    # With a previous score only an upward crossing counts.
    return previous is None or previous < threshold


def _tag_added(trigger: TriggerConfig, facts: dict[str, Any]) -> bool:
    if not trigger.tag:
        return True
    tag = facts.get("tag")
    return isinstance(tag, str) and tag.strip().lower() == trigger.tag.strip().lower()


def _form_submit(trigger: TriggerConfig, facts: dict[str, Any]) -> bool:
    return trigger.form_id is None or facts.get("form_id") == trigger.form_id


def _purchase_complete(trigger: TriggerConfig, facts: dict[str, Any]) -> bool:
    if trigger.product_id is not None and facts.get("product_id") != trigger.product_id:
        return False
    if trigger.min_amount is not None:
        amount = _number(facts.get("amount"))
        return amount is not None and amount >= trigger.min_amount
    return True


def _inactivity(trigger: TriggerConfig, facts: dict[str, Any]) -> bool:
    days = _number(facts.get("inactive_days"))
    if days is None:
        return False
    return days >= (trigger.inactive_days or 0)


PREDICATES: dict[TriggerType, Callable[[TriggerConfig, dict[str, Any]], bool]] = {
    TriggerType.NEW_LEAD: _always,
    TriggerType.NEW_CONTACT: _always,
    TriggerType.APPOINTMENT_NOSHOW: _always,
    TriggerType.SCORE_THRESHOLD: _score_threshold,
    TriggerType.TAG_ADDED: _tag_added,
    TriggerType.FORM_SUBMIT: _form_submit,
    TriggerType.PURCHASE_COMPLETE: _purchase_complete,
    TriggerType.INACTIVITY_TRIGGER: _inactivity,
}


class TriggerEvaluator:
    def __init__(
        self,
        *,
        sequences: SequenceDefinitionStore,
        manager: EnrollmentManager,
        contacts: ContactStore | None = None,
    ) -> None:
        self.sequences = sequences
        self.manager = manager
        self.contacts = contacts

    def _facts(self, event: DomainEvent) -> dict[str, Any]:
        """Event payload, falling back to the contact's stored attributes."""

        facts: dict[str, Any] = {}
        if self.contacts is not None:
            contact = self.contacts.get_contact(event.tenant_id, event.contact_id)
            if contact is not None:
                facts.update(contact.attributes)
        facts.update(event.payload)
        return facts

    def matches(self, sequence: SequenceDefinition, event: DomainEvent, facts: dict[str, Any]) -> bool:
        if not sequence.is_active or sequence.trigger_type is not event.type:
            return False
        predicate = PREDICATES.get(event.type)
        return predicate is not None and predicate(sequence.trigger, facts)

    def handle_event(self, event: DomainEvent, *, now: datetime | None = None) -> list[TriggerOutcome]:
        """Enroll the event's contact into every active sequence whose trigger matches.

        Duplicates are reported in the outcome list rather than raised.
        """

        if event.type is TriggerType.MANUAL:
            raise DefinitionValidationError("Manual enrollment goes through manual_enroll")

        now = now or utc_now()
        facts = self._facts(event)
        outcomes: list[TriggerOutcome] = []
        for sequence in self.sequences.list(event.tenant_id, status=SequenceStatus.ACTIVE):
            if not self.matches(sequence, event, facts):
                continue
            outcomes.append(
                self._enroll(sequence, event.contact_id, enrolled_by=f"trigger:{event.type.value}", now=now)
            )

        logger.info(
            "Domain event handled",
            extra={
                "tenant_id": event.tenant_id,
                "contact_id": event.contact_id,
                "event_type": event.type.value,
                "enrolled": sum(1 for o in outcomes if o.status == "enrolled"),
                "duplicates": sum(1 for o in outcomes if o.status == "duplicate"),
            },
        )
        return outcomes

    def manual_enroll(
        self,
        tenant_id: str,
        sequence_id: str,
        contact_ids: Iterable[str],
        *,
        enrolled_by: str = "manual",
        force: bool = False,
        now: datetime | None = None,
    ) -> list[TriggerOutcome]:
        """Enroll contacts into one sequence by hand, whatever its trigger type."""

        now = now or utc_now()
        sequence = self.sequences.get(tenant_id, sequence_id)
        return [
            self._enroll(sequence, contact_id, enrolled_by=enrolled_by, force=force, now=now)
            for contact_id in contact_ids
        ]

    def _enroll(
        self,
        sequence: SequenceDefinition,
        contact_id: str,
        *,
        enrolled_by: str,
        now: datetime,
        force: bool = False,
    ) -> TriggerOutcome:
        try:
            enrollment = self.manager.enroll_in(
                sequence, contact_id=contact_id, enrolled_by=enrolled_by, force=force, now=now
            )
        except DuplicateEnrollmentError as e:
            return TriggerOutcome(sequence.id, contact_id, "duplicate", e.existing)
        return TriggerOutcome(sequence.id, contact_id, "enrolled", enrollment)
