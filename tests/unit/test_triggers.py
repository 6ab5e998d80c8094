"""Unit tests for trigger evaluation and manual enrollment."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import TENANT, T0, email_step
from sequence_engine.engine.errors import DefinitionValidationError, NotFoundError
from sequence_engine.engine.gateway.contracts import Contact
from sequence_engine.engine.sequences.models import TriggerConfig, TriggerType
from sequence_engine.engine.workflow.triggers import DomainEvent


def _sequence(engine, trigger: TriggerConfig, *, activate: bool = True, name: str = "Seq"):
    record = engine.sequences.create(TENANT, name=name, trigger=trigger, steps=[email_step(0)])
    if activate:
        record = engine.sequences.activate(TENANT, record.id)
    return record


def _event(event_type: TriggerType, contact_id: str = "c1", **payload) -> DomainEvent:
    return DomainEvent(type=event_type, tenant_id=TENANT, contact_id=contact_id, payload=payload)


def test_event_enrolls_into_every_matching_active_sequence(engine) -> None:
    a = _sequence(engine, TriggerConfig(type=TriggerType.NEW_LEAD), name="A")
    b = _sequence(engine, TriggerConfig(type=TriggerType.NEW_LEAD), name="B")
    _sequence(engine, TriggerConfig(type=TriggerType.NEW_LEAD), activate=False, name="Draft")
    _sequence(engine, TriggerConfig(type=TriggerType.FORM_SUBMIT), name="Form")

    outcomes = engine.triggers.handle_event(_event(TriggerType.NEW_LEAD), now=T0)

    assert {o.sequence_id for o in outcomes} == {a.id, b.id}
    assert all(o.status == "enrolled" for o in outcomes)
    assert all(o.enrollment.enrolled_by == "trigger:new_lead" for o in outcomes)


def test_repeated_event_reports_duplicate(engine) -> None:
    _sequence(engine, TriggerConfig(type=TriggerType.NEW_CONTACT))

    first = engine.triggers.handle_event(_event(TriggerType.NEW_CONTACT), now=T0)
    again = engine.triggers.handle_event(
        _event(TriggerType.NEW_CONTACT), now=T0 + timedelta(minutes=1)
    )

    assert [o.status for o in again] == ["duplicate"]
    assert again[0].enrollment.id == first[0].enrollment.id
    assert len(engine.repository.list(TENANT)) == 1


def test_score_threshold_needs_upward_crossing(engine) -> None:
    _sequence(engine, TriggerConfig(type=TriggerType.SCORE_THRESHOLD, min_score=80))

    assert engine.triggers.handle_event(_event(TriggerType.SCORE_THRESHOLD, score=79), now=T0) == []
    assert (
        engine.triggers.handle_event(
            _event(TriggerType.SCORE_THRESHOLD, score=90, previous_score=85), now=T0
        )
        == []
    )
    crossed = engine.triggers.handle_event(
        _event(TriggerType.SCORE_THRESHOLD, score=80, previous_score=60), now=T0
    )
    assert [o.status for o in crossed] == ["enrolled"]


def test_score_falls_back_to_contact_attributes(engine, contacts) -> None:
    _sequence(engine, TriggerConfig(type=TriggerType.SCORE_THRESHOLD, min_score=50))
    contacts.add(Contact(id="c9", tenant_id=TENANT, email="c9@example.com", attributes={"score": 70}))

    outcomes = engine.triggers.handle_event(_event(TriggerType.SCORE_THRESHOLD, "c9"), now=T0)

    assert [o.contact_id for o in outcomes] == ["c9"]


def test_tag_match_is_case_insensitive(engine) -> None:
    _sequence(engine, TriggerConfig(type=TriggerType.TAG_ADDED, tag="VIP"))

    assert engine.triggers.handle_event(_event(TriggerType.TAG_ADDED, tag="other"), now=T0) == []
    assert len(engine.triggers.handle_event(_event(TriggerType.TAG_ADDED, tag=" vip "), now=T0)) == 1


def test_form_and_purchase_filters(engine) -> None:
    _sequence(engine, TriggerConfig(type=TriggerType.FORM_SUBMIT, form_id="demo"), name="Form")
    _sequence(
        engine,
        TriggerConfig(type=TriggerType.PURCHASE_COMPLETE, product_id="p1", min_amount=100),
        name="Upsell",
    )

    assert engine.triggers.handle_event(_event(TriggerType.FORM_SUBMIT, form_id="other"), now=T0) == []
    assert len(engine.triggers.handle_event(_event(TriggerType.FORM_SUBMIT, form_id="demo"), now=T0)) == 1

    small = _event(TriggerType.PURCHASE_COMPLETE, "c2", product_id="p1", amount=20)
    wrong = _event(TriggerType.PURCHASE_COMPLETE, "c2", product_id="p2", amount=500)
    right = _event(TriggerType.PURCHASE_COMPLETE, "c2", product_id="p1", amount="150.5")
    assert engine.triggers.handle_event(small, now=T0) == []
    assert engine.triggers.handle_event(wrong, now=T0) == []
    assert len(engine.triggers.handle_event(right, now=T0)) == 1


def test_inactivity_trigger(engine) -> None:
    _sequence(engine, TriggerConfig(type=TriggerType.INACTIVITY_TRIGGER, inactive_days=30))

    assert engine.triggers.handle_event(_event(TriggerType.INACTIVITY_TRIGGER, inactive_days=10), now=T0) == []
    assert len(
        engine.triggers.handle_event(_event(TriggerType.INACTIVITY_TRIGGER, inactive_days=45), now=T0)
    ) == 1


def test_events_are_tenant_scoped(engine) -> None:
    _sequence(engine, TriggerConfig(type=TriggerType.NEW_LEAD))
    event = DomainEvent(type=TriggerType.NEW_LEAD, tenant_id="tenant-b", contact_id="c1")

    assert engine.triggers.handle_event(event, now=T0) == []


def test_manual_event_type_is_rejected(engine) -> None:
    with pytest.raises(DefinitionValidationError):
        engine.triggers.handle_event(_event(TriggerType.MANUAL), now=T0)


def test_manual_enroll_ignores_trigger_type(engine) -> None:
    sequence = _sequence(engine, TriggerConfig(type=TriggerType.FORM_SUBMIT, form_id="demo"))

    outcomes = engine.triggers.manual_enroll(
        TENANT, sequence.id, ["c1", "c2", "c1"], enrolled_by="alice", now=T0
    )

    assert [o.status for o in outcomes] == ["enrolled", "enrolled", "duplicate"]
    assert outcomes[0].enrollment.enrolled_by == "alice"


def test_manual_enroll_unknown_sequence(engine) -> None:
    with pytest.raises(NotFoundError):
        engine.triggers.manual_enroll(TENANT, "missing", ["c1"], now=T0)
