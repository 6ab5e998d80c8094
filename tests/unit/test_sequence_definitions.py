"""Unit tests for sequence definition validation and the JSON definition store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from sequence_engine.engine.errors import DefinitionValidationError, NotFoundError
from sequence_engine.engine.sequences.models import (
    Channel,
    IfOpened,
    IfReplied,
    NoEngagementAfter,
    SequenceCounters,
    SequenceStatus,
    StepDefinition,
    StepType,
    TriggerConfig,
    TriggerType,
    validate_steps,
)
from sequence_engine.engine.sequences.store import SequenceDefinitionStore


def _step(index: int, **kwargs) -> StepDefinition:
    return StepDefinition(index=index, type=kwargs.pop("type", StepType.SEND_EMAIL), **kwargs)


def test_delay_days_fold_into_hours() -> None:
    step = StepDefinition.model_validate(
        {"index": 0, "type": "send_sms", "delay_days": 2, "delay_hours": 3}
    )
    assert step.delay_hours == 51.0


def test_conditions_parse_by_kind() -> None:
    step = StepDefinition.model_validate(
        {
            "index": 0,
            "type": "send_email",
            "conditions": [
                {"kind": "if_opened", "goto": "complete"},
                {
                    "kind": "no_engagement_after",
                    "goto": 2,
                    "sends": 2,
                    "scope": "enrollment",
                    "switch_channel": "sms",
                },
            ],
        }
    )
    assert isinstance(step.condition("if_opened"), IfOpened)
    silent = step.condition("no_engagement_after")
    assert isinstance(silent, NoEngagementAfter)
    assert silent.switch_channel is Channel.SMS
    assert step.condition("if_replied") is None


def test_validate_rejects_backward_goto() -> None:
    steps = [_step(0), _step(1, conditions=[IfOpened(goto=0)])]
    with pytest.raises(DefinitionValidationError) as exc:
        validate_steps(steps)
    assert "route forward" in str(exc.value)


def test_validate_rejects_missing_target_and_collects_all_problems() -> None:
    steps = [
        _step(0, conditions=[IfReplied(goto=5), IfReplied(goto="complete")]),
        _step(2),
    ]
    with pytest.raises(DefinitionValidationError) as exc:
        validate_steps(steps)
    problems = exc.value.problems
    assert any("missing step 5" in p for p in problems)
    assert any("duplicate if_replied" in p for p in problems)
    assert any("index 2 does not match" in p for p in problems)


def test_validate_rejects_conditions_on_wait_steps() -> None:
    steps = [_step(0, type=StepType.WAIT, conditions=[IfOpened(goto=1)]), _step(1)]
    with pytest.raises(DefinitionValidationError):
        validate_steps(steps)


def test_validate_accepts_complete_target() -> None:
    validate_steps([_step(0, conditions=[IfOpened(goto="complete")])])


def test_multi_send_no_engagement_needs_enrollment_scope() -> None:
    steps = [_step(0, conditions=[NoEngagementAfter(goto=2, sends=2)]), _step(1), _step(2)]
    with pytest.raises(DefinitionValidationError) as exc:
        validate_steps(steps)
    assert "needs scope 'enrollment'" in str(exc.value)

    step_scoped = [
        _step(0, conditions=[NoEngagementAfter(goto=2, sends=2, scope="step")]),
        _step(1),
        _step(2),
    ]
    with pytest.raises(DefinitionValidationError):
        validate_steps(step_scoped)

    validate_steps(
        [
            _step(0),
            _step(1, conditions=[NoEngagementAfter(goto=2, sends=2, scope="enrollment")]),
            _step(2),
        ]
    )


def test_store_create_is_draft_and_persists(tmp_path: Path) -> None:
    path = tmp_path / "state" / "sequences.json"
    store = SequenceDefinitionStore(path)

    record = store.create(
        "t1",
        name="  Welcome  ",
        trigger=TriggerConfig(type=TriggerType.NEW_LEAD),
        steps=[_step(0)],
        created_by="alice",
    )

    assert record.status is SequenceStatus.DRAFT
    assert record.name == "Welcome"
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw[0]["id"] == record.id
    assert raw[0]["trigger"]["type"] == "new_lead"


def test_store_is_tenant_scoped(tmp_path: Path) -> None:
    store = SequenceDefinitionStore(tmp_path / "sequences.json")
    record = store.create("t1", name="A", steps=[_step(0)])

    with pytest.raises(NotFoundError):
        store.get("t2", record.id)
    assert store.list("t2") == []
    assert [s.id for s in store.list("t1")] == [record.id]


def test_activate_requires_steps(tmp_path: Path) -> None:
    store = SequenceDefinitionStore(tmp_path / "sequences.json")
    empty = store.create("t1", name="Empty")

    with pytest.raises(DefinitionValidationError):
        store.activate("t1", empty.id)

    ready = store.create("t1", name="Ready", steps=[_step(0)])
    assert store.activate("t1", ready.id).is_active


def test_update_bumps_version_only_for_steps_or_trigger(tmp_path: Path) -> None:
    store = SequenceDefinitionStore(tmp_path / "sequences.json")
    record = store.create("t1", name="A", steps=[_step(0)])

    renamed = store.update("t1", record.id, name="B")
    assert renamed.version == record.version

    edited = store.update("t1", record.id, steps=[_step(0), _step(1, delay_hours=24)])
    assert edited.version == record.version + 1
    assert len(edited.steps) == 2


def test_pause_only_from_active_and_archive_blocks_edits(tmp_path: Path) -> None:
    store = SequenceDefinitionStore(tmp_path / "sequences.json")
    record = store.create("t1", name="A", steps=[_step(0)])

    with pytest.raises(DefinitionValidationError):
        store.pause("t1", record.id)

    store.activate("t1", record.id)
    assert store.pause("t1", record.id).status is SequenceStatus.PAUSED

    store.archive("t1", record.id)
    with pytest.raises(DefinitionValidationError):
        store.update("t1", record.id, name="C")
    with pytest.raises(DefinitionValidationError):
        store.activate("t1", record.id)


def test_duplicate_copies_steps_as_fresh_draft(tmp_path: Path) -> None:
    store = SequenceDefinitionStore(tmp_path / "sequences.json")
    source = store.create("t1", name="Nurture", steps=[_step(0), _step(1, delay_hours=48)])
    store.activate("t1", source.id)
    store.update_counters("t1", source.id, SequenceCounters(enrolled_count=10, open_rate=40.0))

    copy = store.duplicate("t1", source.id)

    assert copy.id != source.id
    assert copy.name == "Nurture (Copy)"
    assert copy.status is SequenceStatus.DRAFT
    assert copy.counters == SequenceCounters()
    assert [s.delay_hours for s in copy.steps] == [0.0, 48.0]


def test_delete_and_purge(tmp_path: Path) -> None:
    store = SequenceDefinitionStore(tmp_path / "sequences.json")
    a = store.create("t1", name="A")
    store.create("t1", name="B")
    store.create("t2", name="C")

    store.delete("t1", a.id)
    with pytest.raises(NotFoundError):
        store.delete("t1", a.id)

    assert store.purge_tenant("t1") == 1
    assert store.list("t1") == []
    assert len(store.list("t2")) == 1
