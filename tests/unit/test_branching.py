"""Unit tests for branch precedence."""

from __future__ import annotations

from datetime import timedelta

from conftest import T0
from sequence_engine.engine.enrollment.models import ExecutionOutcome, StepExecutionRecord
from sequence_engine.engine.sequences.models import (
    Channel,
    IfOpened,
    IfReadNoReply,
    IfReplied,
    NoEngagementAfter,
    StepDefinition,
    StepType,
)
from sequence_engine.engine.workflow.branching import LINEAR, BranchEvaluator


def _record(step_index: int, **signals) -> StepExecutionRecord:
    return StepExecutionRecord(
        enrollment_id="e1",
        tenant_id="t1",
        step_index=step_index,
        executed_at=T0,
        outcome=ExecutionOutcome.SENT,
        **signals,
    )


ALL_CONDITIONS = StepDefinition(
    index=0,
    type=StepType.SEND_EMAIL,
    conditions=[
        IfReplied(goto="complete"),
        IfOpened(goto=2),
        NoEngagementAfter(goto=3, switch_channel=Channel.SMS),
        IfReadNoReply(goto=4, window_hours=24),
    ],
)


def test_reply_beats_open() -> None:
    history = [_record(0, opened_at=T0, replied_at=T0 + timedelta(hours=1))]
    decision = BranchEvaluator().evaluate(
        step=ALL_CONDITIONS, step_count=5, history=history, now=T0, at_due_time=True
    )
    assert decision.rule == "if_replied"
    assert decision.completes


def test_open_routes_on_signal_arrival() -> None:
    history = [_record(0, opened_at=T0)]
    decision = BranchEvaluator().evaluate(
        step=ALL_CONDITIONS, step_count=5, history=history, now=T0, at_due_time=False
    )
    assert decision.rule == "if_opened"
    assert decision.next_step == 2


def test_time_based_rules_wait_for_due_time() -> None:
    history = [_record(0)]
    evaluator = BranchEvaluator()

    early = evaluator.evaluate(
        step=ALL_CONDITIONS, step_count=5, history=history, now=T0, at_due_time=False
    )
    assert early.rule == LINEAR
    assert not early.routed

    due = evaluator.evaluate(
        step=ALL_CONDITIONS, step_count=5, history=history, now=T0, at_due_time=True
    )
    assert due.rule == "no_engagement_after"
    assert due.next_step == 3
    assert due.switch_channel is Channel.SMS


def test_read_no_reply_needs_the_window_to_pass() -> None:
    step = StepDefinition(
        index=0,
        type=StepType.SEND_EMAIL,
        conditions=[IfReadNoReply(goto=2, window_hours=24)],
    )
    history = [_record(0, opened_at=T0)]
    evaluator = BranchEvaluator()

    before = evaluator.evaluate(
        step=step, step_count=3, history=history, now=T0 + timedelta(hours=23), at_due_time=True
    )
    after = evaluator.evaluate(
        step=step, step_count=3, history=history, now=T0 + timedelta(hours=24), at_due_time=True
    )

    assert before.rule == LINEAR
    assert before.next_step == 1
    assert after.rule == "if_read_no_reply"
    assert after.next_step == 2


def test_read_no_reply_uses_configured_default_window() -> None:
    step = StepDefinition(index=0, type=StepType.SEND_EMAIL, conditions=[IfReadNoReply(goto=1)])
    history = [_record(0, opened_at=T0)]

    decision = BranchEvaluator(read_no_reply_window_hours=2).evaluate(
        step=step, step_count=2, history=history, now=T0 + timedelta(hours=2), at_due_time=True
    )
    assert decision.rule == "if_read_no_reply"


def test_no_engagement_threshold_counts_trailing_sends() -> None:
    step = StepDefinition(
        index=2,
        type=StepType.SEND_EMAIL,
        conditions=[NoEngagementAfter(goto=3, sends=2)],
    )
    history = [_record(0, opened_at=T0), _record(1), _record(2)]

    per_step = BranchEvaluator(no_engagement_scope="step").evaluate(
        step=step, step_count=4, history=history, now=T0, at_due_time=True
    )
    per_enrollment = BranchEvaluator(no_engagement_scope="enrollment").evaluate(
        step=step, step_count=4, history=history, now=T0, at_due_time=True
    )

    assert per_step.rule == LINEAR
    assert per_enrollment.rule == "no_engagement_after"


def test_condition_scope_overrides_engine_scope() -> None:
    step = StepDefinition(
        index=2,
        type=StepType.SEND_EMAIL,
        conditions=[NoEngagementAfter(goto=3, sends=2, scope="enrollment")],
    )
    history = [_record(0, opened_at=T0), _record(1), _record(2)]

    decision = BranchEvaluator(no_engagement_scope="step").evaluate(
        step=step, step_count=4, history=history, now=T0, at_due_time=True
    )

    assert decision.rule == "no_engagement_after"
    assert decision.next_step == 3


def test_linear_fallthrough_completes_past_last_step() -> None:
    step = StepDefinition(index=1, type=StepType.SEND_SMS, conditions=[IfOpened(goto="complete")])
    decision = BranchEvaluator().evaluate(
        step=step, step_count=2, history=[_record(1)], now=T0, at_due_time=True
    )
    assert decision.rule == LINEAR
    assert decision.completes


def test_signals_for_other_steps_are_ignored() -> None:
    step = StepDefinition(index=1, type=StepType.SEND_SMS, conditions=[IfOpened(goto=2)])
    decision = BranchEvaluator().evaluate(
        step=step,
        step_count=3,
        history=[_record(0, opened_at=T0), _record(1)],
        now=T0,
        at_due_time=False,
    )
    assert decision.rule == LINEAR
