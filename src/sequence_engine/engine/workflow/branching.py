"""Branch evaluation: which step runs after the one an enrollment is sitting at.

Precedence is fixed and deterministic:

1. reply and `if_replied`            -> its target (or complete)
2. open and `if_opened`              -> its target
3. N unengaged sends and `no_engagement_after` -> its target (+ channel switch)
4. open, no reply past the window and `if_read_no_reply` -> its target
5. otherwise the next step in order (complete past the last step)

Rules 3 and 4 are about time passing without engagement, so they only apply
when the step settles at its due time (`at_due_time=True`). On signal arrival
only the signal rules can route.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from sequence_engine.engine.enrollment.models import ExecutionOutcome, StepExecutionRecord
from sequence_engine.engine.sequences.models import (
    COMPLETE,
    Channel,
    IfOpened,
    IfReadNoReply,
    IfReplied,
    NoEngagementAfter,
    StepDefinition,
    StepTarget,
)

LINEAR = "linear"


@dataclass(frozen=True, slots=True)
class BranchDecision:
    rule: str
    next_step: int | None
    switch_channel: Channel | None = None

    @property
    def completes(self) -> bool:
        return self.next_step is None

    @property
    def routed(self) -> bool:
        """True when a condition (not linear fallthrough) chose the next step."""

        return self.rule != LINEAR


class BranchEvaluator:
    def __init__(
        self,
        *,
        read_no_reply_window_hours: float = 48.0,
        no_engagement_scope: Literal["step", "enrollment"] = "step",
    ) -> None:
        self._read_window = timedelta(hours=read_no_reply_window_hours)
        self._scope = no_engagement_scope

    def evaluate(
        self,
        *,
        step: StepDefinition,
        step_count: int,
        history: list[StepExecutionRecord],
        now: datetime,
        at_due_time: bool,
    ) -> BranchDecision:
        sends = [
            r
            for r in history
            if r.step_index == step.index and r.outcome is ExecutionOutcome.SENT
        ]
        replied_at = _earliest(r.replied_at for r in sends)
        opened_at = _earliest(r.opened_at for r in sends)

        replied = step.condition("if_replied")
        if replied_at is not None and isinstance(replied, IfReplied):
            return BranchDecision(
                rule="if_replied",
                next_step=_target(replied.goto),
            )

        opened = step.condition("if_opened")
        if opened_at is not None and isinstance(opened, IfOpened):
            return BranchDecision(rule="if_opened", next_step=_target(opened.goto))

        if at_due_time:
            silent = step.condition("no_engagement_after")
            if isinstance(silent, NoEngagementAfter):
                scope = silent.scope or self._scope
                if self._unengaged_sends(step.index, history, scope) >= silent.sends:
                    return BranchDecision(
                        rule="no_engagement_after",
                        next_step=_target(silent.goto),
                        switch_channel=silent.switch_channel,
                    )

            read = step.condition("if_read_no_reply")
            if isinstance(read, IfReadNoReply) and opened_at is not None and replied_at is None:
                window = (
                    timedelta(hours=read.window_hours)
                    if read.window_hours is not None
                    else self._read_window
                )
                if now - opened_at >= window:
                    return BranchDecision(rule="if_read_no_reply", next_step=_target(read.goto))

        following = step.index + 1
        return BranchDecision(
            rule=LINEAR, next_step=following if following < step_count else None
        )

    def _unengaged_sends(
        self, step_index: int, history: list[StepExecutionRecord], scope: str
    ) -> int:
        """Consecutive most recent sends without any engagement signal."""

        count = 0
        for record in reversed(history):
            if record.outcome is not ExecutionOutcome.SENT:
                continue
            if scope == "step" and record.step_index != step_index:
                continue
            if record.engaged:
                break
            count += 1
        return count


def _target(goto: StepTarget) -> int | None:
    return None if goto == COMPLETE else int(goto)


def _earliest(values: Iterable[datetime | None]) -> datetime | None:
    found = [v for v in values if v is not None]
    return min(found) if found else None
