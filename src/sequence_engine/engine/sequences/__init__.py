"""Sequence definitions and their store."""

from sequence_engine.engine.sequences.models import (
    Channel,
    SequenceDefinition,
    SequenceStatus,
    StepDefinition,
    StepType,
    TriggerConfig,
    TriggerType,
)
from sequence_engine.engine.sequences.store import SequenceDefinitionStore

__all__ = [
    "Channel",
    "SequenceDefinition",
    "SequenceDefinitionStore",
    "SequenceStatus",
    "StepDefinition",
    "StepType",
    "TriggerConfig",
    "TriggerType",
]
