"""
Pure domain layer.

Definitions, instances, transition components and evaluation records with
NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

Time is read only through an injected Clock.
"""

from workflow_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from workflow_kernel.domain.components import (
    ComponentCatalog,
    RequirementData,
    TransitionEffect,
    TransitionRequirement,
)
from workflow_kernel.domain.definition import (
    DEFINITION_STATUS_TRANSITIONS,
    DefinitionStatus,
    State,
    StateCategory,
    StateMachineDefinition,
    Transition,
    Trigger,
    TriggerType,
)
from workflow_kernel.domain.evaluation import (
    EffectExecutionStatus,
    EffectExecutionSummary,
    RequirementEvaluationStatus,
    RequirementEvaluationSummary,
    TransitionExecutionInfo,
)
from workflow_kernel.domain.instance import (
    RevertInfo,
    StateMachineInstance,
    StateMachineSummary,
    TransitionHistoryEntry,
)
from workflow_kernel.domain.results import Error, ErrorKind, Result

__all__ = [
    "Clock",
    "ComponentCatalog",
    "DEFINITION_STATUS_TRANSITIONS",
    "DefinitionStatus",
    "DeterministicClock",
    "EffectExecutionStatus",
    "EffectExecutionSummary",
    "Error",
    "ErrorKind",
    "RequirementData",
    "RequirementEvaluationStatus",
    "RequirementEvaluationSummary",
    "Result",
    "RevertInfo",
    "State",
    "StateCategory",
    "StateMachineDefinition",
    "StateMachineInstance",
    "StateMachineSummary",
    "SystemClock",
    "Transition",
    "TransitionEffect",
    "TransitionExecutionInfo",
    "TransitionHistoryEntry",
    "TransitionRequirement",
    "Trigger",
    "TriggerType",
]
