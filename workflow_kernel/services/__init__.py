"""Services for the workflow kernel: engines, transition execution, persistence."""

from workflow_kernel.services.effect_execution import (
    EffectExecutionOptions,
    EffectExecutionService,
)
from workflow_kernel.services.handler_registry import (
    EFFECT_TARGET,
    REQUIREMENT_TARGET,
    HandlerInfo,
    HandlerRegistration,
    HandlerRegistry,
)
from workflow_kernel.services.requirement_evaluation import (
    RequirementEvaluationOptions,
    RequirementEvaluationService,
)
from workflow_kernel.services.store import SqlAlchemyStateMachineStore, StateMachineStore
from workflow_kernel.services.transition_service import (
    AvailableTransition,
    StateMachineTransitionService,
    TransitionResult,
)

__all__ = [
    "AvailableTransition",
    "EFFECT_TARGET",
    "EffectExecutionOptions",
    "EffectExecutionService",
    "HandlerInfo",
    "HandlerRegistration",
    "HandlerRegistry",
    "REQUIREMENT_TARGET",
    "RequirementEvaluationOptions",
    "RequirementEvaluationService",
    "SqlAlchemyStateMachineStore",
    "StateMachineStore",
    "StateMachineTransitionService",
    "TransitionResult",
]
