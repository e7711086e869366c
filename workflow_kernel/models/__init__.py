"""SQLAlchemy ORM models for the workflow kernel."""

from workflow_kernel.models.definition import (
    StateMachineDefinitionModel,
    StateModel,
    TransitionModel,
    TriggerModel,
)
from workflow_kernel.models.instance import (
    StateMachineInstanceModel,
    TransitionHistoryModel,
)

__all__ = [
    "StateMachineDefinitionModel",
    "StateMachineInstanceModel",
    "StateModel",
    "TransitionHistoryModel",
    "TransitionModel",
    "TriggerModel",
]
