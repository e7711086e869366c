"""
State machine configuration schema.

Defines the human-authored, reviewable source artifact for workflow
configuration.  YAML documents are parsed into these types by the loader
and turned into kernel objects by the bridges.

Key distinction:
  StateMachineDefinitionDef = source artifact (human-authored, versioned)
  StateMachineDefinition    = runtime artifact (kernel domain object)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from workflow_kernel.domain.definition import StateCategory, TriggerType

# ---------------------------------------------------------------------------
# Graph elements
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ComponentDef:
    """A requirement or effect entry: a kind plus its parameters."""

    kind: str
    params: tuple[tuple[str, Any], ...] = ()

    def as_payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "data": dict(self.params)}


@dataclass(frozen=True)
class StateDef:
    name: str
    category: StateCategory = StateCategory.INTERMEDIATE
    description: str = ""


@dataclass(frozen=True)
class TriggerDef:
    name: str
    description: str = ""
    trigger_type: TriggerType = TriggerType.MANUAL


@dataclass(frozen=True)
class TransitionDef:
    """An edge; ``from_state`` of None declares a global transition."""

    trigger: str
    to_state: str
    from_state: str | None = None
    requirements: tuple[ComponentDef, ...] = ()
    effects: tuple[ComponentDef, ...] = ()


@dataclass(frozen=True)
class StateMachineDefinitionDef:
    """A complete workflow definition as authored."""

    name: str
    version: int
    initial_state: str
    description: str = ""
    initial_state_description: str = ""
    states: tuple[StateDef, ...] = ()
    triggers: tuple[TriggerDef, ...] = ()
    transitions: tuple[TransitionDef, ...] = ()
    publish: bool = False
    checksum: str = ""


# ---------------------------------------------------------------------------
# Engine options
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequirementEngineDef:
    handler_modules: tuple[str, ...] = ()


@dataclass(frozen=True)
class EffectEngineDef:
    handler_modules: tuple[str, ...] = ()
    continue_on_failure: bool = True
    stop_on_first_handler_failure: bool = False
    execution_timeout_seconds: float | None = 300.0


@dataclass(frozen=True)
class EngineOptionsDef:
    requirement_evaluation: RequirementEngineDef = field(default_factory=RequirementEngineDef)
    effect_execution: EffectEngineDef = field(default_factory=EffectEngineDef)
