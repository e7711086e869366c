"""
Config -> Kernel Bridges.

Functions that convert parsed configuration into kernel objects.  They live
in workflow_config (the producer) because the kernel must NEVER import
workflow_config.

Usage:
    from workflow_config.bridges import build_definition, build_transition_service

    definition = build_definition(load_definition_file(path), catalog)
    service = build_transition_service(load_engine_options_file(path))

Element ids are derived with uuid5 from (definition name, version, element
name), so loading the same document twice yields the same ids.
"""

from __future__ import annotations

from collections.abc import Callable
from uuid import UUID, uuid5

from workflow_config.schema import EngineOptionsDef, StateMachineDefinitionDef
from workflow_kernel.domain.components import ComponentCatalog
from workflow_kernel.domain.definition import StateMachineDefinition
from workflow_kernel.logging_config import get_logger
from workflow_kernel.services.effect_execution import (
    EffectExecutionOptions,
    EffectExecutionService,
)
from workflow_kernel.services.requirement_evaluation import (
    RequirementEvaluationOptions,
    RequirementEvaluationService,
)
from workflow_kernel.services.store import StateMachineStore
from workflow_kernel.services.transition_service import StateMachineTransitionService

logger = get_logger("config.bridges")

# Fixed namespace for deterministic element ids
_WORKFLOW_UUID_NAMESPACE = UUID("6f1c2b8e-3d4a-5b6c-8d7e-9f0a1b2c3d4e")


def _element_id(definition: StateMachineDefinitionDef, *parts: object) -> UUID:
    key = "/".join([definition.name, str(definition.version), *map(str, parts)])
    return uuid5(_WORKFLOW_UUID_NAMESPACE, key)


def build_definition(
    config: StateMachineDefinitionDef,
    catalog: ComponentCatalog,
) -> StateMachineDefinition:
    """Build a kernel definition; publishes it when ``config.publish`` is set.

    Raises:
        UnknownComponentKindError: a requirement/effect kind is not in ``catalog``.
        InvalidDefinitionError: the graph is broken (bad reference, or
            ``validate()`` fails on publish).
    """
    definition = StateMachineDefinition(
        config.name,
        config.initial_state,
        version=config.version,
        description=config.description,
        definition_id=_element_id(config),
        initial_state_id=_element_id(config, "state", config.initial_state),
        initial_state_description=config.initial_state_description,
    )
    for state in config.states:
        definition.add_state(
            state.name, state.category, state.description,
            state_id=_element_id(config, "state", state.name),
        )
    for trigger in config.triggers:
        definition.add_trigger(
            trigger.name, trigger.description, trigger.trigger_type,
            trigger_id=_element_id(config, "trigger", trigger.name),
        )
    for index, transition in enumerate(config.transitions):
        definition.add_transition(
            transition.from_state,
            transition.to_state,
            transition.trigger,
            [catalog.load_requirement(r.as_payload()) for r in transition.requirements],
            [catalog.load_effect(e.as_payload()) for e in transition.effects],
            transition_id=_element_id(config, "transition", index),
        )
    if config.publish:
        definition.publish()

    logger.info(
        "definition_built",
        extra={
            "definition_name": config.name,
            "version": config.version,
            "status": definition.status.value,
            "checksum": config.checksum,
            "state_count": len(definition.states),
            "transition_count": len(definition.transitions),
        },
    )
    return definition


def build_requirement_options(config: EngineOptionsDef) -> RequirementEvaluationOptions:
    return RequirementEvaluationOptions(
        handler_modules=config.requirement_evaluation.handler_modules,
    )


def build_effect_options(config: EngineOptionsDef) -> EffectExecutionOptions:
    eff = config.effect_execution
    return EffectExecutionOptions(
        handler_modules=eff.handler_modules,
        continue_on_failure=eff.continue_on_failure,
        stop_on_first_handler_failure=eff.stop_on_first_handler_failure,
        execution_timeout_seconds=eff.execution_timeout_seconds,
    )


def build_transition_service(
    config: EngineOptionsDef,
    store: StateMachineStore | None = None,
    outcome_sink: Callable[[dict], None] | None = None,
) -> StateMachineTransitionService:
    """Assemble both engines (registering configured handler modules) and the service."""
    return StateMachineTransitionService(
        RequirementEvaluationService(build_requirement_options(config)),
        EffectExecutionService(build_effect_options(config)),
        store=store,
        outcome_sink=outcome_sink,
    )
