"""
State machine definitions (``workflow_kernel.domain.definition``).

Responsibility
--------------
The template graph for one workflow shape: states, triggers and the
transitions between them, plus the definition's own publishing lifecycle.
Instances reference a definition; they never embed or modify it.

Architecture position
---------------------
**Kernel domain layer** -- pure, zero I/O.  May import only from
``domain/components`` and ``exceptions``.

Invariants enforced
-------------------
* Exactly one state has category ``INITIAL``; it is created with the
  definition and cannot be duplicated.
* A ``FINAL`` state has no outgoing transitions.
* Transitions reference states and triggers of the same definition.
* Structure is editable only while ``DRAFT``.  Published definitions change
  only by creating a new version.
* ``DEFINITION_STATUS_TRANSITIONS`` lists the only legal lifecycle moves.

Failure modes
-------------
* ``DefinitionImmutableError`` -- structural edit on a non-draft.
* ``InvalidDefinitionError`` -- broken graph (bad reference, second initial
  state, duplicate names, failed ``validate()`` on publish).
* ``InvalidDefinitionStatusTransitionError`` -- illegal lifecycle move.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Sequence
from uuid import UUID, uuid4

from workflow_kernel.domain.components import TransitionEffect, TransitionRequirement
from workflow_kernel.exceptions import (
    DefinitionImmutableError,
    InvalidDefinitionError,
    InvalidDefinitionStatusTransitionError,
)


# =========================================================================
# Enumerations
# =========================================================================


class StateCategory(str, Enum):
    """Role of a state in the workflow graph."""

    INITIAL = "initial"
    INTERMEDIATE = "intermediate"
    FINAL = "final"


class DefinitionStatus(str, Enum):
    """Publishing lifecycle of a definition."""

    DRAFT = "draft"
    PUBLISHED = "published"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"


DEFINITION_STATUS_TRANSITIONS: dict[DefinitionStatus, frozenset[DefinitionStatus]] = {
    DefinitionStatus.DRAFT: frozenset({
        DefinitionStatus.PUBLISHED,
        DefinitionStatus.ARCHIVED,
    }),
    DefinitionStatus.PUBLISHED: frozenset({
        DefinitionStatus.DEPRECATED,
        DefinitionStatus.ARCHIVED,
    }),
    DefinitionStatus.DEPRECATED: frozenset({
        DefinitionStatus.ARCHIVED,
    }),
    DefinitionStatus.ARCHIVED: frozenset(),
}


class TriggerType(str, Enum):
    """How a trigger is expected to be fired."""

    MANUAL = "manual"
    TIMER = "timer"
    EVENT = "event"
    SIGNAL = "signal"
    CONDITION = "condition"


# =========================================================================
# Graph elements
# =========================================================================


@dataclass(frozen=True)
class State:
    """A node in the workflow graph."""

    id: UUID
    name: str
    category: StateCategory = StateCategory.INTERMEDIATE
    description: str = ""

    @property
    def is_initial(self) -> bool:
        return self.category == StateCategory.INITIAL

    @property
    def is_final(self) -> bool:
        return self.category == StateCategory.FINAL


@dataclass(frozen=True)
class Trigger:
    """A named event that may cause a transition.  Scoped to one definition."""

    id: UUID
    name: str
    description: str = ""
    trigger_type: TriggerType = TriggerType.MANUAL


@dataclass(frozen=True)
class Transition:
    """An edge of the graph.

    ``from_state_id`` of ``None`` makes the transition global: reachable from
    every non-final state through its trigger.
    """

    id: UUID
    from_state_id: UUID | None
    to_state_id: UUID
    trigger_id: UUID
    requirements: tuple[TransitionRequirement, ...] = ()
    effects: tuple[TransitionEffect, ...] = ()

    @property
    def is_global(self) -> bool:
        return self.from_state_id is None

    def applies_from(self, state: State) -> bool:
        if state.is_final:
            return False
        return self.from_state_id is None or self.from_state_id == state.id

    def ordered_effects(self) -> list[TransitionEffect]:
        """Effects sorted by ``execution_order``; ties keep declaration order."""
        return sorted(self.effects, key=lambda e: e.execution_order)

    def required_data_types(self) -> frozenset[type]:
        types: set[type] = set()
        for requirement in self.requirements:
            types.update(requirement.required_data_types())
        return frozenset(types)

    @property
    def requires_user_data(self) -> bool:
        return bool(self.required_data_types())


StateRef = State | UUID | str
TriggerRef = Trigger | UUID | str


# =========================================================================
# Definition aggregate
# =========================================================================


class StateMachineDefinition:
    """A named, versioned workflow template.

    The initial state is created together with the definition::

        definition = StateMachineDefinition("document-approval", "Draft")
        review = definition.add_state("Review")
        approved = definition.add_state("Approved", StateCategory.FINAL)
        submit = definition.add_trigger("Submit")
        definition.add_transition("Draft", review, submit)
        definition.publish()

    State and trigger arguments accept the element itself, its id, or its
    name.
    """

    def __init__(
        self,
        name: str,
        initial_state_name: str,
        *,
        version: int = 1,
        description: str = "",
        definition_id: UUID | None = None,
        initial_state_id: UUID | None = None,
        initial_state_description: str = "",
    ) -> None:
        if not name or not name.strip():
            raise ValueError("Definition name is required")
        if not initial_state_name or not initial_state_name.strip():
            raise ValueError("Initial state name is required")
        if version < 1:
            raise ValueError(f"Definition version must be >= 1, got {version}")

        self.id: UUID = definition_id or uuid4()
        self.name = name
        self.version = version
        self.description = description
        self._status = DefinitionStatus.DRAFT
        self._states: dict[UUID, State] = {}
        self._triggers: dict[UUID, Trigger] = {}
        self._transitions: dict[UUID, Transition] = {}

        initial = State(
            id=initial_state_id or uuid4(),
            name=initial_state_name,
            category=StateCategory.INITIAL,
            description=initial_state_description,
        )
        self._states[initial.id] = initial

    # -- read surface ------------------------------------------------------

    @property
    def status(self) -> DefinitionStatus:
        return self._status

    @property
    def is_editable(self) -> bool:
        return self._status == DefinitionStatus.DRAFT

    @property
    def states(self) -> tuple[State, ...]:
        return tuple(self._states.values())

    @property
    def triggers(self) -> tuple[Trigger, ...]:
        return tuple(self._triggers.values())

    @property
    def transitions(self) -> tuple[Transition, ...]:
        return tuple(self._transitions.values())

    @property
    def initial_state(self) -> State:
        for state in self._states.values():
            if state.is_initial:
                return state
        raise InvalidDefinitionError(self.name, ["Definition has no initial state"])

    def get_state(self, name: str) -> State | None:
        return next((s for s in self._states.values() if s.name == name), None)

    def get_trigger(self, name: str) -> Trigger | None:
        return next((t for t in self._triggers.values() if t.name == name), None)

    def state_by_id(self, state_id: UUID) -> State | None:
        return self._states.get(state_id)

    def trigger_by_id(self, trigger_id: UUID) -> Trigger | None:
        return self._triggers.get(trigger_id)

    def transition_by_id(self, transition_id: UUID) -> Transition | None:
        return self._transitions.get(transition_id)

    def contains_state(self, state: State) -> bool:
        return self._states.get(state.id) == state

    def transitions_from(self, state: StateRef) -> list[Transition]:
        """Transitions available from ``state`` in definition order.

        Includes global transitions; a final state has none.
        """
        source = self._resolve_state(state)
        return [t for t in self._transitions.values() if t.applies_from(source)]

    # -- structural edits (draft only) -------------------------------------

    def add_state(
        self,
        name: str,
        category: StateCategory = StateCategory.INTERMEDIATE,
        description: str = "",
        *,
        state_id: UUID | None = None,
    ) -> State:
        self._ensure_editable("add state")
        if not name or not name.strip():
            raise ValueError("State name is required")
        if category == StateCategory.INITIAL:
            raise InvalidDefinitionError(
                self.name,
                [f"Cannot add initial state '{name}'; "
                 f"'{self.initial_state.name}' is already initial"],
            )
        if self.get_state(name) is not None:
            raise InvalidDefinitionError(self.name, [f"Duplicate state name '{name}'"])
        state = State(id=state_id or uuid4(), name=name, category=category,
                      description=description)
        self._states[state.id] = state
        return state

    def add_trigger(
        self,
        name: str,
        description: str = "",
        trigger_type: TriggerType = TriggerType.MANUAL,
        *,
        trigger_id: UUID | None = None,
    ) -> Trigger:
        self._ensure_editable("add trigger")
        if not name or not name.strip():
            raise ValueError("Trigger name is required")
        if self.get_trigger(name) is not None:
            raise InvalidDefinitionError(self.name, [f"Duplicate trigger name '{name}'"])
        trigger = Trigger(id=trigger_id or uuid4(), name=name,
                          description=description, trigger_type=trigger_type)
        self._triggers[trigger.id] = trigger
        return trigger

    def add_transition(
        self,
        from_state: StateRef | None,
        to_state: StateRef,
        trigger: TriggerRef,
        requirements: Iterable[TransitionRequirement] = (),
        effects: Iterable[TransitionEffect] = (),
        *,
        transition_id: UUID | None = None,
    ) -> Transition:
        self._ensure_editable("add transition")
        source = self._resolve_state(from_state) if from_state is not None else None
        target = self._resolve_state(to_state)
        resolved_trigger = self._resolve_trigger(trigger)
        if source is not None and source.is_final:
            raise InvalidDefinitionError(
                self.name,
                [f"Final state '{source.name}' cannot have outgoing transitions"],
            )
        transition = Transition(
            id=transition_id or uuid4(),
            from_state_id=source.id if source is not None else None,
            to_state_id=target.id,
            trigger_id=resolved_trigger.id,
            requirements=tuple(requirements),
            effects=tuple(effects),
        )
        self._transitions[transition.id] = transition
        return transition

    def remove_transition(self, transition_id: UUID) -> Transition:
        self._ensure_editable("remove transition")
        try:
            return self._transitions.pop(transition_id)
        except KeyError:
            raise InvalidDefinitionError(
                self.name, [f"Transition {transition_id} is not in this definition"]
            ) from None

    def update_transition(
        self,
        transition_id: UUID,
        *,
        requirements: Sequence[TransitionRequirement] | None = None,
        effects: Sequence[TransitionEffect] | None = None,
    ) -> Transition:
        """Replace the requirement and/or effect lists of a transition."""
        self._ensure_editable("update transition")
        current = self._transitions.get(transition_id)
        if current is None:
            raise InvalidDefinitionError(
                self.name, [f"Transition {transition_id} is not in this definition"]
            )
        updated = replace(
            current,
            requirements=tuple(requirements) if requirements is not None else current.requirements,
            effects=tuple(effects) if effects is not None else current.effects,
        )
        self._transitions[transition_id] = updated
        return updated

    # -- lifecycle ---------------------------------------------------------

    def publish(self) -> None:
        errors = self.validate()
        if errors:
            raise InvalidDefinitionError(self.name, errors)
        self._change_status(DefinitionStatus.PUBLISHED)

    def deprecate(self) -> None:
        self._change_status(DefinitionStatus.DEPRECATED)

    def archive(self) -> None:
        self._change_status(DefinitionStatus.ARCHIVED)

    def _change_status(self, new_status: DefinitionStatus) -> None:
        if new_status not in DEFINITION_STATUS_TRANSITIONS[self._status]:
            raise InvalidDefinitionStatusTransitionError(
                self.name, self._status.value, new_status.value
            )
        self._status = new_status

    def validate(self) -> list[str]:
        """Return every structural problem found; empty when valid."""
        errors: list[str] = []
        if not self._states:
            errors.append("Definition has no states")

        initial = [s for s in self._states.values() if s.is_initial]
        if len(initial) != 1:
            errors.append(f"Definition must have exactly one initial state, found {len(initial)}")

        for label, names in (
            ("state", [s.name for s in self._states.values()]),
            ("trigger", [t.name for t in self._triggers.values()]),
        ):
            seen: set[str] = set()
            for name in names:
                if name in seen:
                    errors.append(f"Duplicate {label} name '{name}'")
                seen.add(name)

        targeted: set[UUID] = set()
        used_triggers: set[UUID] = set()
        for transition in self._transitions.values():
            targeted.add(transition.to_state_id)
            used_triggers.add(transition.trigger_id)
            if transition.to_state_id not in self._states:
                errors.append(f"Transition {transition.id} targets an unknown state")
            if transition.trigger_id not in self._triggers:
                errors.append(f"Transition {transition.id} uses an unknown trigger")
            if transition.from_state_id is not None:
                source = self._states.get(transition.from_state_id)
                if source is None:
                    errors.append(f"Transition {transition.id} starts from an unknown state")
                elif source.is_final:
                    errors.append(
                        f"Final state '{source.name}' cannot have outgoing transitions"
                    )

        for state in self._states.values():
            if not state.is_initial and state.id not in targeted:
                errors.append(f"State '{state.name}' is unreachable")

        for trigger in self._triggers.values():
            if trigger.id not in used_triggers:
                errors.append(f"Trigger '{trigger.name}' is not used by any transition")

        return errors

    def create_new_version(self, version: int | None = None) -> "StateMachineDefinition":
        """Copy the structure into a new draft with fresh ids."""
        new_version = version if version is not None else self.version + 1
        if new_version <= self.version:
            raise ValueError(
                f"New version {new_version} must be greater than {self.version}"
            )
        initial = self.initial_state
        copy = StateMachineDefinition(
            self.name,
            initial.name,
            version=new_version,
            description=self.description,
            initial_state_description=initial.description,
        )
        for state in self._states.values():
            if not state.is_initial:
                copy.add_state(state.name, state.category, state.description)
        for trigger in self._triggers.values():
            copy.add_trigger(trigger.name, trigger.description, trigger.trigger_type)
        for transition in self._transitions.values():
            source = (
                self._states[transition.from_state_id].name
                if transition.from_state_id is not None else None
            )
            copy.add_transition(
                source,
                self._states[transition.to_state_id].name,
                self._triggers[transition.trigger_id].name,
                transition.requirements,
                transition.effects,
            )
        return copy

    # -- rendering ---------------------------------------------------------

    def to_mermaid(self, current_state: StateRef | None = None) -> str:
        """Render the graph as a Mermaid ``stateDiagram-v2``.

        Global transitions are drawn from ``[*]`` and suffixed ``(any)``.
        Edge labels list requirement kinds in brackets and effects after a
        slash.
        """
        node = {s.id: _mermaid_id(s.name, i) for i, s in enumerate(self._states.values())}
        lines = ["stateDiagram-v2"]
        for state in self._states.values():
            lines.append(f'    state "{state.name}" as {node[state.id]}')
        lines.append(f"    [*] --> {node[self.initial_state.id]}")

        for transition in self._transitions.values():
            trigger = self._triggers.get(transition.trigger_id)
            label = trigger.name if trigger is not None else "?"
            if transition.requirements:
                label += " [" + ", ".join(r.describe() for r in transition.requirements) + "]"
            if transition.effects:
                label += " / " + ", ".join(e.describe() for e in transition.ordered_effects())
            if transition.is_global:
                source = "[*]"
                label += " (any)"
            else:
                source = node[transition.from_state_id]
            lines.append(f"    {source} --> {node[transition.to_state_id]} : {label}")

        for state in self._states.values():
            if state.is_final:
                lines.append(f"    {node[state.id]} --> [*]")

        if current_state is not None:
            current = self._resolve_state(current_state)
            lines.append("    classDef current fill:#ffd54f,stroke:#333,stroke-width:2px")
            lines.append(f"    class {node[current.id]} current")
        return "\n".join(lines)

    # -- rehydration -------------------------------------------------------

    @classmethod
    def rehydrate(
        cls,
        *,
        definition_id: UUID,
        name: str,
        version: int,
        description: str,
        status: DefinitionStatus,
        states: Sequence[State],
        triggers: Sequence[Trigger],
        transitions: Sequence[Transition],
    ) -> "StateMachineDefinition":
        """Rebuild a stored definition without replaying draft-only edits."""
        initial = [s for s in states if s.is_initial]
        if len(initial) != 1:
            raise InvalidDefinitionError(
                name, [f"Stored definition has {len(initial)} initial states"]
            )
        definition = cls(
            name,
            initial[0].name,
            version=version,
            description=description,
            definition_id=definition_id,
            initial_state_id=initial[0].id,
            initial_state_description=initial[0].description,
        )
        definition._states = {s.id: s for s in states}
        definition._triggers = {t.id: t for t in triggers}
        definition._transitions = {t.id: t for t in transitions}
        definition._status = status
        return definition

    # -- internals ---------------------------------------------------------

    def _ensure_editable(self, operation: str) -> None:
        if not self.is_editable:
            raise DefinitionImmutableError(self.name, self._status.value, operation)

    def _resolve_state(self, ref: StateRef) -> State:
        if isinstance(ref, State):
            state = self._states.get(ref.id)
        elif isinstance(ref, UUID):
            state = self._states.get(ref)
        else:
            state = self.get_state(ref)
        if state is None:
            raise InvalidDefinitionError(
                self.name, [f"State {_ref_label(ref)} is not in this definition"]
            )
        return state

    def _resolve_trigger(self, ref: TriggerRef) -> Trigger:
        if isinstance(ref, Trigger):
            trigger = self._triggers.get(ref.id)
        elif isinstance(ref, UUID):
            trigger = self._triggers.get(ref)
        else:
            trigger = self.get_trigger(ref)
        if trigger is None:
            raise InvalidDefinitionError(
                self.name, [f"Trigger {_ref_label(ref)} is not in this definition"]
            )
        return trigger

    def __repr__(self) -> str:
        return (
            f"StateMachineDefinition(name={self.name!r}, version={self.version}, "
            f"status={self._status.value}, states={len(self._states)}, "
            f"transitions={len(self._transitions)})"
        )


def _ref_label(ref: object) -> str:
    name = getattr(ref, "name", None)
    return f"'{name}'" if name is not None else f"'{ref}'"


def _mermaid_id(name: str, index: int) -> str:
    return f"s{index}_" + re.sub(r"\W", "_", name)
