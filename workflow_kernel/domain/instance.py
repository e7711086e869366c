"""
State machine instances (``workflow_kernel.domain.instance``).

Responsibility
--------------
A live cursor over one definition: the current state, the time of the last
move, and the append-only transition history.  Exposes the read-only
navigation surface (available triggers and transitions from the current
state) and the two mutations the services drive: executing a transition and
reverting the most recent history entries.

Architecture position
---------------------
**Kernel domain layer** -- zero I/O.  Time comes from an injected ``Clock``.

Invariants enforced
-------------------
* ``current_state_id`` equals the initial state for a fresh instance, and
  otherwise the target of the most recent non-reverted history entry
  (or of the revert that followed it).
* History is never deleted.  A history entry changes only by being marked
  reverted, which produces a replacement with the same id.
* A final current state offers no triggers and no transitions.

Failure modes
-------------
* ``InvalidDefinitionError`` -- definition without an initial state.
* ``ValueError`` -- programming errors: executing a transition that is not
  available, reverting more entries than exist, missing actor id.
* ``HistoryEntryAlreadyRevertedError`` -- reverting an entry twice.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterator, Sequence
from uuid import UUID, uuid4

from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.domain.components import TransitionRequirement
from workflow_kernel.domain.definition import (
    State,
    StateMachineDefinition,
    Transition,
    Trigger,
)
from workflow_kernel.exceptions import (
    HistoryEntryAlreadyRevertedError,
    InvalidDefinitionError,
)


# =========================================================================
# History
# =========================================================================


@dataclass(frozen=True)
class TransitionHistoryEntry:
    """Immutable audit record of one state change."""

    id: UUID
    instance_id: UUID
    from_state_id: UUID
    to_state_id: UUID
    trigger_id: UUID | None
    transition_id: UUID | None
    was_forced: bool
    reason: str | None
    triggered_by_user_id: UUID
    transitioned_at: datetime
    sequence: int
    reverted_at: datetime | None = None

    @property
    def is_reverted(self) -> bool:
        return self.reverted_at is not None

    @property
    def chronological_key(self) -> tuple[datetime, int]:
        return (self.transitioned_at, self.sequence)

    def mark_reverted(self, at: datetime) -> TransitionHistoryEntry:
        if self.is_reverted:
            raise HistoryEntryAlreadyRevertedError(str(self.id))
        return replace(self, reverted_at=at)

    def matches(
        self,
        *,
        from_state: State | None = None,
        to_state: State | None = None,
        trigger: Trigger | None = None,
    ) -> bool:
        if from_state is not None and self.from_state_id != from_state.id:
            return False
        if to_state is not None and self.to_state_id != to_state.id:
            return False
        if trigger is not None and self.trigger_id != trigger.id:
            return False
        return True

    def describe(self, definition: StateMachineDefinition) -> str:
        source = definition.state_by_id(self.from_state_id)
        target = definition.state_by_id(self.to_state_id)
        text = (
            f"{source.name if source else self.from_state_id} -> "
            f"{target.name if target else self.to_state_id}"
        )
        if self.was_forced:
            text += f" (forced: {self.reason})"
        elif self.trigger_id is not None:
            trigger = definition.trigger_by_id(self.trigger_id)
            text += f" via {trigger.name if trigger else self.trigger_id}"
        if self.is_reverted:
            text += f" [reverted {self.reverted_at.isoformat()}]"
        return text


@dataclass(frozen=True)
class RevertInfo:
    """Result of reverting the most recent history entries."""

    instance_id: UUID
    previous_state_id: UUID
    new_state_id: UUID
    reverted_count: int
    reverted_entries: tuple[TransitionHistoryEntry, ...]
    reason: str
    reverted_by: UUID
    reverted_at: datetime


@dataclass(frozen=True)
class StateMachineSummary:
    """Read model describing where an instance stands."""

    instance_id: UUID
    definition_name: str
    definition_version: int
    current_state: str
    is_in_final_state: bool
    last_transition_at: datetime | None
    time_since_last_transition: timedelta | None
    active_transition_count: int
    owner_entity_type: str | None
    owner_entity_id: UUID | None
    available_triggers: tuple[str, ...]
    recent_transitions: tuple[str, ...]


# =========================================================================
# Instance
# =========================================================================


class StateMachineInstance:
    """A live cursor over a ``StateMachineDefinition``."""

    def __init__(
        self,
        definition: StateMachineDefinition,
        *,
        owner_entity_type: str | None = None,
        owner_entity_id: UUID | None = None,
        clock: Clock | None = None,
        instance_id: UUID | None = None,
    ) -> None:
        if definition is None:
            raise ValueError("definition is required")
        self.id: UUID = instance_id or uuid4()
        self.definition = definition
        self.owner_entity_type = owner_entity_type
        self.owner_entity_id = owner_entity_id
        self._clock = clock or SystemClock()
        self.current_state_id: UUID = definition.initial_state.id
        self.created_at: datetime = self._clock.now()
        self.last_transition_at: datetime | None = None
        self._history: list[TransitionHistoryEntry] = []
        # Row version as last seen by the persistence layer; 0 = never stored
        self.persisted_version: int = 0

    @property
    def definition_id(self) -> UUID:
        return self.definition.id

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def current_state(self) -> State:
        state = self.definition.state_by_id(self.current_state_id)
        if state is None:
            raise InvalidDefinitionError(
                self.definition.name,
                [f"Current state {self.current_state_id} is not in the definition"],
            )
        return state

    @property
    def history(self) -> tuple[TransitionHistoryEntry, ...]:
        """All history entries in chronological order."""
        return tuple(sorted(self._history, key=lambda e: e.chronological_key))

    def active_history(self) -> list[TransitionHistoryEntry]:
        """Non-reverted history entries in chronological order."""
        return [e for e in self.history if not e.is_reverted]

    # -- navigation (read-only) -------------------------------------------

    def get_available_transitions(self) -> list[Transition]:
        return self.definition.transitions_from(self.current_state)

    def get_available_triggers(self) -> list[Trigger]:
        triggers: list[Trigger] = []
        for transition in self.get_available_transitions():
            trigger = self.definition.trigger_by_id(transition.trigger_id)
            if trigger is not None and trigger not in triggers:
                triggers.append(trigger)
        return triggers

    def get_transitions_for_trigger(self, trigger: Trigger) -> list[Transition]:
        return [t for t in self.get_available_transitions() if t.trigger_id == trigger.id]

    def get_requirements_for_trigger(self, trigger: Trigger) -> list[TransitionRequirement]:
        return _distinct_requirements(self.get_transitions_for_trigger(trigger))

    def get_all_requirements_from_current_state(self) -> list[TransitionRequirement]:
        return _distinct_requirements(self.get_available_transitions())

    def can_trigger(self, trigger: Trigger) -> bool:
        return bool(self.get_transitions_for_trigger(trigger))

    def get_transition(self, trigger: Trigger, to_state: State) -> Transition | None:
        return next(
            (t for t in self.get_transitions_for_trigger(trigger)
             if t.to_state_id == to_state.id),
            None,
        )

    def can_transition_to(self, to_state: State, trigger: Trigger) -> bool:
        return self.get_transition(trigger, to_state) is not None

    def is_in_final_state(self) -> bool:
        return self.current_state.is_final

    def get_state(self, name: str) -> State | None:
        return self.definition.get_state(name)

    def get_trigger(self, name: str) -> Trigger | None:
        return self.definition.get_trigger(name)

    # -- mutations ---------------------------------------------------------

    def execute_transition(self, transition: Transition, actor_id: UUID) -> TransitionHistoryEntry:
        """Move along ``transition``; it must be available from the current state."""
        if all(t.id != transition.id for t in self.get_available_transitions()):
            raise ValueError(
                f"Transition {transition.id} is not available from state "
                f"'{self.current_state.name}'"
            )
        return self._move(
            to_state_id=transition.to_state_id,
            trigger_id=transition.trigger_id,
            transition_id=transition.id,
            was_forced=False,
            reason=None,
            actor_id=actor_id,
        )

    def force_transition(self, target_state: State, reason: str, actor_id: UUID) -> TransitionHistoryEntry:
        """Jump to ``target_state`` without requirement checks."""
        if not self.definition.contains_state(target_state):
            raise ValueError(f"State '{target_state.name}' is not in the definition")
        if not reason or not reason.strip():
            raise ValueError("A forced transition requires a reason")
        return self._move(
            to_state_id=target_state.id,
            trigger_id=None,
            transition_id=None,
            was_forced=True,
            reason=reason,
            actor_id=actor_id,
        )

    def revert(self, count: int, reason: str, actor_id: UUID) -> RevertInfo:
        """Undo the ``count`` most recent non-reverted transitions.

        The instance returns to the source state of the oldest selected
        entry.  All-or-nothing: validation happens before any change.
        """
        if actor_id is None:
            raise ValueError("actor_id is required")
        if count < 1:
            raise ValueError(f"Revert count must be >= 1, got {count}")
        if not reason or not reason.strip():
            raise ValueError("A revert requires a reason")
        selected = self.revert_candidates(count)
        if len(selected) < count:
            raise ValueError(
                f"Cannot revert {count} transition(s); only {len(selected)} available"
            )

        now = self._clock.now()
        reverted = {e.id: e.mark_reverted(now) for e in selected}
        self._history = [reverted.get(e.id, e) for e in self._history]

        previous_state_id = self.current_state_id
        self.current_state_id = selected[-1].from_state_id
        self.last_transition_at = now
        return RevertInfo(
            instance_id=self.id,
            previous_state_id=previous_state_id,
            new_state_id=self.current_state_id,
            reverted_count=count,
            reverted_entries=tuple(reverted[e.id] for e in selected),
            reason=reason,
            reverted_by=actor_id,
            reverted_at=now,
        )

    @contextmanager
    def rollback_on_error(self) -> Iterator[StateMachineInstance]:
        """Undo any state or history change made inside the block if it raises."""
        saved = (self.current_state_id, self.last_transition_at, list(self._history))
        try:
            yield self
        except BaseException:
            self.current_state_id, self.last_transition_at, self._history = saved
            raise

    def revert_candidates(self, count: int) -> list[TransitionHistoryEntry]:
        """Up to ``count`` non-reverted entries, newest first."""
        return list(reversed(self.active_history()))[:count]

    def _move(
        self,
        *,
        to_state_id: UUID,
        trigger_id: UUID | None,
        transition_id: UUID | None,
        was_forced: bool,
        reason: str | None,
        actor_id: UUID,
    ) -> TransitionHistoryEntry:
        if actor_id is None:
            raise ValueError("actor_id is required")
        now = self._clock.now()
        entry = TransitionHistoryEntry(
            id=uuid4(),
            instance_id=self.id,
            from_state_id=self.current_state_id,
            to_state_id=to_state_id,
            trigger_id=trigger_id,
            transition_id=transition_id,
            was_forced=was_forced,
            reason=reason,
            triggered_by_user_id=actor_id,
            transitioned_at=now,
            sequence=self._next_sequence(),
        )
        self._history.append(entry)
        self.current_state_id = to_state_id
        self.last_transition_at = now
        return entry

    def _next_sequence(self) -> int:
        return max((e.sequence for e in self._history), default=0) + 1

    # -- read models -------------------------------------------------------

    def summarize(self, recent: int = 5) -> StateMachineSummary:
        active = self.active_history()
        since = (
            self._clock.now() - self.last_transition_at
            if self.last_transition_at is not None else None
        )
        return StateMachineSummary(
            instance_id=self.id,
            definition_name=self.definition.name,
            definition_version=self.definition.version,
            current_state=self.current_state.name,
            is_in_final_state=self.is_in_final_state(),
            last_transition_at=self.last_transition_at,
            time_since_last_transition=since,
            active_transition_count=len(active),
            owner_entity_type=self.owner_entity_type,
            owner_entity_id=self.owner_entity_id,
            available_triggers=tuple(t.name for t in self.get_available_triggers()),
            recent_transitions=tuple(
                e.describe(self.definition) for e in reversed(self.history[-recent:])
            ) if recent > 0 else (),
        )

    @classmethod
    def rehydrate(
        cls,
        definition: StateMachineDefinition,
        *,
        instance_id: UUID,
        current_state_id: UUID,
        created_at: datetime,
        last_transition_at: datetime | None,
        history: Sequence[TransitionHistoryEntry],
        owner_entity_type: str | None = None,
        owner_entity_id: UUID | None = None,
        persisted_version: int = 0,
        clock: Clock | None = None,
    ) -> StateMachineInstance:
        """Rebuild a stored instance."""
        instance = cls(
            definition,
            owner_entity_type=owner_entity_type,
            owner_entity_id=owner_entity_id,
            clock=clock,
            instance_id=instance_id,
        )
        instance.current_state_id = current_state_id
        instance.created_at = created_at
        instance.last_transition_at = last_transition_at
        instance._history = list(history)
        instance.persisted_version = persisted_version
        return instance

    def __repr__(self) -> str:
        return (
            f"StateMachineInstance(id={self.id}, definition={self.definition.name!r}, "
            f"state={self.current_state.name!r}, history={len(self._history)})"
        )


def _distinct_requirements(transitions: Sequence[Transition]) -> list[TransitionRequirement]:
    requirements: list[TransitionRequirement] = []
    for transition in transitions:
        for requirement in transition.requirements:
            if requirement not in requirements:
                requirements.append(requirement)
    return requirements
