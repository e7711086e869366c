"""
Hypothesis property tests for state machine instances.

Properties checked over random walks on linear definitions:
- The current state is always the target of the newest non-reverted
  history entry (or the initial state when none remain).
- History sequences are unique and strictly increasing; reverting never
  removes entries.
- Reverting k of n moves lands on S(n-k); an over-long revert changes
  nothing.
- A final state offers no transitions and no triggers.
- Read-only queries are idempotent.
- The transition service agrees with direct domain execution.
"""

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from workflow_kernel.domain.clock import DeterministicClock
from workflow_kernel.domain.instance import StateMachineInstance
from workflow_kernel.services.effect_execution import EffectExecutionService
from workflow_kernel.services.requirement_evaluation import RequirementEvaluationService
from workflow_kernel.services.transition_service import (
    NO_AVAILABLE_TRANSITIONS,
    StateMachineTransitionService,
)

from tests.workflow_support import build_linear, new_actor


def _instance(length: int) -> StateMachineInstance:
    return StateMachineInstance(
        build_linear(length),
        clock=DeterministicClock(),
    )


def _advance(instance: StateMachineInstance, actor_id) -> bool:
    transitions = instance.get_available_transitions()
    if not transitions:
        return False
    instance.execute_transition(transitions[0], actor_id)
    return True


def _assert_consistent(instance: StateMachineInstance) -> None:
    active = instance.active_history()
    expected = active[-1].to_state_id if active else instance.definition.initial_state.id
    assert instance.current_state.id == expected

    sequences = [e.sequence for e in instance.history]
    assert sequences == sorted(set(sequences))

    if instance.is_in_final_state():
        assert instance.get_available_transitions() == []
        assert instance.get_available_triggers() == []


operations = st.lists(
    st.one_of(
        st.just(("advance", None)),
        st.tuples(st.just("force"), st.integers(min_value=0, max_value=8)),
        st.tuples(st.just("revert"), st.integers(min_value=1, max_value=3)),
    ),
    max_size=30,
)


class TestRandomWalks:

    @given(length=st.integers(min_value=1, max_value=8), ops=operations)
    @settings(max_examples=100, deadline=None)
    def test_state_follows_active_history(self, length, ops):
        instance = _instance(length)
        actor_id = new_actor()
        entries_seen = 0

        for op, arg in ops:
            if op == "advance":
                _advance(instance, actor_id)
            elif op == "force":
                target = instance.get_state(f"S{arg % (length + 1)}")
                instance.force_transition(target, "property walk", actor_id)
            elif len(instance.active_history()) >= arg:
                instance.revert(arg, "property walk", actor_id)

            assert len(instance.history) >= entries_seen
            entries_seen = len(instance.history)
            _assert_consistent(instance)

    @given(
        length=st.integers(min_value=1, max_value=10),
        data=st.data(),
    )
    @settings(max_examples=100, deadline=None)
    def test_revert_returns_to_earlier_state(self, length, data):
        moves = data.draw(st.integers(min_value=1, max_value=length), label="moves")
        count = data.draw(st.integers(min_value=1, max_value=moves), label="count")
        instance = _instance(length)
        actor_id = new_actor()
        for _ in range(moves):
            assert _advance(instance, actor_id)

        info = instance.revert(count, "undo", actor_id)

        assert instance.current_state.name == f"S{moves - count}"
        assert info.reverted_count == count
        assert len(instance.active_history()) == moves - count
        assert len(instance.history) == moves
        _assert_consistent(instance)

    @given(
        length=st.integers(min_value=1, max_value=6),
        extra=st.integers(min_value=1, max_value=3),
    )
    @settings(max_examples=50, deadline=None)
    def test_overlong_revert_changes_nothing(self, length, extra):
        instance = _instance(length)
        actor_id = new_actor()
        while _advance(instance, actor_id):
            pass
        before = (instance.current_state, instance.history)

        with pytest.raises(ValueError):
            instance.revert(length + extra, "too far", actor_id)

        assert (instance.current_state, instance.history) == before

    @given(length=st.integers(min_value=1, max_value=6), moves=st.integers(min_value=0, max_value=6))
    @settings(max_examples=50, deadline=None)
    def test_queries_are_idempotent(self, length, moves):
        instance = _instance(length)
        actor_id = new_actor()
        for _ in range(moves):
            _advance(instance, actor_id)

        first = (
            instance.get_available_transitions(),
            instance.get_available_triggers(),
            instance.is_in_final_state(),
            instance.summarize(),
        )
        second = (
            instance.get_available_transitions(),
            instance.get_available_triggers(),
            instance.is_in_final_state(),
            instance.summarize(),
        )

        assert first == second
        assert instance.is_in_final_state() == (moves >= length)
        assert (instance.get_available_transitions() == []) == instance.is_in_final_state()


class TestServiceAgreement:

    @given(length=st.integers(min_value=1, max_value=6), attempts=st.integers(min_value=1, max_value=9))
    @settings(max_examples=30, deadline=None)
    def test_service_walk_matches_domain(self, length, attempts):
        service = StateMachineTransitionService(
            RequirementEvaluationService(), EffectExecutionService()
        )
        instance = _instance(length)
        actor_id = new_actor()

        async def walk():
            return [
                await service.try_transition_by_name(instance, "Next", actor_id)
                for _ in range(attempts)
            ]

        results = asyncio.run(walk())

        successes = [r for r in results if r.is_success]
        assert len(successes) == min(attempts, length)
        assert instance.current_state.name == f"S{min(attempts, length)}"
        for result in results[length:]:
            assert result.error.code == NO_AVAILABLE_TRANSITIONS
