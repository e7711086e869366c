"""
Tests for SqlAlchemyStateMachineStore and the ORM models behind it:
definition and instance round trips, draft-only structure sync,
optimistic locking and history immutability.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from workflow_kernel.domain.components import ComponentCatalog
from workflow_kernel.domain.definition import DefinitionStatus
from workflow_kernel.domain.instance import StateMachineInstance
from workflow_kernel.exceptions import (
    DefinitionNotFoundError,
    HistoryImmutableError,
    InstanceNotFoundError,
    OptimisticLockError,
    UnknownComponentKindError,
)
from workflow_kernel.models.definition import StateMachineDefinitionModel, TransitionModel
from workflow_kernel.models.instance import StateMachineInstanceModel, TransitionHistoryModel
from workflow_kernel.services.store import SqlAlchemyStateMachineStore
from workflow_kernel.services.transition_service import StateMachineTransitionService

from tests.workflow_support import (
    CATALOG,
    MinimumApprovals,
    build_document_approval,
)


def _fresh_store(session, clock) -> SqlAlchemyStateMachineStore:
    """A store with an empty cache reading from a cleared identity map."""
    session.expunge_all()
    return SqlAlchemyStateMachineStore(session, CATALOG, clock)


def _fire(instance, trigger_name, actor_id):
    trigger = instance.get_trigger(trigger_name)
    return instance.execute_transition(instance.get_transitions_for_trigger(trigger)[0], actor_id)


# =============================================================================
# Definitions
# =============================================================================


class TestDefinitionPersistence:

    def test_round_trip(self, store, session, deterministic_clock, definition):
        store.save_definition(definition)

        loaded = _fresh_store(session, deterministic_clock).load_definition(definition.id)

        assert loaded is not definition
        assert loaded.name == definition.name
        assert loaded.version == definition.version
        assert loaded.status == DefinitionStatus.PUBLISHED
        assert loaded.states == definition.states
        assert loaded.triggers == definition.triggers
        assert loaded.transitions == definition.transitions
        assert loaded.to_mermaid() == definition.to_mermaid()

    def test_components_stored_as_kind_payloads(self, store, session, definition):
        store.save_definition(definition)

        rows = session.scalars(select(TransitionModel)).all()
        approve = next(r for r in rows if r.requirements)

        assert approve.requirements == [{"kind": "minimum_approvals", "data": {"count": 2}}]
        assert [e["kind"] for e in approve.effects] == ["write_audit_note", "send_notification"]

    def test_unknown_kind_on_load(self, store, session, definition):
        store.save_definition(definition)
        session.expunge_all()

        with pytest.raises(UnknownComponentKindError):
            SqlAlchemyStateMachineStore(session, ComponentCatalog()).load_definition(definition.id)

    def test_missing_definition(self, store):
        with pytest.raises(DefinitionNotFoundError):
            store.load_definition(uuid4())

    def test_draft_structure_is_synced(self, store, session, deterministic_clock):
        draft = build_document_approval(publish=False)
        store.save_definition(draft)

        escalated = draft.add_state("Escalated")
        escalate = draft.add_trigger("Escalate")
        draft.add_transition("Review", escalated, escalate)
        rework = next(t for t in draft.transitions if t.trigger_id == draft.get_trigger("Rework").id)
        draft.remove_transition(rework.id)
        store.save_definition(draft)

        loaded = _fresh_store(session, deterministic_clock).load_definition(draft.id)
        assert loaded.get_state("Escalated") is not None
        assert loaded.transition_by_id(rework.id) is None
        assert loaded.transitions == draft.transitions

    def test_status_change_persisted(self, store, session, deterministic_clock, definition):
        store.save_definition(definition)
        definition.deprecate()
        store.save_definition(definition)

        row = session.get(StateMachineDefinitionModel, definition.id)
        assert row.status == "deprecated"
        loaded = _fresh_store(session, deterministic_clock).load_definition(definition.id)
        assert loaded.status == DefinitionStatus.DEPRECATED
        assert not loaded.is_editable


# =============================================================================
# Instances
# =============================================================================


class TestInstancePersistence:

    def test_round_trip(self, store, session, deterministic_clock, definition, instance, actor_id):
        store.save_definition(definition)
        _fire(instance, "Submit", actor_id)
        _fire(instance, "Rework", actor_id)
        instance.revert(1, "undo rework", actor_id)
        store.save_instance(instance)

        loaded = _fresh_store(session, deterministic_clock).load_instance(instance.id)

        assert loaded.current_state.name == "Review"
        assert loaded.history == instance.history
        assert loaded.history[1].is_reverted
        assert loaded.created_at == instance.created_at
        assert loaded.last_transition_at == instance.last_transition_at
        assert loaded.owner_entity_type == "Document"
        assert loaded.persisted_version == instance.persisted_version == 1

    def test_missing_instance(self, store):
        with pytest.raises(InstanceNotFoundError):
            store.load_instance(uuid4())

    @pytest.mark.asyncio
    async def test_service_saves_after_each_mutation(
        self, store, session, definition, instance, actor_id,
        requirement_service, effect_service,
    ):
        store.save_definition(definition)
        store.save_instance(instance)
        service = StateMachineTransitionService(requirement_service, effect_service, store=store)

        await service.try_transition_by_name(instance, "Submit", actor_id)
        row = session.get(StateMachineInstanceModel, instance.id)
        assert row.current_state_id == definition.get_state("Review").id
        assert row.version_id == 2

        await service.revert_last_transition(instance, "undo", actor_id)
        assert row.current_state_id == definition.initial_state.id
        assert row.history[0].reverted_at is not None
        assert instance.persisted_version == 3

    def test_optimistic_lock(self, store, definition, instance, actor_id):
        store.save_definition(definition)
        store.save_instance(instance)
        first = store.load_instance(instance.id)
        second = store.load_instance(instance.id)

        _fire(first, "Submit", actor_id)
        store.save_instance(first)
        _fire(second, "Cancel", actor_id)

        with pytest.raises(OptimisticLockError) as exc_info:
            store.save_instance(second)
        assert exc_info.value.expected_version == 1

    def test_rehydrated_instance_keeps_working(
        self, store, session, deterministic_clock, definition, instance, actor_id,
    ):
        store.save_definition(definition)
        _fire(instance, "Submit", actor_id)
        store.save_instance(instance)

        loaded = _fresh_store(session, deterministic_clock).load_instance(instance.id)
        entry = _fire(loaded, "Reject", actor_id)

        assert entry.sequence == 2
        assert loaded.is_in_final_state()


# =============================================================================
# History immutability
# =============================================================================


class TestHistoryImmutability:

    @pytest.fixture
    def stored_entry(self, store, session, definition, instance, actor_id):
        store.save_definition(definition)
        _fire(instance, "Submit", actor_id)
        store.save_instance(instance)
        return session.scalars(select(TransitionHistoryModel)).one()

    def test_write_once_columns(self, session, stored_entry):
        stored_entry.reason = "rewritten"
        with pytest.raises(HistoryImmutableError, match="reason"):
            session.flush()

    def test_reverted_at_set_once(self, session, stored_entry, deterministic_clock):
        stored_entry.reverted_at = deterministic_clock.now()
        session.flush()

        stored_entry.reverted_at = deterministic_clock.now()
        with pytest.raises(HistoryImmutableError, match="already set"):
            session.flush()

    def test_delete_forbidden(self, session, stored_entry):
        session.delete(stored_entry)
        with pytest.raises(HistoryImmutableError):
            session.flush()

    def test_forced_entry_maps_to_row(self, instance, actor_id):
        entry = instance.force_transition(instance.get_state("Approved"), "board decision", actor_id)
        row = TransitionHistoryModel.from_dto(entry)

        assert row.was_forced
        assert row.reason == "board decision"
        assert row.to_dto() == entry


def test_requirement_payload_rebuilds_equal_component():
    payload = {"kind": "minimum_approvals", "data": {"count": 4}}
    assert CATALOG.load_requirement(payload) == MinimumApprovals(count=4)


def test_new_instance_version_starts_at_one(store, definition, deterministic_clock):
    store.save_definition(definition)
    instance = StateMachineInstance(definition, clock=deterministic_clock)
    store.save_instance(instance)
    assert instance.persisted_version == 1
