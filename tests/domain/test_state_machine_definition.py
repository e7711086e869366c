"""
Tests for StateMachineDefinition: graph construction, validation, the
publishing lifecycle, versioning and Mermaid rendering.
"""

from uuid import uuid4

import pytest

from workflow_kernel.domain.definition import (
    DefinitionStatus,
    StateCategory,
    StateMachineDefinition,
    TriggerType,
)
from workflow_kernel.exceptions import (
    DefinitionImmutableError,
    InvalidDefinitionError,
    InvalidDefinitionStatusTransitionError,
)

from tests.workflow_support import (
    DocumentSigned,
    MinimumApprovals,
    SendNotification,
    SignedDocument,
    WriteAuditNote,
    build_document_approval,
)


# =============================================================================
# Construction
# =============================================================================


class TestConstruction:

    def test_initial_state_created_with_definition(self):
        definition = StateMachineDefinition("approval", "Draft")

        assert definition.status == DefinitionStatus.DRAFT
        assert definition.version == 1
        assert [s.name for s in definition.states] == ["Draft"]
        assert definition.initial_state.is_initial

    @pytest.mark.parametrize("name,initial", [("", "Draft"), ("  ", "Draft"), ("x", "")])
    def test_blank_names_rejected(self, name, initial):
        with pytest.raises(ValueError):
            StateMachineDefinition(name, initial)

    def test_version_must_be_positive(self):
        with pytest.raises(ValueError):
            StateMachineDefinition("approval", "Draft", version=0)

    def test_second_initial_state_rejected(self):
        definition = StateMachineDefinition("approval", "Draft")
        with pytest.raises(InvalidDefinitionError, match="already initial"):
            definition.add_state("Start", StateCategory.INITIAL)

    def test_duplicate_state_name_rejected(self):
        definition = StateMachineDefinition("approval", "Draft")
        definition.add_state("Review")
        with pytest.raises(InvalidDefinitionError, match="Duplicate state"):
            definition.add_state("Review")

    def test_duplicate_trigger_name_rejected(self):
        definition = StateMachineDefinition("approval", "Draft")
        definition.add_trigger("Submit")
        with pytest.raises(InvalidDefinitionError, match="Duplicate trigger"):
            definition.add_trigger("Submit")

    def test_trigger_keeps_type(self):
        definition = StateMachineDefinition("approval", "Draft")
        trigger = definition.add_trigger("Expire", "Deadline passed", TriggerType.TIMER)
        assert definition.get_trigger("Expire") == trigger
        assert trigger.trigger_type == TriggerType.TIMER

    def test_explicit_ids_are_used(self):
        state_id, trigger_id, transition_id = uuid4(), uuid4(), uuid4()
        definition = StateMachineDefinition("approval", "Draft")
        review = definition.add_state("Review", state_id=state_id)
        submit = definition.add_trigger("Submit", trigger_id=trigger_id)
        transition = definition.add_transition(
            "Draft", review, submit, transition_id=transition_id
        )

        assert review.id == state_id
        assert submit.id == trigger_id
        assert definition.transition_by_id(transition_id) == transition


# =============================================================================
# Transitions
# =============================================================================


class TestTransitions:

    def test_states_resolved_by_object_id_or_name(self):
        definition = StateMachineDefinition("approval", "Draft")
        review = definition.add_state("Review")
        done = definition.add_state("Done", StateCategory.FINAL)
        submit = definition.add_trigger("Submit")
        finish = definition.add_trigger("Finish")

        first = definition.add_transition("Draft", review.id, "Submit")
        second = definition.add_transition(review, "Done", finish.id)

        assert first.from_state_id == definition.initial_state.id
        assert first.to_state_id == review.id
        assert first.trigger_id == submit.id
        assert second.to_state_id == done.id

    def test_unknown_state_rejected(self):
        definition = StateMachineDefinition("approval", "Draft")
        definition.add_trigger("Submit")
        with pytest.raises(InvalidDefinitionError, match="'Nowhere'"):
            definition.add_transition("Draft", "Nowhere", "Submit")

    def test_unknown_trigger_rejected(self):
        definition = StateMachineDefinition("approval", "Draft")
        definition.add_state("Review")
        with pytest.raises(InvalidDefinitionError, match="'Submit'"):
            definition.add_transition("Draft", "Review", "Submit")

    def test_state_from_other_definition_rejected(self):
        other = StateMachineDefinition("other", "Draft")
        foreign = other.add_state("Review")
        definition = StateMachineDefinition("approval", "Draft")
        definition.add_state("Review")
        definition.add_trigger("Submit")
        with pytest.raises(InvalidDefinitionError):
            definition.add_transition("Draft", foreign, "Submit")

    def test_final_state_cannot_have_outgoing_transition(self):
        definition = StateMachineDefinition("approval", "Draft")
        definition.add_state("Done", StateCategory.FINAL)
        definition.add_trigger("Reopen")
        with pytest.raises(InvalidDefinitionError, match="Final state 'Done'"):
            definition.add_transition("Done", "Draft", "Reopen")

    def test_global_transition_applies_to_every_non_final_state(self, definition):
        cancel = next(t for t in definition.transitions if t.is_global)

        for state in definition.states:
            assert cancel.applies_from(state) is (not state.is_final)

    def test_transitions_from_keeps_definition_order(self, definition):
        review = definition.get_state("Review")
        names = [
            definition.trigger_by_id(t.trigger_id).name
            for t in definition.transitions_from(review)
        ]
        assert names == ["Approve", "Reject", "Rework", "Cancel"]

    def test_final_state_has_no_transitions(self, definition):
        assert definition.transitions_from("Approved") == []

    def test_ordered_effects_sorted_by_execution_order(self, definition):
        approve = definition.get_trigger("Approve")
        transition = next(t for t in definition.transitions if t.trigger_id == approve.id)
        assert [e.kind for e in transition.ordered_effects()] == [
            "send_notification", "write_audit_note",
        ]

    def test_required_data_types_collected(self):
        definition = StateMachineDefinition("signing", "Draft")
        definition.add_state("Signed")
        definition.add_trigger("Sign")
        transition = definition.add_transition(
            "Draft", "Signed", "Sign", requirements=[DocumentSigned(), MinimumApprovals()]
        )
        assert transition.required_data_types() == frozenset({SignedDocument})
        assert transition.requires_user_data

    def test_update_and_remove_transition(self):
        definition = StateMachineDefinition("approval", "Draft")
        definition.add_state("Review")
        definition.add_trigger("Submit")
        transition = definition.add_transition("Draft", "Review", "Submit")

        updated = definition.update_transition(
            transition.id, requirements=[MinimumApprovals(count=3)]
        )
        assert updated.requirements == (MinimumApprovals(count=3),)
        assert updated.effects == ()
        assert definition.transition_by_id(transition.id) == updated

        removed = definition.remove_transition(transition.id)
        assert removed == updated
        assert definition.transitions == ()

    def test_remove_unknown_transition_rejected(self):
        definition = StateMachineDefinition("approval", "Draft")
        with pytest.raises(InvalidDefinitionError):
            definition.remove_transition(uuid4())


# =============================================================================
# Validation and lifecycle
# =============================================================================


class TestValidation:

    def test_valid_definition_has_no_errors(self):
        assert build_document_approval(publish=False).validate() == []

    def test_unreachable_state_reported(self):
        definition = StateMachineDefinition("approval", "Draft")
        definition.add_state("Orphan")
        assert "State 'Orphan' is unreachable" in definition.validate()

    def test_unused_trigger_reported(self):
        definition = StateMachineDefinition("approval", "Draft")
        definition.add_trigger("Idle")
        assert "Trigger 'Idle' is not used by any transition" in definition.validate()

    def test_publish_refuses_invalid_definition(self):
        definition = StateMachineDefinition("approval", "Draft")
        definition.add_state("Orphan")
        with pytest.raises(InvalidDefinitionError) as exc_info:
            definition.publish()
        assert exc_info.value.errors == ["State 'Orphan' is unreachable"]
        assert definition.status == DefinitionStatus.DRAFT


class TestLifecycle:

    def test_published_definition_is_immutable(self, definition):
        assert definition.status == DefinitionStatus.PUBLISHED
        assert not definition.is_editable
        with pytest.raises(DefinitionImmutableError):
            definition.add_state("Extra")
        with pytest.raises(DefinitionImmutableError):
            definition.add_trigger("Extra")
        with pytest.raises(DefinitionImmutableError):
            definition.add_transition("Draft", "Review", "Submit")
        with pytest.raises(DefinitionImmutableError):
            definition.remove_transition(definition.transitions[0].id)

    def test_deprecate_then_archive(self, definition):
        definition.deprecate()
        assert definition.status == DefinitionStatus.DEPRECATED
        definition.archive()
        assert definition.status == DefinitionStatus.ARCHIVED

    def test_archived_is_terminal(self, definition):
        definition.archive()
        with pytest.raises(InvalidDefinitionStatusTransitionError):
            definition.publish()
        with pytest.raises(InvalidDefinitionStatusTransitionError):
            definition.deprecate()

    def test_draft_cannot_be_deprecated(self):
        definition = build_document_approval(publish=False)
        with pytest.raises(InvalidDefinitionStatusTransitionError) as exc_info:
            definition.deprecate()
        assert exc_info.value.from_status == "draft"
        assert exc_info.value.to_status == "deprecated"


class TestVersioning:

    def test_new_version_is_editable_copy(self, definition):
        copy = definition.create_new_version()

        assert copy.version == 2
        assert copy.status == DefinitionStatus.DRAFT
        assert copy.id != definition.id
        assert [s.name for s in copy.states] == [s.name for s in definition.states]
        assert [t.name for t in copy.triggers] == [t.name for t in definition.triggers]
        assert len(copy.transitions) == len(definition.transitions)
        assert not {s.id for s in copy.states} & {s.id for s in definition.states}
        copy.add_state("Escalated")
        assert copy.get_state("Escalated") is not None

    def test_new_version_keeps_components_and_global_edges(self, definition):
        copy = definition.create_new_version()
        original = [(t.requirements, t.effects, t.is_global) for t in definition.transitions]
        copied = [(t.requirements, t.effects, t.is_global) for t in copy.transitions]
        assert copied == original

    def test_version_must_increase(self, definition):
        with pytest.raises(ValueError):
            definition.create_new_version(version=1)
        assert definition.create_new_version(version=5).version == 5


# =============================================================================
# Rendering
# =============================================================================


class TestMermaid:

    def test_renders_states_edges_and_labels(self, definition):
        diagram = definition.to_mermaid()
        lines = diagram.splitlines()

        assert lines[0] == "stateDiagram-v2"
        assert '    state "Draft" as s0_Draft' in lines
        assert "    [*] --> s0_Draft" in lines
        assert "    s1_Review --> s2_Approved : Approve [minimum_approvals] / " \
               "send_notification, write_audit_note" in lines
        assert "    [*] --> s4_Cancelled : Cancel (any)" in lines
        assert "    s2_Approved --> [*]" in lines
        assert "classDef current" not in diagram

    def test_highlights_current_state(self, definition):
        diagram = definition.to_mermaid(current_state="Review")
        assert diagram.splitlines()[-1] == "    class s1_Review current"

    def test_state_names_are_sanitized(self):
        definition = StateMachineDefinition("approval", "In Progress")
        assert '    state "In Progress" as s0_In_Progress' in definition.to_mermaid()

    def test_effect_description_used_as_label(self):
        definition = StateMachineDefinition("approval", "Draft")
        definition.add_state("Review")
        definition.add_trigger("Submit")
        definition.add_transition(
            "Draft", "Review", "Submit",
            effects=[SendNotification(description="notify reviewers"), WriteAuditNote()],
        )
        assert "Submit / notify reviewers, write_audit_note" in definition.to_mermaid()
