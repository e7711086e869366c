"""
Module: workflow_kernel.models.definition
Responsibility: ORM persistence for state machine definitions and their
    states, triggers and transitions.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ (for DTO conversion) only.

Invariants enforced:
    - (name, version) is unique per definition.
    - State and trigger names are unique within a definition.
    - Requirement and effect lists keep their order as JSON arrays of
      ``{"kind": ..., "data": {...}}`` payloads.
    - Child rows carry a ``position`` so definition order survives a round
      trip; transition lookups depend on it.

Failure modes:
    - IntegrityError on duplicate (name, version) or duplicate child names.
    - UnknownComponentKindError when loading a payload whose kind is not in
      the catalog passed to ``to_dto``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from workflow_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from workflow_kernel.domain.components import ComponentCatalog
    from workflow_kernel.domain.definition import (
        State,
        StateMachineDefinition,
        Transition,
        Trigger,
    )


class StateMachineDefinitionModel(Base):
    """Persistent workflow template header."""

    __tablename__ = "sm_definitions"

    __table_args__ = (
        UniqueConstraint("name", "version", name="uq_sm_definitions_name_version"),
        CheckConstraint(
            "status IN ('draft', 'published', 'deprecated', 'archived')",
            name="ck_sm_definitions_valid_status",
        ),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")

    states: Mapped[list["StateModel"]] = relationship(
        back_populates="definition",
        cascade="all, delete-orphan",
        order_by="StateModel.position",
        lazy="selectin",
    )
    triggers: Mapped[list["TriggerModel"]] = relationship(
        back_populates="definition",
        cascade="all, delete-orphan",
        order_by="TriggerModel.position",
        lazy="selectin",
    )
    transitions: Mapped[list["TransitionModel"]] = relationship(
        back_populates="definition",
        cascade="all, delete-orphan",
        order_by="TransitionModel.position",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<StateMachineDefinition {self.name} v{self.version} {self.status}>"

    def to_dto(self, catalog: ComponentCatalog) -> StateMachineDefinition:
        """Rebuild the domain definition; components are resolved through ``catalog``."""
        from workflow_kernel.domain.definition import (
            DefinitionStatus,
            StateMachineDefinition,
        )

        return StateMachineDefinition.rehydrate(
            definition_id=self.id,
            name=self.name,
            version=self.version,
            description=self.description,
            status=DefinitionStatus(self.status),
            states=[s.to_dto() for s in self.states],
            triggers=[t.to_dto() for t in self.triggers],
            transitions=[t.to_dto(catalog) for t in self.transitions],
        )

    @classmethod
    def from_dto(cls, definition: StateMachineDefinition) -> StateMachineDefinitionModel:
        model = cls(
            id=definition.id,
            name=definition.name,
            version=definition.version,
            description=definition.description,
            status=definition.status.value,
        )
        model.sync_structure(definition)
        return model

    def sync_structure(self, definition: StateMachineDefinition) -> None:
        """Bring child rows in line with the domain definition, matching by id."""
        _sync_children(self.states, definition.states, StateModel)
        _sync_children(self.triggers, definition.triggers, TriggerModel)
        _sync_children(self.transitions, definition.transitions, TransitionModel)


class StateModel(Base):
    """A state of a persisted definition."""

    __tablename__ = "sm_states"

    __table_args__ = (
        UniqueConstraint("definition_id", "name", name="uq_sm_states_definition_name"),
        CheckConstraint(
            "category IN ('initial', 'intermediate', 'final')",
            name="ck_sm_states_valid_category",
        ),
    )

    definition_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("sm_definitions.id"), nullable=False, index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    definition: Mapped[StateMachineDefinitionModel] = relationship(back_populates="states")

    def to_dto(self) -> State:
        from workflow_kernel.domain.definition import State, StateCategory

        return State(
            id=self.id,
            name=self.name,
            category=StateCategory(self.category),
            description=self.description,
        )

    def apply(self, state: State, position: int) -> None:
        self.name = state.name
        self.category = state.category.value
        self.description = state.description
        self.position = position


class TriggerModel(Base):
    """A trigger of a persisted definition."""

    __tablename__ = "sm_triggers"

    __table_args__ = (
        UniqueConstraint("definition_id", "name", name="uq_sm_triggers_definition_name"),
    )

    definition_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("sm_definitions.id"), nullable=False, index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    trigger_type: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    definition: Mapped[StateMachineDefinitionModel] = relationship(back_populates="triggers")

    def to_dto(self) -> Trigger:
        from workflow_kernel.domain.definition import Trigger, TriggerType

        return Trigger(
            id=self.id,
            name=self.name,
            description=self.description,
            trigger_type=TriggerType(self.trigger_type),
        )

    def apply(self, trigger: Trigger, position: int) -> None:
        self.name = trigger.name
        self.description = trigger.description
        self.trigger_type = trigger.trigger_type.value
        self.position = position


class TransitionModel(Base):
    """A transition of a persisted definition.

    ``from_state_id`` is NULL for global transitions.
    """

    __tablename__ = "sm_transitions"

    definition_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("sm_definitions.id"), nullable=False, index=True,
    )
    from_state_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("sm_states.id"), nullable=True,
    )
    to_state_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("sm_states.id"), nullable=False,
    )
    trigger_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("sm_triggers.id"), nullable=False,
    )
    requirements: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    effects: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    definition: Mapped[StateMachineDefinitionModel] = relationship(back_populates="transitions")
    # Many-to-one links so flush inserts states and triggers first
    from_state: Mapped[StateModel | None] = relationship(foreign_keys=[from_state_id])
    to_state: Mapped[StateModel] = relationship(foreign_keys=[to_state_id])
    trigger: Mapped[TriggerModel] = relationship(foreign_keys=[trigger_id])

    def to_dto(self, catalog: ComponentCatalog) -> Transition:
        from workflow_kernel.domain.definition import Transition

        return Transition(
            id=self.id,
            from_state_id=self.from_state_id,
            to_state_id=self.to_state_id,
            trigger_id=self.trigger_id,
            requirements=tuple(catalog.load_requirement(p) for p in self.requirements),
            effects=tuple(catalog.load_effect(p) for p in self.effects),
        )

    def apply(self, transition: Transition, position: int) -> None:
        from workflow_kernel.domain.components import ComponentCatalog

        self.from_state_id = transition.from_state_id
        self.to_state_id = transition.to_state_id
        self.trigger_id = transition.trigger_id
        self.requirements = [ComponentCatalog.dump(r) for r in transition.requirements]
        self.effects = [ComponentCatalog.dump(e) for e in transition.effects]
        self.position = position


def _sync_children(rows: list[Any], items: tuple[Any, ...], model_cls: type) -> None:
    existing = {row.id: row for row in rows}
    wanted = {item.id for item in items}
    for row in list(rows):
        if row.id not in wanted:
            rows.remove(row)
    for position, item in enumerate(items):
        row = existing.get(item.id)
        if row is None:
            row = model_cls(id=item.id)
            rows.append(row)
        row.apply(item, position)
