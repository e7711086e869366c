"""
StateMachineStore -- load/save boundary for definitions and instances.

Responsibility:
    Moves definitions and instances between the in-memory domain graph and
    persistence.  The engines never touch the store; the transition service
    saves through it after each committed mutation when one is configured.

Architecture position:
    Kernel > Services.  ``SqlAlchemyStateMachineStore`` imports models/ and
    operates on a caller-supplied Session.

Invariants enforced:
    - The store flushes but NEVER commits; the caller owns the transaction.
    - Instance saves are version-checked (optimistic concurrency).
    - History rows are inserted once; afterwards only ``reverted_at`` is
      written.  Rows are never removed.
    - Structural changes are written only for draft definitions.

Failure modes:
    - DefinitionNotFoundError / InstanceNotFoundError on load.
    - OptimisticLockError when the instance row changed since it was loaded.
    - UnknownComponentKindError when a stored component kind is not in the
      catalog.
"""

from __future__ import annotations

from typing import Protocol
from uuid import UUID

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.domain.components import ComponentCatalog
from workflow_kernel.domain.definition import DefinitionStatus, StateMachineDefinition
from workflow_kernel.domain.instance import StateMachineInstance
from workflow_kernel.exceptions import (
    DefinitionNotFoundError,
    InstanceNotFoundError,
    OptimisticLockError,
)
from workflow_kernel.logging_config import get_logger
from workflow_kernel.models.definition import StateMachineDefinitionModel
from workflow_kernel.models.instance import (
    StateMachineInstanceModel,
    TransitionHistoryModel,
)

logger = get_logger("services.store")


class StateMachineStore(Protocol):
    """Persistence boundary consumed by the transition service."""

    def save_definition(self, definition: StateMachineDefinition) -> None: ...

    def load_definition(self, definition_id: UUID) -> StateMachineDefinition: ...

    def save_instance(self, instance: StateMachineInstance) -> None: ...

    def load_instance(self, instance_id: UUID) -> StateMachineInstance: ...


class SqlAlchemyStateMachineStore:
    """StateMachineStore backed by a SQLAlchemy Session."""

    def __init__(
        self,
        session: Session,
        catalog: ComponentCatalog,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._catalog = catalog
        self._clock = clock or SystemClock()
        self._definitions: dict[UUID, StateMachineDefinition] = {}

    # -- definitions -------------------------------------------------------

    def save_definition(self, definition: StateMachineDefinition) -> None:
        row = self._session.get(StateMachineDefinitionModel, definition.id)
        if row is None:
            self._session.add(StateMachineDefinitionModel.from_dto(definition))
        else:
            if row.status == DefinitionStatus.DRAFT.value:
                row.sync_structure(definition)
                row.name = definition.name
                row.description = definition.description
            row.status = definition.status.value
        self._session.flush()
        self._definitions[definition.id] = definition
        logger.info(
            "definition_saved",
            extra={
                "definition_id": str(definition.id),
                "definition_name": definition.name,
                "version": definition.version,
                "status": definition.status.value,
            },
        )

    def load_definition(self, definition_id: UUID) -> StateMachineDefinition:
        cached = self._definitions.get(definition_id)
        if cached is not None:
            return cached
        row = self._session.get(StateMachineDefinitionModel, definition_id)
        if row is None:
            raise DefinitionNotFoundError(str(definition_id))
        definition = row.to_dto(self._catalog)
        self._definitions[definition_id] = definition
        return definition

    # -- instances ---------------------------------------------------------

    def save_instance(self, instance: StateMachineInstance) -> None:
        now = self._clock.now()
        row = self._session.get(StateMachineInstanceModel, instance.id)
        if row is None:
            row = StateMachineInstanceModel(
                id=instance.id,
                definition_id=instance.definition_id,
                current_state_id=instance.current_state_id,
                owner_entity_type=instance.owner_entity_type,
                owner_entity_id=instance.owner_entity_id,
                created_at=instance.created_at,
                last_transition_at=instance.last_transition_at,
                updated_at=now,
            )
            self._session.add(row)
        else:
            if row.version_id != instance.persisted_version:
                raise OptimisticLockError(
                    "StateMachineInstance", str(instance.id), instance.persisted_version
                )
            row.current_state_id = instance.current_state_id
            row.last_transition_at = instance.last_transition_at
            row.updated_at = now

        stored = {h.id: h for h in row.history}
        for entry in instance.history:
            existing = stored.get(entry.id)
            if existing is None:
                row.history.append(TransitionHistoryModel.from_dto(entry))
            elif existing.reverted_at != entry.reverted_at:
                existing.reverted_at = entry.reverted_at

        try:
            self._session.flush()
        except StaleDataError as exc:
            raise OptimisticLockError(
                "StateMachineInstance", str(instance.id), instance.persisted_version
            ) from exc
        instance.persisted_version = row.version_id
        logger.debug(
            "instance_saved",
            extra={
                "instance_id": str(instance.id),
                "version_id": row.version_id,
                "history_count": len(row.history),
            },
        )

    def load_instance(self, instance_id: UUID, clock: Clock | None = None) -> StateMachineInstance:
        row = self._session.get(StateMachineInstanceModel, instance_id)
        if row is None:
            raise InstanceNotFoundError(str(instance_id))
        definition = self.load_definition(row.definition_id)
        return StateMachineInstance.rehydrate(
            definition,
            instance_id=row.id,
            current_state_id=row.current_state_id,
            created_at=row.created_at,
            last_transition_at=row.last_transition_at,
            history=[h.to_dto() for h in row.history],
            owner_entity_type=row.owner_entity_type,
            owner_entity_id=row.owner_entity_id,
            persisted_version=row.version_id,
            clock=clock or self._clock,
        )
