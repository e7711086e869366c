"""
Module: workflow_kernel.models.instance
Responsibility: ORM persistence for state machine instances and their
    transition history.

Architecture position: Kernel > Models.  May import from db/base.py,
    domain/ (for DTO conversion) and exceptions only.

Invariants enforced:
    - Optimistic concurrency: ``version_id`` is the mapper version counter;
      a stale UPDATE raises StaleDataError, surfaced as OptimisticLockError
      by the store.
    - History is append-only.  Every column is write-once except
      ``reverted_at``, which may go from NULL to a timestamp exactly once.
    - History rows are never deleted.
    - A forced history entry always has a reason.

Failure modes:
    - HistoryImmutableError on a forbidden history UPDATE or any DELETE.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from workflow_kernel.db.base import Base, UUIDString, UTCDateTime
from workflow_kernel.exceptions import HistoryImmutableError

if TYPE_CHECKING:
    from workflow_kernel.domain.instance import TransitionHistoryEntry


class StateMachineInstanceModel(Base):
    """Persistent instance cursor."""

    __tablename__ = "sm_instances"

    __table_args__ = (
        Index("ix_sm_instances_owner", "owner_entity_type", "owner_entity_id"),
    )

    definition_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("sm_definitions.id"), nullable=False, index=True,
    )
    current_state_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("sm_states.id"), nullable=False,
    )
    owner_entity_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    owner_entity_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    last_transition_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    history: Mapped[list["TransitionHistoryModel"]] = relationship(
        back_populates="instance",
        cascade="save-update, merge",
        order_by="TransitionHistoryModel.sequence",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<StateMachineInstance {self.id} state={self.current_state_id} v{self.version_id}>"


class TransitionHistoryModel(Base):
    """Append-only audit row for one state change."""

    __tablename__ = "sm_transition_history"

    __table_args__ = (
        UniqueConstraint("instance_id", "sequence", name="uq_sm_history_instance_sequence"),
        CheckConstraint(
            "NOT was_forced OR reason IS NOT NULL",
            name="ck_sm_history_forced_reason",
        ),
        Index("ix_sm_history_instance_time", "instance_id", "transitioned_at"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("sm_instances.id"), nullable=False,
    )
    from_state_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    to_state_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    trigger_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    transition_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    was_forced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    triggered_by_user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    transitioned_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    reverted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    instance: Mapped[StateMachineInstanceModel] = relationship(back_populates="history")

    def __repr__(self) -> str:
        flag = " reverted" if self.reverted_at is not None else ""
        return f"<TransitionHistory {self.id} #{self.sequence}{flag}>"

    def to_dto(self) -> TransitionHistoryEntry:
        from workflow_kernel.domain.instance import TransitionHistoryEntry

        return TransitionHistoryEntry(
            id=self.id,
            instance_id=self.instance_id,
            from_state_id=self.from_state_id,
            to_state_id=self.to_state_id,
            trigger_id=self.trigger_id,
            transition_id=self.transition_id,
            was_forced=self.was_forced,
            reason=self.reason,
            triggered_by_user_id=self.triggered_by_user_id,
            transitioned_at=self.transitioned_at,
            sequence=self.sequence,
            reverted_at=self.reverted_at,
        )

    @classmethod
    def from_dto(cls, entry: TransitionHistoryEntry) -> TransitionHistoryModel:
        return cls(
            id=entry.id,
            instance_id=entry.instance_id,
            from_state_id=entry.from_state_id,
            to_state_id=entry.to_state_id,
            trigger_id=entry.trigger_id,
            transition_id=entry.transition_id,
            was_forced=entry.was_forced,
            reason=entry.reason,
            triggered_by_user_id=entry.triggered_by_user_id,
            transitioned_at=entry.transitioned_at,
            sequence=entry.sequence,
            reverted_at=entry.reverted_at,
        )


_WRITE_ONCE_HISTORY_COLUMNS = (
    "instance_id",
    "from_state_id",
    "to_state_id",
    "trigger_id",
    "transition_id",
    "was_forced",
    "reason",
    "triggered_by_user_id",
    "transitioned_at",
    "sequence",
)


@event.listens_for(TransitionHistoryModel, "before_update")
def prevent_history_rewrite(mapper, connection, target):
    """Allow only the NULL -> timestamp change of ``reverted_at``."""
    state = inspect(target)
    for column in _WRITE_ONCE_HISTORY_COLUMNS:
        if state.attrs[column].history.has_changes():
            raise HistoryImmutableError(
                str(target.id), f"column '{column}' is write-once"
            )
    reverted = state.attrs["reverted_at"].history
    if reverted.has_changes() and any(v is not None for v in reverted.deleted):
        raise HistoryImmutableError(str(target.id), "reverted_at is already set")


@event.listens_for(TransitionHistoryModel, "before_delete")
def prevent_history_delete(mapper, connection, target):
    """History rows are never deleted."""
    raise HistoryImmutableError(str(target.id), "history rows cannot be deleted")
