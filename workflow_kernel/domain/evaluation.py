"""
Evaluation records and handler contracts.

Responsibility
--------------
Transient, per-call records produced by the requirement and effect engines,
plus the structural protocols handlers implement.  Nothing here is
persisted; every engine call builds fresh records.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects, zero I/O.

Invariants enforced
-------------------
* Status records are frozen.  Engines and generic handlers produce new
  records (``dataclasses.replace``) instead of mutating shared ones.
* A summary whose run did not complete is never a success.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Mapping, Protocol, Sequence
from uuid import UUID

from workflow_kernel.domain.components import TransitionEffect, TransitionRequirement

if TYPE_CHECKING:
    from workflow_kernel.domain.definition import State, Transition, Trigger
    from workflow_kernel.domain.instance import StateMachineInstance, TransitionHistoryEntry


# =========================================================================
# Requirement evaluation
# =========================================================================


@dataclass(frozen=True)
class RequirementEvaluationStatus:
    """Outcome of evaluating one requirement."""

    requirement: TransitionRequirement
    is_fulfilled: bool = False
    was_processed_by_specific_handler: bool = False
    handler_used: str | None = None
    failure_reason: str | None = None
    duration_ms: float = 0.0

    @property
    def kind(self) -> str:
        return self.requirement.kind

    def fulfil(self, handler_used: str) -> RequirementEvaluationStatus:
        """Return a copy marked fulfilled by ``handler_used``."""
        return replace(self, is_fulfilled=True, handler_used=handler_used,
                       failure_reason=None)

    def reject(self, reason: str) -> RequirementEvaluationStatus:
        """Return a copy marked unfulfilled with ``reason``."""
        return replace(self, is_fulfilled=False, failure_reason=reason)


@dataclass(frozen=True)
class RequirementEvaluationSummary:
    """Aggregate of one requirement evaluation run."""

    statuses: tuple[RequirementEvaluationStatus, ...] = ()
    completed: bool = True
    total_duration_ms: float = 0.0

    @property
    def all_requirements_met(self) -> bool:
        return self.completed and all(s.is_fulfilled for s in self.statuses)

    @property
    def fulfilled(self) -> list[RequirementEvaluationStatus]:
        return [s for s in self.statuses if s.is_fulfilled]

    @property
    def unfulfilled(self) -> list[RequirementEvaluationStatus]:
        return [s for s in self.statuses if not s.is_fulfilled]

    @property
    def failure_reasons(self) -> list[str]:
        reasons = [
            s.failure_reason or f"Requirement '{s.requirement.describe()}' not fulfilled"
            for s in self.unfulfilled
        ]
        if not self.completed:
            reasons.append("Requirement evaluation did not complete")
        return reasons


# =========================================================================
# Effect execution
# =========================================================================


@dataclass(frozen=True)
class EffectExecutionStatus:
    """Outcome of executing one effect."""

    effect: TransitionEffect
    is_executed: bool = False
    was_processed_by_specific_handler: bool = False
    handler_used: str | None = None
    failure_reason: str | None = None
    duration_ms: float = 0.0
    skipped: bool = False

    @property
    def kind(self) -> str:
        return self.effect.kind

    @property
    def is_failure(self) -> bool:
        """True when a non-optional effect did not execute."""
        return not self.is_executed and not self.effect.is_optional

    def succeed(self, handler_used: str) -> EffectExecutionStatus:
        return replace(self, is_executed=True, handler_used=handler_used,
                       failure_reason=None)

    def fail(self, reason: str) -> EffectExecutionStatus:
        return replace(self, is_executed=False, failure_reason=reason)


@dataclass(frozen=True)
class EffectExecutionSummary:
    """Aggregate of one effect execution run."""

    statuses: tuple[EffectExecutionStatus, ...] = ()
    completed: bool = True
    total_duration_ms: float = 0.0

    @property
    def total_effects(self) -> int:
        return len(self.statuses)

    @property
    def successful_effects(self) -> int:
        return sum(1 for s in self.statuses if s.is_executed)

    @property
    def failed_effects(self) -> int:
        return sum(1 for s in self.statuses if s.is_failure)

    @property
    def all_effects_executed(self) -> bool:
        return self.completed and self.failed_effects == 0

    @property
    def failure_reasons(self) -> list[str]:
        return [
            s.failure_reason or f"Effect '{s.effect.describe()}' not executed"
            for s in self.statuses
            if not s.is_executed
        ]


@dataclass(frozen=True)
class TransitionExecutionInfo:
    """Describes a committed transition; handed to effect handlers."""

    instance_id: UUID
    from_state: State
    to_state: State
    trigger: Trigger | None
    transition: Transition | None
    history_entry: TransitionHistoryEntry
    actor_id: UUID
    transitioned_at: datetime
    was_forced: bool = False
    reason: str | None = None
    context: Mapping[str, Any] | None = None


# =========================================================================
# Handler contracts
# =========================================================================


class RequirementHandler(Protocol):
    """Decides one requirement kind.  Returns True when satisfied."""

    def evaluate(
        self,
        requirement: Any,
        instance: StateMachineInstance,
        context: Mapping[str, Any],
    ) -> Awaitable[bool] | bool: ...


class GenericRequirementHandler(Protocol):
    """Sees every status of a run; returns the same statuses, possibly flipped."""

    def evaluate_all(
        self,
        statuses: tuple[RequirementEvaluationStatus, ...],
        instance: StateMachineInstance,
        context: Mapping[str, Any],
    ) -> Awaitable[Sequence[RequirementEvaluationStatus]] | Sequence[RequirementEvaluationStatus]: ...


class EffectHandler(Protocol):
    """Performs one effect kind.  Returns True on success."""

    def execute(
        self,
        effect: Any,
        instance: StateMachineInstance,
        info: TransitionExecutionInfo,
    ) -> Awaitable[bool] | bool: ...


class GenericEffectHandler(Protocol):
    """Sees every effect status of a run; returns the same statuses."""

    def execute_all(
        self,
        statuses: tuple[EffectExecutionStatus, ...],
        instance: StateMachineInstance,
        info: TransitionExecutionInfo,
    ) -> Awaitable[Sequence[EffectExecutionStatus]] | Sequence[EffectExecutionStatus]: ...
