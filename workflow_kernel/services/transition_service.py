"""
workflow_kernel.services.transition_service -- Transition execution and revert.

Responsibility:
    Drives an instance through its definition: finds the candidate
    transitions for a trigger, asks the requirement engine which one may
    run, commits the first satisfied candidate on the instance, persists it,
    and then runs the transition's effects.  Also performs forced
    (administrative) transitions and reverts of the most recent history.

Architecture position:
    Kernel > Services.  Coordinates the requirement engine, the effect
    engine, the instance mutations and the optional store.  Contains no
    handler dispatch logic of its own.

Invariants enforced:
    - A failed trigger request never mutates the instance.
    - Candidates are tried in definition order; the first whose
      requirements are all met wins.
    - Effects run after the state change is committed; effect failures
      never roll it back.
    - Revert is all-or-nothing and only flags history entries.
    - Business failures are returned as ``Result.fail``; only programming
      errors (missing instance, actor or trigger) raise.

Failure modes (returned, never raised):
    - Transition.NoAvailableTransitions
    - Transition.RequirementsNotMet
    - Transition.EvaluationCancelled
    - Transition.MissingReason
    - Trigger.NotFound
    - State.NotInDefinition
    - Revert.InvalidCount / Revert.MissingReason / Revert.InsufficientHistory

A store error (for example OptimisticLockError) propagates, and the
instance is left exactly as it was before the call.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Mapping
from uuid import UUID

from workflow_kernel.domain.definition import State, Transition, Trigger
from workflow_kernel.domain.evaluation import (
    EffectExecutionSummary,
    RequirementEvaluationSummary,
    TransitionExecutionInfo,
)
from workflow_kernel.domain.instance import RevertInfo, StateMachineInstance
from workflow_kernel.domain.results import Error, Result
from workflow_kernel.exceptions import WorkflowKernelError
from workflow_kernel.logging_config import LogContext, get_logger
from workflow_kernel.services.effect_execution import EffectExecutionService
from workflow_kernel.services.requirement_evaluation import RequirementEvaluationService
from workflow_kernel.services.store import StateMachineStore

logger = get_logger("services.transition")

# Trace message and outcome codes for structured logging and traceability
TRACE_TYPE_STATE_MACHINE_TRANSITION = "STATE_MACHINE_TRANSITION"
OUTCOME_TRANSITIONED = "transitioned"
OUTCOME_FORCED = "forced"
OUTCOME_REVERTED = "reverted"
OUTCOME_NO_TRANSITION = "no_transition"
OUTCOME_REQUIREMENTS_NOT_MET = "requirements_not_met"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_REJECTED = "rejected"

# Error codes
NO_AVAILABLE_TRANSITIONS = "Transition.NoAvailableTransitions"
REQUIREMENTS_NOT_MET = "Transition.RequirementsNotMet"
EVALUATION_CANCELLED = "Transition.EvaluationCancelled"
MISSING_FORCE_REASON = "Transition.MissingReason"
TRIGGER_NOT_FOUND = "Trigger.NotFound"
STATE_NOT_IN_DEFINITION = "State.NotInDefinition"
REVERT_INVALID_COUNT = "Revert.InvalidCount"
REVERT_MISSING_REASON = "Revert.MissingReason"
REVERT_INSUFFICIENT_HISTORY = "Revert.InsufficientHistory"


def _emit_transition_trace(
    instance: StateMachineInstance,
    action: str,
    from_state: str,
    outcome: str,
    reason: str,
    duration_ms: float,
    to_state: str | None = None,
    history_entry_id: UUID | None = None,
    outcome_sink: Callable[[dict], None] | None = None,
) -> None:
    """Emit a structured state machine transition record for traceability."""
    record: dict[str, Any] = {
        "trace_type": TRACE_TYPE_STATE_MACHINE_TRANSITION,
        "ts": datetime.now(UTC).isoformat(),
        "definition": instance.definition.name,
        "definition_version": instance.definition.version,
        "instance_id": str(instance.id),
        "action": action,
        "from_state": from_state,
        "outcome": outcome,
        "reason": reason,
        "duration_ms": round(duration_ms, 3),
    }
    if to_state is not None:
        record["to_state"] = to_state
    if history_entry_id is not None:
        record["history_entry_id"] = str(history_entry_id)
    if instance.owner_entity_type is not None:
        record["owner_entity_type"] = instance.owner_entity_type
        record["owner_entity_id"] = str(instance.owner_entity_id)
    record.update(LogContext.get_all())
    logger.info("state_machine_transition", extra=record)
    record["message"] = "state_machine_transition"
    if outcome_sink is not None:
        outcome_sink(record)


@dataclass(frozen=True)
class TransitionResult:
    """Value of a successful trigger or forced transition."""

    info: TransitionExecutionInfo
    requirement_summary: RequirementEvaluationSummary | None = None
    effect_summary: EffectExecutionSummary | None = None
    effect_error: str | None = None

    @property
    def from_state(self) -> State:
        return self.info.from_state

    @property
    def to_state(self) -> State:
        return self.info.to_state

    @property
    def effects_succeeded(self) -> bool:
        if self.effect_error is not None:
            return False
        return self.effect_summary is None or self.effect_summary.all_effects_executed


@dataclass(frozen=True)
class AvailableTransition:
    """A transition reachable from the current state, with its evaluation."""

    transition: Transition
    trigger: Trigger
    target_state: State
    evaluation: RequirementEvaluationSummary

    @property
    def can_execute(self) -> bool:
        return self.evaluation.all_requirements_met


class StateMachineTransitionService:
    """Executes, forces and reverts transitions on state machine instances.

    When ``outcome_sink`` is provided, a structured trace record is passed
    to it for every outcome.
    """

    def __init__(
        self,
        requirement_service: RequirementEvaluationService,
        effect_service: EffectExecutionService,
        store: StateMachineStore | None = None,
        outcome_sink: Callable[[dict], None] | None = None,
    ) -> None:
        self._requirements = requirement_service
        self._effects = effect_service
        self._store = store
        self._outcome_sink = outcome_sink

    # -- evaluation --------------------------------------------------------

    async def evaluate_transition(
        self,
        transition: Transition,
        instance: StateMachineInstance,
        context: Mapping[str, Any] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> RequirementEvaluationSummary:
        if transition is None:
            raise ValueError("transition is required")
        return await self._requirements.evaluate_requirements(
            transition.requirements, instance, context, cancel_event=cancel_event
        )

    async def get_available_transitions(
        self,
        instance: StateMachineInstance,
        context: Mapping[str, Any] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> list[AvailableTransition]:
        """Every transition from the current state, each with its evaluation."""
        _require_instance(instance)
        definition = instance.definition
        available: list[AvailableTransition] = []
        for transition in instance.get_available_transitions():
            evaluation = await self.evaluate_transition(
                transition, instance, context, cancel_event=cancel_event
            )
            available.append(AvailableTransition(
                transition=transition,
                trigger=definition.trigger_by_id(transition.trigger_id),
                target_state=definition.state_by_id(transition.to_state_id),
                evaluation=evaluation,
            ))
        return available

    # -- trigger-driven transitions ---------------------------------------

    async def try_transition(
        self,
        instance: StateMachineInstance,
        trigger: Trigger,
        actor_id: UUID,
        context: Mapping[str, Any] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> Result[TransitionResult]:
        """Fire ``trigger`` on ``instance``.

        The first candidate (definition order) whose requirements are all met
        is executed.  Otherwise the failure carries the reasons of the
        candidate with the fewest unmet requirements.
        """
        _require_instance(instance)
        if trigger is None:
            raise ValueError("trigger is required")
        if actor_id is None:
            raise ValueError("actor_id is required")

        t0 = time.monotonic()
        with LogContext.bind(instance_id=instance.id, actor_id=actor_id, trigger_id=trigger.id):
            from_state = instance.current_state
            candidates = instance.get_transitions_for_trigger(trigger)
            if not candidates:
                message = (
                    f"No transitions available for trigger '{trigger.name}' "
                    f"from state '{from_state.name}'"
                )
                self._trace(instance, trigger.name, from_state.name,
                            OUTCOME_NO_TRANSITION, message, t0)
                return Result.fail(Error.business_rule(NO_AVAILABLE_TRANSITIONS, message))

            chosen: tuple[Transition, RequirementEvaluationSummary] | None = None
            best: RequirementEvaluationSummary | None = None
            for candidate in candidates:
                summary = await self.evaluate_transition(
                    candidate, instance, context, cancel_event=cancel_event
                )
                if not summary.completed:
                    message = f"Requirement evaluation for trigger '{trigger.name}' was cancelled"
                    self._trace(instance, trigger.name, from_state.name,
                                OUTCOME_CANCELLED, message, t0)
                    return Result.fail(Error.business_rule(EVALUATION_CANCELLED, message))
                if summary.all_requirements_met:
                    chosen = (candidate, summary)
                    break
                if best is None or len(summary.unfulfilled) < len(best.unfulfilled):
                    best = summary

            if chosen is None:
                reasons = tuple(best.failure_reasons) if best is not None else ()
                message = (
                    f"Requirements not met for trigger '{trigger.name}' "
                    f"from state '{from_state.name}'"
                )
                self._trace(instance, trigger.name, from_state.name,
                            OUTCOME_REQUIREMENTS_NOT_MET, "; ".join(reasons) or message, t0)
                return Result.fail(Error.business_rule(REQUIREMENTS_NOT_MET, message, reasons))

            transition, requirement_summary = chosen
            with instance.rollback_on_error():
                entry = instance.execute_transition(transition, actor_id)
                self._save(instance)

            info = TransitionExecutionInfo(
                instance_id=instance.id,
                from_state=from_state,
                to_state=instance.current_state,
                trigger=trigger,
                transition=transition,
                history_entry=entry,
                actor_id=actor_id,
                transitioned_at=entry.transitioned_at,
                context=context,
            )
            effect_summary, effect_error = await self._run_effects(
                transition, instance, info, cancel_event
            )
            self._trace(
                instance, trigger.name, from_state.name, OUTCOME_TRANSITIONED,
                effect_error or "", t0, to_state=info.to_state.name,
                history_entry_id=entry.id,
            )
            return Result.ok(TransitionResult(
                info=info,
                requirement_summary=requirement_summary,
                effect_summary=effect_summary,
                effect_error=effect_error,
            ))

    async def try_transition_by_name(
        self,
        instance: StateMachineInstance,
        trigger_name: str,
        actor_id: UUID,
        context: Mapping[str, Any] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> Result[TransitionResult]:
        _require_instance(instance)
        trigger = instance.get_trigger(trigger_name)
        if trigger is None:
            return Result.fail(Error.not_found(
                TRIGGER_NOT_FOUND,
                f"Trigger '{trigger_name}' is not defined in '{instance.definition.name}'",
            ))
        return await self.try_transition(
            instance, trigger, actor_id, context, cancel_event=cancel_event
        )

    # -- forced transitions ------------------------------------------------

    async def force_transition(
        self,
        instance: StateMachineInstance,
        target_state: State,
        reason: str,
        actor_id: UUID,
    ) -> Result[TransitionResult]:
        """Move to ``target_state`` without evaluating requirements or running effects."""
        _require_instance(instance)
        if target_state is None:
            raise ValueError("target_state is required")
        if actor_id is None:
            raise ValueError("actor_id is required")

        t0 = time.monotonic()
        with LogContext.bind(instance_id=instance.id, actor_id=actor_id):
            from_state = instance.current_state
            if not instance.definition.contains_state(target_state):
                message = (
                    f"State '{target_state.name}' is not part of definition "
                    f"'{instance.definition.name}'"
                )
                self._trace(instance, "force", from_state.name, OUTCOME_REJECTED, message, t0)
                return Result.fail(Error.not_found(STATE_NOT_IN_DEFINITION, message))
            if not reason or not reason.strip():
                message = "A forced transition requires a reason"
                self._trace(instance, "force", from_state.name, OUTCOME_REJECTED, message, t0)
                return Result.fail(Error.validation(MISSING_FORCE_REASON, message))

            with instance.rollback_on_error():
                entry = instance.force_transition(target_state, reason, actor_id)
                self._save(instance)
            info = TransitionExecutionInfo(
                instance_id=instance.id,
                from_state=from_state,
                to_state=target_state,
                trigger=None,
                transition=None,
                history_entry=entry,
                actor_id=actor_id,
                transitioned_at=entry.transitioned_at,
                was_forced=True,
                reason=reason,
            )
            self._trace(instance, "force", from_state.name, OUTCOME_FORCED, reason, t0,
                        to_state=target_state.name, history_entry_id=entry.id)
            return Result.ok(TransitionResult(info=info))

    # -- revert ------------------------------------------------------------

    async def revert_transitions(
        self,
        instance: StateMachineInstance,
        count: int,
        reason: str,
        actor_id: UUID,
    ) -> Result[RevertInfo]:
        """Undo the ``count`` most recent non-reverted transitions."""
        _require_instance(instance)
        if actor_id is None:
            raise ValueError("actor_id is required")

        t0 = time.monotonic()
        with LogContext.bind(instance_id=instance.id, actor_id=actor_id):
            from_state = instance.current_state
            error: Error | None = None
            if count < 1:
                error = Error.validation(
                    REVERT_INVALID_COUNT, f"Revert count must be at least 1, got {count}"
                )
            elif not reason or not reason.strip():
                error = Error.validation(REVERT_MISSING_REASON, "A revert requires a reason")
            else:
                available = len(instance.revert_candidates(count))
                if available < count:
                    error = Error.business_rule(
                        REVERT_INSUFFICIENT_HISTORY,
                        f"Cannot revert {count} transition(s); only {available} "
                        f"non-reverted transition(s) in history",
                    )
            if error is not None:
                self._trace(instance, "revert", from_state.name, OUTCOME_REJECTED,
                            error.message, t0)
                return Result.fail(error)

            with instance.rollback_on_error():
                revert = instance.revert(count, reason, actor_id)
                self._save(instance)
            to_state = instance.current_state
            logger.info(
                "transitions_reverted",
                extra={
                    "reverted_count": revert.reverted_count,
                    "previous_state": from_state.name,
                    "new_state": to_state.name,
                    "reverted_entry_ids": [str(e.id) for e in revert.reverted_entries],
                    "revert_reason": reason,
                },
            )
            self._trace(instance, "revert", from_state.name, OUTCOME_REVERTED, reason, t0,
                        to_state=to_state.name)
            return Result.ok(revert)

    async def revert_last_transition(
        self,
        instance: StateMachineInstance,
        reason: str,
        actor_id: UUID,
    ) -> Result[RevertInfo]:
        return await self.revert_transitions(instance, 1, reason, actor_id)

    # -- internals ---------------------------------------------------------

    async def _run_effects(
        self,
        transition: Transition,
        instance: StateMachineInstance,
        info: TransitionExecutionInfo,
        cancel_event: asyncio.Event | None,
    ) -> tuple[EffectExecutionSummary | None, str | None]:
        """Run effects after commit.  Faults are reported, never propagated."""
        try:
            summary = await self._effects.execute_effects(
                transition.effects, instance, info, cancel_event=cancel_event
            )
        except WorkflowKernelError as exc:
            logger.error(
                "effect_execution_failed",
                extra={"transition_id": str(transition.id)},
                exc_info=True,
            )
            return None, str(exc)
        return summary, None

    def _save(self, instance: StateMachineInstance) -> None:
        if self._store is not None:
            self._store.save_instance(instance)

    def _trace(
        self,
        instance: StateMachineInstance,
        action: str,
        from_state: str,
        outcome: str,
        reason: str,
        t0: float,
        *,
        to_state: str | None = None,
        history_entry_id: UUID | None = None,
    ) -> None:
        _emit_transition_trace(
            instance=instance,
            action=action,
            from_state=from_state,
            outcome=outcome,
            reason=reason,
            duration_ms=(time.monotonic() - t0) * 1000,
            to_state=to_state,
            history_entry_id=history_entry_id,
            outcome_sink=self._outcome_sink,
        )


def _require_instance(instance: StateMachineInstance | None) -> None:
    if instance is None:
        raise ValueError("instance is required")
