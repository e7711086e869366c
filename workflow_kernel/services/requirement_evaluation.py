"""
Requirement evaluation engine.

Responsibility:
    Decides whether a transition's requirements are currently satisfied for
    an instance.  Two phases, always in this order:

    1. Specific handlers.  For each requirement, the handlers registered for
       its ``kind`` run in registration order.  The first that returns True
       fulfils the requirement and the rest are skipped (short-circuit OR).
       A requirement without handlers stays unfulfilled.
    2. Generic handlers.  The full status tuple is folded through every
       generic handler in registration order; each sees the previous
       handler's output.

Architecture position:
    Kernel > Services.  Stateless apart from the handler registry.

Invariants enforced:
    - Handlers are awaited one at a time; never concurrently.
    - A faulting handler affects only its own requirement's status.
    - Generic handlers return the same requirements in the same order.
    - An empty requirement list is trivially satisfied.

Failure modes:
    - Handler exceptions are caught, logged and recorded as failure reasons.
    - HandlerContractViolationError when a generic handler adds, drops or
      reorders statuses.
    - A set ``cancel_event`` stops the run; the summary is not completed
      and counts as failure.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from types import ModuleType
from typing import Any, Iterable, Mapping, Sequence

from workflow_kernel.domain.components import TransitionRequirement
from workflow_kernel.domain.evaluation import (
    RequirementEvaluationStatus,
    RequirementEvaluationSummary,
)
from workflow_kernel.domain.instance import StateMachineInstance
from workflow_kernel.logging_config import get_logger
from workflow_kernel.services.handler_registry import (
    REQUIREMENT_TARGET,
    HandlerInfo,
    HandlerRegistry,
    check_batch_contract,
    handler_name,
    is_cancelled,
    resolve,
)

logger = get_logger("services.requirement_evaluation")

CANCELLED_REASON = "Evaluation cancelled"


@dataclass(frozen=True)
class RequirementEvaluationOptions:
    """Engine configuration.  ``handler_modules`` are registered at construction."""

    handler_modules: tuple[str, ...] = ()


class RequirementEvaluationService:
    """Evaluates transition requirements through specific and generic handlers."""

    def __init__(self, options: RequirementEvaluationOptions | None = None) -> None:
        self._options = options or RequirementEvaluationOptions()
        self._registry = HandlerRegistry(REQUIREMENT_TARGET, "evaluate", "evaluate_all")
        if self._options.handler_modules:
            self.register_modules(self._options.handler_modules)

    @property
    def options(self) -> RequirementEvaluationOptions:
        return self._options

    # -- registration ------------------------------------------------------

    def register_specific_handler(self, kind: Any, handler: Any) -> None:
        """Register ``handler`` for a requirement kind (string or class)."""
        self._registry.register_specific(kind, handler)

    def register_generic_handler(self, handler: Any) -> None:
        self._registry.register_generic(handler)

    def register_modules(self, modules: Iterable[ModuleType | str]) -> int:
        return self._registry.register_modules(modules)

    def describe_specific_handlers(self, kind: str) -> list[HandlerInfo]:
        return self._registry.describe_specific(kind)

    def describe_generic_handlers(self) -> list[HandlerInfo]:
        return self._registry.describe_generic()

    # -- evaluation --------------------------------------------------------

    async def evaluate_requirements(
        self,
        requirements: Sequence[TransitionRequirement],
        instance: StateMachineInstance,
        context: Mapping[str, Any] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> RequirementEvaluationSummary:
        """Run both phases over ``requirements`` and aggregate the result."""
        if instance is None:
            raise ValueError("instance is required")
        if not requirements:
            return RequirementEvaluationSummary()

        t0 = time.monotonic()
        ctx: Mapping[str, Any] = context or {}
        completed = True

        # Phase 1: specific handlers, one requirement at a time
        statuses: list[RequirementEvaluationStatus] = []
        for requirement in requirements:
            if is_cancelled(cancel_event):
                completed = False
                statuses.append(
                    RequirementEvaluationStatus(requirement, failure_reason=CANCELLED_REASON)
                )
                continue
            status, finished = await self._evaluate_specific(
                requirement, instance, ctx, cancel_event
            )
            statuses.append(status)
            completed = completed and finished

        # Phase 2: fold the statuses through generic handlers
        if completed:
            for handler in self._registry.generic_handlers():
                if is_cancelled(cancel_event):
                    completed = False
                    break
                statuses = await self._apply_generic(handler, statuses, instance, ctx)

        summary = RequirementEvaluationSummary(
            statuses=tuple(statuses),
            completed=completed,
            total_duration_ms=(time.monotonic() - t0) * 1000,
        )
        logger.info(
            "requirements_evaluated",
            extra={
                "instance_id": str(instance.id),
                "requirement_count": len(statuses),
                "fulfilled_count": len(summary.fulfilled),
                "all_requirements_met": summary.all_requirements_met,
                "completed": completed,
                "duration_ms": round(summary.total_duration_ms, 3),
            },
        )
        return summary

    async def _evaluate_specific(
        self,
        requirement: TransitionRequirement,
        instance: StateMachineInstance,
        context: Mapping[str, Any],
        cancel_event: asyncio.Event | None,
    ) -> tuple[RequirementEvaluationStatus, bool]:
        """Short-circuit OR over the kind's handlers.  Returns (status, completed)."""
        status = RequirementEvaluationStatus(requirement)
        handlers = self._registry.specific_handlers(requirement.kind)
        if not handlers:
            return status.reject(
                f"No handler registered for requirement kind '{requirement.kind}'"
            ), True

        t0 = time.monotonic()
        reasons: list[str] = []
        for handler in handlers:
            if is_cancelled(cancel_event):
                reasons.append(CANCELLED_REASON)
                return _timed(status.reject("; ".join(reasons)), t0), False
            name = handler_name(handler)
            try:
                fulfilled = await resolve(handler.evaluate(requirement, instance, context))
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "requirement_handler_fault",
                    extra={
                        "handler": name,
                        "requirement_kind": requirement.kind,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                )
                reasons.append(f"{name} raised {type(exc).__name__}: {exc}")
                continue
            if fulfilled:
                fulfilled_status = RequirementEvaluationStatus(
                    requirement,
                    is_fulfilled=True,
                    was_processed_by_specific_handler=True,
                    handler_used=name,
                )
                return _timed(fulfilled_status, t0), True
            reasons.append(f"{name} rejected '{requirement.describe()}'")

        return _timed(status.reject("; ".join(reasons)), t0), True

    async def _apply_generic(
        self,
        handler: Any,
        statuses: list[RequirementEvaluationStatus],
        instance: StateMachineInstance,
        context: Mapping[str, Any],
    ) -> list[RequirementEvaluationStatus]:
        name = handler_name(handler)
        try:
            returned = await resolve(handler.evaluate_all(tuple(statuses), instance, context))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "requirement_handler_fault",
                extra={
                    "handler": name,
                    "requirement_kind": None,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            reason = f"Generic handler {name} raised {type(exc).__name__}: {exc}"
            return [
                s if s.is_fulfilled else s.reject(_join(s.failure_reason, reason))
                for s in statuses
            ]
        return check_batch_contract(name, statuses, returned, "requirement")


def _timed(status: RequirementEvaluationStatus, t0: float) -> RequirementEvaluationStatus:
    return replace(status, duration_ms=(time.monotonic() - t0) * 1000)


def _join(earlier: str | None, reason: str) -> str:
    return f"{earlier}; {reason}" if earlier else reason
