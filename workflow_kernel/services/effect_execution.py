"""
Effect execution engine.

Responsibility:
    Runs a committed transition's effects.  Effects are sorted by
    ``execution_order`` and then processed in two phases:

    1. Specific handlers.  Every handler registered for an effect's kind
       runs in registration order (no short-circuit).  The effect counts as
       executed once any handler reports success.  With
       ``stop_on_first_handler_failure`` the remaining handlers of that
       effect are skipped after the first failure.
    2. Generic handlers.  The status tuple is folded through every generic
       handler in registration order.

    A non-optional effect that did not execute stops the remaining effects
    when ``continue_on_failure`` is False; those are recorded as skipped.
    Optional effects never stop processing.

Architecture position:
    Kernel > Services.  Called by the transition service after the state
    change is committed; effect outcomes never roll the state back.

Invariants enforced:
    - Deterministic effect order: ``execution_order``, then declaration order.
    - Handlers are awaited one at a time.
    - The whole run is bounded by ``execution_timeout_seconds``.

Failure modes:
    - Handler exceptions are caught, logged and recorded per effect.
    - EffectExecutionTimeoutError when the run exceeds its timeout.
    - HandlerContractViolationError from a misbehaving generic handler.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from types import ModuleType
from typing import Any, Iterable, Sequence

from workflow_kernel.domain.components import TransitionEffect
from workflow_kernel.domain.evaluation import (
    EffectExecutionStatus,
    EffectExecutionSummary,
    TransitionExecutionInfo,
)
from workflow_kernel.domain.instance import StateMachineInstance
from workflow_kernel.exceptions import EffectExecutionTimeoutError
from workflow_kernel.logging_config import get_logger
from workflow_kernel.services.handler_registry import (
    EFFECT_TARGET,
    HandlerInfo,
    HandlerRegistry,
    check_batch_contract,
    handler_name,
    is_cancelled,
    resolve,
)

logger = get_logger("services.effect_execution")

CANCELLED_REASON = "Execution cancelled"
DEFAULT_EXECUTION_TIMEOUT_SECONDS = 300.0


@dataclass(frozen=True)
class EffectExecutionOptions:
    """Engine configuration.

    ``execution_timeout_seconds`` of ``None`` disables the timeout.
    """

    handler_modules: tuple[str, ...] = ()
    continue_on_failure: bool = True
    stop_on_first_handler_failure: bool = False
    execution_timeout_seconds: float | None = DEFAULT_EXECUTION_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.execution_timeout_seconds is not None and self.execution_timeout_seconds <= 0:
            raise ValueError(
                f"execution_timeout_seconds must be positive, got {self.execution_timeout_seconds}"
            )


class EffectExecutionService:
    """Executes transition effects through specific and generic handlers."""

    def __init__(self, options: EffectExecutionOptions | None = None) -> None:
        self._options = options or EffectExecutionOptions()
        self._registry = HandlerRegistry(EFFECT_TARGET, "execute", "execute_all")
        if self._options.handler_modules:
            self.register_modules(self._options.handler_modules)

    @property
    def options(self) -> EffectExecutionOptions:
        return self._options

    # -- registration ------------------------------------------------------

    def register_specific_handler(self, kind: Any, handler: Any) -> None:
        """Register ``handler`` for an effect kind (string or class)."""
        self._registry.register_specific(kind, handler)

    def register_generic_handler(self, handler: Any) -> None:
        self._registry.register_generic(handler)

    def register_modules(self, modules: Iterable[ModuleType | str]) -> int:
        return self._registry.register_modules(modules)

    def describe_specific_handlers(self, kind: str) -> list[HandlerInfo]:
        return self._registry.describe_specific(kind)

    def describe_generic_handlers(self) -> list[HandlerInfo]:
        return self._registry.describe_generic()

    # -- execution ---------------------------------------------------------

    async def execute_effects(
        self,
        effects: Sequence[TransitionEffect],
        instance: StateMachineInstance,
        info: TransitionExecutionInfo,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> EffectExecutionSummary:
        """Run ``effects`` for a committed transition and summarize the outcome."""
        if instance is None:
            raise ValueError("instance is required")
        if info is None:
            raise ValueError("info is required")
        if not effects:
            return EffectExecutionSummary()

        ordered = sorted(effects, key=lambda e: e.execution_order)
        timeout = self._options.execution_timeout_seconds
        t0 = time.monotonic()
        try:
            async with asyncio.timeout(timeout) as scope:
                statuses, completed = await self._run(
                    ordered, instance, info, cancel_event, scope
                )
        except TimeoutError:
            logger.error(
                "effect_execution_timeout",
                extra={
                    "instance_id": str(instance.id),
                    "timeout_seconds": timeout,
                    "effect_count": len(ordered),
                },
            )
            raise EffectExecutionTimeoutError(str(instance.id), timeout) from None

        summary = EffectExecutionSummary(
            statuses=tuple(statuses),
            completed=completed,
            total_duration_ms=(time.monotonic() - t0) * 1000,
        )
        logger.info(
            "effects_executed",
            extra={
                "instance_id": str(instance.id),
                "total_effects": summary.total_effects,
                "successful_effects": summary.successful_effects,
                "failed_effects": summary.failed_effects,
                "completed": completed,
                "duration_ms": round(summary.total_duration_ms, 3),
            },
        )
        return summary

    async def _run(
        self,
        ordered: list[TransitionEffect],
        instance: StateMachineInstance,
        info: TransitionExecutionInfo,
        cancel_event: asyncio.Event | None,
        scope: asyncio.Timeout,
    ) -> tuple[list[EffectExecutionStatus], bool]:
        statuses: list[EffectExecutionStatus] = []
        completed = True

        # Phase 1: specific handlers in execution order
        for index, effect in enumerate(ordered):
            if is_cancelled(cancel_event):
                completed = False
                statuses.extend(_skipped(ordered[index:], CANCELLED_REASON))
                break
            status, finished = await self._execute_specific(
                effect, instance, info, cancel_event, scope
            )
            statuses.append(status)
            if not finished:
                completed = False
                statuses.extend(_skipped(ordered[index + 1:], CANCELLED_REASON))
                break
            if status.is_failure and not self._options.continue_on_failure:
                statuses.extend(_skipped(
                    ordered[index + 1:],
                    f"Skipped after non-optional effect '{effect.describe()}' failed",
                ))
                break

        # Phase 2: fold the statuses through generic handlers
        if completed:
            for handler in self._registry.generic_handlers():
                if is_cancelled(cancel_event):
                    completed = False
                    break
                statuses = await self._apply_generic(handler, statuses, instance, info)
                _check_deadline(scope)

        return statuses, completed

    async def _execute_specific(
        self,
        effect: TransitionEffect,
        instance: StateMachineInstance,
        info: TransitionExecutionInfo,
        cancel_event: asyncio.Event | None,
        scope: asyncio.Timeout,
    ) -> tuple[EffectExecutionStatus, bool]:
        """Run every handler of the effect's kind.  Returns (status, completed)."""
        status = EffectExecutionStatus(effect)
        handlers = self._registry.specific_handlers(effect.kind)
        if not handlers:
            return status.fail(
                f"No handler registered for effect kind '{effect.kind}'"
            ), True

        t0 = time.monotonic()
        handler_used: str | None = None
        reasons: list[str] = []
        finished = True
        for handler in handlers:
            if is_cancelled(cancel_event):
                reasons.append(CANCELLED_REASON)
                finished = False
                break
            name = handler_name(handler)
            try:
                succeeded = await resolve(handler.execute(effect, instance, info))
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "effect_handler_fault",
                    extra={
                        "handler": name,
                        "effect_kind": effect.kind,
                        "optional": effect.is_optional,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                )
                reasons.append(f"{name} raised {type(exc).__name__}: {exc}")
                succeeded = False
            else:
                if not succeeded:
                    reasons.append(f"{name} reported failure for '{effect.describe()}'")
            _check_deadline(scope)
            if succeeded:
                handler_used = handler_used or name
            elif self._options.stop_on_first_handler_failure:
                break

        duration_ms = (time.monotonic() - t0) * 1000
        if handler_used is not None:
            return replace(
                status.succeed(handler_used),
                was_processed_by_specific_handler=True,
                duration_ms=duration_ms,
            ), finished
        return replace(
            status.fail("; ".join(reasons)), duration_ms=duration_ms
        ), finished

    async def _apply_generic(
        self,
        handler: Any,
        statuses: list[EffectExecutionStatus],
        instance: StateMachineInstance,
        info: TransitionExecutionInfo,
    ) -> list[EffectExecutionStatus]:
        name = handler_name(handler)
        try:
            returned = await resolve(handler.execute_all(tuple(statuses), instance, info))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "effect_handler_fault",
                extra={
                    "handler": name,
                    "effect_kind": None,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            reason = f"Generic handler {name} raised {type(exc).__name__}: {exc}"
            return [
                s if s.is_executed else s.fail(_join(s.failure_reason, reason))
                for s in statuses
            ]
        return check_batch_contract(name, statuses, returned, "effect")


def _skipped(effects: Sequence[TransitionEffect], reason: str) -> list[EffectExecutionStatus]:
    return [EffectExecutionStatus(e, failure_reason=reason, skipped=True) for e in effects]


def _join(earlier: str | None, reason: str) -> str:
    return f"{earlier}; {reason}" if earlier else reason


def _check_deadline(scope: asyncio.Timeout) -> None:
    # A synchronous handler never yields, so the timeout cannot cancel it
    deadline = scope.when()
    if deadline is not None and asyncio.get_running_loop().time() >= deadline:
        raise TimeoutError
