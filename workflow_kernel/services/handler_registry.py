"""
Handler registry -- explicit, lock-guarded handler lists.

Responsibility:
    Holds the specific handlers (keyed by component ``kind``) and the
    generic handlers for one engine, in registration order.  Handler
    modules are registered through an explicit ``STATE_MACHINE_HANDLERS``
    list; there is no scanning of classes or type introspection.

Architecture position:
    Kernel > Services.  Used by the requirement and effect engines.

Invariants enforced:
    - Registration order is dispatch order.
    - Mutations are serialized by a lock; readers receive tuple snapshots,
      so registering at runtime never disturbs an evaluation in flight.

Failure modes:
    - HandlerRegistrationError: module missing ``STATE_MACHINE_HANDLERS``,
      malformed entry, unknown target, or an import failure.

Handler module layout::

    # myapp/approval_handlers.py
    STATE_MACHINE_HANDLERS = [
        HandlerRegistration("requirement", MinimumApprovalsHandler(), kind="minimum_approvals"),
        HandlerRegistration("requirement", AdminOverride()),          # generic
        HandlerRegistration("effect", EmailHandler(), kind="send_notification"),
    ]
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import threading
from dataclasses import dataclass
from types import ModuleType
from typing import Any, Iterable, Sequence

from workflow_kernel.domain.components import component_kind
from workflow_kernel.exceptions import (
    HandlerContractViolationError,
    HandlerRegistrationError,
)
from workflow_kernel.logging_config import get_logger

logger = get_logger("services.handler_registry")

REQUIREMENT_TARGET = "requirement"
EFFECT_TARGET = "effect"
HANDLER_LIST_ATTRIBUTE = "STATE_MACHINE_HANDLERS"


@dataclass(frozen=True)
class HandlerRegistration:
    """One entry of a module's ``STATE_MACHINE_HANDLERS`` list.

    ``kind`` is a component kind string or a component class; ``None``
    registers the handler as generic.
    """

    target: str
    handler: Any
    kind: Any = None


@dataclass(frozen=True)
class HandlerInfo:
    """Introspection record for a registered handler."""

    name: str
    kind: str | None
    position: int

    @property
    def is_generic(self) -> bool:
        return self.kind is None


def handler_name(handler: Any) -> str:
    """Display name for a handler: explicit ``name`` attribute, else its class."""
    name = getattr(handler, "name", None)
    if isinstance(name, str) and name:
        return name
    return type(handler).__name__


class HandlerRegistry:
    """Ordered specific and generic handlers for one engine target."""

    def __init__(self, target: str, specific_method: str, generic_method: str) -> None:
        self.target = target
        self._specific_method = specific_method
        self._generic_method = generic_method
        self._specific: dict[str, tuple[Any, ...]] = {}
        self._generic: tuple[Any, ...] = ()
        self._lock = threading.Lock()

    def register_specific(self, kind: Any, handler: Any) -> None:
        key = kind if isinstance(kind, str) else component_kind(kind)
        if not key:
            raise HandlerRegistrationError(handler_name(handler), "empty component kind")
        self._require_method(handler, self._specific_method)
        with self._lock:
            # Copy-on-write so readers never see a dict mid-update
            self._specific = {**self._specific, key: self._specific.get(key, ()) + (handler,)}
        logger.debug(
            "handler_registered",
            extra={"target": self.target, "kind": key, "handler": handler_name(handler)},
        )

    def register_generic(self, handler: Any) -> None:
        self._require_method(handler, self._generic_method)
        with self._lock:
            self._generic = self._generic + (handler,)
        logger.debug(
            "handler_registered",
            extra={"target": self.target, "kind": None, "handler": handler_name(handler)},
        )

    def specific_handlers(self, kind: str) -> tuple[Any, ...]:
        return self._specific.get(kind, ())

    def generic_handlers(self) -> tuple[Any, ...]:
        return self._generic

    def registered_kinds(self) -> tuple[str, ...]:
        return tuple(self._specific)

    def describe_specific(self, kind: str) -> list[HandlerInfo]:
        return [
            HandlerInfo(name=handler_name(h), kind=kind, position=i)
            for i, h in enumerate(self.specific_handlers(kind))
        ]

    def describe_generic(self) -> list[HandlerInfo]:
        return [
            HandlerInfo(name=handler_name(h), kind=None, position=i)
            for i, h in enumerate(self.generic_handlers())
        ]

    def register_modules(self, modules: Iterable[ModuleType | str]) -> int:
        """Register this target's entries from each module's handler list.

        Returns the number of handlers registered.
        """
        count = 0
        for ref in modules:
            module = _import_module(ref)
            entries = getattr(module, HANDLER_LIST_ATTRIBUTE, None)
            if entries is None:
                raise HandlerRegistrationError(
                    module.__name__, f"module has no {HANDLER_LIST_ATTRIBUTE} list"
                )
            for entry in entries:
                if not isinstance(entry, HandlerRegistration):
                    raise HandlerRegistrationError(
                        module.__name__, f"entry {entry!r} is not a HandlerRegistration"
                    )
                if entry.target not in (REQUIREMENT_TARGET, EFFECT_TARGET):
                    raise HandlerRegistrationError(
                        module.__name__, f"unknown handler target '{entry.target}'"
                    )
                if entry.target != self.target:
                    continue
                if entry.kind is None:
                    self.register_generic(entry.handler)
                else:
                    self.register_specific(entry.kind, entry.handler)
                count += 1
            logger.info(
                "handler_module_registered",
                extra={"target": self.target, "handler_module": module.__name__},
            )
        return count

    def clear(self) -> None:
        with self._lock:
            self._specific = {}
            self._generic = ()

    def _require_method(self, handler: Any, method: str) -> None:
        if not callable(getattr(handler, method, None)):
            raise HandlerRegistrationError(
                handler_name(handler), f"{self.target} handler must define {method}()"
            )


def _import_module(ref: ModuleType | str) -> ModuleType:
    if isinstance(ref, ModuleType):
        return ref
    try:
        return importlib.import_module(ref)
    except ImportError as exc:
        raise HandlerRegistrationError(ref, f"import failed: {exc}") from exc


async def resolve(value: Any) -> Any:
    """Await ``value`` when a handler returned an awaitable; sync results pass through."""
    if inspect.isawaitable(value):
        return await value
    return value


def is_cancelled(cancel_event: asyncio.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def check_batch_contract(
    name: str,
    before: Sequence[Any],
    returned: Sequence[Any] | None,
    component_attribute: str,
) -> list[Any]:
    """Verify a generic handler returned the same components in the same order."""
    after = list(returned or ())
    same_items = len(before) == len(after) and all(
        getattr(a, component_attribute) == getattr(b, component_attribute)
        for a, b in zip(after, before)
    )
    if not same_items:
        raise HandlerContractViolationError(name, len(before), len(after))
    return after
