"""
Transition components (``workflow_kernel.domain.components``).

Responsibility
--------------
Value objects attached to transitions: *requirements* gate a transition,
*effects* run after it.  Each concrete component is a frozen dataclass with a
stable class-level ``kind`` discriminator.  Handlers are dispatched on
``kind``, and persisted definitions store ``kind`` as well, so the identity
of a component never depends on a Python import path.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects, zero I/O.

Invariants enforced
-------------------
* A component class registered in a ``ComponentCatalog`` has a non-empty
  ``kind``; one kind maps to exactly one class per category.
* Effects order deterministically by ``execution_order``.

Defining a component::

    @dataclass(frozen=True)
    class MinimumApprovals(TransitionRequirement):
        kind: ClassVar[str] = "minimum_approvals"
        count: int = 2

    @dataclass(frozen=True)
    class SendNotification(TransitionEffect):
        kind: ClassVar[str] = "send_notification"
        channel: str = "email"

Base-class fields are keyword-only, so subclasses may declare fields
without defaults.
"""

from __future__ import annotations

import dataclasses
import typing
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol, runtime_checkable
from uuid import UUID

from workflow_kernel.exceptions import (
    DuplicateComponentKindError,
    UnknownComponentKindError,
)


@dataclass(frozen=True, kw_only=True)
class TransitionRequirement:
    """Base for gating rules evaluated before a transition executes."""

    kind: ClassVar[str] = ""

    def required_data_types(self) -> frozenset[type]:
        """Record types a caller must collect before this can be satisfied.

        The engine never calls this; UI or intake layers use it to decide
        what to ask the user for.
        """
        return frozenset()

    def describe(self) -> str:
        return self.kind or type(self).__name__


@dataclass(frozen=True, kw_only=True)
class TransitionEffect:
    """Base for side actions performed after a transition executes."""

    kind: ClassVar[str] = ""

    description: str = ""
    is_optional: bool = False
    execution_order: int = 0

    def describe(self) -> str:
        return self.description or self.kind or type(self).__name__


@runtime_checkable
class RequirementData(Protocol):
    """Externally collected record that satisfies a data requirement."""

    state_machine_id: UUID
    transition_id: UUID


def component_kind(component: Any) -> str:
    """Return the discriminator of a component instance or class."""
    kind = getattr(component, "kind", None)
    if not isinstance(kind, str) or not kind:
        raise ValueError(
            f"{component!r} does not declare a non-empty 'kind' discriminator"
        )
    return kind


def _is_set_type(hint: Any) -> bool:
    if isinstance(hint, str):
        return hint.startswith(("frozenset", "set", "typing.FrozenSet", "FrozenSet"))
    return (typing.get_origin(hint) or hint) in (frozenset, set)


def _field_types(cls: type) -> dict[str, Any]:
    """Resolved field annotations; unresolvable forward references stay strings."""
    try:
        return typing.get_type_hints(cls)
    except NameError:
        return {f.name: f.type for f in dataclasses.fields(cls)}


def _freeze(value: Any, hint: Any = None) -> Any:
    if isinstance(value, list):
        items = (_freeze(v) for v in value)
        return frozenset(items) if _is_set_type(hint) else tuple(items)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, (frozenset, set)):
        return [_thaw(v) for v in sorted(value, key=repr)]
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


class ComponentCatalog:
    """Maps ``kind`` strings to requirement and effect classes.

    Used by the configuration layer and the persistence adapter to turn
    ``{"kind": ..., "data": {...}}`` payloads back into value objects.
    Register classes directly or use the ``requirement`` / ``effect``
    methods as class decorators.
    """

    REQUIREMENT = "requirement"
    EFFECT = "effect"

    def __init__(self) -> None:
        self._classes: dict[str, dict[str, type]] = {
            self.REQUIREMENT: {},
            self.EFFECT: {},
        }

    # -- registration ------------------------------------------------------

    def requirement(self, cls: type) -> type:
        return self._register(self.REQUIREMENT, TransitionRequirement, cls)

    def effect(self, cls: type) -> type:
        return self._register(self.EFFECT, TransitionEffect, cls)

    def _register(self, category: str, base: type, cls: type) -> type:
        if not (isinstance(cls, type) and issubclass(cls, base)):
            raise TypeError(f"{cls!r} is not a {base.__name__} subclass")
        # is_dataclass() is also true for plain subclasses of a dataclass
        if "__dataclass_fields__" not in vars(cls):
            raise TypeError(f"{cls.__name__} must be a dataclass")
        kind = component_kind(cls)
        existing = self._classes[category].get(kind)
        if existing is not None and existing is not cls:
            raise DuplicateComponentKindError(
                category, kind, existing.__qualname__, cls.__qualname__
            )
        self._classes[category][kind] = cls
        return cls

    # -- lookup ------------------------------------------------------------

    def requirement_class(self, kind: str) -> type[TransitionRequirement]:
        return self._lookup(self.REQUIREMENT, kind)

    def effect_class(self, kind: str) -> type[TransitionEffect]:
        return self._lookup(self.EFFECT, kind)

    def _lookup(self, category: str, kind: str) -> type:
        try:
            return self._classes[category][kind]
        except KeyError:
            raise UnknownComponentKindError(category, kind) from None

    @property
    def requirement_kinds(self) -> tuple[str, ...]:
        return tuple(self._classes[self.REQUIREMENT])

    @property
    def effect_kinds(self) -> tuple[str, ...]:
        return tuple(self._classes[self.EFFECT])

    # -- (de)serialization -------------------------------------------------

    @staticmethod
    def dump(component: Any) -> dict[str, Any]:
        """Serialize a component to ``{"kind": ..., "data": {...}}``."""
        data = {
            f.name: _thaw(getattr(component, f.name))
            for f in dataclasses.fields(component)
        }
        return {"kind": component_kind(component), "data": data}

    def load_requirement(self, payload: dict[str, Any]) -> TransitionRequirement:
        return self._load(self.REQUIREMENT, payload)

    def load_effect(self, payload: dict[str, Any]) -> TransitionEffect:
        return self._load(self.EFFECT, payload)

    def _load(self, category: str, payload: dict[str, Any]) -> Any:
        cls = self._lookup(category, payload["kind"])
        data = payload.get("data") or {}
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(
                f"{category} kind '{payload['kind']}' has no field(s) {sorted(unknown)}"
            )
        hints = _field_types(cls)
        return cls(**{k: _freeze(v, hints.get(k)) for k, v in data.items()})
