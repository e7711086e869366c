"""
Configuration Loader (``workflow_config.loader``).

Responsibility
--------------
Loads YAML documents and parses them into typed ``workflow_config.schema``
dataclass instances.  No kernel objects are created here; see
``workflow_config.bridges``.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  Imports kernel enums only.

Invariants enforced
-------------------
* Parse errors raise ``KeyError`` (missing required key) or ``ValueError``
  (bad enum value, bad type); there are no silent defaults for required
  fields.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Unknown category / trigger type  -> ``ValueError``.

Document layout::

    engine:
      requirement_evaluation:
        handler_modules: [myapp.approval_handlers]
      effect_execution:
        continue_on_failure: false
        execution_timeout_seconds: 30
    state_machine:
      name: document-approval
      version: 1
      initial_state: Draft
      publish: true
      states:
        - {name: Review}
        - {name: Approved, category: final}
      triggers:
        - {name: Submit}
        - {name: Approve}
      transitions:
        - from: Draft
          to: Review
          trigger: Submit
        - from: Review
          to: Approved
          trigger: Approve
          requirements:
            - {kind: minimum_approvals, count: 2}
          effects:
            - {kind: send_notification, channel: email, execution_order: 1}
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from workflow_config.schema import (
    ComponentDef,
    EffectEngineDef,
    EngineOptionsDef,
    RequirementEngineDef,
    StateDef,
    StateMachineDefinitionDef,
    TransitionDef,
    TriggerDef,
)
from workflow_kernel.domain.definition import StateCategory, TriggerType


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML value must be a mapping")
    return data


def parse_component(data: dict[str, Any]) -> ComponentDef:
    """Parse a requirement/effect entry: ``kind`` plus free-form parameters."""
    if not isinstance(data, dict):
        raise ValueError(f"Component entry must be a mapping, got {data!r}")
    kind = data["kind"]
    params = tuple(sorted((k, v) for k, v in data.items() if k != "kind"))
    return ComponentDef(kind=kind, params=params)


def parse_state(data: dict[str, Any]) -> StateDef:
    """Parse a StateDef; ``category`` defaults to intermediate."""
    category = StateCategory(data.get("category", StateCategory.INTERMEDIATE.value))
    if category == StateCategory.INITIAL:
        raise ValueError(
            f"State '{data['name']}' cannot declare category 'initial'; "
            f"use state_machine.initial_state"
        )
    return StateDef(
        name=data["name"],
        category=category,
        description=data.get("description", ""),
    )


def parse_trigger(data: dict[str, Any]) -> TriggerDef:
    return TriggerDef(
        name=data["name"],
        description=data.get("description", ""),
        trigger_type=TriggerType(data.get("type", TriggerType.MANUAL.value)),
    )


def parse_transition(data: dict[str, Any]) -> TransitionDef:
    return TransitionDef(
        trigger=data["trigger"],
        to_state=data["to"],
        from_state=data.get("from"),
        requirements=tuple(parse_component(r) for r in data.get("requirements") or ()),
        effects=tuple(parse_component(e) for e in data.get("effects") or ()),
    )


def parse_definition(data: dict[str, Any]) -> StateMachineDefinitionDef:
    """
    Parse a ``StateMachineDefinitionDef`` from the ``state_machine`` mapping.

    Raises:
        KeyError: if ``name`` or ``initial_state`` (or any nested required
            key) is missing.
        ValueError: if ``version`` is not a positive integer or an enum
            value is unknown.
    """
    version = data.get("version", 1)
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise ValueError(f"state_machine.version must be a positive integer, got {version!r}")
    return StateMachineDefinitionDef(
        name=data["name"],
        version=version,
        initial_state=data["initial_state"],
        description=data.get("description", ""),
        initial_state_description=data.get("initial_state_description", ""),
        states=tuple(parse_state(s) for s in data.get("states") or ()),
        triggers=tuple(parse_trigger(t) for t in data.get("triggers") or ()),
        transitions=tuple(parse_transition(t) for t in data.get("transitions") or ()),
        publish=bool(data.get("publish", False)),
        checksum=compute_checksum(data),
    )


def parse_engine_options(data: dict[str, Any]) -> EngineOptionsDef:
    """Parse the ``engine`` mapping; every key is optional."""
    req = data.get("requirement_evaluation") or {}
    eff = data.get("effect_execution") or {}
    timeout = eff.get("execution_timeout_seconds", 300.0)
    if timeout is not None:
        timeout = float(timeout)
    return EngineOptionsDef(
        requirement_evaluation=RequirementEngineDef(
            handler_modules=tuple(req.get("handler_modules") or ()),
        ),
        effect_execution=EffectEngineDef(
            handler_modules=tuple(eff.get("handler_modules") or ()),
            continue_on_failure=bool(eff.get("continue_on_failure", True)),
            stop_on_first_handler_failure=bool(eff.get("stop_on_first_handler_failure", False)),
            execution_timeout_seconds=timeout,
        ),
    )


def load_definition_file(path: Path) -> StateMachineDefinitionDef:
    """Load and parse the ``state_machine`` section of a YAML file."""
    return parse_definition(load_yaml_file(path)["state_machine"])


def load_engine_options_file(path: Path) -> EngineOptionsDef:
    """Load and parse the ``engine`` section of a YAML file (defaults if absent)."""
    return parse_engine_options(load_yaml_file(path).get("engine") or {})


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
