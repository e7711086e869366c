"""
workflow_config -- YAML configuration for state machine definitions and engines.

Responsibility:
    Turns reviewable YAML documents into kernel definitions and configured
    transition services.  The kernel never reads configuration itself.

Architecture position:
    Configuration -- sits above ``workflow_kernel``.  The kernel MUST NEVER
    import from ``workflow_config``.

Failure modes:
    - ``FileNotFoundError`` / ``yaml.YAMLError`` -- unreadable document.
    - ``KeyError`` / ``ValueError`` -- schema violations.
    - ``InvalidDefinitionError`` / ``UnknownComponentKindError`` -- the
      parsed definition does not build.
"""

from __future__ import annotations

from pathlib import Path

from workflow_config.bridges import build_definition, build_transition_service
from workflow_config.loader import (
    compute_checksum,
    load_definition_file,
    load_engine_options_file,
    load_yaml_file,
    parse_definition,
    parse_engine_options,
)
from workflow_kernel.domain.components import ComponentCatalog
from workflow_kernel.domain.definition import StateMachineDefinition


def load_state_machine(path: Path, catalog: ComponentCatalog) -> StateMachineDefinition:
    """Load, parse and build the definition declared in ``path``."""
    return build_definition(load_definition_file(path), catalog)


__all__ = [
    "build_definition",
    "build_transition_service",
    "compute_checksum",
    "load_definition_file",
    "load_engine_options_file",
    "load_state_machine",
    "load_yaml_file",
    "parse_definition",
    "parse_engine_options",
]
