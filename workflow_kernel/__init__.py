"""
Workflow Kernel - finite-state workflow engine.

A reusable core for entities whose lifecycle moves through named states:
- Versioned definitions, immutable once published
- Requirement-gated transitions with pluggable handlers
- Ordered, best-effort effects after each transition
- Append-only transition history with auditable reverts
"""

__version__ = "0.1.0"
