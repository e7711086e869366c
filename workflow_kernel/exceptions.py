"""
Typed Exception Hierarchy for the Workflow Kernel.

===============================================================================
WHEN THE KERNEL RAISES
===============================================================================

The kernel separates two kinds of failure:

  1. Business-rule failures (requirement unmet, trigger not available from the
     current state, not enough history to revert).  These are EXPECTED and are
     returned as ``Result.fail(Error(...))`` values -- see
     ``workflow_kernel.domain.results``.  They are never raised.

  2. Programming and deployment errors (malformed definition, mutation of a
     published definition, a handler module without a registration list, a
     stale instance version at save time).  These are raised as the typed
     exceptions below.

Every exception carries a class-level ``code`` (machine-readable, API-safe)
and stores its context as attributes so it survives logging and
serialization.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    WorkflowKernelError (base)
    |
    +-- ConfigurationError
    |   +-- HandlerRegistrationError
    |   +-- HandlerContractViolationError
    |   +-- UnknownComponentKindError
    |   +-- DuplicateComponentKindError
    |
    +-- DefinitionError
    |   +-- InvalidDefinitionError
    |   +-- DefinitionImmutableError
    |   +-- InvalidDefinitionStatusTransitionError
    |   +-- DefinitionNotFoundError
    |
    +-- InstanceError
    |   +-- InstanceNotFoundError
    |   +-- HistoryEntryAlreadyRevertedError
    |   +-- HistoryImmutableError
    |
    +-- ExecutionError
    |   +-- EffectExecutionTimeoutError
    |
    +-- ConcurrencyError
        +-- OptimisticLockError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                               | When Raised
----------------|------------------------------------|---------------------------------
Configuration   | HANDLER_REGISTRATION_ERROR         | Bad handler module / registration
                | HANDLER_CONTRACT_VIOLATION         | Generic handler added/removed items
                | UNKNOWN_COMPONENT_KIND             | Requirement/effect kind not in catalog
                | DUPLICATE_COMPONENT_KIND           | Two classes claim one kind
----------------|------------------------------------|---------------------------------
Definition      | INVALID_DEFINITION                 | Structural validation failed
                | DEFINITION_IMMUTABLE               | Structural edit on non-draft
                | INVALID_DEFINITION_STATUS_CHANGE   | Illegal lifecycle change
                | DEFINITION_NOT_FOUND               | Store has no such definition
----------------|------------------------------------|---------------------------------
Instance        | INSTANCE_NOT_FOUND                 | Store has no such instance
                | HISTORY_ENTRY_ALREADY_REVERTED     | Entry reverted twice
                | HISTORY_IMMUTABLE                  | Write-once history field changed
----------------|------------------------------------|---------------------------------
Execution       | EFFECT_EXECUTION_TIMEOUT           | Effect run exceeded its timeout
----------------|------------------------------------|---------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT           | Concurrent instance modification
"""


class WorkflowKernelError(Exception):
    """
    Base exception for all workflow kernel errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "WORKFLOW_KERNEL_ERROR"


# Configuration exceptions


class ConfigurationError(WorkflowKernelError):
    """Base exception for broken deployment / wiring errors."""

    code: str = "CONFIGURATION_ERROR"


class HandlerRegistrationError(ConfigurationError):
    """A handler or handler module could not be registered."""

    code: str = "HANDLER_REGISTRATION_ERROR"

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Cannot register handlers from {source}: {reason}")


class HandlerContractViolationError(ConfigurationError):
    """
    A generic handler broke the batch contract.

    Generic handlers may flip status flags but must return exactly the
    items they received, in the same order.
    """

    code: str = "HANDLER_CONTRACT_VIOLATION"

    def __init__(self, handler_name: str, expected_count: int, received_count: int):
        self.handler_name = handler_name
        self.expected_count = expected_count
        self.received_count = received_count
        super().__init__(
            f"Generic handler {handler_name} returned {received_count} item(s) "
            f"for {expected_count} input item(s) or reordered them"
        )


class UnknownComponentKindError(ConfigurationError):
    """A serialized requirement/effect names a kind the catalog does not know."""

    code: str = "UNKNOWN_COMPONENT_KIND"

    def __init__(self, category: str, kind: str):
        self.category = category
        self.kind = kind
        super().__init__(f"Unknown {category} kind: {kind}")


class DuplicateComponentKindError(ConfigurationError):
    """Two different classes were registered under the same kind."""

    code: str = "DUPLICATE_COMPONENT_KIND"

    def __init__(self, category: str, kind: str, existing: str, incoming: str):
        self.category = category
        self.kind = kind
        self.existing = existing
        self.incoming = incoming
        super().__init__(
            f"{category} kind '{kind}' already registered by {existing}; "
            f"cannot register {incoming}"
        )


# Definition exceptions


class DefinitionError(WorkflowKernelError):
    """Base exception for definition-related errors."""

    code: str = "DEFINITION_ERROR"


class InvalidDefinitionError(DefinitionError):
    """The definition graph is structurally invalid."""

    code: str = "INVALID_DEFINITION"

    def __init__(self, definition_name: str, errors: list[str]):
        self.definition_name = definition_name
        self.errors = list(errors)
        super().__init__(
            f"Definition '{definition_name}' is invalid: {'; '.join(self.errors)}"
        )


class DefinitionImmutableError(DefinitionError):
    """Structural change attempted on a definition that is no longer a draft."""

    code: str = "DEFINITION_IMMUTABLE"

    def __init__(self, definition_name: str, status: str, operation: str):
        self.definition_name = definition_name
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} on definition '{definition_name}' with status "
            f"{status}; create a new version instead"
        )


class InvalidDefinitionStatusTransitionError(DefinitionError):
    """Definition lifecycle change is not allowed."""

    code: str = "INVALID_DEFINITION_STATUS_CHANGE"

    def __init__(self, definition_name: str, from_status: str, to_status: str):
        self.definition_name = definition_name
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Definition '{definition_name}' cannot move from {from_status} "
            f"to {to_status}"
        )


class DefinitionNotFoundError(DefinitionError):
    """Definition with given ID was not found."""

    code: str = "DEFINITION_NOT_FOUND"

    def __init__(self, definition_id: str):
        self.definition_id = definition_id
        super().__init__(f"Definition not found: {definition_id}")


# Instance exceptions


class InstanceError(WorkflowKernelError):
    """Base exception for instance-related errors."""

    code: str = "INSTANCE_ERROR"


class InstanceNotFoundError(InstanceError):
    """Instance with given ID was not found."""

    code: str = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"State machine instance not found: {instance_id}")


class HistoryEntryAlreadyRevertedError(InstanceError):
    """A history entry was marked reverted twice."""

    code: str = "HISTORY_ENTRY_ALREADY_REVERTED"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Transition history entry {entry_id} is already reverted")


class HistoryImmutableError(InstanceError):
    """Attempt to change a write-once history field or delete history."""

    code: str = "HISTORY_IMMUTABLE"

    def __init__(self, entry_id: str, reason: str):
        self.entry_id = entry_id
        self.reason = reason
        super().__init__(f"Transition history entry {entry_id}: {reason}")


# Execution exceptions


class ExecutionError(WorkflowKernelError):
    """Base exception for fatal engine execution errors."""

    code: str = "EXECUTION_ERROR"


class EffectExecutionTimeoutError(ExecutionError):
    """The whole effect run exceeded the configured execution timeout."""

    code: str = "EFFECT_EXECUTION_TIMEOUT"

    def __init__(self, instance_id: str, timeout_seconds: float):
        self.instance_id = instance_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Effect execution for instance {instance_id} exceeded "
            f"{timeout_seconds}s"
        )


# Concurrency exceptions


class ConcurrencyError(WorkflowKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """
    Concurrent modification detected.

    The instance row changed since it was loaded; the caller should reload
    and retry.
    """

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, expected_version: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            f"expected version {expected_version}"
        )
