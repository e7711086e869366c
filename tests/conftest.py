"""
Pytest fixtures for the workflow kernel test suite.

Provides:
- Structured-logging capture
- Deterministic clock and actor ids
- The sample document approval definition and instances of it
- Engines and a transition service with the sample handlers registered
- In-memory SQLite sessions and a SqlAlchemyStateMachineStore

Environment Variables:
- DATABASE_URL: SQLAlchemy URL for store tests (default: in-memory SQLite).
  PostgreSQL needs the ``postgres`` extra installed.
"""

import json
import logging
import os
from io import StringIO
from typing import Generator

import pytest
from sqlalchemy.orm import Session

from workflow_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    init_engine_from_url,
    reset_engine,
)
from workflow_kernel.domain.clock import DeterministicClock
from workflow_kernel.domain.instance import StateMachineInstance
from workflow_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from workflow_kernel.services.effect_execution import (
    EffectExecutionOptions,
    EffectExecutionService,
)
from workflow_kernel.services.requirement_evaluation import RequirementEvaluationService
from workflow_kernel.services.store import SqlAlchemyStateMachineStore
from workflow_kernel.services.transition_service import StateMachineTransitionService

from tests.workflow_support import (
    CATALOG,
    TEST_ACTOR_ID,
    ApprovalCountHandler,
    AsyncRoleHandler,
    RecordingEffectHandler,
    build_document_approval,
)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture workflow_kernel logs as parsed JSON dicts.

    Usage::

        async def test_something(captured_logs, transition_service, instance):
            await transition_service.try_transition_by_name(instance, "Submit", actor)
            logs = captured_logs()
            assert any(r["message"] == "state_machine_transition" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("workflow_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    """Clock that moves one second per read so history order is strict."""
    return DeterministicClock(auto_advance_seconds=1)


@pytest.fixture
def actor_id():
    return TEST_ACTOR_ID


@pytest.fixture
def catalog():
    return CATALOG


@pytest.fixture
def definition():
    """Published document approval definition (two approvals required)."""
    return build_document_approval()


@pytest.fixture
def instance(definition, deterministic_clock) -> StateMachineInstance:
    return StateMachineInstance(
        definition,
        owner_entity_type="Document",
        clock=deterministic_clock,
    )


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def requirement_service() -> RequirementEvaluationService:
    service = RequirementEvaluationService()
    service.register_specific_handler("minimum_approvals", ApprovalCountHandler())
    service.register_specific_handler("has_role", AsyncRoleHandler())
    return service


@pytest.fixture
def effect_journal() -> list:
    """Shared ``(handler, kind)`` log written by recording effect handlers."""
    return []


@pytest.fixture
def effect_service(effect_journal) -> EffectExecutionService:
    service = EffectExecutionService(EffectExecutionOptions(execution_timeout_seconds=5))
    recorder = RecordingEffectHandler("recorder", journal=effect_journal)
    service.register_specific_handler("send_notification", recorder)
    service.register_specific_handler("write_audit_note", recorder)
    return service


@pytest.fixture
def outcome_records() -> list[dict]:
    return []


@pytest.fixture
def transition_service(
    requirement_service, effect_service, outcome_records,
) -> StateMachineTransitionService:
    return StateMachineTransitionService(
        requirement_service,
        effect_service,
        outcome_sink=outcome_records.append,
    )


# =============================================================================
# Database fixtures
# =============================================================================


def get_database_url() -> str:
    """Get database URL from environment, or use in-memory SQLite."""
    return os.environ.get("DATABASE_URL", "sqlite://")


@pytest.fixture
def db_engine():
    """Fresh schema per test; dropped afterwards."""
    engine = init_engine_from_url(get_database_url())
    drop_tables()
    create_tables()
    yield engine
    drop_tables()
    reset_engine()


@pytest.fixture
def session(db_engine) -> Generator[Session, None, None]:
    session = get_session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def store(session, deterministic_clock) -> SqlAlchemyStateMachineStore:
    return SqlAlchemyStateMachineStore(session, CATALOG, deterministic_clock)
