"""
Tests for HandlerRegistry and module-based handler registration.
"""

import sys
import threading
from types import ModuleType

import pytest

from workflow_kernel.exceptions import HandlerRegistrationError
from workflow_kernel.services.effect_execution import (
    EffectExecutionOptions,
    EffectExecutionService,
)
from workflow_kernel.services.handler_registry import (
    EFFECT_TARGET,
    REQUIREMENT_TARGET,
    HandlerRegistration,
    HandlerRegistry,
)
from workflow_kernel.services.requirement_evaluation import (
    RequirementEvaluationOptions,
    RequirementEvaluationService,
)

from tests.workflow_support import (
    AdminOverride,
    ApprovalCountHandler,
    MinimumApprovals,
    RecordingEffectHandler,
    SendNotification,
)


def _handler_module(name: str, entries) -> ModuleType:
    module = ModuleType(name)
    module.STATE_MACHINE_HANDLERS = entries
    return module


@pytest.fixture
def approval_handlers(monkeypatch) -> ModuleType:
    """An importable handler module named ``approval_handlers_for_tests``."""
    module = _handler_module("approval_handlers_for_tests", [
        HandlerRegistration(REQUIREMENT_TARGET, ApprovalCountHandler(), kind=MinimumApprovals),
        HandlerRegistration(REQUIREMENT_TARGET, AdminOverride()),
        HandlerRegistration(EFFECT_TARGET, RecordingEffectHandler("mailer"), kind="send_notification"),
    ])
    monkeypatch.setitem(sys.modules, module.__name__, module)
    return module


class TestRegistry:

    def test_registration_order_is_dispatch_order(self):
        registry = HandlerRegistry(REQUIREMENT_TARGET, "evaluate", "evaluate_all")
        first, second = ApprovalCountHandler(), ApprovalCountHandler()
        registry.register_specific("minimum_approvals", first)
        registry.register_specific(MinimumApprovals, second)

        assert registry.specific_handlers("minimum_approvals") == (first, second)
        assert registry.registered_kinds() == ("minimum_approvals",)

    def test_snapshot_unaffected_by_later_registration(self):
        registry = HandlerRegistry(REQUIREMENT_TARGET, "evaluate", "evaluate_all")
        registry.register_generic(AdminOverride())
        snapshot = registry.generic_handlers()
        registry.register_generic(AdminOverride())

        assert len(snapshot) == 1
        assert len(registry.generic_handlers()) == 2

    def test_concurrent_registration_loses_nothing(self):
        registry = HandlerRegistry(REQUIREMENT_TARGET, "evaluate", "evaluate_all")

        def register_many():
            for _ in range(50):
                registry.register_specific("minimum_approvals", ApprovalCountHandler())

        threads = [threading.Thread(target=register_many) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(registry.specific_handlers("minimum_approvals")) == 200

    def test_clear(self):
        registry = HandlerRegistry(REQUIREMENT_TARGET, "evaluate", "evaluate_all")
        registry.register_specific("minimum_approvals", ApprovalCountHandler())
        registry.register_generic(AdminOverride())
        registry.clear()

        assert registry.registered_kinds() == ()
        assert registry.generic_handlers() == ()


class TestModuleRegistration:

    def test_modules_split_by_target(self, approval_handlers):
        requirements = RequirementEvaluationService()
        effects = EffectExecutionService()

        assert requirements.register_modules([approval_handlers]) == 2
        assert effects.register_modules(["approval_handlers_for_tests"]) == 1

        assert [h.name for h in requirements.describe_specific_handlers("minimum_approvals")] == [
            "approval_count"
        ]
        assert [h.name for h in requirements.describe_generic_handlers()] == ["admin_override"]
        assert [h.name for h in effects.describe_specific_handlers("send_notification")] == [
            "mailer"
        ]

    def test_options_register_modules_at_construction(self, approval_handlers):
        requirements = RequirementEvaluationService(
            RequirementEvaluationOptions(handler_modules=("approval_handlers_for_tests",))
        )
        effects = EffectExecutionService(
            EffectExecutionOptions(handler_modules=("approval_handlers_for_tests",))
        )

        assert len(requirements.describe_specific_handlers("minimum_approvals")) == 1
        assert len(effects.describe_specific_handlers(SendNotification.kind)) == 1

    def test_module_registration_logged(self, approval_handlers, captured_logs):
        RequirementEvaluationService().register_modules([approval_handlers])

        record = next(
            r for r in captured_logs() if r["message"] == "handler_module_registered"
        )
        assert record["handler_module"] == "approval_handlers_for_tests"
        assert record["target"] == REQUIREMENT_TARGET

    def test_module_without_handler_list(self):
        with pytest.raises(HandlerRegistrationError, match="STATE_MACHINE_HANDLERS"):
            RequirementEvaluationService().register_modules([ModuleType("empty_module")])

    def test_malformed_entry(self):
        module = _handler_module("bad_entries", [ApprovalCountHandler()])
        with pytest.raises(HandlerRegistrationError, match="not a HandlerRegistration"):
            RequirementEvaluationService().register_modules([module])

    def test_unknown_target(self):
        module = _handler_module("bad_target", [
            HandlerRegistration("validator", ApprovalCountHandler(), kind="x"),
        ])
        with pytest.raises(HandlerRegistrationError, match="unknown handler target"):
            EffectExecutionService().register_modules([module])

    def test_import_failure(self):
        with pytest.raises(HandlerRegistrationError) as exc_info:
            RequirementEvaluationService().register_modules(["no.such.handler_module"])
        assert exc_info.value.source == "no.such.handler_module"

    def test_handler_missing_method(self):
        module = _handler_module("wrong_method", [
            HandlerRegistration(EFFECT_TARGET, ApprovalCountHandler(), kind="send_notification"),
        ])
        with pytest.raises(HandlerRegistrationError, match="execute"):
            EffectExecutionService().register_modules([module])
