"""Tests for testpilot.model and testpilot.errors."""

from __future__ import annotations

import dataclasses
from datetime import datetime

import pydantic
import pytest

from testpilot.errors import (
    CircuitOpenError,
    EngineError,
    NotActiveError,
    ProcessError,
    RetriesExhaustedError,
    ValidationError,
    WaitTimeoutError,
)
from testpilot.model import (
    OrchestratorScenario,
    Priority,
    StepResult,
    TestInterface,
    TestResult,
    TestStatus,
    TestStep,
)


class TestScenarioModels:
    def test_minimal_scenario(self) -> None:
        scenario = OrchestratorScenario(id="s1", name="Smoke", interface=TestInterface.CLI)
        assert scenario.priority == Priority.MEDIUM
        assert scenario.steps == ()
        assert scenario.enabled is True
        assert scenario.environment == {}

    def test_interface_from_string(self) -> None:
        scenario = OrchestratorScenario.model_validate(
            {
                "id": "s2",
                "name": "TUI run",
                "interface": "TUI",
                "steps": [{"action": "execute", "target": "ls", "timeout": 5}],
                "tags": ["smoke"],
            }
        )
        assert scenario.interface is TestInterface.TUI
        assert scenario.steps[0].timeout == 5.0
        assert scenario.tags == ("smoke",)

    def test_scenarios_are_frozen(self) -> None:
        scenario = OrchestratorScenario(id="s1", name="Smoke", interface=TestInterface.CLI)
        with pytest.raises(pydantic.ValidationError):
            scenario.enabled = False  # type: ignore[misc]

    def test_step_timeout_must_be_positive(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            TestStep(action="execute", timeout=0)

    def test_unknown_interface(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            OrchestratorScenario(id="s", name="n", interface="DESKTOP")  # type: ignore[arg-type]


class TestResults:
    def _result(self, status: TestStatus) -> TestResult:
        now = datetime.now()
        return TestResult(
            scenario_id="s1", status=status, duration=0.5, start_time=now, end_time=now
        )

    def test_passed(self) -> None:
        assert self._result(TestStatus.PASSED).passed
        assert not self._result(TestStatus.SKIPPED).passed

    def test_immutable(self) -> None:
        result = self._result(TestStatus.PASSED)
        with pytest.raises(dataclasses.FrozenInstanceError):
            result.status = TestStatus.FAILED  # type: ignore[misc]
        derived = dataclasses.replace(result, scenario_id="s2")
        assert derived.scenario_id == "s2"
        assert result.scenario_id == "s1"

    def test_step_result_defaults(self) -> None:
        step = StepResult(step_index=0, status=TestStatus.PASSED)
        assert step.duration == 0.0
        assert step.error is None


class TestErrors:
    def test_hierarchy(self) -> None:
        assert issubclass(ValidationError, ValueError)
        assert issubclass(NotActiveError, RuntimeError)
        assert issubclass(WaitTimeoutError, TimeoutError)
        assert issubclass(ProcessError, RuntimeError)
        for cls in (ValidationError, NotActiveError, WaitTimeoutError, ProcessError):
            assert issubclass(cls, EngineError)

    def test_circuit_open(self) -> None:
        err = CircuitOpenError(retry_after=12.5)
        assert str(err) == "Circuit breaker is OPEN"
        assert err.retry_after == 12.5

    def test_retries_exhausted(self) -> None:
        cause = OSError("disk full")
        err = RetriesExhaustedError(3, cause)
        assert err.attempts == 3
        assert err.last_error is cause
        assert str(err) == "Operation failed after 3 attempt(s): disk full"
