"""Scenario and result models shared by agents and the router."""

from testpilot.model.result import StepResult, TestResult, TestStatus
from testpilot.model.scenario import (
    OrchestratorScenario,
    Priority,
    TestInterface,
    TestStep,
    VerificationStep,
)

__all__ = [
    "OrchestratorScenario",
    "Priority",
    "StepResult",
    "TestInterface",
    "TestResult",
    "TestStatus",
    "TestStep",
    "VerificationStep",
]
