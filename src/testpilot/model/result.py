"""Execution results produced by agents and reported by the router."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class TestStatus(enum.StrEnum):
    __test__ = False

    PASSED = "PASSED"
    FAILED = "FAILED"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"
    RUNNING = "RUNNING"
    PENDING = "PENDING"


@dataclass(frozen=True)
class StepResult:
    """Outcome of a single step. ``duration`` is in seconds."""

    step_index: int
    status: TestStatus
    duration: float = 0.0
    error: str | None = None
    actual_result: str | None = None


@dataclass(frozen=True)
class TestResult:
    """Outcome of one scenario execution.

    Never mutated after creation; use ``dataclasses.replace`` to derive
    an adjusted copy.
    """

    __test__ = False

    scenario_id: str
    status: TestStatus
    duration: float
    start_time: datetime
    end_time: datetime
    error: str | None = None
    stack_trace: str | None = None
    step_results: tuple[StepResult, ...] = ()
    logs: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.status == TestStatus.PASSED
