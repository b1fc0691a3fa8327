"""Agent contract and the shared step-loop template."""

from __future__ import annotations

import enum
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, ClassVar, Generic, Protocol, TypeVar, runtime_checkable

from testpilot.errors import EngineError
from testpilot.model import OrchestratorScenario, StepResult, TestResult, TestStatus, TestStep

S = TypeVar("S")


class AgentType(enum.StrEnum):
    CLI = "cli"
    TUI = "tui"
    GUI = "gui"
    API = "api"


@runtime_checkable
class Agent(Protocol):
    """What the router needs from an agent.

    One instance serves every scenario of its interface, possibly several
    at once, so ``execute`` must not keep per-scenario state on ``self``.
    """

    name: str
    type: AgentType

    async def initialize(self) -> None: ...

    async def execute(self, scenario: OrchestratorScenario) -> TestResult: ...

    async def cleanup(self) -> None: ...


class BaseAgent(ABC, Generic[S]):
    """Template for agents that run a scenario's steps in order.

    Subclasses provide:
    - ``_open_session``: per-scenario state (a terminal, a command log...)
    - ``_perform``: run one step against that state; raise to fail it
    - ``_close_session``: release the state; always called

    ``execute`` stops at the first FAILED or ERROR step. Step errors are
    recorded on the step result; errors opening the session propagate.
    """

    name: ClassVar[str]
    type: ClassVar[AgentType]

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._log = logger if logger is not None else logging.getLogger(__name__)
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        await self._setup()
        self._initialized = True
        self._log.debug("Agent %s initialized", self.name)

    async def cleanup(self) -> None:
        await self._teardown()
        self._initialized = False

    async def _setup(self) -> None:
        pass

    async def _teardown(self) -> None:
        pass

    async def execute(self, scenario: OrchestratorScenario) -> TestResult:
        if not self._initialized:
            raise EngineError("Agent not initialized. Call initialize() first.")

        start_time = datetime.now()
        t0 = time.monotonic()
        status = TestStatus.PASSED
        error: str | None = None
        step_results: list[StepResult] = []

        session = await self._open_session(scenario)
        try:
            for index, step in enumerate(scenario.steps):
                result = await self.execute_step(step, index, session)
                step_results.append(result)
                if result.status in (TestStatus.FAILED, TestStatus.ERROR):
                    status = result.status
                    error = result.error
                    break

            return TestResult(
                scenario_id=scenario.id,
                status=status,
                duration=time.monotonic() - t0,
                start_time=start_time,
                end_time=datetime.now(),
                error=error,
                step_results=tuple(step_results),
                logs=tuple(self._session_logs(session)),
                metadata=self._session_metadata(session),
            )
        finally:
            await self._close_session(session)

    async def execute_step(self, step: TestStep, index: int, session: S) -> StepResult:
        t0 = time.monotonic()
        try:
            actual = await self._perform(step, session)
        except Exception as e:
            self._log.debug("Step %d (%s) failed: %s", index, step.action, e)
            return StepResult(
                step_index=index,
                status=TestStatus.FAILED,
                duration=time.monotonic() - t0,
                error=str(e) or type(e).__name__,
            )
        return StepResult(
            step_index=index,
            status=TestStatus.PASSED,
            duration=time.monotonic() - t0,
            actual_result=actual,
        )

    @abstractmethod
    async def _open_session(self, scenario: OrchestratorScenario) -> S: ...

    @abstractmethod
    async def _perform(self, step: TestStep, session: S) -> str | None:
        """Run one step. Return a printable actual result, raise to fail."""
        ...

    async def _close_session(self, session: S) -> None:
        pass

    def _session_logs(self, session: S) -> list[str]:
        return []

    def _session_metadata(self, session: S) -> dict[str, Any]:
        return {}


def normalize_action(action: str) -> str:
    """``runCommand`` / ``run-command`` / ``Run_Command`` -> ``runcommand``."""
    return re.sub(r"[\s_-]", "", action).lower()


def output_matches(output: str, expected: Any) -> bool:
    """Check output against an expectation.

    String forms: ``regex:<pattern>`` (case-insensitive search),
    ``contains:<text>``, otherwise whitespace-trimmed equality. Dicts with
    a ``type`` key support json, contains, not_contains, starts_with,
    ends_with, length, empty and not_empty.
    """
    if isinstance(expected, str):
        if expected.startswith("regex:"):
            return re.search(expected[len("regex:"):], output, re.IGNORECASE) is not None
        if expected.startswith("contains:"):
            return expected[len("contains:"):] in output
        return output.strip() == expected.strip()

    if isinstance(expected, dict) and "type" in expected:
        kind = expected["type"]
        value = expected.get("value")
        if kind == "json":
            try:
                return json.loads(output) == value
            except json.JSONDecodeError:
                return False
        if kind == "contains":
            return str(value) in output
        if kind == "not_contains":
            return str(value) not in output
        if kind == "starts_with":
            return output.startswith(str(value))
        if kind == "ends_with":
            return output.endswith(str(value))
        if kind == "length":
            return len(output) == value
        if kind == "empty":
            return not output.strip()
        if kind == "not_empty":
            return bool(output.strip())
        raise EngineError(f"Unsupported validation type: {kind}")

    return False


def parse_expected(raw: str | None) -> Any:
    """Step ``expected`` values may carry a JSON object expectation."""
    if raw is None:
        return None
    stripped = raw.strip()
    if stripped.startswith("{"):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            return raw
    return raw
