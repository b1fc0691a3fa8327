"""Scenario router — dispatches scenarios to agents under a concurrency cap.

Routing order within one ``route()`` pass:
1. Disabled scenarios are reported as SKIPPED; scenarios whose interface
   has no registered agent are reported through ``on_failure``.
2. CLI, TUI and API scenarios share one sliding-window pool of at most
   ``max_parallel`` in-flight executions.
3. GUI scenarios run one at a time, bracketed by the GUI agent's
   ``initialize()`` / ``cleanup()``.
4. MIXED scenarios run one at a time, each on the agent its steps favour.

Results reach ``on_result`` in completion order. With fail-fast on, the
first FAILED result sets the abort event: nothing is dispatched or
reported after that, and in-flight work finishes unreported.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import traceback
from collections import deque
from datetime import datetime
from typing import Callable, Mapping, Sequence

from testpilot.agent.base import Agent, normalize_action
from testpilot.config import RouterConfig
from testpilot.model import OrchestratorScenario, TestInterface, TestResult, TestStatus
from testpilot.reliability.retry import RetryManager, RetryStrategy

ResultCallback = Callable[[TestResult], None]
FailureCallback = Callable[[str, str], None]

POOLED_INTERFACES = (TestInterface.CLI, TestInterface.TUI, TestInterface.API)
CLI_STYLE_ACTIONS = frozenset({"execute", "runcommand", "run", "command"})
UI_STYLE_ACTIONS = frozenset({"click", "type", "navigate", "screenshot"})


class ScenarioRouter:
    """Route scenarios to the agent registered for their interface.

    The router is a pure dispatcher: it keeps no pass/fail tallies.
    Subscribe with ``on_result(result)`` and ``on_failure(scenario_id,
    message)``.

    One agent instance serves every scenario of its interface, possibly
    several at once. Pooled (CLI/TUI/API) agents are expected to be
    initialized by the caller; the GUI agent is initialized per pass.
    """

    def __init__(
        self,
        agents: Mapping[TestInterface, Agent],
        config: RouterConfig | None = None,
        *,
        abort_event: asyncio.Event | None = None,
        on_result: ResultCallback | None = None,
        on_failure: FailureCallback | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._agents = dict(agents)
        self._config = config or RouterConfig()
        self._abort = abort_event or asyncio.Event()
        self._on_result = on_result
        self._on_failure = on_failure
        self._log = logger if logger is not None else logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def route(self, scenarios: Sequence[OrchestratorScenario]) -> None:
        """Dispatch every scenario once. Never raises for agent failures."""
        pooled: list[tuple[OrchestratorScenario, Agent]] = []
        gui: list[OrchestratorScenario] = []
        mixed: list[OrchestratorScenario] = []

        for scenario in scenarios:
            if not scenario.enabled:
                self._report(_skipped(scenario))
            elif scenario.interface == TestInterface.GUI:
                gui.append(scenario)
            elif scenario.interface == TestInterface.MIXED:
                mixed.append(scenario)
            elif (agent := self._agents.get(scenario.interface)) is not None:
                pooled.append((scenario, agent))
            else:
                self._fail(
                    scenario.id,
                    f"No agent registered for interface {scenario.interface}",
                )

        if pooled:
            self._log.info(
                "Executing %d pooled scenario(s) with max_parallel=%d",
                len(pooled),
                self._config.max_parallel,
            )
            await self._run_pool(pooled)

        if gui:
            await self._run_gui(gui)

        if mixed:
            self._log.info("Executing %d mixed scenario(s)", len(mixed))
            await self._run_mixed(mixed)

    async def _run_pool(self, jobs: list[tuple[OrchestratorScenario, Agent]]) -> None:
        queue = deque(jobs)
        in_flight: dict[asyncio.Task[TestResult], OrchestratorScenario] = {}
        try:
            while queue or in_flight:
                while queue and len(in_flight) < self._config.max_parallel and not self.aborted:
                    scenario, agent = queue.popleft()
                    task = asyncio.create_task(
                        self.execute_single(scenario, agent), name=f"scenario-{scenario.id}"
                    )
                    in_flight[task] = scenario

                if not in_flight:
                    break

                done, _pending = await asyncio.wait(
                    in_flight, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    in_flight.pop(task)
                    self._report(task.result())
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

        if queue:
            self._log.info("Abort requested: %d queued scenario(s) not dispatched", len(queue))

    async def _run_gui(self, scenarios: list[OrchestratorScenario]) -> None:
        if self.aborted:
            self._log.info("Abort requested: skipping %d GUI scenario(s)", len(scenarios))
            return

        agent = self._agents.get(TestInterface.GUI)
        if agent is None:
            for scenario in scenarios:
                self._fail(scenario.id, "GUI agent unavailable: no agent registered for GUI")
            return

        try:
            await agent.initialize()
        except Exception as e:
            self._log.error("GUI agent failed to initialize: %s", e)
            for scenario in scenarios:
                self._fail(scenario.id, f"GUI agent unavailable: {e}")
            return

        try:
            for scenario in scenarios:
                if self.aborted:
                    break
                self._report(await self.execute_single(scenario, agent))
        finally:
            await self._cleanup(agent)

    async def _run_mixed(self, scenarios: list[OrchestratorScenario]) -> None:
        gui_agent = self._agents.get(TestInterface.GUI)
        for scenario in scenarios:
            if self.aborted:
                break
            agent = self.select_for_mixed(scenario)
            if agent is None:
                self._fail(scenario.id, f"No agent available for MIXED scenario '{scenario.id}'")
                continue

            if agent is gui_agent:
                try:
                    await agent.initialize()
                except Exception as e:
                    self._fail(scenario.id, f"GUI agent unavailable: {e}")
                    continue
                try:
                    result = await self.execute_single(scenario, agent)
                finally:
                    await self._cleanup(agent)
            else:
                result = await self.execute_single(scenario, agent)
            self._report(result)

    async def _cleanup(self, agent: Agent) -> None:
        try:
            await agent.cleanup()
        except Exception:
            self._log.exception("Agent %s failed to clean up", agent.name)

    def select_for_mixed(self, scenario: OrchestratorScenario) -> Agent | None:
        """Pick an agent by counting CLI-style vs UI-style steps; ties go to CLI."""
        actions = [normalize_action(step.action) for step in scenario.steps]
        cli_steps = sum(1 for a in actions if a in CLI_STYLE_ACTIONS)
        ui_steps = sum(1 for a in actions if a in UI_STYLE_ACTIONS)

        if ui_steps > cli_steps and TestInterface.GUI in self._agents:
            return self._agents[TestInterface.GUI]
        if TestInterface.CLI in self._agents:
            return self._agents[TestInterface.CLI]
        return next(iter(self._agents.values()), None)

    # ------------------------------------------------------------------
    # Single scenario
    # ------------------------------------------------------------------

    async def execute_single(self, scenario: OrchestratorScenario, agent: Agent) -> TestResult:
        """Run one scenario, retrying agent exceptions with exponential backoff.

        Retry ``k`` (1-based) waits ``backoff_unit * 2**k`` seconds. Any
        exception left after the last attempt becomes a FAILED result;
        nothing but cancellation escapes.
        """
        self._log.info("Executing scenario: %s - %s", scenario.id, scenario.name)
        start_time = datetime.now()
        t0 = time.monotonic()

        retry = RetryManager(
            max_attempts=self._config.retry_count + 1,
            initial_delay=2 * self._config.backoff_unit,
            max_delay=None,
            strategy=RetryStrategy.EXPONENTIAL,
            backoff_multiplier=2.0,
            jitter=0.0,
            attempt_timeout=None,
            logger=self._log,
        )
        try:
            result = await retry.execute(lambda: agent.execute(scenario))
        except Exception as e:
            self._log.error("Scenario %s failed: %s", scenario.id, e)
            return TestResult(
                scenario_id=scenario.id,
                status=TestStatus.FAILED,
                duration=time.monotonic() - t0,
                start_time=start_time,
                end_time=datetime.now(),
                error=str(e) or type(e).__name__,
                stack_trace="".join(traceback.format_exception(e)),
            )

        return dataclasses.replace(
            result, scenario_id=scenario.id, duration=time.monotonic() - t0
        )

    # ------------------------------------------------------------------
    # Reporting and abort
    # ------------------------------------------------------------------

    def _report(self, result: TestResult) -> None:
        if self.aborted:
            self._log.debug("Abort requested: result for %s not reported", result.scenario_id)
            return

        if self._on_result is not None:
            try:
                self._on_result(result)
            except Exception:
                self._log.exception("Error in on_result callback for %s", result.scenario_id)

        if self._config.fail_fast and result.status == TestStatus.FAILED:
            self._log.warning("Fail-fast: %s failed, aborting the run", result.scenario_id)
            self.abort()

    def _fail(self, scenario_id: str, message: str) -> None:
        self._log.warning("Scenario %s not executed: %s", scenario_id, message)
        if self._on_failure is not None:
            try:
                self._on_failure(scenario_id, message)
            except Exception:
                self._log.exception("Error in on_failure callback for %s", scenario_id)

    def abort(self) -> None:
        """Stop dispatching and reporting. In-flight scenarios run to completion."""
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    @property
    def agents(self) -> dict[TestInterface, Agent]:
        return dict(self._agents)


def _skipped(scenario: OrchestratorScenario) -> TestResult:
    now = datetime.now()
    return TestResult(
        scenario_id=scenario.id,
        status=TestStatus.SKIPPED,
        duration=0.0,
        start_time=now,
        end_time=now,
        error="Scenario is disabled",
    )
