"""Scenario execution engine."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

import structlog

from .assertions import evaluate_assertions
from .errors import ProcessError
from .events import (
    EventBus,
    ScenarioFinished,
    ScenarioStarted,
    StderrChunk,
    StdoutChunk,
    StepCompleted,
    StepFailed,
    StepStarted,
)
from .extractor import extract
from .models import Scenario, ScenarioResult, Step, StepResult, Summary
from .process_adapter import ProcessAdapter, serialize_arguments
from .variables import VariableStore

LOGGER = structlog.get_logger("scenario_engine")


class RunnerState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    RUNNING = "running"
    COMPLETED = "completed"


_TRANSITIONS = {
    RunnerState.IDLE: {RunnerState.LOADING},
    RunnerState.LOADING: {RunnerState.RUNNING, RunnerState.COMPLETED},
    RunnerState.RUNNING: {RunnerState.COMPLETED},
    RunnerState.COMPLETED: set(),
}


class ScenarioRunner:
    """Runs the steps of one scenario in order against an executable.

    A runner moves through ``IDLE -> LOADING -> RUNNING(i) -> COMPLETED`` once;
    create a new instance for every execution.
    """

    def __init__(
        self,
        scenario: Scenario,
        *,
        executable: Path | str,
        adapter: Optional[ProcessAdapter] = None,
        bus: Optional[EventBus] = None,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
        source: Optional[str] = None,
    ) -> None:
        self.scenario = scenario
        self.executable = executable
        self.bus = bus or EventBus()
        self.source = source
        self._adapter = adapter or ProcessAdapter()
        self._timeout = timeout
        self._env = env
        self._state = RunnerState.IDLE
        self._current_step: Optional[int] = None
        self._store = VariableStore()
        self._logger = LOGGER.bind(scenario=scenario.info.name)

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def current_step(self) -> Optional[int]:
        return self._current_step

    @property
    def variables(self) -> VariableStore:
        return self._store

    def _transition(self, target: RunnerState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal runner transition {self._state.value} -> {target.value}")
        self._logger.debug("runner_transition", source=self._state.value, target=target.value)
        self._state = target

    def run(self, cancel_event: Optional[threading.Event] = None) -> ScenarioResult:
        self._transition(RunnerState.LOADING)
        started_at = datetime.now(timezone.utc)
        timer = time.perf_counter()
        name = self.scenario.info.name

        for variable in self.scenario.variables:
            self._store.set(variable.key, self._store.substitute(variable.value))

        self._logger.info("scenario_started", steps=len(self.scenario.steps), source=self.source)
        self.bus.publish(ScenarioStarted(name, total_steps=len(self.scenario.steps), source=self.source))

        step_results: list[StepResult] = []
        cancelled = False
        if self.scenario.steps:
            self._transition(RunnerState.RUNNING)
        for index, step in enumerate(self.scenario.steps, start=1):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            self._current_step = index
            result = self._execute_step(step, index, cancel_event)
            step_results.append(result)
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            if not result.passed and self.scenario.stop_on_error:
                self._logger.info("scenario_halted", step=result.name, step_index=index)
                break

        self._transition(RunnerState.COMPLETED)
        self._current_step = None
        finished_at = datetime.now(timezone.utc)
        passed = sum(1 for result in step_results if result.passed)
        summary = Summary(
            total=len(step_results),
            passed=passed,
            failed=len(step_results) - passed,
            duration_ms=round((time.perf_counter() - timer) * 1000, 3),
        )
        result = ScenarioResult(
            info=self.scenario.info,
            steps=step_results,
            summary=summary,
            success=summary.failed == 0 and not cancelled,
            started_at=started_at,
            finished_at=finished_at,
            cancelled=cancelled,
            source=self.source,
        )
        self._logger.info(
            "scenario_finished",
            success=result.success,
            total=summary.total,
            passed=summary.passed,
            failed=summary.failed,
            cancelled=cancelled,
        )
        self.bus.publish(ScenarioFinished(name, result=result))
        return result

    def _execute_step(
        self,
        step: Step,
        step_index: int,
        cancel_event: Optional[threading.Event],
    ) -> StepResult:
        scenario_name = self.scenario.info.name
        step_name = self._store.substitute(step.name)
        serialized = serialize_arguments(step.arguments, self._store.substitute)
        logger = self._logger.bind(step=step_name, step_index=step_index)
        logger.info("step_started", command=step.command)
        self.bus.publish(
            StepStarted(
                scenario_name,
                step_index=step_index,
                step_name=step_name,
                command_string=f"{self.executable} {serialized}",
            )
        )

        started_at = datetime.now(timezone.utc)
        timer = time.perf_counter()
        try:
            response = self._adapter.execute(
                self.executable,
                serialized,
                timeout=self._timeout,
                step_name=step_name,
                on_stdout=lambda text: self.bus.publish(StdoutChunk(scenario_name, step_index=step_index, text=text)),
                on_stderr=lambda text: self.bus.publish(StderrChunk(scenario_name, step_index=step_index, text=text)),
                cancel_event=cancel_event,
                env=self._env,
            )
        except ProcessError as exc:
            duration_ms = round((time.perf_counter() - timer) * 1000, 3)
            result = StepResult(
                step_index=step_index,
                name=step_name,
                command=step.command,
                command_string=exc.response.command_string if exc.response else f"{self.executable} {serialized}",
                response=exc.response,
                passed=False,
                error=str(exc),
                error_type=type(exc).__name__,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                duration_ms=duration_ms,
            )
            logger.warning("step_errored", error=str(exc), error_type=type(exc).__name__)
            self.bus.publish(
                StepFailed(scenario_name, result=result, error_type=type(exc).__name__, response=exc.response)
            )
            return result

        extracted = extract(response, step.extractors, self._store)
        assertions = evaluate_assertions(
            step.assertions,
            extracted,
            substitute=lambda text: self._store.substitute(text, extracted),
        )
        passed = all(item.passed for item in assertions)
        result = StepResult(
            step_index=step_index,
            name=step_name,
            command=step.command,
            command_string=response.command_string,
            response=response,
            extracted=extracted,
            assertions=assertions,
            passed=passed,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            duration_ms=round((time.perf_counter() - timer) * 1000, 3),
        )
        logger.info(
            "step_completed",
            passed=passed,
            exit_code=response.exit_code,
            extracted=sorted(extracted),
            failed_assertions=[item.name for item in assertions if not item.passed],
        )
        self.bus.publish(StepCompleted(scenario_name, result=result))
        return result
