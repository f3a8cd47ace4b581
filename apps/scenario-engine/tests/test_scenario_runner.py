from __future__ import annotations

import threading
from pathlib import Path

import pytest

from scenario_engine.events import (
    ScenarioFinished,
    ScenarioStarted,
    StdoutChunk,
    StepCompleted,
    StepFailed,
    StepStarted,
)
from scenario_engine.models import AssertionSpec, Extractor, Scenario, ScenarioInfo, Step, Variable
from scenario_engine.process_adapter import ProcessAdapter
from scenario_engine.runner import RunnerState, ScenarioRunner


def _login_query(login_result: str = "0", stop_on_error: bool = True) -> Scenario:
    return Scenario(
        info=ScenarioInfo(name="Login and query"),
        variables=[Variable(key="USER", value="bob")],
        stop_on_error=stop_on_error,
        steps=[
            Step(
                name="Login {{USER}}",
                arguments={"cmd": "login", "user": "{{USER}}", "result": login_result},
                extractors=[
                    Extractor(name="session", pattern="SESSION_ID", variable="SESSION_ID"),
                    Extractor(name="result", pattern="RESULT", variable="RESULT_CODE"),
                ],
                assertions=[AssertionSpec(name="login ok", assertion="RESULT_CODE == 0")],
            ),
            Step(
                name="Query",
                arguments={"cmd": "query", "session": "{{SESSION_ID}}"},
                extractors=[
                    Extractor(name="session", pattern="SESSION", variable="ECHOED"),
                    Extractor(name="rows", pattern="ROWS", variable="ROWS"),
                ],
                assertions=[
                    AssertionSpec(name="rows", assertion="ROWS >= 1"),
                    AssertionSpec(name="session echoed", assertion="js: ECHOED === 'sess-bob'"),
                ],
            ),
        ],
    )


def test_extracted_values_flow_into_later_steps(fake_binary: Path) -> None:
    runner = ScenarioRunner(_login_query(), executable=fake_binary, adapter=ProcessAdapter(timeout=10))
    events: list[object] = []
    runner.bus.subscribe(events.append)

    result = runner.run()

    assert result.success
    assert result.summary.total == 2
    assert result.summary.passed == 2
    assert result.steps[0].name == "Login bob"
    assert result.steps[1].command_string.endswith("cmd=query;session=sess-bob")
    assert result.steps[1].extracted["ECHOED"] == "sess-bob"
    assert runner.state == RunnerState.COMPLETED
    assert runner.variables.get("SESSION_ID") == "sess-bob"

    kinds = [type(event) for event in events]
    assert kinds[0] is ScenarioStarted
    assert kinds[-1] is ScenarioFinished
    assert kinds.count(StepStarted) == 2
    assert kinds.count(StepCompleted) == 2
    assert StdoutChunk in kinds


def test_failed_assertion_halts_when_stop_on_error(fake_binary: Path) -> None:
    runner = ScenarioRunner(_login_query(login_result="7"), executable=fake_binary, adapter=ProcessAdapter(timeout=10))

    result = runner.run()

    assert not result.success
    assert result.summary.total == 1
    assert result.summary.failed == 1
    failed = result.steps[0].assertions[0]
    assert failed.expected == "0"
    assert failed.actual == "7"


def test_failed_assertion_continues_without_stop_on_error(fake_binary: Path) -> None:
    scenario = _login_query(login_result="7", stop_on_error=False)
    runner = ScenarioRunner(scenario, executable=fake_binary, adapter=ProcessAdapter(timeout=10))

    result = runner.run()

    assert result.summary.total == 2
    assert result.summary.passed == 1
    assert not result.success


def test_process_errors_become_failed_steps(fake_binary: Path) -> None:
    scenario = Scenario(
        info=ScenarioInfo(name="exit"),
        steps=[Step(name="boom", arguments={"exit": "2"}), Step(name="never", arguments={"a": "1"})],
    )
    runner = ScenarioRunner(scenario, executable=fake_binary, adapter=ProcessAdapter(timeout=10))
    failures: list[StepFailed] = []
    runner.bus.subscribe(failures.append, StepFailed)

    result = runner.run()

    assert result.summary.total == 1
    step = result.steps[0]
    assert not step.passed
    assert step.error_type == "ProcessExitError"
    assert step.response is not None and step.response.exit_code == 2
    assert len(failures) == 1


def test_cancel_event_marks_run_cancelled(fake_binary: Path) -> None:
    scenario = Scenario(
        info=ScenarioInfo(name="slow"),
        steps=[Step(name="sleep", arguments={"sleep": "5"}), Step(name="after", arguments={"a": "1"})],
    )
    runner = ScenarioRunner(scenario, executable=fake_binary, adapter=ProcessAdapter(timeout=10))
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()
    try:
        result = runner.run(cancel_event=cancel)
    finally:
        timer.cancel()

    assert result.cancelled
    assert not result.success
    assert len(result.steps) == 1
    assert result.steps[0].error_type == "ProcessCancelledError"


def test_runner_runs_only_once(fake_binary: Path) -> None:
    runner = ScenarioRunner(Scenario(info=ScenarioInfo(name="empty")), executable=fake_binary)
    result = runner.run()
    assert result.success
    assert result.summary.total == 0
    with pytest.raises(RuntimeError):
        runner.run()
