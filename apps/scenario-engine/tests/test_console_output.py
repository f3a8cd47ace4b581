from __future__ import annotations

import json
from pathlib import Path

import pytest

from scenario_engine.console_reporter import ConsoleReporter
from scenario_engine.models import AssertionSpec, Extractor, Scenario, ScenarioInfo, Step
from scenario_engine.output_config import ENV_VAR_NAME, OutputFormat, get_log_format, get_output_format
from scenario_engine.process_adapter import ProcessAdapter
from scenario_engine.runner import ScenarioRunner


def _scenario() -> Scenario:
    return Scenario(
        info=ScenarioInfo(name="Echo"),
        steps=[
            Step(
                name="echo",
                arguments={"COLOR": "blue"},
                extractors=[Extractor(name="color", pattern="COLOR", variable="COLOR")],
                assertions=[AssertionSpec(name="is red", assertion="COLOR == 'red'")],
            )
        ],
    )


def test_cli_value_beats_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(ENV_VAR_NAME, "json")

    assert get_output_format("plain") == OutputFormat.PLAIN
    assert get_output_format() == OutputFormat.JSON
    assert get_output_format("bogus") == OutputFormat.JSON
    assert get_log_format() == "json"


def test_unknown_values_fall_back_to_auto(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(ENV_VAR_NAME, "fancy")

    assert get_output_format() == OutputFormat.AUTO
    assert get_log_format() == "console"
    assert get_log_format("console") == "console"
    assert get_log_format("PLAIN") == "plain"


def test_plain_output_shows_extracted_values_and_failures(
    fake_binary: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    runner = ScenarioRunner(_scenario(), executable=fake_binary, adapter=ProcessAdapter(timeout=10))
    reporter = ConsoleReporter(OutputFormat.PLAIN)
    detach = reporter.attach(runner.bus)

    runner.run()
    detach()

    out = capsys.readouterr().out
    assert "Scenario: Echo (1 steps)" in out
    assert "FAIL exit=0" in out
    assert "COLOR = blue" in out
    assert "FAIL: 0/1 steps passed" in out


def test_json_output_emits_one_object_per_event(
    fake_binary: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    runner = ScenarioRunner(_scenario(), executable=fake_binary, adapter=ProcessAdapter(timeout=10))
    detach = ConsoleReporter(OutputFormat.JSON).attach(runner.bus)

    runner.run()
    detach()

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
    names = [line["event"] for line in lines]
    assert names[0] == "ScenarioStarted"
    assert names[-1] == "ScenarioFinished"
    step = next(line for line in lines if line["event"] == "StepCompleted")
    assert step["extracted"] == {"COLOR": "blue"}
    assert step["passed"] is False
    assert step["error"]
