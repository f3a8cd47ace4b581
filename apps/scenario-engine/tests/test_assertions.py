from __future__ import annotations

from datetime import datetime, timezone

from scenario_engine.assertions import evaluate_assertion, revalidate
from scenario_engine.models import (
    AssertionResult,
    AssertionSpec,
    Scenario,
    ScenarioInfo,
    ScenarioResult,
    Step,
    StepResult,
    Summary,
)


def test_exists_assertion() -> None:
    assert evaluate_assertion("SESSION exists", {"SESSION": ""}).passed
    result = evaluate_assertion("SESSION EXISTS", {})
    assert not result.passed
    assert result.actual == "undefined"


def test_comparison_with_missing_variable_reports_undefined() -> None:
    result = evaluate_assertion("RESULT_CODE == 0", {})
    assert not result.passed
    assert result.actual == "undefined"
    assert result.expected == "0"
    assert result.diagnostic == "Expected RESULT_CODE == 0, actual: undefined"


def test_comparison_operators() -> None:
    variables = {"RESULT_CODE": "0", "ROWS": "10", "NAME": "alice"}
    assert evaluate_assertion("RESULT_CODE == 0", variables).passed
    assert evaluate_assertion("RESULT_CODE == 0.0", variables).passed
    assert evaluate_assertion("NAME == 'alice'", variables).passed
    assert evaluate_assertion("NAME != bob", variables).passed
    assert evaluate_assertion("ROWS > 9", variables).passed
    assert evaluate_assertion("ROWS <= 10", variables).passed
    assert not evaluate_assertion("ROWS < 2", variables).passed
    assert not evaluate_assertion("NAME > 1", variables).passed


def test_js_assertion_with_breakdown() -> None:
    variables = {"RESULT_CODE": "0", "SESSION": "sess-1"}

    result = evaluate_assertion("js: result == 0 && SESSION.startsWith('x')", variables, name="session ok")

    assert result.name == "session ok"
    assert not result.passed
    assert result.expected == "truthy"
    assert result.actual == "false (boolean)"
    assert [entry.passed for entry in result.breakdown] == [True, False]
    assert result.breakdown[0].expression == "result == 0"
    assert result.breakdown[0].operator == "&&"
    assert result.variables["SESSION"]["length"] == 6
    assert "SESSION.startsWith('x')" in (result.diagnostic or "")


def test_js_assertion_errors_fail_without_raising() -> None:
    result = evaluate_assertion("js: missing.length > 0", {})
    assert not result.passed
    assert result.diagnostic and result.diagnostic.startswith("Evaluation failed")


def test_unknown_pattern_passes_with_warning() -> None:
    result = evaluate_assertion("looks fine to me", {})
    assert result.passed
    assert result.warning == "Unrecognized assertion pattern: looks fine to me"


def _step_result(index: int, extracted: dict[str, str], passed: bool, error: str | None = None) -> StepResult:
    now = datetime.now(timezone.utc)
    return StepResult(
        step_index=index,
        name=f"step {index}",
        extracted=extracted,
        assertions=[AssertionResult(name="code", assertion="RESULT_CODE == 0", passed=passed)],
        passed=passed,
        error=error,
        started_at=now,
        finished_at=now,
        duration_ms=1.0,
    )


def test_revalidate_recomputes_verdicts_from_extracted_values() -> None:
    assertion = AssertionSpec(name="code", assertion="RESULT_CODE == 0")
    scenario = Scenario(
        info=ScenarioInfo(name="revalidate"),
        steps=[Step(name="one", assertions=[assertion]), Step(name="two", assertions=[assertion])],
    )
    now = datetime.now(timezone.utc)
    result = ScenarioResult(
        info=scenario.info,
        steps=[
            _step_result(1, {"RESULT_CODE": "0"}, passed=False),
            _step_result(2, {"RESULT_CODE": "0"}, passed=True, error="Process exited with code 1"),
        ],
        summary=Summary(total=2, passed=1, failed=1, duration_ms=5.0),
        success=False,
        started_at=now,
        finished_at=now,
    )

    first = revalidate(result, scenario)
    second = revalidate(first, scenario)

    assert [step.passed for step in first.steps] == [True, False]
    assert first.summary.passed == 1
    assert first.summary.failed == 1
    assert not first.success
    assert second == first
    assert result.steps[0].passed is False
