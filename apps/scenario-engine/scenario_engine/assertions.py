"""Assertion grammar and the re-validation pass over finished runs.

Supported forms, tried in order:

* ``VAR exists``
* ``VAR OP VALUE`` with ``OP`` one of ``== != > < >= <=``
* ``js: EXPRESSION``

Anything else passes with a warning so that newer scenario files keep
running on older engines. Evaluation never raises.
"""

from __future__ import annotations

import math
import re
from typing import Any, Callable, Iterable, Mapping, Optional

from .expressions import (
    ExpressionError,
    Interpreter,
    js_type,
    logical_operands,
    parse_expression,
    parse_float,
    referenced_identifiers,
    source_of,
    standard_bindings,
    to_number,
    to_string,
    truthy,
)
from .models import AssertionResult, AssertionSpec, BreakdownEntry, Scenario, ScenarioResult, Summary

EXISTS_PATTERN = re.compile(r"^(\w+)\s+exists$", re.IGNORECASE)
COMPARISON_PATTERN = re.compile(r"^(\w+)\s*(==|!=|>=|<=|>|<)\s*(.+)$")
JS_PREFIX = "js:"

ALIASES = {
    "RESULT_CODE": "result",
    "SERVER_INFO": "serverinfo",
    "ERROR_MESSAGE": "errmsg",
}


def evaluate_assertion(
    assertion: str,
    variables: Mapping[str, str],
    name: Optional[str] = None,
) -> AssertionResult:
    """Evaluate one assertion against `variables`."""

    text = assertion.strip()
    label = name or text
    try:
        match = EXISTS_PATTERN.match(text)
        if match:
            return _evaluate_exists(label, text, match.group(1), variables)
        match = COMPARISON_PATTERN.match(text)
        if match:
            return _evaluate_comparison(label, text, match.group(1), match.group(2), match.group(3), variables)
        if text.startswith(JS_PREFIX):
            return _evaluate_js(label, text, text[len(JS_PREFIX):].strip(), variables)
        return AssertionResult(
            name=label,
            assertion=text,
            passed=True,
            expected="unknown pattern",
            actual="skipped",
            warning=f"Unrecognized assertion pattern: {text}",
        )
    except Exception as exc:  # pragma: no cover - last-resort guard
        return AssertionResult(
            name=label,
            assertion=text,
            passed=False,
            expected="no error",
            actual=str(exc),
            diagnostic=f"Evaluation failed: {exc}",
        )


def evaluate_assertions(
    specs: Iterable[AssertionSpec],
    variables: Mapping[str, str],
    substitute: Optional[Callable[[str], str]] = None,
) -> list[AssertionResult]:
    results = []
    for spec in specs:
        label = substitute(spec.name) if substitute else spec.name
        results.append(evaluate_assertion(spec.assertion, variables, name=label))
    return results


def _evaluate_exists(label: str, text: str, variable: str, variables: Mapping[str, str]) -> AssertionResult:
    exists = variable in variables
    return AssertionResult(
        name=label,
        assertion=text,
        passed=exists,
        expected="exists",
        actual="exists" if exists else "undefined",
    )


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


def _loose_equal(actual: Optional[str], expected: str) -> bool:
    if actual is None:
        return False
    if actual == expected:
        return True
    if actual.strip() and expected.strip():
        left, right = to_number(actual), to_number(expected)
        return not (math.isnan(left) or math.isnan(right)) and left == right
    return False


def _evaluate_comparison(
    label: str,
    text: str,
    variable: str,
    operator: str,
    raw_expected: str,
    variables: Mapping[str, str],
) -> AssertionResult:
    expected = _strip_quotes(raw_expected)
    actual = variables.get(variable)

    if operator == "==":
        passed = _loose_equal(actual, expected)
    elif operator == "!=":
        passed = not _loose_equal(actual, expected)
    else:
        left = parse_float(actual) if actual is not None else math.nan
        right = parse_float(expected)
        if math.isnan(left) or math.isnan(right):
            passed = False
        elif operator == ">":
            passed = left > right
        elif operator == "<":
            passed = left < right
        elif operator == ">=":
            passed = left >= right
        else:
            passed = left <= right

    result = AssertionResult(
        name=label,
        assertion=text,
        passed=passed,
        expected=expected,
        actual=actual if actual is not None else "undefined",
        operator=operator,
    )
    if not passed:
        result = result.model_copy(
            update={"diagnostic": f"Expected {variable} {operator} {expected}, actual: {result.actual}"}
        )
    return result


def expression_bindings(variables: Mapping[str, str]) -> dict[str, Any]:
    """Variables, their lowercase aliases and the short result names."""

    bindings = standard_bindings()
    bindings.update(variables)
    for key, value in variables.items():
        bindings.setdefault(key.lower(), value)
    for source, alias in ALIASES.items():
        if source in variables:
            bindings[alias] = variables[source]
    return bindings


def _variable_info(bindings: Mapping[str, Any], identifiers: Iterable[str], variables: Mapping[str, str]) -> dict[str, dict[str, Any]]:
    bound = set(variables) | {key.lower() for key in variables} | {
        alias for source, alias in ALIASES.items() if source in variables
    }
    info: dict[str, dict[str, Any]] = {}
    for identifier in identifiers:
        if identifier not in bound:
            continue
        value = bindings.get(identifier)
        info[identifier] = {
            "value": value,
            "type": js_type(value),
            "length": len(value) if isinstance(value, str) else None,
            "exists": value is not None,
        }
    return info


def _evaluate_js(label: str, text: str, source: str, variables: Mapping[str, str]) -> AssertionResult:
    bindings = expression_bindings(variables)
    try:
        expr = parse_expression(source)
    except ExpressionError as exc:
        return AssertionResult(
            name=label,
            assertion=text,
            passed=False,
            expected="truthy",
            actual="false (boolean)",
            diagnostic=f"Evaluation failed: {exc}",
        )

    interpreter = Interpreter(bindings)
    operator, operands = logical_operands(expr)
    breakdown: list[BreakdownEntry] = []
    if operator:
        for position, operand in enumerate(operands):
            joiner = operator if position < len(operands) - 1 else None
            try:
                value = interpreter.evaluate(operand)
            except (ExpressionError, ArithmeticError, TypeError, ValueError, RecursionError) as exc:
                breakdown.append(
                    BreakdownEntry(
                        expression=source_of(operand, source),
                        passed=False,
                        value="ERROR",
                        operator=joiner,
                        error=str(exc),
                    )
                )
                continue
            breakdown.append(
                BreakdownEntry(
                    expression=source_of(operand, source),
                    passed=truthy(value),
                    value=to_string(value),
                    operator=joiner,
                )
            )

    variable_info = _variable_info(bindings, referenced_identifiers(expr), variables)
    try:
        value = interpreter.evaluate(expr)
    except (ExpressionError, ArithmeticError, TypeError, ValueError, RecursionError) as exc:
        return AssertionResult(
            name=label,
            assertion=text,
            passed=False,
            expected="truthy",
            actual="false (boolean)",
            diagnostic=f"Evaluation failed: {exc}",
            breakdown=breakdown,
            variables=variable_info,
        )

    passed = truthy(value)
    diagnostic = None
    if not passed:
        failing = [entry.expression for entry in breakdown if not entry.passed]
        diagnostic = f"Expression evaluated to {to_string(value)}"
        if failing and operator == "&&":
            diagnostic += f"; failing operands: {', '.join(failing)}"
    return AssertionResult(
        name=label,
        assertion=text,
        passed=passed,
        expected="truthy",
        actual=f"{to_string(value)} ({js_type(value)})",
        diagnostic=diagnostic,
        breakdown=breakdown,
        variables=variable_info,
    )


def revalidate(result: ScenarioResult, scenario: Scenario) -> ScenarioResult:
    """Re-run every step's assertions over the data it extracted.

    Returns a new result; the input is left untouched. Running it twice yields
    the same outcome.
    """

    steps = []
    for step_result in result.steps:
        position = step_result.step_index - 1
        if position < 0 or position >= len(scenario.steps):
            steps.append(step_result)
            continue
        specs = scenario.steps[position].assertions
        if not specs:
            steps.append(step_result)
            continue
        assertions = []
        for spec_index, spec in enumerate(specs):
            existing = step_result.assertions[spec_index] if spec_index < len(step_result.assertions) else None
            label = existing.name if existing else spec.name
            assertions.append(evaluate_assertion(spec.assertion, step_result.extracted, name=label))
        passed = step_result.error is None and all(item.passed for item in assertions)
        steps.append(step_result.model_copy(update={"assertions": assertions, "passed": passed}))

    passed_count = sum(1 for step in steps if step.passed)
    summary = Summary(
        total=len(steps),
        passed=passed_count,
        failed=len(steps) - passed_count,
        duration_ms=result.summary.duration_ms,
    )
    success = not result.cancelled and passed_count == len(steps)
    return result.model_copy(update={"steps": steps, "summary": summary, "success": success})
